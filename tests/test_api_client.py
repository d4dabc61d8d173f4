"""Tests for the mail API HTTP client and resource wrapper."""

import json
from collections.abc import Callable

import httpx
import pytest

from mailsync.config_schema import ApiConfig
from mailsync.core.cancellation import CancellationToken
from mailsync.core.errors import OperationCancelled, RateLimitExceeded, RemoteAPIError
from mailsync.remote.client import ApiClient
from mailsync.remote.messages import MailApi, unwrap_list, unwrap_result

BASE_URL = "https://mail.example.com/api"

Handler = Callable[[httpx.Request], httpx.Response]


class Recorder:
    """MockTransport handler that replays scripted responses and records requests."""

    def __init__(self, *responses: httpx.Response | Exception):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def make_client(handler: Handler, **kwargs: object) -> ApiClient:
    return ApiClient(
        BASE_URL,
        "secret-token",
        retry_delays=[0.0],
        rate_per_second=1000.0,
        transport=httpx.MockTransport(handler),
        **kwargs,  # type: ignore[arg-type]
    )


class TestRequest:
    """Tests for ApiClient.request()."""

    @pytest.mark.asyncio
    async def test_success_with_cleaned_params(self) -> None:
        """Test auth header, base path joining and query cleaning."""
        handler = Recorder(httpx.Response(200, json={"ok": True}))
        async with make_client(handler) as client:
            result = await client.request(
                "MessageList",
                path="/v1/messages",
                params={"folder": "INBOX", "raw": False, "search": "", "page": None},
            )

        assert result == {"ok": True}
        [request] = handler.requests
        assert request.url.path == "/api/v1/messages"
        assert dict(request.url.params) == {"folder": "INBOX", "raw": "false"}
        assert request.headers["Authorization"] == "Bearer secret-token"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(204),
            httpx.Response(200, text="plain", headers={"content-type": "text/plain"}),
        ],
    )
    async def test_empty_or_non_json_is_none(self, response: httpx.Response) -> None:
        """Test that bodiless and non-JSON answers return None."""
        async with make_client(Recorder(response)) as client:
            assert await client.request("Folders", path="/v1/folders") is None

    @pytest.mark.asyncio
    async def test_transient_status_retried(self) -> None:
        """Test that a 503 is retried and the next success returned."""
        handler = Recorder(httpx.Response(503), httpx.Response(200, json=[1]))
        async with make_client(handler) as client:
            assert await client.request("Folders", path="/v1/folders") == [1]
        assert len(handler.requests) == 2

    @pytest.mark.asyncio
    async def test_not_found_not_retried(self) -> None:
        """Test that a 404 raises at once with status and code."""
        handler = Recorder(httpx.Response(404, json={"message": "No such message", "code": "NF"}))
        async with make_client(handler) as client:
            with pytest.raises(RemoteAPIError) as exc_info:
                await client.request("Message", path="/v1/messages/x")

        assert exc_info.value.status_code == 404
        assert exc_info.value.error_code == "NF"
        assert len(handler.requests) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_exhausted(self) -> None:
        """Test that persistent 429s raise RateLimitExceeded."""
        handler = Recorder(httpx.Response(429, headers={"Retry-After": "0"}))
        async with make_client(handler, max_retries=1) as client:
            with pytest.raises(RateLimitExceeded):
                await client.request("MessageList", path="/v1/messages")
        assert len(handler.requests) == 2

    @pytest.mark.asyncio
    async def test_connection_error_after_retries(self) -> None:
        """Test that transport failures become RemoteAPIError without status."""
        handler = Recorder(httpx.ConnectError("refused"))
        async with make_client(handler, max_retries=2) as client:
            with pytest.raises(RemoteAPIError) as exc_info:
                await client.request("Folders", path="/v1/folders")

        assert exc_info.value.status_code is None
        assert len(handler.requests) == 3

    @pytest.mark.asyncio
    async def test_timeout_reported_as_408(self) -> None:
        """Test that exhausted timeouts carry status 408."""
        handler = Recorder(httpx.ReadTimeout("slow"))
        async with make_client(handler, max_retries=0) as client:
            with pytest.raises(RemoteAPIError) as exc_info:
                await client.request("Message", path="/v1/messages/x")
        assert exc_info.value.status_code == 408

    @pytest.mark.asyncio
    async def test_error_message_redacted(self) -> None:
        """Test that paths and addresses are stripped from server messages."""
        body = {"error": "Failed reading /var/lib/mail/store.db on 10.0.0.7"}
        handler = Recorder(httpx.Response(400, json=body))
        async with make_client(handler) as client:
            with pytest.raises(RemoteAPIError) as exc_info:
                await client.request("Message", path="/v1/messages/x")

        message = str(exc_info.value)
        assert "/var/lib" not in message
        assert "10.0.0.7" not in message
        assert "[redacted]" in message

    @pytest.mark.asyncio
    async def test_cancelled_token_sends_nothing(self) -> None:
        """Test that a cancelled token aborts before the request."""
        handler = Recorder(httpx.Response(200, json={}))
        token = CancellationToken()
        token.cancel("account_switch")
        async with make_client(handler) as client:
            with pytest.raises(OperationCancelled):
                await client.request("Folders", path="/v1/folders", cancel_token=token)
        assert handler.requests == []

    def test_from_config_reads_token_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that the bearer token comes from the configured variable."""
        monkeypatch.setenv("CUSTOM_TOKEN", "abc")
        config = ApiConfig(base_url=BASE_URL, token_env="CUSTOM_TOKEN", max_retries=1)

        client = ApiClient.from_config(config)

        assert client.max_retries == 1
        assert client._client.headers["Authorization"] == "Bearer abc"
        assert client.timeout_for("Folders") == 5.0
        assert client.timeout_for("Other") == config.timeout_seconds


class TestUnwrap:
    """Tests for response unwrapping."""

    def test_unwrap_result(self) -> None:
        """Test the Result envelope."""
        assert unwrap_result({"Result": {"a": 1}}) == {"a": 1}
        assert unwrap_result([1]) == [1]

    def test_unwrap_list(self) -> None:
        """Test list extraction from bare, wrapped and keyed shapes."""
        assert unwrap_list([{"id": 1}]) == [{"id": 1}]
        assert unwrap_list({"Result": {"List": [{"id": 2}]}}) == [{"id": 2}]
        assert unwrap_list({"folders": [{"path": "INBOX"}]}, "folders") == [{"path": "INBOX"}]
        assert unwrap_list({"unexpected": True}) == []


class TestMailApi:
    """Tests for the MailApi resource methods."""

    @pytest.mark.asyncio
    async def test_get_message(self) -> None:
        """Test id quoting, raw flag and Result unwrapping."""
        handler = Recorder(httpx.Response(200, json={"Result": {"Subject": "Hi"}}))
        async with make_client(handler) as client:
            result = await MailApi(client).get_message("a/b", folder="INBOX", raw=True)

        assert result == {"Subject": "Hi"}
        [request] = handler.requests
        assert request.url.raw_path.startswith(b"/api/v1/messages/a%2Fb")
        assert request.url.params["raw"] == "true"

    @pytest.mark.asyncio
    async def test_list_messages(self) -> None:
        """Test page extraction and the no-content case."""
        handler = Recorder(
            httpx.Response(200, json={"Result": {"List": [{"Uid": 1}]}}),
            httpx.Response(204),
        )
        async with make_client(handler) as client:
            api = MailApi(client)
            assert await api.list_messages({"folder": "INBOX", "page": 1}) == [{"Uid": 1}]
            assert await api.list_messages({"folder": "INBOX", "page": 2}) is None

    @pytest.mark.asyncio
    async def test_update_and_delete(self) -> None:
        """Test the PUT body and the permanent delete flag."""
        handler = Recorder(httpx.Response(200, json={}))
        async with make_client(handler) as client:
            api = MailApi(client)
            await api.update_message("m1", {"folder": "Archive"})
            await api.delete_message("m1", permanent=True)

        update, delete = handler.requests
        assert update.method == "PUT"
        assert json.loads(update.content) == {"folder": "Archive"}
        assert delete.method == "DELETE"
        assert delete.url.params["permanent"] == "1"
