"""Mail resource operations on top of ApiClient.

Usage:
    from mailsync.remote.client import ApiClient
    from mailsync.remote.messages import MailApi

    api = MailApi(ApiClient.from_config(config.api))

    detail = await api.get_message("abc123", folder="INBOX", raw=True)
    await api.update_message("abc123", {"folder": "Archive"})
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from urllib.parse import quote

from mailsync.core.logging import get_logger

if TYPE_CHECKING:
    from mailsync.core.cancellation import CancellationToken
    from mailsync.remote.client import ApiClient

logger = get_logger(__name__)


def unwrap_result(payload: Any) -> Any:
    """Responses may wrap their data as ``{"Result": ...}``; return the inner value."""
    if isinstance(payload, dict) and "Result" in payload:
        return payload["Result"]
    return payload


def unwrap_list(payload: Any, *keys: str) -> list[dict[str, Any]]:
    """Extract a list of records from a (possibly wrapped) listing response."""
    data = unwrap_result(payload)
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in ("List", *keys):
            value = data.get(key)
            if isinstance(value, list):
                return value
    return []


def _message_path(message_id: str) -> str:
    return f"/v1/messages/{quote(message_id, safe='')}"


class MailApi:
    """Message and folder resources of the mail API.

    Attributes:
        client: ApiClient used for every request
    """

    def __init__(self, client: ApiClient):
        self.client = client

    async def get_message(
        self,
        message_id: str,
        *,
        folder: str | None = None,
        raw: bool = True,
        cancel_token: CancellationToken | None = None,
    ) -> dict[str, Any]:
        """Fetch one message. ``raw=True`` asks for the full RFC 5322 source.

        Returns:
            The unwrapped message record (empty dict for an empty response)
        """
        payload = await self.client.request(
            "Message",
            path=_message_path(message_id),
            params={"folder": folder, "raw": raw},
            cancel_token=cancel_token,
        )
        result = unwrap_result(payload)
        return result if isinstance(result, dict) else {}

    async def list_messages(
        self,
        params: dict[str, Any],
        *,
        cancel_token: CancellationToken | None = None,
    ) -> list[dict[str, Any]] | None:
        """Fetch one page of message metadata.

        Args:
            params: Query parameters (folder, page, limit, raw, attachments,
                search, is_unread, has_attachments)

        Returns:
            The page items, or None when the server answered without content
        """
        payload = await self.client.request(
            "MessageList",
            path="/v1/messages",
            params=params,
            cancel_token=cancel_token,
        )
        if payload is None:
            return None
        return unwrap_list(payload, "messages")

    async def list_folders(
        self, *, cancel_token: CancellationToken | None = None
    ) -> list[dict[str, Any]]:
        """Fetch the folder tree as a flat list."""
        payload = await self.client.request(
            "Folders", path="/v1/folders", cancel_token=cancel_token
        )
        return unwrap_list(payload, "folders", "Items", "items")

    async def update_message(
        self,
        message_id: str,
        payload: dict[str, Any],
        *,
        cancel_token: CancellationToken | None = None,
    ) -> Any:
        """PUT a partial update (``folder``, ``flags``, ``labels``)."""
        logger.debug("message_update", message_id=message_id, fields=sorted(payload))
        return await self.client.request(
            "MessageUpdate",
            method="PUT",
            path=_message_path(message_id),
            json=payload,
            cancel_token=cancel_token,
        )

    async def delete_message(
        self,
        message_id: str,
        *,
        permanent: bool = False,
        cancel_token: CancellationToken | None = None,
    ) -> Any:
        """DELETE a message; ``permanent`` bypasses the server-side trash."""
        logger.debug("message_delete", message_id=message_id, permanent=permanent)
        return await self.client.request(
            "MessageDelete",
            method="DELETE",
            path=_message_path(message_id),
            params={"permanent": 1} if permanent else None,
            cancel_token=cancel_token,
        )
