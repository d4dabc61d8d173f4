"""Remote collaborators: the mail API over HTTP and the background sync worker.

Usage:
    from mailsync.remote import ApiClient, MailApi, WorkerClient

    api = MailApi(ApiClient.from_config(config.api))
    worker = WorkerClient(None)  # no worker running: every call is UNAVAILABLE
"""

from mailsync.remote.client import RESOURCE_TIMEOUTS, RETRYABLE_STATUS_CODES, ApiClient
from mailsync.remote.messages import MailApi, unwrap_list, unwrap_result
from mailsync.remote.worker import InProcessWorker, WorkerClient, WorkerTransport

__all__ = [
    "ApiClient",
    "RESOURCE_TIMEOUTS",
    "RETRYABLE_STATUS_CODES",
    "MailApi",
    "unwrap_result",
    "unwrap_list",
    "WorkerClient",
    "WorkerTransport",
    "InProcessWorker",
]
