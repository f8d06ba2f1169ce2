from .email import (
    AccountResponse,
    ConnectAccountRequest,
    MessageContentResponse,
    SyncJobResponse,
    SyncRequest,
)

__all__ = [
    "AccountResponse",
    "ConnectAccountRequest",
    "MessageContentResponse",
    "SyncJobResponse",
    "SyncRequest",
]
