"""
Email Account Connection Routes

Connect, list and disconnect mailboxes, trigger syncs, read single messages
and inspect subscription health.
"""

from fastapi import APIRouter, Depends, HTTPException, status as status_codes
from typing import Any, Dict, List

from mailsync.api.dependencies import get_services, get_user_id, to_http_exception, verify_api_key
from mailsync.api.schemas import (
    AccountResponse,
    ConnectAccountRequest,
    MessageContentResponse,
    SyncJobResponse,
    SyncRequest,
)
from mailsync.exceptions import EmailSyncError
from mailsync.services.container import EmailServices
from mailsync.utils.logging import get_logger

logger = get_logger("email_accounts_api")
router = APIRouter(dependencies=[Depends(verify_api_key)])


@router.post("", response_model=AccountResponse, status_code=status_codes.HTTP_201_CREATED)
async def connect_account(
    request: ConnectAccountRequest,
    user_id: str = Depends(get_user_id),
    services: EmailServices = Depends(get_services),
):
    """Connect a mailbox and start its initial full sync."""
    try:
        account = await services.connections.connect(
            user_id, request.provider_kind, request.email_address, request.credentials
        )
    except EmailSyncError as e:
        logger.warning(f"Connect failed for {request.email_address}: {e.message}")
        raise to_http_exception(e)
    return AccountResponse.from_account(account)


@router.get("", response_model=List[AccountResponse])
async def list_accounts(
    user_id: str = Depends(get_user_id),
    services: EmailServices = Depends(get_services),
):
    """Every account the caller connected, disconnected ones included."""
    accounts = await services.connections.list_accounts(user_id)
    return [AccountResponse.from_account(account) for account in accounts]


@router.delete("/{account_id}", response_model=AccountResponse)
async def disconnect_account(
    account_id: str,
    user_id: str = Depends(get_user_id),
    services: EmailServices = Depends(get_services),
):
    try:
        account = await services.connections.disconnect(account_id, user_id)
    except EmailSyncError as e:
        raise to_http_exception(e)
    return AccountResponse.from_account(account)


@router.post("/{account_id}/sync", response_model=SyncJobResponse, status_code=status_codes.HTTP_202_ACCEPTED)
async def trigger_sync(
    account_id: str,
    request: SyncRequest = SyncRequest(),
    user_id: str = Depends(get_user_id),
    services: EmailServices = Depends(get_services),
):
    """Queue a sync outside of the push/poll schedule."""
    try:
        job_id = await services.connections.request_sync(account_id, user_id, request.full_sync)
    except EmailSyncError as e:
        raise to_http_exception(e)
    return SyncJobResponse(job_id=job_id, account_id=account_id, full_sync=request.full_sync)


@router.get("/{account_id}/health")
async def account_health(
    account_id: str,
    user_id: str = Depends(get_user_id),
    services: EmailServices = Depends(get_services),
) -> Dict[str, Any]:
    try:
        return await services.connections.check_health(account_id, user_id)
    except EmailSyncError as e:
        raise to_http_exception(e)


@router.get("/{account_id}/messages/{message_id}", response_model=MessageContentResponse)
async def get_message(
    account_id: str,
    message_id: str,
    user_id: str = Depends(get_user_id),
    services: EmailServices = Depends(get_services),
):
    """Full content of one message, read from the provider on demand."""
    try:
        content = await services.messages.get_message(account_id, message_id, user_id)
    except EmailSyncError as e:
        raise to_http_exception(e)
    return MessageContentResponse.from_content(content)

@router.get("/monitors/imap")
async def imap_monitors(services: EmailServices = Depends(get_services)):
    """State of every IMAP IDLE / poll monitor in this process."""
    return {"monitors": services.idle_monitor.status()}
