"""
Outlook Connector

Reads Outlook / Office 365 mailboxes through the Microsoft Graph REST API.
Incremental listing is timestamp based: the cursor is the start time of the
previous listing, or the receive time of the last message returned when the
listing was cut off at its limit.
"""

from datetime import datetime
from email.utils import formataddr
from typing import Any, Dict, List, Optional, Union

from mailsync.services.email_models import ProviderKind
from mailsync.utils.datetime_utils import parse_iso, to_utc, utc_now

from .base_connector import (
    AttachmentDescriptor,
    BaseEmailConnector,
    ListResult,
    MessageContent,
    MessageMetadata,
)
from .http_client import OAuthRestClient, graph_client

LIST_FIELDS = "id,subject,from,toRecipients,receivedDateTime,bodyPreview,hasAttachments,isRead,categories"
FETCH_FIELDS = LIST_FIELDS + ",body"

# Graph caps $top at 1000 for messages
GRAPH_MAX_PAGE = 1000


def _format_graph_address(value: Optional[Dict[str, Any]]) -> str:
    address = (value or {}).get("emailAddress") or {}
    return formataddr((address.get("name") or "", address.get("address") or ""))


class OutlookConnector(BaseEmailConnector):
    """
    Microsoft Graph adapter.

    Uses ``/me/messages`` ordered by ``receivedDateTime`` with a ``ge`` filter
    on the cursor; redelivered messages are absorbed by the idempotent store.
    """

    provider_kind = ProviderKind.WEBHOOK_PUSH

    def __init__(self, client: Optional[OAuthRestClient] = None):
        super().__init__()
        self.client = client or graph_client()

    async def list_since(
        self,
        credentials: Dict[str, Any],
        cursor: Optional[Union[str, datetime]] = None,
        limit: int = 50
    ) -> ListResult:
        started_at = utc_now()
        since = cursor if isinstance(cursor, datetime) else parse_iso(cursor)
        # A delta walks forward from the cursor so a truncated page can resume
        params = {
            "$select": LIST_FIELDS,
            "$orderby": "receivedDateTime asc" if since is not None else "receivedDateTime desc",
            "$top": min(limit, GRAPH_MAX_PAGE),
        }
        if since is not None:
            params["$filter"] = f"receivedDateTime ge {to_utc(since).strftime('%Y-%m-%dT%H:%M:%SZ')}"

        items: List[MessageMetadata] = []
        has_more = False
        endpoint = "/me/messages"
        while endpoint:
            response = await self.client.request("GET", endpoint, credentials, params=params)
            page = response.get("value", [])
            for message in page:
                if len(items) >= limit:
                    has_more = True
                    break
                items.append(self._parse_message(message))
            # nextLink already carries the query string
            endpoint = response.get("@odata.nextLink")
            params = None
            if len(items) >= limit:
                has_more = has_more or bool(endpoint)
                break

        next_cursor = started_at
        if has_more and since is not None and items and items[-1].timestamp is not None:
            next_cursor = items[-1].timestamp
        self.logger.debug(
            f"Listed {len(items)} Outlook messages since {since}" + (" (truncated)" if has_more else "")
        )
        return ListResult(items=items, next_cursor=next_cursor, has_more=has_more and since is not None)

    async def fetch(self, credentials: Dict[str, Any], message_id: str) -> MessageContent:
        message = await self.client.request(
            "GET",
            f"/me/messages/{message_id}",
            credentials,
            params={"$select": FETCH_FIELDS, "$expand": "attachments"},
        )
        body = message.get("body") or {}
        is_html = body.get("contentType") == "html"
        return MessageContent(
            metadata=self._parse_message(message),
            body_text=None if is_html else body.get("content", ""),
            body_html=body.get("content") if is_html else None,
            attachments=[
                AttachmentDescriptor(
                    attachment_id=attachment["id"],
                    filename=attachment.get("name") or "attachment",
                    content_type=attachment.get("contentType"),
                    size_bytes=attachment.get("size"),
                )
                for attachment in message.get("attachments", [])
            ],
        )

    def _parse_message(self, message: Dict[str, Any]) -> MessageMetadata:
        return MessageMetadata(
            provider_message_id=message["id"],
            from_header=_format_graph_address(message.get("from")),
            to_headers=[_format_graph_address(recipient) for recipient in message.get("toRecipients", [])],
            subject=message.get("subject") or "",
            snippet=message.get("bodyPreview") or "",
            has_attachments=bool(message.get("hasAttachments")),
            timestamp=parse_iso(message.get("receivedDateTime")),
            labels=list(message.get("categories") or []),
        )
