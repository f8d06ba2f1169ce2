"""
Gmail API Connector

Implements listing through the Gmail REST API. Incremental listing uses the
history API (``messageAdded`` records only); the cursor is a history id.
"""

import asyncio
import base64
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from mailsync.exceptions import CursorNotFoundError, NotFoundError
from mailsync.services.email_models import ProviderKind
from mailsync.utils.datetime_utils import from_epoch_millis, parse_rfc2822

from .base_connector import (
    AttachmentDescriptor,
    BaseEmailConnector,
    ListResult,
    MessageContent,
    MessageMetadata,
)
from .http_client import OAuthRestClient, gmail_client

METADATA_HEADERS = ["From", "To", "Subject", "Date"]

# Concurrent metadata gets per batch
METADATA_BATCH = 10


class GmailConnector(BaseEmailConnector):
    """
    Gmail API adapter.

    Without a cursor the inbox is listed and the mailbox's current history id
    becomes the cursor; with one, ``users.history.list`` is paged from it.
    """

    provider_kind = ProviderKind.PUBSUB_PUSH

    def __init__(self, client: Optional[OAuthRestClient] = None):
        super().__init__()
        self.client = client or gmail_client()

    async def list_since(
        self,
        credentials: Dict[str, Any],
        cursor: Optional[Union[str, datetime]] = None,
        limit: int = 50
    ) -> ListResult:
        if cursor is None or isinstance(cursor, datetime):
            return await self._list_inbox(credentials, limit)
        return await self._list_history(credentials, str(cursor), limit)

    async def get_profile_history_id(self, credentials: Dict[str, Any]) -> Optional[str]:
        profile = await self.client.request("GET", "/users/me/profile", credentials)
        history_id = profile.get("historyId")
        return str(history_id) if history_id is not None else None

    async def _list_inbox(self, credentials: Dict[str, Any], limit: int) -> ListResult:
        # Read the position first so nothing arriving during the listing is skipped
        history_id = await self.get_profile_history_id(credentials)

        message_ids: List[str] = []
        page_token = None
        while len(message_ids) < limit:
            params = {"labelIds": "INBOX", "maxResults": min(limit - len(message_ids), 500)}
            if page_token:
                params["pageToken"] = page_token
            response = await self.client.request("GET", "/users/me/messages", credentials, params=params)
            message_ids.extend(message["id"] for message in response.get("messages", []))
            page_token = response.get("nextPageToken")
            if not page_token:
                break

        items = await self._get_metadata_batch(credentials, message_ids[:limit])
        self.logger.debug(f"Listed {len(items)} Gmail inbox messages, history_id={history_id}")
        return ListResult(items=items, next_cursor=history_id)

    async def _list_history(self, credentials: Dict[str, Any], start_history_id: str, limit: int) -> ListResult:
        message_ids: List[str] = []
        seen = set()
        next_cursor = start_history_id
        page_token = None
        truncated = False

        while True:
            params = {"startHistoryId": start_history_id, "historyTypes": "messageAdded"}
            if page_token:
                params["pageToken"] = page_token
            try:
                response = await self.client.request("GET", "/users/me/history", credentials, params=params)
            except NotFoundError:
                raise CursorNotFoundError(
                    f"History id {start_history_id} is no longer available",
                    {"history_id": start_history_id},
                )

            for record in response.get("history", []):
                added = [
                    entry["message"]["id"]
                    for entry in record.get("messagesAdded", [])
                    if entry.get("message", {}).get("id")
                ]
                new_ids = [message_id for message_id in added if message_id not in seen]
                # A record larger than the limit is still taken whole so the cursor moves
                if message_ids and len(message_ids) + len(new_ids) > limit:
                    truncated = True
                    break
                message_ids.extend(new_ids)
                seen.update(new_ids)
                # Resume from the last record fully consumed
                next_cursor = str(record.get("id", next_cursor))

            if truncated:
                break
            page_token = response.get("nextPageToken")
            if not page_token:
                if response.get("historyId"):
                    next_cursor = str(response["historyId"])
                break

        items = await self._get_metadata_batch(credentials, message_ids)
        self.logger.debug(
            f"History {start_history_id} -> {next_cursor}: {len(items)} new messages"
            + (" (truncated)" if truncated else "")
        )
        return ListResult(items=items, next_cursor=next_cursor, has_more=truncated)

    async def _get_metadata_batch(self, credentials: Dict[str, Any], message_ids: List[str]) -> List[MessageMetadata]:
        items: List[MessageMetadata] = []
        for i in range(0, len(message_ids), METADATA_BATCH):
            batch_ids = message_ids[i:i + METADATA_BATCH]
            results = await asyncio.gather(
                *[self._get_metadata(credentials, message_id) for message_id in batch_ids],
                return_exceptions=True,
            )
            for message_id, result in zip(batch_ids, results):
                if isinstance(result, NotFoundError):
                    # Deleted between listing and get
                    self.logger.info(f"Gmail message {message_id} vanished before metadata fetch, skipping")
                    continue
                if isinstance(result, BaseException):
                    raise result
                items.append(result)
        return items

    async def _get_metadata(self, credentials: Dict[str, Any], message_id: str) -> MessageMetadata:
        message = await self.client.request(
            "GET",
            f"/users/me/messages/{message_id}",
            credentials,
            params=[("format", "metadata")] + [("metadataHeaders", header) for header in METADATA_HEADERS],
        )
        return self._parse_metadata(message)

    async def fetch(self, credentials: Dict[str, Any], message_id: str) -> MessageContent:
        message = await self.client.request(
            "GET", f"/users/me/messages/{message_id}", credentials, params={"format": "full"}
        )
        content = MessageContent(metadata=self._parse_metadata(message))
        self._extract_message_parts(message.get("payload", {}), content)
        content.metadata.has_attachments = content.metadata.has_attachments or bool(content.attachments)
        return content

    def _parse_metadata(self, message: Dict[str, Any]) -> MessageMetadata:
        payload = message.get("payload", {})
        headers = {header["name"].lower(): header["value"] for header in payload.get("headers", [])}
        timestamp = from_epoch_millis(message.get("internalDate")) or parse_rfc2822(headers.get("date"))
        return MessageMetadata(
            provider_message_id=message["id"],
            from_header=headers.get("from", ""),
            to_headers=[headers["to"]] if headers.get("to") else [],
            subject=headers.get("subject", ""),
            snippet=message.get("snippet", ""),
            has_attachments=payload.get("mimeType") == "multipart/mixed",
            timestamp=timestamp,
            labels=list(message.get("labelIds", [])),
        )

    def _extract_message_parts(self, part: Dict[str, Any], content: MessageContent) -> None:
        """Recursively extract body text and attachment descriptors from message parts."""
        mime_type = part.get("mimeType", "")
        body = part.get("body", {})

        if part.get("filename") and body.get("attachmentId"):
            content.attachments.append(AttachmentDescriptor(
                attachment_id=body["attachmentId"],
                filename=part["filename"],
                content_type=mime_type,
                size_bytes=body.get("size"),
            ))
        elif body.get("data"):
            data = base64.urlsafe_b64decode(body["data"]).decode("utf-8", errors="ignore")
            if mime_type == "text/plain" and content.body_text is None:
                content.body_text = data
            elif mime_type == "text/html" and content.body_html is None:
                content.body_html = data

        for subpart in part.get("parts", []):
            self._extract_message_parts(subpart, content)
