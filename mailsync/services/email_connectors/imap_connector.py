"""
IMAP Email Connector

Handles IMAP mailbox reads with username/password authentication. imaplib is
blocking, so every session runs in a worker thread.
"""

import asyncio
import email
import imaplib
import re
import socket
import ssl
import time
from datetime import datetime, timedelta, timezone
from email.header import decode_header
from typing import Any, Dict, List, Optional, Tuple, Union

from mailsync.config import settings
from mailsync.exceptions import AuthenticationError, ExternalServiceError, NotFoundError, ValidationError
from mailsync.services.email_models import ProviderKind
from mailsync.utils.datetime_utils import parse_iso, parse_rfc2822, to_utc, utc_now

from .base_connector import (
    AttachmentDescriptor,
    BaseEmailConnector,
    ListResult,
    MessageContent,
    MessageMetadata,
)

IMAP_SSL_PORT = 993
IMAP_STARTTLS_PORT = 143

HEADER_FIELDS = "FROM TO SUBJECT DATE MESSAGE-ID CONTENT-TYPE"
UID_PATTERN = re.compile(rb"UID (\d+)")
INTERNALDATE_PATTERN = re.compile(rb'INTERNALDATE "[^"]+"')


def decode_mime_header(header_value: str) -> str:
    """
    Decode MIME encoded-word syntax (RFC 2047) in email headers.

    Examples:
        =?utf-8?Q?See=20You=20At=20Supercon=21?= -> See You At Supercon!
    """
    if not header_value:
        return ""
    result = []
    for decoded_bytes, charset in decode_header(header_value):
        if isinstance(decoded_bytes, bytes):
            result.append(decoded_bytes.decode(charset or "utf-8", errors="ignore"))
        else:
            result.append(decoded_bytes)
    return "".join(result)


class ImapSettings:
    """Connection parameters taken from a decrypted credential blob."""

    def __init__(self, credentials: Dict[str, Any]):
        self.host = credentials.get("host") or credentials.get("server")
        self.username = credentials.get("username")
        self.password = credentials.get("password")
        if not self.host or not self.username or not self.password:
            raise ValidationError("IMAP credentials need host, username and password")

        port = credentials.get("port")
        use_ssl = credentials.get("use_ssl")
        if use_ssl is None:
            use_ssl = int(port or IMAP_SSL_PORT) == IMAP_SSL_PORT
        self.use_ssl = bool(use_ssl)
        self.port = int(port or (IMAP_SSL_PORT if self.use_ssl else IMAP_STARTTLS_PORT))


def open_imap_connection(credentials: Dict[str, Any]) -> imaplib.IMAP4:
    """
    Open and authenticate a blocking IMAP session.

    Raises:
        AuthenticationError: Server rejected the login
        ExternalServiceError: Server unreachable or TLS failed
    """
    params = ImapSettings(credentials)
    try:
        if params.use_ssl:
            connection = imaplib.IMAP4_SSL(params.host, params.port, timeout=settings.imap_timeout)
        else:
            connection = imaplib.IMAP4(params.host, params.port, timeout=settings.imap_timeout)
            connection.starttls(ssl_context=ssl.create_default_context())
    except (OSError, socket.timeout, ssl.SSLError, imaplib.IMAP4.error) as e:
        raise ExternalServiceError(f"Cannot reach IMAP server {params.host}:{params.port}: {e}")

    try:
        connection.login(params.username, params.password)
    except imaplib.IMAP4.error as e:
        _safe_logout(connection)
        raise AuthenticationError(f"IMAP login rejected for {params.username}: {e}")
    return connection


def _safe_logout(connection: Optional[imaplib.IMAP4]) -> None:
    if connection is None:
        return
    try:
        connection.logout()
    except (OSError, imaplib.IMAP4.error):
        pass


class IMAPConnector(BaseEmailConnector):
    """IMAP adapter for standard servers (SSL on 993 or STARTTLS on 143)."""

    provider_kind = ProviderKind.POLL

    def __init__(self, folder: str = "INBOX"):
        super().__init__()
        self.folder = folder

    async def list_since(
        self,
        credentials: Dict[str, Any],
        cursor: Optional[Union[str, datetime]] = None,
        limit: int = 50
    ) -> ListResult:
        since = cursor if isinstance(cursor, datetime) else parse_iso(cursor)
        started_at = utc_now()
        items, has_more = await asyncio.to_thread(self._list_blocking, credentials, since, limit)
        next_cursor = started_at
        if has_more and items and items[-1].timestamp is not None:
            next_cursor = items[-1].timestamp
        return ListResult(items=items, next_cursor=next_cursor, has_more=has_more)

    async def fetch(self, credentials: Dict[str, Any], message_id: str) -> MessageContent:
        return await asyncio.to_thread(self._fetch_blocking, credentials, message_id)

    async def check_capabilities(self, credentials: Dict[str, Any]) -> Dict[str, bool]:
        """Log in and report server capabilities (IDLE, CONDSTORE, ...)."""
        return await asyncio.to_thread(self._capabilities_blocking, credentials)

    # Blocking helpers, run in a worker thread

    def _list_blocking(self, credentials: Dict[str, Any], since: Optional[datetime],
                       limit: int) -> Tuple[List[MessageMetadata], bool]:
        connection = open_imap_connection(credentials)
        try:
            uid_validity = self._select(connection)
            if since is not None:
                since = to_utc(since)
                # SINCE compares server-local dates; widen a day and filter on INTERNALDATE
                criteria = f"SINCE {(since - timedelta(days=1)).strftime('%d-%b-%Y')}"
            else:
                criteria = "ALL"
            status, data = connection.uid("SEARCH", None, criteria)
            if status != "OK":
                raise ExternalServiceError(f"UID SEARCH {criteria} failed: {data}")

            uids = data[0].split() if data and data[0] else []
            has_more = False
            if since is not None:
                uids, has_more = self._uids_received_since(connection, uids, since, limit)
            elif limit:
                # Full listing: the most recent `limit`
                uids = uids[-limit:]
            if not uids:
                return [], False

            status, fetched = connection.uid(
                "FETCH", b",".join(uids).decode(), f"(UID INTERNALDATE BODY.PEEK[HEADER.FIELDS ({HEADER_FIELDS})])"
            )
            if status != "OK":
                raise ExternalServiceError(f"UID FETCH failed: {fetched}")

            items = [
                self._parse_headers(envelope, raw_headers, uid_validity)
                for envelope, raw_headers in self._iter_fetch_parts(fetched)
            ]
            if since is not None:
                items.sort(key=lambda item: item.timestamp or since)
            self.logger.debug(
                f"Listed {len(items)} IMAP messages since {since}" + (" (truncated)" if has_more else "")
            )
            return items, has_more
        except imaplib.IMAP4.abort as e:
            raise ExternalServiceError(f"IMAP connection dropped: {e}")
        finally:
            _safe_logout(connection)

    def _uids_received_since(self, connection: imaplib.IMAP4, uids: List[bytes], since: datetime,
                             limit: int) -> Tuple[List[bytes], bool]:
        """
        Oldest-first UIDs received at or after ``since``, capped at ``limit``.

        Returns:
            (uids, has_more) where has_more means the cap cut the list short
        """
        if not uids:
            return [], False
        status, fetched = connection.uid("FETCH", b",".join(uids).decode(), "(UID INTERNALDATE)")
        if status != "OK":
            raise ExternalServiceError(f"UID FETCH INTERNALDATE failed: {fetched}")

        candidates = []
        for item in fetched or []:
            envelope = item[0] if isinstance(item, tuple) else item
            if not isinstance(envelope, bytes):
                continue
            uid_match = UID_PATTERN.search(envelope)
            if not uid_match:
                continue
            received = self._internal_date(envelope)
            if received is not None and received < since:
                continue
            candidates.append((received or since, int(uid_match.group(1)), uid_match.group(1)))

        candidates.sort()
        selected = candidates[:limit] if limit else candidates
        return [uid for _, _, uid in selected], len(candidates) > len(selected)

    def _fetch_blocking(self, credentials: Dict[str, Any], message_id: str) -> MessageContent:
        connection = open_imap_connection(credentials)
        try:
            uid_validity = self._select(connection)
            uid = self._resolve_uid(connection, message_id)
            status, fetched = connection.uid("FETCH", uid, "(UID INTERNALDATE BODY.PEEK[])")
            parts = list(self._iter_fetch_parts(fetched)) if status == "OK" else []
            if not parts:
                raise NotFoundError(f"IMAP message {message_id} not found")

            envelope, raw_message = parts[0]
            message = email.message_from_bytes(raw_message)
            content = MessageContent(metadata=self._parse_headers(envelope, raw_message, uid_validity))
            for part in message.walk():
                disposition = str(part.get("Content-Disposition", ""))
                content_type = part.get_content_type()
                if "attachment" in disposition:
                    payload = part.get_payload(decode=True) or b""
                    content.attachments.append(AttachmentDescriptor(
                        attachment_id=str(len(content.attachments)),
                        filename=decode_mime_header(part.get_filename() or "attachment"),
                        content_type=content_type,
                        size_bytes=len(payload),
                    ))
                elif content_type == "text/plain" and content.body_text is None:
                    content.body_text = (part.get_payload(decode=True) or b"").decode("utf-8", errors="ignore")
                elif content_type == "text/html" and content.body_html is None:
                    content.body_html = (part.get_payload(decode=True) or b"").decode("utf-8", errors="ignore")
            content.metadata.has_attachments = bool(content.attachments)
            return content
        finally:
            _safe_logout(connection)

    def _capabilities_blocking(self, credentials: Dict[str, Any]) -> Dict[str, bool]:
        connection = open_imap_connection(credentials)
        try:
            status, capabilities = connection.capability()
            if status != "OK":
                raise ExternalServiceError(f"Failed to check capabilities: {capabilities}")

            cap_bytes = capabilities[0] if capabilities else b""
            cap_str = cap_bytes.decode() if isinstance(cap_bytes, bytes) else cap_bytes
            cap_list = cap_str.upper().split()
            return {
                "IDLE": "IDLE" in cap_list,
                "CONDSTORE": "CONDSTORE" in cap_list,
                "UIDPLUS": "UIDPLUS" in cap_list,
            }
        finally:
            _safe_logout(connection)

    def _select(self, connection: imaplib.IMAP4) -> str:
        status, data = connection.select(self.folder, readonly=True)
        if status != "OK":
            raise ExternalServiceError(f"Failed to select folder {self.folder}: {data}")
        validity = connection.response("UIDVALIDITY")[1]
        if validity and validity[0]:
            value = validity[0]
            return value.decode() if isinstance(value, bytes) else str(value)
        return "0"

    def _resolve_uid(self, connection: imaplib.IMAP4, message_id: str) -> str:
        if message_id.startswith("imap-uid:"):
            return message_id.rsplit(":", 1)[-1]
        status, data = connection.uid("SEARCH", None, "HEADER", "Message-ID", f'"{message_id}"')
        uids = data[0].split() if status == "OK" and data and data[0] else []
        if not uids:
            raise NotFoundError(f"IMAP message {message_id} not found")
        return uids[-1].decode()

    @staticmethod
    def _iter_fetch_parts(fetched: List[Any]):
        for item in fetched or []:
            if isinstance(item, tuple) and len(item) >= 2:
                yield item[0], item[1]

    def _parse_headers(self, envelope: bytes, raw_headers: bytes, uid_validity: str) -> MessageMetadata:
        headers = email.message_from_bytes(raw_headers)
        uid_match = UID_PATTERN.search(envelope or b"")
        uid = uid_match.group(1).decode() if uid_match else "0"

        message_id = (headers.get("Message-ID") or "").strip().strip("<>")
        provider_message_id = message_id or f"imap-uid:{uid_validity}:{uid}"

        timestamp = self._internal_date(envelope) or parse_rfc2822(headers.get("Date"))
        return MessageMetadata(
            provider_message_id=provider_message_id,
            from_header=decode_mime_header(headers.get("From", "")),
            to_headers=[decode_mime_header(value) for value in headers.get_all("To", [])],
            subject=decode_mime_header(headers.get("Subject", "")),
            snippet="",
            has_attachments=headers.get_content_type() == "multipart/mixed",
            timestamp=timestamp,
            labels=[self.folder],
        )

    @staticmethod
    def _internal_date(envelope: bytes) -> Optional[datetime]:
        match = INTERNALDATE_PATTERN.search(envelope or b"")
        if not match:
            return None
        parsed: Optional[Tuple] = imaplib.Internaldate2tuple(match.group(0))
        if parsed is None:
            return None
        return datetime.fromtimestamp(time.mktime(parsed), tz=timezone.utc)
