"""
Email Connector System

Read-only adapters for each provider kind.

Supported Providers:
- Outlook / Office 365 (Microsoft Graph)
- Gmail API
- IMAP (Generic)
"""

from .base_connector import BaseEmailConnector, ListResult, MessageContent, MessageMetadata
from .connector_factory import ConnectorFactory
from .gmail_connector import GmailConnector
from .imap_connector import IMAPConnector
from .outlook_connector import OutlookConnector

__all__ = [
    "BaseEmailConnector",
    "ListResult",
    "MessageContent",
    "MessageMetadata",
    "ConnectorFactory",
    "GmailConnector",
    "IMAPConnector",
    "OutlookConnector",
]
