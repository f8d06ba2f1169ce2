"""
Email Connector Factory

Maps each provider kind to its adapter. Adapters are stateless, so one
instance per kind is shared.
"""

from typing import Dict, Optional, Type

from mailsync.exceptions import ValidationError
from mailsync.services.email_models import ProviderKind
from mailsync.utils.logging import get_logger

from .base_connector import BaseEmailConnector
from .gmail_connector import GmailConnector
from .imap_connector import IMAPConnector
from .outlook_connector import OutlookConnector

logger = get_logger("connector_factory")


class ConnectorFactory:
    """Registry of provider adapters keyed by ``ProviderKind``."""

    def __init__(self, connectors: Optional[Dict[ProviderKind, BaseEmailConnector]] = None):
        self._connector_registry: Dict[ProviderKind, Type[BaseEmailConnector]] = {
            ProviderKind.WEBHOOK_PUSH: OutlookConnector,
            ProviderKind.PUBSUB_PUSH: GmailConnector,
            ProviderKind.POLL: IMAPConnector,
        }
        self._instances: Dict[ProviderKind, BaseEmailConnector] = dict(connectors or {})

    def get(self, provider_kind: ProviderKind) -> BaseEmailConnector:
        """Return the adapter for ``provider_kind``, creating it on first use."""
        connector = self._instances.get(provider_kind)
        if connector is None:
            connector_class = self._connector_registry.get(provider_kind)
            if connector_class is None:
                raise ValidationError(f"No connector registered for provider kind '{provider_kind}'")
            connector = connector_class()
            self._instances[provider_kind] = connector
            logger.info(f"Created {provider_kind.value} connector")
        return connector

    def register(self, provider_kind: ProviderKind, connector: BaseEmailConnector) -> None:
        """Register (or replace) the adapter instance for a provider kind."""
        if not isinstance(connector, BaseEmailConnector):
            raise ValueError("Connector must inherit from BaseEmailConnector")
        self._instances[provider_kind] = connector
        logger.info(f"Registered connector for provider: {provider_kind.value}")
