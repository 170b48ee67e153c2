"""Provider adapters for the sync pipeline."""

from __future__ import annotations

from typing import Any, Mapping

from .base import (
    AdapterPage,
    ContactFields,
    OptIns,
    ProviderAdapter,
    ProviderConfigurationError,
    ProviderError,
    ProviderRequestError,
    RateLimiter,
    RawRecord,
    SyncWindow,
    TransactionFields,
)
from .csv_contacts import CSVAdapterError, CSVContactAdapter, CSVHeaderError
from .ghl import GHLAdapter
from .manychat import ManyChatAdapter
from .paypal import PayPalAdapter
from .stripe import StripeAdapter
from .stripe_billing import StripeInvoicesAdapter, StripeSubscriptionsAdapter

ADAPTER_CLASSES: dict[str, type[ProviderAdapter]] = {
    "stripe": StripeAdapter,
    "stripe_subscriptions": StripeSubscriptionsAdapter,
    "stripe_invoices": StripeInvoicesAdapter,
    "paypal": PayPalAdapter,
    "ghl": GHLAdapter,
    "manychat": ManyChatAdapter,
    "csv": CSVContactAdapter,
}


def build_adapter(source: str, config: Mapping[str, Any], **kwargs: Any) -> ProviderAdapter:
    """Instantiate the adapter for ``source`` from Flask config."""
    try:
        adapter_cls = ADAPTER_CLASSES[source]
    except KeyError:
        raise ValueError(f"Unknown sync source '{source}'.") from None
    return adapter_cls.from_config(config, **kwargs)


__all__ = [
    "ADAPTER_CLASSES",
    "AdapterPage",
    "CSVAdapterError",
    "CSVContactAdapter",
    "CSVHeaderError",
    "ContactFields",
    "GHLAdapter",
    "ManyChatAdapter",
    "OptIns",
    "PayPalAdapter",
    "ProviderAdapter",
    "ProviderConfigurationError",
    "ProviderError",
    "ProviderRequestError",
    "RateLimiter",
    "RawRecord",
    "StripeAdapter",
    "StripeInvoicesAdapter",
    "StripeSubscriptionsAdapter",
    "SyncWindow",
    "TransactionFields",
    "build_adapter",
]
