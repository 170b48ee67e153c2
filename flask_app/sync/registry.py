"""
Sync source registry.

Sources register metadata here so configuration validation can happen
without constructing adapters or touching provider credentials.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence, Tuple


@dataclass(frozen=True)
class AdapterDescriptor:
    """Metadata describing a sync source."""

    name: str
    title: str
    kind: str
    required_config: Tuple[str, ...] = ()

    def missing_config(self, config: Mapping[str, object]) -> tuple[str, ...]:
        return tuple(key for key in self.required_config if not config.get(key))


def get_adapter_registry() -> Mapping[str, AdapterDescriptor]:
    return OrderedDict(
        (
            ("stripe", AdapterDescriptor("stripe", "Stripe payments", "transaction", ("STRIPE_SECRET_KEY",))),
            (
                "stripe_subscriptions",
                AdapterDescriptor("stripe_subscriptions", "Stripe subscriptions", "contact", ("STRIPE_SECRET_KEY",)),
            ),
            (
                "stripe_invoices",
                AdapterDescriptor("stripe_invoices", "Stripe invoices", "transaction", ("STRIPE_SECRET_KEY",)),
            ),
            (
                "paypal",
                AdapterDescriptor(
                    "paypal", "PayPal transactions", "transaction", ("PAYPAL_CLIENT_ID", "PAYPAL_CLIENT_SECRET")
                ),
            ),
            ("ghl", AdapterDescriptor("ghl", "GoHighLevel contacts", "contact", ("GHL_API_KEY", "GHL_LOCATION_ID"))),
            ("manychat", AdapterDescriptor("manychat", "ManyChat subscribers", "contact", ("MANYCHAT_API_KEY",))),
            ("csv", AdapterDescriptor("csv", "CSV upload", "contact")),
        )
    )


def resolve_adapters(
    configured: Sequence[str],
    registry: Mapping[str, AdapterDescriptor] | None = None,
) -> Iterable[AdapterDescriptor]:
    """
    Map configured source names to registry descriptors, raising on unknowns.
    """
    registry = registry or get_adapter_registry()
    unknown = sorted({name for name in configured if name not in registry})
    if unknown:
        raise ValueError(
            "Unknown sync sources configured: " + ", ".join(unknown) + ". Update SYNC_SOURCES or register them first."
        )
    return tuple(registry[name] for name in configured)
