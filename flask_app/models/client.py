"""
Canonical client identity graph.

``ClientIdentity`` is the merge target for every provider. ``ContactIdentityLink``
remembers which provider record resolved to which client so re-fetches land on
the same identity, and ``Transaction`` holds payments keyed by provider.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db


class LifecycleStage(str, enum.Enum):
    """Commercial lifecycle of a client."""

    LEAD = "LEAD"
    TRIAL = "TRIAL"
    CUSTOMER = "CUSTOMER"
    CHURN = "CHURN"


class TransactionStatus(str, enum.Enum):
    PAID = "paid"
    PENDING = "pending"
    FAILED = "failed"
    CANCELED = "canceled"
    REFUNDED = "refunded"


class ClientIdentity(BaseModel):
    """Single merged view of a person across payment and CRM providers."""

    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str | None] = mapped_column(db.String(255), nullable=True, unique=True)
    phone: Mapped[str | None] = mapped_column(db.String(32), nullable=True, index=True)
    full_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    lifecycle_stage: Mapped[LifecycleStage] = mapped_column(
        Enum(LifecycleStage, name="client_lifecycle_stage_enum"),
        nullable=False,
        default=LifecycleStage.LEAD,
        index=True,
    )
    payment_status: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    total_paid: Mapped[float] = mapped_column(db.Float, nullable=False, default=0.0)
    tags: Mapped[list] = mapped_column(db.JSON, nullable=False, default=list)
    wa_opt_in: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    sms_opt_in: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    email_opt_in: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    acquisition_source: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    ghl_contact_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True, index=True)
    manychat_subscriber_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True, index=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True, index=True)
    paypal_customer_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True, index=True)
    last_sync: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    identity_links = relationship("ContactIdentityLink", back_populates="client", passive_deletes=True)
    transactions = relationship("Transaction", back_populates="client", passive_deletes=True)

    def __repr__(self) -> str:
        return f"<ClientIdentity {self.id} email={self.email!r} phone={self.phone!r}>"


class ContactIdentityLink(BaseModel):
    """Maps a provider record ``(source, external_id)`` to its canonical client."""

    __tablename__ = "contact_identities"

    id: Mapped[int] = mapped_column(primary_key=True)
    source: Mapped[str] = mapped_column(db.String(50), nullable=False)
    external_id: Mapped[str] = mapped_column(db.String(255), nullable=False)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)
    email: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(db.String(32), nullable=True)

    client = relationship("ClientIdentity", back_populates="identity_links")

    __table_args__ = (UniqueConstraint("source", "external_id", name="uq_contact_identities_source_external"),)


class Transaction(BaseModel):
    """Payment pulled from a billing provider, idempotent on ``(source, payment_key)``."""

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(primary_key=True)
    source: Mapped[str] = mapped_column(db.String(50), nullable=False)
    payment_key: Mapped[str] = mapped_column(db.String(255), nullable=False)
    client_id: Mapped[int | None] = mapped_column(ForeignKey("clients.id", ondelete="SET NULL"), nullable=True)
    sync_run_id: Mapped[int | None] = mapped_column(ForeignKey("sync_runs.id", ondelete="SET NULL"), nullable=True)
    amount_cents: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(db.String(10), nullable=False, default="usd")
    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus, name="transaction_status_enum"),
        nullable=False,
        default=TransactionStatus.PENDING,
    )
    customer_email: Mapped[str | None] = mapped_column(db.String(255), nullable=True, index=True)
    external_customer_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    occurred_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    raw_data: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    client = relationship("ClientIdentity", back_populates="transactions")

    __table_args__ = (
        UniqueConstraint("source", "payment_key", name="uq_transactions_source_payment_key"),
        Index("idx_transactions_client_status", "client_id", "status"),
    )
