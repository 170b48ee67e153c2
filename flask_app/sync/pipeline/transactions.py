"""Payment loader: upsert provider transactions and roll them up onto clients."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from flask_app.models import ClientIdentity, LifecycleStage, Transaction, TransactionStatus, db
from flask_app.models.base import utcnow

from ..adapters.base import TransactionFields
from .merge_engine import IdentityMergeEngine, MergeAction, MergeInput, MergeResult
from .staging import DIALECT_INSERTS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransactionLoadResult:
    action: MergeAction
    transaction_id: int | None
    client_result: MergeResult
    created: bool = False


class TransactionLoader:
    """
    Turn a normalized payment into a ``Transaction`` row.

    The payer is resolved through the merge engine first (a paid transaction
    promotes the client to ``CUSTOMER``). The transaction is then upserted on
    ``(source, payment_key)`` and the client's ``total_paid`` recomputed from
    its paid transactions, never lowering an existing figure.
    """

    def __init__(self, session: Session | None = None, *, merge_engine: IdentityMergeEngine | None = None) -> None:
        self.session: Session = session or db.session
        self.merge_engine = merge_engine or IdentityMergeEngine(self.session)

    def load(
        self,
        source: str,
        fields: TransactionFields,
        payload: Mapping[str, Any],
        *,
        sync_run_id: int | None = None,
        dry_run: bool = False,
    ) -> TransactionLoadResult:
        paid = fields.status is TransactionStatus.PAID
        client_result = self.merge_engine.merge(
            MergeInput(
                source=source,
                external_id=fields.customer_id or fields.email or fields.payment_key,
                email=fields.email,
                phone=fields.phone,
                full_name=fields.full_name,
                lifecycle_stage=LifecycleStage.CUSTOMER if paid else None,
                payment_status=fields.status.value,
                provider_customer_id=fields.customer_id,
                extra_data={"payment_key": fields.payment_key},
            ),
            sync_run_id=sync_run_id,
            dry_run=dry_run,
        )
        existing_id = self.session.execute(
            select(Transaction.id).where(Transaction.source == source, Transaction.payment_key == fields.payment_key)
        ).scalar_one_or_none()

        if dry_run:
            action = MergeAction.UPDATED if existing_id is not None else MergeAction.INSERTED
            return TransactionLoadResult(action=action, transaction_id=None, client_result=client_result)

        client_id = client_result.client_id if client_result.action is not MergeAction.CONFLICT else None
        transaction_id, linked_client_id = self._upsert(
            source, fields, payload, client_id=client_id, sync_run_id=sync_run_id
        )
        if linked_client_id is not None:
            self._refresh_total_paid(linked_client_id)

        created = existing_id is None
        logger.debug(
            "%s transaction %s",
            "Inserted" if created else "Updated",
            fields.payment_key,
            extra={"sync_source": source, "sync_run_id": sync_run_id},
        )
        return TransactionLoadResult(
            action=MergeAction.INSERTED if created else MergeAction.UPDATED,
            transaction_id=transaction_id,
            client_result=client_result,
            created=created,
        )

    def _upsert(
        self,
        source: str,
        fields: TransactionFields,
        payload: Mapping[str, Any],
        *,
        client_id: int | None,
        sync_run_id: int | None,
    ) -> tuple[int, int | None]:
        """Insert-or-update on ``(source, payment_key)`` in one statement; returns ``(id, client_id)``."""
        dialect = self.session.get_bind().dialect.name
        insert_factory = DIALECT_INSERTS.get(dialect)
        if insert_factory is None:
            raise RuntimeError(f"Transaction upsert is not supported on the '{dialect}' dialect.")
        now = utcnow()
        statement = insert_factory(Transaction).values(
            source=source,
            payment_key=fields.payment_key,
            client_id=client_id,
            sync_run_id=sync_run_id,
            amount_cents=fields.amount_cents,
            currency=fields.currency,
            status=fields.status,
            customer_email=fields.email,
            external_customer_id=fields.customer_id,
            occurred_at=fields.occurred_at,
            raw_data=dict(payload),
            created_at=now,
            updated_at=now,
        )
        excluded = statement.excluded
        statement = statement.on_conflict_do_update(
            index_elements=["source", "payment_key"],
            set_={
                # A conflicted payer keeps whatever client the payment already had
                "client_id": func.coalesce(excluded.client_id, Transaction.client_id),
                "sync_run_id": excluded.sync_run_id,
                "amount_cents": excluded.amount_cents,
                "currency": excluded.currency,
                "status": excluded.status,
                "customer_email": excluded.customer_email,
                "external_customer_id": excluded.external_customer_id,
                "occurred_at": excluded.occurred_at,
                "raw_data": excluded.raw_data,
                "updated_at": excluded.updated_at,
            },
        )
        self.session.execute(statement)
        row = self.session.execute(
            select(Transaction.id, Transaction.client_id).where(
                Transaction.source == source, Transaction.payment_key == fields.payment_key
            )
        ).one()
        return row.id, row.client_id

    def _refresh_total_paid(self, client_id: int) -> None:
        paid_cents = self.session.execute(
            select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                Transaction.client_id == client_id,
                Transaction.status == TransactionStatus.PAID,
            )
        ).scalar_one()
        client = self.session.get(ClientIdentity, client_id)
        if client is None:
            return
        total = round(int(paid_cents) / 100.0, 2)
        if total > (client.total_paid or 0.0):
            client.total_paid = total
            self.session.flush()
