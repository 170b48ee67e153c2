"""
Identity merge engine.

Resolves one provider record to a canonical ``ClientIdentity``:

1. Match by exact email, then exact phone, then the ``(source, external_id)``
   link. First match wins. An email match and a phone match pointing at
   different clients is an ``email_phone_mismatch`` conflict; a phone shared
   by several clients with no email to disambiguate is a
   ``duplicate_candidate`` conflict. Conflicts never mutate a client.
2. No match inserts a new client (lifecycle ``LEAD`` unless the record says
   otherwise).
3. A match merges fields with fill-missing / never-downgrade rules.

``merge`` is idempotent: replaying the same input converges on the same
client state and returns ``updated``.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Literal, Mapping

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config.merge_policy import DEFAULT_POLICY, MergePolicy
from flask_app.models import (
    ClientIdentity,
    ConflictStatus,
    ConflictType,
    ContactIdentityLink,
    LifecycleStage,
    MergeConflict,
    db,
)
from flask_app.models.base import utcnow

from ..adapters.base import ContactFields, OptIns
from .normalize import clean_text, normalize_email, normalize_phone

logger = logging.getLogger(__name__)

PROVIDER_ID_FIELDS = {
    "ghl": "ghl_contact_id",
    "manychat": "manychat_subscriber_id",
    "stripe": "stripe_customer_id",
    "stripe_subscriptions": "stripe_customer_id",
    "stripe_invoices": "stripe_customer_id",
    "paypal": "paypal_customer_id",
}
# Contact providers are keyed by their own record id; payment providers by customer id
EXTERNAL_ID_IS_PROVIDER_ID = frozenset({"ghl", "manychat"})


class MergeAction(str, enum.Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    CONFLICT = "conflict"
    SKIPPED = "skipped"


class MissingIdentity(ValueError):
    """Raised for records carrying neither a usable email nor phone."""


@dataclass(frozen=True)
class MergeInput:
    """One provider record, already normalized by its adapter."""

    source: str
    external_id: str
    email: str | None = None
    phone: str | None = None
    full_name: str | None = None
    tags: tuple[str, ...] = ()
    opt_ins: OptIns | None = None
    lifecycle_stage: LifecycleStage | None = None
    total_paid: float | None = None
    payment_status: str | None = None
    provider_customer_id: str | None = None
    extra_data: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_contact(
        cls,
        source: str,
        external_id: str,
        contact: ContactFields,
        *,
        extra_data: Mapping[str, Any] | None = None,
    ) -> "MergeInput":
        return cls(
            source=source,
            external_id=external_id,
            email=contact.email,
            phone=contact.phone,
            full_name=contact.full_name,
            tags=tuple(contact.tags),
            opt_ins=contact.opt_ins,
            lifecycle_stage=contact.lifecycle_stage,
            payment_status=contact.payment_status,
            provider_customer_id=contact.customer_id,
            extra_data=dict(extra_data or {}),
        )

    def normalized(self) -> "MergeInput":
        """Return a copy with normalized keys; raise if no identity key survives."""
        email = normalize_email(self.email)
        phone = normalize_phone(self.phone)
        if not email and not phone:
            raise MissingIdentity(f"{self.source}:{self.external_id} has no usable email or phone.")
        tags = tuple(sorted({tag.strip() for tag in self.tags if tag and tag.strip()}))
        return MergeInput(
            source=self.source,
            external_id=str(self.external_id),
            email=email,
            phone=phone,
            full_name=clean_text(self.full_name),
            tags=tags,
            opt_ins=self.opt_ins,
            lifecycle_stage=self.lifecycle_stage,
            total_paid=self.total_paid,
            payment_status=self.payment_status,
            provider_customer_id=self.provider_customer_id,
            extra_data=self.extra_data,
        )


@dataclass(frozen=True)
class MergeResult:
    action: MergeAction
    client_id: int | None = None
    conflict_id: int | None = None
    reason: str | None = None
    changed_fields: tuple[str, ...] = ()


@dataclass(frozen=True)
class IdentityMatch:
    """
    Outcome of the lookup phase.

    Attributes:
        outcome: ``email``/``phone``/``link`` for a resolved client, ``none``
            when nothing matched, or ``conflict``.
        client: The resolved client, when any.
        conflict_type: Populated for ``conflict`` outcomes.
        candidate_ids: Every client id that took part in the decision.
    """

    outcome: Literal["email", "phone", "link", "none", "conflict"]
    client: ClientIdentity | None = None
    conflict_type: ConflictType | None = None
    candidate_ids: tuple[int, ...] = ()


class IdentityMergeEngine:
    """Merge provider records into the canonical client graph."""

    def __init__(self, session: Session | None = None, *, policy: MergePolicy | None = None) -> None:
        self.session: Session = session or db.session
        self.policy = policy or DEFAULT_POLICY

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def merge(self, data: MergeInput, *, sync_run_id: int | None = None, dry_run: bool = False) -> MergeResult:
        try:
            record = data.normalized()
        except MissingIdentity as exc:
            return MergeResult(action=MergeAction.SKIPPED, reason=str(exc))

        match = self.resolve(record)
        if match.outcome == "conflict":
            conflict_id = None
            if not dry_run:
                conflict_id = self._record_conflict(record, match, sync_run_id=sync_run_id)
            return MergeResult(
                action=MergeAction.CONFLICT,
                conflict_id=conflict_id,
                reason=match.conflict_type.value if match.conflict_type else None,
            )

        if match.client is None:
            if dry_run:
                return MergeResult(action=MergeAction.INSERTED)
            client = self._insert(record)
            if client is not None:
                self._upsert_link(record, client.id)
                return MergeResult(action=MergeAction.INSERTED, client_id=client.id)
            # Lost the race on the unique email: the winner is now visible
            match = self.resolve(record)
            if match.client is None:
                raise RuntimeError(f"Client for {record.email} vanished after a unique violation.")

        client = match.client
        changed = self._apply(client, record, dry_run=dry_run)
        if not dry_run:
            self.session.flush()
            self._upsert_link(record, client.id)
        return MergeResult(action=MergeAction.UPDATED, client_id=client.id, changed_fields=tuple(changed))

    def resolve(self, record: MergeInput) -> IdentityMatch:
        """Find the client ``record`` belongs to without touching anything."""
        by_email: ClientIdentity | None = None
        if record.email:
            by_email = self.session.execute(
                select(ClientIdentity).where(ClientIdentity.email == record.email)
            ).scalar_one_or_none()

        by_phone: list[ClientIdentity] = []
        if record.phone:
            by_phone = list(
                self.session.execute(
                    select(ClientIdentity).where(ClientIdentity.phone == record.phone).order_by(ClientIdentity.id)
                ).scalars()
            )

        if by_email is not None:
            phone_ids = {client.id for client in by_phone}
            if phone_ids and by_email.id not in phone_ids:
                return IdentityMatch(
                    outcome="conflict",
                    client=by_email,
                    conflict_type=ConflictType.EMAIL_PHONE_MISMATCH,
                    candidate_ids=(by_email.id, *sorted(phone_ids)),
                )
            return IdentityMatch(outcome="email", client=by_email, candidate_ids=(by_email.id,))

        if len(by_phone) > 1:
            return IdentityMatch(
                outcome="conflict",
                client=by_phone[0],
                conflict_type=ConflictType.DUPLICATE_CANDIDATE,
                candidate_ids=tuple(client.id for client in by_phone),
            )
        if by_phone:
            return IdentityMatch(outcome="phone", client=by_phone[0], candidate_ids=(by_phone[0].id,))

        link = self._find_link(record.source, record.external_id)
        if link is not None:
            client = self.session.get(ClientIdentity, link.client_id)
            if client is not None:
                return IdentityMatch(outcome="link", client=client, candidate_ids=(client.id,))
        return IdentityMatch(outcome="none")

    # ------------------------------------------------------------------
    # Field rules
    # ------------------------------------------------------------------

    def _apply(self, client: ClientIdentity, record: MergeInput, *, dry_run: bool) -> list[str]:
        """Compute (and unless ``dry_run`` apply) the merged field values."""
        changes: dict[str, Any] = {}

        if record.email and not client.email:
            changes["email"] = record.email
        for name in ("phone", "full_name"):
            incoming = getattr(record, name)
            if not incoming:
                continue
            current = getattr(client, name)
            if current is None or (name in self.policy.overwrite_fields and current != incoming):
                changes[name] = incoming

        if record.tags:
            merged_tags = sorted(set(client.tags or ()) | set(record.tags))
            if merged_tags != list(client.tags or ()):
                changes["tags"] = merged_tags

        opt_ins = record.opt_ins or self._default_opt_ins(record.source)
        for column, granted in (
            ("wa_opt_in", opt_ins.whatsapp),
            ("sms_opt_in", opt_ins.sms),
            ("email_opt_in", opt_ins.email),
        ):
            if granted and not getattr(client, column):
                changes[column] = True

        stage = self._advance_stage(client.lifecycle_stage, record.lifecycle_stage)
        if stage is not client.lifecycle_stage:
            changes["lifecycle_stage"] = stage

        if record.total_paid is not None and record.total_paid > (client.total_paid or 0.0):
            changes["total_paid"] = float(record.total_paid)
        if record.payment_status and record.payment_status != client.payment_status:
            changes["payment_status"] = record.payment_status
        if not client.acquisition_source:
            changes["acquisition_source"] = record.source

        provider_field, provider_id = self._provider_id(record)
        if provider_field and provider_id and getattr(client, provider_field) != provider_id:
            changes[provider_field] = provider_id

        if not dry_run:
            for name, value in changes.items():
                setattr(client, name, value)
            client.last_sync = utcnow()
        return sorted(changes)

    def _advance_stage(self, current: LifecycleStage | None, incoming: LifecycleStage | None) -> LifecycleStage:
        if current is None:
            current = LifecycleStage.LEAD
        if incoming is None or incoming is LifecycleStage.CHURN:
            return current
        if current is LifecycleStage.CHURN:
            # Only a fresh purchase re-activates a churned client
            return LifecycleStage.CUSTOMER if incoming is LifecycleStage.CUSTOMER else current
        if self.policy.rank(incoming.value) > self.policy.rank(current.value):
            return incoming
        return current

    def _default_opt_ins(self, source: str) -> OptIns:
        defaults = self.policy.defaults_for(source)
        return OptIns(whatsapp=defaults.whatsapp, sms=defaults.sms, email=defaults.email)

    @staticmethod
    def _provider_id(record: MergeInput) -> tuple[str | None, str | None]:
        provider_field = PROVIDER_ID_FIELDS.get(record.source)
        if provider_field is None:
            return None, None
        if record.source in EXTERNAL_ID_IS_PROVIDER_ID:
            return provider_field, record.external_id
        return provider_field, record.provider_customer_id

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _insert(self, record: MergeInput) -> ClientIdentity | None:
        stage = record.lifecycle_stage
        if stage is None or stage is LifecycleStage.CHURN:
            stage = LifecycleStage.LEAD
        opt_ins = record.opt_ins or self._default_opt_ins(record.source)
        client = ClientIdentity(
            email=record.email,
            phone=record.phone,
            full_name=record.full_name,
            lifecycle_stage=stage,
            payment_status=record.payment_status,
            total_paid=float(record.total_paid or 0.0),
            tags=list(record.tags),
            wa_opt_in=opt_ins.whatsapp,
            sms_opt_in=opt_ins.sms,
            email_opt_in=opt_ins.email,
            acquisition_source=record.source,
            last_sync=utcnow(),
        )
        provider_field, provider_id = self._provider_id(record)
        if provider_field and provider_id:
            setattr(client, provider_field, provider_id)
        try:
            with self.session.begin_nested():
                self.session.add(client)
                self.session.flush()
        except IntegrityError:
            logger.info(
                "Concurrent insert for %s detected; merging into the existing client",
                record.email,
                extra={"sync_source": record.source, "sync_external_id": record.external_id},
            )
            return None
        return client

    def _find_link(self, source: str, external_id: str) -> ContactIdentityLink | None:
        return self.session.execute(
            select(ContactIdentityLink).where(
                ContactIdentityLink.source == source,
                ContactIdentityLink.external_id == external_id,
            )
        ).scalar_one_or_none()

    def _upsert_link(self, record: MergeInput, client_id: int) -> None:
        link = self._find_link(record.source, record.external_id)
        if link is None:
            link = ContactIdentityLink(source=record.source, external_id=record.external_id, client_id=client_id)
            self.session.add(link)
        link.client_id = client_id
        if record.email:
            link.email = record.email
        if record.phone:
            link.phone = record.phone
        self.session.flush()

    def _record_conflict(self, record: MergeInput, match: IdentityMatch, *, sync_run_id: int | None) -> int:
        conflict_type = match.conflict_type or ConflictType.DUPLICATE_CANDIDATE
        open_key = MergeConflict.build_open_key(record.source, record.external_id, conflict_type)
        existing = self.session.execute(
            select(MergeConflict).where(MergeConflict.open_key == open_key)
        ).scalar_one_or_none()
        raw_data = {
            "email": record.email,
            "phone": record.phone,
            "full_name": record.full_name,
            "tags": list(record.tags),
            **dict(record.extra_data),
        }
        if existing is not None:
            existing.raw_data = raw_data
            existing.conflicting_client_ids = list(match.candidate_ids)
            existing.sync_run_id = sync_run_id
            self.session.flush()
            return existing.id

        conflict = MergeConflict(
            source=record.source,
            external_id=record.external_id,
            conflict_type=conflict_type,
            status=ConflictStatus.OPEN,
            open_key=open_key,
            email_found=record.email,
            phone_found=record.phone,
            raw_data=raw_data,
            suggested_client_id=match.client.id if match.client is not None else None,
            conflicting_client_ids=list(match.candidate_ids),
            sync_run_id=sync_run_id,
        )
        self.session.add(conflict)
        self.session.flush()
        logger.warning(
            "Merge conflict %s for %s:%s",
            conflict_type.value,
            record.source,
            record.external_id,
            extra={
                "sync_run_id": sync_run_id,
                "sync_source": record.source,
                "sync_conflict_clients": list(match.candidate_ids),
            },
        )
        return conflict.id
