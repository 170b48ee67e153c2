"""
Merge policy configuration for identity unification.

The merge engine consults this module to decide how lifecycle stages are
ordered, which contact fields an incoming non-null value may overwrite, and
which opt-in defaults apply when a provider does not report consent.

Configuration is file-backed so operators can tune it without migrations.
An optional JSON or YAML file path may be supplied through the
``SYNC_MERGE_POLICY_PATH`` setting; the helper here loads and validates it.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, MutableMapping, Sequence

import yaml

# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OptInDefaults:
    """Consent assumed for a source when its payload is silent."""

    whatsapp: bool = False
    sms: bool = False
    email: bool = True


@dataclass(frozen=True)
class MergePolicy:
    """
    Container for all merge rules.

    Attributes:
        lifecycle_order: Stages from lowest to highest; merges only move a
            client forward along this order.
        overwrite_fields: Contact fields where a non-null incoming value
            replaces the stored one. Every other field is fill-missing only.
        opt_in_defaults: Per-source consent defaults keyed by source name.
    """

    lifecycle_order: Sequence[str] = ("LEAD", "TRIAL", "CUSTOMER")
    overwrite_fields: Sequence[str] = ("full_name", "phone")
    opt_in_defaults: Mapping[str, OptInDefaults] = field(
        default_factory=lambda: {"csv": OptInDefaults(whatsapp=False, sms=False, email=True)}
    )

    def rank(self, stage: str | None) -> int:
        """Position of ``stage`` in the lifecycle order, -1 when unknown."""
        if stage is None:
            return -1
        try:
            return list(self.lifecycle_order).index(stage)
        except ValueError:
            return -1

    def defaults_for(self, source: str) -> OptInDefaults:
        return self.opt_in_defaults.get(source, OptInDefaults())


DEFAULT_POLICY = MergePolicy()


# ---------------------------------------------------------------------------
# Loading helpers
# ---------------------------------------------------------------------------


class MergePolicyConfigError(RuntimeError):
    """Raised when a policy override cannot be parsed."""


def _load_override(path: Path) -> MutableMapping[str, object]:
    if not path.exists():
        raise MergePolicyConfigError(f"Merge policy file {path} does not exist.")
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:  # pragma: no cover - filesystem failure
        raise MergePolicyConfigError(f"Unable to read merge policy file {path}: {exc}") from exc

    if path.suffix.lower() in {".yaml", ".yml"}:
        data = yaml.safe_load(text)
    else:
        data = json.loads(text)

    if not isinstance(data, Mapping):
        raise MergePolicyConfigError("Merge policy override must be a JSON/YAML object.")
    return dict(data)


def _coerce_str_sequence(value: object | None, *, item_name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        return tuple(str(item).strip() for item in value if str(item).strip())
    raise MergePolicyConfigError(f"Expected sequence for {item_name}, got {type(value).__name__}.")


def _coerce_opt_ins(raw: object) -> dict[str, OptInDefaults]:
    if raw is None:
        return dict(DEFAULT_POLICY.opt_in_defaults)
    if not isinstance(raw, Mapping):
        raise MergePolicyConfigError("opt_in_defaults must be an object keyed by source.")
    defaults: dict[str, OptInDefaults] = {}
    for source, values in raw.items():
        if not isinstance(values, Mapping):
            raise MergePolicyConfigError(f"opt_in_defaults.{source} must be an object.")
        defaults[str(source).strip().lower()] = OptInDefaults(
            whatsapp=bool(values.get("whatsapp", False)),
            sms=bool(values.get("sms", False)),
            email=bool(values.get("email", True)),
        )
    return defaults


def _coerce_policy(raw: Mapping[str, object]) -> MergePolicy:
    lifecycle_order = _coerce_str_sequence(raw.get("lifecycle_order"), item_name="lifecycle_order")
    if not lifecycle_order:
        lifecycle_order = tuple(DEFAULT_POLICY.lifecycle_order)
    if "CHURN" in lifecycle_order:
        raise MergePolicyConfigError("CHURN cannot be part of lifecycle_order; merges never churn a client.")
    overwrite_fields = _coerce_str_sequence(raw.get("overwrite_fields"), item_name="overwrite_fields")
    unknown = sorted(set(overwrite_fields) - {"full_name", "phone"})
    if unknown:
        raise MergePolicyConfigError("Unsupported overwrite_fields: " + ", ".join(unknown))
    return MergePolicy(
        lifecycle_order=lifecycle_order,
        overwrite_fields=overwrite_fields if "overwrite_fields" in raw else tuple(DEFAULT_POLICY.overwrite_fields),
        opt_in_defaults=_coerce_opt_ins(raw.get("opt_in_defaults")),
    )


def load_merge_policy(path: str | None = None) -> MergePolicy:
    """
    Load the active merge policy.

    When ``path`` is provided its JSON/YAML content overrides the defaults,
    otherwise the built-in policy is returned.
    """

    if not path:
        return DEFAULT_POLICY
    return _coerce_policy(_load_override(Path(path)))
