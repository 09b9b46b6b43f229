"""Shape KashFlow payloads into MongoDB upsert updates.

Payloads reach the store in one of two shapes, resolved once by
``classify_payload``:

    Envelope: legacy documents that wrapped the record under ``data``
    Flat:     a plain KashFlow record

``normalize`` turns either shape into an ``UpsertUpdate``:

    $set          every allowed field + identity key + syncedAt
    $setOnInsert  uuid, createdAt, createdByRunId (insert branch only)
    $unset        data (drops the legacy envelope on every touch)

The field policy is a value (``FieldPolicy``) so it can be tested without a
database.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from pymongo import UpdateOne

STABLE_ID_FIELD = "uuid"

# Fields owned by sync bookkeeping or by MongoDB; never copied from a payload.
SYSTEM_FIELDS: tuple[str, ...] = (
    "_id",
    "data",
    STABLE_ID_FIELD,
    "stableId",
    "syncedAt",
    "createdAt",
    "createdByRunId",
)

# CIS fields on suppliers are maintained by the downstream CIS app.
SUPPLIER_PROTECTED_FIELDS = frozenset({"Subcontractor", "IsSubcontractor", "CISRate", "CISNumber"})


@dataclass(frozen=True)
class FieldPolicy:
    excluded: tuple[str, ...] = SYSTEM_FIELDS
    protected: frozenset[str] = frozenset()

    def allows(self, key: Any) -> bool:
        if not isinstance(key, str) or not key:
            return False
        if key in self.excluded or key in self.protected:
            return False
        # Operator and path syntax must never reach the update document.
        if key.startswith("$") or "." in key or "\x00" in key:
            return False
        return True

    def with_protected(self, fields) -> "FieldPolicy":
        return FieldPolicy(self.excluded, self.protected | frozenset(fields))


DEFAULT_POLICY = FieldPolicy()
SUPPLIER_POLICY = DEFAULT_POLICY.with_protected(SUPPLIER_PROTECTED_FIELDS)


# ─── Payload shapes ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Flat:
    fields: Mapping[str, Any]


@dataclass(frozen=True)
class Envelope:
    data: Mapping[str, Any]
    root: Mapping[str, Any]


def classify_payload(raw: Any) -> Flat | Envelope:
    if isinstance(raw, Mapping):
        data = raw.get("data")
        if isinstance(data, Mapping):
            return Envelope(data=data, root=raw)
        return Flat(fields=raw)
    return Flat(fields={})


def merged_fields(payload: Flat | Envelope) -> dict[str, Any]:
    """Flatten a payload to one field mapping.

    For envelopes the ``data`` fields win, except the stable id already held
    at the envelope root, which is kept.
    """
    if isinstance(payload, Flat):
        return dict(payload.fields)
    merged = {**payload.data}
    stable_id = payload.root.get(STABLE_ID_FIELD)
    if stable_id:
        merged[STABLE_ID_FIELD] = stable_id
    return merged


# ─── Update construction ──────────────────────────────────────────────────────

@dataclass
class UpsertUpdate:
    set_fields: dict[str, Any]
    insert_only_fields: dict[str, Any]
    unset_fields: dict[str, Any] = field(default_factory=lambda: {"data": ""})

    def as_update(self) -> dict[str, dict]:
        return {
            "$set": self.set_fields,
            "$setOnInsert": self.insert_only_fields,
            "$unset": self.unset_fields,
        }


def normalize(
    key_field: str,
    key_value: Any,
    raw: Any,
    synced_at: datetime,
    run_id: str | None = None,
    policy: FieldPolicy = DEFAULT_POLICY,
) -> UpsertUpdate:
    """Build the $set/$setOnInsert/$unset parts for one record.

    The caller must reject records with a missing key before calling; this
    function only shapes the write.
    """
    source = merged_fields(classify_payload(raw))
    set_fields = {k: v for k, v in source.items() if policy.allows(k)}
    set_fields[key_field] = key_value
    set_fields["syncedAt"] = synced_at

    insert_only: dict[str, Any] = {
        STABLE_ID_FIELD: str(uuid.uuid4()),
        "createdAt": synced_at,
    }
    if run_id:
        insert_only["createdByRunId"] = run_id

    return UpsertUpdate(set_fields=set_fields, insert_only_fields=insert_only)


def build_upsert_op(
    key_field: str,
    key_value: Any,
    raw: Any,
    synced_at: datetime,
    run_id: str | None = None,
    policy: FieldPolicy = DEFAULT_POLICY,
) -> UpdateOne:
    update = normalize(key_field, key_value, raw, synced_at, run_id, policy)
    return UpdateOne({key_field: key_value}, update.as_update(), upsert=True)


# ─── Identity helpers ─────────────────────────────────────────────────────────

def pick_id(record: Mapping | None):
    if not isinstance(record, Mapping):
        return None
    value = record.get("Id")
    return value if value is not None else record.get("id")


def pick_code(record: Mapping | None):
    if not isinstance(record, Mapping):
        return None
    for key in ("Code", "code", "CustomerCode", "SupplierCode"):
        if record.get(key) is not None:
            return record[key]
    return None


def pick_number(record: Mapping | None):
    if not isinstance(record, Mapping):
        return None
    value = record.get("Number")
    return value if value is not None else record.get("number")


def is_missing_key(value) -> bool:
    if value is None:
        return True
    return isinstance(value, str) and value.strip() == ""


_FALLBACK_PICKERS = {"Code": pick_code, "Number": pick_number}


def resolve_identity(record: Mapping | None, fallback: str | None = None) -> tuple[str, Any] | None:
    """Return (key_field, key_value): Id when present, else the fallback field."""
    record_id = pick_id(record)
    if not is_missing_key(record_id):
        return "Id", record_id
    if fallback:
        value = _FALLBACK_PICKERS[fallback](record)
        if not is_missing_key(value):
            return fallback, value
    return None
