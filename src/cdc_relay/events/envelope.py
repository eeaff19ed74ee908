"""Debezium CDC envelope model, operation taxonomy and classification.

The wire format is the JSON envelope Debezium emits with schemas enabled::

    {"schema": {...}, "payload": {"op": "u", "ts_ms": ..., "before": {...},
     "after": {...}, "source": {...}, "tx_id": ...}}

Every optional field keeps "absent" apart from "zero/empty": absent fields
stay unset and are omitted by :func:`encode_envelope`, while an explicit
``0``, ``""`` or ``null`` is written back as received.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SerializerFunctionWrapHandler,
    ValidationError,
    model_serializer,
    model_validator,
)

from cdc_relay.errors import EnvelopeDecodeError

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


class Operation(StrEnum):
    """Row-level operation carried by an envelope."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    READ = "READ"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_code(cls, code: str | None) -> Operation:
        """Map a Debezium ``op`` code; absent or unrecognised codes are UNKNOWN."""
        if code is None:
            return cls.UNKNOWN
        return _OP_CODES.get(code, cls.UNKNOWN)


_OP_CODES: dict[str, Operation] = {
    "c": Operation.CREATE,
    "u": Operation.UPDATE,
    "d": Operation.DELETE,
    "r": Operation.READ,
}

# (before expected, after expected) per operation
_EXPECTED_SNAPSHOTS: dict[Operation, tuple[bool, bool]] = {
    Operation.CREATE: (False, True),
    Operation.UPDATE: (True, True),
    Operation.DELETE: (True, False),
    Operation.READ: (False, True),
}


class RowSnapshot(BaseModel):
    """Customer row columns shared by the ``before`` and ``after`` images."""

    customer_id: int | None = None
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone_number: str | None = None

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)


_ROW_FIELDS = frozenset(RowSnapshot.model_fields)


class AfterSnapshot(BaseModel):
    """Post-change row image: the shared row columns plus audit timestamps.

    The row columns are held in an embedded :class:`RowSnapshot`; on the wire
    they sit flat next to ``created_date`` / ``modified_date``.
    """

    row: RowSnapshot = Field(default_factory=RowSnapshot)
    created_date: int | None = None
    modified_date: int | None = None

    @model_validator(mode="before")
    @classmethod
    def nest_row_columns(cls, data: Any) -> Any:
        if isinstance(data, dict) and "row" not in data:
            row = {k: v for k, v in data.items() if k in _ROW_FIELDS}
            rest = {k: v for k, v in data.items() if k not in _ROW_FIELDS}
            return {**rest, "row": row}
        return data

    @model_serializer(mode="wrap")
    def flatten_row(self, handler: SerializerFunctionWrapHandler) -> dict[str, Any]:
        data = handler(self)
        row = data.pop("row", None) or {}
        return {**row, **data}


class SourceInfo(BaseModel):
    """Debezium ``source`` provenance block. Observability only."""

    # LSNs are strings on SQL Server; older connectors send numbers.
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    version: str | None = None
    connector: str | None = None
    name: str | None = None
    ts_ms: int | None = None
    snapshot: str | bool | None = None
    db: str | None = None
    schema_: str | None = Field(default=None, alias="schema")
    table: str | None = None
    change_lsn: str | None = None
    commit_lsn: str | None = None
    event_serial_no: int | None = None


class Payload(BaseModel):
    """The change event proper."""

    model_config = ConfigDict(coerce_numbers_to_str=True)

    op: str | None = None
    ts_ms: int | None = None
    before: RowSnapshot | None = None
    after: AfterSnapshot | None = None
    source: SourceInfo | None = None
    tx_id: str | None = None

    @property
    def operation(self) -> Operation:
        return Operation.from_code(self.op)

    def expectation_violations(self) -> list[str]:
        """List before/after images that contradict the operation.

        These are expectations, not rules: callers log them and carry on.
        """
        expected = _EXPECTED_SNAPSHOTS.get(self.operation)
        if expected is None:
            return []
        want_before, want_after = expected
        violations: list[str] = []
        for name, wanted, present in (
            ("before", want_before, self.before is not None),
            ("after", want_after, self.after is not None),
        ):
            if wanted and not present:
                violations.append(f"{name} missing for {self.operation}")
            elif present and not wanted:
                violations.append(f"{name} unexpected for {self.operation}")
        return violations


class CdcEnvelope(BaseModel):
    """Top-level CDC message as published to the queue."""

    model_config = ConfigDict(populate_by_name=True)

    # Opaque; Debezium sends an object, some producers a string.
    schema_: str | dict[str, Any] | None = Field(default=None, alias="schema")
    payload: Payload | None = None


def decode_envelope(body: bytes) -> CdcEnvelope:
    """Parse a queue message body into a :class:`CdcEnvelope`.

    Raises :class:`EnvelopeDecodeError` for invalid UTF-8, invalid JSON, a
    top-level value that is not an object, or mistyped fields.
    """
    try:
        text = body.decode("utf-8")
    except UnicodeDecodeError as exc:
        msg = f"Envelope is not valid UTF-8: {exc}"
        raise EnvelopeDecodeError(msg) from exc
    try:
        return CdcEnvelope.model_validate_json(text)
    except ValidationError as exc:
        first = exc.errors()[0]
        loc = ".".join(str(p) for p in first["loc"]) or "<root>"
        msg = f"Malformed CDC envelope at {loc}: {first['msg']}"
        raise EnvelopeDecodeError(msg) from exc


def encode_envelope(envelope: CdcEnvelope) -> bytes:
    """Serialize an envelope, omitting fields that were never set."""
    return envelope.model_dump_json(by_alias=True, exclude_unset=True).encode("utf-8")


def epoch_millis_to_datetime(ts_ms: int | None) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime; ``None`` is the epoch."""
    return EPOCH + timedelta(milliseconds=ts_ms or 0)


@dataclass(frozen=True, slots=True)
class ClassifiedEvent:
    """What the queue consumer surfaces for one envelope."""

    operation: Operation
    timestamp: datetime
    op_code: str | None = None
    table: str | None = None
    before: RowSnapshot | None = None
    after: AfterSnapshot | None = None
    tx_id: str | None = None
    source: SourceInfo | None = None

    def log_fields(self) -> dict[str, Any]:
        """Flat key/values for structured log records."""
        fields: dict[str, Any] = {
            "operation": self.operation.value,
            "table": self.table,
            "changed_at": self.timestamp.isoformat(),
        }
        if self.tx_id is not None:
            fields["tx_id"] = self.tx_id
        if self.after is not None:
            fields["after_customer_id"] = self.after.row.customer_id
            fields["after_name"] = self.after.row.full_name
            fields["after_email"] = self.after.row.email
        if self.before is not None:
            fields["before_customer_id"] = self.before.customer_id
            fields["before_name"] = self.before.full_name
            fields["before_email"] = self.before.email
        return fields


def classify(envelope: CdcEnvelope) -> ClassifiedEvent:
    """Classify an envelope and pick the snapshots worth surfacing.

    UPDATE surfaces both images, DELETE only ``before``; CREATE, READ and
    UNKNOWN only ``after``.
    """
    payload = envelope.payload
    if payload is None:
        return ClassifiedEvent(operation=Operation.UNKNOWN, timestamp=EPOCH)

    operation = payload.operation
    before = payload.before if operation in (Operation.UPDATE, Operation.DELETE) else None
    after = payload.after if operation is not Operation.DELETE else None
    return ClassifiedEvent(
        operation=operation,
        timestamp=epoch_millis_to_datetime(payload.ts_ms),
        op_code=payload.op,
        table=payload.source.table if payload.source else None,
        before=before,
        after=after,
        tx_id=payload.tx_id,
        source=payload.source,
    )
