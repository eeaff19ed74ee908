"""Unit tests for the CDC envelope model and classification."""

from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from cdc_relay.errors import EnvelopeDecodeError
from cdc_relay.events.envelope import (
    EPOCH,
    AfterSnapshot,
    CdcEnvelope,
    Operation,
    RowSnapshot,
    classify,
    decode_envelope,
    encode_envelope,
    epoch_millis_to_datetime,
)

DEBEZIUM_UPDATE = {
    "schema": {"type": "struct", "name": "sqlserver.dbo.Customers.Envelope"},
    "payload": {
        "before": {
            "customer_id": 1,
            "first_name": "Ann",
            "last_name": "Lee",
            "email": "ann@old.example",
            "phone_number": "555-0100",
        },
        "after": {
            "customer_id": 1,
            "first_name": "Ann",
            "last_name": "Lee",
            "email": "ann@new.example",
            "phone_number": "555-0100",
            "created_date": 1700000000000,
            "modified_date": 1700000500000,
        },
        "source": {
            "version": "2.5.0.Final",
            "connector": "sqlserver",
            "name": "sqlserver",
            "ts_ms": 1700000500000,
            "snapshot": "false",
            "db": "shop",
            "schema": "dbo",
            "table": "Customers",
            "change_lsn": "00000025:00000d98:0002",
            "commit_lsn": "00000025:00000d98:0003",
            "event_serial_no": 2,
        },
        "op": "u",
        "ts_ms": 1700000500123,
        "tx_id": None,
    },
}


def _body(doc: object) -> bytes:
    return json.dumps(doc).encode("utf-8")


def _envelope(op: str | None, **payload: object) -> CdcEnvelope:
    data: dict[str, object] = dict(payload)
    if op is not None:
        data["op"] = op
    return decode_envelope(_body({"payload": data}))


class TestOperation:
    @pytest.mark.parametrize(
        ("code", "expected"),
        [
            ("c", Operation.CREATE),
            ("u", Operation.UPDATE),
            ("d", Operation.DELETE),
            ("r", Operation.READ),
            ("x", Operation.UNKNOWN),
            ("", Operation.UNKNOWN),
            ("U", Operation.UNKNOWN),
            (None, Operation.UNKNOWN),
        ],
    )
    def test_from_code(self, code: str | None, expected: Operation):
        assert Operation.from_code(code) is expected


class TestDecode:
    def test_debezium_update(self):
        env = decode_envelope(_body(DEBEZIUM_UPDATE))
        assert env.payload is not None
        assert env.payload.op == "u"
        assert env.payload.before is not None
        assert env.payload.before.email == "ann@old.example"
        assert env.payload.after is not None
        assert env.payload.after.row.email == "ann@new.example"
        assert env.payload.after.created_date == 1700000000000
        assert env.payload.source is not None
        assert env.payload.source.schema_ == "dbo"
        assert env.payload.source.change_lsn == "00000025:00000d98:0002"
        assert isinstance(env.schema_, dict)

    def test_string_schema_is_opaque(self):
        env = decode_envelope(_body({"schema": "opaque", "payload": {"op": "c"}}))
        assert env.schema_ == "opaque"

    def test_numeric_lsn_coerced_to_string(self):
        env = _envelope("c", source={"change_lsn": 12345, "version": 2})
        assert env.payload is not None and env.payload.source is not None
        assert env.payload.source.change_lsn == "12345"
        assert env.payload.source.version == "2"

    def test_unknown_keys_ignored(self):
        env = _envelope("c", extra_field=1, after={"customer_id": 3, "loyalty": "gold"})
        assert env.payload is not None and env.payload.after is not None
        assert env.payload.after.row.customer_id == 3

    def test_missing_payload(self):
        env = decode_envelope(b'{"schema": null}')
        assert env.payload is None

    @pytest.mark.parametrize(
        "body",
        [
            b"\xff\xfe not utf-8",
            b"{not json",
            b"[1, 2, 3]",
            b'"just a string"',
            b'{"payload": {"ts_ms": "yesterday"}}',
            b'{"payload": {"after": {"customer_id": "one"}}}',
            b'{"payload": []}',
        ],
    )
    def test_malformed_raises(self, body: bytes):
        with pytest.raises(EnvelopeDecodeError):
            decode_envelope(body)

    def test_error_names_location(self):
        with pytest.raises(EnvelopeDecodeError, match="payload.ts_ms"):
            decode_envelope(b'{"payload": {"ts_ms": "yesterday"}}')


class TestEncode:
    def test_round_trip(self):
        env = decode_envelope(_body(DEBEZIUM_UPDATE))
        again = decode_envelope(encode_envelope(env))
        assert again == env

    def test_after_is_flat_on_the_wire(self):
        env = _envelope("c", after={"customer_id": 5, "created_date": 10})
        doc = json.loads(encode_envelope(env))
        assert doc["payload"]["after"] == {"customer_id": 5, "created_date": 10}

    def test_absent_fields_stay_absent(self):
        env = _envelope("c")
        doc = json.loads(encode_envelope(env))
        assert doc == {"payload": {"op": "c"}}

    def test_zero_is_not_absent(self):
        env = _envelope("c", ts_ms=0, after={"customer_id": 0, "email": ""})
        doc = json.loads(encode_envelope(env))
        assert doc["payload"]["ts_ms"] == 0
        assert doc["payload"]["after"] == {"customer_id": 0, "email": ""}

    def test_unknown_op_code_survives(self):
        env = _envelope("t")
        doc = json.loads(encode_envelope(env))
        assert doc["payload"]["op"] == "t"


class TestAfterSnapshot:
    def test_composes_row(self):
        after = AfterSnapshot.model_validate(
            {"customer_id": 9, "first_name": "Bo", "modified_date": 2}
        )
        assert isinstance(after.row, RowSnapshot)
        assert after.row.customer_id == 9
        assert after.row.full_name == "Bo"
        assert after.modified_date == 2

    def test_full_name_joins_present_parts(self):
        assert RowSnapshot(first_name="Ann", last_name="Lee").full_name == "Ann Lee"
        assert RowSnapshot().full_name == ""


class TestExpectations:
    @pytest.mark.parametrize(
        ("op", "snapshots"),
        [
            ("c", {"after": {"customer_id": 1}}),
            ("u", {"before": {"customer_id": 1}, "after": {"customer_id": 1}}),
            ("d", {"before": {"customer_id": 1}}),
            ("r", {"after": {"customer_id": 1}}),
        ],
    )
    def test_conforming_envelopes(self, op: str, snapshots: dict[str, object]):
        env = _envelope(op, **snapshots)
        assert env.payload is not None
        assert env.payload.expectation_violations() == []

    def test_create_with_before_is_reported(self):
        env = _envelope("c", before={"customer_id": 1}, after={"customer_id": 1})
        assert env.payload is not None
        assert env.payload.expectation_violations() == ["before unexpected for CREATE"]

    def test_update_missing_before_is_reported(self):
        env = _envelope("u", after={"customer_id": 1})
        assert env.payload is not None
        assert env.payload.expectation_violations() == ["before missing for UPDATE"]

    def test_unknown_has_no_expectations(self):
        env = _envelope(None, before={"customer_id": 1})
        assert env.payload is not None
        assert env.payload.expectation_violations() == []


class TestClassify:
    def test_update_surfaces_both(self):
        event = classify(decode_envelope(_body(DEBEZIUM_UPDATE)))
        assert event.operation is Operation.UPDATE
        assert event.before is not None
        assert event.after is not None
        assert event.table == "Customers"
        assert event.timestamp == datetime(2023, 11, 14, 22, 21, 40, 123000, tzinfo=UTC)

    def test_create_surfaces_after_only(self):
        event = classify(
            _envelope("c", before={"customer_id": 1}, after={"customer_id": 2})
        )
        assert event.operation is Operation.CREATE
        assert event.before is None
        assert event.after is not None
        assert event.after.row.customer_id == 2

    def test_read_surfaces_after_only(self):
        event = classify(_envelope("r", after={"customer_id": 2}))
        assert event.operation is Operation.READ
        assert event.after is not None
        assert event.before is None

    def test_delete_surfaces_before_only(self):
        event = classify(
            _envelope("d", before={"customer_id": 3}, after={"customer_id": 3})
        )
        assert event.operation is Operation.DELETE
        assert event.before is not None
        assert event.after is None

    def test_absent_op_is_unknown(self):
        event = classify(_envelope(None, after={"customer_id": 4}))
        assert event.operation is Operation.UNKNOWN
        assert event.op_code is None
        assert event.after is not None

    def test_absent_timestamp_is_epoch(self):
        event = classify(_envelope("c"))
        assert event.timestamp == EPOCH

    def test_no_payload_is_unknown(self):
        event = classify(CdcEnvelope())
        assert event.operation is Operation.UNKNOWN
        assert event.timestamp == EPOCH
        assert event.before is None
        assert event.after is None

    def test_log_fields(self):
        event = classify(decode_envelope(_body(DEBEZIUM_UPDATE)))
        fields = event.log_fields()
        assert fields["operation"] == "UPDATE"
        assert fields["table"] == "Customers"
        assert fields["after_email"] == "ann@new.example"
        assert fields["before_email"] == "ann@old.example"
        assert fields["after_name"] == "Ann Lee"
        assert "tx_id" not in fields


class TestEpochMillis:
    def test_none_is_epoch(self):
        assert epoch_millis_to_datetime(None) == EPOCH

    def test_millis(self):
        assert epoch_millis_to_datetime(1500) == datetime(1970, 1, 1, 0, 0, 1, 500000, tzinfo=UTC)
