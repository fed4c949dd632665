"""Tests for fact and usage input parsing."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from ripplegate.evidence.loader import (
    load_fact_file,
    load_usage_file,
    parse_member_spec,
    parse_usage_spec,
)
from ripplegate.evidence.types import UNDOCUMENTED


def test_member_spec_defaults_to_undocumented() -> None:
    member = parse_member_spec("transceive;ByteArray;fun transceive(data: ByteArray): ByteArray")

    assert member.signature == "fun transceive(data: ByteArray): ByteArray"
    assert member.nullable == UNDOCUMENTED
    assert member.constraints == UNDOCUMENTED


def test_member_spec_full() -> None:
    member = parse_member_spec("timeout;Int;var timeout: Int;no;0..5000 ms")

    assert member.nullable is False
    assert member.constraints == "0..5000 ms"
    assert member.documented


def test_member_spec_rejects_short_form() -> None:
    with pytest.raises(ValueError, match="name;type;signature"):
        parse_member_spec("timeout;Int")


def test_usage_spec() -> None:
    usage = parse_usage_spec("IsoDep.timeout ; Int ; var timeout: Int")
    assert (usage.name, usage.type, usage.signature) == ("IsoDep.timeout", "Int", "var timeout: Int")


def test_load_fact_file_yaml(tmp_path: Path) -> None:
    path = tmp_path / "facts.yaml"
    path.write_text(
        """
facts:
  - subject: IsoDep
    file: android/nfc/tech/IsoDep.java
    members:
      - name: transceive
        type: ByteArray
        signature: "fun transceive(data: ByteArray): ByteArray"
        nullable: false
        constraints: "throws IOException when the tag is lost"
      - name: maxTransceiveLength
        type: Int
        signature: "val maxTransceiveLength: Int"
        nullable: undocumented
        constraints: undocumented
""".lstrip(),
        encoding="utf-8",
    )

    drafts = load_fact_file(path)

    assert len(drafts) == 1
    assert drafts[0].subject == "IsoDep"
    assert [m.name for m in drafts[0].members] == ["transceive", "maxTransceiveLength"]
    assert drafts[0].members[1].undocumented_fields() == ("nullable", "constraints")


def test_load_fact_file_rejects_missing_field(tmp_path: Path) -> None:
    path = tmp_path / "facts.json"
    path.write_text(
        json.dumps(
            {
                "facts": [
                    {
                        "subject": "IsoDep",
                        "file": "IsoDep.java",
                        "members": [{"name": "connect", "type": "Unit", "signature": "fun connect()"}],
                    }
                ]
            }
        ),
        encoding="utf-8",
    )

    with pytest.raises(ValueError, match="Schema validation failed"):
        load_fact_file(path)


def test_load_usage_file(tmp_path: Path) -> None:
    path = tmp_path / "usage.json"
    path.write_text(
        json.dumps({"usage": [{"name": "IsoDep.connect", "type": "Unit", "signature": "fun connect()"}]}),
        encoding="utf-8",
    )

    usage = load_usage_file(path)
    assert usage[0].name == "IsoDep.connect"


def test_malformed_documents_raise_value_error(tmp_path: Path) -> None:
    facts_path = tmp_path / "facts.yaml"
    facts_path.write_text("facts: [\n  - subject: : :\n", encoding="utf-8")
    usage_path = tmp_path / "usage.json"
    usage_path.write_text('{"usage": [', encoding="utf-8")

    with pytest.raises(ValueError, match="cannot parse"):
        load_fact_file(facts_path)
    with pytest.raises(ValueError, match="cannot parse"):
        load_usage_file(usage_path)
