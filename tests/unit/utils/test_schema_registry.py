import pytest

from ripplegate.schemas.validator import validate_data
from ripplegate.utils.schema_registry import SchemaRegistry


class TestSchemaRegistry:
    """Schemas ship as package data and load by name."""

    def test_registry_lists_schemas(self):
        """Registry should list every shipped schema."""
        available = SchemaRegistry().available

        assert "record_set" in available
        assert "dependency_fact_input" in available
        assert "project_index" in available
        assert "asserted_usage" in available

    def test_registry_loads_record_set(self):
        """Should load record_set schema as dict."""
        schema = SchemaRegistry().get_json("record_set")
        assert isinstance(schema, dict)
        assert schema["properties"]["schema_version"]["const"] == "ripplegate.record_set.v1"

    def test_unknown_schema_raises(self):
        with pytest.raises(KeyError):
            SchemaRegistry().get_json("no_such_schema")


class TestValidator:
    def test_non_strict_returns_errors(self):
        ok, errors = validate_data({"symbols": {"X": {"definitions": [{"name": "X"}]}}}, "project_index", strict=False)

        assert not ok
        assert errors and "file" in errors[0]

    def test_strict_raises(self):
        with pytest.raises(ValueError, match="Schema validation failed for 'asserted_usage'"):
            validate_data({"usage": [{"name": "x"}]}, "asserted_usage")
