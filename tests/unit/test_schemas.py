"""
Unit tests for JSON schema validation.
"""

import json

import pytest

from flow_engine.core.errors import ConfigurationError, ValidationError
from flow_engine.validation.schemas import SchemaValidator, payload_size

ORDER_SCHEMA = {
    "$id": "order",
    "type": "object",
    "properties": {
        "id": {"type": "string"},
        "items": {"type": "array", "items": {"type": "integer"}},
    },
    "required": ["id"],
    "additionalProperties": False,
}


class TestSchemaValidator:
    """Tests for schema registration and validation."""

    def test_valid_payload(self):
        """Test that a conforming payload passes."""
        validator = SchemaValidator()
        validator.register("order", ORDER_SCHEMA)
        validator.validate("order", {"id": "o-1", "items": [1, 2]})

    def test_errors_are_listed_with_paths(self):
        """Test that every violation is reported with its location."""
        validator = SchemaValidator()
        validator.register("order", ORDER_SCHEMA)

        with pytest.raises(ValidationError) as exc_info:
            validator.validate("order", {"items": [1, "two"], "extra": True})

        errors = exc_info.value.errors
        assert len(errors) == 3
        assert any(error.startswith("root:") and "'id' is a required property" in error for error in errors)
        assert any(error.startswith("items.1:") for error in errors)

    def test_unknown_ref(self):
        """Test that validating against an unregistered ref is a configuration error."""
        with pytest.raises(ConfigurationError, match="not registered"):
            SchemaValidator().validate("nope", {})

    def test_invalid_schema_rejected(self):
        """Test that schemas are checked when registered."""
        with pytest.raises(ConfigurationError, match="invalid"):
            SchemaValidator().register("bad", {"type": "not-a-type"})

    def test_oversized_payload(self):
        """Test that payloads over the size limit fail before validation."""
        validator = SchemaValidator(max_payload_bytes=64)
        validator.register("any", {})
        with pytest.raises(ValidationError, match="maximum allowed size"):
            validator.validate("any", {"blob": "x" * 100})

    def test_payload_size(self):
        """Test the UTF-8 JSON size measure."""
        assert payload_size(None) == 0
        assert payload_size({"a": "é"}) == len(json.dumps({"a": "é"}).encode("utf-8"))


class TestSchemaBundles:
    """Tests for bulk schema registration."""

    def test_mapping_bundle(self):
        """Test a {ref: schema} bundle."""
        validator = SchemaValidator()
        refs = validator.register_bundle({"a": {"type": "string"}, "b": {"type": "number"}})
        assert refs == ["a", "b"]
        assert validator.refs == ["a", "b"]

    def test_list_bundle_keyed_by_id(self):
        """Test that list bundles use each schema's $id."""
        validator = SchemaValidator()
        assert validator.register_bundle({"schemas": [ORDER_SCHEMA]}) == ["order"]
        assert validator.has("order")

    def test_list_bundle_requires_id(self):
        """Test that list entries without $id are rejected."""
        with pytest.raises(ConfigurationError, match=r"\$id"):
            SchemaValidator().register_bundle([{"type": "object"}])

    def test_bundle_from_file(self, tmp_path):
        """Test loading a bundle from disk."""
        path = tmp_path / "schemas.json"
        path.write_text(json.dumps([ORDER_SCHEMA]), encoding="utf-8")

        validator = SchemaValidator()
        assert validator.register_bundle(str(path)) == ["order"]

    def test_bundle_file_errors(self, tmp_path):
        """Test that unreadable or malformed bundle files are configuration errors."""
        with pytest.raises(ConfigurationError):
            SchemaValidator().register_bundle(tmp_path / "missing.json")

        path = tmp_path / "broken.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="not valid JSON"):
            SchemaValidator().register_bundle(path)
