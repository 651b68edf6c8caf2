"""
Payload validation against registered JSON schemas.

Schemas are registered under a reference string (the ``schemaRef`` /
``formSchemaRef`` used by flow nodes) and validated with jsonschema's
Draft 2020-12 validator.
"""

import json
import logging
from pathlib import Path
from typing import Any, Mapping, Union

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from flow_engine.core.errors import ConfigurationError, ValidationError

logger = logging.getLogger(__name__)

MAX_PAYLOAD_BYTES = 256 * 1024

SchemaBundle = Union[str, Path, Mapping[str, Any], list[dict[str, Any]]]


def payload_size(data: Any) -> int:
    """UTF-8 size of the JSON encoding of data."""
    if data is None:
        return 0
    return len(json.dumps(data, default=str).encode("utf-8"))


class SchemaValidator:
    """
    Validator registry keyed by schema reference.

    Every payload is size-checked before it is validated, so oversized
    documents fail fast without walking the schema.
    """

    def __init__(self, max_payload_bytes: int = MAX_PAYLOAD_BYTES):
        self.max_payload_bytes = max_payload_bytes
        self._validators: dict[str, Draft202012Validator] = {}

    def register(self, ref: str, schema: dict[str, Any]) -> None:
        """
        Register (or replace) the schema for a reference.

        Raises:
            ConfigurationError: If the schema itself is invalid
        """
        try:
            Draft202012Validator.check_schema(schema)
        except SchemaError as e:
            raise ConfigurationError(f"Schema '{ref}' is invalid: {e.message}") from None
        self._validators[ref] = Draft202012Validator(schema)
        logger.debug(f"Registered schema '{ref}'")

    def register_bundle(self, bundle: SchemaBundle) -> list[str]:
        """
        Register many schemas at once.

        Accepts a path to a JSON file or an already-loaded document, shaped
        as ``{ref: schema}``, ``{"schemas": [schema, ...]}`` or
        ``[schema, ...]``. Schemas in list form are keyed by their ``$id``.

        Returns:
            The registered references
        """
        if isinstance(bundle, (str, Path)):
            try:
                bundle = json.loads(Path(bundle).read_text(encoding="utf-8"))
            except OSError as e:
                raise ConfigurationError(f"Failed to read schema bundle at {bundle}: {e}") from e
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"Schema bundle is not valid JSON: {e}") from e

        if isinstance(bundle, Mapping) and isinstance(bundle.get("schemas"), list):
            bundle = bundle["schemas"]

        if isinstance(bundle, list):
            entries = []
            for schema in bundle:
                ref = schema.get("$id") if isinstance(schema, dict) else None
                if not ref:
                    raise ConfigurationError("Schemas in list bundles must declare '$id'")
                entries.append((ref, schema))
        elif isinstance(bundle, Mapping):
            entries = list(bundle.items())
        else:
            raise ConfigurationError("Schema bundle must be an object or array")

        for ref, schema in entries:
            self.register(ref, schema)
        return [ref for ref, _ in entries]

    def has(self, ref: str) -> bool:
        return ref in self._validators

    @property
    def refs(self) -> list[str]:
        return sorted(self._validators)

    def validate(self, ref: str, data: Any) -> None:
        """
        Validate data against the schema registered under ref.

        Raises:
            ConfigurationError: If no schema is registered under ref
            ValidationError: If data is too large or does not conform
        """
        validator = self._validators.get(ref)
        if validator is None:
            raise ConfigurationError(f"Schema with ref '{ref}' is not registered")

        if payload_size(data) > self.max_payload_bytes:
            raise ValidationError(
                f"Payload exceeds maximum allowed size ({self.max_payload_bytes} bytes)"
            )

        errors = []
        for error in sorted(validator.iter_errors(data), key=lambda e: [str(p) for p in e.path]):
            path = ".".join(str(p) for p in error.path) if error.path else "root"
            errors.append(f"{path}: {error.message}")

        if errors:
            raise ValidationError(
                f"Payload validation failed for '{ref}': " + "; ".join(errors),
                errors=errors,
            )
