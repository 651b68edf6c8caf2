"""JSON schema validation for payloads."""

from flow_engine.validation.schemas import MAX_PAYLOAD_BYTES, SchemaValidator, payload_size

__all__ = ["MAX_PAYLOAD_BYTES", "SchemaValidator", "payload_size"]
