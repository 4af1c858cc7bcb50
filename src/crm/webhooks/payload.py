"""JSON payload helpers: path lookup, field transforms and envelopes.

Inbound bodies are loosely typed JSON. They are handled as ``JSONValue``
trees and read through ``get_path``, which never raises for a missing or
mistyped path: it returns ``None`` and the mapped field falls back to its
empty value.
"""

from __future__ import annotations

import json
import math
import re
from datetime import datetime, timezone
from typing import Any, Union

from src.crm.webhooks.errors import MappingError, ValidationError
from src.crm.webhooks.schemas import FieldMapping, FieldTransform, TargetField

JSONScalar = Union[str, int, float, bool, None]
JSONValue = Union[JSONScalar, dict[str, "JSONValue"], list["JSONValue"]]

_NON_DIGITS = re.compile(r"\D")


# ── Parsing ─────────────────────────────────────────────────────────────────


def parse_json_object(raw_body: bytes) -> dict[str, JSONValue]:
    """Decode a request body that must be a JSON object.

    Raises:
        ValidationError: Body is empty, not UTF-8, malformed, or not an object.
    """
    if not raw_body.strip():
        raise ValidationError("Empty request body")
    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, ValueError) as exc:
        raise ValidationError(f"Invalid JSON payload: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValidationError("JSON payload must be an object")
    return payload


def get_path(payload: JSONValue, path: str) -> JSONValue:
    """Resolve a dotted path such as ``customer.contact.email``.

    List elements are addressable by numeric segments (``leads.0.email``).
    Missing keys, out-of-range indexes and traversal into scalars all
    resolve to ``None``.
    """
    if not path:
        return None
    current: JSONValue = payload
    for segment in path.split("."):
        if isinstance(current, dict):
            if segment not in current:
                return None
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return None
            current = current[index]
        else:
            return None
    return current


# ── Transforms ──────────────────────────────────────────────────────────────


def format_phone(value: str) -> str:
    """Normalize a Brazilian phone number to ``+55`` E.164 form.

    11 digits (DDD + mobile) gain the ``+55`` prefix, 13 digits already
    starting with ``55`` gain ``+``. Anything else is returned unchanged.
    """
    digits = _NON_DIGITS.sub("", value)
    if len(digits) == 11:
        return f"+55{digits}"
    if len(digits) == 13 and digits.startswith("55"):
        return f"+{digits}"
    return value


def _scalar_to_text(value: JSONScalar) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def apply_transform(value: JSONValue, transform: FieldTransform | None, source: str = "") -> str:
    """Convert an extracted value to text and apply the named transform.

    Raises:
        MappingError: A transform was requested for an object or list value.
    """
    if isinstance(value, (dict, list)):
        if transform is not None:
            raise MappingError(
                f"Cannot apply '{transform.value}' to non-scalar value at '{source}'"
            )
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))

    text = _scalar_to_text(value)
    if transform is None:
        return text
    if transform == FieldTransform.UPPERCASE:
        return text.upper()
    if transform == FieldTransform.LOWERCASE:
        return text.lower()
    if transform == FieldTransform.FORMAT_PHONE:
        return format_phone(text)
    if transform == FieldTransform.TRIM:
        return text.strip()
    raise MappingError(f"Unknown transform '{transform}'")


def parse_deal_value(text: str) -> float:
    """Parse a mapped ``value`` field; empty means zero.

    Accepts ``1500``, ``1500.50`` and the comma decimal form ``1500,50``.

    Raises:
        MappingError: Text is not a finite number.
    """
    cleaned = text.strip()
    if not cleaned:
        return 0.0
    if "," in cleaned and "." not in cleaned:
        cleaned = cleaned.replace(",", ".")
    try:
        number = float(cleaned)
    except ValueError as exc:
        raise MappingError(f"Field 'value' is not numeric: {text!r}") from exc
    if not math.isfinite(number):
        raise MappingError(f"Field 'value' is not a finite number: {text!r}")
    return number


def map_fields(payload: dict[str, JSONValue], mappings: list[FieldMapping]) -> dict[str, str]:
    """Apply every field mapping; later mappings override earlier ones."""
    mapped: dict[str, str] = {}
    for mapping in mappings:
        raw = get_path(payload, mapping.source)
        mapped[mapping.target.value] = apply_transform(raw, mapping.transform, mapping.source)
    return mapped


def lead_identity(mapped: dict[str, str]) -> tuple[str | None, str | None]:
    """Normalized ``(email, phone_digits)`` identity of a mapped lead."""
    email = mapped.get(TargetField.EMAIL.value, "").strip().lower() or None
    phone_digits = _NON_DIGITS.sub("", mapped.get(TargetField.PHONE.value, "")) or None
    return email, phone_digits


# ── Outbound Envelope ───────────────────────────────────────────────────────


def build_envelope(
    event: str,
    data: dict[str, Any],
    timestamp: datetime | None = None,
) -> dict[str, Any]:
    """Build the outbound ``{event, timestamp, data}`` envelope."""
    ts = timestamp or datetime.now(timezone.utc)
    return {
        "event": event,
        "timestamp": ts.isoformat().replace("+00:00", "Z"),
        "data": data,
    }


def serialize_envelope(envelope: dict[str, Any]) -> bytes:
    """Serialize once; these exact bytes are signed and sent."""
    return json.dumps(
        envelope,
        ensure_ascii=False,
        separators=(",", ":"),
        default=str,
    ).encode("utf-8")
