from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Integer, String, Text
from sqlalchemy.orm import DeclarativeMeta

from .records import VariantKey


class ValidationError(ValueError):
    """400-level input problem."""


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


CHECKOUT_ITEM_POLICY = ModelValidationPolicy(
    writable_fields={"order_id", "user_id", "product_id", "batch_id", "quantity", "variant_size", "variant_color"},
    required_on_create={"order_id", "user_id", "product_id", "quantity"},
)


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    return {c.key: c for c in model.__mapper__.columns}


def coerce_int(key: str, value: Any) -> int:
    """Strict integer coercion: ints and digit strings only (no bools, floats, exponents)."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{key} must be an integer")
        if "e" in stripped.lower():
            raise ValidationError(f"{key} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{key} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{key} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{key} must be an integer, not a decimal")
    raise ValidationError(f"{key} must be an integer")


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    if isinstance(coltype, Integer):
        return coerce_int(col.key, value)

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool = False,
) -> dict:
    """
    Validates + normalizes incoming JSON against column metadata and a policy
    allowlist. Returns a cleaned dict with only writable fields.

    partial=False: create semantics (enforce required_on_create)
    partial=True: patch semantics (validate only provided keys)
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if payload.get(f) in (None, ""))
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}
    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def flatten_variant(payload: dict) -> dict:
    """Accept ``{"variant": {"size": .., "color": ..}}`` as well as flat variant_size/variant_color."""
    if not isinstance(payload, dict) or "variant" not in payload:
        return payload
    out = {k: v for k, v in payload.items() if k != "variant"}
    variant = payload["variant"]
    if variant is None:
        return out
    if not isinstance(variant, dict):
        raise ValidationError("variant must be an object with size and color")
    out["variant_size"] = variant.get("size")
    out["variant_color"] = variant.get("color")
    return out


def parse_variant(size: Any, color: Any) -> VariantKey | None:
    if not size and not color:
        return None
    try:
        return VariantKey.from_dict({"size": size, "color": color})
    except ValueError as exc:
        raise ValidationError(str(exc))


def require_positive_int(payload: dict, key: str) -> int:
    if key not in payload or payload[key] is None:
        raise ValidationError(f"Missing required fields: {key}")
    value = coerce_int(key, payload[key])
    if value <= 0:
        raise ValidationError(f"{key} must be > 0")
    return value


def require_string_list(payload: dict, key: str) -> list[str]:
    value = payload.get(key)
    if not isinstance(value, list) or not value:
        raise ValidationError(f"{key} must be a non-empty list")
    if not all(isinstance(v, str) and v.strip() for v in value):
        raise ValidationError(f"{key} must contain non-blank strings")
    return [v.strip() for v in value]
