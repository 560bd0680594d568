#!/usr/bin/env python3
"""
Sentinel Dispatch - Detection Ingestion Adapter

Normalizes third-party detection payloads into one DetectionRecord.

Two payload variants are accepted:
- Legacy VMS string: "Type:nx.base.Person;Confidence:87;TimestampUs:1700000000000000"
- Structured mapping: {"type": ..., "confidence": ..., "timestampUs": ..., "message": ...}
  (a mapping carrying a "data" string is parsed as the legacy variant, with
  structured keys taking precedence)

Unknown keys are dropped. This module performs no I/O.
"""

import math
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from entities import DetectionRecord
from errors import MalformedDetection

DEFAULT_TYPE = "Object"

# Canonical field -> accepted spellings, in lookup order
_FIELD_ALIASES = {
    "type": ("type", "Type"),
    "confidence": ("confidence", "Confidence"),
    "timestamp_us": ("timestampUs", "TimestampUs", "timestamp_us"),
    "message": ("message", "Message"),
}


def normalize_type(raw_type: Optional[str]) -> str:
    """Take the last dot-delimited segment and capitalize it."""
    if not raw_type:
        return DEFAULT_TYPE
    clean = str(raw_type).strip().split(".")[-1]
    if not clean:
        return DEFAULT_TYPE
    return clean[0].upper() + clean[1:].lower()


def parse_pairs(data: str) -> Dict[str, str]:
    """Split a semicolon-delimited key:value string."""
    result: Dict[str, str] = {}
    for pair in data.split(";"):
        if not pair.strip():
            continue
        key, sep, value = pair.partition(":")
        if not sep:
            # Segments without a key are noise, like unknown keys
            continue
        result[key.strip()] = value.strip()
    return result


def _pick(fields: Mapping[str, Any], canonical: str) -> Any:
    for alias in _FIELD_ALIASES[canonical]:
        value = fields.get(alias)
        if value is not None and value != "":
            return value
    return None


def _to_confidence(value: Any) -> float:
    if value is None:
        return 0.0
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        raise MalformedDetection(f"Confidence is not numeric: {value!r}")
    if not math.isfinite(confidence):
        raise MalformedDetection(f"Confidence is not a finite number: {value!r}")
    return confidence


def _to_timestamp_us(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    try:
        return int(str(value))
    except ValueError:
        pass
    try:
        timestamp = float(value)
    except (TypeError, ValueError):
        raise MalformedDetection(f"TimestampUs is not numeric: {value!r}")
    if not math.isfinite(timestamp):
        raise MalformedDetection(f"TimestampUs is not a finite number: {value!r}")
    return int(timestamp)


def _resolve_zone(tz: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def format_human_time(timestamp_us: int, tz: str = "UTC") -> Optional[str]:
    """Format like '14 November 2023, 10:13 pm'. Returns None for a zero timestamp."""
    if not timestamp_us:
        return None
    local = datetime.fromtimestamp(timestamp_us / 1_000_000, tz=timezone.utc)
    local = local.astimezone(_resolve_zone(tz))
    hour = local.hour % 12 or 12
    meridiem = "am" if local.hour < 12 else "pm"
    return f"{local.day} {local:%B %Y}, {hour}:{local:%M} {meridiem}"


def _collect_fields(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, str):
        return parse_pairs(raw)

    if isinstance(raw, Mapping):
        fields: Dict[str, Any] = {}
        data = raw.get("data")
        if data is not None:
            if not isinstance(data, str):
                raise MalformedDetection("Detection 'data' must be a key:value string")
            fields.update(parse_pairs(data))
        for aliases in _FIELD_ALIASES.values():
            for alias in aliases:
                if raw.get(alias) is not None:
                    fields[alias] = raw[alias]
        return fields

    raise MalformedDetection(f"Unsupported detection payload type: {type(raw).__name__}")


def normalize(raw: Any, tz: str = "UTC") -> DetectionRecord:
    """
    Normalize a raw detection payload.

    Raises:
        MalformedDetection: payload is neither a string nor a mapping, or a
            numeric field cannot be parsed.
    """
    fields = _collect_fields(raw)

    detection_type = normalize_type(_pick(fields, "type"))
    confidence = _to_confidence(_pick(fields, "confidence"))
    timestamp_us = _to_timestamp_us(_pick(fields, "timestamp_us"))
    message = _pick(fields, "message") or f"{detection_type} detected"

    try:
        timestamp = datetime.fromtimestamp(timestamp_us / 1_000_000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        raise MalformedDetection(f"TimestampUs out of range: {timestamp_us}")

    return DetectionRecord(
        type=detection_type,
        message=str(message),
        confidence=confidence,
        timestamp_utc=timestamp,
        human_time=format_human_time(timestamp_us, tz),
    )
