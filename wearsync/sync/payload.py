"""Wire payload for the collection endpoint."""

import json
import logging
from collections import Counter
from typing import Iterable

from .types import (
    PAYLOAD_SECTIONS,
    SECTION_RECORDS,
    SECTION_SLEEP,
    SECTION_WORKOUTS,
    payload_section,
    short_type_name,
)

__all__ = [
    "PayloadError",
    "build_payload",
    "serialize_payload",
    "summarize_payload",
]

logger = logging.getLogger(__name__)


class PayloadError(Exception):
    """Payload could not be built or serialized."""

    pass


def build_payload(type_id: str, records: Iterable[dict]) -> dict:
    """Wrap one type's records in the sync body.

    Args:
        type_id: Type the records belong to
        records: Already-mapped records from the provider

    Returns:
        {"data": {"records": [...], "workouts": [...], "sleep": [...]}}
    """
    data: dict[str, list] = {section: [] for section in PAYLOAD_SECTIONS}
    data[payload_section(type_id)].extend(records)
    return {"data": data}


def serialize_payload(payload: dict) -> bytes:
    """Encode a payload as compact UTF-8 JSON.

    Raises:
        PayloadError: If the payload is not JSON serializable
    """
    try:
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise PayloadError(f"Cannot serialize payload: {e}") from e


def summarize_payload(body: bytes) -> str:
    """One-line description of a serialized payload for the log."""
    size_mb = len(body) / (1024 * 1024)
    try:
        data = json.loads(body).get("data", {})
    except (ValueError, AttributeError):
        return f"{size_mb:.2f} MB (unparseable)"

    counts: Counter = Counter()
    for record in data.get(SECTION_RECORDS, []):
        kind = record.get("type", "unknown") if isinstance(record, dict) else "unknown"
        counts[short_type_name(str(kind))] += 1

    parts = [f"{name}: {count}" for name, count in counts.most_common()]
    workouts = len(data.get(SECTION_WORKOUTS, []))
    if workouts:
        parts.append(f"workouts: {workouts}")
    sleep = len(data.get(SECTION_SLEEP, []))
    if sleep:
        parts.append(f"sleep: {sleep}")

    detail = ", ".join(parts) if parts else "empty"
    return f"{size_mb:.2f} MB ({detail})"
