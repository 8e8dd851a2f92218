import hashlib
import unicodedata
from datetime import datetime, timezone
from typing import Any, Sequence

# (field id, text) pairs in the order the dedup policy lists them
OrderedFieldValues = Sequence[tuple[str, str]]


def to_text(value: Any) -> str:
    """Render a raw property value as text, the same way on every platform."""
    if value is None:
        return ""
    if isinstance(value, str):
        text = value
    elif isinstance(value, (bytes, bytearray)):
        text = bytes(value).decode("utf-8", errors="replace")
    elif isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        text = value.isoformat()
    elif isinstance(value, (list, tuple)):
        text = "; ".join(to_text(v) for v in value)
    else:
        text = str(value)
    return unicodedata.normalize("NFC", text)


def canonical_bytes(fields: OrderedFieldValues) -> bytes:
    parts = []
    for field, text in fields:
        data = unicodedata.normalize("NFC", text).encode("utf-8")
        parts.append(f"{field}:{len(data)}:".encode("utf-8") + data)
    return b"\n".join(parts)


def fingerprint(fields: OrderedFieldValues) -> str:
    """SHA-256 of the framed field values, as lowercase hex.

    Each value is framed with its field id and byte length, so
    ``[("subject", "ab"), ("body", "c")]`` never collides with
    ``[("subject", "a"), ("body", "bc")]``.
    """
    return hashlib.sha256(canonical_bytes(fields)).hexdigest()
