"""Name normalization and text clamping helpers."""

import re
import unicodedata

_EXTENSION = re.compile(r"\.\w+$")


def normalize_name(value: str | None, *, strip_extension: bool = False) -> str:
    """Normalize a character or role name for comparison.

    "  Ｂard " → "bard";  "Bard.png" → "bard" with strip_extension=True
    """
    text = unicodedata.normalize("NFKC", value or "").strip().lower()
    if not text:
        return ""
    if strip_extension:
        return _EXTENSION.sub("", text)
    return text


def clamp_text(text: str, limit: int) -> str:
    """Collapse whitespace and cut to `limit` characters with a trailing "..."."""
    normalized = re.sub(r"\s+", " ", text or "").strip()
    if limit <= 0:
        return "..." if normalized else ""
    if len(normalized) <= limit:
        return normalized
    return normalized[: max(0, limit - 3)] + "..."


def truncate_reply(text: str, limit: int | None) -> str:
    """Cut reply text to `limit` characters, keeping line breaks intact."""
    text = text.strip()
    if limit is None or len(text) <= limit:
        return text
    return text[: max(0, limit - 3)].rstrip() + "..."
