from __future__ import annotations

import re
import unicodedata

# Letters NFD does not decompose into a base letter plus combining marks.
_EXTRA_FOLDS = str.maketrans({"đ": "d", "Đ": "d", "ø": "o", "ł": "l", "ß": "ss"})

_INVALID_CHARS = re.compile(r"[^a-z0-9\s-]")
_WHITESPACE = re.compile(r"\s+")
_DASHES = re.compile(r"-+")


def clean_topic_name(name: str) -> str:
    return " ".join(str(name or "").strip().split())


def create_slug(text: str) -> str:
    value = str(text or "").translate(_EXTRA_FOLDS).lower()
    value = unicodedata.normalize("NFD", value)
    value = "".join(ch for ch in value if not unicodedata.combining(ch))
    value = _INVALID_CHARS.sub("", value)
    value = _WHITESPACE.sub("-", value.strip())
    value = _DASHES.sub("-", value)
    return value.strip("-")
