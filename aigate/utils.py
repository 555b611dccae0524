import hashlib
import json
import re
from typing import Any

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_prompt(text: str) -> str:
    """Collapse whitespace and case-fold so cosmetic edits share a cache key."""
    return _WHITESPACE_RE.sub(" ", text).strip().casefold()


def stable_hash(value: Any) -> str:
    """
    SHA-256 hex digest of a JSON-serializable value.

    Keys are sorted so that dicts built in a different order hash the same.
    """
    canonical = json.dumps(value, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
