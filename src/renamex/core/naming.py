"""Deterministic file-name composition."""

from __future__ import annotations

import re
import unicodedata

from renamex.core.taxonomy import UNKNOWN_LABEL

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def slugify(text: str) -> str:
    """Lower-case, strip diacritics and collapse non-alphanumeric runs to '-'."""
    decomposed = unicodedata.normalize("NFKD", text)
    ascii_text = "".join(ch for ch in decomposed if not unicodedata.combining(ch)).lower()
    return _NON_ALNUM.sub("-", ascii_text).strip("-")


def compute_auto_name(theme: str, style: str, ordinal: int) -> str:
    """Build the suggested name from effective labels and a 1-based position.

    Empty and ``"unknown"`` labels are left out; if nothing is left the base
    name is ``"unknown"``. Hand-edited labels that slugify to nothing count
    as unknown too.
    """
    parts = [part for part in (theme, style) if part and part != UNKNOWN_LABEL]
    base = "-".join(parts) if parts else UNKNOWN_LABEL
    return f"{slugify(base) or UNKNOWN_LABEL}-{ordinal}"


def resolve_name(name_override: str, theme: str, style: str, ordinal: int) -> str:
    """Return the override when set, otherwise the computed name."""
    if name_override:
        return name_override
    return compute_auto_name(theme, style, ordinal)
