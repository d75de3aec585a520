"""Manifest and renamed-archive exports of a batch.

Both exports read a snapshot of the store and never modify it. Callers are
expected to refuse exports of an empty batch.
"""

from __future__ import annotations

import csv
import io
import math
import zipfile
from typing import TYPE_CHECKING

from renamex.core.naming import slugify

if TYPE_CHECKING:
    from renamex.core.batch import BatchStore

MANIFEST_HEADER = ("original", "new_name", "theme", "style", "confidence")
MANIFEST_FILENAME = "manifest.csv"
ARCHIVE_FILENAME = "renamed-images.zip"


def manifest_confidence(theme_score: float, style_score: float) -> float:
    """Highest of the two scores, counting a non-finite score as 0."""
    return max(
        theme_score if math.isfinite(theme_score) else 0.0,
        style_score if math.isfinite(style_score) else 0.0,
    )


def build_manifest(store: BatchStore) -> str:
    """Render the CSV manifest: a bare header line, then fully quoted rows.

    ``new_name`` is the display name without extension. Duplicate display
    names are listed as they are; the archive disambiguates them with a
    suffix, and its entries follow the manifest row order one to one.
    """
    buffer = io.StringIO()
    buffer.write(",".join(MANIFEST_HEADER) + "\n")
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    for _ordinal, record, name in store.named_records():
        confidence = manifest_confidence(record.theme.score, record.style.score)
        writer.writerow(
            [
                record.original_name,
                name,
                record.theme.label,
                record.style.label,
                f"{confidence:.4f}",
            ]
        )
    return buffer.getvalue()


def archive_entry_names(store: BatchStore) -> list[str]:
    """Entry name per record, in batch order.

    Entry ``i`` belongs to row ``i`` of the manifest. A name that slugifies
    to nothing falls back to ``image-<ordinal>``. Names already taken get
    ``-2``, ``-3``... appended so every record keeps its own entry.
    """
    taken: set[str] = set()
    names: list[str] = []
    for ordinal, record, name in store.named_records():
        stem = slugify(name) or f"image-{ordinal}"
        entry = f"{stem}.{record.extension}"
        suffix = 2
        while entry in taken:
            entry = f"{stem}-{suffix}.{record.extension}"
            suffix += 1
        taken.add(entry)
        names.append(entry)
    return names


def build_archive(store: BatchStore) -> bytes:
    """Zip the original bytes of every record under its export name."""
    records = store.records()
    names = archive_entry_names(store)
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        for record, entry in zip(records, names, strict=True):
            archive.writestr(entry, record.source)
    return buffer.getvalue()
