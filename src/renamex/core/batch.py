"""Per-image records and the ordered batch that owns them."""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from renamex.core.naming import compute_auto_name, resolve_name
from renamex.core.taxonomy import UNKNOWN_LABEL, Category

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

    from renamex.core.taxonomy import Taxonomy
    from renamex.core.threshold import ThresholdGate

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION = "jpg"


@dataclass
class LabelState:
    """Raw prediction and effective label for one attribute of an image.

    ``raw_label``/``score`` hold what the classifier returned and are never
    rewritten by threshold changes; ``label`` is derived from them. A NaN score
    means the attribute has not been classified yet.
    """

    raw_label: str | None = None
    score: float = math.nan
    label: str = ""
    edited: bool = False
    taxonomy_miss: bool = False

    @property
    def classified(self) -> bool:
        return self.raw_label is not None

    def set_prediction(self, raw_label: str, score: float) -> None:
        self.raw_label = raw_label
        self.score = score
        self.edited = False

    def edit(self, label: str) -> None:
        self.label = label
        self.edited = True
        self.taxonomy_miss = False

    def resolve(self, gate: ThresholdGate, taxonomy: Taxonomy) -> None:
        """Recompute ``label`` from the raw prediction; hand edits are kept."""
        if self.raw_label is None or self.edited:
            return
        self.label = gate.apply(self.raw_label, self.score, taxonomy)
        self.taxonomy_miss = self.label != UNKNOWN_LABEL and not taxonomy.covers(self.raw_label)


@dataclass
class ImageRecord:
    """One uploaded image and everything derived from it."""

    original_name: str
    source: bytes = field(repr=False)
    content_type: str = "application/octet-stream"
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    theme: LabelState = field(default_factory=LabelState)
    style: LabelState = field(default_factory=LabelState)
    name_override: str = ""

    def label_state(self, category: Category) -> LabelState:
        return self.theme if category is Category.THEME else self.style

    @property
    def is_pending(self) -> bool:
        """True until a prediction or a hand edit has been applied."""
        return not any(state.classified or state.edited for state in (self.theme, self.style))

    @property
    def needs_review(self) -> bool:
        states = (self.theme, self.style)
        return any(state.label == UNKNOWN_LABEL or state.taxonomy_miss for state in states)

    @property
    def extension(self) -> str:
        suffix = PurePosixPath(self.original_name).suffix.lstrip(".")
        if not (suffix.isascii() and suffix.isalnum()):
            return DEFAULT_EXTENSION
        return suffix.lower()

    def apply_predictions(
        self,
        theme: tuple[str, float],
        style: tuple[str, float],
        gate: ThresholdGate,
        taxonomies: Mapping[Category, Taxonomy],
    ) -> None:
        """Store both raw predictions and resolve both labels in one step."""
        self.theme.set_prediction(*theme)
        self.style.set_prediction(*style)
        self.refresh(gate, taxonomies)
        for category in Category:
            state = self.label_state(category)
            if state.taxonomy_miss:
                logger.warning(
                    "Predicted %s %r for %s is not covered by the taxonomy",
                    category,
                    state.raw_label,
                    self.original_name,
                )

    def refresh(self, gate: ThresholdGate, taxonomies: Mapping[Category, Taxonomy]) -> None:
        for category in Category:
            self.label_state(category).resolve(gate, taxonomies[category])


class BatchStore:
    """Insertion-ordered collection of :class:`ImageRecord`, keyed by id.

    Ordinals are positions in the current ordering (1-based) and are not
    stored: removing a record renumbers every record after it.
    """

    def __init__(self) -> None:
        self._records: dict[str, ImageRecord] = {}

    def __iter__(self) -> Iterator[ImageRecord]:
        return iter(list(self._records.values()))

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._records

    def append(self, record: ImageRecord) -> ImageRecord:
        if record.id in self._records:
            raise ValueError(f"Duplicate record id: {record.id}")
        self._records[record.id] = record
        return record

    def get(self, record_id: str) -> ImageRecord | None:
        return self._records.get(record_id)

    def remove(self, record_id: str) -> bool:
        return self._records.pop(record_id, None) is not None

    def clear(self) -> int:
        count = len(self._records)
        self._records.clear()
        return count

    def records(self) -> list[ImageRecord]:
        """Snapshot of the current ordering."""
        return list(self._records.values())

    def ordinal(self, record_id: str) -> int:
        for position, current_id in enumerate(self._records, start=1):
            if current_id == record_id:
                return position
        raise KeyError(f"Unknown record: {record_id}")

    def auto_name(self, record: ImageRecord) -> str:
        return compute_auto_name(record.theme.label, record.style.label, self.ordinal(record.id))

    def display_name(self, record: ImageRecord) -> str:
        return resolve_name(record.name_override, record.theme.label, record.style.label, self.ordinal(record.id))

    def named_records(self) -> list[tuple[int, ImageRecord, str]]:
        """Snapshot of ``(ordinal, record, override-or-auto name)`` in order."""
        return [
            (position, record, resolve_name(record.name_override, record.theme.label, record.style.label, position))
            for position, record in enumerate(self._records.values(), start=1)
        ]

    def reapply_threshold(self, gate: ThresholdGate, taxonomies: Mapping[Category, Taxonomy]) -> None:
        for record in self._records.values():
            record.refresh(gate, taxonomies)
