"""Background classification of batch records.

Records are classified one at a time, in batch order. For each record the
theme and style calls run concurrently and both results are applied in a
single step with no ``await`` in between, so a reader never sees a record
with only one of the two labels updated.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

from renamex.core.taxonomy import TAXONOMIES, UNKNOWN_LABEL, Category

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from renamex.core.batch import BatchStore, ImageRecord
    from renamex.core.taxonomy import Taxonomy
    from renamex.core.threshold import ThresholdGate
    from renamex.ml.image_classifier import ClassificationResult

logger = logging.getLogger(__name__)


class ClassificationMode(StrEnum):
    PENDING = "pending"
    ALL = "all"


class Classifier(Protocol):
    async def classify(self, image: bytes, candidate_labels: Sequence[str]) -> list[ClassificationResult]: ...


class ClassificationScheduler:
    """Single background worker that drains classification passes.

    Args:
        store: Batch whose records are classified.
        classifier: Async classifier, usually a ``ClassifierAdapter``.
        gate: Threshold read when results are applied, not when requested.
        taxonomies: Candidate labels per category.
        timeout: Seconds allowed per classifier call; ``None`` waits forever.
    """

    def __init__(
        self,
        store: BatchStore,
        classifier: Classifier,
        gate: ThresholdGate,
        taxonomies: Mapping[Category, Taxonomy] = TAXONOMIES,
        timeout: float | None = None,
    ) -> None:
        self._store = store
        self._classifier = classifier
        self._gate = gate
        self._taxonomies = taxonomies
        self._timeout = timeout
        self._queued: list[ClassificationMode] = []
        self._worker: asyncio.Task[None] | None = None

    @property
    def busy(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def queued(self) -> list[ClassificationMode]:
        return list(self._queued)

    def request(self, mode: ClassificationMode) -> bool:
        """Queue a pass and make sure the worker is running.

        Returns False if a pass of the same mode was already waiting.
        """
        if mode in self._queued:
            return False
        self._queued.append(mode)
        if not self.busy:
            self._worker = asyncio.get_running_loop().create_task(self._drain(), name="classification-worker")
        return True

    async def wait_idle(self) -> None:
        """Wait until every queued pass has finished."""
        while self._worker is not None and not self._worker.done():
            await asyncio.shield(self._worker)

    async def stop(self) -> None:
        self._queued.clear()
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
        self._worker = None

    async def run_pass(self, mode: ClassificationMode) -> int:
        """Classify records in batch order and return how many were updated."""
        updated = 0
        for record in self._store.records():
            if record.id not in self._store:
                continue
            if mode is ClassificationMode.PENDING and not record.is_pending:
                continue
            if await self.classify_record(record):
                updated += 1
        logger.info("Classification pass '%s' updated %d record(s)", mode, updated)
        return updated

    async def classify_record(self, record: ImageRecord) -> bool:
        """Classify theme and style together; failures leave the record untouched."""
        try:
            # A failing call cancels its sibling before the group exits.
            async with asyncio.TaskGroup() as group:
                theme_call = group.create_task(self._top_prediction(record, Category.THEME))
                style_call = group.create_task(self._top_prediction(record, Category.STYLE))
        except Exception:
            logger.exception("Classification failed for %s", record.original_name)
            return False

        theme, style = theme_call.result(), style_call.result()
        if self._store.get(record.id) is not record:
            logger.debug("Discarding result for removed record %s", record.id)
            return False

        record.apply_predictions(theme, style, self._gate, self._taxonomies)
        return True

    async def _top_prediction(self, record: ImageRecord, category: Category) -> tuple[str, float]:
        candidates = self._taxonomies[category].flatten_candidates()
        results = await asyncio.wait_for(
            self._classifier.classify(record.source, candidates),
            timeout=self._timeout,
        )
        if not results:
            return UNKNOWN_LABEL, 0.0
        return results[0].label, results[0].confidence

    async def _drain(self) -> None:
        while self._queued:
            mode = self._queued.pop(0)
            await self.run_pass(mode)
