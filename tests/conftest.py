"""Shared fixtures: synthetic images and a deterministic classifier."""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import pytest
from PIL import Image

from renamex.config import Settings
from renamex.ml.image_classifier import ClassificationResult

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from pathlib import Path


class FakeClassifier:
    """Synchronous classifier returning canned predictions per image payload.

    ``predictions[image]`` lists ``(label, score)`` pairs; only pairs whose
    label is among the requested candidates are returned.
    """

    model_name = "fake-clip"

    def __init__(self) -> None:
        self.predictions: dict[bytes, list[tuple[str, float]]] = {}
        self.calls: list[tuple[bytes, list[str], str]] = []

    def classify(
        self, image: bytes, candidate_labels: Sequence[str], text_template: str
    ) -> list[ClassificationResult]:
        self.calls.append((image, list(candidate_labels), text_template))
        results = [
            ClassificationResult(label=label, confidence=score)
            for label, score in self.predictions.get(image, [])
            if label in candidate_labels
        ]
        return sorted(results, key=lambda result: result.confidence, reverse=True)


def _png(color: tuple[int, int, int], size: tuple[int, int] = (32, 24)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture()
def make_png() -> Callable[..., bytes]:
    """Factory for small solid-color PNG files."""
    return _png


@pytest.fixture()
def fake_classifier() -> FakeClassifier:
    return FakeClassifier()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(models_dir=str(tmp_path), max_concurrent=2)
