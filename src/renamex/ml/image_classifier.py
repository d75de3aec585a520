"""Zero-shot image classification.

``ClipZeroShotClassifier`` runs CLIP over ONNX: the image and one prompt per
candidate label are embedded, and the scaled cosine similarities are
softmaxed into a ranked list. ``ClassifierAdapter`` owns the single,
lazily-loaded classifier instance shared by the whole process.
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

import numpy as np
from tokenizers import Tokenizer

from renamex.core.taxonomy import UNKNOWN_LABEL
from renamex.ml.model_manager import ModelComponent
from renamex.ml.preprocessing import ClipPreprocessor

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

    from renamex.config import Settings
    from renamex.ml.inference import InferencePool
    from renamex.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)

DEFAULT_TEXT_TEMPLATE = "uma foto de {}"
CLIP_LOGIT_SCALE: float = 100.0
CLIP_MAX_TEXT_LENGTH = 77


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    confidence: float


UNKNOWN_RESULT = ClassificationResult(label=UNKNOWN_LABEL, confidence=0.0)


class ImageClassifier(Protocol):
    """Protocol for zero-shot image classifiers."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(
        self, image: bytes, candidate_labels: Sequence[str], text_template: str
    ) -> list[ClassificationResult]:
        """Score an image against candidate labels.

        Args:
            image: Raw image file bytes.
            candidate_labels: Labels to choose from, in prompt order.
            text_template: Prompt template; ``{}`` is replaced by each label.

        Returns:
            List of classification results sorted by confidence (descending).
        """
        ...


def _softmax(logits: NDArray[np.float32]) -> NDArray[np.float32]:
    shifted = np.exp(logits - np.max(logits))
    return shifted / shifted.sum()


def _l2_normalize(vector: NDArray[np.float32]) -> NDArray[np.float32]:
    norm = float(np.linalg.norm(vector))
    return vector / norm if norm > 0 else vector


def _run_embedding(session: InferenceSession, feeds: dict[str, np.ndarray], output_name: str) -> NDArray[np.float32]:
    """Run a session, feeding only the inputs it declares, and return one embedding."""
    accepted = {node.name for node in session.get_inputs()}
    outputs = session.run(None, {name: value for name, value in feeds.items() if name in accepted})
    names = [node.name for node in session.get_outputs()]
    index = names.index(output_name) if output_name in names else 0
    return np.asarray(outputs[index], dtype=np.float32)[0]


class ClipZeroShotClassifier:
    """CLIP zero-shot classification over ONNX vision and text encoders.

    Text embeddings are cached per prompt; taxonomies are static so after the
    first image only the vision encoder runs.
    """

    def __init__(
        self,
        model_name: str,
        vision_session: InferenceSession,
        text_session: InferenceSession,
        tokenizer: Tokenizer,
        preprocessor: ClipPreprocessor,
    ) -> None:
        self._model_name = model_name
        self._vision = vision_session
        self._text = text_session
        self._tokenizer = tokenizer
        self._tokenizer.enable_truncation(max_length=CLIP_MAX_TEXT_LENGTH)
        self._preprocessor = preprocessor
        self._text_cache: dict[str, NDArray[np.float32]] = {}
        self._cache_lock = threading.Lock()

    @classmethod
    def load(cls, settings: Settings, model_manager: ModelManager) -> ClipZeroShotClassifier:
        """Download (if needed) and open every file the configured model needs."""
        model_name = settings.clip_model
        spec = model_manager.get_spec(model_name)
        logger.info("Loading CLIP model %s from %s", model_name, spec.repo_id)
        return cls(
            model_name=model_name,
            vision_session=model_manager.get_session(model_name, ModelComponent.VISION),
            text_session=model_manager.get_session(model_name, ModelComponent.TEXT),
            tokenizer=Tokenizer.from_file(str(model_manager.tokenizer_path(model_name))),
            preprocessor=ClipPreprocessor(
                image_size=spec.image_size,
                max_image_pixels=settings.max_image_pixels,
            ),
        )

    @property
    def model_name(self) -> str:
        return self._model_name

    def classify(
        self, image: bytes, candidate_labels: Sequence[str], text_template: str
    ) -> list[ClassificationResult]:
        if not candidate_labels:
            return []

        image_embedding = self._encode_image(image)
        text_embeddings = np.stack(
            [self._encode_text(text_template.replace("{}", label)) for label in candidate_labels]
        )
        logits = CLIP_LOGIT_SCALE * (text_embeddings @ image_embedding)
        probabilities = _softmax(logits)

        results = [
            ClassificationResult(label=label, confidence=float(probability))
            for label, probability in zip(candidate_labels, probabilities, strict=True)
        ]
        results.sort(key=lambda result: result.confidence, reverse=True)
        return results

    def _encode_image(self, image: bytes) -> NDArray[np.float32]:
        pixel_values = self._preprocessor.preprocess(image)
        return _l2_normalize(_run_embedding(self._vision, {"pixel_values": pixel_values}, "image_embeds"))

    def _encode_text(self, prompt: str) -> NDArray[np.float32]:
        with self._cache_lock:
            cached = self._text_cache.get(prompt)
        if cached is not None:
            return cached

        encoding = self._tokenizer.encode(prompt)
        feeds = {
            "input_ids": np.asarray([encoding.ids], dtype=np.int64),
            "attention_mask": np.asarray([encoding.attention_mask], dtype=np.int64),
        }
        embedding = _l2_normalize(_run_embedding(self._text, feeds, "text_embeds"))
        with self._cache_lock:
            self._text_cache[prompt] = embedding
        return embedding


# ---------------------------------------------------------------------------
# Process-wide adapter
# ---------------------------------------------------------------------------


class ClassifierStatus(StrEnum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


def _coerce_result(item: object) -> ClassificationResult | None:
    if isinstance(item, ClassificationResult):
        label, score = item.label, item.confidence
    elif isinstance(item, Mapping):
        label, score = item.get("label"), item.get("score", item.get("confidence"))
    else:
        return None
    if not isinstance(label, str) or not label or isinstance(score, bool):
        return None
    try:
        score = float(score)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if not math.isfinite(score):
        return None
    return ClassificationResult(label=label, confidence=score)


def rank_results(raw: object) -> list[ClassificationResult]:
    """Validate classifier output and rank it by confidence.

    Malformed entries are dropped. When nothing usable remains the result is
    the zero-confidence ``"unknown"`` sentinel.
    """
    if not isinstance(raw, (list, tuple)):
        return [UNKNOWN_RESULT]
    results = [result for result in map(_coerce_result, raw) if result is not None]
    if not results:
        return [UNKNOWN_RESULT]
    return sorted(results, key=lambda result: result.confidence, reverse=True)


class ClassifierAdapter:
    """Lazily loads one classifier and serves every classification call.

    The first caller starts the load; concurrent callers await the same
    in-flight future. A failed load is raised to every waiter and the next
    call starts a fresh attempt.
    """

    def __init__(
        self,
        loader: Callable[[], ImageClassifier],
        pool: InferencePool,
        text_template: str = DEFAULT_TEXT_TEMPLATE,
    ) -> None:
        self._loader = loader
        self._pool = pool
        self._text_template = text_template
        self._classifier: ImageClassifier | None = None
        self._loading: asyncio.Future[ImageClassifier] | None = None
        self._status = ClassifierStatus.IDLE

    @property
    def status(self) -> ClassifierStatus:
        return self._status

    @property
    def model_name(self) -> str | None:
        return self._classifier.model_name if self._classifier is not None else None

    async def ensure_loaded(self) -> ImageClassifier:
        if self._classifier is not None:
            return self._classifier
        if self._loading is None:
            self._loading = asyncio.ensure_future(self._load())
        return await asyncio.shield(self._loading)

    async def classify(self, image: bytes, candidate_labels: Sequence[str]) -> list[ClassificationResult]:
        """Return ranked (label, score) results, or the ``"unknown"`` sentinel."""
        classifier = await self.ensure_loaded()
        raw = await self._pool.run(classifier.classify, image, list(candidate_labels), self._text_template)
        return rank_results(raw)

    async def _load(self) -> ImageClassifier:
        self._status = ClassifierStatus.LOADING
        logger.info("Initializing classifier")
        try:
            classifier = await self._pool.run(self._loader)
        except Exception:
            self._status = ClassifierStatus.FAILED
            self._loading = None
            logger.exception("Classifier initialization failed")
            raise
        self._classifier = classifier
        self._status = ClassifierStatus.READY
        logger.info("Classifier ready (%s)", classifier.model_name)
        return classifier
