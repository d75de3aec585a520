"""Tests for the CLIP classifier and the process-wide classifier adapter."""

from __future__ import annotations

import asyncio
import math
import threading
import time
from types import SimpleNamespace
from typing import TYPE_CHECKING
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from renamex.ml.image_classifier import (
    UNKNOWN_RESULT,
    ClassificationResult,
    ClassifierAdapter,
    ClassifierStatus,
    ClipZeroShotClassifier,
    rank_results,
)
from renamex.ml.inference import InferencePool
from renamex.ml.preprocessing import ClipPreprocessor

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from conftest import FakeClassifier

    from renamex.config import Settings

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_WORDS = {"lion": 1, "wolf": 2, "skull": 3}
_EMBEDDINGS = {
    1: np.array([1.0, 0.0, 0.0], dtype=np.float32),
    2: np.array([0.0, 1.0, 0.0], dtype=np.float32),
    3: np.array([0.6, 0.8, 0.0], dtype=np.float32),
}


class _FakeTokenizer:
    def __init__(self) -> None:
        self.encoded: list[str] = []

    def enable_truncation(self, max_length: int) -> None:
        self.max_length = max_length

    def encode(self, prompt: str) -> SimpleNamespace:
        self.encoded.append(prompt)
        token = _WORDS[prompt.rsplit(" ", 1)[-1]]
        return SimpleNamespace(ids=[49406, token, 49407], attention_mask=[1, 1, 1])


def _session(inputs: list[str], outputs: list[str], run: Callable[..., list[np.ndarray]]) -> MagicMock:
    session = MagicMock()
    session.get_inputs.return_value = [SimpleNamespace(name=name) for name in inputs]
    session.get_outputs.return_value = [SimpleNamespace(name=name) for name in outputs]
    session.run.side_effect = run
    return session


def _text_run(_names: object, feeds: dict[str, np.ndarray]) -> list[np.ndarray]:
    token = int(feeds["input_ids"][0][1])
    hidden = np.zeros((1, 3, 3), dtype=np.float32)
    return [hidden, (_EMBEDDINGS[token] * 5)[np.newaxis, :]]


def _clip(image_embedding: list[float]) -> tuple[ClipZeroShotClassifier, MagicMock, MagicMock, _FakeTokenizer]:
    vision = _session(
        ["pixel_values"],
        ["image_embeds", "last_hidden_state"],
        lambda _names, _feeds: [np.array([image_embedding], dtype=np.float32), np.zeros((1, 2, 3))],
    )
    text = _session(["input_ids"], ["last_hidden_state", "text_embeds"], _text_run)
    tokenizer = _FakeTokenizer()
    classifier = ClipZeroShotClassifier(
        model_name="clip_vit_base_patch32",
        vision_session=vision,
        text_session=text,
        tokenizer=tokenizer,  # type: ignore[arg-type]
        preprocessor=ClipPreprocessor(image_size=8),
    )
    return classifier, vision, text, tokenizer


@pytest.fixture()
def pool(settings: Settings) -> Iterator[InferencePool]:
    inference_pool = InferencePool(settings)
    yield inference_pool
    inference_pool.shutdown()


# ---------------------------------------------------------------------------
# ClipZeroShotClassifier
# ---------------------------------------------------------------------------


class TestClipZeroShotClassifier:
    def test_ranks_closest_label_first(self, make_png: Callable[..., bytes]) -> None:
        classifier, _vision, _text, _tokenizer = _clip([0.0, 2.0, 0.0])

        results = classifier.classify(make_png((10, 20, 30)), ["lion", "wolf", "skull"], "a photo of {}")

        assert [result.label for result in results] == ["wolf", "skull", "lion"]
        assert math.fsum(result.confidence for result in results) == pytest.approx(1.0)
        assert results[0].confidence > 0.99

    def test_applies_text_template(self, make_png: Callable[..., bytes]) -> None:
        classifier, _vision, _text, tokenizer = _clip([1.0, 0.0, 0.0])
        classifier.classify(make_png((0, 0, 0)), ["lion"], "uma foto de {}")
        assert tokenizer.encoded == ["uma foto de lion"]
        assert tokenizer.max_length == 77

    def test_feeds_only_declared_inputs(self, make_png: Callable[..., bytes]) -> None:
        classifier, vision, text, _tokenizer = _clip([1.0, 0.0, 0.0])
        classifier.classify(make_png((0, 0, 0)), ["lion"], "{}")

        text_feeds = text.run.call_args.args[1]
        assert set(text_feeds) == {"input_ids"}
        assert text_feeds["input_ids"].dtype == np.int64
        vision_feeds = vision.run.call_args.args[1]
        assert vision_feeds["pixel_values"].shape == (1, 3, 8, 8)

    def test_text_embeddings_are_cached(self, make_png: Callable[..., bytes]) -> None:
        classifier, vision, text, _tokenizer = _clip([1.0, 0.0, 0.0])
        classifier.classify(make_png((0, 0, 0)), ["lion", "wolf"], "{}")
        classifier.classify(make_png((9, 9, 9)), ["lion", "wolf"], "{}")
        assert text.run.call_count == 2
        assert vision.run.call_count == 2

    def test_no_candidates(self, make_png: Callable[..., bytes]) -> None:
        classifier, vision, _text, _tokenizer = _clip([1.0, 0.0, 0.0])
        assert classifier.classify(make_png((0, 0, 0)), [], "{}") == []
        vision.run.assert_not_called()

    def test_undecodable_image_raises(self) -> None:
        classifier, _vision, _text, _tokenizer = _clip([1.0, 0.0, 0.0])
        with pytest.raises(ValueError, match="image"):
            classifier.classify(b"not an image", ["lion"], "{}")


# ---------------------------------------------------------------------------
# rank_results
# ---------------------------------------------------------------------------


class TestRankResults:
    def test_sorts_descending(self) -> None:
        ranked = rank_results([ClassificationResult("a", 0.1), ClassificationResult("b", 0.7)])
        assert [result.label for result in ranked] == ["b", "a"]

    def test_accepts_label_score_mappings(self) -> None:
        assert rank_results([{"label": "lion", "score": 0.5}]) == [ClassificationResult("lion", 0.5)]

    @pytest.mark.parametrize("raw", [[], None, "lion", [{"label": "", "score": 0.4}], [{"label": "x", "score": "nan"}]])
    def test_empty_or_malformed_becomes_sentinel(self, raw: object) -> None:
        assert rank_results(raw) == [UNKNOWN_RESULT]
        assert UNKNOWN_RESULT == ClassificationResult("unknown", 0.0)

    def test_drops_malformed_entries(self) -> None:
        raw = [{"label": "lion", "score": math.inf}, object(), {"label": "wolf", "score": 0.3}]
        assert rank_results(raw) == [ClassificationResult("wolf", 0.3)]


# ---------------------------------------------------------------------------
# ClassifierAdapter
# ---------------------------------------------------------------------------


class TestClassifierAdapter:
    async def test_concurrent_first_calls_share_one_load(
        self, pool: InferencePool, fake_classifier: FakeClassifier
    ) -> None:
        loads: list[int] = []
        lock = threading.Lock()

        def loader() -> FakeClassifier:
            with lock:
                loads.append(1)
            time.sleep(0.05)
            return fake_classifier

        adapter = ClassifierAdapter(loader=loader, pool=pool)
        assert adapter.status is ClassifierStatus.IDLE

        loaded = await asyncio.gather(*(adapter.ensure_loaded() for _ in range(5)))

        assert len(loads) == 1
        assert all(instance is fake_classifier for instance in loaded)
        assert adapter.status is ClassifierStatus.READY
        assert adapter.model_name == "fake-clip"

    async def test_status_is_loading_while_in_flight(
        self, pool: InferencePool, fake_classifier: FakeClassifier
    ) -> None:
        release = threading.Event()

        def loader() -> FakeClassifier:
            release.wait(timeout=5)
            return fake_classifier

        adapter = ClassifierAdapter(loader=loader, pool=pool)
        pending = asyncio.ensure_future(adapter.ensure_loaded())
        await asyncio.sleep(0.01)
        assert adapter.status is ClassifierStatus.LOADING
        release.set()
        await pending
        assert adapter.status is ClassifierStatus.READY

    async def test_failed_load_is_retried(self, pool: InferencePool, fake_classifier: FakeClassifier) -> None:
        attempts: list[int] = []

        def loader() -> FakeClassifier:
            attempts.append(1)
            if len(attempts) == 1:
                raise OSError("download failed")
            return fake_classifier

        adapter = ClassifierAdapter(loader=loader, pool=pool)
        results = await asyncio.gather(adapter.ensure_loaded(), adapter.ensure_loaded(), return_exceptions=True)
        assert all(isinstance(result, OSError) for result in results)
        assert adapter.status is ClassifierStatus.FAILED

        assert await adapter.ensure_loaded() is fake_classifier
        assert len(attempts) == 2

    async def test_classify_ranks_and_passes_template(
        self, pool: InferencePool, fake_classifier: FakeClassifier
    ) -> None:
        fake_classifier.predictions[b"img"] = [("wolf", 0.2), ("lion", 0.7), ("mandala", 0.9)]
        adapter = ClassifierAdapter(loader=lambda: fake_classifier, pool=pool, text_template="a tattoo of {}")

        results = await adapter.classify(b"img", ("lion", "wolf"))

        assert results == [ClassificationResult("lion", 0.7), ClassificationResult("wolf", 0.2)]
        assert fake_classifier.calls == [(b"img", ["lion", "wolf"], "a tattoo of {}")]

    async def test_classify_empty_output_yields_sentinel(
        self, pool: InferencePool, fake_classifier: FakeClassifier
    ) -> None:
        adapter = ClassifierAdapter(loader=lambda: fake_classifier, pool=pool)
        assert await adapter.classify(b"unseen", ["lion"]) == [UNKNOWN_RESULT]

    async def test_load_reuses_instance(self, pool: InferencePool, fake_classifier: FakeClassifier) -> None:
        loader = MagicMock(return_value=fake_classifier)
        adapter = ClassifierAdapter(loader=loader, pool=pool)
        await adapter.classify(b"a", ["lion"])
        await adapter.classify(b"b", ["lion"])
        loader.assert_called_once_with()


class TestClipLoad:
    @patch("renamex.ml.image_classifier.Tokenizer")
    def test_load_opens_sessions_and_tokenizer(self, mock_tokenizer_cls: MagicMock, settings: Settings) -> None:
        mock_tokenizer_cls.from_file.return_value = _FakeTokenizer()
        manager = MagicMock()
        manager.get_spec.return_value = SimpleNamespace(repo_id="Xenova/clip-vit-base-patch32", image_size=224)
        manager.tokenizer_path.return_value = "/models/tokenizer.json"

        classifier = ClipZeroShotClassifier.load(settings, manager)

        assert classifier.model_name == "clip_vit_base_patch32"
        mock_tokenizer_cls.from_file.assert_called_once_with("/models/tokenizer.json")
        assert [call.args[1] for call in manager.get_session.call_args_list] == ["vision", "text"]
