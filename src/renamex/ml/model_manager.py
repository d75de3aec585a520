"""Model manager: download, load and cache ONNX CLIP models.

Handles downloading the vision encoder, text encoder and tokenizer of a CLIP
export from HuggingFace and creating cached ONNX InferenceSessions for the
configured device.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

if TYPE_CHECKING:
    from renamex.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelComponent(StrEnum):
    VISION = "vision"
    TEXT = "text"


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def get_spec(self, model_name: str) -> ModelSpec:
        """Return registry metadata for a model."""
        ...

    def ensure_downloaded(self, model_name: str, filename: str) -> Path:
        """Ensure a model file is downloaded and return its path."""
        ...

    def get_session(self, model_name: str, component: ModelComponent) -> InferenceSession:
        """Return a cached or newly created InferenceSession."""
        ...

    def tokenizer_path(self, model_name: str) -> Path:
        """Return the local path of the model's tokenizer.json."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for one ONNX CLIP export."""

    name: str
    repo_id: str
    license: str
    image_size: int = 224
    tokenizer_file: str = "tokenizer.json"

    def component_file(self, component: ModelComponent, *, quantized: bool = False) -> str:
        suffix = "_quantized" if quantized else ""
        return f"onnx/{component}_model{suffix}.onnx"


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "clip_vit_base_patch32": ModelSpec(
        name="clip_vit_base_patch32",
        repo_id="Xenova/clip-vit-base-patch32",
        license="MIT",
    ),
    "clip_vit_base_patch16": ModelSpec(
        name="clip_vit_base_patch16",
        repo_id="Xenova/clip-vit-base-patch16",
        license="MIT",
    ),
    "clip_vit_large_patch14": ModelSpec(
        name="clip_vit_large_patch14",
        repo_id="Xenova/clip-vit-large-patch14",
        license="MIT",
    ),
}


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Downloads, loads and caches ONNX inference sessions."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._sessions: dict[tuple[str, ModelComponent], InferenceSession] = {}
        self._file_paths: dict[tuple[str, str], Path] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def get_spec(self, model_name: str) -> ModelSpec:
        try:
            return MODEL_REGISTRY[model_name]
        except KeyError:
            raise KeyError(f"Unknown model: {model_name}") from None

    def ensure_downloaded(self, model_name: str, filename: str) -> Path:
        """Download a model file from HuggingFace if not already present locally."""
        spec = self.get_spec(model_name)

        cached = self._file_paths.get((model_name, filename))
        if cached is not None and cached.exists():
            return cached

        downloaded = Path(
            hf_hub_download(
                repo_id=spec.repo_id,
                filename=filename,
                local_dir=str(self._models_dir / spec.name),
            )
        )
        self._file_paths[(model_name, filename)] = downloaded
        logger.info("Downloaded %s/%s to %s", model_name, filename, downloaded)
        return downloaded

    def tokenizer_path(self, model_name: str) -> Path:
        return self.ensure_downloaded(model_name, self.get_spec(model_name).tokenizer_file)

    def get_session(self, model_name: str, component: ModelComponent) -> InferenceSession:
        """Return a cached InferenceSession, creating one if needed."""
        key = (model_name, component)
        with self._lock:
            cached = self._sessions.get(key)
            if cached is not None:
                return cached

        filename = self.get_spec(model_name).component_file(component, quantized=self._settings.quantized)
        model_path = self.ensure_downloaded(model_name, filename)
        session = InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=self._providers,
        )

        with self._lock:
            # Double-check: another thread may have created it while we loaded.
            existing = self._sessions.get(key)
            if existing is not None:
                return existing
            self._sessions[key] = session
            logger.info("Loaded %s session for %s", component, model_name)
            return session

    def get_loaded_models(self) -> list[str]:
        """Return names of models with at least one active session."""
        with self._lock:
            return list(dict.fromkeys(name for name, _component in self._sessions))

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        with self._lock:
            self._sessions.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
