"""API route definitions."""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile, status
from fastapi.responses import Response

from renamex.api.middleware import verify_api_key
from renamex.api.schemas import (
    BatchResponse,
    ClearResponse,
    ErrorResponse,
    HealthResponse,
    ImageItem,
    ImageUpdate,
    LabelInfo,
    ModelInfo,
    ModelsResponse,
    ReclassifyResponse,
    SkippedFile,
    TaxonomyEntry,
    TaxonomyResponse,
    ThresholdResponse,
    ThresholdUpdate,
    UploadResponse,
)
from renamex.core.batch import ImageRecord
from renamex.core.export import ARCHIVE_FILENAME, MANIFEST_FILENAME, build_archive, build_manifest
from renamex.core.naming import compute_auto_name, resolve_name
from renamex.core.scheduler import ClassificationMode
from renamex.core.taxonomy import TAXONOMIES, Category
from renamex.ml.model_manager import MODEL_REGISTRY
from renamex.ml.preprocessing import is_image_upload

if TYPE_CHECKING:
    from renamex.config import Settings
    from renamex.core.batch import BatchStore, LabelState
    from renamex.core.scheduler import ClassificationScheduler
    from renamex.core.taxonomy import Taxonomy
    from renamex.core.threshold import ThresholdGate
    from renamex.ml.image_classifier import ClassifierAdapter
    from renamex.ml.inference import InferencePool
    from renamex.ml.model_manager import OnnxModelManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_NOT_FOUND = {status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}}
_EMPTY_BATCH = {status.HTTP_409_CONFLICT: {"model": ErrorResponse}}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_store(request: Request) -> BatchStore:
    store: BatchStore = request.app.state.store
    return store


def _get_gate(request: Request) -> ThresholdGate:
    gate: ThresholdGate = request.app.state.threshold_gate
    return gate


def _get_classifier(request: Request) -> ClassifierAdapter:
    classifier: ClassifierAdapter = request.app.state.classifier
    return classifier


def _get_scheduler(request: Request) -> ClassificationScheduler:
    scheduler: ClassificationScheduler = request.app.state.scheduler
    return scheduler


def _get_record(request: Request, image_id: str) -> ImageRecord:
    record = _get_store(request).get(image_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Image not found: {image_id}")
    return record


def _require_items(store: BatchStore) -> None:
    if len(store) == 0:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Batch is empty; nothing to export")


def _label_info(state: LabelState) -> LabelInfo:
    return LabelInfo(
        label=state.label,
        raw_label=state.raw_label,
        score=state.score if math.isfinite(state.score) else None,
        edited=state.edited,
        taxonomy_miss=state.taxonomy_miss,
    )


def _to_item(record: ImageRecord, ordinal: int) -> ImageItem:
    return ImageItem(
        id=record.id,
        ordinal=ordinal,
        original_name=record.original_name,
        content_type=record.content_type,
        theme=_label_info(record.theme),
        style=_label_info(record.style),
        name_override=record.name_override,
        auto_name=compute_auto_name(record.theme.label, record.style.label, ordinal),
        display_name=resolve_name(record.name_override, record.theme.label, record.style.label, ordinal),
        pending=record.is_pending,
        needs_review=record.needs_review,
    )


def _taxonomy_entries(taxonomy: Taxonomy) -> list[TaxonomyEntry]:
    return [TaxonomyEntry(key=option.key, candidates=list(option.candidates)) for option in taxonomy]


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------


@router.post(
    "/batch/images",
    response_model=UploadResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add images to the batch",
)
async def upload_images(request: Request, files: list[UploadFile]) -> UploadResponse:
    """Append uploaded images and start classifying the pending ones.

    Files that are not images, empty, or larger than the configured limit are
    skipped and reported.
    """
    settings = _get_settings(request)
    store = _get_store(request)

    added: list[ImageRecord] = []
    skipped: list[SkippedFile] = []
    for upload in files:
        filename = upload.filename or "image"
        if not is_image_upload(upload.content_type, filename):
            skipped.append(SkippedFile(filename=filename, reason="not an image"))
            continue
        payload = await upload.read()
        if not payload:
            skipped.append(SkippedFile(filename=filename, reason="empty file"))
            continue
        if len(payload) > settings.max_file_size:
            skipped.append(SkippedFile(filename=filename, reason="file too large"))
            continue
        added.append(
            store.append(
                ImageRecord(
                    original_name=filename,
                    source=payload,
                    content_type=upload.content_type or "application/octet-stream",
                )
            )
        )

    logger.info("Ingested %d image(s), skipped %d", len(added), len(skipped))
    if added:
        _get_scheduler(request).request(ClassificationMode.PENDING)

    # Records removed while later files were still being read are not reported.
    ordinals = {record.id: ordinal for ordinal, record, _name in store.named_records()}
    return UploadResponse(
        added=[_to_item(record, ordinals[record.id]) for record in added if record.id in ordinals],
        skipped=skipped,
    )


@router.get("/batch", response_model=BatchResponse, summary="List the batch")
async def get_batch(request: Request) -> BatchResponse:
    """Return every image in batch order with its current labels and names."""
    store = _get_store(request)
    items = [_to_item(record, ordinal) for ordinal, record, _name in store.named_records()]
    return BatchResponse(
        items=items,
        count=len(items),
        threshold=_get_gate(request).value,
        classifier_status=_get_classifier(request).status.value,
        classifying=_get_scheduler(request).busy,
    )


@router.delete("/batch", response_model=ClearResponse, summary="Clear the batch")
async def clear_batch(request: Request) -> ClearResponse:
    removed = _get_store(request).clear()
    logger.info("Cleared batch (%d image(s))", removed)
    return ClearResponse(removed=removed)


@router.post("/batch/reclassify", response_model=ReclassifyResponse, summary="Reclassify every image")
async def reclassify(request: Request) -> ReclassifyResponse:
    """Schedule classification of every record, including already classified ones."""
    store = _get_store(request)
    scheduled = _get_scheduler(request).request(ClassificationMode.ALL) if len(store) else False
    return ReclassifyResponse(scheduled=scheduled, count=len(store))


@router.get("/batch/images/{image_id}", response_model=ImageItem, responses=_NOT_FOUND, summary="Get one image")
async def get_image(request: Request, image_id: str) -> ImageItem:
    record = _get_record(request, image_id)
    return _to_item(record, _get_store(request).ordinal(image_id))


@router.get("/batch/images/{image_id}/source", responses=_NOT_FOUND, summary="Original image bytes")
async def get_image_source(request: Request, image_id: str) -> Response:
    record = _get_record(request, image_id)
    return Response(content=record.source, media_type=record.content_type)


@router.patch("/batch/images/{image_id}", response_model=ImageItem, responses=_NOT_FOUND, summary="Edit an image")
async def update_image(request: Request, image_id: str, update: ImageUpdate) -> ImageItem:
    """Apply hand edits to labels and the name override."""
    record = _get_record(request, image_id)
    if update.theme is not None:
        record.theme.edit(update.theme)
    if update.style is not None:
        record.style.edit(update.style)
    if update.name_override is not None:
        record.name_override = update.name_override
    return _to_item(record, _get_store(request).ordinal(image_id))


@router.post(
    "/batch/images/{image_id}/auto-name",
    response_model=ImageItem,
    responses=_NOT_FOUND,
    summary="Pin the automatic name",
)
async def freeze_auto_name(request: Request, image_id: str) -> ImageItem:
    """Set the override to the current automatic name so later changes keep it."""
    record = _get_record(request, image_id)
    store = _get_store(request)
    record.name_override = store.auto_name(record)
    return _to_item(record, store.ordinal(image_id))


@router.delete(
    "/batch/images/{image_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses=_NOT_FOUND,
    summary="Remove an image",
)
async def remove_image(request: Request, image_id: str) -> Response:
    if not _get_store(request).remove(image_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Image not found: {image_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Exports
# ---------------------------------------------------------------------------


@router.get("/batch/manifest.csv", responses=_EMPTY_BATCH, summary="Download the rename manifest")
async def download_manifest(request: Request) -> Response:
    store = _get_store(request)
    _require_items(store)
    return Response(
        content=build_manifest(store),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{MANIFEST_FILENAME}"'},
    )


@router.get("/batch/archive.zip", responses=_EMPTY_BATCH, summary="Download the renamed images")
async def download_archive(request: Request) -> Response:
    store = _get_store(request)
    _require_items(store)
    return Response(
        content=build_archive(store),
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{ARCHIVE_FILENAME}"'},
    )


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@router.get("/threshold", response_model=ThresholdResponse, summary="Current confidence threshold")
async def get_threshold(request: Request) -> ThresholdResponse:
    gate = _get_gate(request)
    return ThresholdResponse(value=gate.value, percent=gate.percent)


@router.put("/threshold", response_model=ThresholdResponse, summary="Change the confidence threshold")
async def set_threshold(request: Request, update: ThresholdUpdate) -> ThresholdResponse:
    """Store the new threshold and recompute every effective label from raw predictions."""
    gate = _get_gate(request)
    gate.value = update.as_fraction()
    _get_store(request).reapply_threshold(gate, TAXONOMIES)
    logger.info("Threshold set to %s", gate.value)
    return ThresholdResponse(value=gate.value, percent=gate.percent)


@router.get("/taxonomy", response_model=TaxonomyResponse, summary="Candidate labels")
async def get_taxonomy() -> TaxonomyResponse:
    return TaxonomyResponse(
        theme=_taxonomy_entries(TAXONOMIES[Category.THEME]),
        style=_taxonomy_entries(TAXONOMIES[Category.STYLE]),
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    model_manager: OnnxModelManager = request.app.state.model_manager
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        classifier=_get_classifier(request).status.value,
        models_loaded=model_manager.get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
        batch_size=len(_get_store(request)),
        classifying=_get_scheduler(request).busy,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return available CLIP models and their status based on current configuration."""
    settings = _get_settings(request)
    model_manager: OnnxModelManager = request.app.state.model_manager
    loaded = set(model_manager.get_loaded_models())

    models: list[ModelInfo] = []
    for spec in MODEL_REGISTRY.values():
        if spec.name in loaded:
            model_status = "loaded"
        elif spec.name == settings.clip_model:
            model_status = "active"
        else:
            model_status = "available"
        models.append(
            ModelInfo(
                name=spec.name,
                repo_id=spec.repo_id,
                status=model_status,
                license=spec.license,
            )
        )

    return ModelsResponse(models=models)
