"""Pydantic request/response schemas for the RenameX API."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator


class LabelInfo(BaseModel):
    """Effective label of one attribute plus the raw prediction behind it."""

    label: str = Field(description="Effective label: taxonomy key, 'unknown', or an unmatched raw label")
    raw_label: str | None = Field(default=None, description="Label returned by the classifier")
    score: float | None = Field(default=None, description="Classifier confidence (0.0-1.0), null until classified")
    edited: bool = Field(default=False, description="Label was set by hand")
    taxonomy_miss: bool = Field(default=False, description="Raw label matched no taxonomy entry")


class ImageItem(BaseModel):
    """One image of the batch as currently displayed and exported."""

    id: str
    ordinal: int = Field(description="1-based position in the batch")
    original_name: str
    content_type: str
    theme: LabelInfo
    style: LabelInfo
    name_override: str
    auto_name: str
    display_name: str = Field(description="Override when set, otherwise the automatic name")
    pending: bool
    needs_review: bool


class BatchResponse(BaseModel):
    """The whole batch in order."""

    items: list[ImageItem]
    count: int
    threshold: float
    classifier_status: str
    classifying: bool


class SkippedFile(BaseModel):
    filename: str
    reason: str


class UploadResponse(BaseModel):
    """Result of an ingestion request."""

    added: list[ImageItem]
    skipped: list[SkippedFile]


class ImageUpdate(BaseModel):
    """Hand edits to a record. Omitted fields are left as they are."""

    model_config = ConfigDict(extra="forbid")

    theme: str | None = None
    style: str | None = None
    name_override: str | None = Field(default=None, description="Empty string clears the override")


class ThresholdResponse(BaseModel):
    value: float = Field(description="Confidence cutoff (0.0-1.0)")
    percent: float = Field(description="Same cutoff on a 0-100 scale")


class ThresholdUpdate(BaseModel):
    """New threshold, given either as a fraction or as a percentage."""

    model_config = ConfigDict(extra="forbid")

    value: float | None = Field(default=None, ge=0.0, le=1.0)
    percent: float | None = Field(default=None, ge=0.0, le=100.0)

    @model_validator(mode="after")
    def _exactly_one(self) -> ThresholdUpdate:
        if (self.value is None) == (self.percent is None):
            raise ValueError("Provide exactly one of 'value' or 'percent'")
        return self

    def as_fraction(self) -> float:
        if self.value is not None:
            return self.value
        if self.percent is not None:
            return self.percent / 100.0
        raise ValueError("Provide exactly one of 'value' or 'percent'")


class TaxonomyEntry(BaseModel):
    key: str
    candidates: list[str]


class TaxonomyResponse(BaseModel):
    theme: list[TaxonomyEntry]
    style: list[TaxonomyEntry]


class ReclassifyResponse(BaseModel):
    scheduled: bool = Field(description="False if an identical pass was already waiting")
    count: int


class ClearResponse(BaseModel):
    removed: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    classifier: str = Field(description="Classifier status: 'idle', 'loading', 'ready', or 'failed'")
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int
    batch_size: int
    classifying: bool


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    repo_id: str
    status: str = Field(description="Model status: 'active', 'loaded', or 'available'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
