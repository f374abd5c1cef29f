"""
Data model for Evermark creation.

Request inputs, storage descriptors, chain receipts and the durable index
record. All models are pydantic so they serialise straight into Firestore
documents and FastAPI responses.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


# ---------------------------------------------------------------------------
# Content references
# ---------------------------------------------------------------------------


class ContentType(str, Enum):
    DOI = "DOI"
    ISBN = "ISBN"
    URL = "URL"
    SOCIAL_POST = "SocialPost"
    CUSTOM = "Custom"
    BOOK_RECORD = "BookRecord"


class ContentReference(BaseModel):
    """What is being preserved. Immutable once submitted."""
    model_config = ConfigDict(frozen=True)

    source_url: str = ""
    content_type: ContentType = ContentType.CUSTOM


class DuplicateConfidence(str, Enum):
    EXACT = "exact"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class DuplicateCheck(BaseModel):
    """Advisory verdict from the duplicate guard."""
    exists: bool = False
    confidence: DuplicateConfidence = DuplicateConfidence.LOW
    matched_record_id: Optional[str] = None
    duplicate_type: str = "normalized_url"
    message: str = ""


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class ImageAsset(BaseModel):
    """Location descriptor for an uploaded image.

    ``primary_url`` is always resolvable; ``content_hash`` and
    ``secondary_url`` are only set when content-addressed replication worked.
    """
    primary_url: str
    storage_path: str
    secondary_url: Optional[str] = None
    content_hash: Optional[str] = None
    byte_size: int = 0
    mime_type: str = "image/jpeg"
    dimensions: Optional[str] = None  # "WIDTHxHEIGHT"


class MetadataDocument(BaseModel):
    """Token metadata: fixed envelope plus the ``evermark`` namespace."""
    name: str
    description: str = ""
    image: str
    external_url: Optional[str] = None
    attributes: list[dict[str, Any]] = Field(default_factory=list)
    evermark: dict[str, Any] = Field(default_factory=dict)


class PublishedMetadata(BaseModel):
    uri: str
    primary_url: str
    content_hash: Optional[str] = None


# ---------------------------------------------------------------------------
# Chain
# ---------------------------------------------------------------------------


class MintReceipt(BaseModel):
    tx_hash: str
    token_id: Optional[str] = None
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    warning: Optional[str] = None


class BatchMintItem(BaseModel):
    metadata_uri: str
    title: str
    creator: str


class BatchMintRequest(BaseModel):
    items: list[BatchMintItem]
    referrer: Optional[str] = None


class BatchMintReceipt(BaseModel):
    tx_hash: str
    token_ids: list[str] = Field(default_factory=list)
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    warning: Optional[str] = None


class ContractInfo(BaseModel):
    minting_fee_wei: int
    is_paused: bool
    total_supply: int
    referral_percentage: int
    max_batch_size: int = 10
    fallbacks: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Index store
# ---------------------------------------------------------------------------


class Season(BaseModel):
    number: int
    start_time: datetime
    end_time: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start_time <= moment <= self.end_time


class EvermarkRecord(BaseModel):
    """Queryable projection of a minted Evermark.

    The chain is authoritative for ``token_id``/``tx_hash``; everything else is
    a best-effort cache.
    """
    token_id: Optional[str] = None
    tx_hash: str
    content_reference: ContentReference
    metadata_uri: str
    image_asset: ImageAsset
    title: str
    author: str
    description: str = ""
    tags: list[str] = Field(default_factory=list)
    creator_address: str = ""
    referrer_address: Optional[str] = None
    content_identifier: str = ""
    normalized_url: str = ""
    verified: bool = False
    season: Optional[int] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_document(self) -> dict:
        return self.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Step outcomes (best-effort stages report instead of raising)
# ---------------------------------------------------------------------------


class StepStatus(str, Enum):
    OK = "ok"
    OK_WITH_WARNING = "ok_with_warning"
    ERR = "err"


class StepOutcome(BaseModel):
    step: str
    status: StepStatus
    value: Any = None
    warning: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, step: str, value: Any = None) -> "StepOutcome":
        return cls(step=step, status=StepStatus.OK, value=value)

    @classmethod
    def ok_with_warning(cls, step: str, warning: str, value: Any = None) -> "StepOutcome":
        return cls(step=step, status=StepStatus.OK_WITH_WARNING, value=value, warning=warning)

    @classmethod
    def err(cls, step: str, error: str) -> "StepOutcome":
        return cls(step=step, status=StepStatus.ERR, error=error)

    @property
    def succeeded(self) -> bool:
        return self.status != StepStatus.ERR


# ---------------------------------------------------------------------------
# Creation request / result
# ---------------------------------------------------------------------------


class EvermarkInput(BaseModel):
    """User-supplied fields for a new Evermark."""
    title: str
    author: str
    description: str = ""
    content_type: ContentType = ContentType.CUSTOM
    source_url: str = ""
    doi: Optional[str] = None
    isbn: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    custom_fields: list[dict[str, str]] = Field(default_factory=list)
    creator_address: str = ""
    referrer: Optional[str] = None
    allow_duplicate: bool = False

    @property
    def content_reference(self) -> ContentReference:
        return ContentReference(source_url=self.source_url.strip(), content_type=self.content_type)


class CreationStatus(str, Enum):
    SUCCEEDED = "succeeded"
    PARTIAL = "partial"      # tx broadcast, outcome needs manual follow-up
    FAILED = "failed"
    REJECTED = "rejected"    # blocked before any side effect


class ProgressEvent(BaseModel):
    percent: int
    step: str


class CreationResult(BaseModel):
    status: CreationStatus
    message: str
    stage: str = ""
    progress: int = 0
    error_kind: Optional[str] = None
    tx_hash: Optional[str] = None
    token_id: Optional[str] = None
    metadata_uri: Optional[str] = None
    image: Optional[ImageAsset] = None
    receipt: Optional[MintReceipt] = None
    record: Optional[EvermarkRecord] = None
    duplicate: Optional[DuplicateCheck] = None
    field_errors: list[dict[str, str]] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    needs_reconciliation: bool = False
    events: list[ProgressEvent] = Field(default_factory=list)

    @computed_field
    @property
    def success(self) -> bool:
        return self.status == CreationStatus.SUCCEEDED
