"""
Data Models
===========
Pydantic models shared by every pipeline stage.
All records are immutable: stages return new values and the coordinator
swaps them into its batch table.
"""

from __future__ import annotations

import hashlib
from datetime import date
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_serializer,
    field_validator,
)

from .exceptions import UnsupportedCombinationError


# ─── Enums ────────────────────────────────────────────────────────────────────


class Slot(str, Enum):
    """Document role required by an exam."""
    PHOTO = "photo"
    SIGNATURE = "signature"
    DOCUMENT = "document"
    UNKNOWN = "unknown"


class OutputFormat(str, Enum):
    """Encodings a slot can require."""
    JPEG = "jpeg"
    PNG = "png"
    PDF = "pdf"

    @property
    def extension(self) -> str:
        return "jpg" if self is OutputFormat.JPEG else self.value

    @property
    def is_raster(self) -> bool:
        return self is not OutputFormat.PDF


class FileStatus(str, Enum):
    """Lifecycle status of a single input file."""
    QUEUED = "queued"
    CLASSIFYING = "classifying"
    CLASSIFIED = "classified"
    FORMATTING = "formatting"
    COMPLETED = "completed"
    ERROR = "error"
    NEEDS_REVIEW = "needs-review"

    @property
    def is_terminal(self) -> bool:
        return self in (
            FileStatus.COMPLETED,
            FileStatus.ERROR,
            FileStatus.NEEDS_REVIEW,
        )


class BatchPhase(str, Enum):
    """Coarse step of the whole batch, for display."""
    IDLE = "idle"
    INITIALIZING = "initializing"
    PROCESSING = "processing"
    FINISHED = "finished"
    PACKAGING = "packaging"
    PACKAGED = "packaged"
    FAILED = "failed"


class FailedPhase(str, Enum):
    """Phase a batch-fatal error happened in, used to scope a retry."""
    INITIALIZATION = "initialization"
    PROCESSING = "processing"
    PACKAGING = "packaging"


# ─── Exam Constraints ─────────────────────────────────────────────────────────


class SlotFormat(BaseModel):
    """Required output for one slot of an exam, as stored in the table."""
    model_config = ConfigDict(frozen=True)

    format: OutputFormat
    width: Optional[int] = Field(default=None, ge=1)
    height: Optional[int] = Field(default=None, ge=1)
    max_size_kb: Optional[int] = Field(
        default=None,
        gt=0,
        description="Per-slot ceiling; falls back to the exam ceiling",
    )


class SlotConstraint(BaseModel):
    """Resolved constraint the formatter must satisfy for one file."""
    model_config = ConfigDict(frozen=True)

    slot: Slot
    format: OutputFormat
    width: Optional[int] = Field(default=None, ge=1)
    height: Optional[int] = Field(default=None, ge=1)
    max_size_bytes: int = Field(gt=0)

    @property
    def is_image(self) -> bool:
        return self.format.is_raster

    @property
    def dimensions(self) -> Optional[tuple[int, int]]:
        if self.width is None or self.height is None:
            return None
        return (self.width, self.height)


class ExamConfig(BaseModel):
    """Submission rules of one examination authority."""
    model_config = ConfigDict(frozen=True)

    exam_id: str
    name: str
    max_file_size_kb: int = Field(gt=0)
    formats: Mapping[Slot, SlotFormat]
    allowed_formats: tuple[str, ...] = ("jpg", "jpeg", "png", "pdf")

    @field_validator("formats", mode="after")
    @classmethod
    def freeze_formats(
        cls, value: Mapping[Slot, SlotFormat]
    ) -> Mapping[Slot, SlotFormat]:
        """Read-only view so shared exam tables cannot be edited in place."""
        return MappingProxyType(dict(value))

    @field_serializer("formats")
    def dump_formats(self, value: Mapping[Slot, SlotFormat]) -> dict:
        return dict(value)

    @computed_field
    @property
    def max_file_size(self) -> int:
        """Exam-wide ceiling in bytes."""
        return self.max_file_size_kb * 1024

    @property
    def slots(self) -> tuple[Slot, ...]:
        order = (Slot.PHOTO, Slot.SIGNATURE, Slot.DOCUMENT)
        return tuple(s for s in order if s in self.formats)

    def accepts(self, input_format: str) -> bool:
        return input_format.lower() in self.allowed_formats

    def constraint_for(self, slot: Slot) -> SlotConstraint:
        """Resolve the constraint for a slot, applying the size override."""
        slot_format = self.formats.get(slot)
        if slot_format is None:
            raise UnsupportedCombinationError(
                f"{self.name} has no '{slot.value}' slot"
            )
        max_kb = slot_format.max_size_kb or self.max_file_size_kb
        return SlotConstraint(
            slot=slot,
            format=slot_format.format,
            width=slot_format.width,
            height=slot_format.height,
            max_size_bytes=max_kb * 1024,
        )


# ─── Stage Inputs / Outputs ───────────────────────────────────────────────────


class RawFile(BaseModel):
    """A user-supplied file: bytes, original name and declared media type."""
    model_config = ConfigDict(frozen=True)

    name: str
    content: bytes = Field(repr=False)
    media_type: str = ""

    @property
    def size(self) -> int:
        return len(self.content)


class ClassificationResult(BaseModel):
    """Slot assignment for one file."""
    model_config = ConfigDict(frozen=True)

    slot: Slot
    confidence: float = Field(ge=0.0, le=1.0)
    detected_format: str
    width: Optional[int] = None
    height: Optional[int] = None
    page_count: Optional[int] = None
    reasons: tuple[str, ...] = ()


class FormattedResult(BaseModel):
    """Output of the formatter, with the achieved properties."""
    model_config = ConfigDict(frozen=True)

    content: bytes = Field(repr=False)
    format: OutputFormat
    width: Optional[int] = None
    height: Optional[int] = None
    page_count: Optional[int] = None
    quality: Optional[int] = Field(
        default=None,
        description="Final JPEG quality or palette size, None when lossless",
    )

    @computed_field
    @property
    def size_bytes(self) -> int:
        return len(self.content)


# ─── Per-file Record ──────────────────────────────────────────────────────────


class ProcessedFile(BaseModel):
    """
    One entry per user-submitted input.
    Owned by the coordinator; replaced wholesale on every transition.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    size: int = Field(ge=0)
    media_type: str = ""
    content: bytes = Field(repr=False)
    slot: Optional[Slot] = None
    confidence: Optional[float] = None
    status: FileStatus = FileStatus.QUEUED
    progress: float = Field(default=0.0, ge=0.0, le=100.0)
    error: Optional[str] = None
    output: Optional[FormattedResult] = None

    @classmethod
    def from_raw(cls, raw: RawFile, index: int) -> "ProcessedFile":
        digest = hashlib.sha256(raw.content).hexdigest()[:10]
        return cls(
            id=f"file-{index:03d}-{digest}",
            name=raw.name,
            size=raw.size,
            media_type=raw.media_type,
            content=raw.content,
        )

    def to_raw(self) -> RawFile:
        return RawFile(
            name=self.name,
            content=self.content,
            media_type=self.media_type,
        )


class ProgressEvent(BaseModel):
    """One value on a file's progress channel."""
    model_config = ConfigDict(frozen=True)

    file_id: str
    status: FileStatus
    progress: float
    message: Optional[str] = None

    @property
    def is_final(self) -> bool:
        return self.status.is_terminal


class BatchError(BaseModel):
    """Last batch-fatal error, shown once at the top level."""
    model_config = ConfigDict(frozen=True)

    phase: FailedPhase
    message: str


class BatchSnapshot(BaseModel):
    """Read-only view of the whole batch after a transition."""
    model_config = ConfigDict(frozen=True)

    exam_id: str
    phase: BatchPhase = BatchPhase.IDLE
    files: tuple[ProcessedFile, ...] = ()
    error: Optional[BatchError] = None

    def count(self, status: FileStatus) -> int:
        return sum(1 for f in self.files if f.status is status)

    @computed_field
    @property
    def overall_progress(self) -> float:
        if not self.files:
            return 0.0
        return round(sum(f.progress for f in self.files) / len(self.files), 2)

    @computed_field
    @property
    def completed_count(self) -> int:
        return self.count(FileStatus.COMPLETED)

    @computed_field
    @property
    def error_count(self) -> int:
        return self.count(FileStatus.ERROR)

    @computed_field
    @property
    def needs_review_count(self) -> int:
        return self.count(FileStatus.NEEDS_REVIEW)

    @computed_field
    @property
    def is_finished(self) -> bool:
        return bool(self.files) and all(
            f.status.is_terminal for f in self.files
        )

    @computed_field
    @property
    def ready_to_package(self) -> bool:
        return self.is_finished and self.completed_count > 0

    @computed_field
    @property
    def failed(self) -> bool:
        """Finished without a single completed file."""
        return self.is_finished and self.completed_count == 0

    def get(self, file_id: str) -> Optional[ProcessedFile]:
        for f in self.files:
            if f.id == file_id:
                return f
        return None


class BatchReport(BaseModel):
    """Post-run summary of a batch."""
    total_files: int = 0
    completed: int = 0
    errors: int = 0
    needs_review: int = 0
    pending: int = 0
    slot_breakdown: dict[str, int] = Field(default_factory=dict)
    failed_files: list[str] = Field(default_factory=list)
    review_files: list[str] = Field(default_factory=list)
    total_input_bytes: int = 0
    total_output_bytes: int = 0

    @computed_field
    @property
    def success_rate(self) -> float:
        if self.total_files == 0:
            return 0.0
        return round(self.completed / self.total_files * 100, 2)


# ─── Packaging ────────────────────────────────────────────────────────────────


class ArchiveEntry(BaseModel):
    """A completed file with its final name inside the archive."""
    model_config = ConfigDict(frozen=True)

    name: str
    content: bytes = Field(repr=False)
    slot: Slot
    source_name: str = ""
    width: Optional[int] = None
    height: Optional[int] = None


class ConversionResult(BaseModel):
    """Archive produced by the packager."""
    model_config = ConfigDict(frozen=True)

    exam_id: str
    archive_name: str
    content: bytes = Field(repr=False)
    files: tuple[str, ...] = ()
    created: date = Field(default_factory=date.today)

    @computed_field
    @property
    def size_bytes(self) -> int:
        return len(self.content)
