"""
Job payload schema.

Every job in the queue carries one batch of canonical rows plus the
bookkeeping the row processor needs (file key, absolute start offset,
file length). Payloads are validated on the way in and on the way out.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from catalog_sync.core.errors import InvalidJobPayloadError
from catalog_sync.ingest.normalizer import CanonicalRow


class JobStatus(str, Enum):
    """Queue job lifecycle states."""

    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


ALL_STATUSES = tuple(JobStatus)
PENDING_STATUSES = (JobStatus.WAITING, JobStatus.ACTIVE, JobStatus.DELAYED)


class RowModel(BaseModel):
    """Serialized CanonicalRow."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(..., ge=0, description="Absolute zero-based row index in the file")
    identifier: str = ""
    manufacturer: str = ""
    category: str = ""
    attributes: dict[str, str] = Field(default_factory=dict)
    error: str = ""

    @classmethod
    def from_row(cls, row: CanonicalRow) -> "RowModel":
        return cls(**row.to_dict())

    def to_row(self) -> CanonicalRow:
        return CanonicalRow(
            index=self.index,
            identifier=self.identifier,
            manufacturer=self.manufacturer,
            category=self.category,
            attributes=dict(self.attributes),
            error=self.error,
        )


class BatchJobPayload(BaseModel):
    """Payload of one queued batch job."""

    batch: list[RowModel] = Field(..., description="Rows of this batch in source order")
    file_key: str = Field(..., description="Logical file identifier")
    total_products_in_file: int = Field(..., gt=0, description="Data rows in the whole file")
    start_index: int = Field(..., ge=0, description="Absolute index of the batch's first row slot")
    batch_size: int = Field(..., gt=0, description="Row-index span covered by this batch")

    @field_validator("file_key")
    @classmethod
    def validate_file_key(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("file_key must not be empty")
        return v

    @field_validator("batch")
    @classmethod
    def validate_batch(cls, v: list[RowModel]) -> list[RowModel]:
        if not v:
            raise ValueError("batch must contain at least one row")
        return v

    @property
    def end_index(self) -> int:
        """Exclusive end of the row-index span."""
        return self.start_index + self.batch_size

    def rows(self) -> list[CanonicalRow]:
        return [r.to_row() for r in self.batch]

    @classmethod
    def parse(cls, raw: dict[str, Any], job_id: Optional[str] = None) -> "BatchJobPayload":
        """
        Validate a raw payload.

        Raises:
            InvalidJobPayloadError: If validation fails
        """
        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            raise InvalidJobPayloadError.from_validation_error(e, job_id) from e


@dataclass
class QueuedJob:
    """A job claimed from the queue."""

    job_id: str
    file_key: str
    payload: dict[str, Any]
    attempts: int  # deliveries so far, including this one
    max_attempts: int
    status: JobStatus = JobStatus.ACTIVE
    created_at: Optional[datetime] = None

    @property
    def is_last_attempt(self) -> bool:
        return self.attempts >= self.max_attempts


@dataclass(frozen=True)
class JobLevelStats:
    waiting: int = 0
    active: int = 0
    delayed: int = 0

    @property
    def total_remaining(self) -> int:
        return self.waiting + self.active + self.delayed
