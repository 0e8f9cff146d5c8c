from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class CredsStatus(str, Enum):
    UNKNOWN = "unknown"
    WORKING = "working"
    FAILED = "failed"


class ScrapeJobPayload(BaseModel):
    """Queue message body: ``{"jobId", "userId", "url"}``."""

    job_id: str = Field(alias="jobId", min_length=1)
    user_id: str = Field(alias="userId", min_length=1)
    url: str = Field(min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class ScrapeJobRecord(BaseModel):
    id: str
    url: str
    user_id: str
    status: JobStatus
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    total_records: int | None = None


class ScrapeJobAccepted(BaseModel):
    job_id: str = Field(alias="jobId")
    status: str = "QUEUED"

    model_config = ConfigDict(populate_by_name=True)
