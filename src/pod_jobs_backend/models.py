from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class JobType(str, Enum):
    VALIDATE = "VALIDATE"
    CONVERT = "CONVERT"
    SYNTHESIZE = "SYNTHESIZE"


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    FIXABLE = "FIXABLE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


class WorkerStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    VALIDATED = "VALIDATED"
    FAILED = "FAILED"


class Priority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


# Lower numbers are claimed first.
QUEUE_PRIORITY: Dict[Priority, int] = {
    Priority.HIGH: 1,
    Priority.NORMAL: 5,
    Priority.LOW: 10,
}


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Job(CamelModel):
    id: str
    job_type: JobType
    status: JobStatus = JobStatus.PENDING
    edit_session_id: Optional[str] = None
    file_id: Optional[str] = None
    input_file_url: Optional[str] = None
    output_file_id: Optional[str] = None
    output_file_url: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    error_message: Optional[str] = None
    request_id: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class EditSession(CamelModel):
    id: str
    order_seqno: Optional[int] = None
    callback_url: Optional[str] = None
    worker_status: Optional[WorkerStatus] = None
    worker_error: Optional[str] = None
    version: int = 0
    # Editor pages as stored by the editing application (sortOrder, templateType, ...).
    pages: List[Dict[str, Any]] = Field(default_factory=list)
    updated_at: Optional[datetime] = None


class FileRecord(CamelModel):
    id: str
    file_path: Optional[str] = None
    file_url: Optional[str] = None
    storage_key: Optional[str] = None
    generated_by: Optional[str] = None
    edit_session_id: Optional[str] = None


class ResolvedFile(BaseModel):
    path: Optional[str] = None
    url: str


class PageSize(BaseModel):
    width: float
    height: float


class OrderOptions(CamelModel):
    """Physical print constraints a validation worker checks a file against."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    size: PageSize
    pages: int = Field(ge=1)
    binding: str
    bleed: float = Field(ge=0)
    paper_thickness: Optional[float] = None


class FileReference(CamelModel):
    file_id: Optional[str] = None
    file_url: Optional[str] = None


class CreateValidationJobRequest(FileReference):
    file_type: Literal["cover", "content"]
    order_options: OrderOptions
    edit_session_id: Optional[str] = None


class CreateConversionJobRequest(FileReference):
    convert_options: Dict[str, Any] = Field(default_factory=dict)


class CreateSynthesisJobRequest(CamelModel):
    cover_file_id: Optional[str] = None
    cover_url: Optional[str] = None
    content_file_id: Optional[str] = None
    content_url: Optional[str] = None
    spine_width: float
    edit_session_id: Optional[str] = None
    order_id: Optional[str] = None
    callback_url: Optional[str] = None
    priority: Priority = Priority.NORMAL
    output_format: Literal["merged", "separate"] = "merged"


class CreateSplitSynthesisJobRequest(CamelModel):
    """Split one editor-generated PDF into cover and content files."""

    session_id: str
    pdf_file_id: str
    request_id: str = Field(min_length=1)
    output_format: Literal["merged", "separate"] = "merged"
    also_generate_merged: bool = False
    callback_url: Optional[str] = None
    priority: Priority = Priority.NORMAL


class CreateSpreadSynthesisJobRequest(CamelModel):
    """Combine a one-page cover spread with content PDFs, merged in order."""

    session_id: str
    spread_pdf_file_id: str
    content_pdf_file_ids: List[str] = Field(min_length=1)
    request_id: str = Field(min_length=1)
    output_format: Literal["merged", "separate"] = "separate"
    also_generate_merged: bool = False
    callback_url: Optional[str] = None
    priority: Priority = Priority.NORMAL


class CheckMergeableRequest(CamelModel):
    edit_session_id: str
    cover_file_id: Optional[str] = None
    cover_url: Optional[str] = None
    content_file_id: Optional[str] = None
    content_url: Optional[str] = None
    spine_width: float


class UpdateJobStatusRequest(CamelModel):
    status: Optional[JobStatus] = None
    output_file_id: Optional[str] = None
    output_file_url: Optional[str] = None
    result: Any = None
    error_message: Optional[str] = None


class MergeIssue(BaseModel):
    code: str
    message: str


class MergeCheckResult(BaseModel):
    mergeable: bool
    issues: Optional[List[MergeIssue]] = None


class JobStat(CamelModel):
    status: JobStatus
    job_type: JobType
    count: int


class QueueItem(CamelModel):
    id: str
    queue_name: str
    task_name: str
    job_id: Optional[str] = None
    priority: int
    payload: Dict[str, Any]
    enqueued_at: datetime


class SessionWebhookPayload(CamelModel):
    event: Literal["session.validated", "session.failed"]
    session_id: str
    order_seqno: Optional[int] = None
    status: Literal["validated", "failed"]
    file_type: Optional[Literal["cover", "content"]] = None
    error_message: Optional[str] = None
    result: Any = None
    timestamp: str

    @property
    def identifier(self) -> str:
        return self.session_id


class SynthesisWebhookPayload(CamelModel):
    event: Literal["synthesis.completed", "synthesis.failed"]
    job_id: str
    order_id: Optional[str] = None
    status: Literal["completed", "failed"]
    output_file_url: str = ""
    output_files: Optional[List[Dict[str, Any]]] = None
    output_format: str = "merged"
    result: Any = None
    error_message: Optional[str] = None
    timestamp: str

    @property
    def identifier(self) -> str:
        return self.job_id
