from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .configuration import Settings, load_settings
from .database import JobDatabase, SessionDatabase
from .errors import JobServiceError
from .files import FileDatabase
from .job_manager import JobManager
from .merge_check import MergeChecker
from .models import (
    CheckMergeableRequest,
    CreateConversionJobRequest,
    CreateSplitSynthesisJobRequest,
    CreateSpreadSynthesisJobRequest,
    CreateSynthesisJobRequest,
    CreateValidationJobRequest,
    Job,
    JobStat,
    JobStatus,
    JobType,
    MergeCheckResult,
    QueueItem,
    UpdateJobStatusRequest,
)
from .queues import SQLiteQueue
from .s3_service import S3Presigner
from .webhook import WebhookDispatcher

logger = logging.getLogger(__name__)

settings = load_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    if settings.sweeper_interval_seconds > 0:
        job_manager.start_sweeper(
            settings.sweeper_interval_seconds,
            settings.sweeper_stale_after_seconds,
            settings.queue_done_retention_seconds,
        )
        logger.info(f"Orphan sweeper running every {settings.sweeper_interval_seconds}s")
    yield
    job_manager.close()


app = FastAPI(title="POD Jobs API", version="0.1.0", lifespan=lifespan)

allowed_origins = ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

presigner = S3Presigner(settings.s3_bucket, expiration=settings.presign_expiration_seconds)
file_store = FileDatabase(settings.database_path, presigner=presigner)
session_store = SessionDatabase(settings.database_path)
work_queue = SQLiteQueue(settings.database_path)
webhooks = WebhookDispatcher(
    timeout=settings.webhook_timeout_seconds,
    retry_delay=settings.webhook_retry_delay_seconds,
    signing_secret=settings.webhook_signing_secret,
    max_workers=settings.webhook_max_workers,
)
job_manager = JobManager(
    jobs=JobDatabase(settings.database_path),
    sessions=session_store,
    queue=work_queue,
    files=file_store,
    webhooks=webhooks,
)
merge_checker = MergeChecker(file_store, probe_timeout=settings.probe_timeout_seconds)


def get_settings() -> Settings:
    return settings


def get_job_manager() -> JobManager:
    return job_manager


def get_merge_checker() -> MergeChecker:
    return merge_checker


def get_work_queue() -> SQLiteQueue:
    return work_queue


def require_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
    config: Settings = Depends(get_settings),
) -> None:
    # No configured keys means local development: the check is off.
    if not config.api_keys:
        return
    if not x_api_key or x_api_key not in config.api_keys:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


@app.exception_handler(JobServiceError)
async def job_service_error_handler(request: Request, exc: JobServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


router = APIRouter(prefix="/worker-jobs", dependencies=[Depends(require_api_key)])


@router.post("/validate", response_model=Job, status_code=201)
def create_validation_job(
    request: CreateValidationJobRequest, manager: JobManager = Depends(get_job_manager)
) -> Job:
    return manager.create_validation_job(request)


@router.post("/convert", response_model=Job, status_code=201)
def create_conversion_job(
    request: CreateConversionJobRequest, manager: JobManager = Depends(get_job_manager)
) -> Job:
    return manager.create_conversion_job(request)


@router.post("/synthesize", response_model=Job, status_code=201)
def create_synthesis_job(
    request: CreateSynthesisJobRequest, manager: JobManager = Depends(get_job_manager)
) -> Job:
    return manager.create_synthesis_job(request)


@router.post("/synthesize/split", response_model=Job, status_code=201)
def create_split_synthesis_job(
    request: CreateSplitSynthesisJobRequest, manager: JobManager = Depends(get_job_manager)
) -> Job:
    return manager.create_split_synthesis_job(request)


@router.post("/synthesize/spread", response_model=Job, status_code=201)
def create_spread_synthesis_job(
    request: CreateSpreadSynthesisJobRequest, manager: JobManager = Depends(get_job_manager)
) -> Job:
    return manager.create_spread_synthesis_job(request)


@router.post("/check-mergeable", response_model=MergeCheckResult, response_model_exclude_none=True)
def check_mergeable(
    request: CheckMergeableRequest, checker: MergeChecker = Depends(get_merge_checker)
) -> MergeCheckResult:
    return checker.check_mergeable(request)


@router.get("/stats", response_model=List[JobStat])
def get_job_stats(manager: JobManager = Depends(get_job_manager)) -> List[JobStat]:
    return manager.get_job_stats()


@router.post("/recover-orphans")
def recover_orphans(manager: JobManager = Depends(get_job_manager)) -> Dict[str, List[str]]:
    recovered = manager.recover_orphaned_jobs(settings.sweeper_stale_after_seconds)
    return {"recovered": recovered}


@router.post("/queues/{queue_name}/claim", response_model=QueueItem)
def claim_queue_item(queue_name: str, queue: SQLiteQueue = Depends(get_work_queue)):
    item = queue.claim(queue_name)
    if item is None:
        return Response(status_code=204)
    return item


@router.get("", response_model=List[Job])
def list_jobs(
    status: Optional[JobStatus] = Query(None),
    job_type: Optional[JobType] = Query(None, alias="jobType"),
    manager: JobManager = Depends(get_job_manager),
) -> List[Job]:
    return manager.list_jobs(status=status, job_type=job_type)


@router.get("/{job_id}", response_model=Job)
def get_job(job_id: str, manager: JobManager = Depends(get_job_manager)) -> Job:
    return manager.get_job(job_id)


@router.patch("/{job_id}/status", response_model=Job)
def update_job_status(
    job_id: str, patch: UpdateJobStatusRequest, manager: JobManager = Depends(get_job_manager)
) -> Job:
    return manager.update_job_status(job_id, patch)


app.include_router(router)
