"""
Job orchestration for print-file validation, conversion and synthesis.

This module manages the server side of the asynchronous job lifecycle:
- Job creation: resolve inputs, persist a PENDING job, enqueue a work item
- Status ingestion: apply worker reports through the job state machine
- Session synchronization: keep an edit session's ``worker_status`` in line
  with the outcome of all of its jobs
- Webhook notification for session and synthesis outcomes
- Recovery of jobs left PENDING when their enqueue failed

The work itself runs in external worker processes that pull from the queues
and report back through :meth:`JobManager.update_job_status`.
"""

from __future__ import annotations

import logging
import weakref
from datetime import timedelta
from threading import Event, Lock, Thread
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

from .database import JobStore, SessionStore
from .errors import (
    DuplicateRequestError,
    InvalidInputError,
    JobStateError,
    NotFoundError,
    QueueError,
    UnprocessableError,
)
from .files import FileResolver
from .models import (
    QUEUE_PRIORITY,
    CreateConversionJobRequest,
    CreateSplitSynthesisJobRequest,
    CreateSpreadSynthesisJobRequest,
    CreateSynthesisJobRequest,
    CreateValidationJobRequest,
    EditSession,
    FileRecord,
    Job,
    JobStat,
    JobStatus,
    JobType,
    Priority,
    SessionWebhookPayload,
    SynthesisWebhookPayload,
    UpdateJobStatusRequest,
    WorkerStatus,
)
from .queues import JOB_TYPE_ROUTES, QueueDispatcher
from .state_machine import apply_status_update, derive_worker_status
from .utils import isoformat_utc, utcnow
from .webhook import WebhookDispatcher, WebhookPayload

logger = logging.getLogger(__name__)

_SESSION_FINAL = frozenset({WorkerStatus.VALIDATED, WorkerStatus.FAILED})
_SYNC_TRIGGERS = frozenset({JobStatus.PROCESSING, JobStatus.FIXABLE, JobStatus.COMPLETED, JobStatus.FAILED})


def derive_page_types(pages: Sequence[Dict[str, Any]]) -> List[str]:
    """
    Map an edit session's pages to ``cover``/``content`` in print order.

    ``sortOrder`` values must be the integers ``0..n-1`` without gaps or
    duplicates. A page whose ``templateType`` is ``page`` is content; every
    other template is treated as part of the cover.

    Raises:
        UnprocessableError: EMPTY_SESSION_PAGES, INVALID_SORT_ORDER,
            NO_COVER_PAGES or NO_CONTENT_PAGES
    """
    if not pages:
        raise UnprocessableError("EMPTY_SESSION_PAGES", "The edit session has no pages.")

    orders = [page.get("sortOrder") for page in pages]
    valid = all(isinstance(o, int) and not isinstance(o, bool) and o >= 0 for o in orders)
    if not valid or sorted(orders) != list(range(len(orders))):
        raise UnprocessableError(
            "INVALID_SORT_ORDER",
            "Page sortOrder values must be unique integers from 0 to n-1.",
            {"sortOrders": orders},
        )

    ordered = sorted(pages, key=lambda page: page["sortOrder"])
    page_types = ["content" if page.get("templateType") == "page" else "cover" for page in ordered]

    if "cover" not in page_types:
        raise UnprocessableError("NO_COVER_PAGES", "The edit session has no cover pages.")
    if "content" not in page_types:
        raise UnprocessableError("NO_CONTENT_PAGES", "The edit session has no content pages.")
    return page_types


class JobManager:
    """
    Central coordinator for worker jobs and the sessions they belong to.

    Collaborators are injected so the same manager runs against SQLite in
    production and against in-memory fakes in tests.

    Thread Safety:
        Status updates for jobs of the same edit session are serialized by a
        per-session lock; the session row itself is saved with a version
        check, so concurrent API processes cannot lose a transition either.

    Attributes:
        jobs: Job store
        sessions: Edit-session store
        queue: Queue dispatcher the workers consume
        files: Resolver for file ids
        webhooks: Webhook dispatcher
    """

    def __init__(
        self,
        jobs: JobStore,
        sessions: SessionStore,
        queue: QueueDispatcher,
        files: FileResolver,
        webhooks: WebhookDispatcher,
        background_webhooks: bool = True,
        session_save_attempts: int = 5,
    ) -> None:
        """
        Initialize the job manager.

        Args:
            jobs: Job store
            sessions: Edit-session store
            queue: Queue dispatcher
            files: File resolver
            webhooks: Webhook dispatcher
            background_webhooks: Deliver webhooks on the dispatcher's thread
                pool (default) instead of inline in the ingestion call
            session_save_attempts: Reload-and-retry budget for session
                version conflicts
        """
        self.jobs = jobs
        self.sessions = sessions
        self.queue = queue
        self.files = files
        self.webhooks = webhooks
        self.background_webhooks = background_webhooks
        self.session_save_attempts = session_save_attempts
        self._session_locks: "weakref.WeakValueDictionary[str, Lock]" = weakref.WeakValueDictionary()
        self._locks_guard = Lock()
        self._sweeper_stop = Event()
        self._sweeper_thread: Optional[Thread] = None

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def _resolve_input(self, file_id: Optional[str], file_url: Optional[str]) -> Optional[str]:
        if file_id:
            return self.files.resolve(file_id).url
        return file_url

    def _new_job(self, job_type: JobType, **fields: Any) -> Job:
        return Job(id=str(uuid4()), job_type=job_type, status=JobStatus.PENDING, created_at=utcnow(), **fields)

    def create_validation_job(self, request: CreateValidationJobRequest) -> Job:
        """
        Create a PDF validation job and queue it.

        Args:
            request: File reference, file role (cover/content) and the
                physical constraints to validate against

        Returns:
            The persisted job in PENDING status

        Raises:
            InvalidInputError: Neither ``file_id`` nor ``file_url`` given
            NotFoundError: ``file_id`` does not resolve
            QueueError: The job was saved but could not be queued
        """
        if not request.file_id and not request.file_url:
            raise InvalidInputError("FILE_REQUIRED", "Either fileId or fileUrl must be provided.")

        file_url = self._resolve_input(request.file_id, request.file_url)
        job = self._new_job(
            JobType.VALIDATE,
            edit_session_id=request.edit_session_id,
            file_id=request.file_id,
            input_file_url=file_url,
            options={
                "fileType": request.file_type,
                "orderOptions": request.order_options.model_dump(by_alias=True, exclude_none=True),
            },
        )
        return self._persist_and_enqueue(job)

    def create_conversion_job(self, request: CreateConversionJobRequest) -> Job:
        """
        Create a PDF conversion job (add pages, apply bleed, ...) and queue it.

        Raises:
            InvalidInputError: Neither ``file_id`` nor ``file_url`` given
            NotFoundError: ``file_id`` does not resolve
            QueueError: The job was saved but could not be queued
        """
        if not request.file_id and not request.file_url:
            raise InvalidInputError("FILE_REQUIRED", "Either fileId or fileUrl must be provided.")

        file_url = self._resolve_input(request.file_id, request.file_url)
        job = self._new_job(
            JobType.CONVERT,
            file_id=request.file_id,
            input_file_url=file_url,
            options=dict(request.convert_options),
        )
        return self._persist_and_enqueue(job)

    def create_synthesis_job(self, request: CreateSynthesisJobRequest) -> Job:
        """
        Create a cover + spine + content synthesis job and queue it.

        The callback URL and order id are stored on the job so the outcome
        webhook can be sent without the requesting client. ``priority`` selects
        the synthesis queue tier.

        Raises:
            InvalidInputError: Cover or content reference missing, or a
                negative spine width
            NotFoundError: A file id does not resolve
            QueueError: The job was saved but could not be queued
        """
        if not request.cover_file_id and not request.cover_url:
            raise InvalidInputError("COVER_FILE_REQUIRED", "Either coverFileId or coverUrl must be provided.")
        if not request.content_file_id and not request.content_url:
            raise InvalidInputError("CONTENT_FILE_REQUIRED", "Either contentFileId or contentUrl must be provided.")
        if request.spine_width < 0:
            raise InvalidInputError(
                "INVALID_SPINE_WIDTH",
                "Spine width must be zero or greater.",
                {"spineWidth": request.spine_width},
            )

        cover_url = self._resolve_input(request.cover_file_id, request.cover_url)
        content_url = self._resolve_input(request.content_file_id, request.content_url)

        job = self._new_job(
            JobType.SYNTHESIZE,
            edit_session_id=request.edit_session_id,
            # The cover stands in as the job's representative input.
            file_id=request.cover_file_id,
            input_file_url=cover_url,
            options={
                "coverFileId": request.cover_file_id,
                "contentFileId": request.content_file_id,
                "coverUrl": cover_url,
                "contentUrl": content_url,
                "spineWidth": request.spine_width,
                "orderId": request.order_id,
                "callbackUrl": request.callback_url,
                "priority": request.priority.value,
                "outputFormat": request.output_format,
            },
        )
        job = self._persist_and_enqueue(job)
        logger.info(
            f"Synthesis job created: {job.id}, orderId: {request.order_id or 'N/A'}, "
            f"priority: {request.priority.value}, format: {request.output_format}"
        )
        return job

    def _require_session(self, session_id: str) -> EditSession:
        session = self.sessions.get_session(session_id)
        if session is None:
            raise NotFoundError("SESSION_NOT_FOUND", f"EditSession {session_id} not found", {"sessionId": session_id})
        return session

    def _require_editor_file(self, file_id: str, session_id: str) -> FileRecord:
        """Load a file and check that the editor exported it from this session."""
        record = self.files.get_file(file_id)
        if record is None:
            raise NotFoundError("FILE_NOT_FOUND", f"File {file_id} not found", {"fileId": file_id})
        if record.generated_by != "editor":
            raise InvalidInputError(
                "PDF_NOT_FROM_EDITOR", "Only PDFs generated by the editor are supported.", {"fileId": file_id}
            )
        if record.edit_session_id != session_id:
            raise InvalidInputError(
                "SESSION_FILE_MISMATCH",
                f"File {file_id} does not belong to session {session_id}.",
                {"fileId": file_id, "sessionId": session_id},
            )
        return record

    def _find_existing(self, session_id: str, file_id: str, request_id: str) -> Optional[Job]:
        existing = self.jobs.find_by_request(session_id, file_id, request_id)
        if existing is not None:
            logger.info(f"Idempotent hit: returning existing job {existing.id} for requestId={request_id}")
        return existing

    def create_split_synthesis_job(self, request: CreateSplitSynthesisJobRequest) -> Job:
        """
        Create a job that splits one editor-generated PDF into cover and content.

        The page layout comes from the edit session: each page becomes
        ``cover`` or ``content`` in ``sortOrder`` order, and the worker gets
        that list as ``pageTypes``. ``request_id`` makes the call idempotent;
        repeating it returns the job created the first time.

        Raises:
            InvalidInputError: INVALID_OUTPUT_OPTIONS, PDF_NOT_FROM_EDITOR or
                SESSION_FILE_MISMATCH
            NotFoundError: Unknown session or file
            UnprocessableError: The session's pages cannot be split
            QueueError: The job was saved but could not be queued
        """
        existing = self._find_existing(request.session_id, request.pdf_file_id, request.request_id)
        if existing is not None:
            return existing

        if request.output_format == "merged" and request.also_generate_merged:
            raise InvalidInputError(
                "INVALID_OUTPUT_OPTIONS", "alsoGenerateMerged cannot be used with outputFormat 'merged'."
            )

        session = self._require_session(request.session_id)
        self._require_editor_file(request.pdf_file_id, request.session_id)
        page_types = derive_page_types(session.pages)

        job = self._new_job(
            JobType.SYNTHESIZE,
            edit_session_id=request.session_id,
            file_id=request.pdf_file_id,
            request_id=request.request_id,
            options={
                "mode": "split",
                "pageTypes": page_types,
                "totalExpectedPages": len(page_types),
                "outputFormat": request.output_format,
                "alsoGenerateMerged": request.also_generate_merged,
                "callbackUrl": request.callback_url,
                "priority": request.priority.value,
            },
        )
        job = self._persist_and_enqueue(job)
        logger.info(
            f"Split synthesis job created: {job.id}, sessionId={request.session_id}, "
            f"pages={len(page_types)}, format={request.output_format}, priority={request.priority.value}"
        )
        return job

    def create_spread_synthesis_job(self, request: CreateSpreadSynthesisJobRequest) -> Job:
        """
        Create a job that joins a one-page cover spread with content PDFs.

        Content files are merged in the order given. Every file must be an
        editor export of the same session. Output is always ``separate``.

        Raises:
            InvalidInputError: INVALID_OUTPUT_FORMAT, PDF_NOT_FROM_EDITOR or
                SESSION_FILE_MISMATCH
            NotFoundError: Unknown session or file
            QueueError: The job was saved but could not be queued
        """
        existing = self._find_existing(request.session_id, request.spread_pdf_file_id, request.request_id)
        if existing is not None:
            return existing

        if request.output_format != "separate":
            raise InvalidInputError(
                "INVALID_OUTPUT_FORMAT",
                "Spread synthesis only supports outputFormat 'separate'.",
                {"outputFormat": request.output_format},
            )

        self._require_session(request.session_id)
        self._require_editor_file(request.spread_pdf_file_id, request.session_id)
        for content_file_id in request.content_pdf_file_ids:
            self._require_editor_file(content_file_id, request.session_id)

        job = self._new_job(
            JobType.SYNTHESIZE,
            edit_session_id=request.session_id,
            # The spread doubles as the idempotency key's file.
            file_id=request.spread_pdf_file_id,
            request_id=request.request_id,
            options={
                "mode": "spread",
                "spreadPdfFileId": request.spread_pdf_file_id,
                "contentPdfFileIds": list(request.content_pdf_file_ids),
                "totalExpectedPages": 1 + len(request.content_pdf_file_ids),
                "outputFormat": "separate",
                "alsoGenerateMerged": request.also_generate_merged,
                "callbackUrl": request.callback_url,
                "priority": request.priority.value,
            },
        )
        job = self._persist_and_enqueue(job)
        logger.info(
            f"Spread synthesis job created: {job.id}, sessionId={request.session_id}, "
            f"contentFiles={len(request.content_pdf_file_ids)}, priority={request.priority.value}"
        )
        return job

    def _queue_payload(self, job: Job) -> Tuple[Dict[str, Any], Optional[int]]:
        """Rebuild the work item for a job from what was persisted."""
        options = job.options or {}
        if job.job_type == JobType.VALIDATE:
            payload = {
                "jobId": job.id,
                "fileId": job.file_id,
                "fileUrl": job.input_file_url,
                "fileType": options.get("fileType"),
                "orderOptions": options.get("orderOptions"),
            }
            return payload, None

        if job.job_type == JobType.CONVERT:
            payload = {
                "jobId": job.id,
                "fileId": job.file_id,
                "fileUrl": job.input_file_url,
                "convertOptions": options,
            }
            return payload, None

        mode = options.get("mode")
        if mode == "split":
            keys: Tuple[str, ...] = ("pageTypes", "totalExpectedPages", "outputFormat", "alsoGenerateMerged", "callbackUrl")
            payload = {"jobId": job.id, "mode": mode, "sessionId": job.edit_session_id, "pdfFileId": job.file_id}
        elif mode == "spread":
            keys = ("spreadPdfFileId", "contentPdfFileIds", "totalExpectedPages", "outputFormat", "alsoGenerateMerged", "callbackUrl")
            payload = {"jobId": job.id, "mode": mode, "sessionId": job.edit_session_id}
        else:
            keys = ("coverFileId", "contentFileId", "coverUrl", "contentUrl", "spineWidth", "orderId", "callbackUrl", "outputFormat")
            payload = {"jobId": job.id}
        for key in keys:
            payload[key] = options.get(key)
        priority = QUEUE_PRIORITY[Priority(options.get("priority") or Priority.NORMAL.value)]
        return payload, priority

    def _enqueue(self, job: Job) -> str:
        queue_name, task_name = JOB_TYPE_ROUTES[job.job_type]
        payload, priority = self._queue_payload(job)
        return self.queue.enqueue(queue_name, task_name, payload, priority)

    def _persist_and_enqueue(self, job: Job) -> Job:
        # Row first: a worker may report on the job as soon as it is queued.
        try:
            self.jobs.insert_job(job)
        except DuplicateRequestError:
            # A concurrent call with the same request id stored its job first.
            existing = self.jobs.find_by_request(job.edit_session_id, job.file_id, job.request_id)
            if existing is None:
                raise
            logger.info(f"Race condition resolved: returning existing job {existing.id}")
            return existing
        try:
            self._enqueue(job)
        except QueueError:
            logger.error(f"Job {job.id} persisted but not queued; left PENDING for orphan recovery")
            raise
        logger.info(f"Created {job.job_type.value} job {job.id}")
        return job

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> Job:
        job = self.jobs.get_job(job_id)
        if job is None:
            raise NotFoundError("JOB_NOT_FOUND", f"Worker job with ID {job_id} not found", {"jobId": job_id})
        return job

    def list_jobs(self, status: Optional[JobStatus] = None, job_type: Optional[JobType] = None) -> List[Job]:
        return self.jobs.list_jobs(status=status, job_type=job_type)

    def get_job_stats(self) -> List[JobStat]:
        return self.jobs.job_stats()

    # ------------------------------------------------------------------
    # Status ingestion
    # ------------------------------------------------------------------

    def update_job_status(self, job_id: str, patch: UpdateJobStatusRequest) -> Job:
        """
        Apply a worker's status report and propagate its consequences.

        Steps:
        1. Load the job and run the patch through the state machine
        2. Persist it with a status compare-and-swap
        3. Re-derive the owning session's ``worker_status`` (if any) and
           notify the session callback on VALIDATED/FAILED
        4. Notify the synthesis callback when a synthesis job finishes

        Args:
            job_id: Job being reported on
            patch: Worker-reported fields

        Returns:
            The updated job

        Raises:
            NotFoundError: Unknown job id
            JobStateError: Job already terminal or transition not allowed
            InvalidInputError: FIXABLE for a non-validation job

        Note:
            Session synchronization and webhook delivery are best-effort.
            Their failures are logged and never undo the job update;
            :meth:`reconcile_session` can repair a session afterwards.
        """
        job = self.get_job(job_id)
        updated = apply_status_update(job, patch, utcnow())

        if not self.jobs.compare_and_update(updated, expected_status=job.status):
            current = self.get_job(job_id)
            code = "JOB_ALREADY_TERMINAL" if current.is_terminal else "CONCURRENT_UPDATE"
            raise JobStateError(code, f"Job {job_id} changed while being updated (now {current.status.value}).")

        logger.info(f"Job {job_id} {job.status.value} -> {updated.status.value}")

        if updated.is_terminal:
            try:
                self.queue.mark_done(job_id)
            except Exception:
                logger.exception(f"Could not close queue items for job {job_id}")

        if updated.edit_session_id and patch.status in _SYNC_TRIGGERS:
            try:
                self._sync_session(updated)
            except Exception:
                logger.exception(f"Session sync failed for job {job_id} (session {updated.edit_session_id})")

        if updated.job_type == JobType.SYNTHESIZE and updated.is_terminal and updated.options.get("callbackUrl"):
            self._notify(updated.options["callbackUrl"], self._synthesis_payload(updated))

        return updated

    def _session_lock(self, session_id: str) -> Lock:
        with self._locks_guard:
            lock = self._session_locks.get(session_id)
            if lock is None:
                lock = Lock()
                self._session_locks[session_id] = lock
            return lock

    def _sync_session(self, job: Job) -> Optional[EditSession]:
        session_id = job.edit_session_id
        lock = self._session_lock(session_id)
        with lock:
            for _ in range(self.session_save_attempts):
                session = self.sessions.get_session(session_id)
                if session is None:
                    logger.warning(f"EditSession {session_id} not found for job {job.id}")
                    return None

                new_status, error = derive_worker_status(self.jobs.list_session_jobs(session_id), reporting_job=job)
                if new_status is None or new_status == session.worker_status:
                    return session

                previous = session.worker_status
                session.worker_status = new_status
                session.worker_error = error
                if not self.sessions.save_session(session):
                    logger.info(f"EditSession {session_id} changed concurrently; re-deriving")
                    continue

                logger.info(
                    f"Updated EditSession {session_id} workerStatus "
                    f"{previous.value if previous else None} -> {new_status.value}"
                )
                if new_status in _SESSION_FINAL:
                    self._notify_session(session, job)
                return session

        logger.error(f"Gave up syncing EditSession {session_id} after {self.session_save_attempts} conflicts")
        return None

    def reconcile_session(self, session_id: str) -> Optional[EditSession]:
        """
        Recompute a session's worker fields from its jobs.

        Used to repair a session whose synchronization failed after the job
        update was persisted. Sends the session webhook if this produces a
        VALIDATED/FAILED transition.

        Returns:
            The session, or None if it does not exist
        """
        jobs = self.jobs.list_session_jobs(session_id)
        if not jobs:
            return self.sessions.get_session(session_id)
        # The most recently finished job stands in as the reporting job.
        reporting = max(jobs, key=lambda j: (j.completed_at is not None, j.completed_at or j.created_at))
        return self._sync_session(reporting)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def _notify(self, url: Optional[str], payload: WebhookPayload) -> None:
        # The triggering update is already persisted; never fail it here.
        try:
            if self.background_webhooks:
                self.webhooks.dispatch(url, payload)
            else:
                self.webhooks.send_callback(url, payload)
        except Exception:
            logger.exception(f"Webhook {payload.event} for {payload.identifier} could not be sent to {url}")

    def _notify_session(self, session: EditSession, job: Job) -> None:
        if not session.callback_url:
            logger.info(f"No callback URL for session {session.id}, skipping webhook")
            return

        validated = session.worker_status == WorkerStatus.VALIDATED
        file_type = (job.options or {}).get("fileType")
        payload = SessionWebhookPayload(
            event="session.validated" if validated else "session.failed",
            session_id=session.id,
            order_seqno=session.order_seqno,
            status="validated" if validated else "failed",
            file_type=file_type if file_type in ("cover", "content") else None,
            error_message=None if validated else session.worker_error,
            result=job.result,
            timestamp=isoformat_utc(),
        )
        self._notify(session.callback_url, payload)

    def _synthesis_payload(self, job: Job) -> SynthesisWebhookPayload:
        completed = job.status == JobStatus.COMPLETED
        output_files = None
        if completed and isinstance(job.result, dict):
            output_files = job.result.get("outputFiles")

        return SynthesisWebhookPayload(
            event="synthesis.completed" if completed else "synthesis.failed",
            job_id=job.id,
            order_id=job.options.get("orderId"),
            status="completed" if completed else "failed",
            output_file_url=(job.output_file_url or "") if completed else "",
            output_files=output_files,
            output_format=job.options.get("outputFormat") or "merged",
            result=job.result,
            error_message=None if completed else job.error_message,
            timestamp=isoformat_utc(),
        )

    # ------------------------------------------------------------------
    # Orphan recovery
    # ------------------------------------------------------------------

    def recover_orphaned_jobs(self, stale_after_seconds: float) -> List[str]:
        """
        Re-queue PENDING jobs whose work item never reached a queue.

        A job qualifies when it is older than ``stale_after_seconds`` and no
        queue item references it. The work item is rebuilt from the job's
        stored inputs and options.

        Returns:
            Ids of the jobs that were re-queued
        """
        cutoff = utcnow() - timedelta(seconds=stale_after_seconds)
        recovered: List[str] = []
        for job in self.jobs.list_stale_pending(cutoff):
            if self.queue.has_open_item(job.id):
                continue
            try:
                self._enqueue(job)
            except QueueError as exc:
                logger.error(f"Orphaned job {job.id} could not be re-queued: {exc.message}")
                continue
            logger.warning(f"Re-queued orphaned {job.job_type.value} job {job.id} (created {job.created_at.isoformat()})")
            recovered.append(job.id)
        return recovered

    def purge_finished_queue_items(self, older_than_seconds: float) -> int:
        """Drop queue items whose job finished more than ``older_than_seconds`` ago."""
        return self.queue.purge_done(utcnow() - timedelta(seconds=older_than_seconds))

    def start_sweeper(
        self, interval_seconds: float, stale_after_seconds: float, done_retention_seconds: float = 86400.0
    ) -> None:
        """
        Run the periodic maintenance on a daemon thread.

        Every ``interval_seconds`` it re-queues orphaned jobs and then purges
        queue items closed more than ``done_retention_seconds`` ago.
        """
        if self._sweeper_thread is not None:
            return
        self._sweeper_stop.clear()

        def _loop() -> None:
            while not self._sweeper_stop.wait(interval_seconds):
                try:
                    self.recover_orphaned_jobs(stale_after_seconds)
                except Exception:
                    logger.exception("Orphan sweep failed")
                try:
                    self.purge_finished_queue_items(done_retention_seconds)
                except Exception:
                    logger.exception("Queue purge failed")

        self._sweeper_thread = Thread(target=_loop, name="orphan-sweeper", daemon=True)
        self._sweeper_thread.start()

    def close(self) -> None:
        self._sweeper_stop.set()
        if self._sweeper_thread is not None:
            self._sweeper_thread.join(timeout=5)
            self._sweeper_thread = None
        self.webhooks.shutdown(wait=True)
