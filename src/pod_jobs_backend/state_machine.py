"""
Job status transitions and the session status derived from them.

Job lifecycle::

    PENDING -> [PROCESSING] -> COMPLETED | FAILED | FIXABLE

COMPLETED and FAILED are final. FIXABLE (validation jobs only) means the file
needs user correction; it is a resting state that a later explicit update may
leave, but it never counts as terminal.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, FrozenSet, Iterable, Optional, Tuple

from .errors import InvalidInputError, JobStateError
from .models import TERMINAL_STATUSES, Job, JobStatus, JobType, UpdateJobStatusRequest, WorkerStatus

logger = logging.getLogger(__name__)

UNKNOWN_ERROR = "Unknown error"

_ACTIVE_TARGETS = frozenset({JobStatus.PROCESSING, JobStatus.FIXABLE, JobStatus.COMPLETED, JobStatus.FAILED})

ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: _ACTIVE_TARGETS,
    JobStatus.PROCESSING: _ACTIVE_TARGETS,
    JobStatus.FIXABLE: _ACTIVE_TARGETS,
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def apply_status_update(job: Job, patch: UpdateJobStatusRequest, now: datetime) -> Job:
    """
    Compute the job that results from a worker's status report.

    Args:
        job: Job as currently stored
        patch: Fields reported by the worker; ``status`` may be omitted to
            attach a partial ``result`` without changing state
        now: Timestamp used for ``completed_at``

    Returns:
        A new Job instance; the input is not modified

    Raises:
        JobStateError: The job is already COMPLETED/FAILED, or the move is
            not part of the lifecycle
        InvalidInputError: FIXABLE reported for a non-validation job
    """
    if job.status in TERMINAL_STATUSES:
        logger.warning(f"Rejected update for job {job.id}: already {job.status.value}")
        raise JobStateError(
            "JOB_ALREADY_TERMINAL",
            f"Job {job.id} is already {job.status.value}.",
            {"jobId": job.id, "status": job.status.value},
        )

    new_status = patch.status or job.status
    if patch.status is not None and new_status not in ALLOWED_TRANSITIONS[job.status]:
        raise JobStateError(
            "INVALID_TRANSITION",
            f"Cannot move job {job.id} from {job.status.value} to {new_status.value}.",
            {"jobId": job.id, "from": job.status.value, "to": new_status.value},
        )
    if new_status == JobStatus.FIXABLE and job.job_type != JobType.VALIDATE:
        raise InvalidInputError(
            "INVALID_STATUS",
            "FIXABLE is only valid for validation jobs.",
            {"jobId": job.id, "jobType": job.job_type.value},
        )

    changes: Dict[str, object] = {"status": new_status}
    if patch.result is not None:
        changes["result"] = patch.result

    if new_status == JobStatus.COMPLETED:
        changes["output_file_id"] = patch.output_file_id
        changes["output_file_url"] = patch.output_file_url
        changes["error_message"] = None
    elif patch.output_file_id or patch.output_file_url:
        logger.warning(f"Ignoring output file for job {job.id}: status is {new_status.value}, not COMPLETED")

    if new_status == JobStatus.FAILED:
        changes["error_message"] = patch.error_message or UNKNOWN_ERROR
    elif new_status == JobStatus.FIXABLE:
        changes["error_message"] = patch.error_message
    elif new_status == JobStatus.PROCESSING:
        changes["error_message"] = None

    changes["completed_at"] = now if new_status in TERMINAL_STATUSES else None
    return job.model_copy(update=changes)


def derive_worker_status(
    jobs: Iterable[Job], reporting_job: Optional[Job] = None
) -> Tuple[Optional[WorkerStatus], Optional[str]]:
    """
    Session ``worker_status`` implied by the full set of its jobs.

    - any job FAILED -> FAILED (first failure wins; error of the reporting
      job if it is the one failing)
    - every job COMPLETED or FAILED -> VALIDATED
    - any job PROCESSING or FIXABLE -> PROCESSING
    - only PENDING jobs -> PENDING; no jobs -> no opinion (None)

    Returns:
        Tuple of (worker status, worker error)
    """
    jobs = list(jobs)
    if not jobs:
        return None, None

    failed = [j for j in jobs if j.status == JobStatus.FAILED]
    if failed:
        source = reporting_job if reporting_job is not None and reporting_job.status == JobStatus.FAILED else failed[0]
        return WorkerStatus.FAILED, source.error_message or UNKNOWN_ERROR

    if all(j.status in TERMINAL_STATUSES for j in jobs):
        return WorkerStatus.VALIDATED, None

    if all(j.status == JobStatus.PENDING for j in jobs):
        return WorkerStatus.PENDING, None

    return WorkerStatus.PROCESSING, None
