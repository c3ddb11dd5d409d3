"""
POD Jobs Backend - job orchestration for print-on-demand PDF workers

This package provides a FastAPI-based web service that sits between the
print-file editor and the external PDF workers. It enables:

- Validation, conversion and cover/content synthesis jobs
- Priority work queues pulled by the worker processes
- A dry-run check that a cover and a content file can be merged
- Worker status ingestion with edit-session synchronization
- Signed webhook notifications for session and synthesis outcomes

The backend never touches PDF bytes itself; workers do the processing and
report back through the status endpoint.

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - job_manager: Producers, status ingestion, session sync, orphan recovery
    - state_machine: Allowed job transitions and derived session status
    - queues: SQLite-backed priority queues consumed by workers
    - merge_check: Merge feasibility dry-run
    - webhook: Webhook signing and delivery
    - database / files: SQLite stores for jobs, sessions and files
    - configuration: Config loading and merging logic

Usage:
    Run the API server with:
        uvicorn pod_jobs_backend.main:app --reload --host 0.0.0.0 --port 8000
"""
