"""
Pytest configuration and fixtures for POD Jobs Backend tests.
"""

import json
import os
import shutil
import tempfile
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
_TEST_DATA_DIR = tempfile.mkdtemp(prefix="pod_jobs_test_")
os.environ["POD_JOBS_DB_PATH"] = str(Path(_TEST_DATA_DIR) / "api.db")
os.environ["API_KEYS"] = "test-api-key,second-key"
os.environ["WEBHOOK_RETRY_DELAY_SECONDS"] = "0"
os.environ["SWEEPER_INTERVAL_SECONDS"] = "0"
os.environ["S3_BUCKET_NAME"] = ""

from pod_jobs_backend.database import JobDatabase, SessionDatabase
from pod_jobs_backend.files import FileDatabase
from pod_jobs_backend.job_manager import JobManager
from pod_jobs_backend.main import app
from pod_jobs_backend.queues import SQLiteQueue
from pod_jobs_backend.webhook import WebhookDispatcher


@pytest.fixture(scope="session", autouse=True)
def test_data_dir():
    """Remove the API database directory after all tests."""
    yield _TEST_DATA_DIR
    shutil.rmtree(_TEST_DATA_DIR, ignore_errors=True)


@pytest.fixture
def api_key():
    return "test-api-key"


@pytest.fixture
def client(api_key):
    """Create a test client for the FastAPI app, authenticated with a valid key."""
    return TestClient(app, headers={"X-API-Key": api_key})


@pytest.fixture
def anonymous_client():
    """Test client that sends no API key."""
    return TestClient(app)


class WebhookRecorder:
    """
    httpx.MockTransport handler that records every request.

    Responds with the queued status codes in order, then with ``default``.
    """

    def __init__(self, default: int = 200):
        self.default = default
        self.responses = []
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responses:
            outcome = self.responses.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return httpx.Response(outcome)
        return httpx.Response(self.default)

    def bodies(self):
        return [json.loads(request.content) for request in self.requests]


@pytest.fixture
def webhook_recorder():
    return WebhookRecorder()


@pytest.fixture
def webhooks(webhook_recorder):
    """Inline-friendly dispatcher whose HTTP traffic goes to the recorder."""
    http_client = httpx.Client(transport=httpx.MockTransport(webhook_recorder))
    dispatcher = WebhookDispatcher(retry_delay=0, http_client=http_client, sleep=lambda _: None)
    yield dispatcher
    dispatcher.shutdown()
    http_client.close()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "jobs.db"


@pytest.fixture
def job_store(db_path):
    return JobDatabase(db_path)


@pytest.fixture
def session_store(db_path):
    return SessionDatabase(db_path)


@pytest.fixture
def work_queue(db_path):
    return SQLiteQueue(db_path)


@pytest.fixture
def file_store(db_path):
    return FileDatabase(db_path)


@pytest.fixture
def manager(job_store, session_store, work_queue, file_store, webhooks):
    """JobManager on a fresh database that delivers webhooks inline."""
    return JobManager(
        jobs=job_store,
        sessions=session_store,
        queue=work_queue,
        files=file_store,
        webhooks=webhooks,
        background_webhooks=False,
    )


@pytest.fixture
def order_options():
    """A5 perfect-bound book, 32 pages with 3mm bleed."""
    return {
        "size": {"width": 148, "height": 210},
        "pages": 32,
        "binding": "perfect",
        "bleed": 3,
    }


@pytest.fixture
def sample_pdf(tmp_path):
    """Create a minimal PDF file on disk and return its absolute path."""
    path = tmp_path / "sample.pdf"
    path.write_bytes(b"%PDF-1.4\n1 0 obj\n<< /Type /Catalog >>\nendobj\ntrailer\n<< /Root 1 0 R >>\n%%EOF")
    return str(path)
