"""
Resolution of uploaded file identifiers to locations workers can read.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol
from uuid import uuid4

from .database import SQLiteStore
from .errors import NotFoundError
from .models import FileRecord, ResolvedFile
from .s3_service import S3Presigner

logger = logging.getLogger(__name__)


class FileResolver(Protocol):
    def get_file(self, file_id: str) -> Optional[FileRecord]:
        """Return the stored record, or None for an unknown id."""
        ...

    def resolve(self, file_id: str) -> ResolvedFile:
        """Return the path/URL of a file or raise NotFoundError(FILE_NOT_FOUND)."""
        ...


class FileDatabase(SQLiteStore):
    """
    SQLite registry of uploaded files.

    A file is known by at least one of a local path, a public URL or an S3
    key. Resolution prefers a presigned S3 URL, then the stored URL, then the
    local path, so locally stored files resolve to their path exactly as the
    workers on the same host expect.
    """

    schema = (
        """
        CREATE TABLE IF NOT EXISTS files (
            id TEXT PRIMARY KEY,
            file_path TEXT,
            file_url TEXT,
            storage_key TEXT,
            generated_by TEXT,
            edit_session_id TEXT
        )
        """,
    )

    def __init__(self, db_path, presigner: Optional[S3Presigner] = None):
        self.presigner = presigner
        super().__init__(db_path)

    def register_file(
        self,
        file_path: Optional[str] = None,
        file_url: Optional[str] = None,
        storage_key: Optional[str] = None,
        file_id: Optional[str] = None,
        generated_by: Optional[str] = None,
        edit_session_id: Optional[str] = None,
    ) -> FileRecord:
        """
        Record an uploaded file.

        ``generated_by`` and ``edit_session_id`` are set for PDFs exported by
        the editor; split and spread synthesis only accept those.
        """
        if not (file_path or file_url or storage_key):
            raise ValueError("A file needs a path, a URL or a storage key.")

        record = FileRecord(
            id=file_id or str(uuid4()),
            file_path=file_path,
            file_url=file_url,
            storage_key=storage_key,
            generated_by=generated_by,
            edit_session_id=edit_session_id,
        )
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO files (id, file_path, file_url, storage_key, generated_by, edit_session_id)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.file_path,
                    record.file_url,
                    record.storage_key,
                    record.generated_by,
                    record.edit_session_id,
                ),
            )
        return record

    def get_file(self, file_id: str) -> Optional[FileRecord]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM files WHERE id = ?", (file_id,)).fetchone()
            if not row:
                return None
            return FileRecord(
                id=row["id"],
                file_path=row["file_path"],
                file_url=row["file_url"],
                storage_key=row["storage_key"],
                generated_by=row["generated_by"],
                edit_session_id=row["edit_session_id"],
            )

    def resolve(self, file_id: str) -> ResolvedFile:
        record = self.get_file(file_id)
        if record is None:
            raise NotFoundError("FILE_NOT_FOUND", "File not found.", {"fileId": file_id})

        url: Optional[str] = None
        if record.storage_key and self.presigner is not None:
            url = self.presigner.presign(record.storage_key)
        url = url or record.file_url or record.file_path
        if not url:
            # Only an S3 key and no usable bucket: nothing a worker could open.
            logger.warning(f"File {file_id} has no resolvable location")
            raise NotFoundError("FILE_NOT_FOUND", "File has no accessible location.", {"fileId": file_id})

        return ResolvedFile(path=record.file_path, url=url)
