"""
Dry-run check for whether a cover and a content file can be synthesized.

The check never creates jobs or touches the queues. It collects every problem
it finds instead of stopping at the first one, so the editor can show the
complete list after a single request.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Tuple

import httpx

from .errors import NotFoundError
from .files import FileResolver
from .models import CheckMergeableRequest, MergeCheckResult, MergeIssue
from .utils import is_local_path

logger = logging.getLogger(__name__)

_SIDE_LABELS = {"COVER": "Cover", "CONTENT": "Content"}


class MergeChecker:
    def __init__(
        self,
        file_resolver: FileResolver,
        probe_timeout: float = 5.0,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self.file_resolver = file_resolver
        self.probe_timeout = probe_timeout
        self._http_client = http_client

    def check_mergeable(self, request: CheckMergeableRequest) -> MergeCheckResult:
        issues: List[MergeIssue] = []

        # Lookup failures for both sides come before missing references.
        cover_url, cover_missing = self._resolve_side("COVER", request.cover_file_id, request.cover_url, issues)
        content_url, content_missing = self._resolve_side("CONTENT", request.content_file_id, request.content_url, issues)
        if cover_missing:
            issues.append(cover_missing)
        if content_missing:
            issues.append(content_missing)

        # Only probe a side that resolved cleanly.
        if cover_url and not self._has_issue(issues, "COVER_") and not self.is_accessible(cover_url):
            issues.append(MergeIssue(code="COVER_FILE_INACCESSIBLE", message="Cover file is not accessible."))
        if content_url and not self._has_issue(issues, "CONTENT_") and not self.is_accessible(content_url):
            issues.append(MergeIssue(code="CONTENT_FILE_INACCESSIBLE", message="Content file is not accessible."))

        if request.spine_width < 0:
            issues.append(MergeIssue(code="INVALID_SPINE_WIDTH", message="Spine width must be zero or greater."))

        summary = "OK" if not issues else ", ".join(issue.code for issue in issues)
        logger.info(f"Check mergeable for session {request.edit_session_id}: {summary}")

        return MergeCheckResult(mergeable=not issues, issues=issues or None)

    def _resolve_side(
        self, side: str, file_id: Optional[str], url: Optional[str], issues: List[MergeIssue]
    ) -> Tuple[Optional[str], Optional[MergeIssue]]:
        """
        Resolve one side of the merge.

        A failed file lookup is appended to ``issues`` right away; a missing
        reference is returned so the caller can report it after both lookups.
        """
        label = _SIDE_LABELS[side]
        if file_id:
            try:
                return self.file_resolver.resolve(file_id).url, None
            except NotFoundError:
                issues.append(MergeIssue(code=f"{side}_FILE_NOT_FOUND", message=f"{label} file not found."))
                return None, None
        if not url:
            return None, MergeIssue(code=f"{side}_URL_REQUIRED", message=f"{label} URL or file id is required.")
        return url, None

    @staticmethod
    def _has_issue(issues: List[MergeIssue], prefix: str) -> bool:
        return any(issue.code.startswith(prefix) for issue in issues)

    def is_accessible(self, location: str) -> bool:
        """
        Probe a file location without downloading it.

        Local paths are checked on disk; remote URLs get a HEAD request bounded
        by ``probe_timeout``. Any error counts as inaccessible.
        """
        if is_local_path(location):
            return Path(location).is_file()

        try:
            if self._http_client is not None:
                response = self._http_client.head(location, timeout=self.probe_timeout)
            else:
                with httpx.Client(trust_env=False) as client:
                    response = client.head(location, timeout=self.probe_timeout)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.info(f"HEAD probe for {location} failed: {e}")
            return False
        return response.status_code == 200
