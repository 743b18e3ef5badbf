"""Statement-level deduplication by raw-file hash and extracted-text hash.

The file hash catches a byte-identical re-upload before any parsing; the
text hash catches the same statement re-encoded or re-rendered with
different spacing. The unique constraints on the imports table remain
the authority when two uploads race past these read-side checks.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from ledgerdrop.database.models import IMPORT_PENDING, Import
from ledgerdrop.database.repository import Repository

logger = logging.getLogger(__name__)

DEFAULT_STALE_PENDING_MINUTES = 30


class DedupGuard:
    """Look up prior imports; reclaim PENDING imports that were abandoned.

    An import left PENDING longer than stale_pending_minutes belongs to an
    attempt that died mid-pipeline. It owns no committed transactions, so
    it is deleted and the new upload proceeds. A fresh PENDING import is an
    upload still in flight and counts as a duplicate.
    """

    def __init__(
        self,
        repo: Repository,
        stale_pending_minutes: int = DEFAULT_STALE_PENDING_MINUTES,
        now=None,
    ):
        self.repo = repo
        self.stale_pending_minutes = stale_pending_minutes
        self._now = now or (lambda: datetime.now(timezone.utc))

    def find_by_file_hash(self, digest: str) -> str | None:
        """Return the id of the import owning this file hash, if any."""
        return self._resolve(self.repo.get_import_by_hash(digest))

    def find_by_text_hash(self, digest: str) -> str | None:
        """Return the id of the import owning this extracted-text hash, if any."""
        return self._resolve(self.repo.get_import_by_text_hash(digest))

    def is_stale(self, imp: Import) -> bool:
        if imp.status != IMPORT_PENDING:
            return False
        created = datetime.fromisoformat(imp.created_at)
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return self._now() - created >= timedelta(minutes=self.stale_pending_minutes)

    def reclaim_stale(self) -> list[Import]:
        """Delete every stale PENDING import. Returns the deleted imports."""
        reclaimed = []
        for imp in self.repo.list_imports(status=IMPORT_PENDING):
            if self.is_stale(imp) and self.repo.delete_pending_import(imp.id):
                logger.info("Reclaimed stale pending import %s (%s)", imp.id, imp.file_name)
                reclaimed.append(imp)
        return reclaimed

    def _resolve(self, imp: Import | None) -> str | None:
        if imp is None:
            return None
        if self.is_stale(imp):
            if self.repo.delete_pending_import(imp.id):
                logger.warning(
                    "Reclaimed stale pending import %s (%s, created %s)",
                    imp.id, imp.file_name, imp.created_at,
                )
                return None
        return imp.id
