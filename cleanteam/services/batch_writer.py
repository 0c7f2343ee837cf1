from typing import Any, Dict, Optional

import structlog
from sqlalchemy import delete, update
from sqlalchemy.orm import Session

from ..config import settings


logger = structlog.get_logger(__name__)


class BatchWriter:
    """
    Stages writes on a session and commits them in chunks.

    Each chunk is one transaction; chunks are committed in order. A failure
    rolls back only the current chunk, earlier chunks stay committed.
    """

    def __init__(self, db: Session, max_ops: Optional[int] = None):
        self.db = db
        self.max_ops = max_ops or settings.batch_max_ops
        self.pending = 0
        self.total = 0
        self.commits = 0

    def _ensure_room(self, needed: int = 1) -> None:
        if self.pending + needed > self.max_ops:
            self.commit_if_needed()

    def _staged(self) -> None:
        self.pending += 1
        self.total += 1

    def add(self, obj: Any) -> None:
        self._ensure_room()
        self.db.add(obj)
        self._staged()

    def update(self, model, where: list, values: Dict[str, Any]) -> None:
        """Conditional update; `where` rows not matching are left alone."""
        self._ensure_room()
        self.db.execute(
            update(model).where(*where).values(**values).execution_options(synchronize_session=False)
        )
        self._staged()

    def delete(self, model, where: list) -> None:
        self._ensure_room()
        self.db.execute(delete(model).where(*where).execution_options(synchronize_session=False))
        self._staged()

    def commit_if_needed(self) -> None:
        if self.pending == 0:
            return
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.error("batch_commit_failed", chunk=self.commits + 1, ops=self.pending)
            raise
        self.commits += 1
        logger.debug("batch_committed", chunk=self.commits, ops=self.pending)
        self.pending = 0
