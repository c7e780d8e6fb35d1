"""Bounded-chunk batch writes against the document store."""

import logging
from collections import Counter
from typing import Iterable, List, Optional

from .database import MAX_WRITES_PER_COMMIT, DocumentStore, WriteOp

logger = logging.getLogger(__name__)

DEFAULT_BATCH_CEILING = 490


class BatchCommitError(Exception):
    """A chunk failed to commit; earlier chunks stay committed."""

    def __init__(self, message: str, committed: int):
        super().__init__(message)
        self.committed = committed


class BatchHaltedError(Exception):
    """Raised when staging after a failed commit."""
    pass


class BatchWriter:
    """Accumulates writes and commits them in contiguous chunks.

    A chunk is committed as soon as it reaches ``ceiling`` operations, so no
    commit ever exceeds the ceiling and none is empty. After a failed commit
    the writer refuses further work.
    """

    def __init__(self, store: DocumentStore, ceiling: int = DEFAULT_BATCH_CEILING):
        if not 0 < ceiling < MAX_WRITES_PER_COMMIT:
            raise ValueError(
                f"Batch ceiling must be between 1 and {MAX_WRITES_PER_COMMIT - 1}, got {ceiling}"
            )
        self.store = store
        self.ceiling = ceiling
        self._pending: List[WriteOp] = []
        self.commits = 0
        self.staged = 0
        self.committed: Counter = Counter()
        self.failed: Optional[Exception] = None

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def committed_total(self) -> int:
        return sum(self.committed.values())

    def stage(self, op: WriteOp) -> None:
        """Stage one write, committing the chunk when it reaches the ceiling.

        Raises:
            BatchHaltedError: If an earlier commit failed
            BatchCommitError: If the automatic chunk commit fails
        """
        self._check_usable()
        self._pending.append(op)
        self.staged += 1
        if len(self._pending) >= self.ceiling:
            self._commit_pending()

    def stage_group(self, ops: Iterable[WriteOp]) -> None:
        """Stage writes that belong together.

        The pending chunk is committed first when the group would straddle
        a chunk boundary but fits in a fresh chunk.
        """
        ops = list(ops)
        self._check_usable()
        if self._pending and len(self._pending) + len(ops) > self.ceiling and len(ops) <= self.ceiling:
            self._commit_pending()
        for op in ops:
            self.stage(op)

    def flush(self) -> None:
        """Commit any remaining staged writes."""
        self._check_usable()
        if self._pending:
            self._commit_pending()

    def _check_usable(self) -> None:
        if self.failed is not None:
            raise BatchHaltedError(f"Batch writer halted after failed commit: {self.failed}")

    def _commit_pending(self) -> None:
        chunk = self._pending
        self._pending = []
        try:
            self.store.commit(chunk)
        except Exception as e:
            self.failed = e
            logger.error(
                f"Batch commit of {len(chunk)} writes failed after "
                f"{self.committed_total} committed: {e}"
            )
            raise BatchCommitError(
                f"Batch commit failed: {e}", committed=self.committed_total
            ) from e
        self.commits += 1
        self.committed.update(op.tag or op.kind for op in chunk)
        logger.info(f"Committed batch {self.commits} with {len(chunk)} operations")
