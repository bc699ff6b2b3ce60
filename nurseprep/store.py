"""
Attempt persistence: create, patch, finalize, read.

AttemptStore holds the rules (no patch after completion, idempotent finalize,
version conflicts); backends only supply row-level primitives with an atomic
compare-and-swap on the row's version.
"""
import copy
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .errors import (
    AttemptAlreadyFinalizedError,
    AttemptConflictError,
    DuplicateAttemptError,
    NotFoundError,
    StoreError,
)
from .models import FINAL_FIELDS, PATCHABLE_FIELDS, ExamAttempt, format_timestamp, utcnow

logger = logging.getLogger(__name__)

# CAS retries when finalize races another writer
_FINALIZE_CAS_ATTEMPTS = 3


def _json_field(name: str, value: Any) -> Any:
    if name == "flagged_questions":
        return sorted(value)
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, (list, tuple)):
        return list(value)
    return value


class AttemptStore(ABC):
    """Durable record of exam attempts keyed by attempt id."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    # ============= Backend primitives =============

    @abstractmethod
    def _insert(self, row: Dict[str, Any]) -> None:
        """Insert a new row. Must fail if the id exists."""

    @abstractmethod
    def _load(self, attempt_id: str) -> Optional[Dict[str, Any]]:
        """Return the stored row or None."""

    @abstractmethod
    def _compare_and_swap(self, attempt_id: str, changes: Dict[str, Any], expected_version: int) -> bool:
        """Apply changes only if the stored version still equals expected_version."""

    @abstractmethod
    def _query(self, user_id: str, exam_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Rows for a user, optionally one exam."""

    def _on_finalized(self, attempt: ExamAttempt) -> None:
        """Hook for backends that keep a result summary alongside the attempt."""

    # ============= Operations =============

    def create(self, attempt: ExamAttempt, allow_retry: bool = False) -> str:
        """
        Persist a new attempt.

        Raises:
            DuplicateAttemptError: an unfinished attempt exists for (user, exam) and retries are not allowed
        """
        if len(attempt.user_answers) != len(attempt.assigned_questions):
            raise ValueError("user_answers must match assigned_questions in length")
        if not allow_retry:
            existing = self.find_incomplete(attempt.user_id, attempt.exam_id)
            if existing is not None:
                raise DuplicateAttemptError(attempt.user_id, attempt.exam_id, existing.id)

        now = self.clock()
        attempt.created_at = attempt.created_at or now
        attempt.updated_at = now
        attempt.version = 1
        self._insert(attempt.to_row())
        logger.info(f"Created exam attempt {attempt.id} ({attempt.exam_id}, {len(attempt.assigned_questions)} questions)")
        return attempt.id

    def read(self, attempt_id: str) -> ExamAttempt:
        row = self._load(attempt_id)
        if row is None:
            raise NotFoundError(attempt_id)
        return ExamAttempt.from_row(row)

    def patch(self, attempt_id: str, fields: Dict[str, Any], expected_version: Optional[int] = None) -> ExamAttempt:
        """
        Merge live-progress fields (answers, flags, time spent).

        Args:
            attempt_id: Attempt to update
            fields: Subset of user_answers / flagged_questions / time_spent_seconds
            expected_version: Version this writer last saw; a mismatch means another
                session wrote in between and the patch is rejected

        Raises:
            AttemptAlreadyFinalizedError: attempt is completed
            AttemptConflictError: expected_version is stale
        """
        unknown = set(fields) - PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not patchable: {sorted(unknown)}")

        current = self.read(attempt_id)
        if current.completed:
            raise AttemptAlreadyFinalizedError(attempt_id)
        if expected_version is not None and expected_version != current.version:
            raise AttemptConflictError(attempt_id, expected_version, current.version)
        if "user_answers" in fields and len(fields["user_answers"]) != len(current.assigned_questions):
            raise ValueError("user_answers must match assigned_questions in length")

        changes = {name: _json_field(name, value) for name, value in fields.items()}
        if "user_answers" in changes:
            changes["unanswered"] = sum(1 for a in changes["user_answers"] if a is None)
        changes["updated_at"] = format_timestamp(self.clock())
        changes["version"] = current.version + 1

        if not self._compare_and_swap(attempt_id, changes, current.version):
            latest = self.read(attempt_id)
            if latest.completed:
                raise AttemptAlreadyFinalizedError(attempt_id)
            raise AttemptConflictError(attempt_id, current.version, latest.version)
        return self.read(attempt_id)

    def finalize(
        self,
        attempt_id: str,
        final_fields: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> ExamAttempt:
        """
        Complete the attempt with its scored results. The only writer of completed/submitted.

        A second call is a no-op returning the already-finalized record; results are never rewritten.

        Args:
            expected_version: Version the scored answers were read at. If another session
                saved since then the finalize is rejected, so its answers are not overwritten

        Raises:
            AttemptConflictError: the attempt is still open and changed after expected_version
        """
        unknown = set(final_fields) - FINAL_FIELDS
        if unknown:
            raise ValueError(f"Fields not allowed in finalize: {sorted(unknown)}")

        for _ in range(_FINALIZE_CAS_ATTEMPTS):
            current = self.read(attempt_id)
            if current.completed:
                logger.info(f"Attempt {attempt_id} already finalized; returning stored result")
                return current
            if expected_version is not None and expected_version != current.version:
                raise AttemptConflictError(attempt_id, expected_version, current.version)

            changes = {name: _json_field(name, value) for name, value in final_fields.items()}
            changes.setdefault("end_time", format_timestamp(self.clock()))
            changes.update({
                "completed": True,
                "submitted": True,
                "can_review": True,
                "updated_at": format_timestamp(self.clock()),
                "version": current.version + 1,
            })
            if self._compare_and_swap(attempt_id, changes, current.version):
                attempt = self.read(attempt_id)
                logger.info(f"Finalized attempt {attempt_id}: score={attempt.score} ({attempt.percentage}%)")
                self._on_finalized(attempt)
                return attempt
            logger.debug(f"Finalize of {attempt_id} lost a version race; re-reading")

        raise StoreError(f"Could not finalize {attempt_id}: attempt kept changing")

    def mark_reviewed(self, attempt_id: str, question_index: int) -> ExamAttempt:
        """Record that a review screen was viewed. Allowed after finalization."""
        for _ in range(_FINALIZE_CAS_ATTEMPTS):
            current = self.read(attempt_id)
            if not 0 <= question_index < len(current.assigned_questions):
                raise IndexError(f"Question index {question_index} out of range")
            if question_index in current.reviewed_questions:
                return current
            changes = {
                "reviewed_questions": current.reviewed_questions + [question_index],
                "updated_at": format_timestamp(self.clock()),
                "version": current.version + 1,
            }
            if self._compare_and_swap(attempt_id, changes, current.version):
                return self.read(attempt_id)
        raise StoreError(f"Could not mark question reviewed on {attempt_id}")

    def find_incomplete(self, user_id: str, exam_id: str) -> Optional[ExamAttempt]:
        rows = [r for r in self._query(user_id, exam_id) if not r.get("completed")]
        if not rows:
            return None
        rows.sort(key=lambda r: r.get("created_at") or "", reverse=True)
        return ExamAttempt.from_row(rows[0])

    def list_for_user(self, user_id: str) -> List[ExamAttempt]:
        """User's attempts, newest first."""
        attempts = [ExamAttempt.from_row(r) for r in self._query(user_id)]
        attempts.sort(key=lambda a: a.created_at or a.start_time, reverse=True)
        return attempts


class InMemoryAttemptStore(AttemptStore):
    """Process-local store for tests and offline practice."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        super().__init__(clock)
        self._rows: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()

    def _insert(self, row: Dict[str, Any]) -> None:
        with self._lock:
            if row["id"] in self._rows:
                raise StoreError(f"Attempt {row['id']} already exists")
            self._rows[row["id"]] = copy.deepcopy(row)

    def _load(self, attempt_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._rows.get(attempt_id)
            return copy.deepcopy(row) if row is not None else None

    def _compare_and_swap(self, attempt_id: str, changes: Dict[str, Any], expected_version: int) -> bool:
        with self._lock:
            row = self._rows.get(attempt_id)
            if row is None:
                raise NotFoundError(attempt_id)
            if row.get("version", 0) != expected_version:
                return False
            row.update(copy.deepcopy(changes))
            return True

    def _query(self, user_id: str, exam_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(r)
                for r in self._rows.values()
                if r["user_id"] == user_id and (exam_id is None or r["exam_id"] == exam_id)
            ]
