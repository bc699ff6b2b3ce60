"""
Supabase-backed collaborators for the exam engine.
Question pool reads from `questions`; attempts live in `exam_attempts`, with a
summary row in `exam_results` per finalized attempt.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from supabase import Client

from .errors import PoolUnavailableError, StoreError
from .models import ExamAttempt, ExamCategory, Question, format_timestamp, utcnow
from .store import AttemptStore

logger = logging.getLogger(__name__)

PAGE_SIZE = 1000


class SupabaseQuestionSource:
    """Fetches question pools from the `questions` table."""

    def __init__(self, client: Client, table: str = "questions"):
        self.client = client
        self.table = table

    def fetch_question_pool(self, exam_id: str, category: ExamCategory, paper: str) -> List[Question]:
        """
        Fetch every question for a category/paper, paging past Supabase's row limit.

        Raises:
            PoolUnavailableError: on any client or network failure
        """
        rows: List[Dict[str, Any]] = []
        offset = 0
        try:
            while True:
                r = (
                    self.client.table(self.table)
                    .select("*")
                    .eq("category", ExamCategory.parse(category).value)
                    .eq("paper", paper)
                    .range(offset, offset + PAGE_SIZE - 1)
                    .execute()
                )
                data = r.data or []
                rows.extend(data)
                if len(data) < PAGE_SIZE:
                    break
                offset += PAGE_SIZE
        except Exception as e:
            logger.error(f"Error fetching question pool for {exam_id} ({category} {paper}): {e}")
            raise PoolUnavailableError(f"Question pool unavailable for {exam_id}") from e

        questions = []
        for row in rows:
            try:
                questions.append(Question.from_row(row))
            except (KeyError, TypeError) as e:
                logger.warning(f"Skipping malformed question row {row.get('id')}: {e}")
        logger.info(f"Fetched {len(questions)} questions for {exam_id} ({category} {paper})")
        return questions


class SupabaseAttemptStore(AttemptStore):
    """
    AttemptStore over the `exam_attempts` table.

    Atomicity per attempt id comes from conditional updates: every write filters on
    the row's current `version`, so a stale writer updates zero rows.
    """

    def __init__(
        self,
        client: Client,
        table: str = "exam_attempts",
        results_table: Optional[str] = "exam_results",
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(clock)
        self.client = client
        self.table = table
        self.results_table = results_table

    def _insert(self, row: Dict[str, Any]) -> None:
        try:
            self.client.table(self.table).insert(row).execute()
        except Exception as e:
            logger.error(f"Error creating exam attempt {row.get('id')}: {e}")
            raise StoreError(f"Could not create attempt {row.get('id')}") from e

    def _load(self, attempt_id: str) -> Optional[Dict[str, Any]]:
        r = self.client.table(self.table).select("*").eq("id", attempt_id).limit(1).execute()
        rows = r.data or []
        return rows[0] if rows else None

    def _compare_and_swap(self, attempt_id: str, changes: Dict[str, Any], expected_version: int) -> bool:
        r = (
            self.client.table(self.table)
            .update(changes)
            .eq("id", attempt_id)
            .eq("version", expected_version)
            .execute()
        )
        return bool(r.data)

    def _query(self, user_id: str, exam_id: Optional[str] = None) -> List[Dict[str, Any]]:
        q = self.client.table(self.table).select("*").eq("user_id", str(user_id))
        if exam_id is not None:
            q = q.eq("exam_id", exam_id)
        r = q.order("created_at", desc=True).execute()
        return r.data or []

    def _on_finalized(self, attempt: ExamAttempt) -> None:
        """Summary row for history and leaderboard readers. Failure here never un-finalizes."""
        if not self.results_table:
            return
        row = {
            "attempt_id": attempt.id,
            "user_id": attempt.user_id,
            "exam_id": attempt.exam_id,
            "exam_category": attempt.exam_category.value,
            "paper": attempt.paper,
            "score": attempt.score,
            "percentage": attempt.percentage,
            "correct_answers": attempt.correct_answers,
            "wrong_answers": attempt.wrong_answers,
            "unanswered": attempt.unanswered,
            "total_questions": len(attempt.assigned_questions),
            "time_spent_seconds": attempt.time_spent_seconds,
            "auto_submitted": attempt.auto_submitted,
            "completed_at": format_timestamp(attempt.end_time),
        }
        try:
            self.client.table(self.results_table).upsert(row, on_conflict="attempt_id").execute()
        except Exception as e:
            logger.error(f"Error writing exam result for {attempt.id}: {e}")
