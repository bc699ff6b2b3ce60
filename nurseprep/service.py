"""
Exam service: explicitly constructed wiring of store, question source, access checks,
snapshots and settings. One instance per app/request scope; it hands out one
ExamSessionController per attempt.
"""
import logging
import random
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .access import AccessChecker, OpenAccess
from .config import Settings
from .errors import NotFoundError, NotReviewableError
from .models import ExamAttempt, ExamDefinition, ScoreResult, utcnow
from .review import ReviewFilter, ReviewQuestion, assemble_review, filter_review
from .session import ExamSessionController
from .snapshot import LocalSnapshotCache
from .store import AttemptStore

logger = logging.getLogger(__name__)


class ExamService:
    def __init__(
        self,
        store: AttemptStore,
        question_source=None,
        access: Optional[AccessChecker] = None,
        snapshots: Optional[LocalSnapshotCache] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.question_source = question_source
        self.access = access or OpenAccess()
        self.settings = settings or Settings()
        self.snapshots = snapshots if snapshots is not None else LocalSnapshotCache(self.settings.snapshot_dir)
        self.clock = clock
        self.sleep = sleep
        self.rng = rng

    def new_controller(self) -> ExamSessionController:
        return ExamSessionController(
            store=self.store,
            question_source=self.question_source,
            access=self.access,
            snapshots=self.snapshots,
            settings=self.settings,
            clock=self.clock,
            sleep=self.sleep,
            rng=self.rng,
        )

    # ============= Sessions =============

    def start_session(self, user_id: str, exam: ExamDefinition) -> ExamSessionController:
        controller = self.new_controller()
        controller.start(user_id, exam)
        return controller

    def resume_session(self, attempt_id: str) -> ExamSessionController:
        controller = self.new_controller()
        controller.resume(attempt_id)
        return controller

    def start_or_resume(self, user_id: str, exam: ExamDefinition) -> ExamSessionController:
        """Continue an unfinished attempt for this exam if there is one, otherwise start fresh."""
        existing = self.store.find_incomplete(user_id, exam.exam_id)
        if existing is not None:
            logger.info(f"Found unfinished attempt {existing.id} for {user_id}/{exam.exam_id}")
            return self.resume_session(existing.id)
        return self.start_session(user_id, exam)

    # ============= Results & review =============

    def consume_result_snapshot(self, attempt_id: str) -> Optional[Dict]:
        """Fast-path results for the page shown right after submit; cleared once read if finalized."""
        return self.snapshots.consume(attempt_id)

    def get_result(self, attempt_id: str) -> ScoreResult:
        attempt = self.store.read(attempt_id)
        if not attempt.completed:
            raise NotReviewableError(f"Attempt {attempt_id} has not been submitted")
        return attempt.score_result()

    def review(
        self,
        attempt_id: str,
        user_id: Optional[str] = None,
        mode: ReviewFilter = ReviewFilter.ALL,
    ) -> List[ReviewQuestion]:
        attempt = self.store.read(attempt_id)
        if user_id is not None and attempt.user_id != user_id:
            # Someone else's attempt looks the same as a missing one
            raise NotFoundError(attempt_id)
        return filter_review(assemble_review(attempt), mode)

    def mark_reviewed(self, attempt_id: str, question_index: int) -> ExamAttempt:
        return self.store.mark_reviewed(attempt_id, question_index)

    def history(self, user_id: str) -> List[ExamAttempt]:
        return self.store.list_for_user(user_id)

    def history_summary(self, user_id: str) -> Dict:
        """Overall progress across a user's completed attempts."""
        completed = [a for a in self.history(user_id) if a.completed]
        if not completed:
            return {
                "total_attempts": 0,
                "avg_percentage": 0,
                "best_percentage": 0,
                "total_questions_answered": 0,
                "auto_submitted": 0,
            }
        answered = sum(a.correct_answers + a.wrong_answers for a in completed)
        return {
            "total_attempts": len(completed),
            "avg_percentage": sum(a.percentage for a in completed) / len(completed),
            "best_percentage": max(a.percentage for a in completed),
            "total_questions_answered": answered,
            "auto_submitted": sum(1 for a in completed if a.auto_submitted),
        }

    # ============= Recovery =============

    def recover_pending_submissions(self) -> List[str]:
        """
        Finalize attempts whose local snapshot was written but whose remote finalize
        never confirmed (e.g. the process died mid-retry).

        Returns:
            Attempt ids finalized by this call
        """
        recovered = []
        for snap in self.snapshots.pending():
            attempt_id = snap.get("attempt_id")
            final_fields = snap.get("final_fields")
            if not attempt_id or not final_fields:
                continue
            try:
                record = self.store.finalize(attempt_id, final_fields)
            except Exception as e:
                logger.warning(f"Could not recover submission {attempt_id}: {e}")
                continue
            self.snapshots.update(attempt_id, finalized=True, attempt=record.to_row(), result=record.score_result().to_dict())
            recovered.append(attempt_id)
            logger.info(f"Recovered pending submission {attempt_id}")
        return recovered
