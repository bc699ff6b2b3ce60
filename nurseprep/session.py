"""
Exam session controller: question assignment, countdown, answer/flag/navigation input,
periodic autosave, and exactly-once submission (manual or on timeout).

States: INITIALIZING -> IN_PROGRESS -> SUBMITTING -> FINALIZED, with ABORTED reachable
from INITIALIZING only.
"""
import logging
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple
from uuid import uuid4

from .access import AccessChecker, OpenAccess
from .config import Settings
from .errors import (
    AccessDeniedError,
    AttemptAlreadyFinalizedError,
    AttemptConflictError,
    ExamError,
    InsufficientQuestionsError,
    InvalidAnswerError,
    PoolUnavailableError,
    SessionClosedError,
)
from .models import ExamAttempt, ExamDefinition, Question, ScoreResult, format_timestamp, utcnow
from .scoring import score_answers
from .selector import select_questions
from .snapshot import LocalSnapshotCache
from .store import AttemptStore
from .timer import ExamTimer, TimeWarning, warning_level

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    INITIALIZING = "initializing"
    IN_PROGRESS = "in_progress"
    SUBMITTING = "submitting"
    FINALIZED = "finalized"
    ABORTED = "aborted"


class AutosaveStatus(str, Enum):
    IDLE = "idle"
    SAVING = "saving"
    SAVED = "saved"
    ERROR = "error"
    CONFLICT = "conflict"


def new_attempt_id(user_id: str, exam_id: str) -> str:
    return f"{user_id}_{exam_id}_{uuid4().hex[:12]}"


class ExamSessionController:
    """
    Drives one user's attempt at one exam.

    The controller object is the single source of truth for the live attempt: timer
    ticks and autosaves read its fields at fire-time. `_lock` guards in-memory state;
    `_write_lock` serializes store writes so no autosave lands after finalize is issued.
    Lock order is always _write_lock then _lock.

    Collaborators:
        store: AttemptStore
        question_source: object with fetch_question_pool(exam_id, category, paper) -> List[Question]
        access: AccessChecker (defaults to OpenAccess)
        snapshots: LocalSnapshotCache for the pre-finalize local write (optional)
    """

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
        self.snapshots = snapshots
        self.settings = settings or Settings()
        self.clock = clock
        self._sleep = sleep
        self._rng = rng

        self._lock = threading.RLock()
        self._write_lock = threading.Lock()
        self._finalize_lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._save_queued = False
        self._retrying = False
        self._closed = threading.Event()

        self.state = SessionState.INITIALIZING
        self.attempt: Optional[ExamAttempt] = None
        self.current_question_index = 0
        self.autosave_status = AutosaveStatus.IDLE
        self.last_saved_at: Optional[datetime] = None
        self.result: Optional[ScoreResult] = None
        self.error: Optional[ExamError] = None
        self.finalize_error: Optional[Exception] = None

        self._timer: Optional[ExamTimer] = None
        self._version = 0
        self._last_save_started: Optional[datetime] = None
        self._final_fields: Optional[Dict] = None

    # ============= Setup =============

    def start(self, user_id: str, exam: ExamDefinition) -> ExamAttempt:
        """
        Check access, assign questions, create the attempt record, and start the clock.

        Raises:
            AccessDeniedError, PoolUnavailableError, InsufficientQuestionsError, DuplicateAttemptError
            (session goes to ABORTED and no attempt record exists)
        """
        self._require(SessionState.INITIALIZING)
        count = exam.question_count or self.settings.question_count
        duration = exam.duration_minutes or self.settings.duration_minutes
        try:
            decision = self.access.can_start(user_id, exam.exam_id)
            if not decision.can_start:
                raise AccessDeniedError(decision.reason or "Access denied")

            pool = self._fetch_pool(exam)
            if not pool:
                raise InsufficientQuestionsError(requested=count, available=0)
            questions = select_questions(
                pool,
                count,
                difficulty_targets=exam.difficulty_targets or self.settings.difficulty_targets,
                rng=self._rng,
                approved_only=exam.approved_only,
            )

            attempt = ExamAttempt.new(
                new_attempt_id(user_id, exam.exam_id), user_id, exam, questions, self.clock(), duration
            )
            self.store.create(attempt, allow_retry=decision.can_retry)
        except ExamError as e:
            with self._lock:
                self.state = SessionState.ABORTED
                self.error = e
            logger.warning(f"Exam {exam.exam_id} could not start for {user_id}: {e}")
            raise

        logger.info(f"Started attempt {attempt.id}: {count} questions, {duration} min")
        self._begin(attempt)
        return attempt

    def resume(self, attempt_id: str) -> ExamAttempt:
        """
        Rebuild a live session from the last persisted state. The clock resumes from the
        stored start time, so time spent away still counts; an overdue attempt is auto-submitted.
        """
        self._require(SessionState.INITIALIZING)
        try:
            attempt = self.store.read(attempt_id)
        except ExamError as e:
            with self._lock:
                self.state = SessionState.ABORTED
                self.error = e
            raise

        if attempt.completed:
            with self._lock:
                self.attempt = attempt
                self._version = attempt.version
                self.result = attempt.score_result()
                self.state = SessionState.FINALIZED
            return attempt

        unanswered = [i for i, a in enumerate(attempt.user_answers) if a is None]
        self.current_question_index = unanswered[0] if unanswered else 0
        logger.info(f"Resuming attempt {attempt.id} at question {self.current_question_index + 1}")
        self._begin(attempt)
        return attempt

    def _fetch_pool(self, exam: ExamDefinition) -> List[Question]:
        if self.question_source is None:
            raise PoolUnavailableError("No question source configured")
        try:
            return list(self.question_source.fetch_question_pool(exam.exam_id, exam.category, exam.paper))
        except ExamError:
            raise
        except Exception as e:
            raise PoolUnavailableError(f"Could not load questions for {exam.exam_id}: {e}") from e

    def _begin(self, attempt: ExamAttempt) -> None:
        with self._lock:
            self.attempt = attempt
            self._version = attempt.version
            self._last_save_started = self.clock()
            self.state = SessionState.IN_PROGRESS
        if self.settings.threaded:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="exam-autosave")

        self._timer = ExamTimer(
            clock=self.clock,
            tick_interval=self.settings.tick_interval_seconds,
            low_seconds=self.settings.low_time_seconds,
            critical_seconds=self.settings.critical_time_seconds,
            threaded=self.settings.threaded,
        )
        self._timer.start(
            attempt.duration_minutes * 60,
            on_tick=self._on_tick,
            on_expire=self._on_expire,
            started_at=attempt.start_time,
        )
        if not self.settings.threaded:
            self._timer.tick()

    # ============= Read accessors =============

    @property
    def attempt_id(self) -> Optional[str]:
        return self.attempt.id if self.attempt else None

    @property
    def questions(self) -> List[Question]:
        return list(self.attempt.assigned_questions) if self.attempt else []

    @property
    def user_answers(self) -> Tuple[Optional[int], ...]:
        with self._lock:
            return tuple(self.attempt.user_answers) if self.attempt else ()

    @property
    def flagged_questions(self) -> FrozenSet[int]:
        with self._lock:
            return frozenset(self.attempt.flagged_questions) if self.attempt else frozenset()

    @property
    def current_question(self) -> Optional[Question]:
        if not self.attempt or not self.attempt.assigned_questions:
            return None
        return self.attempt.assigned_questions[self.current_question_index]

    @property
    def remaining_seconds(self) -> int:
        if self.state is SessionState.FINALIZED or self._timer is None:
            return 0
        return self._timer.remaining_seconds()

    @property
    def time_warning(self) -> TimeWarning:
        return warning_level(self.remaining_seconds, self.settings.low_time_seconds, self.settings.critical_time_seconds)

    def progress(self) -> Dict:
        """Counts for the navigator and sidebar."""
        with self._lock:
            answers = self.attempt.user_answers if self.attempt else []
            answered = sum(1 for a in answers if a is not None)
            return {
                "state": self.state.value,
                "current_question": self.current_question_index + 1,
                "total_questions": len(answers),
                "answered": answered,
                "unanswered": len(answers) - answered,
                "flagged": len(self.attempt.flagged_questions) if self.attempt else 0,
                "remaining_seconds": self.remaining_seconds,
                "warning": self.time_warning.value,
                "autosave_status": self.autosave_status.value,
            }

    # ============= Commands =============

    def select_answer(self, question_index: int, option_index: Optional[int]) -> None:
        """Record (or change, or clear with None) the answer for one question."""
        with self._lock:
            self._require_live()
            question = self._question_at(question_index)
            if option_index is not None and not 0 <= option_index < len(question.options):
                raise InvalidAnswerError(
                    f"Option {option_index} out of range for question {question_index} ({len(question.options)} options)"
                )
            self.attempt.user_answers[question_index] = option_index
        if self.settings.autosave_on_change:
            self._schedule_autosave("answer")

    def toggle_flag(self, question_index: int) -> bool:
        """Returns the new flag state."""
        with self._lock:
            self._require_live()
            self._question_at(question_index)
            flags = self.attempt.flagged_questions
            if question_index in flags:
                flags.discard(question_index)
                flagged = False
            else:
                flags.add(question_index)
                flagged = True
        if self.settings.autosave_on_change:
            self._schedule_autosave("flag")
        return flagged

    def navigate(self, to_index: int) -> int:
        """Move to a question. Out-of-range targets are ignored."""
        with self._lock:
            if self.attempt and 0 <= to_index < len(self.attempt.assigned_questions):
                self.current_question_index = to_index
            return self.current_question_index

    def next_question(self) -> int:
        return self.navigate(self.current_question_index + 1)

    def previous_question(self) -> int:
        return self.navigate(self.current_question_index - 1)

    def request_submit(self) -> Optional[ScoreResult]:
        """
        User-confirmed submission.

        Returns:
            ScoreResult once finalized, or None while finalization is still being retried
        """
        return self._submit(auto=False)

    def poll(self) -> SessionState:
        """Drive the session from a host without background threads (e.g. each Streamlit rerun)."""
        if self.state is SessionState.IN_PROGRESS and self._timer and not self.settings.threaded:
            self._timer.tick()
        elif self.state is SessionState.SUBMITTING:
            self.retry_submit()
        return self.state

    def retry_submit(self) -> Optional[ScoreResult]:
        if self.state is SessionState.FINALIZED:
            return self.result
        if self.state is not SessionState.SUBMITTING:
            raise SessionClosedError(f"Nothing to retry in state {self.state.value}")
        return self._finalize_with_retry()

    def close(self) -> None:
        """Stop background work. The attempt stays recoverable from its last autosave."""
        self._closed.set()
        if self._timer:
            self._timer.cancel()
        with self._lock:
            executor, self._executor = self._executor, None
        if executor:
            executor.shutdown(wait=True)

    # ============= Autosave =============

    def _on_tick(self, remaining: int) -> None:
        if self.state is not SessionState.IN_PROGRESS or remaining <= 0:
            return
        started = self._last_save_started
        if started is None or (self.clock() - started).total_seconds() >= self.settings.autosave_interval_seconds:
            self._schedule_autosave("interval")

    def _schedule_autosave(self, reason: str) -> None:
        with self._lock:
            if self.state is not SessionState.IN_PROGRESS:
                return
            executor = self._executor
            if executor is not None:
                if self._save_queued:
                    return
                self._save_queued = True
        if executor is None:
            self.autosave(reason)
            return
        try:
            executor.submit(self._queued_autosave, reason)
        except RuntimeError:
            # Shut down by a concurrent submit or close(); nothing left to save into
            with self._lock:
                self._save_queued = False

    def _queued_autosave(self, reason: str) -> None:
        with self._lock:
            self._save_queued = False
        try:
            self.autosave(reason)
        except Exception:
            logger.exception("Autosave task crashed")

    def autosave(self, reason: str = "manual") -> bool:
        """
        Patch the store with current answers, flags and time spent.
        Failures are logged and surfaced through autosave_status; they never raise.
        """
        with self._write_lock:
            with self._lock:
                if self.state is not SessionState.IN_PROGRESS:
                    return False
                attempt_id = self.attempt.id
                fields = {
                    "user_answers": list(self.attempt.user_answers),
                    "flagged_questions": sorted(self.attempt.flagged_questions),
                    "time_spent_seconds": self._elapsed_seconds(),
                }
                version = self._version
                self.autosave_status = AutosaveStatus.SAVING
                self._last_save_started = self.clock()

            try:
                saved = self.store.patch(attempt_id, fields, expected_version=version)
            except AttemptConflictError as e:
                logger.warning(f"Autosave conflict on {attempt_id}: {e}; reloading latest state")
                saved = None
            except AttemptAlreadyFinalizedError:
                logger.warning(f"Attempt {attempt_id} was finalized elsewhere; closing session")
                saved = None
            except Exception as e:
                logger.warning(f"Autosave failed for {attempt_id} ({reason}): {e}; will retry next interval")
                with self._lock:
                    self.autosave_status = AutosaveStatus.ERROR
                return False
            else:
                with self._lock:
                    self._version = saved.version
                    self.attempt.version = saved.version
                    self.attempt.updated_at = saved.updated_at
                    self.attempt.time_spent_seconds = saved.time_spent_seconds
                    self.autosave_status = AutosaveStatus.SAVED
                    self.last_saved_at = self.clock()

        if saved is None:
            self._reload_after_conflict()
            return False
        logger.debug(f"Autosaved {attempt_id} ({reason}) v{saved.version}")
        return True

    def _reload_after_conflict(self) -> None:
        try:
            latest = self.store.read(self.attempt.id)
        except Exception as e:
            logger.warning(f"Could not reload {self.attempt.id} after conflict: {e}")
            with self._lock:
                self.autosave_status = AutosaveStatus.ERROR
            return
        if latest.completed:
            self._adopt_finalized(latest)
            return
        with self._lock:
            if self.state is not SessionState.IN_PROGRESS:
                return
            self.attempt.user_answers = list(latest.user_answers)
            self.attempt.flagged_questions = set(latest.flagged_questions)
            self.attempt.time_spent_seconds = latest.time_spent_seconds
            self.attempt.version = latest.version
            self._version = latest.version
            self.autosave_status = AutosaveStatus.CONFLICT

    def _adopt_finalized(self, record: ExamAttempt) -> None:
        with self._lock:
            self.attempt = record
            self._version = record.version
            self.result = record.score_result()
            self.state = SessionState.FINALIZED
        if self._timer:
            self._timer.cancel()

    # ============= Submission =============

    def _on_expire(self) -> None:
        try:
            self._submit(auto=True)
        except SessionClosedError:
            pass

    def _submit(self, auto: bool) -> Optional[ScoreResult]:
        with self._lock:
            if self.state is SessionState.FINALIZED:
                return self.result
            if self.state is SessionState.SUBMITTING:
                return None
            if self.state is not SessionState.IN_PROGRESS:
                raise SessionClosedError(f"Cannot submit in state {self.state.value}")
            self.state = SessionState.SUBMITTING

            attempt = self.attempt
            end_time = self.clock()
            # Submitting at or past the deadline is a timeout whichever trigger got here first
            auto = auto or end_time >= attempt.deadline
            result = score_answers(attempt.assigned_questions, attempt.user_answers)
            self._final_fields = {
                "user_answers": list(attempt.user_answers),
                "flagged_questions": sorted(attempt.flagged_questions),
                "time_spent_seconds": self._elapsed_seconds(end_time),
                "auto_submitted": auto,
                "end_time": format_timestamp(end_time),
                **result.to_dict(),
            }
            final_fields = dict(self._final_fields)

        logger.info(f"Submitting attempt {attempt.id} ({'auto' if auto else 'manual'}): {result.correct_answers}/{len(attempt.assigned_questions)}")
        if self._timer:
            self._timer.cancel()
        self._write_snapshot(attempt, final_fields, result)
        final = self._finalize_with_retry()
        if final is None and self.settings.threaded:
            self._keep_finalizing()
        return final

    def _write_snapshot(self, attempt: ExamAttempt, final_fields: Dict, result: ScoreResult) -> None:
        if self.snapshots is None:
            return
        row = attempt.to_row()
        row.update(final_fields)
        row.update({"completed": True, "submitted": True})
        try:
            self.snapshots.write(attempt.id, {
                "attempt": row,
                "result": result.to_dict(),
                "final_fields": final_fields,
                "finalized": False,
            })
        except OSError as e:
            logger.error(f"Could not write local snapshot for {attempt.id}: {e}")

    def _finalize_with_retry(self) -> Optional[ScoreResult]:
        if not self._finalize_lock.acquire(blocking=False):
            return None
        try:
            attempt_id = self.attempt.id
            delay = self.settings.finalize_backoff_seconds
            max_attempts = max(1, self.settings.finalize_max_attempts)
            for n in range(1, max_attempts + 1):
                with self._write_lock:
                    try:
                        record = self.store.finalize(attempt_id, self._final_fields, expected_version=self._version)
                    except AttemptConflictError as e:
                        logger.warning(f"Attempt {attempt_id} changed elsewhere before finalize ({e}); rescoring saved answers")
                        if self._rescore_latest():
                            return self.result
                        continue
                    except Exception as e:
                        self.finalize_error = e
                        logger.warning(f"Finalize {n}/{max_attempts} failed for {attempt_id}: {e}")
                    else:
                        self._complete(record)
                        return self.result
                if n < max_attempts:
                    self._sleep(min(delay, self.settings.finalize_backoff_cap_seconds))
                    delay *= 2
            logger.error(f"Attempt {attempt_id} still not finalized after {max_attempts} tries; will keep retrying")
            return None
        finally:
            self._finalize_lock.release()

    def _rescore_latest(self) -> bool:
        """
        Rebuild the pending submission from the stored answers after another session
        saved over this one. Called with _write_lock held.

        Returns:
            True if the attempt turned out to be finalized already
        """
        try:
            latest = self.store.read(self.attempt.id)
        except Exception as e:
            self.finalize_error = e
            logger.warning(f"Could not reload {self.attempt.id} before finalize: {e}")
            return False
        if latest.completed:
            self._complete(latest)
            return True

        with self._lock:
            attempt = self.attempt
            attempt.user_answers = list(latest.user_answers)
            attempt.flagged_questions = set(latest.flagged_questions)
            attempt.version = latest.version
            self._version = latest.version
            result = score_answers(attempt.assigned_questions, attempt.user_answers)
            self._final_fields.update({
                "user_answers": list(attempt.user_answers),
                "flagged_questions": sorted(attempt.flagged_questions),
                **result.to_dict(),
            })
            final_fields = dict(self._final_fields)
        self._write_snapshot(attempt, final_fields, result)
        return False

    def _keep_finalizing(self) -> None:
        """Threaded sessions keep retrying in the background until finalize lands or close() is called."""
        with self._lock:
            executor = self._executor
            if executor is None or self._retrying or self.state is not SessionState.SUBMITTING:
                return
            self._retrying = True
        try:
            executor.submit(self._retry_until_finalized)
        except RuntimeError:
            with self._lock:
                self._retrying = False

    def _retry_until_finalized(self) -> None:
        try:
            while self.state is SessionState.SUBMITTING and not self._closed.is_set():
                self._sleep(self.settings.finalize_backoff_cap_seconds)
                if self._closed.is_set():
                    break
                try:
                    self._finalize_with_retry()
                except Exception:
                    logger.exception(f"Background finalize of {self.attempt_id} crashed")
        finally:
            with self._lock:
                self._retrying = False

    def _complete(self, record: ExamAttempt) -> None:
        with self._lock:
            self.attempt = record
            self._version = record.version
            self.result = record.score_result()
            self.finalize_error = None
            self.state = SessionState.FINALIZED
            executor, self._executor = self._executor, None
        if self.snapshots is not None:
            try:
                self.snapshots.update(record.id, finalized=True, attempt=record.to_row(), result=self.result.to_dict())
            except OSError as e:
                logger.error(f"Could not update local snapshot for {record.id}: {e}")
        if executor:
            executor.shutdown(wait=False)

    # ============= Helpers =============

    def _elapsed_seconds(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        elapsed = int((now - self.attempt.start_time).total_seconds())
        return max(0, min(elapsed, self.attempt.duration_minutes * 60))

    def _question_at(self, question_index: int) -> Question:
        if not 0 <= question_index < len(self.attempt.assigned_questions):
            raise InvalidAnswerError(f"No question at index {question_index}")
        return self.attempt.assigned_questions[question_index]

    def _require(self, state: SessionState) -> None:
        if self.state is not state:
            raise SessionClosedError(f"Session is {self.state.value}, expected {state.value}")

    def _require_live(self) -> None:
        if self.state is not SessionState.IN_PROGRESS:
            raise SessionClosedError(f"Session is {self.state.value}; answers can no longer change")
