"""Exception hierarchy for the exam engine."""
from typing import Optional


class ExamError(Exception):
    """Base class for all exam engine errors."""


# ============= Setup errors =============

class SetupError(ExamError):
    """Fatal to session start. No attempt record exists when one of these is raised."""

    remediation = "Please try again later."

    def __init__(self, message: str, remediation: Optional[str] = None):
        super().__init__(message)
        if remediation:
            self.remediation = remediation


class InsufficientQuestionsError(SetupError):
    remediation = "This exam is not ready yet. Please contact an admin."

    def __init__(self, requested: int, available: int):
        super().__init__(f"Need {requested} questions, only {available} available")
        self.requested = requested
        self.available = available


class AccessDeniedError(SetupError):
    remediation = "Purchase exam access or redeem an access code."


class DuplicateAttemptError(SetupError):
    remediation = "Continue your unfinished attempt instead of starting a new one."

    def __init__(self, user_id: str, exam_id: str, attempt_id: str):
        super().__init__(f"User {user_id} already has an unfinished attempt {attempt_id} for {exam_id}")
        self.attempt_id = attempt_id


class PoolUnavailableError(SetupError):
    remediation = "Could not load questions. Check your connection and try again."


class ExamConfigError(SetupError, ValueError):
    """Exam composition that can never be satisfied (bad difficulty targets, non-positive count)."""

    remediation = "This exam is misconfigured. Please contact an admin."


# ============= Store errors =============

class StoreError(ExamError):
    """Raised by AttemptStore implementations."""


class NotFoundError(StoreError):
    def __init__(self, attempt_id: str):
        super().__init__(f"Exam attempt {attempt_id} not found")
        self.attempt_id = attempt_id


class AttemptAlreadyFinalizedError(StoreError):
    def __init__(self, attempt_id: str):
        super().__init__(f"Exam attempt {attempt_id} is already finalized")
        self.attempt_id = attempt_id


class AttemptConflictError(StoreError):
    """Another writer changed the attempt since this session last saw it."""

    def __init__(self, attempt_id: str, expected_version: int, actual_version: Optional[int]):
        super().__init__(
            f"Exam attempt {attempt_id} changed elsewhere (expected v{expected_version}, found v{actual_version})"
        )
        self.attempt_id = attempt_id
        self.expected_version = expected_version
        self.actual_version = actual_version


# ============= Session / review errors =============

class SessionClosedError(ExamError):
    """Command issued to a session that is not in progress."""


class InvalidAnswerError(ExamError, ValueError):
    pass


class NotReviewableError(ExamError):
    pass
