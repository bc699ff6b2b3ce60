"""NursePrep timed exam-session engine."""
from .access import AccessChecker, OpenAccess
from .config import Settings, configure_logging
from .errors import (
    AccessDeniedError,
    AttemptAlreadyFinalizedError,
    AttemptConflictError,
    DuplicateAttemptError,
    ExamConfigError,
    ExamError,
    InsufficientQuestionsError,
    InvalidAnswerError,
    NotFoundError,
    NotReviewableError,
    PoolUnavailableError,
    SessionClosedError,
    SetupError,
    StoreError,
)
from .models import Difficulty, ExamAttempt, ExamCategory, ExamDefinition, Question, ScoreResult
from .review import ReviewFilter, assemble_review, filter_review
from .scoring import score_answers
from .selector import select_questions
from .service import ExamService
from .session import AutosaveStatus, ExamSessionController, SessionState
from .snapshot import LocalSnapshotCache
from .store import AttemptStore, InMemoryAttemptStore
from .timer import ExamTimer, TimeWarning

__version__ = "0.1.0"
