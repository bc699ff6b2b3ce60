"""Exam records: questions, attempts, scores.

Rows exchanged with Supabase are plain dicts with snake_case columns; the
dataclasses here convert to and from that shape (to_row / from_row).
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept datetime or ISO string (Supabase returns '...Z' or '+00:00')."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class ExamCategory(str, Enum):
    RN = "RN"
    RM = "RM"
    RPHN = "RPHN"

    @classmethod
    def parse(cls, value) -> "ExamCategory":
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().upper())


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"

    @classmethod
    def parse(cls, value) -> Optional["Difficulty"]:
        """Map 'Beginner'/'Intermediate'/'Advanced' and 'easy'/'medium'/'hard' onto one scale."""
        if value is None or value == "":
            return None
        if isinstance(value, cls):
            return value
        return _DIFFICULTY_ALIASES.get(str(value).strip().lower())


_DIFFICULTY_ALIASES = {
    "easy": Difficulty.EASY,
    "beginner": Difficulty.EASY,
    "medium": Difficulty.MEDIUM,
    "intermediate": Difficulty.MEDIUM,
    "hard": Difficulty.HARD,
    "advanced": Difficulty.HARD,
}


@dataclass(frozen=True)
class Question:
    """One multiple-choice question. Read-only once assigned to an attempt."""

    id: str
    text: str
    options: List[str]
    correct_answer_idx: int
    explanation: str = ""
    difficulty: Optional[Difficulty] = None
    topics: List[str] = field(default_factory=list)
    category: Optional[str] = None
    paper: Optional[str] = None
    review_status: Optional[str] = None

    def has_valid_answer_key(self) -> bool:
        return isinstance(self.correct_answer_idx, int) and 0 <= self.correct_answer_idx < len(self.options)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Question":
        correct = row.get("correct_answer_idx", row.get("correct_answer"))
        try:
            correct = int(correct)
        except (TypeError, ValueError):
            correct = -1
        return cls(
            id=str(row["id"]),
            text=row.get("text") or "",
            options=list(row.get("options") or []),
            correct_answer_idx=correct,
            explanation=row.get("explanation") or "",
            difficulty=Difficulty.parse(row.get("difficulty")),
            topics=list(row.get("topics") or []),
            category=row.get("category"),
            paper=row.get("paper"),
            review_status=row.get("review_status"),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "options": list(self.options),
            "correct_answer_idx": self.correct_answer_idx,
            "explanation": self.explanation,
            "difficulty": self.difficulty.value if self.difficulty else None,
            "topics": list(self.topics),
            "category": self.category,
            "paper": self.paper,
            "review_status": self.review_status,
        }


@dataclass(frozen=True)
class ExamDefinition:
    """What the caller wants to sit: resolved by the exam metadata collaborator, including the title."""

    exam_id: str
    category: ExamCategory
    paper: str = "paper-1"
    title: str = ""
    question_count: Optional[int] = None
    duration_minutes: Optional[int] = None
    difficulty_targets: Optional[Dict[str, float]] = None
    approved_only: bool = False


@dataclass(frozen=True)
class ScoreResult:
    score: int
    percentage: int
    correct_answers: int
    wrong_answers: int
    unanswered: int
    missed_questions: List[int]
    integrity_skips: List[int] = field(default_factory=list)

    @property
    def total_questions(self) -> int:
        return self.correct_answers + self.wrong_answers + self.unanswered

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "percentage": self.percentage,
            "correct_answers": self.correct_answers,
            "wrong_answers": self.wrong_answers,
            "unanswered": self.unanswered,
            "missed_questions": list(self.missed_questions),
            "integrity_skips": list(self.integrity_skips),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScoreResult":
        return cls(
            score=int(data.get("score", 0)),
            percentage=int(data.get("percentage", 0)),
            correct_answers=int(data.get("correct_answers", 0)),
            wrong_answers=int(data.get("wrong_answers", 0)),
            unanswered=int(data.get("unanswered", 0)),
            missed_questions=list(data.get("missed_questions") or []),
            integrity_skips=list(data.get("integrity_skips") or []),
        )


@dataclass(frozen=True)
class AccessDecision:
    can_start: bool
    reason: Optional[str] = None
    attempts_used: int = 0
    max_attempts: Optional[int] = None
    can_retry: bool = False


# Fields a live session may change through AttemptStore.patch()
PATCHABLE_FIELDS = frozenset({"user_answers", "flagged_questions", "time_spent_seconds"})

# Fields only AttemptStore.finalize() may write
FINAL_FIELDS = frozenset({
    "user_answers",
    "flagged_questions",
    "time_spent_seconds",
    "auto_submitted",
    "end_time",
    "score",
    "percentage",
    "correct_answers",
    "wrong_answers",
    "unanswered",
    "missed_questions",
    "integrity_skips",
})


@dataclass
class ExamAttempt:
    """One user's sitting of one exam. Mutable while live, frozen once completed."""

    id: str
    user_id: str
    exam_id: str
    exam_category: ExamCategory
    paper: str
    assigned_questions: List[Question]
    user_answers: List[Optional[int]]
    start_time: datetime
    duration_minutes: int
    flagged_questions: Set[int] = field(default_factory=set)
    end_time: Optional[datetime] = None
    time_spent_seconds: int = 0
    completed: bool = False
    submitted: bool = False
    auto_submitted: bool = False
    score: int = 0
    percentage: int = 0
    correct_answers: int = 0
    wrong_answers: int = 0
    unanswered: int = 0
    missed_questions: List[int] = field(default_factory=list)
    integrity_skips: List[int] = field(default_factory=list)
    can_review: bool = True
    reviewed_questions: List[int] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 0

    @classmethod
    def new(
        cls,
        attempt_id: str,
        user_id: str,
        exam: ExamDefinition,
        questions: List[Question],
        start_time: datetime,
        duration_minutes: int,
    ) -> "ExamAttempt":
        return cls(
            id=attempt_id,
            user_id=user_id,
            exam_id=exam.exam_id,
            exam_category=ExamCategory.parse(exam.category),
            paper=exam.paper,
            assigned_questions=list(questions),
            user_answers=[None] * len(questions),
            start_time=start_time,
            duration_minutes=duration_minutes,
            unanswered=len(questions),
            created_at=start_time,
            updated_at=start_time,
        )

    @property
    def deadline(self) -> datetime:
        return self.start_time + timedelta(minutes=self.duration_minutes)

    def score_result(self) -> ScoreResult:
        return ScoreResult(
            score=self.score,
            percentage=self.percentage,
            correct_answers=self.correct_answers,
            wrong_answers=self.wrong_answers,
            unanswered=self.unanswered,
            missed_questions=list(self.missed_questions),
            integrity_skips=list(self.integrity_skips),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "exam_id": self.exam_id,
            "exam_category": ExamCategory.parse(self.exam_category).value,
            "paper": self.paper,
            "assigned_questions": [q.to_row() for q in self.assigned_questions],
            "user_answers": list(self.user_answers),
            "flagged_questions": sorted(self.flagged_questions),
            "start_time": format_timestamp(self.start_time),
            "end_time": format_timestamp(self.end_time),
            "duration_minutes": self.duration_minutes,
            "time_spent_seconds": self.time_spent_seconds,
            "completed": self.completed,
            "submitted": self.submitted,
            "auto_submitted": self.auto_submitted,
            "score": self.score,
            "percentage": self.percentage,
            "correct_answers": self.correct_answers,
            "wrong_answers": self.wrong_answers,
            "unanswered": self.unanswered,
            "missed_questions": list(self.missed_questions),
            "integrity_skips": list(self.integrity_skips),
            "can_review": self.can_review,
            "reviewed_questions": list(self.reviewed_questions),
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "version": self.version,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ExamAttempt":
        questions = [Question.from_row(q) for q in row.get("assigned_questions") or []]
        answers = list(row.get("user_answers") or [None] * len(questions))
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            exam_id=row["exam_id"],
            exam_category=ExamCategory.parse(row["exam_category"]),
            paper=row.get("paper") or "paper-1",
            assigned_questions=questions,
            user_answers=answers,
            flagged_questions=set(row.get("flagged_questions") or []),
            start_time=parse_timestamp(row["start_time"]),
            end_time=parse_timestamp(row.get("end_time")),
            duration_minutes=int(row.get("duration_minutes") or 0),
            time_spent_seconds=int(row.get("time_spent_seconds") or 0),
            completed=bool(row.get("completed")),
            submitted=bool(row.get("submitted")),
            auto_submitted=bool(row.get("auto_submitted")),
            score=int(row.get("score") or 0),
            percentage=int(row.get("percentage") or 0),
            correct_answers=int(row.get("correct_answers") or 0),
            wrong_answers=int(row.get("wrong_answers") or 0),
            unanswered=int(row.get("unanswered") or 0),
            missed_questions=list(row.get("missed_questions") or []),
            integrity_skips=list(row.get("integrity_skips") or []),
            can_review=bool(row.get("can_review", True)),
            reviewed_questions=list(row.get("reviewed_questions") or []),
            created_at=parse_timestamp(row.get("created_at")),
            updated_at=parse_timestamp(row.get("updated_at")),
            version=int(row.get("version") or 0),
        )
