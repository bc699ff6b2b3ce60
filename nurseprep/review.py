"""Post-exam review: rebuild per-question correctness from a finalized attempt."""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from .errors import NotReviewableError
from .models import ExamAttempt, Question


class ReviewFilter(str, Enum):
    ALL = "all"
    CORRECT = "correct"
    INCORRECT = "incorrect"
    UNANSWERED = "unanswered"
    FLAGGED = "flagged"


@dataclass(frozen=True)
class ReviewQuestion:
    index: int
    question: Question
    user_answer: Optional[int]
    is_correct: bool
    is_answered: bool
    is_flagged: bool
    explanation: str
    integrity_skip: bool = False
    reviewed: bool = False

    @property
    def correct_answer_idx(self) -> int:
        return self.question.correct_answer_idx


def assemble_review(attempt: ExamAttempt) -> List[ReviewQuestion]:
    """
    Raises:
        NotReviewableError: attempt not completed, or review disabled for it
    """
    if not attempt.completed:
        raise NotReviewableError(f"Attempt {attempt.id} is not finished yet")
    if not attempt.can_review:
        raise NotReviewableError(f"Review is not available for attempt {attempt.id}")

    flagged = set(attempt.flagged_questions)
    reviewed = set(attempt.reviewed_questions)
    items = []
    for i, question in enumerate(attempt.assigned_questions):
        answer = attempt.user_answers[i] if i < len(attempt.user_answers) else None
        valid = question.has_valid_answer_key()
        items.append(ReviewQuestion(
            index=i,
            question=question,
            user_answer=answer,
            is_correct=valid and answer is not None and answer == question.correct_answer_idx,
            is_answered=answer is not None,
            is_flagged=i in flagged,
            explanation=question.explanation,
            integrity_skip=not valid,
            reviewed=i in reviewed,
        ))
    return items


def filter_review(items: List[ReviewQuestion], mode: ReviewFilter = ReviewFilter.ALL) -> List[ReviewQuestion]:
    mode = ReviewFilter(mode)
    if mode is ReviewFilter.CORRECT:
        return [r for r in items if r.is_correct]
    if mode is ReviewFilter.INCORRECT:
        return [r for r in items if r.is_answered and not r.is_correct and not r.integrity_skip]
    if mode is ReviewFilter.UNANSWERED:
        return [r for r in items if not r.is_answered]
    if mode is ReviewFilter.FLAGGED:
        return [r for r in items if r.is_flagged]
    return list(items)


def review_counts(items: List[ReviewQuestion]) -> Dict[str, int]:
    return {mode.value: len(filter_review(items, mode)) for mode in ReviewFilter}
