"""Pure exam logic: scoring. No I/O."""
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Sequence

from .models import Question, ScoreResult

# Scoring: correct +1, incorrect 0, skipped 0
CORRECT_SCORE = 1


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def percentage_of(correct: int, total: int) -> int:
    """round(correct / total * 100), halves rounded up. Total is the assignment length."""
    if total <= 0:
        return 0
    return round_half_up(Decimal(correct) * 100 / Decimal(total))


def score_answers(questions: Sequence[Question], answers: Sequence[Optional[int]]) -> ScoreResult:
    """
    Score one attempt.

    - None counts as unanswered, never wrong.
    - A question whose answer key is out of range for its options is an integrity skip:
      not correct, not wrong, not missed. It is tallied under unanswered so the three
      counts always add up to len(questions).

    Returns:
        ScoreResult with missed_questions = wrong + unanswered indices (ascending)
    """
    if len(answers) != len(questions):
        raise ValueError(f"answers has {len(answers)} entries for {len(questions)} questions")

    correct = wrong = unanswered = 0
    missed: List[int] = []
    skips: List[int] = []

    for i, (question, answer) in enumerate(zip(questions, answers)):
        if not question.has_valid_answer_key():
            unanswered += 1
            skips.append(i)
        elif answer is None:
            unanswered += 1
            missed.append(i)
        elif answer == question.correct_answer_idx:
            correct += 1
        else:
            wrong += 1
            missed.append(i)

    return ScoreResult(
        score=correct * CORRECT_SCORE,
        percentage=percentage_of(correct, len(questions)),
        correct_answers=correct,
        wrong_answers=wrong,
        unanswered=unanswered,
        missed_questions=missed,
        integrity_skips=skips,
    )
