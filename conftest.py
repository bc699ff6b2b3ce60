"""Shared fixtures: fake clock, question factory, static pool, in-memory store, fake Supabase client."""
import copy
from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from nurseprep.config import Settings
from nurseprep.models import Difficulty, ExamCategory, ExamDefinition, Question
from nurseprep.store import InMemoryAttemptStore

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class StaticQuestionSource:
    def __init__(self, questions: List[Question]):
        self.questions = questions
        self.calls = 0

    def fetch_question_pool(self, exam_id, category, paper):
        self.calls += 1
        return list(self.questions)


def make_question(i: int, correct: int = 0, difficulty=None, n_options: int = 4, **kwargs) -> Question:
    return Question(
        id=f"q{i}",
        text=f"Question {i}?",
        options=[f"option {j}" for j in range(n_options)],
        correct_answer_idx=correct,
        explanation=f"Because {i}",
        difficulty=Difficulty.parse(difficulty),
        topics=[f"topic-{i % 3}"],
        **kwargs,
    )


def make_pool(n: int, difficulty=None) -> List[Question]:
    return [make_question(i, correct=i % 4, difficulty=difficulty) for i in range(n)]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryAttemptStore(clock=clock)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        question_count=5,
        duration_minutes=60,
        autosave_interval_seconds=30,
        finalize_max_attempts=3,
        finalize_backoff_seconds=0.5,
        snapshot_dir=tmp_path / "snapshots",
    )


@pytest.fixture
def exam():
    return ExamDefinition(exam_id="rn-paper-1-mock", category=ExamCategory.RN, paper="paper-1", title="RN Mock 1")


class FakeResponse:
    def __init__(self, data, count=None):
        self.data = data
        self.count = count


class FakeQuery:
    """Just enough of the supabase-py query builder: select/insert/update/upsert + eq/order/range/limit."""

    def __init__(self, client, table):
        self.client = client
        self.table = table
        self.op = "select"
        self.payload = None
        self.on_conflict = None
        self.count = None
        self.filters = []
        self._order = None
        self._range = None
        self._limit = None

    def select(self, *columns, count=None):
        self.op, self.count = "select", count
        return self

    def insert(self, row):
        self.op, self.payload = "insert", row
        return self

    def update(self, changes):
        self.op, self.payload = "update", changes
        return self

    def upsert(self, row, on_conflict=None):
        self.op, self.payload, self.on_conflict = "upsert", row, on_conflict
        return self

    def eq(self, column, value):
        self.filters.append((column, value))
        return self

    def order(self, column, desc=False):
        self._order = (column, desc)
        return self

    def range(self, start, end):
        self._range = (start, end)
        return self

    def limit(self, n):
        self._limit = n
        return self

    def _matches(self, row):
        return all(row.get(column) == value for column, value in self.filters)

    def execute(self):
        self.client.calls.append((self.table, self.op, list(self.filters)))
        if self.client.fail:
            raise ConnectionError("supabase unreachable")
        rows = self.client.tables.setdefault(self.table, [])

        if self.op == "insert":
            if any(r.get("id") == self.payload.get("id") for r in rows):
                raise RuntimeError("duplicate key value violates unique constraint")
            rows.append(copy.deepcopy(self.payload))
            return FakeResponse([copy.deepcopy(self.payload)])

        if self.op == "upsert":
            key = self.on_conflict or "id"
            for r in rows:
                if r.get(key) == self.payload.get(key):
                    r.update(copy.deepcopy(self.payload))
                    break
            else:
                rows.append(copy.deepcopy(self.payload))
            return FakeResponse([copy.deepcopy(self.payload)])

        matched = [r for r in rows if self._matches(r)]
        if self.op == "update":
            for r in matched:
                r.update(copy.deepcopy(self.payload))
            return FakeResponse(copy.deepcopy(matched))

        if self._order:
            column, desc = self._order
            matched = sorted(matched, key=lambda r: r.get(column) or "", reverse=desc)
        total = len(matched)
        if self._range:
            start, end = self._range
            matched = matched[start:end + 1]
        if self._limit is not None:
            matched = matched[:self._limit]
        return FakeResponse(copy.deepcopy(matched), count=total if self.count else None)


class FakeSupabase:
    def __init__(self, tables=None):
        self.tables = tables or {}
        self.calls = []
        self.fail = False

    def table(self, name):
        return FakeQuery(self, name)


@pytest.fixture
def supabase():
    return FakeSupabase()
