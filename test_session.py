import random
import threading
import time
from dataclasses import replace

import pytest

from conftest import StaticQuestionSource, make_pool
from nurseprep.errors import (
    AccessDeniedError,
    DuplicateAttemptError,
    ExamConfigError,
    InsufficientQuestionsError,
    InvalidAnswerError,
    PoolUnavailableError,
    SessionClosedError,
    StoreError,
)
from nurseprep.access import AccessChecker
from nurseprep.models import AccessDecision
from nurseprep.session import AutosaveStatus, ExamSessionController, SessionState
from nurseprep.snapshot import LocalSnapshotCache
from nurseprep.store import InMemoryAttemptStore


class FlakyStore(InMemoryAttemptStore):
    """In-memory store that can fail patches / finalizes on demand and counts calls."""

    def __init__(self, clock):
        super().__init__(clock)
        self.fail_patch = False
        self.fail_finalize = 0
        self.patch_calls = 0
        self.finalize_calls = 0
        self.finalize_delay = 0.0

    def patch(self, attempt_id, fields, expected_version=None):
        self.patch_calls += 1
        if self.fail_patch:
            raise StoreError("network down")
        return super().patch(attempt_id, fields, expected_version)

    def finalize(self, attempt_id, final_fields, expected_version=None):
        self.finalize_calls += 1
        if self.finalize_delay:
            time.sleep(self.finalize_delay)
        if self.fail_finalize:
            self.fail_finalize -= 1
            raise StoreError("network down")
        return super().finalize(attempt_id, final_fields, expected_version)


class SingleAttemptAccess(AccessChecker):
    def __init__(self, allowed=True, reason=None):
        self.allowed = allowed
        self.reason = reason

    def can_start(self, user_id, exam_id):
        return AccessDecision(can_start=self.allowed, reason=self.reason, can_retry=False)


class BrokenSource:
    def fetch_question_pool(self, exam_id, category, paper):
        raise ConnectionError("timeout")


@pytest.fixture
def flaky(clock):
    return FlakyStore(clock)


@pytest.fixture
def snapshots(settings):
    return LocalSnapshotCache(settings.snapshot_dir)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_controller(flaky, settings, clock, snapshots, sleeps):
    def factory(pool_size=20, **kwargs):
        options = dict(
            store=flaky,
            question_source=StaticQuestionSource(make_pool(pool_size)),
            snapshots=snapshots,
            settings=settings,
            clock=clock,
            sleep=sleeps.append,
            rng=random.Random(0),
        )
        options.update(kwargs)
        return ExamSessionController(**options)
    return factory


def answer_correct(controller, i):
    controller.select_answer(i, controller.questions[i].correct_answer_idx)


def answer_wrong(controller, i):
    q = controller.questions[i]
    controller.select_answer(i, (q.correct_answer_idx + 1) % len(q.options))


# ============= Start =============

def test_start_assigns_questions_and_creates_record(make_controller, flaky, exam):
    controller = make_controller()
    attempt = controller.start("u1", exam)
    assert controller.state is SessionState.IN_PROGRESS
    assert len(controller.questions) == 5
    assert controller.user_answers == (None,) * 5
    assert controller.remaining_seconds == 3600
    stored = flaky.read(attempt.id)
    assert [q.id for q in stored.assigned_questions] == [q.id for q in controller.questions]


def test_insufficient_pool_aborts_without_record(make_controller, flaky, exam):
    controller = make_controller(pool_size=3)
    with pytest.raises(InsufficientQuestionsError):
        controller.start("u1", exam)
    assert controller.state is SessionState.ABORTED
    assert flaky.list_for_user("u1") == []


def test_access_denied_aborts(make_controller, flaky, exam):
    controller = make_controller(access=SingleAttemptAccess(False, "No remaining attempts"))
    with pytest.raises(AccessDeniedError, match="No remaining attempts"):
        controller.start("u1", exam)
    assert controller.state is SessionState.ABORTED
    assert flaky.list_for_user("u1") == []


def test_pool_failure_is_setup_error(make_controller, exam):
    controller = make_controller(question_source=BrokenSource())
    with pytest.raises(PoolUnavailableError):
        controller.start("u1", exam)
    assert controller.state is SessionState.ABORTED


def test_second_start_without_retry_is_duplicate(make_controller, exam):
    make_controller(access=SingleAttemptAccess()).start("u1", exam)
    other = make_controller(access=SingleAttemptAccess())
    with pytest.raises(DuplicateAttemptError):
        other.start("u1", exam)
    assert other.state is SessionState.ABORTED


def test_bad_difficulty_targets_abort_start(make_controller, flaky, exam):
    controller = make_controller()
    with pytest.raises(ExamConfigError):
        controller.start("u1", replace(exam, difficulty_targets={"expert": 1.0}))
    assert controller.state is SessionState.ABORTED
    assert flaky.list_for_user("u1") == []


# ============= Live input =============

def test_answers_flags_and_navigation(make_controller, exam):
    controller = make_controller()
    controller.start("u1", exam)
    answer_correct(controller, 0)
    answer_wrong(controller, 0)
    controller.select_answer(1, 2)
    controller.select_answer(1, None)
    assert controller.user_answers[1] is None
    assert controller.toggle_flag(3) is True
    assert controller.toggle_flag(4) is True
    assert controller.toggle_flag(3) is False
    assert controller.flagged_questions == {4}

    assert controller.navigate(2) == 2
    assert controller.navigate(99) == 2
    assert controller.navigate(-1) == 2
    assert controller.next_question() == 3
    assert controller.previous_question() == 2

    progress = controller.progress()
    assert progress["answered"] == 1
    assert progress["flagged"] == 1
    assert progress["current_question"] == 3


def test_out_of_range_option_rejected(make_controller, exam):
    controller = make_controller()
    controller.start("u1", exam)
    with pytest.raises(InvalidAnswerError):
        controller.select_answer(0, 4)
    with pytest.raises(InvalidAnswerError):
        controller.select_answer(7, 0)
    assert controller.user_answers == (None,) * 5


def test_answer_change_is_autosaved(make_controller, flaky, exam):
    controller = make_controller()
    attempt = controller.start("u1", exam)
    controller.select_answer(2, 1)
    controller.toggle_flag(2)
    stored = flaky.read(attempt.id)
    assert stored.user_answers[2] == 1
    assert stored.flagged_questions == {2}
    assert controller.autosave_status is AutosaveStatus.SAVED


def test_interval_autosave_on_poll(make_controller, flaky, settings, clock, exam):
    controller = make_controller(settings=replace(settings, autosave_on_change=False))
    attempt = controller.start("u1", exam)
    controller.select_answer(0, 3)
    assert flaky.patch_calls == 0
    clock.advance(10)
    controller.poll()
    assert flaky.patch_calls == 0
    clock.advance(25)
    controller.poll()
    assert flaky.patch_calls == 1
    stored = flaky.read(attempt.id)
    assert stored.user_answers[0] == 3
    assert stored.time_spent_seconds == 35


# ============= Submission =============

def test_normal_completion(make_controller, flaky, snapshots, exam, clock):
    controller = make_controller()
    attempt = controller.start("u1", exam)
    for i in range(3):
        answer_correct(controller, i)
    answer_wrong(controller, 3)
    clock.advance(1200)

    result = controller.request_submit()
    assert controller.state is SessionState.FINALIZED
    assert result.correct_answers == 3
    assert result.wrong_answers == 1
    assert result.unanswered == 1
    assert result.percentage == 60
    assert result.missed_questions == [3, 4]

    stored = flaky.read(attempt.id)
    assert stored.completed and stored.submitted
    assert stored.auto_submitted is False
    assert stored.time_spent_seconds == 1200
    assert snapshots.read(attempt.id)["finalized"] is True
    assert controller.remaining_seconds == 0


def test_all_answered_three_correct(make_controller, flaky, exam):
    controller = make_controller(pool_size=10)
    attempt = controller.start("u1", exam)
    for i in range(3):
        answer_correct(controller, i)
    for i in range(3, 5):
        answer_wrong(controller, i)
    result = controller.request_submit()
    assert (result.score, result.percentage) == (3, 60)
    assert (result.correct_answers, result.wrong_answers, result.unanswered) == (3, 2, 0)
    assert flaky.read(attempt.id).submitted


def test_timeout_auto_submits_with_unanswered(make_controller, flaky, exam, clock):
    controller = make_controller()
    attempt = controller.start("u1", exam)
    answer_correct(controller, 0)
    answer_wrong(controller, 2)
    clock.advance(3600)

    assert controller.poll() is SessionState.FINALIZED
    stored = flaky.read(attempt.id)
    assert stored.auto_submitted is True
    assert stored.unanswered == 3
    assert stored.correct_answers == 1
    assert stored.time_spent_seconds == 3600
    assert flaky.finalize_calls == 1


def test_manual_submit_after_deadline_counts_as_timeout(make_controller, flaky, exam, clock):
    controller = make_controller()
    attempt = controller.start("u1", exam)
    clock.advance(3605)
    controller.request_submit()
    controller.poll()
    stored = flaky.read(attempt.id)
    assert stored.auto_submitted is True
    assert stored.time_spent_seconds == 3600
    assert flaky.finalize_calls == 1


def test_no_input_after_submit(make_controller, exam):
    controller = make_controller()
    controller.start("u1", exam)
    controller.request_submit()
    with pytest.raises(SessionClosedError):
        controller.select_answer(0, 1)
    with pytest.raises(SessionClosedError):
        controller.toggle_flag(0)
    assert controller.autosave() is False


def test_repeated_submit_returns_same_result(make_controller, flaky, exam):
    controller = make_controller()
    controller.start("u1", exam)
    answer_correct(controller, 0)
    first = controller.request_submit()
    second = controller.request_submit()
    assert first == second
    assert flaky.finalize_calls == 1


def test_concurrent_submit_finalizes_once(make_controller, flaky, exam):
    flaky.finalize_delay = 0.05
    controller = make_controller()
    controller.start("u1", exam)
    answer_correct(controller, 0)

    barrier = threading.Barrier(3)

    def submit():
        barrier.wait()
        controller.request_submit()

    threads = [threading.Thread(target=submit) for _ in range(3)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert flaky.finalize_calls == 1
    assert controller.state is SessionState.FINALIZED
    assert controller.result.correct_answers == 1


def test_second_controller_submit_keeps_first_result(make_controller, flaky, exam, clock):
    first = make_controller()
    attempt = first.start("u1", exam)
    for i in range(5):
        answer_correct(first, i)
    other = make_controller()
    other.resume(attempt.id)
    first.request_submit()

    clock.advance(3600)
    other.poll()
    assert other.state is SessionState.FINALIZED
    assert other.result.percentage == 100
    assert flaky.read(attempt.id).auto_submitted is False


# ============= Failures =============

def test_autosave_failure_does_not_block_exam(make_controller, flaky, exam):
    controller = make_controller()
    attempt = controller.start("u1", exam)
    flaky.fail_patch = True
    answer_correct(controller, 0)
    assert controller.autosave_status is AutosaveStatus.ERROR
    assert controller.user_answers[0] is not None

    result = controller.request_submit()
    assert result.correct_answers == 1
    assert flaky.read(attempt.id).completed


def test_finalize_retries_with_backoff(make_controller, flaky, exam, sleeps):
    flaky.fail_finalize = 2
    controller = make_controller()
    controller.start("u1", exam)
    answer_correct(controller, 0)
    result = controller.request_submit()
    assert result is not None
    assert flaky.finalize_calls == 3
    assert sleeps == [0.5, 1.0]
    assert controller.state is SessionState.FINALIZED


def test_finalize_exhausted_stays_submitting_until_retry(make_controller, flaky, snapshots, exam, sleeps):
    flaky.fail_finalize = 10
    controller = make_controller()
    attempt = controller.start("u1", exam)
    answer_correct(controller, 0)

    assert controller.request_submit() is None
    assert controller.state is SessionState.SUBMITTING
    assert flaky.finalize_calls == 3
    assert isinstance(controller.finalize_error, StoreError)
    assert not flaky.read(attempt.id).completed

    pending = snapshots.pending()
    assert [s["attempt_id"] for s in pending] == [attempt.id]
    assert pending[0]["result"]["correct_answers"] == 1

    # Entering SUBMITTING is a barrier for autosaves
    patches = flaky.patch_calls
    assert controller.autosave() is False
    assert flaky.patch_calls == patches

    flaky.fail_finalize = 0
    assert controller.poll() is SessionState.FINALIZED
    assert flaky.read(attempt.id).correct_answers == 1
    assert snapshots.pending() == []


def wait_for(condition, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not condition() and time.monotonic() < deadline:
        time.sleep(0.01)
    return condition()


def test_threaded_session_keeps_finalizing_in_background(make_controller, flaky, settings, exam, sleeps):
    flaky.fail_finalize = 7
    controller = make_controller(settings=replace(settings, threaded=True))
    attempt = controller.start("u1", exam)
    answer_correct(controller, 0)

    assert controller.request_submit() is None
    try:
        assert wait_for(lambda: controller.state is SessionState.FINALIZED)
    finally:
        controller.close()
    assert flaky.finalize_calls == 8
    stored = flaky.read(attempt.id)
    assert stored.completed
    assert stored.correct_answers == 1
    # Rounds are separated by the capped backoff
    assert sleeps.count(settings.finalize_backoff_cap_seconds) >= 2


def test_background_retry_stops_on_close(make_controller, flaky, settings, exam):
    flaky.fail_finalize = 1000
    controller = make_controller(settings=replace(settings, threaded=True), sleep=lambda seconds: time.sleep(0.01))
    attempt = controller.start("u1", exam)
    assert controller.request_submit() is None
    controller.close()
    calls = flaky.finalize_calls
    time.sleep(0.1)
    assert flaky.finalize_calls == calls
    assert controller.state is SessionState.SUBMITTING
    assert not flaky.read(attempt.id).completed


def test_answer_after_executor_shutdown_does_not_raise(make_controller, settings, exam):
    controller = make_controller(settings=replace(settings, threaded=True))
    controller.start("u1", exam)
    # Same as a submit or close() shutting it down right after the autosave picked it up
    controller._executor.shutdown(wait=True)
    controller.select_answer(0, 1)
    assert controller.user_answers[0] == 1
    controller.close()


# ============= Resume & conflicts =============

def test_resume_keeps_original_deadline(make_controller, flaky, exam, clock):
    first = make_controller()
    attempt = first.start("u1", exam)
    first.select_answer(0, 1)
    first.select_answer(1, 2)
    first.close()

    clock.advance(600)
    resumed = make_controller()
    resumed.resume(attempt.id)
    assert resumed.state is SessionState.IN_PROGRESS
    assert resumed.remaining_seconds == 3000
    assert resumed.user_answers[:2] == (1, 2)
    assert resumed.current_question_index == 2


def test_resume_overdue_attempt_auto_submits(make_controller, flaky, exam, clock):
    first = make_controller()
    attempt = first.start("u1", exam)
    first.close()
    clock.advance(7200)
    resumed = make_controller()
    resumed.resume(attempt.id)
    assert resumed.state is SessionState.FINALIZED
    assert flaky.read(attempt.id).auto_submitted is True


def test_resume_finished_attempt_is_read_only(make_controller, exam):
    first = make_controller()
    attempt = first.start("u1", exam)
    first.request_submit()
    again = make_controller()
    again.resume(attempt.id)
    assert again.state is SessionState.FINALIZED
    with pytest.raises(SessionClosedError):
        again.select_answer(0, 0)


def test_stale_writer_reloads_on_conflict(make_controller, flaky, exam):
    first = make_controller()
    attempt = first.start("u1", exam)
    first.select_answer(0, 1)
    second = make_controller()
    second.resume(attempt.id)
    second.select_answer(1, 2)

    first.select_answer(2, 3)
    assert first.autosave_status is AutosaveStatus.CONFLICT
    stored = flaky.read(attempt.id)
    assert list(first.user_answers) == stored.user_answers
    assert stored.user_answers[:3] == [1, 2, None]

    # After reloading, the next write goes through
    first.select_answer(2, 3)
    assert first.autosave_status is AutosaveStatus.SAVED
    assert flaky.read(attempt.id).user_answers[:3] == [1, 2, 3]


def test_stale_submit_rescores_answers_saved_elsewhere(make_controller, flaky, exam, sleeps):
    first = make_controller()
    attempt = first.start("u1", exam)
    second = make_controller()
    second.resume(attempt.id)
    answer_correct(second, 0)
    answer_correct(second, 1)
    saved = flaky.read(attempt.id).user_answers

    result = first.request_submit()
    assert first.state is SessionState.FINALIZED
    assert result.correct_answers == 2
    stored = flaky.read(attempt.id)
    assert stored.user_answers == saved
    assert stored.correct_answers == 2
    # The conflict is resolved by rereading, not by backing off
    assert flaky.finalize_calls == 2
    assert sleeps == []
