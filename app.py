"""NursePrep: timed nursing exam simulator (RN / RM / RPHN)."""
import logging

import streamlit as st

from db import build_exam_service, exam_titles, get_question_counts, get_supabase, list_exams
from nurseprep.config import configure_logging
from nurseprep.errors import ExamError, SetupError
from nurseprep.models import ExamCategory, ExamDefinition
from nurseprep.review import ReviewFilter, filter_review, review_counts
from nurseprep.session import AutosaveStatus, SessionState
from nurseprep.timer import TimeWarning, format_clock

configure_logging()
logger = logging.getLogger(__name__)

st.set_page_config(page_title="NursePrep", layout="wide")
st.sidebar.title("NursePrep")

PAGES = ["Dashboard", "Exam", "Results", "Review", "History"]
default_page = st.query_params.get("page", "Dashboard")
if default_page not in PAGES:
    default_page = "Dashboard"
page = st.sidebar.radio("Navigate", PAGES, index=PAGES.index(default_page), label_visibility="collapsed")

# Authentication happens upstream; the candidate id arrives as ?user=...
user_id = st.query_params.get("user") or st.sidebar.text_input("Candidate ID", key="user_id")


def go(target: str, **params):
    st.query_params["page"] = target
    for k, v in params.items():
        st.query_params[k] = v
    st.rerun()


def get_service():
    if "exam_service" not in st.session_state:
        service = build_exam_service(get_supabase())
        recovered = service.recover_pending_submissions()
        if recovered:
            logger.info(f"Recovered {len(recovered)} pending submission(s)")
        st.session_state["exam_service"] = service
    return st.session_state["exam_service"]


def exam_from_row(row: dict) -> ExamDefinition:
    return ExamDefinition(
        exam_id=row["id"],
        category=ExamCategory.parse(row["category"]),
        paper=row.get("paper") or "paper-1",
        title=row.get("title") or "",
        question_count=row.get("question_count"),
        duration_minutes=row.get("duration_minutes"),
        difficulty_targets=row.get("difficulty_targets"),
        approved_only=bool(row.get("approved_only")),
    )


WARNING_ICONS = {TimeWarning.NORMAL: "", TimeWarning.LOW: "⚠️ Low time", TimeWarning.CRITICAL: "⚠️ FINAL WARNING"}
SAVE_LABELS = {
    AutosaveStatus.IDLE: "Not saved yet",
    AutosaveStatus.SAVING: "Saving…",
    AutosaveStatus.SAVED: "All changes saved",
    AutosaveStatus.ERROR: "Save error, will retry",
    AutosaveStatus.CONFLICT: "Reloaded changes from another tab",
}

# ----- Dashboard -----
if page == "Dashboard":
    st.header("Dashboard")
    try:
        counts = get_question_counts()
        cols = st.columns(len(counts))
        for col, (category, papers) in zip(cols, counts.items()):
            with col:
                st.metric(category, sum(papers.values()))
                st.caption(" · ".join(f"{p}: {n}" for p, n in papers.items()))
    except Exception as e:
        st.error(f"Could not load question counts. Check DB and .env (SUPABASE_URL, SUPABASE_KEY). {e}")

    if not user_id:
        st.info("Enter your candidate ID in the sidebar to start an exam.")
        st.stop()

    try:
        exams = list_exams().data or []
    except Exception as e:
        st.error(f"Could not load exams: {e}")
        exams = []

    for row in exams:
        exam = exam_from_row(row)
        with st.container(border=True):
            st.subheader(exam.title or f"{exam.category.value} {exam.paper}")
            st.caption(f"{exam.category.value} · {exam.paper}")
            if st.button("Start / continue", key=f"start_{exam.exam_id}", type="primary"):
                try:
                    controller = get_service().start_or_resume(user_id, exam)
                    st.session_state["controller"] = controller
                    st.session_state["exam_title"] = exam.title
                    go("Exam")
                except SetupError as e:
                    st.error(f"{e}. {e.remediation}")

# ----- Exam -----
elif page == "Exam":
    controller = st.session_state.get("controller")
    if controller is None:
        st.info("No exam in progress. Start one from the Dashboard.")
        st.stop()

    state = controller.poll()
    if state is SessionState.FINALIZED:
        go("Results", attempt=controller.attempt_id)
    if state is SessionState.SUBMITTING:
        with st.spinner("Submitting your exam…"):
            controller.retry_submit()
        if controller.state is SessionState.FINALIZED:
            go("Results", attempt=controller.attempt_id)
        st.warning("Still submitting. Your answers are saved locally; we will keep retrying.")
        if st.button("Retry now"):
            st.rerun()
        st.stop()

    st.header(st.session_state.get("exam_title") or "Exam")

    @st.fragment(run_every="1s")
    def timer_panel():
        if controller.poll() is not SessionState.IN_PROGRESS:
            st.rerun(scope="app")
        remaining = controller.remaining_seconds
        st.metric("Time left", format_clock(remaining))
        label = WARNING_ICONS[controller.time_warning]
        if label:
            st.warning(label)
        st.caption(SAVE_LABELS[controller.autosave_status])

    with st.sidebar:
        timer_panel()
        progress = controller.progress()
        total = progress["total_questions"]
        st.progress(progress["answered"] / total if total else 0)
        st.caption(f"{progress['answered']}/{total} answered · {progress['flagged']} flagged")

    questions = controller.questions
    answers = controller.user_answers
    flagged = controller.flagged_questions
    idx = controller.current_question_index
    q = questions[idx]
    option_labels = "ABCDE"

    st.subheader(f"Question {idx + 1} of {len(questions)}" + ("  🚩" if idx in flagged else ""))
    st.write(q.text)

    opt_indices = [None] + list(range(len(q.options)))
    opt_labels = ["(no answer)"] + [f"{option_labels[i]}. {opt}" for i, opt in enumerate(q.options)]
    current = answers[idx]
    choice = st.radio(
        "Choose one:",
        range(len(opt_indices)),
        format_func=lambda i: opt_labels[i],
        key=f"{controller.attempt_id}_q_{idx}",
        index=opt_indices.index(current) if current in opt_indices else 0,
    )
    if opt_indices[choice] != current:
        try:
            controller.select_answer(idx, opt_indices[choice])
        except ExamError as e:
            st.error(str(e))

    col1, col2, col3, col4 = st.columns([1, 1, 1, 2])
    with col1:
        if st.button("Previous", disabled=idx == 0):
            controller.previous_question()
            st.rerun()
    with col2:
        if st.button("Next", disabled=idx >= len(questions) - 1):
            controller.next_question()
            st.rerun()
    with col3:
        if st.button("Unflag" if idx in flagged else "Flag"):
            controller.toggle_flag(idx)
            st.rerun()
    with col4:
        with st.popover("Submit exam"):
            unanswered = sum(1 for a in answers if a is None)
            st.write(f"{unanswered} unanswered, {len(flagged)} flagged. Time remaining: {format_clock(controller.remaining_seconds)}")
            if st.button("Confirm submit", type="primary"):
                with st.spinner("Submitting your exam…"):
                    controller.request_submit()
                st.rerun()

    st.divider()
    st.caption("Question navigator")
    nav_cols = st.columns(10)
    for i in range(len(questions)):
        mark = "🚩" if i in flagged else ("✓" if answers[i] is not None else "")
        with nav_cols[i % 10]:
            if st.button(f"{i + 1}{mark}", key=f"nav_{i}", type="primary" if i == idx else "secondary"):
                controller.navigate(i)
                st.rerun()

# ----- Results -----
elif page == "Results":
    attempt_id = st.query_params.get("attempt") or (
        st.session_state["controller"].attempt_id if "controller" in st.session_state else None
    )
    if not attempt_id:
        st.info("No results to show yet.")
        st.stop()

    service = get_service()
    snapshot = service.consume_result_snapshot(attempt_id)
    if snapshot:
        result = snapshot["result"]
        auto = snapshot["final_fields"].get("auto_submitted", False)
        st.session_state[f"result_{attempt_id}"] = (result, auto)
    elif f"result_{attempt_id}" in st.session_state:
        result, auto = st.session_state[f"result_{attempt_id}"]
    else:
        try:
            attempt = service.store.read(attempt_id)
        except ExamError as e:
            st.error(str(e))
            st.stop()
        result, auto = attempt.score_result().to_dict(), attempt.auto_submitted

    st.header("Results")
    if auto:
        st.info("Time ran out. Your exam was submitted automatically.")
    col1, col2, col3, col4 = st.columns(4)
    col1.metric("Score", f"{result['percentage']}%")
    col2.metric("Correct", result["correct_answers"])
    col3.metric("Wrong", result["wrong_answers"])
    col4.metric("Unanswered", result["unanswered"])
    if result.get("integrity_skips"):
        st.caption(f"{len(result['integrity_skips'])} question(s) excluded from scoring due to a data problem.")
    if st.button("Review answers", type="primary"):
        go("Review", attempt=attempt_id)

# ----- Review -----
elif page == "Review":
    attempt_id = st.query_params.get("attempt")
    if not attempt_id:
        st.info("Pick an attempt from History to review.")
        st.stop()
    service = get_service()
    try:
        items = service.review(attempt_id, user_id=user_id or None)
    except ExamError as e:
        st.error(str(e))
        st.stop()

    counts = review_counts(items)
    mode = st.radio(
        "Show",
        list(ReviewFilter),
        format_func=lambda m: f"{m.value.title()} ({counts[m.value]})",
        horizontal=True,
    )
    letters = "ABCDE"
    for item in filter_review(items, mode):
        status = "✅" if item.is_correct else ("⏭️" if not item.is_answered else "❌")
        with st.expander(f"{status} Question {item.index + 1}" + ("  🚩" if item.is_flagged else "")):
            st.write(item.question.text)
            for i, opt in enumerate(item.question.options):
                marker = " ← correct" if i == item.correct_answer_idx else ""
                marker += " ← your answer" if i == item.user_answer else ""
                st.write(f"{letters[i] if i < len(letters) else i}. {opt}{marker}")
            if item.explanation:
                st.info(item.explanation)
            if not item.reviewed and st.button("Mark reviewed", key=f"rev_{item.index}"):
                service.mark_reviewed(attempt_id, item.index)
                st.rerun()

# ----- History -----
elif page == "History":
    st.header("History")
    if not user_id:
        st.info("Enter your candidate ID in the sidebar.")
        st.stop()
    service = get_service()
    summary = service.history_summary(user_id)
    col1, col2, col3 = st.columns(3)
    col1.metric("Completed exams", summary["total_attempts"])
    col2.metric("Average", f"{summary['avg_percentage']:.0f}%")
    col3.metric("Best", f"{summary['best_percentage']}%")
    try:
        titles = exam_titles(list_exams().data or [])
    except Exception as e:
        logger.warning(f"Could not load exam titles: {e}")
        titles = {}
    for attempt in service.history(user_id):
        status = f"{attempt.percentage}%" if attempt.completed else "in progress"
        title = titles.get(attempt.exam_id) or f"{attempt.exam_category.value} {attempt.paper}"
        with st.container(border=True):
            st.write(f"**{title}** · {attempt.exam_category.value} {attempt.paper} · {status}")
            st.caption(attempt.start_time.strftime("%Y-%m-%d %H:%M UTC"))
            if attempt.completed and st.button("Review", key=f"hist_{attempt.id}"):
                go("Review", attempt=attempt.id)
