"""Supabase client and exam-service wiring. Client is cached via Streamlit."""
import logging
import os

import streamlit as st
from dotenv import load_dotenv
from supabase import create_client, Client

from nurseprep.access import SupabaseAccessChecker
from nurseprep.config import Settings
from nurseprep.database import SupabaseAttemptStore, SupabaseQuestionSource
from nurseprep.models import ExamCategory
from nurseprep.service import ExamService
from nurseprep.snapshot import LocalSnapshotCache

load_dotenv()


def _env_client() -> Client:
    url = os.environ.get("SUPABASE_URL")
    key = os.environ.get("SUPABASE_KEY")
    if not url or not key:
        raise ValueError("SUPABASE_URL and SUPABASE_KEY must be set")
    return create_client(url, key)


@st.cache_resource
def get_supabase() -> Client:
    return _env_client()


def get_supabase_uncached() -> Client:
    """For CLI/scripts (no Streamlit context)."""
    return _env_client()


def build_exam_service(client: Client, settings: Settings | None = None) -> ExamService:
    """One service per browser session; nothing here is shared between users."""
    settings = settings or Settings.from_env()
    return ExamService(
        store=SupabaseAttemptStore(client),
        question_source=SupabaseQuestionSource(client),
        access=SupabaseAccessChecker(client, admin_emails=settings.admin_emails),
        snapshots=LocalSnapshotCache(settings.snapshot_dir),
        settings=settings,
    )


# --- Questions ---

def get_question_counts():
    """Returns {category: {paper: count}} for the dashboard."""
    client = get_supabase()
    out = {}
    for category in ExamCategory:
        out[category.value] = {}
        for paper in ("paper-1", "paper-2"):
            try:
                r = (
                    client.table("questions")
                    .select("id", count="exact")
                    .eq("category", category.value)
                    .eq("paper", paper)
                    .limit(0)
                    .execute()
                )
                out[category.value][paper] = getattr(r, "count", None) or 0
            except Exception as e:
                logging.getLogger(__name__).error(f"Error counting {category.value} {paper} questions: {e}")
                out[category.value][paper] = 0
    return out


def list_exams(category: ExamCategory | None = None):
    """Exam metadata rows (id, title, category, paper, question_count, duration_minutes)."""
    q = get_supabase().table("exams").select("*").eq("is_active", True)
    if category is not None:
        q = q.eq("category", category.value)
    return q.order("title").execute()


def exam_titles(rows) -> dict:
    """{exam_id: title} from exam metadata rows, for pages that only hold an attempt."""
    titles = {}
    for row in rows:
        if not row.get("id"):
            continue
        titles[row["id"]] = row.get("title") or f"{row.get('category', '')} {row.get('paper', '')}".strip()
    return titles
