"""Print the Supabase database schema for NursePrep."""
import os
from dotenv import load_dotenv

load_dotenv()

SUPABASE_URL = os.getenv("SUPABASE_URL")

# SQL schema
SCHEMA_SQL = """
-- Question bank
CREATE TABLE IF NOT EXISTS questions (
    id TEXT PRIMARY KEY,
    category VARCHAR(8) NOT NULL CHECK (category IN ('RN', 'RM', 'RPHN')),
    paper VARCHAR(16) NOT NULL DEFAULT 'paper-1',
    text TEXT NOT NULL,
    options JSONB NOT NULL,
    correct_answer_idx INT NOT NULL,
    explanation TEXT,
    difficulty VARCHAR(16),
    topics JSONB DEFAULT '[]',
    review_status VARCHAR(16) DEFAULT 'approved',
    created_at TIMESTAMPTZ DEFAULT NOW()
);

-- Exam metadata (titles are looked up here, never derived from ids)
CREATE TABLE IF NOT EXISTS exams (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    category VARCHAR(8) NOT NULL,
    paper VARCHAR(16) NOT NULL DEFAULT 'paper-1',
    question_count INT NOT NULL DEFAULT 50,
    duration_minutes INT NOT NULL DEFAULT 60,
    difficulty_targets JSONB,
    approved_only BOOLEAN DEFAULT FALSE,
    is_active BOOLEAN DEFAULT TRUE
);

-- Exam attempts (one row per sitting; version guards concurrent writers)
CREATE TABLE IF NOT EXISTS exam_attempts (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    exam_id TEXT NOT NULL,
    exam_category VARCHAR(8) NOT NULL,
    paper VARCHAR(16) NOT NULL,
    assigned_questions JSONB NOT NULL,
    user_answers JSONB NOT NULL,
    flagged_questions JSONB DEFAULT '[]',
    start_time TIMESTAMPTZ NOT NULL,
    end_time TIMESTAMPTZ,
    duration_minutes INT NOT NULL,
    time_spent_seconds INT DEFAULT 0,
    completed BOOLEAN DEFAULT FALSE,
    submitted BOOLEAN DEFAULT FALSE,
    auto_submitted BOOLEAN DEFAULT FALSE,
    score INT DEFAULT 0,
    percentage INT DEFAULT 0,
    correct_answers INT DEFAULT 0,
    wrong_answers INT DEFAULT 0,
    unanswered INT DEFAULT 0,
    missed_questions JSONB DEFAULT '[]',
    integrity_skips JSONB DEFAULT '[]',
    can_review BOOLEAN DEFAULT TRUE,
    reviewed_questions JSONB DEFAULT '[]',
    created_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW(),
    version INT NOT NULL DEFAULT 1
);

-- Result summary per finalized attempt (history / leaderboard readers)
CREATE TABLE IF NOT EXISTS exam_results (
    attempt_id TEXT PRIMARY KEY REFERENCES exam_attempts(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    exam_id TEXT NOT NULL,
    exam_category VARCHAR(8) NOT NULL,
    paper VARCHAR(16) NOT NULL,
    score INT NOT NULL,
    percentage INT NOT NULL,
    correct_answers INT NOT NULL,
    wrong_answers INT NOT NULL,
    unanswered INT NOT NULL,
    total_questions INT NOT NULL,
    time_spent_seconds INT,
    auto_submitted BOOLEAN DEFAULT FALSE,
    completed_at TIMESTAMPTZ
);

-- Entitlements written by payment / access-code flows
CREATE TABLE IF NOT EXISTS user_access (
    user_id TEXT PRIMARY KEY,
    exam_category VARCHAR(8),
    is_active BOOLEAN DEFAULT TRUE,
    is_restricted BOOLEAN DEFAULT FALSE,
    restriction_reason TEXT,
    expiry_date TIMESTAMPTZ,
    attempts_made JSONB DEFAULT '{}',
    max_attempts INT DEFAULT 1,
    remaining_attempts INT DEFAULT 1,
    updated_at TIMESTAMPTZ DEFAULT NOW()
);

-- Create indexes for performance
CREATE INDEX IF NOT EXISTS idx_questions_category_paper ON questions(category, paper);
CREATE INDEX IF NOT EXISTS idx_exam_attempts_user_exam ON exam_attempts(user_id, exam_id);
CREATE INDEX IF NOT EXISTS idx_exam_results_exam ON exam_results(exam_id);
"""


if __name__ == "__main__":
    print("NursePrep schema")
    print(f"URL: {SUPABASE_URL}")
    print("\nNote: Due to Supabase client limitations, run this SQL in Supabase SQL Editor:")
    print(SCHEMA_SQL)
    print("Go to: https://app.supabase.com > SQL Editor > New Query")
