"""Database models for the tutoring core.

This module defines SQLAlchemy ORM models for:
- Agent definitions
- Lessons and tutor sessions
- Evidence (append-only)
- Mastery rule sets and lesson progress
- Learner profiles
- Routing state
- Interactions, validation failures, pending corrections and adaptation logs
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    Enum,
    Float,
    Integer,
    String,
    Text,
    JSON,
    Index,
    UniqueConstraint,
)

from .base import Base


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string (the stored timestamp format)."""
    return datetime.now(timezone.utc).isoformat()


EVIDENCE_KINDS = ("correct_answer", "incorrect_answer", "explanation", "application", "struggle")
AGENT_ROLES = ("router", "specialist", "assessor", "support", "validator")


class AgentDefinition(Base):
    """A named agent configuration (prompt + model parameters)."""
    __tablename__ = "agent_definitions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(64), unique=True, nullable=False, index=True)
    role = Column(Enum(*AGENT_ROLES, name="agent_role"), nullable=False)
    display_name = Column(String(255), nullable=False)
    system_prompt = Column(Text, nullable=False)
    model = Column(String(255), nullable=True)  # None -> settings.LLM_MODEL
    temperature = Column(Float, nullable=True)
    reasoning_effort = Column(Enum("low", "medium", "high", name="reasoning_effort"), default="medium")
    capabilities = Column(JSON, nullable=True)  # e.g. ["web_search"]
    is_active = Column(Boolean, default=True, nullable=False)
    updated_at = Column(String(50), default=utc_now_iso, onupdate=utc_now_iso)


class Lesson(Base):
    """Lesson metadata (authored elsewhere, read-only here)."""
    __tablename__ = "lessons"

    id = Column(String(64), primary_key=True)
    title = Column(String(255), nullable=False)
    subject = Column(String(64), nullable=False, index=True)
    grade_level = Column(Integer, nullable=False)
    learning_objective = Column(Text, nullable=True)
    curriculum = Column(JSON, nullable=True)


class TutorSession(Base):
    """A learner's session on one lesson."""
    __tablename__ = "tutor_sessions"

    id = Column(String(64), primary_key=True)
    learner_id = Column(String(64), nullable=False, index=True)
    lesson_id = Column(String(64), nullable=False, index=True)
    started_at = Column(String(50), default=utc_now_iso, nullable=False)
    ended_at = Column(String(50), nullable=True)


class Evidence(Base):
    """A single observation of learner performance. Never updated or deleted."""
    __tablename__ = "evidence"

    id = Column(Integer, primary_key=True, autoincrement=True)
    learner_id = Column(String(64), nullable=False)
    lesson_id = Column(String(64), nullable=False)
    session_id = Column(String(64), nullable=False, index=True)
    kind = Column(Enum(*EVIDENCE_KINDS, name="evidence_kind"), nullable=False)
    content = Column(Text, nullable=False)
    quality_score = Column(Float, nullable=True)  # 0 to 100
    confidence = Column(Float, nullable=True)  # 0.0 to 1.0
    context = Column(String(255), nullable=True)  # topic tag
    metadata_json = Column(JSON, nullable=True)
    recorded_at = Column(String(50), default=utc_now_iso, nullable=False)

    __table_args__ = (
        Index("idx_evidence_learner_lesson", "learner_id", "lesson_id"),
        Index("idx_evidence_session_time", "session_id", "recorded_at"),
    )


class MasteryRuleSet(Base):
    """Teacher-configured mastery thresholds for one subject and grade."""
    __tablename__ = "mastery_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subject = Column(String(64), nullable=False)
    grade = Column(Integer, nullable=False)
    min_correct_answers = Column(Integer, nullable=False)
    min_explanation_quality = Column(Float, nullable=False)
    min_application_attempts = Column(Integer, nullable=False)
    min_overall_quality = Column(Float, nullable=False)
    max_struggle_ratio = Column(Float, nullable=False)
    min_time_spent_minutes = Column(Float, nullable=False)
    updated_at = Column(String(50), default=utc_now_iso, onupdate=utc_now_iso)

    __table_args__ = (
        UniqueConstraint("subject", "grade", name="unique_subject_grade"),
    )


class LessonProgress(Base):
    """Stored mastery level for a learner on a lesson (0 to 100)."""
    __tablename__ = "lesson_progress"

    id = Column(Integer, primary_key=True, autoincrement=True)
    learner_id = Column(String(64), nullable=False)
    lesson_id = Column(String(64), nullable=False)
    mastery_level = Column(Float, default=0.0, nullable=False)
    completed = Column(Boolean, default=False, nullable=False)
    updated_at = Column(String(50), default=utc_now_iso, onupdate=utc_now_iso)

    __table_args__ = (
        UniqueConstraint("learner_id", "lesson_id", name="unique_lesson_progress"),
    )


class LearnerProfile(Base):
    """Long-lived learner profile read by the directive generator every turn."""
    __tablename__ = "learner_profiles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    learner_id = Column(String(64), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=True)
    age = Column(Integer, nullable=True)
    grade_level = Column(Integer, nullable=True)
    learning_style = Column(String(64), nullable=True)
    strengths = Column(JSON, nullable=True)  # list used as a set of topic tags
    struggles = Column(JSON, nullable=True)  # list used as a set of topic tags
    preferences = Column(JSON, nullable=True)
    updated_at = Column(String(50), default=utc_now_iso, onupdate=utc_now_iso)


class RoutingState(Base):
    """The currently active specialist of a session."""
    __tablename__ = "routing_states"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(64), unique=True, nullable=False, index=True)
    active_agent = Column(String(64), nullable=False)
    reason = Column(Text, nullable=True)
    handoff_count = Column(Integer, default=0, nullable=False)
    updated_at = Column(String(50), default=utc_now_iso, onupdate=utc_now_iso)


class Interaction(Base):
    """One delivered turn."""
    __tablename__ = "interactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(64), nullable=False)
    learner_id = Column(String(64), nullable=False)
    lesson_id = Column(String(64), nullable=False)
    agent = Column(String(64), nullable=False)
    learner_text = Column(Text, nullable=True)
    response_text = Column(Text, nullable=False)
    has_svg = Column(Boolean, default=False, nullable=False)
    created_at = Column(String(50), default=utc_now_iso, nullable=False)

    __table_args__ = (
        Index("idx_interaction_session_time", "session_id", "created_at"),
    )


class ValidationFailure(Base):
    """Audit record for rejected or timed-out validations."""
    __tablename__ = "validation_failures"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(64), nullable=False, index=True)
    learner_id = Column(String(64), nullable=True)
    lesson_id = Column(String(64), nullable=True)
    agent = Column(String(64), nullable=False)
    confidence_score = Column(Float, nullable=True)
    issues = Column(JSON, nullable=True)
    required_fixes = Column(JSON, nullable=True)
    original_response = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)
    final_action = Column(
        Enum(
            "approved_after_retry",
            "delivered_with_disclaimer",
            "failed_validation",
            "timed_out",
            name="validation_final_action",
        ),
        nullable=False,
    )
    created_at = Column(String(50), default=utc_now_iso, nullable=False)


class PendingCorrection(Base):
    """A response delivered with a disclaimer, to be corrected on the session's next turn."""
    __tablename__ = "pending_corrections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(64), nullable=False)
    agent = Column(String(64), nullable=False)
    original_response = Column(JSON, nullable=False)  # audio_text, display_text, svg
    issues = Column(JSON, default=list)
    required_fixes = Column(JSON, default=list)
    status = Column(Enum("pending", "delivered", name="correction_status"), default="pending", nullable=False)
    delivered_at = Column(String(50), nullable=True)
    created_at = Column(String(50), default=utc_now_iso, nullable=False)

    __table_args__ = (
        Index("idx_pending_correction_session_status", "session_id", "status"),
    )


class AdaptationLog(Base):
    """How a turn's response was adapted to the learner."""
    __tablename__ = "adaptation_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    learner_id = Column(String(64), nullable=False, index=True)
    lesson_id = Column(String(64), nullable=False)
    session_id = Column(String(64), nullable=False)
    agent = Column(String(64), nullable=False)
    mastery_level = Column(Float, nullable=False)
    difficulty_level = Column(Enum("simplified", "standard", "accelerated", name="difficulty_level"), nullable=False)
    scaffolding_level = Column(String(32), nullable=False)
    learning_style = Column(String(64), nullable=True)
    directive_count = Column(Integer, default=0, nullable=False)
    has_svg = Column(Boolean, default=False, nullable=False)
    response_preview = Column(String(200), nullable=True)
    created_at = Column(String(50), default=utc_now_iso, nullable=False)
