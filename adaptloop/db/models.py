"""
Database Models for AdaptLoop
=============================

SQLAlchemy models for learned error patterns, prompt versions and the
generation outcome log.
"""

from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

from sqlalchemy import String, Integer, Float, DateTime, JSON, Text, Boolean, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


# =============================================================================
# Error Learning Tables
# =============================================================================

class ErrorPatternModel(Base):
    """
    A learned association between an error signature and a structured fix.

    One row per (category, signature); repeat sightings update counters in place.
    """
    __tablename__ = "error_patterns"
    __table_args__ = (
        UniqueConstraint("category", "signature", name="uq_error_patterns_category_signature"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Classification
    category: Mapped[str] = mapped_column(String(30), index=True)
    subcategory: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    signature: Mapped[str] = mapped_column(String(255))
    raw_pattern: Mapped[str] = mapped_column(Text)

    # Diagnosis
    diagnosis: Mapped[str] = mapped_column(Text, default="")
    root_cause: Mapped[str] = mapped_column(Text, default="")
    fix_type: Mapped[str] = mapped_column(String(20), default="code")  # code, config, dependency, architecture, data
    solution: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    prevention_tips: Mapped[List[str]] = mapped_column(JSON, default=list)
    related_errors: Mapped[List[str]] = mapped_column(JSON, default=list)
    common_triggers: Mapped[List[str]] = mapped_column(JSON, default=list)
    affected_technologies: Mapped[List[str]] = mapped_column(JSON, default=list)

    # Scoring and usage
    confidence_score: Mapped[float] = mapped_column(Float, default=0.0)
    times_encountered: Mapped[int] = mapped_column(Integer, default=1)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Fix feedback
    success_count: Mapped[int] = mapped_column(Integer, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, default=0)
    last_success_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Provenance
    environment: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    deployment_provider: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    learned_from_project_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    learned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


# =============================================================================
# Prompt Evolution Tables
# =============================================================================

class PromptVersionModel(Base):
    """A system prompt version routed by traffic percentage."""
    __tablename__ = "prompt_versions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    version: Mapped[str] = mapped_column(String(50), unique=True, index=True)  # "v1.2.0"
    parent_version: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, index=True)
    system_prompt: Mapped[str] = mapped_column(Text)

    traffic_percentage: Mapped[float] = mapped_column(Float, default=0.0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, index=True)

    improvements_made: Mapped[List[str]] = mapped_column(JSON, default=list)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[str] = mapped_column(String(50), default="operator")  # operator, improvement_loop
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)


class GenerationOutcomeModel(Base):
    """
    Append-only log of generation attempts.
    Never mutated after insert.
    """
    __tablename__ = "generation_outcomes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)

    prompt_version: Mapped[str] = mapped_column(String(50), index=True)
    user_prompt: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), index=True)  # success, failure, error
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    generated_artifact: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    generation_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    model_used: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)


class PromptImprovementModel(Base):
    """Provenance record written together with each candidate prompt version."""
    __tablename__ = "prompt_improvements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    improvement_type: Mapped[str] = mapped_column(String(30), default="prompt")
    old_version: Mapped[str] = mapped_column(String(50))
    new_version: Mapped[str] = mapped_column(String(50), index=True)
    reason: Mapped[str] = mapped_column(Text)
    analysis: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending, approved, rejected


# =============================================================================
# Operational Tables
# =============================================================================

class AdminNotificationModel(Base):
    """Operational notifications for human reviewers."""
    __tablename__ = "admin_notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    notification_type: Mapped[str] = mapped_column(String(30), index=True)
    title: Mapped[str] = mapped_column(String(255))
    message: Mapped[str] = mapped_column(Text)
    data: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)


class RateLimitLogModel(Base):
    """Best-effort audit trail of rate limit decisions."""
    __tablename__ = "rate_limit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    identifier: Mapped[str] = mapped_column(String(255), index=True)
    request_count: Mapped[int] = mapped_column(Integer)
    blocked: Mapped[bool] = mapped_column(Boolean, default=False)
