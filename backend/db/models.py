from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, Text, Numeric, Boolean, ForeignKey, Index,
    Date, DateTime, JSON, CheckConstraint, UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from db.database import Base

LAB_RESULT_STATUSES = ("pending", "normal", "review", "abnormal")
INSIGHT_SEVERITIES = ("info", "warning", "alert", "success")
SUBSCRIPTION_TIERS = ("free", "basic", "pro", "premium")
SUBSCRIPTION_STATUSES = (
    "inactive",
    "active",
    "trialing",
    "past_due",
    "canceled",
    "incomplete",
    "incomplete_expired",
    "unpaid",
    "paused",
)

JSONType = JSON().with_variant(JSONB(), "postgresql")
Quantity = Numeric(12, 2, asdecimal=False)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _in_clause(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


class AuthSession(Base):
    __tablename__ = "sessions"

    sid = Column(Text, primary_key=True)
    sess = Column(JSONType, nullable=False)
    expire = Column(DateTime, nullable=False)

    __table_args__ = (Index("idx_session_expire", "expire"),)


class User(Base):
    __tablename__ = "users"

    id = Column(Text, primary_key=True)  # issued by the identity provider
    email = Column(Text, unique=True)
    first_name = Column(Text)
    last_name = Column(Text)
    profile_image_url = Column(Text)
    stripe_customer_id = Column(Text, unique=True)
    stripe_subscription_id = Column(Text)
    subscription_status = Column(Text, nullable=False, default="inactive")
    subscription_tier = Column(Text, nullable=False, default="free")
    subscription_expires_at = Column(DateTime)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    lab_results = relationship("LabResult", back_populates="user", cascade="all, delete-orphan", passive_deletes=True)
    bloodwork_markers = relationship("BloodworkMarker", back_populates="user", cascade="all, delete-orphan", passive_deletes=True)
    health_metrics = relationship("HealthMetric", back_populates="user", cascade="all, delete-orphan", passive_deletes=True)
    ai_insights = relationship("AiInsight", back_populates="user", cascade="all, delete-orphan", passive_deletes=True)
    health_events = relationship("HealthEvent", back_populates="user", cascade="all, delete-orphan", passive_deletes=True)
    connected_services = relationship("ConnectedService", back_populates="user", cascade="all, delete-orphan", passive_deletes=True)
    workouts = relationship("Workout", back_populates="user", cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        CheckConstraint(_in_clause("subscription_tier", SUBSCRIPTION_TIERS), name="ck_users_subscription_tier"),
        CheckConstraint(_in_clause("subscription_status", SUBSCRIPTION_STATUSES), name="ck_users_subscription_status"),
    )


class LabResult(Base):
    __tablename__ = "lab_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Text, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    title = Column(Text, nullable=False)
    description = Column(Text)
    file_url = Column(Text)
    uploaded_at = Column(DateTime, default=_utcnow)
    result_date = Column(Date)
    status = Column(Text, nullable=False, default="pending")  # pending | normal | review | abnormal
    data = Column(JSONType)
    processed = Column(Boolean, nullable=False, default=False)  # markers already extracted

    user = relationship("User", back_populates="lab_results")
    markers = relationship("BloodworkMarker", back_populates="lab_result", cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        CheckConstraint(_in_clause("status", LAB_RESULT_STATUSES), name="ck_lab_results_status"),
        Index("idx_lab_results_user_uploaded", "user_id", "uploaded_at"),
    )


class BloodworkMarker(Base):
    __tablename__ = "bloodwork_markers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lab_result_id = Column(Integer, ForeignKey("lab_results.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Text, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    name = Column(Text, nullable=False)  # Cholesterol, Glucose, HDL, ...
    value = Column(Text, nullable=False)  # text: "5.4", "<1.0", "positive"
    unit = Column(Text, nullable=False)
    min_range = Column(Text)
    max_range = Column(Text)
    is_abnormal = Column(Boolean, nullable=False, default=False)
    category = Column(Text)  # Lipids, Metabolic, Thyroid, ...
    timestamp = Column(DateTime, default=_utcnow)
    result_date = Column(Text, nullable=False)

    lab_result = relationship("LabResult", back_populates="markers")
    user = relationship("User", back_populates="bloodwork_markers")

    __table_args__ = (
        Index("idx_bloodwork_markers_user_name", "user_id", "name"),
        Index("idx_bloodwork_markers_lab_result", "lab_result_id"),
    )


class HealthMetric(Base):
    __tablename__ = "health_metrics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Text, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    date = Column(Date, nullable=False)
    steps = Column(Integer)
    calories_burned = Column(Integer)
    resting_heart_rate = Column(Integer)
    active_minutes = Column(Integer)
    weight = Column(Quantity)  # pounds
    sleep_duration = Column(Integer)  # minutes
    deep_sleep_duration = Column(Integer)  # minutes
    light_sleep_duration = Column(Integer)  # minutes
    protein = Column(Integer)  # grams
    carbs = Column(Integer)  # grams
    fats = Column(Integer)  # grams
    source = Column(Text, nullable=False, default="manual")  # manual | apple_health | ...
    created_at = Column(DateTime, default=_utcnow)

    user = relationship("User", back_populates="health_metrics")

    __table_args__ = (Index("idx_health_metrics_user_date", "user_id", "date"),)


class AiInsight(Base):
    __tablename__ = "ai_insights"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Text, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    content = Column(Text, nullable=False)
    category = Column(Text, nullable=False)  # sleep | nutrition | activity | general | lab_results
    severity = Column(Text, nullable=False, default="info")
    created_at = Column(DateTime, default=_utcnow)
    is_read = Column(Boolean, nullable=False, default=False)

    user = relationship("User", back_populates="ai_insights")

    __table_args__ = (
        CheckConstraint(_in_clause("severity", INSIGHT_SEVERITIES), name="ck_ai_insights_severity"),
        Index("idx_ai_insights_user_created", "user_id", "created_at"),
    )


class HealthEvent(Base):
    __tablename__ = "health_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Text, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    title = Column(Text, nullable=False)
    description = Column(Text)
    date = Column(Date, nullable=False)
    time = Column(Text)
    location = Column(Text)
    created_at = Column(DateTime, default=_utcnow)

    user = relationship("User", back_populates="health_events")

    __table_args__ = (Index("idx_health_events_user_date", "user_id", "date"),)


class ConnectedService(Base):
    __tablename__ = "connected_services"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Text, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    service_name = Column(Text, nullable=False)  # apple_health | lab_partner | my_health_records | ...
    is_connected = Column(Boolean, nullable=False, default=False)
    last_synced = Column(DateTime)
    auth_data = Column(JSONType)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    user = relationship("User", back_populates="connected_services")

    __table_args__ = (
        UniqueConstraint("user_id", "service_name", name="uq_connected_services_user_service"),
    )


class Workout(Base):
    __tablename__ = "workouts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Text, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    title = Column(Text, nullable=False)
    description = Column(Text)
    date = Column(Date, nullable=False)
    start_time = Column(Text)  # HH:MM
    end_time = Column(Text)  # HH:MM
    activity_type = Column(Text, nullable=False)  # running | cycling | strength | ...
    planned_distance = Column(Quantity)
    actual_distance = Column(Quantity)
    planned_duration = Column(Integer)  # minutes
    actual_duration = Column(Integer)  # minutes
    intensity = Column(Text)  # easy | moderate | hard | race
    feeling_score = Column(Integer)  # 1-10
    notes = Column(Text)
    is_completed = Column(Boolean, nullable=False, default=False)
    is_recurring = Column(Boolean, nullable=False, default=False)
    recurring_pattern = Column(Text)  # weekly | monthly
    recurring_days = Column(Text)  # "1,3,5" = Mon, Wed, Fri
    tss_score = Column(Integer)
    calories_burned = Column(Integer)
    average_heart_rate = Column(Integer)
    max_heart_rate = Column(Integer)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    user = relationship("User", back_populates="workouts")
    sets = relationship(
        "WorkoutSet",
        back_populates="workout",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="WorkoutSet.set_number",
    )

    __table_args__ = (
        CheckConstraint("feeling_score IS NULL OR (feeling_score BETWEEN 1 AND 10)", name="ck_workouts_feeling_score"),
        Index("idx_workouts_user_date", "user_id", "date"),
    )


class WorkoutSet(Base):
    __tablename__ = "workout_sets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    workout_id = Column(Integer, ForeignKey("workouts.id", ondelete="CASCADE"), nullable=False)
    exercise_name = Column(Text, nullable=False)
    set_number = Column(Integer, nullable=False)
    weight = Column(Quantity)
    reps = Column(Integer)
    duration = Column(Integer)  # seconds
    rest_time = Column(Integer)  # seconds
    notes = Column(Text)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    workout = relationship("Workout", back_populates="sets")
