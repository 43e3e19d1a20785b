"""Insert and read shapes for every persisted entity.

Each entity has exactly two shapes:

* an insert shape (``Insert*``) listing only the fields a caller may supply at
  creation time. Insert shapes forbid unknown keys, so a payload carrying a
  server-owned field (``id``, ``created_at``, ``processed``, ``is_read``, ...)
  is rejected instead of being persisted.
* a read shape (``*Read``) mirroring the full persisted row.

Request bodies use the ``*Fields`` variant of an insert shape, which leaves out
the owning keys (``user_id``, ``workout_id``, ``lab_result_id``) that the
request layer fills in from the session or the URL.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Generic, Literal, Mapping, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

LabResultStatus = Literal["pending", "normal", "review", "abnormal"]
InsightSeverity = Literal["info", "warning", "alert", "success"]
SubscriptionTier = Literal["free", "basic", "pro", "premium"]

_HHMM_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


class InsertShape(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class ReadShape(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# --- Session ---

class InsertAuthSession(InsertShape):
    sid: str = Field(min_length=16)
    sess: dict[str, Any]
    expire: datetime


class AuthSessionRead(ReadShape):
    sid: str
    sess: dict[str, Any]
    expire: datetime


# --- User ---

class UpsertUser(InsertShape):
    id: str = Field(min_length=1)
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    profile_image_url: str | None = None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip().lower()
        if not value:
            return None
        if "@" not in value:
            raise ValueError("email must contain '@'")
        return value


class UserRead(ReadShape):
    id: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    profile_image_url: str | None = None
    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    subscription_status: str
    subscription_tier: str
    subscription_expires_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# --- Lab results ---

class LabResultFields(InsertShape):
    title: str = Field(min_length=1, max_length=300)
    description: str | None = None
    file_url: str | None = None
    result_date: date | None = None
    status: LabResultStatus = "pending"
    data: dict[str, Any] | None = None


class InsertLabResult(LabResultFields):
    user_id: str = Field(min_length=1)


class LabResultRead(ReadShape):
    id: int
    user_id: str
    title: str
    description: str | None = None
    file_url: str | None = None
    uploaded_at: datetime | None = None
    result_date: date | None = None
    status: LabResultStatus
    data: dict[str, Any] | None = None
    processed: bool


# --- Bloodwork markers ---

class BloodworkMarkerFields(InsertShape):
    name: str = Field(min_length=1)
    value: str
    unit: str
    min_range: str | None = None
    max_range: str | None = None
    is_abnormal: bool = False
    category: str | None = None
    result_date: str = Field(min_length=1)

    # Lab reports mix numeric and qualitative values; keep whatever arrives as text.
    @field_validator("value", "min_range", "max_range", mode="before")
    @classmethod
    def stringify_lab_text(cls, value: Any) -> Any:
        if isinstance(value, bool):
            return str(value).lower()
        if isinstance(value, (int, float)):
            return str(value)
        return value


class InsertBloodworkMarker(BloodworkMarkerFields):
    lab_result_id: int
    user_id: str = Field(min_length=1)


class BloodworkMarkerRead(ReadShape):
    id: int
    lab_result_id: int
    user_id: str
    name: str
    value: str
    unit: str
    min_range: str | None = None
    max_range: str | None = None
    is_abnormal: bool
    category: str | None = None
    timestamp: datetime | None = None
    result_date: str


# --- Health metrics ---

class HealthMetricFields(InsertShape):
    date: date
    steps: int | None = Field(default=None, ge=0)
    calories_burned: int | None = Field(default=None, ge=0)
    resting_heart_rate: int | None = Field(default=None, ge=0)
    active_minutes: int | None = Field(default=None, ge=0)
    weight: float | None = Field(default=None, ge=0)
    sleep_duration: int | None = Field(default=None, ge=0)
    deep_sleep_duration: int | None = Field(default=None, ge=0)
    light_sleep_duration: int | None = Field(default=None, ge=0)
    protein: int | None = Field(default=None, ge=0)
    carbs: int | None = Field(default=None, ge=0)
    fats: int | None = Field(default=None, ge=0)
    source: str = "manual"


class InsertHealthMetric(HealthMetricFields):
    user_id: str = Field(min_length=1)


class HealthMetricRead(ReadShape):
    id: int
    user_id: str
    date: date
    steps: int | None = None
    calories_burned: int | None = None
    resting_heart_rate: int | None = None
    active_minutes: int | None = None
    weight: float | None = None
    sleep_duration: int | None = None
    deep_sleep_duration: int | None = None
    light_sleep_duration: int | None = None
    protein: int | None = None
    carbs: int | None = None
    fats: int | None = None
    source: str
    created_at: datetime | None = None


# --- AI insights ---

class AiInsightFields(InsertShape):
    content: str = Field(min_length=1)
    category: str = Field(min_length=1)
    severity: InsightSeverity = "info"


class InsertAiInsight(AiInsightFields):
    user_id: str = Field(min_length=1)


class AiInsightRead(ReadShape):
    id: int
    user_id: str
    content: str
    category: str
    severity: InsightSeverity
    created_at: datetime | None = None
    is_read: bool


# --- Health events ---

class HealthEventFields(InsertShape):
    title: str = Field(min_length=1, max_length=300)
    description: str | None = None
    date: date
    time: str | None = None
    location: str | None = None


class InsertHealthEvent(HealthEventFields):
    user_id: str = Field(min_length=1)


class HealthEventRead(ReadShape):
    id: int
    user_id: str
    title: str
    description: str | None = None
    date: date
    time: str | None = None
    location: str | None = None
    created_at: datetime | None = None


# --- Connected services ---

class ConnectedServiceFields(InsertShape):
    service_name: str = Field(min_length=1, max_length=100)
    is_connected: bool = False
    last_synced: datetime | None = None
    auth_data: dict[str, Any] | None = None


class InsertConnectedService(ConnectedServiceFields):
    user_id: str = Field(min_length=1)


class ConnectedServiceRead(ReadShape):
    id: int
    user_id: str
    service_name: str
    is_connected: bool
    last_synced: datetime | None = None
    auth_data: dict[str, Any] | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# --- Workouts ---

class WorkoutFields(InsertShape):
    title: str = Field(min_length=1, max_length=300)
    description: str | None = None
    date: date
    start_time: str | None = Field(default=None, pattern=_HHMM_PATTERN)
    end_time: str | None = Field(default=None, pattern=_HHMM_PATTERN)
    activity_type: str = Field(min_length=1)
    planned_distance: float | None = Field(default=None, ge=0)
    actual_distance: float | None = Field(default=None, ge=0)
    planned_duration: int | None = Field(default=None, ge=0)
    actual_duration: int | None = Field(default=None, ge=0)
    intensity: str | None = None
    feeling_score: int | None = Field(default=None, ge=1, le=10)
    notes: str | None = None
    is_completed: bool = False
    is_recurring: bool = False
    recurring_pattern: str | None = None
    recurring_days: str | None = None
    tss_score: int | None = Field(default=None, ge=0)
    calories_burned: int | None = Field(default=None, ge=0)
    average_heart_rate: int | None = Field(default=None, ge=0)
    max_heart_rate: int | None = Field(default=None, ge=0)


class InsertWorkout(WorkoutFields):
    user_id: str = Field(min_length=1)


class WorkoutRead(ReadShape):
    id: int
    user_id: str
    title: str
    description: str | None = None
    date: date
    start_time: str | None = None
    end_time: str | None = None
    activity_type: str
    planned_distance: float | None = None
    actual_distance: float | None = None
    planned_duration: int | None = None
    actual_duration: int | None = None
    intensity: str | None = None
    feeling_score: int | None = None
    notes: str | None = None
    is_completed: bool
    is_recurring: bool
    recurring_pattern: str | None = None
    recurring_days: str | None = None
    tss_score: int | None = None
    calories_burned: int | None = None
    average_heart_rate: int | None = None
    max_heart_rate: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# --- Workout sets ---

class WorkoutSetFields(InsertShape):
    exercise_name: str = Field(min_length=1)
    set_number: int = Field(ge=1)
    weight: float | None = Field(default=None, ge=0)
    reps: int | None = Field(default=None, ge=0)
    duration: int | None = Field(default=None, ge=0)
    rest_time: int | None = Field(default=None, ge=0)
    notes: str | None = None


class InsertWorkoutSet(WorkoutSetFields):
    workout_id: int


class WorkoutSetRead(ReadShape):
    id: int
    workout_id: int
    exercise_name: str
    set_number: int
    weight: float | None = None
    reps: int | None = None
    duration: int | None = None
    rest_time: int | None = None
    notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# --- Validation helpers ---

T = TypeVar("T", bound=BaseModel)


@dataclass
class InsertResult(Generic[T]):
    value: T | None = None
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.value is not None and not self.errors


def validate_insert(schema: type[T], payload: Mapping[str, Any] | T) -> InsertResult[T]:
    """Validate ``payload`` against an insert shape without raising."""
    if isinstance(payload, schema):
        return InsertResult(value=payload)
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(exclude_unset=True)
    if not isinstance(payload, Mapping):
        return InsertResult(
            errors=[{"type": "model_type", "loc": (), "msg": "Payload must be an object", "input": payload}]
        )
    try:
        return InsertResult(value=schema.model_validate(dict(payload)))
    except ValidationError as exc:
        return InsertResult(errors=exc.errors(include_url=False, include_context=False))


def insertable_fields(schema: type[BaseModel]) -> frozenset[str]:
    return frozenset(schema.model_fields)
