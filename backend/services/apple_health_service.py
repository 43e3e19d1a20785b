"""Import of Apple Health exports into daily health metrics.

The payload groups readings by kind (activities, sleep, body mass, heart
rate, nutrition). Readings for the same day are merged into one
``HealthMetric`` row with source ``apple_health``.
"""

import logging
import math
import re
from dataclasses import dataclass
from datetime import date
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from db.errors import InvalidPayloadError
from db.schemas import InsertAiInsight, InsertConnectedService, InsertHealthMetric
from services.storage import HealthStorage
from utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

APPLE_HEALTH_SERVICE = "apple_health"
APPLE_HEALTH_SOURCE = "apple_health"

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _to_number(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number) or math.isinf(number):
        return 0.0
    return number


class _Reading(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    date: date

    @field_validator("date", mode="before")
    @classmethod
    def strict_date(cls, value: Any) -> Any:
        if not isinstance(value, str) or not _DATE_RE.match(value):
            raise ValueError(f"Invalid date format: {value}. Expected YYYY-MM-DD")
        return value


class ActivityReading(_Reading):
    steps: float = 0
    active_energy_burned: float = Field(0, validation_alias=AliasChoices("active_energy_burned", "activeEnergyBurned"))
    active_minutes: float = Field(0, validation_alias=AliasChoices("active_minutes", "activeMinutes"))

    @field_validator("steps", "active_energy_burned", "active_minutes", mode="before")
    @classmethod
    def numbers_default_to_zero(cls, value: Any) -> float:
        return _to_number(value)


class SleepReading(_Reading):
    total_sleep_duration: float = Field(0, validation_alias=AliasChoices("total_sleep_duration", "totalSleepDuration"))
    deep_sleep_duration: float = Field(0, validation_alias=AliasChoices("deep_sleep_duration", "deepSleepDuration"))
    light_sleep_duration: float = Field(0, validation_alias=AliasChoices("light_sleep_duration", "lightSleepDuration"))

    @field_validator("total_sleep_duration", "deep_sleep_duration", "light_sleep_duration", mode="before")
    @classmethod
    def numbers_default_to_zero(cls, value: Any) -> float:
        return _to_number(value)


class BodyMassReading(_Reading):
    weight: float = 0  # pounds

    @field_validator("weight", mode="before")
    @classmethod
    def numbers_default_to_zero(cls, value: Any) -> float:
        return _to_number(value)


class HeartRateReading(_Reading):
    resting_heart_rate: float = Field(0, validation_alias=AliasChoices("resting_heart_rate", "restingHeartRate"))

    @field_validator("resting_heart_rate", mode="before")
    @classmethod
    def numbers_default_to_zero(cls, value: Any) -> float:
        return _to_number(value)


class NutritionReading(_Reading):
    protein: float = 0
    carbs: float = 0
    fats: float = 0

    @field_validator("protein", "carbs", "fats", mode="before")
    @classmethod
    def numbers_default_to_zero(cls, value: Any) -> float:
        return _to_number(value)


class AppleHealthData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    activities: list[ActivityReading] = Field(default_factory=list)
    sleep_analysis: list[SleepReading] = Field(
        default_factory=list, validation_alias=AliasChoices("sleep_analysis", "sleepAnalysis")
    )
    body_mass: list[BodyMassReading] = Field(default_factory=list, validation_alias=AliasChoices("body_mass", "bodyMass"))
    heart_rate: list[HeartRateReading] = Field(default_factory=list, validation_alias=AliasChoices("heart_rate", "heartRate"))
    nutrition: list[NutritionReading] = Field(default_factory=list)

    @field_validator("activities", "sleep_analysis", "body_mass", "heart_rate", "nutrition", mode="before")
    @classmethod
    def require_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError("Expected an array")
        return value


@dataclass
class SyncResult:
    metrics_added: int
    days_processed: int
    summary: str

    def as_dict(self) -> dict:
        return {
            "metrics_added": self.metrics_added,
            "days_processed": self.days_processed,
            "summary": self.summary,
        }


def validate_apple_health_data(data: Any) -> AppleHealthData:
    if not isinstance(data, dict):
        raise InvalidPayloadError("Invalid Apple Health data: Expected an object")
    try:
        return AppleHealthData.model_validate(data)
    except ValidationError as exc:
        errors = exc.errors(include_url=False, include_context=False)
        raise InvalidPayloadError("Invalid Apple Health data", errors) from exc


def merge_daily_metrics(user_id: str, data: AppleHealthData) -> list[InsertHealthMetric]:
    """Fold the per-kind readings into one metric payload per day, ordered by date."""
    daily: dict[date, dict[str, Any]] = {}

    def _day(day: date) -> dict[str, Any]:
        return daily.setdefault(day, {"user_id": user_id, "date": day, "source": APPLE_HEALTH_SOURCE})

    for activity in data.activities:
        metric = _day(activity.date)
        metric["steps"] = round(activity.steps)
        metric["active_minutes"] = round(activity.active_minutes)
        if activity.active_energy_burned:
            metric["calories_burned"] = round(activity.active_energy_burned)

    for sleep in data.sleep_analysis:
        metric = _day(sleep.date)
        metric["sleep_duration"] = round(sleep.total_sleep_duration)
        metric["deep_sleep_duration"] = round(sleep.deep_sleep_duration)
        metric["light_sleep_duration"] = round(sleep.light_sleep_duration)

    for body in data.body_mass:
        _day(body.date)["weight"] = body.weight

    for heart in data.heart_rate:
        _day(heart.date)["resting_heart_rate"] = round(heart.resting_heart_rate)

    for nutrition in data.nutrition:
        metric = _day(nutrition.date)
        metric["protein"] = round(nutrition.protein)
        metric["carbs"] = round(nutrition.carbs)
        metric["fats"] = round(nutrition.fats)

    try:
        return [InsertHealthMetric.model_validate(daily[day]) for day in sorted(daily)]
    except ValidationError as exc:
        errors = exc.errors(include_url=False, include_context=False)
        raise InvalidPayloadError("Invalid Apple Health data", errors) from exc


def process_apple_health_data(storage: HealthStorage, user_id: str, data: AppleHealthData) -> SyncResult:
    metrics = merge_daily_metrics(user_id, data)
    if metrics:
        storage.batch_create_health_metrics(metrics)

    days = len(metrics)
    summary = (
        f"Synced data from Apple Health: {days} days of data processed. "
        "Including steps, activity, sleep, weight, heart rate, and nutrition data."
    )
    storage.create_ai_insight(
        InsertAiInsight(
            user_id=user_id,
            content=(
                "Your Apple Health data has been successfully synced. "
                f"{days} days of health data are now available in your dashboard."
            ),
            category="activity",
            severity="success",
        )
    )
    storage.upsert_connected_service(
        InsertConnectedService(
            user_id=user_id,
            service_name=APPLE_HEALTH_SERVICE,
            is_connected=True,
            last_synced=utcnow(),
        )
    )
    logger.info(f"Apple Health sync for user {user_id}: {days} days")
    return SyncResult(metrics_added=days, days_processed=days, summary=summary)


def run_auto_sync(storage: HealthStorage) -> int:
    """Replay the last uploaded export for every connected user with auto sync on.

    Returns the number of users synced. One user's failure does not stop the rest.
    """
    synced = 0
    services = storage.get_all_connected_services(service_name=APPLE_HEALTH_SERVICE)
    logger.info(f"Found {len(services)} users with Apple Health connected")
    for service in services:
        auth_data = service.auth_data or {}
        if not (auth_data.get("auto_sync") or auth_data.get("autoSync")):
            continue
        last_export = auth_data.get("last_sync_data", auth_data.get("lastSyncData")) or {}
        try:
            process_apple_health_data(storage, service.user_id, validate_apple_health_data(last_export))
            synced += 1
        except Exception as exc:
            logger.error(f"Error syncing Apple Health data for user {service.user_id}: {exc}")
    return synced
