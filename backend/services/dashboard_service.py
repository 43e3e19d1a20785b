import math
from datetime import date, timedelta

from db.models import HealthMetric, User
from db.schemas import AiInsightRead, HealthEventRead, HealthMetricRead, LabResultRead
from services.storage import HealthStorage
from services.workout_service import weekly_training_load
from utils.datetime_utils import today_utc

BASE_HEALTH_SCORE = 70
RECENT_LAB_RESULTS = 3
UPCOMING_EVENTS = 3


def _resting_hr_bonus(resting_heart_rate: int) -> int:
    if resting_heart_rate < 60:
        return 5
    if resting_heart_rate < 70:
        return 4
    if resting_heart_rate < 80:
        return 3
    if resting_heart_rate < 90:
        return 2
    return 1


def calculate_health_score(metric: HealthMetric | None) -> int:
    """Score the latest day of data; 70 when there is none.

    Steps add 5 points per 10,000, sleep up to 5 points at 8 hours, and a
    lower resting heart rate up to 5 points. Capped at 100.
    """
    if metric is None:
        return BASE_HEALTH_SCORE
    score = float(BASE_HEALTH_SCORE)
    if metric.steps:
        score += metric.steps / 10000 * 5
    if metric.sleep_duration:
        sleep_hours = metric.sleep_duration / 60
        score += min(5.0, sleep_hours / 8 * 5)
    if metric.resting_heart_rate:
        score += _resting_hr_bonus(metric.resting_heart_rate)
    # half-up rounding
    return min(100, int(math.floor(score + 0.5)))


def build_dashboard_summary(storage: HealthStorage, user: User, today: date | None = None) -> dict:
    today = today or today_utc()
    latest = storage.get_latest_health_metric(user.id)
    week_start = today - timedelta(days=today.weekday())
    return {
        "health_score": calculate_health_score(latest),
        "latest_metric": HealthMetricRead.model_validate(latest).model_dump(mode="json") if latest else None,
        "unread_insights": storage.count_unread_ai_insights(user.id),
        "recent_insights": [
            AiInsightRead.model_validate(i).model_dump(mode="json") for i in storage.get_ai_insights(user.id, limit=3)
        ],
        "upcoming_events": [
            HealthEventRead.model_validate(e).model_dump(mode="json")
            for e in storage.get_upcoming_health_events(user.id, today=today, limit=UPCOMING_EVENTS)
        ],
        "recent_lab_results": [
            LabResultRead.model_validate(r).model_dump(mode="json")
            for r in storage.get_lab_results(user.id)[:RECENT_LAB_RESULTS]
        ],
        "training_load": weekly_training_load(
            storage.get_workouts(user.id, start_date=week_start, end_date=week_start + timedelta(days=6))
        ),
        "subscription": {
            "status": user.subscription_status,
            "tier": user.subscription_tier,
            "expires_at": user.subscription_expires_at.isoformat() if user.subscription_expires_at else None,
        },
    }
