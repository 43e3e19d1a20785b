from __future__ import annotations

import sys
from datetime import date
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db.database import Base  # noqa: E402
from db.errors import InvalidPayloadError  # noqa: E402
from services.apple_health_service import (  # noqa: E402
    merge_daily_metrics,
    process_apple_health_data,
    run_auto_sync,
    validate_apple_health_data,
)
from services.storage import HealthStorage  # noqa: E402


EXPORT = {
    "activities": [
        {"date": "2024-03-02", "steps": 8000.4, "activeEnergyBurned": 420.6, "activeMinutes": 35},
        {"date": "2024-03-01", "steps": "12000", "active_minutes": None},
    ],
    "sleepAnalysis": [
        {"date": "2024-03-01", "totalSleepDuration": 450, "deepSleepDuration": 90, "lightSleepDuration": 240},
    ],
    "bodyMass": [{"date": "2024-03-02", "weight": 172.4}],
    "heartRate": [{"date": "2024-03-03", "restingHeartRate": 58.6}],
    "nutrition": [{"date": "2024-03-01", "protein": 120, "carbs": "abc", "fats": 60}],
}


def _new_storage() -> HealthStorage:
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    storage = HealthStorage(sessionmaker(autocommit=False, autoflush=False, bind=engine)())
    storage.upsert_user({"id": "u1", "email": "u1@example.com"})
    return storage


def test_readings_are_merged_into_one_metric_per_day():
    metrics = merge_daily_metrics("u1", validate_apple_health_data(EXPORT))

    assert [m.date for m in metrics] == [date(2024, 3, 1), date(2024, 3, 2), date(2024, 3, 3)]
    first, second, third = metrics
    assert first.steps == 12000
    assert first.active_minutes == 0
    assert first.calories_burned is None
    assert first.sleep_duration == 450
    assert first.deep_sleep_duration == 90
    assert first.protein == 120
    assert first.carbs == 0
    assert second.steps == 8000
    assert second.calories_burned == 421
    assert second.weight == pytest.approx(172.4)
    assert third.resting_heart_rate == 59
    assert third.steps is None
    assert {m.source for m in metrics} == {"apple_health"}


@pytest.mark.parametrize(
    "payload",
    [
        ["not", "an", "object"],
        {"activities": "not-a-list"},
        {"activities": [{"date": "03/01/2024", "steps": 10}]},
        {"heartRate": [{"restingHeartRate": 60}]},
    ],
)
def test_invalid_exports_are_rejected(payload):
    with pytest.raises(InvalidPayloadError):
        validate_apple_health_data(payload)


def test_negative_readings_fail_metric_validation():
    data = validate_apple_health_data({"activities": [{"date": "2024-03-01", "steps": -10}]})
    with pytest.raises(InvalidPayloadError):
        merge_daily_metrics("u1", data)


def test_process_stores_metrics_insight_and_connection():
    storage = _new_storage()
    result = process_apple_health_data(storage, "u1", validate_apple_health_data(EXPORT))

    assert result.metrics_added == 3
    assert result.as_dict()["days_processed"] == 3
    assert len(storage.get_health_metrics("u1")) == 3

    insight = storage.get_ai_insights("u1")[0]
    assert insight.severity == "success"
    assert insight.category == "activity"
    assert "3 days of health data" in insight.content

    service = storage.get_connected_service("u1", "apple_health")
    assert service.is_connected is True
    assert service.last_synced is not None


def test_empty_export_still_records_the_sync():
    storage = _new_storage()
    result = process_apple_health_data(storage, "u1", validate_apple_health_data({}))
    assert result.metrics_added == 0
    assert storage.get_health_metrics("u1") == []
    assert storage.count_unread_ai_insights("u1") == 1


def test_auto_sync_replays_last_export_for_opted_in_users():
    storage = _new_storage()
    storage.upsert_user({"id": "u2", "email": "u2@example.com"})
    storage.upsert_user({"id": "u3", "email": "u3@example.com"})
    storage.upsert_connected_service(
        {
            "user_id": "u1",
            "service_name": "apple_health",
            "is_connected": True,
            "auth_data": {"autoSync": True, "lastSyncData": {"activities": [{"date": "2024-03-01", "steps": 500}]}},
        }
    )
    storage.upsert_connected_service(
        {"user_id": "u2", "service_name": "apple_health", "is_connected": True, "auth_data": {"auto_sync": False}}
    )
    storage.upsert_connected_service(
        {
            "user_id": "u3",
            "service_name": "apple_health",
            "is_connected": True,
            "auth_data": {"auto_sync": True, "last_sync_data": {"activities": [{"date": "bad"}]}},
        }
    )

    assert run_auto_sync(storage) == 1
    assert [m.steps for m in storage.get_health_metrics("u1")] == [500]
    assert storage.get_health_metrics("u2") == []
    assert storage.get_health_metrics("u3") == []
