from __future__ import annotations

import sys
from datetime import date, datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db.database import Base, run_startup_migrations  # noqa: E402
from db.errors import (  # noqa: E402
    ConstraintViolationError,
    InvalidPayloadError,
    InvalidTransitionError,
    RecordNotFoundError,
)
from db.models import AuthSession, BloodworkMarker, HealthMetric, WorkoutSet  # noqa: E402
from db.schemas import (  # noqa: E402
    AuthSessionRead,
    HealthMetricRead,
    InsertConnectedService,
    InsertLabResult,
    LabResultRead,
    UpsertUser,
)
from services.storage import HealthStorage  # noqa: E402


def _new_storage() -> HealthStorage:
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return HealthStorage(sessionmaker(autocommit=False, autoflush=False, bind=engine)())


def _with_user(storage: HealthStorage, user_id: str = "u1", email: str | None = "a@b.com"):
    return storage.upsert_user({"id": user_id, "email": email})


def _marker(lab_result_id: int, name: str = "Glucose", value: str = "5.4", result_date: str = "2024-01-01", **extra):
    payload = {
        "lab_result_id": lab_result_id,
        "user_id": "u1",
        "name": name,
        "value": value,
        "unit": "mmol/L",
        "result_date": result_date,
    }
    payload.update(extra)
    return payload


# --- users ---

def test_lab_result_defaults_to_pending_and_unprocessed():
    storage = _new_storage()
    _with_user(storage)
    created = storage.create_lab_result({"user_id": "u1", "title": "CBC"})

    read_back = storage.get_lab_result(created.id)
    assert read_back.status == "pending"
    assert read_back.processed is False
    assert read_back.uploaded_at is not None


def test_upsert_user_keeps_subscription_and_created_at():
    storage = _new_storage()
    user = _with_user(storage)
    created_at = user.created_at
    storage.update_user_subscription("u1", "cus_1", "sub_1", "active", "pro")

    updated = storage.upsert_user(UpsertUser(id="u1", email="new@b.com", first_name="Sam"))
    assert updated.email == "new@b.com"
    assert updated.first_name == "Sam"
    assert updated.subscription_tier == "pro"
    assert updated.subscription_status == "active"
    assert updated.stripe_customer_id == "cus_1"
    assert updated.created_at == created_at


def test_new_user_gets_default_subscription_state():
    storage = _new_storage()
    user = _with_user(storage)
    assert user.subscription_status == "inactive"
    assert user.subscription_tier == "free"


def test_duplicate_email_is_a_constraint_violation():
    storage = _new_storage()
    _with_user(storage, "u1", "same@b.com")
    with pytest.raises(ConstraintViolationError):
        _with_user(storage, "u2", "same@b.com")
    # session is usable after the rollback
    assert storage.get_user("u1") is not None


def test_duplicate_stripe_customer_is_a_constraint_violation():
    storage = _new_storage()
    _with_user(storage, "u1", "one@b.com")
    _with_user(storage, "u2", "two@b.com")
    storage.update_user_subscription("u1", "cus_1", "sub_1", "active", "basic")
    with pytest.raises(ConstraintViolationError):
        storage.update_user_subscription("u2", "cus_1", "sub_2", "active", "basic")


def test_update_subscription_rejects_unknown_tier_and_missing_user():
    storage = _new_storage()
    _with_user(storage)
    with pytest.raises(InvalidPayloadError):
        storage.update_user_subscription("u1", "cus_1", "sub_1", "active", "platinum")
    with pytest.raises(RecordNotFoundError):
        storage.update_user_subscription("ghost", "cus_1", "sub_1", "active", "pro")


# --- insert contracts ---

@pytest.mark.parametrize(
    "server_field,value",
    [("id", 99), ("uploaded_at", "2024-01-01T00:00:00"), ("processed", True)],
)
def test_lab_result_insert_rejects_server_owned_fields(server_field, value):
    storage = _new_storage()
    _with_user(storage)
    with pytest.raises(InvalidPayloadError):
        storage.create_lab_result({"user_id": "u1", "title": "CBC", server_field: value})
    assert storage.get_lab_results("u1") == []


def test_insight_insert_rejects_is_read_and_created_at():
    storage = _new_storage()
    _with_user(storage)
    with pytest.raises(InvalidPayloadError):
        storage.create_ai_insight({"user_id": "u1", "content": "x", "category": "general", "is_read": True})
    with pytest.raises(InvalidPayloadError):
        storage.create_ai_insight(
            {"user_id": "u1", "content": "x", "category": "general", "created_at": "2024-01-01T00:00:00"}
        )


def test_lab_result_status_outside_allowed_set_is_rejected():
    storage = _new_storage()
    _with_user(storage)
    with pytest.raises(InvalidPayloadError):
        storage.create_lab_result({"user_id": "u1", "title": "CBC", "status": "done"})


_ROWS_BY_ENTITY = {
    "metric": (
        lambda s, lab, workout, extra: s.create_health_metric({"user_id": "u1", "date": "2024-01-01", **extra}),
        lambda s, lab, workout: len(s.get_health_metrics("u1")),
    ),
    "event": (
        lambda s, lab, workout, extra: s.create_health_event(
            {"user_id": "u1", "title": "Checkup", "date": "2024-02-01", **extra}
        ),
        lambda s, lab, workout: len(s.get_health_events("u1")),
    ),
    "connected_service": (
        lambda s, lab, workout, extra: s.upsert_connected_service(
            {"user_id": "u1", "service_name": "apple_health", **extra}
        ),
        lambda s, lab, workout: len(s.get_connected_services("u1")),
    ),
    "workout": (
        lambda s, lab, workout, extra: s.create_workout(
            {"user_id": "u1", "title": "Run", "date": "2024-01-02", "activity_type": "running", **extra}
        ),
        lambda s, lab, workout: len(s.get_workouts("u1")),
    ),
    "workout_set": (
        lambda s, lab, workout, extra: s.create_workout_set(
            {"workout_id": workout.id, "exercise_name": "Bench", "set_number": 1, **extra}
        ),
        lambda s, lab, workout: len(s.get_workout_sets(workout.id)),
    ),
    "marker": (
        lambda s, lab, workout, extra: s.create_bloodwork_marker(_marker(lab.id, **extra)),
        lambda s, lab, workout: len(s.get_bloodwork_markers_by_lab_result(lab.id)),
    ),
}


@pytest.mark.parametrize("server_field,value", [("id", 99), ("created_at", "2024-01-01T00:00:00")])
@pytest.mark.parametrize("entity", sorted(_ROWS_BY_ENTITY))
def test_every_insert_rejects_server_owned_fields(entity, server_field, value):
    storage = _new_storage()
    _with_user(storage)
    lab = storage.create_lab_result({"user_id": "u1", "title": "CBC"})
    workout = storage.create_workout({"user_id": "u1", "title": "Lift", "date": "2024-01-01", "activity_type": "strength"})
    create, count = _ROWS_BY_ENTITY[entity]
    before = count(storage, lab, workout)

    with pytest.raises(InvalidPayloadError):
        create(storage, lab, workout, {server_field: value})
    assert count(storage, lab, workout) == before


@pytest.mark.parametrize(
    "create",
    [
        lambda s: s.create_health_metric({"user_id": "ghost", "date": "2024-01-01"}),
        lambda s: s.create_ai_insight({"user_id": "ghost", "content": "x", "category": "general"}),
        lambda s: s.create_health_event({"user_id": "ghost", "title": "Checkup", "date": "2024-02-01"}),
        lambda s: s.upsert_connected_service({"user_id": "ghost", "service_name": "apple_health"}),
        lambda s: s.create_workout({"user_id": "ghost", "title": "Run", "date": "2024-01-01", "activity_type": "running"}),
    ],
)
def test_unknown_user_reference_is_rejected(create):
    storage = _new_storage()
    _with_user(storage)
    with pytest.raises(ConstraintViolationError):
        create(storage)


def test_marker_for_unknown_user_is_rejected():
    storage = _new_storage()
    _with_user(storage)
    lab = storage.create_lab_result({"user_id": "u1", "title": "CBC"})
    with pytest.raises(ConstraintViolationError):
        storage.create_bloodwork_marker({**_marker(lab.id), "user_id": "ghost"})


def test_partial_daily_metric_is_persistable():
    storage = _new_storage()
    _with_user(storage)
    metric = storage.create_health_metric({"user_id": "u1", "date": "2024-03-05"})
    assert metric.id is not None
    assert metric.steps is None
    assert metric.weight is None
    assert metric.source == "manual"


def test_round_trip_read_is_superset_of_insert_payload():
    storage = _new_storage()
    _with_user(storage)
    payload = InsertLabResult(
        user_id="u1",
        title="Lipid panel",
        description="Annual",
        result_date=date(2024, 1, 15),
        status="review",
        data={"ldl": 130},
    )
    created = storage.create_lab_result(payload)
    read_back = LabResultRead.model_validate(storage.get_lab_result(created.id)).model_dump()

    for key, value in payload.model_dump().items():
        assert read_back[key] == value
    assert read_back["id"] == created.id
    assert read_back["uploaded_at"] is not None
    assert read_back["processed"] is False


def test_metric_round_trip_keeps_decimal_weight():
    storage = _new_storage()
    _with_user(storage)
    created = storage.create_health_metric({"user_id": "u1", "date": "2024-03-05", "weight": 171.25, "steps": 9000})
    read_back = HealthMetricRead.model_validate(storage.get_latest_health_metric("u1"))
    assert read_back.id == created.id
    assert read_back.weight == pytest.approx(171.25)
    assert read_back.steps == 9000


# --- lab results and markers ---

def test_deleting_lab_result_cascades_only_its_markers():
    storage = _new_storage()
    _with_user(storage)
    first = storage.create_lab_result({"user_id": "u1", "title": "CBC"})
    second = storage.create_lab_result({"user_id": "u1", "title": "Lipids"})
    storage.batch_create_bloodwork_markers([_marker(first.id, "Glucose"), _marker(first.id, "HbA1c")])
    kept = storage.create_bloodwork_marker(_marker(second.id, "LDL"))

    assert storage.delete_lab_result(first.id) is True
    remaining = storage.db.query(BloodworkMarker).all()
    assert [m.id for m in remaining] == [kept.id]
    assert storage.get_bloodwork_markers_by_lab_result(first.id) == []


def test_marker_values_stay_text():
    storage = _new_storage()
    _with_user(storage)
    lab = storage.create_lab_result({"user_id": "u1", "title": "CBC"})
    marker = storage.create_bloodwork_marker(_marker(lab.id, value=5.4, min_range="<1.0", max_range=6))
    assert marker.value == "5.4"
    assert marker.min_range == "<1.0"
    assert marker.max_range == "6"
    assert marker.is_abnormal is False


def test_markers_by_name_sorted_by_result_date():
    storage = _new_storage()
    _with_user(storage)
    lab = storage.create_lab_result({"user_id": "u1", "title": "CBC"})
    storage.batch_create_bloodwork_markers(
        [
            _marker(lab.id, "LDL", "120", "2024-05-01"),
            _marker(lab.id, "LDL", "140", "2023-11-20"),
            _marker(lab.id, "HDL", "50", "2024-01-01"),
        ]
    )
    values = [m.value for m in storage.get_bloodwork_markers_by_name("u1", "LDL")]
    assert values == ["140", "120"]


def test_markers_date_window():
    storage = _new_storage()
    _with_user(storage)
    lab = storage.create_lab_result({"user_id": "u1", "title": "CBC"})
    storage.batch_create_bloodwork_markers(
        [
            _marker(lab.id, "A", result_date="2024-01-01"),
            _marker(lab.id, "B", result_date="2024-02-01"),
            _marker(lab.id, "C", result_date="2024-03-01"),
        ]
    )
    names = [m.name for m in storage.get_bloodwork_markers("u1", date(2024, 1, 15), date(2024, 2, 15))]
    assert names == ["B"]
    assert len(storage.get_bloodwork_markers("u1", start_date=date(2024, 2, 1))) == 2
    assert len(storage.get_bloodwork_markers("u1")) == 3


def test_lab_status_cannot_return_to_pending():
    storage = _new_storage()
    _with_user(storage)
    lab = storage.create_lab_result({"user_id": "u1", "title": "CBC"})
    storage.update_lab_result(lab.id, {"status": "abnormal"})
    storage.update_lab_result(lab.id, {"status": "review"})
    with pytest.raises(InvalidTransitionError):
        storage.update_lab_result(lab.id, {"status": "pending"})
    assert storage.get_lab_result(lab.id).status == "review"


def test_lab_update_rejects_processed_and_owner_changes():
    storage = _new_storage()
    _with_user(storage)
    lab = storage.create_lab_result({"user_id": "u1", "title": "CBC"})
    with pytest.raises(InvalidPayloadError):
        storage.update_lab_result(lab.id, {"processed": True})
    with pytest.raises(InvalidPayloadError):
        storage.update_lab_result(lab.id, {"user_id": "u2"})
    with pytest.raises(RecordNotFoundError):
        storage.update_lab_result(999, {"title": "x"})


def test_processed_only_moves_forward():
    storage = _new_storage()
    _with_user(storage)
    lab = storage.create_lab_result({"user_id": "u1", "title": "CBC"})
    assert [r.id for r in storage.get_unprocessed_lab_results("u1")] == [lab.id]

    storage.set_lab_result_processed(lab.id)
    assert storage.get_lab_result(lab.id).processed is True
    assert storage.get_unprocessed_lab_results("u1") == []
    with pytest.raises(InvalidTransitionError):
        storage.set_lab_result_processed(lab.id, False)


def test_recording_extracted_markers_is_all_or_nothing():
    storage = _new_storage()
    _with_user(storage)
    lab = storage.create_lab_result({"user_id": "u1", "title": "CBC"})

    with pytest.raises(InvalidPayloadError):
        storage.record_extracted_markers(
            lab.id,
            [_marker(lab.id, "LDL", is_abnormal=True)],
            {"user_id": "u1", "content": "", "category": "lab_results"},
        )
    assert storage.get_bloodwork_markers_by_lab_result(lab.id) == []
    assert storage.get_lab_result(lab.id).processed is False

    stored = storage.record_extracted_markers(
        lab.id,
        [_marker(lab.id, "LDL", is_abnormal=True), _marker(lab.id, "HDL")],
        {"user_id": "u1", "content": "LDL is high", "category": "lab_results", "severity": "warning"},
    )
    assert [m.name for m in stored] == ["LDL", "HDL"]
    assert storage.get_lab_result(lab.id).processed is True
    assert storage.get_ai_insights("u1")[0].content == "LDL is high"
    with pytest.raises(InvalidTransitionError):
        storage.record_extracted_markers(lab.id, [_marker(lab.id, "LDL")])
    assert len(storage.get_bloodwork_markers_by_lab_result(lab.id)) == 2


def test_lab_results_listed_newest_first():
    storage = _new_storage()
    _with_user(storage)
    older = storage.create_lab_result({"user_id": "u1", "title": "Old"})
    newer = storage.create_lab_result({"user_id": "u1", "title": "New"})
    older.uploaded_at = datetime(2023, 1, 1)
    storage.db.commit()
    assert [r.id for r in storage.get_lab_results("u1")] == [newer.id, older.id]


# --- metrics ---

def test_metrics_window_applies_both_bounds_and_sorts_ascending():
    storage = _new_storage()
    _with_user(storage)
    for day in ("2024-01-03", "2024-01-01", "2024-01-05", "2024-01-02"):
        storage.create_health_metric({"user_id": "u1", "date": day})
    window = storage.get_health_metrics("u1", date(2024, 1, 2), date(2024, 1, 3))
    assert [m.date for m in window] == [date(2024, 1, 2), date(2024, 1, 3)]
    assert [m.date for m in storage.get_health_metrics("u1")][0] == date(2024, 1, 1)
    assert storage.get_latest_health_metric("u1").date == date(2024, 1, 5)


def test_metric_batch_is_all_or_nothing():
    storage = _new_storage()
    _with_user(storage)
    with pytest.raises(InvalidPayloadError):
        storage.batch_create_health_metrics(
            [{"user_id": "u1", "date": "2024-01-01"}, {"user_id": "u1", "date": "2024-01-02", "steps": -5}]
        )
    with pytest.raises(ConstraintViolationError):
        storage.batch_create_health_metrics(
            [{"user_id": "u1", "date": "2024-01-01"}, {"user_id": "ghost", "date": "2024-01-02"}]
        )
    assert storage.db.query(HealthMetric).count() == 0


# --- insights ---

def test_insights_newest_first_with_limit_and_read_flag():
    storage = _new_storage()
    _with_user(storage)
    _with_user(storage, "u2", "u2@b.com")
    ids = [
        storage.create_ai_insight({"user_id": "u1", "content": f"n{i}", "category": "general"}).id
        for i in range(4)
    ]
    insights = storage.get_ai_insights("u1", limit=2)
    assert [i.id for i in insights] == [ids[3], ids[2]]
    assert storage.count_unread_ai_insights("u1") == 4

    assert storage.mark_ai_insight_as_read(ids[0]) is True
    assert storage.mark_ai_insight_as_read(ids[0]) is True
    assert storage.mark_ai_insight_as_read(12345) is False
    assert storage.mark_ai_insight_as_read(ids[1], user_id="u2") is False
    assert storage.count_unread_ai_insights("u1") == 3


def test_insight_severity_is_validated():
    storage = _new_storage()
    _with_user(storage)
    with pytest.raises(InvalidPayloadError):
        storage.create_ai_insight({"user_id": "u1", "content": "x", "category": "general", "severity": "panic"})
    insight = storage.create_ai_insight({"user_id": "u1", "content": "x", "category": "general"})
    assert insight.severity == "info"
    assert insight.is_read is False


# --- events ---

def test_upcoming_events_from_today_first_three():
    storage = _new_storage()
    _with_user(storage)
    today = date(2024, 6, 10)
    for offset in (-1, 5, 0, 2, 9):
        storage.create_health_event(
            {"user_id": "u1", "title": f"e{offset}", "date": (today + timedelta(days=offset)).isoformat()}
        )
    titles = [e.title for e in storage.get_upcoming_health_events("u1", today=today)]
    assert titles == ["e0", "e2", "e5"]


def test_event_update_and_delete():
    storage = _new_storage()
    _with_user(storage)
    event = storage.create_health_event({"user_id": "u1", "title": "Dentist", "date": "2024-02-01"})
    updated = storage.update_health_event(event.id, {"location": "Main St", "date": "2024-02-03"})
    assert updated.location == "Main St"
    assert updated.date == date(2024, 2, 3)
    assert updated.title == "Dentist"
    with pytest.raises(InvalidPayloadError):
        storage.update_health_event(event.id, {"title": ""})
    assert storage.delete_health_event(event.id) is True
    assert storage.delete_health_event(event.id) is False


# --- connected services ---

def test_connected_service_upsert_keeps_one_row_per_service():
    storage = _new_storage()
    _with_user(storage)
    first = storage.upsert_connected_service(
        InsertConnectedService(user_id="u1", service_name="apple_health", is_connected=True, auth_data={"auto_sync": True})
    )
    again = storage.upsert_connected_service({"user_id": "u1", "service_name": "apple_health", "is_connected": True})
    assert again.id == first.id
    assert again.auth_data == {"auto_sync": True}
    assert len(storage.get_connected_services("u1")) == 1


def test_connected_service_last_synced_never_moves_backwards():
    storage = _new_storage()
    _with_user(storage)
    later = datetime(2024, 5, 2, 8, 0)
    earlier = datetime(2024, 5, 1, 8, 0)
    storage.upsert_connected_service({"user_id": "u1", "service_name": "apple_health", "last_synced": later})
    row = storage.upsert_connected_service({"user_id": "u1", "service_name": "apple_health", "last_synced": earlier})
    assert row.last_synced == later


def test_disconnect_service():
    storage = _new_storage()
    _with_user(storage)
    storage.upsert_connected_service({"user_id": "u1", "service_name": "lab_partner", "is_connected": True})
    assert storage.disconnect_service("u1", "lab_partner") is True
    assert storage.get_connected_service("u1", "lab_partner").is_connected is False
    assert storage.disconnect_service("u1", "missing") is False
    assert storage.get_all_connected_services() == []
    assert len(storage.get_all_connected_services(connected_only=False)) == 1


# --- workouts ---

def test_deleting_workout_cascades_to_sets():
    storage = _new_storage()
    _with_user(storage)
    workout = storage.create_workout({"user_id": "u1", "title": "Run", "date": "2024-01-01", "activity_type": "running"})
    storage.batch_create_workout_sets(
        [
            {"workout_id": workout.id, "exercise_name": "Squat", "set_number": 2},
            {"workout_id": workout.id, "exercise_name": "Squat", "set_number": 1},
        ]
    )
    assert [s.set_number for s in storage.get_workout_sets(workout.id)] == [1, 2]

    assert storage.delete_workout(workout.id) is True
    assert storage.db.query(WorkoutSet).count() == 0


def test_feeling_score_outside_range_is_rejected():
    storage = _new_storage()
    _with_user(storage)
    base = {"user_id": "u1", "title": "Run", "date": "2024-01-01", "activity_type": "running"}
    with pytest.raises(InvalidPayloadError):
        storage.create_workout({**base, "feeling_score": 11})
    workout = storage.create_workout({**base, "feeling_score": 7})
    with pytest.raises(InvalidPayloadError):
        storage.update_workout(workout.id, {"feeling_score": 0})
    assert storage.update_workout(workout.id, {"is_completed": True}).is_completed is True


def test_workout_set_update_keeps_parent():
    storage = _new_storage()
    _with_user(storage)
    workout = storage.create_workout({"user_id": "u1", "title": "Lift", "date": "2024-01-01", "activity_type": "strength"})
    workout_set = storage.create_workout_set({"workout_id": workout.id, "exercise_name": "Bench", "set_number": 1})
    updated = storage.update_workout_set(workout_set.id, {"reps": 8, "weight": 135})
    assert updated.reps == 8
    assert updated.weight == pytest.approx(135.0)
    with pytest.raises(InvalidPayloadError):
        storage.update_workout_set(workout_set.id, {"workout_id": 42})


def test_workout_set_for_unknown_workout_is_rejected():
    storage = _new_storage()
    _with_user(storage)
    with pytest.raises(ConstraintViolationError):
        storage.create_workout_set({"workout_id": 404, "exercise_name": "Bench", "set_number": 1})


def test_deleting_user_removes_everything_they_own():
    storage = _new_storage()
    _with_user(storage)
    lab = storage.create_lab_result({"user_id": "u1", "title": "CBC"})
    storage.create_bloodwork_marker(_marker(lab.id))
    storage.create_health_metric({"user_id": "u1", "date": "2024-01-01"})
    workout = storage.create_workout({"user_id": "u1", "title": "Run", "date": "2024-01-01", "activity_type": "running"})
    storage.create_workout_set({"workout_id": workout.id, "exercise_name": "Run", "set_number": 1})

    assert storage.delete_user("u1") is True
    assert storage.get_lab_results("u1") == []
    assert storage.db.query(BloodworkMarker).count() == 0
    assert storage.db.query(WorkoutSet).count() == 0
    assert storage.get_health_metrics("u1") == []


# --- sessions ---

def test_purge_removes_only_expired_sessions():
    storage = _new_storage()
    now = datetime(2024, 1, 1, 12, 0)
    storage.create_session({"sid": "a" * 32, "sess": {"claims": {"sub": "u1"}}, "expire": now - timedelta(minutes=1)})
    storage.create_session({"sid": "b" * 32, "sess": {"claims": {"sub": "u1"}}, "expire": now + timedelta(days=1)})

    assert storage.purge_expired_sessions(now=now) == 1
    assert [s.sid for s in storage.db.query(AuthSession).all()] == ["b" * 32]
    kept = AuthSessionRead.model_validate(storage.get_session("b" * 32))
    assert kept.sess == {"claims": {"sub": "u1"}}


def test_delete_sessions_for_user_leaves_other_users_signed_in():
    storage = _new_storage()
    expire = datetime(2030, 1, 1)
    storage.create_session({"sid": "a" * 32, "sess": {"claims": {"sub": "u1"}}, "expire": expire})
    storage.create_session({"sid": "b" * 32, "sess": {"claims": {"sub": "u1"}}, "expire": expire})
    storage.create_session({"sid": "c" * 32, "sess": {"claims": {"sub": "u2"}}, "expire": expire})

    assert storage.delete_sessions_for_user("u1") == 2
    assert [s.sid for s in storage.db.query(AuthSession).all()] == ["c" * 32]


def test_startup_migrations_keep_one_row_per_connected_service():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    run_startup_migrations(engine)
    run_startup_migrations(engine)

    storage = HealthStorage(sessionmaker(autocommit=False, autoflush=False, bind=engine)())
    _with_user(storage)
    storage.upsert_connected_service({"user_id": "u1", "service_name": "apple_health"})
    storage.upsert_connected_service({"user_id": "u1", "service_name": "apple_health", "is_connected": True})
    assert len(storage.get_connected_services("u1")) == 1
