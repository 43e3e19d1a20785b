"""Storage access object for every persisted entity.

``HealthStorage`` wraps one SQLAlchemy session. Inserts accept either a
validated insert shape or a plain mapping; mappings are validated first and a
bad payload raises ``InvalidPayloadError`` before anything touches the
database. Integrity failures roll the session back and surface as
``ConstraintViolationError``. Multi-row writes commit once.
"""

import logging
from datetime import date, datetime
from typing import Any, Iterable, Mapping

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db.errors import (
    ConstraintViolationError,
    InvalidPayloadError,
    InvalidTransitionError,
    RecordNotFoundError,
)
from db.models import (
    AiInsight,
    AuthSession,
    BloodworkMarker,
    ConnectedService,
    HealthEvent,
    HealthMetric,
    LabResult,
    SUBSCRIPTION_STATUSES,
    SUBSCRIPTION_TIERS,
    User,
    Workout,
    WorkoutSet,
)
from db.schemas import (
    InsertAiInsight,
    InsertAuthSession,
    InsertBloodworkMarker,
    InsertConnectedService,
    InsertHealthEvent,
    InsertHealthMetric,
    InsertLabResult,
    InsertWorkout,
    InsertWorkoutSet,
    UpsertUser,
    insertable_fields,
    validate_insert,
)
from utils.datetime_utils import to_naive_utc, today_utc, utcnow_naive
from utils.lab_values import parse_result_date

logger = logging.getLogger(__name__)

Payload = BaseModel | Mapping[str, Any]


def _coerce(schema: type[BaseModel], payload: Payload) -> BaseModel:
    result = validate_insert(schema, payload)
    if not result.ok:
        raise InvalidPayloadError(f"Invalid {schema.__name__} payload", result.errors)
    return result.value


def _marker_sort_key(marker: BloodworkMarker):
    parsed = parse_result_date(marker.result_date)
    return (parsed or date.min, marker.id or 0)


class HealthStorage:
    def __init__(self, db: Session):
        self.db = db

    # --- plumbing ---

    def _commit(self) -> None:
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            logger.warning(f"Rejected write: {exc.orig}")
            raise ConstraintViolationError(str(exc.orig)) from exc

    def _insert(self, model, schema: type[BaseModel], payload: Payload):
        value = _coerce(schema, payload)
        row = model(**value.model_dump())
        self.db.add(row)
        self._commit()
        self.db.refresh(row)
        return row

    def _insert_many(self, model, schema: type[BaseModel], payloads: Iterable[Payload]) -> list:
        values = [_coerce(schema, payload) for payload in payloads]
        if not values:
            return []
        rows = [model(**value.model_dump()) for value in values]
        self.db.add_all(rows)
        self._commit()
        for row in rows:
            self.db.refresh(row)
        return rows

    def _apply_changes(
        self,
        row,
        schema: type[BaseModel],
        changes: Payload,
        *,
        immutable: frozenset[str] = frozenset(),
    ):
        if isinstance(changes, BaseModel):
            changes = changes.model_dump(exclude_unset=True)
        changes = dict(changes)
        fields = insertable_fields(schema)
        rejected = sorted(set(changes) - (fields - immutable))
        if rejected:
            raise InvalidPayloadError(
                f"Fields cannot be updated: {', '.join(rejected)}",
                [{"type": "extra_forbidden", "loc": (name,), "msg": "Field cannot be updated"} for name in rejected],
            )
        if not changes:
            return row
        merged = {name: getattr(row, name) for name in fields}
        merged.update(changes)
        value = _coerce(schema, merged)
        for name in changes:
            setattr(row, name, getattr(value, name))
        self._commit()
        self.db.refresh(row)
        return row

    def _delete(self, row) -> bool:
        if row is None:
            return False
        self.db.delete(row)
        self._commit()
        return True

    # --- users ---

    def get_user(self, user_id: str) -> User | None:
        return self.db.get(User, user_id)

    def upsert_user(self, payload: UpsertUser | Mapping[str, Any]) -> User:
        """Create the user or overwrite its profile fields.

        Subscription fields and ``created_at`` survive the upsert.
        """
        value = _coerce(UpsertUser, payload)
        user = self.get_user(value.id)
        if user is None:
            user = User(**value.model_dump())
            self.db.add(user)
        else:
            user.email = value.email
            user.first_name = value.first_name
            user.last_name = value.last_name
            user.profile_image_url = value.profile_image_url
            user.updated_at = utcnow_naive()
        self._commit()
        self.db.refresh(user)
        return user

    def update_user_subscription(
        self,
        user_id: str,
        stripe_customer_id: str | None,
        stripe_subscription_id: str | None,
        status: str,
        tier: str,
        expires_at: datetime | None = None,
    ) -> User:
        user = self.get_user(user_id)
        if user is None:
            raise RecordNotFoundError("User", user_id)
        if status not in SUBSCRIPTION_STATUSES:
            raise InvalidPayloadError(f"Unknown subscription status: {status}")
        if tier not in SUBSCRIPTION_TIERS:
            raise InvalidPayloadError(f"Unknown subscription tier: {tier}")
        user.stripe_customer_id = stripe_customer_id
        user.stripe_subscription_id = stripe_subscription_id
        user.subscription_status = status
        user.subscription_tier = tier
        user.subscription_expires_at = to_naive_utc(expires_at)
        user.updated_at = utcnow_naive()
        self._commit()
        self.db.refresh(user)
        return user

    def delete_user(self, user_id: str) -> bool:
        return self._delete(self.get_user(user_id))

    # --- lab results ---

    def get_lab_results(self, user_id: str) -> list[LabResult]:
        return (
            self.db.query(LabResult)
            .filter(LabResult.user_id == user_id)
            .order_by(LabResult.uploaded_at.desc(), LabResult.id.desc())
            .all()
        )

    def get_lab_result(self, lab_result_id: int) -> LabResult | None:
        return self.db.get(LabResult, lab_result_id)

    def get_unprocessed_lab_results(self, user_id: str) -> list[LabResult]:
        return (
            self.db.query(LabResult)
            .filter(LabResult.user_id == user_id, LabResult.processed.is_(False))
            .order_by(LabResult.uploaded_at.asc(), LabResult.id.asc())
            .all()
        )

    def create_lab_result(self, payload: InsertLabResult | Mapping[str, Any]) -> LabResult:
        return self._insert(LabResult, InsertLabResult, payload)

    def update_lab_result(self, lab_result_id: int, changes: Payload) -> LabResult:
        row = self.get_lab_result(lab_result_id)
        if row is None:
            raise RecordNotFoundError("LabResult", lab_result_id)
        if isinstance(changes, BaseModel):
            changes = changes.model_dump(exclude_unset=True)
        if changes.get("status") == "pending" and row.status != "pending":
            raise InvalidTransitionError(f"LabResult {lab_result_id} is {row.status} and cannot return to pending")
        return self._apply_changes(row, InsertLabResult, changes, immutable=frozenset({"user_id"}))

    def set_lab_result_processed(self, lab_result_id: int, processed: bool = True) -> LabResult:
        row = self.get_lab_result(lab_result_id)
        if row is None:
            raise RecordNotFoundError("LabResult", lab_result_id)
        if not processed:
            if row.processed:
                raise InvalidTransitionError(f"LabResult {lab_result_id} is already processed")
            return row
        if not row.processed:
            row.processed = True
            self._commit()
            self.db.refresh(row)
        return row

    def delete_lab_result(self, lab_result_id: int) -> bool:
        return self._delete(self.get_lab_result(lab_result_id))

    # --- bloodwork markers ---

    def get_bloodwork_markers(
        self,
        user_id: str,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> list[BloodworkMarker]:
        markers = self.db.query(BloodworkMarker).filter(BloodworkMarker.user_id == user_id).all()
        if start_date is not None or end_date is not None:
            window = []
            for marker in markers:
                parsed = parse_result_date(marker.result_date)
                if parsed is None:
                    continue
                if start_date is not None and parsed < start_date:
                    continue
                if end_date is not None and parsed > end_date:
                    continue
                window.append(marker)
            markers = window
        return sorted(markers, key=_marker_sort_key)

    def get_bloodwork_markers_by_name(self, user_id: str, name: str) -> list[BloodworkMarker]:
        markers = (
            self.db.query(BloodworkMarker)
            .filter(BloodworkMarker.user_id == user_id, BloodworkMarker.name == name)
            .all()
        )
        return sorted(markers, key=_marker_sort_key)

    def get_bloodwork_markers_by_lab_result(self, lab_result_id: int) -> list[BloodworkMarker]:
        return (
            self.db.query(BloodworkMarker)
            .filter(BloodworkMarker.lab_result_id == lab_result_id)
            .order_by(BloodworkMarker.id.asc())
            .all()
        )

    def create_bloodwork_marker(self, payload: InsertBloodworkMarker | Mapping[str, Any]) -> BloodworkMarker:
        return self._insert(BloodworkMarker, InsertBloodworkMarker, payload)

    def batch_create_bloodwork_markers(self, payloads: Iterable[Payload]) -> list[BloodworkMarker]:
        return self._insert_many(BloodworkMarker, InsertBloodworkMarker, payloads)

    def record_extracted_markers(
        self,
        lab_result_id: int,
        markers: Iterable[Payload],
        insight: Payload | None = None,
    ) -> list[BloodworkMarker]:
        """Store extracted markers, an optional insight and ``processed=True`` in one commit."""
        lab_result = self.get_lab_result(lab_result_id)
        if lab_result is None:
            raise RecordNotFoundError("LabResult", lab_result_id)
        if lab_result.processed:
            raise InvalidTransitionError(f"LabResult {lab_result_id} is already processed")
        values = [_coerce(InsertBloodworkMarker, marker) for marker in markers]
        insight_value = _coerce(InsertAiInsight, insight) if insight is not None else None

        rows = [BloodworkMarker(**value.model_dump()) for value in values]
        self.db.add_all(rows)
        if insight_value is not None:
            self.db.add(AiInsight(**insight_value.model_dump()))
        lab_result.processed = True
        self._commit()
        for row in rows:
            self.db.refresh(row)
        return rows

    # --- health metrics ---

    def get_health_metrics(
        self,
        user_id: str,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> list[HealthMetric]:
        query = self.db.query(HealthMetric).filter(HealthMetric.user_id == user_id)
        if start_date is not None:
            query = query.filter(HealthMetric.date >= start_date)
        if end_date is not None:
            query = query.filter(HealthMetric.date <= end_date)
        return query.order_by(HealthMetric.date.asc(), HealthMetric.id.asc()).all()

    def get_latest_health_metric(self, user_id: str) -> HealthMetric | None:
        return (
            self.db.query(HealthMetric)
            .filter(HealthMetric.user_id == user_id)
            .order_by(HealthMetric.date.desc(), HealthMetric.id.desc())
            .first()
        )

    def create_health_metric(self, payload: InsertHealthMetric | Mapping[str, Any]) -> HealthMetric:
        return self._insert(HealthMetric, InsertHealthMetric, payload)

    def batch_create_health_metrics(self, payloads: Iterable[Payload]) -> list[HealthMetric]:
        return self._insert_many(HealthMetric, InsertHealthMetric, payloads)

    # --- AI insights ---

    def get_ai_insights(self, user_id: str, limit: int = 10) -> list[AiInsight]:
        return (
            self.db.query(AiInsight)
            .filter(AiInsight.user_id == user_id)
            .order_by(AiInsight.created_at.desc(), AiInsight.id.desc())
            .limit(max(int(limit), 0))
            .all()
        )

    def count_unread_ai_insights(self, user_id: str) -> int:
        return (
            self.db.query(AiInsight)
            .filter(AiInsight.user_id == user_id, AiInsight.is_read.is_(False))
            .count()
        )

    def create_ai_insight(self, payload: InsertAiInsight | Mapping[str, Any]) -> AiInsight:
        return self._insert(AiInsight, InsertAiInsight, payload)

    def mark_ai_insight_as_read(self, insight_id: int, user_id: str | None = None) -> bool:
        insight = self.db.get(AiInsight, insight_id)
        if insight is None or (user_id is not None and insight.user_id != user_id):
            return False
        if not insight.is_read:
            insight.is_read = True
            self._commit()
        return True

    # --- health events ---

    def get_health_events(
        self,
        user_id: str,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> list[HealthEvent]:
        query = self.db.query(HealthEvent).filter(HealthEvent.user_id == user_id)
        if start_date is not None:
            query = query.filter(HealthEvent.date >= start_date)
        if end_date is not None:
            query = query.filter(HealthEvent.date <= end_date)
        return query.order_by(HealthEvent.date.asc(), HealthEvent.time.asc(), HealthEvent.id.asc()).all()

    def get_upcoming_health_events(self, user_id: str, today: date | None = None, limit: int = 3) -> list[HealthEvent]:
        today = today or today_utc()
        return (
            self.db.query(HealthEvent)
            .filter(HealthEvent.user_id == user_id, HealthEvent.date >= today)
            .order_by(HealthEvent.date.asc(), HealthEvent.time.asc(), HealthEvent.id.asc())
            .limit(max(int(limit), 0))
            .all()
        )

    def get_health_event(self, event_id: int) -> HealthEvent | None:
        return self.db.get(HealthEvent, event_id)

    def create_health_event(self, payload: InsertHealthEvent | Mapping[str, Any]) -> HealthEvent:
        return self._insert(HealthEvent, InsertHealthEvent, payload)

    def update_health_event(self, event_id: int, changes: Payload) -> HealthEvent:
        row = self.get_health_event(event_id)
        if row is None:
            raise RecordNotFoundError("HealthEvent", event_id)
        return self._apply_changes(row, InsertHealthEvent, changes, immutable=frozenset({"user_id"}))

    def delete_health_event(self, event_id: int) -> bool:
        return self._delete(self.get_health_event(event_id))

    # --- connected services ---

    def get_connected_services(self, user_id: str) -> list[ConnectedService]:
        return (
            self.db.query(ConnectedService)
            .filter(ConnectedService.user_id == user_id)
            .order_by(ConnectedService.service_name.asc())
            .all()
        )

    def get_all_connected_services(self, service_name: str | None = None, connected_only: bool = True) -> list[ConnectedService]:
        query = self.db.query(ConnectedService)
        if service_name:
            query = query.filter(ConnectedService.service_name == service_name)
        if connected_only:
            query = query.filter(ConnectedService.is_connected.is_(True))
        return query.order_by(ConnectedService.id.asc()).all()

    def get_connected_service(self, user_id: str, service_name: str) -> ConnectedService | None:
        return (
            self.db.query(ConnectedService)
            .filter(ConnectedService.user_id == user_id, ConnectedService.service_name == service_name)
            .first()
        )

    def upsert_connected_service(self, payload: InsertConnectedService | Mapping[str, Any]) -> ConnectedService:
        """Insert the (user, service) row or update the fields the payload sets.

        ``last_synced`` never moves backwards; an older or missing value is ignored.
        """
        value = _coerce(InsertConnectedService, payload)
        existing = self.get_connected_service(value.user_id, value.service_name)
        if existing is None:
            row = ConnectedService(**value.model_dump())
            row.last_synced = to_naive_utc(value.last_synced)
            self.db.add(row)
            self._commit()
            self.db.refresh(row)
            return row

        for name in value.model_fields_set - {"user_id", "service_name"}:
            incoming = getattr(value, name)
            if name == "last_synced":
                incoming = to_naive_utc(incoming)
                if incoming is None:
                    continue
                if existing.last_synced is not None and incoming < existing.last_synced:
                    continue
            setattr(existing, name, incoming)
        existing.updated_at = utcnow_naive()
        self._commit()
        self.db.refresh(existing)
        return existing

    def disconnect_service(self, user_id: str, service_name: str) -> bool:
        row = self.get_connected_service(user_id, service_name)
        if row is None:
            return False
        row.is_connected = False
        row.updated_at = utcnow_naive()
        self._commit()
        return True

    # --- workouts ---

    def get_workouts(
        self,
        user_id: str,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> list[Workout]:
        query = self.db.query(Workout).filter(Workout.user_id == user_id)
        if start_date is not None:
            query = query.filter(Workout.date >= start_date)
        if end_date is not None:
            query = query.filter(Workout.date <= end_date)
        return query.order_by(Workout.date.asc(), Workout.start_time.asc(), Workout.id.asc()).all()

    def get_workout(self, workout_id: int) -> Workout | None:
        return self.db.get(Workout, workout_id)

    def create_workout(self, payload: InsertWorkout | Mapping[str, Any]) -> Workout:
        return self._insert(Workout, InsertWorkout, payload)

    def update_workout(self, workout_id: int, changes: Payload) -> Workout:
        row = self.get_workout(workout_id)
        if row is None:
            raise RecordNotFoundError("Workout", workout_id)
        return self._apply_changes(row, InsertWorkout, changes, immutable=frozenset({"user_id"}))

    def delete_workout(self, workout_id: int) -> bool:
        return self._delete(self.get_workout(workout_id))

    # --- workout sets ---

    def get_workout_sets(self, workout_id: int) -> list[WorkoutSet]:
        return (
            self.db.query(WorkoutSet)
            .filter(WorkoutSet.workout_id == workout_id)
            .order_by(WorkoutSet.set_number.asc(), WorkoutSet.id.asc())
            .all()
        )

    def get_workout_set(self, set_id: int) -> WorkoutSet | None:
        return self.db.get(WorkoutSet, set_id)

    def create_workout_set(self, payload: InsertWorkoutSet | Mapping[str, Any]) -> WorkoutSet:
        return self._insert(WorkoutSet, InsertWorkoutSet, payload)

    def batch_create_workout_sets(self, payloads: Iterable[Payload]) -> list[WorkoutSet]:
        return self._insert_many(WorkoutSet, InsertWorkoutSet, payloads)

    def update_workout_set(self, set_id: int, changes: Payload) -> WorkoutSet:
        row = self.get_workout_set(set_id)
        if row is None:
            raise RecordNotFoundError("WorkoutSet", set_id)
        return self._apply_changes(row, InsertWorkoutSet, changes, immutable=frozenset({"workout_id"}))

    def delete_workout_set(self, set_id: int) -> bool:
        return self._delete(self.get_workout_set(set_id))

    # --- sessions ---

    def create_session(self, payload: InsertAuthSession | Mapping[str, Any]) -> AuthSession:
        value = _coerce(InsertAuthSession, payload)
        row = AuthSession(sid=value.sid, sess=value.sess, expire=to_naive_utc(value.expire))
        self.db.add(row)
        self._commit()
        self.db.refresh(row)
        return row

    def get_session(self, sid: str) -> AuthSession | None:
        return self.db.get(AuthSession, sid)

    def delete_session(self, sid: str) -> bool:
        return self._delete(self.get_session(sid))

    def delete_sessions_for_user(self, user_id: str) -> int:
        removed = (
            self.db.query(AuthSession)
            .filter(AuthSession.sess["claims"]["sub"].as_string() == user_id)
            .delete(synchronize_session=False)
        )
        self._commit()
        return int(removed or 0)

    def purge_expired_sessions(self, now: datetime | None = None) -> int:
        cutoff = to_naive_utc(now) or utcnow_naive()
        removed = (
            self.db.query(AuthSession)
            .filter(AuthSession.expire <= cutoff)
            .delete(synchronize_session=False)
        )
        self._commit()
        return int(removed or 0)
