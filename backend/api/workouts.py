import datetime as dt
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from auth.utils import get_current_user
from db.database import get_db
from db.models import User, Workout, WorkoutSet
from db.schemas import InsertWorkoutSet, WorkoutFields, WorkoutRead, WorkoutSetFields, WorkoutSetRead
from services.storage import HealthStorage
from services.workout_service import prepare_workout

router = APIRouter(prefix="/workouts", tags=["workouts"])
sets_router = APIRouter(prefix="/workout-sets", tags=["workouts"])

_HHMM = r"^([01]\d|2[0-3]):[0-5]\d$"


class WorkoutUpdateRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=300)
    description: Optional[str] = None
    date: Optional[dt.date] = None
    start_time: Optional[str] = Field(default=None, pattern=_HHMM)
    end_time: Optional[str] = Field(default=None, pattern=_HHMM)
    activity_type: Optional[str] = Field(default=None, min_length=1)
    planned_distance: Optional[float] = Field(default=None, ge=0)
    actual_distance: Optional[float] = Field(default=None, ge=0)
    planned_duration: Optional[int] = Field(default=None, ge=0)
    actual_duration: Optional[int] = Field(default=None, ge=0)
    intensity: Optional[str] = None
    feeling_score: Optional[int] = Field(default=None, ge=1, le=10)
    notes: Optional[str] = None
    is_completed: Optional[bool] = None
    is_recurring: Optional[bool] = None
    recurring_pattern: Optional[str] = None
    recurring_days: Optional[str] = None
    tss_score: Optional[int] = Field(default=None, ge=0)
    calories_burned: Optional[int] = Field(default=None, ge=0)
    average_heart_rate: Optional[int] = Field(default=None, ge=0)
    max_heart_rate: Optional[int] = Field(default=None, ge=0)


class WorkoutSetUpdateRequest(BaseModel):
    exercise_name: Optional[str] = Field(default=None, min_length=1)
    set_number: Optional[int] = Field(default=None, ge=1)
    weight: Optional[float] = Field(default=None, ge=0)
    reps: Optional[int] = Field(default=None, ge=0)
    duration: Optional[int] = Field(default=None, ge=0)
    rest_time: Optional[int] = Field(default=None, ge=0)
    notes: Optional[str] = None


def _get_owned_workout(storage: HealthStorage, workout_id: int, user: User) -> Workout:
    workout = storage.get_workout(workout_id)
    if not workout:
        raise HTTPException(status_code=404, detail="Workout not found")
    if workout.user_id != user.id:
        raise HTTPException(status_code=403, detail="Not your workout")
    return workout


def _get_owned_set(storage: HealthStorage, set_id: int, user: User) -> WorkoutSet:
    workout_set = storage.get_workout_set(set_id)
    if not workout_set:
        raise HTTPException(status_code=404, detail="Workout set not found")
    _get_owned_workout(storage, workout_set.workout_id, user)
    return workout_set


@router.get("", response_model=list[WorkoutRead])
def list_workouts(
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return HealthStorage(db).get_workouts(user.id, start_date, end_date)


@router.post("", response_model=WorkoutRead, status_code=status.HTTP_201_CREATED)
def create_workout(req: WorkoutFields, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return HealthStorage(db).create_workout(prepare_workout(req, user.id))


@router.get("/{workout_id}", response_model=WorkoutRead)
def get_workout(workout_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return _get_owned_workout(HealthStorage(db), workout_id, user)


@router.put("/{workout_id}", response_model=WorkoutRead)
def update_workout(
    workout_id: int,
    req: WorkoutUpdateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    storage = HealthStorage(db)
    _get_owned_workout(storage, workout_id, user)
    return storage.update_workout(workout_id, req.model_dump(exclude_unset=True))


@router.delete("/{workout_id}")
def delete_workout(workout_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    storage = HealthStorage(db)
    _get_owned_workout(storage, workout_id, user)
    storage.delete_workout(workout_id)
    return {"message": "Workout deleted successfully"}


@router.get("/{workout_id}/sets", response_model=list[WorkoutSetRead])
def list_workout_sets(workout_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    storage = HealthStorage(db)
    _get_owned_workout(storage, workout_id, user)
    return storage.get_workout_sets(workout_id)


@router.post("/{workout_id}/sets", response_model=list[WorkoutSetRead], status_code=status.HTTP_201_CREATED)
def add_workout_sets(
    workout_id: int,
    req: WorkoutSetFields | list[WorkoutSetFields],
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    storage = HealthStorage(db)
    _get_owned_workout(storage, workout_id, user)
    sets = req if isinstance(req, list) else [req]
    return storage.batch_create_workout_sets(
        [InsertWorkoutSet(**s.model_dump(), workout_id=workout_id) for s in sets]
    )


@sets_router.put("/{set_id}", response_model=WorkoutSetRead)
def update_workout_set(
    set_id: int,
    req: WorkoutSetUpdateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    storage = HealthStorage(db)
    _get_owned_set(storage, set_id, user)
    return storage.update_workout_set(set_id, req.model_dump(exclude_unset=True))


@sets_router.delete("/{set_id}")
def delete_workout_set(set_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    storage = HealthStorage(db)
    _get_owned_set(storage, set_id, user)
    storage.delete_workout_set(set_id)
    return {"message": "Workout set deleted successfully"}
