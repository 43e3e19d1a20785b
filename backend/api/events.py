import datetime as dt
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from auth.utils import get_current_user
from db.database import get_db
from db.models import HealthEvent, User
from db.schemas import HealthEventFields, HealthEventRead, InsertHealthEvent
from services.storage import HealthStorage

router = APIRouter(prefix="/health-events", tags=["health-events"])


class HealthEventUpdateRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=300)
    description: Optional[str] = None
    date: Optional[dt.date] = None
    time: Optional[str] = None
    location: Optional[str] = None


def _get_owned_event(storage: HealthStorage, event_id: int, user: User) -> HealthEvent:
    event = storage.get_health_event(event_id)
    if not event:
        raise HTTPException(status_code=404, detail="Health event not found")
    if event.user_id != user.id:
        raise HTTPException(status_code=403, detail="Not your health event")
    return event


@router.get("", response_model=list[HealthEventRead])
def list_health_events(
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return HealthStorage(db).get_health_events(user.id, start_date, end_date)


@router.get("/upcoming", response_model=list[HealthEventRead])
def upcoming_health_events(
    limit: int = Query(3, ge=1, le=50),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return HealthStorage(db).get_upcoming_health_events(user.id, limit=limit)


@router.post("", response_model=HealthEventRead, status_code=status.HTTP_201_CREATED)
def create_health_event(req: HealthEventFields, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return HealthStorage(db).create_health_event(InsertHealthEvent(**req.model_dump(), user_id=user.id))


@router.get("/{event_id}", response_model=HealthEventRead)
def get_health_event(event_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return _get_owned_event(HealthStorage(db), event_id, user)


@router.put("/{event_id}", response_model=HealthEventRead)
def update_health_event(
    event_id: int,
    req: HealthEventUpdateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    storage = HealthStorage(db)
    _get_owned_event(storage, event_id, user)
    return storage.update_health_event(event_id, req.model_dump(exclude_unset=True))


@router.delete("/{event_id}")
def delete_health_event(event_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    storage = HealthStorage(db)
    _get_owned_event(storage, event_id, user)
    storage.delete_health_event(event_id)
    return {"message": "Health event deleted successfully"}
