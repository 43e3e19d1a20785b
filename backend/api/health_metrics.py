from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from auth.utils import get_current_user
from db.database import get_db
from db.models import User
from db.schemas import HealthMetricFields, HealthMetricRead, InsertHealthMetric
from services.storage import HealthStorage

router = APIRouter(prefix="/health-metrics", tags=["health-metrics"])


class HealthMetricBatchRequest(BaseModel):
    metrics: list[HealthMetricFields] = Field(min_length=1, max_length=1000)


@router.get("", response_model=list[HealthMetricRead])
def list_health_metrics(
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return HealthStorage(db).get_health_metrics(user.id, start_date, end_date)


@router.get("/latest", response_model=Optional[HealthMetricRead])
def latest_health_metric(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return HealthStorage(db).get_latest_health_metric(user.id)


@router.post("", response_model=HealthMetricRead, status_code=status.HTTP_201_CREATED)
def create_health_metric(
    req: HealthMetricFields,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return HealthStorage(db).create_health_metric(InsertHealthMetric(**req.model_dump(), user_id=user.id))


@router.post("/batch", response_model=list[HealthMetricRead], status_code=status.HTTP_201_CREATED)
def create_health_metrics_batch(
    req: HealthMetricBatchRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return HealthStorage(db).batch_create_health_metrics(
        [InsertHealthMetric(**m.model_dump(), user_id=user.id) for m in req.metrics]
    )
