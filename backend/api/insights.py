import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from ai.health_analyst import AnalysisError, generate_health_insights, generate_health_plan
from auth.utils import get_current_user
from db.database import get_db
from db.models import User
from db.schemas import (
    AiInsightRead,
    BloodworkMarkerRead,
    HealthMetricRead,
    InsertAiInsight,
    LabResultRead,
    WorkoutRead,
)
from services.storage import HealthStorage
from utils.datetime_utils import days_ago, today_utc

logger = logging.getLogger(__name__)

router = APIRouter(tags=["insights"])

INSIGHT_LOOKBACK_DAYS = 30


def _dump(schema, rows) -> list[dict]:
    return [schema.model_validate(row).model_dump(mode="json") for row in rows]


@router.get("/ai-insights", response_model=list[AiInsightRead])
def list_ai_insights(
    limit: int = Query(10, ge=1, le=100),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return HealthStorage(db).get_ai_insights(user.id, limit=limit)


@router.post("/ai-insights/generate", response_model=list[AiInsightRead], status_code=status.HTTP_201_CREATED)
async def generate_ai_insights(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    storage = HealthStorage(db)
    metrics = storage.get_health_metrics(user.id, start_date=days_ago(today_utc(), INSIGHT_LOOKBACK_DAYS))
    lab_results = storage.get_lab_results(user.id)
    try:
        generated = await generate_health_insights(
            _dump(HealthMetricRead, metrics),
            _dump(LabResultRead, lab_results),
        )
    except AnalysisError as exc:
        raise HTTPException(status_code=502, detail=str(exc))

    created = [storage.create_ai_insight(InsertAiInsight(user_id=user.id, **item)) for item in generated]
    logger.info(f"Generated {len(created)} insights for user {user.id}")
    return created


@router.post("/ai-insights/{insight_id}/read")
def mark_ai_insight_read(insight_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    if not HealthStorage(db).mark_ai_insight_as_read(insight_id, user_id=user.id):
        raise HTTPException(status_code=404, detail="Insight not found")
    return {"message": "Insight marked as read"}


@router.get("/health-plan")
async def health_plan(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    storage = HealthStorage(db)
    user_data = {
        "profile": {
            "first_name": user.first_name,
            "subscription_tier": user.subscription_tier,
        },
        "health_metrics": _dump(HealthMetricRead, storage.get_health_metrics(user.id)),
        "lab_results": _dump(LabResultRead, storage.get_lab_results(user.id)),
        "bloodwork_markers": _dump(BloodworkMarkerRead, storage.get_bloodwork_markers(user.id)),
        "workouts": _dump(WorkoutRead, storage.get_workouts(user.id)),
    }
    try:
        return await generate_health_plan(user_data)
    except AnalysisError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
