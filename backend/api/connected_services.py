import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Path
from pydantic import BaseModel
from sqlalchemy.orm import Session

from auth.utils import get_current_user
from db.database import get_db
from db.models import User
from db.schemas import ConnectedServiceRead, InsertConnectedService
from services.apple_health_service import process_apple_health_data, validate_apple_health_data
from services.storage import HealthStorage
from utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/connected-services", tags=["connected-services"])

SERVICE_NAME_PATTERN = r"^[a-z0-9_\-]{1,100}$"


class ConnectRequest(BaseModel):
    auth_data: Optional[dict[str, Any]] = None


class AppleHealthSyncRequest(BaseModel):
    data: Optional[dict[str, Any]] = None


@router.get("", response_model=list[ConnectedServiceRead])
def list_connected_services(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return HealthStorage(db).get_connected_services(user.id)


@router.post("/apple_health/sync")
def sync_apple_health(
    req: AppleHealthSyncRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if not req.data:
        raise HTTPException(status_code=400, detail="No Apple Health data provided")
    validated = validate_apple_health_data(req.data)
    result = process_apple_health_data(HealthStorage(db), user.id, validated)
    return result.as_dict()


@router.post("/{service_name}/connect", response_model=ConnectedServiceRead)
def connect_service(
    req: ConnectRequest,
    service_name: str = Path(..., pattern=SERVICE_NAME_PATTERN),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    service = HealthStorage(db).upsert_connected_service(
        InsertConnectedService(
            user_id=user.id,
            service_name=service_name,
            is_connected=True,
            last_synced=utcnow(),
            auth_data=req.auth_data,
        )
    )
    logger.info(f"User {user.id} connected {service_name}")
    return service


@router.post("/{service_name}/disconnect")
def disconnect_service(
    service_name: str = Path(..., pattern=SERVICE_NAME_PATTERN),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if not HealthStorage(db).disconnect_service(user.id, service_name):
        raise HTTPException(status_code=404, detail="Service not found")
    return {"message": f"{service_name} disconnected successfully"}
