import json
import logging
from datetime import date
from typing import Any, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Response, UploadFile, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from auth.utils import get_current_user
from db.database import get_db
from db.errors import InvalidPayloadError, StorageError
from db.models import LabResult, User
from db.schemas import (
    BloodworkMarkerFields,
    BloodworkMarkerRead,
    InsertBloodworkMarker,
    InsertLabResult,
    LabResultFields,
    LabResultRead,
    LabResultStatus,
    validate_insert,
)
from services.lab_processing_service import analyze_and_record, process_unprocessed_lab_results
from services.object_storage import ObjectStorageError, get_object_storage
from services.storage import HealthStorage
from utils.upload_utils import build_storage_key, mime_type_for, validate_upload_payload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/lab-results", tags=["lab-results"])
markers_router = APIRouter(prefix="/bloodwork-markers", tags=["lab-results"])


class LabResultUpdateRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=300)
    description: Optional[str] = None
    result_date: Optional[date] = None
    status: Optional[LabResultStatus] = None
    data: Optional[dict[str, Any]] = None


def _get_owned_lab_result(storage: HealthStorage, lab_result_id: int, user: User) -> LabResult:
    lab_result = storage.get_lab_result(lab_result_id)
    if not lab_result:
        raise HTTPException(status_code=404, detail="Lab result not found")
    if lab_result.user_id != user.id:
        raise HTTPException(status_code=403, detail="Not your lab result")
    return lab_result


def _parse_data_field(raw: str | None) -> dict[str, Any] | None:
    if raw is None or not raw.strip():
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="data must be a JSON object")
    if not isinstance(parsed, dict):
        raise HTTPException(status_code=400, detail="data must be a JSON object")
    return parsed


@router.get("", response_model=list[LabResultRead])
def list_lab_results(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return HealthStorage(db).get_lab_results(user.id)


@router.post("/upload", response_model=LabResultRead, status_code=status.HTTP_201_CREATED)
async def upload_lab_result(
    file: UploadFile = File(...),
    title: str = Form(...),
    description: Optional[str] = Form(None),
    result_date: Optional[date] = Form(None),
    category: Optional[str] = Form(None),
    data: Optional[str] = Form(None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    parsed_data = _parse_data_field(data)
    stored_data = dict(parsed_data or {})
    if category:
        stored_data["category"] = category
    checked = validate_insert(
        LabResultFields,
        {"title": title, "description": description, "result_date": result_date, "data": stored_data or None},
    )
    if not checked.ok:
        raise InvalidPayloadError("Invalid lab result", checked.errors)

    payload = await file.read()
    try:
        mime_type, extension = validate_upload_payload(
            payload, filename=file.filename, content_type=file.content_type
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    object_store = get_object_storage()
    try:
        file_url = object_store.save(
            build_storage_key(user.id, file.filename, extension),
            payload,
            content_type=mime_type,
            original_name=file.filename,
        )
    except ObjectStorageError as exc:
        raise HTTPException(status_code=502, detail=str(exc))

    storage = HealthStorage(db)
    try:
        lab_result = storage.create_lab_result(
            InsertLabResult(**checked.value.model_dump(exclude={"file_url"}), user_id=user.id, file_url=file_url)
        )
    except StorageError:
        object_store.delete(file_url)
        raise
    logger.info(f"Stored lab result {lab_result.id} for user {user.id} ({mime_type}, {len(payload)} bytes)")

    if parsed_data:
        lab_result = await analyze_and_record(storage, lab_result, parsed_data)
    return lab_result


@router.post("/process")
async def process_lab_results(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    results = await process_unprocessed_lab_results(HealthStorage(db), user.id)
    if not results:
        return {"message": "No unprocessed lab results found", "count": 0, "results": []}
    return {"message": "Processed lab results", "count": len(results), "results": results}


@router.get("/{lab_result_id}", response_model=LabResultRead)
def get_lab_result(lab_result_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return _get_owned_lab_result(HealthStorage(db), lab_result_id, user)


@router.get("/{lab_result_id}/file")
def download_lab_result_file(
    lab_result_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    lab_result = _get_owned_lab_result(HealthStorage(db), lab_result_id, user)
    if not lab_result.file_url:
        raise HTTPException(status_code=404, detail="Lab result has no file")
    try:
        content = get_object_storage().load(lab_result.file_url)
    except ObjectStorageError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return Response(content=content, media_type=mime_type_for(lab_result.file_url) or "application/octet-stream")


@router.put("/{lab_result_id}", response_model=LabResultRead)
def update_lab_result(
    lab_result_id: int,
    req: LabResultUpdateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    storage = HealthStorage(db)
    _get_owned_lab_result(storage, lab_result_id, user)
    return storage.update_lab_result(lab_result_id, req.model_dump(exclude_unset=True))


@router.delete("/{lab_result_id}")
def delete_lab_result(lab_result_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    storage = HealthStorage(db)
    lab_result = _get_owned_lab_result(storage, lab_result_id, user)
    if lab_result.file_url:
        try:
            get_object_storage().delete(lab_result.file_url)
        except ObjectStorageError as exc:
            logger.warning(f"Could not delete stored file for lab result {lab_result_id}: {exc}")
    storage.delete_lab_result(lab_result_id)
    return {"message": "Lab result deleted successfully"}


@router.get("/{lab_result_id}/bloodwork-markers", response_model=list[BloodworkMarkerRead])
def list_lab_result_markers(
    lab_result_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    storage = HealthStorage(db)
    _get_owned_lab_result(storage, lab_result_id, user)
    return storage.get_bloodwork_markers_by_lab_result(lab_result_id)


@router.post(
    "/{lab_result_id}/bloodwork-markers",
    response_model=list[BloodworkMarkerRead],
    status_code=status.HTTP_201_CREATED,
)
def add_lab_result_markers(
    lab_result_id: int,
    req: BloodworkMarkerFields | list[BloodworkMarkerFields],
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    storage = HealthStorage(db)
    _get_owned_lab_result(storage, lab_result_id, user)
    markers = req if isinstance(req, list) else [req]
    return storage.batch_create_bloodwork_markers(
        [InsertBloodworkMarker(**m.model_dump(), lab_result_id=lab_result_id, user_id=user.id) for m in markers]
    )


@markers_router.get("", response_model=list[BloodworkMarkerRead])
def list_bloodwork_markers(
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    name: Optional[str] = Query(None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    storage = HealthStorage(db)
    if name:
        return storage.get_bloodwork_markers_by_name(user.id, name)
    return storage.get_bloodwork_markers(user.id, start_date, end_date)
