"""Lab result analysis and bloodwork marker extraction.

Two entry points. ``analyze_and_record`` interprets the structured data a
user attached on upload. ``process_unprocessed_lab_results`` pulls markers out
of every stored file that has not been processed yet and flips ``processed``
so a result is never extracted twice.
"""

import logging
from typing import Any

from ai.health_analyst import AnalysisError, analyze_lab_results, extract_bloodwork_markers
from ai.providers import AIProvider
from db.errors import StorageError
from db.models import LabResult
from db.schemas import InsertAiInsight, InsertBloodworkMarker
from services.object_storage import ObjectStorageError, get_object_storage
from services.storage import HealthStorage
from utils.upload_utils import mime_type_for

logger = logging.getLogger(__name__)

LAB_INSIGHT_CATEGORY = "lab_results"


async def analyze_and_record(
    storage: HealthStorage,
    lab_result: LabResult,
    data: dict[str, Any],
    provider: AIProvider | None = None,
) -> LabResult:
    """Run the AI interpretation and store status plus findings on the result.

    Analysis failures are logged and leave the result pending.
    """
    try:
        analysis = await analyze_lab_results(data, provider=provider)
    except AnalysisError as exc:
        logger.warning(f"Lab result {lab_result.id} left pending: {exc}")
        return lab_result

    updated = storage.update_lab_result(
        lab_result.id,
        {"status": analysis["status"], "data": {**data, "analysis": analysis}},
    )
    if analysis["status"] != "normal":
        storage.create_ai_insight(
            InsertAiInsight(
                user_id=lab_result.user_id,
                content=(
                    f'Your lab result "{lab_result.title}" has been analyzed and requires attention. '
                    f"{analysis['interpretation']}"
                ).strip(),
                category=LAB_INSIGHT_CATEGORY,
                severity="alert" if analysis["status"] == "abnormal" else "warning",
            )
        )
    logger.info(f"Lab result {lab_result.id} analyzed as {analysis['status']}")
    return updated


def _result_date_text(lab_result: LabResult) -> str:
    if lab_result.result_date:
        return lab_result.result_date.isoformat()
    if lab_result.uploaded_at:
        return lab_result.uploaded_at.date().isoformat()
    return ""


async def _process_one(storage: HealthStorage, lab_result: LabResult, object_store, provider) -> dict:
    document = object_store.load(lab_result.file_url)
    mime_type = mime_type_for(lab_result.file_url) or "application/octet-stream"
    extracted = await extract_bloodwork_markers(
        document,
        mime_type,
        _result_date_text(lab_result) or "unknown",
        provider=provider,
    )
    markers = [
        InsertBloodworkMarker(**marker.model_dump(), lab_result_id=lab_result.id, user_id=lab_result.user_id)
        for marker in extracted
    ]
    insight = None
    abnormal = [m for m in markers if m.is_abnormal]
    if abnormal:
        names = ", ".join(m.name for m in abnormal)
        insight = InsertAiInsight(
            user_id=lab_result.user_id,
            content=f'Found {len(abnormal)} abnormal values in your lab result "{lab_result.title}": {names}',
            category=LAB_INSIGHT_CATEGORY,
            severity="warning",
        )
    # Processed is set even when no markers were found.
    stored = storage.record_extracted_markers(lab_result.id, markers, insight)
    logger.info(f"Created {len(stored)} bloodwork markers for lab result {lab_result.id}")
    return {"lab_result_id": lab_result.id, "processed": True, "marker_count": len(stored)}


async def process_unprocessed_lab_results(
    storage: HealthStorage,
    user_id: str,
    object_store=None,
    provider: AIProvider | None = None,
) -> list[dict]:
    object_store = object_store or get_object_storage()
    results = []
    for lab_result in storage.get_unprocessed_lab_results(user_id):
        if not lab_result.file_url:
            continue
        try:
            results.append(await _process_one(storage, lab_result, object_store, provider))
        except (AnalysisError, ObjectStorageError, StorageError) as exc:
            logger.error(f"Error processing lab result {lab_result.id}: {exc}")
            results.append({"lab_result_id": lab_result.id, "processed": False, "error": str(exc)})
    return results
