"""Chat-completion backed analysis: insights, lab interpretation, health plans
and bloodwork marker extraction.

Every call asks the model for a single JSON object and normalizes the reply
into the shapes the request layer stores. Failures raise ``AnalysisError``.
"""

import json
import logging
from typing import Any

from ai.providers import AIProvider, ProviderError, get_provider
from db.schemas import BloodworkMarkerFields
from utils.lab_values import is_outside_range
from utils.upload_utils import IMAGE_MIME_TYPES

logger = logging.getLogger(__name__)

INSIGHT_CATEGORIES = ("sleep", "nutrition", "activity", "general")
INSIGHT_SEVERITIES = ("info", "warning", "alert", "success")
ANALYSIS_STATUSES = ("normal", "review", "abnormal")

INSIGHTS_SYSTEM_PROMPT = (
    "You are a health analytics AI assistant. Analyze the provided health data and generate meaningful, "
    "actionable insights. Focus on trends, anomalies, and potential health improvements. Respond with JSON "
    "in the format: { \"insights\": [{ \"content\": string, \"category\": string (one of: sleep, nutrition, "
    "activity, general), \"severity\": string (one of: info, warning, alert, success) }] }. "
    "Provide 3-5 insights total."
)

LAB_ANALYSIS_SYSTEM_PROMPT = (
    "You are a medical laboratory analysis AI assistant. Analyze the provided lab results and generate an "
    "interpretation. Focus on values outside the reference range and their potential health implications. "
    "Respond with JSON in the format: { \"interpretation\": string, \"status\": string (one of: normal, review, "
    "abnormal), \"findings\": [{ \"marker\": string, \"value\": string, \"reference\": string, \"status\": string, "
    "\"recommendation\": string }] }."
)

HEALTH_PLAN_SYSTEM_PROMPT = (
    "You are a health planning AI assistant. Generate a personalized health plan based on the user's data. "
    "Include specific, actionable recommendations. Respond with JSON in the format: { \"plan\": { \"title\": "
    "string, \"description\": string, \"recommendations\": [{ \"category\": string, \"title\": string, "
    "\"description\": string, \"action_items\": string[] }] } }."
)

MARKER_EXTRACTION_SYSTEM_PROMPT = (
    "You extract bloodwork markers from laboratory reports. Return every measured marker. Respond with JSON "
    "in the format: { \"markers\": [{ \"name\": string, \"value\": string, \"unit\": string, \"min_range\": "
    "string or null, \"max_range\": string or null, \"is_abnormal\": boolean, \"category\": string (Lipids, "
    "Metabolic, Thyroid, CBC, Liver, Kidney, Vitamins, Hormones, Other) }] }. Keep values exactly as printed."
)


class AnalysisError(Exception):
    pass


def _require_provider(provider: AIProvider | None) -> AIProvider:
    provider = provider or get_provider()
    if provider is None:
        raise AnalysisError("AI analysis is not configured (OPENAI_API_KEY is not set)")
    return provider


def _parse_json_object(content: str) -> dict:
    text = (content or "").strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise AnalysisError(f"AI response was not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise AnalysisError("AI response was not a JSON object")
    return parsed


async def _ask(provider: AIProvider | None, system: str, payload: Any, *, what: str) -> dict:
    provider = _require_provider(provider)
    try:
        result = await provider.chat(
            messages=[{"role": "user", "content": json.dumps(payload, default=str)}],
            model=provider.get_reasoning_model(),
            system=system,
            json_response=True,
        )
    except ProviderError as exc:
        logger.warning(f"Failed to {what}: provider returned {exc.status_code}")
        raise AnalysisError(f"Failed to {what}: {exc.detail}") from exc
    except Exception as exc:
        logger.warning(f"Failed to {what}: {exc}")
        raise AnalysisError(f"Failed to {what}: {exc}") from exc
    return _parse_json_object(result.get("content", ""))


async def generate_health_insights(
    health_data: Any,
    lab_results: list[Any],
    provider: AIProvider | None = None,
) -> list[dict]:
    parsed = await _ask(
        provider,
        INSIGHTS_SYSTEM_PROMPT,
        {"health_data": health_data, "lab_results": lab_results},
        what="generate health insights",
    )
    insights = []
    for item in parsed.get("insights") or []:
        if not isinstance(item, dict):
            continue
        content = str(item.get("content") or "").strip()
        if not content:
            continue
        category = str(item.get("category") or "general").strip().lower()
        severity = str(item.get("severity") or "info").strip().lower()
        insights.append(
            {
                "content": content,
                "category": category if category in INSIGHT_CATEGORIES else "general",
                "severity": severity if severity in INSIGHT_SEVERITIES else "info",
            }
        )
    return insights


async def analyze_lab_results(lab_data: Any, provider: AIProvider | None = None) -> dict:
    """Interpret a lab report. Returns interpretation, status and findings."""
    parsed = await _ask(provider, LAB_ANALYSIS_SYSTEM_PROMPT, lab_data, what="analyze lab results")
    status = str(parsed.get("status") or "review").strip().lower()
    if status not in ANALYSIS_STATUSES:
        status = "review"
    findings = [f for f in (parsed.get("findings") or []) if isinstance(f, dict)]
    return {
        "interpretation": str(parsed.get("interpretation") or "").strip(),
        "status": status,
        "findings": findings,
    }


async def generate_health_plan(user_data: Any, provider: AIProvider | None = None) -> dict:
    parsed = await _ask(provider, HEALTH_PLAN_SYSTEM_PROMPT, user_data, what="generate health plan")
    plan = parsed.get("plan")
    if not isinstance(plan, dict):
        raise AnalysisError("AI response did not include a plan")
    recommendations = []
    for rec in plan.get("recommendations") or []:
        if not isinstance(rec, dict):
            continue
        action_items = rec.get("action_items", rec.get("actionItems")) or []
        recommendations.append(
            {
                "category": str(rec.get("category") or "general"),
                "title": str(rec.get("title") or ""),
                "description": str(rec.get("description") or ""),
                "action_items": [str(a) for a in action_items if a],
            }
        )
    return {
        "plan": {
            "title": str(plan.get("title") or "Your health plan"),
            "description": str(plan.get("description") or ""),
            "recommendations": recommendations,
        }
    }


def _normalize_markers(raw_markers: list[Any], result_date: str) -> list[BloodworkMarkerFields]:
    markers: list[BloodworkMarkerFields] = []
    for raw in raw_markers:
        if not isinstance(raw, dict):
            continue
        candidate = {
            "name": raw.get("name"),
            "value": raw.get("value"),
            "unit": raw.get("unit") or "",
            "min_range": raw.get("min_range"),
            "max_range": raw.get("max_range"),
            "category": raw.get("category"),
            "result_date": result_date,
        }
        if candidate["name"] is None or candidate["value"] is None:
            continue
        flagged = raw.get("is_abnormal")
        if not isinstance(flagged, bool):
            flagged = bool(is_outside_range(str(candidate["value"]), candidate["min_range"], candidate["max_range"]))
        candidate["is_abnormal"] = flagged
        try:
            markers.append(BloodworkMarkerFields.model_validate(candidate))
        except ValueError as exc:
            logger.warning(f"Dropping unreadable marker {raw.get('name')!r}: {exc}")
    return markers


async def extract_bloodwork_markers(
    document: bytes,
    mime_type: str,
    result_date: str,
    provider: AIProvider | None = None,
) -> list[BloodworkMarkerFields]:
    """Pull markers out of a stored lab document.

    Images go through the vision endpoint, json and csv files are sent as
    text. Other formats yield no markers.
    """
    provider = _require_provider(provider)
    instruction = "Extract all bloodwork markers from this lab report."
    try:
        if mime_type in IMAGE_MIME_TYPES:
            result = await provider.chat_with_vision(
                messages=[{"role": "user", "content": instruction}],
                image_bytes=document,
                model=provider.get_reasoning_model(),
                system=MARKER_EXTRACTION_SYSTEM_PROMPT,
                json_response=True,
            )
        elif mime_type in {"application/json", "text/csv"}:
            text = document.decode("utf-8", errors="replace")
            result = await provider.chat(
                messages=[{"role": "user", "content": f"{instruction}\n\n{text}"}],
                model=provider.get_reasoning_model(),
                system=MARKER_EXTRACTION_SYSTEM_PROMPT,
                json_response=True,
            )
        else:
            logger.info(f"Marker extraction skipped for unsupported document type {mime_type}")
            return []
    except Exception as exc:
        logger.warning(f"Failed to extract bloodwork markers: {exc}")
        raise AnalysisError(f"Failed to extract bloodwork markers: {exc}") from exc

    parsed = _parse_json_object(result.get("content", ""))
    return _normalize_markers(parsed.get("markers") or [], result_date)
