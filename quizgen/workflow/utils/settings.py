from __future__ import annotations

from typing import Any, Dict

_REQUEST_ALIASES = {
    "questionType": "question_type",
    "type": "question_type",
    "fastMode": "fast_mode",
    "useCache": "use_cache",
    "targetCount": "count",
    "quantity_question": "count",
}


def normalize_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize common alias keys and drop unset values."""
    if settings is None:
        return {}
    normalized = {key: value for key, value in dict(settings).items() if value is not None}

    # job id alias
    if normalized.get("jobid") and not normalized.get("job_id"):
        normalized["job_id"] = normalized.pop("jobid")
    # cache sizing aliases
    if normalized.get("cache_size") and not normalized.get("cache_max_entries"):
        normalized["cache_max_entries"] = normalized.pop("cache_size")
    if normalized.get("maxConcurrentBatches") and not normalized.get("max_concurrent_batches"):
        normalized["max_concurrent_batches"] = normalized.pop("maxConcurrentBatches")
    return normalized


def normalize_request_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Map camelCase request keys onto the field names of ``GenerationRequest``."""
    if payload is None:
        return {}
    normalized: Dict[str, Any] = {}
    for key, value in dict(payload).items():
        target = _REQUEST_ALIASES.get(key, key)
        if target in normalized and key != target:
            continue
        normalized[target] = value
    batches = normalized.get("batches")
    if isinstance(batches, list):
        normalized["batches"] = [normalize_request_payload(item) if isinstance(item, dict) else item for item in batches]
    return normalized
