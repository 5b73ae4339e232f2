"""Parse and validate generator output.

Two deliberately separate steps run on every candidate entity:

- ``sanitize_entity`` always succeeds. It truncates long text, coerces an
  unknown priority to Medium, drops an unknown impact and normalizes list
  fields.
- ``validate_entity`` can fail. Entity type and confidence drive routing and
  policy downstream, so bad values are rejected rather than repaired.
"""

from __future__ import annotations

import json
import math
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from loguru import logger

from sidecar.errors import (
    EntityValidationError,
    InvalidConfidence,
    InvalidEntityField,
    InvalidEntityType,
    MalformedResponse,
    MissingEntitiesField,
)
from sidecar.extraction.models import (
    DESCRIPTION_MAX_LENGTH,
    TITLE_MAX_LENGTH,
    CandidateEntity,
    EntityType,
    Priority,
    ValidatedEntity,
)

_FENCE = re.compile(r"```(?:json)?\s*\n?(.*?)```", re.DOTALL | re.IGNORECASE)
_OBJECT = re.compile(r"\{.*\}", re.DOTALL)
_TYPE_KEY = re.compile(r"[\s_\-]+")

_ENTITY_TYPES = {_TYPE_KEY.sub("", t.value.lower()): t for t in EntityType}
_PRIORITIES = {p.value.lower(): p for p in Priority}

_LIST_FIELDS = ("tags", "mentioned_users", "citations")

RAW_EXCERPT_LENGTH = 200


def _strip_fences(raw_text: str) -> str:
    cleaned = raw_text.strip()
    match = _FENCE.search(cleaned)
    if match:
        return match.group(1).strip()
    return cleaned


def _load_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        data = None
    if isinstance(data, dict):
        return data

    match = _OBJECT.search(text)
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def parse_response(raw_text: Any, provider: str = "unknown") -> List[CandidateEntity]:
    """Turn raw generator text into untrusted candidate entities.

    Raises:
        MalformedResponse: No JSON object could be located
        MissingEntitiesField: The object has no ``entities`` list
    """
    text = raw_text if isinstance(raw_text, str) else ""
    data = _load_object(_strip_fences(text)) if text.strip() else None
    if data is None:
        raise MalformedResponse(
            f"Failed to parse {provider} response as JSON",
            raw_excerpt=text[:RAW_EXCERPT_LENGTH],
        )

    entities = data.get("entities")
    if not isinstance(entities, list):
        raise MissingEntitiesField(
            f"{provider} response missing entities array",
            raw_excerpt=text[:RAW_EXCERPT_LENGTH],
        )

    candidates: List[CandidateEntity] = []
    for idx, item in enumerate(entities):
        if not isinstance(item, dict):
            logger.warning(f"Skipping non-object entity at index {idx} in {provider} response")
            continue
        candidates.append(CandidateEntity(**item))
    return candidates


def _as_dict(candidate: CandidateEntity | Dict[str, Any]) -> Dict[str, Any]:
    if isinstance(candidate, CandidateEntity):
        return candidate.model_dump()
    return dict(candidate)


def _coerce_priority(value: Any, default: Optional[Priority]) -> Optional[Priority]:
    if isinstance(value, Priority):
        return value
    if isinstance(value, str):
        return _PRIORITIES.get(value.strip().lower(), default)
    return default


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None and str(item).strip()]


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def sanitize_entity(candidate: CandidateEntity | Dict[str, Any]) -> Dict[str, Any]:
    """Apply silent corrections. Never raises.

    ``entity_type`` and ``confidence`` pass through untouched for
    ``validate_entity`` to judge.
    """
    data = _as_dict(candidate)

    title = data.get("title")
    description = data.get("description")
    if isinstance(title, str):
        title = title[:TITLE_MAX_LENGTH]
    if isinstance(description, str):
        description = description[:DESCRIPTION_MAX_LENGTH]

    sanitized: Dict[str, Any] = {
        "entity_type": data.get("entity_type"),
        "confidence": data.get("confidence"),
        "title": title,
        "description": description,
        "priority": _coerce_priority(data.get("priority"), Priority.MEDIUM),
        "impact": _coerce_priority(data.get("impact"), None),
        "related_entity_ids": (
            list(data["related_entity_ids"])
            if isinstance(data.get("related_entity_ids"), list)
            else []
        ),
        "reasoning": str(data.get("reasoning") or ""),
        "deadline": _optional_text(data.get("deadline")),
        "owner": _optional_text(data.get("owner")),
    }
    for field in _LIST_FIELDS:
        sanitized[field] = _string_list(data.get(field))
    return sanitized


def _check_entity_type(value: Any) -> EntityType:
    if isinstance(value, EntityType):
        return value
    if isinstance(value, str):
        match = _ENTITY_TYPES.get(_TYPE_KEY.sub("", value.strip().lower()))
        if match is not None:
            return match
    raise InvalidEntityType(value)


def _check_confidence(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidConfidence(value)
    confidence = float(value)
    if math.isnan(confidence) or confidence < 0.0 or confidence > 1.0:
        raise InvalidConfidence(value)
    return confidence


def _check_text(sanitized: Dict[str, Any], field: str) -> str:
    value = sanitized.get(field)
    if not isinstance(value, str) or not value:
        raise InvalidEntityField(f"Missing or invalid {field}", field=field, value=value)
    return value


def validate_entity(candidate: CandidateEntity | Dict[str, Any]) -> ValidatedEntity:
    """Sanitize then validate a single candidate.

    Raises:
        InvalidEntityType: entity_type outside the known set
        InvalidConfidence: confidence non-numeric or outside [0, 1]
        InvalidEntityField: title or description missing
    """
    sanitized = sanitize_entity(candidate)
    sanitized["entity_type"] = _check_entity_type(sanitized["entity_type"])
    sanitized["confidence"] = _check_confidence(sanitized["confidence"])
    _check_text(sanitized, "title")
    _check_text(sanitized, "description")
    return ValidatedEntity(**sanitized)


def validate_entities(
    candidates: Iterable[CandidateEntity | Dict[str, Any]],
) -> Tuple[List[ValidatedEntity], List[EntityValidationError]]:
    """Validate a batch; failing candidates are logged and dropped."""
    validated: List[ValidatedEntity] = []
    rejected: List[EntityValidationError] = []
    for idx, candidate in enumerate(candidates):
        try:
            validated.append(validate_entity(candidate))
        except EntityValidationError as exc:
            logger.warning(
                "Dropping invalid entity",
                index=idx,
                field=exc.field,
                error=str(exc),
            )
            rejected.append(exc)
    return validated, rejected
