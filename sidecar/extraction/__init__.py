"""Extraction package exports."""

from sidecar.extraction.context_assembly import ContextAssembler, extract_keywords
from sidecar.extraction.gateway import ModelGateway
from sidecar.extraction.models import (
    CandidateEntity,
    EntityType,
    ExtractionContext,
    Priority,
    SourceInfo,
    ValidatedEntity,
)
from sidecar.extraction.prompt_builder import PromptBuilder
from sidecar.extraction.response_validator import parse_response, validate_entities, validate_entity

__all__ = [
    "CandidateEntity",
    "ContextAssembler",
    "EntityType",
    "ExtractionContext",
    "ModelGateway",
    "Priority",
    "PromptBuilder",
    "SourceInfo",
    "ValidatedEntity",
    "extract_keywords",
    "parse_response",
    "validate_entities",
    "validate_entity",
]
