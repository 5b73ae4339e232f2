"""End-to-end message pipeline.

assemble context -> build prompt -> size check -> invoke model -> parse ->
validate -> decide and persist. Stages run strictly in sequence; nothing is
written before the decision stage except the usage record.
"""

from __future__ import annotations

import time
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger
from neo4j.exceptions import Neo4jError
from pydantic import BaseModel, ConfigDict

from sidecar.errors import (
    ClientError,
    ExtractionFailed,
    MalformedMessage,
    MalformedResponse,
    PromptTooLarge,
)
from sidecar.extraction.context_assembly import ContextAssembler
from sidecar.extraction.gateway import ModelGateway
from sidecar.extraction.models import ModelResponse, SourceInfo
from sidecar.extraction.prompt_builder import (
    PromptBuilder,
    coerce_source,
    estimate_cost,
    estimate_tokens,
    get_max_tokens,
)
from sidecar.extraction.response_validator import parse_response, validate_entities
from sidecar.storage.base import GraphStore
from sidecar.storage.schemas import UsageRecord
from sidecar.utils.config import Config
from sidecar.workflow.workflow_engine import ProcessingResult, WorkflowEngine


class MessageResult(BaseModel):
    """Result of processing one message."""

    model_config = ConfigDict(extra="allow")

    project_id: str
    user_id: str
    success: bool
    provider: Optional[str] = None
    model: Optional[str] = None
    fallback_used: bool = False
    context_quality: float = 0.0
    entities_found: int = 0
    entities_rejected: int = 0
    processing: Optional[ProcessingResult] = None
    input_tokens: int = 0
    output_tokens: int = 0
    estimated_cost: float = 0.0
    processing_time: float = 0.0
    error: Optional[str] = None
    error_type: Optional[str] = None


class ExtractionPipeline:
    """Run messages through extraction and governance.

    Generator failures (exhausted retries, requests the provider refused,
    unusable output) are reported on the returned ``MessageResult``. Configuration errors, oversized prompts and
    malformed messages are raised to the caller.
    """

    def __init__(
        self,
        config: Config,
        store: GraphStore,
        *,
        assembler: Optional[ContextAssembler] = None,
        builder: Optional[PromptBuilder] = None,
        gateway: Optional[ModelGateway] = None,
        workflow: Optional[WorkflowEngine] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.assembler = assembler or ContextAssembler(store, config.context)
        self.builder = builder or PromptBuilder(config)
        self.gateway = gateway or ModelGateway(config)
        self.workflow = workflow or WorkflowEngine(store, config)

    def process_message(
        self,
        project_id: str,
        user_id: str,
        message: Any,
        source: SourceInfo | Dict[str, Any] | str | None = None,
        provider: Optional[str] = None,
    ) -> MessageResult:
        """Process a single message.

        Raises:
            MalformedMessage: ``message`` is not text
            PromptTooLarge: rendered prompt exceeds the provider ceiling
            ConfigurationError: unknown provider or missing credentials
        """
        start = time.time()
        source_info = coerce_source(source)

        context = self.assembler.assemble_context(project_id, message, source_info.type, user_id)
        prompt = self.builder.build_extraction_prompt(message, context, source_info, provider)

        max_tokens = get_max_tokens(prompt.provider)
        if prompt.estimated_tokens > max_tokens:
            raise PromptTooLarge(prompt.provider, prompt.estimated_tokens, max_tokens)

        result = MessageResult(
            project_id=project_id,
            user_id=user_id,
            success=False,
            provider=prompt.provider,
            context_quality=context.quality_score,
        )

        try:
            response = self.gateway.invoke_with_usage(
                prompt.prompt, prompt.system_prompt, prompt.provider
            )
        except (ExtractionFailed, ClientError) as exc:
            logger.error(f"Extraction failed for project {project_id}: {exc}")
            return self._failed(result, exc, start)

        self._apply_usage(result, response, prompt.estimated_tokens, project_id)

        try:
            candidates = parse_response(response.text, response.provider)
        except MalformedResponse as exc:
            logger.error(
                "Unusable generator output",
                provider=response.provider,
                error=str(exc),
                excerpt=exc.raw_excerpt,
            )
            return self._failed(result, exc, start)

        validated, rejected = validate_entities(candidates)
        result.entities_found = len(validated)
        result.entities_rejected = len(rejected)

        result.processing = self.workflow.process_extracted_entities(
            validated, user_id, project_id, source_info
        )
        result.success = True
        result.processing_time = time.time() - start

        summary = result.processing.summary
        logger.success(
            f"Message processed: {summary.auto_created} auto-created, "
            f"{summary.proposals} proposals, {summary.skipped} skipped "
            f"({result.processing_time:.2f}s)"
        )
        return result

    def process_messages(
        self,
        project_id: str,
        user_id: str,
        messages: Iterable[Any],
        source: SourceInfo | Dict[str, Any] | str | None = None,
        provider: Optional[str] = None,
    ) -> List[MessageResult]:
        """Process several messages; a bad message never stops the rest."""
        results: List[MessageResult] = []
        for idx, message in enumerate(messages):
            start = time.time()
            try:
                results.append(
                    self.process_message(project_id, user_id, message, source, provider)
                )
            except (MalformedMessage, PromptTooLarge) as exc:
                logger.warning(f"Skipping message {idx}: {exc}")
                failed = MessageResult(project_id=project_id, user_id=user_id, success=False)
                results.append(self._failed(failed, exc, start))

        successful = sum(1 for r in results if r.success)
        logger.info(f"Batch processing complete: {successful}/{len(results)} successful")
        return results

    # Helpers --------------------------------------------------------
    @staticmethod
    def _failed(result: MessageResult, exc: Exception, start: float) -> MessageResult:
        result.success = False
        result.error = str(exc)
        result.error_type = exc.__class__.__name__
        result.processing_time = time.time() - start
        return result

    def _apply_usage(
        self,
        result: MessageResult,
        response: ModelResponse,
        estimated_input_tokens: int,
        project_id: str,
    ) -> None:
        input_tokens = response.input_tokens or estimated_input_tokens
        output_tokens = response.output_tokens or estimate_tokens(response.text, response.provider)
        cost = estimate_cost(input_tokens, output_tokens, response.provider)

        result.provider = response.provider
        result.model = response.model
        result.fallback_used = response.fallback_used
        result.input_tokens = input_tokens
        result.output_tokens = output_tokens
        result.estimated_cost = cost.total_cost

        record = UsageRecord(
            project_id=project_id,
            provider=response.provider,
            model=response.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            estimated_cost=cost.total_cost,
        )
        try:
            self.store.record_usage(record)
        except Neo4jError as exc:
            logger.warning(f"Failed to track usage: {exc}")
            return
        logger.debug(
            f"Tracked usage: {response.provider} - Input: {input_tokens}, "
            f"Output: {output_tokens}, Cost: ${cost.total_cost:.6f}"
        )
