"""Pipeline orchestrators for end-to-end workflows."""

from sidecar.pipeline.extraction_pipeline import ExtractionPipeline, MessageResult

__all__ = ["ExtractionPipeline", "MessageResult"]
