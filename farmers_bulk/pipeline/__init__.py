"""Record processing pipeline: contract, stages, and assembly."""

from farmers_bulk.pipeline.base import Pipeline, PipelineStage, ProcessingContext
from farmers_bulk.pipeline.builder import STAGE_ORDER, PipelineFactory, select_stages

__all__ = [
    "Pipeline",
    "PipelineStage",
    "ProcessingContext",
    "PipelineFactory",
    "STAGE_ORDER",
    "select_stages",
]
