"""
Pipeline contract: ProcessingContext, PipelineStage protocol, Pipeline.

Contract:
    A pipeline is an ordered list of named stages applied to one record.
    Each stage reads the shared ``ProcessingContext``, may perform side
    effects, and either returns a result dict (published into the context
    under the stage name) or raises.  The first failure stops the run and
    propagates as ``PipelineStageError`` carrying the stage name, index,
    error code, and retryability of the cause.

Architecture: farmers_bulk/pipeline.  No I/O of its own.

Invariants enforced:
    - A ProcessingContext is owned by exactly one pipeline run.
    - No retries inside a single pipeline run beyond what a stage does
      for its own remote calls.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, Sequence, runtime_checkable
from uuid import UUID

from farmers_kernel.exceptions import PipelineStageError
from farmers_kernel.logging_config import get_logger

from farmers_bulk.domain.types import ProcessingOptions

logger = get_logger("bulk.pipeline")


@dataclass
class ProcessingContext:
    """Per-record state shared by the stages of one pipeline run."""

    operation_id: UUID
    org_id: str
    initiated_by: str
    record_index: int
    record: dict[str, Any]
    options: ProcessingOptions = field(default_factory=ProcessingOptions)
    stage_results: dict[str, dict[str, Any]] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    started_at: datetime | None = None
    # Operation ids whose farmers this record may resume (retry lineage).
    resume_from: frozenset[str] = frozenset()

    def result(self, stage_name: str) -> dict[str, Any]:
        """Result published by an earlier stage (empty if it did not run)."""
        return self.stage_results.get(stage_name, {})

    def lookup(self, key: str) -> Any:
        """Most recent value of ``key`` published by any stage."""
        for result in reversed(list(self.stage_results.values())):
            if key in result:
                return result[key]
        return None


@runtime_checkable
class PipelineStage(Protocol):
    """One step of the record pipeline."""

    @property
    def name(self) -> str: ...

    def run(self, context: ProcessingContext) -> dict[str, Any] | None: ...


class Pipeline:
    """Ordered, short-circuiting list of stages."""

    def __init__(self, stages: Sequence[PipelineStage]):
        names = [s.name for s in stages]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate stage names in pipeline: {names}")
        self._stages = tuple(stages)

    @property
    def stage_names(self) -> tuple[str, ...]:
        return tuple(s.name for s in self._stages)

    def execute(self, context: ProcessingContext) -> ProcessingContext:
        """Run every stage in order.

        Raises:
            PipelineStageError: the first stage that failed.
        """
        for index, stage in enumerate(self._stages):
            start = time.monotonic()
            try:
                result = stage.run(context)
            except PipelineStageError:
                raise
            except Exception as exc:
                logger.debug(
                    "pipeline_stage_failed",
                    extra={
                        "stage": stage.name,
                        "stage_index": index,
                        "record_index": context.record_index,
                        "error": str(exc),
                    },
                )
                raise PipelineStageError(stage.name, index, exc) from exc

            context.stage_results[stage.name] = dict(result or {})
            logger.debug(
                "pipeline_stage_completed",
                extra={
                    "stage": stage.name,
                    "record_index": context.record_index,
                    "duration_ms": int((time.monotonic() - start) * 1000),
                },
            )
        return context
