from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from batch_engine.catalog import InMemoryItemCatalog, WorkItem
from batch_engine.models import PipelineOptions, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ItemOutcome:
    success: bool
    enriched: bool = False
    annotated: bool = False
    quality_score: float | None = None
    error: str | None = None

    @classmethod
    def failure(cls, error: str) -> ItemOutcome:
        return cls(success=False, error=error)


class ItemProcessor(Protocol):
    """Processes one work item; failures come back as outcomes, never as exceptions."""

    def process(self, item: WorkItem, options: PipelineOptions) -> ItemOutcome: ...


Stage = Callable[[WorkItem], Any]


class StagedItemProcessor:
    """Enrichment, annotation and quality scoring run in that order for each item.

    A stage that raises fails the whole item; the error message names the stage.
    When a catalog is given the item is stamped as processed either way, which is
    what live metrics and the sequence view read back.
    """

    def __init__(
        self,
        *,
        enrich: Stage | None = None,
        annotate: Stage | None = None,
        score: Callable[[WorkItem], float] | None = None,
        catalog: InMemoryItemCatalog | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._enrich = enrich
        self._annotate = annotate
        self._score = score
        self._catalog = catalog
        self._clock = clock

    def process(self, item: WorkItem, options: PipelineOptions) -> ItemOutcome:
        outcome = self._run_stages(item, options)
        if self._catalog is not None:
            self._catalog.mark_processed(item.item_id, success=outcome.success, at=self._clock())
        return outcome

    def _run_stages(self, item: WorkItem, options: PipelineOptions) -> ItemOutcome:
        enriched = False
        annotated = False
        stage = "enrich"
        try:
            if self._enrich is not None and not options.skip_enrichment:
                self._enrich(item)
                enriched = True
            stage = "annotate"
            if self._annotate is not None and not options.skip_annotation:
                self._annotate(item)
                annotated = True
            stage = "score"
            score = None
            if self._score is not None:
                score = min(max(float(self._score(item)), 0.0), 100.0)
        except Exception as exc:
            logger.warning("item_stage_failed item_id=%s stage=%s error=%s", item.item_id, stage, exc)
            return ItemOutcome.failure(f"{stage}: {exc}")
        return ItemOutcome(success=True, enriched=enriched, annotated=annotated, quality_score=score)
