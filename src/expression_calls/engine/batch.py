"""Batch computation of resolved calls with a worker pool.

One gene is the unit of work: building the calls of a gene never reads the
calls of another gene, and basic calls and ontology closures are read-only for
the duration of a batch, so workers share no mutable state. Scores are
normalized against the maximum rank of the whole batch once every gene is
done.
"""

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Mapping, Optional

import structlog

from expression_calls.config.schema import EngineConfig, QualityThresholds
from expression_calls.engine.aggregation import aggregate_call_filters
from expression_calls.engine.filters import CallFilter
from expression_calls.engine.models import (
    CallType,
    Condition,
    ExpressedCall,
    GeneCondition,
    GlobalCall,
    NotExpressedCall,
    ResolvedCall,
)
from expression_calls.engine.propagation import (
    BasicCallSource,
    OntologyClosureProvider,
    propagate_gene,
)
from expression_calls.engine.summary import max_rank_of, rank_ranges, resolve, select_call

logger = structlog.get_logger(__name__)


@dataclass
class GeneCandidates:
    """Presence and absence candidates of one gene, keyed by condition."""

    gene_id: str
    expressed: dict[Condition, ExpressedCall] = field(default_factory=dict)
    not_expressed: dict[Condition, NotExpressedCall] = field(default_factory=dict)

    def select(self) -> list[tuple[GlobalCall, bool]]:
        """Winning call and conflict flag for every condition, in condition order."""
        selected = []
        for condition in sorted(self.expressed.keys() | self.not_expressed.keys()):
            winner, conflict = select_call(
                self.expressed.get(condition), self.not_expressed.get(condition)
            )
            selected.append((winner, conflict))
        return selected


class BatchRunner:
    """
    Compute resolved calls for many genes.

    Cancellation is cooperative: cancel() stops genes that have not started
    yet; genes already running finish, since a gene's calls are built
    atomically. Results of a cancelled batch cover the finished genes only.
    """

    def __init__(
        self,
        source: BasicCallSource,
        closure: OntologyClosureProvider,
        thresholds: Optional[QualityThresholds] = None,
        max_workers: int = 4,
        propagate: bool = True,
        include_not_expressed: bool = True,
        cancel_event: Optional[threading.Event] = None,
    ):
        """
        Initialize the batch runner.

        Args:
            source: Basic call store
            closure: Ontology closure provider
            thresholds: Summary quality policy
            max_workers: Number of worker threads
            propagate: Build calls with ontology propagation
            include_not_expressed: Also build absence calls and resolve
                presence/absence conflicts
            cancel_event: Event shared with the caller to request cancellation
        """
        self.source = source
        self.closure = closure
        self.thresholds = thresholds if thresholds is not None else QualityThresholds()
        self.max_workers = max_workers
        self.propagate = propagate
        self.include_not_expressed = include_not_expressed
        self.cancel_event = cancel_event if cancel_event is not None else threading.Event()
        self.skipped_genes: list[str] = []

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        source: BasicCallSource,
        closure: OntologyClosureProvider,
    ) -> "BatchRunner":
        """Create a BatchRunner from an EngineConfig."""
        return cls(
            source,
            closure,
            thresholds=config.quality,
            max_workers=config.batch.max_workers,
            propagate=config.propagation.propagate,
            include_not_expressed=config.propagation.include_not_expressed,
        )

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        """Request cancellation of the remaining genes."""
        self.cancel_event.set()

    def compute_gene(
        self,
        gene_id: str,
        conditions: Iterable[Condition],
        propagate: Optional[bool] = None,
        include_not_expressed: Optional[bool] = None,
    ) -> Optional[GeneCandidates]:
        """
        Build the presence and absence candidates of one gene.

        Returns:
            GeneCandidates, or None if the batch was cancelled before this
            gene started
        """
        if self.cancelled:
            self.skipped_genes.append(gene_id)
            return None

        propagate = self.propagate if propagate is None else propagate
        with_absence = (
            self.include_not_expressed if include_not_expressed is None
            else include_not_expressed
        )
        conditions = list(conditions)

        candidates = GeneCandidates(gene_id=gene_id)
        candidates.expressed = propagate_gene(
            gene_id, conditions, CallType.EXPRESSED,
            self.source, self.closure, propagate=propagate,
        )
        if with_absence:
            candidates.not_expressed = propagate_gene(
                gene_id, conditions, CallType.NOT_EXPRESSED,
                self.source, self.closure, propagate=propagate,
            )
        return candidates

    def _run_tasks(
        self, tasks: list[tuple[str, list[Condition], dict]]
    ) -> list[Optional[GeneCandidates]]:
        """Run tasks on the pool; results are in task order, None for skipped genes."""
        results: list[Optional[GeneCandidates]] = [None] * len(tasks)
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            future_to_index = {
                pool.submit(self.compute_gene, gene_id, conditions, **options): index
                for index, (gene_id, conditions, options) in enumerate(tasks)
            }
            for future in as_completed(future_to_index):
                results[future_to_index[future]] = future.result()
        return results

    def _resolve_all(self, selected: list[tuple[GlobalCall, bool]]) -> list[ResolvedCall]:
        calls = [call for call, _ in selected]
        max_rank = max_rank_of(calls)
        gene_ranks = rank_ranges(calls, lambda call: call.gene_id)
        anat_ranks = rank_ranges(
            calls, lambda call: (call.condition.species_id, call.condition.anat_entity_id)
        )
        return [
            ResolvedCall(
                call=call,
                summary=resolve(
                    call,
                    max_rank=max_rank,
                    thresholds=self.thresholds,
                    conflict=conflict,
                    gene_ranks=gene_ranks.get(call.gene_id),
                    anat_entity_ranks=anat_ranks.get(
                        (call.condition.species_id, call.condition.anat_entity_id)
                    ),
                ),
            )
            for call, conflict in selected
        ]

    def run(
        self,
        gene_ids: Iterable[str],
        conditions: Iterable[Condition],
    ) -> Iterator[ResolvedCall]:
        """
        Compute resolved calls for every gene over a scope of conditions.

        Args:
            gene_ids: Genes to process (one worker task per gene)
            conditions: Requested conditions; propagation extends the scope to
                every condition reachable from observed evidence

        Yields:
            ResolvedCall records ordered by gene then condition
        """
        self.skipped_genes = []
        gene_ids = sorted(set(gene_ids))
        conditions = sorted(set(conditions))
        logger.info(
            "batch_start",
            gene_count=len(gene_ids),
            condition_count=len(conditions),
            propagate=self.propagate,
            max_workers=self.max_workers,
        )

        per_gene = [
            candidates
            for candidates in self._run_tasks([(gene_id, conditions, {}) for gene_id in gene_ids])
            if candidates is not None
        ]
        selected = [item for candidates in per_gene for item in candidates.select()]
        resolved = self._resolve_all(selected)

        logger.info(
            "batch_complete",
            gene_count=len(per_gene),
            call_count=len(resolved),
            conflict_count=sum(1 for r in resolved if r.summary.conflict),
            cancelled=self.cancelled,
            skipped_genes=len(self.skipped_genes),
        )
        yield from resolved

    def run_filters(
        self,
        requests: Mapping[Condition, Iterable[CallFilter]],
    ) -> Iterator[ResolvedCall]:
        """
        Compute the calls requested through per-condition filters.

        Filters are first aggregated so that genes are fetched once per merged
        filter. A call is then returned when an original filter of its
        condition accepts it and was requested with the same propagation rule
        and call type as the merged filter that built it, so self-only
        requests never receive propagated calls.

        When a gene-condition is requested both with and without propagation,
        the propagated call is kept.

        Args:
            requests: Filters requested for each condition

        Yields:
            ResolvedCall records accepted by at least one original filter of
            their condition, ordered by gene then condition
        """
        self.skipped_genes = []
        requests = {condition: list(filters) for condition, filters in requests.items()}
        aggregated = aggregate_call_filters(requests)

        tasks = []
        task_filters: list[CallFilter] = []
        for call_filter, conditions in aggregated.items():
            options = {
                "propagate": call_filter.propagate,
                "include_not_expressed": (
                    self.include_not_expressed
                    or call_filter.call_type is CallType.NOT_EXPRESSED
                ),
            }
            for gene_id in sorted(call_filter.gene_ids):
                tasks.append((gene_id, sorted(conditions), options))
                task_filters.append(call_filter)

        # a gene-condition can be reached through several merged filters
        selected: dict[GeneCondition, tuple[GlobalCall, bool]] = {}
        for merged, candidates in zip(task_filters, self._run_tasks(tasks)):
            if candidates is None:
                continue
            for call, conflict in candidates.select():
                requested = [
                    f for f in requests.get(call.condition, ())
                    if f.propagate == merged.propagate and f.call_type is merged.call_type
                ]
                if not any(f.accepts(call) for f in requested):
                    continue
                current = selected.get(call.gene_condition)
                if current is None or _preferred(call, conflict) > _preferred(*current):
                    selected[call.gene_condition] = (call, conflict)

        resolved = self._resolve_all([selected[key] for key in sorted(selected)])
        logger.info(
            "batch_filters_complete",
            request_count=len(requests),
            merged_filters=len(aggregated),
            task_count=len(tasks),
            call_count=len(resolved),
        )
        yield from resolved


def _preferred(call: GlobalCall, conflict: bool) -> tuple[bool, bool]:
    # propagated calls first, then calls that saw both presence and absence
    return (call.propagated, conflict)
