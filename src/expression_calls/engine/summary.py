"""Summary resolution: call type, quality tier, rank and expression score."""

from collections import defaultdict
from typing import Callable, Hashable, Iterable, Optional, TypeVar

import structlog

from expression_calls.config.schema import QualityThresholds
from expression_calls.engine.merge import weighted_mean_rank
from expression_calls.engine.models import (
    CallSummary,
    DataState,
    ExpressedCall,
    ExpressionLevel,
    GlobalCall,
    NotExpressedCall,
    RankRange,
    ResolvedCall,
    SummaryCallType,
    SummaryQuality,
)

logger = structlog.get_logger(__name__)

K = TypeVar("K", bound=Hashable)

EXPRESSION_SCORE_MIN_VALUE = 0.01
EXPRESSION_SCORE_MAX_VALUE = 100.0


def infer_summary_quality(
    call: GlobalCall,
    thresholds: Optional[QualityThresholds] = None,
) -> SummaryQuality:
    """
    Derive the quality tier of a call from its data states.

    Quality grows with the number of data types carrying evidence and with the
    number of those at HIGH_QUALITY; the exact cut-offs come from thresholds.

    Args:
        call: Global call to grade
        thresholds: Quality policy (defaults to QualityThresholds())

    Returns:
        SummaryQuality tier
    """
    t = thresholds if thresholds is not None else QualityThresholds()

    states = [item.state for item in call.evidence.values()]
    type_count = sum(1 for state in states if state >= DataState.LOW_QUALITY)
    high_count = sum(1 for state in states if state is DataState.HIGH_QUALITY)

    if high_count >= t.gold_min_high or type_count >= t.gold_min_types:
        return SummaryQuality.GOLD
    if high_count >= t.silver_min_high or type_count >= t.silver_min_types:
        return SummaryQuality.SILVER
    return SummaryQuality.BRONZE


def call_rank(call: GlobalCall) -> Optional[float]:
    """Evidence-count-weighted mean rank over the data types that contributed."""
    return weighted_mean_rank(
        item for item in call.evidence.values() if item.state > DataState.NO_DATA
    )


def max_rank_of(calls: Iterable[GlobalCall]) -> Optional[float]:
    """Maximum rank over a batch of calls, None if no call carries a rank."""
    ranks = [rank for rank in (call_rank(call) for call in calls) if rank is not None]
    return max(ranks) if ranks else None


def compute_expression_score(
    rank: Optional[float],
    max_rank: Optional[float],
) -> Optional[float]:
    """
    Transform a rank into a score between 0.01 and 100.

    score = (max_rank + 1 - rank) * 100 / max_rank, rounded to 5 decimals.
    The best possible rank (1) scores 100 whatever the batch; the worst rank of
    the batch scores 100 / max_rank.

    Args:
        rank: Rank to transform (lower = more highly expressed)
        max_rank: Maximum rank observed in the batch being processed

    Returns:
        Score, or None if rank is None

    Raises:
        ValueError: If max_rank is missing while rank is set, if either value
            is not positive, or if rank exceeds max_rank
    """
    if rank is None:
        return None
    if max_rank is None:
        raise ValueError("Max rank must be provided to compute a score")
    if rank <= 0 or max_rank <= 0:
        raise ValueError("Rank and max rank cannot be less than or equal to 0")
    if rank > max_rank:
        raise ValueError(f"Rank cannot be greater than max rank. Rank: {rank} - max rank: {max_rank}")

    score = round((max_rank + 1 - rank) * 100 / max_rank, 5)
    if score < EXPRESSION_SCORE_MIN_VALUE:
        score = EXPRESSION_SCORE_MIN_VALUE
    if score > EXPRESSION_SCORE_MAX_VALUE:
        logger.warning(
            "expression_score_clamped",
            score=score,
            max_value=EXPRESSION_SCORE_MAX_VALUE,
        )
        score = EXPRESSION_SCORE_MAX_VALUE
    return score


def rank_ranges(
    calls: Iterable[GlobalCall],
    key: Callable[[GlobalCall], K],
) -> dict[K, RankRange]:
    """
    Min and max rank of the expressed calls, grouped by key.

    Absence calls and calls without a rank are ignored; a group holding only
    such calls gets no range.
    """
    grouped: dict[K, list[float]] = defaultdict(list)
    for call in calls:
        if not isinstance(call, ExpressedCall):
            continue
        rank = call_rank(call)
        if rank is not None:
            grouped[key(call)].append(rank)
    return {k: RankRange(min(ranks), max(ranks)) for k, ranks in grouped.items()}


def expression_level(
    call: GlobalCall,
    rank: Optional[float],
    rank_range: Optional[RankRange],
) -> Optional[ExpressionLevel]:
    """
    Qualitative expression level of a call within its group.

    Absence calls are always ABSENT. The rank range of an expressed call's
    group is cut into three equal parts: the best third is HIGH, then MEDIUM,
    then LOW. A group whose calls all share one rank is HIGH.

    Returns:
        ExpressionLevel, or None for an expressed call without a rank or
        without a range

    Raises:
        ValueError: If rank lies outside rank_range
    """
    if isinstance(call, NotExpressedCall):
        return ExpressionLevel.ABSENT
    if rank is None or rank_range is None:
        return None
    if not rank_range.min_rank <= rank <= rank_range.max_rank:
        raise ValueError(
            f"Rank {rank} outside of range [{rank_range.min_rank}, {rank_range.max_rank}]"
        )

    third = (rank_range.max_rank - rank_range.min_rank) / 3
    if rank <= rank_range.min_rank + third:
        return ExpressionLevel.HIGH
    if rank <= rank_range.min_rank + 2 * third:
        return ExpressionLevel.MEDIUM
    return ExpressionLevel.LOW


def resolve(
    call: GlobalCall,
    max_rank: Optional[float] = None,
    thresholds: Optional[QualityThresholds] = None,
    conflict: bool = False,
    gene_ranks: Optional[RankRange] = None,
    anat_entity_ranks: Optional[RankRange] = None,
) -> CallSummary:
    """
    Resolve a global call into its summary.

    Args:
        call: ExpressedCall or NotExpressedCall
        max_rank: Batch maximum rank used to normalize the score. If None,
            no score is computed.
        thresholds: Quality policy
        conflict: Mark the summary as resolved from conflicting evidence
        gene_ranks: Rank range of the expressed calls of the call's gene
        anat_entity_ranks: Rank range of the expressed calls in the call's
            anatomical entity

    Returns:
        CallSummary
    """
    if isinstance(call, ExpressedCall):
        call_type = SummaryCallType.EXPRESSED
    elif isinstance(call, NotExpressedCall):
        call_type = SummaryCallType.NOT_EXPRESSED
    else:
        raise TypeError(f"Cannot resolve call of type {type(call).__name__}")

    rank = call_rank(call)
    score = compute_expression_score(rank, max_rank) if max_rank is not None else None

    return CallSummary(
        call_type=call_type,
        quality=infer_summary_quality(call, thresholds),
        rank=rank,
        score=score,
        conflict=conflict,
        level_relative_to_gene=expression_level(call, rank, gene_ranks),
        level_relative_to_anat_entity=expression_level(call, rank, anat_entity_ranks),
    )


def select_call(
    expressed: Optional[ExpressedCall],
    not_expressed: Optional[NotExpressedCall],
) -> tuple[Optional[GlobalCall], bool]:
    """
    Pick the call that wins for one gene-condition.

    Presence takes precedence over absence: a condition is never reported as
    not expressed when any data type supports expression there.

    Returns:
        (winning call or None, whether the two calls conflicted)
    """
    if expressed is not None and not_expressed is not None:
        if expressed.gene_condition != not_expressed.gene_condition:
            raise ValueError(
                f"Cannot resolve calls of different gene-conditions: "
                f"{expressed.gene_condition} and {not_expressed.gene_condition}"
            )
        positive = any(item.state > DataState.NO_DATA for item in expressed.evidence.values())
        if positive:
            logger.debug(
                "presence_absence_conflict",
                gene_id=expressed.gene_id,
                condition=str(expressed.condition),
            )
            return expressed, True
        return not_expressed, False
    if expressed is not None:
        return expressed, False
    return not_expressed, False


def resolve_conflict(
    expressed: Optional[ExpressedCall],
    not_expressed: Optional[NotExpressedCall],
    max_rank: Optional[float] = None,
    thresholds: Optional[QualityThresholds] = None,
) -> Optional[ResolvedCall]:
    """
    Resolve the presence and absence candidates of one gene-condition.

    Returns:
        ResolvedCall for the winning call, None if both are None
    """
    winner, conflict = select_call(expressed, not_expressed)
    if winner is None:
        return None
    return ResolvedCall(
        call=winner,
        summary=resolve(winner, max_rank=max_rank, thresholds=thresholds, conflict=conflict),
    )
