"""Call engine: evidence merge, ontology propagation, summary resolution and filter aggregation."""

from expression_calls.engine.aggregation import aggregate_call_filters
from expression_calls.engine.batch import BatchRunner, GeneCandidates
from expression_calls.engine.filters import CallFilter
from expression_calls.engine.merge import (
    combine_evidence,
    join_calls,
    merge_evidence,
    weighted_mean_rank,
)
from expression_calls.engine.models import (
    ALLOWED_DATA_TYPES,
    BasicCall,
    CallSummary,
    CallType,
    Condition,
    DataState,
    DataType,
    DataTypeEvidence,
    ExpressedCall,
    ExpressedOrigin,
    ExpressionLevel,
    GeneCondition,
    GlobalCall,
    NotExpressedCall,
    NotExpressedOrigin,
    PropagationDirection,
    RankRange,
    ResolvedCall,
    SummaryCallType,
    SummaryQuality,
    parse_data_type,
)
from expression_calls.engine.propagation import (
    BasicCallSource,
    OntologyClosureProvider,
    propagate,
    propagate_expressed,
    propagate_gene,
    propagate_not_expressed,
)
from expression_calls.engine.redundancy import (
    filter_and_order_by_rank,
    identify_redundant_calls,
)
from expression_calls.engine.summary import (
    compute_expression_score,
    expression_level,
    infer_summary_quality,
    max_rank_of,
    rank_ranges,
    resolve,
    resolve_conflict,
)

__all__ = [
    "ALLOWED_DATA_TYPES",
    "BasicCall",
    "CallSummary",
    "CallType",
    "Condition",
    "DataState",
    "DataType",
    "DataTypeEvidence",
    "ExpressedCall",
    "ExpressedOrigin",
    "ExpressionLevel",
    "GeneCondition",
    "GlobalCall",
    "NotExpressedCall",
    "NotExpressedOrigin",
    "PropagationDirection",
    "RankRange",
    "ResolvedCall",
    "SummaryCallType",
    "SummaryQuality",
    "parse_data_type",
    "combine_evidence",
    "join_calls",
    "merge_evidence",
    "weighted_mean_rank",
    "BasicCallSource",
    "OntologyClosureProvider",
    "propagate",
    "propagate_expressed",
    "propagate_gene",
    "propagate_not_expressed",
    "compute_expression_score",
    "expression_level",
    "infer_summary_quality",
    "max_rank_of",
    "rank_ranges",
    "resolve",
    "resolve_conflict",
    "CallFilter",
    "aggregate_call_filters",
    "filter_and_order_by_rank",
    "identify_redundant_calls",
    "BatchRunner",
    "GeneCandidates",
]
