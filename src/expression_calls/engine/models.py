"""Data models for basic calls, global calls and their summaries.

Presence and absence calls are separate types so that a provenance tag that is
illegal for one of them cannot be constructed:

- ExpressedCall carries an ExpressedOrigin (SELF, DESCENDANT, BOTH)
- NotExpressedCall carries a NotExpressedOrigin (SELF, PARENT, BOTH)

All records are immutable and safe to cache keyed by GeneCondition.
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import ClassVar, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from expression_calls.errors import UnknownDataTypeError


class DataType(str, Enum):
    """Measurement technologies producing basic calls."""

    AFFYMETRIX = "affymetrix"
    EST = "est"
    IN_SITU = "in_situ"
    RNA_SEQ = "rna_seq"


class DataState(IntEnum):
    """Per-data-type confidence tier. Merging two states keeps the maximum."""

    NO_DATA = 0
    LOW_QUALITY = 1
    HIGH_QUALITY = 2

    @classmethod
    def parse(cls, value: "str | int | DataState") -> "DataState":
        """Parse a state from its name ("low_quality"), its value, or itself."""
        if isinstance(value, DataState):
            return value
        if isinstance(value, int):
            return cls(value)
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown data state: {value!r}") from None


class CallType(str, Enum):
    EXPRESSED = "expressed"
    NOT_EXPRESSED = "not_expressed"


class ExpressedOrigin(str, Enum):
    """Provenance of a presence call. Presence never flows from parents."""

    SELF = "self"
    DESCENDANT = "descendant"
    BOTH = "both"


class NotExpressedOrigin(str, Enum):
    """Provenance of an absence call. Absence never flows from descendants."""

    SELF = "self"
    PARENT = "parent"
    BOTH = "both"


class PropagationDirection(str, Enum):
    SELF_ONLY = "self_only"
    INCLUDE_DESCENDANTS = "include_descendants"
    INCLUDE_ANCESTORS = "include_ancestors"


class SummaryCallType(str, Enum):
    EXPRESSED = "expressed"
    NOT_EXPRESSED = "not_expressed"


class SummaryQuality(IntEnum):
    BRONZE = 1
    SILVER = 2
    GOLD = 3


class ExpressionLevel(str, Enum):
    """Qualitative expression level of a call within a group of calls."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    ABSENT = "absent"


# Data types able to produce each call type. EST libraries only sample
# transcripts that are present, so they cannot support absence of expression.
ALLOWED_DATA_TYPES: dict[CallType, frozenset[DataType]] = {
    CallType.EXPRESSED: frozenset(DataType),
    CallType.NOT_EXPRESSED: frozenset(
        {DataType.AFFYMETRIX, DataType.IN_SITU, DataType.RNA_SEQ}
    ),
}


def parse_data_type(value: "str | DataType") -> DataType:
    """
    Parse a data type identifier.

    Raises:
        UnknownDataTypeError: If value does not name a known data type
    """
    if isinstance(value, DataType):
        return value
    try:
        return DataType(str(value).strip().lower())
    except ValueError:
        raise UnknownDataTypeError(
            f"Unknown data type {value!r}; expected one of "
            f"{sorted(dt.value for dt in DataType)}"
        ) from None


@dataclass(frozen=True, order=True)
class Condition:
    """Where and when: anatomical entity, developmental stage and species."""

    anat_entity_id: str
    dev_stage_id: str
    species_id: str

    def __str__(self) -> str:
        return f"{self.anat_entity_id}/{self.dev_stage_id}/{self.species_id}"


@dataclass(frozen=True, order=True)
class GeneCondition:
    gene_id: str
    condition: Condition


@dataclass(frozen=True)
class RankRange:
    """Minimum and maximum rank of the expressed calls of one gene or anatomical entity."""

    min_rank: float
    max_rank: float


class DataTypeEvidence(BaseModel):
    """Evidence produced by one data type for one gene in one condition.

    Attributes:
        data_type: Technology that produced the evidence
        state: Confidence tier of the evidence
        rank: Expression rank (lower = more highly expressed), None if the
            technology provides no rank for this call
        evidence_count: Number of independent experiments contributing
    """

    model_config = ConfigDict(frozen=True)

    data_type: DataType
    state: DataState
    rank: float | None = Field(default=None, gt=0)
    evidence_count: int = Field(default=0, ge=0)

    @field_validator("data_type", mode="before")
    @classmethod
    def _parse_data_type(cls, v):
        return parse_data_type(v)

    @field_validator("state", mode="before")
    @classmethod
    def _parse_state(cls, v):
        return DataState.parse(v)


class _CallRecord(BaseModel):
    """Fields shared by basic and global calls."""

    model_config = ConfigDict(frozen=True)

    gene_condition: GeneCondition
    evidence: dict[DataType, DataTypeEvidence]

    @model_validator(mode="after")
    def _check_evidence(self):
        for data_type, item in self.evidence.items():
            if item.data_type != data_type:
                raise ValueError(
                    f"Evidence keyed by {data_type.value} carries "
                    f"data type {item.data_type.value}"
                )
        if not any(item.state > DataState.NO_DATA for item in self.evidence.values()):
            raise ValueError(
                f"Call for {self.gene_condition} carries no evidence above NO_DATA"
            )
        return self

    @property
    def gene_id(self) -> str:
        return self.gene_condition.gene_id

    @property
    def condition(self) -> Condition:
        return self.gene_condition.condition

    @property
    def data_states(self) -> dict[DataType, DataState]:
        """State for every data type, NO_DATA where nothing was observed."""
        return {
            data_type: (
                self.evidence[data_type].state
                if data_type in self.evidence
                else DataState.NO_DATA
            )
            for data_type in DataType
        }

    def state(self, data_type: DataType) -> DataState:
        item = self.evidence.get(data_type)
        return item.state if item is not None else DataState.NO_DATA


class BasicCall(_CallRecord):
    """Directly observed evidence for one gene at one exact condition."""

    call_type: CallType


class GlobalCall(_CallRecord):
    """Evidence for one gene at one condition after ontology propagation.

    Attributes:
        propagated: Whether propagation was requested when building the call
            (False for self-only queries)
    """

    call_type: ClassVar[CallType]

    propagated: bool = False


class ExpressedCall(GlobalCall):
    call_type: ClassVar[CallType] = CallType.EXPRESSED

    origin: ExpressedOrigin


class NotExpressedCall(GlobalCall):
    call_type: ClassVar[CallType] = CallType.NOT_EXPRESSED

    origin: NotExpressedOrigin


AnyGlobalCall = Union[ExpressedCall, NotExpressedCall]


class CallSummary(BaseModel):
    """Final verdict for a global call.

    Attributes:
        call_type: Presence or absence of expression
        quality: Confidence tier derived from the data states
        rank: Evidence-count-weighted mean rank, None when no contributing
            data type carries a rank
        score: Rank transformed to (0, 100], normalized against the maximum
            rank of the batch. Comparable only within one batch.
        conflict: True when presence and absence evidence coexisted and
            presence took precedence
        level_relative_to_gene: Expression level among the expressed calls
            of the same gene, ABSENT for absence calls
        level_relative_to_anat_entity: Expression level among the expressed
            calls in the same anatomical entity, ABSENT for absence calls
    """

    model_config = ConfigDict(frozen=True)

    call_type: SummaryCallType
    quality: SummaryQuality
    rank: float | None = None
    score: float | None = None
    conflict: bool = False
    level_relative_to_gene: ExpressionLevel | None = None
    level_relative_to_anat_entity: ExpressionLevel | None = None


class ResolvedCall(BaseModel):
    """Record exposed to callers: a global call with its summary."""

    model_config = ConfigDict(frozen=True)

    call: AnyGlobalCall
    summary: CallSummary

    @property
    def gene_condition(self) -> GeneCondition:
        return self.call.gene_condition
