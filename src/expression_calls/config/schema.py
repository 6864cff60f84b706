"""Pydantic models for engine configuration."""

import hashlib
import json
from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator


class QualityThresholds(BaseModel):
    """Policy mapping data type counts to a summary quality tier.

    A call reaches a tier when it has at least ``*_min_high`` data types at
    HIGH_QUALITY, or at least ``*_min_types`` data types with any evidence.
    """

    gold_min_high: int = Field(
        default=2,
        ge=1,
        description="HIGH_QUALITY data types needed for GOLD",
    )
    gold_min_types: int = Field(
        default=3,
        ge=1,
        description="Contributing data types needed for GOLD",
    )
    silver_min_high: int = Field(
        default=1,
        ge=1,
        description="HIGH_QUALITY data types needed for SILVER",
    )
    silver_min_types: int = Field(
        default=2,
        ge=1,
        description="Contributing data types needed for SILVER",
    )

    @model_validator(mode="after")
    def check_ordering(self) -> "QualityThresholds":
        """GOLD must never be easier to reach than SILVER."""
        if self.gold_min_high < self.silver_min_high:
            raise ValueError(
                f"gold_min_high ({self.gold_min_high}) must be >= "
                f"silver_min_high ({self.silver_min_high})"
            )
        if self.gold_min_types < self.silver_min_types:
            raise ValueError(
                f"gold_min_types ({self.gold_min_types}) must be >= "
                f"silver_min_types ({self.silver_min_types})"
            )
        return self


class PropagationConfig(BaseModel):
    """Default propagation behaviour for batch runs."""

    propagate: bool = Field(
        default=True,
        description="Propagate through the ontology (False = self-only calls)",
    )
    include_not_expressed: bool = Field(
        default=True,
        description="Also compute absence calls and resolve conflicts",
    )


class BatchConfig(BaseModel):
    """Worker pool settings for batch runs."""

    max_workers: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Number of worker threads (one gene per task)",
    )


class StorageConfig(BaseModel):
    """DuckDB access settings for the evidence store."""

    max_retries: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Attempts when the DuckDB file is locked by another process",
    )
    read_only: bool = Field(
        default=True,
        description="Open the evidence store read-only when computing calls",
    )


class EngineConfig(BaseModel):
    """Main engine configuration."""

    data_dir: Path = Field(
        ...,
        description="Directory for imported evidence and outputs",
    )
    duckdb_path: Path = Field(
        ...,
        description="Path to DuckDB evidence store",
    )
    quality: QualityThresholds = Field(
        default_factory=QualityThresholds,
        description="Summary quality policy",
    )
    propagation: PropagationConfig = Field(
        default_factory=PropagationConfig,
        description="Propagation defaults",
    )
    batch: BatchConfig = Field(
        default_factory=BatchConfig,
        description="Batch runner settings",
    )
    storage: StorageConfig = Field(
        default_factory=StorageConfig,
        description="Evidence store access settings",
    )

    @field_validator("data_dir")
    @classmethod
    def create_directory(cls, v: Path) -> Path:
        """Create directory if it doesn't exist."""
        v.mkdir(parents=True, exist_ok=True)
        return v

    def config_hash(self) -> str:
        """
        Compute SHA-256 hash of the configuration.

        Returns a deterministic hash based on all config values,
        recorded in provenance sidecars next to every output.
        """
        config_dict = self.model_dump(mode="python")
        config_json = json.dumps(
            config_dict,
            sort_keys=True,
            default=str,
        )
        return hashlib.sha256(config_json.encode()).hexdigest()
