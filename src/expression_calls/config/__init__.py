from .loader import load_config, load_config_with_overrides
from .schema import (
    BatchConfig,
    EngineConfig,
    PropagationConfig,
    QualityThresholds,
    StorageConfig,
)

__all__ = [
    "load_config",
    "load_config_with_overrides",
    "EngineConfig",
    "QualityThresholds",
    "PropagationConfig",
    "BatchConfig",
    "StorageConfig",
]
