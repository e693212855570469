"""
dialgov Configuration

Loads all sections of config.toml at startup.
Environment variables override TOML values.
"""

from .loader import (
    EngineConfig,
    EngineSectionConfig,
    ExecutionConfig,
    GovernanceSectionConfig,
    RebalancerConfig,
    TransportConfig,
    load_config,
)

__all__ = [
    "EngineConfig",
    "EngineSectionConfig",
    "ExecutionConfig",
    "GovernanceSectionConfig",
    "RebalancerConfig",
    "TransportConfig",
    "load_config",
]
