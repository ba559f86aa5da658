"""
External analysis adapters.

Each adapter wraps one provider capability and returns a normalized
AdapterOutcome instead of raising provider exceptions.
"""

from app.services.adapters.base import (
    AdapterOutcome,
    AnalysisAdapter,
    AnalysisOptions,
    AnalysisPayload,
)
from app.services.adapters.registry import build_adapter_registry

__all__ = [
    "AdapterOutcome",
    "AnalysisAdapter",
    "AnalysisOptions",
    "AnalysisPayload",
    "build_adapter_registry",
]
