from __future__ import annotations

from querybridge.engines.base import ConnectionConfig, ConnectionTestResult, EngineAdapter, EngineResult
from querybridge.engines.registry import EngineRegistry

__all__ = [
    "ConnectionConfig",
    "ConnectionTestResult",
    "EngineAdapter",
    "EngineRegistry",
    "EngineResult",
]
