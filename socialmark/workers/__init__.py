"""
Workers Module - Scheduling of Composition Runs
===============================================
Drives the pure core pipeline when inputs change.

Components:
- CompositingOrchestrator: asyncio state machine publishing to a sink
- ComposeWorker / ComposeManager: QThread integration for Qt hosts
"""

from .compose_worker import (
    ComposeDebouncer, ComposeManager, ComposeRequest, ComposeWorker, SourceCache
)
from .orchestrator import CompositingOrchestrator, CompositionState

__all__ = [
    # Orchestrator
    "CompositingOrchestrator",
    "CompositionState",
    # Qt
    "ComposeWorker",
    "ComposeRequest",
    "ComposeDebouncer",
    "ComposeManager",
    "SourceCache",
]
