"""Orchestration of matching, fulfillment and runtime wiring.

The ``__getattr__`` shim resolves the heavier modules lazily so importing a
single submodule does not pull in the whole runtime.
"""

from __future__ import annotations

from importlib import import_module
from typing import Any

__all__ = [
    "FulfillmentOrchestrator",
    "FulfillmentOutcome",
    "JobHandlers",
    "Runtime",
    "build_runtime",
]

_EXPORTS = {
    "FulfillmentOrchestrator": "orchestration.orchestrator",
    "FulfillmentOutcome": "orchestration.orchestrator",
    "JobHandlers": "orchestration.job_handlers",
    "Runtime": "orchestration.runtime",
    "build_runtime": "orchestration.runtime",
}


def __getattr__(name: str) -> Any:  # pragma: no cover - import shim
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module 'orchestration' has no attribute {name!r}")
    return getattr(import_module(module_name), name)
