"""Error taxonomy for the matching and fulfillment pipeline."""

from __future__ import annotations

from typing import Optional


class QuoteBridgeError(Exception):
    """Base class for pipeline errors."""


class InputError(QuoteBridgeError, ValueError):
    """Malformed or unknown input; rejected immediately and never retried."""


class UnknownAgentError(InputError):
    """Raised for heartbeats or acknowledgements from an unregistered agent."""

    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Agent {agent_id!r} is not registered; re-register required")
        self.agent_id = agent_id


class TransientSourceError(QuoteBridgeError):
    """A data source or agent is temporarily unreachable."""

    def __init__(self, message: str, *, source: Optional[str] = None) -> None:
        super().__init__(message)
        self.source = source


class QueueUnavailableError(QuoteBridgeError):
    """The durable queue backend cannot be reached."""


class CallbackAuthError(QuoteBridgeError):
    """An agent callback failed secret or signature verification."""
