"""Failures raised on the agent host during a sync cycle."""
from __future__ import annotations


class AgentError(Exception):
    pass


class NetworkError(AgentError):
    """Transport failure, non-200 response, or an oversized/undecodable body."""


class DeployError(AgentError):
    """Deploy path or file name refused, or writing the files failed."""


class ReloadError(AgentError):
    """Reload command refused by validation, exited non-zero, or timed out."""
