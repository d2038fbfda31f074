# buildloop/deploy/__init__.py
"""Deployment providers."""

from .provider import (
    DeploymentHandle,
    DeployProvider,
    HttpDeployProvider,
    ProviderState,
    ProviderStatus,
    parse_state,
)

__all__ = [
    "DeploymentHandle",
    "DeployProvider",
    "HttpDeployProvider",
    "ProviderState",
    "ProviderStatus",
    "parse_state",
]
