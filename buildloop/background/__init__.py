# buildloop/background/__init__.py
"""
Background job processing system.

Exports:
    - QueueWorker: Concurrent queue consumer base
    - BuildWorker / DeployWorker: Build and deploy job handlers
    - setup_signal_handlers: Graceful shutdown signal handling
    - ServerLifecycle: Startup and shutdown coordination
"""

from buildloop.background.build_worker import BuildWorker
from buildloop.background.deploy_worker import DeployWorker
from buildloop.background.lifecycle import ServerLifecycle
from buildloop.background.signals import setup_signal_handlers
from buildloop.background.worker import JobTimeout, QueueWorker

__all__ = [
    "BuildWorker",
    "DeployWorker",
    "JobTimeout",
    "QueueWorker",
    "ServerLifecycle",
    "setup_signal_handlers",
]
