# buildloop/background/lifecycle.py
"""
Server lifecycle management.

Wires the stores, progress bus, queues and workers together and coordinates
startup (schema init, leftover-job report, workers) and shutdown.
"""

import asyncio
import logging
from typing import Callable

from buildloop.background.build_worker import BuildWorker, ClientFactory
from buildloop.background.deploy_worker import DeployWorker
from buildloop.background.signals import setup_signal_handlers
from buildloop.config.schema import BuildLoopConfig
from buildloop.deploy.provider import DeployProvider, HttpDeployProvider
from buildloop.models.jobs import BUILD_QUEUE, DEPLOY_QUEUE
from buildloop.models.sqlite_store import SQLiteJobStore
from buildloop.progress.bus import ProgressBus
from buildloop.projects.store import SQLiteProjectStore
from buildloop.queue.work_queue import WorkQueue

logger = logging.getLogger(__name__)


class ServerLifecycle:
    """
    Server lifecycle coordinator.

    Manages:
        - Database initialization for jobs and projects
        - The build and deploy queues (explicit instances, no global broker)
        - Build and deploy worker lifecycles
        - Signal handler registration
        - Graceful shutdown
    """

    def __init__(
        self,
        db_path: str,
        config: BuildLoopConfig | None = None,
        deploy_provider: DeployProvider | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        """
        Initialize server lifecycle manager.

        Args:
            db_path: Path to SQLite database file
            config: Configuration (defaults if omitted)
            deploy_provider: Provider override; default is HttpDeployProvider
                when deploy.base_url is configured, otherwise deploys are off
            client_factory: Model client factory override (tests)
        """
        self._config = config or BuildLoopConfig()
        self._job_store = SQLiteJobStore(db_path)
        self._store = SQLiteProjectStore(db_path)
        self._bus = ProgressBus(self._config.progress.subscriber_queue_size)

        self._build_queue = WorkQueue(BUILD_QUEUE, self._job_store, self._config.build_queue)
        self._deploy_queue = WorkQueue(DEPLOY_QUEUE, self._job_store, self._config.deploy_queue)

        self._owns_provider = False
        if deploy_provider is None and self._config.deploy.base_url:
            deploy_provider = HttpDeployProvider(
                self._config.deploy.base_url, self._config.deploy.api_token
            )
            self._owns_provider = True
        self._deploy_provider = deploy_provider

        self._deploy_worker: DeployWorker | None = None
        if deploy_provider is not None:
            self._deploy_worker = DeployWorker(
                self._deploy_queue,
                self._store,
                self._bus,
                deploy_provider,
                self._config.deploy,
            )

        self._build_worker = BuildWorker(
            self._build_queue,
            self._store,
            self._bus,
            self._config,
            deploy_queue=self._deploy_queue if self._deploy_worker else None,
            client_factory=client_factory,
        )
        self._started_workers = False
        self._closed = asyncio.Event()
        self._remove_signals: Callable[[], None] | None = None
        logger.info(
            f"Created ServerLifecycle with db_path={db_path} "
            f"(deploys={'on' if self._deploy_worker else 'off'})"
        )

    @property
    def config(self) -> BuildLoopConfig:
        return self._config

    @property
    def job_store(self) -> SQLiteJobStore:
        return self._job_store

    @property
    def store(self) -> SQLiteProjectStore:
        """Get the project store (for server.py to pass to tools)."""
        return self._store

    @property
    def bus(self) -> ProgressBus:
        return self._bus

    @property
    def build_queue(self) -> WorkQueue:
        return self._build_queue

    @property
    def deploy_queue(self) -> WorkQueue:
        return self._deploy_queue

    @property
    def build_worker(self) -> BuildWorker:
        return self._build_worker

    @property
    def deploy_worker(self) -> DeployWorker | None:
        return self._deploy_worker

    async def startup(self, start_workers: bool = True, install_signals: bool = True) -> None:
        """
        Start the server lifecycle.

        Steps:
            1. Initialize database schema (jobs + projects)
            2. Register signal handlers for graceful shutdown
            3. Start workers

        Args:
            start_workers: False for processes that only enqueue or inspect
            install_signals: False when the caller manages signals itself
        """
        logger.info("Starting server lifecycle...")

        await self._job_store.initialize()
        await self._store.initialize()

        if install_signals:
            self._remove_signals = setup_signal_handlers(self.shutdown)

        if start_workers:
            await self._build_worker.start()
            if self._deploy_worker is not None:
                await self._deploy_worker.start()
            self._started_workers = True

        logger.info(f"Server lifecycle started (workers={'running' if start_workers else 'off'})")

    async def shutdown(self) -> None:
        """
        Shut down gracefully.

        Steps:
            1. Stop workers (in-flight jobs are released back to the queue)
            2. End open progress subscriptions
            3. Close stores and the deploy provider client
        """
        if self._closed.is_set():
            return
        logger.info("Shutting down server lifecycle...")

        if self._started_workers:
            await self._build_worker.stop()
            if self._deploy_worker is not None:
                await self._deploy_worker.stop()
            self._started_workers = False

        self._bus.close()
        await self._store.close()
        await self._job_store.close()
        if self._owns_provider and isinstance(self._deploy_provider, HttpDeployProvider):
            await self._deploy_provider.close()

        if self._remove_signals is not None:
            self._remove_signals()
            self._remove_signals = None
        self._closed.set()
        logger.info("Server lifecycle shutdown complete")

    async def wait_closed(self) -> None:
        """Block until shutdown() has completed (e.g. after a signal)."""
        await self._closed.wait()
