"""PollerService: wires up infrastructure and runs the scheduler loop."""

from __future__ import annotations

import asyncio
import time
import uuid
from typing import Any

import structlog
import uvicorn

from .config import PollerConfig
from .db.engine import Database
from .db.registry import AccountRegistry
from .db.store import EnqueueLedger, MessageStore, ThreadStore
from .dedup import DuplicateDetector
from .enqueuer import Enqueuer, KafkaWorkQueue, WorkQueue
from .health import create_health_app
from .imap_client import MailSession
from .logging import setup_logging
from .models import ServiceStatus
from .noise import NoiseFilter
from .orchestrator import (
    AccountFetchResult,
    PassResult,
    PollOrchestrator,
    SessionFactory,
    VerifyResult,
)
from .parser import MessageNormalizer
from .pipeline import IngestionPipeline
from .shutdown import install_signal_handlers
from .threads import ThreadLinker
from .vault import CredentialVault

logger = structlog.get_logger()


class PollerService:
    """Owns every long-lived component of a poller process.

    ``run()`` starts the following concurrently via
    :class:`asyncio.TaskGroup`:

    * the scheduler loop, which starts one ingestion pass per tick
    * the FastAPI health server (for K8s probes)

    The Kafka producer is started before and stopped after both.
    """

    def __init__(
        self,
        config: PollerConfig,
        *,
        database: Database | None = None,
        queue: WorkQueue | None = None,
        session_factory: SessionFactory = MailSession,
    ) -> None:
        self.config = config
        self.status: ServiceStatus = ServiceStatus.STARTING
        self.start_time: float = time.monotonic()

        self.database = database or Database(config.database)
        self.queue = queue or KafkaWorkQueue(config.queue)
        self.vault = CredentialVault(config.vault)
        self.registry = AccountRegistry(self.database.session, self.vault)

        messages = MessageStore(self.database.session)
        threads = ThreadStore(self.database.session)
        self.linker = ThreadLinker(messages, threads)
        self.pipeline = IngestionPipeline(
            normalizer=MessageNormalizer(),
            noise=NoiseFilter(config.noise),
            dedup=DuplicateDetector(messages, config.dedup),
            store=messages,
            linker=self.linker,
            enqueuer=Enqueuer(
                EnqueueLedger(self.database.session),
                self.queue,
                config.retry,
                config.queue.default_priority,
            ),
        )
        self.orchestrator = PollOrchestrator(
            self.registry,
            self.vault,
            self.pipeline,
            config.session,
            session_factory=session_factory,
        )

        self._shutdown_event = asyncio.Event()
        self._pass_tasks: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def health_details(self) -> dict[str, Any]:
        last = self.orchestrator.last_result
        details: dict[str, Any] = {"pass_state": self.orchestrator.state.value}
        if last is not None:
            details["last_pass"] = {
                "started_at": last.started_at.isoformat(),
                "accounts": len(last.accounts),
                "ingested": last.ingested,
                "has_errors": last.has_errors,
            }
        return details

    # ------------------------------------------------------------------
    # Scheduler
    # ------------------------------------------------------------------

    async def _tick(self) -> None:
        """Run one pass. Nothing raised here reaches the scheduler."""
        try:
            result = await self.orchestrator.run_one_ingestion_pass()
        except Exception:
            self.status = ServiceStatus.DEGRADED
            logger.exception("ingestion_pass_error", service=self.config.name)
            return

        if result is None or self.status is ServiceStatus.STOPPING:
            return
        self.status = ServiceStatus.DEGRADED if result.has_errors else ServiceStatus.RUNNING

    async def _run_scheduler(self) -> None:
        """Start a pass every ``pass_interval_seconds`` until shutdown.

        Each pass runs as its own task so a slow pass never delays the
        next tick; the orchestrator turns overlapping ticks into no-ops.
        """
        logger.info(
            "scheduler_started",
            service=self.config.name,
            interval_seconds=self.config.pass_interval_seconds,
        )
        self.status = ServiceStatus.RUNNING

        while not self._shutdown_event.is_set():
            task = asyncio.create_task(self._tick())
            self._pass_tasks.add(task)
            task.add_done_callback(self._pass_tasks.discard)
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.config.pass_interval_seconds,
                )
            except TimeoutError:
                pass

        # Let a pass already in progress finish
        if self._pass_tasks:
            await asyncio.gather(*self._pass_tasks)
        logger.info("scheduler_stopped", service=self.config.name)

    # ------------------------------------------------------------------
    # Health server
    # ------------------------------------------------------------------

    async def _run_health_server(self) -> None:
        """Start the FastAPI health server and shut it down on signal."""
        app = create_health_app(self)
        config = uvicorn.Config(
            app,
            host="0.0.0.0",
            port=self.config.health_port,
            log_level="warning",
        )
        server = uvicorn.Server(config)

        serve_task = asyncio.create_task(server.serve())
        await self._shutdown_event.wait()
        server.should_exit = True
        await serve_task

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if isinstance(self.queue, KafkaWorkQueue):
            await self.queue.start()

    async def stop(self) -> None:
        if isinstance(self.queue, KafkaWorkQueue):
            await self.queue.stop()
        await self.database.close()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def run(self) -> None:
        """Start all subsystems and run until shutdown.

        Entry point for ``python -m mailpoll serve``::

            asyncio.run(PollerService(PollerConfig()).run())
        """
        setup_logging(json=self.config.log_json, level=self.config.log_level)
        install_signal_handlers(self._shutdown_event)
        self.start_time = time.monotonic()

        logger.info("service_starting", service=self.config.name)

        await self.start()
        try:
            async with asyncio.TaskGroup() as tg:
                tg.create_task(self._run_scheduler())
                tg.create_task(self._run_health_server())
        except* Exception:
            logger.exception("service_task_group_error", service=self.config.name)
        finally:
            self.status = ServiceStatus.STOPPING
            await self.stop()
            self.status = ServiceStatus.STOPPED
            logger.info("service_stopped", service=self.config.name)

    # ------------------------------------------------------------------
    # One-shot commands
    # ------------------------------------------------------------------

    async def init_db(self) -> None:
        try:
            await self.database.init_models()
            logger.info("database_initialized")
        finally:
            await self.database.close()

    async def run_pass(self) -> PassResult | None:
        await self.start()
        try:
            return await self.orchestrator.run_one_ingestion_pass()
        finally:
            await self.stop()

    async def fetch_now(self, account_id: uuid.UUID) -> AccountFetchResult:
        await self.start()
        try:
            return await self.orchestrator.fetch_now(account_id)
        finally:
            await self.stop()

    async def verify(self, account_id: uuid.UUID) -> VerifyResult:
        try:
            return await self.orchestrator.verify_account(account_id)
        finally:
            await self.database.close()
