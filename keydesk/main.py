"""KeyDesk API application factory."""

from __future__ import annotations

import threading
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from keydesk.controllers.agent_controller import router as agent_router
from keydesk.controllers.provisioning_controller import router as provisioning_router
from keydesk.repository.data_repository import DataRepository
from keydesk.repository.outbox_repository import OutboxRepository
from keydesk.services.agent_service import AgentRegistry
from keydesk.services.agent_worker import AgentWorker, InProcessCloudGateway
from keydesk.services.bridge_client import LocalAgentClient
from keydesk.services.health_service import BridgeHealthMonitor
from keydesk.services.issue_service import CardIssueService
from keydesk.services.sequence_service import CardSequenceOrchestrator
from keydesk.utils.config import Settings, get_settings
from keydesk.utils.logger import get_logger


logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    client: Optional[LocalAgentClient] = None,
    poll_health: bool = True,
) -> FastAPI:
    """Wire repository, hardware monitor and services into one app.

    Tests pass their own settings and a fake local agent client and turn
    background health polling off. With `desk_agent_id` set, the app also
    works that agent's queue through the same reader as attended runs.
    """
    settings = settings or get_settings()
    repository = DataRepository(settings)
    health_monitor = BridgeHealthMonitor(
        client=client or LocalAgentClient(settings=settings),
        settings=settings,
    )
    orchestrator = CardSequenceOrchestrator(
        health_monitor=health_monitor,
        settings=settings,
        repository=repository,
    )
    agent_registry = AgentRegistry(repository=repository, settings=settings)
    issue_service = CardIssueService(
        repository=repository,
        agent_registry=agent_registry,
        settings=settings,
    )
    worker: Optional[AgentWorker] = None
    if settings.desk_agent_id:
        worker = AgentWorker(
            cloud=InProcessCloudGateway(settings.desk_agent_id, issue_service, agent_registry),
            health_monitor=health_monitor,
            outbox=OutboxRepository(settings),
            settings=settings,
        )
    worker_stop = threading.Event()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        startup(app)
        if poll_health:
            health_monitor.start_polling()
        worker_thread = None
        if worker is not None:
            worker_stop.clear()
            worker_thread = threading.Thread(
                target=worker.run_forever,
                args=(worker_stop,),
                name="DeskAgentWorker",
                daemon=True,
            )
            worker_thread.start()
        yield
        worker_stop.set()
        if worker_thread is not None:
            worker_thread.join(timeout=settings.card_write_timeout_seconds)
        health_monitor.stop_polling()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.include_router(provisioning_router)
    app.include_router(agent_router)

    app.state.repository = repository
    app.state.health_monitor = health_monitor
    app.state.orchestrator = orchestrator
    app.state.agent_registry = agent_registry
    app.state.issue_service = issue_service
    app.state.agent_worker = worker

    return app


def startup(app: FastAPI) -> None:
    """Create the schema before the first request is served."""
    repository: DataRepository = app.state.repository
    repository.initialize_database()
    worker: Optional[AgentWorker] = app.state.agent_worker
    if worker is not None:
        worker.outbox.initialize()
        logger.info("Working the card issue queue in-process")
    logger.info("System startup completed")


app = create_app()
