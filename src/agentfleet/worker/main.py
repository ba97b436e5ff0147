"""
AgentFleet Worker - Main Application Entry Point.

Runs the reconciliation loop, the message relay and the change feed behind a
small FastAPI server that exposes health, readiness and Prometheus metrics.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import structlog
from fastapi import FastAPI, Response, status
from prometheus_fastapi_instrumentator import Instrumentator

from . import __version__
from .config import Settings, get_settings
from .database import (
    DESIRED_STATE_CHANNEL,
    USER_MESSAGE_CHANNEL,
    ChangeFeed,
    StateStore,
    close_db,
    init_db,
)
from .database.connection import check_db_health
from .handlers import HandlerRegistry
from .logging_config import configure_logging
from .services.container_runtime import ContainerRuntime
from .services.crypto import get_cipher
from .services.leases import LeaseMonitor, LeaseValidator
from .services.message_relay import MessageRelay
from .services.reconciler import Reconciler

settings = get_settings()
logger = structlog.get_logger()


@dataclass
class Worker:
    """Wired worker components."""

    store: StateStore
    runtime: ContainerRuntime
    handlers: HandlerRegistry
    reconciler: Reconciler
    relay: MessageRelay
    change_feed: ChangeFeed | None = None
    lease_monitor: LeaseMonitor | None = None


async def build_worker(settings: Settings) -> Worker:
    """Open connections and construct the worker components."""
    session_factory = await init_db(settings)
    store = StateStore(session_factory)

    runtime = ContainerRuntime(settings)
    await runtime.initialize()

    cipher = get_cipher()
    handlers = HandlerRegistry.build(runtime, store, settings, cipher)
    reconciler = Reconciler(
        store,
        runtime,
        handlers,
        settings=settings,
        lease_validator=LeaseValidator(store),
    )
    relay = MessageRelay(store, handlers, settings=settings, cipher=cipher)
    return Worker(store, runtime, handlers, reconciler, relay)


async def shutdown_worker(worker: Worker) -> None:
    if worker.change_feed:
        await worker.change_feed.stop()
    if worker.lease_monitor:
        await worker.lease_monitor.stop()
    await worker.reconciler.stop()
    await worker.relay.close()
    await worker.runtime.close()
    await close_db()


worker: Worker | None = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application lifespan events."""
    global worker

    configure_logging(settings.log_level)
    logger.info(
        "worker_startup",
        port=settings.worker_port,
        reconcile_interval=settings.reconcile_interval_seconds,
        managed_keys=settings.enable_managed_keys,
    )

    try:
        worker = await build_worker(settings)
        await worker.relay.start()

        worker.change_feed = ChangeFeed(
            settings.listen_dsn,
            reconnect_attempts=settings.change_feed_reconnect_attempts,
            reconnect_delay=settings.change_feed_reconnect_delay_seconds,
        )
        worker.change_feed.subscribe(DESIRED_STATE_CHANNEL, worker.reconciler.trigger)
        worker.change_feed.subscribe(USER_MESSAGE_CHANNEL, worker.relay.handle_user_message)
        await worker.change_feed.start()

        await worker.reconciler.start()

        if settings.enable_managed_keys:
            worker.lease_monitor = LeaseMonitor(
                worker.store, settings.lease_check_interval_seconds
            )
            await worker.lease_monitor.start()

        logger.info("worker_services_initialized")

    except Exception as e:
        logger.error("worker_startup_failed", error=str(e))
        raise

    yield

    logger.info("worker_shutdown")
    try:
        if worker:
            await shutdown_worker(worker)
        logger.info("worker_services_closed")
    except Exception as e:
        logger.error("worker_shutdown_error", error=str(e))
    finally:
        worker = None


app = FastAPI(
    title="AgentFleet Worker",
    description="Reconciles agent containers against desired state and relays agent chat",
    version=__version__,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan,
)

Instrumentator().instrument(app).expose(app, endpoint="/metrics")


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Basic health check endpoint."""
    return {"status": "healthy", "service": "agentfleet-worker"}


@app.get("/health/ready")
async def readiness_check(response: Response) -> dict[str, str]:
    """Ready once the worker is wired and the database answers."""
    if worker is None or not await check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "not_ready", "service": "agentfleet-worker"}
    return {"status": "ready", "service": "agentfleet-worker"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": "AgentFleet Worker",
        "version": __version__,
        "status": "operational",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=settings.worker_port,
        log_level=settings.log_level.lower(),
    )
