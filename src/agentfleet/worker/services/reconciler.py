"""
Reconciliation loop.

Drives every agent's actual state toward its desired state. A pass runs on a
fixed interval and whenever the change feed reports a desired-state write;
overlapping invocations are skipped, not queued.

Per agent, in order:

1. Drift correction: a claimed ``running`` status without a running container
   is reset to ``stopped``; the agent is not restarted in the same pass.
2. Purge: once ``purge_at`` has passed the container is stopped (best effort)
   and the agent row deleted.
3. Start/restart: an enabled agent that is not running, or whose config hash
   differs from the last applied one, is (re)started. Consecutive start
   failures trip a circuit breaker that disables the agent.
4. Stop: a disabled agent (or one inside its termination window) with a live
   container is stopped.
5. Adoption: a running agent with no cached hash (cold cache after a worker
   restart) adopts the current hash without restarting.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import structlog

from ..config import Settings, get_settings
from ..database.store import StateStore
from ..handlers import FrameworkHandler, HandlerRegistry
from ..models.agent import AgentSnapshot, AgentStatus, DesiredState, Framework
from ..models.errors import ContainerRuntimeError, InvalidLeaseError, UnknownFrameworkError
from ..monitoring import metrics
from .config_pipeline import config_hash
from .container_runtime import ContainerRuntime
from .leases import LeaseValidator
from .security_profiles import resolve_security_level

logger = structlog.get_logger()

_UUID = r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"
MANAGED_CONTAINER_RE = re.compile(
    rf"^({'|'.join(f.value for f in Framework)})-({_UUID})$",
    re.IGNORECASE,
)


@dataclass
class ReconcilerState:
    """In-memory caches owned by one reconciler; lost on process restart."""

    config_hashes: dict[str, str] = field(default_factory=dict)
    failure_counts: dict[str, int] = field(default_factory=dict)

    def forget(self, agent_id: str) -> None:
        self.config_hashes.pop(agent_id, None)
        self.failure_counts.pop(agent_id, None)


class Reconciler:
    """Converges actual agent state onto desired state."""

    def __init__(
        self,
        store: StateStore,
        runtime: ContainerRuntime,
        handlers: HandlerRegistry,
        settings: Settings | None = None,
        state: ReconcilerState | None = None,
        lease_validator: LeaseValidator | None = None,
    ) -> None:
        self._store = store
        self._runtime = runtime
        self._handlers = handlers
        self._settings = settings or get_settings()
        self.state = state or ReconcilerState()
        self._leases = lease_validator or LeaseValidator(store)
        self._is_reconciling = False
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def is_reconciling(self) -> bool:
        return self._is_reconciling

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the interval and orphan-cleanup loops."""
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(
                self._every(self._settings.reconcile_interval_seconds, self.reconcile)
            ),
            asyncio.create_task(
                self._every(
                    self._settings.orphan_cleanup_interval_seconds,
                    self.cleanup_orphan_containers,
                )
            ),
        ]
        logger.info(
            "reconciler_started",
            interval=self._settings.reconcile_interval_seconds,
            orphan_interval=self._settings.orphan_cleanup_interval_seconds,
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("reconciler_stopped")

    async def trigger(self, payload: dict | None = None) -> None:
        """Change-feed entry point for desired-state writes."""
        logger.debug(
            "reconcile_triggered",
            agent_id=(payload or {}).get("agent_id"),
            db_event=(payload or {}).get("event"),
        )
        await self.reconcile()

    async def _every(self, interval: float, job: Callable[[], Awaitable[object]]) -> None:
        while True:
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("reconciler_job_failed", job=job.__name__, error=str(e))
            await asyncio.sleep(interval)

    # ------------------------------------------------------------------
    # Reconciliation pass
    # ------------------------------------------------------------------

    async def reconcile(self) -> bool:
        """
        Run one reconciliation pass.

        Returns:
            False when skipped because another pass is in progress
        """
        if self._is_reconciling:
            logger.debug("reconcile_skipped_in_progress")
            metrics.reconcile_passes_total.labels(result="skipped").inc()
            return False

        self._is_reconciling = True
        try:
            agents = await self._store.list_agents()
            running = await self._runtime.running_container_names()
            now = datetime.now(UTC)
            metrics.managed_agents.set(len(agents))

            for agent in agents:
                try:
                    await self._reconcile_agent(agent, running, now)
                except Exception as e:
                    logger.error(
                        "agent_reconcile_failed",
                        agent_id=agent.id,
                        framework=agent.framework,
                        error=str(e),
                    )

            metrics.reconcile_passes_total.labels(result="completed").inc()
            return True
        except Exception as e:
            logger.error("reconcile_pass_failed", error=str(e))
            metrics.reconcile_passes_total.labels(result="failed").inc()
            raise
        finally:
            self._is_reconciling = False

    async def _reconcile_agent(
        self, agent: AgentSnapshot, running: set[str], now: datetime
    ) -> None:
        desired = agent.desired
        if desired is None:
            return

        try:
            handler = self._handlers.get(agent.framework)
        except UnknownFrameworkError:
            if self._purge_due(desired, now):
                await self._purge(agent, None)
                return
            raise

        status = agent.status
        container_running = handler.container_name(agent.id) in running

        if status == AgentStatus.RUNNING and not container_running:
            logger.warning(
                "agent_state_drift",
                agent_id=agent.id,
                container=handler.container_name(agent.id),
            )
            await self._store.set_actual_state(agent.id, AgentStatus.STOPPED, endpoint_url=None)
            self.state.config_hashes.pop(agent.id, None)
            if self._purge_due(desired, now):
                await self._purge(agent, handler)
            return

        if self._purge_due(desired, now):
            await self._purge(agent, handler)
            return

        should_run = desired.enabled and not self._in_termination_window(desired, now)
        is_running = status == AgentStatus.RUNNING
        new_hash = config_hash(desired.config)
        cached_hash = self.state.config_hashes.get(agent.id)

        if should_run:
            if is_running and cached_hash is None:
                logger.info("agent_config_hash_adopted", agent_id=agent.id)
                self.state.config_hashes[agent.id] = new_hash
            elif not is_running or cached_hash != new_hash:
                await self._start(agent, handler, desired, new_hash, restart=is_running)
        elif is_running or container_running:
            await self._stop(agent, handler)

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def _start(
        self,
        agent: AgentSnapshot,
        handler: FrameworkHandler,
        desired: DesiredState,
        new_hash: str,
        restart: bool,
    ) -> None:
        try:
            await self._leases.ensure_valid(agent.id, desired.metadata)
        except InvalidLeaseError as e:
            await self._leases.stop_agent_for_invalid_lease(agent.id, e.reason)
            self.state.forget(agent.id)
            return

        if restart:
            logger.info("agent_config_changed_restarting", agent_id=agent.id)
            await handler.stop(agent.id)

        level = resolve_security_level(agent.user_tier, desired.metadata.get("security_level"))
        failures = self.state.failure_counts.get(agent.id, 0)

        logger.info(
            "agent_starting",
            agent_id=agent.id,
            framework=agent.framework,
            security_level=level.value,
            previous_failures=failures,
        )

        try:
            await handler.start(
                agent.id,
                desired.config,
                desired.metadata,
                force_restart=failures > 0,
                security_level=level,
            )
        except Exception as e:
            metrics.agent_starts_total.labels(framework=agent.framework, result="failure").inc()
            if self._record_failure(agent.id, str(e)):
                await self._store.set_enabled(agent.id, False)
            return

        metrics.agent_starts_total.labels(framework=agent.framework, result="success").inc()
        self.state.config_hashes[agent.id] = new_hash
        self.state.failure_counts.pop(agent.id, None)

    def _record_failure(self, agent_id: str, error: str) -> bool:
        """Count a start failure; returns True when the breaker trips."""
        failures = self.state.failure_counts.get(agent_id, 0) + 1
        limit = self._settings.max_start_failures

        if failures >= limit:
            logger.error(
                "agent_circuit_breaker_tripped",
                agent_id=agent_id,
                failures=failures,
                error=error,
            )
            metrics.circuit_breaker_trips_total.inc()
            self.state.failure_counts.pop(agent_id, None)
            self.state.config_hashes.pop(agent_id, None)
            return True
        else:
            logger.warning(
                "agent_start_failed",
                agent_id=agent_id,
                failures=failures,
                limit=limit,
                error=error,
            )
            self.state.failure_counts[agent_id] = failures
        return False

    async def _stop(self, agent: AgentSnapshot, handler: FrameworkHandler) -> None:
        logger.info("agent_stopping", agent_id=agent.id, framework=agent.framework)
        await handler.stop(agent.id)
        metrics.agent_stops_total.labels(framework=agent.framework).inc()
        self.state.forget(agent.id)

    async def _purge(self, agent: AgentSnapshot, handler: FrameworkHandler | None) -> None:
        logger.info("agent_purging", agent_id=agent.id, purge_at=str(agent.desired.purge_at))
        if handler is not None:
            try:
                await handler.stop(agent.id)
            except Exception as e:
                logger.warning("agent_purge_stop_failed", agent_id=agent.id, error=str(e))

        await self._store.delete_agent(agent.id)
        self.state.forget(agent.id)
        metrics.agent_purges_total.inc()
        logger.info("agent_purged", agent_id=agent.id)

    def _purge_due(self, desired: DesiredState, now: datetime) -> bool:
        return desired.purge_at is not None and now >= desired.purge_at

    def _in_termination_window(self, desired: DesiredState, now: datetime) -> bool:
        if desired.purge_at is None:
            return False
        window = timedelta(hours=self._settings.purge_stop_window_hours)
        return now >= desired.purge_at - window

    # ------------------------------------------------------------------
    # Orphans
    # ------------------------------------------------------------------

    async def cleanup_orphan_containers(self) -> list[str]:
        """
        Stop and remove managed containers whose agent no longer exists.

        Returns:
            Names of the containers removed
        """
        known = {agent_id.lower() for agent_id in await self._store.list_agent_ids()}
        removed: list[str] = []

        for summary in await self._runtime.list_containers():
            for raw_name in summary.get("Names") or []:
                name = raw_name.lstrip("/")
                match = MANAGED_CONTAINER_RE.match(name)
                if match is None or match.group(2).lower() in known:
                    continue

                logger.info("orphan_container_removing", container=name)
                container = self._runtime.get_container(name)
                try:
                    if str(summary.get("State") or "").lower() == "running":
                        await container.stop()
                    await container.remove()
                except ContainerRuntimeError as e:
                    logger.warning("orphan_container_cleanup_failed", container=name, error=str(e))
                    continue

                removed.append(name)
                metrics.orphan_containers_removed_total.inc()

        if removed:
            logger.info("orphan_cleanup_completed", removed=len(removed))
        return removed
