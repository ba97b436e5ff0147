"""
Prometheus metrics for the AgentFleet worker.

Counts reconciliation passes, lifecycle actions and relay replies. Exposed
through ``GET /metrics`` on the worker health server.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge

reconcile_passes_total = Counter(
    "agentfleet_reconcile_passes_total",
    "Reconciliation passes",
    ["result"],  # completed, skipped, failed
)

agent_starts_total = Counter(
    "agentfleet_agent_starts_total",
    "Agent start attempts",
    ["framework", "result"],  # success, failure
)

agent_stops_total = Counter(
    "agentfleet_agent_stops_total",
    "Agent stops issued by the reconciler",
    ["framework"],
)

circuit_breaker_trips_total = Counter(
    "agentfleet_circuit_breaker_trips_total",
    "Agents force-disabled after repeated start failures",
)

agent_purges_total = Counter(
    "agentfleet_agent_purges_total",
    "Agents deleted after their scheduled termination time",
)

orphan_containers_removed_total = Counter(
    "agentfleet_orphan_containers_removed_total",
    "Containers removed because their agent no longer exists",
)

relay_replies_total = Counter(
    "agentfleet_relay_replies_total",
    "Agent replies written by the message relay",
    ["kind"],  # terminal, help, chat, error
)

managed_agents = Gauge(
    "agentfleet_managed_agents",
    "Agents seen in the last reconciliation pass",
)
