"""
Worker layer for AgentFleet.

This package drives the actual state of tenant agents toward their desired
state and relays conversational traffic into running agent containers.

Key Components:
- Container Runtime: thin async client over the local Docker Engine API
- Config Pipeline: secret decryption and framework compatibility repairs
- Sandbox Resolver: tier-capped security levels and container sandbox profiles
- Framework Handlers: per-framework start / hot reload / stop / terminal commands
- Reconciler: the control loop, purge handling and start-failure circuit breaker
- Message Relay: chat and terminal forwarding with user-facing diagnostics
"""

__version__ = "0.1.0"
