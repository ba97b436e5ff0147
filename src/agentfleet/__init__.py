"""AgentFleet: orchestration of containerized agent runtimes."""

__version__ = "0.1.0"
