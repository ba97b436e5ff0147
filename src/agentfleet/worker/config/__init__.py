"""Configuration module for the AgentFleet worker."""

from .settings import Settings, get_settings

__all__ = ["get_settings", "Settings"]
