"""AgentFleet worker services."""
