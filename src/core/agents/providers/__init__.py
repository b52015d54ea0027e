"""Agent backend implementations."""
