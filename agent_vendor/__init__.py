"""Agent Vendor backend: chat orchestration, billing and persistence."""
