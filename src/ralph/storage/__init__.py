"""SQLite helpers for orchestrator-owned tables."""
