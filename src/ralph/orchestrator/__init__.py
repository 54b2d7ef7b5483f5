"""Sequential task orchestrator driving CLI agents over tracker tasks.

One loop selects ready work under an epic, routes each task to an agent
profile by label, launches the agent as a subprocess and records the outcome
in an orchestrator-owned SQLite table beside the tracker database.

The tracker stays the source of truth for task state. Agents close their own
tasks; the loop only reopens, blocks or comments when a dispatch fails or a
task keeps failing past the threshold.
"""
