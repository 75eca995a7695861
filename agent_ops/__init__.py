"""Agent operations core: worker pool, work-item workflow and event hub.

This package coordinates autonomous agent workers against work items moving
through a fixed pipeline (backlog → ready → in_progress → review → done):
- Worker Pool with a configurable concurrency ceiling
- Workflow Engine with per-transition human approval gates
- Work Assignment with an event-driven FIFO queue
- Event Hub for trace capture and real-time fan-out to subscribers
"""
