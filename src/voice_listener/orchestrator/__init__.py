"""Task scheduling and execution for voice-note tasks.

Why not Celery / Dramatiq / Arq?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The hard part here is not queuing. It is the boundary between a task record
and an external agent CLI that runs for minutes, streams JSON events, can be
resumed by session id and may write back to its own task record through a
side-channel command. Responsibilities no generic queue covers:

- Single-edge dependency gating with sequence ordering at batch formation.
- Crash recovery by resetting orphaned in-progress tasks at startup.
- Agent stream parsing into a bounded, debounced progress snapshot.
- Deferring finalization to whatever the agent already reported.

A broker would add an operational dependency to a single-machine,
SQLite-only tool while still requiring all of the above as custom logic.
"""
