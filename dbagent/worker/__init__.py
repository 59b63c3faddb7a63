"""
Worker package for dbagent.

The code that runs inside each child process: read request frames, execute them on
the worker's single connection, stream response frames back.
"""

from dbagent.worker.runner import Worker, WorkerStartupError, WorkerState, main

__all__ = [
    "Worker",
    "WorkerStartupError",
    "WorkerState",
    "main",
]
