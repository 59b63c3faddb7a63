"""
Infrastructure package for dbagent.

Centralizes I/O concerns: the worker's database connection and statements, and the
parent-side supervision of worker processes. Keep this layer focused on resources,
decoupled from orchestration logic.
"""

from dbagent.infrastructure.db_factory import (
    PreparedStatement,
    RawStatement,
    compile_statements,
    connect_database,
)
from dbagent.infrastructure.process import WorkerGoneError, WorkerHandle

__all__ = [
    "PreparedStatement",
    "RawStatement",
    "WorkerGoneError",
    "WorkerHandle",
    "compile_statements",
    "connect_database",
]
