"""
dbagent - Non-blocking database queries for event-driven Python code.

Blocking queries are delegated to a pool of long-lived worker processes, each holding
one PostgreSQL connection. Results stream back row by row over a private framed
protocol and are delivered to caller-registered handlers:

- Round-robin worker pool
- Length-prefixed, versioned wire frames
- Per-worker execution loop with prepared statements and streamed rows
- asyncio orchestrator multiplexing every worker's output
"""

from __future__ import annotations

__version__ = "0.1.0"
__license__ = "MIT"

# Public API exports
from dbagent.config import Settings, build_dsn, get_settings, load_queries
from dbagent.domain.models import EOF, QueryFailure, QueryRequest, ResponseFrame, RowShape
from dbagent.orchestrator import DBAgent, RouteTable
from dbagent.pool import PoolEmptyError, WorkerPool
from dbagent.utils.logging import configure_logging, get_logger

__all__ = [
    # Version info
    "__version__",
    "__license__",
    # Configuration
    "Settings",
    "build_dsn",
    "get_settings",
    "load_queries",
    # Orchestration
    "DBAgent",
    "RouteTable",
    "PoolEmptyError",
    "WorkerPool",
    # Wire records
    "EOF",
    "QueryFailure",
    "QueryRequest",
    "ResponseFrame",
    "RowShape",
    # Logging
    "configure_logging",
    "get_logger",
]
