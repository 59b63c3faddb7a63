"""
Domain package for dbagent.

Exports the wire records shared by the orchestrator and the worker processes.
Keep this package focused on data definitions and validation concerns.
"""

from dbagent.domain.models import (
    EOF,
    EXIT_QUERY,
    FailureReason,
    Frame,
    PayloadType,
    QueryFailure,
    QueryRequest,
    ResponseFrame,
    Row,
    RowShape,
    WorkerInit,
)

__all__ = [
    "EOF",
    "EXIT_QUERY",
    "FailureReason",
    "Frame",
    "PayloadType",
    "QueryFailure",
    "QueryRequest",
    "ResponseFrame",
    "Row",
    "RowShape",
    "WorkerInit",
]
