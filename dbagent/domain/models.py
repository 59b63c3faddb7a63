"""
Domain models for dbagent.

Defines the records exchanged between the orchestrator and its worker processes:
the init frame a worker receives at startup, query requests, and response frames.
Every wire record carries a ``kind`` discriminator so a single decoder can validate
whatever arrives on a pipe.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

EXIT_QUERY = "__exit__"


class Marker(str, Enum):
    """Terminal payload markers."""

    EOF = "EOF"


EOF = Marker.EOF

Row = Union[List[Any], Dict[str, Any]]


class RowShape(str, Enum):
    POSITIONAL = "positional"
    NAMED = "named"


class PayloadType(str, Enum):
    ROW = "row"
    EOF = "eof"
    ERROR = "error"


class FailureReason(str, Enum):
    UNKNOWN_QUERY = "unknown_query"
    EXECUTION_FAILED = "execution_failed"


_FROZEN = {
    "frozen": True,
    "populate_by_name": True,
    "arbitrary_types_allowed": False,
}


class QueryFailure(BaseModel):
    """
    Reason a worker could not answer a request.

    Only produced when the pool runs with failure reporting enabled; otherwise such
    requests receive no response at all.
    """

    reason: FailureReason
    query_name: str
    message: str = ""

    model_config = _FROZEN


class WorkerInit(BaseModel):
    """
    First frame written to every worker: connection target and query definitions.
    """

    kind: Literal["init"] = "init"
    dsn: str = Field(..., description="libpq connection string for the worker's connection.")
    queries: Dict[str, str] = Field(..., description="Query name to SQL text.")
    dry_run_writes: bool = Field(False, description="Keep data-modifying SQL as raw text.")
    report_failures: bool = Field(False, description="Answer failed requests with an error frame.")
    throttle_delay_seconds: float = Field(0.001, ge=0)
    log_level: str = "WARNING"
    log_json: bool = False

    model_config = _FROZEN


class QueryRequest(BaseModel):
    """
    One query invocation, consumed by exactly one worker.
    """

    kind: Literal["request"] = "request"
    query_name: str
    route: str = Field(..., description="Caller routing token, echoed on every response.")
    bind_parameters: List[Any] = Field(default_factory=list)
    correlation_id: Any = Field(None, description="Opaque token echoed back unchanged.")
    row_shape: RowShape = RowShape.POSITIONAL
    throttle: bool = False

    model_config = _FROZEN

    @classmethod
    def exit_command(cls) -> "QueryRequest":
        """Request that tells a worker to leave its read loop."""
        return cls(query_name=EXIT_QUERY, route="")

    @property
    def is_exit(self) -> bool:
        return self.query_name == EXIT_QUERY


class ResponseFrame(BaseModel):
    """
    One row, the EOF marker, or a failure report for a request.
    """

    kind: Literal["response"] = "response"
    route: str
    correlation_id: Any = None
    payload_type: PayloadType
    row: Optional[Row] = None
    error: Optional[QueryFailure] = None

    model_config = _FROZEN

    @classmethod
    def for_row(cls, request: QueryRequest, row: Row) -> "ResponseFrame":
        return cls(
            route=request.route,
            correlation_id=request.correlation_id,
            payload_type=PayloadType.ROW,
            row=row,
        )

    @classmethod
    def for_eof(cls, request: QueryRequest) -> "ResponseFrame":
        return cls(
            route=request.route,
            correlation_id=request.correlation_id,
            payload_type=PayloadType.EOF,
        )

    @classmethod
    def for_failure(cls, request: QueryRequest, failure: QueryFailure) -> "ResponseFrame":
        return cls(
            route=request.route,
            correlation_id=request.correlation_id,
            payload_type=PayloadType.ERROR,
            error=failure,
        )

    @property
    def is_eof(self) -> bool:
        return self.payload_type is PayloadType.EOF

    @property
    def payload(self) -> Union[Row, Marker, QueryFailure, None]:
        """What the caller's handler receives: a row, ``EOF``, or a ``QueryFailure``."""
        if self.payload_type is PayloadType.EOF:
            return EOF
        if self.payload_type is PayloadType.ERROR:
            return self.error
        return self.row


Frame = Union[WorkerInit, QueryRequest, ResponseFrame]


__all__ = [
    "EOF",
    "EXIT_QUERY",
    "FailureReason",
    "Frame",
    "Marker",
    "PayloadType",
    "QueryFailure",
    "QueryRequest",
    "ResponseFrame",
    "Row",
    "RowShape",
    "WorkerInit",
]
