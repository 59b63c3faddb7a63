"""
Worker process: one database connection, one request at a time.

Lifecycle::

    STARTING -> READY -> (PROCESSING)* -> DRAINING -> TERMINATED

The worker reads frames from stdin. The first must be a ``WorkerInit``; it connects
and prepares every named query (any failure here is fatal and the worker exits
without ever becoming READY). It then answers each ``QueryRequest`` by streaming one
response frame per row followed by exactly one EOF frame, and finishes the request
before reading the next one.

Requests the worker cannot answer (unknown query name, driver error) get no response
unless failure reporting is enabled, in which case they get an error frame followed
by EOF.
"""

from __future__ import annotations

import signal
import sys
import time
from enum import Enum
from typing import IO, Any, Callable, Dict, Iterator, List, Optional

import psycopg

from dbagent.domain.models import (
    FailureReason,
    Frame,
    QueryFailure,
    QueryRequest,
    ResponseFrame,
    WorkerInit,
)
from dbagent.infrastructure.db_factory import (
    PreparedStatement,
    RawStatement,
    Statement,
    compile_statements,
    connect_database,
)
from dbagent.protocol.codec import FrameDecodeError, FrameDecoder, decode_frame, encode_frame
from dbagent.utils.logging import configure_logging, get_logger

log = get_logger(__name__)

READ_CHUNK_BYTES = 64 * 1024

EXIT_OK = 0
EXIT_STARTUP_FAILED = 1


class WorkerState(str, Enum):
    STARTING = "starting"
    READY = "ready"
    PROCESSING = "processing"
    DRAINING = "draining"
    TERMINATED = "terminated"


class WorkerStartupError(RuntimeError):
    """Raised when the worker cannot connect or prepare its statements."""


class WorkerTerminated(BaseException):
    """Raised from the SIGTERM handler to unwind the read loop."""


class Worker:
    """
    Request loop bound to a pair of binary streams.

    Parameters
    ----------
    reader : IO[bytes]
        Source of request frames (the process stdin).
    writer : IO[bytes]
        Destination of response frames (the process stdout).
    connect : Callable[[str], Any]
        Connection factory, ``connect_database`` unless a test swaps it.
    sleep : Callable[[float], None]
        Pause used between rows of throttled requests.
    """

    def __init__(
        self,
        reader: IO[bytes],
        writer: IO[bytes],
        connect: Callable[[str], Any] = connect_database,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._connect = connect
        self._sleep = sleep
        self._decoder = FrameDecoder()
        self.state = WorkerState.STARTING
        self.init: Optional[WorkerInit] = None
        self.conn: Any = None
        self.statements: Dict[str, Statement] = {}

    def _set_state(self, state: WorkerState) -> None:
        log.debug(f"[STATE] {self.state.value} -> {state.value}")
        self.state = state

    def _read_chunk(self) -> bytes:
        read1 = getattr(self._reader, "read1", None)
        if read1 is not None:
            return read1(READ_CHUNK_BYTES)
        return self._reader.read(READ_CHUNK_BYTES)

    def frames(self) -> Iterator[Frame]:
        """Yield decoded frames until the reader reaches EOF; bad frames are skipped."""
        while True:
            chunk = self._read_chunk()
            if not chunk:
                return
            try:
                raw_frames = self._decoder.feed(chunk)
            except FrameDecodeError as exc:
                log.warning(f"[FRAME DROPPED] {exc}")
                continue
            for raw in raw_frames:
                try:
                    yield decode_frame(raw)
                except FrameDecodeError as exc:
                    log.warning(f"[FRAME DROPPED] {exc}")

    def emit(self, frame: ResponseFrame) -> None:
        self._writer.write(encode_frame(frame))
        self._writer.flush()

    def start(self, init: WorkerInit) -> None:
        """
        Connect and prepare every query definition.

        Raises
        ------
        WorkerStartupError
            If the connection or any single preparation fails.
        """
        self.init = init
        try:
            self.conn = self._connect(init.dsn)
        except psycopg.Error as exc:
            raise WorkerStartupError(f"Connection failed: {exc}") from exc
        try:
            self.statements = compile_statements(self.conn, init.queries, init.dry_run_writes)
        except psycopg.Error as exc:
            raise WorkerStartupError(f"Statement preparation failed: {exc}") from exc
        log.info(
            f"[WORKER READY] {len(self.statements)} statement(s) prepared",
            extra={"statements": sorted(self.statements)},
        )
        self._set_state(WorkerState.READY)

    def handle(self, request: QueryRequest) -> None:
        """Answer one request completely before returning."""
        statement = self.statements.get(request.query_name)
        if statement is None:
            log.debug(f"[UNKNOWN QUERY] {request.query_name}", extra={"route": request.route})
            self._report_failure(
                request, FailureReason.UNKNOWN_QUERY, f"No such query: {request.query_name}"
            )
            return

        self._set_state(WorkerState.PROCESSING)
        try:
            if isinstance(statement, RawStatement):
                self._handle_raw(request, statement)
            else:
                self._handle_prepared(request, statement)
        finally:
            self._set_state(WorkerState.READY)

    def _handle_raw(self, request: QueryRequest, statement: RawStatement) -> None:
        log.info(
            f"[DRY RUN] {request.query_name}: {statement.render(request.bind_parameters)}",
            extra={"route": request.route},
        )
        self.emit(ResponseFrame.for_eof(request))

    def _handle_prepared(self, request: QueryRequest, statement: PreparedStatement) -> None:
        assert self.init is not None
        rows = 0
        try:
            for row in statement.stream(self.conn, request.bind_parameters, request.row_shape):
                if rows and request.throttle:
                    self._sleep(self.init.throttle_delay_seconds)
                self.emit(ResponseFrame.for_row(request, row))
                rows += 1
        except psycopg.Error as exc:
            log.error(
                f"[QUERY FAILED] {request.query_name}: {exc}",
                extra={"route": request.route, "rows_sent": rows},
            )
            self._report_failure(request, FailureReason.EXECUTION_FAILED, str(exc))
            return
        self.emit(ResponseFrame.for_eof(request))
        log.debug(f"[QUERY DONE] {request.query_name} rows={rows}", extra={"rows": rows})

    def _report_failure(self, request: QueryRequest, reason: FailureReason, message: str) -> None:
        if self.init is None or not self.init.report_failures:
            return
        failure = QueryFailure(reason=reason, query_name=request.query_name, message=message)
        self.emit(ResponseFrame.for_failure(request, failure))
        self.emit(ResponseFrame.for_eof(request))

    def serve(self, frames: Iterator[Frame]) -> None:
        """Process requests until the stream closes or the exit command arrives."""
        for frame in frames:
            if not isinstance(frame, QueryRequest):
                log.warning(f"[UNEXPECTED FRAME] {frame.kind}")
                continue
            if frame.is_exit:
                log.info("[EXIT] termination command received")
                return
            self.handle(frame)

    def drain(self) -> None:
        """Release the connection. Safe to call more than once."""
        if self.state is WorkerState.TERMINATED:
            return
        self._set_state(WorkerState.DRAINING)
        if self.conn is not None:
            try:
                self.conn.close()
            except psycopg.Error as exc:
                log.warning(f"[DISCONNECT FAILED] {exc}")
            self.conn = None
        self._set_state(WorkerState.TERMINATED)

    def run(self, on_init: Optional[Callable[[WorkerInit], None]] = None) -> int:
        """
        Full lifecycle; returns the process exit status.

        ``on_init`` runs once the init frame is decoded and before connecting, which
        lets the entry point configure logging from it.
        """
        frames = self.frames()
        try:
            init = next(frames, None)
            if not isinstance(init, WorkerInit):
                log.critical("[STARTUP FAILED] first frame was not an init frame")
                return EXIT_STARTUP_FAILED
            if on_init is not None:
                on_init(init)
            try:
                self.start(init)
            except WorkerStartupError as exc:
                log.critical(f"[STARTUP FAILED] {exc}")
                return EXIT_STARTUP_FAILED
            self.serve(frames)
        except WorkerTerminated:
            log.info("[TERMINATED] SIGTERM received")
        finally:
            self.drain()
        return EXIT_OK


def install_signal_handlers(worker: Worker) -> None:
    """Turn SIGTERM into an orderly drain; once draining, further SIGTERMs are ignored."""

    def _on_sigterm(signum: int, frame: Any) -> None:
        if worker.state in (WorkerState.DRAINING, WorkerState.TERMINATED):
            return
        raise WorkerTerminated()

    signal.signal(signal.SIGTERM, _on_sigterm)


def main(argv: Optional[List[str]] = None, connect: Callable[[str], Any] = connect_database) -> int:
    """
    Entry point of ``python -m dbagent.worker``.

    stdout is reserved for frames, so logging goes to stderr where the orchestrator
    picks it up.
    """
    del argv
    configure_logging(level="WARNING")

    def _configure(init: WorkerInit) -> None:
        configure_logging(level=init.log_level, json_logs=init.log_json)

    worker = Worker(sys.stdin.buffer, sys.stdout.buffer, connect=connect)
    install_signal_handlers(worker)
    return worker.run(on_init=_configure)


__all__ = [
    "Worker",
    "WorkerStartupError",
    "WorkerState",
    "WorkerTerminated",
    "install_signal_handlers",
    "main",
]
