"""
Orchestrator: the caller-facing side of the worker pool.

Usage:
    from dbagent.orchestrator import DBAgent, RouteTable
    from dbagent.domain.models import EOF

    rows = []

    def on_row(payload, correlation_id):
        if payload == EOF:
            print("done", correlation_id, rows)
        else:
            rows.append(payload)

    async with DBAgent({"one": "select 1"}, routes={"on_row": on_row}) as agent:
        agent.query("one", "on_row", correlation_id="first")
        ...

All reading of worker output happens on the running asyncio loop. Handlers are plain
callables invoked inline, one frame at a time, so a slow handler holds up every
worker's output until it returns.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from dbagent.config import Settings, build_dsn, get_settings
from dbagent.domain.models import QueryRequest, ResponseFrame, RowShape, WorkerInit
from dbagent.infrastructure.process import WorkerGoneError, WorkerHandle
from dbagent.pool import WorkerPool
from dbagent.protocol.codec import FrameDecodeError, FrameDecoder, decode_frame, encode_frame
from dbagent.utils.logging import get_logger, relay_worker_line

log = get_logger(__name__)

READ_CHUNK_BYTES = 64 * 1024

Handler = Callable[[Any, Any], Any]


class RouteTable:
    """
    Mapping of route tokens to caller handlers.

    A handler is called as ``handler(payload, correlation_id)`` where ``payload`` is a
    row, ``EOF``, or a ``QueryFailure``.
    """

    def __init__(self, handlers: Optional[Mapping[str, Handler]] = None) -> None:
        self._handlers: Dict[str, Handler] = dict(handlers or {})

    def __contains__(self, route: object) -> bool:
        return route in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    def register(self, route: str, handler: Handler) -> None:
        self._handlers[route] = handler

    def unregister(self, route: str) -> Optional[Handler]:
        return self._handlers.pop(route, None)

    def resolve(self, route: str) -> Optional[Handler]:
        return self._handlers.get(route)


class DBAgent:
    """
    Pool of worker processes executing named queries on behalf of the caller.

    Parameters
    ----------
    queries : Mapping[str, str]
        Query name to SQL text, copied to every worker.
    routes : RouteTable | Mapping[str, Handler] | None
        Where responses are delivered, keyed by route token.
    dsn : str | None
        Connection string for the workers. Defaults to one built from settings.
    count : int | None
        Number of workers, at least 1. Defaults to ``settings.agent_worker_count`` (3).
    debug : bool | None
        Run workers at DEBUG log level. Defaults to ``settings.agent_debug``.
    settings : Settings | None
        Settings override; the cached settings otherwise.
    worker_command : Sequence[str] | None
        Command line that starts one worker. Defaults to ``python -m dbagent.worker``.
    """

    def __init__(
        self,
        queries: Mapping[str, str],
        routes: Union[RouteTable, Mapping[str, Handler], None] = None,
        *,
        dsn: Optional[str] = None,
        count: Optional[int] = None,
        debug: Optional[bool] = None,
        settings: Optional[Settings] = None,
        worker_command: Optional[Sequence[str]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.queries: Dict[str, str] = dict(queries)
        self.routes = routes if isinstance(routes, RouteTable) else RouteTable(routes)
        self.dsn = dsn or build_dsn(self.settings)
        self.count = self.settings.agent_worker_count if count is None else count
        if self.count < 1:
            raise ValueError(f"Worker count must be at least 1, got {self.count}")
        self.debug = self.settings.agent_debug if debug is None else debug
        self.worker_command = list(worker_command) if worker_command else None
        self.pool: WorkerPool[WorkerHandle] = WorkerPool()
        self._tasks: List[asyncio.Task] = []
        self._started = False
        self._stopping = False

    async def __aenter__(self) -> "DBAgent":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def _worker_init(self) -> WorkerInit:
        return WorkerInit(
            dsn=self.dsn,
            queries=self.queries,
            dry_run_writes=self.settings.agent_dry_run_writes,
            report_failures=self.settings.agent_report_failures,
            throttle_delay_seconds=self.settings.agent_throttle_delay_seconds,
            log_level="DEBUG" if self.debug else "WARNING",
            log_json=self.settings.log_json,
        )

    def register(self, route: str, handler: Handler) -> None:
        """Deliver responses for ``route`` to ``handler``."""
        self.routes.register(route, handler)

    def workers(self) -> List[WorkerHandle]:
        """Handles currently in rotation."""
        return self.pool.snapshot()

    async def start(self) -> None:
        """
        Spawn ``count`` workers and begin reading their output.

        A worker that cannot be spawned is logged and skipped; the pool runs with the
        rest.
        """
        if self._started:
            return
        self._started = True
        self._stopping = False
        init = self._worker_init()
        for index in range(self.count):
            try:
                handle = await WorkerHandle.spawn(init, command=self.worker_command)
            except OSError:
                log.exception(
                    f"[WORKER SPAWN FAILED] worker {index + 1}/{self.count}",
                    extra={"worker_index": index},
                )
                continue
            self.pool.add(handle)
            self._tasks.append(asyncio.create_task(self._read_responses(handle)))
            self._tasks.append(asyncio.create_task(self._read_errors(handle)))
            log.info(
                f"[WORKER SPAWNED] pid {handle.pid} handle {handle.handle_id}",
                extra={"pid": handle.pid, "handle_id": handle.handle_id},
            )
        if not self.pool:
            log.error("[POOL EMPTY] no worker could be spawned", extra={"count": self.count})

    def query(
        self,
        query_name: str,
        route: str,
        *parameters: Any,
        correlation_id: Any = None,
        row_shape: RowShape = RowShape.POSITIONAL,
        throttle: bool = False,
    ) -> WorkerHandle:
        """
        Send a query to the next worker in rotation and return that worker's handle.

        Responses arrive later through the handler registered for ``route``. Neither
        the query name nor the parameter count is checked here.

        Raises
        ------
        PoolEmptyError
            If no worker is available.
        """
        request = QueryRequest(
            query_name=query_name,
            route=route,
            bind_parameters=list(parameters),
            correlation_id=correlation_id,
            row_shape=row_shape,
            throttle=throttle,
        )
        frame = encode_frame(request)
        handle = self.pool.next()
        log.debug(
            f"[DISPATCH] {query_name} -> pid {handle.pid} (route {route})",
            extra={"query": query_name, "route": route, "pid": handle.pid},
        )
        try:
            handle.send(frame)
        except WorkerGoneError:
            log.error(
                f"[DISPATCH FAILED] {query_name}: worker pid {handle.pid} is gone",
                extra={"query": query_name, "route": route, "pid": handle.pid},
            )
        return handle

    def _dispatch(self, frame: ResponseFrame) -> None:
        handler = self.routes.resolve(frame.route)
        if handler is None:
            log.warning(f"[NO ROUTE] {frame.route!r}", extra={"route": frame.route})
            return
        try:
            handler(frame.payload, frame.correlation_id)
        except Exception:  # noqa: BLE001 - a failing handler must not stop the reader
            log.exception(f"[HANDLER FAILED] route {frame.route!r}", extra={"route": frame.route})

    async def _read_responses(self, handle: WorkerHandle) -> None:
        decoder = FrameDecoder()
        while True:
            chunk = await handle.stdout.read(READ_CHUNK_BYTES)
            if not chunk:
                break
            try:
                raw_frames = decoder.feed(chunk)
            except FrameDecodeError as exc:
                log.warning(f"[FRAME DROPPED] pid {handle.pid}: {exc}", extra={"pid": handle.pid})
                continue
            for raw in raw_frames:
                try:
                    frame = decode_frame(raw)
                except FrameDecodeError as exc:
                    log.warning(
                        f"[FRAME DROPPED] pid {handle.pid}: {exc}", extra={"pid": handle.pid}
                    )
                    continue
                if not isinstance(frame, ResponseFrame):
                    log.warning(
                        f"[FRAME DROPPED] pid {handle.pid}: unexpected {frame.kind} frame",
                        extra={"pid": handle.pid},
                    )
                    continue
                self._dispatch(frame)
        if decoder.pending:
            log.warning(
                f"[FRAME DROPPED] pid {handle.pid}: {decoder.pending} trailing bytes",
                extra={"pid": handle.pid},
            )
        await self._worker_exited(handle)

    async def _read_errors(self, handle: WorkerHandle) -> None:
        while True:
            line = await handle.stderr.readline()
            if not line:
                break
            relay_worker_line(log, handle.pid, line)

    async def _worker_exited(self, handle: WorkerHandle) -> None:
        returncode = await handle.wait()
        if self._stopping:
            return
        self.pool.remove_by_handle_id(handle.handle_id)
        log.error(
            f"[WORKER EXITED] pid {handle.pid} returncode {returncode}; "
            f"{len(self.pool)} worker(s) left",
            extra={"pid": handle.pid, "returncode": returncode},
        )

    async def _await_exit(
        self, handles: Sequence[WorkerHandle], timeout: float
    ) -> List[WorkerHandle]:
        """Wait up to ``timeout`` for ``handles`` to exit; return the ones still alive."""
        if handles:
            await asyncio.gather(*(handle.wait(timeout) for handle in handles))
        return [handle for handle in handles if handle.alive]

    async def stop(self, grace_seconds: Optional[float] = None) -> None:
        """
        Terminate every worker: SIGTERM, wait, then SIGKILL whatever survived.

        The handle list is captured before ``kill_all`` empties the pool so the
        escalation still reaches the survivors.
        """
        if not self._started:
            return
        grace = self.settings.agent_shutdown_grace_seconds if grace_seconds is None else grace_seconds
        self._stopping = True

        handles = self.pool.snapshot()
        self.pool.kill_all(signal.SIGTERM)
        for handle in handles:
            handle.close_input()

        survivors = await self._await_exit(handles, grace)
        for handle in survivors:
            log.warning(
                f"[WORKER KILL] pid {handle.pid} ignored SIGTERM",
                extra={"pid": handle.pid, "grace_seconds": grace},
            )
            handle.send_signal(signal.SIGKILL)
        if survivors:
            await self._await_exit(survivors, grace)

        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=grace or None)
            for task in pending:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self._started = False
        log.info(
            f"[ORCHESTRATOR STOPPED] {len(handles)} worker(s) terminated",
            extra={"workers": len(handles), "killed": len(survivors)},
        )


__all__ = ["DBAgent", "Handler", "RouteTable"]
