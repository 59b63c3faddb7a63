"""
Worker process supervision.

A ``WorkerHandle`` owns one child process started with three pipes: stdin carries
request frames, stdout carries response frames, stderr carries the worker's logs.
"""

from __future__ import annotations

import asyncio
import itertools
import sys
from typing import List, Mapping, Optional, Sequence

import psutil

from dbagent.domain.models import WorkerInit
from dbagent.protocol.codec import encode_frame
from dbagent.utils.logging import get_logger

log = get_logger(__name__)

WORKER_MODULE = "dbagent.worker"

_handle_ids = itertools.count(1)


def default_worker_command() -> List[str]:
    """Interpreter command line that runs the worker loop."""
    cmdline = [sys.executable]
    if sys.flags.isolated:
        cmdline.append("-I")
    cmdline.extend(["-m", WORKER_MODULE])
    return cmdline


class WorkerGoneError(ConnectionError):
    """Raised when writing to a worker whose stdin is no longer open."""


class WorkerHandle:
    """
    Parent-side handle on one worker process.

    Attributes
    ----------
    pid : int
        Operating system process id.
    handle_id : int
        Process-local identifier, unique for the lifetime of the orchestrator.
    """

    def __init__(self, process: asyncio.subprocess.Process, handle_id: Optional[int] = None) -> None:
        self._process = process
        self.pid: int = process.pid
        self.handle_id: int = handle_id if handle_id is not None else next(_handle_ids)

    def __repr__(self) -> str:
        return f"WorkerHandle(pid={self.pid}, handle_id={self.handle_id})"

    @classmethod
    async def spawn(
        cls,
        init: WorkerInit,
        command: Optional[Sequence[str]] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> "WorkerHandle":
        """
        Start a worker process and send it its init frame.

        Raises
        ------
        OSError
            If the process cannot be created.
        """
        cmdline = list(command) if command else default_worker_command()
        process = await asyncio.create_subprocess_exec(
            *cmdline,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=dict(env) if env is not None else None,
        )
        handle = cls(process)
        handle.send(encode_frame(init))
        return handle

    @property
    def stdin(self) -> asyncio.StreamWriter:
        return self._process.stdin

    @property
    def stdout(self) -> asyncio.StreamReader:
        return self._process.stdout

    @property
    def stderr(self) -> asyncio.StreamReader:
        return self._process.stderr

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    @property
    def alive(self) -> bool:
        return self._process.returncode is None

    def send(self, data: bytes) -> None:
        """
        Queue ``data`` on the worker's stdin without waiting for it to drain.

        Raises
        ------
        WorkerGoneError
            If stdin is closed or closing.
        """
        writer = self._process.stdin
        if writer is None or writer.is_closing():
            raise WorkerGoneError(f"stdin of worker pid {self.pid} is closed")
        writer.write(data)

    def close_input(self) -> None:
        """Close stdin; the worker drains and exits once it reads EOF."""
        writer = self._process.stdin
        if writer is not None and not writer.is_closing():
            writer.close()

    def send_signal(self, sig: int) -> bool:
        """Deliver ``sig``; returns False if the process is already gone."""
        if not self.alive:
            return False
        try:
            self._process.send_signal(sig)
        except ProcessLookupError:
            return False
        return True

    async def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Wait for exit and return the exit code, or None on timeout."""
        try:
            return await asyncio.wait_for(self._process.wait(), timeout)
        except asyncio.TimeoutError:
            return None

    def rss_bytes(self) -> Optional[int]:
        """Resident memory of the worker, or None if it cannot be read."""
        try:
            return psutil.Process(self.pid).memory_info().rss
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None


__all__ = ["WorkerGoneError", "WorkerHandle", "default_worker_command"]
