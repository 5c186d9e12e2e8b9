# linkgrab/infra/process_runner.py
"""
asyncio-backed implementation of the ``ProcessRunner`` port.

``run`` captures everything (metadata phase), ``spawn`` hands back a stream
over stdout (data phase). Terminating a spawned process sends SIGTERM,
waits ``kill_grace_seconds`` and then SIGKILLs.
"""
from __future__ import annotations

import asyncio
from typing import Sequence

from linkgrab.core.ports import ProcessResult
from linkgrab.infra.logging_config import get_logger

logger = get_logger(__name__)


class SpawnedProcess:
    """A running child process with stdout piped."""

    def __init__(self, process: asyncio.subprocess.Process, kill_grace_seconds: float = 5.0):
        if process.stdout is None:
            raise OSError("child process has no stdout pipe")
        self._process = process
        self._stdout = process.stdout
        self._kill_grace_seconds = kill_grace_seconds

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    async def read(self, n: int) -> bytes:
        return await self._stdout.read(n)

    async def wait(self) -> int:
        return await self._process.wait()

    async def terminate(self) -> None:
        if self._process.returncode is not None:
            return
        try:
            self._process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(self._process.wait(), timeout=self._kill_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"Process {self.pid} ignored SIGTERM, killing")
            try:
                self._process.kill()
            except ProcessLookupError:
                return
            await self._process.wait()


class AsyncioProcessRunner:
    """Runs external commands with ``asyncio.create_subprocess_exec``."""

    def __init__(self, kill_grace_seconds: float = 5.0):
        self._kill_grace_seconds = kill_grace_seconds

    async def run(self, argv: Sequence[str]) -> ProcessResult:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise
        return ProcessResult(
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout or b"",
            stderr=stderr or b"",
        )

    async def spawn(self, argv: Sequence[str]) -> SpawnedProcess:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        logger.debug(f"Spawned {argv[0]} pid={proc.pid}")
        return SpawnedProcess(proc, kill_grace_seconds=self._kill_grace_seconds)
