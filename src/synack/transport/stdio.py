"""Endpoints over a child process's stdin/stdout.

ChildProcessEndpoint is the parent side: it launches a subprocess and
exchanges newline-delimited JSON with it. ParentEndpoint is the child
side: it reads its own stdin and writes to its own stdout.

Wire format (UTF-8, one JSON value per line):
    parent -> child stdin:  {"_cmd": "synack|syn", "_ack": 1, "_ev": "message", "_msg": "ping"}\n
    child stdout -> parent: {"_cmd": "synack|ack", "_ack": 1, "_msg": "pong"}\n

Anything the child writes to stderr is forwarded to the debug log. Since
stdout is the channel, a child must keep its own logging on stderr.
Auxiliary handles (sockets, servers) cannot cross a pipe and are dropped
with a warning.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import sys
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, TextIO

from ..errors import ChannelClosedError
from .base import BaseEndpoint

logger = logging.getLogger(__name__)

ENCODING = "utf-8"

# Longest JSON line either side accepts; asyncio's own default is 64 KiB
DEFAULT_LINE_LIMIT = 16 * 1024 * 1024


@dataclass
class ChildProcessConfig:
    """Configuration for launching a child process endpoint."""

    command: list[str] = field(default_factory=list)
    cwd: str | None = None
    env: dict[str, str] | None = None

    # Seconds to wait for a graceful exit before killing the child
    stop_timeout: float = 5.0

    # Bytes per line read from the child's stdout and stderr
    line_limit: int = DEFAULT_LINE_LIMIT

    @classmethod
    def python(cls, script: str, *args: str, **kwargs: Any) -> ChildProcessConfig:
        """Config running ``script`` with the current interpreter."""
        return cls(command=[sys.executable, script, *args], **kwargs)


def _decode_line(raw: bytes) -> Any:
    return json.loads(raw.decode(ENCODING))


def _encode_line(payload: Any) -> bytes:
    return (json.dumps(payload) + "\n").encode(ENCODING)


async def _read_frames(reader: asyncio.StreamReader, source: str) -> AsyncIterator[Any]:
    """Yield decoded payloads from ``reader`` until EOF.

    Blank lines, lines that are not JSON and lines longer than the
    reader's limit are logged and skipped; only EOF ends the stream.
    """
    while True:
        try:
            line = await reader.readline()
        except ValueError as e:
            # readline() has already discarded the oversized data
            logger.warning(f"Skipping oversized line from {source}: {e}")
            continue
        if not line:
            logger.debug(f"{source} closed")
            return
        if not line.strip():
            continue
        try:
            payload = _decode_line(line)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.debug(f"Skipping non-JSON line from {source}: {e}")
            continue
        yield payload


class ChildProcessEndpoint(BaseEndpoint):
    """Parent-side endpoint for a spawned child process."""

    def __init__(self, config: ChildProcessConfig, name: str | None = None):
        super().__init__(name)
        self.config = config
        self._process: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    @property
    def connected(self) -> bool:
        if self._closed or self._process is None or self._process.stdin is None:
            return False
        return self._process.returncode is None and not self._process.stdin.is_closing()

    async def start(self) -> None:
        """Launch the child and begin reading its stdout."""
        if self._process is not None:
            return
        if not self.config.command:
            raise ValueError("ChildProcessConfig.command is empty")

        env = None
        if self.config.env:
            env = {**os.environ, **self.config.env}

        self._process = await asyncio.create_subprocess_exec(
            *self.config.command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.config.cwd,
            env=env,
            limit=self.config.line_limit,
        )
        self._reader_task = asyncio.create_task(self._read_loop())
        self._stderr_task = asyncio.create_task(self._read_stderr())

        logger.info(f"Launched child: {' '.join(self.config.command)} (pid={self._process.pid})")

    async def stop(self) -> None:
        """Close the channel and terminate the child."""
        process = self._process
        if process is None:
            self.close()
            return

        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()

        # Closing stdin is the shutdown signal; escalate only if it is ignored
        try:
            await asyncio.wait_for(process.wait(), timeout=self.config.stop_timeout)
        except TimeoutError:
            logger.warning(f"{self.name} did not exit after stdin closed, terminating")
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=self.config.stop_timeout)
            except TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

        for task in (self._reader_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        logger.info(f"Child terminated (pid={process.pid}, returncode={process.returncode})")
        self.close()

    def send(self, payload: Any, handle: Any = None, *, keep_open: bool = False) -> bool:
        """Write one payload as a JSON line to the child's stdin.

        Raises:
            ChannelClosedError: If the child is not running
        """
        if handle is not None:
            logger.warning(f"{self.name} cannot pass handles over stdio; handle dropped")
        if not self.connected or self._process is None or self._process.stdin is None:
            raise ChannelClosedError(f"{self.name} is not connected")

        self._process.stdin.write(_encode_line(payload))
        return True

    async def _read_loop(self) -> None:
        if self._process is None or self._process.stdout is None:
            return
        stdout = self._process.stdout

        try:
            async for payload in _read_frames(stdout, f"{self.name} stdout"):
                self.deliver(payload)
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception(f"Read loop error on {self.name}")
        finally:
            self.close()

    async def _read_stderr(self) -> None:
        if self._process is None or self._process.stderr is None:
            return
        try:
            while True:
                try:
                    line = await self._process.stderr.readline()
                except ValueError:
                    logger.debug(f"[{self.name} stderr] <line over {self.config.line_limit} bytes skipped>")
                    continue
                if not line:
                    break
                logger.debug(f"[{self.name} stderr] {line.decode(ENCODING, errors='replace').rstrip()}")
        except asyncio.CancelledError:
            pass

    async def __aenter__(self) -> ChildProcessEndpoint:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()


class ParentEndpoint(BaseEndpoint):
    """Child-side endpoint talking to the parent over stdin/stdout."""

    def __init__(
        self,
        stdin: TextIO | None = None,
        stdout: TextIO | None = None,
        name: str | None = None,
        limit: int = DEFAULT_LINE_LIMIT,
    ):
        super().__init__(name or "parent")
        self.limit = limit
        self._stdin = stdin or sys.stdin
        self._stdout = stdout or sys.stdout
        self._reader_task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        """Begin reading stdin on the running loop."""
        if self._reader_task is not None:
            return

        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=self.limit)
        protocol = asyncio.StreamReaderProtocol(reader)
        await loop.connect_read_pipe(lambda: protocol, self._stdin)

        self._reader_task = asyncio.create_task(self._read_loop(reader))

    async def wait_closed(self) -> None:
        """Block until the parent closes our stdin."""
        if self._reader_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task

    def send(self, payload: Any, handle: Any = None, *, keep_open: bool = False) -> bool:
        """Write one payload as a JSON line to stdout.

        Raises:
            ChannelClosedError: If stdin already reached EOF
        """
        if handle is not None:
            logger.warning(f"{self.name} cannot pass handles over stdio; handle dropped")
        if self._closed:
            raise ChannelClosedError(f"{self.name} is not connected")

        self._stdout.write(json.dumps(payload) + "\n")
        self._stdout.flush()
        return True

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        try:
            async for payload in _read_frames(reader, "stdin"):
                self.deliver(payload)
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Error reading stdin")
        finally:
            self.close()
