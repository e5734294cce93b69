"""Line-delimited JSON channel to a spawned worker process.

The worker speaks newline-delimited JSON on stdout and may write free-form
logs on stderr.  A single read from the pipe can carry a partial line or
several lines at once, so incoming bytes go through ``LineDecoder`` before
being parsed.

Usage::

    channel = MessageChannel(["garmin-mcp"], env=env)
    channel.on_message(handle)
    await channel.start()
    await channel.send(b'{"jsonrpc": "2.0", ...}\\n')
    await channel.close()
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Callable, Sequence

from trainsync.wearables.errors import ProviderConnectionError

logger = logging.getLogger("trainsync.wearables.mcp.channel")

_READ_CHUNK_BYTES = 64 * 1024

MessageHandler = Callable[[dict[str, Any]], None]
CloseHandler = Callable[[Exception | None], None]


class LineDecoder:
    """Reassemble complete lines from arbitrarily split byte chunks."""

    def __init__(self) -> None:
        self._buffer = b""

    def feed(self, chunk: bytes) -> list[bytes]:
        """Add a chunk and return every line it completed (without newlines)."""
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split(b"\n")
        return lines

    def reset(self) -> None:
        self._buffer = b""

    @property
    def pending(self) -> bytes:
        """Bytes received after the last newline."""
        return self._buffer


class MessageChannel:
    """Duplex JSON-lines stream over a child process's stdin/stdout."""

    def __init__(
        self,
        command: Sequence[str],
        env: dict[str, str] | None = None,
    ) -> None:
        if not command:
            raise ValueError("MessageChannel requires a non-empty command")
        self._command = list(command)
        self._env = env
        self._process: asyncio.subprocess.Process | None = None
        self._decoder = LineDecoder()
        self._message_handlers: list[MessageHandler] = []
        self._close_handlers: list[CloseHandler] = []
        self._tasks: list[asyncio.Task] = []
        self._closed = True

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def on_message(self, handler: MessageHandler) -> None:
        """Register a callback for every decoded JSON object."""
        self._message_handlers.append(handler)

    def on_close(self, handler: CloseHandler) -> None:
        """Register a callback fired once when the channel closes."""
        self._close_handlers.append(handler)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Spawn the worker and begin reading its output streams.

        Raises:
            ProviderConnectionError: If the process cannot be spawned.
        """
        if not self._closed:
            return

        env = {**os.environ, **(self._env or {})}
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self._command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as exc:
            logger.error("Failed to start worker %s: %s", self._command[0], exc)
            raise ProviderConnectionError(
                f"Failed to start worker '{self._command[0]}': {exc}"
            ) from exc

        self._closed = False
        self._decoder.reset()
        logger.info("Started worker %s (pid=%s)", self._command[0], self._process.pid)
        self._tasks = [
            asyncio.create_task(self._read_stdout()),
            asyncio.create_task(self._read_stderr()),
        ]

    async def send(self, data: bytes) -> None:
        """Write raw bytes to the worker's stdin.

        Raises:
            ProviderConnectionError: If the channel is closed or the write fails.
        """
        if self._closed or self._process is None or self._process.stdin is None:
            raise ProviderConnectionError("Channel is closed")
        try:
            self._process.stdin.write(data)
            await self._process.stdin.drain()
        except (ConnectionError, RuntimeError, OSError) as exc:
            self._mark_closed(exc)
            raise ProviderConnectionError(f"Write to worker failed: {exc}") from exc

    async def close(self) -> None:
        """Terminate the worker and stop the reader tasks."""
        process = self._process
        self._mark_closed(None)
        if process is not None and process.returncode is None:
            try:
                if process.stdin is not None:
                    process.stdin.close()
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("Worker pid=%s ignored SIGTERM, killing", process.pid)
                process.kill()
                await process.wait()

        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()
        self._tasks = []
        self._process = None

    # ------------------------------------------------------------------
    # Incoming data
    # ------------------------------------------------------------------

    def handle_chunk(self, chunk: bytes) -> None:
        """Decode a raw stdout chunk and dispatch each complete message."""
        for line in self._decoder.feed(chunk):
            if not line.strip():
                continue
            try:
                message = json.loads(line)
            except (json.JSONDecodeError, UnicodeDecodeError):
                logger.debug("Non-JSON line from worker: %r", line[:200])
                continue
            if not isinstance(message, dict):
                logger.debug("Ignoring non-object JSON from worker: %r", line[:200])
                continue
            for handler in self._message_handlers:
                try:
                    handler(message)
                except Exception:
                    logger.exception("Message handler failed")

    async def _read_stdout(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        stdout = self._process.stdout
        try:
            while True:
                chunk = await stdout.read(_READ_CHUNK_BYTES)
                if not chunk:
                    break
                self.handle_chunk(chunk)
        except (ConnectionError, OSError) as exc:
            self._mark_closed(exc)
            return
        returncode = await self._process.wait() if self._process else None
        logger.info("Worker exited with code %s", returncode)
        self._mark_closed(None)

    async def _read_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        stderr = self._process.stderr
        while True:
            raw = await stderr.readline()
            if not raw:
                return
            text = raw.decode("utf-8", errors="replace").rstrip()
            if not text:
                continue
            # Workers log to stderr; only some of it is an actual error
            if "error" in text.lower():
                logger.error("Worker stderr: %s", text)
            else:
                logger.debug("Worker stderr: %s", text)

    def _mark_closed(self, exc: Exception | None) -> None:
        if self._closed:
            return
        self._closed = True
        for handler in self._close_handlers:
            try:
                handler(exc)
            except Exception:
                logger.exception("Close handler failed")
