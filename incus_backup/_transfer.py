"""Streaming transfer pipeline.

Moves a payload from a producer (host export, file, repository dump) to a
consumer (file, repository backup stdin, host import) through a bounded
in-memory pipe, hashing the bytes on the way and reporting progress.
"""

import asyncio
import hashlib
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Deque, Optional

from ._utils import logger
from .config import TransferConfig
from .errors import PipeClosedError, TransferError

ProgressCallback = Callable[[int, Optional[int], str], None]


@dataclass(frozen=True)
class TransferResult:
    """Outcome of a completed transfer."""
    sha256: str
    size: int


class Pipe:
    """Bounded single-producer, single-consumer chunk pipe.

    ``put`` blocks while ``maxsize`` chunks are buffered. ``abort`` discards
    buffered data and makes every pending and future ``put``/``get`` raise
    ``PipeClosedError`` chained to the abort reason.
    """

    def __init__(self, maxsize: int = 8):
        if maxsize <= 0:
            raise ValueError(f"maxsize must be positive, got {maxsize}")
        self._maxsize = maxsize
        self._buffer: Deque[bytes] = deque()
        self._eof = False
        self._error: Optional[BaseException] = None
        self._readable = asyncio.Event()
        self._writable = asyncio.Event()
        self._writable.set()

    @property
    def closed(self) -> bool:
        return self._eof or self._error is not None

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    @property
    def drained(self) -> bool:
        """True once EOF was signalled and every chunk was consumed."""
        return self._eof and not self._buffer

    def _raise_if_aborted(self) -> None:
        if self._error is not None:
            raise PipeClosedError(f"pipe closed: {self._error!r}") from self._error

    async def put(self, chunk: bytes) -> None:
        while len(self._buffer) >= self._maxsize and not self.closed:
            self._writable.clear()
            await self._writable.wait()
        self._raise_if_aborted()
        if self._eof:
            raise PipeClosedError("write after end of stream")
        self._buffer.append(chunk)
        self._readable.set()

    async def get(self) -> Optional[bytes]:
        """Return the next chunk, or None at end of stream."""
        while not self._buffer and not self.closed:
            self._readable.clear()
            await self._readable.wait()
        self._raise_if_aborted()
        if self._buffer:
            chunk = self._buffer.popleft()
            self._writable.set()
            return chunk
        return None

    def close(self) -> None:
        """Signal end of stream; buffered chunks remain readable."""
        self._eof = True
        self._readable.set()
        self._writable.set()

    def abort(self, error: BaseException) -> None:
        """Close the pipe with an error. The first error is kept."""
        if self._error is None:
            self._error = error
        self._buffer.clear()
        self._readable.set()
        self._writable.set()

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        chunk = await self.get()
        if chunk is None:
            raise StopAsyncIteration
        return chunk


class BlockingPipeReader:
    """File-like view of a pipe for blocking consumers running in a worker thread.

    Each ``read`` schedules ``pipe.get`` on the event loop and waits for it,
    so the pipe itself is only ever touched from the loop thread.
    """

    def __init__(self, pipe: Pipe, loop: asyncio.AbstractEventLoop):
        self._pipe = pipe
        self._loop = loop
        self._pending = b""
        self._eof = False

    def readable(self) -> bool:
        return True

    def _next_chunk(self) -> Optional[bytes]:
        return asyncio.run_coroutine_threadsafe(self._pipe.get(), self._loop).result()

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            parts = [self._pending]
            self._pending = b""
            while not self._eof:
                chunk = self._next_chunk()
                if chunk is None:
                    self._eof = True
                else:
                    parts.append(chunk)
            return b"".join(parts)

        while len(self._pending) < size and not self._eof:
            chunk = self._next_chunk()
            if chunk is None:
                self._eof = True
            else:
                self._pending += chunk
        data, self._pending = self._pending[:size], self._pending[size:]
        return data

    def close(self) -> None:
        pass


class _ProgressThrottle:
    """Debounces progress callbacks to at most one per interval."""

    def __init__(self, callback: Optional[ProgressCallback], total: Optional[int], label: str, interval: float):
        self.callback = callback
        self.total = total
        self.label = label
        self.interval = interval
        self._last = None

    def update(self, done: int) -> None:
        if self.callback is None:
            return
        now = time.monotonic()
        if self._last is None or now - self._last >= self.interval:
            self._last = now
            self.callback(done, self.total, self.label)

    def finish(self, done: int) -> None:
        if self.callback is not None:
            self.callback(done, self.total, self.label)


async def iter_source(source: Any, chunk_size: int) -> AsyncIterator[bytes]:
    """Yield chunks from any supported source.

    Supported sources: objects with an async ``read(n)``, async iterables
    of bytes, blocking binary file-likes (read in a worker thread) and
    plain bytes.
    """
    if isinstance(source, (bytes, bytearray, memoryview)):
        data = bytes(source)
        for offset in range(0, len(data), chunk_size):
            yield data[offset:offset + chunk_size]
        return

    read = getattr(source, "read", None)
    if read is not None and asyncio.iscoroutinefunction(read):
        while True:
            chunk = await read(chunk_size)
            if not chunk:
                return
            yield bytes(chunk)

    if hasattr(source, "__aiter__"):
        async for chunk in source:
            if chunk:
                yield bytes(chunk)
        return

    if read is not None:
        while True:
            chunk = await asyncio.to_thread(read, chunk_size)
            if not chunk:
                return
            yield bytes(chunk)

    raise TypeError(f"unsupported transfer source: {type(source).__name__}")


async def _drain_into(sink: Any, pipe: Pipe) -> None:
    if hasattr(sink, "drain") and hasattr(sink, "write"):
        # asyncio.StreamWriter: non-blocking write plus flow control
        async for chunk in pipe:
            sink.write(chunk)
            await sink.drain()
        return

    write = getattr(sink, "write", None)
    if write is not None:
        async for chunk in pipe:
            if asyncio.iscoroutinefunction(write):
                await write(chunk)
            else:
                await asyncio.to_thread(write, chunk)
        return

    if callable(sink):
        await sink(pipe)
        return

    raise TypeError(f"unsupported transfer sink: {type(sink).__name__}")


def blocking_consumer(func: Callable[[BlockingPipeReader], Any]) -> Callable[[Pipe], Any]:
    """Adapt a blocking ``func(readable)`` into a transfer sink.

    The function runs in a worker thread and reads the pipe through a
    ``BlockingPipeReader``.
    """
    async def sink(pipe: Pipe) -> Any:
        reader = BlockingPipeReader(pipe, asyncio.get_running_loop())
        return await asyncio.to_thread(func, reader)
    return sink


def _task_error(task: "asyncio.Task") -> Optional[BaseException]:
    if task.cancelled():
        return asyncio.CancelledError()
    return task.exception()


def _first_error(producer_error: Optional[BaseException], consumer_error: Optional[BaseException]) -> Optional[BaseException]:
    """Pick the error to report; pipe-closed side effects lose to real causes."""
    if producer_error is not None and not isinstance(producer_error, PipeClosedError):
        return producer_error
    if consumer_error is not None and not isinstance(consumer_error, PipeClosedError):
        return consumer_error
    return producer_error or consumer_error


async def transfer(
    source: Any,
    sink: Any,
    expected_size: Optional[int] = None,
    label: str = "",
    progress: Optional[ProgressCallback] = None,
    config: Optional[TransferConfig] = None,
) -> TransferResult:
    """Stream ``source`` into ``sink`` while computing a SHA-256 digest.

    Producer and consumer run as two tasks joined by a bounded ``Pipe``.
    Both tasks are always awaited before this returns or raises.

    Args:
        source: Async reader, async iterable, blocking file-like or bytes
        sink: Async/blocking writable, ``asyncio.StreamWriter``, or an async
            callable that consumes the pipe as an async iterator of chunks
        expected_size: Total size passed through to ``progress``
        label: Name used in progress output and error messages
        progress: Optional ``callback(bytes_done, expected_size, label)``
        config: Chunk size, buffer depth and progress interval

    Returns:
        TransferResult with hex digest and byte count

    Raises:
        TransferError: The first real error of either side, chained to it
    """
    config = config or TransferConfig()
    pipe = Pipe(config.queue_depth)
    digest = hashlib.sha256()
    throttle = _ProgressThrottle(progress, expected_size, label, config.progress_interval)
    transferred = 0

    async def produce() -> None:
        nonlocal transferred
        try:
            async for chunk in iter_source(source, config.chunk_size):
                digest.update(chunk)
                transferred += len(chunk)
                throttle.update(transferred)
                await pipe.put(chunk)
        except BaseException as exc:
            pipe.abort(exc)
            raise
        pipe.close()
        throttle.finish(transferred)

    async def consume() -> None:
        try:
            await _drain_into(sink, pipe)
            if not pipe.drained:
                raise PipeClosedError("consumer stopped before end of stream")
        except BaseException as exc:
            pipe.abort(exc)
            raise

    producer = asyncio.ensure_future(produce())
    consumer = asyncio.ensure_future(consume())
    try:
        await asyncio.wait({producer, consumer})
    except asyncio.CancelledError:
        pipe.abort(asyncio.CancelledError())
        producer.cancel()
        consumer.cancel()
        await asyncio.gather(producer, consumer, return_exceptions=True)
        raise

    error = _first_error(_task_error(producer), _task_error(consumer))
    if error is not None:
        logger.debug(f"Transfer {label or '<unnamed>'} failed after {transferred:,} bytes: {error!r}")
        raise TransferError(str(error) or type(error).__name__, label=label) from error

    logger.debug(f"Transfer {label or '<unnamed>'} complete: {transferred:,} bytes")
    return TransferResult(sha256=digest.hexdigest(), size=transferred)


async def hash_source(source: Any, chunk_size: int = 1024 * 1024) -> TransferResult:
    """Compute the SHA-256 digest of a source without a consumer."""
    digest = hashlib.sha256()
    size = 0
    async for chunk in iter_source(source, chunk_size):
        digest.update(chunk)
        size += len(chunk)
    return TransferResult(sha256=digest.hexdigest(), size=size)


def root_cause(error: BaseException) -> BaseException:
    """Unwrap TransferError chains down to the originating exception."""
    while isinstance(error, TransferError) and error.__cause__ is not None:
        error = error.__cause__
    return error
