"""Bounded, blocking in-process byte pipe.

The archive producer writes into one end while the uploader reads from the
other. At most ``capacity`` bytes are ever buffered: writers block while the
buffer is full and readers block while it is empty. Either side can end the
stream early and the other side observes it instead of hanging.
"""
from __future__ import annotations

import threading
from typing import Optional, Tuple

DEFAULT_PIPE_CAPACITY = 1024 * 1024


class _Channel:
    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("pipe capacity must be positive")
        self.capacity = capacity
        self.buffer = bytearray()
        self.cond = threading.Condition()
        self.writer_closed = False
        self.reader_closed = False
        self.error: Optional[BaseException] = None
        self.max_buffered = 0
        self.bytes_written = 0
        self.bytes_read = 0


class PipeWriter:
    def __init__(self, channel: _Channel) -> None:
        self._ch = channel

    @property
    def closed(self) -> bool:
        return self._ch.writer_closed

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:
        ch = self._ch
        view = memoryview(data).cast("B")
        written = 0
        with ch.cond:
            while written < len(view):
                if ch.writer_closed:
                    raise ValueError("write to closed pipe")
                if ch.reader_closed:
                    raise BrokenPipeError("read end of pipe closed")
                room = ch.capacity - len(ch.buffer)
                if room == 0:
                    ch.cond.wait()
                    continue
                chunk = view[written:written + room]
                ch.buffer.extend(chunk)
                written += len(chunk)
                ch.bytes_written += len(chunk)
                ch.max_buffered = max(ch.max_buffered, len(ch.buffer))
                ch.cond.notify_all()
        return written

    def flush(self) -> None:
        pass

    def close(self, error: Optional[BaseException] = None) -> None:
        """End the stream; a non-None *error* is raised to the reader."""

        ch = self._ch
        with ch.cond:
            if ch.writer_closed:
                return
            ch.writer_closed = True
            ch.error = error
            ch.cond.notify_all()


class PipeReader:
    def __init__(self, channel: _Channel) -> None:
        self._ch = channel

    @property
    def closed(self) -> bool:
        return self._ch.reader_closed

    @property
    def max_buffered(self) -> int:
        return self._ch.max_buffered

    @property
    def capacity(self) -> int:
        return self._ch.capacity

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        """Return up to *size* bytes, blocking until some are available.

        Returns ``b""`` at end of stream. Raises the writer's error once the
        buffered bytes are drained.
        """

        ch = self._ch
        with ch.cond:
            while True:
                if ch.reader_closed:
                    raise ValueError("read from closed pipe")
                if ch.buffer:
                    if size is None or size < 0:
                        size = len(ch.buffer)
                    data = bytes(ch.buffer[:size])
                    del ch.buffer[:size]
                    ch.bytes_read += len(data)
                    ch.cond.notify_all()
                    return data
                if ch.writer_closed:
                    if ch.error is not None:
                        raise ch.error
                    return b""
                ch.cond.wait()

    def close(self) -> None:
        ch = self._ch
        with ch.cond:
            ch.reader_closed = True
            ch.buffer.clear()
            ch.cond.notify_all()


def make_pipe(capacity: int = DEFAULT_PIPE_CAPACITY) -> Tuple[PipeReader, PipeWriter]:
    channel = _Channel(capacity)
    return PipeReader(channel), PipeWriter(channel)


__all__ = ["DEFAULT_PIPE_CAPACITY", "PipeReader", "PipeWriter", "make_pipe"]
