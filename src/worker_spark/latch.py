"""Wait primitive for the main loop.

A :class:`Latch` is a self-pipe: setting it writes one byte, which makes a
loop blocked in :meth:`Latch.wait` return at once. Writing to a pipe is
async-signal safe, so signal handlers may set the latch and nothing else.

The same wait also watches a :class:`HostWatch`, the read end of a pipe
whose write end only the supervising host holds. When the host exits for any
reason the kernel closes that write end and the read end reports EOF, so the
worker notices host death without polling.

::

    latch = Latch()
    event = latch.wait(10, host_watch)
    latch.reset()
    if event & WakeEvent.HOST_DEATH:
        os._exit(1)
"""

from __future__ import annotations

import enum
import os
import select
import selectors
import time

# epoll and poll take the timeout as a C int of milliseconds.
MAX_WAIT_SLICE = 2**31 // 1000 - 1


class WakeEvent(enum.Flag):
    """Why :meth:`Latch.wait` returned. Several may be set at once."""

    NONE = 0
    LATCH_SET = enum.auto()
    TIMEOUT = enum.auto()
    HOST_DEATH = enum.auto()


class HostWatch:
    """Read end of the host-death pipe."""

    def __init__(self, fd: int):
        self._fd = fd

    @classmethod
    def pipe(cls) -> tuple[HostWatch, int]:
        """Create a watch and return it with the write end the host keeps."""
        read_fd, write_fd = os.pipe()
        return cls(read_fd), write_fd

    def fileno(self) -> int:
        return self._fd

    def host_alive(self) -> bool:
        """Non-blocking check; the pipe only becomes readable at EOF."""
        readable, _, _ = select.select([self._fd], [], [], 0)
        return not readable

    def close(self) -> None:
        if self._fd >= 0:
            os.close(self._fd)
            self._fd = -1


class Latch:
    """Self-pipe latch that can be set from a signal handler."""

    def __init__(self) -> None:
        self._read_fd, self._write_fd = os.pipe()
        os.set_blocking(self._read_fd, False)
        os.set_blocking(self._write_fd, False)
        self._is_set = False

    @property
    def is_set(self) -> bool:
        return self._is_set

    def fileno(self) -> int:
        """Readable whenever the latch is set."""
        return self._read_fd

    def set(self) -> None:
        """Wake the waiter. No locking, no blocking."""
        self._is_set = True
        try:
            os.write(self._write_fd, b"\x00")
        except BlockingIOError:
            # Pipe already full of wake bytes.
            pass

    def reset(self) -> None:
        """Clear the latch and drain pending wake bytes."""
        self._is_set = False
        while True:
            try:
                if not os.read(self._read_fd, 512):
                    break
            except BlockingIOError:
                break

    def wait(self, timeout: float | None, host_watch: HostWatch | None = None) -> WakeEvent:
        """Block until set, timeout or host death, whichever comes first.

        Timeouts longer than :data:`MAX_WAIT_SLICE` are waited out in slices
        against a monotonic deadline.

        Args:
            timeout: Seconds to wait; ``None`` waits without a timeout.
            host_watch: Optional host-death pipe to watch as well.

        Returns:
            The set of events that ended the wait.
        """
        event = WakeEvent.NONE
        deadline = None if timeout is None else time.monotonic() + timeout
        with selectors.DefaultSelector() as selector:
            selector.register(self._read_fd, selectors.EVENT_READ, WakeEvent.LATCH_SET)
            if host_watch is not None:
                selector.register(host_watch.fileno(), selectors.EVENT_READ, WakeEvent.HOST_DEATH)
            while True:
                if self._is_set:
                    remaining: float | None = 0
                elif deadline is None:
                    remaining = None
                else:
                    remaining = min(max(0.0, deadline - time.monotonic()), MAX_WAIT_SLICE)
                ready = selector.select(remaining)
                if ready or self._is_set or deadline is None or time.monotonic() >= deadline:
                    break

        for key, _ in ready:
            event |= key.data
        if self._is_set:
            event |= WakeEvent.LATCH_SET
        if not ready and not self._is_set:
            event |= WakeEvent.TIMEOUT
        return event

    def close(self) -> None:
        for fd in (self._read_fd, self._write_fd):
            if fd >= 0:
                os.close(fd)
        self._read_fd = self._write_fd = -1


__all__ = ["HostWatch", "Latch", "MAX_WAIT_SLICE", "WakeEvent"]
