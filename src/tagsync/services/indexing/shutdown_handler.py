"""
Graceful shutdown handler for the index dispatcher.

Translates SIGINT (Ctrl+C) and SIGTERM into a request to stop: workers finish
the batch they are dispatching, ack or nack it, and then exit. A second
signal is not intercepted differently; leases of an interrupted batch simply
expire and are redelivered.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import threading
from types import FrameType
from typing import Any, Callable, Optional, Union

from tagsync.exceptions import GracefulShutdownException

# Type for signal handlers as returned by signal.getsignal()
SignalHandlerType = Union[Callable[[int, Optional[FrameType]], Any], int, None]

logger = logging.getLogger(__name__)


class ShutdownHandler:
    """
    Process-wide handler for SIGINT/SIGTERM during dispatch.

    The handler is a singleton since signal handlers are process state.
    Besides the ``shutdown_requested`` flag it can set an ``asyncio.Event``
    so that sleeping dispatcher workers wake up immediately.

    Examples
    --------
    >>> handler = ShutdownHandler()
    >>> stop = asyncio.Event()
    >>> handler.install(stop_event=stop)
    >>> try:
    ...     await dispatcher.run(stop)
    ... finally:
    ...     handler.uninstall()
    """

    _instance: Optional["ShutdownHandler"] = None
    _lock = threading.Lock()

    _initialized: bool
    _shutdown_requested: bool
    _signal_received: Optional[str]
    _original_sigint: SignalHandlerType
    _original_sigterm: SignalHandlerType
    _installed: bool
    _stop_event: Optional[asyncio.Event]
    _loop: Optional[asyncio.AbstractEventLoop]

    def __new__(cls) -> "ShutdownHandler":
        """Ensure singleton instance for signal handling."""
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self) -> None:
        if self._initialized:
            return

        self._shutdown_requested = False
        self._signal_received = None
        self._original_sigint = None
        self._original_sigterm = None
        self._installed = False
        self._stop_event = None
        self._loop = None
        self._initialized = True

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested

    @property
    def signal_received(self) -> str | None:
        return self._signal_received

    def install(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """
        Install signal handlers for SIGINT and SIGTERM.

        Parameters
        ----------
        stop_event : asyncio.Event | None
            Event set when a signal arrives. Must be called from inside the
            running event loop when given.
        """
        if self._installed:
            return

        self._stop_event = stop_event
        self._loop = asyncio.get_running_loop() if stop_event is not None else None
        self._original_sigint = signal.getsignal(signal.SIGINT)
        self._original_sigterm = signal.getsignal(signal.SIGTERM)

        signal.signal(signal.SIGINT, self._handle_signal)
        signal.signal(signal.SIGTERM, self._handle_signal)

        self._installed = True
        logger.debug("Shutdown handlers installed for SIGINT and SIGTERM")

    def uninstall(self) -> None:
        """Restore the original handlers and clear the shutdown state."""
        if not self._installed:
            return

        if self._original_sigint is not None:
            signal.signal(signal.SIGINT, self._original_sigint)
        if self._original_sigterm is not None:
            signal.signal(signal.SIGTERM, self._original_sigterm)

        self._installed = False
        self._stop_event = None
        self._loop = None
        self.reset()
        logger.debug("Shutdown handlers uninstalled, original handlers restored")

    def _handle_signal(self, signum: int, frame: object) -> None:
        signal_name = signal.Signals(signum).name
        self._signal_received = signal_name
        self._shutdown_requested = True

        logger.warning(
            f"Received {signal_name} - stopping dispatcher after the current batch"
        )
        if self._stop_event is not None and self._loop is not None:
            self._loop.call_soon_threadsafe(self._stop_event.set)

    def check_shutdown(self) -> None:
        """
        Raise if a shutdown signal has been received.

        Raises
        ------
        GracefulShutdownException
            If a shutdown signal has been received.
        """
        if self._shutdown_requested:
            raise GracefulShutdownException(
                message=f"Graceful shutdown requested via {self._signal_received}",
                signal_received=self._signal_received or "SIGINT",
            )

    def reset(self) -> None:
        self._shutdown_requested = False
        self._signal_received = None


def get_shutdown_handler() -> ShutdownHandler:
    """Return the process-wide shutdown handler."""
    return ShutdownHandler()
