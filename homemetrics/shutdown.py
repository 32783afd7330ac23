"""Daemon shutdown on SIGTERM / SIGINT."""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Callable

import structlog

logger = structlog.get_logger()

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def install_signal_handlers(
    shutdown_event: asyncio.Event,
    *,
    on_signal: Callable[[signal.Signals], None] | None = None,
) -> Callable[[], None]:
    """Set *shutdown_event* on the first SIGTERM or SIGINT.

    *on_signal* runs once, before the event is set, so the daemon can mark
    itself as stopping while the scheduler and the session refresher wind
    down. Signals arriving after that are logged and ignored.

    Must be called from the running event loop. Returns a callable that
    removes the handlers again.
    """
    loop = asyncio.get_running_loop()

    def _handle(sig: signal.Signals) -> None:
        if shutdown_event.is_set():
            logger.warning("shutdown_already_requested", signal=sig.name)
            return
        logger.info("shutdown_signal_received", signal=sig.name)
        if on_signal is not None:
            on_signal(sig)
        shutdown_event.set()

    for sig in SHUTDOWN_SIGNALS:
        loop.add_signal_handler(sig, _handle, sig)

    def remove() -> None:
        for sig in SHUTDOWN_SIGNALS:
            loop.remove_signal_handler(sig)

    return remove
