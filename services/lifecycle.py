"""
Session lifecycle
Idle-timeout timers and process-exit cleanup for terminal sessions
"""

import asyncio
import functools
import logging
from typing import TYPE_CHECKING, Callable

from services.terminal_protocol import exit_message
from services.terminal_service import ExitStatus

if TYPE_CHECKING:
    from services.session_manager import SessionRegistry, TerminalSession

logger = logging.getLogger(__name__)


class IdleTimer:
    """One-shot timer on the running event loop. cancel() is always safe."""

    def __init__(self, delay: float, callback: Callable[[], None]):
        self._callback = callback
        self.fired = False
        self.cancelled = False
        self._handle = asyncio.get_running_loop().call_later(delay, self._fire)

    @property
    def active(self) -> bool:
        return not (self.fired or self.cancelled)

    def cancel(self) -> None:
        if not self.active:
            return
        self.cancelled = True
        self._handle.cancel()

    def _fire(self) -> None:
        if self.cancelled:
            return
        self.fired = True
        self._callback()


class LifecycleSupervisor:
    """
    Keeps each live session's idle timer in step with its attachments and
    tears sessions down when their shell exits.

    A live session has an idle timer exactly when nothing is attached to it.
    arm()/disarm() are called with the session lock held (or from code that
    cannot yield), so the invariant holds after every attach/detach.
    """

    def __init__(self, registry: "SessionRegistry", idle_timeout: float):
        if idle_timeout <= 0:
            raise ValueError("idle_timeout must be positive")
        self._registry = registry
        self.idle_timeout = idle_timeout

    def arm(self, session: "TerminalSession") -> None:
        if session.closing or session.exited or session.idle_timer is not None:
            return
        session.idle_timer = IdleTimer(self.idle_timeout, functools.partial(self._expire, session))
        logger.info(f"Session '{session.id}' idle, closing in {self.idle_timeout:g}s unless a client attaches")

    def disarm(self, session: "TerminalSession") -> None:
        if session.idle_timer is None:
            return
        session.idle_timer.cancel()
        session.idle_timer = None

    def _expire(self, session: "TerminalSession") -> None:
        # The id may have been reused since the timer was armed
        if self._registry.get(session.id) is not session:
            return
        logger.info(f"Session '{session.id}' timed out with no clients attached")
        self._registry.destroy(session.id)

    async def session_exited(self, session: "TerminalSession", status: ExitStatus) -> None:
        """
        Single teardown path for a session whose shell has ended.

        Whether the shell exited on its own or was killed by destroy(), this
        runs once per session: it unregisters the record, then sends one
        exit frame to each attached connection and closes it.
        """
        self._registry._discard(session)

        async with session.lock:
            if session.exited:
                return
            session.exited = True
            self.disarm(session)
            subscribers = list(session.attached.values())
            session.attached.clear()

        logger.info(
            f"Session '{session.id}' exited (code {status.exit_code}, signal {status.signal}); "
            f"notifying {len(subscribers)} client(s)"
        )

        message = exit_message(status.exit_code, status.signal)
        for subscription in subscribers:
            subscription.close(final=message)
