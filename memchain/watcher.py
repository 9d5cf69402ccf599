"""
Update Watcher - live subscription to one agent's pointer updates.

States:
    IDLE ──start──▶ SUBSCRIBING ──attached──▶ ACTIVE
    ACTIVE ──refresh timer / transport error──▶ SUBSCRIBING (teardown + rebuild)
    IDLE | SUBSCRIBING | ACTIVE ──stop──▶ STOPPED (terminal)

Liveness has two independent paths:
- Error path: transport error → teardown → wait reconnect delay → rebuild,
  replaying logs the transport delivered while no listener was attached
- Refresh path: every refresh interval → teardown → rebuild, even with no
  observable error (silent subscription death)

At most one event listener, one error listener and one refresh timer are live
per watcher. Each rebuild bumps `generation`; a listener from an older
generation that failed to detach drops everything it receives, so
overlapping subscriptions never double-dispatch.

Handlers run on a dispatcher task fed by a bounded queue, never inside the
transport's delivery path. A slow handler delays later handlers, not event
intake.

Designed for: agent memory chain
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from .anchor import PointerUpdate, decode_update
from .codec import HashCodec
from .config import WATCHER_LAWS
from .errors import DecodeError
from .transport import EventTransport

logger = logging.getLogger("memchain.watcher")

Handler = Callable[[str, str], Any]          # handler(agent_address, cid), sync or async
Sleep = Callable[[float], Awaitable[None]]


class WatcherState(Enum):
    IDLE = "idle"
    SUBSCRIBING = "subscribing"
    ACTIVE = "active"
    STOPPED = "stopped"


@dataclass(frozen=True)
class ReconnectPolicy:
    """
    How long to wait before each reconnect, and when to give up.

    Default: fixed 5s, unbounded attempts.
    """
    delay: float = WATCHER_LAWS.RECONNECT_DELAY_SECONDS
    backoff: float = 1.0                  # delay multiplier per consecutive attempt
    max_delay: Optional[float] = None
    max_attempts: Optional[int] = None    # None = retry forever

    def delay_for(self, attempt: int) -> float:
        """Delay before the given attempt (1-based)."""
        delay = self.delay * (self.backoff ** max(0, attempt - 1))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    def allows(self, attempt: int) -> bool:
        return self.max_attempts is None or attempt <= self.max_attempts


class MemoryWatcher:
    """
    Watches LastMemoryHashSet events for one agent address.

    Usage:
        watcher = MemoryWatcher(transport, "0xAgent...", on_update)
        stop = await watcher.start()
        ...
        await stop()
    """

    def __init__(
        self,
        transport: EventTransport,
        agent_address: str,
        handler: Handler,
        codec: Optional[HashCodec] = None,
        decoder: Callable[[Any], PointerUpdate] = decode_update,
        refresh_interval: float = WATCHER_LAWS.REFRESH_INTERVAL_SECONDS,
        reconnect_policy: Optional[ReconnectPolicy] = None,
        queue_size: int = WATCHER_LAWS.DISPATCH_QUEUE_SIZE,
        sleep: Sleep = asyncio.sleep,
    ):
        if not agent_address:
            raise ValueError("MemoryWatcher needs an agent address")
        self.transport = transport
        self.agent_address = agent_address
        self._watched = agent_address.lower()
        self._handler = handler
        self.codec = codec or HashCodec()
        self._decode = decoder
        self.refresh_interval = refresh_interval
        self.policy = reconnect_policy or ReconnectPolicy()
        self._queue_size = queue_size
        self._sleep = sleep

        self.state = WatcherState.IDLE
        self._stopped = False                  # terminal flag, checked before every commit
        self.generation = 0

        # Owned registrations / timers (never more than one of each)
        self._listener_token: Optional[int] = None
        self._error_token: Optional[int] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._dispatch_task: Optional[asyncio.Task] = None
        self._give_up_task: Optional[asyncio.Task] = None
        self._queue: Optional[asyncio.Queue] = None
        self._reconnect_attempts = 0          # consecutive failed rebuilds
        self._resume_from: Optional[int] = None  # replay point for the next rebuild

        # Stats
        self.rebuild_count = 0
        self.refresh_count = 0
        self.reconnect_count = 0
        self.transport_errors = 0
        self.events_delivered = 0
        self.events_ignored = 0        # other agents
        self.events_malformed = 0
        self.events_dropped = 0        # dispatch queue full
        self.handler_errors = 0

    @property
    def stopped(self) -> bool:
        return self._stopped

    # ============================================================
    # LIFECYCLE
    # ============================================================

    async def start(self) -> Callable[[], Awaitable[None]]:
        """
        Subscribe and return the stop handle.

        Calling start() on a running watcher returns the same handle.
        """
        if self._stopped:
            raise RuntimeError("Watcher is stopped; create a new one")
        if self.state is not WatcherState.IDLE:
            return self.stop

        logger.info(
            f"Setting up memory hash watcher: agent={self._watched} "
            f"refresh={self.refresh_interval}s reconnect={self.policy.delay}s"
        )
        loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self._queue_size)
        self._dispatch_task = loop.create_task(self._dispatch_loop())
        self.state = WatcherState.SUBSCRIBING
        self._rebuild("start")
        return self.stop

    async def stop(self) -> None:
        """
        Terminal. Idempotent. After this returns no new handler call begins.
        """
        if self._stopped:
            self._teardown()
            return
        self._stopped = True
        self.state = WatcherState.STOPPED
        self._teardown()

        reconnect, self._reconnect_task = self._reconnect_task, None
        dispatch, self._dispatch_task = self._dispatch_task, None
        await _cancel(reconnect)
        await _cancel(dispatch)

        if self._queue is not None:
            while not self._queue.empty():
                self._queue.get_nowait()
        logger.info(f"Memory hash watcher stopped: agent={self._watched}")

    # ============================================================
    # TEARDOWN / REBUILD
    # ============================================================

    def _teardown(self) -> None:
        """Release this watcher's listener, timer and error listener. Safe from any state."""
        token, self._listener_token = self._listener_token, None
        if token is not None:
            head = getattr(self.transport, "head_block", None)
            self._resume_from = head + 1 if head is not None else 0
            try:
                self.transport.off(token)
                logger.debug(f"Listener {token} removed")
            except Exception as e:
                logger.debug(f"Failed to remove listener {token} (expected on reconnection): {e}")

        timer, self._refresh_task = self._refresh_task, None
        if timer is not None and timer is not asyncio.current_task() and not timer.done():
            timer.cancel()

        token, self._error_token = self._error_token, None
        if token is not None:
            try:
                self.transport.off_error(token)
            except Exception as e:
                logger.debug(f"Failed to remove error listener {token}: {e}")

    def _rebuild(self, reason: str) -> bool:
        """Full teardown, then attach a fresh listener, error listener and timer."""
        if self._stopped:
            return False
        self.state = WatcherState.SUBSCRIBING
        self._teardown()

        self.generation += 1
        generation = self.generation
        try:
            self._listener_token = self.transport.on(
                self._make_listener(generation), from_block=self._resume_from
            )
            self._error_token = self.transport.on_error(self._on_transport_error)
        except Exception as e:
            logger.warning(f"Subscription failed ({reason}): {type(e).__name__}: {e}")
            self._teardown()
            self._schedule_reconnect(e)
            return False

        self._refresh_task = asyncio.get_running_loop().create_task(
            self._refresh_after(generation)
        )
        self.state = WatcherState.ACTIVE
        self.rebuild_count += 1
        self._reconnect_attempts = 0
        logger.info(f"Event listener attached: generation={generation} reason={reason}")
        return True

    def _make_listener(self, generation: int) -> Callable[[Any], None]:
        def listener(raw: Any) -> None:
            if self._stopped or generation != self.generation:
                return
            self._on_raw_event(raw)
        return listener

    # ============================================================
    # EVENT PATH
    # ============================================================

    def _on_raw_event(self, raw: Any) -> None:
        try:
            update = self._decode(raw)
        except DecodeError as e:
            self.events_malformed += 1
            logger.error(f"Error processing event data: {e}")
            return

        if update.agent.lower() != self._watched:
            self.events_ignored += 1
            return

        try:
            cid = self.codec.cid_from_digest(update.digest)
        except DecodeError as e:
            self.events_malformed += 1
            logger.error(f"Error converting event digest: {e}")
            return

        try:
            self._queue.put_nowait((update.agent, cid))
        except asyncio.QueueFull:
            self.events_dropped += 1
            logger.warning(f"Dispatch queue full ({self._queue_size}) - dropping update {cid}")

    async def _dispatch_loop(self) -> None:
        while not self._stopped:
            agent, cid = await self._queue.get()
            if self._stopped:
                return
            try:
                result = self._handler(agent, cid)
                if inspect.isawaitable(result):
                    await result
                self.events_delivered += 1
            except Exception as e:
                self.handler_errors += 1
                logger.error(f"Memory update handler failed for {cid}: {type(e).__name__}: {e}")

    # ============================================================
    # LIVENESS: refresh timer + reconnect
    # ============================================================

    async def _refresh_after(self, generation: int) -> None:
        await self._sleep(self.refresh_interval)
        if self._stopped or generation != self.generation:
            return
        logger.debug("Refreshing event listener")
        self.refresh_count += 1
        self._rebuild("refresh")

    def _on_transport_error(self, error: Exception) -> None:
        if self._stopped:
            return
        self.transport_errors += 1
        logger.error(f"Provider error, attempting to reconnect: {error}")
        self._schedule_reconnect(error)

    def _schedule_reconnect(self, error: Exception) -> None:
        if self._stopped:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return

        self._reconnect_attempts += 1
        attempt = self._reconnect_attempts
        loop = asyncio.get_running_loop()
        if not self.policy.allows(attempt):
            logger.error(
                f"Reconnect attempts exhausted ({self.policy.max_attempts}) - stopping watcher "
                f"for {self._watched}. Last error: {error}"
            )
            self._teardown()
            self._give_up_task = loop.create_task(self.stop())
            return

        self.state = WatcherState.SUBSCRIBING
        self._teardown()
        delay = self.policy.delay_for(attempt)
        self._reconnect_task = loop.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await self._sleep(delay)
        # Clear first so a failing rebuild can schedule the next attempt
        self._reconnect_task = None
        if self._stopped:
            return
        self.reconnect_count += 1
        self._rebuild("reconnect")

    # ============================================================
    # STATUS
    # ============================================================

    def status(self) -> dict:
        return {
            "agent": self._watched,
            "state": self.state.value,
            "generation": self.generation,
            "listening": self._listener_token is not None,
            "timer_armed": self._refresh_task is not None and not self._refresh_task.done(),
            "reconnecting": self._reconnect_task is not None and not self._reconnect_task.done(),
            "reconnect_attempts": self._reconnect_attempts,
            "resume_from": self._resume_from,
            "rebuilds": self.rebuild_count,
            "refreshes": self.refresh_count,
            "reconnects": self.reconnect_count,
            "transport_errors": self.transport_errors,
            "events_delivered": self.events_delivered,
            "events_ignored": self.events_ignored,
            "events_malformed": self.events_malformed,
            "events_dropped": self.events_dropped,
            "handler_errors": self.handler_errors,
        }


async def _cancel(task: Optional[asyncio.Task]) -> None:
    if task is None or task.done() or task is asyncio.current_task():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
