"""
Event Transport - shared fan-out of raw contract logs.

Every watcher registers its own event listener and its own error listener
and gets back a token for each. Removing a registration only ever touches
that token, so watchers sharing one transport cannot detach each other.

The hub keeps the last REPLAY_BUFFER_SIZE logs and the highest block it has
processed (`head_block`). A listener attached with `from_block` first gets
every retained log at or above that block, so a watcher that was detached
during a reconnect delay resumes where it left off.

LogPollingTransport:
- Polls eth_getLogs for LastMemoryHashSet from a block cursor
- Cursor only advances after a successful fetch (no gaps on RPC errors)
- RPC failure → emit_error(TransportError) to every registered error listener
- Sync Web3 calls wrapped in run_in_executor() like the anchor client
"""

import asyncio
import itertools
import logging
from collections import deque
from typing import Any, Callable, Optional

from web3 import Web3

from .anchor import EVENT_TOPIC
from .config import WATCHER_LAWS
from .errors import TransportError

logger = logging.getLogger("memchain.transport")

EventListener = Callable[[Any], None]
ErrorListener = Callable[[Exception], None]


def block_of(raw: Any) -> Optional[int]:
    """blockNumber of a raw log, or None if it has none."""
    try:
        value = raw["blockNumber"]
    except (KeyError, TypeError, IndexError):
        return None
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class EventTransport:
    """Registration hub. Concrete transports feed it via emit()/emit_error()."""

    def __init__(self, replay_buffer_size: int = WATCHER_LAWS.REPLAY_BUFFER_SIZE):
        self._listeners: dict[int, EventListener] = {}
        self._error_listeners: dict[int, ErrorListener] = {}
        self._tokens = itertools.count(1)
        self._recent: deque = deque(maxlen=replay_buffer_size)
        self._head_block: Optional[int] = None

    @property
    def head_block(self) -> Optional[int]:
        """Highest block already delivered to listeners (None before the first)."""
        return self._head_block

    def _advance_head(self, block: Optional[int]) -> None:
        if block is not None and (self._head_block is None or block > self._head_block):
            self._head_block = block

    # --- registration ---

    def on(self, listener: EventListener, from_block: Optional[int] = None) -> int:
        """
        Register an event listener.

        Args:
            from_block: Replay retained logs from this block before returning.
        """
        token = next(self._tokens)
        self._listeners[token] = listener
        if from_block is not None:
            self._replay(token, listener, from_block)
        return token

    def _replay(self, token: int, listener: EventListener, from_block: int) -> None:
        backlog = [
            raw for raw in self._recent
            if block_of(raw) is not None and block_of(raw) >= from_block
        ]
        if backlog:
            logger.info(f"Replaying {len(backlog)} logs from block {from_block} to listener {token}")
        for raw in backlog:
            try:
                listener(raw)
            except Exception as e:
                logger.error(f"Event listener {token} raised on replay: {type(e).__name__}: {e}")

    def off(self, token: int) -> None:
        if self._listeners.pop(token, None) is None:
            raise TransportError(f"No event listener registered under token {token}")

    def on_error(self, listener: ErrorListener) -> int:
        token = next(self._tokens)
        self._error_listeners[token] = listener
        return token

    def off_error(self, token: int) -> None:
        if self._error_listeners.pop(token, None) is None:
            raise TransportError(f"No error listener registered under token {token}")

    def listener_count(self) -> int:
        return len(self._listeners)

    def error_listener_count(self) -> int:
        return len(self._error_listeners)

    # --- delivery ---

    def emit(self, raw: Any) -> None:
        """Deliver one raw log to every event listener."""
        self._recent.append(raw)
        self._advance_head(block_of(raw))
        # Snapshot: listeners may detach themselves while we iterate
        for token, listener in list(self._listeners.items()):
            try:
                listener(raw)
            except Exception as e:
                logger.error(f"Event listener {token} raised: {type(e).__name__}: {e}")

    def emit_error(self, error: Exception) -> None:
        """Report a connection failure to every error listener."""
        for token, listener in list(self._error_listeners.items()):
            try:
                listener(error)
            except Exception as e:
                logger.error(f"Error listener {token} raised: {type(e).__name__}: {e}")

    # --- lifecycle (no-ops for a bare hub) ---

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None


class LogPollingTransport(EventTransport):
    """
    Polls the memory contract's logs over JSON-RPC.

    Usage:
        transport = LogPollingTransport(w3, contract_address, poll_interval=4.0)
        await transport.start()
        token = transport.on(lambda raw: ...)
        ...
        await transport.close()
    """

    def __init__(
        self,
        w3: Web3,
        contract_address: str,
        poll_interval: float = WATCHER_LAWS.POLL_INTERVAL_SECONDS,
        lookback_blocks: int = WATCHER_LAWS.POLL_LOOKBACK_BLOCKS,
        replay_buffer_size: int = WATCHER_LAWS.REPLAY_BUFFER_SIZE,
    ):
        super().__init__(replay_buffer_size)
        self.w3 = w3
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.poll_interval = poll_interval
        self._lookback = lookback_blocks
        self._cursor: Optional[int] = None    # last block fully processed
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.poll_count: int = 0
        self.error_count: int = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.get_running_loop().create_task(self._poll_loop())
        logger.info(
            f"Log polling started: contract={self.contract_address[:10]}... "
            f"every {self.poll_interval}s"
        )

    async def close(self) -> None:
        self._running = False
        task, self._task = self._task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Log polling stopped")

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.poll_once()
            except TransportError as e:
                self.error_count += 1
                logger.warning(f"Log poll failed: {e}")
                self.emit_error(e)
            await asyncio.sleep(self.poll_interval)

    async def poll_once(self) -> int:
        """
        Fetch and emit logs since the cursor.

        Returns:
            Number of logs emitted.

        Raises:
            TransportError: RPC failure (cursor unchanged).
        """
        loop = asyncio.get_running_loop()
        try:
            head = await loop.run_in_executor(None, lambda: self.w3.eth.block_number)
        except Exception as e:
            raise TransportError(f"block_number failed: {type(e).__name__}: {e}") from e

        if self._cursor is None:
            # First poll: start at head (minus optional lookback)
            self._cursor = max(0, head - 1 - self._lookback)

        if head <= self._cursor:
            return 0

        from_block = self._cursor + 1
        try:
            logs = await loop.run_in_executor(
                None,
                lambda: self.w3.eth.get_logs({
                    "fromBlock": from_block,
                    "toBlock": head,
                    "address": self.contract_address,
                    "topics": [EVENT_TOPIC],
                }),
            )
        except Exception as e:
            raise TransportError(f"get_logs failed: {type(e).__name__}: {e}") from e

        self.poll_count += 1
        self._cursor = head
        for raw in logs:
            self.emit(raw)
        self._advance_head(head)
        if logs:
            logger.debug(f"Emitted {len(logs)} logs from blocks {from_block}-{head}")
        return len(logs)
