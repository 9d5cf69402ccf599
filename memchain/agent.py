"""
Memory Chain - the caller-facing API.

    chain = MemoryChain.from_config(MemoryChainConfig.from_env())
    result = await chain.append({"type": "note"})
    cid = await chain.get_pointer()
    stop = await chain.watch(agent_address, on_update)
    report = await chain.verify()
    await chain.close()

Wires: content store + hash codec + signer → ChainBuilder; anchor client;
one shared event transport feeding any number of MemoryWatchers; verifier and
append journal for replay / orphan reconciliation.
"""

import logging
from typing import Any, Awaitable, Callable, Optional

from .anchor import AnchorContractClient
from .builder import AppendResult, ChainBuilder
from .codec import HashCodec
from .config import MemoryChainConfig, WATCHER_LAWS
from .errors import NotFound, Unauthorized
from .journal import AppendJournal
from .signer import AgentSigner
from .store import ContentStore, IpfsContentStore
from .transport import EventTransport, LogPollingTransport
from .verifier import ChainVerifier, ReconcileReport, VerificationReport
from .watcher import Handler, MemoryWatcher, ReconnectPolicy

logger = logging.getLogger("memchain.agent")


class MemoryChain:
    def __init__(
        self,
        store: ContentStore,
        anchor,
        signer: Optional[AgentSigner] = None,
        transport: Optional[EventTransport] = None,
        codec: Optional[HashCodec] = None,
        journal: Optional[AppendJournal] = None,
        refresh_interval: float = WATCHER_LAWS.REFRESH_INTERVAL_SECONDS,
        reconnect_policy: Optional[ReconnectPolicy] = None,
        io_timeout_seconds: float = WATCHER_LAWS.IO_TIMEOUT_SECONDS,
    ):
        self.codec = codec or HashCodec()
        self.store = store
        self.anchor = anchor
        self.signer = signer
        self.transport = transport
        self.journal = journal
        self.refresh_interval = refresh_interval
        self.reconnect_policy = reconnect_policy or ReconnectPolicy()

        self.builder: Optional[ChainBuilder] = None
        if signer is not None:
            self.builder = ChainBuilder(
                store, anchor, signer,
                codec=self.codec,
                journal=journal,
                io_timeout_seconds=io_timeout_seconds,
            )
        self.verifier = ChainVerifier(store, anchor, codec=self.codec)
        self._watchers: list[MemoryWatcher] = []
        self._transport_started = False

    @classmethod
    def from_config(cls, config: MemoryChainConfig) -> "MemoryChain":
        """Build the Web3 + IPFS stack from config."""
        if not config.contract_address:
            raise ValueError("MEMCHAIN_CONTRACT_ADDRESS is required")

        codec = HashCodec()
        store = IpfsContentStore(
            config.ipfs_api_url,
            api_token=config.ipfs_api_token,
            timeout_seconds=config.io_timeout_seconds,
        )
        anchor = AnchorContractClient.connect(
            config.rpc_url,
            config.contract_address,
            private_key=config.agent_private_key,
            agent_address=config.agent_address,
            codec=codec,
            chain_id=config.chain_id,
            timeout_seconds=config.io_timeout_seconds,
        )
        signer = AgentSigner(config.agent_private_key) if config.agent_private_key else None
        if signer is None:
            logger.warning("No AGENT_PRIVATE_KEY - memory chain is read-only")

        transport = LogPollingTransport(
            anchor.w3, config.contract_address, poll_interval=config.poll_interval_seconds
        )

        journal = None
        if config.journal_path:
            journal = AppendJournal(config.journal_path)
            journal.load()

        return cls(
            store,
            anchor,
            signer=signer,
            transport=transport,
            codec=codec,
            journal=journal,
            refresh_interval=config.refresh_interval_seconds,
            reconnect_policy=ReconnectPolicy(
                delay=config.reconnect_delay_seconds,
                max_attempts=config.reconnect_max_attempts,
            ),
            io_timeout_seconds=config.io_timeout_seconds,
        )

    @property
    def agent_address(self) -> str:
        if self.signer is not None:
            return self.signer.address
        return getattr(self.anchor, "agent_address", "")

    # ============================================================
    # CHAIN
    # ============================================================

    async def append(
        self,
        payload: Any,
        previous_cid: Optional[str] = None,
        timestamp: Optional[str] = None,
    ) -> AppendResult:
        if self.builder is None:
            raise Unauthorized("No signing key configured - cannot append")
        return await self.builder.append(payload, previous_cid, timestamp)

    async def append_next(self, payload: Any, timestamp: Optional[str] = None) -> AppendResult:
        """Append linked to whatever the pointer currently holds (genesis if unset)."""
        try:
            previous = await self.get_pointer()
        except NotFound:
            previous = None
        return await self.append(payload, previous, timestamp)

    async def get_pointer(self, agent_address: Optional[str] = None) -> str:
        return await self.anchor.get_pointer(agent_address or self.agent_address or None)

    # ============================================================
    # WATCHERS
    # ============================================================

    async def watch(
        self,
        agent_address: str,
        handler: Handler,
        refresh_interval: Optional[float] = None,
        reconnect_policy: Optional[ReconnectPolicy] = None,
    ) -> Callable[[], Awaitable[None]]:
        """Start a watcher for one address. Returns its stop handle."""
        if self.transport is None:
            raise RuntimeError("No event transport configured - cannot watch")
        if not self._transport_started:
            await self.transport.start()
            self._transport_started = True

        watcher = MemoryWatcher(
            self.transport,
            agent_address,
            handler,
            codec=self.codec,
            refresh_interval=refresh_interval or self.refresh_interval,
            reconnect_policy=reconnect_policy or self.reconnect_policy,
        )
        self._watchers = [w for w in self._watchers if not w.stopped]
        self._watchers.append(watcher)
        return await watcher.start()

    # ============================================================
    # VERIFY / RECONCILE
    # ============================================================

    async def verify(
        self, agent_address: Optional[str] = None, head_cid: Optional[str] = None
    ) -> VerificationReport:
        return await self.verifier.replay(agent_address or self.agent_address or None, head_cid)

    async def reconcile(self, reanchor: bool = False) -> ReconcileReport:
        if self.journal is None:
            raise RuntimeError("No journal configured (MEMCHAIN_JOURNAL_PATH)")
        return await self.verifier.reconcile(self.journal, reanchor=reanchor)

    # ============================================================
    # LIFECYCLE / STATUS
    # ============================================================

    async def close(self) -> None:
        for watcher in self._watchers:
            await watcher.stop()
        self._watchers = []
        if self.transport is not None and self._transport_started:
            await self.transport.close()
            self._transport_started = False
        await self.store.close()

    def get_status(self) -> dict:
        """Status for dashboard / debugging."""
        return {
            "agent_address": self.agent_address,
            "can_append": self.builder is not None,
            "appends": self.builder.append_count if self.builder else 0,
            "orphans": self.builder.orphan_count if self.builder else 0,
            "journal_entries": len(self.journal) if self.journal else 0,
            "watchers": [w.status() for w in self._watchers if not w.stopped],
            "anchor": self.anchor.get_status() if hasattr(self.anchor, "get_status") else {},
        }
