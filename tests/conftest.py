import asyncio
import itertools
from typing import Optional

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from hexbytes import HexBytes

from memchain.anchor import EVENT_TOPIC, AnchorReceipt
from memchain.codec import HashCodec, to_hex
from memchain.errors import NotFound
from memchain.signer import AgentSigner
from memchain.store import MemoryContentStore
from memchain.transport import EventTransport

AGENT_KEY = "0x" + "11" * 32
OTHER_KEY = "0x" + "22" * 32


def run(coro):
    return asyncio.run(coro)


async def settle(rounds: int = 20) -> None:
    """Let every ready callback/task run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_log(agent: str, digest: bytes, block_number: int = 1) -> dict:
    """Raw LastMemoryHashSet log, agent indexed."""
    return {
        "address": "0x" + "cc" * 20,
        "topics": [EVENT_TOPIC, HexBytes(b"\x00" * 12 + bytes.fromhex(agent[2:]))],
        "data": HexBytes(digest),
        "blockNumber": block_number,
        "transactionHash": HexBytes(block_number.to_bytes(32, "big")),
    }


class ManualClock:
    """Replacement for asyncio.sleep: sleepers wake only when fired."""

    def __init__(self):
        self._sleepers: list[tuple[float, asyncio.Future]] = []
        self.calls: list[float] = []

    async def sleep(self, delay: float) -> None:
        fut = asyncio.get_running_loop().create_future()
        entry = (delay, fut)
        self._sleepers.append(entry)
        self.calls.append(delay)
        try:
            await fut
        finally:
            self._sleepers.remove(entry)

    def pending(self, delay: Optional[float] = None) -> int:
        return sum(
            1 for d, f in self._sleepers
            if not f.done() and (delay is None or d == delay)
        )

    async def fire(self, delay: float) -> int:
        due = [f for d, f in self._sleepers if d == delay and not f.done()]
        for fut in due:
            fut.set_result(None)
        await settle()
        return len(due)


class FakeAnchor:
    """In-memory pointer contract. Optionally emits logs on a transport."""

    def __init__(self, agent_address: str, codec: HashCodec, transport: Optional[EventTransport] = None):
        self.agent_address = agent_address
        self.codec = codec
        self.transport = transport
        self.pointers: dict[str, bytes] = {}
        self.fail_with: Optional[Exception] = None
        self.tx_count = 0
        self._blocks = itertools.count(1)

    async def get_digest(self, agent_address: Optional[str] = None) -> bytes:
        address = (agent_address or self.agent_address).lower()
        if address not in self.pointers:
            raise NotFound(f"{address} has never anchored a memory")
        return self.pointers[address]

    async def get_pointer(self, agent_address: Optional[str] = None) -> str:
        return self.codec.cid_from_digest(await self.get_digest(agent_address))

    async def set_pointer(self, digest: bytes) -> AnchorReceipt:
        if self.fail_with is not None:
            raise self.fail_with
        block = next(self._blocks)
        self.pointers[self.agent_address.lower()] = bytes(digest)
        self.tx_count += 1
        if self.transport is not None:
            self.transport.emit(make_log(self.agent_address, digest, block))
        return AnchorReceipt(
            tx_hash="0x" + block.to_bytes(32, "big").hex(),
            block_number=block,
            gas_used=21_000,
            digest=to_hex(digest),
        )

    def get_status(self) -> dict:
        return {"tx_count": self.tx_count}


class FakeIpfsNode:
    """Kubo-style /api/v0/add and /api/v0/cat served on a local aiohttp port."""

    def __init__(self, codec: HashCodec):
        self.codec = codec
        self.blobs: dict[str, bytes] = {}
        self.adds: list[dict] = []
        self.fail_status: Optional[int] = None
        self.omit_hash = False
        self._server: Optional[TestServer] = None

    async def start(self) -> str:
        app = web.Application()
        app.router.add_post("/api/v0/add", self._add)
        app.router.add_post("/api/v0/cat", self._cat)
        self._server = TestServer(app)
        await self._server.start_server()
        return str(self._server.make_url("/")).rstrip("/")

    async def close(self) -> None:
        if self._server is not None:
            await self._server.close()
            self._server = None

    async def _add(self, request: web.Request) -> web.Response:
        if self.fail_status is not None:
            return web.Response(status=self.fail_status, text="repo is read-only")
        form = await request.post()
        field = form["file"]
        data = field.file.read()
        self.adds.append({
            "query": dict(request.query),
            "authorization": request.headers.get("Authorization"),
            "filename": field.filename,
            "content_type": field.content_type,
            "data": data,
        })
        cid = self.codec.cid_for_bytes(data)
        self.blobs[cid] = data
        if self.omit_hash:
            return web.json_response({"Name": field.filename})
        return web.json_response({"Name": field.filename, "Hash": cid, "Size": str(len(data))})

    async def _cat(self, request: web.Request) -> web.Response:
        cid = request.query.get("arg", "")
        if cid not in self.blobs:
            return web.Response(status=500, text=f"block {cid} not found")
        return web.Response(body=self.blobs[cid])


@pytest.fixture
def codec():
    return HashCodec()


@pytest.fixture
def signer():
    return AgentSigner(AGENT_KEY)


@pytest.fixture
def other_signer():
    return AgentSigner(OTHER_KEY)


@pytest.fixture
def store(codec):
    return MemoryContentStore(codec)


@pytest.fixture
def transport():
    return EventTransport()


@pytest.fixture
def anchor(signer, codec):
    return FakeAnchor(signer.address, codec)


@pytest.fixture
def clock():
    return ManualClock()
