"""
Content Store Client - content-addressed storage for memory records.

Two implementations of the same interface:
- IpfsContentStore: any IPFS-compatible HTTP API (Kubo /api/v0). Uploads as
  CIDv1 + BLAKE3 so the CID's digest is what gets anchored on-chain.
- MemoryContentStore: in-process dict, for local runs and tests.

Failures surface as StorageFailure. Nothing is retried here; retry is a
caller decision.
"""

import asyncio
import logging
from typing import Optional

import aiohttp

from .codec import HashCodec
from .errors import DecodeError, StorageFailure

logger = logging.getLogger("memchain.store")


class ContentStore:
    """Interface: put bytes, get a CID back; fetch bytes by CID."""

    async def put(self, data: bytes, metadata: Optional[dict] = None) -> str:
        raise NotImplementedError

    async def get(self, cid: str) -> bytes:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class IpfsContentStore(ContentStore):
    """
    IPFS HTTP API client.

    Usage:
        store = IpfsContentStore("http://127.0.0.1:5001", timeout_seconds=60)
        cid = await store.put(b'{"hello":"world"}', {"name": "memory.json"})
        data = await store.get(cid)
        await store.close()
    """

    def __init__(
        self,
        api_url: str,
        api_token: str = "",
        timeout_seconds: float = 120.0,
        cid_version: int = 1,
        hash_function: str = "blake3",
    ):
        self.api_url = api_url.rstrip("/")
        self._api_token = api_token
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None
        self._add_params = {
            "cid-version": str(cid_version),
            "hash": hash_function,
            "raw-leaves": "false",
            "pin": "true",
        }

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {}
            if self._api_token:
                headers["Authorization"] = f"Bearer {self._api_token}"
            self._session = aiohttp.ClientSession(timeout=self._timeout, headers=headers)
        return self._session

    async def put(self, data: bytes, metadata: Optional[dict] = None) -> str:
        meta = metadata or {}
        form = aiohttp.FormData()
        form.add_field(
            "file",
            data,
            filename=meta.get("name", "memory.json"),
            content_type=meta.get("mime_type", "application/json"),
        )

        session = await self._get_session()
        try:
            async with session.post(
                f"{self.api_url}/api/v0/add", params=self._add_params, data=form
            ) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise StorageFailure(f"Store rejected write: HTTP {resp.status} {body[:200]}")
                result = await resp.json(content_type=None)
        except StorageFailure:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise StorageFailure(f"Store unreachable: {type(e).__name__}: {e}") from e

        cid = result.get("Hash", "") if isinstance(result, dict) else ""
        if not cid:
            raise StorageFailure(f"Store returned no CID: {result!r}")

        logger.info(f"Stored {len(data)} bytes → {cid}")
        return cid

    async def get(self, cid: str) -> bytes:
        session = await self._get_session()
        try:
            async with session.post(
                f"{self.api_url}/api/v0/cat", params={"arg": cid}
            ) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise StorageFailure(f"Fetch of {cid} failed: HTTP {resp.status} {body[:200]}")
                return await resp.read()
        except StorageFailure:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise StorageFailure(f"Store unreachable: {type(e).__name__}: {e}") from e

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None


class MemoryContentStore(ContentStore):
    """In-process content-addressed store. Same bytes → same CID."""

    def __init__(self, codec: Optional[HashCodec] = None):
        self.codec = codec or HashCodec()
        self._blobs: dict[str, bytes] = {}
        self._metadata: dict[str, dict] = {}
        self.write_count: int = 0
        self.fail_writes: bool = False

    async def put(self, data: bytes, metadata: Optional[dict] = None) -> str:
        if self.fail_writes:
            raise StorageFailure("Store unreachable (simulated)")
        self.write_count += 1
        cid = self.codec.cid_for_bytes(data)
        self._blobs[cid] = bytes(data)
        self._metadata[cid] = dict(metadata or {})
        logger.debug(f"Stored {len(data)} bytes in memory → {cid}")
        return cid

    async def get(self, cid: str) -> bytes:
        if cid in self._blobs:
            return self._blobs[cid]
        # Same digest under another codec/base still resolves
        try:
            wanted = self.codec.digest_from_cid(cid)
        except DecodeError as e:
            raise StorageFailure(f"No content for {cid}: {e}") from e
        for stored_cid, blob in self._blobs.items():
            if self.codec.digest_from_cid(stored_cid) == wanted:
                return blob
        raise StorageFailure(f"No content for {cid}")

    def __contains__(self, cid: str) -> bool:
        return cid in self._blobs

    def __len__(self) -> int:
        return len(self._blobs)
