"""
memchain - operator entry point

Loads .env, configures logging, builds the memory chain and runs one command.

Usage:
    python main.py pointer [--address 0x...]
    python main.py append '{"type": "note"}' [--previous CID | --link]
    python main.py watch [--address 0x...]
    python main.py verify [--address 0x...] [--head CID]
    python main.py reconcile [--reanchor]
"""

import os
import re
import sys
import json
import asyncio
import logging
import argparse
from pathlib import Path

from dotenv import load_dotenv

# ============================================================
# BOOTSTRAP
# ============================================================

load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


class _SecretMaskingFilter(logging.Filter):
    """
    Redact the configured agent key / IPFS token and any 64-hex value
    labelled as a private key. Digests and tx hashes stay readable.
    """
    _LABELLED = re.compile(r'(?i)(private[_ ]?key\W{0,3})(?:0x)?[0-9a-f]{64}(?![0-9a-f])')

    def __init__(self, secrets=()):
        super().__init__()
        values = {s for s in secrets if s and len(s) >= 8}
        values |= {s[2:] for s in values if s.lower().startswith("0x")}
        self._secrets = sorted(values, key=len, reverse=True)

    def mask(self, text: str) -> str:
        for secret in self._secrets:
            text = text.replace(secret, "[REDACTED]")
        return self._LABELLED.sub(r"\1[REDACTED]", text)

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        try:
            message = record.getMessage()
        except Exception:
            # Let the handler report the broken format string
            return True
        masked = self.mask(message)
        if masked != message:
            record.msg, record.args = masked, None
        return True


_mask_filter = _SecretMaskingFilter(secrets=(
    os.getenv("AGENT_PRIVATE_KEY", "").strip(),
    os.getenv("IPFS_API_TOKEN", "").strip(),
))
for _h in logging.root.handlers:
    _h.addFilter(_mask_filter)

logger = logging.getLogger("memchain.main")


# ============================================================
# MODULE IMPORTS
# ============================================================

from memchain.agent import MemoryChain
from memchain.config import MemoryChainConfig
from memchain.errors import AnchorFailure, MemoryChainError, NotFound


def _print(data: dict) -> None:
    print(json.dumps(data, indent=2, default=str))


def _load_payload(raw: str):
    """Inline JSON, or @path/to/file.json."""
    if raw.startswith("@"):
        raw = Path(raw[1:]).read_text(encoding="utf-8")
    return json.loads(raw)


# ============================================================
# COMMANDS
# ============================================================

async def cmd_pointer(chain: MemoryChain, args) -> int:
    try:
        cid = await chain.get_pointer(args.address)
    except NotFound:
        _print({"address": args.address or chain.agent_address, "cid": None})
        return 0
    _print({"address": args.address or chain.agent_address, "cid": cid})
    return 0


async def cmd_append(chain: MemoryChain, args) -> int:
    payload = _load_payload(args.payload)
    try:
        if args.link:
            result = await chain.append_next(payload)
        else:
            result = await chain.append(payload, args.previous)
    except AnchorFailure as e:
        logger.error(f"Stored as orphan {e.cid}: {e}")
        _print({"cid": e.cid, "anchored": False, "error": str(e)})
        return 2
    _print({
        "cid": result.cid,
        "digest": result.digest_hex,
        "previous_cid": result.previous_cid,
        "tx_hash": result.tx_hash,
        "block_number": result.block_number,
        "anchored": True,
    })
    return 0


async def cmd_watch(chain: MemoryChain, args) -> int:
    address = args.address or chain.agent_address
    if not address:
        logger.error("No address to watch (pass --address or set AGENT_ADDRESS)")
        return 1

    def on_update(agent: str, cid: str) -> None:
        logger.info(f"Memory pointer updated: agent={agent} cid={cid}")
        _print({"agent": agent, "cid": cid})

    stop = await chain.watch(address, on_update)
    logger.info(f"Watching {address} - Ctrl-C to stop")
    try:
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        pass
    finally:
        await stop()
    return 0


async def cmd_verify(chain: MemoryChain, args) -> int:
    report = await chain.verify(args.address, args.head)
    _print({
        "agent": report.agent,
        "head": report.head_cid,
        "ok": report.ok,
        "length": report.length,
        "reached_genesis": report.reached_genesis,
        "cids": report.cids,
        "problems": report.problems,
    })
    return 0 if report.ok else 3


async def cmd_reconcile(chain: MemoryChain, args) -> int:
    report = await chain.reconcile(reanchor=args.reanchor)
    _print({
        "orphans": [e.cid for e in report.orphans],
        "reanchored": report.reanchored,
        "skipped": report.skipped,
    })
    return 0


COMMANDS = {
    "pointer": cmd_pointer,
    "append": cmd_append,
    "watch": cmd_watch,
    "verify": cmd_verify,
    "reconcile": cmd_reconcile,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Agent memory chain operator CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("pointer", help="Show the current anchored CID")
    p.add_argument("--address", default=None)

    p = sub.add_parser("append", help="Sign, store and anchor a payload")
    p.add_argument("payload", help="JSON string or @file.json")
    group = p.add_mutually_exclusive_group()
    group.add_argument("--previous", default=None, help="CID of the previous record")
    group.add_argument("--link", action="store_true", help="Link to the current pointer")

    p = sub.add_parser("watch", help="Follow pointer updates")
    p.add_argument("--address", default=None)

    p = sub.add_parser("verify", help="Replay the chain back to genesis")
    p.add_argument("--address", default=None)
    p.add_argument("--head", default=None, help="Start from this CID instead of the pointer")

    p = sub.add_parser("reconcile", help="List (and optionally re-anchor) orphaned records")
    p.add_argument("--reanchor", action="store_true")
    return parser


async def _run(args) -> int:
    config = MemoryChainConfig.from_env()
    logger.debug(f"Config: {config.describe()}")
    chain = MemoryChain.from_config(config)
    try:
        return await COMMANDS[args.command](chain, args)
    except MemoryChainError as e:
        logger.error(f"{args.command} failed: {type(e).__name__}: {e}")
        return 1
    finally:
        await chain.close()


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
