"""Global directory mapping block hashes to the process holding them."""

from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import zmq

log = logging.getLogger(__name__)

_U64_MAX = 2**64 - 1
_BLOCK_SIZE = 4
_DEFAULT_HASH = 12345


def _parse_u64(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise ValueError(f"not an unsigned integer: {text!r}") from None
    if not 0 <= value <= _U64_MAX:
        raise ValueError(f"value out of range: {text!r}")
    return value


def _parse_int(text: str) -> int:
    try:
        return int(text)
    except ValueError:
        raise ValueError(f"not an integer: {text!r}") from None


@dataclass(frozen=True)
class DirectoryEntry:
    """Processing element and address of a cached block."""

    pe: int
    address: int


@dataclass
class BlockDirectory:
    """Answers lookup and insert requests for block locations."""

    entries: dict[int, DirectoryEntry] = field(default_factory=dict)

    def lookup(self, block_hash: int) -> DirectoryEntry | None:
        """Entry registered for block_hash, or None."""
        return self.entries.get(block_hash)

    def insert(self, block_hash: int, pe: int, address: int) -> None:
        """Register (or replace) the location of block_hash."""
        self.entries[block_hash] = DirectoryEntry(pe, address)
        log.info("Inserted hash %d from PE %d addr %d", block_hash, pe, address)

    def handle(self, request: bytes | str) -> bytes:
        """Answer one wire request; ValueError for anything malformed."""
        text = request.decode("ascii") if isinstance(request, bytes) else request
        if text.startswith("lookup:"):
            entry = self.lookup(_parse_u64(text[len("lookup:"):]))
            if entry is None:
                return b"not_found"
            return f"found:{entry.pe}:{entry.address}".encode("ascii")
        if text.startswith("insert:"):
            parts = text[len("insert:"):].split(":")
            if len(parts) != 3:
                raise ValueError(f"malformed insert request: {text!r}")
            block_hash, pe, address = parts
            self.insert(_parse_u64(block_hash), _parse_int(pe), _parse_u64(address))
            return b"ok"
        raise ValueError(f"unknown request: {text!r}")

    def serve(self, socket: Any, max_requests: int | None = None) -> int:
        """Reply to requests on a REP-style socket; returns how many were served."""
        served = 0
        while max_requests is None or served < max_requests:
            request = socket.recv()
            try:
                reply = self.handle(request)
            except (ValueError, UnicodeDecodeError) as exc:
                reply = f"error:{exc}".encode("ascii", "replace")
            socket.send(reply)
            served += 1
        return served


class DirectoryClient:
    """Talks to a BlockDirectory over a REQ-style socket."""

    def __init__(self, socket: Any) -> None:
        self._socket = socket

    def _request(self, message: str) -> str:
        self._socket.send(message.encode("ascii"))
        return self._socket.recv().decode("ascii")

    def lookup(self, block_hash: int) -> DirectoryEntry | None:
        """Location of block_hash according to the directory, or None."""
        reply = self._request(f"lookup:{block_hash}")
        if reply == "not_found":
            return None
        if reply.startswith("found:"):
            pe_text, sep, address_text = reply[len("found:"):].partition(":")
            if sep:
                return DirectoryEntry(_parse_int(pe_text), _parse_u64(address_text))
        raise RuntimeError(f"unexpected reply to lookup: {reply!r}")

    def insert(self, block_hash: int, pe: int, address: int) -> None:
        """Register a block location; RuntimeError if the directory refuses."""
        reply = self._request(f"insert:{block_hash}:{pe}:{address}")
        if reply != "ok":
            raise RuntimeError(f"unexpected reply to insert: {reply!r}")


def _run_master(bind: str) -> int:
    directory = BlockDirectory()
    with zmq.Context() as context, context.socket(zmq.REP) as socket:
        socket.bind(bind)
        print("[Master PE 0] Ready.", flush=True)
        try:
            directory.serve(socket)
        except KeyboardInterrupt:
            pass
    return 0


def _run_worker(connect: str, pe: int, block_hash: int) -> int:
    local_cache: dict[int, np.ndarray] = {}
    local_kv = np.array([100.0 * pe + i for i in range(_BLOCK_SIZE)], dtype=np.float32)
    address = local_kv.__array_interface__["data"][0]

    with zmq.Context() as context, context.socket(zmq.REQ) as socket:
        socket.connect(connect)
        client = DirectoryClient(socket)
        if block_hash in local_cache:
            print(f"[Worker PE {pe}] Local hit.")
            return 0
        entry = client.lookup(block_hash)
        if entry is not None:
            print(
                f"[Worker PE {pe}] Block held by PE {entry.pe} at address {entry.address}"
            )
        else:
            print(f"[Worker PE {pe}] Cache miss. Insert local block.")
            local_cache[block_hash] = local_kv
            client.insert(block_hash, pe, address)
    return 0


def main(argv: list[str] | None = None) -> int:
    """Run the directory master or a worker that consults it."""
    parser = argparse.ArgumentParser(prog="kvprefix-directory")
    commands = parser.add_subparsers(dest="command", required=True)

    master = commands.add_parser("master", help="serve the block directory")
    master.add_argument("--bind", default="tcp://*:5555")

    worker = commands.add_parser("worker", help="look up or register a block")
    worker.add_argument("--connect", default="tcp://localhost:5555")
    worker.add_argument("--pe", type=int, default=1)
    worker.add_argument("--block-hash", type=int, default=_DEFAULT_HASH)

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="[Master] %(message)s")
    if args.command == "master":
        return _run_master(args.bind)
    return _run_worker(args.connect, args.pe, args.block_hash)