"""
Electrum protocol backend: newline-delimited JSON-RPC over TCP or TLS,
optionally through a SOCKS5 proxy.
"""

from __future__ import annotations

import asyncio
import json
import ssl
from typing import Any

from loguru import logger
from python_socks.async_.asyncio import Proxy

from descwallet.backends.base import BackendError, BlockchainBackend, HistoryEntry, script_hash

DEFAULT_TIMEOUT = 30.0

# Electrum servers reject lines longer than this by default
MAX_LINE_LENGTH = 2**24


def parse_electrum_url(url: str) -> tuple[str, int, bool]:
    """
    Split ``ssl://host:port`` / ``tcp://host:port`` / ``host:port`` into
    (host, port, use_tls). Bare host:port defaults to TLS.
    """
    use_tls = True
    if "://" in url:
        scheme, url = url.split("://", 1)
        if scheme not in ("ssl", "tcp"):
            raise ValueError(f"Unsupported Electrum URL scheme: {scheme}")
        use_tls = scheme == "ssl"
    host, sep, port = url.rstrip("/").rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"Electrum URL needs host:port, got {url!r}")
    return host.strip("[]"), int(port), use_tls


class ElectrumBackend(BlockchainBackend):
    def __init__(
        self,
        url: str,
        socks5: str | None = None,
        timeout: float | None = None,
        validate_tls: bool = True,
    ):
        self.host, self.port, self.use_tls = parse_electrum_url(url)
        self.socks5 = socks5
        self.timeout = timeout or DEFAULT_TIMEOUT
        self.validate_tls = validate_tls

        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._request_id = 0
        self._connect_lock = asyncio.Lock()
        self._block_times: dict[int, int] = {}

    def _ssl_context(self) -> ssl.SSLContext | None:
        if not self.use_tls:
            return None
        context = ssl.create_default_context()
        if not self.validate_tls:
            # Many Electrum servers use self-signed certificates
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    async def _connect(self) -> None:
        async with self._connect_lock:
            if self._writer is not None and not self._writer.is_closing():
                return

            ssl_context = self._ssl_context()
            server_hostname = self.host if ssl_context is not None else None
            if self.socks5:
                proxy = Proxy.from_url(f"socks5://{self.socks5}")
                sock = await proxy.connect(dest_host=self.host, dest_port=self.port)
                reader, writer = await asyncio.open_connection(
                    sock=sock,
                    ssl=ssl_context,
                    server_hostname=server_hostname,
                    limit=MAX_LINE_LENGTH,
                )
            else:
                reader, writer = await asyncio.open_connection(
                    self.host,
                    self.port,
                    ssl=ssl_context,
                    limit=MAX_LINE_LENGTH,
                )
            self._reader, self._writer = reader, writer
            self._reader_task = asyncio.create_task(self._read_loop(reader))
            logger.info(f"Connected to Electrum server {self.host}:{self.port}")

            await self._call("server.version", ["descwallet", "1.4"])

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        error: Exception = ConnectionError("Electrum connection closed")
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                try:
                    message = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning(f"Invalid JSON from Electrum server: {line[:200]!r}")
                    continue
                request_id = message.get("id")
                future = self._pending.pop(request_id, None) if request_id is not None else None
                if future is None or future.done():
                    # Subscription notification or a response nobody waits for
                    continue
                if message.get("error"):
                    future.set_exception(BackendError(f"Electrum error: {message['error']}"))
                else:
                    future.set_result(message.get("result"))
        except (OSError, asyncio.IncompleteReadError, ValueError) as e:
            error = ConnectionError(f"Electrum connection lost: {e}")
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(error)
            self._pending.clear()
            if self._writer is not None:
                self._writer.close()
            self._writer = None
            self._reader = None

    async def _call(self, method: str, params: list[Any] | None = None) -> Any:
        if self._writer is None:
            raise ConnectionError("Not connected to Electrum server")
        self._request_id += 1
        request_id = self._request_id
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        payload = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or []}
        self._writer.write(json.dumps(payload).encode() + b"\n")
        try:
            await self._writer.drain()
            return await asyncio.wait_for(future, timeout=self.timeout)
        finally:
            self._pending.pop(request_id, None)

    async def _request(self, method: str, params: list[Any] | None = None) -> Any:
        await self._connect()
        try:
            return await self._call(method, params)
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Electrum call failed: {method} - {e}")
            raise

    async def get_script_history(self, script_pubkey: bytes) -> list[HistoryEntry]:
        history = await self._request(
            "blockchain.scripthash.get_history", [script_hash(script_pubkey)]
        )
        entries = []
        for item in history:
            height = item.get("height", 0)
            # 0: in mempool, -1: in mempool with unconfirmed parents
            confirmed_height = height if height > 0 else None
            entries.append(HistoryEntry(txid=item["tx_hash"], height=confirmed_height))
        return entries

    async def get_raw_transaction(self, txid: str) -> bytes:
        raw_hex = await self._request("blockchain.transaction.get", [txid, False])
        return bytes.fromhex(raw_hex)

    async def get_block_time(self, block_height: int) -> int:
        cached = self._block_times.get(block_height)
        if cached is not None:
            return cached
        header_hex = await self._request("blockchain.block.header", [block_height])
        header = bytes.fromhex(header_hex)
        if len(header) != 80:
            raise BackendError(f"Invalid block header length: {len(header)}")
        timestamp = int.from_bytes(header[68:72], "little")
        self._block_times[block_height] = timestamp
        return timestamp

    async def get_block_height(self) -> int:
        tip = await self._request("blockchain.headers.subscribe")
        return int(tip["height"])

    async def broadcast_transaction(self, tx_hex: str) -> str:
        txid = await self._request("blockchain.transaction.broadcast", [tx_hex])
        logger.info(f"Broadcast transaction {txid}")
        return txid

    async def estimate_fee(self, target_blocks: int) -> float:
        btc_per_kvb = await self._request("blockchain.estimatefee", [target_blocks])
        if btc_per_kvb is None or btc_per_kvb < 0:
            # Server has no estimate for this target
            return 1.0
        return float(btc_per_kvb) * 100_000_000 / 1000

    async def close(self) -> None:
        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except OSError as e:
                logger.debug(f"Error closing Electrum connection: {e}")
        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._writer = None
        self._reader = None
