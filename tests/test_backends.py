"""
Tests for the Esplora and Electrum backends against local fakes.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import httpx
import pytest
import pytest_asyncio

from descwallet.backends import create_backend, script_hash
from descwallet.backends.base import BackendError, HistoryEntry
from descwallet.backends.electrum import ElectrumBackend, parse_electrum_url
from descwallet.backends.esplora import EsploraBackend
from descwallet.config import ElectrumConfig, EsploraConfig

SCRIPT = bytes([0x00, 0x14]) + b"\x22" * 20
BASE_URL = "https://esplora.test/api"


def txid(n: int) -> str:
    return f"{n:064x}"


class TestScriptHash:
    def test_reversed_sha256(self):
        # sha256 of the empty string, byte-reversed
        assert script_hash(b"") == (
            "55b852781b9995a44c939b64e441ae2724b96f99c8f4fb9a141cfc9842c4b0e3"
        )


def esplora(handler) -> EsploraBackend:
    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return EsploraBackend(BASE_URL, client=client)


class TestEsploraBackend:
    @pytest.mark.asyncio
    async def test_history_pagination(self):
        scripthash = script_hash(SCRIPT)
        first_page = [{"txid": txid(0), "status": {"confirmed": False}}] + [
            {
                "txid": txid(i),
                "status": {"confirmed": True, "block_height": 1000 - i, "block_time": 5_000 + i},
            }
            for i in range(1, 26)
        ]
        second_page = [
            {"txid": txid(i), "status": {"confirmed": True, "block_height": 900, "block_time": 1}}
            for i in range(26, 29)
        ]
        requested: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requested.append(request.url.path)
            if request.url.path == f"/api/scripthash/{scripthash}/txs":
                return httpx.Response(200, json=first_page)
            if request.url.path == f"/api/scripthash/{scripthash}/txs/chain/{txid(25)}":
                return httpx.Response(200, json=second_page)
            return httpx.Response(404)

        backend = esplora(handler)
        entries = await backend.get_script_history(SCRIPT)
        await backend.close()

        assert len(entries) == 29
        assert entries[0] == HistoryEntry(txid=txid(0))
        assert entries[1] == HistoryEntry(txid=txid(1), height=999, timestamp=5_001)
        assert entries[-1].txid == txid(28)
        assert len(requested) == 2

    @pytest.mark.asyncio
    async def test_short_page_needs_no_second_request(self):
        requested: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requested.append(request.url.path)
            return httpx.Response(200, json=[{"txid": txid(1), "status": {"confirmed": False}}])

        backend = esplora(handler)
        entries = await backend.get_script_history(SCRIPT)
        assert [e.txid for e in entries] == [txid(1)]
        assert len(requested) == 1

    @pytest.mark.asyncio
    async def test_raw_transaction(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == f"/api/tx/{txid(7)}/hex"
            return httpx.Response(200, text="0200ff\n")

        backend = esplora(handler)
        assert await backend.get_raw_transaction(txid(7)) == bytes.fromhex("0200ff")

    @pytest.mark.asyncio
    async def test_block_time_is_cached(self):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if request.url.path == "/api/block-height/100":
                return httpx.Response(200, text="ab" * 32)
            if request.url.path == f"/api/block/{'ab' * 32}":
                return httpx.Response(200, json={"timestamp": 1_650_000_000})
            return httpx.Response(404)

        backend = esplora(handler)
        assert await backend.get_block_time(100) == 1_650_000_000
        assert await backend.get_block_time(100) == 1_650_000_000
        assert calls == 2

    @pytest.mark.asyncio
    async def test_tip_height(self):
        backend = esplora(lambda request: httpx.Response(200, text="812345"))
        assert await backend.get_block_height() == 812_345

    @pytest.mark.asyncio
    async def test_fee_estimates(self):
        estimates = {"1": 20.0, "3": 10.0, "6": 5.0, "144": 1.0}
        backend = esplora(lambda request: httpx.Response(200, json=estimates))
        assert await backend.estimate_fee(6) == 5.0
        assert await backend.estimate_fee(4) == 10.0
        assert await backend.estimate_fee(1_000) == 1.0

    @pytest.mark.asyncio
    async def test_no_fee_estimates(self):
        backend = esplora(lambda request: httpx.Response(200, json={}))
        assert await backend.estimate_fee(6) == 1.0

    @pytest.mark.asyncio
    async def test_broadcast(self):
        posted: list[bytes] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "POST"
            posted.append(request.content)
            return httpx.Response(200, text=txid(9))

        backend = esplora(handler)
        assert await backend.broadcast_transaction("0200") == txid(9)
        assert posted == [b"0200"]

    @pytest.mark.asyncio
    async def test_broadcast_rejected(self):
        backend = esplora(lambda request: httpx.Response(400, text="bad-txns-inputs-missing"))
        with pytest.raises(httpx.HTTPStatusError):
            await backend.broadcast_transaction("0200")

    @pytest.mark.asyncio
    async def test_http_error_propagates(self):
        backend = esplora(lambda request: httpx.Response(503))
        with pytest.raises(httpx.HTTPStatusError):
            await backend.get_script_history(SCRIPT)


class TestParseElectrumUrl:
    def test_schemes(self):
        assert parse_electrum_url("ssl://electrum.example:5002") == ("electrum.example", 5002, True)
        assert parse_electrum_url("tcp://127.0.0.1:50001") == ("127.0.0.1", 50001, False)

    def test_bare_host_defaults_to_tls(self):
        assert parse_electrum_url("electrum.example:50002") == ("electrum.example", 50002, True)

    def test_ipv6(self):
        assert parse_electrum_url("tcp://[::1]:50001") == ("::1", 50001, False)

    @pytest.mark.parametrize("url", ["http://host:1", "host", "tcp://host:port"])
    def test_invalid(self, url: str) -> None:
        with pytest.raises(ValueError):
            parse_electrum_url(url)


def block_header(timestamp: int) -> str:
    header = bytearray(80)
    header[68:72] = timestamp.to_bytes(4, "little")
    return header.hex()


class ElectrumStub:
    """Line-delimited JSON-RPC server answering from a method table."""

    def __init__(self) -> None:
        self.methods: list[str] = []
        self.server: asyncio.AbstractServer | None = None
        self.port = 0

    def answer(self, method: str, params: list[Any]) -> dict[str, Any]:
        if method == "server.version":
            return {"result": ["stub", "1.4"]}
        if method == "blockchain.scripthash.get_history":
            return {
                "result": [
                    {"tx_hash": txid(1), "height": 100},
                    {"tx_hash": txid(2), "height": 0},
                    {"tx_hash": txid(3), "height": -1, "fee": 200},
                ]
            }
        if method == "blockchain.transaction.get":
            return {"result": "0200ff"}
        if method == "blockchain.block.header":
            return {"result": block_header(1_650_000_000 + params[0])}
        if method == "blockchain.headers.subscribe":
            return {"result": {"height": 800_000, "hex": block_header(0)}}
        if method == "blockchain.estimatefee":
            return {"result": 0.0001 if params[0] <= 6 else -1}
        if method == "blockchain.transaction.broadcast":
            return {"error": {"code": 1, "message": "missing inputs"}}
        return {"error": {"code": -32601, "message": f"unknown method {method}"}}

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        while True:
            line = await reader.readline()
            if not line:
                break
            request = json.loads(line)
            self.methods.append(request["method"])
            response = {"jsonrpc": "2.0", "id": request["id"]}
            response.update(self.answer(request["method"], request["params"]))
            writer.write(json.dumps(response).encode() + b"\n")
            await writer.drain()
        writer.close()

    async def start(self) -> None:
        self.server = await asyncio.start_server(self.handle, "127.0.0.1", 0)
        self.port = self.server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()


@pytest_asyncio.fixture
async def electrum() -> AsyncIterator[tuple[ElectrumStub, ElectrumBackend]]:
    stub = ElectrumStub()
    await stub.start()
    backend = ElectrumBackend(f"tcp://127.0.0.1:{stub.port}", timeout=5.0)
    yield stub, backend
    await backend.close()
    await stub.stop()


class TestElectrumBackend:
    @pytest.mark.asyncio
    async def test_handshake_then_history(self, electrum) -> None:
        stub, backend = electrum
        entries = await backend.get_script_history(SCRIPT)

        assert stub.methods == ["server.version", "blockchain.scripthash.get_history"]
        assert entries == [
            HistoryEntry(txid=txid(1), height=100),
            HistoryEntry(txid=txid(2)),
            HistoryEntry(txid=txid(3)),
        ]

    @pytest.mark.asyncio
    async def test_connection_is_reused(self, electrum) -> None:
        stub, backend = electrum
        await backend.get_raw_transaction(txid(1))
        await backend.get_raw_transaction(txid(2))
        assert stub.methods.count("server.version") == 1

    @pytest.mark.asyncio
    async def test_raw_transaction(self, electrum) -> None:
        _, backend = electrum
        assert await backend.get_raw_transaction(txid(1)) == bytes.fromhex("0200ff")

    @pytest.mark.asyncio
    async def test_block_time_from_header(self, electrum) -> None:
        stub, backend = electrum
        assert await backend.get_block_time(42) == 1_650_000_042
        assert await backend.get_block_time(42) == 1_650_000_042
        assert stub.methods.count("blockchain.block.header") == 1

    @pytest.mark.asyncio
    async def test_tip_height(self, electrum) -> None:
        _, backend = electrum
        assert await backend.get_block_height() == 800_000

    @pytest.mark.asyncio
    async def test_fee_estimate_conversion(self, electrum) -> None:
        _, backend = electrum
        # 0.0001 BTC/kvB = 10 sat/vB
        assert await backend.estimate_fee(2) == pytest.approx(10.0)
        assert await backend.estimate_fee(25) == 1.0

    @pytest.mark.asyncio
    async def test_server_error(self, electrum) -> None:
        _, backend = electrum
        with pytest.raises(BackendError, match="missing inputs"):
            await backend.broadcast_transaction("0200")

    @pytest.mark.asyncio
    async def test_parallel_requests(self, electrum) -> None:
        _, backend = electrum
        await backend.get_block_height()
        results = await asyncio.gather(*(backend.get_block_time(h) for h in range(5)))
        assert results == [1_650_000_000 + h for h in range(5)]

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        stub = ElectrumStub()
        await stub.start()
        port = stub.port
        await stub.stop()
        backend = ElectrumBackend(f"tcp://127.0.0.1:{port}", timeout=1.0)
        with pytest.raises(OSError):
            await backend.get_block_height()


class TestCreateBackend:
    def test_esplora(self):
        backend = create_backend(EsploraConfig(base_url="https://blockstream.info/testnet/api"))
        assert isinstance(backend, EsploraBackend)
        assert backend.base_url == "https://blockstream.info/testnet/api"

    def test_electrum(self):
        backend = create_backend(ElectrumConfig(url="ssl://electrum.blockstream.info:60002"))
        assert isinstance(backend, ElectrumBackend)
        assert (backend.host, backend.port, backend.use_tls) == (
            "electrum.blockstream.info",
            60002,
            True,
        )
