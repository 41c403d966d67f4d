"""
Esplora REST backend (blockstream.info, mempool.space and self-hosted instances).
"""

from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from descwallet.backends.base import BlockchainBackend, HistoryEntry, script_hash

DEFAULT_TIMEOUT = 30.0

# Esplora returns confirmed history in pages of this size
CHAIN_PAGE_SIZE = 25


class EsploraBackend(BlockchainBackend):
    def __init__(
        self,
        base_url: str,
        proxy: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or DEFAULT_TIMEOUT,
            proxy=proxy,
        )
        self._block_times: dict[int, int] = {}

    async def _get(self, path: str) -> httpx.Response:
        try:
            response = await self.client.get(path)
            response.raise_for_status()
            return response
        except httpx.HTTPError as e:
            logger.warning(f"Esplora request failed: GET {path} - {e}")
            raise

    async def _get_json(self, path: str) -> Any:
        return (await self._get(path)).json()

    async def get_script_history(self, script_pubkey: bytes) -> list[HistoryEntry]:
        scripthash = script_hash(script_pubkey)
        entries: list[HistoryEntry] = []

        page = await self._get_json(f"/scripthash/{scripthash}/txs")
        while True:
            confirmed_in_page = 0
            last_confirmed = None
            for tx in page:
                status = tx.get("status", {})
                if status.get("confirmed"):
                    confirmed_in_page += 1
                    last_confirmed = tx["txid"]
                    entries.append(
                        HistoryEntry(
                            txid=tx["txid"],
                            height=status.get("block_height"),
                            timestamp=status.get("block_time"),
                        )
                    )
                else:
                    entries.append(HistoryEntry(txid=tx["txid"]))
            if confirmed_in_page < CHAIN_PAGE_SIZE or last_confirmed is None:
                break
            page = await self._get_json(f"/scripthash/{scripthash}/txs/chain/{last_confirmed}")

        return entries

    async def get_raw_transaction(self, txid: str) -> bytes:
        response = await self._get(f"/tx/{txid}/hex")
        return bytes.fromhex(response.text.strip())

    async def get_block_time(self, block_height: int) -> int:
        cached = self._block_times.get(block_height)
        if cached is not None:
            return cached
        block_hash = (await self._get(f"/block-height/{block_height}")).text.strip()
        block = await self._get_json(f"/block/{block_hash}")
        timestamp = int(block["timestamp"])
        self._block_times[block_height] = timestamp
        return timestamp

    async def get_block_height(self) -> int:
        response = await self._get("/blocks/tip/height")
        return int(response.text.strip())

    async def broadcast_transaction(self, tx_hex: str) -> str:
        try:
            response = await self.client.post("/tx", content=tx_hex)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Broadcast rejected: {e.response.text.strip()}")
            raise
        txid = response.text.strip()
        logger.info(f"Broadcast transaction {txid}")
        return txid

    async def estimate_fee(self, target_blocks: int) -> float:
        estimates: dict[str, float] = await self._get_json("/fee-estimates")
        by_target = sorted((int(k), float(v)) for k, v in estimates.items())
        if not by_target:
            return 1.0
        # Highest confirmation target not above the requested one
        candidates = [rate for target, rate in by_target if target <= target_blocks]
        return candidates[-1] if candidates else by_target[0][1]

    async def close(self) -> None:
        await self.client.aclose()
