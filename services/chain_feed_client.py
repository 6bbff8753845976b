"""
Chain Feed Client - confirmation depth lookups over Ethereum JSON-RPC
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from config import Config
from utils.ledger_exceptions import ExternalServiceFailure

logger = logging.getLogger(__name__)


class ChainFeedClient:
    """Pull side of the chain data feed, used by the confirmation poll"""

    SERVICE_NAME = "chain_feed"

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        timeout: Optional[int] = None,
        max_retries: Optional[int] = None,
        backoff_base: float = 1.0,
    ):
        self.rpc_url = rpc_url or Config.CHAIN_RPC_URL
        self.timeout = timeout or Config.EXTERNAL_API_TIMEOUT_SECONDS
        self.max_retries = max_retries or Config.EXTERNAL_API_MAX_RETRIES
        self.backoff_base = backoff_base
        self._request_id = 0

    async def get_confirmations(self, tx_hash: str) -> Optional[int]:
        """
        Confirmation depth of a transaction.

        Returns 0 while it sits in the mempool and None once the node no
        longer knows it (dropped or forked out).
        """
        receipt, latest = await self._batch([
            ("eth_getTransactionReceipt", [tx_hash]),
            ("eth_blockNumber", []),
        ])

        if receipt and receipt.get("blockNumber"):
            if receipt.get("status") == "0x0":
                # Reverted transfers never move funds
                logger.warning(f"⚠️ CHAIN_TX_REVERTED: {tx_hash}")
                return None
            depth = int(latest, 16) - int(receipt["blockNumber"], 16) + 1
            return max(depth, 0)

        pending = await self._call("eth_getTransactionByHash", [tx_hash])
        if pending is None:
            logger.info(f"🚫 CHAIN_TX_UNKNOWN: {tx_hash} no longer known to the node")
            return None
        return 0

    async def _call(self, method: str, params: List[Any]) -> Any:
        results = await self._batch([(method, params)])
        return results[0]

    async def _batch(self, calls: List[tuple]) -> List[Any]:
        if not self.rpc_url:
            raise ExternalServiceFailure(self.SERVICE_NAME, "CHAIN_RPC_URL is not configured", retryable=False)

        payload = []
        for method, params in calls:
            self._request_id += 1
            payload.append({"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params})

        last_error = None
        for attempt in range(self.max_retries):
            try:
                body = await self._post(payload)
                return self._unpack(payload, body)
            except ExternalServiceFailure as e:
                if not e.retryable:
                    raise
                last_error = e
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = ExternalServiceFailure(self.SERVICE_NAME, f"{type(e).__name__}: {e}")

            if attempt < self.max_retries - 1:
                delay = self.backoff_base * (2 ** attempt)
                logger.warning(
                    f"🔄 CHAIN_FEED_RETRY: attempt {attempt + 1}/{self.max_retries} failed "
                    f"({last_error}), retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

        logger.error(f"❌ CHAIN_FEED_FAILED: {last_error}")
        raise last_error

    async def _post(self, payload: List[Dict[str, Any]]) -> Any:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
            async with session.post(self.rpc_url, json=payload) as response:
                if response.status == 429 or response.status >= 500:
                    raise ExternalServiceFailure(self.SERVICE_NAME, f"HTTP {response.status}")
                if response.status >= 400:
                    error_text = await response.text()
                    raise ExternalServiceFailure(
                        self.SERVICE_NAME, f"HTTP {response.status}: {error_text[:200]}", retryable=False
                    )
                return await response.json(content_type=None)

    def _unpack(self, payload: List[Dict[str, Any]], body: Any) -> List[Any]:
        if isinstance(body, dict):
            body = [body]
        if not isinstance(body, list):
            raise ExternalServiceFailure(self.SERVICE_NAME, f"Unexpected RPC response: {body!r}")

        by_id = {item.get("id"): item for item in body if isinstance(item, dict)}
        results = []
        for request in payload:
            item = by_id.get(request["id"])
            if item is None:
                raise ExternalServiceFailure(self.SERVICE_NAME, f"Missing response for {request['method']}")
            if item.get("error"):
                raise ExternalServiceFailure(self.SERVICE_NAME, f"{request['method']}: {item['error']}")
            results.append(item.get("result"))
        return results
