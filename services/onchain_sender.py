"""
On-chain Sender - hands approved payouts to the hot-wallet signer service

A send is not idempotent, so it is attempted exactly once. Any failure is
reported as non-retryable and the payout is parked for manual handling.
"""

import asyncio
import logging
from typing import Optional

import aiohttp

from config import Config
from utils.ledger_exceptions import ExternalServiceFailure

logger = logging.getLogger(__name__)


class OnchainSender:
    SERVICE_NAME = "onchain_sender"

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None, timeout: Optional[int] = None):
        self.base_url = (base_url or Config.PAYOUT_SENDER_URL or "").rstrip("/")
        self.api_key = api_key or Config.PAYOUT_SENDER_API_KEY
        self.timeout = timeout or Config.EXTERNAL_API_TIMEOUT_SECONDS

    async def send(self, address: str, amount: int, token_type: str, reference: Optional[str] = None) -> str:
        """Broadcast a transfer and return its tx hash"""
        if not self.base_url:
            raise ExternalServiceFailure(self.SERVICE_NAME, "PAYOUT_SENDER_URL is not configured", retryable=False)

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {
            "address": address,
            "amount": amount,
            "token": token_type,
            "reference": reference,
        }

        logger.info(f"📤 ONCHAIN_SEND: {amount} gems as {token_type} to {address} (ref={reference})")
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.post(f"{self.base_url}/send", json=payload, headers=headers) as response:
                    if response.status >= 400:
                        error_text = await response.text()
                        raise ExternalServiceFailure(
                            self.SERVICE_NAME, f"HTTP {response.status}: {error_text[:200]}", retryable=False
                        )
                    data = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise ExternalServiceFailure(self.SERVICE_NAME, f"Network error: {e}", retryable=False) from e
        except asyncio.TimeoutError as e:
            raise ExternalServiceFailure(
                self.SERVICE_NAME, f"Timed out after {self.timeout}s", retryable=False
            ) from e

        tx_hash = (data or {}).get("tx_hash") if isinstance(data, dict) else None
        if not tx_hash:
            raise ExternalServiceFailure(self.SERVICE_NAME, f"No tx_hash in response: {data!r}", retryable=False)

        logger.info(f"✅ ONCHAIN_SENT: {tx_hash} (ref={reference})")
        return tx_hash
