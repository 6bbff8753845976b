"""
Chain feed client tests - JSON-RPC depth calculation and retry policy
"""

import pytest

from config import Config
from services.chain_feed_client import ChainFeedClient
from utils.ledger_exceptions import ExternalServiceFailure


class FakeNode:
    """Answers batched JSON-RPC requests from a method -> result table"""

    def __init__(self, answers, failures=()):
        self.answers = answers
        self.failures = list(failures)
        self.requests = []

    async def post(self, payload):
        self.requests.append([call["method"] for call in payload])
        if self.failures:
            raise self.failures.pop(0)
        return [
            {"jsonrpc": "2.0", "id": call["id"], "result": self.answers.get(call["method"])}
            for call in payload
        ]


def _client(node, max_retries=3):
    client = ChainFeedClient(rpc_url="http://node.test", max_retries=max_retries, backoff_base=0)
    client._post = node.post
    return client


class TestConfirmations:
    async def test_depth_counts_the_inclusion_block(self):
        node = FakeNode({
            "eth_getTransactionReceipt": {"blockNumber": hex(100), "status": "0x1"},
            "eth_blockNumber": hex(111),
        })

        assert await _client(node).get_confirmations("0xabc") == 12
        assert node.requests == [["eth_getTransactionReceipt", "eth_blockNumber"]]

    async def test_mempool_transaction_has_zero_depth(self):
        node = FakeNode({"eth_blockNumber": hex(5), "eth_getTransactionByHash": {"hash": "0xabc"}})

        assert await _client(node).get_confirmations("0xabc") == 0

    async def test_unknown_transaction_reads_as_dropped(self):
        node = FakeNode({"eth_blockNumber": hex(5)})

        assert await _client(node).get_confirmations("0xabc") is None

    async def test_reverted_transaction_reads_as_dropped(self):
        node = FakeNode({
            "eth_getTransactionReceipt": {"blockNumber": hex(1), "status": "0x0"},
            "eth_blockNumber": hex(40),
        })

        assert await _client(node).get_confirmations("0xabc") is None


class TestRetries:
    async def test_transient_failures_are_retried(self):
        node = FakeNode(
            {"eth_getTransactionReceipt": {"blockNumber": hex(9), "status": "0x1"}, "eth_blockNumber": hex(9)},
            failures=[ExternalServiceFailure("chain_feed", "HTTP 503")],
        )

        assert await _client(node).get_confirmations("0xabc") == 1
        assert len(node.requests) == 2

    async def test_gives_up_after_max_retries(self):
        node = FakeNode({}, failures=[ExternalServiceFailure("chain_feed", "HTTP 502")] * 5)

        with pytest.raises(ExternalServiceFailure):
            await _client(node, max_retries=3).get_confirmations("0xabc")
        assert len(node.requests) == 3

    async def test_client_errors_are_not_retried(self):
        node = FakeNode({}, failures=[ExternalServiceFailure("chain_feed", "HTTP 401", retryable=False)])

        with pytest.raises(ExternalServiceFailure):
            await _client(node).get_confirmations("0xabc")
        assert len(node.requests) == 1

    async def test_rpc_error_object_raises(self):
        client = ChainFeedClient(rpc_url="http://node.test", max_retries=1, backoff_base=0)

        async def erroring(payload):
            return [{"id": call["id"], "error": {"code": -32000, "message": "boom"}} for call in payload]

        client._post = erroring
        with pytest.raises(ExternalServiceFailure):
            await client.get_confirmations("0xabc")

    async def test_missing_rpc_url(self, monkeypatch):
        monkeypatch.setattr(Config, "CHAIN_RPC_URL", None)
        with pytest.raises(ExternalServiceFailure) as exc_info:
            await ChainFeedClient().get_confirmations("0xabc")
        assert exc_info.value.retryable is False
