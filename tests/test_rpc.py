"""RPC classification, retry and confirmation polling over a mocked HTTP transport."""

import asyncio
import json
import time
from unittest import IsolatedAsyncioTestCase, TestCase

import httpx

from stressnet.constants import Layer, OutcomeKind, ReceiptStatus, RejectReason
from stressnet.errors import RejectedError, RetryExhausted, TransientNetworkError
from stressnet.models import SignedTx
from stressnet.retry import BackoffPolicy
from stressnet.rpc import RpcClientPool, classify_rpc_error

URLS = {Layer.L1: "http://l1.test", Layer.L2: "http://l2.test"}
SIGNED = SignedTx(Layer.L1, "0x" + "11" * 20, "0x" + "22" * 20, 0, 1, 21000, "0x02f86c", "0x" + "ab" * 32)
RECEIPT = {
    "transactionHash": SIGNED.tx_hash,
    "blockNumber": "0x10",
    "status": "0x1",
    "gasUsed": "0x5208",
    "effectiveGasPrice": "0x3b9aca00",
}


def ok(body, result):
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})


def rpc_error(body, code, message):
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": code, "message": message}})


class TestClassification(TestCase):
    def test_reject_reasons(self):
        cases = {
            "nonce too low: next nonce 5, tx nonce 3": RejectReason.NONCE_TOO_LOW,
            "insufficient funds for gas * price + value": RejectReason.INSUFFICIENT_FUNDS,
            "invalid sender": RejectReason.INVALID_SIGNATURE,
            "replacement transaction underpriced": RejectReason.REPLACEMENT_UNDERPRICED,
            "max fee per gas less than block base fee": RejectReason.FEE_TOO_LOW,
            "intrinsic gas too low": RejectReason.INTRINSIC_GAS,
            "exceeds block gas limit": RejectReason.GAS_LIMIT,
            "execution reverted": RejectReason.OTHER,
        }
        for message, reason in cases.items():
            with self.subTest(message=message):
                err = classify_rpc_error({"code": -32000, "message": message})
                self.assertIsInstance(err, RejectedError)
                self.assertEqual(err.reason, reason)

    def test_limit_exceeded_is_transient(self):
        self.assertIsInstance(classify_rpc_error({"code": -32005, "message": "limit exceeded"}), TransientNetworkError)
        self.assertIsInstance(classify_rpc_error({"code": -32000, "message": "rate limit hit"}), TransientNetworkError)

    def test_backoff_is_capped(self):
        policy = BackoffPolicy(base=0.25, cap=8.0, jitter=0.2)
        for attempt in range(1, 12):
            d = policy.delay(attempt)
            self.assertLessEqual(d, 8.0)
            self.assertGreaterEqual(d, min(8.0, 0.25 * 2 ** (attempt - 1)) * 0.8)


class RpcTestCase(IsolatedAsyncioTestCase):
    policy = BackoffPolicy(base=0.05, cap=1.0, jitter=0.0, max_attempts=4, max_elapsed=5.0)

    def make_pool(self, handler) -> RpcClientPool:
        self.calls = []

        def recording(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            self.calls.append(body["method"])
            return handler(body, request)

        pool = RpcClientPool.from_urls(URLS, policy=self.policy, transport=httpx.MockTransport(recording),
                                       poll_interval=0.01)
        self.addAsyncCleanup(pool.aclose)
        return pool


class TestSubmit(RpcTestCase):
    async def test_retries_through_503(self):
        attempts = iter([503, 503, 200])

        def handler(body, request):
            status = next(attempts)
            if status != 200:
                return httpx.Response(status)
            return ok(body, SIGNED.tx_hash)

        pool = self.make_pool(handler)
        loop = asyncio.get_running_loop()
        started = loop.time()
        tx_hash = await pool.submit(Layer.L1, SIGNED)
        elapsed = loop.time() - started

        self.assertEqual(tx_hash, SIGNED.tx_hash)
        self.assertEqual(len(self.calls), 3)
        # the loop may wake a timer up to one clock tick early
        self.assertGreaterEqual(elapsed, 0.05 + 0.10 - 2 * time.get_clock_info("monotonic").resolution)

    async def test_rejection_is_not_retried(self):
        pool = self.make_pool(lambda body, _: rpc_error(body, -32000, "nonce too low"))
        with self.assertRaises(RejectedError) as ctx:
            await pool.submit(Layer.L1, SIGNED)
        self.assertEqual(ctx.exception.reason, RejectReason.NONCE_TOO_LOW)
        self.assertEqual(len(self.calls), 1)

    async def test_already_known_returns_local_hash(self):
        pool = self.make_pool(lambda body, _: rpc_error(body, -32000, "already known"))
        self.assertEqual(await pool.submit(Layer.L1, SIGNED), SIGNED.tx_hash)

    async def test_persistent_failure_surfaces(self):
        pool = self.make_pool(lambda body, _: httpx.Response(502))
        with self.assertRaises(RetryExhausted) as ctx:
            await pool.submit(Layer.L2, SIGNED)
        self.assertEqual(ctx.exception.attempts, 4)
        self.assertTrue(ctx.exception.maybe_sent)
        self.assertEqual(len(self.calls), 4)

    async def test_elapsed_ceiling(self):
        self.policy = BackoffPolicy(base=0.1, cap=1.0, jitter=0.0, max_attempts=100, max_elapsed=0.35)
        pool = self.make_pool(lambda body, _: httpx.Response(503))
        started = time.monotonic()
        with self.assertRaises(RetryExhausted):
            await pool.submit(Layer.L1, SIGNED)
        self.assertLess(time.monotonic() - started, 0.35)
        # sleeps of 0.1 and 0.2 fit, 0.4 would not
        self.assertEqual(len(self.calls), 3)

    async def test_connection_refused_was_never_sent(self):
        def handler(body, request):
            raise httpx.ConnectError("connection refused", request=request)

        pool = self.make_pool(handler)
        with self.assertRaises(RetryExhausted) as ctx:
            await pool.submit(Layer.L1, SIGNED)
        self.assertFalse(ctx.exception.maybe_sent)

    async def test_read_timeout_may_have_been_sent(self):
        def handler(body, request):
            raise httpx.ReadTimeout("timed out", request=request)

        pool = self.make_pool(handler)
        with self.assertRaises(RetryExhausted) as ctx:
            await pool.submit(Layer.L1, SIGNED)
        self.assertTrue(ctx.exception.maybe_sent)

    async def test_client_error_status_is_rejected(self):
        pool = self.make_pool(lambda body, _: httpx.Response(403))
        with self.assertRaises(RejectedError) as ctx:
            await pool.submit(Layer.L1, SIGNED)
        self.assertEqual(ctx.exception.reason, RejectReason.HTTP)


class TestReads(RpcTestCase):
    async def test_hex_quantities(self):
        results = {"eth_getBalance": hex(10**24), "eth_getTransactionCount": "0x7", "eth_chainId": "0x539",
                   "eth_gasPrice": "0x3b9aca00", "eth_blockNumber": "0x2a"}
        pool = self.make_pool(lambda body, _: ok(body, results[body["method"]]))
        self.assertEqual(await pool.get_balance(Layer.L1, SIGNED.sender), 10**24)
        self.assertEqual(await pool.get_chain_nonce(Layer.L1, SIGNED.sender), 7)
        self.assertEqual(await pool.chain_id(Layer.L1), 1337)
        self.assertEqual(await pool.gas_price(Layer.L2), 10**9)
        self.assertEqual(await pool.block_number(Layer.L2), 42)

    async def test_receipt_states(self):
        known = {"eth_getTransactionReceipt": None, "eth_getTransactionByHash": {"hash": SIGNED.tx_hash}}
        pool = self.make_pool(lambda body, _: ok(body, known[body["method"]]))
        self.assertEqual(await pool.get_receipt(Layer.L1, SIGNED.tx_hash), (ReceiptStatus.PENDING, None))

        known["eth_getTransactionByHash"] = None
        self.assertEqual(await pool.get_receipt(Layer.L1, SIGNED.tx_hash), (ReceiptStatus.NOT_FOUND, None))

        known["eth_getTransactionReceipt"] = RECEIPT
        status, receipt = await pool.get_receipt(Layer.L1, SIGNED.tx_hash)
        self.assertEqual(status, ReceiptStatus.MINED)
        self.assertEqual((receipt.block_number, receipt.gas_used, receipt.fee), (16, 21000, 21000 * 10**9))


class TestConfirmation(RpcTestCase):
    def receipt_after(self, polls: int, receipt: dict | None):
        seen = {"n": 0}

        def handler(body, _):
            if body["method"] == "eth_getTransactionByHash":
                return ok(body, {"hash": SIGNED.tx_hash})
            seen["n"] += 1
            return ok(body, receipt if seen["n"] > polls else None)

        return handler

    async def test_confirmed_after_polls(self):
        pool = self.make_pool(self.receipt_after(2, RECEIPT))
        conf = await pool.wait_for_confirmation(Layer.L1, SIGNED.tx_hash, timeout=2.0)
        self.assertEqual(conf.kind, OutcomeKind.CONFIRMED)
        self.assertEqual(self.calls.count("eth_getTransactionReceipt"), 3)

    async def test_reverted(self):
        pool = self.make_pool(self.receipt_after(0, {**RECEIPT, "status": "0x0"}))
        conf = await pool.wait_for_confirmation(Layer.L1, SIGNED.tx_hash, timeout=2.0)
        self.assertEqual(conf.kind, OutcomeKind.FAILED)
        self.assertFalse(conf.receipt.success)

    async def test_deadline(self):
        pool = self.make_pool(self.receipt_after(10**6, RECEIPT))
        started = time.monotonic()
        conf = await pool.wait_for_confirmation(Layer.L2, SIGNED.tx_hash, timeout=0.2)
        self.assertEqual(conf.kind, OutcomeKind.TIMED_OUT)
        self.assertLess(time.monotonic() - started, 1.0)

    async def test_transient_poll_failures_do_not_end_the_wait(self):
        state = {"n": 0}

        def handler(body, _):
            state["n"] += 1
            if state["n"] <= 2:
                return httpx.Response(503)
            return ok(body, RECEIPT)

        pool = self.make_pool(handler)
        conf = await pool.wait_for_confirmation(Layer.L1, SIGNED.tx_hash, timeout=2.0)
        self.assertEqual(conf.kind, OutcomeKind.CONFIRMED)
