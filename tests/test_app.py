import asyncio
import time
from unittest import TestCase

from fastapi.testclient import TestClient
from fakes import INBOX, FakeChain, Submission, add_accounts

from stressnet.account_store import InMemoryAccountStore
from stressnet.app import create_app
from stressnet.config import Settings
from stressnet.constants import Layer
from stressnet.errors import StoreUnavailable
from stressnet.runtime import build_runtime

START = 10**21


class AppTestCase(TestCase):
    def setUp(self):
        self.chain = FakeChain()
        self.store = InMemoryAccountStore()
        self.accounts = asyncio.run(add_accounts(self.store, 3, chain=self.chain))
        settings = Settings(
            accounts={"root": "acct_0", "register_on_startup": False},
            bridge={"inbox_address": INBOX, "poll_interval": 0.01, "timeout": 5},
        )
        self.runtime = build_runtime(settings, store=self.store, rpc=self.chain)
        self.client = TestClient(create_app(self.runtime))
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)

    def wait_for(self, path, done, timeout=5.0):
        deadline = time.monotonic() + timeout
        while True:
            body = self.client.get(path).json()
            if done(body) or time.monotonic() > deadline:
                return body
            time.sleep(0.02)


class TestAccounts(AppTestCase):
    def test_health(self):
        self.assertEqual(self.client.get("/health").json(), {"status": "ok"})

    def test_list_and_get(self):
        accounts = self.client.get("/accounts").json()
        self.assertEqual([a["account_id"] for a in accounts], ["acct_0", "acct_1", "acct_2"])
        self.assertEqual(self.client.get("/accounts", params={"status": "suspended"}).json(), [])

        acct = self.client.get("/accounts/acct_1").json()
        self.assertEqual(acct["address"], self.accounts[1].address)
        self.assertEqual(acct["balances"], {"l1": str(START), "l2": str(START)})
        self.assertEqual(self.client.get("/accounts/nobody").status_code, 404)

    def test_fund(self):
        r = self.client.post("/accounts/fund", json={"layer": "l1", "amount_eth": "0.5", "account_ids": ["acct_1", "acct_2"]})
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json(), {"acct_1": "confirmed", "acct_2": "confirmed"})
        balances = self.client.get("/accounts/acct_2").json()["balances"]
        self.assertEqual(balances["l1"], str(START + 5 * 10**17))

    def test_fund_rejects_sub_wei_amounts(self):
        r = self.client.post("/accounts/fund", json={"layer": "l1", "amount_eth": "0.0000000000000000001"})
        self.assertEqual(r.status_code, 422)
        self.assertEqual(self.chain.submissions, [])

    def test_fund_unknown_account(self):
        r = self.client.post("/accounts/fund", json={"layer": "l2", "amount_eth": "1", "account_ids": ["ghost"]})
        self.assertEqual(r.status_code, 404)

    def test_sync_overwrites_cached_balances(self):
        self.chain.balances[(Layer.L2, self.accounts[0].address.lower())] = 7
        synced = self.client.post("/accounts/sync").json()
        self.assertEqual(synced["acct_0"]["l2"], 7)
        self.assertEqual(self.client.get("/accounts/acct_0").json()["balances"]["l2"], "7")


class TestBridge(AppTestCase):
    def test_bridge_and_wait(self):
        r = self.client.post("/bridge", json={"account_ids": ["acct_1"], "amount_eth": "1"})
        self.assertEqual(r.status_code, 200)
        [op] = r.json()
        self.assertEqual(op["phase"], "complete")
        self.assertEqual(self.client.get(f"/bridge/{op['op_id']}").json()["phase"], "complete")
        self.assertEqual(len(self.client.get("/bridge", params={"phase": "complete"}).json()), 1)
        self.assertEqual(self.client.get("/bridge/nope").status_code, 404)
        self.assertEqual(self.client.post(f"/bridge/{op['op_id']}/redrive").status_code, 409)
        self.assertEqual(self.client.post("/bridge/nope/redrive").status_code, 404)

    def test_bridge_in_background(self):
        r = self.client.post("/bridge", json={"account_ids": ["acct_1", "acct_2"], "amount_eth": "1", "wait": False})
        ops = r.json()
        self.assertEqual([op["phase"] for op in ops], ["initiated", "initiated"])
        for op in ops:
            final = self.wait_for(f"/bridge/{op['op_id']}", lambda body: body["phase"] == "complete")
            self.assertEqual(final["phase"], "complete")

    def test_failed_background_bridge_leaves_the_service_up(self):
        set_status = self.store.set_status
        broken = []

        async def flaky(account_id, status):
            if not broken:
                broken.append(account_id)
                raise StoreUnavailable("database is locked")
            await set_status(account_id, status)

        self.store.set_status = flaky
        with self.assertLogs("stressnet.runtime", level="ERROR"):
            [op] = self.client.post("/bridge", json={"account_ids": ["acct_1"], "amount_eth": "1", "wait": False}).json()
            body = self.wait_for(f"/bridge/{op['op_id']}", lambda body: body["error"] is not None)
        self.assertEqual(broken, ["acct_1"])
        self.assertIn("database is locked", body["error"])
        self.assertEqual(body["phase"], "initiated")

        r = self.client.post("/workload/start", json={"rate": 200, "volume": 5})
        self.assertEqual(r.status_code, 200)
        status = self.wait_for("/workload/status", lambda body: not body["running"])
        self.assertEqual(status["last_summary"]["dispatched"], 5)
        r = self.client.post("/bridge", json={"account_ids": ["acct_2"], "amount_eth": "1"})
        self.assertEqual(r.json()[0]["phase"], "complete")

    def test_bridge_validation(self):
        r = self.client.post("/bridge", json={"account_ids": ["ghost"], "amount_eth": "1"})
        self.assertEqual(r.status_code, 404)
        r = self.client.post("/bridge", json={"account_ids": [], "amount_eth": "1"})
        self.assertEqual(r.status_code, 422)


class TestWorkload(AppTestCase):
    def test_run_to_volume(self):
        r = self.client.post("/workload/start", json={"rate": 200, "volume": 10})
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["config"]["volume"], 10)

        status = self.wait_for("/workload/status", lambda body: not body["running"])
        self.assertFalse(status["running"])
        self.assertEqual(status["last_summary"]["dispatched"], 10)
        self.assertEqual(status["last_summary"]["stats"]["by_kind"]["confirmed"], 10)
        self.assertEqual(self.client.post("/workload/stop").status_code, 400)

        outcomes = self.client.get("/state/outcomes", params={"account_id": "acct_0", "limit": 2}).json()
        self.assertEqual(len(outcomes), 2)
        self.assertTrue(all(o["account_id"] == "acct_0" for o in outcomes))

        recon = self.client.get("/state/reconcile").json()
        self.assertEqual(recon, {"in_sync": True, "divergences": []})

    def test_start_and_stop(self):
        self.assertEqual(self.client.post("/workload/start", json={"rate": 20, "duration": 30}).status_code, 200)
        self.assertEqual(self.client.post("/workload/start", json={"rate": 20, "duration": 30}).status_code, 400)
        self.assertEqual(self.client.post("/accounts/fund", json={"layer": "l1", "amount_eth": "1"}).status_code, 409)
        time.sleep(0.2)
        self.assertTrue(self.client.get("/workload/status").json()["running"])

        r = self.client.post("/workload/stop")
        self.assertEqual(r.status_code, 200)
        self.assertTrue(r.json()["summary"]["cancelled"])
        self.assertFalse(self.client.get("/workload/status").json()["running"])

    def test_needs_a_target(self):
        self.assertEqual(self.client.post("/workload/start", json={"rate": 10}).status_code, 422)
        self.assertEqual(self.client.post("/workload/start", json={"rate": -1, "volume": 1}).status_code, 422)


class TestState(AppTestCase):
    def test_reconcile_reports_divergence(self):
        addr = self.accounts[0].address.lower()
        self.chain.submissions.append(Submission(Layer.L1, addr, 4, "0x" + "00" * 32, addr, 0))
        recon = self.client.get("/state/reconcile").json()
        self.assertFalse(recon["in_sync"])
        [d] = recon["divergences"]
        self.assertEqual((d["account_id"], d["layer"], d["store_nonce"], d["chain_nonce"], d["delta"]),
                         ("acct_0", "l1", 0, 5, -5))
        # reporting only: the store is untouched
        self.assertEqual(self.client.get("/accounts/acct_0").json()["nonces"]["l1"], 0)


class TestShutdown(TestCase):
    def test_lifespan_closes_the_rpc_pool(self):
        chain = FakeChain()
        runtime = build_runtime(Settings(), store=InMemoryAccountStore(), rpc=chain)
        with TestClient(create_app(runtime)) as client:
            self.assertEqual(client.get("/health").status_code, 200)
        self.assertTrue(chain.closed)
