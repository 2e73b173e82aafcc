import asyncio
import logging
from dataclasses import dataclass, field

from stressnet.account_store import AccountStore, SQLiteAccountStore
from stressnet.bridge import BridgeCoordinator
from stressnet.config import Settings
from stressnet.dispatch import Dispatcher
from stressnet.driver import LoadConfig, LoadDriver, RunSummary
from stressnet.errors import StressError
from stressnet.fees import FeeOracle
from stressnet.rpc import RpcClientPool
from stressnet.signer import CredentialResolver, Signer

log = logging.getLogger("stressnet.runtime")


@dataclass
class Runtime:
    """Everything the control API needs, wired once at startup."""

    settings: Settings
    store: AccountStore
    rpc: RpcClientPool
    resolver: CredentialResolver
    signer: Signer
    fees: FeeOracle
    dispatcher: Dispatcher
    bridge: BridgeCoordinator
    driver: LoadDriver
    workload_task: asyncio.Task | None = None
    last_summary: RunSummary | None = None
    last_error: str | None = None
    background: set[asyncio.Task] = field(default_factory=set)
    task_errors: dict[str, str] = field(default_factory=dict)

    @property
    def workload_running(self) -> bool:
        return self.workload_task is not None and not self.workload_task.done()

    async def run_workload(self, cfg: LoadConfig) -> RunSummary | None:
        self.last_error = None
        try:
            self.last_summary = await self.driver.run(cfg)
        except StressError as e:
            log.error("Workload failed: %s", e)
            self.last_error = str(e)
        return self.last_summary

    async def _guarded(self, coro, name: str):
        # failures end here; CancelledError still propagates to the TaskGroup
        try:
            return await coro
        except Exception as e:
            log.exception("Background task %s failed", name)
            self.task_errors[name] = str(e)
            return None

    def spawn(self, tg: asyncio.TaskGroup, coro, name: str) -> asyncio.Task:
        self.task_errors.pop(name, None)
        task = tg.create_task(self._guarded(coro, name), name=name)
        self.background.add(task)
        task.add_done_callback(self.background.discard)
        return task

    async def aclose(self) -> None:
        await self.rpc.aclose()


def build_runtime(settings: Settings, *, store: AccountStore | None = None, rpc=None) -> Runtime:
    if store is None:
        store = SQLiteAccountStore(settings.store.db_path, busy_timeout=settings.store.busy_timeout)
    if rpc is None:
        rpc = RpcClientPool.from_urls(
            settings.rpc.urls(),
            policy=settings.retry.policy(),
            timeout=settings.rpc.timeout,
            poll_interval=settings.rpc.poll_interval,
        )
    resolver = CredentialResolver(settings.accounts.mnemonic)
    signer = Signer(resolver, settings.layer_params())
    fees = FeeOracle(rpc, settings.fee_params(), settings.l2_model())
    dispatcher = Dispatcher(store, rpc, signer, fees)
    bridge = BridgeCoordinator(
        store,
        dispatcher,
        rpc,
        inbox_address=settings.bridge.inbox_address,
        poll_interval=settings.bridge.poll_interval,
        timeout=settings.bridge.timeout,
    )
    driver = LoadDriver(store, dispatcher, rpc)
    return Runtime(settings, store, rpc, resolver, signer, fees, dispatcher, bridge, driver)
