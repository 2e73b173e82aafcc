import asyncio
import logging
from contextlib import asynccontextmanager
from decimal import Decimal

from fastapi import APIRouter, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field, PositiveFloat, PositiveInt, ValidationError

from stressnet.constants import AccountStatus, BridgePhase, Layer
from stressnet.errors import AccountNotFound, InvalidIntent, InvalidTransition, StoreUnavailable
from stressnet.logging_config import setup_logging
from stressnet.models import ether_to_wei
from stressnet.probe import probe_rpc, wait_for_blocks
from stressnet.provision import fund_accounts, reconcile, register_accounts, sync_balances
from stressnet.runtime import Runtime, build_runtime

setup_logging()
log = logging.getLogger("stressnet.app")


async def _startup(settings) -> Runtime:
    s = settings.startup
    async with asyncio.timeout(s.overall):
        log.info("Probing RPC endpoints...")
        for url in settings.rpc.urls().values():
            await probe_rpc(url, s.probe_retries, s.probe_delay)
        log.info("RPC OK. Waiting for block production on both layers")
        for url in settings.rpc.ws_urls().values():
            await wait_for_blocks(url, s.initial_blocks)

    rt = build_runtime(settings)
    if settings.accounts.register_on_startup:
        refs = settings.accounts.all_refs()
        accounts = await register_accounts(rt.store, rt.rpc, rt.resolver, refs, list(Layer))
        log.info("Accounts registered: %s", len(accounts))
    return rt


@asynccontextmanager
async def lifespan(app: FastAPI):
    rt: Runtime | None = getattr(app.state, "runtime", None)
    if rt is None:
        from stressnet.config import load_settings

        rt = await _startup(load_settings())
        app.state.runtime = rt
    log.info("Ready to accept requests")

    async with asyncio.TaskGroup() as tg:
        app.state.tg = tg
        try:
            yield
        finally:
            log.info("Shutting down...")
            rt.driver.cancel()
            for t in list(rt.background):
                if t is not rt.workload_task:
                    t.cancel()
            # exiting the TaskGroup waits for the workload to drain
    await rt.aclose()
    log.info("Shutdown complete")


def create_app(runtime: Runtime | None = None) -> FastAPI:
    """Build the control API. A prebuilt ``runtime`` skips the startup probes."""
    app = FastAPI(
        title="stressnet",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "Accounts", "description": "Pool accounts and provisioning"},
            {"name": "Bridge", "description": "Move funds between layers"},
            {"name": "Workload", "description": "Start, stop and monitor load runs"},
            {"name": "State", "description": "Reconciliation and outcome history"},
        ],
    )
    if runtime is not None:
        app.state.runtime = runtime
    app.add_api_route("/health", health, methods=["GET"])
    app.include_router(r_accounts)
    app.include_router(r_bridge)
    app.include_router(r_workload)
    app.include_router(r_state)
    return app


def _rt(request: Request) -> Runtime:
    return request.app.state.runtime


r_accounts = APIRouter(prefix="/accounts", tags=["Accounts"])
r_bridge = APIRouter(prefix="/bridge", tags=["Bridge"])
r_workload = APIRouter(prefix="/workload", tags=["Workload"])
r_state = APIRouter(prefix="/state", tags=["State"])


class FundReq(BaseModel):
    layer: Layer
    amount_eth: Decimal = Field(gt=0)
    account_ids: list[str] | None = None
    timeout: PositiveFloat = 60.0


class BridgeReq(BaseModel):
    account_ids: list[str] = Field(min_length=1)
    source: Layer = Layer.L1
    amount_eth: Decimal = Field(gt=0)
    timeout: PositiveFloat | None = None
    wait: bool = True


class WorkloadReq(BaseModel):
    rate: PositiveFloat | None = None
    duration: PositiveFloat | None = None
    volume: PositiveInt | None = None
    max_in_flight: PositiveInt | None = None
    layers: list[Layer] | None = None
    account_ids: list[str] | None = None
    weights: dict[str, float] | None = None
    recipient: str | None = None
    value_wei: int | None = Field(None, ge=0)
    confirmation_timeout: PositiveFloat | None = None
    grace_period: float | None = Field(None, ge=0)


def health():
    return {"status": "ok"}


# ============================================================
# Accounts
# ============================================================
@r_accounts.get("")
async def list_accounts(request: Request, status: AccountStatus | None = None):
    return [a.to_dict() for a in await _rt(request).store.list_accounts(status)]


@r_accounts.get("/{account_id}")
async def get_account(request: Request, account_id: str):
    try:
        return (await _rt(request).store.get(account_id)).to_dict()
    except AccountNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@r_accounts.post("/fund")
async def fund(request: Request, req: FundReq):
    rt = _rt(request)
    if rt.workload_running:
        raise HTTPException(status_code=409, detail="Workload running")
    try:
        results = await fund_accounts(
            rt.store, rt.dispatcher, rt.rpc, rt.settings.accounts.root, req.layer,
            ether_to_wei(req.amount_eth), account_ids=req.account_ids, timeout=req.timeout,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except AccountNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {k: v.value for k, v in results.items()}


@r_accounts.post("/sync")
async def sync(request: Request):
    rt = _rt(request)
    if rt.workload_running:
        raise HTTPException(status_code=409, detail="Workload running")
    return await sync_balances(rt.store, rt.rpc, list(Layer))


# ============================================================
# Bridge
# ============================================================
@r_bridge.post("")
async def bridge(request: Request, req: BridgeReq):
    rt = _rt(request)
    try:
        amount = ether_to_wei(req.amount_eth)
        if req.wait:
            ops = await rt.bridge.bridge_many([(a, req.source, amount) for a in req.account_ids], timeout=req.timeout)
            return [op.to_dict() for op in ops]
        ops = [await rt.bridge.initiate(a, req.source, amount, timeout=req.timeout) for a in req.account_ids]
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except AccountNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidIntent as e:
        raise HTTPException(status_code=422, detail=str(e))
    for op in ops:
        rt.spawn(request.app.state.tg, rt.bridge.drive(op), name=f"bridge:{op.op_id}")
    return [op.to_dict() for op in ops]


@r_bridge.get("")
async def bridge_operations(request: Request, phase: BridgePhase | None = None):
    return [op.to_dict() for op in await _rt(request).bridge.operations(phase)]


@r_bridge.get("/{op_id}")
async def bridge_operation(request: Request, op_id: str):
    rt = _rt(request)
    op = await rt.bridge.get_operation(op_id)
    if op is None:
        raise HTTPException(status_code=404, detail=f"No bridge operation {op_id}")
    body = op.to_dict()
    if body["error"] is None:
        body["error"] = rt.task_errors.get(f"bridge:{op_id}")
    return body


@r_bridge.post("/{op_id}/redrive")
async def bridge_redrive(request: Request, op_id: str, wait: bool = True):
    rt = _rt(request)
    try:
        op = await rt.bridge.prepare_redrive(op_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"No bridge operation {op_id}")
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    if wait:
        return (await rt.bridge.drive(op)).to_dict()
    rt.spawn(request.app.state.tg, rt.bridge.drive(op), name=f"bridge:{op.op_id}")
    return op.to_dict()


# ============================================================
# Workload
# ============================================================
@r_workload.post("/start")
async def start_workload(request: Request, req: WorkloadReq | None = None):
    """Start a load run in the background."""
    rt = _rt(request)
    if rt.workload_running:
        raise HTTPException(status_code=400, detail="Workload already running")
    try:
        cfg = rt.settings.load_config(**(req.model_dump() if req else {}))
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))

    log.info("Starting workload: %s tx/s", cfg.rate)
    rt.workload_task = rt.spawn(request.app.state.tg, rt.run_workload(cfg), name="workload")
    return {"status": "started", "config": cfg.model_dump(mode="json")}


@r_workload.post("/stop")
async def stop_workload(request: Request):
    rt = _rt(request)
    if not rt.workload_running:
        raise HTTPException(status_code=400, detail="Workload not running")
    log.info("Stopping workload")
    rt.driver.cancel()
    await rt.workload_task
    return {
        "status": "stopped",
        "summary": rt.last_summary.to_dict() if rt.last_summary else None,
        "error": rt.last_error,
    }


@r_workload.get("/status")
async def workload_status(request: Request):
    """Live stats for the current run, or the last run's summary."""
    rt = _rt(request)
    return {
        "running": rt.workload_running,
        "stats": rt.driver.snapshot(),
        "last_summary": rt.last_summary.to_dict() if rt.last_summary else None,
        "error": rt.last_error or rt.task_errors.get("workload"),
    }


# ============================================================
# State
# ============================================================
@r_state.get("/reconcile")
async def state_reconcile(request: Request):
    rt = _rt(request)
    try:
        found = await reconcile(rt.store, rt.rpc, list(Layer))
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"in_sync": not found, "divergences": [d.to_dict() for d in found]}


@r_state.get("/outcomes")
async def state_outcomes(request: Request, account_id: str | None = None, limit: int = 100):
    outcomes = await _rt(request).store.outcomes(account_id)
    return [o.to_dict() for o in outcomes[-limit:]]


app = create_app()
