import os
import tomllib
from pathlib import Path

from pydantic import BaseModel, Field, PositiveFloat, PositiveInt

from stressnet.constants import GWEI, Layer
from stressnet.driver import LoadConfig
from stressnet.fees import FeeParams, L2PricingModel
from stressnet.retry import BackoffPolicy
from stressnet.signer import LayerParams

pkg_root = Path(__file__).parent
config_file = pkg_root / "config.toml"


class RpcSettings(BaseModel):
    l1_url: str = "http://localhost:8545"
    l2_url: str = "http://localhost:8547"
    l1_ws_url: str = "ws://localhost:8546"
    l2_ws_url: str = "ws://localhost:8548"
    timeout: PositiveFloat = 10.0
    poll_interval: PositiveFloat = 0.5

    def urls(self) -> dict[Layer, str]:
        return {Layer.L1: self.l1_url, Layer.L2: self.l2_url}

    def ws_urls(self) -> dict[Layer, str]:
        return {Layer.L1: self.l1_ws_url, Layer.L2: self.l2_ws_url}


class RetrySettings(BaseModel):
    base: PositiveFloat = 0.25
    cap: PositiveFloat = 8.0
    jitter: float = Field(0.2, ge=0, lt=1)
    max_attempts: PositiveInt = 8
    max_elapsed: PositiveFloat = 30.0

    def policy(self) -> BackoffPolicy:
        return BackoffPolicy(**self.model_dump())


class ChainSettings(BaseModel):
    chain_id: PositiveInt
    call_gas_limit: PositiveInt = 300_000


class FeeSettings(BaseModel):
    multiplier: PositiveFloat = 2.0
    priority_fee_wei: int = Field(GWEI, ge=0)
    refresh: float = Field(5.0, ge=0)


class L2PricingSettings(BaseModel):
    enabled: bool = True
    speed_limit_per_second: PositiveInt = 7_000_000
    min_base_fee_wei: PositiveInt = GWEI // 10
    pricing_inertia: PositiveInt = 102
    backlog_tolerance: PositiveInt = 10


class StoreSettings(BaseModel):
    db_path: str = "stressnet_state.db"
    busy_timeout: PositiveFloat = 5.0


class AccountSettings(BaseModel):
    mnemonic: str | None = None
    root: str = "funnel"
    refs: dict[str, str] = Field(default_factory=dict)
    pool_size: int = Field(0, ge=0)
    pool_prefix: str = "user"
    register_on_startup: bool = True

    def all_refs(self) -> dict[str, str]:
        """Explicit refs plus ``pool_size`` mnemonic-derived pool accounts."""
        refs = dict(self.refs)
        for i in range(self.pool_size):
            refs.setdefault(f"{self.pool_prefix}_{i}", f"mnemonic:{i + 1}")
        return refs


class BridgeSettings(BaseModel):
    inbox_address: str | None = None
    poll_interval: PositiveFloat = 2.0
    timeout: PositiveFloat = 600.0


class StartupSettings(BaseModel):
    overall: PositiveFloat = 180.0
    probe_retries: PositiveInt = 30
    probe_delay: PositiveFloat = 2.0
    initial_blocks: int = Field(2, ge=0)


class Settings(BaseModel):
    rpc: RpcSettings = Field(default_factory=RpcSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    chain: dict[Layer, ChainSettings] = Field(
        default_factory=lambda: {Layer.L1: ChainSettings(chain_id=1337), Layer.L2: ChainSettings(chain_id=412346)}
    )
    fees: dict[Layer, FeeSettings] = Field(default_factory=dict)
    l2pricing: L2PricingSettings = Field(default_factory=L2PricingSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    accounts: AccountSettings = Field(default_factory=AccountSettings)
    load: dict = Field(default_factory=dict)
    bridge: BridgeSettings = Field(default_factory=BridgeSettings)
    startup: StartupSettings = Field(default_factory=StartupSettings)

    def layer_params(self) -> dict[Layer, LayerParams]:
        return {layer: LayerParams(c.chain_id, c.call_gas_limit) for layer, c in self.chain.items()}

    def fee_params(self) -> dict[Layer, FeeParams]:
        return {layer: FeeParams(**f.model_dump()) for layer, f in self.fees.items()}

    def l2_model(self) -> L2PricingModel | None:
        p = self.l2pricing
        if not p.enabled:
            return None
        return L2PricingModel(
            speed_limit_per_second=p.speed_limit_per_second,
            min_base_fee_wei=p.min_base_fee_wei,
            pricing_inertia=p.pricing_inertia,
            backlog_tolerance=p.backlog_tolerance,
            base_fee_wei=p.min_base_fee_wei,
        )

    def load_config(self, **overrides) -> LoadConfig:
        """Defaults from the [load] section with request overrides on top.

        A request naming a duration or a volume replaces both configured
        targets, so a volume-only request is not capped by the default duration.
        """
        given = {k: v for k, v in overrides.items() if v is not None}
        base = dict(self.load)
        if "duration" in given or "volume" in given:
            base.pop("duration", None)
            base.pop("volume", None)
        return LoadConfig(**{**base, **given})


_ENV_OVERRIDES = {
    "L1_URL": ("rpc", "l1_url"),
    "L2_URL": ("rpc", "l2_url"),
    "L1_WS_URL": ("rpc", "l1_ws_url"),
    "L2_WS_URL": ("rpc", "l2_ws_url"),
    "STRESSNET_DB": ("store", "db_path"),
}


def load_settings(path: str | Path | None = None, env: dict[str, str] | None = None) -> Settings:
    env = os.environ if env is None else env
    path = Path(path or env.get("STRESSNET_CONFIG") or config_file)
    raw = tomllib.loads(path.read_text())
    for var, (section, key) in _ENV_OVERRIDES.items():
        if env.get(var):
            raw.setdefault(section, {})[key] = env[var]
    if not (raw.get("bridge") or {}).get("inbox_address"):
        raw.setdefault("bridge", {})["inbox_address"] = None
    return Settings.model_validate(raw)
