# config.py - v1.0 pydantic models + YAML loader for the cycling engine
from __future__ import annotations

from typing import List, Optional, Dict, Any
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
import yaml, os

from .errors import ConfigurationError
from .models import AUTO_SELECT

ENV_PREFIX = "PERP_CYCLER_"

# -----------------------------
# Shared
# -----------------------------
class RangeCfg(BaseModel):
    """Inclusive `{from, to}` range; YAML uses the keys `from` and `to`."""
    model_config = ConfigDict(populate_by_name=True)

    lo: float = Field(alias="from")
    hi: float = Field(alias="to")

    @model_validator(mode="after")
    def _ordered(self):
        if self.lo < 0:
            raise ValueError(f"range lower bound must be >= 0, got {self.lo}")
        if self.lo > self.hi:
            raise ValueError(f"range 'from' ({self.lo}) is greater than 'to' ({self.hi})")
        return self

# -----------------------------
# Exchange
# -----------------------------
class ExchangeCfg(BaseModel):
    id: str = "hyperliquid"
    quote: str = "USDC"
    testnet: bool = False
    leverage: int = 1
    timeout_ms: int = 20000

# -----------------------------
# Instruments & sizing
# -----------------------------
class InstrumentsCfg(BaseModel):
    # ["auto"] switches to best-pick by reward coefficient each cycle
    tracked: List[str] = Field(default_factory=list)
    # candidates for auto mode; also the set reconciled every cycle
    universe: List[str] = Field(default_factory=list)
    # optional weighted pick over `tracked`
    weights: Dict[str, float] = Field(default_factory=dict)
    reward_coefficients: Dict[str, float] = Field(default_factory=dict)

    @property
    def auto(self) -> bool:
        return len(self.tracked) == 1 and self.tracked[0] == AUTO_SELECT

    def reconcile_ids(self) -> List[str]:
        ids = list(self.universe) if self.auto else list(self.tracked)
        for extra in self.universe:
            if extra not in ids:
                ids.append(extra)
        return ids

class SizingCfg(BaseModel):
    percent: RangeCfg = RangeCfg(lo=70, hi=90)

    @field_validator("percent")
    @classmethod
    def _percent_bounds(cls, v: RangeCfg) -> RangeCfg:
        if not (0 < v.lo <= v.hi <= 100):
            raise ValueError("sizing.percent must satisfy 0 < from <= to <= 100")
        return v

# -----------------------------
# Execution & timing
# -----------------------------
class ExecutionCfg(BaseModel):
    slippage_pct: float = 0.5
    order_ttl_sec: int = 60
    time_in_force: str = "IOC"

    @property
    def slippage(self) -> float:
        return self.slippage_pct / 100.0

class PauseCfg(BaseModel):
    before_close: RangeCfg = RangeCfg(lo=10, hi=20)
    between_trades: RangeCfg = RangeCfg(lo=20, hi=40)

class ReconcileCfg(BaseModel):
    fills_lookback: int = 10
    retry_cooldown_sec: float = 10.0
    settle_delay_sec: float = 5.0
    max_attempts: int = 0  # 0 = retry until the residual is gone or the process is stopped

# -----------------------------
# Risk
# -----------------------------
class RiskCfg(BaseModel):
    api_circuit_breaker: Dict[str, Any] = Field(default_factory=lambda: {
        "enabled": True,
        "max_errors": 5,
        "window_seconds": 300,
        "cooldown_seconds": 600,
    })

# -----------------------------
# Paths, logging, notifications
# -----------------------------
class PathsCfg(BaseModel):
    logs_dir: str = "logs"
    heartbeat_path: Optional[str] = None
    emergency_stop_path: Optional[str] = None

class LoggingCfg(BaseModel):
    level: str = "INFO"
    file_backups: int = 7

class DiscordCfg(BaseModel):
    enabled: bool = False
    # Fallback webhook if DISCORD_WEBHOOK_URL env var is not set.
    webhook_url: Optional[str] = None

class NotificationsCfg(BaseModel):
    discord: DiscordCfg = DiscordCfg()

# -----------------------------
# Credentials (environment only, never read from YAML)
# -----------------------------
class CredentialsCfg(BaseModel):
    api_key: Optional[str] = None
    secret: Optional[str] = None
    password: Optional[str] = None
    wallet_address: Optional[str] = None
    private_key: Optional[str] = None

    @property
    def has_signing_credential(self) -> bool:
        return bool((self.api_key and self.secret) or self.private_key)

    def ccxt_params(self) -> Dict[str, str]:
        pairs = {
            "apiKey": self.api_key,
            "secret": self.secret,
            "password": self.password,
            "walletAddress": self.wallet_address,
            "privateKey": self.private_key,
        }
        return {k: v for k, v in pairs.items() if v}

class AppConfig(BaseModel):
    exchange: ExchangeCfg = ExchangeCfg()
    instruments: InstrumentsCfg
    sizing: SizingCfg = SizingCfg()
    execution: ExecutionCfg = ExecutionCfg()
    pause: PauseCfg = PauseCfg()
    reconcile: ReconcileCfg = ReconcileCfg()
    risk: RiskCfg = RiskCfg()
    paths: PathsCfg = PathsCfg()
    logging: LoggingCfg = LoggingCfg()
    notifications: NotificationsCfg = NotificationsCfg()
    credentials: CredentialsCfg = CredentialsCfg()

# -----------------------------
# Loader
# -----------------------------
def _merge_defaults(raw: Dict[str, Any]) -> Dict[str, Any]:
    raw = dict(raw or {})

    raw.setdefault("instruments", {})
    raw["instruments"].setdefault("tracked", [])
    raw["instruments"].setdefault("universe", [])

    raw.setdefault("pause", {})
    raw.setdefault("reconcile", {})

    raw.setdefault("notifications", {})
    raw["notifications"].setdefault("discord", {})
    raw["notifications"]["discord"].setdefault("enabled", False)
    raw["notifications"]["discord"].setdefault("webhook_url", None)

    raw.setdefault("risk", {})
    raw["risk"].setdefault("api_circuit_breaker", {"enabled": True, "max_errors": 5, "window_seconds": 300, "cooldown_seconds": 600})

    # credentials never come from the file
    raw.pop("credentials", None)
    return raw

def load_credentials(environ: Optional[Dict[str, str]] = None) -> CredentialsCfg:
    env = os.environ if environ is None else environ
    return CredentialsCfg(
        api_key=env.get(f"{ENV_PREFIX}API_KEY"),
        secret=env.get(f"{ENV_PREFIX}API_SECRET"),
        password=env.get(f"{ENV_PREFIX}API_PASSWORD"),
        wallet_address=env.get(f"{ENV_PREFIX}WALLET_ADDRESS"),
        private_key=env.get(f"{ENV_PREFIX}PRIVATE_KEY"),
    )

def validate_config(cfg: AppConfig) -> None:
    inst = cfg.instruments
    if not inst.tracked:
        raise ConfigurationError("instruments.tracked is empty; configure product ids or ['auto']")
    if AUTO_SELECT in inst.tracked and not inst.auto:
        raise ConfigurationError("'auto' must be the only entry of instruments.tracked")
    if inst.auto and not inst.universe:
        raise ConfigurationError("auto-select mode needs instruments.universe (candidate product ids)")
    unknown = [k for k in inst.weights if k not in inst.tracked]
    if unknown:
        raise ConfigurationError(f"instruments.weights names untracked instruments: {unknown}")
    if any(w < 0 for w in inst.weights.values()):
        raise ConfigurationError("instruments.weights must be non-negative")
    if inst.weights and not any(inst.weights.get(k, 0.0) > 0 for k in inst.tracked):
        raise ConfigurationError("instruments.weights gives every tracked instrument zero weight")
    if not (0.0 <= cfg.execution.slippage_pct < 100.0):
        raise ConfigurationError("execution.slippage_pct must be in [0, 100)")
    if cfg.execution.order_ttl_sec <= 0:
        raise ConfigurationError("execution.order_ttl_sec must be positive")
    if cfg.reconcile.fills_lookback <= 0:
        raise ConfigurationError("reconcile.fills_lookback must be positive")
    if cfg.reconcile.max_attempts < 0:
        raise ConfigurationError("reconcile.max_attempts must be >= 0")

def require_credentials(cfg: AppConfig) -> None:
    if not cfg.credentials.has_signing_credential:
        raise ConfigurationError(
            f"No signing credential: set {ENV_PREFIX}API_KEY/{ENV_PREFIX}API_SECRET "
            f"or {ENV_PREFIX}PRIVATE_KEY (or run with --dry)"
        )

def load_config(yaml_path: str, environ: Optional[Dict[str, str]] = None) -> AppConfig:
    path = os.path.abspath(yaml_path)
    if not os.path.exists(path):
        raise ConfigurationError(f"Config YAML not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Config YAML is not parseable: {e}")

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config YAML must be a mapping, got {type(data).__name__}")

    data = _merge_defaults(data)
    data["credentials"] = load_credentials(environ).model_dump()

    try:
        cfg = AppConfig(**data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid config.yaml: {e}")

    validate_config(cfg)
    return cfg
