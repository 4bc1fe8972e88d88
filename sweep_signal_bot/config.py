from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, List, Optional
import math
import os
import yaml

from .models import GRADES
from .sessions import SessionWindow, parse_sessions


def _positive(x: float) -> bool:
    return math.isfinite(x) and x > 0


def _env_override(value: Any, env_key: str) -> Any:
    env_val = os.getenv(env_key)
    if env_val is None:
        return value
    # basic parsing
    if isinstance(value, bool):
        return env_val.strip().lower() in ("1", "true", "yes", "y", "on")
    if isinstance(value, int):
        try:
            return int(env_val)
        except ValueError:
            return value
    if isinstance(value, float):
        try:
            return float(env_val)
        except ValueError:
            return value
    return env_val


def _csv_env(env_key: str) -> Optional[List[str]]:
    raw = os.getenv(env_key)
    if not raw:
        return None
    return [x.strip() for x in raw.split(",") if x.strip()]


DIRECTION_FILTERS = ("BOTH", "LONG", "SHORT")
NEWS_BIASES = ("NONE", "BULLISH", "BEARISH")

DEFAULT_INSTRUMENTS = [
    "EUR_USD", "GBP_USD", "USD_JPY", "USD_CHF", "AUD_USD", "NZD_USD", "USD_CAD",
    "EUR_GBP", "EUR_JPY", "GBP_JPY", "AUD_JPY", "CAD_JPY", "CHF_JPY",
    "EUR_AUD", "EUR_CAD", "EUR_CHF", "EUR_NZD",
    "GBP_AUD", "GBP_CAD", "GBP_CHF", "GBP_NZD",
    "AUD_CAD", "AUD_CHF", "AUD_NZD", "NZD_CAD", "NZD_CHF",
    "NAS100_USD", "XAU_USD",
]


@dataclass
class ScanSettings:
    min_rr: float = 2.0
    max_signals_per_instrument: int = 2
    equal_tolerance: float = 0.0003
    displacement_multiple: float = 1.5
    require_displacement: bool = False
    require_fvg: bool = False
    max_equal_levels: int = 3
    direction_filter: str = "BOTH"  # BOTH | LONG | SHORT
    require_htf_confluence: bool = True
    min_grade: str = "D"
    news_bias: str = "NONE"  # NONE | BULLISH | BEARISH (manual toggle)
    atr_period: int = 14

    def validate(self) -> "ScanSettings":
        errs = []
        if self.direction_filter not in DIRECTION_FILTERS:
            errs.append(f"direction_filter must be one of {list(DIRECTION_FILTERS)}")
        if self.min_grade not in GRADES:
            errs.append(f"min_grade must be one of {list(GRADES)}")
        if self.news_bias not in NEWS_BIASES:
            errs.append(f"news_bias must be one of {list(NEWS_BIASES)}")
        if not _positive(self.min_rr):
            errs.append("min_rr must be a finite number > 0")
        if self.max_signals_per_instrument < 1:
            errs.append("max_signals_per_instrument must be >= 1")
        if self.max_equal_levels < 0:
            errs.append("max_equal_levels must be >= 0")
        if not _positive(self.equal_tolerance):
            errs.append("equal_tolerance must be a finite number > 0")
        if not _positive(self.displacement_multiple):
            errs.append("displacement_multiple must be a finite number > 0")
        if self.atr_period < 1:
            errs.append("atr_period must be >= 1")
        if errs:
            raise ValueError("Invalid scan settings: " + "; ".join(errs))
        return self

    def signature(self) -> Dict[str, object]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def merged(self, **overrides: Any) -> "ScanSettings":
        clean = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **clean).validate()


@dataclass
class ProviderConfig:
    type: str = "oanda"
    environment: str = "practice"  # practice | live
    api_token: str = ""
    account_id: str = ""
    rest_timeout_s: int = 20
    rest_max_retries: int = 3
    rest_backoff_s: float = 0.8


@dataclass
class ScannerConfig:
    instruments: List[str] = None
    available_timeframes: List[str] = None
    default_timeframe: str = "H1"
    htf_map: Dict[str, str] = None
    candle_counts: Dict[str, int] = None
    daily_timeframe: str = "D"
    daily_count: int = 10
    htf_count: int = 30
    batch_size: int = 5
    batch_delay_s: float = 0.5
    cache_ttl_s: float = 60.0
    stale_after_s: float = 300.0
    scan_interval_s: float = 300.0
    initial_delay_s: float = 30.0
    pip_sizes: Dict[str, float] = None
    sessions: Dict[str, SessionWindow] = None
    level_sessions: List[str] = None
    equity_open_utc: float = 14.5
    equity_open_warning_minutes: int = 30

    def __post_init__(self) -> None:
        if self.instruments is None:
            self.instruments = list(DEFAULT_INSTRUMENTS)
        if self.available_timeframes is None:
            self.available_timeframes = ["M30", "H1", "H4", "D"]
        if self.htf_map is None:
            self.htf_map = {"M30": "H4", "H1": "H4", "H4": "D", "D": "W"}
        if self.candle_counts is None:
            self.candle_counts = {"M30": 100, "H1": 72, "H4": 42, "D": 30}
        if self.pip_sizes is None:
            self.pip_sizes = {}
        if not self.sessions or not all(isinstance(v, SessionWindow) for v in self.sessions.values()):
            self.sessions = parse_sessions(self.sessions)
        if self.level_sessions is None:
            self.level_sessions = ["ASIAN", "LONDON"]

    def candle_count(self, timeframe: str) -> int:
        return int(self.candle_counts.get(timeframe, 72))

    def htf_for(self, timeframe: str) -> str:
        return self.htf_map.get(timeframe, "D")


@dataclass
class AlertsConfig:
    timeframe: str = "H1"
    min_grade: str = "B"
    grades: List[str] = None
    cooldown_s: float = 3600.0
    retention_s: float = 86400.0
    send_delay_s: float = 0.1
    parse_mode: str = "HTML"
    include_score_breakdown: bool = False
    footer: str = "Manage your risk. Not financial advice."

    def __post_init__(self) -> None:
        if self.grades is None:
            self.grades = ["A+", "A"]


@dataclass
class TelegramConfig:
    enabled: bool = True
    token: str = ""
    chat_ids: List[str] = None
    admin_chat_id: str = ""
    webhook_url: str = ""
    disable_web_page_preview: bool = True


@dataclass
class RecipientsConfig:
    type: str = "static"  # static | supabase
    supabase_url: str = ""
    supabase_key: str = ""
    timeout_s: int = 10


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 3001


@dataclass
class AppConfig:
    name: str = "SweepSignal"
    log_level: str = "INFO"


@dataclass
class Config:
    app: AppConfig = field(default_factory=AppConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    scanner: ScannerConfig = field(default_factory=ScannerConfig)
    strategy: ScanSettings = field(default_factory=ScanSettings)
    alerts: AlertsConfig = field(default_factory=AlertsConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    recipients: RecipientsConfig = field(default_factory=RecipientsConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


def load_config(path: Optional[str]) -> Config:
    raw: Dict[str, Any] = {}
    if path:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}

    cfg = Config(
        app=AppConfig(**raw.get("app", {})),
        provider=ProviderConfig(**raw.get("provider", {})),
        scanner=ScannerConfig(**raw.get("scanner", {})),
        strategy=ScanSettings(**raw.get("strategy", {})),
        alerts=AlertsConfig(**raw.get("alerts", {})),
        telegram=TelegramConfig(**raw.get("telegram", {})),
        recipients=RecipientsConfig(**raw.get("recipients", {})),
        server=ServerConfig(**raw.get("server", {})),
    )

    # env overrides (useful on servers)
    cfg.provider.api_token = _env_override(cfg.provider.api_token, "OANDA_API_TOKEN")
    cfg.provider.account_id = _env_override(cfg.provider.account_id, "OANDA_ACCOUNT_ID")
    cfg.provider.environment = _env_override(cfg.provider.environment, "OANDA_ENVIRONMENT")

    cfg.telegram.token = _env_override(cfg.telegram.token, "TELEGRAM_TOKEN")
    cfg.telegram.admin_chat_id = _env_override(cfg.telegram.admin_chat_id, "ADMIN_CHAT_ID")
    cfg.telegram.webhook_url = _env_override(cfg.telegram.webhook_url, "TELEGRAM_WEBHOOK_URL")
    if cfg.telegram.chat_ids is None:
        cfg.telegram.chat_ids = []
    # Allow TELEGRAM_CHAT_IDS="id1,id2"
    chat_env = _csv_env("TELEGRAM_CHAT_IDS")
    if chat_env:
        cfg.telegram.chat_ids = chat_env

    cfg.recipients.supabase_url = _env_override(cfg.recipients.supabase_url, "SUPABASE_URL")
    cfg.recipients.supabase_key = _env_override(cfg.recipients.supabase_key, "SUPABASE_SERVICE_KEY")

    cfg.server.port = _env_override(cfg.server.port, "PORT")

    validate_config(cfg)
    return cfg


def validate_config(cfg: Config) -> None:
    errs = []
    sc = cfg.scanner
    if sc.default_timeframe not in sc.available_timeframes:
        errs.append(f"scanner.default_timeframe {sc.default_timeframe} not in {sc.available_timeframes}")
    if cfg.alerts.timeframe not in sc.available_timeframes:
        errs.append(f"alerts.timeframe {cfg.alerts.timeframe} not in {sc.available_timeframes}")
    if sc.batch_size < 1:
        errs.append("scanner.batch_size must be >= 1")
    for g in list(cfg.alerts.grades) + [cfg.alerts.min_grade]:
        if g not in GRADES:
            errs.append(f"alerts grade {g} not in {list(GRADES)}")
    for name in sc.level_sessions:
        if str(name).upper() not in sc.sessions:
            errs.append(f"scanner.level_sessions: unknown session {name}")
    if cfg.provider.environment not in ("practice", "live"):
        errs.append("provider.environment must be practice or live")
    if cfg.recipients.type not in ("static", "supabase"):
        errs.append("recipients.type must be static or supabase")
    elif cfg.recipients.type == "supabase" and not (cfg.recipients.supabase_url and cfg.recipients.supabase_key):
        errs.append("recipients.type supabase requires supabase_url and supabase_key")
    if errs:
        raise ValueError("Config error: " + "; ".join(errs))
    cfg.strategy.validate()
