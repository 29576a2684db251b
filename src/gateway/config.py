import os
from dataclasses import dataclass
from typing import Dict

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

TRUTHY_VALUES: frozenset[str] = frozenset({"1", "true", "yes", "on"})
FALSY_VALUES: frozenset[str] = frozenset({"0", "false", "no", "off"})

TIER_ORDER: tuple[str, ...] = ("free", "pro", "enterprise", "admin")
UNLIMITED = -1

DEFAULT_CONFIG_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "..", "config")


def _env_var_as_bool(name: str, *, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if not normalized:
        return default
    if normalized in TRUTHY_VALUES:
        return True
    if normalized in FALSY_VALUES:
        return False
    return default


def _env_var_as_float(name: str, *, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        return default
    return value if value >= 0 else default


def _env_var_as_int(name: str, *, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        return default
    return value if value > 0 else default


def _parse_env_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _env_str(name: str, default: str | None = None) -> str | None:
    raw = os.environ.get(name)
    if raw is None:
        return default
    stripped = raw.strip()
    return stripped or default


@dataclass(frozen=True)
class GatewaySettings:
    database_url: str
    jwt_secret: str
    jwt_algorithm: str
    encryption_key: str | None
    fallback_api_key: str | None
    fallback_model: str
    fallback_base_url: str
    upstream_timeout_s: float
    upstream_concurrency: int
    provider_cache_ttl_s: float
    config_dir: str
    metrics_dir: str
    cors_allow_origins: tuple[str, ...]
    upgrade_url: str
    create_tables: bool


def load_settings() -> GatewaySettings:
    return GatewaySettings(
        database_url=_env_str("GATEWAY_DATABASE_URL", "sqlite+aiosqlite:///./gateway.db") or "",
        jwt_secret=_env_str("GATEWAY_JWT_SECRET", "change-me-in-production") or "",
        jwt_algorithm=_env_str("GATEWAY_JWT_ALGORITHM", "HS256") or "HS256",
        encryption_key=_env_str("GATEWAY_ENCRYPTION_KEY"),
        fallback_api_key=_env_str("OPENAI_API_KEY"),
        fallback_model=_env_str("GATEWAY_FALLBACK_MODEL", "gpt-4") or "gpt-4",
        fallback_base_url=_env_str("GATEWAY_FALLBACK_BASE_URL", "https://api.openai.com/v1") or "",
        upstream_timeout_s=_env_var_as_float("GATEWAY_UPSTREAM_TIMEOUT_S", default=30.0),
        upstream_concurrency=_env_var_as_int("GATEWAY_UPSTREAM_CONCURRENCY", default=16),
        provider_cache_ttl_s=_env_var_as_float("GATEWAY_PROVIDER_CACHE_TTL_S", default=0.0),
        config_dir=_env_str("GATEWAY_CONFIG_DIR", DEFAULT_CONFIG_DIR) or DEFAULT_CONFIG_DIR,
        metrics_dir=_env_str(
            "GATEWAY_METRICS_DIR",
            os.path.join(os.path.dirname(os.path.dirname(__file__)), "..", "metrics"),
        )
        or "metrics",
        cors_allow_origins=tuple(_parse_env_list(os.environ.get("GATEWAY_CORS_ALLOW_ORIGINS", ""))),
        upgrade_url=_env_str("GATEWAY_UPGRADE_URL", "https://gosubtle.app/pricing") or "",
        create_tables=_env_var_as_bool("GATEWAY_CREATE_TABLES", default=True),
    )


@dataclass(frozen=True)
class TierLimits:
    requests_per_day: int
    tokens_per_day: int
    cost_per_day: float
    ai_access: bool = True

    @property
    def unlimited(self) -> bool:
        return self.requests_per_day == UNLIMITED


@dataclass(frozen=True)
class RequestDefaults:
    temperature: float
    max_tokens: int
    analysis_max_tokens: int
    analysis_model: str


@dataclass
class LoadedConfig:
    tiers: Dict[str, TierLimits]
    defaults: RequestDefaults
    source_path: str | None = None

    def limits_for(self, tier: str) -> TierLimits:
        return self.tiers.get(tier) or self.tiers["free"]


class _TierModel(BaseModel):
    requests_per_day: int = Field(default=0)
    tokens_per_day: int = Field(default=0)
    cost_per_day: float = Field(default=0.0)
    ai_access: bool = True

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _check_ceilings(self) -> "_TierModel":
        for name in ("requests_per_day", "tokens_per_day"):
            value = getattr(self, name)
            if value < 0 and value != UNLIMITED:
                raise ValueError(f"{name} must be >= 0 or {UNLIMITED} for unlimited")
        if self.cost_per_day < 0 and self.cost_per_day != UNLIMITED:
            raise ValueError(f"cost_per_day must be >= 0 or {UNLIMITED} for unlimited")
        return self


class _DefaultsModel(BaseModel):
    temperature: float = Field(default=0.7, ge=0, le=2)
    max_tokens: int = Field(default=1000, ge=1)
    analysis_max_tokens: int = Field(default=1500, ge=1)
    analysis_model: str = Field(default="gpt-4o")

    model_config = ConfigDict(extra="forbid")


def _default_tiers() -> dict[str, _TierModel]:
    return {
        "free": _TierModel(ai_access=False),
        "pro": _TierModel(requests_per_day=1000, tokens_per_day=500000, cost_per_day=50),
        "enterprise": _TierModel(requests_per_day=10000, tokens_per_day=5000000, cost_per_day=500),
        "admin": _TierModel(
            requests_per_day=UNLIMITED, tokens_per_day=UNLIMITED, cost_per_day=UNLIMITED
        ),
    }


class _GatewayConfigModel(BaseModel):
    defaults: _DefaultsModel = Field(default_factory=_DefaultsModel)
    tiers: Dict[str, _TierModel] = Field(default_factory=_default_tiers)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _fill_tiers(self) -> "_GatewayConfigModel":
        unknown = sorted(set(self.tiers) - set(TIER_ORDER))
        if unknown:
            raise ValueError(
                "unknown tiers: {names}; expected one of {expected}".format(
                    names=", ".join(unknown), expected=", ".join(TIER_ORDER)
                )
            )
        merged = _default_tiers()
        merged.update(self.tiers)
        # free never gets AI access, admin is never capped
        merged["free"] = merged["free"].model_copy(update={"ai_access": False})
        merged["admin"] = _default_tiers()["admin"]
        self.tiers = merged
        return self


def load_config(config_dir: str | None = None) -> LoadedConfig:
    path = os.path.join(config_dir, "tiers.yaml") if config_dir else None
    data: object = {}
    if path is not None and os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    else:
        path = None
    try:
        parsed = _GatewayConfigModel.model_validate(data)
    except ValidationError as exc:
        problems = []
        for error in exc.errors():
            location = " -> ".join(str(item) for item in error.get("loc", ())) or "<root>"
            problems.append(f"{location}: {error.get('msg', 'invalid value')}")
        raise ValueError("; ".join(problems)) from exc
    tiers = {
        name: TierLimits(
            requests_per_day=int(model.requests_per_day),
            tokens_per_day=int(model.tokens_per_day),
            cost_per_day=float(model.cost_per_day),
            ai_access=bool(model.ai_access),
        )
        for name, model in parsed.tiers.items()
    }
    defs = parsed.defaults
    return LoadedConfig(
        tiers=tiers,
        defaults=RequestDefaults(
            temperature=float(defs.temperature),
            max_tokens=int(defs.max_tokens),
            analysis_max_tokens=int(defs.analysis_max_tokens),
            analysis_model=str(defs.analysis_model),
        ),
        source_path=path,
    )


def normalize_tier(raw_tier: str | None, role: str | None = None) -> str:
    if (role or "").strip().lower() == "admin":
        return "admin"
    tier = (raw_tier or "").strip().lower()
    return tier if tier in TIER_ORDER else "free"
