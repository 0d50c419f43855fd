from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import yaml

from .storage import get_setting, set_setting


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    timezone: str


@dataclass(frozen=True)
class DeliveryConfig:
    cycle_interval_seconds: int
    max_articles_per_batch: int
    per_category_limit: int
    user_concurrency: int
    channel_timeout_seconds: float
    lease_ttl_seconds: int


@dataclass(frozen=True)
class RecommenderConfig:
    category_weight: float
    source_weight: float
    keyword_weight: float
    recency_weight: float
    recency_window_hours: float
    default_limit: int
    per_category_limit: int
    default_categories: list[str]


@dataclass(frozen=True)
class DecayConfig:
    enabled: bool
    interval_hours: int
    default_decay_factor: float
    prune_threshold: float


@dataclass(frozen=True)
class EmailChannelConfig:
    smtp_host: str
    smtp_port: int
    use_tls: bool
    username: str
    from_address: str


@dataclass(frozen=True)
class TelegramChannelConfig:
    api_base: str


@dataclass(frozen=True)
class ChannelsConfig:
    email: EmailChannelConfig
    telegram: TelegramChannelConfig


@dataclass(frozen=True)
class Config:
    app: AppConfig
    delivery: DeliveryConfig
    recommender: RecommenderConfig
    decay: DecayConfig
    channels: ChannelsConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "Notified",
        "timezone": "UTC",
    },
    "delivery": {
        "cycle_interval_seconds": 60,
        "max_articles_per_batch": 3,
        "per_category_limit": 10,
        "user_concurrency": 4,
        "channel_timeout_seconds": 10.0,
        "lease_ttl_seconds": 600,
    },
    "recommender": {
        "category_weight": 0.4,
        "source_weight": 0.2,
        "keyword_weight": 0.3,
        "recency_weight": 0.1,
        "recency_window_hours": 168.0,
        "default_limit": 5,
        "per_category_limit": 10,
        "default_categories": [
            "SPORTS",
            "NEWS",
            "TECHNOLOGY",
            "ENTERTAINMENT",
            "FINANCE",
            "HEALTH",
            "TRAVEL",
            "EDUCATION",
        ],
    },
    "decay": {
        "enabled": True,
        "interval_hours": 168,
        "default_decay_factor": 0.95,
        "prune_threshold": 0.1,
    },
    "channels": {
        "email": {
            "smtp_host": "",
            "smtp_port": 587,
            "use_tls": True,
            "username": "",
            "from_address": "notified@localhost",
        },
        "telegram": {
            "api_base": "https://api.telegram.org",
        },
    },
}

CONFIG_KEY = "config.runtime"


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        set_setting(conn, CONFIG_KEY, _initial_config())
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def get_runtime_config(conn) -> dict[str, Any]:
    cfg = bootstrap_runtime_config(conn)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def load_runtime_config(conn) -> Config:
    cfg = get_runtime_config(conn)
    return build_config(cfg)


def load_config_file(path: str) -> dict[str, Any]:
    """Read a YAML file and overlay it on the defaults."""
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Unable to read config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    merged = _deep_merge(_deep_copy(DEFAULT_CONFIG), data)
    errors = validate_runtime_config(merged)
    if errors:
        raise ConfigError(f"Invalid config file {path}: " + "; ".join(errors))
    return merged


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    if not errors:
        factor = cfg["decay"]["default_decay_factor"]
        if not 0 < factor <= 1:
            errors.append("config.runtime.decay.default_decay_factor must be in (0, 1]")
        for key in ("max_articles_per_batch", "per_category_limit", "user_concurrency"):
            if cfg["delivery"][key] < 1:
                errors.append(f"config.runtime.delivery.{key} must be >= 1")
        if cfg["delivery"]["channel_timeout_seconds"] <= 0:
            errors.append("config.runtime.delivery.channel_timeout_seconds must be > 0")
    return errors


def _initial_config() -> dict[str, Any]:
    path = os.environ.get("NF_CONFIG_PATH")
    if path:
        return load_config_file(path)
    return _deep_copy(DEFAULT_CONFIG)


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        for item in value:
            if not isinstance(item, str):
                errors.append(f"{path} must be a list of strings")
                break
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg.get("app") or {}
    delivery_cfg = cfg.get("delivery") or {}
    recommender_cfg = cfg.get("recommender") or {}
    decay_cfg = cfg.get("decay") or {}
    channels_cfg = cfg.get("channels") or {}

    app = AppConfig(
        name=str(app_cfg.get("name")),
        timezone=str(app_cfg.get("timezone")),
    )

    delivery = DeliveryConfig(
        cycle_interval_seconds=int(delivery_cfg.get("cycle_interval_seconds")),
        max_articles_per_batch=int(delivery_cfg.get("max_articles_per_batch")),
        per_category_limit=int(delivery_cfg.get("per_category_limit")),
        user_concurrency=int(delivery_cfg.get("user_concurrency")),
        channel_timeout_seconds=float(delivery_cfg.get("channel_timeout_seconds")),
        lease_ttl_seconds=int(delivery_cfg.get("lease_ttl_seconds")),
    )

    recommender = RecommenderConfig(
        category_weight=float(recommender_cfg.get("category_weight")),
        source_weight=float(recommender_cfg.get("source_weight")),
        keyword_weight=float(recommender_cfg.get("keyword_weight")),
        recency_weight=float(recommender_cfg.get("recency_weight")),
        recency_window_hours=float(recommender_cfg.get("recency_window_hours")),
        default_limit=int(recommender_cfg.get("default_limit")),
        per_category_limit=int(recommender_cfg.get("per_category_limit")),
        default_categories=[str(c).upper() for c in recommender_cfg.get("default_categories")],
    )

    decay = DecayConfig(
        enabled=bool(decay_cfg.get("enabled")),
        interval_hours=int(decay_cfg.get("interval_hours")),
        default_decay_factor=float(decay_cfg.get("default_decay_factor")),
        prune_threshold=float(decay_cfg.get("prune_threshold")),
    )

    email_cfg = channels_cfg.get("email") or {}
    telegram_cfg = channels_cfg.get("telegram") or {}
    channels = ChannelsConfig(
        email=EmailChannelConfig(
            smtp_host=str(email_cfg.get("smtp_host")),
            smtp_port=int(email_cfg.get("smtp_port")),
            use_tls=bool(email_cfg.get("use_tls")),
            username=str(email_cfg.get("username")),
            from_address=str(email_cfg.get("from_address")),
        ),
        telegram=TelegramChannelConfig(api_base=str(telegram_cfg.get("api_base"))),
    )

    return Config(
        app=app,
        delivery=delivery,
        recommender=recommender,
        decay=decay,
        channels=channels,
    )


def default_config() -> Config:
    return build_config(_deep_copy(DEFAULT_CONFIG))


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
