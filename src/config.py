"""Runtime settings, read from environment variables."""

import logging.config
import os
import sys
from dataclasses import dataclass, field

from src.errors import ConfigError


def _parse_schedule(raw: str) -> list[float]:
    try:
        return [float(part) for part in raw.split(",") if part.strip()]
    except ValueError as e:
        raise ConfigError(f"Invalid CAPTURE_RETRY_SCHEDULE '{raw}'") from e


def clean_shop_name(shop: str) -> str:
    return shop.strip().replace(".myshopify.com", "").rstrip("/")


@dataclass
class Settings:
    shop: str
    client_id: str
    client_secret: str
    api_version: str = "2024-01"
    host: str = "0.0.0.0"
    port: int = 3000
    capture_timeout_seconds: float = 30
    token_timeout_seconds: float = 10
    deferred_capture_days: float = 7
    sweep_interval_seconds: float = 60
    reconcile_interval_seconds: float = 24 * 60 * 60
    capture_max_retries: int = 0
    capture_retry_schedule: list[float] = field(default_factory=lambda: [30, 300, 1800])
    history_size: int = 1000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env=None) -> "Settings":
        env = os.environ if env is None else env

        missing = [
            name
            for name in ("SHOPIFY_SHOP_NAME", "SHOPIFY_CLIENT_ID", "SHOPIFY_CLIENT_SECRET")
            if not env.get(name, "").strip()
        ]
        if missing:
            raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")

        try:
            return cls(
                shop=clean_shop_name(env["SHOPIFY_SHOP_NAME"]),
                client_id=env["SHOPIFY_CLIENT_ID"].strip(),
                client_secret=env["SHOPIFY_CLIENT_SECRET"].strip(),
                api_version=env.get("SHOPIFY_API_VERSION", "2024-01"),
                host=env.get("HOST", "0.0.0.0"),
                port=int(env.get("PORT", "3000")),
                capture_timeout_seconds=float(env.get("CAPTURE_TIMEOUT_SECONDS", "30")),
                token_timeout_seconds=float(env.get("TOKEN_TIMEOUT_SECONDS", "10")),
                deferred_capture_days=float(env.get("DEFERRED_CAPTURE_DAYS", "7")),
                sweep_interval_seconds=float(env.get("SWEEP_INTERVAL_SECONDS", "60")),
                reconcile_interval_seconds=float(env.get("RECONCILE_INTERVAL_SECONDS", "86400")),
                capture_max_retries=int(env.get("CAPTURE_MAX_RETRIES", "0")),
                capture_retry_schedule=_parse_schedule(env.get("CAPTURE_RETRY_SCHEDULE", "30,300,1800")),
                history_size=int(env.get("DIAGNOSTIC_HISTORY_SIZE", "1000")),
                log_level=env.get("LOG_LEVEL", "INFO").upper(),
            )
        except ValueError as e:
            raise ConfigError(f"Invalid configuration value: {e}") from e


def setup_logging(log_level: str = "INFO") -> None:
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "stream": sys.stdout,
                "formatter": "standard",
                "level": log_level,
            },
        },
        "loggers": {
            "urllib3": {"level": "WARNING"},
            "apscheduler": {"level": "WARNING"},
        },
        "root": {"level": log_level, "handlers": ["console"]},
    })
