from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


def _default_env_file() -> str:
    # .env at the repository root, shared with docker-compose.
    repo_root = Path(__file__).resolve().parents[1]
    return str(repo_root / ".env")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("true", "1", "yes", "on")


@dataclass(frozen=True)
class MQTTSettings:
    broker_host: str
    broker_port: int
    username: Optional[str]
    password: Optional[str]
    client_id: str
    topic_prefix: str
    qos: int
    keepalive: int


@dataclass(frozen=True)
class Settings:
    mqtt: MQTTSettings

    database_url: Optional[str]
    redis_url: Optional[str]

    num_workers: int
    queue_size: int
    downstream_timeout_seconds: float
    trust_transport_order: bool
    max_clock_skew_seconds: float

    notify_webhook_url: Optional[str]
    notify_queue_size: int

    log_level: str


def get_settings() -> Settings:
    # Load env file (if present) but still allow overriding via real environment variables.
    env_file = os.getenv("COFFEE_ENV_FILE", _default_env_file())
    if env_file and Path(env_file).exists():
        load_dotenv(env_file, override=False)

    mqtt = MQTTSettings(
        broker_host=os.getenv("MQTT_BROKER_HOST", "localhost"),
        broker_port=int(os.getenv("MQTT_BROKER_PORT", "1883")),
        username=os.getenv("MQTT_USERNAME") or None,
        password=os.getenv("MQTT_PASSWORD") or None,
        client_id=os.getenv("MQTT_CLIENT_ID", "coffee-telemetry-ingest"),
        topic_prefix=os.getenv("MQTT_TOPIC_PREFIX", "coffeeMachine"),
        # At least once: QoS 0 loses messages across reconnects.
        qos=max(1, min(2, int(os.getenv("MQTT_QOS", "1")))),
        keepalive=int(os.getenv("MQTT_KEEPALIVE", "60")),
    )

    return Settings(
        mqtt=mqtt,
        database_url=os.getenv("DATABASE_URL") or None,
        redis_url=os.getenv("REDIS_URL") or None,
        num_workers=int(os.getenv("INGEST_NUM_WORKERS", "4")),
        queue_size=int(os.getenv("INGEST_QUEUE_SIZE", "1000")),
        downstream_timeout_seconds=float(os.getenv("DOWNSTREAM_TIMEOUT_SECONDS", "5")),
        trust_transport_order=_env_bool("STATE_TRUST_TRANSPORT_ORDER", "false"),
        max_clock_skew_seconds=float(os.getenv("MAX_CLOCK_SKEW_SECONDS", "60")),
        notify_webhook_url=os.getenv("NOTIFY_WEBHOOK_URL") or None,
        notify_queue_size=int(os.getenv("NOTIFY_QUEUE_SIZE", "500")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
