"""
Common — サービス設定

各サービスは環境変数から設定を読む。
DATABASE_URL / REDIS_URL は docker-compose などで注入する想定。
"""

import os
import socket
from dataclasses import dataclass


def _int(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


def _float(name: str, default: float) -> float:
    return float(os.environ.get(name, default))


@dataclass(frozen=True)
class ServiceSettings:
    service_name: str
    database_url: str
    redis_url: str = "redis://localhost:6379"
    log_level: str = "INFO"
    # ブローカー: 最初の配信 + 再配信 1 回 = 2
    max_deliveries: int = 2
    redeliver_after_ms: int = 30_000
    publish_attempts: int = 5
    publish_backoff_base: float = 0.2
    publish_backoff_max: float = 5.0
    breaker_failure_threshold: int = 5
    breaker_reset_timeout: float = 30.0
    outbox_interval: float = 1.0
    inbox_retention_days: int = 7

    @property
    def consumer_name(self) -> str:
        return f"{self.service_name}-{socket.gethostname()}-{os.getpid()}"

    @classmethod
    def from_env(cls, service_name: str, default_database_url: str) -> "ServiceSettings":
        return cls(
            service_name=service_name,
            database_url=os.environ.get("DATABASE_URL", default_database_url),
            redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            max_deliveries=_int("BROKER_MAX_DELIVERIES", 2),
            redeliver_after_ms=_int("BROKER_REDELIVER_AFTER_MS", 30_000),
            publish_attempts=_int("PUBLISH_RETRY_ATTEMPTS", 5),
            publish_backoff_base=_float("PUBLISH_BACKOFF_BASE", 0.2),
            publish_backoff_max=_float("PUBLISH_BACKOFF_MAX", 5.0),
            breaker_failure_threshold=_int("BREAKER_FAILURE_THRESHOLD", 5),
            breaker_reset_timeout=_float("BREAKER_RESET_TIMEOUT", 30.0),
            outbox_interval=_float("OUTBOX_INTERVAL", 1.0),
            inbox_retention_days=_int("INBOX_RETENTION_DAYS", 7),
        )
