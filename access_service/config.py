import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List

from dotenv import load_dotenv

load_dotenv()

SYSTEM_ROLES = frozenset({"admin", "staff", "customer"})
DEFAULT_ROLE = "customer"
MIN_BCRYPT_ROUNDS = 10


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    database_url: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./access.db")
    db_echo: bool = _as_bool(os.getenv("DB_ECHO", "false"))

    jwt_secret_key: str = os.getenv("JWT_SECRET_KEY", "")
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")
    access_token_expire_minutes: int = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))

    bcrypt_rounds: int = max(int(os.getenv("BCRYPT_ROUNDS", "12")), MIN_BCRYPT_ROUNDS)
    resolve_timeout_seconds: float = float(os.getenv("RESOLVE_TIMEOUT_SECONDS", "5"))

    cors_origins: List[str] = field(
        default_factory=lambda: _as_list(os.getenv("CORS_ORIGINS", "http://localhost:3000"))
    )

    kafka_bootstrap_servers: str = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "")
    kafka_topic: str = os.getenv("KAFKA_TOPIC", "access_events")

    logstash_host: str = os.getenv("LOGSTASH_HOST", "")
    logstash_port: int = int(os.getenv("LOGSTASH_PORT", "5000"))

    seed_on_startup: bool = _as_bool(os.getenv("SEED_ON_STARTUP", "false"))
    admin_email: str = os.getenv("ADMIN_EMAIL", "")
    admin_password: str = os.getenv("ADMIN_PASSWORD", "")

    @property
    def events_enabled(self) -> bool:
        return bool(self.kafka_bootstrap_servers)


@lru_cache()
def get_settings() -> Settings:
    return Settings()
