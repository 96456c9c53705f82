"""Configuration helpers for the booking sync service."""

from __future__ import annotations

from dataclasses import dataclass
import os
import warnings
from typing import Dict, Optional

# Valores padrão apenas para desenvolvimento local
# ⚠️ AVISO: Estes valores contêm credenciais inseguras e devem ser usados APENAS em desenvolvimento
_DEFAULT_DATABASE_URLS: Dict[str, str] = {
    "booking": "postgresql://user:password@db_booking:5432/bookingdb",
}

_DEFAULT_REDIS_URL = "redis://redis:6379/0"
_DEFAULT_EVENT_STREAM = "booking-events"
_DEFAULT_HOST = "0.0.0.0"
_DEFAULT_PORT = 8000
_WEBHOOK_PATH = "/graph/webhook"

_DEFAULT_RENEWAL_INTERVAL_SECONDS = 3600
_DEFAULT_RENEWAL_INITIAL_DELAY_SECONDS = 30
_DEFAULT_RENEWAL_LOOKAHEAD_HOURS = 12
_DEFAULT_SUBSCRIPTION_MINUTES = 4200

_INSECURE_PASSWORDS = {"password", "123456", "admin", "root", "test", ""}


@dataclass(frozen=True)
class DatabaseConfig:
    url: str


@dataclass(frozen=True)
class RedisConfig:
    url: str
    stream: str


@dataclass(frozen=True)
class GraphConfig:
    """Microsoft Graph service principal plus the public webhook address."""

    client_id: str = ""
    client_secret: str = ""
    tenant_id: str = ""
    webhook_base_url: str = ""

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.tenant_id)

    @property
    def webhook_url(self) -> Optional[str]:
        return build_webhook_url(self.webhook_base_url)


@dataclass(frozen=True)
class SyncConfig:
    renewal_interval_seconds: float = _DEFAULT_RENEWAL_INTERVAL_SECONDS
    renewal_initial_delay_seconds: float = _DEFAULT_RENEWAL_INITIAL_DELAY_SECONDS
    renewal_lookahead_hours: float = _DEFAULT_RENEWAL_LOOKAHEAD_HOURS
    subscription_minutes: int = _DEFAULT_SUBSCRIPTION_MINUTES


@dataclass(frozen=True)
class ServiceConfig:
    name: str
    host: str
    port: int
    database: DatabaseConfig
    redis: RedisConfig
    graph: GraphConfig
    sync: SyncConfig


def _is_production() -> bool:
    env = os.getenv("ENVIRONMENT", os.getenv("ENV", "development")).lower()
    return env in ("production", "prod")


def _lookup_database_url(service_name: str) -> str:
    """Lookup database URL from environment variables with fallback to defaults."""
    service_env = f"{service_name.upper()}_DATABASE_URL"
    db_url = (
        os.getenv(service_env)
        or os.getenv("DATABASE_URL")
        or _DEFAULT_DATABASE_URLS.get(service_name, "")
    )

    if db_url and db_url in _DEFAULT_DATABASE_URLS.values():
        if _is_production():
            raise ValueError(
                f"Valores padrão de banco de dados não podem ser usados em produção. "
                f"Defina {service_env} ou DATABASE_URL como variável de ambiente."
            )
        warnings.warn(
            f"Usando valor padrão de banco de dados para {service_name}. "
            f"Em produção, defina {service_env} ou DATABASE_URL.",
            UserWarning,
            stacklevel=2,
        )

    return db_url


def _validate_no_insecure_password(db_url: str, context: str) -> None:
    if ":" not in db_url or "@" not in db_url:
        return
    try:
        auth_part = db_url.split("@")[0].split("://")[1]
    except IndexError:
        return
    if ":" not in auth_part:
        return
    password = auth_part.split(":", 1)[1]
    if password.lower() not in _INSECURE_PASSWORDS:
        return
    if _is_production():
        raise ValueError(f"Senha insegura detectada em {context}. Use uma senha forte em produção.")
    warnings.warn(
        f"Senha insegura detectada em {context}. Use uma senha forte em produção.",
        UserWarning,
        stacklevel=3,
    )


def is_allowed_webhook_url(url: Optional[str]) -> bool:
    """HTTPS anywhere, plain HTTP only for localhost development."""
    if not url:
        return False
    lowered = url.lower().strip()
    if lowered.startswith("https://"):
        return True
    if lowered.startswith("http://"):
        return lowered.startswith("http://localhost") or lowered.startswith("http://127.0.0.1")
    return False


def build_webhook_url(base_url: Optional[str]) -> Optional[str]:
    """Return the public notification endpoint for ``base_url``.

    A bare host name is assumed to be served over HTTPS. Returns ``None`` when no
    base URL is set or the resulting address would not be accepted by the
    provider.
    """
    if not base_url or not base_url.strip():
        return None
    base = base_url.strip().rstrip("/")
    if not base.lower().startswith(("http://", "https://")):
        base = f"https://{base}"
    url = f"{base}{_WEBHOOK_PATH}"
    return url if is_allowed_webhook_url(url) else None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        warnings.warn(f"{name} inválido ({raw!r}); usando {default}.", UserWarning, stacklevel=3)
        return default


def load_graph_config() -> GraphConfig:
    return GraphConfig(
        client_id=os.getenv("MICROSOFT_CLIENT_ID", ""),
        client_secret=os.getenv("MICROSOFT_CLIENT_SECRET", ""),
        tenant_id=os.getenv("MICROSOFT_TENANT_ID", ""),
        webhook_base_url=os.getenv("WEBHOOK_BASE_URL", ""),
    )


def load_sync_config() -> SyncConfig:
    return SyncConfig(
        renewal_interval_seconds=_env_float(
            "SUBSCRIPTION_RENEWAL_INTERVAL_SECONDS", _DEFAULT_RENEWAL_INTERVAL_SECONDS
        ),
        renewal_initial_delay_seconds=_env_float(
            "SUBSCRIPTION_RENEWAL_INITIAL_DELAY_SECONDS", _DEFAULT_RENEWAL_INITIAL_DELAY_SECONDS
        ),
        renewal_lookahead_hours=_env_float(
            "SUBSCRIPTION_RENEWAL_LOOKAHEAD_HOURS", _DEFAULT_RENEWAL_LOOKAHEAD_HOURS
        ),
        subscription_minutes=int(
            _env_float("SUBSCRIPTION_EXPIRATION_MINUTES", _DEFAULT_SUBSCRIPTION_MINUTES)
        ),
    )


def load_service_config(service_name: str) -> ServiceConfig:
    """Aggregate configuration for a given service using env vars with sane fallbacks.

    Missing Microsoft Graph credentials are not an error: the service starts and
    every calendar sync feature reports itself as not configured.

    Raises:
        ValueError: if no database URL is available, or insecure defaults are
            used in production.
    """

    normalized_name = service_name.lower()
    db_url = _lookup_database_url(normalized_name)
    if not db_url:
        raise ValueError(
            f"DATABASE_URL not configured for service '{normalized_name}'. "
            f"Set DATABASE_URL or {normalized_name.upper()}_DATABASE_URL."
        )
    _validate_no_insecure_password(db_url, f"DATABASE_URL para {normalized_name}")

    host = os.getenv("APP_HOST", _DEFAULT_HOST)
    port = int(os.getenv("APP_PORT", str(_DEFAULT_PORT)))

    redis_url = os.getenv("REDIS_URL", _DEFAULT_REDIS_URL)
    stream_name = os.getenv("EVENT_STREAM", _DEFAULT_EVENT_STREAM)

    return ServiceConfig(
        name=normalized_name,
        host=host,
        port=port,
        database=DatabaseConfig(url=db_url),
        redis=RedisConfig(url=redis_url, stream=stream_name),
        graph=load_graph_config(),
        sync=load_sync_config(),
    )
