from __future__ import annotations
import os
from dataclasses import dataclass
from typing import Optional


# Candy Machine Core (v3); mints through Candy Guard CPI into it as well
DEFAULT_ISSUANCE_PROGRAM_ID = "CndyV3LdqHUfDLmE5naZjVN8rBZz4tqhdefbAnjHG3JR"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str) -> Optional[int]:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else None


# ----------------------------
# Config
# ----------------------------
@dataclass
class Config:
    database_url: str = "sqlite:///./ticketmint.db"
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_gate_limit: Optional[int] = None

    solana_rpc_url: str = "https://api.devnet.solana.com"
    solana_ws_url: str = "wss://api.devnet.solana.com"
    issuance_program_id: str = DEFAULT_ISSUANCE_PROGRAM_ID
    ledger_commitment: str = "finalized"
    ledger_timeout: float = 10.0

    provisioner_backend: str = "mock"  # 'mock' | 'http'
    provisioner_url: str = "http://127.0.0.1:7070"
    metadata_upload_url: str = "http://127.0.0.1:7070/metadata"

    idempotency_backend: str = "sql"  # 'sql' | 'redis'
    redis_url: str = "redis://127.0.0.1:6379"
    redis_max_conn: int = 64

    watcher_enabled: bool = False
    watcher_reconnect_delay: float = 5.0
    watcher_reconnect_backoff: float = 1.0
    watcher_max_attempts: Optional[int] = None

    pending_tx_ttl_seconds: int = 30 * 60

    session_secret: str = "dev-secret-change-me"
    admin_username: str = "admin"
    admin_password: str = "supasecret"
    mock_secret: str = "supersecret"
    notifier_secret: Optional[str] = None

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        d = cls()
        return cls(
            database_url=os.getenv("DATABASE_URL", d.database_url),
            db_pool_size=int(
                os.getenv("DB_POOL_SIZE", str(d.db_pool_size))
            ),
            db_max_overflow=int(
                os.getenv("DB_MAX_OVERFLOW", str(d.db_max_overflow))
            ),
            db_pool_timeout=int(
                os.getenv("DB_POOL_TIMEOUT", str(d.db_pool_timeout))
            ),
            db_gate_limit=_env_int("DB_GATE_LIMIT"),
            solana_rpc_url=os.getenv("SOLANA_RPC_URL", d.solana_rpc_url),
            solana_ws_url=os.getenv("SOLANA_WS_URL", d.solana_ws_url),
            issuance_program_id=os.getenv(
                "ISSUANCE_PROGRAM_ID", d.issuance_program_id
            ),
            ledger_commitment=os.getenv(
                "LEDGER_COMMITMENT", d.ledger_commitment
            ),
            ledger_timeout=float(
                os.getenv("LEDGER_TIMEOUT", str(d.ledger_timeout))
            ),
            provisioner_backend=os.getenv(
                "PROVISIONER_BACKEND", d.provisioner_backend
            ).lower(),
            provisioner_url=os.getenv("PROVISIONER_URL", d.provisioner_url),
            metadata_upload_url=os.getenv(
                "METADATA_UPLOAD_URL", d.metadata_upload_url
            ),
            idempotency_backend=os.getenv(
                "IDEMPOTENCY_BACKEND", d.idempotency_backend
            ).lower(),
            redis_url=os.getenv("REDIS_URL", d.redis_url),
            redis_max_conn=int(
                os.getenv("REDIS_MAX_CONN", str(d.redis_max_conn))
            ),
            watcher_enabled=_env_bool("WATCHER_ENABLED", d.watcher_enabled),
            watcher_reconnect_delay=float(os.getenv(
                "WATCHER_RECONNECT_DELAY", str(d.watcher_reconnect_delay)
            )),
            watcher_reconnect_backoff=float(os.getenv(
                "WATCHER_RECONNECT_BACKOFF", str(d.watcher_reconnect_backoff)
            )),
            watcher_max_attempts=_env_int("WATCHER_MAX_ATTEMPTS"),
            pending_tx_ttl_seconds=int(os.getenv(
                "PENDING_TX_TTL_SECONDS", str(d.pending_tx_ttl_seconds)
            )),
            session_secret=os.getenv("SESSION_SECRET", d.session_secret),
            admin_username=os.getenv("ADMIN_USERNAME", d.admin_username),
            admin_password=os.getenv("ADMIN_PASSWORD", d.admin_password),
            mock_secret=os.getenv("MOCK_SECRET", d.mock_secret),
            notifier_secret=os.getenv("NOTIFIER_SECRET") or None,
            log_level=os.getenv("LOG_LEVEL", d.log_level).upper(),
        )
