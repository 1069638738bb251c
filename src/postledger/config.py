from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List

BACKEND_LIVE = "live"
BACKEND_MEMORY = "memory"


@dataclass(frozen=True, slots=True)
class ServiceConfig:
    mode: str  # "prod" | "dev" | "test"
    backend: str  # "live" | "memory"

    # Content store (Kubo HTTP RPC)
    ipfs_api_base: str
    ipfs_timeout_s: float
    ipfs_pin: bool
    ipfs_verify_cid: bool

    # Ledger (EVM JSON-RPC)
    ledger_rpc_url: str
    ledger_info_path: str
    ledger_account: str
    ledger_request_timeout_s: float

    # Finality waits
    finality_timeout_s: float
    finality_poll_s: float

    # Listing fan-out
    fetch_max_inflight: int
    fetch_timeout_s: float

    # HTTP surface
    cors_origins: str
    max_request_bytes: int


def _env_bool(name: str, default: bool) -> bool:
    v = os.environ.get(name)
    if v is None:
        return bool(default)
    return (v or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except ValueError:
        return int(default)


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, str(default)))
    except ValueError:
        return float(default)


def _env_str(name: str, default: str) -> str:
    return (os.environ.get(name) or default).strip()


def load_service_config() -> ServiceConfig:
    mode = _env_str("POSTLEDGER_MODE", "prod").lower()
    backend = _env_str("POSTLEDGER_BACKEND", BACKEND_LIVE).lower()
    if backend not in {BACKEND_LIVE, BACKEND_MEMORY}:
        raise ValueError(f"POSTLEDGER_BACKEND must be '{BACKEND_LIVE}' or '{BACKEND_MEMORY}', got {backend!r}")

    return ServiceConfig(
        mode=mode,
        backend=backend,
        ipfs_api_base=_env_str("POSTLEDGER_IPFS_API_BASE", "http://127.0.0.1:5001").rstrip("/"),
        ipfs_timeout_s=max(0.5, _env_float("POSTLEDGER_IPFS_TIMEOUT_S", 30.0)),
        ipfs_pin=_env_bool("POSTLEDGER_IPFS_PIN", True),
        ipfs_verify_cid=_env_bool("POSTLEDGER_IPFS_VERIFY_CID", True),
        ledger_rpc_url=_env_str("POSTLEDGER_LEDGER_RPC_URL", "http://127.0.0.1:8545"),
        ledger_info_path=_env_str("POSTLEDGER_LEDGER_INFO_PATH", "./contract-info.json"),
        ledger_account=_env_str("POSTLEDGER_LEDGER_ACCOUNT", ""),
        ledger_request_timeout_s=max(0.5, _env_float("POSTLEDGER_LEDGER_REQUEST_TIMEOUT_S", 10.0)),
        finality_timeout_s=max(0.0, _env_float("POSTLEDGER_FINALITY_TIMEOUT_S", 30.0)),
        finality_poll_s=max(0.05, _env_float("POSTLEDGER_FINALITY_POLL_S", 0.5)),
        fetch_max_inflight=max(1, _env_int("POSTLEDGER_FETCH_MAX_INFLIGHT", 8)),
        fetch_timeout_s=max(0.1, _env_float("POSTLEDGER_FETCH_TIMEOUT_S", 10.0)),
        cors_origins=_env_str("POSTLEDGER_CORS_ORIGINS", ""),
        max_request_bytes=max(1024, _env_int("POSTLEDGER_MAX_REQUEST_BYTES", 256_000)),
    )


def parse_cors_origins(raw: str, *, mode: str) -> List[str]:
    """Parse CORS origins with production-safe defaults.

    Policy:
      - empty -> CORS disabled
      - wildcard "*" is rejected in prod mode
    """
    raw = (raw or "").strip()
    if not raw:
        return []

    origins = [o.strip() for o in raw.split(",") if o.strip()]
    if "*" in origins:
        if mode == "prod":
            raise RuntimeError(
                "Unsafe CORS configuration: wildcard '*' not allowed in production. "
                "Set explicit origins in POSTLEDGER_CORS_ORIGINS."
            )
        return ["*"]
    return origins
