from __future__ import annotations

import json
import os
from types import SimpleNamespace

import pytest

from postledger import env as env_mod
from postledger import services as services_mod
from postledger.config import BACKEND_LIVE, BACKEND_MEMORY, load_service_config, parse_cors_origins
from postledger.content_store import IpfsContentStore, MemoryContentStore
from postledger.ledger import MemoryLedger

_VARS = [
    "POSTLEDGER_MODE",
    "POSTLEDGER_BACKEND",
    "POSTLEDGER_IPFS_API_BASE",
    "POSTLEDGER_FETCH_MAX_INFLIGHT",
    "POSTLEDGER_FETCH_TIMEOUT_S",
    "POSTLEDGER_MAX_REQUEST_BYTES",
    "POSTLEDGER_FINALITY_TIMEOUT_S",
    "POSTLEDGER_LEDGER_INFO_PATH",
    "POSTLEDGER_IPFS_PIN",
    "POSTLEDGER_LEDGER_RPC_URL",
    "POSTLEDGER_CORS_ORIGINS",
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for k in _VARS:
        monkeypatch.delenv(k, raising=False)


def test_defaults() -> None:
    cfg = load_service_config()
    assert cfg.mode == "prod"
    assert cfg.backend == BACKEND_LIVE
    assert cfg.ipfs_api_base == "http://127.0.0.1:5001"
    assert cfg.ipfs_pin is True
    assert cfg.fetch_max_inflight == 8
    assert cfg.max_request_bytes == 256_000
    assert cfg.ledger_info_path == "./contract-info.json"


def test_env_overrides_and_clamps(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("POSTLEDGER_MODE", "DEV")
    monkeypatch.setenv("POSTLEDGER_IPFS_API_BASE", "http://ipfs.internal:5001/")
    monkeypatch.setenv("POSTLEDGER_IPFS_PIN", "off")
    monkeypatch.setenv("POSTLEDGER_FETCH_MAX_INFLIGHT", "0")
    monkeypatch.setenv("POSTLEDGER_MAX_REQUEST_BYTES", "10")
    monkeypatch.setenv("POSTLEDGER_FETCH_TIMEOUT_S", "not-a-number")

    cfg = load_service_config()
    assert cfg.mode == "dev"
    assert cfg.ipfs_api_base == "http://ipfs.internal:5001"
    assert cfg.ipfs_pin is False
    assert cfg.fetch_max_inflight == 1
    assert cfg.max_request_bytes == 1024
    assert cfg.fetch_timeout_s == 10.0


def test_unknown_backend_is_refused(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("POSTLEDGER_BACKEND", "sqlite")
    with pytest.raises(ValueError):
        load_service_config()


def test_parse_cors_origins() -> None:
    assert parse_cors_origins("", mode="prod") == []
    assert parse_cors_origins("https://a.example, https://b.example ,", mode="prod") == [
        "https://a.example",
        "https://b.example",
    ]
    assert parse_cors_origins("*", mode="dev") == ["*"]
    with pytest.raises(RuntimeError):
        parse_cors_origins("https://a.example,*", mode="prod")


def test_build_services_memory_backend(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("POSTLEDGER_BACKEND", BACKEND_MEMORY)
    svc = services_mod.build_services()
    assert isinstance(svc.store, MemoryContentStore)
    assert isinstance(svc.ledger, MemoryLedger)
    assert svc.ledger_configured
    assert svc.aggregator is not None
    assert svc.voter is not None


def test_build_services_live_without_ledger_info_is_content_only(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("POSTLEDGER_LEDGER_INFO_PATH", str(tmp_path / "contract-info.json"))
    svc = services_mod.build_services()
    assert isinstance(svc.store, IpfsContentStore)
    assert svc.ledger is None
    assert not svc.ledger_configured
    assert svc.aggregator is None
    assert svc.voter is None
    assert svc.publisher.ledger is None


def test_build_services_live_with_ledger_info(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    info_path = tmp_path / "contract-info.json"
    info_path.write_text(json.dumps({"address": "0x" + "ab" * 20, "abi": []}), encoding="utf-8")
    monkeypatch.setenv("POSTLEDGER_LEDGER_INFO_PATH", str(info_path))

    built = []

    def _fake_client(cfg, info):
        built.append((cfg, info))
        return SimpleNamespace(ping=lambda: True)

    monkeypatch.setattr(services_mod, "EvmLedgerClient", _fake_client)

    svc = services_mod.build_services()
    assert svc.ledger_configured
    assert svc.aggregator is not None
    assert built[0][1].address == "0x" + "ab" * 20
    assert built[0][0].rpc_url == "http://127.0.0.1:8545"


def test_dotenv_loads_once_without_overriding(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    dotenv = tmp_path / ".env"
    dotenv.write_text("POSTLEDGER_TEST_FROM_FILE=file\nPOSTLEDGER_TEST_PRESET=file\n", encoding="utf-8")

    # setenv first so monkeypatch restores the variable's absence afterwards.
    monkeypatch.setenv("POSTLEDGER_TEST_FROM_FILE", "")
    monkeypatch.delenv("POSTLEDGER_TEST_FROM_FILE")
    monkeypatch.setenv("POSTLEDGER_TEST_PRESET", "process")
    monkeypatch.setattr(env_mod, "_LOADED", False)

    assert env_mod.load_dotenv_if_present(str(dotenv)) is True
    assert os.environ["POSTLEDGER_TEST_FROM_FILE"] == "file"
    assert os.environ["POSTLEDGER_TEST_PRESET"] == "process"

    # Second call is a no-op.
    assert env_mod.load_dotenv_if_present(str(dotenv)) is False


def test_dotenv_missing_file(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(env_mod, "_LOADED", False)
    assert env_mod.load_dotenv_if_present(str(tmp_path / "absent.env")) is False
