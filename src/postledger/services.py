from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from postledger.aggregator import PostAggregator
from postledger.config import BACKEND_MEMORY, ServiceConfig, load_service_config
from postledger.content_store import ContentStore, IpfsConfig, IpfsContentStore, MemoryContentStore
from postledger.ledger import EvmLedgerClient, EvmLedgerConfig, LedgerClient, MemoryLedger, load_ledger_info
from postledger.publish import PublishCoordinator
from postledger.structured_logging import log_event
from postledger.vote import VoteCoordinator

log = logging.getLogger("postledger.boot")


@dataclass
class Services:
    """Everything a request handler needs, built once at startup.

    ledger is None in content-only mode (no ledger metadata file): publishing
    to the content store still works, ledger-backed operations do not.
    """

    cfg: ServiceConfig
    store: ContentStore
    ledger: Optional[LedgerClient]
    publisher: PublishCoordinator
    aggregator: Optional[PostAggregator]
    voter: Optional[VoteCoordinator]

    @property
    def ledger_configured(self) -> bool:
        return self.ledger is not None


def assemble_services(cfg: ServiceConfig, *, store: ContentStore, ledger: Optional[LedgerClient]) -> Services:
    publisher = PublishCoordinator(store=store, ledger=ledger, finality_timeout_s=cfg.finality_timeout_s)
    aggregator = None
    voter = None
    if ledger is not None:
        aggregator = PostAggregator(
            store=store,
            ledger=ledger,
            max_inflight=cfg.fetch_max_inflight,
            fetch_timeout_s=cfg.fetch_timeout_s,
        )
        voter = VoteCoordinator(ledger=ledger, finality_timeout_s=cfg.finality_timeout_s)
    return Services(cfg=cfg, store=store, ledger=ledger, publisher=publisher, aggregator=aggregator, voter=voter)


def build_services(cfg: Optional[ServiceConfig] = None) -> Services:
    """Build clients and coordinators from an explicit config or the environment."""
    c = cfg or load_service_config()

    if c.backend == BACKEND_MEMORY:
        log_event(log, "services_booted", backend=c.backend, ledger_configured=True)
        return assemble_services(c, store=MemoryContentStore(), ledger=MemoryLedger())

    store = IpfsContentStore(
        IpfsConfig(
            api_base=c.ipfs_api_base,
            timeout_s=c.ipfs_timeout_s,
            pin=c.ipfs_pin,
            verify_cid=c.ipfs_verify_cid,
        )
    )

    ledger: Optional[LedgerClient] = None
    info = load_ledger_info(c.ledger_info_path)
    if info is None:
        log_event(
            log,
            "ledger_not_configured",
            level=logging.WARNING,
            path=c.ledger_info_path,
            message="ledger metadata not found; running in content-only mode",
        )
    else:
        ledger = EvmLedgerClient(
            EvmLedgerConfig(
                rpc_url=c.ledger_rpc_url,
                account=c.ledger_account,
                poll_s=c.finality_poll_s,
                request_timeout_s=c.ledger_request_timeout_s,
            ),
            info,
        )

    log_event(
        log,
        "services_booted",
        backend=c.backend,
        ledger_configured=ledger is not None,
        ledger_address=info.address if info else None,
    )
    return assemble_services(c, store=store, ledger=ledger)
