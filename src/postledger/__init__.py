"""
postledger: reconciliation layer between a content-addressed blob store and
an append-only post ledger.

  - content_store: typed put/get against IPFS (Kubo) or an in-process store
  - ledger: typed read/write against the deployed post contract
  - publish: two-phase publish (store content, then anchor it)
  - vote: vote submission with bounded finality waits
  - aggregator: joins ledger entries with content lookups
  - api: FastAPI surface for the presentation tier
"""

from __future__ import annotations

__all__ = [
    "aggregator",
    "config",
    "content_store",
    "errors",
    "ledger",
    "models",
    "publish",
    "vote",
]
