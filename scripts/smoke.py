#!/usr/bin/env python3

"""End-to-end smoke run for postledger.

Boots the API with in-process stores and walks the publish / list / vote
flow over HTTP. No IPFS daemon or ledger node is needed.

Usage:
  python3 scripts/smoke.py

Optional env overrides:
  POSTLEDGER_SMOKE_POSTS=3
"""

from __future__ import annotations

import os

from fastapi.testclient import TestClient

from postledger.api.app import create_app
from postledger.config import load_service_config
from postledger.content_store import MemoryContentStore
from postledger.ledger import MemoryLedger
from postledger.services import assemble_services


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except ValueError:
        return int(default)


def main() -> int:
    os.environ.setdefault("POSTLEDGER_MODE", "dev")
    os.environ["POSTLEDGER_BACKEND"] = "memory"
    n = max(1, _env_int("POSTLEDGER_SMOKE_POSTS", 3))

    svc = assemble_services(load_service_config(), store=MemoryContentStore(), ledger=MemoryLedger())
    c = TestClient(create_app(services=svc))

    r = c.get("/health")
    assert r.status_code == 200, r.text
    assert r.json().get("status") == "ok", r.text

    refs = []
    for i in range(n):
        r = c.post("/posts", json={"title": f"smoke {i}", "content": f"body {i}"})
        assert r.status_code == 200, r.text
        refs.append(r.json()["contentRef"])

    r = c.get("/posts")
    assert r.status_code == 200, r.text
    posts = r.json()["posts"]
    if [p["contentRef"] for p in posts] != refs:
        raise RuntimeError(f"listing does not match published refs: {posts}")

    r = c.post("/ledger/posts/1/vote", json={"direction": "up"})
    assert r.status_code == 200, r.text
    rating = c.get("/ledger/posts/1").json()["post"]["rating"]
    if rating != 1:
        raise RuntimeError(f"rating did not move: {rating}")

    print("OK: publish/list/vote", {"posts": len(posts), "rating": rating})
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
