from __future__ import annotations

from fastapi import APIRouter

from postledger.api.routes_public_parts.health import router as health_router
from postledger.api.routes_public_parts.ledger import router as ledger_router
from postledger.api.routes_public_parts.posts import router as posts_router

public_router = APIRouter()

public_router.include_router(health_router, tags=["health"])
public_router.include_router(posts_router, tags=["posts"])
public_router.include_router(ledger_router, tags=["ledger"])
