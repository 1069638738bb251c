from __future__ import annotations

"""Pydantic request schemas for the public API.

Fields are optional at the schema level on purpose: missing title/content is
reported by the publish path as validation_failed (400), the same shape every
other error uses, before any I/O happens.
"""

from typing import Optional

from pydantic import BaseModel, Field


class PublishRequest(BaseModel):
    title: Optional[str] = Field(default=None, description="Post title")
    content: Optional[str] = Field(default=None, description="Post body")
    author: Optional[str] = Field(default=None, description="Display name; defaults to Anonymous")

    model_config = {"extra": "ignore"}


class AnchorRequest(BaseModel):
    content_ref: str = Field(..., alias="contentRef", description="Content id returned by an earlier publish")

    model_config = {"extra": "ignore", "populate_by_name": True}


class VoteRequest(BaseModel):
    direction: str = Field(..., description='"up" or "down"')

    model_config = {"extra": "ignore"}
