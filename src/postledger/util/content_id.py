# src/postledger/util/content_id.py
from __future__ import annotations

"""Content identifier helpers.

compute_content_id derives the CIDv1 that Kubo assigns to a single-chunk
payload added with cid-version=1 and raw-leaves=true:

  multibase "b" (base32 lowercase, unpadded) over
  <version 0x01><codec raw 0x55><multihash sha2-256 0x12><len 0x20><digest>

Validation stays lightweight: it is NOT a full multiformats parser, only a
fail-closed check on obviously bad input before it reaches the store.
"""

import base64
import hashlib
import re
from dataclasses import dataclass

# Kubo's default chunker splits at 256 KiB; above that the CID covers a DAG root.
SINGLE_CHUNK_MAX_BYTES = 256 * 1024

_CIDV1_RAW_SHA256_PREFIX = bytes([0x01, 0x55, 0x12, 0x20])

_CIDV0_RE = re.compile(r"^Qm[1-9A-HJ-NP-Za-km-z]{44}$")  # base58btc (no 0,O,I,l)
_CIDV1_BASE32_RE = re.compile(r"^b[a-z2-7]{10,}$")  # base32 lowercase (bafy..., bafk...)


@dataclass(frozen=True)
class CidValidation:
    ok: bool
    reason: str
    cid: str


def compute_content_id(payload: bytes) -> str:
    digest = hashlib.sha256(payload).digest()
    raw = _CIDV1_RAW_SHA256_PREFIX + digest
    return "b" + base64.b32encode(raw).decode("ascii").lower().rstrip("=")


def is_single_chunk(payload: bytes) -> bool:
    return len(payload) <= SINGLE_CHUNK_MAX_BYTES


def normalize_cid(cid: str) -> str:
    return (cid or "").strip()


def validate_content_id(cid: str, *, max_len: int = 128) -> CidValidation:
    c = normalize_cid(cid)
    if not c:
        return CidValidation(False, "missing_cid", "")
    if len(c) > int(max_len):
        return CidValidation(False, "cid_too_long", c)

    if _CIDV0_RE.match(c):
        return CidValidation(True, "ok", c)
    if _CIDV1_BASE32_RE.match(c):
        return CidValidation(True, "ok", c)
    return CidValidation(False, "invalid_cid_format", c)
