# src/postledger/content_store.py
from __future__ import annotations

import http.client
import json
import logging
import threading
import time
import urllib.parse
from dataclasses import dataclass
from io import BytesIO
from typing import BinaryIO, Dict, Optional, Set, Tuple

from postledger.errors import NotFound, StoreUnavailable, StoreWriteFailed
from postledger.structured_logging import log_event
from postledger.util.content_id import compute_content_id, is_single_chunk, validate_content_id

log = logging.getLogger("postledger.content")


class ContentStore:
    """Content-addressed blob store.

    put(payload) -> content id
      - identical payloads always yield the identical id
      - safe to retry on StoreUnavailable
      - StoreWriteFailed for any other rejection

    get(content_id) -> bytes
      - exactly the bytes stored under that id
      - NotFound when the id is unknown, StoreUnavailable on transport failure

    Content is never deleted through this interface.
    """

    def put(self, payload: bytes) -> str:
        raise NotImplementedError

    def get(self, content_id: str, *, timeout_s: Optional[float] = None) -> bytes:
        raise NotImplementedError

    def ping(self) -> bool:
        raise NotImplementedError


@dataclass(frozen=True)
class IpfsConfig:
    api_base: str
    timeout_s: float = 30.0
    pin: bool = True
    verify_cid: bool = True


def _send_chunk(conn: http.client.HTTPConnection, data: bytes) -> None:
    if not data:
        return
    conn.send(f"{len(data):X}\r\n".encode("ascii"))
    conn.send(data)
    conn.send(b"\r\n")


def _finish_chunks(conn: http.client.HTTPConnection) -> None:
    conn.send(b"0\r\n\r\n")


def _parse_ipfs_add_response(raw: bytes) -> Tuple[str, int]:
    """
    IPFS /api/v0/add returns NDJSON (one JSON per line).
    We take the last valid JSON object and extract Hash + Size.
    """
    txt = raw.decode("utf-8", errors="replace").strip()
    if not txt:
        raise StoreWriteFailed("empty add response")

    last_obj: Optional[dict] = None
    for line in txt.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except ValueError:
            continue
        if isinstance(obj, dict):
            last_obj = obj

    if not isinstance(last_obj, dict):
        raise StoreWriteFailed("bad add response", {"body": txt[:200]})

    cid = str(last_obj.get("Hash") or "").strip()
    try:
        size = int(str(last_obj.get("Size") or "0").strip())
    except ValueError:
        size = 0

    if not cid:
        raise StoreWriteFailed("add response missing hash", {"body": txt[:200]})

    return cid, size


def _is_not_found_message(msg: str) -> bool:
    m = (msg or "").lower()
    return any(s in m for s in ("not found", "no link named", "invalid path", "invalid cid", "could not resolve"))


class IpfsContentStore(ContentStore):
    """Kubo HTTP RPC client.

    Every request opens its own connection, so one instance is safe to share
    across the aggregator's worker threads.
    """

    _BOUNDARY = "----postledger-ipfs-boundary-5d1c8e07b2f94a61"

    def __init__(self, cfg: IpfsConfig) -> None:
        if not cfg.api_base:
            raise ValueError("ipfs api_base must be set")
        self.cfg = cfg
        u = urllib.parse.urlparse(cfg.api_base)
        self._scheme = (u.scheme or "http").lower()
        self._host = u.hostname or "127.0.0.1"
        self._port = int(u.port or (443 if self._scheme == "https" else 80))

    def _connect(self, timeout_s: Optional[float]) -> http.client.HTTPConnection:
        t = float(timeout_s if timeout_s is not None else self.cfg.timeout_s)
        if self._scheme == "https":
            return http.client.HTTPSConnection(self._host, self._port, timeout=t)
        return http.client.HTTPConnection(self._host, self._port, timeout=t)

    def _add_fileobj(self, *, name: str, fileobj: BinaryIO) -> Tuple[str, int]:
        """Stream a file-like object to /api/v0/add using chunked multipart."""
        qs = urllib.parse.urlencode(
            {
                "pin": "true" if self.cfg.pin else "false",
                "cid-version": "1",
                "raw-leaves": "true",
                "wrap-with-directory": "false",
                "progress": "false",
            }
        )
        path = f"/api/v0/add?{qs}"
        boundary = self._BOUNDARY

        preamble = (
            f"--{boundary}\r\n"
            f'Content-Disposition: form-data; name="file"; filename="{name}"\r\n'
            f"Content-Type: application/octet-stream\r\n"
            f"\r\n"
        ).encode("utf-8")
        epilogue = f"\r\n--{boundary}--\r\n".encode("utf-8")

        conn = self._connect(None)
        try:
            try:
                conn.putrequest("POST", path)
                conn.putheader("Content-Type", f"multipart/form-data; boundary={boundary}")
                conn.putheader("Transfer-Encoding", "chunked")
                conn.endheaders()

                _send_chunk(conn, preamble)
                while True:
                    chunk = fileobj.read(1024 * 256)
                    if not chunk:
                        break
                    _send_chunk(conn, chunk)
                _send_chunk(conn, epilogue)
                _finish_chunks(conn)

                resp = conn.getresponse()
                body = resp.read()
            except (OSError, http.client.HTTPException) as e:
                raise StoreUnavailable("ipfs add transport failure", {"error": str(e)}) from e

            if resp.status < 200 or resp.status >= 300:
                msg = body.decode("utf-8", errors="replace").strip()
                raise StoreWriteFailed("ipfs add rejected", {"status": resp.status, "body": msg[:300]})

            return _parse_ipfs_add_response(body)
        finally:
            conn.close()

    def put(self, payload: bytes) -> str:
        started = time.monotonic()
        cid, size = self._add_fileobj(name="post.json", fileobj=BytesIO(payload))

        if self.cfg.verify_cid and is_single_chunk(payload):
            expected = compute_content_id(payload)
            if cid != expected:
                raise StoreWriteFailed("store returned unexpected content id", {"cid": cid, "expected": expected})

        log_event(
            log,
            "content_put",
            cid=cid,
            size=size,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return cid

    def get(self, content_id: str, *, timeout_s: Optional[float] = None) -> bytes:
        v = validate_content_id(content_id)
        if not v.ok:
            raise NotFound("invalid content id", {"cid": content_id, "reason": v.reason})

        path = "/api/v0/cat?" + urllib.parse.urlencode({"arg": v.cid})
        conn = self._connect(timeout_s)
        try:
            try:
                conn.request("POST", path, headers={"Host": self._host})
                resp = conn.getresponse()
                body = resp.read()
            except (OSError, http.client.HTTPException) as e:
                raise StoreUnavailable("ipfs cat transport failure", {"cid": v.cid, "error": str(e)}) from e

            if 200 <= resp.status < 300:
                return body

            msg = _error_message(body)
            if _is_not_found_message(msg) or resp.status == 404:
                raise NotFound("content not found", {"cid": v.cid, "message": msg[:300]})
            raise StoreUnavailable("ipfs cat failed", {"cid": v.cid, "status": resp.status, "message": msg[:300]})
        finally:
            conn.close()

    def ping(self) -> bool:
        conn = self._connect(min(5.0, float(self.cfg.timeout_s)))
        try:
            conn.request("POST", "/api/v0/version", headers={"Host": self._host})
            resp = conn.getresponse()
            resp.read()
            return 200 <= resp.status < 300
        except (OSError, http.client.HTTPException):
            return False
        finally:
            conn.close()


def _error_message(body: bytes) -> str:
    txt = body.decode("utf-8", errors="replace").strip()
    try:
        obj = json.loads(txt)
    except ValueError:
        return txt
    if isinstance(obj, dict):
        return str(obj.get("Message") or txt)
    return txt


class MemoryContentStore(ContentStore):
    """
    In-process content store used for unit tests and the memory backend.

    - Does not open sockets
    - Ids come from compute_content_id, same as Kubo for small payloads
    - Test hooks: available flag, per-id failures, read delay
    """

    def __init__(self) -> None:
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()
        self.available = True
        self.reject_writes = False
        self.read_delay_s = 0.0
        self.delays: Dict[str, float] = {}
        self.unavailable_ids: Set[str] = set()
        self.put_calls = 0
        self.get_calls = 0

    def put(self, payload: bytes) -> str:
        with self._lock:
            self.put_calls += 1
        if not self.available:
            raise StoreUnavailable("memory store offline")
        if self.reject_writes:
            raise StoreWriteFailed("memory store rejecting writes")

        cid = compute_content_id(payload)
        with self._lock:
            self._blobs[cid] = bytes(payload)
        return cid

    def get(self, content_id: str, *, timeout_s: Optional[float] = None) -> bytes:
        with self._lock:
            self.get_calls += 1
        if not self.available or content_id in self.unavailable_ids:
            raise StoreUnavailable("memory store offline", {"cid": content_id})

        delay = max(self.read_delay_s, self.delays.get(content_id, 0.0))
        if delay > 0:
            if timeout_s is not None and delay > timeout_s:
                # A hung read is still bounded by the caller's timeout.
                time.sleep(timeout_s)
                raise StoreUnavailable("memory store read timed out", {"cid": content_id})
            time.sleep(delay)

        with self._lock:
            blob = self._blobs.get(content_id)
        if blob is None:
            raise NotFound("content not found", {"cid": content_id})
        return blob

    def ping(self) -> bool:
        return bool(self.available)

    # ---- helpers for tests / harness ----

    def _forget(self, content_id: str) -> None:
        with self._lock:
            self._blobs.pop(content_id, None)

    def __contains__(self, content_id: object) -> bool:
        with self._lock:
            return content_id in self._blobs

    def __len__(self) -> int:
        with self._lock:
            return len(self._blobs)
