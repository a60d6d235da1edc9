from __future__ import annotations

from hashlib import sha256
from typing import Any, Dict

import orjson


def sha256_text(s: str) -> str:
    return sha256(s.encode("utf-8")).hexdigest()


def short_id(*parts: Any, length: int = 16) -> str:
    """Deterministic hex id derived from the given parts."""
    joined = ":".join(str(p) for p in parts)
    return sha256_text(joined)[:length]


def chain_next(prev_hash: str, payload: Dict[str, Any]) -> str:
    """Compute the next link of a job's log chain.

    The payload is serialized with sorted keys so the digest does not depend on
    dict ordering: sha256(prev_hash_bytes + payload_json_bytes).
    """
    if prev_hash is None:
        prev_hash = ""
    if not isinstance(prev_hash, str):
        raise TypeError("prev_hash must be a string")
    payload_bytes = orjson.dumps(payload, option=orjson.OPT_SORT_KEYS)
    h = sha256()
    h.update(prev_hash.encode("utf-8"))
    h.update(payload_bytes)
    return h.hexdigest()
