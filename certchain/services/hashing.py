"""SHA-256 digests and canonical JSON shared by certificates, backups and the audit chain."""

from __future__ import annotations

import hashlib
import json
from typing import Any

# previous_hash of the first audit entry ever written
GENESIS_HASH = "0" * 64


def digest(text: str) -> str:
    """Return the SHA-256 of the UTF-8 encoding of text as lowercase hex.

    Encoding errors (lone surrogates) propagate to the caller.
    """
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def canonical_json(obj: Any) -> str:
    """Serialize obj as sorted-key compact JSON.

    Two structurally equal documents always produce the same text, so a
    digest over it survives a load/store round trip.
    """
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def digest_fields(*parts: str) -> str:
    """Digest of the parts joined with "|"."""
    return digest("|".join(parts))
