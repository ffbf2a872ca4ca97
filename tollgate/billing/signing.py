"""
Request signing for the crypto payment gateway.

The gateway authenticates requests (and signs its webhooks) with::

    md5( base64( json(payload) ) + api_key )

where ``json`` is a compact serialization with top-level keys sorted and
top-level null values dropped. The JSON must match what the gateway's own
JavaScript serializer produces byte for byte: no whitespace, non-ASCII left
as-is, and forward slashes left unescaped.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
from typing import Any

from django.utils.crypto import constant_time_compare

logger = logging.getLogger(__name__)

SIGNATURE_FIELD = "sign"


def canonical_json(payload: dict[str, Any]) -> str:
    """
    Serialize ``payload`` for signing.

    Only the top level is sorted and stripped of nulls; nested objects keep
    the key order (and the nulls) they arrived with.
    """
    ordered = {
        key: payload[key] for key in sorted(payload) if payload[key] is not None
    }
    return json.dumps(
        ordered,
        separators=(",", ":"),
        ensure_ascii=False,
    )


def sign(payload: dict[str, Any], api_key: str) -> str:
    """Return the lowercase hex signature for ``payload``."""
    return _digest(canonical_json(payload), api_key)


def verify(
    payload: dict[str, Any],
    claimed_signature: str | None,
    api_key: str,
    merchant_id: str,
) -> bool:
    """
    Check a webhook signature.

    The ``sign`` field is stripped before hashing and the merchant id is
    filled in when the gateway left it out. Never raises: anything that
    cannot be serialized simply fails verification.
    """
    if not claimed_signature or not api_key:
        return False

    unsigned = {key: value for key, value in payload.items() if key != SIGNATURE_FIELD}
    unsigned.setdefault("merchant_id", merchant_id)

    try:
        body = canonical_json(unsigned)
    except (TypeError, ValueError):
        logger.warning("Could not serialize webhook payload for verification")
        return False

    claimed = str(claimed_signature).lower()
    # The gateway's PHP-side serializer escapes forward slashes; accept both.
    candidates = {body, body.replace("/", "\\/")}
    return any(
        constant_time_compare(_digest(candidate, api_key), claimed)
        for candidate in candidates
    )


def _digest(body: str, api_key: str) -> str:
    encoded = base64.b64encode(body.encode("utf-8")).decode("ascii")
    return hashlib.md5((encoded + api_key).encode("utf-8")).hexdigest()  # noqa: S324
