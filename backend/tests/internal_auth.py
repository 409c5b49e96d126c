"""
Helpers for generating signed internal auth headers in integration tests.
"""
import hashlib
import hmac
import os
import time
from typing import Optional

import httpx

USER_HEADER = "X-Finplan-User-Id"
TIMESTAMP_HEADER = "X-Finplan-Timestamp"
SIGNATURE_HEADER = "X-Finplan-Signature"


def build_internal_auth_headers(
    method: str,
    path_with_query: str,
    user_id: str,
    timestamp: Optional[int] = None,
) -> dict[str, str]:
    """
    Build signed headers accepted by backend internal auth middleware.
    """
    secret = os.getenv("INTERNAL_AUTH_SECRET", "").strip()
    if not secret:
        raise RuntimeError("INTERNAL_AUTH_SECRET is required for backend integration tests.")

    timestamp = str(timestamp if timestamp is not None else int(time.time()))
    payload = "\n".join([method.upper(), path_with_query, user_id, timestamp])
    signature = hmac.new(
        secret.encode("utf-8"),
        payload.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()

    return {
        USER_HEADER: user_id,
        TIMESTAMP_HEADER: timestamp,
        SIGNATURE_HEADER: signature,
    }


def signing_hook(default_user_id: str):
    """
    httpx request hook that signs every outgoing request.

    A request that already carries a user id header is signed for that user,
    so tests can act as someone else for a single call.
    """
    def sign(request: httpx.Request) -> None:
        user_id = request.headers.get(USER_HEADER) or default_user_id
        path_with_query = request.url.raw_path.decode("ascii")
        request.headers.update(
            build_internal_auth_headers(request.method, path_with_query, user_id)
        )

    return sign
