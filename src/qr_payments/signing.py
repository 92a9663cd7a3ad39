"""Authentication header construction for gateway calls.

Headers are built fresh for every request; timestamps are short-lived on the
gateway side, so a header is never cached or reused.
"""

import hashlib
import time
from dataclasses import dataclass
from typing import Callable, Optional

# FastPay signs with Tashkent wall-clock time (UTC+5) expressed as epoch millis.
UZUM_UTC_OFFSET_MS = 5 * 60 * 60 * 1000


@dataclass(frozen=True)
class AuthHeader:
    header: str
    timestamp: Optional[int] = None
    digest: Optional[str] = None


def compute_digest(timestamp: int, secret: str, algorithm: str = "sha1") -> str:
    """Hex digest of ``str(timestamp) + secret`` with the named hashlib algorithm."""
    hasher = hashlib.new(algorithm)
    hasher.update(f"{timestamp}{secret}".encode("utf-8"))
    return hasher.hexdigest()


def build_signed_header(
    secret: str,
    principal: str,
    timestamp: int,
    algorithm: str = "sha1",
) -> AuthHeader:
    """Build a ``principal:digest:timestamp`` header."""
    principal = str(principal)
    if ":" in principal:
        raise ValueError("principal must not contain ':'")
    digest = compute_digest(timestamp, secret, algorithm)
    return AuthHeader(
        header=f"{principal}:{digest}:{timestamp}",
        timestamp=timestamp,
        digest=digest,
    )


def build_static_header(principal: str, secret: str) -> AuthHeader:
    """Build a static ``principal:secret`` credential pair header."""
    return AuthHeader(header=f"{principal}:{secret}")


def uzum_timestamp(clock: Callable[[], float] = time.time) -> int:
    """Epoch milliseconds shifted to UTC+5, as FastPay expects."""
    return int(clock() * 1000) + UZUM_UTC_OFFSET_MS


def unix_timestamp(clock: Callable[[], float] = time.time) -> int:
    """Epoch seconds (UTC)."""
    return int(clock())
