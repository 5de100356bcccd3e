"""
auth/twofactor.py -- Time-based one-time password verification.

The credential manager only needs verify(secret, code) -> bool; anything with
that method can be injected (tests use a fixed-answer fake). TotpVerifier is
the production implementation: RFC 6238 with HMAC-SHA1, 6 digits, 30 second
steps, accepting one adjacent step for clock skew between the server and the
authenticator app.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import time
from typing import Protocol

logger = logging.getLogger("hostpanel.auth")


class TwoFactorVerifier(Protocol):
    def verify(self, secret: str, code: str) -> bool: ...


class TotpVerifier:
    def __init__(self, interval: int = 30, digits: int = 6, skew_steps: int = 1) -> None:
        self.interval = interval
        self.digits = digits
        self.skew_steps = skew_steps

    def generate(self, secret: str, timestamp: float) -> str:
        """Return the code for the step containing timestamp, or "" for an undecodable secret."""
        padded = secret.strip().replace(" ", "").upper()
        padded += "=" * ((8 - len(padded) % 8) % 8)
        try:
            key = base64.b32decode(padded, casefold=True)
        except (binascii.Error, ValueError):
            logger.warning("TOTP secret is not valid base32")
            return ""
        counter = int(timestamp // self.interval).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        value = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (10**self.digits)
        return str(value).zfill(self.digits)

    def verify(self, secret: str, code: str, now: float | None = None) -> bool:
        code = (code or "").strip()
        if not secret or len(code) != self.digits or not code.isdigit():
            return False
        now = time.time() if now is None else now
        for step in range(-self.skew_steps, self.skew_steps + 1):
            expected = self.generate(secret, now + step * self.interval)
            # Constant-time comparison.
            if expected and hmac.compare_digest(expected, code):
                return True
        return False
