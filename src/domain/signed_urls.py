from __future__ import annotations

import hashlib
import hmac
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from urllib.parse import quote, unquote, urlencode, urlsplit

from src.config import Settings


class SigningConfigurationError(RuntimeError):
    """Raised when signed URLs are required but no signing secret is configured."""


@dataclass(frozen=True)
class SignatureValidation:
    valid: bool
    status: int = 200
    message: str | None = None


_VALID = SignatureValidation(valid=True)


class SignedUrlService:
    """HMAC-SHA256 signing of media paths with an expiry timestamp.

    The signature covers ``<canonical path>:<expires epoch seconds>`` and is
    carried as ``signature``/``expires`` query parameters.
    """

    def __init__(
        self,
        secret: str | None,
        *,
        required: bool,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = secret
        self.required = required
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, clock: Callable[[], float] = time.time) -> "SignedUrlService":
        return cls(settings.files_signing_secret, required=settings.signed_urls_required, clock=clock)

    def assert_configured(self) -> None:
        if self.required and not self._secret:
            raise SigningConfigurationError("FILES_SIGNING_SECRET must be set when REQUIRE_SIGNED_URL=true")

    def create_signature(self, path: str, expires_at: int) -> str:
        if not self._secret:
            raise SigningConfigurationError("FILES_SIGNING_SECRET is required to generate signatures")
        message = f"{path}:{expires_at}".encode("utf-8")
        return hmac.new(self._secret.encode("utf-8"), message, hashlib.sha256).hexdigest()

    def build_signed_path(self, path: str, ttl_seconds: int) -> str:
        canonical_path = _canonical_path(path)
        if not self.required:
            return quote(canonical_path)
        expires_at = int(self._clock()) + int(ttl_seconds)
        signature = self.create_signature(canonical_path, expires_at)
        query = urlencode({"expires": str(expires_at), "signature": signature})
        return f"{quote(canonical_path)}?{query}"

    def verify(self, path: str, query: Mapping[str, str]) -> SignatureValidation:
        if not self.required:
            return _VALID

        signature = query.get("signature")
        expires = query.get("expires")
        if not isinstance(signature, str) or not isinstance(expires, str) or not signature or not expires:
            return SignatureValidation(valid=False, status=401, message="Missing signature parameters.")

        try:
            expires_at = int(float(expires.strip()))
        except (ValueError, OverflowError):
            return SignatureValidation(valid=False, status=400, message="Invalid expiration parameter.")

        if expires_at < self._clock():
            return SignatureValidation(valid=False, status=401, message="Signed URL has expired.")

        if not self._secret:
            return SignatureValidation(valid=False, status=500, message="Signing secret not configured.")

        expected = self.create_signature(_canonical_path(path), expires_at)
        if not hmac.compare_digest(expected.encode("utf-8"), signature.strip().lower().encode("utf-8")):
            return SignatureValidation(valid=False, status=403, message="Invalid signed URL signature.")
        return _VALID


def _canonical_path(path: str) -> str:
    raw_path = urlsplit(path).path or "/"
    decoded = unquote(raw_path)
    return decoded if decoded.startswith("/") else f"/{decoded}"
