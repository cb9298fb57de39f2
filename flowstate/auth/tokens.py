"""Bearer token verification yielding an authenticated user."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Mapping, Optional

import jwt
import requests
from pydantic import BaseModel, Field

from ..config import AuthConfig
from ..errors import UnauthenticatedError

logger = logging.getLogger(__name__)

JWKS_CACHE_SECONDS = 300


class AuthenticatedUser(BaseModel):
    """Identity established from a verified token."""

    id: str
    claims: Dict[str, Any] = Field(default_factory=dict)


class TokenVerifier:
    """Validates JWTs with a shared secret or keys from a JWKS endpoint."""

    def __init__(self, config: Optional[AuthConfig] = None) -> None:
        self.config = config or AuthConfig()
        self._jwks_cache: List[Mapping] = []
        self._last_fetch: float = 0

    def _fetch_jwks(self) -> None:
        resp = requests.get(self.config.jwks_url, timeout=5)
        resp.raise_for_status()
        self._jwks_cache = resp.json().get("keys", [])
        self._last_fetch = time.time()

    def _decode_options(self) -> Dict[str, Any]:
        return {
            "audience": self.config.audience or None,
            "issuer": self.config.issuer or None,
            "leeway": self.config.leeway,
        }

    def verify_token(self, token: str) -> Mapping:
        """Validate ``token`` and return its claims."""
        if self.config.secret:
            return jwt.decode(
                token,
                self.config.secret,
                algorithms=self.config.algorithms,
                **self._decode_options(),
            )

        if not self.config.jwks_url:
            raise jwt.exceptions.InvalidKeyError("No token verification key configured.")

        now = time.time()
        if not self._jwks_cache or now - self._last_fetch > JWKS_CACHE_SECONDS:
            self._fetch_jwks()

        header = jwt.get_unverified_header(token)
        for key in self._jwks_cache:
            if key.get("kid") == header.get("kid"):
                # Only the algorithm the key is published for is accepted.
                jwk = jwt.PyJWK(key)
                return jwt.decode(
                    token,
                    jwk.key,
                    algorithms=[jwk.algorithm_name],
                    **self._decode_options(),
                )
        raise jwt.exceptions.InvalidSignatureError("No matching JWK found.")

    def authenticate(self, token: str) -> AuthenticatedUser:
        """Verify ``token`` and build the user it identifies.

        Raises:
            UnauthenticatedError: The token is invalid or carries no user id.
        """
        try:
            claims = dict(self.verify_token(token))
        except (jwt.PyJWTError, requests.RequestException) as exc:
            logger.warning(f"Rejected bearer token: {exc}")
            raise UnauthenticatedError("Invalid token") from exc

        user_id = claims.get(self.config.user_id_claim) or claims.get("sub")
        if not user_id:
            raise UnauthenticatedError("Token has no user id")
        return AuthenticatedUser(id=str(user_id), claims=claims)
