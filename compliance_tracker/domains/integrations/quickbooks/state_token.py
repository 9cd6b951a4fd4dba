# compliance_tracker/domains/integrations/quickbooks/state_token.py
"""
Signed OAuth state cookies.

The cookie carries the organization, the CSRF state embedded in the
authorization URL and an expiry, signed with ``JWT_SECRET``. Any worker
holding the secret can validate a callback.
"""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from compliance_tracker.shared.exceptions import (
    IntegrationConfigurationError,
    InvalidStateError,
)

from .models import OAuthStateTokenPayload

ALGORITHM = "HS256"


class OAuthStateSigner:
    def __init__(
        self, secret: Optional[str], ttl: timedelta = timedelta(minutes=30)
    ) -> None:
        self.secret = secret
        self.ttl = ttl

    def issue(self, org_id: str, state: str) -> tuple[str, OAuthStateTokenPayload]:
        """
        Sign a state token binding ``state`` to ``org_id``.

        Returns:
            The signed token and its decoded payload
        """
        secret = self._require_secret()
        issued_at = datetime.now(timezone.utc)
        payload = OAuthStateTokenPayload(
            org_id=org_id,
            csrf_token=state,
            issued_at=issued_at,
            expires_at=issued_at + self.ttl,
        )

        token = jwt.encode(
            {**payload.model_dump(mode="json"), "exp": payload.expires_at},
            secret,
            algorithm=ALGORITHM,
        )
        return token, payload

    def verify(
        self, token: Optional[str], state: Optional[str]
    ) -> OAuthStateTokenPayload:
        """
        Validate the signed cookie against the state returned by the provider.

        Raises:
            InvalidStateError: Missing, forged, expired or mismatched state
        """
        if not token or not state:
            raise InvalidStateError()

        secret = self._require_secret()
        try:
            claims = jwt.decode(token, secret, algorithms=[ALGORITHM])
        except jwt.ExpiredSignatureError:
            raise InvalidStateError("OAuth session expired")
        except jwt.InvalidTokenError as e:
            raise InvalidStateError(f"Invalid OAuth state token: {e}")

        payload = OAuthStateTokenPayload.model_validate(claims)
        if not secrets.compare_digest(payload.csrf_token, state):
            raise InvalidStateError()
        return payload

    def _require_secret(self) -> str:
        if not self.secret:
            raise IntegrationConfigurationError("JWT_SECRET not configured")
        return self.secret
