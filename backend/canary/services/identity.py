from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog

from canary.core.config import Settings
from canary.core.metrics import OutcomeRecorder
from canary.schemas.platform import OpenIdToken
from canary.services.exceptions import IdentityError, PlatformError, PlatformRequestError
from canary.services.platform_client import PlatformClient, parse_as

logger = structlog.get_logger()


@dataclass
class Session:
    access_token: str
    refresh_token: str
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def authorization(self) -> str:
        return f"Bearer {self.access_token}"

    def __repr__(self) -> str:
        return f"Session(issued_at={self.issued_at.isoformat()})"


class IdentityProvider:
    """OpenID Connect password grant against the platform's Keycloak realm."""

    def __init__(self, client: PlatformClient, config: Settings, recorder: OutcomeRecorder):
        self._client = client
        self._config = config
        self._recorder = recorder

    def _realm_url(self, action: str) -> str:
        base = self._config.AUTH_ENDPOINT.rstrip("/")
        return f"{base}/auth/realms/{self._config.AUTH_REALM}/protocol/openid-connect/{action}"

    async def acquire(self) -> Session:
        """
        Log in with the configured canary user.

        Raises:
            IdentityError: the token endpoint was unreachable, rejected the
                credentials or answered with an unexpected body.
        """
        form = {
            "client_id": self._config.AUTH_CLIENT_ID,
            "username": self._config.AUTH_USERNAME,
            "password": self._config.AUTH_PASSWORD,
            "grant_type": "password",
        }
        try:
            with self._recorder.track("auth"):
                data = await self._client.request_json(
                    "POST",
                    self._realm_url("token"),
                    form=form,
                    timeout=self._config.AUTH_TIMEOUT_SECONDS,
                )
                token = parse_as(OpenIdToken, data, source="identity provider")
        except PlatformRequestError as e:
            logger.error("Login rejected", status_code=e.status_code, user=self._config.AUTH_USERNAME)
            raise IdentityError(f"login rejected with status {e.status_code}", status_code=e.status_code) from e
        except PlatformError as e:
            logger.error("Login failed", error=str(e))
            raise IdentityError(f"login failed: {e}") from e

        logger.debug("Session acquired", user=self._config.AUTH_USERNAME)
        return Session(access_token=token.access_token, refresh_token=token.refresh_token)

    async def release(self, session: Session) -> None:
        """Log out. Best effort: failures are logged and never raised."""
        form = {
            "client_id": self._config.AUTH_CLIENT_ID,
            "refresh_token": session.refresh_token,
            "id_token_hint": session.access_token,
        }
        try:
            await self._client.send(
                "POST",
                self._realm_url("logout"),
                form=form,
                timeout=self._config.AUTH_TIMEOUT_SECONDS,
            )
        except PlatformError as e:
            logger.warning("Logout failed", error=str(e))
