"""OAuth2 credential layer for the Gmail API backend.

Only the steady-state contract lives here: load an already authorized
token, renew it ahead of expiry, and persist the renewed token.  The
initial browser consent is done once by the operator outside the
daemon.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import structlog
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from ..errors import AuthExpiredError, CredentialsExhaustedError, TransientMailboxError

logger = structlog.get_logger()

SCOPES = ["https://www.googleapis.com/auth/gmail.modify"]

_REAUTHORIZE_HINT = "re-run the OAuth consent flow to create a new token file"


class GmailCredentials:
    """Owns one :class:`google.oauth2.credentials.Credentials` object.

    Not thread-safe on its own; the Gmail client calls it under its
    session lock.
    """

    def __init__(
        self,
        token_path: Path | str,
        *,
        refresh_margin: timedelta = timedelta(minutes=10),
        scopes: list[str] | None = None,
    ) -> None:
        self._token_path = Path(token_path)
        self._refresh_margin = refresh_margin
        self._scopes = scopes or SCOPES
        self._credentials: Credentials | None = None
        self._last_refresh: datetime | None = None

    @property
    def credentials(self) -> Credentials:
        if self._credentials is None:
            self._credentials = self._load()
        return self._credentials

    @property
    def last_refresh(self) -> datetime | None:
        return self._last_refresh

    def expires_in(self) -> timedelta | None:
        expiry = self.credentials.expiry
        if expiry is None:
            return None
        # google-auth keeps expiry as naive UTC
        return expiry.replace(tzinfo=UTC) - datetime.now(UTC)

    def needs_refresh(self) -> bool:
        creds = self.credentials
        if not creds.token:
            return True
        remaining = self.expires_in()
        return remaining is not None and remaining <= self._refresh_margin

    def ensure_fresh(self) -> Credentials:
        """Renew the access token when it is within the refresh margin."""
        creds = self.credentials
        if self.needs_refresh():
            self._refresh(creds)
        return creds

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load(self) -> Credentials:
        if not self._token_path.exists():
            raise CredentialsExhaustedError(
                f"Gmail token file {self._token_path} not found; {_REAUTHORIZE_HINT}"
            )
        try:
            creds = Credentials.from_authorized_user_file(str(self._token_path), self._scopes)
        except ValueError as exc:
            raise CredentialsExhaustedError(
                f"Gmail token file {self._token_path} is unusable ({exc}); {_REAUTHORIZE_HINT}"
            ) from exc
        if not creds.refresh_token:
            raise CredentialsExhaustedError(
                f"Gmail token file {self._token_path} has no refresh token; {_REAUTHORIZE_HINT}"
            )
        logger.info("gmail_token_loaded", path=str(self._token_path), expiry=str(creds.expiry))
        return creds

    def _refresh(self, creds: Credentials) -> None:
        try:
            creds.refresh(Request())
        except RefreshError as exc:
            logger.error("gmail_token_refresh_failed", error=str(exc))
            raise AuthExpiredError(f"token refresh rejected: {exc}") from exc
        except TransportError as exc:
            logger.warning("gmail_token_refresh_unreachable", error=str(exc))
            raise TransientMailboxError(f"token endpoint unreachable: {exc}") from exc

        self._last_refresh = datetime.now(UTC)
        self._persist(creds)
        logger.info("gmail_token_refreshed", expiry=str(creds.expiry))

    def _persist(self, creds: Credentials) -> None:
        tmp = self._token_path.with_suffix(self._token_path.suffix + ".tmp")
        tmp.write_text(creds.to_json())
        tmp.replace(self._token_path)
