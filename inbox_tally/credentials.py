"""
OAuth credential management for the Gmail API.

This module owns the token lifecycle:
- Interactive authorization through a temporary loopback endpoint
- Persistence of the resulting token to a local file (optionally encrypted)
- Silent refresh before the access token expires

The token file is a secret. Its permissions are whatever the platform
default gives a newly written file; revoking local access means deleting it.
"""

import json
import logging
import os
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

from cryptography.fernet import InvalidToken
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

from inbox_tally.config import settings
from inbox_tally.errors import AuthFailure, TransientApiError
from inbox_tally.utils.encryption import decrypt_token, encrypt_token

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    # google-auth keeps expiry as a naive UTC datetime
    return datetime.now(timezone.utc).replace(tzinfo=None)


class CredentialManager:
    """
    Hands out valid Gmail credentials, authorizing or refreshing as needed.

    One instance is created per process and injected into the GmailClient.
    Acquisition is serialised with a lock because metadata workers may ask
    for credentials from several threads at once.

    Attributes:
        token_path: Location of the persisted token file
        client_secrets_path: OAuth client secrets downloaded from Google Cloud
        scopes: Scopes requested during authorization
        refresh_margin: Refresh when fewer than this many seconds remain
    """

    def __init__(
        self,
        token_path: Optional[str] = None,
        client_secrets_path: Optional[str] = None,
        scopes: Optional[List[str]] = None,
        refresh_margin: Optional[int] = None,
        interactive: Optional[bool] = None,
        encryption_key: Optional[str] = None,
    ):
        self.token_path = Path(token_path or settings.TOKEN_FILE)
        self.client_secrets_path = Path(client_secrets_path or settings.GOOGLE_CLIENT_SECRETS_FILE)
        self.scopes = list(scopes or settings.GMAIL_SCOPES)
        self.refresh_margin = timedelta(
            seconds=settings.TOKEN_REFRESH_MARGIN if refresh_margin is None else refresh_margin
        )
        self.interactive = settings.OAUTH_INTERACTIVE if interactive is None else interactive
        self.encryption_key = settings.ENCRYPTION_KEY if encryption_key is None else encryption_key

        self._credentials: Optional[Credentials] = None
        # Access token last written to or read from the token file
        self._persisted_token: Optional[str] = None
        self._lock = threading.RLock()
        # Bumped whenever a new Credentials object replaces the cached one
        self.generation = 0

    def acquire(self, force_refresh: bool = False) -> Credentials:
        """
        Return a credential that is valid beyond the refresh margin.

        Args:
            force_refresh: Refresh even if the cached token looks valid,
                e.g. after the API rejected it

        Returns:
            Credentials: Authorized Google credentials

        Raises:
            AuthFailure: If authorization or refresh is rejected, abandoned
                or times out
            TransientApiError: If the token endpoint is unreachable
        """
        with self._lock:
            creds = self._credentials or self.load()

            if creds is not None and not creds.has_scopes(self.scopes):
                logger.warning(
                    f"Stored token lacks required scopes {self.scopes}, re-authorizing"
                )
                creds = None

            if creds is None:
                creds = self._authorize_interactively()
            elif force_refresh or self._needs_refresh(creds):
                if creds.refresh_token:
                    self._refresh(creds)
                elif force_refresh:
                    raise AuthFailure(
                        "Access token was rejected and no refresh token is stored. "
                        f"Delete {self.token_path} and authorize again."
                    )
                else:
                    logger.info("Stored token expired without a refresh token, re-authorizing")
                    creds = self._authorize_interactively()

            if creds.expiry is not None and creds.expiry <= _utcnow():
                raise AuthFailure("Token endpoint returned an already expired access token")

            if creds.token != self._persisted_token:
                # Refreshed in place by the API transport after a 401
                logger.info("Persisting access token refreshed during a request")
                self.save(creds)

            if creds is not self._credentials:
                self._credentials = creds
                self.generation += 1

            return creds

    def _needs_refresh(self, creds: Credentials) -> bool:
        """Check whether the access token is missing or close to expiry."""
        if not creds.token:
            return True
        if creds.expiry is None:
            return False
        return creds.expiry - self.refresh_margin <= _utcnow()

    def _refresh(self, creds: Credentials) -> None:
        """
        Exchange the refresh token for a new access token and persist it.

        Raises:
            AuthFailure: If Google rejects the refresh token
            TransientApiError: On network failure
        """
        try:
            creds.refresh(Request())
        except RefreshError as e:
            raise AuthFailure(f"Failed to refresh credentials: {str(e)}") from e
        except TransportError as e:
            raise TransientApiError(f"Token endpoint unreachable: {str(e)}") from e

        self.save(creds)
        logger.info(f"Refreshed Gmail credentials, new expiry {creds.expiry}")

    def _authorize_interactively(self) -> Credentials:
        """
        Run the installed-app flow with a loopback redirect.

        The local callback server only lives for the duration of this call:
        it is closed once the authorization code arrives or the timeout
        elapses.

        Raises:
            AuthFailure: If the flow is disabled, abandoned, times out or
                the code exchange is rejected
        """
        if not self.interactive:
            raise AuthFailure(
                f"No usable token in {self.token_path} and interactive authorization is disabled"
            )

        if not self.client_secrets_path.exists():
            raise AuthFailure(
                f"OAuth client secrets not found at {self.client_secrets_path}. "
                "Download them from the Google Cloud Console."
            )

        logger.info("Starting interactive Gmail authorization")
        try:
            flow = InstalledAppFlow.from_client_secrets_file(
                str(self.client_secrets_path),
                self.scopes,
            )
            creds = flow.run_local_server(
                host=settings.OAUTH_CALLBACK_HOST,
                port=settings.OAUTH_CALLBACK_PORT,
                open_browser=settings.OAUTH_OPEN_BROWSER,
                timeout_seconds=settings.OAUTH_CALLBACK_TIMEOUT,
                authorization_prompt_message="Authorize inbox-tally by visiting this URL: {url}",
                success_message="Authorization complete, you may close this window.",
            )
        except Exception as e:
            # A timed-out callback surfaces as an error from inside the flow
            raise AuthFailure(f"Interactive authorization failed: {str(e)}") from e

        if creds is None or not creds.token:
            raise AuthFailure("Interactive authorization did not return a token")

        self.save(creds)
        logger.info(f"Authorized Gmail access, token saved to {self.token_path}")
        return creds

    def load(self) -> Optional[Credentials]:
        """
        Load the persisted credential.

        Returns:
            Credentials, or None if no token file exists

        Raises:
            AuthFailure: If the file exists but cannot be decrypted or parsed
        """
        if not self.token_path.exists():
            return None

        try:
            content = self.token_path.read_text(encoding="utf-8")
            if self.encryption_key:
                content = decrypt_token(content, self.encryption_key)
            info = json.loads(content)
            # No scopes argument: keep the scopes recorded at authorization
            creds = Credentials.from_authorized_user_info(info)
            self._persisted_token = creds.token
            return creds
        except InvalidToken as e:
            raise AuthFailure(
                f"Token file {self.token_path} could not be decrypted with ENCRYPTION_KEY"
            ) from e
        except (OSError, ValueError) as e:
            raise AuthFailure(
                f"Token file {self.token_path} is unreadable: {str(e)}. "
                "Delete it and authorize again."
            ) from e

    def save(self, creds: Credentials) -> None:
        """Write the credential to the token file."""
        content = creds.to_json()
        if self.encryption_key:
            content = encrypt_token(content, self.encryption_key)

        try:
            os.makedirs(self.token_path.parent, exist_ok=True)
            self.token_path.write_text(content, encoding="utf-8")
        except OSError as e:
            raise AuthFailure(f"Failed to write token file {self.token_path}: {str(e)}") from e
        self._persisted_token = creds.token
