"""QuickBooks Online OAuth2 token refresh.

QuickBooks access tokens live for an hour and refresh tokens rotate on every
refresh, so the new refresh token must be persisted before the old one is
discarded.
"""

import asyncio
import base64
import json
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional

import aiohttp

from core.config import QuickBooksSettings
from core.errors import AuthenticationError, ConfigurationError
from core.security.credential_store import CredentialStore, TargetCredentials

logger = logging.getLogger(__name__)

SYSTEM = "qbo"
DEFAULT_REFRESH_WINDOW = timedelta(minutes=10)


class QBOAuthProvider:
    """Refreshes QuickBooks tokens with the refresh_token grant.

    Usage:
        auth = QBOAuthProvider(session, settings.quickbooks)
        credentials = await auth.ensure_fresh(credentials, credential_store)
    """

    def __init__(self, session: aiohttp.ClientSession, settings: Optional[QuickBooksSettings] = None):
        self._session = session
        self.settings = settings or QuickBooksSettings()
        self._timeout = aiohttp.ClientTimeout(total=self.settings.timeout_seconds)

    def _basic_auth_header(self) -> str:
        if not self.settings.client_id or not self.settings.client_secret:
            raise ConfigurationError("QBO_CLIENT_ID and QBO_CLIENT_SECRET must be set to refresh tokens")
        raw = f"{self.settings.client_id}:{self.settings.client_secret}".encode("utf-8")
        return f"Basic {base64.b64encode(raw).decode('utf-8')}"

    async def refresh(self, credentials: TargetCredentials) -> TargetCredentials:
        """Exchange the refresh token for new tokens.

        Returns:
            New credentials; the argument is left untouched

        Raises:
            AuthenticationError: If QuickBooks rejects the refresh
            ConfigurationError: If the OAuth client id/secret are missing
        """
        if not credentials.refresh_token:
            raise AuthenticationError(
                f"No QuickBooks refresh token for company {credentials.company_id}; reconnect required",
                system=SYSTEM,
            )

        headers = {
            "Authorization": self._basic_auth_header(),
            "Accept": "application/json",
            "Content-Type": "application/x-www-form-urlencoded",
        }
        data = {
            "grant_type": "refresh_token",
            "refresh_token": credentials.refresh_token,
        }

        try:
            async with self._session.post(
                self.settings.token_url,
                data=data,
                headers=headers,
                timeout=self._timeout,
            ) as response:
                status = response.status
                body = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise AuthenticationError(f"QuickBooks token refresh failed: {e}", system=SYSTEM)

        if status != 200:
            raise AuthenticationError(
                f"QuickBooks token refresh failed: HTTP {status} - {body[:500]}",
                system=SYSTEM,
            )

        try:
            token_data = json.loads(body)
        except ValueError:
            raise AuthenticationError("QuickBooks token refresh returned invalid JSON", system=SYSTEM)

        access_token = token_data.get("access_token")
        if not access_token:
            raise AuthenticationError("QuickBooks token refresh response missing access_token", system=SYSTEM)

        expires_in = int(token_data.get("expires_in") or 3600)
        return replace(
            credentials,
            access_token=access_token,
            refresh_token=token_data.get("refresh_token") or credentials.refresh_token,
            expires_at=datetime.utcnow() + timedelta(seconds=expires_in),
        )

    async def ensure_fresh(
        self,
        credentials: TargetCredentials,
        store: CredentialStore,
        window: timedelta = DEFAULT_REFRESH_WINDOW,
    ) -> TargetCredentials:
        """Return credentials valid for at least ``window``.

        Refreshes and persists through ``store`` when the token expires within
        the window. Callers must use the returned value.
        """
        if not credentials.expires_within(window):
            return credentials

        logger.info(
            f"QuickBooks token for company {credentials.company_id} expires at "
            f"{credentials.expires_at}; refreshing"
        )
        refreshed = await self.refresh(credentials)
        store.save_target_tokens(refreshed)
        return refreshed
