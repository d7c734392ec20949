# sparetime/services/google_auth.py
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import urlencode

from google.auth.exceptions import TransportError
from google.auth.transport.requests import Request
from google_auth_oauthlib.flow import InstalledAppFlow
from oauthlib.oauth2.rfc6749.errors import AccessDeniedError, OAuth2Error

from core.errors import AuthorizationCancelledError, AuthorizationError
from core.logging_setup import get_logger
from core.settings import CLIENT_SECRET_PATH, DRIVE_SYNC


SCOPES = list(DRIVE_SYNC.scopes)


class GoogleAuth:
    """Obtains a Drive bearer token through the installed-app consent flow.

    Only the access token string is handed back; persisting it is the sync
    engine's job (encrypted through the token vault).
    """

    def __init__(
        self,
        secrets_path: str | Path = CLIENT_SECRET_PATH,
        *,
        timeout_sec: int = DRIVE_SYNC.auth_timeout_sec,
        flow_factory: Optional[Callable[[str, list[str]], InstalledAppFlow]] = None,
    ):
        self.secrets_path = Path(secrets_path)
        self.timeout_sec = timeout_sec
        self._flow_factory = flow_factory or InstalledAppFlow.from_client_secrets_file
        self.logger = get_logger("sparetime.auth")

    async def authorize(self) -> str:
        """Run the consent flow without blocking the event loop.

        Raises :class:`AuthorizationCancelledError` when the user denies
        access or never completes the flow before the timeout.
        """

        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._run_flow),
                timeout=self.timeout_sec + 5,
            )
        except asyncio.TimeoutError as exc:
            self.logger.info("Authorization timed out")
            raise AuthorizationCancelledError("authorization was not completed") from exc

    def revoke(self, token: str) -> bool:
        """Ask Google to revoke ``token``; returns False when the call fails."""

        request = Request()
        try:
            response = request(
                url=DRIVE_SYNC.revoke_url,
                method="POST",
                body=urlencode({"token": token}),
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except TransportError as exc:
            self.logger.warning("Token revocation failed: %s", exc)
            return False
        ok = 200 <= int(response.status) < 300
        if not ok:
            self.logger.warning("Token revocation returned %s", response.status)
        return ok

    # ----- helpers -----
    def _run_flow(self) -> str:
        if not self.secrets_path.exists():
            raise AuthorizationError(
                f"{self.secrets_path} not found. Create a Desktop OAuth client in "
                "Google Cloud and download its JSON."
            )
        flow = self._flow_factory(str(self.secrets_path), SCOPES)
        self.logger.info("Running OAuth consent flow (local server)")
        try:
            creds = flow.run_local_server(
                port=0,
                timeout_seconds=self.timeout_sec,
                prompt="consent",
                include_granted_scopes="true",
            )
        except AccessDeniedError as exc:
            raise AuthorizationCancelledError("access was denied on the consent screen") from exc
        except OAuth2Error as exc:
            if exc.error == "access_denied":
                raise AuthorizationCancelledError("access was denied on the consent screen") from exc
            raise AuthorizationError(f"authorization failed: {exc.error}") from exc
        if creds is None or not creds.token:
            raise AuthorizationCancelledError("authorization returned no token")
        granted = set(creds.scopes or SCOPES)
        if not all(scope in granted for scope in SCOPES):
            raise AuthorizationError("authorization is missing the Drive appdata scope")
        return creds.token


__all__ = ["GoogleAuth", "SCOPES"]
