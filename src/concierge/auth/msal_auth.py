"""Microsoft Graph sign-in with the MSAL device code flow.

The token cache lives in a file readable only by its owner. Tokens are
taken from the cache (refreshing silently) when possible; otherwise the
user is shown a verification URL and code in the terminal.

Usage:
    from concierge.auth.msal_auth import GraphAuth

    auth = GraphAuth.from_config(config.auth)
    token = auth.get_access_token()
"""

from __future__ import annotations

import os
import random
import stat
import time
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import msal
import requests
from rich.console import Console
from rich.panel import Panel

from concierge.core.errors import AuthenticationError
from concierge.core.logging import get_logger

if TYPE_CHECKING:
    from concierge.config_schema import AuthConfig

logger = get_logger(__name__)
console = Console()

MSAL_MAX_RETRIES = 3
MSAL_RETRY_DELAYS = [1.0, 2.0, 4.0]

T = TypeVar("T")

_DEVICE_FLOW_HINTS = {
    "authorization_pending": "Sign-in timed out. Run the command again and finish signing in sooner.",
    "authorization_declined": "Sign-in was declined. Run the command again and accept the permissions.",
    "expired_token": "The device code expired before sign-in finished. Run the command again.",
}


class GraphAuth:
    """Acquires Microsoft Graph access tokens for the family mailbox.

    Attributes:
        client_id: Azure app (client) id
        tenant_id: Directory id, or 'common' for personal Microsoft accounts
        scopes: Graph permission scopes
        token_cache_path: File holding the serialized MSAL cache
    """

    def __init__(
        self,
        client_id: str,
        tenant_id: str,
        scopes: list[str],
        token_cache_path: str,
    ):
        if not client_id or not client_id.strip():
            raise AuthenticationError(
                "auth.client_id is not set. Register an app under Microsoft Entra ID → "
                "App registrations and copy its Application (client) ID into the config."
            )

        self.client_id = client_id
        self.tenant_id = tenant_id
        self.scopes = scopes
        self.token_cache_path = Path(token_cache_path)
        self.cache = msal.SerializableTokenCache()
        self._load_cache()

        self.app = msal.PublicClientApplication(
            client_id=client_id,
            authority=f"https://login.microsoftonline.com/{tenant_id}",
            token_cache=self.cache,
        )

    @classmethod
    def from_config(cls, auth: AuthConfig) -> GraphAuth:
        return cls(
            client_id=auth.client_id,
            tenant_id=auth.tenant_id,
            scopes=list(auth.scopes),
            token_cache_path=auth.token_cache_path,
        )

    def get_access_token(self) -> str:
        """A valid access token, from the cache if possible.

        Raises:
            AuthenticationError: If interactive sign-in fails
        """
        accounts = self.app.get_accounts()
        if accounts:
            try:
                result = self._with_retry(
                    "acquire_token_silent",
                    lambda: self.app.acquire_token_silent(scopes=self.scopes, account=accounts[0]),
                )
            except requests.exceptions.RequestException as e:
                logger.warning("silent_token_acquisition_failed", error=str(e))
                result = None
            if result and "access_token" in result:
                self._save_cache()
                return result["access_token"]

        logger.info("device_code_flow_started")
        return self._device_code_flow()

    def _device_code_flow(self) -> str:
        try:
            flow = self._with_retry(
                "initiate_device_flow", lambda: self.app.initiate_device_flow(scopes=self.scopes)
            )
        except requests.exceptions.RequestException as e:
            raise AuthenticationError(
                f"Could not reach Microsoft sign-in after {MSAL_MAX_RETRIES} attempts: {e}"
            ) from e

        if "user_code" not in flow:
            detail = flow.get("error_description", "unknown error")
            logger.error("device_code_flow_initiation_failed", error=detail)
            raise AuthenticationError(
                f"Could not start device code sign-in: {detail}. "
                "Enable 'Allow public client flows' under the app's Authentication settings."
            )

        self._show_prompt(flow["verification_uri"], flow["user_code"])

        try:
            result = self._with_retry(
                "acquire_token_by_device_flow", lambda: self.app.acquire_token_by_device_flow(flow)
            )
        except requests.exceptions.RequestException as e:
            raise AuthenticationError(f"Sign-in failed on a network error: {e}") from e

        if "access_token" not in result:
            error = result.get("error", "unknown_error")
            detail = result.get("error_description", "Authentication failed")
            logger.error("device_code_flow_failed", error=error, description=detail)
            if "AADSTS7000218" in detail:
                raise AuthenticationError(
                    "Device code sign-in is disabled for this app. Set 'Allow public client "
                    "flows' to Yes under the app's Authentication settings."
                )
            raise AuthenticationError(_DEVICE_FLOW_HINTS.get(error, f"Authentication failed: {detail}"))

        self._save_cache()
        logger.info(
            "authentication_succeeded",
            username=result.get("id_token_claims", {}).get("preferred_username", "unknown"),
        )
        return result["access_token"]

    def _with_retry(self, operation: str, func: Callable[[], T]) -> T:
        """Retry ``func`` on network errors with jittered backoff; re-raise the last one."""
        for attempt in range(MSAL_MAX_RETRIES):
            try:
                return func()
            except requests.exceptions.RequestException as e:
                if attempt == MSAL_MAX_RETRIES - 1:
                    raise
                delay = MSAL_RETRY_DELAYS[attempt] * (1 + 0.2 * (2 * random.random() - 1))
                logger.warning(
                    "msal_request_retry",
                    operation=operation,
                    attempt=attempt + 1,
                    delay=round(delay, 2),
                    error=str(e),
                )
                time.sleep(delay)
        raise AssertionError("unreachable")

    def _show_prompt(self, verification_uri: str, user_code: str) -> None:
        console.print()
        console.print(
            Panel(
                f"Open [bold blue]{verification_uri}[/bold blue] in a browser\n"
                f"and enter the code [bold green]{user_code}[/bold green]\n\n"
                "Waiting for sign-in...",
                title="Sign in to Outlook",
                border_style="bright_blue",
            )
        )
        console.print()

    def _load_cache(self) -> None:
        if not self.token_cache_path.exists():
            return
        try:
            self.cache.deserialize(self.token_cache_path.read_text())
        except (OSError, ValueError) as e:
            logger.warning("token_cache_unreadable", path=str(self.token_cache_path), error=str(e))

    def _save_cache(self) -> None:
        """Write the cache with mode 0600 when it changed."""
        if not self.cache.has_state_changed:
            return
        try:
            self.token_cache_path.parent.mkdir(parents=True, exist_ok=True)
            self.token_cache_path.write_text(self.cache.serialize())
            os.chmod(self.token_cache_path, stat.S_IRUSR | stat.S_IWUSR)
        except OSError as e:
            logger.error("token_cache_write_failed", path=str(self.token_cache_path), error=str(e))

    def get_accounts(self) -> list[dict[str, Any]]:
        return self.app.get_accounts()

    def clear_cache(self) -> None:
        """Forget every account and delete the cache file."""
        for account in self.app.get_accounts():
            self.app.remove_account(account)
        if self.token_cache_path.exists():
            self.token_cache_path.unlink()
            logger.info("token_cache_cleared", path=str(self.token_cache_path))
