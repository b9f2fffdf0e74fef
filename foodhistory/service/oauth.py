from __future__ import annotations

import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode, urlparse

import httpx

from foodhistory.config import Settings
from foodhistory.logging import get_logger
from foodhistory.service.errors import AuthenticationError, ValidationError
from foodhistory.service.identity import FederatedClaims

OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://openidconnect.googleapis.com/v1/userinfo",
        "scope": "openid email profile",
    },
}

STATE_TTL = timedelta(minutes=10)

logger = get_logger(__name__)


class OAuthClient:
    """Authorization-code flow against an OIDC provider.

    Produces :class:`FederatedClaims`; nothing past this boundary sees raw
    provider payloads.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.transport = transport
        self.logger = logger
        self._state_lock = threading.Lock()
        self._states: Dict[str, Tuple[str, datetime]] = {}
        self._code_registry: Dict[Tuple[str, str], dict] = {}

    def _credentials(self, provider: str) -> Tuple[Optional[str], Optional[str]]:
        if provider == "google":
            return (
                self.settings.oauth_google_client_id,
                self.settings.oauth_google_client_secret,
            )
        return None, None

    @staticmethod
    def _validate_redirect_uri(redirect_uri: str) -> str:
        parsed = urlparse(redirect_uri)
        if parsed.scheme not in {"https", "http"}:
            raise ValidationError("OAuth redirect URI must be http(s)")
        if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
            raise ValidationError("Insecure redirect URI not allowed outside localhost")
        if not parsed.netloc:
            raise ValidationError("OAuth redirect URI must include host")
        return redirect_uri

    def _purge_expired_states(self, now: datetime) -> None:
        expired = [state for state, (_, expires) in self._states.items() if expires <= now]
        for state in expired:
            self._states.pop(state, None)

    def start(self, provider: str) -> dict:
        if provider not in OAUTH_PROVIDERS:
            raise ValidationError(f"Unsupported OAuth provider: {provider}")
        client_id, _ = self._credentials(provider)
        if not client_id:
            self.logger.warning("oauth_not_configured", provider=provider)
            raise ValidationError(f"OAuth provider {provider} is not configured")
        callback_uri = self.settings.oauth_redirect_uri
        if not callback_uri:
            self.logger.error("oauth_no_redirect_uri_configured", provider=provider)
            raise ValidationError("No OAuth redirect URI configured")
        callback_uri = self._validate_redirect_uri(callback_uri)

        state = uuid.uuid4().hex
        now = datetime.utcnow()
        with self._state_lock:
            self._purge_expired_states(now)
            self._states[state] = (provider, now + STATE_TTL)

        provider_config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": callback_uri,
            "response_type": "code",
            "scope": provider_config["scope"],
            "state": state,
            # offline access so the provider returns a refresh token
            "access_type": "offline",
            "prompt": "consent",
        }
        return {
            "authorization_url": f"{provider_config['auth_url']}?{urlencode(params)}",
            "state": state,
            "provider": provider,
        }

    def _consume_state(self, provider: str, state: str) -> None:
        now = datetime.utcnow()
        with self._state_lock:
            stored = self._states.pop(state, None)
        if stored is None:
            raise AuthenticationError("invalid or expired OAuth state")
        stored_provider, expires_at = stored
        if stored_provider != provider or expires_at <= now:
            raise AuthenticationError("invalid or expired OAuth state")

    def register_oauth_code(self, provider: str, code: str, payload: dict) -> None:
        """Record a userinfo payload for a code, for tests and offline flows."""
        if not self.settings.test_mode:
            raise RuntimeError("OAuth code registration is only allowed in TEST_MODE")
        self._code_registry[(provider, code)] = payload

    async def complete(self, provider: str, code: str, state: str) -> FederatedClaims:
        if provider not in OAUTH_PROVIDERS:
            raise ValidationError(f"Unsupported OAuth provider: {provider}")
        if not code:
            raise ValidationError("authorization code is required", detail={"field": "code"})
        self._consume_state(provider, state)
        payload = self._code_registry.pop((provider, code), None)
        if payload is None:
            payload = await self._exchange_code(provider, code)
        payload = dict(payload)
        refresh_token = payload.pop("refresh_token", None)
        return FederatedClaims.from_userinfo(provider, payload, refresh_token=refresh_token)

    async def _exchange_code(self, provider: str, code: str) -> Dict[str, Any]:
        """Exchange the code for tokens, then fetch userinfo with the access token."""
        client_id, client_secret = self._credentials(provider)
        redirect_uri = self.settings.oauth_redirect_uri
        if not client_id or not client_secret or not redirect_uri:
            self.logger.error("oauth_credentials_missing", provider=provider)
            raise AuthenticationError("OAuth provider is not configured")
        provider_config = OAUTH_PROVIDERS[provider]

        try:
            async with httpx.AsyncClient(
                timeout=30.0, follow_redirects=False, transport=self.transport
            ) as client:
                token_response = await client.post(
                    provider_config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    self.logger.error("oauth_no_access_token", provider=provider)
                    raise AuthenticationError("OAuth exchange failed")

                userinfo_response = await client.get(
                    provider_config["userinfo_url"],
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPStatusError as exc:
            self.logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
            )
            raise AuthenticationError("OAuth exchange failed") from exc
        except (httpx.HTTPError, ValueError) as exc:
            self.logger.error("oauth_exchange_error", provider=provider, error=str(exc))
            raise AuthenticationError("OAuth exchange failed") from exc

        if not isinstance(userinfo, dict):
            self.logger.error("oauth_userinfo_invalid_format", provider=provider)
            raise AuthenticationError("OAuth exchange failed")
        if not (userinfo.get("sub") or userinfo.get("id")):
            self.logger.error("oauth_identity_missing_uid", provider=provider)
            raise AuthenticationError("OAuth exchange failed")
        refresh_token = token_result.get("refresh_token")
        if refresh_token:
            userinfo = {**userinfo, "refresh_token": refresh_token}
        self.logger.info("oauth_exchange_success", provider=provider)
        return userinfo


__all__ = ["OAUTH_PROVIDERS", "OAuthClient"]
