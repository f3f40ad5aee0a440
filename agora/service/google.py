from __future__ import annotations

from typing import Optional
from urllib.parse import urlencode

import httpx

from agora.logging import get_logger
from agora.service.errors import ConfigurationError, OAuthHandshakeError
from agora.storage.models import GoogleProfile

logger = get_logger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_SCOPE = "openid email profile"


class GoogleOAuthClient:
    """Authorization-code exchange against Google's OAuth 2.0 endpoints."""

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: Optional[str],
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)

    def require_config(self) -> None:
        if not self.configured:
            logger.error("oauth_not_configured", provider="google")
            raise ConfigurationError("Google OAuth is not configured")

    def authorization_url(self, state: str) -> str:
        self.require_config()
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": GOOGLE_SCOPE,
            "state": state,
            "access_type": "online",
            "prompt": "select_account",
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, transport=self._transport
        )

    async def fetch_profile(self, code: str) -> GoogleProfile:
        """Exchange ``code`` for an access token and fetch the user's profile.

        Every provider-side failure raises OAuthHandshakeError; the detail only
        goes to the log.
        """
        self.require_config()
        if not code:
            raise OAuthHandshakeError()
        try:
            async with self._client() as client:
                token_response = await client.post(
                    GOOGLE_TOKEN_URL,
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "code": code,
                        "redirect_uri": self.redirect_uri,
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
                    logger.error("oauth_no_access_token", provider="google")
                    raise OAuthHandshakeError()

                userinfo_response = await client.get(
                    GOOGLE_USERINFO_URL,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider="google",
                status_code=exc.response.status_code,
                error=str(exc),
            )
            raise OAuthHandshakeError() from exc
        except httpx.HTTPError as exc:
            logger.error("oauth_exchange_error", provider="google", error=str(exc))
            raise OAuthHandshakeError() from exc
        except ValueError as exc:
            logger.error("oauth_response_parse_error", provider="google", error=str(exc))
            raise OAuthHandshakeError() from exc

        if not isinstance(userinfo, dict):
            logger.error("oauth_userinfo_invalid_format", provider="google")
            raise OAuthHandshakeError()
        google_id = userinfo.get("id")
        email = userinfo.get("email")
        if not google_id or not email:
            logger.error("oauth_identity_incomplete", provider="google")
            raise OAuthHandshakeError()
        logger.info("oauth_exchange_success", provider="google")
        return GoogleProfile(id=str(google_id), email=email, picture=userinfo.get("picture"))


__all__ = ["GoogleOAuthClient", "GOOGLE_AUTH_URL", "GOOGLE_SCOPE"]
