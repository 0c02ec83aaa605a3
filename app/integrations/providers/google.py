"""
Google OAuth pieces shared by the Gmail and Google Contacts adapters.

Both use the authorization-code flow against accounts.google.com with
offline access, so a refresh token comes back on first consent.
"""
from typing import Any, Dict, Optional, Tuple

from app.core.config import settings
from app.integrations.base import OAuthTokenMixin

AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
REVOKE_URL = "https://oauth2.googleapis.com/revoke"
USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"


class GoogleOAuthMixin(OAuthTokenMixin):
    """Google endpoints and credentials, userinfo and revocation."""

    authorize_url = AUTHORIZE_URL
    token_url = TOKEN_URL
    scopes: str = ""

    def oauth_credentials(self) -> Tuple[Optional[str], Optional[str]]:
        return settings.google_oauth_client_id, settings.google_oauth_client_secret

    def redirect_uri(self) -> Optional[str]:
        return settings.google_redirect_uri

    def validate_config(self) -> None:
        self.require_settings(
            google_client_id=settings.google_oauth_client_id,
            google_client_secret=settings.google_oauth_client_secret,
            google_redirect_uri=self.redirect_uri(),
        )

    async def authorization_url(self, state: str, **params) -> str:
        params.setdefault("access_type", "offline")
        params.setdefault("prompt", "consent")
        params.setdefault("include_granted_scopes", "true")
        return await super().authorization_url(state, **params)

    async def fetch_userinfo(self, access_token: str) -> Dict[str, Any]:
        response = await self.request(
            "GET", USERINFO_URL, "userinfo",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        return response.json()

    async def revoke(self, user_id) -> None:
        token = await self.token_store.get(user_id, self.name)
        if token is None:
            return
        await self.request(
            "POST", REVOKE_URL, "token revocation",
            params={"token": token.access_token},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
