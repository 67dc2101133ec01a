# sayso/oauth.py

import logging
from typing import Any, Dict

import httpx
from authlib.common.errors import AuthlibBaseError
from authlib.integrations.httpx_client import AsyncOAuth2Client

from .db_async import Database

logger = logging.getLogger(__name__)

# Stored in place of a password hash for accounts created by Google login.
# It is never a valid bcrypt hash, so password login fails for such accounts.
GOOGLE_PASSWORD_PLACEHOLDER = "google"


class GoogleLoginError(Exception):
    """Raised when the Google code exchange or profile fetch fails."""


class GoogleLogin:
    """
    Authorization-code login against Google's OpenID Connect endpoints.
    """
    AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
    TOKEN_URL = "https://oauth2.googleapis.com/token"
    USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"
    SCOPE = "openid email profile"

    def __init__(self, client_id: str, client_secret: str, redirect_uri: str):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri

    def _client(self) -> AsyncOAuth2Client:
        return AsyncOAuth2Client(
            client_id=self.client_id,
            client_secret=self.client_secret,
            scope=self.SCOPE,
            redirect_uri=self.redirect_uri,
        )

    async def authorization_url(self, state: str) -> str:
        async with self._client() as client:
            url, _ = client.create_authorization_url(self.AUTHORIZE_URL, state=state)
        return url

    async def fetch_profile(self, code: str) -> Dict[str, Any]:
        """Exchanges the callback code for a token and returns the userinfo claims."""
        try:
            async with self._client() as client:
                await client.fetch_token(self.TOKEN_URL, code=code)
                resp = await client.get(self.USERINFO_URL)
                resp.raise_for_status()
                return resp.json()
        except (AuthlibBaseError, httpx.HTTPError, ValueError) as e:
            raise GoogleLoginError(str(e)) from e


def google_username(profile: Dict[str, Any]) -> str:
    """given_name lowercased plus the first five characters of the Google account id."""
    given_name = profile.get("given_name") or profile["email"].split("@")[0]
    return f"{given_name.lower()}_{str(profile['sub'])[:5]}"


async def find_or_create_google_user(db: Database, profile: Dict[str, Any]) -> Dict[str, Any]:
    """
    Returns the account for the profile's email, creating it on first login.
    An existing account keeps its password and details.
    """
    email = profile.get("email")
    if not isinstance(email, str) or not email or "sub" not in profile:
        raise GoogleLoginError("Google profile has no email")
    email = email.strip().lower()

    existing = await db.get_user_by_email(email)
    if existing:
        logger.info(f"Google login matched existing user '{email}'.")
        return dict(existing)

    user = await db.add_user(
        email, GOOGLE_PASSWORD_PLACEHOLDER,
        fullname=profile.get("name"),
        username=google_username(profile),
        image_url=profile.get("picture"),
    )
    if user is None:
        # Created concurrently by another callback.
        user = dict(await db.get_user_by_email(email))
    logger.info(f"Google login created user '{email}'.")
    return user
