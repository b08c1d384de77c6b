from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from urllib.parse import urlencode, urlparse

import httpx

from rayauth.config import Settings
from rayauth.logging import get_logger
from rayauth.service.errors import AuthenticationError, BadRequestError, ServerError
from rayauth.storage.redis_cache import RedisCache

OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "scope": "read:user user:email",
    },
}

OAUTH_STATE_TTL = timedelta(minutes=10)

logger = get_logger(__name__)


@dataclass
class OAuthProfile:
    provider: str
    provider_id: str
    email: Optional[str] = None
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None


def _split_name(full_name: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    if not full_name:
        return None, None
    parts = full_name.strip().split(" ", 1)
    return parts[0] or None, (parts[1] if len(parts) > 1 else None)


def parse_oauth_userinfo(provider: str, userinfo: dict) -> Optional[OAuthProfile]:
    """Normalize a provider userinfo document."""
    if provider == "google":
        provider_id = userinfo.get("id") or userinfo.get("sub")
        first = userinfo.get("given_name")
        last = userinfo.get("family_name")
        if not first and not last:
            first, last = _split_name(userinfo.get("name"))
        email = userinfo.get("email")
        username = email.split("@")[0] if email else None
        avatar = userinfo.get("picture")
    elif provider == "github":
        provider_id = userinfo.get("id")
        first, last = _split_name(userinfo.get("name"))
        email = userinfo.get("email")
        username = userinfo.get("login")
        avatar = userinfo.get("avatar_url")
    else:
        return None
    if provider_id is None:
        return None
    return OAuthProfile(
        provider=provider,
        provider_id=str(provider_id),
        email=email,
        username=username,
        first_name=first,
        last_name=last,
        avatar_url=avatar,
    )


class OAuthService:
    """Authorization-code flow against Google and GitHub.

    State tokens live in Redis when available so any instance can complete
    the callback; without a cache they are kept in-process, which is only
    accepted in test mode or with the dev fallback enabled.
    """

    def __init__(self, cache: Optional[RedisCache], settings: Settings) -> None:
        self.cache = cache
        self.settings = settings
        self.logger = logger
        self._state_lock = threading.Lock()
        self._oauth_states: dict[str, tuple[str, datetime]] = {}
        self._oauth_code_registry: dict[tuple[str, str], dict[str, Any]] = {}

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _get_oauth_credentials(self, provider: str) -> tuple[Optional[str], Optional[str]]:
        if provider == "google":
            return self.settings.oauth_google_client_id, self.settings.oauth_google_client_secret
        if provider == "github":
            return self.settings.oauth_github_client_id, self.settings.oauth_github_client_secret
        return None, None

    def _validate_redirect_uri(self, redirect_uri: str) -> str:
        parsed = urlparse(redirect_uri)
        if parsed.scheme not in {"https", "http"}:
            raise BadRequestError("OAuth redirect URI must be http(s)")
        if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
            raise BadRequestError("Insecure redirect URI not allowed outside localhost")
        if not parsed.netloc:
            raise BadRequestError("OAuth redirect URI must include host")
        return redirect_uri

    def _redirect_uri(self, provider: str) -> str:
        base = self.settings.oauth_redirect_uri
        if not base:
            self.logger.error("oauth_no_redirect_uri_configured", provider=provider)
            raise ServerError("No OAuth redirect URI configured")
        return self._validate_redirect_uri(base.replace("{provider}", provider))

    def _prune_states(self) -> None:
        now = self._now()
        with self._state_lock:
            stale = [s for s, (_, exp) in self._oauth_states.items() if exp <= now]
            for state in stale:
                self._oauth_states.pop(state, None)

    async def start(self, provider: str) -> dict[str, str]:
        if provider not in OAUTH_PROVIDERS:
            raise BadRequestError(f"Unsupported OAuth provider: {provider}")
        client_id, _ = self._get_oauth_credentials(provider)
        if not client_id:
            self.logger.warning("oauth_not_configured", provider=provider)
            raise BadRequestError(f"OAuth provider {provider} is not configured")
        callback_uri = self._redirect_uri(provider)

        state = uuid.uuid4().hex
        expires_at = self._now() + OAUTH_STATE_TTL
        if self.cache:
            await self.cache.set_oauth_state(state, provider, expires_at)
        else:
            self._prune_states()
            with self._state_lock:
                self._oauth_states[state] = (provider, expires_at)

        provider_config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": callback_uri,
            "response_type": "code",
            "scope": provider_config["scope"],
            "state": state,
        }
        if provider == "google":
            params["access_type"] = "online"
            params["prompt"] = "select_account"

        return {
            "authorization_url": f"{provider_config['auth_url']}?{urlencode(params)}",
            "state": state,
            "provider": provider,
        }

    async def _pop_state(self, state: str) -> Optional[tuple[str, datetime]]:
        if self.cache:
            return await self.cache.pop_oauth_state(state)
        with self._state_lock:
            return self._oauth_states.pop(state, None)

    def register_oauth_code(self, provider: str, code: str, userinfo: dict) -> None:
        """Pre-seed the userinfo an authorization code will resolve to (tests, offline flows)."""
        self._oauth_code_registry[(provider, code)] = userinfo

    async def complete(self, provider: str, code: str, state: str) -> OAuthProfile:
        stored = await self._pop_state(state)
        if not stored or stored[0] != provider or stored[1] <= self._now():
            self.logger.warning("oauth_state_invalid", provider=provider)
            raise AuthenticationError("Invalid or expired OAuth state")
        profile = await self._exchange_oauth_code(provider, code)
        if profile is None:
            raise AuthenticationError("OAuth authentication failed")
        return profile

    async def _exchange_oauth_code(self, provider: str, code: str) -> Optional[OAuthProfile]:
        registered = self._oauth_code_registry.pop((provider, code), None)
        if registered is not None:
            return parse_oauth_userinfo(provider, registered)

        client_id, client_secret = self._get_oauth_credentials(provider)
        if not client_id or not client_secret:
            self.logger.error("oauth_credentials_missing", provider=provider)
            return None
        provider_config = OAUTH_PROVIDERS[provider]

        try:
            async with httpx.AsyncClient(timeout=30.0, follow_redirects=False) as client:
                token_response = await client.post(
                    provider_config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": self._redirect_uri(provider),
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
                    return None

                userinfo_headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    userinfo_headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(
                    provider_config["userinfo_url"], headers=userinfo_headers
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    self.logger.error("oauth_userinfo_invalid_format", provider=provider)
                    return None

                profile = parse_oauth_userinfo(provider, userinfo)
                if profile is None:
                    self.logger.error("oauth_identity_missing_uid", provider=provider)
                    return None

                # GitHub hides private emails from /user
                if provider == "github" and not profile.email:
                    emails_response = await client.get(
                        "https://api.github.com/user/emails", headers=userinfo_headers
                    )
                    if emails_response.status_code == 200:
                        profile.email = next(
                            (
                                e["email"]
                                for e in emails_response.json()
                                if e.get("primary") and e.get("verified")
                            ),
                            None,
                        )
        except httpx.HTTPStatusError as e:
            self.logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=e.response.status_code,
                error=str(e),
            )
            return None
        except (httpx.HTTPError, ValueError) as e:
            self.logger.error("oauth_exchange_error", provider=provider, error=str(e))
            return None

        self.logger.info("oauth_exchange_success", provider=provider, provider_uid=profile.provider_id)
        return profile
