from __future__ import annotations

import contextlib
import time
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional
from urllib.parse import urlencode

import httpx
import jwt

from warden.config import Settings
from warden.logging import get_logger
from warden.service.errors import ProviderExchangeFailed
from warden.storage.models import OAuthUserInfo

logger = get_logger(__name__)


def _as_bool(value: Any) -> bool:
    # Apple sends "true"/"false" strings for boolean claims.
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


class OAuthProvider:
    """Base adapter: authorization URL, code exchange, identity normalization."""

    name = ""
    auth_url = ""
    token_url = ""
    userinfo_url = ""
    scope = ""
    supports_pkce = True

    def __init__(
        self,
        client_id: str,
        client_secret: Optional[str],
        redirect_uri: str,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self._http = http_client

    @contextlib.asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http is not None:
            yield self._http
            return
        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=False) as client:
            yield client

    def _extra_auth_params(self) -> Dict[str, str]:
        return {}

    def authorization_url(self, state: str, code_challenge: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": self.scope,
            "state": state,
        }
        if self.supports_pkce:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        params.update(self._extra_auth_params())
        return f"{self.auth_url}?{urlencode(params)}"

    def _client_secret(self) -> Optional[str]:
        return self.client_secret

    async def exchange(self, code: str, code_verifier: str) -> Dict[str, Any]:
        """Trade an authorization code for the provider's token response."""
        try:
            data = {
                "client_id": self.client_id,
                "client_secret": self._client_secret(),
                "code": code,
                "redirect_uri": self.redirect_uri,
                "grant_type": "authorization_code",
            }
        except (jwt.PyJWTError, ValueError, TypeError) as exc:
            logger.error("oauth_client_secret_error", provider=self.name, error=str(exc))
            raise ProviderExchangeFailed(reason="client_secret_invalid") from exc
        if self.supports_pkce:
            data["code_verifier"] = code_verifier
        try:
            async with self._client() as client:
                response = await client.post(
                    self.token_url, data=data, headers={"Accept": "application/json"}
                )
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=self.name,
                status_code=exc.response.status_code,
            )
            raise ProviderExchangeFailed(reason="token_endpoint_rejected") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider=self.name, error=str(exc))
            raise ProviderExchangeFailed(reason="token_endpoint_unreachable") from exc
        if not isinstance(payload, dict) or payload.get("error"):
            logger.error("oauth_token_error_response", provider=self.name)
            raise ProviderExchangeFailed(reason="token_endpoint_error")
        return payload

    async def _get_json(self, url: str, access_token: str, **headers: str) -> Any:
        try:
            async with self._client() as client:
                response = await client.get(
                    url, headers={"Authorization": f"Bearer {access_token}", **headers}
                )
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_userinfo_http_error",
                provider=self.name,
                status_code=exc.response.status_code,
            )
            raise ProviderExchangeFailed(reason="userinfo_rejected") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_userinfo_error", provider=self.name, error=str(exc))
            raise ProviderExchangeFailed(reason="userinfo_unreachable") from exc

    async def user_info(self, provider_token: Dict[str, Any]) -> OAuthUserInfo:
        access_token = provider_token.get("access_token")
        if not access_token:
            logger.error("oauth_no_access_token", provider=self.name)
            raise ProviderExchangeFailed(reason="missing_access_token")
        payload = await self._get_json(self.userinfo_url, access_token)
        if not isinstance(payload, dict):
            raise ProviderExchangeFailed(reason="userinfo_malformed")
        return self._finish(self._parse(payload))

    def _parse(self, payload: Dict[str, Any]) -> OAuthUserInfo:
        raise NotImplementedError

    def _finish(self, info: OAuthUserInfo) -> OAuthUserInfo:
        if not info.external_id:
            logger.error("oauth_identity_missing_uid", provider=self.name)
            raise ProviderExchangeFailed(reason="missing_external_id")
        if not info.email:
            logger.error("oauth_identity_missing_email", provider=self.name)
            raise ProviderExchangeFailed(reason="missing_email")
        return info


class GoogleProvider(OAuthProvider):
    name = "google"
    auth_url = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url = "https://oauth2.googleapis.com/token"
    userinfo_url = "https://www.googleapis.com/oauth2/v2/userinfo"
    scope = "openid email profile"

    def _extra_auth_params(self) -> Dict[str, str]:
        return {"access_type": "offline", "prompt": "consent"}

    def _parse(self, payload: Dict[str, Any]) -> OAuthUserInfo:
        return OAuthUserInfo(
            provider=self.name,
            external_id=str(payload.get("id") or payload.get("sub") or ""),
            email=payload.get("email") or "",
            email_verified=_as_bool(payload.get("verified_email", payload.get("email_verified"))),
            name=payload.get("name"),
            picture=payload.get("picture"),
        )


class GitHubProvider(OAuthProvider):
    name = "github"
    auth_url = "https://github.com/login/oauth/authorize"
    token_url = "https://github.com/login/oauth/access_token"
    userinfo_url = "https://api.github.com/user"
    emails_url = "https://api.github.com/user/emails"
    scope = "read:user user:email"

    def _parse(self, payload: Dict[str, Any]) -> OAuthUserInfo:
        uid = payload.get("id")
        return OAuthUserInfo(
            provider=self.name,
            external_id=str(uid) if uid is not None else "",
            email=payload.get("email") or "",
            email_verified=False,
            name=payload.get("name") or payload.get("login"),
            picture=payload.get("avatar_url"),
        )

    async def user_info(self, provider_token: Dict[str, Any]) -> OAuthUserInfo:
        access_token = provider_token.get("access_token")
        if not access_token:
            raise ProviderExchangeFailed(reason="missing_access_token")
        accept = {"Accept": "application/vnd.github+json"}
        payload = await self._get_json(self.userinfo_url, access_token, **accept)
        if not isinstance(payload, dict):
            raise ProviderExchangeFailed(reason="userinfo_malformed")
        info = self._parse(payload)
        # The profile email is whatever the user made public; the verified
        # primary address comes from the emails endpoint.
        try:
            emails = await self._get_json(self.emails_url, access_token, **accept)
        except ProviderExchangeFailed:
            emails = None
        primary = None
        if isinstance(emails, list):
            primary = next(
                (
                    e.get("email")
                    for e in emails
                    if isinstance(e, dict) and e.get("primary") and e.get("verified")
                ),
                None,
            )
        if primary:
            info = OAuthUserInfo(
                provider=info.provider,
                external_id=info.external_id,
                email=primary,
                email_verified=True,
                name=info.name,
                picture=info.picture,
            )
        return self._finish(info)


class MicrosoftProvider(OAuthProvider):
    name = "microsoft"
    auth_url = "https://login.microsoftonline.com/common/oauth2/v2.0/authorize"
    token_url = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
    userinfo_url = "https://graph.microsoft.com/v1.0/me"
    scope = "openid email profile User.Read"

    def _parse(self, payload: Dict[str, Any]) -> OAuthUserInfo:
        return OAuthUserInfo(
            provider=self.name,
            external_id=str(payload.get("id") or ""),
            email=payload.get("mail") or payload.get("userPrincipalName") or "",
            # Graph only returns addresses bound to the directory account.
            email_verified=True,
            name=payload.get("displayName"),
            picture=None,
        )


class AppleProvider(OAuthProvider):
    """Sign in with Apple.

    The client secret is a short-lived ES256 assertion signed with the team's
    key, and identity arrives as an id_token instead of a userinfo endpoint.
    Apple returns the user's name only on the first authorization, so name is
    usually None. Private relay addresses are accepted as the account email.
    """

    name = "apple"
    auth_url = "https://appleid.apple.com/auth/authorize"
    token_url = "https://appleid.apple.com/auth/token"
    issuer = "https://appleid.apple.com"
    scope = "name email"
    supports_pkce = False
    assertion_ttl_seconds = 300

    def __init__(
        self,
        client_id: str,
        redirect_uri: str,
        *,
        team_id: str,
        key_id: str,
        private_key: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ) -> None:
        super().__init__(
            client_id, None, redirect_uri, http_client=http_client, timeout=timeout
        )
        self.team_id = team_id
        self.key_id = key_id
        self._private_key = private_key

    def _extra_auth_params(self) -> Dict[str, str]:
        return {"response_mode": "form_post"}

    def _client_secret(self) -> str:
        now = int(time.time())
        claims = {
            "iss": self.team_id,
            "iat": now,
            "exp": now + self.assertion_ttl_seconds,
            "aud": self.issuer,
            "sub": self.client_id,
        }
        return jwt.encode(
            claims, self._private_key, algorithm="ES256", headers={"kid": self.key_id}
        )

    async def user_info(self, provider_token: Dict[str, Any]) -> OAuthUserInfo:
        id_token = provider_token.get("id_token")
        if not id_token:
            logger.error("oauth_no_id_token", provider=self.name)
            raise ProviderExchangeFailed(reason="missing_id_token")
        # Received directly from Apple's token endpoint over TLS; the claims
        # that bind it to this client are still checked.
        try:
            claims = jwt.decode(
                id_token,
                options={
                    "verify_signature": False,
                    "verify_aud": True,
                    "verify_iss": True,
                    "verify_exp": True,
                },
                audience=self.client_id,
                issuer=self.issuer,
            )
        except jwt.InvalidTokenError as exc:
            logger.error("oauth_id_token_invalid", provider=self.name, error=type(exc).__name__)
            raise ProviderExchangeFailed(reason="id_token_invalid") from exc
        user = provider_token.get("user") or {}
        name_parts = user.get("name") if isinstance(user, dict) else None
        name = None
        if isinstance(name_parts, dict):
            name = " ".join(
                p for p in (name_parts.get("firstName"), name_parts.get("lastName")) if p
            ) or None
        return self._finish(
            OAuthUserInfo(
                provider=self.name,
                external_id=str(claims.get("sub") or ""),
                email=claims.get("email") or "",
                email_verified=_as_bool(claims.get("email_verified")),
                name=name,
                picture=None,
            )
        )


def build_providers(
    settings: Settings, *, http_client: Optional[httpx.AsyncClient] = None
) -> Dict[str, OAuthProvider]:
    """Instantiate every provider whose credentials are configured."""
    redirect_uri = settings.oauth_redirect_uri
    if not redirect_uri:
        return {}
    timeout = settings.oauth_http_timeout_seconds
    providers: Dict[str, OAuthProvider] = {}
    simple = (
        (GoogleProvider, settings.oauth_google_client_id, settings.oauth_google_client_secret),
        (GitHubProvider, settings.oauth_github_client_id, settings.oauth_github_client_secret),
        (
            MicrosoftProvider,
            settings.oauth_microsoft_client_id,
            settings.oauth_microsoft_client_secret,
        ),
    )
    for cls, client_id, client_secret in simple:
        if client_id and client_secret:
            providers[cls.name] = cls(
                client_id, client_secret, redirect_uri, http_client=http_client, timeout=timeout
            )
    if (
        settings.oauth_apple_client_id
        and settings.oauth_apple_team_id
        and settings.oauth_apple_key_id
        and settings.oauth_apple_private_key_path
    ):
        providers[AppleProvider.name] = AppleProvider(
            settings.oauth_apple_client_id,
            redirect_uri,
            team_id=settings.oauth_apple_team_id,
            key_id=settings.oauth_apple_key_id,
            private_key=Path(settings.oauth_apple_private_key_path).read_text(),
            http_client=http_client,
            timeout=timeout,
        )
    for name in providers:
        logger.info("oauth_provider_configured", provider=name)
    return providers
