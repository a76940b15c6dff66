from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any, Optional, Protocol

import httpx
import jwt
from fastapi import Cookie, Depends, Header, Request

from app.config import Settings, settings
from app.errors import IdentityProviderError, PermissionDenied, Unauthenticated

logger = logging.getLogger(__name__)

ROLE_ADMIN = "admin"
ROLE_TENANT_OWNER = "tenant_owner"
ROLE_USER = "user"
DEFAULT_ROLE = ROLE_USER
DEFAULT_SUBSCRIPTION_STATUS = "trial"


@dataclass(frozen=True)
class VerifiedSubject:
    subject_id: str


@dataclass(frozen=True)
class UserProfile:
    subject_id: str
    email_addresses: list[str] = field(default_factory=list)
    public_metadata: dict[str, Any] = field(default_factory=dict)
    image_url: Optional[str] = None


@dataclass(frozen=True)
class Principal:
    subject_id: str
    role: str
    email: Optional[str] = None
    tenant_id: Optional[str] = None
    subscription_status: str = DEFAULT_SUBSCRIPTION_STATUS
    trial_end_date: Optional[datetime] = None
    image_url: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def to_dict(self) -> dict:
        data = asdict(self)
        if self.trial_end_date is not None:
            data["trial_end_date"] = self.trial_end_date.isoformat()
        return data


class IdentityProvider(Protocol):
    # both raise IdentityProviderError on any failure
    def verify_token(self, token: str) -> str: ...

    def fetch_profile(self, subject_id: str) -> UserProfile: ...


class ClerkIdentityProvider:
    algorithms = ["RS256"]

    def __init__(
        self,
        secret_key: str,
        authorized_parties: list[str],
        api_url: str = "https://api.clerk.com/v1",
        jwks_url: str = "https://api.clerk.com/v1/jwks",
        jwt_key: Optional[str] = None,
        timeout: float = 5.0,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self.authorized_parties = list(authorized_parties)
        self._jwt_key = jwt_key
        self._auth_headers = {"Authorization": f"Bearer {secret_key}"}
        self._jwks_client = None
        if not jwt_key:
            self._jwks_client = jwt.PyJWKClient(jwks_url, headers=self._auth_headers, timeout=timeout)
        self._http = http_client or httpx.Client(base_url=api_url, timeout=timeout)

    @classmethod
    def from_settings(cls, config: Settings) -> "ClerkIdentityProvider":
        return cls(
            secret_key=config.clerk_secret_key,
            authorized_parties=config.authorized_parties,
            api_url=config.clerk_api_url,
            jwks_url=config.clerk_jwks_url,
            jwt_key=config.clerk_jwt_key,
            timeout=config.identity_timeout_seconds,
        )

    def verify_token(self, token: str) -> str:
        try:
            if self._jwt_key:
                key = self._jwt_key
            else:
                key = self._jwks_client.get_signing_key_from_jwt(token).key
            claims = jwt.decode(
                token,
                key,
                algorithms=self.algorithms,
                options={"require": ["exp", "iat", "sub"]},
            )
        # PyJWKClient lets malformed JWKS bodies (ValueError) and dropped
        # connections (OSError) through unwrapped
        except (jwt.PyJWTError, ValueError, OSError) as exc:
            raise IdentityProviderError(f"token rejected: {exc}") from exc

        azp = claims.get("azp")
        if azp and self.authorized_parties and azp not in self.authorized_parties:
            raise IdentityProviderError(f"unauthorized party: {azp}")
        return claims["sub"]

    def fetch_profile(self, subject_id: str) -> UserProfile:
        try:
            response = self._http.get(f"/users/{subject_id}", headers=self._auth_headers)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as exc:
            raise IdentityProviderError(f"profile request failed: {exc}") from exc
        except ValueError as exc:
            raise IdentityProviderError("profile response is not JSON") from exc
        if not isinstance(body, dict):
            raise IdentityProviderError("profile response is not an object")

        emails = [
            entry["email_address"]
            for entry in body.get("email_addresses") or []
            if isinstance(entry, dict) and entry.get("email_address")
        ]
        return UserProfile(
            subject_id=body.get("id") or subject_id,
            email_addresses=emails,
            public_metadata=body.get("public_metadata") or {},
            image_url=body.get("image_url"),
        )


def extract_token(authorization: Optional[str], session: Optional[str]) -> str:
    # a present header always wins, even when malformed
    if authorization is not None:
        scheme, _, credentials = authorization.strip().partition(" ")
        credentials = credentials.strip()
        if scheme.lower() != "bearer" or not credentials:
            raise Unauthenticated("malformed authorization header")
        return credentials
    if session:
        return session
    raise Unauthenticated("missing token")


def verify(provider: IdentityProvider, token: str) -> VerifiedSubject:
    if not token:
        raise Unauthenticated("missing token")
    try:
        subject_id = provider.verify_token(token)
    except IdentityProviderError as exc:
        logger.info("token verification failed: %s", exc)
        raise Unauthenticated("invalid token") from exc
    if not subject_id:
        raise Unauthenticated("token has no subject")
    return VerifiedSubject(subject_id=subject_id)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    value = str(value)
    # fromisoformat only accepts a "Z" suffix from 3.11 on
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        logger.debug("ignoring unparseable trialEndDate %r", value)
        return None


def resolve(provider: IdentityProvider, subject_id: str) -> Principal:
    try:
        profile = provider.fetch_profile(subject_id)
    except IdentityProviderError as exc:
        logger.warning("profile fetch failed for %s: %s", subject_id, exc)
        raise Unauthenticated("profile unavailable") from exc

    metadata = profile.public_metadata
    if not isinstance(metadata, dict):
        if metadata:
            logger.warning("ignoring non-object public_metadata for %s", subject_id)
        metadata = {}
    role = metadata.get("role")
    if not isinstance(role, str) or not role:
        role = DEFAULT_ROLE
    tenant_id = metadata.get("tenantId")
    return Principal(
        subject_id=profile.subject_id,
        role=role,
        email=profile.email_addresses[0] if profile.email_addresses else None,
        tenant_id=str(tenant_id) if tenant_id is not None else None,
        subscription_status=metadata.get("subscriptionStatus") or DEFAULT_SUBSCRIPTION_STATUS,
        trial_end_date=_parse_datetime(metadata.get("trialEndDate")),
        image_url=profile.image_url,
    )


@lru_cache
def get_identity_provider() -> IdentityProvider:
    return ClerkIdentityProvider.from_settings(settings)


def get_principal(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    session: Optional[str] = Cookie(default=None),
    provider: IdentityProvider = Depends(get_identity_provider),
) -> Principal:
    try:
        token = extract_token(authorization, session)
    except Unauthenticated as exc:
        logger.info("rejected %s %s: %s", request.method, request.url.path, exc)
        raise
    subject = verify(provider, token)
    principal = resolve(provider, subject.subject_id)
    request.state.principal = principal
    return principal


def require_role(*roles: str):
    def dependency(principal: Principal = Depends(get_principal)) -> Principal:
        if principal.role not in roles:
            raise PermissionDenied(f"role {principal.role!r} not allowed")
        return principal

    return dependency
