"""Clerk backend API client: session verification and user metadata"""
import time
import logging
from typing import Any, Dict, List, Optional

import httpx
from jose import jwt, JWTError

from errors import AuthLookupError, Unauthorized, UpstreamUnavailable

logger = logging.getLogger(__name__)

JWKS_TTL_SECONDS = 3600


class ClerkClient:
    """Thin async wrapper over the Clerk Backend API.

    One instance is created at startup and shared by every request; it holds
    no per-user state apart from the cached JWKS.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        secret_key: Optional[str],
        api_url: str = "https://api.clerk.com/v1",
        authorized_parties: Optional[List[str]] = None,
    ):
        self.http = http
        self.secret_key = secret_key
        self.api_url = api_url.rstrip("/")
        self.authorized_parties = authorized_parties or []
        self._jwks: Optional[Dict[str, Any]] = None
        self._jwks_fetched_at = 0.0

    @property
    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.secret_key}"}

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        if not self.secret_key:
            raise UpstreamUnavailable("CLERK_SECRET_KEY is not configured")
        try:
            response = await self.http.request(
                method, f"{self.api_url}{path}", headers=self._headers, **kwargs
            )
        except httpx.HTTPError as e:
            logger.error(f"Clerk request {method} {path} failed: {str(e)}")
            raise UpstreamUnavailable(f"Identity provider unreachable: {str(e)}")
        if response.status_code >= 500:
            logger.error(f"Clerk returned {response.status_code} for {method} {path}: {response.text}")
            raise UpstreamUnavailable(f"Identity provider error ({response.status_code})")
        return response

    async def _get_jwks(self, refresh: bool = False) -> Dict[str, Any]:
        expired = time.monotonic() - self._jwks_fetched_at > JWKS_TTL_SECONDS
        if self._jwks is None or refresh or expired:
            response = await self._request("GET", "/jwks")
            if response.status_code != 200:
                raise UpstreamUnavailable(f"Failed to fetch Clerk JWKS ({response.status_code})")
            self._jwks = response.json()
            self._jwks_fetched_at = time.monotonic()
        return self._jwks

    def _decode(self, token: str, jwks: Dict[str, Any]) -> Dict[str, Any]:
        return jwt.decode(token, jwks, algorithms=["RS256"], options={"verify_aud": False})

    async def verify_token(self, token: str) -> str:
        """Verify a Clerk session token and return the user id (``sub``)."""
        if not token:
            raise Unauthorized("Missing session token")

        jwks = await self._get_jwks()
        try:
            claims = self._decode(token, jwks)
        except JWTError:
            # Signing keys may have rotated since the last fetch
            jwks = await self._get_jwks(refresh=True)
            try:
                claims = self._decode(token, jwks)
            except JWTError as e:
                logger.warning(f"Rejected session token: {str(e)}")
                raise Unauthorized("Unauthorized: Please login first.")

        azp = claims.get("azp")
        if self.authorized_parties and azp and azp not in self.authorized_parties:
            logger.warning(f"Rejected session token from unauthorized party: {azp}")
            raise Unauthorized("Unauthorized: Please login first.")

        user_id = claims.get("sub")
        if not user_id:
            raise Unauthorized("Session token has no subject")
        return user_id

    async def get_user(self, user_id: str) -> Dict[str, Any]:
        response = await self._request("GET", f"/users/{user_id}")
        if response.status_code == 404:
            raise AuthLookupError(f"User {user_id} not found")
        if response.status_code != 200:
            raise UpstreamUnavailable(f"Failed to load user ({response.status_code})")
        return response.json()

    async def find_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        """Return the first user with this email address, if any."""
        response = await self._request("GET", "/users", params={"email_address": email})
        if response.status_code != 200:
            raise UpstreamUnavailable(f"Failed to search users ({response.status_code})")
        users = response.json()
        if len(users) > 1:
            logger.warning(f"{len(users)} accounts share {email}; using the first")
        return users[0] if users else None

    async def update_metadata(
        self,
        user_id: str,
        public_metadata: Optional[Dict[str, Any]] = None,
        private_metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Merge metadata into the user record in a single request."""
        payload: Dict[str, Any] = {}
        if public_metadata is not None:
            payload["public_metadata"] = public_metadata
        if private_metadata is not None:
            payload["private_metadata"] = private_metadata

        response = await self._request("PATCH", f"/users/{user_id}/metadata", json=payload)
        if response.status_code == 404:
            raise AuthLookupError(f"User {user_id} not found")
        if response.status_code != 200:
            raise UpstreamUnavailable(f"Failed to update user metadata ({response.status_code})")
        return response.json()
