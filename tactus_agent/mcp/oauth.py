"""OAuth 2.1 credentials for remote tool providers.

Implements the authorization code flow with PKCE (S256), RFC 8414 metadata
discovery, RFC 7591 dynamic client registration, refresh and scoped
invalidation. Each provider moves through::

    no_credentials -> awaiting_user_authorization -> authorized -> (refreshing | revoked)

Credential blobs are persisted through a ``CredentialStore`` under
``mcpOAuth_{provider_id}``. The interactive step (open the authorization page,
capture the final redirect URL) belongs to the host and is passed in as a
launcher callable.
"""

import asyncio
import base64
import hashlib
import inspect
import logging
import secrets
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union
from urllib.parse import parse_qs, urlencode, urlparse

import httpx
from pydantic import BaseModel, ConfigDict

from tactus_agent.core.credential_store import CredentialStore
from tactus_agent.core.errors import (
    AuthorizationFailed,
    AuthorizationInProgress,
    AuthorizationRequired,
    TransportError,
)

logger = logging.getLogger(__name__)

STORAGE_KEY_PREFIX = "mcpOAuth_"
EXPIRY_MARGIN_SECONDS = 60
GRANT_REJECTION_ERRORS = ("invalid_grant", "invalid_client", "unauthorized_client")


class AuthState(str, Enum):
    NO_CREDENTIALS = "no_credentials"
    AWAITING_USER_AUTHORIZATION = "awaiting_user_authorization"
    AUTHORIZED = "authorized"
    REFRESHING = "refreshing"
    REVOKED = "revoked"


class InvalidationScope(str, Enum):
    ALL = "all"
    TOKENS = "tokens"
    CLIENT = "client"
    VERIFIER = "verifier"

    @classmethod
    def _missing_(cls, value):
        if value in ("client_registration", "clientRegistration"):
            return cls.CLIENT
        return None


class ClientRegistration(BaseModel):
    """Client credentials issued by the authorization server."""

    model_config = ConfigDict(extra="allow")

    client_id: str
    client_secret: Optional[str] = None
    client_id_issued_at: Optional[int] = None
    client_secret_expires_at: Optional[int] = None


class CredentialRecord(BaseModel):
    """Everything stored for one provider."""

    provider_id: str
    access_token: Optional[str] = None
    token_type: str = "Bearer"
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None
    scope: Optional[str] = None
    client_registration: Optional[ClientRegistration] = None
    pending_verifier: Optional[str] = None
    pending_state: Optional[str] = None

    def clear_tokens(self):
        self.access_token = None
        self.refresh_token = None
        self.expires_at = None
        self.scope = None


class AuthServerMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    issuer: Optional[str] = None
    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: Optional[str] = None
    scopes_supported: Optional[List[str]] = None
    code_challenge_methods_supported: Optional[List[str]] = None


class AuthorizationRequest(BaseModel):
    provider_id: str
    url: str
    state: str


class PendingAuthorization(BaseModel):
    """In-memory half of an authorization attempt that awaits its callback."""

    provider_id: str
    server_url: str
    state: str
    code_verifier: str
    metadata: AuthServerMetadata


class AuthStatus(BaseModel):
    authenticated: bool
    has_client_info: bool
    state: AuthState


AuthorizationLauncher = Callable[[str], Union[str, Awaitable[str]]]


def generate_pkce() -> Tuple[str, str]:
    """Return a ``(verifier, S256 challenge)`` pair."""
    verifier = secrets.token_urlsafe(64)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


def server_origin(server_url: str) -> str:
    parsed = urlparse(server_url)
    if not parsed.scheme or not parsed.netloc:
        raise AuthorizationFailed(f"Invalid server URL: {server_url}")
    return f"{parsed.scheme}://{parsed.netloc}"


def _first(query: Dict[str, List[str]], key: str) -> Optional[str]:
    values = query.get(key)
    return values[0] if values else None


class OAuthCredentialManager:
    """Per-provider OAuth credential lifecycle."""

    def __init__(
        self,
        store: CredentialStore,
        redirect_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
        client_name: str = "Tactus Agent",
        timeout: float = 30.0,
    ):
        self.store = store
        self.redirect_url = redirect_url
        self.client_name = client_name
        self.timeout = timeout
        self._clock = clock
        self._client = http_client
        self._owns_client = http_client is None

        self._pending: Dict[str, PendingAuthorization] = {}
        self._in_flight: Set[str] = set()
        self._states: Dict[str, AuthState] = {}
        self._refresh_locks: Dict[str, asyncio.Lock] = {}

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    @property
    def client_metadata(self) -> Dict[str, Any]:
        return {
            "redirect_uris": [self.redirect_url],
            "client_name": self.client_name,
            "grant_types": ["authorization_code", "refresh_token"],
            "response_types": ["code"],
            "token_endpoint_auth_method": "none",
        }

    @staticmethod
    def storage_key(provider_id: str) -> str:
        return f"{STORAGE_KEY_PREFIX}{provider_id}"

    async def load_record(self, provider_id: str) -> CredentialRecord:
        data = await self.store.get(self.storage_key(provider_id))
        if not data:
            return CredentialRecord(provider_id=provider_id)
        data = dict(data)
        data["provider_id"] = provider_id
        return CredentialRecord.model_validate(data)

    async def _save_record(self, record: CredentialRecord):
        await self.store.set(
            self.storage_key(record.provider_id),
            record.model_dump(mode="json", exclude_none=True),
        )

    def _is_expired(self, record: CredentialRecord) -> bool:
        if record.expires_at is None:
            return False
        return self._clock() >= record.expires_at - EXPIRY_MARGIN_SECONDS

    def is_authorization_in_flight(self, provider_id: str) -> bool:
        return provider_id in self._in_flight

    # ------------------------------------------------------------------
    # Discovery and registration
    # ------------------------------------------------------------------

    async def discover_metadata(self, server_url: str) -> AuthServerMetadata:
        """Fetch RFC 8414 metadata from the server origin, with path fallbacks."""
        origin = server_origin(server_url)
        url = f"{origin}/.well-known/oauth-authorization-server"
        try:
            response = await self.client.get(url, headers={"Accept": "application/json"})
        except httpx.TimeoutException as e:
            raise TransportError(f"Metadata discovery timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Metadata discovery failed: {e}") from e

        if response.status_code == 200:
            try:
                metadata = AuthServerMetadata.model_validate(response.json())
                logger.debug(f"Discovered OAuth metadata for {origin}")
                return metadata
            except ValueError as e:
                raise AuthorizationFailed(f"Invalid OAuth metadata from {origin}: {e}") from e

        logger.info(
            f"No OAuth metadata at {origin} (status {response.status_code}), using default endpoints"
        )
        return AuthServerMetadata(
            authorization_endpoint=f"{origin}/authorize",
            token_endpoint=f"{origin}/token",
            registration_endpoint=f"{origin}/register",
        )

    async def ensure_client_registration(
        self, provider_id: str, metadata: AuthServerMetadata
    ) -> ClientRegistration:
        """Return the cached client registration, registering dynamically if needed."""
        record = await self.load_record(provider_id)
        if record.client_registration is not None:
            return record.client_registration

        if not metadata.registration_endpoint:
            raise AuthorizationFailed(
                "Authorization server does not support dynamic client registration"
            )

        try:
            response = await self.client.post(
                metadata.registration_endpoint, json=self.client_metadata
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Client registration failed: {e}") from e

        if response.status_code not in (200, 201):
            raise AuthorizationFailed(
                f"Client registration rejected with status {response.status_code}"
            )

        try:
            registration = ClientRegistration.model_validate(response.json())
        except ValueError as e:
            raise AuthorizationFailed(f"Invalid client registration response: {e}") from e

        record.client_registration = registration
        await self._save_record(record)
        logger.info(f"Registered OAuth client for provider {provider_id}")
        return registration

    # ------------------------------------------------------------------
    # Authorization code flow
    # ------------------------------------------------------------------

    async def begin_authorization(
        self, provider_id: str, server_url: str
    ) -> AuthorizationRequest:
        """Prepare an authorization attempt and return the URL the user must visit."""
        if provider_id in self._in_flight:
            raise AuthorizationInProgress(
                f"Authorization for provider {provider_id} is already in progress"
            )
        self._in_flight.add(provider_id)

        try:
            metadata = await self.discover_metadata(server_url)
            registration = await self.ensure_client_registration(provider_id, metadata)

            verifier, challenge = generate_pkce()
            state = secrets.token_urlsafe(32)

            record = await self.load_record(provider_id)
            record.pending_verifier = verifier
            record.pending_state = state
            await self._save_record(record)

            self._pending[provider_id] = PendingAuthorization(
                provider_id=provider_id,
                server_url=server_url,
                state=state,
                code_verifier=verifier,
                metadata=metadata,
            )
            self._states[provider_id] = AuthState.AWAITING_USER_AUTHORIZATION
        except BaseException:
            self._in_flight.discard(provider_id)
            raise

        params = {
            "response_type": "code",
            "client_id": registration.client_id,
            "redirect_uri": self.redirect_url,
            "code_challenge": challenge,
            "code_challenge_method": "S256",
            "state": state,
        }
        separator = "&" if "?" in metadata.authorization_endpoint else "?"
        url = f"{metadata.authorization_endpoint}{separator}{urlencode(params)}"
        logger.info(f"Starting OAuth authorization for provider {provider_id}")
        return AuthorizationRequest(provider_id=provider_id, url=url, state=state)

    def cancel_authorization(self, provider_id: str):
        """Abandon an attempt that will never receive its callback."""
        self._pending.pop(provider_id, None)
        self._in_flight.discard(provider_id)
        if self._states.get(provider_id) == AuthState.AWAITING_USER_AUTHORIZATION:
            self._states[provider_id] = AuthState.NO_CREDENTIALS

    async def complete_authorization(
        self, provider_id: str, callback_url: str, server_url: Optional[str] = None
    ) -> CredentialRecord:
        """Exchange the code carried by ``callback_url`` for tokens.

        ``server_url`` is only needed when no attempt was started by this
        manager instance (the persisted verifier is used in that case).
        """
        pending = self._pending.get(provider_id)
        try:
            query = parse_qs(urlparse(callback_url).query)
            error = _first(query, "error")
            if error:
                description = _first(query, "error_description")
                message = f"OAuth error: {error}"
                if description:
                    message += f" - {description}"
                raise AuthorizationFailed(message)

            code = _first(query, "code")
            if not code:
                raise AuthorizationFailed("No authorization code in callback URL")

            record = await self.load_record(provider_id)
            expected_state = pending.state if pending is not None else record.pending_state
            if not expected_state or _first(query, "state") != expected_state:
                raise AuthorizationFailed("OAuth state mismatch")
            if pending is not None:
                verifier = pending.code_verifier
                metadata = pending.metadata
            else:
                if not server_url:
                    raise AuthorizationFailed(
                        f"No authorization in progress for provider {provider_id}"
                    )
                verifier = record.pending_verifier
                metadata = await self.discover_metadata(server_url)

            if not verifier:
                raise AuthorizationFailed("Missing PKCE code verifier")
            if record.client_registration is None:
                raise AuthorizationFailed("Missing client registration")

            tokens = await self._token_request(
                metadata,
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self.redirect_url,
                    "code_verifier": verifier,
                },
                record.client_registration,
            )

            self._apply_tokens(record, tokens)
            record.pending_verifier = None
            record.pending_state = None
            await self._save_record(record)
            self._states[provider_id] = AuthState.AUTHORIZED
            logger.info(f"OAuth authorization completed for provider {provider_id}")
            return record
        except (AuthorizationFailed, TransportError) as e:
            logger.error(f"OAuth authorization failed for provider {provider_id}: {e}")
            self._states[provider_id] = AuthState.NO_CREDENTIALS
            raise
        finally:
            self._pending.pop(provider_id, None)
            self._in_flight.discard(provider_id)

    async def authorize(
        self, provider_id: str, server_url: str, launcher: AuthorizationLauncher
    ) -> CredentialRecord:
        """Run the full interactive flow through a host launcher.

        The launcher receives the authorization URL and returns the final
        redirect URL (directly or as an awaitable).
        """
        request = await self.begin_authorization(provider_id, server_url)
        try:
            callback_url = launcher(request.url)
            if inspect.isawaitable(callback_url):
                callback_url = await callback_url
        except BaseException:
            self.cancel_authorization(provider_id)
            raise
        return await self.complete_authorization(provider_id, callback_url)

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    async def _token_request(
        self,
        metadata: AuthServerMetadata,
        data: Dict[str, str],
        registration: ClientRegistration,
    ) -> Dict[str, Any]:
        form = dict(data)
        form["client_id"] = registration.client_id
        if registration.client_secret:
            form["client_secret"] = registration.client_secret

        try:
            response = await self.client.post(
                metadata.token_endpoint,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"Token request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Token request failed: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        error = payload.get("error", "") if isinstance(payload, dict) else ""
        if response.status_code >= 500 or response.status_code == 429:
            raise TransportError(
                f"Token endpoint returned {response.status_code} {error}".strip(),
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise AuthorizationFailed(
                f"Token endpoint returned {response.status_code} {error}".strip(),
                status_code=response.status_code,
                error=error or None,
            )
        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise AuthorizationFailed("Token response did not contain an access token")
        return payload

    def _apply_tokens(self, record: CredentialRecord, tokens: Dict[str, Any]):
        record.access_token = tokens["access_token"]
        record.token_type = tokens.get("token_type") or "Bearer"
        # Servers that do not rotate refresh tokens omit them from refresh replies.
        record.refresh_token = tokens.get("refresh_token") or record.refresh_token
        expires_in = tokens.get("expires_in")
        record.expires_at = self._clock() + float(expires_in) if expires_in else None
        record.scope = tokens.get("scope") or record.scope

    async def get_auth_header(self, provider_id: str) -> Dict[str, str]:
        """Bearer header from stored tokens, honoring the expiry margin."""
        record = await self.load_record(provider_id)
        if not record.access_token:
            raise AuthorizationRequired(f"No OAuth tokens for provider {provider_id}")
        if self._is_expired(record):
            raise AuthorizationRequired(f"OAuth token for provider {provider_id} has expired")
        return {"Authorization": f"Bearer {record.access_token}"}

    async def refresh(self, provider_id: str, server_url: str) -> CredentialRecord:
        """Use the refresh token.

        Only a rejected grant revokes the stored tokens. Server errors raise
        ``TransportError`` and leave the record as it was.
        """
        lock = self._refresh_locks.setdefault(provider_id, asyncio.Lock())
        async with lock:
            record = await self.load_record(provider_id)
            if not record.refresh_token:
                raise AuthorizationRequired(f"No refresh token for provider {provider_id}")
            if record.client_registration is None:
                raise AuthorizationRequired(
                    f"No client registration for provider {provider_id}"
                )

            previous_state = self._states.get(provider_id, AuthState.AUTHORIZED)
            self._states[provider_id] = AuthState.REFRESHING
            try:
                metadata = await self.discover_metadata(server_url)
                tokens = await self._token_request(
                    metadata,
                    {"grant_type": "refresh_token", "refresh_token": record.refresh_token},
                    record.client_registration,
                )
            except AuthorizationFailed as e:
                if not self._is_grant_rejection(e):
                    self._states[provider_id] = previous_state
                    logger.warning(f"Refresh failed for provider {provider_id}: {e}")
                    raise
                record.clear_tokens()
                await self._save_record(record)
                self._states[provider_id] = AuthState.REVOKED
                logger.warning(f"Refresh rejected for provider {provider_id}: {e}")
                raise AuthorizationRequired(
                    f"Refresh rejected for provider {provider_id}; authorize again"
                ) from e
            except BaseException:
                self._states[provider_id] = previous_state
                raise

            self._apply_tokens(record, tokens)
            await self._save_record(record)
            self._states[provider_id] = AuthState.AUTHORIZED
            logger.info(f"Refreshed OAuth token for provider {provider_id}")
            return record

    @staticmethod
    def _is_grant_rejection(error: AuthorizationFailed) -> bool:
        """Whether the token endpoint refused the refresh token itself."""
        if error.error in GRANT_REJECTION_ERRORS:
            return True
        return error.error is None and error.status_code in (400, 401)

    async def get_valid_auth_header(
        self, provider_id: str, server_url: str
    ) -> Dict[str, str]:
        """Auth header, refreshing first when the access token is missing or stale."""
        record = await self.load_record(provider_id)
        if record.access_token and not self._is_expired(record):
            return {"Authorization": f"Bearer {record.access_token}"}
        if record.refresh_token:
            await self.refresh(provider_id, server_url)
            return await self.get_auth_header(provider_id)
        raise AuthorizationRequired(f"Provider {provider_id} requires authorization")

    async def has_valid_tokens(self, provider_id: str) -> bool:
        record = await self.load_record(provider_id)
        return bool(record.access_token) and not self._is_expired(record)

    # ------------------------------------------------------------------
    # Invalidation and status
    # ------------------------------------------------------------------

    async def invalidate(
        self, provider_id: str, scope: Union[InvalidationScope, str] = InvalidationScope.ALL
    ):
        """Clear one slice of the stored credential state."""
        scope = InvalidationScope(scope)
        logger.info(f"Invalidating OAuth credentials ({scope.value}) for provider {provider_id}")

        if scope == InvalidationScope.ALL:
            await self.store.delete(self.storage_key(provider_id))
            self._pending.pop(provider_id, None)
            self._in_flight.discard(provider_id)
            self._states[provider_id] = AuthState.NO_CREDENTIALS
            return

        record = await self.load_record(provider_id)
        if scope == InvalidationScope.TOKENS:
            record.clear_tokens()
            if self._states.get(provider_id) != AuthState.AWAITING_USER_AUTHORIZATION:
                self._states[provider_id] = AuthState.NO_CREDENTIALS
        elif scope == InvalidationScope.CLIENT:
            record.client_registration = None
        elif scope == InvalidationScope.VERIFIER:
            record.pending_verifier = None
            record.pending_state = None
            if self._pending.pop(provider_id, None) is not None:
                self._in_flight.discard(provider_id)
                self._states[provider_id] = (
                    AuthState.AUTHORIZED if record.access_token else AuthState.NO_CREDENTIALS
                )
        await self._save_record(record)

    async def get_state(self, provider_id: str) -> AuthState:
        if provider_id in self._states:
            return self._states[provider_id]
        record = await self.load_record(provider_id)
        return AuthState.AUTHORIZED if record.access_token else AuthState.NO_CREDENTIALS

    async def get_status(self, provider_id: str) -> AuthStatus:
        record = await self.load_record(provider_id)
        registration = record.client_registration
        return AuthStatus(
            authenticated=bool(record.access_token),
            has_client_info=bool(registration and registration.client_id),
            state=await self.get_state(provider_id),
        )

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


class CredentialManagerAuth(httpx.Auth):
    """Attaches a fresh bearer header to every request of a provider session.

    A 401 triggers one refresh and a single retry; when no refresh is possible
    the 401 response is returned unchanged.
    """

    def __init__(self, manager: OAuthCredentialManager, provider_id: str, server_url: str):
        self.manager = manager
        self.provider_id = provider_id
        self.server_url = server_url

    def sync_auth_flow(self, request: httpx.Request):
        raise RuntimeError("CredentialManagerAuth can only be used with httpx.AsyncClient")

    async def async_auth_flow(self, request: httpx.Request):
        request.headers.update(
            await self.manager.get_valid_auth_header(self.provider_id, self.server_url)
        )
        response = yield request
        if response.status_code != 401:
            return

        logger.info(f"Provider {self.provider_id} answered 401; refreshing OAuth token")
        try:
            await self.manager.refresh(self.provider_id, self.server_url)
        except AuthorizationRequired as e:
            logger.warning(f"Cannot refresh OAuth token for {self.provider_id}: {e}")
            return
        request.headers.update(await self.manager.get_auth_header(self.provider_id))
        yield request
