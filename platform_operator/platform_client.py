"""Client for the remote system-inventory API.

Every failure is classified here into the operator's error taxonomy
(NotFound, Conflict, Transient, Fatal). Raw httpx exceptions never leave this
module. The client is safe to share between concurrently running reconcile
attempts: the connection pool is shared and token refresh is serialized.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

import httpx
from pydantic import ValidationError

from platform_operator.config import settings
from platform_operator.errors import (
    ConflictError,
    FatalError,
    NotFoundError,
    ReconcileError,
    TimeoutError_,
    TransientError,
)
from platform_operator.metrics import platform_reauth_total, platform_requests_total
from platform_operator.schemas import PlatformEntity, StrategyResult, StrategyStep
from platform_operator.state import EntityState, Kind

logger = logging.getLogger(__name__)

# REST collection per kind
COLLECTIONS: dict[Kind, str] = {
    Kind.SYSTEM: "isystems",
    Kind.ADDRESS_POOL: "addrpools",
    Kind.PLATFORM_NETWORK: "networks",
    Kind.DATA_NETWORK: "datanetworks",
    Kind.HOST: "ihosts",
    Kind.HOST_INTERFACE: "iinterfaces",
    Kind.STORAGE_BACKEND: "storage_backend",
    Kind.CERTIFICATE: "certificate",
    Kind.PTP_INSTANCE: "ptp_instances",
    Kind.PTP_INTERFACE: "ptp_interfaces",
}

# Retried inside a single call before being surfaced as Transient
TRANSIENT_HTTP_CODES = {408, 429, 502, 503, 504}

# Attributes the API adds that are never part of a desired representation
SERVER_FIELDS = {"uuid", "id", "state", "created_at", "updated_at", "links"}


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(body, dict):
        for field in ("error_message", "faultstring", "detail", "message"):
            if body.get(field):
                return str(body[field])[:500]
    return str(body)[:500]


def classify_status(response: httpx.Response, operation: str) -> ReconcileError:
    """Map a non-success HTTP response onto the error taxonomy."""
    code = response.status_code
    detail = _error_detail(response)
    message = f"{operation} failed with HTTP {code}: {detail}"
    if code == 404:
        return NotFoundError(message, reason="NotFound", status_code=code)
    if code in (409, 412):
        return ConflictError(message, reason="Conflict", status_code=code)
    if code in TRANSIENT_HTTP_CODES or code >= 500:
        return TransientError(message, reason="RemoteUnavailable", status_code=code)
    return FatalError(message, reason="Rejected", status_code=code)


def classify_transport(exc: httpx.HTTPError, operation: str) -> ReconcileError:
    """Map a transport-level httpx failure onto the error taxonomy."""
    if isinstance(exc, httpx.TimeoutException):
        return TimeoutError_(f"{operation} timed out: {exc}", reason="Timeout")
    return TransientError(f"{operation} failed: {exc}", reason="NetworkError")


async def with_retry(
    func: Callable[..., Awaitable[Any]],
    *args,
    max_retries: int | None = None,
    operation: str = "platform request",
    **kwargs,
) -> Any:
    """Execute an async request function with exponential backoff.

    Retries on connection errors, timeouts and transient status codes
    (408, 429, 502, 503, 504). Everything else is classified on first
    failure. 401 is passed through untouched so the caller can
    re-authenticate.
    """
    if max_retries is None:
        max_retries = settings.platform_max_retries

    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except httpx.HTTPStatusError as e:
            code = e.response.status_code
            if code == 401:
                raise
            if code in TRANSIENT_HTTP_CODES and attempt < max_retries:
                delay = min(
                    settings.platform_retry_backoff_base * (2 ** attempt),
                    settings.platform_retry_backoff_max,
                )
                logger.warning(
                    f"{operation} returned {code} (attempt {attempt + 1}/{max_retries + 1}), "
                    f"retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
                continue
            raise classify_status(e.response, operation) from None
        except httpx.HTTPError as e:
            if attempt < max_retries:
                delay = min(
                    settings.platform_retry_backoff_base * (2 ** attempt),
                    settings.platform_retry_backoff_max,
                )
                logger.warning(
                    f"{operation} failed (attempt {attempt + 1}/{max_retries + 1}), "
                    f"retrying in {delay:.1f}s: {e}"
                )
                await asyncio.sleep(delay)
                continue
            logger.error(f"{operation} failed after {max_retries + 1} attempts: {e}")
            raise classify_transport(e, operation) from None

    raise TransientError(f"{operation} exhausted retries")


def entity_from_payload(kind: Kind, payload: dict) -> PlatformEntity:
    if not isinstance(payload, dict):
        raise FatalError(f"{kind.value} payload is not an object: {payload!r}", reason="BadResponse")
    state = payload.get("state") or EntityState.AVAILABLE.value
    try:
        entity_state = EntityState(state)
    except ValueError:
        entity_state = EntityState.APPLYING
    return PlatformEntity(
        kind=kind,
        platform_id=str(payload.get("uuid") or payload.get("id")),
        attributes={k: v for k, v in payload.items() if k not in SERVER_FIELDS},
        state=entity_state,
    )


def _strategy_result(payload: Any, operation: str) -> StrategyResult:
    try:
        return StrategyResult.model_validate(payload)
    except ValidationError as e:
        raise FatalError(
            f"{operation}: unexpected response ({e.error_count()} error(s))", reason="BadResponse"
        ) from None


class PlatformClient:
    """Async client for the system-inventory REST API.

    Usage:
        client = PlatformClient()
        entity = await client.find(Kind.HOST, {"hostname": "controller-0"})
        ...
        await client.aclose()
    """

    def __init__(
        self,
        base_url: str | None = None,
        auth_url: str | None = None,
        *,
        username: str | None = None,
        password: str | None = None,
        project: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.platform_url).rstrip("/")
        self.auth_url = (auth_url or settings.auth_url).rstrip("/")
        self.username = username or settings.platform_username
        self.password = password if password is not None else settings.platform_password
        self.project = project or settings.platform_project
        self.timeout = timeout or settings.platform_timeout
        self.max_retries = max_retries
        self._transport = transport
        self._http: httpx.AsyncClient | None = None
        self._token: str | None = None
        self._token_lock = asyncio.Lock()

    # --- session handling ---

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                limits=httpx.Limits(max_connections=50, max_keepalive_connections=10),
                timeout=httpx.Timeout(self.timeout),
                verify=settings.platform_verify_tls,
                transport=self._transport,
            )
        return self._http

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def authenticate(self) -> str:
        """Obtain a fresh token and cache it for subsequent calls."""
        body = {
            "auth": {
                "identity": {
                    "methods": ["password"],
                    "password": {
                        "user": {
                            "name": self.username,
                            "domain": {"id": "default"},
                            "password": self.password,
                        }
                    },
                },
                "scope": {"project": {"name": self.project, "domain": {"id": "default"}}},
            }
        }

        async def _do_auth() -> str:
            response = await self._client().post(f"{self.auth_url}/auth/tokens", json=body)
            response.raise_for_status()
            token = response.headers.get("X-Subject-Token")
            if not token:
                raise FatalError("Authentication response carried no token", reason="AuthFailed")
            return token

        try:
            token = await with_retry(_do_auth, max_retries=self.max_retries, operation="authenticate")
        except httpx.HTTPStatusError as e:
            # 401 from the identity service means bad credentials
            raise FatalError(
                f"Authentication rejected: HTTP {e.response.status_code}", reason="AuthFailed"
            ) from None
        self._token = token
        logger.info("Authenticated with platform identity service")
        return token

    async def _ensure_token(self) -> str:
        async with self._token_lock:
            if self._token is None:
                await self.authenticate()
            return self._token

    async def _reauthenticate(self, stale_token: str) -> str:
        async with self._token_lock:
            # Another attempt may already have refreshed the token
            if self._token == stale_token or self._token is None:
                platform_reauth_total.inc()
                logger.info("Platform token expired, re-authenticating")
                await self.authenticate()
            return self._token

    # --- request core ---

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        json_body: Any = None,
        params: dict | None = None,
        idempotency_key: str | None = None,
    ) -> dict:
        token = await self._ensure_token()
        url = f"{self.base_url}{path}"

        async def _do_request(current_token: str) -> dict:
            headers = {"X-Auth-Token": current_token, "Accept": "application/json"}
            if idempotency_key:
                headers["X-Request-Id"] = idempotency_key
            response = await self._client().request(
                method, url, json=json_body, params=params, headers=headers
            )
            response.raise_for_status()
            if response.status_code == 204 or not response.content:
                return {}
            try:
                return response.json()
            except ValueError:
                raise TransientError(
                    f"{operation}: response body is not JSON", reason="BadResponse"
                ) from None

        outcome = "success"
        started = time.monotonic()
        try:
            try:
                return await with_retry(
                    _do_request, token, max_retries=self.max_retries, operation=operation
                )
            except httpx.HTTPStatusError:
                # 401: token expired mid-call, retry once with a fresh one
                token = await self._reauthenticate(token)
                try:
                    return await with_retry(
                        _do_request, token, max_retries=self.max_retries, operation=operation
                    )
                except httpx.HTTPStatusError as e2:
                    raise classify_status(e2.response, operation) from None
        except ReconcileError as e:
            outcome = e.error_class.value
            raise
        finally:
            platform_requests_total.labels(operation=operation.split(" ")[0], outcome=outcome).inc()
            logger.debug(f"{operation} finished in {time.monotonic() - started:.2f}s ({outcome})")

    # --- CRUD ---

    async def get(self, kind: Kind, platform_id: str) -> PlatformEntity:
        collection = COLLECTIONS[kind]
        payload = await self._request(
            "GET", f"/v1/{collection}/{platform_id}", operation=f"get {kind.value}"
        )
        return entity_from_payload(kind, payload)

    async def list(self, kind: Kind, params: dict | None = None) -> list[PlatformEntity]:
        collection = COLLECTIONS[kind]
        payload = await self._request(
            "GET", f"/v1/{collection}", operation=f"list {kind.value}", params=params
        )
        items = payload.get(collection, []) if isinstance(payload, dict) else payload
        return [entity_from_payload(kind, item) for item in items]

    async def find(self, kind: Kind, lookup: dict[str, Any]) -> PlatformEntity | None:
        """Locate the entity matching a kind-specific lookup key, if any."""
        for entity in await self.list(kind, params=lookup):
            if all(entity.attributes.get(k) == v for k, v in lookup.items()):
                return entity
        return None

    async def create(
        self, kind: Kind, attributes: dict[str, Any], idempotency_key: str
    ) -> PlatformEntity:
        collection = COLLECTIONS[kind]
        payload = await self._request(
            "POST",
            f"/v1/{collection}",
            operation=f"create {kind.value}",
            json_body=attributes,
            idempotency_key=idempotency_key,
        )
        return entity_from_payload(kind, payload)

    async def update(
        self,
        kind: Kind,
        platform_id: str,
        attributes: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> PlatformEntity:
        collection = COLLECTIONS[kind]
        patch = [
            {"op": "replace", "path": f"/{name}", "value": value}
            for name, value in sorted(attributes.items())
        ]
        payload = await self._request(
            "PATCH",
            f"/v1/{collection}/{platform_id}",
            operation=f"update {kind.value}",
            json_body=patch,
            idempotency_key=idempotency_key,
        )
        return entity_from_payload(kind, payload)

    async def delete(self, kind: Kind, platform_id: str) -> None:
        collection = COLLECTIONS[kind]
        await self._request(
            "DELETE", f"/v1/{collection}/{platform_id}", operation=f"delete {kind.value}"
        )

    # --- coordinated multi-entity changes ---

    async def apply_strategy(self, steps: list[StrategyStep], idempotency_key: str) -> StrategyResult:
        """Submit an ordered batch that the remote side applies as one transaction."""
        payload = await self._request(
            "POST",
            "/v1/strategies",
            operation="apply strategy",
            json_body={"steps": [step.model_dump(mode="json") for step in steps]},
            idempotency_key=idempotency_key,
        )
        return _strategy_result(payload, "apply strategy")

    async def get_strategy(self, strategy_id: str) -> StrategyResult:
        payload = await self._request(
            "GET", f"/v1/strategies/{strategy_id}", operation="get strategy"
        )
        return _strategy_result(payload, "get strategy")
