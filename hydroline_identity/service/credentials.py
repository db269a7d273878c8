from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

import httpx

from hydroline_identity.logging import get_logger
from hydroline_identity.service.errors import BusinessRuleError, ServiceUnavailableError

logger = get_logger(__name__)

# business codes carried in ValidationError.detail["code"]
AUTHME_ACCOUNT_NOT_FOUND = "AUTHME_ACCOUNT_NOT_FOUND"
AUTHME_PASSWORD_MISMATCH = "AUTHME_PASSWORD_MISMATCH"
AUTHME_NOT_BOUND = "AUTHME_NOT_BOUND"


@dataclass(frozen=True)
class VerifiedAccount:
    username: str
    realname: Optional[str] = None
    external_uuid: Optional[str] = None


class BadCredentials(BusinessRuleError):
    """The credential store explicitly rejected the identifier or password.

    Never retried and never cached.
    """


class CredentialStoreUnavailable(ServiceUnavailableError):
    """The credential store could not answer (DNS, connect, timeout, 5xx)."""

    def __init__(self, stage: str, message: str = "credential store unavailable") -> None:
        super().__init__(message, detail={"stage": stage})
        self.stage = stage


class CredentialStoreClient:
    """HTTP client for the external account database.

    ``POST {base}/verify`` checks a password; ``GET {base}/accounts/{id}``
    looks an account up without one (admin bindings).
    """

    def __init__(
        self,
        base_url: Optional[str],
        *,
        api_token: Optional[str] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.api_token = api_token
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url)

    def _client(self) -> httpx.AsyncClient:
        headers = {"Accept": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 3.0)),
            headers=headers,
            transport=self._transport,
        )

    async def verify_credentials(self, identifier: str, password: str) -> VerifiedAccount:
        """Check ``identifier``/``password``.

        Raises:
            BadCredentials: unknown account or wrong password.
            CredentialStoreUnavailable: the store did not give an answer.
        """
        response = await self._request("POST", "/verify", json={"identifier": identifier, "password": password})
        if response.status_code in (401, 403):
            logger.info("credential_store_password_mismatch", identifier=identifier)
            raise BadCredentials("incorrect password", AUTHME_PASSWORD_MISMATCH)
        return self._parse_account(response, identifier)

    async def lookup_account(self, identifier: str) -> VerifiedAccount:
        response = await self._request("GET", f"/accounts/{quote(identifier, safe='')}")
        return self._parse_account(response, identifier)

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        if not self.is_configured:
            logger.error("credential_store_not_configured")
            raise CredentialStoreUnavailable("CONFIG", "credential store is not configured")
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            logger.error("credential_store_timeout", path=path, error=str(exc))
            raise CredentialStoreUnavailable("TIMEOUT") from exc
        except httpx.ConnectError as exc:
            # name resolution failures surface as ConnectError too
            stage = "DNS" if "name" in str(exc).lower() and "resol" in str(exc).lower() else "CONNECT"
            logger.error("credential_store_connect_error", path=path, stage=stage, error=str(exc))
            raise CredentialStoreUnavailable(stage) from exc
        except httpx.HTTPError as exc:
            logger.error(
                "credential_store_transport_error",
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise CredentialStoreUnavailable("QUERY") from exc
        if response.status_code >= 500:
            logger.error(
                "credential_store_server_error", path=path, status_code=response.status_code
            )
            raise CredentialStoreUnavailable("QUERY")
        return response

    @staticmethod
    def _parse_account(response: httpx.Response, identifier: str) -> VerifiedAccount:
        if response.status_code == 404:
            raise BadCredentials("account not found", AUTHME_ACCOUNT_NOT_FOUND)
        if response.status_code >= 400:
            logger.warning(
                "credential_store_rejected",
                identifier=identifier,
                status_code=response.status_code,
            )
            raise BadCredentials("credentials rejected", AUTHME_PASSWORD_MISMATCH)
        try:
            data = response.json()
        except ValueError as exc:
            raise CredentialStoreUnavailable("QUERY", "credential store returned invalid JSON") from exc
        username = data.get("username") if isinstance(data, dict) else None
        if not username:
            raise CredentialStoreUnavailable("QUERY", "credential store returned no username")
        return VerifiedAccount(
            username=username,
            realname=data.get("realname") or data.get("displayName"),
            external_uuid=data.get("uuid") or data.get("externalUuid"),
        )
