"""
Remote store clients.

The remote store is an authenticated row store keyed by
(principal, entity type, entity id). A client only ever reads and writes
rows of the principal it authenticated as.
"""
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import requests

from matchstore.config import StoreConfig
from matchstore.errors import AuthExpired, PermanentError, TransientError
from matchstore.models import RemoteRecord, SessionResponse

logger = logging.getLogger("matchstore.remote")


class RemoteStore(ABC):
    """Interface the sync engine talks to."""

    @property
    @abstractmethod
    def principal_id(self) -> Optional[str]:
        """Principal the client is authenticated as (None if signed out)."""

    @abstractmethod
    async def fetch(self, entity_type: str, entity_id: str) -> Optional[RemoteRecord]:
        """Return the stored record, or None if it does not exist."""

    @abstractmethod
    async def upsert(self, entity_type: str, entity_id: str, data: Any, updated_at: int) -> RemoteRecord:
        """Create or replace a record."""

    @abstractmethod
    async def delete(self, entity_type: str, entity_id: str):
        """Delete a record. Deleting a missing record is not an error."""


def _categorize_http_error(e: requests.exceptions.HTTPError):
    status_code = e.response.status_code if e.response is not None else None

    if status_code is None:
        return TransientError(f"HTTP error: {e}")
    if status_code in (401, 403):
        return AuthExpired(f"Not authorized ({status_code}): {e}")
    if status_code >= 500:
        return TransientError(f"Server error {status_code}: {e}")
    if status_code == 408:
        return TransientError(f"Request timeout {status_code}: {e}")
    if status_code == 429:
        return TransientError(f"Rate limited {status_code}: {e}")
    if status_code >= 400:
        return PermanentError(f"Client error {status_code}: {e}")
    return TransientError(f"HTTP error {status_code}: {e}")


class HttpRemoteStore(RemoteStore):
    """
    Remote store client over HTTP using a bearer token.

    Requests run in a worker thread so the event loop is never blocked.
    """

    def __init__(self, base_url: str, access_token: str, principal_id: str, timeout: Optional[float] = None):
        """
        Args:
            base_url: Remote store URL (e.g., "http://localhost:8001")
            access_token: Bearer token from the session endpoint
            principal_id: Principal the token was issued for
            timeout: Per-request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self._principal_id = principal_id
        self.timeout = timeout or StoreConfig.REQUEST_TIMEOUT
        logger.info(f"Remote store URL: {self.base_url}")

    @property
    def principal_id(self) -> Optional[str]:
        return self._principal_id

    def _url(self, entity_type: str, entity_id: str) -> str:
        return f"{self.base_url}/v1/records/{entity_type}/{entity_id}"

    def _request(self, method: str, url: str, allow_404: bool = False, **kwargs):
        """
        Perform one HTTP request with error categorization.

        Raises:
            AuthExpired: 401/403 (session missing, expired or for another principal)
            TransientError: Network issues, timeouts, 5xx/408/429, bad JSON
            PermanentError: Other 4xx errors
        """
        headers = {"Authorization": f"Bearer {self.access_token}"}
        logger.debug(f"{method} {url}")
        try:
            response = requests.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
            if allow_404 and response.status_code == 404:
                return None
            response.raise_for_status()
            return response.json()

        except requests.exceptions.Timeout as e:
            raise TransientError(f"Request timeout: {e}")

        except requests.exceptions.ConnectionError as e:
            raise TransientError(f"Connection error: {e}")

        except requests.exceptions.HTTPError as e:
            raise _categorize_http_error(e)

        except requests.exceptions.RequestException as e:
            raise TransientError(f"Request failed: {e}")

        except json.JSONDecodeError as e:
            raise TransientError(f"Invalid JSON response: {e}")

    async def fetch(self, entity_type: str, entity_id: str) -> Optional[RemoteRecord]:
        data = await asyncio.to_thread(self._request, "GET", self._url(entity_type, entity_id), True)
        return RemoteRecord.model_validate(data) if data is not None else None

    async def upsert(self, entity_type: str, entity_id: str, data: Any, updated_at: int) -> RemoteRecord:
        body = {"data": data, "updatedAt": updated_at}
        result = await asyncio.to_thread(
            self._request, "PUT", self._url(entity_type, entity_id), False, json=body
        )
        return RemoteRecord.model_validate(result)

    async def delete(self, entity_type: str, entity_id: str):
        await asyncio.to_thread(self._request, "DELETE", self._url(entity_type, entity_id), True)


def create_session(base_url: str, principal_id: str, timeout: Optional[float] = None) -> HttpRemoteStore:
    """
    Obtain a bearer token from the remote store and return a client for it.

    Development helper for the bundled simulator; production deployments
    hand in a token from their own auth flow.
    """
    base_url = base_url.rstrip("/")
    timeout = timeout or StoreConfig.REQUEST_TIMEOUT
    try:
        response = requests.post(f"{base_url}/v1/sessions", json={"principalId": principal_id}, timeout=timeout)
        response.raise_for_status()
        session = SessionResponse.model_validate(response.json())
    except requests.exceptions.HTTPError as e:
        raise _categorize_http_error(e)
    except requests.exceptions.RequestException as e:
        raise TransientError(f"Could not create session: {e}")
    logger.info(f"Session created for {session.principal_id}")
    return HttpRemoteStore(base_url, session.access_token, session.principal_id, timeout=timeout)
