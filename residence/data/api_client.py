"""
Async client for the building management REST API.

Wraps httpx with bearer authentication, maps transport and HTTP failures onto
the application's exception hierarchy and understands the collection envelope
used by paginated endpoints.
"""

from typing import Any, Dict, List, Optional, Sequence

import httpx
import pydantic
import structlog
from httpx import HTTPStatusError, TransportError
from pydantic_core import to_jsonable_python

from residence.core.config import ApiConfig
from residence.core.exceptions import NetworkError, ServerError
from residence.core.models import Attachment, CollectionPage, Resource, Session
from residence.utils.reliability import with_retry

logger = structlog.get_logger(__name__)


def _form_value(value: Any) -> str:
    """Render a payload value the way HTML form fields carry it."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class ApiClient:
    """
    Authenticated API client shared by the views of one session.
    """

    def __init__(
        self,
        config: ApiConfig,
        session: Session,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.session = session

        self.client = httpx.AsyncClient(
            base_url=config.base_url,
            timeout=httpx.Timeout(config.request_timeout),
            headers=self._get_headers(),
            follow_redirects=True,
            transport=transport,
        )

        # Only idempotent reads are ever retried
        self._get_json = with_retry(max_attempts=config.retry_attempts)(self._get_once)

        logger.debug(
            "API client initialized",
            base_url=config.base_url,
            user_id=session.user_id,
            role=session.role.value,
            retry_attempts=config.retry_attempts,
        )

    def _get_headers(self) -> Dict[str, str]:
        return {**self.session.auth_header, "Accept": "application/json"}

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _make_request(
        self,
        method: str,
        path: str,
        json_data: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, str]] = None,
        files: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Make an authenticated request to the API.

        Args:
            method: HTTP method
            path: API path relative to the base URL, or an absolute cursor URL
            json_data: JSON payload
            params: Query parameters
            data: Form fields
            files: Multipart file parts

        Returns:
            Decoded JSON body, or None for empty responses

        Raises:
            NetworkError: No response was received
            ServerError: The API answered with a non-2xx status
        """
        logger.debug("API request", method=method, path=path, has_body=bool(json_data or data))

        try:
            response = await self.client.request(
                method, path, json=json_data, params=params, data=data, files=files
            )
            response.raise_for_status()

        except HTTPStatusError as e:
            status_code = e.response.status_code
            logger.error(
                "API HTTP error",
                method=method,
                path=path,
                status_code=status_code,
                response_text=e.response.text[:500],
            )
            raise ServerError(
                f"{method} {path} failed with status {status_code}",
                status_code=status_code,
                details={"path": path, "body": e.response.text[:500]},
            ) from e

        except TransportError as e:
            logger.error("API unreachable", method=method, path=path, error=str(e))
            raise NetworkError(
                f"{method} {path} got no response: {e}", details={"path": path}
            ) from e

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            logger.error("API returned invalid JSON", method=method, path=path, body=response.text[:200])
            raise ServerError(
                f"{method} {path} returned a body that is not JSON",
                status_code=response.status_code,
                details={"path": path, "body": response.text[:500]},
            ) from e

    async def _get_once(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._make_request("GET", path, params=params)

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._get_json(path, params=params)

    async def fetch_collection(
        self, path: str, params: Optional[Dict[str, Any]] = None
    ) -> CollectionPage:
        """Fetch one response of a collection endpoint as a CollectionPage."""
        payload = await self.get(path, params=params)
        try:
            return CollectionPage.from_payload(payload)
        except (TypeError, pydantic.ValidationError) as e:
            logger.error("Malformed collection", path=path, error=str(e))
            raise ServerError(
                f"GET {path} returned a malformed collection", details={"path": path}
            ) from e

    async def fetch_all(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Resource]:
        """Materialize a whole collection, following ``next`` cursors to completion."""
        page = await self.fetch_collection(path, params=params)
        records = list(page.results)
        seen = {path}

        while page.next and page.next not in seen:
            seen.add(page.next)
            page = await self.fetch_collection(page.next)
            records.extend(page.results)

        logger.debug("Collection materialized", path=path, records=len(records), requests=len(seen))
        return records

    async def send(
        self,
        method: str,
        path: str,
        payload: Optional[Resource] = None,
        attachments: Sequence[Attachment] = (),
        as_form: bool = False,
    ) -> Any:
        """Issue a write call with a JSON body, or form data when files are attached."""
        if attachments or as_form:
            data = {key: _form_value(value) for key, value in (payload or {}).items()}
            files = {
                a.field: (a.filename, a.content, a.content_type) for a in attachments
            } or None
            return await self._make_request(method, path, data=data, files=files)
        json_data = to_jsonable_python(payload) if payload is not None else None
        return await self._make_request(method, path, json_data=json_data)

    async def post(self, path: str, payload: Optional[Resource] = None, **kwargs) -> Any:
        return await self.send("POST", path, payload, **kwargs)

    async def patch(self, path: str, payload: Optional[Resource] = None, **kwargs) -> Any:
        return await self.send("PATCH", path, payload, **kwargs)

    async def put(self, path: str, payload: Optional[Resource] = None, **kwargs) -> Any:
        return await self.send("PUT", path, payload, **kwargs)

    async def delete(self, path: str) -> Any:
        return await self._make_request("DELETE", path)
