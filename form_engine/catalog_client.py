"""
HTTP adapter for the catalog API.

Supplies the collaborators a form session expects (entity loader, create and
update handlers, option fetcher) on top of httpx.
"""

from typing import Dict, Any, Optional, Tuple
from datetime import datetime, date
from decimal import Decimal
import json
import logging

import httpx

from .attachment import LocalFile
from .exceptions import CatalogAPIError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
CONNECT_TIMEOUT = 5.0


def sanitize_for_json(obj: Any) -> Any:
    """
    Recursively sanitize an object for JSON serialization.
    Converts date, datetime to ISO format strings and Decimal to float.
    """
    if isinstance(obj, dict):
        return {k: sanitize_for_json(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [sanitize_for_json(item) for item in obj]
    elif isinstance(obj, (datetime, date)):
        return obj.isoformat()
    elif isinstance(obj, Decimal):
        return float(obj)
    elif isinstance(obj, float):
        # 242.98000000000002 -> 242.98
        return round(obj, 10)
    return obj


def has_files(payload: Dict[str, Any]) -> bool:
    return any(isinstance(value, LocalFile) for value in payload.values())


def split_multipart(payload: Dict[str, Any]) -> Tuple[Dict[str, str], Dict[str, Tuple[str, bytes, str]]]:
    """
    Split a payload into multipart form fields and files.

    Removed attachments (None) are sent as empty strings; list and object
    values are JSON encoded.
    """
    data: Dict[str, str] = {}
    files: Dict[str, Tuple[str, bytes, str]] = {}
    for name, value in payload.items():
        if isinstance(value, LocalFile):
            files[name] = (value.name, value.data, value.content_type)
        elif value is None:
            data[name] = ""
        elif isinstance(value, bool):
            data[name] = "true" if value else "false"
        elif isinstance(value, (dict, list)):
            data[name] = json.dumps(sanitize_for_json(value), ensure_ascii=False)
        else:
            data[name] = str(sanitize_for_json(value))
    return data, files


def error_detail(response: httpx.Response) -> str:
    """Server supplied error message, or a generic one naming the status."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        error = body.get('error')
        if isinstance(error, dict):
            error = error.get('message')
        for candidate in (body.get('message'), error, body.get('detail')):
            if isinstance(candidate, str) and candidate:
                return candidate
    return f"HTTP {response.status_code}"


def unwrap(body: Any) -> Any:
    """Entity endpoints wrap the record in ``data``; accept both shapes."""
    if isinstance(body, dict) and 'data' in body and isinstance(body['data'], dict):
        return body['data']
    return body


class CatalogClient:
    """
    Async client for the catalog REST API.

    A fresh ``httpx.AsyncClient`` is opened per request so the client can be
    shared between event loops (each Streamlit session runs its own).
    """

    def __init__(self, base_url: str, timeout: float = DEFAULT_TIMEOUT, token: Optional[str] = None,
                 lang: Optional[str] = "en", transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = httpx.Timeout(timeout, connect=min(timeout, CONNECT_TIMEOUT))
        self.token = token
        self.lang = lang
        self.transport = transport

    @classmethod
    def from_config(cls, config: Dict[str, Any], transport: Optional[httpx.AsyncBaseTransport] = None) -> "CatalogClient":
        api = config.get('api', {})
        return cls(
            base_url=api['base_url'],
            timeout=float(api.get('timeout') or DEFAULT_TIMEOUT),
            token=api.get('token'),
            lang=api.get('lang'),
            transport=transport
        )

    def headers(self) -> Dict[str, str]:
        headers = {'Accept': 'application/json'}
        if self.token:
            headers['Authorization'] = f"Bearer {self.token}"
        if self.lang:
            headers['lang'] = self.lang
        return headers

    def url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                      payload: Optional[Dict[str, Any]] = None) -> Any:
        """
        Send one request and return the decoded JSON body.

        Raises:
            CatalogAPIError: On transport failures and error status codes
        """
        url = self.url(path)
        kwargs: Dict[str, Any] = {'params': params}
        if payload is not None:
            if has_files(payload):
                data, files = split_multipart(payload)
                kwargs.update(data=data, files=files)
            else:
                kwargs['json'] = sanitize_for_json(payload)

        logger.debug(f"{method} {url} params={params}")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, headers=self.headers(),
                                         transport=self.transport) as client:
                response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"{method} {url} failed: {e}")
            raise CatalogAPIError(f"Could not reach the catalog service: {e}", url=url) from e

        if response.status_code >= 400:
            message = error_detail(response)
            logger.warning(f"{method} {url} answered {response.status_code}: {message}")
            raise CatalogAPIError(message, status_code=response.status_code, url=url)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise CatalogAPIError("Catalog service returned an invalid response",
                                  status_code=response.status_code, url=url) from e

    async def fetch_entity(self, resource: str, entity_id: Any) -> Dict[str, Any]:
        body = unwrap(await self.request('GET', f"{resource}/{entity_id}"))
        if not isinstance(body, dict):
            raise CatalogAPIError(f"Unexpected response for {resource} {entity_id}", url=self.url(resource))
        return body

    async def fetch_options(self, endpoint: str, params: Dict[str, Any]) -> Any:
        return await self.request('GET', endpoint, params=params)

    async def create(self, resource: str, payload: Dict[str, Any]) -> Any:
        logger.info(f"Creating {resource}")
        return unwrap(await self.request('POST', resource, payload=payload))

    async def update(self, resource: str, entity_id: Any, payload: Dict[str, Any]) -> Any:
        logger.info(f"Updating {resource} {entity_id} ({len(payload)} fields)")
        return unwrap(await self.request('PATCH', f"{resource}/{entity_id}", payload=payload))

    def bind(self, resource: str) -> "EntityAdapter":
        return EntityAdapter(self, resource)


class EntityAdapter:
    """Client bound to one resource, shaped like the form session collaborators."""

    def __init__(self, client: CatalogClient, resource: str):
        self.client = client
        self.resource = resource.strip('/')

    async def fetch_data(self, entity_id: Any) -> Dict[str, Any]:
        return await self.client.fetch_entity(self.resource, entity_id)

    async def on_create(self, payload: Dict[str, Any]) -> Any:
        return await self.client.create(self.resource, payload)

    async def on_update(self, entity_id: Any, payload: Dict[str, Any]) -> Any:
        return await self.client.update(self.resource, entity_id, payload)

    def collaborators(self) -> Dict[str, Any]:
        return {
            'fetch_data': self.fetch_data,
            'on_create': self.on_create,
            'on_update': self.on_update,
        }
