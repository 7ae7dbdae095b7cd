"""
Unit tests for catalog_client module.
"""

import json
from datetime import date
from decimal import Decimal
import pytest
import httpx

from form_engine.attachment import LocalFile
from form_engine.catalog_client import (
    CatalogClient,
    EntityAdapter,
    error_detail,
    has_files,
    sanitize_for_json,
    split_multipart,
    unwrap
)
from form_engine.config_loader import get_default_config
from form_engine.exceptions import CatalogAPIError


class RecordingHandler:
    """MockTransport handler answering with a fixed response and keeping requests."""

    def __init__(self, status_code=200, body=None, content=None, error=None):
        self.status_code = status_code
        self.body = body
        self.content = content
        self.error = error
        self.requests = []

    def __call__(self, request):
        request.read()
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if self.content is not None:
            return httpx.Response(self.status_code, content=self.content)
        return httpx.Response(self.status_code, json=self.body)


def make_client(handler, token=None):
    return CatalogClient("https://catalog.example.com/api/", token=token,
                         transport=httpx.MockTransport(handler))


class TestPayloadHelpers:
    """Test class for payload encoding helpers."""

    def test_sanitize_for_json(self):
        value = {'startDate': date(2024, 5, 1), 'price': Decimal('9.5'), 'ratio': 242.98000000000002,
                 'tags': ('a', 'b')}

        assert sanitize_for_json(value) == {'startDate': '2024-05-01', 'price': 9.5, 'ratio': 242.98,
                                            'tags': ['a', 'b']}

    def test_has_files(self):
        assert has_files({'image': LocalFile("a.png", "image/png", b"x")})
        assert not has_files({'image': None, 'altText': 'Summer'})

    def test_split_multipart(self):
        file = LocalFile("a.png", "image/png", b"png-bytes")

        data, files = split_multipart({
            'image': file, 'altText': 'Summer', 'flag': None, 'isFeatured': True,
            'order': 2, 'placements': [{'page': 'HOME'}]
        })

        assert files == {'image': ("a.png", b"png-bytes", "image/png")}
        assert data == {'altText': 'Summer', 'flag': '', 'isFeatured': 'true', 'order': '2',
                        'placements': '[{"page": "HOME"}]'}

    def test_unwrap(self):
        assert unwrap({'data': {'id': 1}}) == {'id': 1}
        assert unwrap({'id': 1}) == {'id': 1}
        assert unwrap({'data': [1, 2]}) == {'data': [1, 2]}

    @pytest.mark.parametrize("body,expected", [
        ({'message': 'Title already exists'}, 'Title already exists'),
        ({'error': {'message': 'Invalid image'}}, 'Invalid image'),
        ({'error': 'Bad request'}, 'Bad request'),
        ({'detail': 'Not found'}, 'Not found'),
        ({'other': 1}, 'HTTP 422'),
    ])
    def test_error_detail(self, body, expected):
        assert error_detail(httpx.Response(422, json=body)) == expected

    def test_error_detail_without_json(self):
        assert error_detail(httpx.Response(502, content=b"<html>")) == "HTTP 502"


class TestCatalogClient:
    """Test class for the catalog HTTP client."""

    def test_from_config(self):
        config = get_default_config()
        config['api']['token'] = 'secret'

        client = CatalogClient.from_config(config)

        assert client.base_url == 'http://localhost:8000/api'
        assert client.headers() == {'Accept': 'application/json', 'Authorization': 'Bearer secret',
                                    'lang': 'en'}

    def test_headers_without_token(self):
        client = CatalogClient("https://catalog.example.com", lang=None)

        assert client.headers() == {'Accept': 'application/json'}

    def test_url(self):
        client = CatalogClient("https://catalog.example.com/api/")

        assert client.url("/brands") == "https://catalog.example.com/api/brands"

    @pytest.mark.asyncio
    async def test_fetch_options_sends_params_and_headers(self):
        handler = RecordingHandler(body={'data': [{'id': 1}]})
        client = make_client(handler, token='secret')

        body = await client.fetch_options('/brands', {'page': 2, 'search': 'nik'})

        assert body == {'data': [{'id': 1}]}
        request = handler.requests[0]
        assert request.method == 'GET'
        assert request.url.path == '/api/brands'
        assert request.url.params['page'] == '2'
        assert request.url.params['search'] == 'nik'
        assert request.headers['Authorization'] == 'Bearer secret'
        assert request.headers['lang'] == 'en'

    @pytest.mark.asyncio
    async def test_fetch_entity_unwraps(self):
        handler = RecordingHandler(body={'data': {'id': 7, 'altText': 'Summer'}})

        record = await make_client(handler).fetch_entity('banners', 7)

        assert record == {'id': 7, 'altText': 'Summer'}
        assert handler.requests[0].url.path == '/api/banners/7'

    @pytest.mark.asyncio
    async def test_fetch_entity_rejects_non_mapping(self):
        handler = RecordingHandler(body=[1, 2])

        with pytest.raises(CatalogAPIError, match="Unexpected response"):
            await make_client(handler).fetch_entity('banners', 7)

    @pytest.mark.asyncio
    async def test_create_sends_json(self):
        handler = RecordingHandler(status_code=201, body={'data': {'id': 9}})

        result = await make_client(handler).create('banners', {'altText': 'Summer', 'startDate': date(2024, 5, 1)})

        assert result == {'id': 9}
        request = handler.requests[0]
        assert request.method == 'POST'
        assert request.headers['content-type'] == 'application/json'
        assert json.loads(request.content) == {'altText': 'Summer', 'startDate': '2024-05-01'}

    @pytest.mark.asyncio
    async def test_update_with_file_sends_multipart(self):
        handler = RecordingHandler(body={'id': 7})
        file = LocalFile("winter.png", "image/png", b"png-bytes")

        await make_client(handler).update('banners', 7, {'image': file, 'altText': 'Winter'})

        request = handler.requests[0]
        assert request.method == 'PATCH'
        assert request.url.path == '/api/banners/7'
        assert request.headers['content-type'].startswith('multipart/form-data')
        assert b'name="altText"' in request.content
        assert b'filename="winter.png"' in request.content
        assert b'png-bytes' in request.content

    @pytest.mark.asyncio
    async def test_error_status_raises_server_message(self):
        handler = RecordingHandler(status_code=409, body={'message': 'Title already exists'})

        with pytest.raises(CatalogAPIError) as exc_info:
            await make_client(handler).create('brands', {'englishTitle': 'Nike'})

        assert exc_info.value.message == 'Title already exists'
        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_transport_error_wrapped(self):
        handler = RecordingHandler(error=httpx.ConnectError("connection refused"))

        with pytest.raises(CatalogAPIError, match="Could not reach the catalog service"):
            await make_client(handler).fetch_options('/brands', {})

    @pytest.mark.asyncio
    async def test_empty_body(self):
        handler = RecordingHandler(status_code=204, content=b"")

        assert await make_client(handler).update('banners', 7, {'order': 2}) is None

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        handler = RecordingHandler(content=b"not json")

        with pytest.raises(CatalogAPIError, match="invalid response"):
            await make_client(handler).fetch_options('/brands', {})


class TestEntityAdapter:
    """Test class for the resource bound adapter."""

    def test_bind_strips_slashes(self):
        adapter = CatalogClient("https://catalog.example.com").bind('/banners/')

        assert isinstance(adapter, EntityAdapter)
        assert adapter.resource == 'banners'

    def test_collaborators(self):
        adapter = CatalogClient("https://catalog.example.com").bind('banners')

        collaborators = adapter.collaborators()

        assert set(collaborators) == {'fetch_data', 'on_create', 'on_update'}

    @pytest.mark.asyncio
    async def test_adapter_routes_to_resource(self):
        handler = RecordingHandler(body={'data': {'id': 7}})
        adapter = make_client(handler).bind('banners')

        await adapter.fetch_data(7)
        await adapter.on_create({'altText': 'Summer'})
        await adapter.on_update(7, {'altText': 'Winter'})

        assert [(r.method, r.url.path) for r in handler.requests] == [
            ('GET', '/api/banners/7'),
            ('POST', '/api/banners'),
            ('PATCH', '/api/banners/7'),
        ]
