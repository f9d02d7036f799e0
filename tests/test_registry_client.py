"""Tests for the npm registry client over a mocked transport."""

import json

import httpx
import pytest

from scriptwatch import __version__
from scriptwatch.adapters.base import NotFoundError, ProtocolError, TransportError
from scriptwatch.adapters.npm import NpmRegistryClient

from conftest import mock_http


def json_response(data, status_code=200):
    return httpx.Response(status_code, content=json.dumps(data).encode())


@pytest.mark.asyncio
async def test_get_current_cursor():
    seen = []

    def handler(request):
        seen.append(request)
        return json_response({"db_name": "registry", "update_seq": "1234-abc"})

    async with mock_http(handler) as http:
        client = NpmRegistryClient(client=http)
        assert await client.get_current_cursor() == "1234-abc"

    assert str(seen[0].url) == NpmRegistryClient.REPLICATE_DB_URL
    assert seen[0].headers["user-agent"] == f"scriptwatch/{__version__}"


@pytest.mark.asyncio
async def test_get_current_cursor_missing_update_seq():
    async with mock_http(lambda r: json_response({"db_name": "registry"})) as http:
        with pytest.raises(ProtocolError):
            await NpmRegistryClient(client=http).get_current_cursor()


@pytest.mark.asyncio
async def test_get_change_batch():
    seen = []

    def handler(request):
        seen.append(request)
        return json_response(
            {
                "results": [
                    {"seq": 11, "id": "left-pad", "changes": [{"rev": "1-a"}]},
                    {"seq": 12, "id": "_design/app"},
                    {"seq": 13},
                    {"seq": 14, "id": "@scope/pkg"},
                ],
                "last_seq": 14,
            }
        )

    async with mock_http(handler) as http:
        batch = await NpmRegistryClient(client=http).get_change_batch(10, 200)

    assert [row.package_name for row in batch.rows] == ["left-pad", "_design/app", "@scope/pkg"]
    assert batch.rows[1].is_design_document
    assert batch.next_cursor == 14
    assert seen[0].url.params["since"] == "10"
    assert seen[0].url.params["limit"] == "200"


@pytest.mark.asyncio
async def test_get_change_batch_clamps_limit():
    seen = []

    def handler(request):
        seen.append(request)
        return json_response({"results": [], "last_seq": "5"})

    async with mock_http(handler) as http:
        client = NpmRegistryClient(client=http)
        await client.get_change_batch("5", 100_000)
        await client.get_change_batch("5", 0)

    assert seen[0].url.params["limit"] == "5000"
    assert seen[1].url.params["limit"] == "1"


@pytest.mark.asyncio
async def test_get_change_batch_empty_is_valid():
    async with mock_http(lambda r: json_response({"results": [], "last_seq": "77"})) as http:
        batch = await NpmRegistryClient(client=http).get_change_batch("70", 10)

    assert batch.rows == []
    assert batch.next_cursor == "77"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [{"last_seq": 3}, {"results": [], "pending": 0}, {"results": "nope", "last_seq": 3}, ["not", "a", "dict"]],
)
async def test_get_change_batch_bad_shape(body):
    async with mock_http(lambda r: json_response(body)) as http:
        with pytest.raises(ProtocolError):
            await NpmRegistryClient(client=http).get_change_batch(1, 10)


@pytest.mark.asyncio
async def test_change_feed_404_is_transport_error():
    async with mock_http(lambda r: httpx.Response(404, text="not here")) as http:
        with pytest.raises(TransportError) as exc_info:
            await NpmRegistryClient(client=http).get_change_batch(1, 10)

    assert exc_info.value.status_code == 404
    assert exc_info.value.retryable


@pytest.mark.asyncio
async def test_get_packument_scoped_name_and_accept():
    seen = []

    def handler(request):
        seen.append(request)
        return json_response(
            {
                "name": "@babel/core",
                "dist-tags": {"latest": "7.0.0"},
                "versions": {"7.0.0": {"version": "7.0.0", "scripts": {"test": "jest"}}},
                "modified": "2024-01-01T00:00:00.000Z",
            }
        )

    async with mock_http(handler) as http:
        packument = await NpmRegistryClient(client=http).get_packument("@babel/core")

    assert seen[0].url.raw_path == b"/@babel%2Fcore"
    assert seen[0].headers["accept"] == NpmRegistryClient.ABBREVIATED_ACCEPT
    assert packument.name == "@babel/core"
    assert packument.latest_tag == "7.0.0"
    assert packument.versions["7.0.0"].scripts == {"test": "jest"}


@pytest.mark.asyncio
async def test_get_packument_full_metadata():
    seen = []

    def handler(request):
        seen.append(request)
        return json_response({"versions": {}})

    async with mock_http(handler) as http:
        packument = await NpmRegistryClient(client=http, full_metadata=True).get_packument("x")

    assert seen[0].headers["accept"] == NpmRegistryClient.FULL_ACCEPT
    # Missing name is filled from the request
    assert packument.name == "x"


@pytest.mark.asyncio
async def test_get_packument_not_found():
    async with mock_http(lambda r: httpx.Response(404, json={"error": "Not found"})) as http:
        with pytest.raises(NotFoundError) as exc_info:
            await NpmRegistryClient(client=http).get_packument("does-not-exist")

    assert exc_info.value.name == "does-not-exist"
    assert not exc_info.value.retryable


@pytest.mark.asyncio
async def test_server_error_is_retryable_transport_error():
    async with mock_http(lambda r: httpx.Response(503, text="busy")) as http:
        with pytest.raises(TransportError) as exc_info:
            await NpmRegistryClient(client=http).get_packument("pkg")

    assert exc_info.value.status_code == 503
    assert exc_info.value.retryable


@pytest.mark.asyncio
async def test_timeout_is_transport_error():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    async with mock_http(handler) as http:
        with pytest.raises(TransportError, match="timeout"):
            await NpmRegistryClient(client=http).get_packument("pkg")


@pytest.mark.asyncio
async def test_connection_error_is_transport_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    async with mock_http(handler) as http:
        with pytest.raises(TransportError):
            await NpmRegistryClient(client=http).get_current_cursor()


@pytest.mark.asyncio
async def test_invalid_json_is_protocol_error():
    async with mock_http(lambda r: httpx.Response(200, text="<html>oops</html>")) as http:
        with pytest.raises(ProtocolError) as exc_info:
            await NpmRegistryClient(client=http).get_packument("pkg")

    assert not exc_info.value.retryable


@pytest.mark.asyncio
async def test_non_object_packument_is_protocol_error():
    async with mock_http(lambda r: json_response(["a", "b"])) as http:
        with pytest.raises(ProtocolError):
            await NpmRegistryClient(client=http).get_packument("pkg")


@pytest.mark.asyncio
async def test_oversized_response_is_protocol_error():
    body = {"name": "big", "versions": {}, "readme": "x" * 2048}
    async with mock_http(lambda r: json_response(body)) as http:
        client = NpmRegistryClient(client=http, max_response_bytes=1024)
        with pytest.raises(ProtocolError, match="too large"):
            await client.get_packument("big")


@pytest.mark.asyncio
async def test_oversized_stream_is_rejected_while_reading():
    sent = []

    async def endless_body():
        for _ in range(100):
            sent.append(1)
            yield b"x" * 512

    # No Content-Length: only the bytes actually received can trip the guard
    async with mock_http(lambda r: httpx.Response(200, content=endless_body())) as http:
        client = NpmRegistryClient(client=http, max_response_bytes=2048)
        with pytest.raises(ProtocolError, match="too large"):
            await client.get_packument("big")

    assert len(sent) < 100


@pytest.mark.asyncio
async def test_error_status_message_is_truncated():
    async with mock_http(lambda r: httpx.Response(503, content=b"e" * 10_000)) as http:
        with pytest.raises(TransportError) as exc_info:
            await NpmRegistryClient(client=http).get_current_cursor()

    assert exc_info.value.status_code == 503
    assert str(exc_info.value).startswith("HTTP 503: eee")
    assert len(str(exc_info.value)) < 300


@pytest.mark.asyncio
async def test_custom_registry_url():
    seen = []

    def handler(request):
        seen.append(request)
        return json_response({"name": "pkg", "versions": {}})

    async with mock_http(handler) as http:
        client = NpmRegistryClient(client=http, registry_url="http://mirror.local/npm/")
        await client.get_packument("pkg")

    assert str(seen[0].url) == "http://mirror.local/npm/pkg"
