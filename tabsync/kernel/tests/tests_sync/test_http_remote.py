"""
tabsync PostgREST Remote -- HTTP Adapter Tests

Runs PostgrestRemote against httpx.MockTransport; no network.

Covers:
  - request shape (URL, filters, Prefer header, api key, no _optimistic)
  - 2xx responses mapped to records
  - 5xx, transport errors and undecodable bodies → RemoteError
  - 409 / empty PATCH → ConflictError carrying the server copy
  - HttpConnectivityProbe online/offline readings
"""

import json

import httpx
import pytest

from tabsync.kernel.connectivity import HttpConnectivityProbe
from tabsync.kernel.http_remote import PostgrestRemote
from tabsync.kernel.remote import ConflictError, RemoteError


def make_remote(handler, api_key="anon-key"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PostgrestRemote("https://db.example.test/", api_key, client=client)


class TestRequests:
    @pytest.mark.asyncio
    async def test_create_posts_representation(self):
        seen = []

        def handler(request):
            seen.append(request)
            body = json.loads(request.content)
            return httpx.Response(201, json=[body])

        remote = make_remote(handler)
        record = await remote.create("clients", {"id": "c1", "name": "Acme", "_optimistic": True})

        assert record == {"id": "c1", "name": "Acme"}
        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == "/rest/v1/clients"
        assert request.headers["Prefer"] == "return=representation"
        assert request.headers["apikey"] == "anon-key"
        assert request.headers["Authorization"] == "Bearer anon-key"
        await remote.close()

    @pytest.mark.asyncio
    async def test_read_applies_eq_filters(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[{"id": "t1", "status": "open"}])

        remote = make_remote(handler, api_key=None)
        rows = await remote.read("tasks", {"status": "open"})

        assert rows == [{"id": "t1", "status": "open"}]
        params = seen[0].url.params
        assert params["select"] == "*"
        assert params["status"] == "eq.open"
        assert "apikey" not in seen[0].headers

    @pytest.mark.asyncio
    async def test_update_and_delete_target_record(self):
        seen = []

        def handler(request):
            seen.append(request)
            if request.method == "PATCH":
                return httpx.Response(200, json=[{"id": "t1", "title": "b"}])
            return httpx.Response(204)

        remote = make_remote(handler)
        assert await remote.update("tasks", "t1", {"title": "b"}) == {"id": "t1", "title": "b"}
        await remote.delete("tasks", "t1")

        assert [r.method for r in seen] == ["PATCH", "DELETE"]
        assert all(r.url.params["id"] == "eq.t1" for r in seen)


class TestErrors:
    @pytest.mark.asyncio
    async def test_server_error_is_remote_error(self):
        remote = make_remote(lambda request: httpx.Response(503, text="unavailable"))
        with pytest.raises(RemoteError, match="503"):
            await remote.create("clients", {"id": "c1"})

    @pytest.mark.asyncio
    async def test_transport_error_is_remote_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        remote = make_remote(handler)
        with pytest.raises(RemoteError) as exc:
            await remote.read("clients")
        assert not isinstance(exc.value, ConflictError)

    @pytest.mark.asyncio
    async def test_409_on_create_carries_server_copy(self):
        def handler(request):
            if request.method == "POST":
                return httpx.Response(409, json={"message": "duplicate key"})
            return httpx.Response(200, json=[{"id": "c1", "name": "Server"}])

        remote = make_remote(handler)
        with pytest.raises(ConflictError) as exc:
            await remote.create("clients", {"id": "c1", "name": "Local"})
        assert exc.value.server_data == {"id": "c1", "name": "Server"}

    @pytest.mark.asyncio
    async def test_empty_patch_with_existing_row_is_conflict(self):
        def handler(request):
            if request.method == "PATCH":
                return httpx.Response(200, json=[])
            return httpx.Response(200, json=[{"id": "t1", "title": "theirs"}])

        remote = make_remote(handler)
        with pytest.raises(ConflictError) as exc:
            await remote.update("tasks", "t1", {"title": "mine"})
        assert exc.value.server_data["title"] == "theirs"

    @pytest.mark.asyncio
    async def test_empty_patch_with_missing_row_is_not_found(self):
        remote = make_remote(lambda request: httpx.Response(200, json=[]))
        with pytest.raises(RemoteError, match="404"):
            await remote.update("tasks", "t1", {"title": "mine"})

    @pytest.mark.asyncio
    async def test_empty_body_on_success_is_remote_error(self):
        remote = make_remote(lambda request: httpx.Response(201, content=b""))
        with pytest.raises(RemoteError, match="invalid JSON"):
            await remote.create("clients", {"id": "c1", "name": "Acme"})

    @pytest.mark.asyncio
    async def test_non_json_read_is_remote_error(self):
        remote = make_remote(lambda request: httpx.Response(200, text="<html>maintenance</html>"))
        with pytest.raises(RemoteError, match="200 GET clients"):
            await remote.read("clients")


class TestConnectivityProbe:
    @pytest.mark.asyncio
    async def test_probe_tracks_health(self):
        status = {"code": 200}
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(status["code"])))
        probe = HttpConnectivityProbe("https://db.example.test/health", client=client)
        changes = []
        probe.on_online_change(changes.append)

        assert probe.is_online is False
        assert await probe.probe() is True
        status["code"] = 502
        assert await probe.probe() is False
        assert await probe.probe() is False

        assert changes == [True, False]
        await probe.close()

    @pytest.mark.asyncio
    async def test_probe_transport_error_is_offline(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        probe = HttpConnectivityProbe(
            "https://db.example.test/health", client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
        )
        assert await probe.probe() is False
