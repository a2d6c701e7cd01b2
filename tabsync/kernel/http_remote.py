"""
PostgREST adapter for the tabsync remote contract.

Talks to a PostgREST-style REST endpoint (/rest/v1/<table>) over httpx.
Transport failures, non-2xx responses and undecodable bodies become RemoteError; 409/412
responses, and PATCHes that match no row while the row still exists, become
ConflictError carrying the current server copy.

The request timeout is the only timeout layer: the sync engine does not add
its own.
"""

from __future__ import annotations

from typing import Any

import httpx

from tabsync.kernel.remote import ConflictError, Remote, RemoteError

_CONFLICT_STATUSES = {409, 412}


class PostgrestRemote(Remote):
    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.client = client or httpx.AsyncClient(timeout=timeout)

    def _headers(self, prefer: str | None = None) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _url(self, table: str) -> str:
        return f"{self.base_url}/rest/v1/{table}"

    async def _send(self, method: str, table: str, **kwargs: Any) -> httpx.Response:
        try:
            res = await self.client.request(method, self._url(table), **kwargs)
        except httpx.HTTPError as e:
            raise RemoteError(f"{method} {table}: {e}") from e
        if res.status_code >= 400 and res.status_code not in _CONFLICT_STATUSES:
            raise RemoteError(f"{res.status_code} {method} {table}: {res.text[:200]}")
        return res

    async def _fetch_one(self, table: str, record_id: str) -> dict[str, Any] | None:
        rows = await self.read(table, {"id": record_id})
        return rows[0] if rows else None

    async def create(self, table: str, data: dict[str, Any]) -> dict[str, Any]:
        body = _wire(data)
        res = await self._send("POST", table, json=body, headers=self._headers("return=representation"))
        if res.status_code in _CONFLICT_STATUSES:
            server = await self._fetch_one(table, body["id"]) if "id" in body else None
            if server is None:
                raise RemoteError(f"{res.status_code} POST {table}: {res.text[:200]}")
            raise ConflictError(f"{table}/{body['id']} already exists", server)
        return _first(res, "POST", table)

    async def update(self, table: str, record_id: str, data: dict[str, Any]) -> dict[str, Any]:
        res = await self._send(
            "PATCH",
            table,
            params={"id": f"eq.{record_id}"},
            json=_wire(data),
            headers=self._headers("return=representation"),
        )
        if res.status_code in _CONFLICT_STATUSES or _json(res, "PATCH", table) == []:
            server = await self._fetch_one(table, record_id)
            if server is None:
                raise RemoteError(f"404 {table}/{record_id} not found")
            raise ConflictError(f"{table}/{record_id} changed on the server", server)
        return _first(res, "PATCH", table)

    async def delete(self, table: str, record_id: str) -> None:
        res = await self._send("DELETE", table, params={"id": f"eq.{record_id}"}, headers=self._headers())
        if res.status_code in _CONFLICT_STATUSES:
            server = await self._fetch_one(table, record_id)
            if server is None:
                return
            raise ConflictError(f"{table}/{record_id} changed on the server", server)

    async def read(self, table: str, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        params = {"select": "*"}
        for key, value in (filters or {}).items():
            params[key] = f"eq.{value}"
        res = await self._send("GET", table, params=params, headers=self._headers())
        if res.status_code in _CONFLICT_STATUSES:
            raise RemoteError(f"{res.status_code} GET {table}")
        return _json(res, "GET", table) or []

    async def close(self) -> None:
        await self.client.aclose()


def _wire(data: dict[str, Any]) -> dict[str, Any]:
    """Strip client-only markers before sending."""
    return {k: v for k, v in data.items() if k != "_optimistic"}


def _json(res: httpx.Response, method: str, table: str) -> Any:
    try:
        return res.json()
    except ValueError as e:
        raise RemoteError(f"{res.status_code} {method} {table}: invalid JSON") from e


def _first(res: httpx.Response, method: str, table: str) -> dict[str, Any]:
    body = _json(res, method, table)
    if isinstance(body, list):
        if not body:
            raise RemoteError(f"{table}: empty representation")
        return body[0]
    return body
