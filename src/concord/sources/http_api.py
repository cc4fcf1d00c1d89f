"""Generic HTTP API source."""

from __future__ import annotations
import base64
from typing import Any, AsyncIterator
import httpx
from concord.sources.base import SourceAdapter, SourceContext


def _dig(data: Any, path: str | None) -> Any:
    if not path:
        return data
    for key in path.split("."):
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


class HttpApiSource(SourceAdapter):
    """Pull candidates from any HTTP API, page by page.

    Pagination is either page-numbered (``pagination="page"``) or
    cursor-based (``pagination="cursor"``, where the next cursor is read from
    ``cursor_path`` in each response). The tenant id is sent as
    ``tenant_param`` when set.
    """

    def __init__(
        self,
        base_url: str,
        path: str = "",
        auth: dict | None = None,
        headers: dict | None = None,
        params: dict | None = None,
        timeout: int = 30,
        response_path: str | None = None,
        pagination: str | None = None,
        page_param: str = "page",
        per_page_param: str = "per_page",
        per_page: int = 100,
        max_pages: int = 1000,
        cursor_param: str = "cursor",
        cursor_path: str | None = None,
        tenant_param: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__()
        if pagination not in (None, "page", "cursor"):
            raise ValueError(f"Unsupported pagination '{pagination}' (use 'page' or 'cursor')")
        if pagination == "cursor" and not cursor_path:
            raise ValueError("Cursor pagination needs 'cursor_path'")
        self.base_url = base_url.rstrip("/")
        self.path = path
        self.auth = auth or {}
        self.headers = headers or {}
        self.params = params or {}
        self.timeout = timeout
        self.response_path = response_path
        self.pagination = pagination
        self.page_param = page_param
        self.per_page_param = per_page_param
        self.per_page = per_page
        self.max_pages = max_pages
        self.cursor_param = cursor_param
        self.cursor_path = cursor_path
        self.tenant_param = tenant_param
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._pages = 0
        self._records = 0

    @property
    def supports_cursor(self) -> bool:
        return self.pagination == "cursor"

    def _auth_headers(self) -> dict:
        headers = {}
        auth_type = self.auth.get("type", "").lower()
        if auth_type == "bearer":
            headers["Authorization"] = f"Bearer {self.auth['token']}"
        elif auth_type == "api_key":
            header_name = self.auth.get("header", "X-API-Key")
            headers[header_name] = self.auth["key"]
        elif auth_type == "basic":
            creds = base64.b64encode(
                f"{self.auth['username']}:{self.auth['password']}".encode()
            ).decode()
            headers["Authorization"] = f"Basic {creds}"
        return headers

    async def open(self, context: SourceContext) -> None:
        await super().open(context)
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={**self.headers, **self._auth_headers()},
            timeout=self.timeout,
            transport=self._transport,
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _fetch(self, params: dict) -> Any:
        resp = await self._client.get(self.path, params=params)
        resp.raise_for_status()
        self._pages += 1
        return resp.json()

    def _rows(self, payload: Any) -> list[dict]:
        data = _dig(payload, self.response_path)
        if not data:
            return []
        return data if isinstance(data, list) else [data]

    async def records(self, context: SourceContext) -> AsyncIterator[dict[str, Any]]:
        base_params = dict(self.params)
        if self.tenant_param and context.tenant_id is not None:
            base_params[self.tenant_param] = context.tenant_id

        if self.pagination == "page":
            for page in range(1, self.max_pages + 1):
                payload = await self._fetch({**base_params, self.page_param: page, self.per_page_param: self.per_page})
                rows = self._rows(payload)
                if not rows:
                    break
                for row in rows:
                    self._records += 1
                    yield row
                if len(rows) < self.per_page:
                    break
        elif self.pagination == "cursor":
            cursor = self.cursor
            for _ in range(self.max_pages):
                params = {**base_params, self.per_page_param: self.per_page}
                if cursor:
                    params[self.cursor_param] = cursor
                payload = await self._fetch(params)
                for row in self._rows(payload):
                    self._records += 1
                    yield row
                next_cursor = _dig(payload, self.cursor_path)
                if next_cursor:
                    cursor = next_cursor
                    self.cursor = next_cursor
                else:
                    break
        else:
            payload = await self._fetch(base_params)
            for row in self._rows(payload):
                self._records += 1
                yield row

    def metadata(self) -> dict[str, Any]:
        return {
            "type": "http_api",
            "url": f"{self.base_url}{self.path}",
            "pages": self._pages,
            "records": self._records,
        }
