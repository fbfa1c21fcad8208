# transport.py

import abc
import asyncio
import base64
import logging
import time
from typing import Dict, List, Optional

import aiohttp
from pydantic import BaseModel, Field

from engine_config import EngineConfig
from flow_models import ExecuteResult

logger = logging.getLogger("FlowRunner.transport")

__all__ = ["DispatchRequest", "Transport", "AiohttpTransport", "content_type_for", "is_textual_content_type", "mask_headers"]

_BODY_CONTENT_TYPES = {
    "json": "application/json",
    "graphql": "application/json",
    "xml": "application/xml",
    "text": "text/plain",
    "form-urlencoded": "application/x-www-form-urlencoded",
}
_TEXTUAL_MARKERS = ("json", "xml", "javascript", "html", "x-www-form-urlencoded", "graphql", "yaml", "csv")
_SECRET_HEADERS = ("authorization", "cookie", "set-cookie", "proxy-authorization")


class DispatchRequest(BaseModel):
    method: str = Field("GET", description="HTTP method")
    url: str = Field(..., description="Fully rendered URL")
    headers: Dict[str, str] = Field(default_factory=dict, description="Fully rendered headers")
    body: Optional[str] = Field(None, description="Fully rendered body; None sends no body")
    body_type: str = Field("none", description="Step bodyType, used for the default Content-Type")


def content_type_for(body_type: str) -> Optional[str]:
    return _BODY_CONTENT_TYPES.get(body_type)


def is_textual_content_type(content_type: str) -> bool:
    ct = (content_type or "").lower()
    return ct.startswith("text/") or any(marker in ct for marker in _TEXTUAL_MARKERS)


def mask_headers(headers: Dict[str, str]) -> Dict[str, str]:
    return {k: ('********' if k.lower() in _SECRET_HEADERS and v else v) for k, v in headers.items()}


class Transport(abc.ABC):
    """Sends one rendered request. Implementations report failures in ExecuteResult.error instead of raising."""

    @abc.abstractmethod
    async def dispatch(self, request: DispatchRequest, proxy_url: Optional[str] = None) -> ExecuteResult:
        ...

    async def close(self):
        pass


class AiohttpTransport(Transport):
    """Transport backed by a shared aiohttp ClientSession. No retries; no cookie persistence between requests."""

    def __init__(self, config: Optional[EngineConfig] = None, session: Optional[aiohttp.ClientSession] = None):
        self.config = config or EngineConfig()
        self._session = session
        self._owns_session = session is None

    def create_session(self) -> aiohttp.ClientSession:
        timeout = aiohttp.ClientTimeout(total=self.config.http_timeout_s)
        connector = aiohttp.TCPConnector(
            ssl=None if self.config.verify_ssl else False,
            enable_cleanup_closed=True,
        )
        return aiohttp.ClientSession(
            connector=connector,
            timeout=timeout,
            cookie_jar=aiohttp.DummyCookieJar(), # Steps carry cookies explicitly
            auto_decompress=True,
        )

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = self.create_session()
            self._owns_session = True
        return self._session

    async def close(self):
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "AiohttpTransport":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def _prepare_headers(self, request: DispatchRequest) -> Dict[str, str]:
        headers = dict(request.headers)
        default_ct = content_type_for(request.body_type)
        if request.body and default_ct and not any(k.lower() == "content-type" for k in headers):
            headers["Content-Type"] = default_ct
        return headers

    async def _read_body(self, resp: aiohttp.ClientResponse) -> bytes:
        limit = self.config.max_response_bytes
        chunks: List[bytes] = []
        size = 0
        async for chunk in resp.content.iter_chunked(64 * 1024):
            size += len(chunk)
            if size > limit:
                raise ValueError(f"response body exceeds {limit} bytes")
            chunks.append(chunk)
        return b"".join(chunks)

    async def dispatch(self, request: DispatchRequest, proxy_url: Optional[str] = None) -> ExecuteResult:
        headers = self._prepare_headers(request)
        data = request.body.encode("utf-8") if request.body else None
        result = ExecuteResult(resolved_url=request.url, resolved_headers=headers)

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"--> {request.method} {request.url} headers={mask_headers(headers)} proxy={proxy_url or 'none'} body={len(data or b'')} bytes")

        start = time.monotonic()
        try:
            async with self.session.request(
                request.method,
                request.url,
                headers=headers,
                data=data,
                proxy=proxy_url,
                allow_redirects=True,
            ) as resp:
                result.status_code = resp.status
                result.status_text = resp.reason or ""
                multi: Dict[str, List[str]] = {}
                for key in resp.headers.keys():
                    if key not in multi:
                        multi[key] = resp.headers.getall(key)
                result.multi_value_headers = multi
                result.headers = {k: v[0] for k, v in multi.items()}

                raw = await self._read_body(resp)
                result.body_size = len(raw)
                content_type = resp.headers.get("Content-Type", "")
                if is_textual_content_type(content_type) or not content_type:
                    try:
                        result.body = raw.decode(resp.charset or "utf-8")
                    except (UnicodeDecodeError, LookupError):
                        if content_type:
                            result.body = raw.decode("utf-8", errors="replace")
                        else:
                            result.is_binary = True
                else:
                    result.is_binary = True
                if result.is_binary:
                    result.body_base64 = base64.b64encode(raw).decode("ascii")
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            message = str(e) or type(e).__name__
            result.error = f"{type(e).__name__}: {message}"
            logger.warning(f"Request {request.method} {request.url} failed: {result.error}")
        finally:
            result.duration_ms = int((time.monotonic() - start) * 1000)

        if result.error is None:
            log_level = logging.WARNING if result.status_code >= 400 else logging.INFO
            logger.log(log_level, f"<-- {result.status_code} {request.method} {request.url} ({result.duration_ms} ms, {result.body_size} bytes)")
        return result
