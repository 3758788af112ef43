#!/usr/bin/env python3
"""
Version: 1.3
Created: 2026-10-13
Updated: 2026-10-18

QC Client - fetch quality-control photos for a product from the QC provider.

Changes in v1.3:
- The deadline also bounds each attempt, not only the waits between them
- A non-string provider message is classified as text

Changes in v1.2:
- Retry loop rewritten as an explicit state machine (QCState)
- Optional deadline bounds the loop; asyncio cancellation always works
- Proxy endpoint and token are injected through QCSettings

Changes in v1.1:
- "No QC images found" ends retrieval at once with a 404
- Token errors back off linearly (attempt x 1s) and retry

Flow:
    IDLE -> NORMALIZING -> PROXY_ATTEMPT | DIRECT_ATTEMPT -> RETRYING ...
         -> SUCCESS | NOT_FOUND | ERROR

The loop has no attempt limit of its own. Callers bound it with `deadline`
or by cancelling the task.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Tuple
from urllib.parse import urlparse

import aiohttp
from pydantic import ValidationError

from .config import QCSettings, get_settings
from .link_classifier import is_product_host
from .link_normalizer import normalize_goods_url
from .models import QCErrorResponse, QCImage, QCRequest, QCSuccessResponse
from .qc_galleries import group_images_into_galleries

logger = logging.getLogger(__name__)


# ==================== CONFIGURATION ====================

USER_AGENT = "Kakobuy-QC-API/1.0"

# Linear backoff: attempt N waits N x this many seconds
BACKOFF_STEP_SECONDS = 1.0

NO_QC_IMAGES_MARKER = "No QC images found"

ERROR_MESSAGES = {
    "missing_goods_url": "Goods URL is required",
    "invalid_goods_url": "Invalid goods URL",
    "invalid_token": "Invalid token",
    "no_images_found": NO_QC_IMAGES_MARKER,
    "api_error": "API Error",
    "unexpected_status": "API returned unexpected response status",
    "invalid_data_structure": "API returned invalid data structure",
    "internal_server_error": "Internal server error",
}


class QCState(str, Enum):
    IDLE = "idle"
    NORMALIZING = "normalizing"
    PROXY_ATTEMPT = "proxy_attempt"
    DIRECT_ATTEMPT = "direct_attempt"
    RETRYING = "retrying"
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    ERROR = "error"


# ==================== ERRORS ====================

class QCRetrievalError(Exception):
    """A QC lookup that ended without photos; carries the wire error fields."""

    def __init__(self, message: str, error_code: str, http_status: int):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.http_status = http_status

    def to_response(self) -> QCErrorResponse:
        return QCErrorResponse(message=self.message, error_code=self.error_code)

    @classmethod
    def missing_goods_url(cls):
        return cls(ERROR_MESSAGES["missing_goods_url"], "missing_goods_url", 400)

    @classmethod
    def invalid_goods_url(cls):
        return cls(ERROR_MESSAGES["invalid_goods_url"], "invalid_goods_url", 400)

    @classmethod
    def invalid_token(cls, message: Optional[str] = None):
        return cls(message or ERROR_MESSAGES["invalid_token"], "invalid_token", 400)

    @classmethod
    def no_images_found(cls):
        return cls(ERROR_MESSAGES["no_images_found"], "no_images_found", 404)

    @classmethod
    def api_error(cls, message: Optional[str] = None, http_status: int = 400):
        return cls(message or ERROR_MESSAGES["api_error"], "api_error", http_status)

    @classmethod
    def unexpected_status(cls):
        return cls(ERROR_MESSAGES["unexpected_status"], "unexpected_status", 500)

    @classmethod
    def invalid_data_structure(cls):
        return cls(ERROR_MESSAGES["invalid_data_structure"], "invalid_data_structure", 500)

    @classmethod
    def internal_error(cls, detail: str = "Unknown error"):
        return cls(f"{ERROR_MESSAGES['internal_server_error']}: {detail}", "internal_server_error", 500)

    @classmethod
    def deadline_exceeded(cls):
        return cls("QC provider did not answer before the deadline", "api_error", 502)


# ==================== PROVIDER CALLS ====================

@dataclass
class ProviderResponse:
    status: int
    text: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


async def call_proxy_server(
    session: aiohttp.ClientSession,
    settings: QCSettings,
    goods_url: str,
    method: str = "GET",
) -> ProviderResponse:
    """Ask the whitelisted proxy, which forwards to the provider."""
    headers = {'Content-Type': 'application/json', 'User-Agent': USER_AGENT}
    timeout = aiohttp.ClientTimeout(total=settings.request_timeout)

    if method == "POST":
        request = session.post(settings.qc_proxy_url, json={'goodsUrl': goods_url},
                               headers=headers, timeout=timeout)
    else:
        request = session.get(settings.qc_proxy_url, params={'goodsUrl': goods_url},
                              headers=headers, timeout=timeout)

    async with request as response:
        return ProviderResponse(status=response.status, text=await response.text())


async def call_direct_api(
    session: aiohttp.ClientSession,
    settings: QCSettings,
    goods_url: str,
    method: str = "GET",
) -> ProviderResponse:
    """Call the provider directly; GET with query params or PUT with a JSON body."""
    timeout = aiohttp.ClientTimeout(total=settings.request_timeout)

    if method == "POST":
        request = session.put(
            settings.qc_api_url,
            json={'token': settings.qc_api_token, 'goodsUrl': goods_url},
            headers={'Content-Type': 'application/json', 'User-Agent': USER_AGENT},
            timeout=timeout,
        )
    else:
        request = session.get(
            settings.qc_api_url,
            params={'token': settings.qc_api_token, 'goodsUrl': goods_url},
            headers={'Accept': 'application/json', 'User-Agent': USER_AGENT},
            timeout=timeout,
        )

    async with request as response:
        return ProviderResponse(status=response.status, text=await response.text())


# ==================== VALIDATION ====================

def is_http_url(url) -> bool:
    """First gate: anything with an http(s) scheme and a host."""
    if not url or not isinstance(url, str):
        return False
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def is_supported_goods_url(url) -> bool:
    """Second gate: the normalized URL must sit on a marketplace the provider indexes."""
    if not is_http_url(url):
        return False
    return is_product_host((urlparse(url).hostname or "").lower())


# ==================== ENGINE ====================

class QCRetrievalEngine:
    """
    Stateless QC lookup: normalize, call provider with retry, cluster photos.

    Configuration (settings, optional shared session, sleep function) is fixed at
    construction; every retrieve() call is independent.
    """

    def __init__(
        self,
        settings: Optional[QCSettings] = None,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
        on_state: Optional[Callable[[QCState], None]] = None,
    ):
        self.settings = settings or get_settings()
        self.session = session
        self._sleep = sleep
        self._on_state = on_state

    def _enter(self, state: QCState, detail: str = ""):
        logger.debug(f"[QC] -> {state.value} {detail}".rstrip())
        if self._on_state:
            self._on_state(state)

    async def retrieve(
        self,
        goods_url: str,
        method: str = "GET",
        deadline: Optional[float] = None,
    ) -> QCSuccessResponse:
        """
        Fetch and cluster QC photos for goods_url.

        Args:
            goods_url: Any product, agent or short link
            method: 'GET' or 'POST' flavour of the provider/proxy requests
            deadline: Seconds the retry loop may run; None means until cancelled

        Returns:
            Success payload with photos, galleries and the normalized URL

        Raises:
            QCRetrievalError: For every failure in the taxonomy
        """
        self._enter(QCState.IDLE)
        if not goods_url:
            self._enter(QCState.ERROR, "missing goods url")
            raise QCRetrievalError.missing_goods_url()
        if not is_http_url(goods_url):
            self._enter(QCState.ERROR, "invalid goods url")
            raise QCRetrievalError.invalid_goods_url()

        if self.session is not None:
            return await self._retrieve(self.session, goods_url, method, deadline)

        async with aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.settings.request_timeout)
        ) as session:
            return await self._retrieve(session, goods_url, method, deadline)

    async def _retrieve(self, session, goods_url, method, deadline) -> QCSuccessResponse:
        self._enter(QCState.NORMALIZING, goods_url)
        normalized = await normalize_goods_url(
            goods_url, timeout=self.settings.resolve_timeout, session=session
        )

        if not is_supported_goods_url(normalized):
            logger.warning(f"[QC] Normalized URL is not a supported marketplace: {normalized}")
            self._enter(QCState.ERROR, "unsupported host")
            raise QCRetrievalError.invalid_goods_url()

        loop = asyncio.get_running_loop()
        expires_at = loop.time() + deadline if deadline is not None else None

        response = await self._call_with_retry(session, normalized, method, expires_at)
        try:
            result = self._parse(response, normalized)
        except QCRetrievalError as e:
            self._enter(QCState.NOT_FOUND if e.error_code == "no_images_found" else QCState.ERROR)
            raise
        self._enter(QCState.SUCCESS, f"{len(result.data)} images")
        return result

    async def _call_once(self, session, goods_url, method) -> ProviderResponse:
        if not self.settings.proxy_enabled:
            self._enter(QCState.DIRECT_ATTEMPT)
            return await call_direct_api(session, self.settings, goods_url, method)

        self._enter(QCState.PROXY_ATTEMPT)
        try:
            response = await call_proxy_server(session, self.settings, goods_url, method)
            if response.ok:
                return response
            logger.warning(f"[QC] Proxy answered HTTP {response.status}, trying provider directly")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"[QC] Proxy unreachable ({e}), trying provider directly")

        self._enter(QCState.DIRECT_ATTEMPT)
        return await call_direct_api(session, self.settings, goods_url, method)

    async def _backoff(self, attempt: int, expires_at: Optional[float]):
        self._enter(QCState.RETRYING, f"attempt {attempt}")
        delay = attempt * BACKOFF_STEP_SECONDS
        if expires_at is not None:
            remaining = expires_at - asyncio.get_running_loop().time()
            if remaining <= 0:
                self._enter(QCState.ERROR, "deadline exceeded")
                raise QCRetrievalError.deadline_exceeded()
            delay = min(delay, remaining)
        await self._sleep(delay)

    async def _bounded_call(self, session, goods_url, method, expires_at) -> ProviderResponse:
        # One attempt (proxy plus direct) may not outlive the deadline
        if expires_at is None:
            return await self._call_once(session, goods_url, method)
        remaining = expires_at - asyncio.get_running_loop().time()
        if remaining <= 0:
            self._enter(QCState.ERROR, "deadline exceeded")
            raise QCRetrievalError.deadline_exceeded()
        return await asyncio.wait_for(self._call_once(session, goods_url, method), remaining)

    async def _call_with_retry(self, session, goods_url, method, expires_at) -> ProviderResponse:
        attempt = 1
        while True:
            try:
                response = await self._bounded_call(session, goods_url, method, expires_at)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning(f"[QC] Attempt {attempt} failed: {e}")
                await self._backoff(attempt, expires_at)
                attempt += 1
                continue

            if response.ok:
                return response

            if "token" in response.text.lower():
                logger.warning(f"[QC] Attempt {attempt}: provider rejected the token, waiting")
            elif NO_QC_IMAGES_MARKER in response.text:
                logger.info(f"[QC] No QC images for {goods_url}")
                self._enter(QCState.NOT_FOUND)
                raise QCRetrievalError.no_images_found()
            elif response.status == 403:
                logger.warning(f"[QC] Attempt {attempt}: HTTP 403, IP address not whitelisted")
            else:
                logger.warning(f"[QC] Attempt {attempt}: HTTP {response.status}")

            await self._backoff(attempt, expires_at)
            attempt += 1

    def _parse(self, response: ProviderResponse, normalized: str) -> QCSuccessResponse:
        text = response.text
        if not text or not text.strip():
            raise QCRetrievalError.no_images_found()

        try:
            data = json.loads(text)
        except ValueError:
            raise QCRetrievalError.no_images_found()

        if not isinstance(data, dict):
            raise QCRetrievalError.no_images_found()

        status = data.get("status")
        message = data.get("message") or ""
        if not isinstance(message, str):
            message = str(message)

        if status == "error":
            if "token" in message.lower():
                raise QCRetrievalError.invalid_token(message)
            if NO_QC_IMAGES_MARKER in message:
                raise QCRetrievalError.no_images_found()
            raise QCRetrievalError.api_error(message or None)

        if status != "success":
            raise QCRetrievalError.unexpected_status()

        items = data.get("data")
        if not isinstance(items, list):
            raise QCRetrievalError.invalid_data_structure()

        try:
            images = [QCImage.model_validate(item) for item in items]
        except ValidationError:
            raise QCRetrievalError.invalid_data_structure()

        return QCSuccessResponse(
            data=images,
            galleries=group_images_into_galleries(images),
            normalizedUrl=normalized,
        )


# ==================== REQUEST HANDLER ====================

async def handle_qc_request(
    payload: Mapping,
    engine: Optional[QCRetrievalEngine] = None,
    method: str = "GET",
) -> Tuple[int, Dict]:
    """
    Wire-level entry point: {goodsUrl} in, (HTTP status, JSON body) out.

    Never raises except for task cancellation.
    """
    try:
        if not isinstance(payload, Mapping):
            raise QCRetrievalError.missing_goods_url()
        try:
            request = QCRequest.model_validate(dict(payload))
        except ValidationError:
            raise QCRetrievalError.invalid_goods_url()
        request_url = request.goodsUrl
        if not request_url:
            raise QCRetrievalError.missing_goods_url()

        engine = engine or QCRetrievalEngine()
        result = await engine.retrieve(
            request_url, method=method, deadline=engine.settings.qc_deadline
        )
        return 200, result.model_dump()

    except QCRetrievalError as e:
        return e.http_status, e.to_response().model_dump()
    except Exception as e:
        logger.exception("[QC] Unexpected error")
        error = QCRetrievalError.internal_error(str(e) or e.__class__.__name__)
        return error.http_status, error.to_response().model_dump()
