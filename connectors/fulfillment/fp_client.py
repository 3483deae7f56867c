"""Fulfillment platform HTTP client.

Low-level async client for the platform's billing API.
Handles bearer auth headers, request pacing, pagination, retries, and error
handling. All calls are read-only.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from dataclasses import dataclass, field
from datetime import date, datetime
import asyncio
import json

import aiohttp

from connectors.fulfillment.fp_models import RawInvoice, TransactionPage
from core.config import Settings
from core.observability.logging import get_logger
from core.observability.metrics import get_metrics

logger = get_logger(__name__)


class FPApiError(Exception):
    """Base exception for fulfillment platform API errors."""
    def __init__(self, message: str, status_code: int = 0, response_body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class FPAuthError(FPApiError):
    """Authentication failed (401/403)."""
    pass


class FPNotFoundError(FPApiError):
    """Resource not found (404)."""
    pass


class FPValidationError(FPApiError):
    """Request rejected by the platform (400/422)."""
    pass


class FPRetryExhaustedError(FPApiError):
    """Every allowed attempt failed with a retryable error."""
    pass


class FPRateLimitError(FPRetryExhaustedError):
    """Still rate limited (429) after the last allowed attempt."""
    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, 429)
        self.retry_after = retry_after


@dataclass
class RetryConfig:
    """Backoff policy shared by every platform call."""
    max_retries: int = 5
    base_delay: float = 1.0  # seconds
    max_delay: float = 60.0  # seconds
    exponential_base: float = 2.0
    retry_on_status: Tuple[int, ...] = (429, 500, 502, 503, 504)

    def get_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay before retry ``attempt`` (0-based). Retry-After wins when given, capped."""
        if retry_after is not None and retry_after >= 0:
            return min(retry_after, self.max_delay)
        delay = self.base_delay * (self.exponential_base ** attempt)
        return min(delay, self.max_delay)


@dataclass
class FPApiConfig:
    """Configuration for the platform API client."""
    base_url: str = "https://api.fulfillment.example.com/v1"
    api_token: Optional[str] = None
    min_request_interval: float = 0.25  # seconds between consecutive calls
    retry_config: RetryConfig = field(default_factory=RetryConfig)
    timeout_seconds: int = 60

    @classmethod
    def from_settings(cls, settings: Settings) -> "FPApiConfig":
        return cls(
            base_url=settings.fp_api_base_url,
            api_token=settings.fp_api_token,
            min_request_interval=settings.fp_min_request_interval,
            retry_config=RetryConfig(
                max_retries=settings.fp_max_retries,
                base_delay=settings.fp_retry_base_delay,
                max_delay=settings.fp_retry_max_delay,
                exponential_base=settings.fp_retry_multiplier,
            ),
        )


class RequestPacer:
    """Enforces a fixed minimum delay between consecutive requests.

    Shared by all concurrent callers of one client, so parallel sub-queries
    still leave the platform at most one request per interval.
    """

    def __init__(self, min_interval: float, clock: Callable[[], float] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last: Optional[float] = None

    def _now(self) -> float:
        if self._clock:
            return self._clock()
        return asyncio.get_running_loop().time()

    async def wait(self) -> None:
        async with self._lock:
            now = self._now()
            if self._last is not None:
                remaining = self.min_interval - (now - self._last)
                if remaining > 0:
                    await self._sleep(remaining)
                    now = self._now()
            self._last = now


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _fmt_dt(value) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


class FPClient:
    """HTTP client for the fulfillment platform billing API.

    Provides:
    - Bearer-token API calls with request pacing
    - Cursor pagination
    - Exponential backoff on throttling and server errors, with an attempt ceiling

    Usage:
        async with FPClient(FPApiConfig.from_settings(settings)) as client:
            page = await client.query_transactions(body)
            invoices = await client.list_invoices(start, end)
    """

    def __init__(
        self,
        api_config: FPApiConfig,
        session: Optional[Any] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize API client.

        Args:
            api_config: API configuration
            session: Pre-built aiohttp.ClientSession (owned by the caller)
            sleep: Awaitable sleep used for pacing and backoff
        """
        self.api_config = api_config
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep
        self._pacer = RequestPacer(api_config.min_request_interval, sleep=sleep)

    async def __aenter__(self) -> "FPClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    async def connect(self) -> None:
        """Initialize HTTP session."""
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.api_config.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True

    async def disconnect(self) -> None:
        """Close HTTP session if this client created it."""
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def _get_headers(self) -> Dict[str, str]:
        if not self.api_config.api_token:
            raise FPAuthError("FP_API_TOKEN is not configured")
        return {
            "Authorization": f"Bearer {self.api_config.api_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _build_url(self, path: str) -> str:
        return f"{self.api_config.base_url.rstrip('/')}/{path.lstrip('/')}"

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, str]] = None,
        data: Optional[Dict[str, Any]] = None,
        endpoint: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Make an API request with pacing and bounded retries.

        Raises:
            FPAuthError: Authentication failed
            FPNotFoundError: Resource not found
            FPValidationError: Request rejected
            FPRetryExhaustedError: Retryable failures on every attempt
            FPApiError: Other API errors
        """
        if self._session is None:
            raise FPApiError("Not connected. Call connect() first.")

        endpoint = endpoint or path
        url = self._build_url(path)
        headers = self._get_headers()
        retry_config = self.api_config.retry_config
        metrics = get_metrics()
        last_error = ""
        last_status = 0
        last_retry_after: Optional[float] = None

        for attempt in range(retry_config.max_retries + 1):
            await self._pacer.wait()
            metrics.record_api_request(endpoint)
            try:
                async with self._session.request(
                    method,
                    url,
                    headers=headers,
                    params=params,
                    json=data,
                ) as response:
                    response_text = await response.text()

                    if response.status < 400:
                        return json.loads(response_text) if response_text else {}

                    if response.status in (401, 403):
                        raise FPAuthError(
                            f"Authentication failed: {response_text}",
                            response.status,
                            response_text,
                        )

                    if response.status == 404:
                        raise FPNotFoundError(
                            f"Resource not found: {url}",
                            response.status,
                            response_text,
                        )

                    if response.status in (400, 422):
                        raise FPValidationError(
                            f"Validation error: {response_text}",
                            response.status,
                            response_text,
                        )

                    if response.status in retry_config.retry_on_status:
                        last_error = f"HTTP {response.status}"
                        last_status = response.status
                        last_retry_after = _parse_retry_after(response.headers.get("Retry-After"))
                        if attempt < retry_config.max_retries:
                            rate_limited = response.status == 429
                            delay = retry_config.get_delay(
                                attempt, last_retry_after if rate_limited else None
                            )
                            metrics.record_api_retry(endpoint, rate_limited=rate_limited)
                            logger.warning(
                                f"{endpoint} returned {response.status}, "
                                f"retrying in {delay:.1f}s (attempt {attempt + 1}/{retry_config.max_retries})",
                                extra_fields={"status": response.status, "delay_s": delay},
                            )
                            await self._sleep(delay)
                            continue
                        break

                    raise FPApiError(
                        f"API error {response.status}: {response_text}",
                        response.status,
                        response_text,
                    )

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = f"{type(e).__name__}: {e}"
                last_status = 0
                if attempt < retry_config.max_retries:
                    delay = retry_config.get_delay(attempt)
                    metrics.record_api_retry(endpoint)
                    logger.warning(
                        f"{endpoint} request failed with {last_error}, retrying in {delay:.1f}s"
                    )
                    await self._sleep(delay)
                    continue
                break

        metrics.record_api_failure(endpoint)
        if last_status == 429:
            raise FPRateLimitError(
                f"{endpoint} still rate limited after {retry_config.max_retries + 1} attempts",
                last_retry_after,
            )
        raise FPRetryExhaustedError(
            f"{endpoint} failed after {retry_config.max_retries + 1} attempts: {last_error}"
        )

    # =========================================================================
    # Transactions
    # =========================================================================

    async def query_transactions(self, body: Dict[str, Any], cursor: Optional[str] = None) -> TransactionPage:
        """Fetch one page of ``POST /transactions:query``.

        Args:
            body: Filter body (from_date, to_date, page_size and optional
                transaction_types / reference_types / invoice_types / invoiced_status)
            cursor: Cursor returned by the previous page
        """
        params = {"Cursor": cursor} if cursor else None
        payload = await self._request(
            "POST", "transactions:query", params=params, data=body, endpoint="transactions:query"
        )
        return TransactionPage.model_validate(payload)

    async def list_invoice_transactions(self, invoice_id: str, page_size: int = 250) -> List[Dict[str, Any]]:
        """Fetch every transaction listed on one platform invoice (raw records)."""
        items: List[Dict[str, Any]] = []
        async for page in self._paginate(f"invoices/{invoice_id}/transactions", page_size, {}):
            items.extend(page.items)
        return items

    # =========================================================================
    # Invoices
    # =========================================================================

    async def list_invoices(self, start: date, end: Optional[date] = None, page_size: int = 100) -> List[RawInvoice]:
        """List platform invoices dated within [start, end]."""
        params = {"StartDate": _fmt_dt(start)}
        if end is not None:
            params["EndDate"] = _fmt_dt(end)
        invoices: List[RawInvoice] = []
        async for page in self._paginate("invoices", page_size, params):
            invoices.extend(RawInvoice.model_validate(item) for item in page.items)
        return invoices

    async def _paginate(self, path: str, page_size: int, params: Dict[str, str]):
        """Yield pages of a GET listing until the cursor runs out or repeats."""
        cursor: Optional[str] = None
        seen_cursors = set()
        while True:
            page_params = dict(params, PageSize=str(page_size))
            if cursor:
                page_params["Cursor"] = cursor
            payload = await self._request("GET", path, params=page_params, endpoint=path.split("/")[0])
            page = TransactionPage.model_validate(payload)
            yield page
            if not page.next or page.next in seen_cursors or not page.items:
                return
            seen_cursors.add(page.next)
            cursor = page.next
