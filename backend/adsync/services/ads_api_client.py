"""Ads Platform (Meta Graph API) Client Service.

WHAT:
    Thin httpx wrapper over the Graph / Marketing API that fetches one
    logical collection at a time: it follows `paging.next` cursors until
    exhausted and returns the concatenation of every page.

WHY:
    - Single place for retry/backoff, throttling and error classification
    - Pagination is cursor-dependent so it stays sequential per collection;
      callers get concurrency by running several clients/accounts at once
    - Typed errors let callers tell an expired token (never retried, abort
      the account) from rate-limit exhaustion and other failures

RETRIES:
    Transient failures (HTTP 429/5xx, rate-limit error codes, network errors)
    are retried with exponential backoff: 2s, 4s, ... up to ADS_API_MAX_RETRIES
    attempts in total. Auth, permission and validation errors are raised on
    the first occurrence.

RATE LIMITS:
    - Sliding-window cap of ADS_API_CALLS_PER_HOUR calls per client
    - Usage headers above RATE_LIMIT_THRESHOLD_PCT pause the next call
    - ADS_API_PAGE_DELAY_SECONDS between pages of one collection

REFERENCES:
    - https://developers.facebook.com/docs/graph-api/results (pagination)
    - https://developers.facebook.com/docs/marketing-api/overview/rate-limiting
    - adsync/services/entity_sync_service.py, insight_sync_service.py (callers)
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Dict, Iterable, List, Optional

import httpx

from adsync.deps import get_settings
from adsync.utils.dates import iter_days, parse_date

logger = logging.getLogger(__name__)


# Graph API error codes
AUTH_ERROR_CODES = {102, 190}
RATE_LIMIT_ERROR_CODES = {4, 17, 32, 613} | set(range(80000, 80015))
TRANSIENT_ERROR_CODES = {1, 2}
PERMISSION_ERROR_CODES = {10} | set(range(200, 300))

USAGE_HEADERS = (
    "x-fb-ads-insights-throttle",
    "x-business-use-case-usage",
    "x-ad-account-usage",
    "x-app-usage",
)

HOURLY_BREAKDOWN = "hourly_stats_aggregated_by_advertiser_time_zone"

BREAKDOWN_DIMENSIONS = {
    "device": "device_platform",
    "age_gender": "age,gender",
    "region": "region",
}

CAMPAIGN_FIELDS = [
    "id", "name", "objective", "status", "effective_status",
    "daily_budget", "lifetime_budget", "start_time", "stop_time",
    "created_time", "updated_time",
]
ADSET_FIELDS = [
    "id", "name", "campaign_id", "status", "effective_status",
    "optimization_goal", "daily_budget", "lifetime_budget",
    "start_time", "end_time", "created_time", "updated_time",
]
AD_FIELDS = [
    "id", "name", "adset_id", "campaign_id", "status", "effective_status",
    "creative{id}", "created_time", "updated_time",
]
ACCOUNT_FIELDS = [
    "id", "name", "currency", "timezone_name", "account_status",
    "amount_spent", "balance",
]
INSIGHT_FIELDS = [
    "ad_id", "adset_id", "campaign_id", "date_start", "date_stop",
    "spend", "impressions", "clicks", "reach", "actions", "action_values",
]
# Reach is not available with the hourly breakdown
HOURLY_INSIGHT_FIELDS = [f for f in INSIGHT_FIELDS if f != "reach"]

CREATIVE_BATCH_SIZE = 50


# =============================================================================
# ERRORS
# =============================================================================

class AdsApiError(Exception):
    """Base exception for upstream API errors."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[int] = None,
        subcode: Optional[int] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.subcode = subcode


class AuthError(AdsApiError):
    """Expired or invalid credential (HTTP 401 / code 190). Never retried."""
    pass


class PermissionDeniedError(AdsApiError):
    """Token lacks permission on the object (HTTP 403 / code 10, 2xx)."""
    pass


class InvalidRequestError(AdsApiError):
    """Malformed request or unknown object (HTTP 400)."""
    pass


class TransientUpstreamError(AdsApiError):
    """Network failure, 5xx or temporary upstream error. Retried."""
    pass


class RateLimitError(TransientUpstreamError):
    """Upstream throttling (HTTP 429 / codes 4, 17, 32, 613, 80000+).

    Raised to callers only once retries are exhausted.
    """
    pass


class RateLimitExhaustedError(RateLimitError):
    """Every attempt of a request was throttled."""
    pass


def classify_error(status_code: Optional[int], payload: Any) -> AdsApiError:
    """Map an upstream error response to the typed exception hierarchy.

    Args:
        status_code: HTTP status of the response (None for 200 + error body)
        payload: Decoded JSON body, usually {"error": {"message", "code", ...}}

    Returns:
        An AdsApiError subclass instance (not raised).
    """
    error = payload.get("error") if isinstance(payload, dict) else None
    error = error if isinstance(error, dict) else {}
    message = error.get("message") or f"HTTP {status_code}"
    code = error.get("code")
    subcode = error.get("error_subcode")
    kwargs = {"status_code": status_code, "code": code, "subcode": subcode}

    if status_code == 401 or code in AUTH_ERROR_CODES:
        return AuthError(f"Authentication failed: {message}", **kwargs)
    if status_code == 429 or code in RATE_LIMIT_ERROR_CODES:
        return RateLimitError(f"Rate limited: {message}", **kwargs)
    if (status_code is not None and status_code >= 500) or code in TRANSIENT_ERROR_CODES or error.get("is_transient"):
        return TransientUpstreamError(f"Upstream temporarily unavailable: {message}", **kwargs)
    if status_code == 403 or code in PERMISSION_ERROR_CODES:
        return PermissionDeniedError(f"Permission denied: {message}", **kwargs)
    return InvalidRequestError(f"Invalid request: {message}", **kwargs)


# =============================================================================
# CALL WINDOW
# =============================================================================

class CallWindow:
    """Sliding-window limiter: at most `calls_per_hour` calls in any hour.

    Tracks call timestamps in a deque and sleeps until the oldest call
    leaves the window when the cap is reached. Thread-safe, since hourly
    insight fetches share one client across worker threads.
    """

    def __init__(
        self,
        calls_per_hour: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.calls_per_hour = max(1, calls_per_hour)
        self._clock = clock
        self._sleep = sleep
        self._calls: deque = deque()
        self._lock = threading.Lock()

    def acquire(self) -> None:
        with self._lock:
            now = self._clock()

            # Drop calls older than 1 hour
            while self._calls and self._calls[0] <= now - 3600:
                self._calls.popleft()

            if len(self._calls) >= self.calls_per_hour:
                sleep_time = 3600 - (now - self._calls[0])
                logger.warning(
                    "[ADS_API] Call cap reached (%d calls/hour). Sleeping for %.1fs",
                    self.calls_per_hour, sleep_time,
                )
                self._sleep(sleep_time)
                now = self._clock()
                self._calls.popleft()

            self._calls.append(now)


def max_usage_pct(headers: httpx.Headers) -> float:
    """Highest utilization percentage reported by any usage header."""
    highest = 0.0
    for name in USAGE_HEADERS:
        raw = headers.get(name)
        if not raw:
            continue
        try:
            data = json.loads(raw)
        except ValueError:
            continue
        for value in _iter_numbers(data):
            highest = max(highest, value)
    return highest


def _iter_numbers(data: Any) -> Iterable[float]:
    if isinstance(data, dict):
        for key, value in data.items():
            # estimated_time_to_regain_access is minutes, not a percentage
            if key == "estimated_time_to_regain_access":
                continue
            yield from _iter_numbers(value)
    elif isinstance(data, list):
        for item in data:
            yield from _iter_numbers(item)
    elif isinstance(data, (int, float)) and not isinstance(data, bool):
        yield float(data)


def account_path(external_id: str) -> str:
    """Ad account ids are addressed as `act_<id>`."""
    external_id = str(external_id)
    return external_id if external_id.startswith("act_") else f"act_{external_id}"


# =============================================================================
# CLIENT
# =============================================================================

class AdsApiClient:
    """Client for the upstream ads platform Graph API.

    Usage:
        ```python
        with AdsApiClient.from_settings(access_token) as client:
            campaigns = client.get_campaigns("act_123", since=1735689600)
            rows = client.get_insights("act_123", "2025-01-01", "2025-01-07")
        ```
    """

    def __init__(
        self,
        access_token: str,
        *,
        base_url: str = "https://graph.facebook.com/v21.0",
        timeout: float = 30.0,
        page_delay: float = 1.0,
        max_retries: int = 3,
        calls_per_hour: int = 20000,
        throttle_threshold_pct: float = 70.0,
        throttle_cooldown: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the client.

        Args:
            access_token: User/system access token (plaintext)
            base_url: Versioned Graph API root
            page_delay: Seconds to wait between pages of one collection
            max_retries: Total attempts per request for transient errors
            calls_per_hour: Sliding-window cap for this client
            transport: Optional httpx transport (tests use httpx.MockTransport)
            sleep: Sleep function (tests pass a recorder)
        """
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.page_delay = page_delay
        self.max_retries = max(1, max_retries)
        self.throttle_threshold_pct = throttle_threshold_pct
        self.throttle_cooldown = throttle_cooldown
        self._sleep = sleep
        self._window = CallWindow(calls_per_hour, sleep=sleep)
        self._http = httpx.Client(timeout=timeout, transport=transport)

    @classmethod
    def from_settings(cls, access_token: str, **overrides) -> "AdsApiClient":
        settings = get_settings()
        options = {
            "base_url": settings.ADS_API_BASE_URL,
            "timeout": settings.ADS_API_TIMEOUT_SECONDS,
            "page_delay": settings.ADS_API_PAGE_DELAY_SECONDS,
            "max_retries": settings.ADS_API_MAX_RETRIES,
            "calls_per_hour": settings.ADS_API_CALLS_PER_HOUR,
            "throttle_threshold_pct": settings.RATE_LIMIT_THRESHOLD_PCT,
            "throttle_cooldown": settings.RATE_LIMIT_COOLDOWN_SECONDS,
        }
        options.update(overrides)
        return cls(access_token, **options)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "AdsApiClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def request(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        access_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """GET one page with retry/backoff for transient errors.

        Args:
            path: Relative Graph path or absolute URL (paging.next)
            params: Query parameters; None when following a cursor URL,
                which already carries every parameter
            access_token: Override token (page tokens for messaging calls)

        Raises:
            AuthError, PermissionDeniedError, InvalidRequestError: immediately
            RateLimitExhaustedError, TransientUpstreamError: after the last attempt
        """
        url = self._url(path)
        query = None
        if params is not None:
            query = {k: v for k, v in params.items() if v is not None}
            query["access_token"] = access_token or self.access_token

        last_error: Optional[AdsApiError] = None

        for attempt in range(1, self.max_retries + 1):
            self._window.acquire()
            try:
                response = self._http.get(url, params=query)
            except httpx.TransportError as e:
                last_error = TransientUpstreamError(f"Network error: {e}")
            else:
                self._respect_usage_headers(response)
                payload = _safe_json(response)

                if response.status_code < 400 and not (isinstance(payload, dict) and "error" in payload):
                    return payload if isinstance(payload, dict) else {"data": payload}

                error = classify_error(
                    response.status_code if response.status_code >= 400 else None,
                    payload,
                )
                if not isinstance(error, TransientUpstreamError):
                    logger.error("[ADS_API] %s (path=%s)", error, path.split("?")[0])
                    raise error
                last_error = error

            if attempt < self.max_retries:
                wait_time = 2 ** attempt
                logger.warning(
                    "[ADS_API] %s, retrying in %ds (attempt %d/%d)",
                    last_error, wait_time, attempt, self.max_retries,
                )
                self._sleep(wait_time)

        logger.error("[ADS_API] Giving up after %d attempts: %s", self.max_retries, last_error)
        if isinstance(last_error, RateLimitError):
            raise RateLimitExhaustedError(
                str(last_error),
                status_code=last_error.status_code,
                code=last_error.code,
                subcode=last_error.subcode,
            ) from last_error
        raise last_error

    def _respect_usage_headers(self, response: httpx.Response) -> None:
        usage = max_usage_pct(response.headers)
        if usage > self.throttle_threshold_pct:
            logger.warning(
                "[ADS_API] Usage at %.0f%% (threshold %.0f%%), cooling down %.1fs",
                usage, self.throttle_threshold_pct, self.throttle_cooldown,
            )
            self._sleep(self.throttle_cooldown)

    def fetch_all(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        access_token: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch every page of a collection and return the concatenated rows."""
        rows: List[Dict[str, Any]] = []
        payload = self.request(path, dict(params or {}), access_token=access_token)
        pages = 1

        while True:
            rows.extend(payload.get("data") or [])
            next_url = (payload.get("paging") or {}).get("next")
            if not next_url:
                break
            if self.page_delay:
                self._sleep(self.page_delay)
            payload = self.request(next_url, None)
            pages += 1

        logger.debug("[ADS_API] %s: %d rows in %d pages", path, len(rows), pages)
        return rows

    # -------------------------------------------------------------------------
    # Structure
    # -------------------------------------------------------------------------

    @staticmethod
    def _updated_since_filter(since: Optional[int]) -> Optional[str]:
        if not since:
            return None
        return json.dumps([{"field": "updated_time", "operator": "GREATER_THAN", "value": int(since)}])

    def get_account(self, external_id: str) -> Dict[str, Any]:
        return self.request(account_path(external_id), {"fields": ",".join(ACCOUNT_FIELDS)})

    def get_campaigns(self, external_id: str, since: Optional[int] = None) -> List[Dict[str, Any]]:
        """Campaigns of an ad account, optionally only those updated after `since` (epoch)."""
        logger.info("[ADS_API] Fetching campaigns for %s (since=%s)", external_id, since)
        return self.fetch_all(f"{account_path(external_id)}/campaigns", {
            "fields": ",".join(CAMPAIGN_FIELDS),
            "filtering": self._updated_since_filter(since),
            "limit": 500,
        })

    def get_adsets(self, external_id: str, since: Optional[int] = None) -> List[Dict[str, Any]]:
        logger.info("[ADS_API] Fetching ad sets for %s (since=%s)", external_id, since)
        return self.fetch_all(f"{account_path(external_id)}/adsets", {
            "fields": ",".join(ADSET_FIELDS),
            "filtering": self._updated_since_filter(since),
            "limit": 500,
        })

    def get_ads(self, external_id: str, since: Optional[int] = None) -> List[Dict[str, Any]]:
        logger.info("[ADS_API] Fetching ads for %s (since=%s)", external_id, since)
        return self.fetch_all(f"{account_path(external_id)}/ads", {
            "fields": ",".join(AD_FIELDS),
            "filtering": self._updated_since_filter(since),
            "limit": 500,
        })

    def get_ad(self, ad_external_id: str) -> Dict[str, Any]:
        return self.request(str(ad_external_id), {"fields": ",".join(AD_FIELDS)})

    def get_ad_creatives(self, ad_external_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        """Creative details for ads, keyed by ad id, in batches of 50 ids."""
        creatives: Dict[str, Dict[str, Any]] = {}
        ids = [str(i) for i in ad_external_ids]
        for start in range(0, len(ids), CREATIVE_BATCH_SIZE):
            batch = ids[start:start + CREATIVE_BATCH_SIZE]
            payload = self.request("", {
                "ids": ",".join(batch),
                "fields": "id,creative{id,name,thumbnail_url,object_story_spec}",
            })
            for ad_id, ad in payload.items():
                creative = (ad or {}).get("creative") if isinstance(ad, dict) else None
                if creative and creative.get("id"):
                    creatives[ad_id] = creative
        return creatives

    # -------------------------------------------------------------------------
    # Insights
    # -------------------------------------------------------------------------

    def get_insights(
        self,
        object_id: str,
        date_start,
        date_end,
        level: str = "ad",
        time_increment: Optional[int] = 1,
        breakdowns: Optional[str] = None,
        fields: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Insights rows for an account/ad over an inclusive date range.

        Args:
            object_id: Ad account id (act_ prefix added) or ad id
            breakdowns: Raw Graph breakdown value, or a key of
                BREAKDOWN_DIMENSIONS ("device", "age_gender", "region")
        """
        time_range = {"since": str(parse_date(date_start)), "until": str(parse_date(date_end))}
        return self.fetch_all(f"{object_id}/insights", {
            "level": level,
            "fields": ",".join(fields or INSIGHT_FIELDS),
            "time_range": json.dumps(time_range),
            "time_increment": time_increment,
            "breakdowns": BREAKDOWN_DIMENSIONS.get(breakdowns, breakdowns) if breakdowns else None,
            "limit": 1000,
        })

    def get_account_insights(self, external_id: str, date_start, date_end, breakdowns: Optional[str] = None):
        return self.get_insights(account_path(external_id), date_start, date_end, breakdowns=breakdowns)

    def get_hourly_insights(self, ad_external_id: str, date_start, date_end) -> List[Dict[str, Any]]:
        """Hourly rows for one ad; multi-day ranges are fetched one day at a time."""
        rows: List[Dict[str, Any]] = []
        for day in iter_days(parse_date(date_start), parse_date(date_end)):
            rows.extend(self.get_insights(
                str(ad_external_id), day, day,
                level="ad",
                time_increment=None,
                breakdowns=HOURLY_BREAKDOWN,
                fields=HOURLY_INSIGHT_FIELDS,
            ))
        return rows

    # -------------------------------------------------------------------------
    # Pages & messaging (lead attribution)
    # -------------------------------------------------------------------------

    def get_pages(self) -> List[Dict[str, Any]]:
        """Pages the token can manage, each with its own page access token."""
        return self.fetch_all("me/accounts", {"fields": "id,name,access_token", "limit": 50})

    def get_conversations(
        self,
        page_id: str,
        page_token: str,
        user_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """One page of a Page's conversations, filtered to `user_id` when given."""
        payload = self.request(f"{page_id}/conversations", {
            "fields": "id,participants,snippet,updated_time,referral",
            "user_id": user_id,
            "limit": None if user_id else limit,
        }, access_token=page_token)
        return payload.get("data") or []

    def get_messages(self, conversation_id: str, page_token: str, limit: int = 50) -> List[Dict[str, Any]]:
        payload = self.request(f"{conversation_id}/messages", {
            "fields": "id,referral,created_time",
            "limit": limit,
        }, access_token=page_token)
        return payload.get("data") or []


def _safe_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {"error": {"message": response.text[:200]}}
