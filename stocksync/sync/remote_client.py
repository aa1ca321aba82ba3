"""Remote source client — Finale-style inventory REST + report API.

Every HTTP call waits on the shared RateLimiter first. Responses are mapped
onto the error taxonomy so callers never see raw httpx errors:

  401 / 403                 → AuthError (fatal)
  429                       → wait (Retry-After or backoff) and retry through
                              the limiter; RateLimited after max waits
  5xx, timeout, conn error  → TransportError (retryable)
  other 4xx                 → TransportError (not retryable)
  2xx but unusable body     → MalformedResponse with a raw snippet

Usage:
    client = FinaleClient.from_settings(settings, limiter)
    page = await client.fetch_page("item", cursor=None, sync_filter=SyncFilter())
    while not page.done:
        page = await client.fetch_page("item", page.next_cursor, sync_filter)
"""

import base64
import csv
import io
import logging
import re
from typing import AsyncIterator, Protocol
from urllib.parse import quote

import httpx

from ..http_client import http as shared_http
from .errors import AuthError, MalformedResponse, RateLimited, TransportError
from .rate_limiter import RateLimiter
from ..utils import safe_float
from .records import (
    ITEM,
    REPORT_FIELDS,
    VENDOR,
    Page,
    RemoteRecord,
    SyncFilter,
    natural_key,
    record_from_payload,
)

log = logging.getLogger("stocksync.remote")

DEFAULT_BASE_URL = "https://app.finaleinventory.com"

_ENDPOINTS = {ITEM: "product", VENDOR: "partygroup"}
# Wrapper keys seen around list payloads
_LIST_KEYS = ("products", "vendors", "partyGroups", "items", "data", "results")
_MAX_THROTTLE_BACKOFF = 60
# Consumption report windows, in days, and the item field each one feeds
CONSUMPTION_WINDOWS = {14: "consumption_14_days", 30: "consumption_30_days"}
_QUANTITY_COLUMNS = ("Quantity\nsum", "Quantity", "quantity", "quantityConsumed")


class RemoteSource(Protocol):
    """What the orchestrator needs from a remote source."""

    async def fetch_page(self, kind: str, cursor: int | None,
                         sync_filter: SyncFilter) -> Page: ...

    async def fetch_by_keys(self, kind: str, keys: list[str],
                            sync_filter: SyncFilter) -> list[RemoteRecord]: ...

    def fetch_full_dump(self, kind: str, sync_filter: SyncFilter,
                        report_url: str | None = None) -> AsyncIterator[RemoteRecord]: ...

    def report_url(self, kind: str) -> str | None: ...

    def skip_cursor(self, cursor: int | None) -> int | None: ...

    async def test_connection(self) -> bool: ...


def clean_account_path(path: str) -> str:
    """Accept an account name or a pasted Finale URL and return the account name."""
    path = (path or "").strip()
    path = re.sub(r"^https?://", "", path)
    host, _, rest = path.partition("/")
    if host.endswith("finaleinventory.com"):
        subdomain = host[:-len("finaleinventory.com")].rstrip(".")
        if subdomain and subdomain != "app":
            return subdomain
        # app.finaleinventory.com/{account}/api/...
        return rest.split("/", 1)[0].strip()
    path = path.rstrip("/")
    path = re.sub(r"/api$", "", path)
    return path.strip()


def _retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None  # HTTP-date form, fall back to our own backoff


def _snippet(resp: httpx.Response) -> str:
    try:
        return resp.text[:2000]
    except UnicodeDecodeError:
        return repr(resp.content[:2000])


def _transpose(data: dict) -> list[dict] | None:
    """Finale sometimes answers column-wise: {"productId": [...], "stock": [...]}."""
    columns = {k: v for k, v in data.items() if isinstance(v, list)}
    if not columns or len(columns) != len(data):
        return None
    lengths = {len(v) for v in columns.values()}
    if len(lengths) != 1:
        return None
    n = lengths.pop()
    return [{k: v[i] for k, v in columns.items()} for i in range(n)]


def _rows_from_json(data) -> list[dict]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in _LIST_KEYS:
            if isinstance(data.get(key), list):
                return data[key]
        rows = _transpose(data)
        if rows is not None:
            return rows
    raise MalformedResponse(
        f"Unexpected payload shape: {type(data).__name__}", raw=str(data)[:2000]
    )


def _rows_from_csv(text: str) -> list[dict]:
    reader = csv.DictReader(io.StringIO(text))
    if not reader.fieldnames:
        raise MalformedResponse("CSV report has no header row", raw=text)
    return [dict(row) for row in reader]


class FinaleClient:
    def __init__(
        self,
        account_path: str,
        api_key: str,
        api_secret: str,
        *,
        limiter: RateLimiter | None = None,
        http: httpx.AsyncClient | None = None,
        base_url: str = DEFAULT_BASE_URL,
        page_size: int = 100,
        timeout: float = 30,
        max_rate_limit_waits: int = 5,
        inventory_report_url: str = "",
        vendors_report_url: str = "",
        consumption_14day_report_url: str = "",
        consumption_30day_report_url: str = "",
    ):
        self.account = clean_account_path(account_path)
        self.api_url = f"{base_url.rstrip('/')}/{self.account}/api"
        token = base64.b64encode(f"{api_key}:{api_secret}".encode()).decode()
        self._headers = {"Authorization": f"Basic {token}"}
        self.limiter = limiter or RateLimiter()
        self._http = http or shared_http
        self.page_size = page_size
        self.timeout = timeout
        self.max_rate_limit_waits = max_rate_limit_waits
        self._reports = {ITEM: inventory_report_url or None, VENDOR: vendors_report_url or None}
        self._consumption_reports = {
            14: consumption_14day_report_url or None,
            30: consumption_30day_report_url or None,
        }

    @classmethod
    def from_settings(cls, settings, limiter: RateLimiter | None = None,
                      http: httpx.AsyncClient | None = None) -> "FinaleClient":
        return cls(
            settings.finale_account_path,
            settings.finale_api_key,
            settings.finale_api_secret,
            limiter=limiter,
            http=http,
            base_url=settings.finale_base_url,
            page_size=settings.remote_page_size,
            timeout=settings.remote_timeout_seconds,
            max_rate_limit_waits=settings.remote_max_rate_limit_waits,
            inventory_report_url=settings.finale_inventory_report_url,
            vendors_report_url=settings.finale_vendors_report_url,
            consumption_14day_report_url=settings.finale_consumption_14day_report_url,
            consumption_30day_report_url=settings.finale_consumption_30day_report_url,
        )

    def report_url(self, kind: str) -> str | None:
        return self._reports.get(kind)

    def skip_cursor(self, cursor: int | None) -> int:
        """Cursor of the page after `cursor`, for stepping over a page that failed."""
        return (cursor or 0) + self.page_size

    # ── Transport ───────────────────────────────────────────────────

    async def _get(self, url: str, params: dict | None = None,
                   accept: str = "application/json") -> httpx.Response:
        """GET through the limiter, classifying every failure."""
        waits = 0
        headers = {**self._headers, "Accept": accept}
        while True:
            await self.limiter.acquire()
            try:
                resp = await self._http.get(url, params=params, headers=headers,
                                            timeout=self.timeout)
            except httpx.TimeoutException as e:
                raise TransportError(f"Timeout calling {url}: {e}") from e
            except httpx.HTTPError as e:
                raise TransportError(f"Connection error calling {url}: {e}") from e

            if resp.status_code == 429:
                waits += 1
                hint = _retry_after(resp.headers.get("Retry-After"))
                if waits > self.max_rate_limit_waits:
                    raise RateLimited(
                        f"Still throttled after {self.max_rate_limit_waits} waits", retry_after=hint
                    )
                wait = hint if hint is not None else min(2 ** waits, _MAX_THROTTLE_BACKOFF)
                log.warning("Remote 429 — retry in %.1fs (wait %d/%d)",
                            wait, waits, self.max_rate_limit_waits)
                self.limiter.penalize(wait)
                continue
            if resp.status_code in (401, 403):
                raise AuthError(
                    f"Remote rejected credentials ({resp.status_code})",
                    status_code=resp.status_code,
                )
            if resp.status_code >= 500:
                raise TransportError(
                    f"Remote {resp.status_code}: {_snippet(resp)[:300]}",
                    status_code=resp.status_code,
                )
            if resp.status_code >= 400:
                raise TransportError(
                    f"Remote {resp.status_code}: {_snippet(resp)[:300]}",
                    status_code=resp.status_code,
                    retryable=False,
                )
            return resp

    def _json(self, resp: httpx.Response):
        content_type = resp.headers.get("content-type", "")
        if "json" not in content_type:
            raise MalformedResponse(
                f"Expected JSON, got {content_type or 'no content type'}",
                raw=_snippet(resp), status_code=resp.status_code, content_type=content_type,
            )
        try:
            return resp.json()
        except ValueError as e:
            raise MalformedResponse(
                f"Undecodable JSON body: {e}",
                raw=_snippet(resp), status_code=resp.status_code, content_type=content_type,
            ) from e

    def _records(self, kind: str, rows: list, sync_filter: SyncFilter) -> tuple[list, int]:
        records, malformed, sample = [], 0, None
        for row in rows:
            record = record_from_payload(kind, row, sync_filter.fields)
            if record is None:
                malformed += 1
                sample = sample if sample is not None else row
                continue
            if sync_filter.admits(record):
                records.append(record)
        if malformed:
            log.warning("Dropped %d %s row(s) without a natural key, e.g. %s",
                        malformed, kind, str(sample)[:300])
        return records, malformed

    # ── Operations ──────────────────────────────────────────────────

    async def fetch_page(self, kind: str, cursor: int | None,
                         sync_filter: SyncFilter) -> Page:
        """One page of `kind`. next_cursor is None on the last page."""
        offset = cursor or 0
        resp = await self._get(
            f"{self.api_url}/{_ENDPOINTS[kind]}",
            params={"limit": self.page_size, "offset": offset},
        )
        rows = _rows_from_json(self._json(resp))
        records, malformed = self._records(kind, rows, sync_filter)
        next_cursor = offset + self.page_size if len(rows) >= self.page_size else None
        log.debug("Fetched %s page offset=%d: %d rows, %d kept", kind, offset, len(rows), len(records))
        return Page(records=records, next_cursor=next_cursor, malformed=malformed)

    async def fetch_by_keys(self, kind: str, keys: list[str],
                            sync_filter: SyncFilter) -> list[RemoteRecord]:
        """Fetch an explicit key list, one lookup per key. Unknown keys are skipped."""
        out = []
        for key in keys:
            try:
                resp = await self._get(f"{self.api_url}/{_ENDPOINTS[kind]}/{quote(key, safe='')}")
            except TransportError as e:
                if e.status_code == 404:
                    log.info("%s %s not found on remote", kind, key)
                    continue
                raise
            data = self._json(resp)
            record = record_from_payload(kind, data, sync_filter.fields)
            if record is None:
                raise MalformedResponse(f"{kind} {key} has no natural key", raw=str(data)[:2000])
            if sync_filter.admits(record):
                out.append(record)
        return out

    async def fetch_full_dump(self, kind: str, sync_filter: SyncFilter,
                              report_url: str | None = None) -> AsyncIterator[RemoteRecord]:
        """Stream every record from a bulk report export (JSON array or CSV)."""
        url = report_url or self.report_url(kind)
        if not url:
            raise ValueError(f"No report URL configured for {kind}")
        rows = await self._report_rows(url)
        records, _ = self._records(kind, rows, sync_filter)
        log.info("Report export for %s: %d rows, %d records", kind, len(rows), len(records))
        if kind == ITEM and (
            sync_filter.fields is None or set(REPORT_FIELDS) & set(sync_filter.fields)
        ):
            await self._merge_consumption(records, sync_filter.fields)
        for record in records:
            yield record

    async def _report_rows(self, url: str) -> list[dict]:
        # The streaming variant of the report never terminates cleanly
        url = url.replace("pivotTableStream", "pivotTable")
        resp = await self._get(url, accept="application/json, text/csv")
        content_type = resp.headers.get("content-type", "")
        if "csv" in content_type or "text/plain" in content_type:
            return _rows_from_csv(resp.text)
        return _rows_from_json(self._json(resp))

    async def fetch_consumption(self, days: int) -> dict[str, float] | None:
        """Units consumed per SKU over the last `days`, summed across report rows.

        None when the report is not configured or could not be read; a bad
        consumption report never fails the inventory dump it decorates.
        Credential errors still propagate.
        """
        url = self._consumption_reports.get(days)
        if not url:
            log.debug("No %d-day consumption report configured", days)
            return None
        try:
            rows = await self._report_rows(url)
        except (TransportError, MalformedResponse, RateLimited) as e:
            log.warning("Skipping %d-day consumption report: %s", days, e)
            return None
        totals: dict[str, float] = {}
        for row in rows:
            key = natural_key(ITEM, row)
            if key is None:
                continue
            quantity = next(
                (safe_float(row[c]) for c in _QUANTITY_COLUMNS if row.get(c) not in (None, "")),
                None,
            )
            totals[key] = totals.get(key, 0.0) + (quantity or 0.0)
        log.info("%d-day consumption report: %d rows, %d SKUs", days, len(rows), len(totals))
        return totals

    async def _merge_consumption(self, records: list[RemoteRecord], fields=None) -> None:
        """Attach consumption totals; SKUs a fetched report does not list consumed nothing."""
        for days, name in CONSUMPTION_WINDOWS.items():
            if fields is not None and name not in fields:
                continue
            totals = await self.fetch_consumption(days)
            if totals is None:
                continue
            for record in records:
                record.fields[name] = totals.get(record.key, 0.0)

    async def test_connection(self) -> bool:
        try:
            await self._get(f"{self.api_url}/{_ENDPOINTS[ITEM]}", params={"limit": 1})
            return True
        except (AuthError, TransportError, RateLimited) as e:
            log.warning("Remote connection test failed: %s", e)
            return False


async def collect(iterator: AsyncIterator[RemoteRecord]) -> list[RemoteRecord]:
    return [record async for record in iterator]
