from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

import httpx

from tradersmind.config import Settings
from tradersmind.errors import QuoteUnavailableError
from tradersmind.schemas import QuoteRecord
from tradersmind.services.day_cache import DayKeyedCache

logger = logging.getLogger(__name__)

DATA_POINTS = 30

_YAHOO_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_7_0) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/121.0.0.0 Safari/537.36"
    ),
    "Accept": "application/json,text/plain,*/*",
    "Accept-Language": "en-US,en;q=0.9",
}


def _safe_float(value: Any) -> float | None:
    try:
        if value is None:
            return None
        if isinstance(value, str):
            clean = value.strip().replace(",", "").replace("$", "")
            if not clean:
                return None
            value = clean
        result = float(value)
    except (TypeError, ValueError):
        return None
    return None if result != result else result


def _safe_int(value: Any) -> int:
    parsed = _safe_float(value)
    return int(parsed) if parsed is not None else 0


def _build_record(
    symbol: str,
    rows: List[tuple[str, float, float, float, float, int]],
    source: str,
    company: str | None = None,
) -> QuoteRecord | None:
    rows = sorted(rows, key=lambda row: row[0])[-DATA_POINTS:]
    if len(rows) < 2:
        return None
    closes = [row[4] for row in rows]
    current = closes[-1]
    previous = closes[-2]
    change = current - previous
    change_percent = (change / previous * 100) if previous else 0.0
    return QuoteRecord(
        symbol=symbol,
        price=round(current, 2),
        change=round(change, 2),
        change_percent=round(change_percent, 2),
        dates=[row[0] for row in rows],
        opens=[row[1] for row in rows],
        highs=[row[2] for row in rows],
        lows=[row[3] for row in rows],
        closes=closes,
        volumes=[row[5] for row in rows],
        company=company or symbol,
        source=source,
    )


def _yahoo_chart(settings: Settings, symbol: str) -> QuoteRecord | None:
    url = f"{settings.yahoo_chart_url.rstrip('/')}/{symbol}"
    try:
        with httpx.Client(timeout=12.0, headers=_YAHOO_HEADERS) as client:
            resp = client.get(url, params={"range": "3mo", "interval": "1d"})
            if resp.status_code in {401, 403, 404, 429}:
                return None
            resp.raise_for_status()
            payload = resp.json()
    except Exception as exc:
        logger.warning("Yahoo chart request failed for %s: %s", symbol, exc)
        return None

    results = ((payload or {}).get("chart") or {}).get("result") or []
    if not results or not isinstance(results[0], dict):
        return None
    result = results[0]
    timestamps = result.get("timestamp") or []
    quote = ((result.get("indicators") or {}).get("quote") or [{}])[0] or {}
    rows: List[tuple[str, float, float, float, float, int]] = []
    for idx, ts in enumerate(timestamps):
        try:
            o = _safe_float(quote.get("open", [])[idx])
            h = _safe_float(quote.get("high", [])[idx])
            low = _safe_float(quote.get("low", [])[idx])
            c = _safe_float(quote.get("close", [])[idx])
            v = _safe_int(quote.get("volume", [])[idx])
        except (IndexError, TypeError):
            continue
        if None in (o, h, low, c):
            continue
        day = datetime.fromtimestamp(int(ts), tz=timezone.utc).date().isoformat()
        rows.append((day, o, h, low, c, v))
    meta = result.get("meta") or {}
    return _build_record(symbol, rows, "yahoo", company=meta.get("longName") or meta.get("symbol"))


def _alpha_vantage_daily(settings: Settings, symbol: str) -> QuoteRecord | None:
    if not settings.alpha_vantage_api_key:
        return None
    params = {
        "function": "TIME_SERIES_DAILY",
        "symbol": symbol,
        "outputsize": "compact",
        "apikey": settings.alpha_vantage_api_key,
    }
    try:
        with httpx.Client(timeout=12.0) as client:
            resp = client.get(settings.alpha_vantage_api_url, params=params)
            if resp.status_code in {401, 403, 404, 429}:
                return None
            resp.raise_for_status()
            payload = resp.json()
    except Exception as exc:
        logger.warning("Alpha Vantage request failed for %s: %s", symbol, exc)
        return None

    if not isinstance(payload, dict):
        return None
    if payload.get("Error Message"):
        logger.info("Alpha Vantage does not know %s", symbol)
        return None
    if payload.get("Note") or payload.get("Information"):
        logger.warning("Alpha Vantage rate limit reached while fetching %s", symbol)
        return None
    series = payload.get("Time Series (Daily)")
    if not isinstance(series, dict):
        return None
    rows: List[tuple[str, float, float, float, float, int]] = []
    for day, values in series.items():
        if not isinstance(values, dict):
            continue
        o = _safe_float(values.get("1. open"))
        h = _safe_float(values.get("2. high"))
        low = _safe_float(values.get("3. low"))
        c = _safe_float(values.get("4. close"))
        if None in (o, h, low, c):
            continue
        rows.append((day, o, h, low, c, _safe_int(values.get("5. volume"))))
    meta = payload.get("Meta Data") or {}
    return _build_record(symbol, rows, "alpha_vantage", company=meta.get("2. Symbol"))


Provider = Callable[[Settings, str], Optional[QuoteRecord]]


class QuoteService:
    """Daily quote history per ticker, cached for the calendar day.

    Providers are tried in order until one returns a usable record.
    """

    def __init__(
        self,
        settings: Settings,
        cache: DayKeyedCache,
        providers: List[Provider] | None = None,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self.providers = providers if providers is not None else [_yahoo_chart, _alpha_vantage_daily]

    async def fetch_quote(self, ticker: str) -> tuple[QuoteRecord, str]:
        symbol = ticker.strip().upper()
        cached = self.cache.get(symbol)
        if cached is not None:
            logger.debug("Using cached quote for %s", symbol)
            return cached, self.cache.key_for(symbol)

        for provider in self.providers:
            record = await asyncio.to_thread(provider, self.settings, symbol)
            if record is not None:
                key = self.cache.put(symbol, record)
                logger.info("Fetched %s quote from %s (%d points)", symbol, record.source, len(record.dates))
                return record, key

        raise QuoteUnavailableError(f"No quote data available for {symbol}")
