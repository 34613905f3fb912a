from __future__ import annotations

import logging
from typing import Any, Dict

import httpx

from tradersmind.config import Settings
from tradersmind.errors import ChartRenderError
from tradersmind.schemas import QuoteRecord
from tradersmind.services.day_cache import DayKeyedCache

logger = logging.getLogger(__name__)

CHART_WIDTH = 840
CHART_HEIGHT = 440
POSITIVE_COLOR = "#00ff88"
NEGATIVE_COLOR = "#ff4444"


def validate_quote(quote: QuoteRecord) -> None:
    expected = len(quote.dates)
    for name in ("opens", "highs", "lows", "closes"):
        values = getattr(quote, name)
        if len(values) != expected:
            raise ChartRenderError(f"Array length mismatch: {name} has {len(values)} items, expected {expected}")
    if expected < 2:
        raise ChartRenderError(f"Insufficient data points: {expected}, need at least 2")

    for idx in range(expected):
        o, h, low, c = quote.opens[idx], quote.highs[idx], quote.lows[idx], quote.closes[idx]
        if h < max(o, c) or low > min(o, c):
            logger.warning(
                "Inconsistent OHLC for %s on %s: open=%s high=%s low=%s close=%s",
                quote.symbol,
                quote.dates[idx],
                o,
                h,
                low,
                c,
            )


def build_chart_config(quote: QuoteRecord) -> Dict[str, Any]:
    color = POSITIVE_COLOR if quote.change >= 0 else NEGATIVE_COLOR
    sign = "+" if quote.change >= 0 else ""
    return {
        "type": "candlestick",
        "data": {
            "datasets": [
                {
                    "label": quote.symbol,
                    "data": [
                        {"x": day, "o": o, "h": h, "l": low, "c": c}
                        for day, o, h, low, c in zip(quote.dates, quote.opens, quote.highs, quote.lows, quote.closes)
                    ],
                    "color": {"up": POSITIVE_COLOR, "down": NEGATIVE_COLOR, "unchanged": "#999999"},
                }
            ]
        },
        "options": {
            "plugins": {
                "legend": {"display": False},
                "title": {
                    "display": True,
                    "color": color,
                    "text": f"{quote.symbol}  ${quote.price:.2f}  {sign}{quote.change:.2f} ({sign}{quote.change_percent:.2f}%)",
                },
            },
        },
    }


def build_embed(quote: QuoteRecord) -> Dict[str, Any]:
    positive = quote.change >= 0
    sign = "+" if positive else ""
    return {
        "title": f"\U0001F4CA {quote.symbol}",
        "description": f"**${quote.price:.2f}** {sign}{quote.change:.2f} ({sign}{quote.change_percent:.2f}%)",
        "color": 0x00FF88 if positive else 0xFF4444,
        "image": {"url": "attachment://chart.png"},
        "footer": {"text": f"Source: {quote.source}"},
    }


class ChartRenderer:
    """Renders candlestick PNGs through an HTTP chart endpoint, one per ticker per day."""

    def __init__(self, settings: Settings, cache: DayKeyedCache, http: httpx.AsyncClient | None = None) -> None:
        self.settings = settings
        self.cache = cache
        self._http = http

    async def render(self, quote: QuoteRecord) -> tuple[bytes, str]:
        cached = self.cache.get(quote.symbol)
        if cached is not None:
            logger.debug("Using cached chart for %s", quote.symbol)
            return cached, self.cache.key_for(quote.symbol)

        validate_quote(quote)
        body = {
            "version": "4",
            "width": CHART_WIDTH,
            "height": CHART_HEIGHT,
            "backgroundColor": "#2f3136",
            "format": "png",
            "chart": build_chart_config(quote),
        }
        try:
            if self._http is not None:
                resp = await self._http.post(self.settings.chart_render_url, json=body)
            else:
                async with httpx.AsyncClient(timeout=float(self.settings.chart_timeout_seconds)) as client:
                    resp = await client.post(self.settings.chart_render_url, json=body)
        except httpx.HTTPError as exc:
            raise ChartRenderError(f"Chart request for {quote.symbol} failed: {exc}") from exc

        if resp.status_code >= 300 or not resp.content:
            raise ChartRenderError(f"Chart renderer returned {resp.status_code} for {quote.symbol}")
        if not resp.headers.get("content-type", "").startswith("image/"):
            raise ChartRenderError(f"Chart renderer returned {resp.headers.get('content-type')} for {quote.symbol}")

        image = resp.content
        key = self.cache.put(quote.symbol, image)
        logger.info("Rendered chart for %s (%d bytes)", quote.symbol, len(image))
        return image, key
