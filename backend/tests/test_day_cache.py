from __future__ import annotations

from tradersmind.services.day_cache import DayKeyedCache, chart_cache, quote_cache


def test_keys_follow_ticker_and_utc_day(caches):
    quotes, charts = caches
    assert quotes.key_for(" aapl ") == "AAPL_2024-01-01"
    assert charts.key_for("AAPL") == "chart_AAPL_2024-01-01"


def test_put_then_get_same_day(caches):
    quotes, _ = caches
    key = quotes.put("msft", {"price": 410.2})
    assert key == "MSFT_2024-01-01"
    assert quotes.get("MSFT") == {"price": 410.2}
    assert key in quotes


def test_entries_from_previous_day_are_absent(caches, clock):
    quotes, _ = caches
    quotes.put("AAPL", {"price": 190.0})
    clock.advance(days=1)

    assert quotes.get("AAPL") is None
    assert len(quotes) == 1
    assert quotes.sweep_expired() == 1
    assert len(quotes) == 0


def test_sweep_keeps_todays_entries(caches, clock):
    quotes, _ = caches
    quotes.put("AAPL", {})
    clock.advance(hours=10)
    quotes.put("TSLA", {})

    assert quotes.sweep_expired() == 1
    assert quotes.get("TSLA") == {}


def test_release_reports_whether_anything_was_removed(caches):
    _, charts = caches
    key = charts.put("NVDA", b"png")
    assert charts.release(key) is True
    assert charts.release(key) is False
    assert charts.release("chart_NOPE_2024-01-01") is False


def test_owns_routes_prefixed_keys_to_the_right_cache(caches):
    quotes, charts = caches
    assert quotes.owns("AAPL_2024-01-01") is True
    assert quotes.owns("chart_AAPL_2024-01-01") is False
    assert charts.owns("chart_AAPL_2024-01-01") is True
    assert charts.owns("AAPL_2024-01-01") is False


def test_factories_default_to_wall_clock():
    assert isinstance(quote_cache(), DayKeyedCache)
    assert chart_cache().prefix == "chart_"
    assert chart_cache().stats() == {"name": "chart cache", "size": 0, "keys": []}
