from __future__ import annotations

import asyncio
import logging

from tradersmind.services.maintenance import MaintenanceService


def test_sweep_once_clears_yesterdays_cache_and_stale_threads(settings, registry, caches, threads, clock):
    quotes, charts = caches
    quotes.put("AAPL", {})
    charts.put("AAPL", b"png")
    asyncio.run(threads.get_or_create("u1", "alice", "chan-1"))
    clock.advance(days=1)
    charts.put("MSFT", b"png")

    service = MaintenanceService(settings, registry, caches, threads)

    assert service.sweep_once() == 2
    assert len(quotes) == 0
    assert len(charts) == 1
    assert len(threads) == 0


def test_log_stats_reports_registry_and_caches(settings, registry, caches, threads, caplog):
    caplog.set_level(logging.INFO, logger="tradersmind.services.maintenance")
    registry.track_button_prompt("p1", "chan-1", ["AAPL"])
    caches[0].put("AAPL", {})

    MaintenanceService(settings, registry, caches, threads).log_stats()

    assert "tracked=1" in caplog.text
    assert "quote_cache=1" in caplog.text


def test_start_and_stop(settings, registry, caches, threads):
    service = MaintenanceService(settings, registry, caches, threads)

    async def scenario():
        await service.start()
        running = service._task is not None and not service._task.done()
        await service.stop()
        return running

    assert asyncio.run(scenario()) is True
    assert service._task is None
