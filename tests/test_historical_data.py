"""
Tests for the historical candle source chain: cache, Twelve Data, simulation.
"""

from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from conftest import flat_candles, make_settings
from data.historical_data import HistoricalDataManager, MarketDataError
from utils.helpers import ConfigurationError, ensure_utc


class TestSimulatedCandles:
    async def test_without_api_key_candles_are_simulated(self, settings, window_start):
        manager = HistoricalDataManager(settings=settings, rng=np.random.default_rng(1))

        candles = await manager.get_historical_candles_for_window(
            "BTC/USD", window_start, window_start + timedelta(hours=3)
        )

        assert len(candles) == 180
        assert candles[0].timestamp == window_start
        assert candles[0].open == pytest.approx(43000.0)
        assert all(candle.low <= min(candle.open, candle.close) for candle in candles)
        assert all(candle.high >= max(candle.open, candle.close) for candle in candles)
        assert all(candle.close > 0 for candle in candles)
        assert manager.get_stats()['simulated'] == 1

    async def test_unknown_symbol_uses_default_price(self, settings, window_start):
        manager = HistoricalDataManager(settings=settings, rng=np.random.default_rng(1))
        candles = manager.generate_simulated_candles("ABC/XYZ", window_start, window_start + timedelta(minutes=5))

        assert len(candles) == 5
        assert candles[0].open == pytest.approx(100.0)

    async def test_invalid_window_is_rejected(self, settings, window_start):
        manager = HistoricalDataManager(settings=settings)
        with pytest.raises(MarketDataError):
            await manager.get_historical_candles_for_window("BTC/USD", window_start, window_start)


class TestCandleCache:
    async def test_cached_window_skips_api(self, database, settings, window_start, monkeypatch):
        await database.save_candles("EUR/USD", "1min", flat_candles(window_start, count=60, price=1.08))
        manager = HistoricalDataManager(database, settings)

        async def fail(*args, **kwargs):
            raise AssertionError("API must not be called")

        monkeypatch.setattr(manager, "_fetch_from_twelvedata", fail)

        candles = await manager.get_historical_candles_for_window(
            "EUR/USD", window_start, window_start + timedelta(hours=1)
        )

        assert len(candles) == 60
        assert all(candle.close == pytest.approx(1.08) for candle in candles)
        assert manager.stats['cache_hits'] == 1

    async def test_api_results_are_cached(self, database, tmp_path, window_start, monkeypatch):
        settings = make_settings(tmp_path, TWELVEDATA_API_KEY="demo")
        manager = HistoricalDataManager(database, settings)
        calls = []

        async def fetch(symbol, start, end):
            calls.append(symbol)
            return flat_candles(start, count=60, price=2050.0)

        monkeypatch.setattr(manager, "_fetch_from_twelvedata", fetch)
        end = window_start + timedelta(hours=1)

        first = await manager.get_historical_candles_for_window("XAU/USD", window_start, end)
        second = await manager.get_historical_candles_for_window("XAU/USD", window_start, end)

        assert len(first) == len(second) == 60
        assert calls == ["XAU/USD"]
        assert manager.stats['cache_hits'] == 1

    async def test_api_failure_falls_back_to_simulation(self, tmp_path, window_start, monkeypatch):
        settings = make_settings(tmp_path, TWELVEDATA_API_KEY="demo", MARKET_DATA_MAX_RETRIES=0)
        manager = HistoricalDataManager(settings=settings, rng=np.random.default_rng(3))

        async def fetch(symbol, start, end):
            raise MarketDataError("rate limit exceeded")

        monkeypatch.setattr(manager, "_fetch_from_twelvedata", fetch)

        candles = await manager.get_historical_candles_for_window(
            "ETH/USD", window_start, window_start + timedelta(minutes=30)
        )

        assert len(candles) == 30
        assert candles[0].open == pytest.approx(2250.0)
        assert manager.stats['errors'] == 1
        assert manager.stats['simulated'] == 1


class TestParseTimeSeries:
    def test_parses_and_drops_bad_rows(self):
        values = [
            {"datetime": "2024-03-14 01:02:00", "open": "101.5", "high": "102", "low": "101", "close": "101.8",
             "volume": "12"},
            {"datetime": "2024-03-14 01:01:00", "open": "100", "high": "101", "low": "99.5", "close": "101.5"},
            {"datetime": "2024-03-14 01:00:00", "open": "n/a", "high": "101", "low": "99", "close": "100"},
            {"datetime": "not a date", "open": "1", "high": "1", "low": "1", "close": "1"},
            {"datetime": "2024-03-14 00:59:00", "open": "0", "high": "0", "low": "0", "close": "0"},
        ]

        candles = HistoricalDataManager.parse_time_series(values)

        assert len(candles) == 2
        assert ensure_utc(candles[0].timestamp) == datetime(2024, 3, 14, 1, 2, tzinfo=timezone.utc)
        assert candles[0].close == pytest.approx(101.8)
        assert candles[0].volume == pytest.approx(12.0)
        assert candles[1].volume == 0.0

    def test_empty_values(self):
        assert HistoricalDataManager.parse_time_series([]) == []


class TestConfiguration:
    def test_unsupported_interval_is_rejected(self, tmp_path):
        with pytest.raises(ConfigurationError):
            HistoricalDataManager(settings=make_settings(tmp_path, MARKET_DATA_INTERVAL="7min"))

    def test_interval_drives_candle_count(self, tmp_path, window_start):
        manager = HistoricalDataManager(settings=make_settings(tmp_path, MARKET_DATA_INTERVAL="5min"))
        assert manager.expected_candle_count(window_start, window_start + timedelta(hours=1)) == 12
