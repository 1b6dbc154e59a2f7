"""
Trading Robot Engine Historical Data Manager
Получение и кеширование исторических свечей Twelve Data
"""

import asyncio
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import List, Dict, Any, Optional

import aiohttp
import numpy as np
import pandas as pd

from utils.logger import setup_logger
from utils.helpers import (
    ConfigurationError, RobotEngineError, ensure_utc, safe_float, retry_async, Timer
)
from app.config.settings import Settings, get_settings


# ============================================================================
# КОНСТАНТЫ И ТИПЫ
# ============================================================================

logger = setup_logger(__name__)

TWELVEDATA_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"
TWELVEDATA_MAX_OUTPUTSIZE = 5000

# Минимальное покрытие окна кешем, при котором API не вызывается
CACHE_MIN_COVERAGE = 0.8

# Длительность интервалов Twelve Data в секундах
INTERVAL_SECONDS = {
    '1min': 60,
    '5min': 300,
    '15min': 900,
    '30min': 1800,
    '45min': 2700,
    '1h': 3600,
    '2h': 7200,
    '4h': 14400,
    '1day': 86400,
}

# Базовые цены для симуляции
SIMULATED_BASE_PRICES = {
    'EUR/USD': 1.0850,
    'GBP/USD': 1.2650,
    'USD/JPY': 149.50,
    'USD/CHF': 0.8750,
    'AUD/USD': 0.6450,
    'BTC/USD': 43000.0,
    'ETH/USD': 2250.0,
    'XAU/USD': 2050.0,
}
DEFAULT_SIMULATED_PRICE = 100.0
SIMULATED_VOLATILITY = 0.005


class MarketDataError(RobotEngineError):
    """Ошибка получения рыночных данных"""
    pass


@dataclass
class CandleData:
    """Данные одной свечи"""
    open: float
    high: float
    low: float
    close: float
    timestamp: datetime
    volume: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['timestamp'] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_record(cls, record) -> 'CandleData':
        """Создание из CandleRecord кеша"""
        return cls(
            open=float(record.open),
            high=float(record.high),
            low=float(record.low),
            close=float(record.close),
            volume=safe_float(record.volume),
            timestamp=ensure_utc(record.timestamp),
        )


# ============================================================================
# ОСНОВНОЙ КЛАСС ДЛЯ ИСТОРИЧЕСКИХ ДАННЫХ
# ============================================================================

class HistoricalDataManager:
    """
    Менеджер исторических данных

    Порядок источников: кеш в БД -> Twelve Data REST -> симуляция.
    Порядок свечей в результате не гарантируется.
    """

    def __init__(
        self,
        database=None,
        settings: Optional[Settings] = None,
        rng: Optional[np.random.Generator] = None
    ):
        self.settings = settings or get_settings()
        self.logger = setup_logger(f"{__name__}.HistoricalDataManager")

        self.database = database
        self.rng = rng or np.random.default_rng()

        self.interval = self.settings.MARKET_DATA_INTERVAL
        if self.interval not in INTERVAL_SECONDS:
            raise ConfigurationError(f"Unsupported market data interval: {self.interval}")
        self.interval_seconds = INTERVAL_SECONDS[self.interval]

        # Статистика
        self.stats = {
            'requests_made': 0,
            'cache_hits': 0,
            'cache_misses': 0,
            'simulated': 0,
            'data_points_fetched': 0,
            'errors': 0
        }

    @property
    def api_enabled(self) -> bool:
        return bool(self.settings.TWELVEDATA_API_KEY)

    @property
    def cache_enabled(self) -> bool:
        return self.database is not None and self.settings.MARKET_DATA_CACHE_ENABLED

    def expected_candle_count(self, start: datetime, end: datetime) -> int:
        """Сколько свечей помещается в окно"""
        seconds = (ensure_utc(end) - ensure_utc(start)).total_seconds()
        return max(1, int(seconds // self.interval_seconds))

    async def get_historical_candles_for_window(
        self,
        symbol: str,
        start: datetime,
        end: datetime
    ) -> List[CandleData]:
        """
        Свечи символа за окно [start, end]

        Args:
            symbol: Инструмент в формате Twelve Data (например, 'BTC/USD')
            start: Начало окна
            end: Конец окна

        Returns:
            Список свечей CandleData
        """
        start, end = ensure_utc(start), ensure_utc(end)
        if end <= start:
            raise MarketDataError(f"Invalid candle window for {symbol}: {start} >= {end}")

        with Timer(f"candles_{symbol}"):
            expected = self.expected_candle_count(start, end)

            if self.cache_enabled:
                records = await self.database.get_candles(symbol, self.interval, start, end)
                if len(records) >= expected * CACHE_MIN_COVERAGE:
                    self.stats['cache_hits'] += 1
                    self.logger.debug(f"📱 Cache hit for {symbol}: {len(records)}/{expected} candles")
                    return [CandleData.from_record(record) for record in records]
                self.stats['cache_misses'] += 1

            if self.api_enabled:
                try:
                    candles = await retry_async(
                        lambda: self._fetch_from_twelvedata(symbol, start, end),
                        max_retries=self.settings.MARKET_DATA_MAX_RETRIES,
                        delay=1.0,
                        exceptions=(aiohttp.ClientError, asyncio.TimeoutError, MarketDataError),
                    )
                except (aiohttp.ClientError, asyncio.TimeoutError, MarketDataError) as e:
                    self.stats['errors'] += 1
                    self.logger.warning(f"⚠️ Twelve Data request failed for {symbol}: {e}")
                    candles = []

                if candles:
                    self.stats['data_points_fetched'] += len(candles)
                    self.logger.info(f"✅ Fetched {len(candles)} candles for {symbol} {self.interval}")

                    if self.cache_enabled:
                        await self.database.save_candles(symbol, self.interval, candles)

                    return candles

            self.logger.warning(f"⚠️ Using simulated candles for {symbol} ({start} - {end})")
            return self.generate_simulated_candles(symbol, start, end)

    async def _fetch_from_twelvedata(self, symbol: str, start: datetime, end: datetime) -> List[CandleData]:
        """Запрос time_series в Twelve Data"""
        self.stats['requests_made'] += 1

        params = {
            'symbol': symbol,
            'interval': self.interval,
            'start_date': start.strftime(TWELVEDATA_DATETIME_FORMAT),
            'end_date': end.strftime(TWELVEDATA_DATETIME_FORMAT),
            'timezone': 'UTC',
            'outputsize': min(self.expected_candle_count(start, end) + 1, TWELVEDATA_MAX_OUTPUTSIZE),
            'apikey': self.settings.TWELVEDATA_API_KEY,
        }
        url = f"{self.settings.TWELVEDATA_REST_URL.rstrip('/')}/time_series"
        timeout = aiohttp.ClientTimeout(total=self.settings.MARKET_DATA_TIMEOUT)

        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(url, params=params) as response:
                if response.status != 200:
                    raise MarketDataError(f"Twelve Data HTTP {response.status} for {symbol}")
                payload = await response.json(content_type=None)

        if payload.get('status') == 'error':
            raise MarketDataError(f"Twelve Data error for {symbol}: {payload.get('message')}")

        return self.parse_time_series(payload.get('values') or [])

    @staticmethod
    def parse_time_series(values: List[Dict[str, Any]]) -> List[CandleData]:
        """
        Разбор массива values из ответа time_series

        Строки с нечисловыми ценами отбрасываются.
        """
        if not values:
            return []

        df = pd.DataFrame(values)
        df['timestamp'] = pd.to_datetime(df['datetime'], utc=True, errors='coerce')
        for column in ('open', 'high', 'low', 'close'):
            df[column] = pd.to_numeric(df[column], errors='coerce')
        if 'volume' in df.columns:
            df['volume'] = pd.to_numeric(df['volume'], errors='coerce').fillna(0.0)
        else:
            df['volume'] = 0.0

        df = df.dropna(subset=['timestamp', 'open', 'high', 'low', 'close'])
        df = df[df['close'] > 0]

        return [
            CandleData(
                open=float(row.open),
                high=float(row.high),
                low=float(row.low),
                close=float(row.close),
                volume=float(row.volume),
                timestamp=row.timestamp.to_pydatetime(),
            )
            for row in df.itertuples(index=False)
        ]

    def generate_simulated_candles(self, symbol: str, start: datetime, end: datetime) -> List[CandleData]:
        """Случайное блуждание от базовой цены символа"""
        count = self.expected_candle_count(start, end)
        step = timedelta(seconds=self.interval_seconds)
        price = SIMULATED_BASE_PRICES.get(symbol, DEFAULT_SIMULATED_PRICE)

        moves = self.rng.uniform(-1.0, 1.0, size=count)
        wicks = self.rng.uniform(0.0, 1.0, size=(count, 2))
        volumes = self.rng.uniform(0.0, 1_000_000.0, size=count)

        candles = []
        for i in range(count):
            volatility = price * SIMULATED_VOLATILITY
            open_price = price
            close_price = max(open_price + moves[i] * volatility, open_price * 0.5)

            candles.append(CandleData(
                open=open_price,
                high=max(open_price, close_price) + wicks[i, 0] * volatility,
                low=max(min(open_price, close_price) - wicks[i, 1] * volatility, close_price * 0.5),
                close=close_price,
                volume=float(volumes[i]),
                timestamp=ensure_utc(start) + step * i,
            ))
            price = close_price

        self.stats['simulated'] += 1
        self.logger.info(f"🔧 Generated {len(candles)} simulated candles for {symbol}")
        return candles

    def get_stats(self) -> Dict[str, Any]:
        """Статистика менеджера"""
        return {
            'interval': self.interval,
            'api_enabled': self.api_enabled,
            'cache_enabled': self.cache_enabled,
            **self.stats
        }
