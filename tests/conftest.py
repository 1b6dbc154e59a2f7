import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List

import numpy as np
import pytest

# Add project root so `import app`, `import data` etc. work in tests
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.config.settings import Settings  # noqa: E402
from data.database import Database  # noqa: E402
from data.historical_data import CandleData  # noqa: E402


def make_settings(tmp_path, **overrides) -> Settings:
    values = {
        'DATABASE_URL': f"sqlite:///{tmp_path / 'test.db'}",
        'TWELVEDATA_API_KEY': None,
        'SCHEDULER_ENABLED': False,
        'LOG_LEVEL': 'WARNING',
        'TIMEZONE': 'UTC',
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def oscillating_candles(start: datetime, count: int = 60, base: float = 100.0) -> List[CandleData]:
    """
    Closes alternate around base with growing amplitude, so from any entry
    both a higher and a lower close exist a few candles later.
    """
    candles = []
    for i in range(count):
        close = base + (-1) ** i * (1 + 0.1 * i)
        candles.append(CandleData(
            open=close,
            high=close + 0.5,
            low=close - 0.5,
            close=close,
            volume=1000.0,
            timestamp=start + timedelta(minutes=i),
        ))
    return candles


def flat_candles(start: datetime, count: int = 60, price: float = 100.0) -> List[CandleData]:
    return [
        CandleData(open=price, high=price, low=price, close=price, volume=0.0,
                   timestamp=start + timedelta(minutes=i))
        for i in range(count)
    ]


class StubMarketData:
    """Market data source returning oscillating candles for any window."""

    def __init__(self):
        self.calls: Dict[str, int] = {}

    async def get_historical_candles_for_window(self, symbol, start, end):
        self.calls[symbol] = self.calls.get(symbol, 0) + 1
        minutes = int((end - start).total_seconds() // 60)
        return oscillating_candles(start, count=minutes)


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def rng():
    return np.random.default_rng(12345)


@pytest.fixture
async def database(settings):
    db = Database(settings)
    await db.init()
    yield db
    await db.close()


@pytest.fixture
def stub_market_data():
    return StubMarketData()


@pytest.fixture
def window_start():
    return datetime(2024, 3, 14, 1, 0, tzinfo=timezone.utc)


@pytest.fixture
async def make_robot(database):
    async def _make(**overrides):
        data = {
            'name': 'Test Robot',
            'execution_time': '05:00',
            'min_trades_per_day': 5,
            'max_trades_per_day': 5,
            'profit_range_min': 20,
            'profit_range_max': 20,
            'win_rate': 100,
            'trade_window_start': '01:00',
            'trade_window_end': '04:00',
            'symbols': ['BTC/USD', 'ETH/USD'],
            'min_account_balance': 0,
        }
        data.update(overrides)
        return await database.create_robot(data)
    return _make


@pytest.fixture
async def make_account(database):
    counter = {'n': 0}

    async def _make(**overrides):
        counter['n'] += 1
        data = {
            'account_number': f"ACC-{counter['n']:04d}",
            'real_balance': 1000,
            'demo_balance': 0,
            'bonus_balance': 0,
        }
        data.update(overrides)
        return await database.create_account(data)
    return _make
