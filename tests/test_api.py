"""
Tests for the HTTP surface: manual execution and schedule management.
"""

import asyncio

import numpy as np
import pytest
from fastapi.testclient import TestClient

from conftest import make_settings
from app.main import create_app
from data.database import Database


async def seed(settings):
    database = Database(settings)
    await database.init()
    try:
        robot = await database.create_robot({
            'name': 'API Robot',
            'execution_time': '05:00',
            'min_trades_per_day': 5,
            'max_trades_per_day': 5,
            'profit_range_min': 20,
            'profit_range_max': 20,
            'win_rate': 100,
            'symbols': ['EUR/USD'],
        })
        account = await database.create_account({'account_number': 'API-0001', 'real_balance': 1000})
        await database.create_robot_assignment(robot.id, account.id)
        return robot.id
    finally:
        await database.close()


@pytest.fixture
def api_settings(tmp_path):
    return make_settings(tmp_path, SCHEDULER_ENABLED=True)


@pytest.fixture
def robot_id(api_settings):
    return asyncio.run(seed(api_settings))


@pytest.fixture
def client(api_settings, robot_id):
    app = create_app(api_settings, rng=np.random.default_rng(7))
    with TestClient(app) as test_client:
        yield test_client


class TestApi:
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()['status'] == "running"

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body['status'] == "healthy"
        assert body['database']['tables_exist'] is True
        assert body['scheduled_robots'] == 1
        assert body['market_data']['api_enabled'] is False

    def test_execute_robot(self, client, robot_id):
        response = client.post(f"/robots/{robot_id}/execute")

        assert response.status_code == 200
        body = response.json()
        assert body['success'] is True
        assert body['stats']['clients_processed'] == 1
        assert body['stats']['trades_generated'] == 5
        assert float(body['stats']['total_profit']) == pytest.approx(20.0, abs=0.01)

    def test_execute_unknown_robot(self, client):
        response = client.post("/robots/unknown/execute")

        assert response.status_code == 200
        assert response.json()['success'] is False
        assert response.json()['stats'] is None

    def test_schedule_listing(self, client, robot_id):
        statuses = client.get("/robots/schedule").json()

        assert len(statuses) == 1
        assert statuses[0]['robot_id'] == robot_id
        assert statuses[0]['robot_name'] == "API Robot"
        assert statuses[0]['next_run_at'].endswith("+00:00")

    def test_unschedule_and_reschedule(self, client, robot_id):
        removed = client.delete(f"/robots/{robot_id}/schedule").json()
        assert removed == {'robot_id': robot_id, 'unscheduled': True}
        assert client.get("/robots/schedule").json() == []

        again = client.delete(f"/robots/{robot_id}/schedule").json()
        assert again['unscheduled'] is False

        rescheduled = client.post(f"/robots/{robot_id}/reschedule").json()
        assert rescheduled['scheduled'] is True
        assert rescheduled['next_run_at'] is not None
        assert len(client.get("/robots/schedule").json()) == 1

    def test_reschedule_unknown_robot(self, client):
        response = client.post("/robots/unknown/reschedule")
        assert response.json() == {'robot_id': 'unknown', 'scheduled': False, 'next_run_at': None}
