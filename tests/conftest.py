import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
import pytest

from jobmaster.core.config import Settings
from jobmaster.db import Database
from jobmaster.services.job_store import JobStore
from jobmaster.services.upstream import PortfolioApiClient

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def day(n: float) -> str:
    """ISO timestamp n days after BASE_TIME."""
    return (BASE_TIME + timedelta(days=n)).isoformat()


def linear_history(count: int, start: float = 100.0, step: float = 1.0) -> List[Dict[str, Any]]:
    return [{"timestamp": day(i), "price": start + step * i} for i in range(count)]


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        LOG_DIR="",
        SQLITE_PATH=str(tmp_path / "jobs.db"),
        DATABASE_URL="",
        QUEUE_BACKEND="memory",
        QUEUE_BACKOFF_DELAY=0.0,
        MAIN_API_URL="http://main.test",
        AUTH_URL="http://auth.test/oauth/token",
        AUTH_CLIENT_ID="client",
        AUTH_CLIENT_SECRET="secret",
        AUTH_AUDIENCE="https://api.test",
        RATE_LIMIT_ENABLED=False,
    )


@pytest.fixture
def db(settings) -> Database:
    database = Database(settings.DATABASE_URL, settings.SQLITE_PATH)
    database.init_schema()
    yield database
    database.close()


@pytest.fixture
def store(db) -> JobStore:
    return JobStore(db)


class FakeUpstream:
    """
    In-memory stand-in for the portfolio API, served through httpx.MockTransport.
    `histories` maps symbol -> list of samples, raw JSON text, or an int HTTP
    status to fail with.
    """

    def __init__(self, portfolio: Any = None, histories: Optional[Dict[str, Any]] = None,
                 token_status: int = 200, callback_status: int = 200):
        self.portfolio = portfolio if portfolio is not None else []
        self.histories = histories or {}
        self.token_status = token_status
        self.callback_status = callback_status
        self.requests: List[httpx.Request] = []
        self.callbacks: List[Dict[str, Any]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.url.host == "auth.test":
            if self.token_status != 200:
                return httpx.Response(self.token_status, text="denied")
            return httpx.Response(200, json={"access_token": "test-token", "token_type": "Bearer"})
        if path.endswith("/portfolio"):
            return httpx.Response(200, json=self.portfolio)
        if path.startswith("/api/stocks/"):
            symbol = path.split("/")[3]
            history = self.histories.get(symbol, [])
            if isinstance(history, str):
                return httpx.Response(200, text=history, headers={"Content-Type": "application/json"})
            if isinstance(history, int):
                return httpx.Response(history, text="upstream error")
            return httpx.Response(200, json=history)
        if path == "/api/estimations/callback":
            self.callbacks.append(json.loads(request.content))
            return httpx.Response(self.callback_status, json={})
        return httpx.Response(404)

    def client(self, settings: Settings) -> PortfolioApiClient:
        return PortfolioApiClient(settings, client=httpx.Client(transport=httpx.MockTransport(self)))
