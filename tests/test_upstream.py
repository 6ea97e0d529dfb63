"""
Upstream HTTP client against httpx.MockTransport.
"""
import json

import httpx
import pytest

from jobmaster.core.errors import UpstreamUnavailableError
from jobmaster.schemas import Holding
from jobmaster.services.upstream import PortfolioApiClient, RejectedHolding
from conftest import FakeUpstream, linear_history


def client_for(settings, handler) -> PortfolioApiClient:
    return PortfolioApiClient(settings, client=httpx.Client(transport=httpx.MockTransport(handler)))


class TestToken:

    def test_client_credentials_body(self, settings):
        fake = FakeUpstream()
        token = fake.client(settings).fetch_token()

        assert token == "test-token"
        sent = json.loads(fake.requests[0].content)
        assert sent == {
            "client_id": "client",
            "client_secret": "secret",
            "audience": "https://api.test",
            "grant_type": "client_credentials",
        }
        assert str(fake.requests[0].url) == "http://auth.test/oauth/token"

    def test_rejected_credentials(self, settings):
        with pytest.raises(UpstreamUnavailableError, match="HTTP 401"):
            FakeUpstream(token_status=401).client(settings).fetch_token()

    def test_missing_access_token(self, settings):
        client = client_for(settings, lambda r: httpx.Response(200, json={"token_type": "Bearer"}))
        with pytest.raises(UpstreamUnavailableError, match="no access_token"):
            client.fetch_token()

    def test_network_error(self, settings):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(UpstreamUnavailableError, match="ConnectError"):
            client_for(settings, refuse).fetch_token()


class TestPortfolio:

    def test_parses_holdings(self, settings):
        fake = FakeUpstream(portfolio=[{"symbol": "AAPL", "quantity": 10}, {"symbol": "MSFT", "quantity": 2.5}])
        holdings = fake.client(settings).get_portfolio("ada@example.com", "tok")

        assert [(h.symbol, h.quantity) for h in holdings] == [("AAPL", 10.0), ("MSFT", 2.5)]
        request = fake.requests[0]
        assert request.url.path == "/api/user/ada@example.com/portfolio"
        assert request.headers["Authorization"] == "Bearer tok"

    def test_empty_portfolio(self, settings):
        assert FakeUpstream(portfolio=[]).client(settings).get_portfolio("ada@example.com", "tok") == []

    @pytest.mark.parametrize("entry, symbol, field", [
        ({"symbol": "AAPL"}, "AAPL", "quantity"),
        ({"symbol": "AAPL", "quantity": -1}, "AAPL", "quantity"),
        ({"symbol": "", "quantity": 1}, "<unknown>", "symbol"),
        ("AAPL", "<unknown>", "entry"),
    ])
    def test_bad_entry_is_rejected_in_place(self, settings, entry, symbol, field):
        body = [{"symbol": "MSFT", "quantity": 1}, entry, {"symbol": "TSLA", "quantity": 2}]
        client = client_for(settings, lambda r: httpx.Response(200, json=body))
        holdings = client.get_portfolio("ada@example.com", "tok")

        assert isinstance(holdings[0], Holding) and holdings[0].symbol == "MSFT"
        assert isinstance(holdings[2], Holding) and holdings[2].symbol == "TSLA"
        rejected = holdings[1]
        assert isinstance(rejected, RejectedHolding)
        assert rejected.symbol == symbol
        assert rejected.error.startswith(f"malformed holding: {field}")

    def test_non_list_body(self, settings):
        client = client_for(settings, lambda r: httpx.Response(200, json={"symbol": "AAPL", "quantity": 1}))
        with pytest.raises(UpstreamUnavailableError, match="malformed"):
            client.get_portfolio("ada@example.com", "tok")

    def test_server_error(self, settings):
        client = client_for(settings, lambda r: httpx.Response(500, text="kaboom"))
        with pytest.raises(UpstreamUnavailableError, match="HTTP 500"):
            client.get_portfolio("ada@example.com", "tok")

    def test_non_json_body(self, settings):
        client = client_for(settings, lambda r: httpx.Response(200, text="<html>"))
        with pytest.raises(UpstreamUnavailableError, match="not JSON"):
            client.get_portfolio("ada@example.com", "tok")


class TestPriceHistory:

    def test_requests_window(self, settings):
        fake = FakeUpstream(histories={"AAPL": linear_history(5)})
        samples = fake.client(settings).get_price_history("AAPL", "tok", days=30)

        assert len(samples) == 5
        assert samples[0].price == 100.0
        assert samples[0].timestamp.tzinfo is not None
        request = fake.requests[0]
        assert request.url.path == "/api/stocks/AAPL/history"
        assert request.url.params["days"] == "30"
        assert request.headers["Authorization"] == "Bearer tok"

    def test_upstream_failure(self, settings):
        fake = FakeUpstream(histories={"AAPL": 503})
        with pytest.raises(UpstreamUnavailableError, match="AAPL"):
            fake.client(settings).get_price_history("AAPL", "tok")

    def test_bad_sample(self, settings):
        client = client_for(settings, lambda r: httpx.Response(200, json=[{"timestamp": "yesterday", "price": 1}]))
        with pytest.raises(UpstreamUnavailableError, match="malformed"):
            client.get_price_history("AAPL", "tok")

    @pytest.mark.parametrize("literal", ["NaN", "Infinity", "-Infinity"])
    def test_non_finite_price(self, settings, literal):
        fake = FakeUpstream(histories={"AAPL": f'[{{"timestamp": "2024-01-01T00:00:00Z", "price": {literal}}}]'})
        with pytest.raises(UpstreamUnavailableError, match="malformed"):
            fake.client(settings).get_price_history("AAPL", "tok")


class TestCallback:

    def test_posts_payload_with_short_timeout(self, settings):
        fake = FakeUpstream()
        fake.client(settings).post_callback({"jobId": "j1"}, "tok")

        assert fake.callbacks == [{"jobId": "j1"}]
        request = fake.requests[0]
        assert request.headers["Authorization"] == "Bearer tok"
        assert request.extensions["timeout"]["read"] == settings.CALLBACK_TIMEOUT

    def test_callback_rejected(self, settings):
        with pytest.raises(UpstreamUnavailableError, match="callback"):
            FakeUpstream(callback_status=500).client(settings).post_callback({"jobId": "j1"}, "tok")
