"""
HTTP client for the services the estimation worker depends on:
credential exchange, portfolio, price history and the result callback.
Every failure (network, timeout, non-2xx, malformed body) surfaces as
UpstreamUnavailableError.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
from urllib.parse import quote

import httpx
from pydantic import TypeAdapter, ValidationError as PydanticValidationError

from jobmaster.core.config import Settings
from jobmaster.core.errors import UpstreamUnavailableError
from jobmaster.schemas import Holding, PriceSample

logger = logging.getLogger(__name__)

_samples = TypeAdapter(List[PriceSample])


@dataclass
class RejectedHolding:
    """A portfolio entry that failed validation; skipped, not fatal."""
    symbol: str
    error: str


def _parse_holding(entry: Any) -> Union[Holding, RejectedHolding]:
    try:
        return Holding.model_validate(entry)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or "entry"
        symbol = entry.get("symbol") if isinstance(entry, dict) else None
        return RejectedHolding(
            symbol=str(symbol).strip() if symbol else "<unknown>",
            error=f"malformed holding: {field}: {first['msg']}",
        )


def _bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}", "Accept": "application/json"}


class PortfolioApiClient:
    def __init__(self, settings: Settings, client: Optional[httpx.Client] = None):
        self.settings = settings
        self.base_url = settings.MAIN_API_URL.rstrip("/")
        self.timeout = httpx.Timeout(settings.UPSTREAM_TIMEOUT)
        self.callback_timeout = httpx.Timeout(settings.CALLBACK_TIMEOUT)
        self._client = client or httpx.Client()

    def _request(self, method: str, url: str, what: str, **kwargs) -> Any:
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError(f"{what}: {type(e).__name__}: {e}") from e
        if response.status_code >= 400:
            detail = response.text.strip()[:200] or response.reason_phrase
            raise UpstreamUnavailableError(f"{what}: HTTP {response.status_code} {detail}")
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamUnavailableError(f"{what}: response is not JSON") from e

    def fetch_token(self) -> str:
        """Client-credentials grant against AUTH_URL; returns the bearer token."""
        body = self._request(
            "POST",
            self.settings.AUTH_URL,
            "credential exchange",
            json={
                "client_id": self.settings.AUTH_CLIENT_ID,
                "client_secret": self.settings.AUTH_CLIENT_SECRET,
                "audience": self.settings.AUTH_AUDIENCE,
                "grant_type": "client_credentials",
            },
            timeout=self.timeout,
        )
        token = body.get("access_token") if isinstance(body, dict) else None
        if not token:
            raise UpstreamUnavailableError("credential exchange: no access_token in response")
        return token

    def get_portfolio(self, user_email: str, token: str) -> List[Union[Holding, RejectedHolding]]:
        """
        Holdings in portfolio order. Entries that fail validation come back as
        RejectedHolding in their place; only a body that is not a list is fatal.
        """
        body = self._request(
            "GET",
            f"{self.base_url}/api/user/{quote(user_email, safe='@')}/portfolio",
            "portfolio",
            headers=_bearer(token),
            timeout=self.timeout,
        )
        if body is None:
            return []
        if not isinstance(body, list):
            raise UpstreamUnavailableError(f"portfolio: malformed holdings (expected a list, got {type(body).__name__})")
        return [_parse_holding(entry) for entry in body]

    def get_price_history(self, symbol: str, token: str, days: int = 30) -> List[PriceSample]:
        what = f"price history for {symbol}"
        body = self._request(
            "GET",
            f"{self.base_url}/api/stocks/{quote(symbol, safe='')}/history",
            what,
            params={"days": days},
            headers=_bearer(token),
            timeout=self.timeout,
        )
        try:
            return _samples.validate_python(body or [])
        except PydanticValidationError as e:
            raise UpstreamUnavailableError(f"{what}: malformed samples ({e.error_count()} errors)") from e

    def post_callback(self, payload: Dict[str, Any], token: str) -> None:
        self._request(
            "POST",
            f"{self.base_url}/api/estimations/callback",
            "callback",
            json=payload,
            headers=_bearer(token),
            timeout=self.callback_timeout,
        )

    def close(self) -> None:
        self._client.close()
