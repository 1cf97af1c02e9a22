"""Unit tests for the Frankfurter rate client using a mocked transport."""

from __future__ import annotations

from decimal import Decimal

import httpx
import pytest

from pricetrail.config import RatesConfig
from pricetrail.errors import RateFetchFailure
from pricetrail.integration.rates_client import FrankfurterClient

BASE_URL = "https://rates.test"


def _client(handler) -> FrankfurterClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL)
    return FrankfurterClient(config=RatesConfig(retry_attempts=1), client=http)


class TestFetchRates:
    @pytest.mark.asyncio
    async def test_inverts_rates_to_eur_per_unit(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200, json={"date": "2026-10-19", "rates": {"TRY": 50.0, "USD": 1.16}}
            )

        async with _client(handler) as client:
            rates = await client.fetch_rates(["usd", "TRY", "EUR"])

        assert rates["TRY"] == Decimal("0.02")
        assert rates["USD"].quantize(Decimal("0.0001")) == Decimal("0.8621")
        assert "EUR" not in rates

        assert len(requests) == 1
        assert requests[0].url.path == "/latest"
        assert requests[0].url.params["from"] == "EUR"
        assert requests[0].url.params["to"] == "TRY,USD"

    @pytest.mark.asyncio
    async def test_unpublished_and_bad_values_are_absent(self):
        def handler(request):
            return httpx.Response(
                200, json={"rates": {"TRY": 0, "UAH": "n/a", "KZT": 500}}
            )

        async with _client(handler) as client:
            rates = await client.fetch_rates(["TRY", "UAH", "KZT", "UZS"])

        assert rates == {"KZT": Decimal("0.002")}

    @pytest.mark.asyncio
    async def test_only_eur_skips_request(self):
        def handler(request):
            raise AssertionError("no request expected")

        async with _client(handler) as client:
            assert await client.fetch_rates(["EUR"]) == {}

    @pytest.mark.asyncio
    async def test_server_error_raises_rate_fetch_failure(self):
        def handler(request):
            return httpx.Response(500, text="upstream down")

        async with _client(handler) as client:
            with pytest.raises(RateFetchFailure, match="500"):
                await client.fetch_rates(["USD"])

    @pytest.mark.asyncio
    async def test_connection_error_raises_rate_fetch_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(RateFetchFailure, match="request failed"):
                await client.fetch_rates(["USD"])

    @pytest.mark.asyncio
    async def test_missing_rates_object(self):
        def handler(request):
            return httpx.Response(200, json={"date": "2026-10-19"})

        async with _client(handler) as client:
            with pytest.raises(RateFetchFailure, match="rates"):
                await client.fetch_rates(["USD"])

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(503)
            return httpx.Response(200, json={"rates": {"USD": 1.25}})

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL)
        client = FrankfurterClient(
            config=RatesConfig(retry_attempts=2, retry_backoff_base=0), client=http
        )
        try:
            rates = await client.fetch_rates(["USD"])
        finally:
            await http.aclose()

        assert len(calls) == 2
        assert rates == {"USD": Decimal("0.8")}
