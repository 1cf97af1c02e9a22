"""Unit tests for rate snapshots and the snapshot provider."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock, Mock, patch

import pytest

from pricetrail.integration.exchange_rates import (
    FALLBACK_EXCHANGE_RATES,
    FALLBACK_SOURCE,
    detect_anomalies,
)
from pricetrail.integration.rate_snapshot import RateProvider, RateSnapshot


class TestRateSnapshot:
    def test_stored_rates_override_fallback(self):
        snapshot = RateSnapshot.from_rows({"USD": (Decimal("0.9"), "frankfurter")})

        assert snapshot.rate_for("usd") == Decimal("0.9")
        assert snapshot.sources["USD"] == "frankfurter"
        assert snapshot.rate_for("TRY") == FALLBACK_EXCHANGE_RATES["TRY"]
        assert snapshot.sources["TRY"] == FALLBACK_SOURCE

    def test_non_positive_stored_rate_ignored(self):
        snapshot = RateSnapshot.from_rows({"USD": (Decimal("0"), "frankfurter")})

        assert snapshot.rate_for("USD") == FALLBACK_EXCHANGE_RATES["USD"]

    def test_to_eur_rounds_to_cents(self):
        snapshot = RateSnapshot.from_rows({})

        assert snapshot.to_eur(Decimal("10"), "USD") == Decimal("8.62")
        assert snapshot.to_eur(Decimal("1.19"), "EUR") == Decimal("1.19")

    def test_unknown_currency_has_no_eur_value(self):
        snapshot = RateSnapshot.from_rows({})

        assert snapshot.rate_for("ALL") is None
        assert snapshot.to_eur(Decimal("100"), "ALL") is None
        assert snapshot.to_eur(None, "EUR") is None

    def test_snapshot_is_read_only(self):
        snapshot = RateSnapshot.from_rows({})

        with pytest.raises(TypeError):
            snapshot.rates["EUR"] = Decimal("2")


class TestRateProvider:
    @pytest.mark.asyncio
    async def test_reuses_snapshot_until_stale(self):
        now = [1000.0]
        first = RateSnapshot.from_rows({})
        second = RateSnapshot.from_rows({"USD": (Decimal("0.9"), "frankfurter")})
        loader = AsyncMock(side_effect=[first, second])
        provider = RateProvider(max_age_seconds=60, clock=lambda: now[0])

        with patch("pricetrail.integration.rate_snapshot.load_rate_snapshot", loader):
            assert await provider.get(Mock()) is first
            now[0] += 59
            assert await provider.get(Mock()) is first
            now[0] += 1
            assert await provider.get(Mock()) is second

        assert loader.await_count == 2

    @pytest.mark.asyncio
    async def test_invalidate_forces_reload(self):
        loader = AsyncMock(return_value=RateSnapshot.from_rows({}))
        provider = RateProvider(max_age_seconds=3600, clock=lambda: 0.0)

        with patch("pricetrail.integration.rate_snapshot.load_rate_snapshot", loader):
            await provider.get(Mock())
            assert not provider.is_stale()
            provider.invalidate()
            assert provider.is_stale()
            await provider.get(Mock())

        assert loader.await_count == 2


class TestDetectAnomalies:
    def test_change_above_threshold(self):
        anomalies = detect_anomalies(
            {"USD": Decimal("1.0"), "TRY": Decimal("0.0200")},
            {"USD": Decimal("0.8"), "TRY": Decimal("0.0199")},
            Decimal("0.10"),
        )

        assert [a.currency_code for a in anomalies] == ["USD"]
        assert anomalies[0].change == Decimal("0.25")

    def test_no_previous_rate(self):
        assert detect_anomalies({"USD": Decimal("1")}, {}, Decimal("0.10")) == []
