"""
Tests for statistical price forecasting.
"""
from unittest.mock import patch

import pytest

from procura.core.errors import NotFound
from procura.db.models import AIFeature, AIUsageLog, AuditLog, PriceForecast, PriceTrend
from procura.services import price_forecast
from procura.services.price_forecast import (
    INSUFFICIENT_DATA_FACTOR,
    bulk_forecast,
    calculate_forecast,
    forecast_item,
    get_forecasts,
    get_price_history,
    get_price_trends,
    record_price,
)


def add_weekly_history(factory, company, item, prices_newest_first):
    for week, price in enumerate(prices_newest_first):
        factory.price_point(company, item, price, days_ago=week * 7)


class TestCalculateForecast:
    def test_upward_trend(self):
        result = calculate_forecast([100, 102, 98, 105, 110], 30)

        assert result.predicted_price == pytest.approx(121.4)
        assert result.current_price == 100
        assert result.trend == PriceTrend.UP
        assert result.confidence == 0.5
        assert result.confidence_low == pytest.approx(91.05)
        assert result.confidence_high == pytest.approx(151.75)
        assert result.factors == [
            "Upward price trend detected in historical data",
            "Based on 5 historical data points",
        ]

    def test_downward_trend(self):
        result = calculate_forecast([130, 120, 110, 100], 7)
        assert result.predicted_price == pytest.approx(80.0)
        assert result.trend == PriceTrend.DOWN

    def test_flat_prices_are_stable(self):
        result = calculate_forecast([100, 100, 100], 30)
        assert result.predicted_price == 100
        assert result.trend == PriceTrend.STABLE
        assert "Price has remained relatively stable" in result.factors

    def test_prediction_never_negative(self):
        result = calculate_forecast([90, 50, 10], 7)
        assert result.predicted_price == 0.0

    def test_volatile_history_lowers_confidence(self):
        result = calculate_forecast([100, 150, 50, 160, 40], 30)
        assert result.volatility > 0.3
        assert result.confidence == 0.3
        assert "High price volatility observed" in result.factors

    def test_long_history_raises_confidence(self):
        result = calculate_forecast([100.0] * 60, 30)
        assert result.confidence == 0.8

    def test_recent_movement_factor(self):
        prices = [150, 150, 150, 150, 150, 100, 100, 100, 100, 100]
        result = calculate_forecast(prices, 30)
        assert "Recent price movement differs from historical average" in result.factors

    @pytest.mark.parametrize("prices", [[], [42.0], [42.0, 40.0]])
    def test_insufficient_data(self, prices):
        result = calculate_forecast(prices, 30)
        assert result.trend == PriceTrend.STABLE
        assert result.confidence == 0.3
        assert result.predicted_price == (prices[0] if prices else 0.0)
        assert result.factors == [INSUFFICIENT_DATA_FACTOR]


class TestForecastItem:
    def test_persists_forecast(self, db_session, factory, company):
        item = factory.item(company)
        add_weekly_history(factory, company, item, [100, 102, 98, 105, 110])

        forecast = forecast_item(db_session, company.id, 4, item.id, horizon_days=30)

        assert forecast.id is not None
        assert forecast.current_price == 100
        assert forecast.predicted_price == pytest.approx(121.4)
        assert forecast.confidence_pct == 50.0
        assert forecast.confidence_low == pytest.approx(91.05)
        assert forecast.trend == PriceTrend.UP
        assert forecast.data_points_used == 5
        assert forecast.valid_until is not None

        usage = db_session.query(AIUsageLog).one()
        assert usage.feature == AIFeature.PRICE_FORECAST
        assert usage.model == "statistical"
        assert usage.estimated_cost == 0.0
        assert db_session.query(AuditLog).filter(AuditLog.action == "PRICE_FORECAST_GENERATED").count() == 1

    def test_sparse_history_still_persists(self, db_session, factory, company):
        item = factory.item(company)
        factory.price_point(company, item, 55)

        forecast = forecast_item(db_session, company.id, 4, item.id)
        assert forecast.predicted_price == 55
        assert forecast.confidence_pct == 30.0
        assert forecast.explanation_factors == [INSUFFICIENT_DATA_FACTOR]

    def test_audit_failure_does_not_fail_forecast(self, db_session, factory, company):
        item = factory.item(company)
        add_weekly_history(factory, company, item, [100, 102, 98, 105, 110])

        with patch("procura.services.audit.AuditLog", side_effect=RuntimeError("audit table locked")):
            forecast = forecast_item(db_session, company.id, 4, item.id)

        assert forecast.predicted_price == pytest.approx(121.4)
        assert db_session.query(PriceForecast).count() == 1
        assert db_session.query(AuditLog).count() == 0
        assert db_session.query(AIUsageLog).count() == 1

    def test_invalid_horizon(self, db_session, factory, company):
        item = factory.item(company)
        with pytest.raises(ValueError):
            forecast_item(db_session, company.id, 4, item.id, horizon_days=0)

    def test_unknown_item(self, db_session, company):
        with pytest.raises(NotFound):
            forecast_item(db_session, company.id, 4, 12345)

    def test_item_from_other_company(self, db_session, factory, company):
        item = factory.item(factory.company("Other Co"))
        with pytest.raises(NotFound):
            forecast_item(db_session, company.id, 4, item.id)


class TestPriceHistory:
    def test_record_and_read_newest_first(self, db_session, factory, company):
        item = factory.item(company)
        factory.price_point(company, item, 90, days_ago=14)
        record_price(db_session, company.id, item.id, 95.5)

        history = get_price_history(db_session, company.id, item.id)
        assert [h.price for h in history] == [95.5, 90]

    def test_negative_price_rejected(self, db_session, factory, company):
        item = factory.item(company)
        with pytest.raises(ValueError):
            record_price(db_session, company.id, item.id, -1)


class TestBulkAndTrends:
    def test_bulk_forecast_and_trends(self, db_session, factory, company):
        rising, flat = factory.item(company), factory.item(company)
        factory.item(company)  # no history, not forecast
        add_weekly_history(factory, company, rising, [100, 102, 98, 105, 110])
        add_weekly_history(factory, company, flat, [100, 100, 100])

        forecasts = bulk_forecast(db_session, company.id, 4, horizon_days=30)
        assert sorted(f.item_id for f in forecasts) == sorted([rising.id, flat.id])

        trends = get_price_trends(db_session, company.id)
        assert trends["up_trend"] == 1
        assert trends["stable"] == 1
        assert trends["down_trend"] == 0
        assert trends["items_forecasted"] == 2
        assert trends["avg_confidence"] == pytest.approx(50.0)

    def test_bulk_forecast_skips_failing_item(self, db_session, factory, company):
        healthy, broken = factory.item(company), factory.item(company)
        add_weekly_history(factory, company, healthy, [100, 102, 98, 105, 110])
        add_weekly_history(factory, company, broken, [50, 51, 52])
        broken_id = broken.id
        get_item = price_forecast._get_item

        def failing_for_broken(db, company_id, item_id):
            if item_id == broken_id:
                raise RuntimeError("history row unreadable")
            return get_item(db, company_id, item_id)

        with patch("procura.services.price_forecast._get_item", side_effect=failing_for_broken):
            forecasts = bulk_forecast(db_session, company.id, 4)

        assert [f.item_id for f in forecasts] == [healthy.id]
        assert get_forecasts(db_session, company.id, broken_id) == []
        assert db_session.query(PriceForecast).count() == 1

    def test_trends_use_latest_forecast_per_item(self, db_session, factory, company):
        item = factory.item(company)
        factory.price_point(company, item, 100)
        forecast_item(db_session, company.id, 4, item.id)
        add_weekly_history(factory, company, item, [100, 102, 98, 105])
        forecast_item(db_session, company.id, 4, item.id)

        assert len(get_forecasts(db_session, company.id, item.id)) == 2
        assert get_price_trends(db_session, company.id)["items_forecasted"] == 1

    def test_empty_trends(self, db_session, company):
        trends = get_price_trends(db_session, company.id)
        assert trends["items_forecasted"] == 0
        assert trends["avg_confidence"] == 0
