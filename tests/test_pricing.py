"""Tests for Meterwise pricing: cost triple, margins, append-only price history."""

from decimal import Decimal

import pytest

from billing import build_service
from errors import InvalidQuantity, PricingUnavailable, ValidationError
from pricing import parse_quantity


class TestParseQuantity:
    def test_accepts_ints_floats_strings_decimals(self):
        assert parse_quantity(5) == Decimal("5")
        assert parse_quantity(2.5) == Decimal("2.5")
        assert parse_quantity("0.001") == Decimal("0.001")
        assert parse_quantity(Decimal("7")) == Decimal("7")

    @pytest.mark.parametrize("bad", [0, -1, "-0.5", float("nan"), float("inf"), "abc", None, True])
    def test_rejects_non_positive_and_non_numbers(self, bad):
        with pytest.raises(InvalidQuantity):
            parse_quantity(bad)


class TestResolve:
    def test_cv_parsing_default_price_and_margin(self, service):
        q = service.pricing.resolve("cv_parsing", 100)
        assert q.unit_price == Decimal("0.0025")
        assert q.base_cost == Decimal("0.2500")
        assert q.margin_percent == Decimal("20")
        assert q.final_cost == Decimal("0.3000")

    def test_tiny_token_counts_round_half_up(self, service):
        q = service.pricing.resolve("question_generation", 5)
        assert q.base_cost == Decimal("0.0001")
        assert q.final_cost == Decimal("0.0001")

    def test_video_minutes(self, service):
        q = service.pricing.resolve("video_interview", 10)
        assert q.base_cost == Decimal("3.0000")
        assert q.final_cost == Decimal("3.6000")

    def test_unknown_category(self, service):
        with pytest.raises(ValidationError) as exc:
            service.pricing.resolve("image_generation", 1)
        assert exc.value.code == "validation_error"

    def test_zero_quantity_rejected(self, service):
        with pytest.raises(InvalidQuantity) as exc:
            service.pricing.resolve("cv_parsing", 0)
        assert exc.value.code == "invalid_quantity"

    def test_missing_price_is_pricing_unavailable(self, store, gateway, clock):
        svc = build_service(store=store, gateway=gateway, clock=clock, seed=False)
        with pytest.raises(PricingUnavailable) as exc:
            svc.pricing.resolve("cv_parsing", 100)
        assert exc.value.http_status == 503


class TestMargins:
    def test_company_override_wins_over_global(self, service):
        service.pricing.set_margin("50", company_id="acme")
        assert service.pricing.resolve("video_interview", 10, company_id="acme").final_cost == Decimal("4.5000")
        assert service.pricing.resolve("video_interview", 10, company_id="other").final_cost == Decimal("3.6000")

        m = service.pricing.current_margin("acme")
        assert m == {"company_id": "acme", "margin_percent": "50", "override": True}

    def test_clear_override_falls_back_to_global(self, service):
        service.pricing.set_margin("50", company_id="acme")
        assert service.pricing.clear_margin_override("acme") is True
        assert service.pricing.clear_margin_override("acme") is False
        assert service.pricing.current_margin("acme")["margin_percent"] == "20"

    def test_negative_margin_rejected(self, service):
        with pytest.raises(ValidationError):
            service.pricing.set_margin("-1")

    def test_margin_change_does_not_touch_recorded_usage(self, service, company, clock):
        first = service.recorder.record(company, "cv_parsing", 100)
        service.pricing.set_margin("50")
        clock.advance(1)
        second = service.recorder.record(company, "cv_parsing", 100)

        assert first.margin_percent == Decimal("20")
        assert second.margin_percent == Decimal("50")
        assert second.final_cost == Decimal("0.3750")

        stored = service.reports.list_usage(company)
        by_id = {r["id"]: r for r in stored}
        assert by_id[first.id]["final_cost"] == "0.3000"
        assert by_id[first.id]["margin_percent"] == "20"


class TestUnitPrices:
    def test_set_unit_price_replaces_active_row(self, service):
        out = service.pricing.set_unit_price("video_interview", "0.45")
        assert out == {"category": "video_interview", "unit_price": "0.45", "unit": "minute"}
        assert service.pricing.resolve("video_interview", 10).base_cost == Decimal("4.5000")

    def test_price_history_is_append_only(self, service, store):
        service.pricing.set_unit_price("cv_parsing", "0.003")
        service.pricing.set_unit_price("cv_parsing", "0.004")
        with store.connection() as (conn, _):
            rows = conn.execute(
                "SELECT unit_price, active FROM pricing_config WHERE category = 'cv_parsing' ORDER BY id"
            ).fetchall()
        assert [r["unit_price"] for r in rows] == ["0.0025", "0.003", "0.004"]
        assert [r["active"] for r in rows] == [0, 0, 1]

    def test_list_prices_has_every_category(self, service):
        prices = {p["category"]: p for p in service.pricing.list_prices()}
        assert set(prices) == {"cv_parsing", "question_generation", "video_interview"}
        assert prices["question_generation"]["unit"] == "token"

    def test_seed_defaults_is_idempotent(self, service):
        assert service.pricing.seed_defaults() == 0
