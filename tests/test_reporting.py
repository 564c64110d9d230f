"""Tests for Meterwise usage rollups."""

from datetime import datetime, timezone

import pytest

from errors import ValidationError


@pytest.fixture
def history(flat_pricing, company, clock):
    svc = flat_pricing
    svc.record_usage(company, "video_interview", 10, job_id="job-a")
    clock.advance(60)
    svc.record_usage(company, "video_interview", 3, job_id="job-b")
    clock.advance(60)
    svc.record_usage(company, "cv_parsing", 400, job_id="job-a")
    clock.set(datetime(2026, 4, 10, tzinfo=timezone.utc))
    svc.record_usage(company, "video_interview", 1)
    return svc


class TestTotals:
    def test_company_totals_with_category_breakdown(self, history, company):
        t = history.reports.totals_for_company(company)
        assert t["amount"] == "15.0000"
        assert t["records"] == 4
        assert [c["category"] for c in t["by_category"]] == ["cv_parsing", "video_interview"]
        video = t["by_category"][1]
        assert video["amount"] == "14.0000"
        assert video["quantity"] == "14"
        assert video["records"] == 3

    def test_window_filters(self, history, company):
        april = datetime(2026, 4, 1, tzinfo=timezone.utc).timestamp()
        t = history.reports.totals_for_company(company, start=april)
        assert t["amount"] == "1.0000"
        assert t["records"] == 1

    def test_by_job_sorted_by_spend(self, history, company):
        rows = history.reports.totals_by_job(company)
        assert [r["job_id"] for r in rows] == ["job-a", "job-b", None]
        assert rows[0]["amount"] == "11.0000"

    def test_by_month(self, history, company):
        rows = history.reports.totals_by_month(company)
        assert [(r["month"], r["amount"]) for r in rows] == [("2026-03", "14.0000"), ("2026-04", "1.0000")]

    def test_unknown_company_is_empty(self, service):
        t = service.reports.totals_for_company("nobody")
        assert t["amount"] == "0.0000"
        assert t["by_category"] == []


class TestListUsage:
    def test_newest_first_with_filters(self, history, company):
        records = history.reports.list_usage(company)
        assert records[0]["job_id"] is None
        assert len(records) == 4

        job_a = history.reports.list_usage(company, job_id="job-a")
        assert {r["category"] for r in job_a} == {"video_interview", "cv_parsing"}

        video = history.reports.list_usage(company, category="video_interview", limit=2)
        assert len(video) == 2
        assert all(r["category"] == "video_interview" for r in video)

    def test_unknown_category_filter(self, service, company):
        with pytest.raises(ValidationError):
            service.reports.list_usage(company, category="bogus")
