# Meterwise Usage Aggregator
# Read-only rollups over committed usage records. Sums are computed in
# Decimal on the Python side so SQLite and PostgreSQL agree to the cent.

import logging
from collections import OrderedDict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from db import BillingStore
from models import CATEGORY_ORDER, ZERO, money, parse_category
from repositories import UsageRecordRepo

log = logging.getLogger("meterwise")


def _bucket():
    return {"amount": ZERO, "base_cost": ZERO, "quantity": Decimal(0), "records": 0}


def _add(bucket, r):
    bucket["amount"] = money(bucket["amount"] + r.final_cost)
    bucket["base_cost"] = money(bucket["base_cost"] + r.base_cost)
    bucket["quantity"] += r.raw_quantity
    bucket["records"] += 1


def _render(bucket) -> dict:
    return {
        "amount": str(bucket["amount"]),
        "base_cost": str(bucket["base_cost"]),
        "quantity": str(bucket["quantity"]),
        "records": bucket["records"],
    }


class UsageAggregator:
    def __init__(self, store: BillingStore):
        self.store = store

    def _records(self, company_id, start=None, end=None, **filters):
        with self.store.connection() as (conn, backend):
            return UsageRecordRepo.query(conn, company_id, backend, start=start, end=end, **filters)

    def totals_for_company(self, company_id: str, start: Optional[float] = None,
                           end: Optional[float] = None) -> dict:
        """Grand total plus a per-category breakdown for [start, end)."""
        total = _bucket()
        by_category = OrderedDict()
        for r in self._records(company_id, start, end):
            _add(total, r)
            _add(by_category.setdefault(r.category, _bucket()), r)

        return {
            "company_id": company_id,
            "start": start,
            "end": end,
            **_render(total),
            "by_category": [
                {"category": cat, **_render(by_category[cat])}
                for cat in CATEGORY_ORDER if cat in by_category
            ],
        }

    def totals_by_job(self, company_id: str, start: Optional[float] = None,
                      end: Optional[float] = None) -> list[dict]:
        """One row per job, largest spend first. Records without a job roll up under None."""
        jobs = {}
        for r in self._records(company_id, start, end):
            _add(jobs.setdefault(r.job_id, _bucket()), r)
        rows = [{"job_id": job_id, **_render(b)} for job_id, b in jobs.items()]
        rows.sort(key=lambda row: (-Decimal(row["amount"]), row["job_id"] or ""))
        return rows

    def totals_by_month(self, company_id: str, start: Optional[float] = None,
                        end: Optional[float] = None) -> list[dict]:
        months = OrderedDict()
        for r in self._records(company_id, start, end):
            key = datetime.fromtimestamp(r.created_at, tz=timezone.utc).strftime("%Y-%m")
            _add(months.setdefault(key, _bucket()), r)
        return [{"month": key, **_render(b)} for key, b in months.items()]

    def list_usage(self, company_id: str, job_id: Optional[str] = None,
                   category: Optional[str] = None, start: Optional[float] = None,
                   end: Optional[float] = None, limit: int = 100) -> list[dict]:
        if category is not None:
            category = parse_category(category).value
        records = self._records(company_id, start, end, job_id=job_id, category=category,
                                limit=limit, newest_first=True)
        return [r.to_dict() for r in records]
