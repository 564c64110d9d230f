# Meterwise API
# FastAPI. Usage metering, wallets, recharges, invoices, pricing.
# Every failure comes back as {"ok": false, "error": {"code", "message"}}
# with a stable code from errors.py.

import hmac
import json
import os
import time
from collections import defaultdict, deque
from decimal import Decimal
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field, model_validator
from starlette.middleware.base import BaseHTTPMiddleware

import config
from billing import UNSET, BillingService, get_billing_service
from errors import BillingError
from payments import handle_stripe_webhook

log = config.setup_logging()

app = FastAPI(title="Meterwise", version="1.0.0")

AUTH_REQUIRED = config.ENV not in {"dev", "development", "test"}
_RATE_BUCKETS = defaultdict(deque)

_service: Optional[BillingService] = None


def service() -> BillingService:
    global _service
    if _service is None:
        _service = get_billing_service()
    return _service


def set_service(svc: Optional[BillingService]):
    """Swap the process-wide service (tests, embedding)."""
    global _service
    _service = svc


# ── Auth / logging / rate limiting ────────────────────────────────────

# Public routes: no token required
PUBLIC_PATHS = {"/", "/docs", "/openapi.json", "/healthz", "/readyz", "/webhooks/stripe"}


class TokenAuthMiddleware(BaseHTTPMiddleware):
    """
    Bearer token auth. Outside dev/test every request (except public
    routes) must carry METERWISE_API_TOKEN.
    """

    async def dispatch(self, request: Request, call_next):
        if not AUTH_REQUIRED:
            return await call_next(request)

        api_token = os.environ.get("METERWISE_API_TOKEN", config.API_TOKEN)
        if not api_token:
            return JSONResponse(
                status_code=500,
                content={
                    "ok": False,
                    "error": {
                        "code": "auth_config_error",
                        "message": "METERWISE_API_TOKEN must be set in non-dev environments",
                    },
                },
            )

        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        auth = request.headers.get("Authorization", "")
        token = auth[7:] if auth.startswith("Bearer ") else ""

        if not token or not hmac.compare_digest(token, api_token):
            return JSONResponse(
                status_code=401,
                content={"ok": False, "error": {"code": "unauthorized", "message": "Unauthorized"}},
            )

        return await call_next(request)


app.add_middleware(TokenAuthMiddleware)


class RequestLogMiddleware(BaseHTTPMiddleware):
    """Emit structured access logs for observability."""

    async def dispatch(self, request: Request, call_next):
        started = time.time()
        response = await call_next(request)
        duration_ms = round((time.time() - started) * 1000, 2)
        entry = {
            "event": "api_request",
            "path": request.url.path,
            "method": request.method,
            "status": response.status_code,
            "duration_ms": duration_ms,
            "client_ip": request.client.host if request.client else "unknown",
        }
        log.info(json.dumps(entry, sort_keys=True))
        return response


app.add_middleware(RequestLogMiddleware)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Simple in-memory IP rate limiting for API safety."""

    async def dispatch(self, request: Request, call_next):
        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        now = time.time()
        client_ip = request.client.host if request.client else "unknown"
        bucket = _RATE_BUCKETS[client_ip]
        while bucket and bucket[0] <= now - config.RATE_LIMIT_WINDOW_SEC:
            bucket.popleft()

        if len(bucket) >= config.RATE_LIMIT_REQUESTS:
            return JSONResponse(
                status_code=429,
                content={
                    "ok": False,
                    "error": {"code": "rate_limited", "message": "Too many requests"},
                },
            )

        bucket.append(now)
        return await call_next(request)


app.add_middleware(RateLimitMiddleware)


@app.exception_handler(BillingError)
async def billing_exception_handler(_: Request, exc: BillingError):
    if exc.http_status >= 500:
        log.error("API %s: %s", exc.code, exc.message)
    return JSONResponse(status_code=exc.http_status, content={"ok": False, "error": exc.to_dict()})


@app.exception_handler(HTTPException)
async def http_exception_handler(_: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": {"code": "http_error", "message": str(exc.detail)}},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(_: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "ok": False,
            "error": {
                "code": "validation_error",
                "message": "Request validation failed",
                "details": json.loads(json.dumps(exc.errors(), default=str)),
            },
        },
    )


# ── Request models ────────────────────────────────────────────────────


class UsageIn(BaseModel):
    company_id: str = Field(min_length=1, max_length=128)
    category: str
    raw_quantity: Decimal
    job_id: str | None = None
    idempotency_key: str | None = Field(default=None, max_length=256)


class CompanyInit(BaseModel):
    monthly_spend_cap: Decimal | None = None
    auto_recharge_threshold: Decimal | None = None
    auto_recharge_amount: Decimal | None = None


class SettingsIn(BaseModel):
    monthly_spend_cap: Decimal | None = None
    auto_recharge_enabled: bool | None = None
    auto_recharge_threshold: Decimal | None = None
    auto_recharge_amount: Decimal | None = None


class PaymentMethodIn(BaseModel):
    provider: str
    payment_method_id: str = Field(min_length=1)
    last4: str | None = Field(default=None, max_length=4)
    brand: str | None = None
    exp: str | None = None


class RechargeIn(BaseModel):
    amount: Decimal | None = None


class RechargeResultIn(BaseModel):
    company_id: str
    success: bool
    provider_ref: str | None = None
    amount: Decimal | None = None
    recharge_id: str | None = None
    error: str = ""

    @model_validator(mode="after")
    def needs_reference(self):
        if not self.provider_ref and not self.recharge_id:
            raise ValueError("provider_ref or recharge_id is required")
        return self


class InvoiceIn(BaseModel):
    company_id: str
    start: float
    end: float
    tax_rate: Decimal | None = None
    description: str = ""


class SettleIn(BaseModel):
    paid: bool


class RefundIn(BaseModel):
    description: str = ""


class PriceIn(BaseModel):
    unit_price: Decimal
    unit: str | None = None


class MarginIn(BaseModel):
    margin_percent: Decimal
    company_id: str | None = None


# ── Usage ─────────────────────────────────────────────────────────────


@app.post("/usage")
def api_record_usage(u: UsageIn, request: Request):
    """Record one billable action. Safe to retry with the same idempotency key."""
    key = u.idempotency_key or request.headers.get("Idempotency-Key") or None
    result = service().record_usage(
        u.company_id, u.category, u.raw_quantity, job_id=u.job_id, idempotency_key=key,
    )
    return {"ok": True, **result}


@app.get("/usage/{company_id}")
def api_list_usage(company_id: str, job_id: str | None = None, category: str | None = None,
                   start: float | None = None, end: float | None = None, limit: int = 100):
    records = service().reports.list_usage(
        company_id, job_id=job_id, category=category, start=start, end=end,
        limit=max(1, min(limit, 1000)),
    )
    return {"ok": True, "records": records}


@app.get("/usage/{company_id}/totals")
def api_usage_totals(company_id: str, start: float | None = None, end: float | None = None):
    return {"ok": True, "totals": service().reports.totals_for_company(company_id, start, end)}


@app.get("/usage/{company_id}/by-job")
def api_usage_by_job(company_id: str, start: float | None = None, end: float | None = None):
    return {"ok": True, "jobs": service().reports.totals_by_job(company_id, start, end)}


@app.get("/usage/{company_id}/by-month")
def api_usage_by_month(company_id: str, start: float | None = None, end: float | None = None):
    return {"ok": True, "months": service().reports.totals_by_month(company_id, start, end)}


# ── Accounts & wallet ─────────────────────────────────────────────────


@app.post("/billing/{company_id}/init")
def api_init_company(company_id: str, body: CompanyInit | None = None):
    body = body or CompanyInit()
    billing = service().init_company(
        company_id,
        monthly_spend_cap=body.monthly_spend_cap,
        auto_recharge_threshold=body.auto_recharge_threshold,
        auto_recharge_amount=body.auto_recharge_amount,
    )
    return {"ok": True, "billing": billing.to_dict()}


@app.get("/billing/{company_id}")
def api_billing_status(company_id: str):
    return {"ok": True, "billing": service().status(company_id)}


@app.patch("/billing/{company_id}/settings")
def api_update_settings(company_id: str, s: SettingsIn):
    # An explicit null cap means unlimited; an absent one means unchanged
    cap = s.monthly_spend_cap if "monthly_spend_cap" in s.model_fields_set else UNSET
    billing = service().update_settings(
        company_id,
        monthly_spend_cap=cap,
        auto_recharge_enabled=s.auto_recharge_enabled,
        auto_recharge_threshold=s.auto_recharge_threshold,
        auto_recharge_amount=s.auto_recharge_amount,
    )
    return {"ok": True, "billing": billing.to_dict()}


@app.put("/billing/{company_id}/payment-method")
def api_attach_payment_method(company_id: str, pm: PaymentMethodIn):
    result = service().attach_payment_method(
        company_id, pm.provider, pm.payment_method_id,
        last4=pm.last4, brand=pm.brand, exp=pm.exp,
    )
    return {"ok": True, **result}


@app.delete("/billing/{company_id}/payment-method")
def api_remove_payment_method(company_id: str):
    billing = service().remove_payment_method(company_id)
    return {"ok": True, "billing": billing.to_dict()}


@app.post("/billing/{company_id}/recharge")
def api_recharge_now(company_id: str, body: RechargeIn | None = None):
    """Manual top-up from the stored payment method."""
    amount = body.amount if body else None
    recharge = service().recharger.recharge_now(company_id, amount=amount)
    return {"ok": True, "recharge": recharge.to_dict()}


@app.get("/billing/{company_id}/wallet")
def api_wallet_history(company_id: str, limit: int = 50):
    svc = service()
    billing = svc.ledger.get(company_id)
    txs = svc.ledger.history(company_id, limit=max(1, min(limit, 500)))
    return {
        "ok": True,
        "balance": str(billing.wallet_balance),
        "transactions": [t.to_dict() for t in txs],
    }


@app.post("/billing/grace-sweep")
def api_grace_sweep():
    """Suspend past_due companies whose grace window has expired."""
    return {"ok": True, "suspended": service().recharger.enforce_grace_period()}


@app.post("/billing/reconcile-recharges")
def api_reconcile_recharges():
    """Settle in-flight recharges left behind by a failed apply step."""
    resolved = service().recharger.reconcile_stale_recharges()
    return {"ok": True, "recharges": [r.to_dict() for r in resolved]}


# ── Payment webhooks ──────────────────────────────────────────────────


@app.post("/webhooks/stripe")
async def api_stripe_webhook(request: Request):
    payload = await request.body()
    sig = request.headers.get("Stripe-Signature", "")
    result = handle_stripe_webhook(payload, sig, service().recharger)
    if result.get("error"):
        raise HTTPException(status_code=400, detail=result["error"])
    return {"ok": True, **result}


@app.post("/webhooks/recharge-result")
def api_recharge_result(r: RechargeResultIn):
    """Processor-agnostic result callback. Replays of a settled result are no-ops."""
    recharge = service().on_recharge_result(
        r.company_id, r.amount, r.success, r.provider_ref,
        recharge_id=r.recharge_id, error=r.error,
    )
    return {"ok": True, "recharge": recharge.to_dict() if recharge else None}


# ── Invoices ──────────────────────────────────────────────────────────


@app.post("/invoices")
def api_generate_invoice(inv: InvoiceIn):
    invoice = service().invoices.generate(
        inv.company_id, inv.start, inv.end, tax_rate=inv.tax_rate, description=inv.description,
    )
    return {"ok": True, "invoice": invoice.to_dict()}


@app.get("/invoices")
def api_list_invoices(company_id: str, status: str | None = None, limit: int = 50):
    invoices = service().invoices.list(company_id, status=status, limit=max(1, min(limit, 500)))
    return {"ok": True, "invoices": [i.to_dict() for i in invoices]}


@app.get("/invoices/{invoice_id}")
def api_get_invoice(invoice_id: str):
    return {"ok": True, "invoice": service().invoices.get(invoice_id).to_dict()}


@app.get("/invoices/{invoice_id}/csv")
def api_invoice_csv(invoice_id: str):
    svc = service()
    invoice = svc.invoices.get(invoice_id)
    return PlainTextResponse(
        svc.invoices.export_csv(invoice),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{invoice.invoice_number}.csv"'},
    )


@app.post("/invoices/{invoice_id}/settle")
def api_settle_invoice(invoice_id: str, s: SettleIn):
    return {"ok": True, "invoice": service().invoices.settle(invoice_id, s.paid).to_dict()}


@app.post("/invoices/{invoice_id}/refund")
def api_refund_invoice(invoice_id: str, body: RefundIn | None = None):
    refund = service().invoices.refund(invoice_id, description=body.description if body else "")
    return {"ok": True, "invoice": refund.to_dict()}


# ── Pricing ───────────────────────────────────────────────────────────


@app.get("/pricing")
def api_list_prices():
    svc = service()
    return {
        "ok": True,
        "prices": svc.pricing.list_prices(),
        "margin": svc.pricing.current_margin(),
    }


@app.get("/pricing/margin")
def api_get_margin(company_id: str | None = None):
    return {"ok": True, "margin": service().pricing.current_margin(company_id)}


@app.put("/pricing/margin")
def api_set_margin(m: MarginIn):
    value = service().pricing.set_margin(m.margin_percent, company_id=m.company_id)
    return {"ok": True, "margin_percent": str(value), "company_id": m.company_id}


@app.delete("/pricing/margin/{company_id}")
def api_clear_margin(company_id: str):
    return {"ok": True, "cleared": service().pricing.clear_margin_override(company_id)}


@app.put("/pricing/{category}")
def api_set_price(category: str, p: PriceIn):
    return {"ok": True, "price": service().pricing.set_unit_price(category, p.unit_price, p.unit)}


# ── Notifications ─────────────────────────────────────────────────────


@app.post("/notifications/drain")
def api_drain_notifications(limit: int = 100):
    return {"ok": True, **service().notifier.drain(limit=max(1, min(limit, 1000)))}


# ── Health ────────────────────────────────────────────────────────────


@app.get("/healthz")
def healthz():
    return {"ok": True, "status": "healthy", "env": config.ENV}


@app.get("/readyz")
def readyz():
    token = os.environ.get("METERWISE_API_TOKEN", config.API_TOKEN)
    if AUTH_REQUIRED and not token:
        raise HTTPException(
            status_code=503, detail="API token not configured for non-dev environment"
        )

    storage = service().store.healthcheck()
    if not storage.get("ok"):
        raise HTTPException(
            status_code=503, detail=f"Storage not ready: {storage.get('error', 'unknown')}"
        )

    return {"ok": True, "status": "ready", "storage": storage}


@app.get("/")
def root():
    return {"name": "Meterwise", "status": "running"}


if __name__ == "__main__":
    import uvicorn

    log.info("API STARTING on port 8000")
    uvicorn.run(app, host="0.0.0.0", port=8000)
