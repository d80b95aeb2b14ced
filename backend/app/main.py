from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from psycopg import errors as pg_errors
import time
import uuid
from datetime import datetime, timezone
from typing import Optional
from .config import settings
from .db import get_conn, open_pool, close_pool
from .deps import require_module
from .logs import json_log
from .routers.auth import router as auth_router
from .routers.users import router as users_router
from .routers.roles import router as roles_router
from .routers.customers import router as customers_router
from .routers.suppliers import router as suppliers_router
from .routers.products import router as products_router
from .routers.brands import router as brands_router
from .routers.categories import router as categories_router
from .routers.warehouses import router as warehouses_router
from .routers.purchases import router as purchases_router
from .routers.purchase_returns import router as purchase_returns_router
from .routers.sales_orders import router as sales_orders_router
from .routers.sales_returns import router as sales_returns_router
from .routers.account_payable import router as account_payable_router
from .routers.account_receivable import router as account_receivable_router
from .routers.cash_ledgers import routers as cash_ledger_routers
from .routers.expenses import router as expenses_router
from .routers.reports import router as reports_router

app = FastAPI(title="Billing & Inventory API", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)
SERVICE_NAME = "billing-backend"

# Friendly messages for unique constraints, keyed by constraint name.
UNIQUE_MESSAGES = {
    "roles_name_key": "role name already exists",
    "users_email_key": "email already exists",
    "users_username_key": "username already exists",
    "customers_customer_id_key": "customer id already exists",
    "customers_email_key": "email already exists",
    "suppliers_supplier_id_key": "supplier id already exists",
    "suppliers_email_key": "email already exists",
    "warehouses_name_key": "warehouse name already exists",
    "brands_name_key": "brand name already exists",
    "categories_name_key": "category name already exists",
    "products_product_id_key": "product id already exists",
    "purchases_order_id_key": "order id already exists",
    "purchase_returns_return_id_key": "return id already exists",
    "sales_orders_order_number_key": "order number already exists",
    "sales_returns_return_id_key": "return id already exists",
    "account_payables_invoice_number_key": "invoice number already exists",
    "account_receivables_order_id_key": "a receivable already exists for this order",
    "account_receivables_invoice_number_key": "invoice number already exists",
    "cash_ledger_entries_transaction_id_key": "transaction id already exists",
    "cash_ledger_entries_synced_key": "a ledger entry already exists for this order",
    "expenses_expense_number_key": "expense number already exists",
}


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def _error_body(detail: str, exc: Exception, **extra) -> dict:
    content = {"detail": detail, **extra}
    if settings.expose_errors:
        content["error"] = str(exc)
    return content


def unique_violation_message(exc: Exception) -> str:
    constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
    return UNIQUE_MESSAGES.get(constraint, "duplicate value")


# Database errors that are the client's fault come back as 400s.
DB_CLIENT_ERRORS = {
    pg_errors.InvalidTextRepresentation: lambda _exc: "invalid value",
    pg_errors.ForeignKeyViolation: lambda _exc: "invalid reference",
    pg_errors.CheckViolation: lambda _exc: "constraint violation",
    pg_errors.UniqueViolation: unique_violation_message,
}


def _db_client_error(_req: Request, exc: Exception):
    for cls, message in DB_CLIENT_ERRORS.items():
        if isinstance(exc, cls):
            return JSONResponse(status_code=400, content=_error_body(message(exc), exc))
    raise exc


for _cls in DB_CLIENT_ERRORS:
    app.add_exception_handler(_cls, _db_client_error)


@app.exception_handler(RequestValidationError)
def _request_validation_error(_req: Request, exc: RequestValidationError):
    content = {"detail": "validation failed"}
    if settings.expose_errors:
        content["errors"] = exc.errors()
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(Exception)
def _unhandled_exception(req: Request, exc: Exception):
    rid = _current_request_id(req)
    json_log("error", "http.request.unhandled", request_id=rid, method=req.method, path=req.url.path, error=str(exc))
    return JSONResponse(status_code=500, content=_error_body("internal error", exc, request_id=rid))


def _log_request(level: str, event: str, request: Request, started: float, **fields):
    json_log(
        level,
        event,
        request_id=request.state.request_id,
        method=request.method,
        path=request.url.path,
        client_ip=request.client.host if request.client else None,
        duration_ms=int((time.time() - started) * 1000),
        **fields,
    )


# Every response carries X-Request-Id; health checks are not logged.
@app.middleware("http")
async def _request_logging(request: Request, call_next):
    request.state.request_id = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    started = time.time()
    try:
        response = await call_next(request)
    except Exception as exc:
        _log_request("error", "http.request.error", request, started, error=str(exc))
        raise
    response.headers["X-Request-Id"] = request.state.request_id
    response.headers["X-Content-Type-Options"] = "nosniff"
    if not request.url.path.startswith("/health"):
        _log_request("info", "http.request", request, started, status_code=response.status_code)
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router)
app.include_router(users_router)
for _module, _router in (
    ("roles", roles_router),
    ("customers", customers_router),
    ("suppliers", suppliers_router),
    ("products", products_router),
    ("brands", brands_router),
    ("categories", categories_router),
    ("warehouses", warehouses_router),
    ("purchases", purchases_router),
    ("purchase-returns", purchase_returns_router),
    ("sales-orders", sales_orders_router),
    ("sales-returns", sales_returns_router),
    ("account-payable", account_payable_router),
    ("account-receivable", account_receivable_router),
    *cash_ledger_routers.items(),
    ("expenses", expenses_router),
    ("reports", reports_router),
):
    app.include_router(_router, dependencies=[Depends(require_module(_module))])


def _check_db() -> Optional[str]:
    """None when the database answers, otherwise the error text."""
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
        return None
    except Exception as exc:
        return str(exc)


def _service_info(req: Request) -> dict:
    return {
        "service": SERVICE_NAME,
        "env": settings.env,
        "version": settings.api_version,
        "started_at": STARTED_AT_UTC.isoformat(),
        "request_id": _current_request_id(req),
    }


@app.on_event("startup")
def _startup():
    open_pool()
    err = _check_db()
    if err is None:
        json_log("info", "startup.db_connected", env=settings.env, version=settings.api_version)
    else:
        json_log("warning", "startup.db_check_failed", env=settings.env, error=err)


@app.on_event("shutdown")
def _shutdown():
    close_pool()


@app.get("/")
def root():
    return {"status": "ok", "service": SERVICE_NAME}


@app.get("/health/live")
def health_live(req: Request):
    return {"status": "ok", **_service_info(req)}


@app.get("/health")
@app.get("/health/ready")
def health(req: Request):
    err = _check_db()
    if err is not None:
        content = {"status": "degraded", "db": "down", **_service_info(req)}
        if settings.expose_errors:
            content["error"] = err
        return JSONResponse(status_code=503, content=content)
    return {"status": "ok", "db": "ok", **_service_info(req)}
