import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from fastapi import Body, Depends, FastAPI, Header, Path, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from cache import Cache, build_cache
from config import get_settings
from database import get_db, init_db
from errors import ServiceError, ValidationError
from models import TransactionType
from periods import resolve_range
from policy import Identity
from rate_limit import FixedWindowRateLimiter, RateLimitMiddleware
from scheduler import SchedulerManager
from schemas import MAX_ID
from security import bearer_token
from services import (
    AnalyticsService,
    AuthService,
    CategoryService,
    MAX_AMOUNT,
    Pagination,
    Sort,
    TransactionFilters,
    TransactionService,
    UserService,
    category_to_dict,
    cents_from_amount,
    transaction_to_dict,
    user_to_dict,
)


settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


def _load_app_version() -> str:
    try:
        import tomllib
    except ImportError:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except (OSError, ValueError):
        return "unknown"


APP_VERSION = _load_app_version()

app = FastAPI(title="Finance Tracker", version=APP_VERSION)
app.state.cache = build_cache(settings)
app.state.rate_limiter = FixedWindowRateLimiter(
    settings.rate_limit_requests, settings.rate_limit_window_secs
)
app.add_middleware(RateLimitMiddleware, limiter=app.state.rate_limiter)

scheduler_manager = SchedulerManager(app.state.cache)


@app.on_event("startup")
def startup_event():
    init_db()
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    return JSONResponse(status_code=400, content={"message": message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    message = "Route not found" if exc.status_code == 404 else str(exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"message": message})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"unhandled_error: method={request.method} path={request.url.path}")
    return JSONResponse(status_code=500, content={"message": "Internal server error"})


def get_cache(request: Request) -> Cache:
    return request.app.state.cache


def current_identity(
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> Identity:
    return AuthService(db).resolve(bearer_token(authorization))


def _int_param(value: Optional[str], field: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        number = int(value)
    except ValueError:
        return None
    if not 1 <= number <= MAX_ID:
        raise ValidationError(f"{field} is out of range")
    return number


def _amount_param(value: Optional[str], field: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        amount = Decimal(value)
    except InvalidOperation as exc:
        raise ValidationError(f"{field} must be a number") from exc
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a number")
    if abs(amount) > MAX_AMOUNT:
        raise ValidationError(f"{field} is out of range")
    return cents_from_amount(amount)


def filters_from_request(request: Request) -> TransactionFilters:
    params = request.query_params
    txn_type = None
    if params.get("type"):
        try:
            txn_type = TransactionType(params["type"])
        except ValueError:
            txn_type = None
    date_from, date_to = resolve_range(params.get("dateFrom"), params.get("dateTo"))
    return TransactionFilters(
        query=params.get("q") or None,
        category_id=_int_param(params.get("categoryId"), "categoryId"),
        type=txn_type,
        min_amount_cents=_amount_param(params.get("minAmount"), "minAmount"),
        max_amount_cents=_amount_param(params.get("maxAmount"), "maxAmount"),
        date_from=date_from,
        date_to=date_to,
        user_id=_int_param(params.get("userId"), "userId"),
    )


def pagination_from_request(request: Request) -> Pagination:
    params = request.query_params
    return Pagination.from_params(params.get("page"), params.get("perPage"))


@app.get("/api/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


@app.post("/api/auth/register", status_code=201)
def register(payload: dict[str, Any] = Body(...), db: Session = Depends(get_db)):
    user, token = AuthService(db).register(payload)
    return {"user": user_to_dict(user), "token": token}


@app.post("/api/auth/login")
def login(payload: dict[str, Any] = Body(...), db: Session = Depends(get_db)):
    user, token = AuthService(db).login(payload)
    return {"user": user_to_dict(user), "token": token}


@app.get("/api/transactions")
def list_transactions(
    request: Request,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    page = TransactionService(db, cache).list(
        identity,
        filters_from_request(request),
        pagination_from_request(request),
        Sort.from_params(
            request.query_params.get("sortBy"), request.query_params.get("sortDir")
        ),
    )
    return {
        "data": [transaction_to_dict(txn) for txn in page.items],
        "meta": page.meta(),
    }


@app.post("/api/transactions", status_code=201)
def create_transaction(
    payload: dict[str, Any] = Body(...),
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    txn = TransactionService(db, cache).create(identity, payload)
    return {"data": transaction_to_dict(txn)}


@app.get("/api/transactions/stats")
def transaction_stats(
    userId: Optional[int] = Query(None, ge=1, le=MAX_ID),
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    data, cached = AnalyticsService(db, cache).stats(identity, userId)
    return {"data": data, "cached": cached}


@app.get("/api/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int = Path(..., ge=1, le=MAX_ID),
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    txn = TransactionService(db, cache).get(identity, transaction_id)
    return {"data": transaction_to_dict(txn)}


@app.put("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int = Path(..., ge=1, le=MAX_ID),
    payload: dict[str, Any] = Body(...),
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    txn = TransactionService(db, cache).update(identity, transaction_id, payload)
    return {"data": transaction_to_dict(txn)}


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int = Path(..., ge=1, le=MAX_ID),
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    TransactionService(db, cache).delete(identity, transaction_id)
    return {"message": "Transaction deleted."}


@app.get("/api/categories")
def list_categories(
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    data, cached = CategoryService(db, cache).list_all(identity)
    return {"data": data, "cached": cached}


@app.post("/api/categories", status_code=201)
def create_category(
    payload: dict[str, Any] = Body(...),
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    category = CategoryService(db, cache).create(identity, payload)
    return {"data": category_to_dict(category)}


@app.put("/api/categories/{category_id}")
def update_category(
    category_id: int = Path(..., ge=1, le=MAX_ID),
    payload: dict[str, Any] = Body(...),
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    category = CategoryService(db, cache).update(identity, category_id, payload)
    return {"data": category_to_dict(category)}


@app.delete("/api/categories/{category_id}")
def delete_category(
    category_id: int = Path(..., ge=1, le=MAX_ID),
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    CategoryService(db, cache).delete(identity, category_id)
    return {"message": "Category deleted."}


@app.get("/api/users/me")
def list_users(
    request: Request,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    page = UserService(db, cache).list(identity, pagination_from_request(request))
    return {"data": [user_to_dict(u) for u in page.items], "meta": page.meta()}


@app.put("/api/users/me/{user_id}")
def update_user_role(
    user_id: int = Path(..., ge=1, le=MAX_ID),
    payload: dict[str, Any] = Body(...),
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    user = UserService(db, cache).update_role(identity, user_id, payload)
    return {"data": user_to_dict(user)}


@app.delete("/api/users/me/{user_id}")
def delete_user(
    user_id: int = Path(..., ge=1, le=MAX_ID),
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    UserService(db, cache).delete(identity, user_id)
    return {"message": "User deleted."}


@app.get("/api/analytics/chart")
def analytics_chart(
    userId: Optional[int] = Query(None, ge=1, le=MAX_ID),
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    return AnalyticsService(db, cache).chart(identity, userId)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
