import logging
import math
import time
from datetime import date, datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import TokenError, decode_access_token, generate_access_token
from config import get_settings
from database import SessionLocal, init_db, session_scope
from models import CategoryType, GoalStatus, TransactionType, User
from money import cents_to_amount
from periods import resolve_range
from schemas import (
    AccountIn,
    AccountUpdate,
    GoalContributionIn,
    GoalIn,
    GoalUpdate,
    LoginIn,
    RegisterIn,
    TransactionIn,
    TransactionUpdate,
)
from serializers import (
    serialize_account,
    serialize_category,
    serialize_goal,
    serialize_transaction,
    serialize_user,
)
from services import (
    AccountService,
    AnalyticsService,
    AuthenticationError,
    CategoryService,
    ConflictError,
    GoalService,
    NotFoundError,
    ReferentialConflictError,
    TransactionFilters,
    TransactionService,
    UserService,
    ValidationError,
    seed_categories,
)

APP_VERSION = "1.0.0"

settings = get_settings()
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger API", version=APP_VERSION)
bearer_scheme = HTTPBearer(auto_error=False)

ERROR_STATUS: dict[type, int] = {
    NotFoundError: 404,
    ValidationError: 400,
    ConflictError: 409,
    ReferentialConflictError: 400,
    AuthenticationError: 401,
}


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def envelope(
    data: Optional[object] = None,
    message: Optional[str] = None,
    status_code: int = 200,
    *,
    success: bool = True,
    errors: Optional[object] = None,
) -> JSONResponse:
    content: dict[str, object] = {"success": success}
    if message is not None:
        content["message"] = message
    if data is not None:
        content["data"] = data
    if errors is not None:
        content["errors"] = errors
    return JSONResponse(status_code=status_code, content=jsonable_encoder(content))


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Access token required")
    try:
        payload = decode_access_token(credentials.credentials)
    except TokenError as exc:
        raise AuthenticationError(str(exc)) from exc
    user = db.get(User, payload["id"])
    if not user:
        raise AuthenticationError("User not found")
    return user


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    status_code = 400
    for exc_type, code in ERROR_STATUS.items():
        if isinstance(exc, exc_type):
            status_code = code
            break
    return envelope(message=str(exc), status_code=status_code, success=False)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
            "message": err.get("msg"),
        }
        for err in exc.errors()
    ]
    return envelope(
        message="Validation error", status_code=400, success=False, errors=errors
    )


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError):
    logger.warning(f"integrity_error: path={request.url.path} detail={exc.orig}")
    return envelope(message="Resource already exists", status_code=409, success=False)


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    logger.error(f"database_unavailable: path={request.url.path} detail={exc.orig}")
    return envelope(
        message="Database temporarily unavailable", status_code=503, success=False
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    if exc.status_code == 404 and message == "Not Found":
        message = f"Route {request.method} {request.url.path} not found"
    return envelope(message=message, status_code=exc.status_code, success=False)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"unhandled_error: method={request.method} path={request.url.path}")
    errors = [str(exc)] if settings.debug else None
    return envelope(
        message="Internal server error", status_code=500, success=False, errors=errors
    )


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info(
        f"request: method={request.method} path={request.url.path} "
        f"status={response.status_code} duration_ms={elapsed_ms:.1f}"
    )
    return response


@app.on_event("startup")
def startup_event():
    if settings.auto_create_schema:
        init_db()
    if settings.seed_categories:
        with session_scope() as session:
            seed_categories(session)
    logger.info(f"startup: version={APP_VERSION} debug={settings.debug}")


def _int_param(request: Request, name: str, default: Optional[int] = None) -> Optional[int]:
    raw = request.query_params.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValidationError(f"Query parameter '{name}' must be an integer") from exc


def _date_param(request: Request, name: str) -> Optional[date]:
    raw = request.query_params.get(name)
    if not raw:
        return None
    try:
        return date.fromisoformat(raw[:10])
    except ValueError as exc:
        raise ValidationError(f"Query parameter '{name}' must be a date") from exc


def filters_from_request(request: Request) -> TransactionFilters:
    type_param = request.query_params.get("type")
    txn_type = None
    if type_param:
        try:
            txn_type = TransactionType(type_param)
        except ValueError:
            txn_type = None
    start = _date_param(request, "start_date")
    end = _date_param(request, "end_date")
    try:
        period = resolve_range(start, end)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    return TransactionFilters(
        type=txn_type,
        account_id=_int_param(request, "account_id"),
        category_id=_int_param(request, "category_id"),
        period=period,
    )


@app.get("/")
def index():
    return envelope(
        {
            "name": "Ledger API",
            "version": APP_VERSION,
            "endpoints": {
                "auth": "/api/auth",
                "accounts": "/api/accounts",
                "categories": "/api/categories",
                "transactions": "/api/transactions",
                "goals": "/api/goals",
                "analytics": "/api/analytics",
            },
        }
    )


@app.get("/health")
def health():
    return envelope(
        {"timestamp": datetime.now(timezone.utc).isoformat()}, message="OK"
    )


# Auth


@app.post("/api/auth/register")
def register(payload: RegisterIn, db: Session = Depends(get_db)):
    user = UserService(db).register(payload)
    token = generate_access_token(user.id, user.email, user.name)
    return envelope(
        {"user": serialize_user(user), "token": token},
        message="User registered",
        status_code=201,
    )


@app.post("/api/auth/login")
def login(payload: LoginIn, db: Session = Depends(get_db)):
    user = UserService(db).authenticate(payload)
    token = generate_access_token(user.id, user.email, user.name)
    return envelope(
        {"user": serialize_user(user), "token": token}, message="Login successful"
    )


@app.get("/api/auth/profile")
def profile(user: User = Depends(get_current_user)):
    return envelope({"user": serialize_user(user, include_created=True)})


# Accounts


@app.post("/api/accounts")
def create_account(
    payload: AccountIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    account = AccountService(db, user.id).create(payload)
    return envelope(
        {"account": serialize_account(account)},
        message="Account created",
        status_code=201,
    )


@app.get("/api/accounts")
def list_accounts(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    service = AccountService(db, user.id)
    accounts = service.list_all()
    return envelope(
        {
            "accounts": [serialize_account(a) for a in accounts],
            "total_balance": cents_to_amount(service.total_balance_cents()),
        }
    )


@app.get("/api/accounts/summary")
def accounts_summary(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    return envelope(AccountService(db, user.id).summary())


@app.get("/api/accounts/{account_id}")
def get_account(
    account_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    account = AccountService(db, user.id).get(account_id)
    return envelope({"account": serialize_account(account)})


@app.put("/api/accounts/{account_id}")
def update_account(
    account_id: int,
    payload: AccountUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    account = AccountService(db, user.id).update(account_id, payload)
    return envelope({"account": serialize_account(account)}, message="Account updated")


@app.delete("/api/accounts/{account_id}")
def delete_account(
    account_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    AccountService(db, user.id).delete(account_id)
    return envelope(message="Account deleted")


@app.get("/api/accounts/{account_id}/reconcile")
def check_account_balance(
    account_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return envelope(AccountService(db, user.id).reconcile(account_id))


@app.post("/api/accounts/{account_id}/reconcile")
def repair_account_balance(
    account_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    result = AccountService(db, user.id).reconcile(account_id, repair=True)
    message = "Balance repaired" if result["repaired"] else "Balance already consistent"
    return envelope(result, message=message)


# Categories


@app.get("/api/categories")
def list_categories(
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    type_param = request.query_params.get("type")
    category_type = None
    if type_param:
        try:
            category_type = CategoryType(type_param)
        except ValueError as exc:
            raise ValidationError("Invalid category type") from exc
    categories = CategoryService(db).list_all(category_type)
    return envelope({"categories": [serialize_category(c) for c in categories]})


# Transactions


@app.post("/api/transactions")
def create_transaction(
    payload: TransactionIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, user.id).create(payload)
    return envelope(
        {"transaction": serialize_transaction(txn)},
        message="Transaction created",
        status_code=201,
    )


@app.get("/api/transactions")
def list_transactions(
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    filters = filters_from_request(request)
    page = max(_int_param(request, "page", 1), 1)
    limit = min(max(_int_param(request, "limit", 20), 1), 100)
    offset = (page - 1) * limit
    items, total = TransactionService(db, user.id).list(filters, limit=limit, offset=offset)
    return envelope(
        {
            "transactions": [serialize_transaction(t) for t in items],
            "pagination": {
                "current_page": page,
                "total_pages": math.ceil(total / limit) if total else 0,
                "total_items": total,
                "items_per_page": limit,
            },
        }
    )


@app.get("/api/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, user.id).get(transaction_id)
    return envelope({"transaction": serialize_transaction(txn)})


@app.put("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, user.id).update(transaction_id, payload)
    return envelope(
        {"transaction": serialize_transaction(txn)}, message="Transaction updated"
    )


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    TransactionService(db, user.id).delete(transaction_id)
    return envelope(message="Transaction deleted")


# Goals


@app.post("/api/goals")
def create_goal(
    payload: GoalIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    goal = GoalService(db, user.id).create(payload)
    return envelope(
        {"goal": serialize_goal(goal)}, message="Goal created", status_code=201
    )


@app.get("/api/goals")
def list_goals(
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    status_param = request.query_params.get("status")
    status = None
    if status_param:
        try:
            status = GoalStatus(status_param)
        except ValueError:
            status = None
    service = GoalService(db, user.id)
    goals = service.list_all(status)
    return envelope(
        {
            "goals": [serialize_goal(g) for g in goals],
            "statistics": service.statistics(goals),
        }
    )


@app.get("/api/goals/upcoming")
def upcoming_goals(
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    days = _int_param(request, "days", 30)
    goals = GoalService(db, user.id).upcoming(days)
    return envelope({"goals": [serialize_goal(g) for g in goals]})


@app.get("/api/goals/{goal_id}")
def get_goal(
    goal_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    goal = GoalService(db, user.id).get(goal_id)
    return envelope({"goal": serialize_goal(goal)})


@app.put("/api/goals/{goal_id}")
def update_goal(
    goal_id: int,
    payload: GoalUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    goal = GoalService(db, user.id).update(goal_id, payload)
    return envelope({"goal": serialize_goal(goal)}, message="Goal updated")


@app.post("/api/goals/{goal_id}/add")
def contribute_to_goal(
    goal_id: int,
    payload: GoalContributionIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    goal, completed = GoalService(db, user.id).contribute(goal_id, payload.amount)
    message = "Goal completed" if completed else "Contribution added to goal"
    return envelope({"goal": serialize_goal(goal)}, message=message)


@app.delete("/api/goals/{goal_id}")
def delete_goal(
    goal_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    GoalService(db, user.id).delete(goal_id)
    return envelope(message="Goal deleted")


# Analytics


@app.get("/api/analytics/monthly")
def monthly_analysis(
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    year = _int_param(request, "year")
    month = _int_param(request, "month")
    return envelope(AnalyticsService(db, user.id).monthly(year, month))


@app.get("/api/analytics/projections")
def projections(
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    months = _int_param(request, "months", 6)
    seed = _int_param(request, "seed")
    return envelope(AnalyticsService(db, user.id).projections(months, seed=seed))


@app.get("/api/analytics/dashboard")
def dashboard(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return envelope(AnalyticsService(db, user.id).dashboard())
