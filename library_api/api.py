import logging
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings, settings as default_settings
from .errors import LibraryError, PermissionDeniedError, ValidationError
from .models import BorrowStatus, Role, TransactionStatus, TransactionType, User, utcnow
from .ratelimit import RateLimiter
from .schemas import (
    BookCreate,
    BookUpdate,
    BorrowRequest,
    LoginRequest,
    NameRequest,
    PaymentCreate,
    PaymentStatusUpdate,
    RegisterAdminRequest,
    RegisterRequest,
    ToggleStatusRequest,
    UserUpdateRequest,
)
from .services import LibraryServices

logger = logging.getLogger(__name__)

RATE_LIMIT_EXEMPT = {"/health"}


def ok(data: Any = None, message: str = "OK") -> Dict[str, Any]:
    return {"success": True, "message": message, "data": data}


def _error_response(status_code: int, message: str, errors: Optional[List[Dict[str, Any]]] = None,
                    headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    content: Dict[str, Any] = {"success": False, "message": message, "data": None}
    if errors:
        content["errors"] = errors
    return JSONResponse(status_code=status_code, content=jsonable_encoder(content), headers=headers)


# --- Dependencies ---
bearer_scheme = HTTPBearer(auto_error=False)


def get_services(request: Request) -> LibraryServices:
    state = request.app.state
    if state.services is None:
        state.services = LibraryServices(state.settings)
    return state.services


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    services: LibraryServices = Depends(get_services),
) -> User:
    token = credentials.credentials if credentials else None
    return services.auth.authenticate(token)


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise PermissionDeniedError("Admin access required")
    return user


def _own_or_admin(user: User, user_id: Optional[str]) -> Optional[str]:
    """Members may only look at their own data; admins may pick any user (or none)."""
    if user.is_admin:
        return user_id
    if user_id and user_id != user.id:
        raise PermissionDeniedError("You can only access your own records")
    return user.id


# --- Health ---
health_router = APIRouter(tags=["health"])


@health_router.get("/health")
def health(services: LibraryServices = Depends(get_services)):
    """Liveness check with a quick database round trip."""
    db_ok = True
    try:
        with services.db.connection() as conn:
            conn.execute("SELECT 1")
    except sqlite3.Error:
        logger.exception("Health check could not reach the database")
        db_ok = False
    return ok({
        "status": "healthy" if db_ok else "degraded",
        "timestamp": utcnow(),
        "version": services.settings.app_version,
        "database": db_ok,
    })


# --- Auth ---
auth_router = APIRouter(prefix="/auth", tags=["auth"])


@auth_router.post("/register", status_code=201)
def register(payload: RegisterRequest, services: LibraryServices = Depends(get_services)):
    result = services.auth.register(payload.email, payload.password, payload.first_name, payload.last_name)
    return ok(result, "User registered successfully")


@auth_router.post("/register-admin", status_code=201)
def register_admin(payload: RegisterAdminRequest, services: LibraryServices = Depends(get_services)):
    result = services.auth.register_admin(
        payload.email, payload.password, payload.first_name, payload.last_name, payload.registration_code
    )
    return ok(result, "Admin registered successfully")


@auth_router.post("/login")
def login(payload: LoginRequest, services: LibraryServices = Depends(get_services)):
    return ok(services.auth.login(payload.email, payload.password), "Login successful")


# --- Users ---
users_router = APIRouter(prefix="/users", tags=["users"])


@users_router.get("/me")
def get_me(user: User = Depends(get_current_user)):
    return ok(user.to_dict())


@users_router.get("/me/borrowing-stats")
def get_my_borrowing_stats(
    user: User = Depends(get_current_user), services: LibraryServices = Depends(get_services)
):
    return ok(services.users.borrowing_stats(user.id))


@users_router.get("", dependencies=[Depends(require_admin)])
def list_users(
    search: Optional[str] = None,
    role: Optional[Role] = None,
    is_active: Optional[bool] = None,
    page: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    services: LibraryServices = Depends(get_services),
):
    result = services.users.list_users(search=search, role=role, is_active=is_active, page=page, limit=limit)
    return ok(result.to_dict("users"))


@users_router.get("/{user_id}", dependencies=[Depends(require_admin)])
def get_user(user_id: str, services: LibraryServices = Depends(get_services)):
    return ok(services.users.get_user(user_id).to_dict())


@users_router.get("/{user_id}/borrowing-stats", dependencies=[Depends(require_admin)])
def get_user_borrowing_stats(user_id: str, services: LibraryServices = Depends(get_services)):
    return ok(services.users.borrowing_stats(user_id))


@users_router.patch("/{user_id}", dependencies=[Depends(require_admin)])
def update_user(user_id: str, payload: UserUpdateRequest, services: LibraryServices = Depends(get_services)):
    user = services.users.update_user(user_id, **payload.model_dump(exclude_none=True))
    return ok(user.to_dict(), "User updated successfully")


@users_router.post("/{user_id}/toggle-status")
def toggle_user_status(
    user_id: str,
    payload: ToggleStatusRequest,
    admin: User = Depends(require_admin),
    services: LibraryServices = Depends(get_services),
):
    if user_id == admin.id and not payload.is_active:
        raise ValidationError("You cannot deactivate your own account")
    user = services.users.set_active(user_id, payload.is_active)
    state = "activated" if user.is_active else "deactivated"
    return ok(user.to_dict(), f"User {state} successfully")


@users_router.post("/{user_id}/verify", dependencies=[Depends(require_admin)])
def verify_user(user_id: str, services: LibraryServices = Depends(get_services)):
    return ok(services.users.verify_user(user_id).to_dict(), "User verified successfully")


@users_router.delete("/{user_id}", status_code=204)
def delete_user(
    user_id: str, admin: User = Depends(require_admin), services: LibraryServices = Depends(get_services)
):
    if user_id == admin.id:
        raise ValidationError("You cannot delete your own account")
    services.users.delete_user(user_id)
    return Response(status_code=204)


# --- Books ---
books_router = APIRouter(prefix="/books", tags=["books"])


@books_router.get("")
def list_books(
    search: Optional[str] = None,
    category_id: Optional[str] = None,
    author_id: Optional[str] = None,
    available: Optional[bool] = None,
    page: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    services: LibraryServices = Depends(get_services),
):
    result = services.books.list_books(
        search=search, category_id=category_id, author_id=author_id,
        available=available, page=page, limit=limit,
    )
    return ok(result.to_dict("books"))


@books_router.get("/{book_id}")
def get_book(book_id: str, services: LibraryServices = Depends(get_services)):
    return ok(services.books.get_book(book_id).to_dict())


@books_router.post("", status_code=201, dependencies=[Depends(require_admin)])
def create_book(payload: BookCreate, services: LibraryServices = Depends(get_services)):
    book = services.books.create_book(
        isbn=payload.isbn,
        title=payload.title,
        total_copies=payload.total_copies,
        author_ids=payload.author_ids,
        category_ids=payload.category_ids,
    )
    return ok(book.to_dict(), "Book created successfully")


@books_router.put("/{book_id}", dependencies=[Depends(require_admin)])
def update_book(book_id: str, payload: BookUpdate, services: LibraryServices = Depends(get_services)):
    book = services.books.update_book(book_id, **payload.model_dump(exclude_none=True))
    return ok(book.to_dict(), "Book updated successfully")


@books_router.delete("/{book_id}", status_code=204, dependencies=[Depends(require_admin)])
def delete_book(book_id: str, services: LibraryServices = Depends(get_services)):
    services.books.delete_book(book_id)
    return Response(status_code=204)


# --- Authors and categories ---
def _named_entity_router(prefix: str, attr: str, key: str, label: str) -> APIRouter:
    """Routes for the two name-only entities, which share one service shape."""
    router = APIRouter(prefix=prefix, tags=[key])

    @router.get("")
    def list_entities(
        search: Optional[str] = None,
        page: Optional[int] = Query(None, ge=1),
        limit: Optional[int] = Query(None, ge=1),
        services: LibraryServices = Depends(get_services),
    ):
        result = getattr(services, attr).list_all(search=search, page=page, limit=limit)
        return ok(result.to_dict(key))

    @router.get("/{entity_id}")
    def get_entity(entity_id: str, services: LibraryServices = Depends(get_services)):
        return ok(getattr(services, attr).get(entity_id).to_dict())

    @router.post("", status_code=201, dependencies=[Depends(require_admin)])
    def create_entity(payload: NameRequest, services: LibraryServices = Depends(get_services)):
        return ok(getattr(services, attr).create(payload.name).to_dict(), f"{label} created successfully")

    @router.put("/{entity_id}", dependencies=[Depends(require_admin)])
    def update_entity(entity_id: str, payload: NameRequest, services: LibraryServices = Depends(get_services)):
        entity = getattr(services, attr).update(entity_id, payload.name)
        return ok(entity.to_dict(), f"{label} updated successfully")

    @router.delete("/{entity_id}", status_code=204, dependencies=[Depends(require_admin)])
    def delete_entity(entity_id: str, services: LibraryServices = Depends(get_services)):
        getattr(services, attr).delete(entity_id)
        return Response(status_code=204)

    return router


authors_router = _named_entity_router("/authors", "authors", "authors", "Author")
categories_router = _named_entity_router("/categories", "categories", "categories", "Category")


# --- Borrowing ---
borrow_router = APIRouter(prefix="/borrow", tags=["borrowing"])


@borrow_router.post("", status_code=201)
def borrow_book(
    payload: BorrowRequest,
    user: User = Depends(get_current_user),
    services: LibraryServices = Depends(get_services),
):
    record = services.borrowing.borrow_book(user.id, payload.book_id)
    return ok(record.to_dict(), "Book borrowed successfully")


@borrow_router.post("/return")
def return_book(
    payload: BorrowRequest,
    user: User = Depends(get_current_user),
    services: LibraryServices = Depends(get_services),
):
    record = services.borrowing.return_book(user.id, payload.book_id)
    message = "Book returned successfully"
    if record.fine:
        message += f". Fine of {record.fine:.2f} charged for {record.days_overdue} overdue day(s)"
    return ok(record.to_dict(), message)


@borrow_router.get("/history")
def borrow_history(
    status: Optional[BorrowStatus] = None,
    user_id: Optional[str] = None,
    page: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    user: User = Depends(get_current_user),
    services: LibraryServices = Depends(get_services),
):
    result = services.borrowing.get_history(
        user_id=_own_or_admin(user, user_id), status=status, page=page, limit=limit
    )
    return ok(result.to_dict("records"))


# --- Payments ---
payments_router = APIRouter(prefix="/payments", tags=["payments"])


@payments_router.post("", status_code=201)
def create_payment(
    payload: PaymentCreate,
    user: User = Depends(get_current_user),
    services: LibraryServices = Depends(get_services),
):
    payment = services.payments.create_payment(user.id, payload.amount, payload.type)
    return ok(payment.to_dict(), "Payment created successfully")


@payments_router.patch("/{payment_id}/status", dependencies=[Depends(require_admin)])
def update_payment_status(
    payment_id: str, payload: PaymentStatusUpdate, services: LibraryServices = Depends(get_services)
):
    payment = services.payments.update_status(payment_id, payload.status)
    return ok(payment.to_dict(), "Payment status updated successfully")


@payments_router.get("/history")
def payment_history(
    user_id: Optional[str] = None,
    type: Optional[TransactionType] = None,
    status: Optional[TransactionStatus] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    user: User = Depends(get_current_user),
    services: LibraryServices = Depends(get_services),
):
    result = services.payments.get_history(
        user_id=_own_or_admin(user, user_id),
        type=type,
        status=status,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )
    return ok(result.to_dict("payments"))


@payments_router.get("/stats", dependencies=[Depends(require_admin)])
def payment_stats(services: LibraryServices = Depends(get_services)):
    return ok(services.payments.get_stats())


@payments_router.get("/stats/{user_id}")
def user_payment_stats(
    user_id: str,
    user: User = Depends(get_current_user),
    services: LibraryServices = Depends(get_services),
):
    target = _own_or_admin(user, user_id)
    services.users.get_user(target)
    return ok(services.payments.get_stats(target))


@payments_router.get("/{payment_id}/invoice")
def payment_invoice(
    payment_id: str,
    user: User = Depends(get_current_user),
    services: LibraryServices = Depends(get_services),
):
    invoice = services.payments.get_invoice(payment_id)
    if not user.is_admin and invoice.user_id != user.id:
        raise PermissionDeniedError("You can only access your own invoices")
    return ok(invoice.to_dict())


# --- Analytics ---
analytics_router = APIRouter(prefix="/analytics", tags=["analytics"], dependencies=[Depends(require_admin)])


@analytics_router.get("/books/most-borrowed")
def most_borrowed_books(
    limit: Optional[int] = Query(None, ge=1), services: LibraryServices = Depends(get_services)
):
    return ok(services.analytics.most_borrowed_books(limit))


@analytics_router.get("/reports/monthly/{year}/{month}")
def monthly_report(year: int, month: int, services: LibraryServices = Depends(get_services)):
    return ok(services.analytics.monthly_report(year, month))


@analytics_router.get("/users/activity")
def user_activity(
    limit: Optional[int] = Query(None, ge=1), services: LibraryServices = Depends(get_services)
):
    return ok(services.analytics.user_activity_stats(limit))


@analytics_router.get("/revenue")
def revenue(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    services: LibraryServices = Depends(get_services),
):
    return ok(services.analytics.revenue_stats(start_date, end_date))


# --- Error handlers ---
def _field_name(loc) -> str:
    parts = [str(part) for part in loc if part not in ("body", "query", "path")]
    return ".".join(parts) or "request"


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(LibraryError)
    async def library_error_handler(request: Request, exc: LibraryError):
        errors = exc.errors if isinstance(exc, ValidationError) else None
        return _error_response(exc.status_code, exc.message, errors)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [{"field": _field_name(err.get("loc", ())), "message": err.get("msg", "Invalid value")}
                  for err in exc.errors()]
        return _error_response(400, "Validation failed", errors)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return _error_response(exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error_response(500, "Internal server error")


# --- Application factory ---
def create_app(settings: Optional[Settings] = None, services: Optional[LibraryServices] = None) -> FastAPI:
    """Build the HTTP application.

    ``services`` is created lazily from ``settings`` on first use when not
    given, so importing this module does not touch the database.
    """
    settings = settings or (services.settings if services else default_settings)
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.services is None:
            app.state.services = LibraryServices(app.state.settings)
        logger.info("%s %s started (%s)", settings.app_name, settings.app_version, settings.environment)
        yield
        logger.info("%s stopped", settings.app_name)

    app = FastAPI(title=settings.app_name, version=settings.app_version, debug=settings.debug, lifespan=lifespan)
    app.state.settings = settings
    app.state.services = services
    app.state.rate_limiter = RateLimiter(settings.api_rate_limit, settings.api_rate_limit_window)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def rate_limit(request: Request, call_next):
        limiter: RateLimiter = request.app.state.rate_limiter
        if limiter.enabled and request.url.path not in RATE_LIMIT_EXEMPT:
            client = request.client.host if request.client else "anonymous"
            if not limiter.hit(client):
                logger.warning("Rate limit exceeded for %s", client)
                return _error_response(
                    429,
                    "Too many requests, please try again later",
                    headers={"Retry-After": str(limiter.retry_after(client))},
                )
        return await call_next(request)

    install_error_handlers(app)

    for router in (
        health_router,
        auth_router,
        users_router,
        books_router,
        authors_router,
        categories_router,
        borrow_router,
        payments_router,
        analytics_router,
    ):
        app.include_router(router)
    return app


app = create_app()
