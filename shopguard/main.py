# shopguard/main.py
"""
ShopGuard FastAPI application.

Thin HTTP surface over the security core: login/logout, session info, CSRF
tokens, the session-bound cart and an admin audit view. All security
decisions live in the services; this module only translates them to HTTP.
"""

from fastapi import FastAPI, HTTPException, Depends, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from slowapi.errors import RateLimitExceeded
from pydantic import BaseModel, Field
from typing import Optional
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from shopguard.core.config import settings, validate_security_settings
from shopguard.core.exceptions import (
    AuthErrorCode,
    AuthenticationRequired,
    CartError,
    InternalError,
    PermissionDenied,
    ServiceError,
)
from shopguard.core.logging_config import setup_logging
from shopguard.core.rate_limit_config import ROUTE_LIMITS, get_rate_limit_message, limiter
from shopguard.core.security.csrf import CSRF_HEADER_NAME
from shopguard.middleware.security_middleware import SecurityMiddleware
from shopguard.models.auth_models import (
    LoginCredentials,
    LoginOptions,
    Permission,
    UserRole,
)
from shopguard.models.request_context import RequestContext
from shopguard.services import auth_service as auth_module
from shopguard.services.auth_service import AuthService, get_auth_service, init_auth_service
from shopguard.services.cart_service import SecureCartStore, get_cart_store, init_cart_store
from shopguard.services.maintenance import SecurityMaintenance
from shopguard.services.redis_service import RedisService
from shopguard.services.user_repository import InMemoryUserRepository, seed_demo_users

# Setup logging
logger = setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan event handler for startup/shutdown"""
    logger.info("=" * 60)
    logger.info("🚀 ShopGuard API Starting...")
    logger.info("=" * 60)

    # Fatal in production, a warning elsewhere
    validate_security_settings()

    try:
        auth = init_auth_service()
        if settings.SEED_DEMO_USERS and isinstance(auth.users, InMemoryUserRepository):
            seed_demo_users(auth.users)

        cart_store = init_cart_store(auth.session_store)

        redis_service = RedisService()
        await redis_service.initialize()

        maintenance = SecurityMaintenance(auth, cart_store, redis_service)
        maintenance.start()

        app.state.redis_service = redis_service
        app.state.maintenance = maintenance

        logger.info("📋 Configuration:")
        logger.info(f"  - Environment: {settings.ENVIRONMENT}")
        logger.info(f"  - CSRF protection: {'on' if settings.CSRF_PROTECTION else 'OFF'}")
        logger.info(f"  - Login limit: {settings.RATE_LIMIT_LOGIN_ATTEMPTS} per "
                    f"{settings.RATE_LIMIT_LOGIN_WINDOW_MS // 1000}s")
        logger.info(f"  - Audit mirror: {'redis' if redis_service.is_connected() else 'disabled'}")
        logger.info("✅ ShopGuard API Ready!")

    except Exception as e:
        logger.error(f"❌ Failed to initialize security core: {e}")
        raise  # Re-raise to fail startup

    yield

    # Shutdown
    logger.info("🛑 ShopGuard API shutting down...")
    await maintenance.stop()
    await maintenance.flush_audit()
    await redis_service.shutdown()


app = FastAPI(
    title="ShopGuard API",
    description="Session & security core for the shop",
    version="1.0.0",
    lifespan=lifespan,
)

# =============================================================================
# RATE LIMITING
# =============================================================================

def custom_rate_limit_handler(request: Request, exc: RateLimitExceeded):
    """Custom rate limit response with helpful message"""
    endpoint = "login" if request.url.path.startswith("/auth/login") else "default"
    response = PlainTextResponse(content=get_rate_limit_message(endpoint), status_code=429)
    response.headers["Retry-After"] = "60"
    return response


app.add_exception_handler(RateLimitExceeded, custom_rate_limit_handler)

# CRITICAL: Add limiter to app state (required by slowapi)
app.state.limiter = limiter


def _general_limiter():
    return auth_module.auth_service.general_limiter if auth_module.auth_service else None


app.middleware("http")(SecurityMiddleware(_general_limiter))

# =============================================================================
# ERROR TRANSLATION
# =============================================================================

@app.exception_handler(AuthenticationRequired)
async def authentication_required_handler(request: Request, exc: AuthenticationRequired):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(PermissionDenied)
async def permission_denied_handler(request: Request, exc: PermissionDenied):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(InternalError)
async def internal_error_handler(request: Request, exc: InternalError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(CartError)
async def cart_error_handler(request: Request, exc: CartError):
    return JSONResponse(status_code=400, content={"code": "cart_error", "message": exc.message})


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    logger.error(f"Service error: {exc}")
    return JSONResponse(status_code=503, content={"code": "service_unavailable", "message": "Service not ready"})

# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_context(request: Request) -> RequestContext:
    return RequestContext.from_request(request)


async def require_csrf(
    request: Request,
    ctx: RequestContext = Depends(get_context),
    auth: AuthService = Depends(get_auth_service),
) -> None:
    """State-changing routes must echo the CSRF cookie in X-CSRF-Token"""
    if not auth.validate_csrf(ctx, request.headers.get(CSRF_HEADER_NAME)):
        raise HTTPException(status_code=403, detail="Invalid or missing CSRF token")


LOGIN_FAILURE_STATUS = {
    AuthErrorCode.RATE_LIMITED.value: 429,
    AuthErrorCode.INTERNAL_ERROR.value: 500,
}

# =============================================================================
# API MODELS
# =============================================================================

class LoginRequest(BaseModel):
    email: str = ""
    password: str = ""
    remember_me: bool = False
    two_factor_code: Optional[str] = None
    redirect_to: Optional[str] = None


class AddItemRequest(BaseModel):
    product_id: str
    quantity: int = Field(default=1, ge=1)


class UpdateItemRequest(BaseModel):
    quantity: int = Field(ge=0)

# =============================================================================
# HEALTH
# =============================================================================

@app.get("/", status_code=200)
def read_root():
    """Health check endpoint"""
    return {"status": "ok", "version": "1.0.0", "service": "shopguard"}


@app.get("/health", status_code=200)
async def health(request: Request):
    """Detailed health check"""
    redis_service: Optional[RedisService] = getattr(request.app.state, "redis_service", None)
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "redis": await redis_service.health_check() if redis_service else {"status": "disabled"},
    }

# =============================================================================
# AUTH
# =============================================================================

@app.get("/auth/csrf")
@limiter.limit(ROUTE_LIMITS["session"])
async def issue_csrf_token(
    request: Request,
    response: Response,
    auth: AuthService = Depends(get_auth_service),
):
    """Issue a CSRF token and store it in the signed csrf-token cookie"""
    token = auth.csrf_guard.issue(response)
    return {"csrf_token": token}


@app.post("/auth/login", dependencies=[Depends(require_csrf)])
@limiter.limit(ROUTE_LIMITS["login"])
async def login(
    request: Request,
    response: Response,
    body: LoginRequest,
    ctx: RequestContext = Depends(get_context),
    auth: AuthService = Depends(get_auth_service),
    carts: SecureCartStore = Depends(get_cart_store),
):
    guest_cart_id = carts.guest_cart_id(ctx)
    result = await auth.login(
        ctx,
        LoginCredentials(
            email=body.email,
            password=body.password,
            remember_me=body.remember_me,
            two_factor_code=body.two_factor_code,
        ),
        LoginOptions(redirect_to=body.redirect_to),
    )

    if not result.success:
        response.status_code = LOGIN_FAILURE_STATUS.get(result.error.code, 401)
        if result.error.code == AuthErrorCode.RATE_LIMITED.value:
            retry_after = result.error.details.get("retry_after_seconds", 0)
            response.headers["Retry-After"] = str(max(1, retry_after))
        return {
            "success": False,
            "requires_two_factor": result.requires_two_factor,
            "error": result.error.model_dump(),
        }

    user_cart = carts.get_for_session(result.session, ctx)
    carts.transfer_guest_cart(guest_cart_id, user_cart)

    auth.session_store.set_cookie(response, result.session)
    return {
        "success": True,
        "user": result.user.model_dump(mode="json"),
        "redirect_to": result.redirect_to,
    }


@app.post("/auth/logout", dependencies=[Depends(require_csrf)])
async def logout(
    response: Response,
    ctx: RequestContext = Depends(get_context),
    auth: AuthService = Depends(get_auth_service),
):
    await auth.logout(ctx, response)
    return {"success": True, "redirect_to": settings.LOGIN_URL}


@app.post("/auth/logout-all", dependencies=[Depends(require_csrf)])
async def logout_all(
    response: Response,
    ctx: RequestContext = Depends(get_context),
    auth: AuthService = Depends(get_auth_service),
):
    count = await auth.logout_all_devices(ctx)
    auth.session_store.clear_cookie(response)
    return {"success": True, "sessions_ended": count}


@app.get("/auth/session")
@limiter.limit(ROUTE_LIMITS["session"])
async def session_info(
    request: Request,
    ctx: RequestContext = Depends(get_context),
    auth: AuthService = Depends(get_auth_service),
):
    user, session = await auth.require_auth(ctx)
    return {
        "user": user.model_dump(mode="json"),
        "session": auth.session_store.get_session_info(session.session_id),
    }


@app.post("/auth/refresh", dependencies=[Depends(require_csrf)])
async def refresh_session(
    response: Response,
    ctx: RequestContext = Depends(get_context),
    auth: AuthService = Depends(get_auth_service),
):
    session = await auth.refresh_current_session(ctx)
    if session is None:
        raise AuthenticationRequired(redirect_to=settings.LOGIN_URL)
    auth.session_store.set_cookie(response, session)
    return {"success": True, "expires_at": session.expires_at.isoformat()}

# =============================================================================
# CART
# =============================================================================

def _cart_view(cart) -> dict:
    return cart.model_dump(mode="json", exclude={"session_id"})


@app.get("/cart")
@limiter.limit(ROUTE_LIMITS["cart"])
async def get_cart(
    request: Request,
    ctx: RequestContext = Depends(get_context),
    carts: SecureCartStore = Depends(get_cart_store),
):
    return _cart_view(carts.get_or_create(ctx))


@app.post("/cart/items", dependencies=[Depends(require_csrf)])
async def add_cart_item(
    body: AddItemRequest,
    ctx: RequestContext = Depends(get_context),
    carts: SecureCartStore = Depends(get_cart_store),
):
    cart = carts.get_or_create(ctx)
    return _cart_view(carts.add_item(cart, body.product_id, body.quantity))


@app.patch("/cart/items/{item_id}", dependencies=[Depends(require_csrf)])
async def update_cart_item(
    item_id: str,
    body: UpdateItemRequest,
    ctx: RequestContext = Depends(get_context),
    carts: SecureCartStore = Depends(get_cart_store),
):
    cart = carts.get_or_create(ctx)
    return _cart_view(carts.update_quantity(cart, item_id, body.quantity))


@app.delete("/cart/items/{item_id}", dependencies=[Depends(require_csrf)])
async def remove_cart_item(
    item_id: str,
    ctx: RequestContext = Depends(get_context),
    carts: SecureCartStore = Depends(get_cart_store),
):
    cart = carts.get_or_create(ctx)
    return _cart_view(carts.remove_item(cart, item_id))


@app.delete("/cart", dependencies=[Depends(require_csrf)])
async def clear_cart(
    ctx: RequestContext = Depends(get_context),
    carts: SecureCartStore = Depends(get_cart_store),
):
    cart = carts.get_or_create(ctx)
    return _cart_view(carts.clear(cart))

# =============================================================================
# ADMIN
# =============================================================================

@app.get("/admin/audit")
@limiter.limit(ROUTE_LIMITS["admin"])
async def audit_events(
    request: Request,
    limit: int = 50,
    ctx: RequestContext = Depends(get_context),
    auth: AuthService = Depends(get_auth_service),
):
    """Most recent audit events, newest first"""
    await auth.require_permission(ctx, Permission.SYSTEM_ADMIN)
    events = auth.audit_log.query(min(max(limit, 0), settings.AUDIT_LOG_CAPACITY))
    return {"events": [e.model_dump(mode="json") for e in events]}


@app.get("/admin/security")
@limiter.limit(ROUTE_LIMITS["admin"])
async def security_health(
    request: Request,
    ctx: RequestContext = Depends(get_context),
    auth: AuthService = Depends(get_auth_service),
    carts: SecureCartStore = Depends(get_cart_store),
):
    await auth.require_role(ctx, UserRole.ADMIN)
    health = auth.get_security_health()
    health["carts"] = carts.get_metrics()
    return health


# Main entry point
if __name__ == "__main__":
    import os
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    logger.info(f"🚀 Starting ShopGuard on port {port}...")
    uvicorn.run(app, host="0.0.0.0", port=port, log_level="info")
