from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from datetime import datetime
import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError
import logging
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

from config.logging_config import setup_logging
from config.settings import get_settings
from config.cache import build_session_cache
from config.database import engine, Base, SessionLocal, get_pool_status, test_db_connection
from config.middleware import add_cors_middleware
import models  # noqa: F401  registers every mapped table
import conversations.router, delivery.router, jobs.router, tenants.router, webhook.router
from delivery.provider import ProviderClient
from jobs.handlers import JobHandlers
from jobs.worker import JobWorker
from llm.client import LlmClient

# ------------- Logging -------------
setup_logging()
logger = logging.getLogger(__name__)

settings = get_settings()

# ------------- JWT config -------------
JWT_SECRET = settings.jwt_secret
JWT_ALGORITHM = settings.jwt_algorithm


# ------------- Lifespan -------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle - startup and shutdown"""
    logger.info("FastAPI application starting up...")

    app.state.job_worker = None
    if settings.job_worker_enabled:
        try:
            handlers = JobHandlers(
                settings,
                app.state.session_cache,
                LlmClient.from_settings(settings),
                ProviderClient.from_settings(settings),
            )
            worker = JobWorker(SessionLocal, handlers, settings, app.state.session_cache)
            worker.start()
            app.state.job_worker = worker
        except Exception as e:
            logger.error(f"❌ Failed to start job worker: {str(e)}")
    else:
        logger.info("Job worker disabled (JOB_WORKER_ENABLED=false)")

    yield

    logger.info("FastAPI application shutting down...")
    if app.state.job_worker is not None:
        try:
            app.state.job_worker.stop()
        except Exception as e:
            logger.error(f"Error stopping job worker: {str(e)}")


# ------------- Create app -------------
app = FastAPI(title="Inbound Message Pipeline", lifespan=lifespan)
app.state.session_cache = build_session_cache(settings)


def is_valid_service_key(api_key: str):
    """
    Check if API key is a valid service key
    Returns: (is_valid, service_name)
    """
    for service_name, key in settings.service_keys.items():
        if key and api_key == key:
            return True, service_name
    return False, None


# ------------- Dual Authentication Middleware (JWT + Service Keys) -------------
async def jwt_middleware(request: Request, call_next):
    """
    Authentication for the management API:
    1. Public routes (no auth); the provider webhook authenticates by signature
    2. Service-to-service authentication (X-Service-Key header)
    3. User JWT authentication (Authorization: Bearer token)
    """
    PUBLIC_PATHS = {
        "/health",
        "/",
        "/webhook",
    }

    # 1. Allow public routes
    if request.url.path in PUBLIC_PATHS or request.url.path.startswith("/docs") or request.url.path == "/openapi.json":
        return await call_next(request)

    # 2. Check for Service API Key (X-Service-Key header)
    service_key = request.headers.get("X-Service-Key")

    if service_key:
        is_valid, service_name = is_valid_service_key(service_key)

        if is_valid:
            request.state.is_service_request = True
            request.state.service_name = service_name

            tenant_id = request.headers.get("X-Tenant-Id") or request.headers.get("X-Tenant-ID")
            if tenant_id:
                request.state.tenant_id = tenant_id

            logger.info(f"✅ Service request from: {service_name} (tenant: {tenant_id or 'none'})")
            return await call_next(request)
        else:
            logger.warning("❌ Invalid service key attempted")
            return JSONResponse(
                status_code=403,
                content={"error": "forbidden", "message": "Invalid service key"}
            )

    # 3. Check for User JWT Token (Authorization header)
    auth = request.headers.get("Authorization", "")

    if not auth.startswith("Bearer "):
        return JSONResponse(
            status_code=401,
            content={"error": "unauthorized", "message": "Authorization token missing"}
        )

    token = auth.replace("Bearer ", "")

    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM], options={"verify_aud": False})
    except ExpiredSignatureError:
        return JSONResponse(
            status_code=401,
            content={"error": "token_expired", "message": "Access token has expired"}
        )
    except InvalidTokenError:
        return JSONResponse(
            status_code=401,
            content={"error": "invalid_token", "message": "Invalid token"}
        )

    request.state.user_id = payload.get("sub")
    request.state.tenant_id = payload.get("tenant_id") or request.headers.get("X-Tenant-Id") or request.headers.get("X-Tenant-ID")
    request.state.is_service_request = False
    return await call_next(request)


app.middleware("http")(jwt_middleware)

# ------------- CORS + DB -------------
add_cors_middleware(app, settings)
Base.metadata.create_all(bind=engine)

# ------------- Routers -------------
app.include_router(webhook.router.router)
app.include_router(conversations.router.router)
app.include_router(delivery.router.router)
app.include_router(jobs.router.router)
app.include_router(tenants.router.router)


# ------------- Health + debug endpoints -------------
@app.get("/health")
def health_check(request: Request):
    worker = getattr(request.app.state, "job_worker", None)
    return {
        "status": "Pipeline is healthy",
        "job_worker": "running" if worker is not None and worker.is_running else "stopped",
        "session_cache": type(request.app.state.session_cache).__name__,
        "timestamp": datetime.utcnow().isoformat() + "Z",
    }


@app.get("/")
def read_root():
    return {"message": "FastAPI server is running"}


@app.get("/admin/db-status")
def database_status():
    """
    Monitor database connection status.
    Use this endpoint to check if connections are healthy.
    """
    db_connected = test_db_connection()
    return {
        "database_connected": db_connected,
        "dialect": engine.dialect.name,
        "pool_status": get_pool_status(),
        "recommendation": "Healthy" if db_connected else "Check database connectivity"
    }
