import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.database import Base, engine
from app.models import admin, security_log, token, user  # noqa: F401  (register tables)
from app.routers import actions, admin as admin_router, auth, deploy, git
from app.utils.db_migrations import ensure_deploy_columns
from app.utils.exceptions import GalaxyError
from app.utils.response import create_response, handle_exception
from seed import run_seed

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title=settings.PROJECT_NAME)

# Auto create tables
Base.metadata.create_all(bind=engine)
ensure_deploy_columns(engine)

# CORS for SPA / API access
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    return response


@app.exception_handler(GalaxyError)
async def galaxy_error_handler(request: Request, exc: GalaxyError):
    return handle_exception(exc)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return create_response("Invalid request", None, status.HTTP_400_BAD_REQUEST)


# Seed the initial admin on startup
@app.on_event("startup")
async def startup_event():
    run_seed()


# Add routes
app.include_router(auth.router)
app.include_router(admin_router.router)
app.include_router(deploy.router)
app.include_router(actions.router)
app.include_router(git.router)


@app.get("/")
def home():
    try:
        return create_response(
            message="Galaxy KickLock API running",
            data={"service": "galaxy-kicklock"},
            status_code=status.HTTP_200_OK
        )
    except Exception as exc:
        return handle_exception(exc)
