import os
from pathlib import Path
from dotenv import load_dotenv
from fastapi.security import HTTPBearer

BASE_DIR = Path(__file__).resolve().parent.parent  # -> project root

# Load .env explicitly from project root
load_dotenv(BASE_DIR / ".env")


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes"}


def _env_list(name: str, default: str = "") -> list[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


class Settings:
    PROJECT_NAME = "Galaxy KickLock"

    DATABASE_URL = os.getenv("DATABASE_URL")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    JWT_SECRET = os.getenv("JWT_SECRET")
    ALGORITHM = os.getenv("ALGORITHM", "HS256")
    ADMIN_SESSION_EXPIRE_MINUTES = int(os.getenv("ADMIN_SESSION_EXPIRE_MINUTES", 720))

    # Gradio-hosted deploy/undeploy/status service
    DEPLOY_API_URL = os.getenv("DEPLOY_API_URL")
    UNDEPLOY_API_URL = os.getenv("UNDEPLOY_API_URL")
    STATUS_API_URL = os.getenv("STATUS_API_URL")
    REPO_URL = os.getenv("REPO_URL")
    MODAL_API_BASE_URL = os.getenv("MODAL_API_BASE_URL")

    # Per-user tunnel endpoint, e.g. https://{username}.loca.lt
    TUNNEL_URL_TEMPLATE = os.getenv("TUNNEL_URL_TEMPLATE", "https://{username}.loca.lt")
    LOGICAL_USERNAME_SUFFIX = os.getenv("LOGICAL_USERNAME_SUFFIX", "7890")

    # GitHub Actions workflow that runs the workload
    GITHUB_API_URL = os.getenv("GITHUB_API_URL", "https://api.github.com")
    GITHUB_ORG = os.getenv("GITHUB_ORG")
    GITHUB_REPO = os.getenv("GITHUB_REPO")
    GITHUB_WORKFLOW_FILE = os.getenv("GITHUB_WORKFLOW_FILE", "blank.yml")
    GITHUB_REF = os.getenv("GITHUB_REF", "main")
    GITHUB_TOKEN = os.getenv("GITHUB_TOKEN")
    GITHUB_RETRY_WAIT_SECONDS = float(os.getenv("GITHUB_RETRY_WAIT_SECONDS", 10))
    GITHUB_JOBS_DELAY_SECONDS = float(os.getenv("GITHUB_JOBS_DELAY_SECONDS", 5))

    INTERNAL_API_KEY = os.getenv("INTERNAL_API_KEY")
    ENCRYPTION_KEY = os.getenv("ENCRYPTION_KEY")

    REDIS_URL = os.getenv("REDIS_URL")
    RATE_LIMIT_ENABLED = _env_bool("RATE_LIMIT_ENABLED", "false")
    RATE_LIMIT_MAX_REQUESTS = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", 60))
    RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", 60))
    MAX_REQUEST_BYTES = int(os.getenv("MAX_REQUEST_BYTES", 1024))
    MAX_ACTION_REQUEST_BYTES = int(os.getenv("MAX_ACTION_REQUEST_BYTES", 5 * 1024))

    bearer_scheme = HTTPBearer(auto_error=False)
    cors_origins = _env_list("CORS_ORIGINS", "*")
    allowed_origins = _env_list("ALLOWED_ORIGINS")


settings = Settings()
