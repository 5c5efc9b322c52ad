import os

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


# ---------- Auth / session ----------
JWT_SECRET = os.getenv("JWT_SECRET")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_TTL_DAYS = _env_int("JWT_TTL_DAYS", 7)

if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET environment variable is not set")

SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session_token")
SIGN_IN_PATH = os.getenv("SIGN_IN_PATH", "/sign-in")

GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
GOOGLE_REDIRECT_URI = os.getenv("GOOGLE_REDIRECT_URI")

FRONTEND_BASE_URL = os.getenv("FRONTEND_BASE_URL", "http://localhost:3000")
CORS_ALLOW_ORIGINS = [
    o.strip()
    for o in os.getenv("CORS_ALLOW_ORIGINS", FRONTEND_BASE_URL).split(",")
    if o.strip()
]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# ---------- Database ----------
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./resume_builder.db")

# ---------- Object storage (R2, S3-compatible API) ----------
R2_ACCOUNT_ID = os.getenv("R2_ACCOUNT_ID")
R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID")
R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY")
R2_BUCKET_NAME = os.getenv("R2_BUCKET_NAME", "ai-resume-uploads")
# Explicit endpoint wins over the one derived from the account id (local minio etc.)
R2_ENDPOINT_URL = os.getenv("R2_ENDPOINT_URL")

PRESIGN_EXPIRES_SECONDS = _env_int("PRESIGN_EXPIRES_SECONDS", 300)
FILE_CACHE_MAX_AGE = 3600

PHOTO_MIME_TYPES = {"image/jpeg", "image/png", "image/webp"}
PDF_MIME_TYPES = {"application/pdf"}

MAX_PHOTO_SIZE = 5 * 1024 * 1024  # 5 MB
MAX_PDF_SIZE = 10 * 1024 * 1024  # 10 MB

# ---------- Entitlements ----------
FREE_RESUME_LIMIT = 3
FREE_TIER_TOKEN_LIMIT = 50_000  # tokens per calendar month

# ---------- LLM ----------
#   LLM_PROVIDER=openai | gemini
#   LLM_MODEL=gpt-4.1-mini
#   GEMINI_MODEL=gemini-2.5-flash
LLM_PROVIDER = os.getenv("LLM_PROVIDER", "gemini").lower()
LLM_MODEL = os.getenv("LLM_MODEL", "gpt-4.1-mini")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")

ENHANCE_MAX_LENGTH = 2000
# Resume text sent to the model for recreate / analyze
PDF_TEXT_MAX_CHARS = _env_int("PDF_TEXT_MAX_CHARS", 60_000)
