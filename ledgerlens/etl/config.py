import os


def _env_int(name, default):
    return int(os.environ.get(name, default))


def _env_float(name, default):
    return float(os.environ.get(name, default))


# Ingestion Configuration
class Config:
    GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY")
    GEMINI_MODEL = os.environ.get("GEMINI_MODEL", "gemini-1.5-flash")

    AI_MAX_RETRIES = _env_int("AI_MAX_RETRIES", 3)
    AI_RETRY_BASE_DELAY = _env_float("AI_RETRY_BASE_DELAY", 1.0)
    AI_REQUEST_TIMEOUT = _env_float("AI_REQUEST_TIMEOUT", 30.0)
    AI_MAX_INPUT_CHARS = _env_int("AI_MAX_INPUT_CHARS", 3000)

    MAX_UPLOAD_BYTES = _env_int("MAX_UPLOAD_BYTES", 10 * 1024 * 1024)
    UPLOAD_FOLDER = os.environ.get("UPLOAD_FOLDER", "uploads")
    ALLOWED_EXTENSIONS = {'pdf', 'csv', 'txt'}
    # Idle interval after which the upload stream writes a heartbeat line
    STREAM_HEARTBEAT_SECONDS = _env_float("STREAM_HEARTBEAT_SECONDS", 5.0)

    # 'session' or 'duplicate'
    RECONCILIATION_STRATEGY = os.environ.get("RECONCILIATION_STRATEGY", "session")

    SUPABASE_URL = os.environ.get("SUPABASE_URL")
    SUPABASE_KEY = os.environ.get("SUPABASE_KEY")
    SUPABASE_SERVICE_ROLE_KEY = os.environ.get("SUPABASE_SERVICE_ROLE_KEY")
    SUPABASE_TABLE = os.environ.get("SUPABASE_TABLE", "transactions")

    CORS_ORIGINS = [
        o.strip() for o in os.environ.get(
            "CORS_ORIGINS", "http://localhost:5173,http://localhost:3000"
        ).split(",") if o.strip()
    ]
