import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))

def _int_env(name, default):
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default

class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY")
    # HMAC key for the fpid cookie (>= 32 bytes); falls back to SECRET_KEY
    FPID_SECRET_KEY = os.getenv("FPID_SECRET_KEY")

    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "gatekeeper.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Brute-force protection
    MAX_LOGIN_ATTEMPTS = _int_env("MAX_LOGIN_ATTEMPTS", 5)
    LOCKOUT_SECONDS = _int_env("LOCKOUT_SECONDS", 15 * 60)
    REPORT_REMAINING_ATTEMPTS = os.getenv("REPORT_REMAINING_ATTEMPTS", "true").lower() == "true"

    # Inactivity timeout for an authenticated session: 1 hour
    SESSION_TIMEOUT_SECONDS = _int_env("SESSION_TIMEOUT_SECONDS", 60 * 60)

    # Server-side session storage; must stay outside the public root
    SESSION_STORAGE_PATH = os.getenv("SESSION_STORAGE_PATH", os.path.join(BASE_DIR, "storage", "sessions"))
    SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "__Host-AppAuth")
    SESSION_REGENERATE_INTERVAL = _int_env("SESSION_REGENERATE_INTERVAL", 30 * 60)
    SESSION_LIFETIME_SECONDS = _int_env("SESSION_LIFETIME_SECONDS", 60 * 60)
    SESSION_GC_PROBABILITY = 1
    SESSION_GC_DIVISOR = 100
    PUBLIC_ROOT = None  # defaults to the app's static folder

    # Bot scoring
    BOT_SENSITIVE_PATHS = []
    BOT_HONEYPOT_FIELD = "hp_start"
    BOT_RATE_LIMIT_MAX_REQUESTS = None  # None disables the rate-limit signal
    BOT_RATE_WINDOW_SECONDS = 60
    BOT_BLOCK_LIKELY = os.getenv("BOT_BLOCK_LIKELY", "false").lower() == "true"

    # Simple IP rate limit for login endpoint
    LOGIN_RATE_WINDOW_SECONDS = 60      # window size
    LOGIN_RATE_MAX_REQUESTS = 15        # max login requests per IP per window

    # Redirect destinations
    LOGIN_URL = "/auth/login"
    AFTER_LOGIN_URL = "/auth/me"
    AFTER_LOGOUT_URL = "/auth/login"
    FORBIDDEN_URL = "/auth/me"

    # Number of proxies whose X-Forwarded-For is trusted
    PROXY_FIX_X_FOR = _int_env("PROXY_FIX_X_FOR", 0)

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Basic app settings
    DEBUG = False
