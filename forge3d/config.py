"""
Configuration module for the Forge3D backend.
Centralizes all environment variables and settings.

Usage:
    from forge3d.config import config

    if config.IS_DEV:
        print("Running in development mode")

    cost = config.GENERATION_COST
"""

import os
from typing import Any, Dict, List
from dataclasses import dataclass, field
from dotenv import load_dotenv

# Load .env file (safe - won't override existing env vars)
load_dotenv()


def _get_env(key: str, default: str = "") -> str:
    """Safely get and strip an environment variable."""
    return os.getenv(key, default).strip()


def _get_env_bool(key: str, default: bool = False) -> bool:
    """Get an environment variable as boolean."""
    val = _get_env(key, "").lower()
    if val in ("true", "1", "yes", "on"):
        return True
    if val in ("false", "0", "no", "off"):
        return False
    return default


def _get_env_int(key: str, default: int = 0) -> int:
    """Get an environment variable as integer."""
    try:
        return int(_get_env(key, str(default)))
    except ValueError:
        return default


def _get_env_float(key: str, default: float = 0.0) -> float:
    """Get an environment variable as float."""
    try:
        return float(_get_env(key, str(default)))
    except ValueError:
        return default


def _get_env_list(key: str, default: List[str] = None) -> List[str]:
    """Get a comma-separated environment variable as list."""
    val = _get_env(key, "")
    if not val:
        return default or []
    return [item.strip() for item in val.split(",") if item.strip()]


class ChargePolicy:
    """When a generation's cost leaves the user's balance."""
    ON_SUCCESS = "on_success"  # debit after the model artifact exists
    UPFRONT = "upfront"        # debit before the pipeline runs, refund on failure


@dataclass
class Config:
    """
    Application configuration with all settings.
    Loaded from environment variables with sensible defaults.
    """

    # ─────────────────────────────────────────────────────────────
    # Environment
    # ─────────────────────────────────────────────────────────────
    FLASK_ENV: str = field(default_factory=lambda: _get_env("FLASK_ENV", "production").lower())

    @property
    def IS_DEV(self) -> bool:
        """True if running in development mode."""
        return self.FLASK_ENV in ("development", "dev", "local", "test")

    @property
    def IS_PROD(self) -> bool:
        """True if running in production mode."""
        return not self.IS_DEV

    # ─────────────────────────────────────────────────────────────
    # Server
    # ─────────────────────────────────────────────────────────────
    PORT: int = field(default_factory=lambda: _get_env_int("PORT", 5001))
    HOST: str = field(default_factory=lambda: _get_env("HOST", "0.0.0.0"))

    # ─────────────────────────────────────────────────────────────
    # Database
    # ─────────────────────────────────────────────────────────────
    _DATABASE_URL_RAW: str = field(default_factory=lambda: _get_env("DATABASE_URL"))
    DB_CONNECT_TIMEOUT: int = field(default_factory=lambda: _get_env_int("DB_CONNECT_TIMEOUT", 5))
    APP_SCHEMA: str = field(default_factory=lambda: _get_env("APP_SCHEMA", "forge3d"))

    # "postgres" or "memory"; empty means postgres when DATABASE_URL is set
    _STORE_BACKEND_RAW: str = field(default_factory=lambda: _get_env("STORE_BACKEND").lower())

    @property
    def DATABASE_URL(self) -> str:
        """Database connection URL."""
        return self._DATABASE_URL_RAW

    @property
    def HAS_DATABASE(self) -> bool:
        """True if database URL is configured."""
        return bool(self._DATABASE_URL_RAW)

    @property
    def STORE_BACKEND(self) -> str:
        if self._STORE_BACKEND_RAW in ("postgres", "memory"):
            return self._STORE_BACKEND_RAW
        return "postgres" if self.HAS_DATABASE else "memory"

    # ─────────────────────────────────────────────────────────────
    # Auth
    # ─────────────────────────────────────────────────────────────
    # Bearer tokens are issued elsewhere; we only verify them.
    AUTH_JWT_SECRET: str = field(default_factory=lambda: _get_env("AUTH_JWT_SECRET"))
    AUTH_JWT_ALGORITHM: str = field(default_factory=lambda: _get_env("AUTH_JWT_ALGORITHM", "HS256"))
    AUTH_JWT_AUDIENCE: str = field(default_factory=lambda: _get_env("AUTH_JWT_AUDIENCE"))

    # Admin API key (X-Admin-Key header) for /api/admin/*
    ADMIN_API_KEY: str = field(default_factory=lambda: _get_env("ADMIN_API_KEY"))

    @property
    def AUTH_CONFIGURED(self) -> bool:
        return bool(self.AUTH_JWT_SECRET)

    # ─────────────────────────────────────────────────────────────
    # Credits System
    # ─────────────────────────────────────────────────────────────
    STARTER_CREDITS: int = field(default_factory=lambda: _get_env_int("STARTER_CREDITS", 1250))
    GENERATION_COST: int = field(default_factory=lambda: _get_env_int("GENERATION_COST", 125))
    MAX_CREDITS: int = field(default_factory=lambda: _get_env_int("MAX_CREDITS", 1_000_000))
    MAX_TRANSACTION_AMOUNT: int = field(default_factory=lambda: _get_env_int("MAX_TRANSACTION_AMOUNT", 100_000))
    CHARGE_POLICY: str = field(default_factory=lambda: _get_env("CHARGE_POLICY", ChargePolicy.ON_SUCCESS).lower())

    # Ledger transaction-conflict retry: delay = min(base * 2^attempt, max)
    LEDGER_MAX_ATTEMPTS: int = field(default_factory=lambda: _get_env_int("LEDGER_MAX_ATTEMPTS", 5))
    LEDGER_BACKOFF_BASE_MS: int = field(default_factory=lambda: _get_env_int("LEDGER_BACKOFF_BASE_MS", 1000))
    LEDGER_BACKOFF_MAX_MS: int = field(default_factory=lambda: _get_env_int("LEDGER_BACKOFF_MAX_MS", 5000))

    # ─────────────────────────────────────────────────────────────
    # Provider call policy
    # ─────────────────────────────────────────────────────────────
    RETRY_MAX_RETRIES: int = field(default_factory=lambda: _get_env_int("RETRY_MAX_RETRIES", 3))
    RETRY_INITIAL_DELAY: float = field(default_factory=lambda: _get_env_float("RETRY_INITIAL_DELAY", 1.0))
    RETRY_MAX_DELAY: float = field(default_factory=lambda: _get_env_float("RETRY_MAX_DELAY", 60.0))
    RETRY_BACKOFF_MULTIPLIER: float = field(default_factory=lambda: _get_env_float("RETRY_BACKOFF_MULTIPLIER", 2.0))
    RETRY_JITTER: float = field(default_factory=lambda: _get_env_float("RETRY_JITTER", 0.1))

    PROVIDER_HTTP_TIMEOUT: int = field(default_factory=lambda: _get_env_int("PROVIDER_HTTP_TIMEOUT", 30))
    MESHY_SUBMIT_TIMEOUT_SECONDS: int = field(default_factory=lambda: _get_env_int("MESHY_SUBMIT_TIMEOUT_SECONDS", 180))
    REPLICATE_STEP_TIMEOUT_SECONDS: int = field(default_factory=lambda: _get_env_int("REPLICATE_STEP_TIMEOUT_SECONDS", 480))

    # ─────────────────────────────────────────────────────────────
    # Reconciliation
    # ─────────────────────────────────────────────────────────────
    SYNC_COOLDOWN_SECONDS: int = field(default_factory=lambda: _get_env_int("SYNC_COOLDOWN_SECONDS", 10))
    POLL_INTERVAL_SECONDS: float = field(default_factory=lambda: _get_env_float("POLL_INTERVAL_SECONDS", 5.0))
    POLL_MAX_ATTEMPTS: int = field(default_factory=lambda: _get_env_int("POLL_MAX_ATTEMPTS", 180))
    GENERATION_TIMEOUT_SECONDS: int = field(default_factory=lambda: _get_env_int("GENERATION_TIMEOUT_SECONDS", 900))

    # ─────────────────────────────────────────────────────────────
    # Cache
    # ─────────────────────────────────────────────────────────────
    CACHE_TTL_SECONDS: int = field(default_factory=lambda: _get_env_int("CACHE_TTL_SECONDS", 60))
    CACHE_MAX_SIZE: int = field(default_factory=lambda: _get_env_int("CACHE_MAX_SIZE", 1000))
    CREDITS_CACHE_TTL_SECONDS: int = field(default_factory=lambda: _get_env_int("CREDITS_CACHE_TTL_SECONDS", 30))

    # ─────────────────────────────────────────────────────────────
    # External APIs
    # ─────────────────────────────────────────────────────────────
    MESHY_API_KEY: str = field(default_factory=lambda: _get_env("MESHY_API_KEY"))
    MESHY_API_BASE: str = field(default_factory=lambda: _get_env("MESHY_API_BASE", "https://api.meshy.ai").rstrip("/"))
    MESHY_WEBHOOK_SECRET: str = field(default_factory=lambda: _get_env("MESHY_WEBHOOK_SECRET"))

    REPLICATE_API_TOKEN: str = field(default_factory=lambda: _get_env("REPLICATE_API_TOKEN"))
    REPLICATE_API_BASE: str = field(default_factory=lambda: _get_env("REPLICATE_API_BASE", "https://api.replicate.com").rstrip("/"))
    REPLICATE_WEBHOOK_SECRET: str = field(default_factory=lambda: _get_env("REPLICATE_WEBHOOK_SECRET"))

    # PUBLIC_BASE_URL: Backend API URL (for provider webhooks)
    PUBLIC_BASE_URL: str = field(default_factory=lambda: _get_env("PUBLIC_BASE_URL").rstrip("/"))

    @property
    def MESHY_CONFIGURED(self) -> bool:
        return bool(self.MESHY_API_KEY)

    @property
    def REPLICATE_CONFIGURED(self) -> bool:
        return bool(self.REPLICATE_API_TOKEN)

    # ─────────────────────────────────────────────────────────────
    # Razorpay
    # ─────────────────────────────────────────────────────────────
    RAZORPAY_KEY_ID: str = field(default_factory=lambda: _get_env("RAZORPAY_KEY_ID"))
    RAZORPAY_KEY_SECRET: str = field(default_factory=lambda: _get_env("RAZORPAY_KEY_SECRET"))
    RAZORPAY_WEBHOOK_SECRET: str = field(default_factory=lambda: _get_env("RAZORPAY_WEBHOOK_SECRET"))
    RAZORPAY_API_BASE: str = field(default_factory=lambda: _get_env("RAZORPAY_API_BASE", "https://api.razorpay.com").rstrip("/"))

    # One pack: 4000 INR (in paise) buys 1250 credits
    CREDIT_PACK_AMOUNT: int = field(default_factory=lambda: _get_env_int("CREDIT_PACK_AMOUNT", 400000))
    CREDIT_PACK_CURRENCY: str = field(default_factory=lambda: _get_env("CREDIT_PACK_CURRENCY", "INR").upper())
    CREDIT_PACK_CREDITS: int = field(default_factory=lambda: _get_env_int("CREDIT_PACK_CREDITS", 1250))

    @property
    def RAZORPAY_CONFIGURED(self) -> bool:
        return bool(self.RAZORPAY_KEY_ID and self.RAZORPAY_KEY_SECRET)

    @property
    def RAZORPAY_MODE(self) -> str:
        """Returns 'live' or 'test' based on key prefix."""
        if self.RAZORPAY_KEY_ID.startswith("rzp_live_"):
            return "live"
        return "test"

    # ─────────────────────────────────────────────────────────────
    # CORS
    # ─────────────────────────────────────────────────────────────
    _ALLOWED_ORIGINS_RAW: str = field(default_factory=lambda: _get_env("ALLOWED_ORIGINS"))

    @property
    def ALLOWED_ORIGINS(self) -> List[str]:
        """
        List of allowed CORS origins.
        Parses comma-separated URLs, drops anything that isn't http(s).
        """
        raw = self._ALLOWED_ORIGINS_RAW
        if not raw:
            if self.IS_DEV:
                return [
                    "http://localhost:3000",
                    "http://127.0.0.1:3000",
                    "http://localhost:5173",
                ]
            return []
        if raw == "*":
            return ["*"]
        return [
            origin for origin in _get_env_list("ALLOWED_ORIGINS")
            if origin.startswith("http://") or origin.startswith("https://")
        ]

    @property
    def ALLOW_ALL_ORIGINS(self) -> bool:
        """True if wildcard CORS is enabled."""
        return self._ALLOWED_ORIGINS_RAW == "*"

    # ─────────────────────────────────────────────────────────────
    # Logging & Debug
    # ─────────────────────────────────────────────────────────────
    def log_summary(self) -> None:
        """Print configuration summary for debugging."""
        print("=" * 60)
        print("[CONFIG] Forge3D Backend Configuration")
        print("=" * 60)
        print(f"  Environment: {self.FLASK_ENV} (IS_DEV={self.IS_DEV})")
        print(f"  Port: {self.PORT}")
        print("-" * 60)
        print(f"  Database configured: {self.HAS_DATABASE}")
        print(f"  Store backend: {self.STORE_BACKEND}")
        print(f"  Auth configured: {self.AUTH_CONFIGURED}")
        print(f"  Meshy configured: {self.MESHY_CONFIGURED}")
        print(f"  Replicate configured: {self.REPLICATE_CONFIGURED}")
        print(f"  Razorpay configured: {self.RAZORPAY_CONFIGURED} ({self.RAZORPAY_MODE if self.RAZORPAY_CONFIGURED else 'N/A'})")
        print("-" * 60)
        print(f"  Starter credits: {self.STARTER_CREDITS}")
        print(f"  Generation cost: {self.GENERATION_COST}")
        print(f"  Charge policy: {self.CHARGE_POLICY}")
        print(f"  Sync cooldown: {self.SYNC_COOLDOWN_SECONDS}s, generation timeout: {self.GENERATION_TIMEOUT_SECONDS}s")
        print("=" * 60)

    def validate(self) -> List[str]:
        """
        Validate configuration and return list of warnings.
        Returns empty list if all critical config is present.
        """
        warnings = []

        if self.IS_PROD:
            if not self.HAS_DATABASE:
                warnings.append("DATABASE_URL not set - ledger runs in memory and will not persist")
            if not self.AUTH_CONFIGURED:
                warnings.append("AUTH_JWT_SECRET not set - authenticated routes will reject all requests")
            if not self.RAZORPAY_WEBHOOK_SECRET:
                warnings.append("RAZORPAY_WEBHOOK_SECRET not set - payment webhooks will be refused")
            if not self.ADMIN_API_KEY:
                warnings.append("ADMIN_API_KEY not set - admin endpoints are disabled")

        if not self.MESHY_CONFIGURED:
            warnings.append("MESHY_API_KEY not set - text-to-3d generation unavailable")
        if not self.REPLICATE_CONFIGURED:
            warnings.append("REPLICATE_API_TOKEN not set - image and floorplan steps unavailable")

        if self.CHARGE_POLICY not in (ChargePolicy.ON_SUCCESS, ChargePolicy.UPFRONT):
            warnings.append(f"Unknown CHARGE_POLICY={self.CHARGE_POLICY!r}, using {ChargePolicy.ON_SUCCESS}")
        if self.GENERATION_COST > self.MAX_TRANSACTION_AMOUNT:
            warnings.append("GENERATION_COST exceeds MAX_TRANSACTION_AMOUNT - every debit will be rejected")

        return warnings

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary (excluding secrets)."""
        return {
            "FLASK_ENV": self.FLASK_ENV,
            "IS_DEV": self.IS_DEV,
            "PORT": self.PORT,
            "HAS_DATABASE": self.HAS_DATABASE,
            "STORE_BACKEND": self.STORE_BACKEND,
            "AUTH_CONFIGURED": self.AUTH_CONFIGURED,
            "ADMIN_CONFIGURED": bool(self.ADMIN_API_KEY),
            "MESHY_CONFIGURED": self.MESHY_CONFIGURED,
            "REPLICATE_CONFIGURED": self.REPLICATE_CONFIGURED,
            "RAZORPAY_CONFIGURED": self.RAZORPAY_CONFIGURED,
            "STARTER_CREDITS": self.STARTER_CREDITS,
            "GENERATION_COST": self.GENERATION_COST,
            "CHARGE_POLICY": self.CHARGE_POLICY,
        }


# Global config instance
config = Config()

# ─────────────────────────────────────────────────────────────
# Module-level exports for convenience
# ─────────────────────────────────────────────────────────────
IS_DEV = config.IS_DEV
IS_PROD = config.IS_PROD
DATABASE_URL = config.DATABASE_URL
APP_SCHEMA = config.APP_SCHEMA
MESHY_API_KEY = config.MESHY_API_KEY
MESHY_API_BASE = config.MESHY_API_BASE
REPLICATE_API_TOKEN = config.REPLICATE_API_TOKEN
REPLICATE_API_BASE = config.REPLICATE_API_BASE
GENERATION_COST = config.GENERATION_COST
STARTER_CREDITS = config.STARTER_CREDITS
