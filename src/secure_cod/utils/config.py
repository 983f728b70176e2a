"""
Configuration utilities for the Secure COD engine.
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv


class Config:
    """Configuration manager for the Secure COD engine."""

    def __init__(self, env_file: Optional[str] = None) -> None:
        """Initialize configuration.

        If an env_file path is provided, load environment variables from it.
        Otherwise, do not auto-load a .env file to keep defaults predictable.
        """
        self.env_file = env_file
        self._load_environment()
        self._config = self._load_config()

    def _load_environment(self) -> None:
        """Load environment variables from explicit .env file if provided."""
        if not self.env_file:
            return
        env_path = Path(self.env_file)
        if env_path.exists():
            load_dotenv(env_path)

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from environment variables."""
        return {
            # Core settings
            "log_level": self._get_str("LOG_LEVEL", default="INFO"),
            # MongoDB record store
            "mongo_url": self._get_str("DB_CONNECTION_URL", default=""),
            "mongo_db": self._get_str("DB_NAME", default="SECURE_COD"),
            # Payment gateway
            "razorpay_key_id": self._get_str("RAZORPAY_KEY_ID", default=""),
            "razorpay_key_secret": self._get_str("RAZORPAY_KEY_SECRET", default=""),
            "gateway_timeout": self._get_int("GATEWAY_TIMEOUT_SECONDS", default=10),
            "currency": self._get_str("CURRENCY", default="INR"),
            # Cancellation rules
            "cancellation_secret": self._get_str("CANCELLATION_SECRET", default=""),
            "self_cancel_window_hours": self._get_int("SELF_CANCEL_WINDOW_HOURS", default=24),
            # Loyalty cards
            "loyalty_start_points": self._get_int("LOYALTY_START_POINTS", default=100),
            "loyalty_validity_years": self._get_int("LOYALTY_VALIDITY_YEARS", default=2),
            "default_seller_id": self._get_str("DEFAULT_SELLER_ID", default="snazzify"),
            "default_seller_name": self._get_str("DEFAULT_SELLER_NAME", default="Snazzify"),
        }

    def _get_str(self, key: str, default: str = "") -> str:
        """Get string configuration value."""
        if self.env_file is None:
            return default
        return os.getenv(key, default)

    def _get_int(self, key: str, default: int = 0) -> int:
        """Get integer configuration value."""
        if self.env_file is None:
            return default
        try:
            return int(os.getenv(key, str(default)))
        except ValueError:
            return default

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        return self._config.get(key, default)

    def __getitem__(self, key: str) -> Any:
        """Get configuration value using bracket notation."""
        return self._config[key]

    def __contains__(self, key: str) -> bool:
        """Check if configuration key exists."""
        return key in self._config
