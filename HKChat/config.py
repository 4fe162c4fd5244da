"""
Configuration module for HKChat application.
Stores all application settings and sensitive information.
"""

import os
from typing import Dict, Any, List


class Config:
    """Application configuration class."""

    # JWT Configuration
    JWT_SECRET = os.environ.get("JWT_SECRET", "hkchat-secret-key-change-in-production")
    JWT_ALGORITHM = "HS256"

    # Server Configuration
    DEFAULT_HOST = os.environ.get("HKCHAT_HOST", "localhost")
    DEFAULT_SERVER_PORT = int(os.environ.get("HKCHAT_PORT", "8765"))

    # SQLite database (users, chats, memberships, message receipts)
    SQLITE_DB_FILE = os.environ.get("HKCHAT_DB", "hkchat.db")

    # Default Server Address
    DEFAULT_SERVER_ADDRESS = "ws://localhost:8765"

    # Real-time timings (seconds)
    TYPING_EXPIRY_SECONDS = 3.0
    CALL_ACCEPT_TIMEOUT_SECONDS = 30.0
    CALL_ENDED_LINGER_SECONDS = 1.5
    RINGTONE_INTERVAL_SECONDS = 2.0
    RINGBACK_INTERVAL_SECONDS = 3.0
    TOAST_DISMISS_SECONDS = 4.0
    HEALTH_CHECK_INTERVAL_SECONDS = 30

    # WebRTC
    ICE_SERVERS: List[str] = [
        "stun:stun.l.google.com:19302",
        "stun:stun1.l.google.com:19302",
        "stun:stun2.l.google.com:19302",
    ]

    @classmethod
    def get_config(cls) -> Dict[str, Any]:
        """Get all configuration values as a dictionary."""
        return {
            "JWT_SECRET": cls.JWT_SECRET,
            "JWT_ALGORITHM": cls.JWT_ALGORITHM,
            "DEFAULT_HOST": cls.DEFAULT_HOST,
            "DEFAULT_SERVER_PORT": cls.DEFAULT_SERVER_PORT,
            "DEFAULT_SERVER_ADDRESS": cls.DEFAULT_SERVER_ADDRESS,
            "SQLITE_DB_FILE": cls.SQLITE_DB_FILE,
            "TYPING_EXPIRY_SECONDS": cls.TYPING_EXPIRY_SECONDS,
            "CALL_ACCEPT_TIMEOUT_SECONDS": cls.CALL_ACCEPT_TIMEOUT_SECONDS,
            "CALL_ENDED_LINGER_SECONDS": cls.CALL_ENDED_LINGER_SECONDS,
            "RINGTONE_INTERVAL_SECONDS": cls.RINGTONE_INTERVAL_SECONDS,
            "RINGBACK_INTERVAL_SECONDS": cls.RINGBACK_INTERVAL_SECONDS,
            "TOAST_DISMISS_SECONDS": cls.TOAST_DISMISS_SECONDS,
            "HEALTH_CHECK_INTERVAL_SECONDS": cls.HEALTH_CHECK_INTERVAL_SECONDS,
            "ICE_SERVERS": list(cls.ICE_SERVERS),
        }


# Create config instance
config = Config()


def get_config() -> Dict[str, Any]:
    return config.get_config()
