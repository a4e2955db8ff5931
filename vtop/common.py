# common.py
import os
import base64
import hashlib
import logging

from cryptography.fernet import Fernet
from dotenv import load_dotenv

load_dotenv()

LOG_FORMAT = "%(asctime)s - %(levelname)s - [%(threadName)s] - %(message)s"


def _env_bool(name, default="False"):
    return os.environ.get(name, default).lower() in ("true", "1", "t")


class Config:
    DEBUG = _env_bool("VTOP_DEBUG")
    BASE_URL = os.environ.get("VTOP_BASE_URL", "https://vtop.vit.ac.in")
    REQUEST_TIMEOUT = float(os.environ.get("VTOP_REQUEST_TIMEOUT", "30"))
    MAX_RETRIES = int(os.environ.get("VTOP_MAX_RETRIES", "2"))
    RETRY_DELAY = float(os.environ.get("VTOP_RETRY_DELAY", "1.0"))
    ENCRYPTION_KEY = os.environ.get("ENCRYPTION_KEY")
    SESSION_SECRET = os.environ.get("SESSION_SECRET")
    SESSION_MAX_AGE = int(os.environ.get("SESSION_MAX_AGE", str(60 * 60 * 24)))
    CAPTCHA_MAX_AGE = int(os.environ.get("CAPTCHA_MAX_AGE", str(60 * 5)))
    REDIS_URL = os.environ.get("REDIS_URL")
    CACHE_MAX_SIZE = int(os.environ.get("CACHE_MAX_SIZE", "50"))

    def __init__(self, **overrides):
        for key, value in overrides.items():
            if not hasattr(type(self), key):
                raise AttributeError(f"Unknown config key: {key}")
            setattr(self, key, value)


config = Config()


def configure_logging(level=None):
    """Apply the project log format once, at process start."""
    if level is None:
        level = logging.DEBUG if config.DEBUG else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)


def derive_fernet_key(secret, salt=b"vtop-session-salt"):
    """Stretch a passphrase into a urlsafe-base64 32-byte Fernet key."""
    raw = hashlib.scrypt(secret.encode("utf-8"), salt=salt, n=2**14, r=8, p=1, dklen=32)
    return base64.urlsafe_b64encode(raw)


def build_fernet(cfg=None):
    """
    Build the Fernet engine used to seal session tokens.

    ENCRYPTION_KEY wins when both are set; SESSION_SECRET is a passphrase
    fallback for deployments that cannot hand out a generated key.
    """
    cfg = cfg or config
    if cfg.ENCRYPTION_KEY:
        try:
            return Fernet(cfg.ENCRYPTION_KEY.encode())
        except (ValueError, TypeError) as e:
            raise ValueError("Invalid ENCRYPTION_KEY") from e
    if cfg.SESSION_SECRET:
        return Fernet(derive_fernet_key(cfg.SESSION_SECRET))
    raise ValueError("ENCRYPTION_KEY or SESSION_SECRET environment variable must be set")
