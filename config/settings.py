"""
Configuration Management for swarm-patrol
Centralizes environment-based configuration and logging setup
"""

import logging
import os
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from typing import Dict, Iterable, Mapping, Optional

from dotenv import load_dotenv

from updates.errors import ConfigurationError
from updates.types import RegistryCredential

logger = logging.getLogger(__name__)

DEFAULT_ENV_FILE = "/app/.env"
DEFAULT_POLL_INTERVAL = 300
DEFAULT_REGISTRY_HOST = "ghcr.io"
DEFAULT_VERIFY_TIMEOUT = 120
DEFAULT_VERIFY_INTERVAL = 5
DEFAULT_REGISTRY_TIMEOUT = 30

REDACTED = "****"
_SENSITIVE_MARKERS = ("SECRET", "KEY", "TOKEN", "PASSWORD")
_TRUE_VALUES = {"1", "true", "yes", "y", "on"}
_FALSE_VALUES = {"0", "false", "no", "n", "off"}


class SecretRedactionFilter(logging.Filter):
    """Mask configured secret values in log records before they are emitted"""

    def __init__(self, secrets: Iterable[str] = ()):
        super().__init__()
        self.secrets = [s for s in secrets if s]

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.secrets:
            return True

        message = record.getMessage()
        redacted = message
        for secret in self.secrets:
            redacted = redacted.replace(secret, REDACTED)

        if redacted != message:
            # Freeze the redacted text so handlers don't re-format the raw args
            record.msg = redacted
            record.args = None
        return True


def setup_logging(level: str = "INFO", log_dir: Optional[str] = None, secrets: Iterable[str] = ()):
    """Configure application logging with optional rotation"""
    root_logger = logging.getLogger()

    # Close and clear any existing handlers so repeated setup doesn't duplicate output
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    root_logger.setLevel(level)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    redaction = SecretRedactionFilter(secrets)

    # Console handler for stdout
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(redaction)
    root_logger.addHandler(console_handler)

    if log_dir:
        os.makedirs(log_dir, mode=0o700, exist_ok=True)
        # Max 10MB per file, keep 14 backups
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'swarm-patrol.log'),
            maxBytes=10*1024*1024,
            backupCount=14,
            encoding='utf-8'
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(redaction)
        root_logger.addHandler(file_handler)

    # docker-py and urllib3 log every HTTP request at DEBUG
    for noisy in ("docker", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def load_env_file(path: Optional[str] = None) -> bool:
    """
    Load variables from an optional .env file.

    Variables already present in the environment win over the file.

    Returns:
        True if a file was found and loaded
    """
    path = path or os.getenv("ENV_FILE", DEFAULT_ENV_FILE)
    if not path or not os.path.isfile(path):
        return False
    logger.debug(f"Loading environment from {path}")
    return load_dotenv(path, override=False)


def _require(env: Mapping[str, str], name: str) -> str:
    value = (env.get(name) or "").strip()
    if not value:
        raise ConfigurationError(f"Missing {name}")
    return value


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")


@dataclass(frozen=True)
class PatrolConfig:
    """
    Validated, immutable configuration handed to every component at
    construction time.
    """

    owner: str
    username: str
    token: str = field(repr=False)
    poll_interval: int = DEFAULT_POLL_INTERVAL
    registry_host: str = DEFAULT_REGISTRY_HOST
    verify_timeout: int = DEFAULT_VERIFY_TIMEOUT
    verify_interval: int = DEFAULT_VERIFY_INTERVAL
    verify_digest: bool = True
    registry_timeout: int = DEFAULT_REGISTRY_TIMEOUT
    log_level: str = "INFO"
    log_dir: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "PatrolConfig":
        """
        Build configuration from environment variables.

        Raises:
            ConfigurationError: a required variable is missing or a value is invalid
        """
        env = os.environ if environ is None else environ

        config = cls(
            owner=_require(env, "GHCR_OWNER"),
            username=_require(env, "GHCR_USERNAME"),
            token=_require(env, "GHCR_TOKEN"),
            poll_interval=_env_int(env, "POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
            registry_host=(env.get("REGISTRY_HOST") or DEFAULT_REGISTRY_HOST).strip().lower(),
            verify_timeout=_env_int(env, "VERIFY_TIMEOUT", DEFAULT_VERIFY_TIMEOUT),
            verify_interval=_env_int(env, "VERIFY_INTERVAL", DEFAULT_VERIFY_INTERVAL),
            verify_digest=_env_bool(env, "VERIFY_DIGEST", True),
            registry_timeout=_env_int(env, "REGISTRY_TIMEOUT", DEFAULT_REGISTRY_TIMEOUT),
            log_level=(env.get("LOG_LEVEL") or "INFO").strip().upper(),
            log_dir=(env.get("LOG_DIR") or "").strip() or None,
        )
        config.validate()
        return config

    def validate(self):
        """Validate configuration"""
        for name in ("poll_interval", "verify_timeout", "verify_interval", "registry_timeout"):
            value = getattr(self, name)
            if value < 1:
                raise ConfigurationError(f"{name} must be at least 1 second: {value}")

        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ConfigurationError(f"Invalid log level: {self.log_level}")

        if "/" in self.owner:
            raise ConfigurationError(f"GHCR_OWNER must be a single namespace segment: {self.owner}")

        return True

    @property
    def credential(self) -> RegistryCredential:
        return RegistryCredential(owner=self.owner, username=self.username, token=self.token)

    @property
    def namespace(self) -> str:
        """Image prefix selecting managed workloads, e.g. "ghcr.io/acme"."""
        return f"{self.registry_host}/{self.owner}"

    def redacted(self) -> Dict[str, str]:
        """Settings for the startup log with secret values scrambled."""
        values = {
            "GHCR_OWNER": self.owner,
            "GHCR_USERNAME": self.username,
            "GHCR_TOKEN": self.token,
            "POLL_INTERVAL": str(self.poll_interval),
            "REGISTRY_HOST": self.registry_host,
            "VERIFY_TIMEOUT": str(self.verify_timeout),
            "VERIFY_INTERVAL": str(self.verify_interval),
            "VERIFY_DIGEST": str(self.verify_digest).lower(),
            "REGISTRY_TIMEOUT": str(self.registry_timeout),
            "LOG_LEVEL": self.log_level,
            "LOG_DIR": self.log_dir or "",
        }
        return {
            name: (REDACTED if any(marker in name for marker in _SENSITIVE_MARKERS) else value)
            for name, value in values.items()
        }
