"""Configuration for live development sessions and deployed relays

Both configs follow the same precedence:
1. Builder methods (highest priority)
2. Environment variables (LIVEDEV_*)
3. Default values
"""

import os
from typing import List, Optional, Tuple

from livedev.wire.channel import DEFAULT_OFFLOAD_THRESHOLD


DEFAULT_CONSOLE_HOST = "127.0.0.1"
DEFAULT_CONSOLE_PORT = 13557
DEFAULT_RUNTIME_PORT = 12557
DEFAULT_HUB_URL = "ws://127.0.0.1:8765"
DEFAULT_RELAY_TIMEOUT = 5.0
DEFAULT_HISTORY_LIMIT = 25
DEFAULT_STATE_ROOT = ".livedev"
# mkcert output names, looked up in the state root
TLS_CERT_FILE = "localhost.pem"
TLS_KEY_FILE = "localhost-key.pem"
DEFAULT_ALLOWED_ORIGINS = [
    "localhost:3000",
    "localhost:3001",
    "127.0.0.1:3000",
    "console.livedev.dev",
]


class ConfigError(Exception):
    """Invalid configuration value"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def topic_prefix(app: str, stage: str) -> str:
    """Topic namespace isolating one app/stage on the shared transport"""
    return f"/livedev/{app}/{stage}"


class DevConfig:
    """Configuration for a local dev session"""

    def __init__(
        self,
        app: Optional[str] = None,
        stage: Optional[str] = None,
        region: Optional[str] = None,
    ):
        """Create dev configuration

        Args:
            app: Application name (LIVEDEV_APP)
            stage: Stage name (LIVEDEV_STAGE)
            region: Cloud region (LIVEDEV_REGION, then AWS_REGION)
        """
        self.app = app or os.getenv("LIVEDEV_APP", "app")
        self.stage = stage or os.getenv("LIVEDEV_STAGE", "dev")
        self.region = region or os.getenv("LIVEDEV_REGION", os.getenv("AWS_REGION", "us-east-1"))
        self.console_host = os.getenv("LIVEDEV_CONSOLE_HOST", DEFAULT_CONSOLE_HOST)
        self.console_port = _env_int("LIVEDEV_CONSOLE_PORT", DEFAULT_CONSOLE_PORT)
        self.runtime_port = _env_int("LIVEDEV_RUNTIME_PORT", DEFAULT_RUNTIME_PORT)
        self.hub_url = os.getenv("LIVEDEV_HUB_URL", DEFAULT_HUB_URL)
        self.payload_bucket = os.getenv("LIVEDEV_BUCKET") or None
        self.offload_threshold = _env_int("LIVEDEV_OFFLOAD_THRESHOLD", DEFAULT_OFFLOAD_THRESHOLD)
        self.history_limit = _env_int("LIVEDEV_HISTORY_LIMIT", DEFAULT_HISTORY_LIMIT)
        self.allowed_origins = _env_list("LIVEDEV_ALLOWED_ORIGINS", DEFAULT_ALLOWED_ORIGINS)
        self.descriptor_path = os.getenv("LIVEDEV_DESCRIPTOR", os.path.join(DEFAULT_STATE_ROOT, "functions.json"))
        self.state_root = os.getenv("LIVEDEV_STATE_ROOT", DEFAULT_STATE_ROOT)
        self.watch_root = os.getenv("LIVEDEV_WATCH_ROOT", ".")
        self.live = True

    @property
    def topic_prefix(self) -> str:
        return topic_prefix(self.app, self.stage)

    @property
    def artifacts_root(self) -> str:
        return os.path.join(self.state_root, "artifacts")

    @property
    def tls_files(self) -> Optional[Tuple[str, str]]:
        """(certfile, keyfile) when mkcert certificates exist in the state root"""
        cert = os.path.join(self.state_root, TLS_CERT_FILE)
        key = os.path.join(self.state_root, TLS_KEY_FILE)
        if os.path.isfile(cert) and os.path.isfile(key):
            return cert, key
        return None

    def with_console(self, host: str, port: int) -> "DevConfig":
        self.console_host = host
        self.console_port = port
        return self

    def with_runtime_port(self, port: int) -> "DevConfig":
        self.runtime_port = port
        return self

    def with_hub_url(self, url: str) -> "DevConfig":
        self.hub_url = url
        return self

    def with_payload_bucket(self, bucket: Optional[str]) -> "DevConfig":
        self.payload_bucket = bucket
        return self

    def with_offload_threshold(self, threshold: int) -> "DevConfig":
        if threshold < 1:
            raise ConfigError("offload threshold must be positive")
        self.offload_threshold = threshold
        return self

    def with_history_limit(self, limit: int) -> "DevConfig":
        if limit < 1:
            raise ConfigError("history limit must be positive")
        self.history_limit = limit
        return self

    def with_allowed_origins(self, origins: List[str]) -> "DevConfig":
        self.allowed_origins = list(origins)
        return self

    def with_descriptor(self, path: str) -> "DevConfig":
        self.descriptor_path = path
        return self

    def with_state_root(self, path: str) -> "DevConfig":
        self.state_root = path
        return self

    def with_watch_root(self, path: str) -> "DevConfig":
        self.watch_root = path
        return self

    def __repr__(self) -> str:
        return f"DevConfig(app={self.app!r}, stage={self.stage!r}, region={self.region!r})"


class CloudRelayConfig:
    """Configuration of the relay embedded in a deployed function"""

    def __init__(
        self,
        app: str,
        stage: str,
        function_id: str,
        hub_url: str = DEFAULT_HUB_URL,
        payload_bucket: Optional[str] = None,
        timeout: float = DEFAULT_RELAY_TIMEOUT,
        offload_threshold: int = DEFAULT_OFFLOAD_THRESHOLD,
    ):
        if timeout <= 0:
            raise ConfigError("relay timeout must be positive")
        self.app = app
        self.stage = stage
        self.function_id = function_id
        self.hub_url = hub_url
        self.payload_bucket = payload_bucket
        self.timeout = timeout
        self.offload_threshold = offload_threshold

    @property
    def topic_prefix(self) -> str:
        return topic_prefix(self.app, self.stage)

    @classmethod
    def from_env(cls) -> "CloudRelayConfig":
        """Read relay configuration from the deployed function's environment

        Raises:
            ConfigError: If a required variable is missing
        """
        missing = [name for name in ("LIVEDEV_APP", "LIVEDEV_STAGE", "LIVEDEV_FUNCTION_ID") if not os.getenv(name)]
        if missing:
            raise ConfigError(f"Missing environment variables: {', '.join(missing)}")
        return cls(
            app=os.environ["LIVEDEV_APP"],
            stage=os.environ["LIVEDEV_STAGE"],
            function_id=os.environ["LIVEDEV_FUNCTION_ID"],
            hub_url=os.getenv("LIVEDEV_HUB_URL", DEFAULT_HUB_URL),
            payload_bucket=os.getenv("LIVEDEV_BUCKET") or None,
            timeout=_env_float("LIVEDEV_RELAY_TIMEOUT", DEFAULT_RELAY_TIMEOUT),
            offload_threshold=_env_int("LIVEDEV_OFFLOAD_THRESHOLD", DEFAULT_OFFLOAD_THRESHOLD),
        )

    def with_timeout(self, timeout: float) -> "CloudRelayConfig":
        if timeout <= 0:
            raise ConfigError("relay timeout must be positive")
        self.timeout = timeout
        return self
