"""Configuration loader with type-safe dataclasses."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlsplit

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


# Shortest lifetime accepted for cached weather data.
MIN_DYNAMIC_TTL_SECONDS = 1

STORE_BACKENDS = ("memory", "sqlite")

DEFAULT_STATIC_MANIFEST = (
    "/",
    "/index.html",
    "/manifest.json",
    "/static/js/bundle.js",
    "/static/css/main.css",
    "/icon-192x192.png",
    "/icon-512x512.png",
)

DEFAULT_STATIC_PREFIXES = ("/static/", "/assets/")


def _origin_of(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}"


def _get_default_cache_path() -> str:
    """Get the default cache database path (XDG-style user data directory)."""
    return str(Path.home() / ".local" / "share" / "meteoracache" / "cache.db")


DEFAULT_CACHE_PATH = _get_default_cache_path()


@dataclass(frozen=True)
class AppConfig:
    """The application whose requests are intercepted."""

    origin: str = "http://localhost:5173"

    def __post_init__(self) -> None:
        if not self.origin.startswith(("http://", "https://")):
            raise ConfigError(f"App origin must start with http:// or https://, got '{self.origin}'")
        if urlsplit(self.origin).path not in ("", "/"):
            raise ConfigError(f"App origin must not contain a path, got '{self.origin}'")

    @property
    def normalized_origin(self) -> str:
        return _origin_of(self.origin)

    def resolve(self, path: str) -> str:
        """Turn an origin-relative path into an absolute URL."""
        return self.normalized_origin + path


@dataclass(frozen=True)
class CacheConfig:
    """Cache namespaces, versioning and policy settings."""

    prefix: str = "meteora"
    version: str = "1.0.0"
    dynamic_ttl_seconds: int = 300  # weather data is only useful fresh
    skip_waiting: bool = True  # activate a freshly installed version without waiting
    static_manifest: tuple[str, ...] = DEFAULT_STATIC_MANIFEST
    static_prefixes: tuple[str, ...] = DEFAULT_STATIC_PREFIXES
    store: str = "memory"
    path: str = DEFAULT_CACHE_PATH

    def __post_init__(self) -> None:
        if not self.prefix:
            raise ConfigError("Cache prefix cannot be empty")
        if not self.version:
            raise ConfigError("Cache version cannot be empty")
        if self.dynamic_ttl_seconds < MIN_DYNAMIC_TTL_SECONDS:
            raise ConfigError(
                f"Dynamic TTL must be at least {MIN_DYNAMIC_TTL_SECONDS} second(s) (got {self.dynamic_ttl_seconds})"
            )
        for entry in self.static_manifest:
            if not entry.startswith("/"):
                raise ConfigError(f"Static manifest entry must be an absolute path, got '{entry}'")
        for prefix in self.static_prefixes:
            if not prefix.startswith("/"):
                raise ConfigError(f"Static prefix must be an absolute path, got '{prefix}'")
        if self.store not in STORE_BACKENDS:
            raise ConfigError(f"Invalid cache store '{self.store}'. Must be one of: {STORE_BACKENDS}")
        if self.store == "sqlite" and not self.path:
            raise ConfigError("Cache path is required for the sqlite store")

    @property
    def static_namespace(self) -> str:
        return f"{self.prefix}-static-v{self.version}"

    @property
    def dynamic_namespace(self) -> str:
        return f"{self.prefix}-weather-data-v{self.version}"


@dataclass(frozen=True)
class UpstreamConfig:
    """Third-party weather API whose responses are cached as dynamic data."""

    base_url: str = "https://api.openweathermap.org/data/2.5"
    api_key: str = ""
    units: str = "metric"
    endpoints: tuple[str, ...] = ("weather", "forecast")

    def __post_init__(self) -> None:
        if not self.base_url.startswith(("http://", "https://")):
            raise ConfigError(f"Upstream base_url must start with http:// or https://, got '{self.base_url}'")
        if not self.endpoints:
            raise ConfigError("At least one upstream endpoint must be configured")

    @property
    def origin(self) -> str:
        return _origin_of(self.base_url)

    def endpoint_url(self, endpoint: str) -> str:
        return f"{self.base_url.rstrip('/')}/{endpoint}"

    @property
    def weather_url(self) -> str:
        return self.endpoint_url("weather")

    @property
    def forecast_url(self) -> str:
        return self.endpoint_url("forecast")


@dataclass(frozen=True)
class NetworkConfig:
    """Settings for outgoing network fetches."""

    timeout: int = 30  # seconds; a timeout is handled like any other network failure
    user_agent: str = "meteoracache/0.1"

    def __post_init__(self) -> None:
        if self.timeout < 1:
            raise ConfigError(f"Network timeout must be at least 1 second (got {self.timeout})")
        if not self.user_agent:
            raise ConfigError("User-Agent cannot be empty")


@dataclass(frozen=True)
class ServerConfig:
    """Configuration for the intercepting HTTP server."""

    host: str = ""
    port: int = 8080

    def __post_init__(self) -> None:
        if self.port < 1 or self.port > 65535:
            raise ConfigError(f"Server port must be between 1 and 65535, got {self.port}")


@dataclass(frozen=True)
class NotificationsConfig:
    """Configuration for push notification delivery."""

    title: str = "Meteora Weather"
    webhooks: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.title:
            raise ConfigError("Notification title cannot be empty")
        if not isinstance(self.webhooks, list):
            raise ConfigError("Notification webhooks must be a list")
        for url in self.webhooks:
            if not url.startswith(("http://", "https://")):
                raise ConfigError(f"Webhook URL must start with http:// or https://, got '{url}'")


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    app: AppConfig = field(default_factory=AppConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)


def _section(data: dict, name: str) -> dict:
    section = data.get(name)
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ConfigError(f"'{name}' section must be a dictionary")
    return section


def _parse_path_list(value: object, name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    if value is None:
        return default
    if not isinstance(value, list):
        raise ConfigError(f"'{name}' must be a list")
    return tuple(str(item) for item in value)


def _parse_app_config(data: dict) -> AppConfig:
    """Parse app configuration section."""
    return AppConfig(origin=str(data.get("origin", AppConfig.origin)))


def _parse_cache_config(data: dict) -> CacheConfig:
    """Parse cache configuration section."""
    return CacheConfig(
        prefix=str(data.get("prefix", "meteora")),
        version=str(data.get("version", "1.0.0")),
        dynamic_ttl_seconds=int(data.get("dynamic_ttl_seconds", 300)),
        skip_waiting=bool(data.get("skip_waiting", True)),
        static_manifest=_parse_path_list(data.get("static_manifest"), "cache.static_manifest", DEFAULT_STATIC_MANIFEST),
        static_prefixes=_parse_path_list(data.get("static_prefixes"), "cache.static_prefixes", DEFAULT_STATIC_PREFIXES),
        store=str(data.get("store", "memory")),
        path=os.path.expanduser(str(data.get("path", DEFAULT_CACHE_PATH))),
    )


def _parse_upstream_config(data: dict) -> UpstreamConfig:
    """Parse upstream configuration section."""
    return UpstreamConfig(
        base_url=str(data.get("base_url", UpstreamConfig.base_url)),
        api_key=str(data.get("api_key") or ""),
        units=str(data.get("units", "metric")),
    )


def _parse_network_config(data: dict) -> NetworkConfig:
    """Parse network configuration section."""
    return NetworkConfig(
        timeout=int(data.get("timeout", 30)),
        user_agent=str(data.get("user_agent", NetworkConfig.user_agent)),
    )


def _parse_server_config(data: dict) -> ServerConfig:
    """Parse server configuration section."""
    return ServerConfig(
        host=str(data.get("host", "")),
        port=int(data.get("port", 8080)),
    )


def _parse_notifications_config(data: dict) -> NotificationsConfig:
    """Parse notifications configuration section."""
    webhooks = data.get("webhooks", [])
    if not isinstance(webhooks, list):
        raise ConfigError("'notifications.webhooks' must be a list")

    return NotificationsConfig(
        title=str(data.get("title", NotificationsConfig.title)),
        webhooks=[str(url) for url in webhooks],
    )


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - METEORACACHE_APP_ORIGIN: Override app.origin
    - METEORACACHE_CACHE_VERSION: Override cache.version
    - METEORACACHE_CACHE_STORE: Override cache.store (memory/sqlite)
    - METEORACACHE_CACHE_PATH: Override cache.path
    - METEORACACHE_SERVER_PORT: Override server.port
    - METEORACACHE_UPSTREAM_API_KEY: Override upstream.api_key
    """
    for section in ("app", "cache", "server", "upstream"):
        if config_data.get(section) is None:
            config_data[section] = {}

    app_origin = os.environ.get("METEORACACHE_APP_ORIGIN")
    if app_origin is not None:
        config_data["app"]["origin"] = app_origin

    cache_version = os.environ.get("METEORACACHE_CACHE_VERSION")
    if cache_version is not None:
        config_data["cache"]["version"] = cache_version

    cache_store = os.environ.get("METEORACACHE_CACHE_STORE")
    if cache_store is not None:
        config_data["cache"]["store"] = cache_store

    cache_path = os.environ.get("METEORACACHE_CACHE_PATH")
    if cache_path is not None:
        config_data["cache"]["path"] = cache_path

    server_port = os.environ.get("METEORACACHE_SERVER_PORT")
    if server_port is not None:
        try:
            config_data["server"]["port"] = int(server_port)
        except ValueError:
            raise ConfigError(f"METEORACACHE_SERVER_PORT must be an integer, got '{server_port}'")

    api_key = os.environ.get("METEORACACHE_UPSTREAM_API_KEY")
    if api_key is not None:
        config_data["upstream"]["api_key"] = api_key

    return config_data


def parse_config(data: dict) -> Config:
    """Build a validated Config from already-parsed YAML data.

    Raises:
        ConfigError: If the configuration is invalid.
    """
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML dictionary")

    data = _apply_env_overrides(data)

    try:
        return Config(
            app=_parse_app_config(_section(data, "app")),
            cache=_parse_cache_config(_section(data, "cache")),
            upstream=_parse_upstream_config(_section(data, "upstream")),
            network=_parse_network_config(_section(data, "network")),
            server=_parse_server_config(_section(data, "server")),
            notifications=_parse_notifications_config(_section(data, "notifications")),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}")


def load_config(config_path: str | None) -> Config:
    """Load and validate configuration from a YAML file.

    Every section is optional. When config_path is None only defaults and
    environment overrides apply.

    Args:
        config_path: Path to the YAML configuration file, or None.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    if config_path is None:
        return parse_config({})

    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML configuration: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file: {e}")

    if data is None:
        data = {}

    return parse_config(data)
