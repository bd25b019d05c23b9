from typing import Any, Dict, List, Mapping, Tuple, Union
import json
import math
import os

from .errors import ConfigurationError
from .rules import Rule, RuleSet, Target, regex_rewrite, strip_prefix, PathRewrite

ROUTE_OPTIONS = {"prefix", "target", "changeOrigin", "rewrite", "secure", "xfwd", "autoRewrite"}

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Numeric settings and whether zero is allowed
NUMERIC_SETTINGS = {
    "port": True,
    "max_connections": False,
    "buffer_size": False,
    "connect_timeout": False,
    "upstream_timeout": False,
    "client_timeout": False,
    "pool_max_idle": True,
    "pool_idle_timeout": True,
    "shutdown_grace_period": True,
}


def parse_rewrite(prefix: str, options: Mapping[str, Any]) -> PathRewrite:
    """
    Turn a ``rewrite`` route option into a path rewrite function.

    Accepted forms::

        {"pattern": "^/api", "replacement": ""}
        {"stripPrefix": true}
    """
    if not isinstance(options, dict):
        raise ConfigurationError(f"Route {prefix!r}: rewrite must be an object")
    unknown = set(options) - {"pattern", "replacement", "stripPrefix"}
    if unknown:
        raise ConfigurationError(f"Route {prefix!r}: unknown rewrite option(s) {sorted(unknown)}")

    if options.get("stripPrefix"):
        if "pattern" in options:
            raise ConfigurationError(f"Route {prefix!r}: use either stripPrefix or pattern")
        if prefix.startswith("^"):
            raise ConfigurationError(f"Route {prefix!r}: stripPrefix needs a literal prefix")
        return strip_prefix(prefix)

    pattern = options.get("pattern")
    replacement = options.get("replacement", "")
    if not isinstance(pattern, str) or not pattern:
        raise ConfigurationError(f"Route {prefix!r}: rewrite pattern must be a non-empty string")
    if not isinstance(replacement, str):
        raise ConfigurationError(f"Route {prefix!r}: rewrite replacement must be a string")
    return regex_rewrite(pattern, replacement)


def parse_route(prefix: str, options: Union[str, Mapping[str, Any]]) -> Rule:
    """
    Build a Rule from one route entry.

    Args:
        prefix: Path prefix or "^" pattern
        options: Target URI, or an options object (target, changeOrigin,
            rewrite, secure, xfwd, autoRewrite)

    Returns:
        Validated rule
    """
    if not isinstance(prefix, str) or not prefix:
        raise ConfigurationError(f"Route prefix must be a non-empty string, got {prefix!r}")
    if isinstance(options, str):
        options = {"target": options}
    if not isinstance(options, dict):
        raise ConfigurationError(f"Route {prefix!r}: options must be an object or a target URI")

    unknown = set(options) - ROUTE_OPTIONS
    if unknown:
        raise ConfigurationError(f"Route {prefix!r}: unknown option(s) {sorted(unknown)}")
    if "target" not in options:
        raise ConfigurationError(f"Route {prefix!r}: target is required")
    for flag in ("changeOrigin", "secure", "xfwd", "autoRewrite"):
        if flag in options and not isinstance(options[flag], bool):
            raise ConfigurationError(f"Route {prefix!r}: {flag} must be true or false")

    rewrite = parse_rewrite(prefix, options["rewrite"]) if options.get("rewrite") is not None else None
    return Rule(
        prefix=prefix,
        target=Target.parse(options["target"], verify_tls=options.get("secure", True)),
        change_origin=options.get("changeOrigin", False),
        path_rewrite=rewrite,
        xfwd=options.get("xfwd", False),
        auto_rewrite=options.get("autoRewrite", False),
    )


class ProxyConfig:
    """Configuration manager for the dev proxy."""

    def __init__(self, config_path: str = None):
        """
        Initialize configuration with optional config file path.

        Args:
            config_path: Path to JSON configuration file

        Raises:
            ConfigurationError: If the file is missing, unreadable or invalid
        """
        self.config_path = config_path
        self.config = self._load_default_config()

        if config_path:
            self._load_config_file()
        self._validate()

    def _load_default_config(self) -> Dict[str, Any]:
        """Load default configuration settings."""
        return {
            "host": "localhost",
            "port": 5173,
            "routes": [],
            "proxy": {},
            "static_root": None,
            "max_connections": 128,
            "buffer_size": 4096,
            "connect_timeout": 5.0,
            "upstream_timeout": 30.0,
            "client_timeout": 60.0,
            "pool_max_idle": 8,
            "pool_idle_timeout": 30.0,
            "shutdown_grace_period": 5.0,
            "log_level": "INFO",
        }

    def _load_config_file(self) -> None:
        """Load configuration from JSON file."""
        if not os.path.exists(self.config_path):
            raise ConfigurationError(f"Config file not found: {self.config_path}")
        try:
            with open(self.config_path, 'r') as f:
                file_config = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Error loading config file: {e}") from e

        if not isinstance(file_config, dict):
            raise ConfigurationError("Config file must contain a JSON object")
        self.update(**file_config)

    def update(self, **overrides: Any) -> None:
        """
        Override settings, e.g. from the command line.

        Raises:
            ConfigurationError: On unknown keys or invalid values
        """
        unknown = set(overrides) - set(self.config)
        if unknown:
            raise ConfigurationError(f"Unknown configuration key(s): {sorted(unknown)}")
        self.config.update(overrides)
        self._validate()

    def _validate(self) -> None:
        for key, zero_ok in NUMERIC_SETTINGS.items():
            value = self.config[key]
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
                raise ConfigurationError(f"{key} must be a finite number, got {value!r}")
            if value < 0 or (value == 0 and not zero_ok):
                raise ConfigurationError(f"{key} must be {'>= 0' if zero_ok else '> 0'}, got {value!r}")
        for key in ("port", "max_connections", "buffer_size", "pool_max_idle"):
            if not isinstance(self.config[key], int):
                raise ConfigurationError(f"{key} must be an integer")
        if self.config["log_level"] not in LOG_LEVELS:
            raise ConfigurationError(f"log_level must be one of {LOG_LEVELS}")
        if not isinstance(self.config["host"], str):
            raise ConfigurationError("host must be a string")
        if self.config["static_root"] is not None and not isinstance(self.config["static_root"], str):
            raise ConfigurationError("static_root must be a path or null")
        if not isinstance(self.config["routes"], list):
            raise ConfigurationError("routes must be a list")
        if not isinstance(self.config["proxy"], dict):
            raise ConfigurationError("proxy must be an object keyed by path prefix")

    def get(self, key: str) -> Any:
        """
        Get configuration value by key.

        Args:
            key: Configuration key

        Returns:
            Configuration value
        """
        return self.config.get(key)

    def route_entries(self) -> List[Tuple[str, Any]]:
        """Route entries in declared order: ``routes`` first, then ``proxy``."""
        entries = []
        for index, route in enumerate(self.config["routes"]):
            if not isinstance(route, dict) or "prefix" not in route:
                raise ConfigurationError(f"routes[{index}] must be an object with a prefix")
            options = {key: value for key, value in route.items() if key != "prefix"}
            entries.append((route["prefix"], options))
        entries.extend(self.config["proxy"].items())
        return entries

    def build_rules(self) -> RuleSet:
        """
        Build the validated rule set.

        Raises:
            ConfigurationError: On any invalid, duplicate or unreachable route
        """
        return RuleSet(parse_route(prefix, options) for prefix, options in self.route_entries())
