#!/usr/bin/env python3
"""
Configuration Manager for regclean

This module handles loading and managing configuration from config.yaml
and environment variables. Command line flags are applied on top through
``ConfigManager.override``.
"""

import logging
import os
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import yaml

CACHE_BACKENDS = ("disk", "sqlite")
CREDENTIAL_PROVIDERS = ("static", "ecr", "acr", "k8s_secret")


class ConfigValidationError(Exception):
    """Raised when configuration validation fails"""


def default_cache_dir() -> str:
    """Per-user application cache directory ($XDG_CACHE_HOME/regclean)"""
    base = os.environ.get("XDG_CACHE_HOME") or os.path.join(os.path.expanduser("~"), ".cache")
    return os.path.join(base, "regclean")


def split_list(value: Any) -> List[str]:
    """Turn a comma-separated string or a list into a list without empty entries"""
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [str(item).strip() for item in value if item is not None and str(item).strip()]


class ConfigManager:
    """Manages configuration for regclean"""

    def __init__(self, config_file: str = None, validate: bool = True):
        """Initialize ConfigManager

        Args:
            config_file: Path to configuration YAML file (defaults to REGCLEAN_CONFIG_FILE env var or ./config.yaml)
            validate: If True, validate configuration on initialization
        """
        if config_file is None:
            config_file = os.environ.get("REGCLEAN_CONFIG_FILE", "config.yaml")
        self.config_file = config_file
        self.config = self._load_config()
        self._overrides: Dict[str, Any] = {}

        if validate:
            self.validate_config()

    def _default_config(self) -> Dict[str, Any]:
        return {
            "registry": {
                "url": "",
                "username": "",
                "password": "",
                "credentials": "static",
                "auth_secret": "",
                "auth_secret_namespace": "default",
                "timeout": 30,
                "verify_tls": True,
            },
            "kubernetes": {
                "kubeconfig": os.path.join(os.path.expanduser("~"), ".kube", "config"),
                "contexts": [],
            },
            "retention": {
                "min_age_days": 30,
                "exclude_name_filters": [],
                "include_name_filters": [],
            },
            "cache": {
                "backend": "disk",
                "dir": default_cache_dir(),
                "lock_timeout": 1.0,
                "lock_poll_interval": 0.25,
            },
            "retry": {
                "max_retries": 3,
                "initial_delay": 1.0,
                "max_delay": 30.0,
                "exponential_base": 2.0,
                "jitter": True,
            },
            "deletion": {"dry_run": False, "yolo": False},
            "reports": {"output_dir": "reports", "save_json": False},
        }

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML file with defaults"""
        default_config = self._default_config()

        if not os.path.exists(self.config_file):
            logging.warning(f"Config file {self.config_file} not found, using defaults")
            return default_config

        try:
            with open(self.config_file, "r") as f:
                user_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigValidationError(f"Error loading config file {self.config_file}: {e}") from e

        if not isinstance(user_config, dict):
            raise ConfigValidationError(f"Config file {self.config_file} must contain a mapping at the top level")
        return self._merge_config(default_config, user_config)

    def _merge_config(self, default: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge user config with defaults"""
        result = default.copy()
        for key, value in user.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value
        return result

    def override(self, **values: Any) -> None:
        """Apply command line overrides. None values are ignored.

        Keys are the getter names without the ``get_`` prefix, e.g.
        ``override(registry_url="https://reg.io", min_age_days=7)``.
        """
        for key, value in values.items():
            if value is not None:
                self._overrides[key] = value

    def _value(self, key: str, env: Optional[str], section: str, field: str) -> Any:
        """Resolve a value: CLI override, then environment, then config file/defaults"""
        if key in self._overrides:
            return self._overrides[key]
        if env and os.environ.get(env):
            return os.environ[env]
        return self.config.get(section, {}).get(field, self._default_config()[section][field])

    def _int(self, key: str, env: Optional[str], section: str, field: str) -> int:
        value = self._value(key, env, section, field)
        try:
            return int(value)
        except (ValueError, TypeError):
            raise ConfigValidationError(
                f"{section}.{field} must be an integer, got: {value} (type: {type(value).__name__})"
            )

    def _float(self, key: str, env: Optional[str], section: str, field: str) -> float:
        value = self._value(key, env, section, field)
        try:
            return float(value)
        except (ValueError, TypeError):
            raise ConfigValidationError(
                f"{section}.{field} must be a number, got: {value} (type: {type(value).__name__})"
            )

    def _bool(self, key: str, env: Optional[str], section: str, field: str) -> bool:
        value = self._value(key, env, section, field)
        if isinstance(value, str):
            return value.strip().lower() in ("true", "1", "yes", "y", "on")
        return bool(value)

    # Registry configuration
    def get_registry_url(self) -> str:
        """Get registry URL (https:// is assumed when no scheme is given)"""
        url = str(self._value("registry_url", "REGCLEAN_REGISTRY_URL", "registry", "url") or "").strip()
        url = url.rstrip("/")
        if url and "://" not in url:
            url = f"https://{url}"
        return url

    def get_registry_username(self) -> str:
        return self._value("registry_username", "REGCLEAN_REGISTRY_USERNAME", "registry", "username") or ""

    def get_registry_password(self) -> str:
        return self._value("registry_password", "REGCLEAN_REGISTRY_PASSWORD", "registry", "password") or ""

    def get_credentials_provider(self) -> str:
        """Get how registry credentials are obtained: static, ecr, acr or k8s_secret"""
        return str(self._value("credentials_provider", "REGCLEAN_REGISTRY_CREDENTIALS", "registry", "credentials")).lower()

    def get_auth_secret(self) -> str:
        return self._value("auth_secret", "REGCLEAN_REGISTRY_AUTH_SECRET", "registry", "auth_secret") or ""

    def get_auth_secret_namespace(self) -> str:
        return self._value("auth_secret_namespace", None, "registry", "auth_secret_namespace") or "default"

    def get_registry_timeout(self) -> float:
        return self._float("registry_timeout", None, "registry", "timeout")

    def get_verify_tls(self) -> bool:
        return self._bool("verify_tls", "REGCLEAN_VERIFY_TLS", "registry", "verify_tls")

    # Kubernetes configuration
    def get_kubeconfig(self) -> str:
        return os.path.expanduser(self._value("kubeconfig", "KUBECONFIG", "kubernetes", "kubeconfig") or "")

    def get_contexts(self) -> List[str]:
        return split_list(self._value("contexts", "REGCLEAN_CONTEXTS", "kubernetes", "contexts"))

    # Retention configuration
    def get_min_age_days(self) -> int:
        return self._int("min_age_days", "REGCLEAN_MIN_AGE", "retention", "min_age_days")

    def get_exclude_name_filters(self) -> List[str]:
        return split_list(
            self._value("exclude_name_filters", "REGCLEAN_EXCLUDE_NAME_FILTERS", "retention", "exclude_name_filters")
        )

    def get_include_name_filters(self) -> List[str]:
        return split_list(
            self._value("include_name_filters", "REGCLEAN_INCLUDE_NAME_FILTERS", "retention", "include_name_filters")
        )

    # Cache configuration
    def get_cache_backend(self) -> str:
        return str(self._value("cache_backend", "REGCLEAN_CACHE_BACKEND", "cache", "backend")).lower()

    def get_cache_dir(self) -> str:
        return os.path.expanduser(self._value("cache_dir", "REGCLEAN_CACHE_DIR", "cache", "dir"))

    def get_cache_lock_timeout(self) -> float:
        return self._float("cache_lock_timeout", None, "cache", "lock_timeout")

    def get_cache_lock_poll_interval(self) -> float:
        return self._float("cache_lock_poll_interval", None, "cache", "lock_poll_interval")

    # Retry configuration
    def get_max_retries(self) -> int:
        return self._int("max_retries", None, "retry", "max_retries")

    def get_retry_initial_delay(self) -> float:
        return self._float("retry_initial_delay", None, "retry", "initial_delay")

    def get_retry_max_delay(self) -> float:
        return self._float("retry_max_delay", None, "retry", "max_delay")

    def get_retry_exponential_base(self) -> float:
        return self._float("retry_exponential_base", None, "retry", "exponential_base")

    def get_retry_jitter(self) -> bool:
        return self._bool("retry_jitter", None, "retry", "jitter")

    # Deletion configuration
    def is_dry_run(self) -> bool:
        return self._bool("dry_run", "REGCLEAN_DRY_RUN", "deletion", "dry_run")

    def is_yolo(self) -> bool:
        """Whether per-image confirmation is bypassed (after one blanket confirmation)"""
        return self._bool("yolo", "REGCLEAN_YOLO", "deletion", "yolo")

    # Report configuration
    def get_output_dir(self) -> str:
        return self._value("output_dir", "REGCLEAN_OUTPUT_DIR", "reports", "output_dir")

    def should_save_json_report(self) -> bool:
        return self._bool("save_json", None, "reports", "save_json")

    def validate_config(self) -> None:
        """Validate configuration values

        Raises:
            ConfigValidationError: If configuration is invalid
        """
        errors = []
        warnings = []

        registry_url = self.get_registry_url()
        if not registry_url:
            errors.append("Registry URL is required (registry.url, REGCLEAN_REGISTRY_URL or --registry-url)")
        else:
            parsed = urlparse(registry_url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                errors.append(f"Registry URL '{registry_url}' is invalid (expected https://hostname[:port])")
            elif parsed.scheme == "http":
                warnings.append(f"Registry URL '{registry_url}' uses plain HTTP")

        provider = self.get_credentials_provider()
        if provider not in CREDENTIAL_PROVIDERS:
            errors.append(
                f"registry.credentials must be one of {', '.join(CREDENTIAL_PROVIDERS)}, got: {provider}"
            )
        elif provider == "k8s_secret" and not self.get_auth_secret():
            errors.append("registry.auth_secret is required when registry.credentials is k8s_secret")

        try:
            min_age = self.get_min_age_days()
            if min_age < 0:
                errors.append(f"retention.min_age_days must be a non-negative integer, got: {min_age}")
        except ConfigValidationError as e:
            errors.append(str(e))

        backend = self.get_cache_backend()
        if backend not in CACHE_BACKENDS:
            errors.append(f"cache.backend must be one of {', '.join(CACHE_BACKENDS)}, got: {backend}")

        for getter, name in (
            (self.get_cache_lock_timeout, "cache.lock_timeout"),
            (self.get_cache_lock_poll_interval, "cache.lock_poll_interval"),
            (self.get_registry_timeout, "registry.timeout"),
        ):
            try:
                value = getter()
                if value <= 0:
                    errors.append(f"{name} must be a positive number, got: {value}")
            except ConfigValidationError as e:
                errors.append(str(e))

        for getter, name in (
            (self.get_max_retries, "retry.max_retries"),
            (self.get_retry_initial_delay, "retry.initial_delay"),
            (self.get_retry_max_delay, "retry.max_delay"),
        ):
            try:
                value = getter()
                if value < 0:
                    errors.append(f"{name} must be non-negative, got: {value}")
            except ConfigValidationError as e:
                errors.append(str(e))

        if not self.get_contexts():
            warnings.append("No Kubernetes contexts configured, using the current kubeconfig context")

        for warning in warnings:
            logging.warning(f"Configuration warning: {warning}")

        if errors:
            error_msg = "Configuration validation failed:\n  " + "\n  ".join(errors)
            logging.error(error_msg)
            raise ConfigValidationError(error_msg)

    def print_config(self):
        """Print current configuration"""
        print("Current Configuration:")
        print(f"  Registry URL: {self.get_registry_url()}")
        print(f"  Credentials: {self.get_credentials_provider()}")
        print(f"  Registry Username: {self.get_registry_username() or 'Not set'}")
        password = self.get_registry_password()
        print(f"  Registry Password: {'*' * len(password) if password else 'Not set'}")
        print(f"  Kubeconfig: {self.get_kubeconfig()}")
        print(f"  Contexts: {', '.join(self.get_contexts()) or 'None'}")
        print(f"  Min Age (days): {self.get_min_age_days()}")
        print(f"  Exclude Name Filters: {self.get_exclude_name_filters()}")
        print(f"  Include Name Filters: {self.get_include_name_filters()}")
        print(f"  Cache Backend: {self.get_cache_backend()}")
        print(f"  Cache Directory: {self.get_cache_dir()}")
        print(f"  Dry Run: {self.is_dry_run()}")
        print(f"  Skip Confirmation: {self.is_yolo()}")
