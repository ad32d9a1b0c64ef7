from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from provisioner.src.errors import ConfigError

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


@dataclass(frozen=True)
class ProvisionerConfig:
    """Immutable provisioner configuration loaded at startup.

    Attributes:
        release_namespace: Namespace holding release records and receiving
                           namespaced objects that do not name one.
        storage_namespace: Namespace of the ConfigMaps holding unpacked
                           bundle content.
        max_concurrent_reconciles: Number of reconcile worker threads.
        watch_timeout_seconds: Server-side timeout of each watch request.
        health_port: Port of the health/metrics HTTP server.
        log_level: Root logger level name.
        field_manager: Field manager used for server-side apply.
    """

    release_namespace: str = "provisioner-system"
    storage_namespace: str = "provisioner-system"
    max_concurrent_reconciles: int = 4
    watch_timeout_seconds: int = 30
    health_port: int = 8080
    log_level: str = "INFO"
    field_manager: str = "plain-provisioner"


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _env_str(values: Mapping[str, str], name: str, default: str) -> str:
    value = values.get(name, default).strip()
    if not value:
        raise ConfigError(f"{name} must be a non-empty string")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ProvisionerConfig:
    """Load provisioner config from the environment.

    ``STORAGE_NAMESPACE`` defaults to ``RELEASE_NAMESPACE`` so a single
    namespace deployment needs only one variable.
    """
    values = env if env is not None else os.environ

    release_namespace = _env_str(values, "RELEASE_NAMESPACE", "provisioner-system")
    storage_namespace = _env_str(values, "STORAGE_NAMESPACE", release_namespace)

    log_level = values.get("LOG_LEVEL", "INFO").strip().upper()
    if log_level not in _LOG_LEVELS:
        raise ConfigError(f"LOG_LEVEL must be one of {sorted(_LOG_LEVELS)}, got: {log_level!r}")

    return ProvisionerConfig(
        release_namespace=release_namespace,
        storage_namespace=storage_namespace,
        max_concurrent_reconciles=env_int(values, "MAX_CONCURRENT_RECONCILES", 4, minimum=1),
        watch_timeout_seconds=env_int(
            values, "WATCH_TIMEOUT_SECONDS", 30, minimum=1, maximum=3600
        ),
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        log_level=log_level,
        field_manager=_env_str(values, "FIELD_MANAGER", "plain-provisioner"),
    )
