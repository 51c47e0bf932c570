"""Configuration objects."""

from __future__ import annotations

import os
from enum import Enum
from typing import Any, Mapping

import msgspec

from .bootstrap import RemoteBootstrapConfig
from .database import DatabaseConfig
from .hostnames import DEFAULT_RESERVED_LABELS
from .observability import ObservabilityConfig

ENV_PREFIX = "TENANTRY_"


class AdoptionRolePolicy(str, Enum):
    """Role given to a non-owner principal adopted through hostname routing."""

    PRESERVE = "preserve"
    VIEWER = "viewer"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


class TenantryConfig(msgspec.Struct, frozen=True):
    """Typed configuration for the resolver, gate and their collaborators."""

    root_domain: str = "example.com"
    reserved_labels: tuple[str, ...] = DEFAULT_RESERVED_LABELS
    bootstrap_timeout: float = 10.0
    adoption_role_policy: AdoptionRolePolicy = AdoptionRolePolicy.PRESERVE
    default_plan: str = "free"
    default_max_principals: int = 3
    bootstrap: RemoteBootstrapConfig | None = None
    database: DatabaseConfig | None = None
    observability: ObservabilityConfig = ObservabilityConfig()

    def __post_init__(self) -> None:
        if self.bootstrap_timeout <= 0:
            raise ValueError("bootstrap_timeout must be positive")
        if self.default_max_principals < 0:
            raise ValueError("default_max_principals must not be negative")


def _split_labels(raw: str) -> list[str]:
    return sorted({label.strip().lower() for label in raw.split(",") if label.strip()})


def load_config(environ: Mapping[str, str] | None = None) -> TenantryConfig:
    """Build a :class:`TenantryConfig` from ``TENANTRY_*`` environment variables."""

    env = os.environ if environ is None else environ
    data: dict[str, Any] = {}
    simple = {
        "ROOT_DOMAIN": "root_domain",
        "BOOTSTRAP_TIMEOUT": "bootstrap_timeout",
        "ADOPTION_ROLE": "adoption_role_policy",
        "DEFAULT_PLAN": "default_plan",
        "DEFAULT_MAX_PRINCIPALS": "default_max_principals",
    }
    for suffix, field in simple.items():
        value = env.get(ENV_PREFIX + suffix)
        if value:
            data[field] = value.strip()
    labels = env.get(ENV_PREFIX + "RESERVED_LABELS")
    if labels is not None:
        data["reserved_labels"] = _split_labels(labels)
    bootstrap_url = env.get(ENV_PREFIX + "BOOTSTRAP_URL")
    if bootstrap_url:
        bootstrap: dict[str, Any] = {"url": bootstrap_url}
        token = env.get(ENV_PREFIX + "BOOTSTRAP_TOKEN")
        if token:
            bootstrap["token"] = token
        if "bootstrap_timeout" in data:
            bootstrap["timeout"] = data["bootstrap_timeout"]
        data["bootstrap"] = bootstrap
    dsn = env.get("DATABASE_URL")
    if dsn:
        data["database"] = {"pool": {"dsn": dsn}}
    try:
        return msgspec.convert(data, TenantryConfig, strict=False)
    except msgspec.ValidationError as exc:
        raise ValueError(f"Invalid tenantry configuration: {exc}") from exc


__all__ = ["ENV_PREFIX", "AdoptionRolePolicy", "TenantryConfig", "load_config"]
