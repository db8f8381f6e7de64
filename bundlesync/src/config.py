from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from bundlesync.src.exclusion import DEFAULT_EXCLUDED_NAMESPACES


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class LeaderElectionConfig:
    enabled: bool
    namespace: str
    lease_name: str
    identity: str
    lease_duration_seconds: int
    renew_deadline_seconds: int
    retry_period_seconds: int


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        config_map_name:     Fixed name of the ConfigMap replicated into every namespace.
        excluded_namespaces: Namespaces that must never receive the ConfigMap.
        bundle_source_dir:   Directory read by the default data provider.
        workers:             Number of reconcile worker threads.
        resync_seconds:      Period of the full resync, ``0`` disables it.
        managed_by_label:    ``(key, value)`` label stamped on created ConfigMaps.
    """

    config_map_name: str
    excluded_namespaces: frozenset[str]
    bundle_source_dir: str
    workers: int
    resync_seconds: int
    managed_by_label: tuple[str, str]
    health_port: int
    leader_election: LeaderElectionConfig


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_int(
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


def parse_namespace_list(raw: str) -> frozenset[str]:
    """Parse a comma-separated namespace list, ignoring blanks and whitespace."""
    return frozenset(part.strip() for part in raw.split(",") if part.strip())


def parse_label(name: str, raw: str) -> tuple[str, str]:
    key, separator, value = raw.partition("=")
    key = key.strip()
    if not separator or not key:
        raise ConfigError(f"{name} must be a key=value pair, got: {raw!r}")
    return key, value.strip()


def _non_empty(values: Mapping[str, str], name: str, default: str) -> str:
    value = values.get(name, default).strip()
    if not value:
        raise ConfigError(f"{name} must be a non-empty string")
    return value


def load_leader_election_config(values: Mapping[str, str]) -> LeaderElectionConfig:
    """Load and cross-validate the leader election timings.

    The lease duration, renew deadline and retry period must be strictly
    decreasing, otherwise two replicas could both believe they hold the lease.
    """
    lease_duration = parse_int(values, "LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1)
    renew_deadline = parse_int(values, "LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1)
    retry_period = parse_int(values, "LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1)

    if renew_deadline >= lease_duration:
        raise ConfigError(
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
            "LEADER_ELECTION_LEASE_DURATION_SECONDS"
        )
    if retry_period >= renew_deadline:
        raise ConfigError(
            "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
        )

    default_identity = values.get("HOSTNAME", values.get("POD_NAME", "unknown"))
    return LeaderElectionConfig(
        enabled=parse_bool(values.get("LEADER_ELECTION_ENABLED"), default=True),
        namespace=_non_empty(values, "LEADER_ELECTION_NAMESPACE", "bundlesync"),
        lease_name=_non_empty(values, "LEADER_ELECTION_LEASE_NAME", "bundlesync-leader"),
        identity=_non_empty(values, "LEADER_ELECTION_IDENTITY", default_identity),
        lease_duration_seconds=lease_duration,
        renew_deadline_seconds=renew_deadline,
        retry_period_seconds=retry_period,
    )


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load the controller configuration from the environment.

    ``EXCLUDED_NAMESPACES`` replaces the default system namespace list when
    set; an explicitly empty value disables exclusion entirely.
    """
    values = env if env is not None else os.environ

    raw_excluded = values.get("EXCLUDED_NAMESPACES")
    excluded = (
        DEFAULT_EXCLUDED_NAMESPACES
        if raw_excluded is None
        else parse_namespace_list(raw_excluded)
    )

    return ControllerConfig(
        config_map_name=_non_empty(values, "CONFIGMAP_NAME", "root-cert-bundle"),
        excluded_namespaces=excluded,
        bundle_source_dir=_non_empty(values, "BUNDLE_SOURCE_DIR", "/etc/bundlesync/bundle"),
        workers=parse_int(values, "WORKERS", 4, minimum=1, maximum=64),
        resync_seconds=parse_int(values, "RESYNC_SECONDS", 300, minimum=0),
        managed_by_label=parse_label(
            "MANAGED_BY_LABEL",
            values.get("MANAGED_BY_LABEL", "app.kubernetes.io/managed-by=bundlesync"),
        ),
        health_port=parse_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        leader_election=load_leader_election_config(values),
    )
