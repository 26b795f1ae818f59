from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(ValueError):
    """Raised when the controller configuration is invalid."""


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
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


def env_float(
    name: str,
    default: float,
    *,
    minimum: float | None = None,
    env: Mapping[str, str] | None = None,
) -> float:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be a number") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum:g}, got: {value:g}")
    return value


@dataclass(frozen=True)
class LeaderElectionConfig:
    namespace: str
    lease_name: str
    identity: str
    lease_duration_seconds: int
    renew_deadline_seconds: int
    retry_period_seconds: int
    controller_stop_timeout_seconds: int


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        watch_namespace: Namespace whose ``TracingConfig`` objects are
            reconciled, or ``None`` to watch every namespace.
        resync_seconds: Delay before a successfully applied policy is
            reconciled again to repair drift.
        workers: Number of reconcile worker threads.
        reconcile_timeout_seconds: Deadline of a single reconcile pass,
            checked between API calls; ``0`` disables it.  A call already in
            flight finishes first, so a pass can overrun by up to
            ``request_timeout_seconds``.
        request_timeout_seconds: Timeout of a single Kubernetes API call.
        backoff_base_seconds / backoff_max_seconds: Requeue backoff bounds
            after failed passes.
        leader_election: ``None`` when leader election is disabled.
    """

    watch_namespace: str | None
    resync_seconds: float
    workers: int
    reconcile_timeout_seconds: float
    request_timeout_seconds: float
    backoff_base_seconds: float
    backoff_max_seconds: float
    health_port: int
    log_level: str
    leader_election: LeaderElectionConfig | None


def _load_leader_election(values: Mapping[str, str]) -> LeaderElectionConfig | None:
    if not parse_bool(values.get("LEADER_ELECTION_ENABLED"), default=True):
        return None

    lease_duration = env_int("LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1, env=values)
    renew_deadline = env_int("LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1, env=values)
    retry_period = env_int("LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1, env=values)
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

    namespace = (
        values.get("LEADER_ELECTION_NAMESPACE") or values.get("POD_NAMESPACE") or "tracing-system"
    )
    identity = (
        values.get("LEADER_ELECTION_IDENTITY")
        or values.get("HOSTNAME")
        or values.get("POD_NAME")
        or "unknown"
    )
    return LeaderElectionConfig(
        namespace=namespace,
        lease_name=values.get("LEADER_ELECTION_LEASE_NAME", "tracing-controller-leader"),
        identity=identity,
        lease_duration_seconds=lease_duration,
        renew_deadline_seconds=renew_deadline,
        retry_period_seconds=retry_period,
        # Must exceed the watch timeout so a leadership handoff never
        # overlaps two watch loops.
        controller_stop_timeout_seconds=env_int(
            "LEADER_ELECTION_CONTROLLER_STOP_TIMEOUT_SECONDS", 45, minimum=1, env=values
        ),
    )


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    Every variable is optional; defaults suit an in-cluster deployment that
    watches all namespaces.  Raises :class:`ConfigError` on the first
    invalid value.
    """
    values = env if env is not None else os.environ

    backoff_base = env_float("BACKOFF_BASE_SECONDS", 1.0, minimum=0.001, env=values)
    backoff_max = env_float("BACKOFF_MAX_SECONDS", 300.0, minimum=0.001, env=values)
    if backoff_max < backoff_base:
        raise ConfigError("BACKOFF_MAX_SECONDS must be >= BACKOFF_BASE_SECONDS")

    log_level = values.get("LOG_LEVEL", "INFO").strip().upper() or "INFO"

    return ControllerConfig(
        watch_namespace=(values.get("WATCH_NAMESPACE") or "").strip() or None,
        resync_seconds=env_float("RESYNC_PERIOD_SECONDS", 300.0, minimum=1.0, env=values),
        workers=env_int("RECONCILE_WORKERS", 4, minimum=1, maximum=64, env=values),
        reconcile_timeout_seconds=env_float(
            "RECONCILE_TIMEOUT_SECONDS", 60.0, minimum=0.0, env=values
        ),
        request_timeout_seconds=env_float(
            "REQUEST_TIMEOUT_SECONDS", 30.0, minimum=0.1, env=values
        ),
        backoff_base_seconds=backoff_base,
        backoff_max_seconds=backoff_max,
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
        log_level=log_level,
        leader_election=_load_leader_election(values),
    )
