"""Configuration loader for cpctl.

Values are resolved from, in increasing precedence:

1. Built-in defaults.
2. ``~/.config/cpctl/config.yml`` (or the path named by ``CPCTL_CONFIG_FILE``
   or ``--config-file``).
3. Environment variables prefixed with ``CPCTL_``.
4. Explicit overrides supplied programmatically (CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export CPCTL_READINESS__ATTEMPTS=60
    export CPCTL_IAM__SETTLE=10

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The result is exposed as frozen dataclasses.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "CPCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class RetryConfig:
    """Fixed-interval polling budget."""

    attempts: int
    delay: float

    @property
    def budget(self) -> float:
        """Return the overall wait budget in seconds."""
        return self.attempts * self.delay

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"attempts": self.attempts, "delay": self.delay}


@dataclass(frozen=True)
class IAMConfig:
    """IAM propagation polling plus the settle delay that follows it."""

    attempts: int = 30
    delay: float = 1.0
    settle: float = 5.0

    @property
    def retry(self) -> RetryConfig:
        """Return the polling portion as a :class:`RetryConfig`."""
        return RetryConfig(attempts=self.attempts, delay=self.delay)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"attempts": self.attempts, "delay": self.delay, "settle": self.settle}


@dataclass(frozen=True)
class CommandsConfig:
    """External binaries driven through subprocess."""

    kind: str = "kind"
    docker: str = "docker"
    oci: str = "oci"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"kind": self.kind, "docker": self.docker, "oci": self.oci}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for cpctl."""

    config_file: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    provider_config_dir: Path
    kubeconfig: Path
    lock_timeout: float
    namespace: str
    image_repo: str
    image_tag: str
    readiness: RetryConfig
    iam: IAMConfig
    load_balancer: RetryConfig
    inventory_grace_period: float
    rest_mapping_delay: float
    commands: CommandsConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "provider_config_dir": str(self.provider_config_dir),
            "kubeconfig": str(self.kubeconfig),
            "lock_timeout": self.lock_timeout,
            "namespace": self.namespace,
            "image_repo": self.image_repo,
            "image_tag": self.image_tag,
            "readiness": self.readiness.to_dict(),
            "iam": self.iam.to_dict(),
            "load_balancer": self.load_balancer.to_dict(),
            "inventory_grace_period": self.inventory_grace_period,
            "rest_mapping_delay": self.rest_mapping_delay,
            "commands": self.commands.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/cpctl/config.yml",
    "state_dir": "~/.local/state/cpctl",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": None,  # derived from state_dir when absent
    "runtime_dir": None,  # derived from state_dir when absent
    "provider_config_dir": "~/.config/cpctl/providers",
    "kubeconfig": "~/.kube/config",
    "lock_timeout": 30.0,
    "namespace": "cpctl-control-plane",
    "image_repo": "ghcr.io/threeport",
    "image_tag": "v0.6.0",
    "readiness": {"attempts": 30, "delay": 10.0},
    "iam": {"attempts": 30, "delay": 1.0, "settle": 5.0},
    "load_balancer": {"attempts": 12, "delay": 5.0},
    "inventory_grace_period": 2.0,
    "rest_mapping_delay": 5.0,
    "commands": {"kind": "kind", "docker": "docker", "oci": "oci"},
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_NESTED_KEYS: dict[str, set[str]] = {
    "readiness": {"attempts", "delay"},
    "iam": {"attempts", "delay", "settle"},
    "load_balancer": {"attempts", "delay"},
    "commands": {"kind", "docker", "oci"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    environ = dict(os.environ if env is None else env)
    path = _config_path(config_file, environ)

    merged: dict[str, object] = dict(DEFAULTS)
    for layer in (_read_file(path), _env_layer(environ), dict(overrides or {})):
        merged = _merge(merged, layer)
    merged["config_file"] = str(path)

    _check_keys(merged)
    return _build_app_config(merged)


def _config_path(explicit: str | os.PathLike[str] | None, environ: Mapping[str, str]) -> Path:
    chosen = explicit or environ.get(CONFIG_ENV_VAR) or DEFAULTS["config_file"]
    return Path(str(chosen)).expanduser()


def _read_file(path: Path) -> dict[str, object]:
    if not path.is_file():
        return {}
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
    if document is None:
        return {}
    if not isinstance(document, Mapping):
        raise ConfigError(f"Config file {path} must hold a mapping, not {type(document).__name__}.")
    return _section({"file": document}, "file")


def _env_layer(environ: Mapping[str, str]) -> dict[str, object]:
    layer: dict[str, object] = {}
    for key, raw in environ.items():
        if key in RESERVED_ENV_KEYS or not key.startswith(ENV_PREFIX):
            continue
        parts = [part.lower() for part in key.removeprefix(ENV_PREFIX).split("__") if part]
        if not parts:
            continue
        *parents, leaf = parts
        node = layer
        for part in parents:
            child = node.setdefault(part, {})
            if not isinstance(child, dict):
                raise ConfigError(f"{key} nests under {part}, which is already set to a value.")
            node = child
        node[leaf] = _parse_scalar(raw)
    return layer


def _parse_scalar(raw: str) -> object:
    try:
        return yaml.safe_load(raw.strip())
    except yaml.YAMLError:
        return raw.strip()


def _merge(base: Mapping[str, object], layer: Mapping[str, object]) -> dict[str, object]:
    result = dict(base)
    for key, value in layer.items():
        current = result.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            result[key] = _merge(current, value)
        else:
            result[key] = value
    return result


def _check_keys(raw: Mapping[str, object]) -> None:
    unknown = sorted(set(raw) - ALLOWED_TOP_LEVEL_KEYS)
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}.")
    for name, allowed in _NESTED_KEYS.items():
        extra = sorted(set(_section(raw, name)) - allowed)
        if extra:
            raise ConfigError(f"Unknown {name} configuration keys: {', '.join(extra)}.")
    namespace = raw.get("namespace")
    if not isinstance(namespace, str) or not namespace.strip():
        raise ConfigError("namespace must be a non-empty string.")


def _build_retry(raw: Mapping[str, object], name: str) -> RetryConfig:
    values = _section(raw, name)
    defaults = cast(Mapping[str, float], DEFAULTS[name])
    attempts = int(
        _number(
            values.get("attempts"), f"{name}.attempts", default=defaults["attempts"], integer=True
        )
    )
    if attempts < 1:
        raise ConfigError(f"{name}.attempts must be at least 1. Got {attempts}.")
    delay = _number(values.get("delay"), f"{name}.delay", default=defaults["delay"], minimum=0.0)
    return RetryConfig(attempts=attempts, delay=delay)


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    state_dir = _path(raw.get("state_dir"), "state_dir")
    iam_retry = _build_retry(raw, "iam")
    commands = _section(raw, "commands")
    return AppConfig(
        config_file=_path(raw.get("config_file"), "config_file"),
        state_dir=state_dir,
        registry_dir=_path(raw.get("registry_dir") or state_dir / "registry", "registry_dir"),
        logs_dir=_path(raw.get("logs_dir") or state_dir / "logs", "logs_dir"),
        runtime_dir=_path(raw.get("runtime_dir") or state_dir / "run", "runtime_dir"),
        provider_config_dir=_path(raw.get("provider_config_dir"), "provider_config_dir"),
        kubeconfig=_path(raw.get("kubeconfig"), "kubeconfig"),
        lock_timeout=_number(raw.get("lock_timeout"), "lock_timeout", default=30.0, positive=True),
        namespace=str(raw["namespace"]).strip(),
        image_repo=str(raw.get("image_repo") or DEFAULTS["image_repo"]).rstrip("/"),
        image_tag=str(raw.get("image_tag") or DEFAULTS["image_tag"]),
        readiness=_build_retry(raw, "readiness"),
        iam=IAMConfig(
            attempts=iam_retry.attempts,
            delay=iam_retry.delay,
            settle=_number(
                _section(raw, "iam").get("settle"), "iam.settle", default=5.0, minimum=0.0
            ),
        ),
        load_balancer=_build_retry(raw, "load_balancer"),
        inventory_grace_period=_number(
            raw.get("inventory_grace_period"), "inventory_grace_period", default=2.0, minimum=0.0
        ),
        rest_mapping_delay=_number(
            raw.get("rest_mapping_delay"), "rest_mapping_delay", default=5.0, minimum=0.0
        ),
        commands=CommandsConfig(
            kind=str(commands.get("kind") or "kind"),
            docker=str(commands.get("docker") or "docker"),
            oci=str(commands.get("oci") or "oci"),
        ),
    )


def _path(value: object, label: str) -> Path:
    if isinstance(value, (str, Path)) and str(value):
        return Path(value).expanduser()
    raise ConfigError(f"{label} must be a filesystem path. Got {value!r}.")


def _number(
    value: object | None,
    label: str,
    *,
    default: float,
    integer: bool = False,
    minimum: float | None = None,
    positive: bool = False,
) -> float:
    """Parse a numeric setting, rejecting booleans and out-of-range values."""
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"{label} must be a number. Got boolean {value!r}.")
    kind = int if integer else float
    if isinstance(value, (int, float)) and (not integer or isinstance(value, int)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(kind(value))
        except ValueError as exc:
            raise ConfigError(f"{label} must be a number. Got {value!r}.") from exc
    else:
        raise ConfigError(f"{label} must be a number. Got {type(value).__name__}.")
    if positive and number <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {number}.")
    if minimum is not None and number < minimum:
        raise ConfigError(f"{label} must not be negative. Got {number}.")
    return number


def _section(raw: Mapping[str, object], name: str) -> dict[str, object]:
    value = raw.get(name)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{name} must be a mapping. Got {type(value).__name__}.")
    bad = [key for key in value if not isinstance(key, str)]
    if bad:
        raise ConfigError(f"{name} keys must be strings. Got {bad[0]!r}.")
    return dict(value)


__all__ = [
    "AppConfig",
    "CommandsConfig",
    "ConfigError",
    "IAMConfig",
    "RetryConfig",
    "load_config",
]
