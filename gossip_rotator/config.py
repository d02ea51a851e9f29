# Copyright 2025 Gossip Rotator Contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Rotator configuration management.

Values come from environment variables, an optional YAML file and CLI
overrides, applied in that order.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

from .error_handling import BackoffPolicy
from .error_mapping import ConfigurationError

DEFAULT_CONSUL_ADDR = "http://127.0.0.1:8500"

_POLICY_FIELDS = ("install_retry", "propagation_poll", "promote_retry", "remove_retry")
_FLOAT_FIELDS = ("rpc_timeout_seconds", "reconcile_interval_seconds")
_INT_FIELDS = ("metrics_port",)
_BOOL_FIELDS = ("consul_http_ssl", "consul_tls_skip_verify", "reconcile_with_keyring", "log_json")
_POLICY_INT_FIELDS = ("max_attempts",)
_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")


@dataclass
class RotatorConfig:
    """Main rotator configuration."""

    # Watched secret
    gossip_key_file: str = ""

    # Cluster API
    consul_http_addr: str = DEFAULT_CONSUL_ADDR
    consul_http_ssl: bool = False
    consul_http_token: str | None = None
    consul_http_token_file: str | None = None
    consul_cacert: str | None = None
    consul_client_cert: str | None = None
    consul_client_key: str | None = None
    consul_tls_skip_verify: bool = False
    rpc_timeout_seconds: float = 10.0

    # Local identity
    pod_ip: str = ""

    # Scheduling
    reconcile_interval_seconds: float = 600.0
    reconcile_with_keyring: bool = True

    # Retry bounds per rotation step
    install_retry: BackoffPolicy = field(default_factory=BackoffPolicy)
    propagation_poll: BackoffPolicy = field(default_factory=BackoffPolicy)
    promote_retry: BackoffPolicy = field(default_factory=BackoffPolicy)
    remove_retry: BackoffPolicy = field(default_factory=BackoffPolicy)

    # Observability
    log_level: str = "info"
    log_json: bool = False
    metrics_port: int = 0

    @classmethod
    def from_environment(cls, environ: dict[str, str] | None = None) -> RotatorConfig:
        """Load configuration from environment variables."""
        env = os.environ if environ is None else environ
        ssl = _parse_bool(env.get("CONSUL_HTTP_SSL", "false"))
        return cls(
            gossip_key_file=env.get("GOSSIP_ROTATOR_KEY_FILE", ""),
            consul_http_addr=_normalize_addr(env.get("CONSUL_HTTP_ADDR", DEFAULT_CONSUL_ADDR), ssl=ssl),
            consul_http_ssl=ssl,
            consul_http_token=env.get("CONSUL_HTTP_TOKEN") or None,
            consul_http_token_file=env.get("CONSUL_HTTP_TOKEN_FILE") or None,
            consul_cacert=env.get("CONSUL_CACERT") or None,
            consul_client_cert=env.get("CONSUL_CLIENT_CERT") or None,
            consul_client_key=env.get("CONSUL_CLIENT_KEY") or None,
            consul_tls_skip_verify=not _parse_bool(env.get("CONSUL_HTTP_SSL_VERIFY", "true")),
            rpc_timeout_seconds=_parse_float(env, "GOSSIP_ROTATOR_RPC_TIMEOUT", 10.0),
            pod_ip=env.get("POD_IP", ""),
            reconcile_interval_seconds=_parse_float(env, "GOSSIP_ROTATOR_RECONCILE_INTERVAL", 600.0),
            reconcile_with_keyring=_parse_bool(env.get("GOSSIP_ROTATOR_RECONCILE_WITH_KEYRING", "true")),
            log_level=env.get("GOSSIP_ROTATOR_LOG_LEVEL", "info"),
            log_json=_parse_bool(env.get("GOSSIP_ROTATOR_LOG_JSON", "false")),
            metrics_port=int(_parse_float(env, "GOSSIP_ROTATOR_METRICS_PORT", 0)),
        )

    @classmethod
    def from_yaml(cls, path: str | Path, base: RotatorConfig | None = None) -> RotatorConfig:
        """Overlay the values of a YAML file onto ``base`` (or the defaults)."""
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"cannot load config file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"config file {path} must contain a mapping")
        return (base or cls()).with_overrides(**data)

    def with_overrides(self, **overrides: Any) -> RotatorConfig:
        """Return a copy with the given non-None values replaced.

        Values are coerced to the field's type; anything that cannot be
        coerced raises ConfigurationError.
        """
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigurationError(f"unknown configuration keys: {', '.join(sorted(unknown))}")

        values: dict[str, Any] = {}
        for name, value in overrides.items():
            if value is None:
                continue
            values[name] = _coerce_field(name, value)
        if "consul_http_addr" in values:
            ssl = values.get("consul_http_ssl", self.consul_http_ssl)
            values["consul_http_addr"] = _normalize_addr(values["consul_http_addr"], ssl=ssl)
        return replace(self, **values)

    def validate(self) -> None:
        if not self.gossip_key_file:
            raise ConfigurationError("gossip_key_file must be set")
        if not self.pod_ip:
            raise ConfigurationError("pod_ip must be set (POD_IP) to compare against the cluster leader")
        if self.rpc_timeout_seconds <= 0:
            raise ConfigurationError("rpc_timeout_seconds must be positive")
        if self.reconcile_interval_seconds <= 0:
            # A zero timer would spin the event loop and starve shutdown.
            raise ConfigurationError("reconcile_interval_seconds must be positive")
        if not 0 <= self.metrics_port <= 65535:
            raise ConfigurationError("metrics_port must be between 0 and 65535")
        for name in _POLICY_FIELDS:
            getattr(self, name).validate()

    def resolve_token(self) -> str | None:
        """Token from the token file if configured, else the inline token."""
        if self.consul_http_token_file:
            try:
                return Path(self.consul_http_token_file).read_text(encoding="utf-8").strip() or None
            except OSError as e:
                raise ConfigurationError(f"cannot read token file {self.consul_http_token_file}: {e}") from e
        return self.consul_http_token


def _coerce_field(name: str, value: Any) -> Any:
    if name in _POLICY_FIELDS:
        if isinstance(value, BackoffPolicy):
            return value
        if not isinstance(value, dict):
            raise ConfigurationError(f"{name} must be a mapping, got {type(value).__name__}")
        return _policy_from_mapping(name, value)
    if name in _FLOAT_FIELDS:
        return _to_number(name, value, float)
    if name in _INT_FIELDS:
        return _to_number(name, value, int)
    if name in _BOOL_FIELDS:
        return _to_bool(name, value)
    if isinstance(value, (dict, list, bool)):
        raise ConfigurationError(f"{name} must be a string, got {type(value).__name__}")
    return str(value)


def _to_number(name: str, value: Any, kind: type) -> Any:
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be a number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from e
    if kind is int:
        if not number.is_integer():
            raise ConfigurationError(f"{name} must be an integer, got {value!r}")
        return int(number)
    return number


def _to_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {value!r}")


def _policy_from_mapping(name: str, value: dict[str, Any]) -> BackoffPolicy:
    coerced: dict[str, Any] = {}
    for key, item in value.items():
        kind = int if key in _POLICY_INT_FIELDS else float
        coerced[key] = _to_number(f"{name}.{key}", item, kind)
    try:
        return BackoffPolicy(**coerced)
    except TypeError as e:
        raise ConfigurationError(f"invalid {name}: {e}") from e


def _normalize_addr(addr: str, ssl: bool = False) -> str:
    addr = addr.strip().rstrip("/")
    if "://" not in addr:
        addr = f"{'https' if ssl else 'http'}://{addr}"
    return addr


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_float(env: Any, name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e
