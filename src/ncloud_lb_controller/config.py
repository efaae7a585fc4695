# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Controller configuration.

Settings come from `NCLB_*` environment variables. When `NCLB_CONFIG_FILE`
names a YAML file, its top-level keys (the field names below) override the
environment.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml

from ncloud_lb_controller.errors import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "NCLB_"

SECRET_MODE_AUTO = "auto"
SECRET_MODE_OPENBAO = "openbao"
SECRET_MODE_ESO = "eso"
SECRET_MODE_KUBERNETES = "kubernetes"
SECRET_MODES = (SECRET_MODE_AUTO, SECRET_MODE_OPENBAO, SECRET_MODE_ESO, SECRET_MODE_KUBERNETES)

_DNS1123_SUBDOMAIN_PATTERN = re.compile(
    r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$"
)
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class Settings:
    # Persisted state
    annotation_domain: str = "naver.k-paas.org"

    # Watch and work queue
    watch_namespace: str | None = None
    workers: int = 4
    reconcile_timeout_s: float = 900.0

    # Requeue delays
    requeue_pending_s: float = 30.0
    requeue_error_s: float = 60.0
    requeue_delete_s: float = 30.0

    # Provisioning loops
    readiness_attempts: int = 10
    address_attempts: int = 5
    registration_rounds: int = 3

    # Cloud API
    api_endpoint: str = "https://ncloud.apigw.ntruss.com"
    provider_domain_suffix: str = "ncloud.com"
    request_timeout_s: float = 30.0

    # Credentials
    secret_mode: str = SECRET_MODE_AUTO
    secret_namespace: str = "k-paas-system"
    secret_name: str = "naver-cloud-credentials"
    config_map_name: str = "naver-cloud-config"
    credentials_ttl_s: float = 300.0
    openbao_address: str = ""
    openbao_path: str = "secret/data/csp/naver-cloud"
    openbao_role: str = "naver-controller"
    openbao_approle_secret: str = "controller-manager"

    log_level: str = "INFO"

    @property
    def lb_id_annotation(self) -> str:
        return f"{self.annotation_domain}/lb-id"

    @property
    def target_groups_annotation(self) -> str:
        return f"{self.annotation_domain}/target-groups"

    @property
    def target_group_map_annotation(self) -> str:
        return f"{self.annotation_domain}/target-group-map"

    @property
    def finalizer(self) -> str:
        return f"{self.annotation_domain}/lb-finalizer"

    @property
    def openbao_enabled(self) -> bool:
        return bool(self.openbao_address and self.openbao_path and self.openbao_role)


def _coerce(field: dataclasses.Field, raw: Any) -> Any:
    if raw is None:
        return None
    kind = field.type if isinstance(field.type, str) else getattr(field.type, "__name__", "")
    try:
        if kind.startswith("int"):
            return int(raw)
        if kind.startswith("float"):
            return float(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{field.name} must be a number, got {raw!r}") from e
    text = str(raw).strip()
    if kind.startswith("str | None") and not text:
        return None
    return text


def _validate(settings: Settings) -> Settings:
    if not _DNS1123_SUBDOMAIN_PATTERN.match(settings.annotation_domain):
        raise ConfigError(f"invalid annotation domain: {settings.annotation_domain!r}")
    if settings.workers < 1:
        raise ConfigError("workers must be at least 1")
    for name in ("readiness_attempts", "address_attempts", "registration_rounds"):
        if getattr(settings, name) < 1:
            raise ConfigError(f"{name} must be at least 1")
    for name in ("requeue_pending_s", "requeue_error_s", "requeue_delete_s", "request_timeout_s"):
        if getattr(settings, name) <= 0:
            raise ConfigError(f"{name} must be positive")
    if settings.secret_mode not in SECRET_MODES:
        raise ConfigError(
            f"unknown secret mode {settings.secret_mode!r}, expected one of {', '.join(SECRET_MODES)}"
        )
    if settings.secret_mode == SECRET_MODE_OPENBAO and not settings.openbao_enabled:
        raise ConfigError("secret mode 'openbao' requires openbao_address, openbao_path and openbao_role")
    if settings.log_level.upper() not in _LOG_LEVELS:
        raise ConfigError(f"invalid log level: {settings.log_level!r}")
    if not settings.api_endpoint.startswith(("http://", "https://")):
        raise ConfigError("api_endpoint must be an http(s) URL")
    return settings


def load_settings(
    environ: Mapping[str, str] | None = None, config_file: str | Path | None = None
) -> Settings:
    """Build validated settings from the environment and an optional YAML file."""
    env = os.environ if environ is None else environ
    fields = {f.name: f for f in dataclasses.fields(Settings)}
    values: dict[str, Any] = {}

    for name, field in fields.items():
        raw = env.get(ENV_PREFIX + name.upper())
        if raw is not None:
            values[name] = _coerce(field, raw)

    path = config_file or env.get(ENV_PREFIX + "CONFIG_FILE")
    if path:
        try:
            data = yaml.safe_load(Path(path).read_text())
        except OSError as e:
            raise ConfigError(f"cannot read config file {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"config file {path} is not valid YAML: {e}") from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(f"config file {path} must contain a mapping")
        unknown = sorted(set(data) - set(fields))
        if unknown:
            raise ConfigError(f"unknown settings in {path}: {', '.join(unknown)}")
        for name, raw in data.items():
            values[name] = _coerce(fields[name], raw)
        logger.info("loaded settings overrides from %s", path)

    return _validate(Settings(**values))
