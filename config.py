"""
This module defines the data structures for the remote dev server deployment.
The YAML file accepts the operator-facing camelCase keys (hostedZoneId, useElasticIp, ...)
as well as their snake_case field names.
"""

import re
import yaml
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional, Tuple


class ConfigValidationError(ValueError):
    def __init__(self, error: "ConfigError"):
        super().__init__(error.message)
        self.error = error


@dataclass(frozen=True)
class ConfigError:
    field: str
    rule: str
    message: str


@dataclass(frozen=True)
class SecretReference:
    kind: str  # "inline" or "ssm"
    value: str

    @property
    def is_ssm(self) -> bool:
        return self.kind == "ssm"


@dataclass(frozen=True)
class DeploymentConfig:
    region: str
    domain: str
    email: str
    key_pair_name: str
    instance_type: str
    volume_size: int
    hosted_zone_id: Optional[str] = None
    use_elastic_ip: bool = False
    code_server_password: Optional[str] = None
    ssm_password_parameter_name: Optional[str] = None
    additional_ssh_public_keys: Tuple[str, ...] = ()
    enable_ssh_password_auth: bool = False
    team: str = "team"
    service: str = "claude-server"
    environment: str = "dev"
    tags: Optional[Tuple[Tuple[str, str], ...]] = None

    @property
    def secret_reference(self) -> Optional[SecretReference]:
        if self.ssm_password_parameter_name:
            return SecretReference("ssm", self.ssm_password_parameter_name)
        if self.code_server_password:
            return SecretReference("inline", self.code_server_password)
        return None

    @property
    def tag_map(self) -> Dict[str, str]:
        return dict(self.tags or ())


REQUIRED_KEYS = ["region", "domain", "email", "key_pair_name", "instance_type", "volume_size"]

_BOOL_FIELDS = {"use_elastic_ip", "enable_ssh_password_auth"}
_STR_FIELDS = {
    "region", "domain", "email", "key_pair_name", "instance_type", "hosted_zone_id",
    "code_server_password", "ssm_password_parameter_name", "team", "service", "environment",
}


def to_snake_case(name: str) -> str:
    return re.sub(r'(?<!^)(?=[A-Z])', '_', name).lower()


def _type_error(field_name: str, expected: str, value: Any) -> ConfigValidationError:
    return ConfigValidationError(ConfigError(
        field=field_name,
        rule="type",
        message=f"{field_name} must be {expected}, got: {value!r}",
    ))


def _coerce(field_name: str, value: Any) -> Any:
    if value is None:
        return None
    if field_name in _BOOL_FIELDS:
        if not isinstance(value, bool):
            raise _type_error(field_name, "a boolean", value)
        return value
    if field_name in _STR_FIELDS:
        if not isinstance(value, str):
            raise _type_error(field_name, "a string", value)
        return value
    if field_name == "volume_size":
        # bool is an int subclass; "true" is not a size
        if isinstance(value, bool) or not isinstance(value, int):
            raise _type_error(field_name, "an integer", value)
        return value
    if field_name == "additional_ssh_public_keys":
        if not isinstance(value, list) or not all(isinstance(k, str) for k in value):
            raise _type_error(field_name, "a list of strings", value)
        return tuple(value)
    if field_name == "tags":
        if not isinstance(value, dict):
            raise _type_error(field_name, "a mapping", value)
        return tuple(sorted((str(k), str(v)) for k, v in value.items()))
    return value


def from_dict(config_data: Dict[str, Any]) -> DeploymentConfig:
    """Map a raw configuration mapping onto a DeploymentConfig."""
    if not isinstance(config_data, dict):
        raise _type_error("config", "a mapping", config_data)

    known = {f.name for f in fields(DeploymentConfig)}
    kwargs: Dict[str, Any] = {}
    for key, value in config_data.items():
        field_name = to_snake_case(key)
        if field_name not in known:
            raise ConfigValidationError(ConfigError(
                field=key,
                rule="unknown",
                message=f"Unknown configuration key: {key}",
            ))
        coerced = _coerce(field_name, value)
        if coerced is not None:
            kwargs[field_name] = coerced

    for key in REQUIRED_KEYS:
        if key not in kwargs:
            raise ConfigValidationError(ConfigError(
                field=key,
                rule="required",
                message=f"Missing required configuration key: {key}",
            ))

    return DeploymentConfig(**kwargs)


def load_config(file_path: str) -> DeploymentConfig:
    """Load YAML configuration from the given file path."""
    with open(file_path, "r") as file:
        config_data = yaml.safe_load(file)
    return from_dict(config_data or {})
