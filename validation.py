"""
Semantic checks for a DeploymentConfig.

validate_config stops at the first violated rule and reports it as a ConfigError
inside the returned ValidationResult; nothing is raised unless the caller asks
for it through ValidationResult.unwrap().
"""

import re
import pulumi_aws as aws
from dataclasses import dataclass
from typing import Callable, List, Optional

from config import ConfigError, ConfigValidationError, DeploymentConfig

MIN_VOLUME_SIZE_GB = 8
MAX_VOLUME_SIZE_GB = 16384
MIN_INLINE_PASSWORD_LENGTH = 12
MAX_DOMAIN_LENGTH = 253
MAX_DOMAIN_LABEL_LENGTH = 63

REGION_PATTERN = re.compile(r"^[a-z]{2}(-[a-z]+)+-\d+$")
DOMAIN_PATTERN = re.compile(
    r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?(\.[a-z0-9]([a-z0-9-]*[a-z0-9])?)*\.[a-z]{2,}$",
    re.IGNORECASE,
)
HOSTED_ZONE_PATTERN = re.compile(r"^Z[A-Z0-9]+$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s.]+$")
INSTANCE_TYPE_PATTERN = re.compile(r"^[a-z][a-z0-9-]*\.[a-z0-9]+$")
SSH_KEY_PATTERN = re.compile(r"^(ssh-rsa|ssh-ed25519|ecdsa-sha2-nistp)")

# Every "class.size" the provider knows, split the same way the instance type is.
KNOWN_INSTANCE_CLASSES = frozenset(t.value.partition(".")[0] for t in aws.ec2.InstanceType)
KNOWN_INSTANCE_SIZES = frozenset(t.value.partition(".")[2] for t in aws.ec2.InstanceType)


@dataclass(frozen=True)
class ValidationResult:
    config: Optional[DeploymentConfig] = None
    error: Optional[ConfigError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> DeploymentConfig:
        if self.error is not None:
            raise ConfigValidationError(self.error)
        return self.config


def _check_region(cfg: DeploymentConfig) -> Optional[ConfigError]:
    if not REGION_PATTERN.fullmatch(cfg.region):
        return ConfigError("region", "format", f'Invalid region: "{cfg.region}". Expected format: us-east-1')
    return None


def _check_domain(cfg: DeploymentConfig) -> Optional[ConfigError]:
    if not cfg.domain or len(cfg.domain) > MAX_DOMAIN_LENGTH or not DOMAIN_PATTERN.fullmatch(cfg.domain):
        return ConfigError(
            "domain", "format",
            f'Invalid domain format: "{cfg.domain}". Expected format: subdomain.domain.tld',
        )
    if any(len(label) > MAX_DOMAIN_LABEL_LENGTH for label in cfg.domain.split(".")):
        return ConfigError(
            "domain", "label",
            f'Invalid domain: "{cfg.domain}". Each label must be at most {MAX_DOMAIN_LABEL_LENGTH} characters',
        )
    return None


def _check_hosted_zone(cfg: DeploymentConfig) -> Optional[ConfigError]:
    # A zone id without useElasticIp is accepted; the composer simply skips DNS.
    if cfg.hosted_zone_id is not None and not HOSTED_ZONE_PATTERN.fullmatch(cfg.hosted_zone_id):
        return ConfigError(
            "hostedZoneId", "prefix",
            f"Invalid hostedZoneId: \"{cfg.hosted_zone_id}\". Must start with 'Z'",
        )
    return None


def _check_secret(cfg: DeploymentConfig) -> Optional[ConfigError]:
    if cfg.code_server_password and cfg.ssm_password_parameter_name:
        return ConfigError(
            "codeServerPassword", "exclusive",
            "Set either codeServerPassword or ssmPasswordParameterName, not both",
        )
    secret = cfg.secret_reference
    if secret is None:
        return ConfigError(
            "ssmPasswordParameterName", "required",
            "A code-server password is required: set ssmPasswordParameterName (recommended) or codeServerPassword",
        )
    if secret.is_ssm:
        if not secret.value.startswith("/"):
            return ConfigError(
                "ssmPasswordParameterName", "prefix",
                'ssmPasswordParameterName must start with "/" (e.g., /claude-server/code-server-password)',
            )
        return None
    if len(secret.value) < MIN_INLINE_PASSWORD_LENGTH:
        return ConfigError(
            "codeServerPassword", "length",
            f"codeServerPassword must be at least {MIN_INLINE_PASSWORD_LENGTH} characters",
        )
    if "\n" in secret.value or "\r" in secret.value:
        return ConfigError("codeServerPassword", "format", "codeServerPassword must be a single line")
    return None


def _check_email(cfg: DeploymentConfig) -> Optional[ConfigError]:
    if not cfg.email or not EMAIL_PATTERN.fullmatch(cfg.email):
        return ConfigError("email", "format", f'Invalid email format: "{cfg.email}"')
    return None


def _check_key_pair(cfg: DeploymentConfig) -> Optional[ConfigError]:
    if not cfg.key_pair_name or cfg.key_pair_name.strip() == "":
        return ConfigError("keyPairName", "required", "keyPairName is required")
    return None


def _check_instance_type(cfg: DeploymentConfig) -> Optional[ConfigError]:
    if not INSTANCE_TYPE_PATTERN.fullmatch(cfg.instance_type):
        return ConfigError(
            "instanceType", "format",
            f'Invalid instanceType format: "{cfg.instance_type}". Expected format: class.size (e.g., t4g.small)',
        )
    instance_class, _, instance_size = cfg.instance_type.partition(".")
    if instance_class not in KNOWN_INSTANCE_CLASSES:
        return ConfigError(
            "instanceType", "class",
            f'Unknown instance class: "{instance_class}". Check AWS EC2 instance types.',
        )
    if instance_size not in KNOWN_INSTANCE_SIZES:
        return ConfigError(
            "instanceType", "size",
            f'Unknown instance size: "{instance_size}". Check AWS EC2 instance types.',
        )
    return None


def _check_volume_size(cfg: DeploymentConfig) -> Optional[ConfigError]:
    if not MIN_VOLUME_SIZE_GB <= cfg.volume_size <= MAX_VOLUME_SIZE_GB:
        return ConfigError(
            "volumeSize", "range",
            f"volumeSize must be between {MIN_VOLUME_SIZE_GB} and {MAX_VOLUME_SIZE_GB} GB, got: {cfg.volume_size}",
        )
    return None


def _check_ssh_keys(cfg: DeploymentConfig) -> Optional[ConfigError]:
    for index, key in enumerate(cfg.additional_ssh_public_keys):
        if not SSH_KEY_PATTERN.match(key) or "\n" in key:
            return ConfigError(
                f"additionalSshPublicKeys[{index}]", "format",
                f"additionalSshPublicKeys[{index}] is not a valid SSH public key. "
                'Expected format: "ssh-rsa AAAA..." or "ssh-ed25519 AAAA..."',
            )
    return None


CHECKS: List[Callable[[DeploymentConfig], Optional[ConfigError]]] = [
    _check_region,
    _check_domain,
    _check_hosted_zone,
    _check_secret,
    _check_email,
    _check_key_pair,
    _check_instance_type,
    _check_volume_size,
    _check_ssh_keys,
]


def validate_config(cfg: DeploymentConfig) -> ValidationResult:
    for check in CHECKS:
        error = check(cfg)
        if error is not None:
            return ValidationResult(error=error)
    return ValidationResult(config=cfg)
