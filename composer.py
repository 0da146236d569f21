"""
Builds the declarative description of the dev server stack.

compose() is a pure function: it never touches Pulumi or AWS. Resources are described
the same way the YAML-driven builders describe them (name, type, args) and values that
depend on another resource are written as "ref:<resource>.<attribute>" strings, or as
one of the small fn:: forms below, for AWSResourceBuilder to resolve:

    {"fn::concat": [part, ...]}   string concatenation of resolved parts
    {"fn::toJSON": value}         JSON document of a resolved value
    {"fn::secret": value}         value marked as a Pulumi secret
"""

import json
import os
import re
import shlex
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, List, Mapping, Tuple

from config import DeploymentConfig

BOOT_SCRIPT_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "scripts", "init.sh")

ANY_IPV4 = "0.0.0.0/0"
DNS_RECORD_TTL = 300
ROOT_VOLUME_TYPE = "gp3"
SSH_USER = "ec2-user"
SSM_MANAGED_INSTANCE_POLICY_ARN = "arn:aws:iam::aws:policy/AmazonSSMManagedInstanceCore"
AL2023_AMI_PARAMETER = "/aws/service/ami-amazon-linux-latest/al2023-ami-kernel-default-{arch}"

# (port, description); all open to any IPv4 source
INGRESS_PORTS = [
    (443, "HTTPS access for code-server"),
    (80, "HTTP for Lets Encrypt validation"),
    (22, "SSH access"),
]

PLACEHOLDER_PATTERN = re.compile(r"__[A-Z][A-Z0-9_]*__")
INSTANCE_CLASS_PATTERN = re.compile(r"^([a-z]+)(\d+)([a-z-]*)\.")


@dataclass(frozen=True)
class Lookup:
    name: str
    function: str
    args: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "args", MappingProxyType(dict(self.args)))


@dataclass(frozen=True)
class AWSResource:
    """One resource entry. args is a read-only view; nested lists and dicts inside it are not copied."""

    name: str
    type: str
    args: Mapping[str, Any]

    def __post_init__(self):
        object.__setattr__(self, "args", MappingProxyType(dict(self.args)))


@dataclass(frozen=True)
class StackOutput:
    name: str
    value: Any


@dataclass(frozen=True)
class StackDescription:
    lookups: Tuple[Lookup, ...]
    resources: Tuple[AWSResource, ...]
    outputs: Tuple[StackOutput, ...]
    user_data: str
    dns_auto_configured: bool
    dns_instruction: str

    def resources_of_type(self, resource_type: str) -> List[AWSResource]:
        return [r for r in self.resources if r.type == resource_type]

    def resource(self, name: str) -> AWSResource:
        for r in self.resources:
            if r.name == name:
                return r
        raise KeyError(name)

    def output(self, name: str) -> StackOutput:
        for o in self.outputs:
            if o.name == name:
                return o
        raise KeyError(name)


def load_boot_script_template(path: str = BOOT_SCRIPT_PATH) -> str:
    # scripts/ is not installed with the modules; Pulumi runs the program from the project directory.
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Boot script template not found at {path}; run from the project directory")
    with open(path, "r") as file:
        return file.read()


def render_boot_script(template: str, cfg: DeploymentConfig) -> str:
    """Substitute the configuration into the boot script template.

    Domain, email, region and the password-auth flag are validated to shell-safe
    characters and are inserted verbatim (they also appear inside quoted heredocs).
    The password, the parameter name and the key list are inserted as shell words.
    """
    secret = cfg.secret_reference
    ssm_parameter = secret.value if secret is not None and secret.is_ssm else ""
    inline_password = secret.value if secret is not None and not secret.is_ssm else ""

    replacements = {
        "__DOMAIN__": cfg.domain,
        "__EMAIL__": cfg.email,
        "__AWS_REGION__": cfg.region,
        "__ENABLE_SSH_PASSWORD_AUTH__": "true" if cfg.enable_ssh_password_auth else "false",
        "__SSM_PASSWORD_PARAMETER__": shlex.quote(ssm_parameter),
        "__CODE_SERVER_PASSWORD__": shlex.quote(inline_password),
        "__ADDITIONAL_SSH_KEYS__": shlex.quote("\n".join(cfg.additional_ssh_public_keys)),
    }
    unknown = sorted({token for token in PLACEHOLDER_PATTERN.findall(template) if token not in replacements})
    if unknown:
        raise ValueError(f"Boot script template has unknown placeholders: {', '.join(unknown)}")

    # Single pass, so substituted values are never rescanned for placeholders.
    return PLACEHOLDER_PATTERN.sub(lambda m: replacements[m.group(0)], template)


def instance_architecture(instance_type: str) -> str:
    """Return "arm64" for Graviton instance classes (t4g, m7gd, c6gn, a1, ...), else "x86_64"."""
    m = INSTANCE_CLASS_PATTERN.match(instance_type.lower())
    if not m:
        return "x86_64"
    family, _, attributes = m.groups()
    if family == "a" or "g" in attributes:
        return "arm64"
    return "x86_64"


def _security_group() -> AWSResource:
    return AWSResource(
        name="security_group",
        type="ec2.SecurityGroup",
        args={
            "description": "Security group for remote dev server",
            "vpc_id": "ref:default_vpc.id",
            "ingress": [
                {
                    "protocol": "tcp",
                    "from_port": port,
                    "to_port": port,
                    "cidr_blocks": [ANY_IPV4],
                    "description": description,
                }
                for port, description in INGRESS_PORTS
            ],
            "egress": [
                {"protocol": "-1", "from_port": 0, "to_port": 0, "cidr_blocks": [ANY_IPV4]},
            ],
        },
    )


def _iam_resources(cfg: DeploymentConfig) -> List[AWSResource]:
    assume_role_policy = json.dumps({
        "Version": "2012-10-17",
        "Statement": [{
            "Effect": "Allow",
            "Principal": {"Service": "ec2.amazonaws.com"},
            "Action": "sts:AssumeRole",
        }],
    })
    resources = [
        AWSResource(
            name="instance_role",
            type="iam.Role",
            args={"assume_role_policy": assume_role_policy},
        ),
        # Session Manager access from the console as a fallback to SSH
        AWSResource(
            name="ssm_core_attachment",
            type="iam.RolePolicyAttachment",
            args={"role": "ref:instance_role.name", "policy_arn": SSM_MANAGED_INSTANCE_POLICY_ARN},
        ),
    ]

    secret = cfg.secret_reference
    if secret is not None and secret.is_ssm:
        parameter_arn = {"fn::concat": [
            "arn:aws:ssm:", cfg.region, ":", "ref:caller.account_id", ":parameter", secret.value,
        ]}
        resources.append(AWSResource(
            name="password_parameter_read",
            type="iam.RolePolicy",
            args={
                "role": "ref:instance_role.id",
                "policy": {"fn::toJSON": {
                    "Version": "2012-10-17",
                    "Statement": [{
                        "Effect": "Allow",
                        "Action": [
                            "ssm:DescribeParameters",
                            "ssm:GetParameter",
                            "ssm:GetParameters",
                            "ssm:GetParameterHistory",
                        ],
                        "Resource": parameter_arn,
                    }],
                }},
            },
        ))

    resources.append(AWSResource(
        name="instance_profile",
        type="iam.InstanceProfile",
        args={"role": "ref:instance_role.name"},
    ))
    return resources


def _instance(cfg: DeploymentConfig, user_data: str) -> AWSResource:
    secret = cfg.secret_reference
    inline_secret = secret is not None and not secret.is_ssm
    return AWSResource(
        name="instance",
        type="ec2.Instance",
        args={
            "ami": "ref:ami.value",
            "instance_type": cfg.instance_type,
            "key_name": cfg.key_pair_name,
            "iam_instance_profile": "ref:instance_profile.name",
            "vpc_security_group_ids": ["ref:security_group.id"],
            "user_data": {"fn::secret": user_data} if inline_secret else user_data,
            "root_block_device": {
                "volume_size": cfg.volume_size,
                "volume_type": ROOT_VOLUME_TYPE,
            },
        },
    )


def compose(cfg: DeploymentConfig, boot_script_template: str) -> StackDescription:
    """Describe every resource and output of the dev server stack for a validated config."""
    user_data = render_boot_script(boot_script_template, cfg)

    lookups = (
        Lookup(name="caller", function="get_caller_identity"),
        Lookup(name="default_vpc", function="ec2.get_vpc", args={"default": True}),
        Lookup(
            name="ami",
            function="ssm.get_parameter",
            args={"name": AL2023_AMI_PARAMETER.format(arch=instance_architecture(cfg.instance_type))},
        ),
    )

    resources: List[AWSResource] = [_security_group()]
    resources.extend(_iam_resources(cfg))
    resources.append(_instance(cfg, user_data))

    public_ip = "ref:instance.public_ip"
    dns_auto_configured = False

    if cfg.use_elastic_ip:
        resources.append(AWSResource(name="static_ip", type="ec2.Eip", args={"domain": "vpc"}))
        resources.append(AWSResource(
            name="static_ip_association",
            type="ec2.EipAssociation",
            args={"allocation_id": "ref:static_ip.allocation_id", "instance_id": "ref:instance.id"},
        ))
        public_ip = "ref:static_ip.public_ip"

        if cfg.hosted_zone_id:
            resources.append(AWSResource(
                name="dns_record",
                type="route53.Record",
                args={
                    "zone_id": cfg.hosted_zone_id,
                    "name": cfg.domain,
                    "type": "A",
                    "ttl": DNS_RECORD_TTL,
                    "records": ["ref:static_ip.public_ip"],
                },
            ))
            dns_auto_configured = True

    if dns_auto_configured:
        dns_instruction = f"DNS A record created automatically for {cfg.domain}"
    else:
        dns_instruction = f"Create A record: {cfg.domain} -> <PublicIP>"

    secret = cfg.secret_reference
    if secret is not None and secret.is_ssm:
        password_location = f"SSM Parameter Store: {secret.value}"
    else:
        password_location = "Inline in deployment configuration (codeServerPassword)"

    outputs = (
        StackOutput("InstanceId", "ref:instance.id"),
        StackOutput("PublicIP", public_ip),
        StackOutput("AccessURL", f"https://{cfg.domain}"),
        StackOutput("SSHCommand", f"ssh {SSH_USER}@{cfg.domain}"),
        StackOutput("DNSSetup", dns_instruction),
        StackOutput("PasswordLocation", password_location),
    )

    return StackDescription(
        lookups=lookups,
        resources=tuple(resources),
        outputs=outputs,
        user_data=user_data,
        dns_auto_configured=dns_auto_configured,
        dns_instruction=dns_instruction,
    )
