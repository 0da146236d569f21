"""Unit tests for composer module: resource graph decisions, outputs and boot script rendering."""

import json
import os
import shlex

import pytest

from composer import (
    BOOT_SCRIPT_PATH,
    AWSResource,
    compose,
    instance_architecture,
    load_boot_script_template,
    render_boot_script,
)


def _types(description):
    return [r.type for r in description.resources]


# ── static address and DNS ───────────────────────────────────────


@pytest.mark.parametrize("zone", [None, "Z0123456789ABC"])
def test_no_elastic_ip_means_no_static_address_and_no_dns(make_config, boot_script_template, zone):
    description = compose(make_config(useElasticIp=False, hostedZoneId=zone), boot_script_template)

    assert description.resources_of_type("ec2.Eip") == []
    assert description.resources_of_type("ec2.EipAssociation") == []
    assert description.resources_of_type("route53.Record") == []
    assert description.dns_auto_configured is False
    assert description.output("PublicIP").value == "ref:instance.public_ip"
    assert description.output("DNSSetup").value == "Create A record: dev.example.com -> <PublicIP>"


def test_elastic_ip_with_zone_creates_one_record_on_static_address(make_config, boot_script_template):
    description = compose(make_config(hostedZoneId="Z0123456789ABC"), boot_script_template)

    records = description.resources_of_type("route53.Record")
    assert len(records) == 1
    record = records[0].args
    assert record["zone_id"] == "Z0123456789ABC"
    assert record["name"] == "dev.example.com"
    assert record["type"] == "A"
    assert record["ttl"] == 300
    assert record["records"] == ["ref:static_ip.public_ip"]

    assert description.dns_auto_configured is True
    assert description.output("DNSSetup").value == "DNS A record created automatically for dev.example.com"
    assert description.output("PublicIP").value == "ref:static_ip.public_ip"


def test_elastic_ip_without_zone_emits_manual_dns_instruction(make_config, boot_script_template):
    # {domain: dev.example.com, volumeSize: 30, hostedZoneId: absent, useElasticIp: true}
    description = compose(make_config(), boot_script_template)

    assert len(description.resources_of_type("ec2.Eip")) == 1
    assert len(description.resources_of_type("ec2.Instance")) == 1
    assert description.resources_of_type("route53.Record") == []
    assert description.dns_auto_configured is False
    assert "dev.example.com" in description.dns_instruction
    assert description.output("DNSSetup").value == description.dns_instruction


def test_static_address_bound_to_instance(make_config, boot_script_template):
    description = compose(make_config(), boot_script_template)

    assert description.resource("static_ip").args == {"domain": "vpc"}
    association = description.resource("static_ip_association").args
    assert association == {"allocation_id": "ref:static_ip.allocation_id", "instance_id": "ref:instance.id"}


# ── network and IAM ──────────────────────────────────────────────


def test_security_group_opens_three_ports_to_everyone(make_config, boot_script_template):
    description = compose(make_config(), boot_script_template)
    group = description.resource("security_group").args

    assert group["vpc_id"] == "ref:default_vpc.id"
    assert [(rule["from_port"], rule["to_port"]) for rule in group["ingress"]] == [(443, 443), (80, 80), (22, 22)]
    for rule in group["ingress"]:
        assert rule["protocol"] == "tcp"
        assert rule["cidr_blocks"] == ["0.0.0.0/0"]
    assert group["egress"][0]["protocol"] == "-1"


def test_role_assumed_by_ec2(make_config, boot_script_template):
    description = compose(make_config(), boot_script_template)
    policy = json.loads(description.resource("instance_role").args["assume_role_policy"])

    statement = policy["Statement"][0]
    assert statement["Principal"] == {"Service": "ec2.amazonaws.com"}
    assert statement["Action"] == "sts:AssumeRole"
    assert description.resource("ssm_core_attachment").args["policy_arn"].endswith("AmazonSSMManagedInstanceCore")
    assert description.resource("instance_profile").args == {"role": "ref:instance_role.name"}


def test_ssm_secret_grants_parameter_read(make_config, boot_script_template):
    description = compose(make_config(), boot_script_template)
    policy = description.resource("password_parameter_read").args["policy"]["fn::toJSON"]

    statement = policy["Statement"][0]
    assert "ssm:GetParameter" in statement["Action"]
    assert statement["Resource"] == {"fn::concat": [
        "arn:aws:ssm:", "us-east-1", ":", "ref:caller.account_id", ":parameter",
        "/claude-server/code-server-password",
    ]}
    assert description.output("PasswordLocation").value == "SSM Parameter Store: /claude-server/code-server-password"


def test_inline_secret_has_no_parameter_grant_and_secret_user_data(make_config, boot_script_template):
    cfg = make_config(ssmPasswordParameterName=None, codeServerPassword="a-long-enough-pw")
    description = compose(cfg, boot_script_template)

    assert "iam.RolePolicy" not in _types(description)
    user_data = description.resource("instance").args["user_data"]
    assert user_data == {"fn::secret": description.user_data}


# ── instance ─────────────────────────────────────────────────────


def test_instance_args(make_config, boot_script_template):
    description = compose(make_config(volumeSize=64), boot_script_template)
    args = description.resource("instance").args

    assert args["ami"] == "ref:ami.value"
    assert args["instance_type"] == "t4g.small"
    assert args["key_name"] == "dev-key"
    assert args["iam_instance_profile"] == "ref:instance_profile.name"
    assert args["vpc_security_group_ids"] == ["ref:security_group.id"]
    assert args["root_block_device"] == {"volume_size": 64, "volume_type": "gp3"}
    assert args["user_data"] == description.user_data


def test_resources_declared_before_use(make_config, boot_script_template):
    description = compose(make_config(hostedZoneId="Z0123456789ABC"), boot_script_template)
    names = [r.name for r in description.resources]

    assert names.index("instance_profile") < names.index("instance")
    assert names.index("instance") < names.index("static_ip_association")
    assert names.index("static_ip") < names.index("dns_record")


@pytest.mark.parametrize(
    "instance_type,arch",
    [("t4g.small", "arm64"), ("m7gd.large", "arm64"), ("c6gn.xlarge", "arm64"), ("a1.medium", "arm64"),
     ("g5g.xlarge", "arm64"), ("t3.micro", "x86_64"), ("g5.xlarge", "x86_64"), ("m7i-flex.large", "x86_64")],
)
def test_instance_architecture(instance_type, arch):
    assert instance_architecture(instance_type) == arch


def test_ami_lookup_follows_architecture(make_config, boot_script_template):
    arm = compose(make_config(), boot_script_template)
    x86 = compose(make_config(instanceType="t3.small"), boot_script_template)

    ami = {lookup.name: lookup for lookup in arm.lookups}["ami"]
    assert ami.function == "ssm.get_parameter"
    assert ami.args["name"].endswith("al2023-ami-kernel-default-arm64")
    assert {lookup.name: lookup for lookup in x86.lookups}["ami"].args["name"].endswith("-x86_64")


# ── outputs ──────────────────────────────────────────────────────


def test_outputs(make_config, boot_script_template):
    description = compose(make_config(), boot_script_template)

    assert [o.name for o in description.outputs] == [
        "InstanceId", "PublicIP", "AccessURL", "SSHCommand", "DNSSetup", "PasswordLocation",
    ]
    assert description.output("InstanceId").value == "ref:instance.id"
    assert description.output("AccessURL").value == "https://dev.example.com"
    assert description.output("SSHCommand").value == "ssh ec2-user@dev.example.com"


def test_compose_is_pure(make_config, boot_script_template):
    cfg = make_config(hostedZoneId="Z0123456789ABC")
    assert compose(cfg, boot_script_template) == compose(cfg, boot_script_template)


# ── render_boot_script ───────────────────────────────────────────


def test_render_substitutes_literal_values(make_config, boot_script_template):
    script = render_boot_script(boot_script_template, make_config(region="eu-west-1"))

    assert 'DOMAIN="dev.example.com"' in script
    assert 'EMAIL="dev@example.com"' in script
    assert 'AWS_REGION="eu-west-1"' in script
    assert 'ENABLE_SSH_PASSWORD_AUTH="false"' in script
    assert "server_name dev.example.com;" in script
    assert "/etc/letsencrypt/live/dev.example.com/fullchain.pem" in script
    assert "__" not in script


def test_render_ssm_mode(make_config, boot_script_template):
    script = render_boot_script(boot_script_template, make_config())

    assert "SSM_PASSWORD_PARAMETER=/claude-server/code-server-password\n" in script
    assert "CODE_SERVER_PASSWORD=''\n" in script


def test_render_inline_password_is_shell_quoted(make_config, boot_script_template):
    password = "it's $ecret `pw`"
    cfg = make_config(ssmPasswordParameterName=None, codeServerPassword=password)
    script = render_boot_script(boot_script_template, cfg)

    assert f"CODE_SERVER_PASSWORD={shlex.quote(password)}\n" in script
    assert "SSM_PASSWORD_PARAMETER=''\n" in script


def test_render_password_auth_flag(make_config, boot_script_template):
    script = render_boot_script(boot_script_template, make_config(enableSshPasswordAuth=True))
    assert 'ENABLE_SSH_PASSWORD_AUTH="true"' in script


def test_render_joins_additional_keys_with_newlines(make_config, boot_script_template):
    keys = ["ssh-ed25519 AAAAC3Nza laptop", "ssh-rsa AAAAB3Nza desktop"]
    script = render_boot_script(boot_script_template, make_config(additionalSshPublicKeys=keys))

    assert "ADDITIONAL_KEYS='ssh-ed25519 AAAAC3Nza laptop\nssh-rsa AAAAB3Nza desktop'\n" in script


def test_render_without_keys(make_config, boot_script_template):
    script = render_boot_script(boot_script_template, make_config())
    assert "ADDITIONAL_KEYS=''\n" in script


def test_render_does_not_rescan_substituted_values(make_config):
    cfg = make_config(ssmPasswordParameterName=None, codeServerPassword="pw-with-__DOMAIN__-inside")
    script = render_boot_script("PW=__CODE_SERVER_PASSWORD__\n", cfg)
    assert script == "PW=pw-with-__DOMAIN__-inside\n"


def test_render_rejects_unknown_placeholder(make_config):
    with pytest.raises(ValueError, match="__HOSTNAME__"):
        render_boot_script("HOST=__HOSTNAME__\n", make_config())


# ── description values ───────────────────────────────────────────


def test_resource_args_are_read_only(make_config, boot_script_template):
    description = compose(make_config(), boot_script_template)

    with pytest.raises(TypeError):
        description.resource("instance").args["instance_type"] = "t3.micro"
    with pytest.raises(TypeError):
        description.lookups[0].args["default"] = False


def test_resource_args_are_copied_on_construction():
    args = {"domain": "vpc"}
    resource = AWSResource(name="static_ip", type="ec2.Eip", args=args)
    args["domain"] = "standard"
    assert resource.args["domain"] == "vpc"


def test_boot_script_template_ships_with_the_project(project_root):
    assert BOOT_SCRIPT_PATH == os.path.join(project_root, "scripts", "init.sh")
    assert load_boot_script_template().startswith("#!/bin/bash\n")


def test_missing_boot_script_template(tmp_path):
    with pytest.raises(FileNotFoundError, match="run from the project directory"):
        load_boot_script_template(str(tmp_path / "init.sh"))
