"""Shared pytest fixtures for all test modules."""

import os

import pytest

from composer import load_boot_script_template
from config import from_dict


PROJECT_ROOT = os.path.normpath(os.path.join(os.path.dirname(__file__), ".."))


def base_config_data():
    """A well-formed configuration as an operator would write it in config.yaml."""
    return {
        "region": "us-east-1",
        "domain": "dev.example.com",
        "useElasticIp": True,
        "ssmPasswordParameterName": "/claude-server/code-server-password",
        "email": "dev@example.com",
        "keyPairName": "dev-key",
        "instanceType": "t4g.small",
        "volumeSize": 30,
    }


@pytest.fixture(scope="session")
def project_root():
    """Absolute path to the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def config_data():
    """Fresh copy of the well-formed raw configuration."""
    return base_config_data()


@pytest.fixture
def make_config():
    """Return a factory building a DeploymentConfig with overridden YAML keys.

    A key overridden with None is removed from the configuration.
    """

    def _make(**overrides):
        data = base_config_data()
        for key, value in overrides.items():
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value
        return from_dict(data)

    return _make


@pytest.fixture(scope="session")
def boot_script_template():
    """Contents of scripts/init.sh."""
    return load_boot_script_template()
