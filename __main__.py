import pulumi
from awsclassic import AWSResourceBuilder
from composer import compose, load_boot_script_template
from config import ConfigValidationError, load_config
from validation import validate_config

DEFAULT_CONFIG_FILE = "config.yaml"

def main():
    # Load YAML configuration; `pulumi config set configFile <path>` points elsewhere.
    config_file = pulumi.Config().get("configFile") or DEFAULT_CONFIG_FILE

    try:
        deployment_config = load_config(config_file)
        deployment_config = validate_config(deployment_config).unwrap()
    except ConfigValidationError as e:
        pulumi.log.error(f"Invalid configuration in '{config_file}' ({e.error.field}): {e}")
        raise

    try:
        description = compose(deployment_config, load_boot_script_template())
    except Exception as e:
        pulumi.log.error(f"Failed to compose the dev server stack: {e}")
        raise

    builder = AWSResourceBuilder(deployment_config)
    try:
        builder.build(description)
    except Exception as e:
        pulumi.log.error(f"Failed during resource build: {e}")
        raise

    builder.export_outputs(description)

    if not description.dns_auto_configured:
        pulumi.log.warn(f"DNS configuration required (manual setup in Route 53): {description.dns_instruction}")

if __name__ == "__main__":
    main()
