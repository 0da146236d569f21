import pulumi
import inspect
import pulumi_aws as aws
from typing import Any, Dict

from composer import StackDescription
from config import DeploymentConfig

# Consolidated list of common AWS region abbreviations
AWS_REGION_ABBREVIATIONS = {
    "af-south-1": "afs1",
    "ap-east-1": "ape1",
    "ap-northeast-1": "apne1",
    "ap-northeast-2": "apne2",
    "ap-northeast-3": "apne3",
    "ap-south-1": "aps1",
    "ap-southeast-1": "apse1",
    "ap-southeast-2": "apse2",
    "ca-central-1": "cac1",
    "eu-central-1": "euc1",
    "eu-north-1": "eun1",
    "eu-south-1": "eus1",
    "eu-west-1": "euw1",
    "eu-west-2": "euw2",
    "eu-west-3": "euw3",
    "me-south-1": "mes1",
    "sa-east-1": "sae1",
    "us-east-1": "use1",
    "us-east-2": "use2",
    "us-west-1": "usw1",
    "us-west-2": "usw2",
}

def resolve_value(value: Any, resources: Dict[str, Any]) -> Any:
    if isinstance(value, dict):
        if len(value) == 1:
            (key, inner), = value.items()
            if key == "fn::concat":
                return pulumi.Output.concat(*[resolve_value(part, resources) for part in inner])
            if key == "fn::toJSON":
                return pulumi.Output.json_dumps(resolve_value(inner, resources))
            if key == "fn::secret":
                return pulumi.Output.secret(resolve_value(inner, resources))
        return {k: resolve_value(v, resources) for k, v in value.items()}
    elif isinstance(value, list):
        return [resolve_value(item, resources) for item in value]
    elif isinstance(value, str):
        if value.startswith("ref:"):
            ref_text = value[4:]
            if "." in ref_text:
                ref_res, ref_attr = ref_text.split(".", 1)
            else:
                ref_res, ref_attr = ref_text, "id"
            if ref_res not in resources:
                raise ValueError(f"Referenced resource '{ref_res}' not found.")
            resource_obj = resources[ref_res]
            attr_val = getattr(resource_obj, ref_attr, None)
            if attr_val is None:
                raise ValueError(f"Attribute '{ref_attr}' not found on resource '{ref_res}'")
            return attr_val
        else:
            return value
    else:
        return value

def _resolve_symbol(path: str) -> Any:
    """Find "ec2.Instance" or "get_caller_identity" in the pulumi_aws package."""
    if "." in path:
        module_name, symbol_name = path.rsplit(".", 1)
        module = getattr(aws, module_name, None)
        if module is None:
            raise ValueError(f"AWS module '{module_name}' not found.")
    else:
        module, symbol_name = aws, path
    symbol = getattr(module, symbol_name, None)
    if symbol is None:
        raise ValueError(f"'{symbol_name}' not found in AWS module '{path}'.")
    return module, symbol

class AWSResourceBuilder:
    def __init__(self, config: DeploymentConfig):
        self.config = config
        self.resources: Dict[str, Any] = {}
        self.provider = aws.Provider(self.generate_resource_name("provider"), region=config.region)

    def get_abbreviation(self, region: str) -> str:
        return AWS_REGION_ABBREVIATIONS.get(region.lower(), region.replace("-", "").lower())

    def generate_resource_name(self, base_name: str) -> str:
        team = self.config.team.strip().lower()
        service = self.config.service.strip().lower()
        env = self.config.environment.strip().lower()
        reg_abbr = self.get_abbreviation(self.config.region)
        return f"{team}-{service}-{env}-{reg_abbr}-{base_name.replace('_', '-')}".lower()

    def resolve(self, value: Any) -> Any:
        return resolve_value(value, self.resources)

    def resolve_args(self, args: dict) -> dict:
        return {key: self.resolve(value) for key, value in args.items()}

    def _apply_common_parameters(self, name: str, resolved_args: dict, init_sig: inspect.Signature) -> dict:
        # Most AWS resources take 'tags'; the ones that don't (associations, attachments) get none.
        if "tags" in init_sig.parameters:
            tags = {"Name": self.generate_resource_name(name), **self.config.tag_map}
            tags.update(resolved_args.get("tags") or {})
            resolved_args["tags"] = tags
        else:
            resolved_args.pop("tags", None)
        return resolved_args

    def lookup(self, name: str, function: str, args: dict) -> Any:
        _, get_func = _resolve_symbol(function)
        result = get_func(**self.resolve_args(args), opts=pulumi.InvokeOptions(provider=self.provider))
        self.resources[name] = result
        pulumi.log.info(f"Looked up '{name}' via '{function}' with {dict(args)}")
        return result

    def create(self, name: str, resource_type: str, args: dict) -> pulumi.CustomResource:
        module, ResourceClass = _resolve_symbol(resource_type)
        class_name = resource_type.rsplit(".", 1)[-1]
        # Generated resource classes hide their parameters behind overloads; the Args class does not.
        args_class = getattr(module, f"{class_name}Args", None)
        init_sig = inspect.signature(args_class.__init__ if args_class else ResourceClass.__init__)

        resolved_args = self.resolve_args(dict(args))
        resolved_args = self._apply_common_parameters(name, resolved_args, init_sig)
        pulumi_name = self.generate_resource_name(name)
        resource_instance = ResourceClass(
            pulumi_name,
            **resolved_args,
            opts=pulumi.ResourceOptions(provider=self.provider),
        )
        self.resources[name] = resource_instance
        pulumi.log.info(f"Created resource: {pulumi_name} ({resource_type})")
        return resource_instance

    def build(self, description: StackDescription):
        for lookup in description.lookups:
            self.lookup(lookup.name, lookup.function, lookup.args)
        for resource in description.resources:
            self.create(resource.name, resource.type, resource.args)

    def export_outputs(self, description: StackDescription):
        for output in description.outputs:
            pulumi.export(output.name, self.resolve(output.value))
