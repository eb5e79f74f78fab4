"""
Terraform variable files for the bundled resource templates.

Each builder maps a validated deployment config onto the variables declared by
the matching template in ``terraform/``. Credentials are never written here;
the executor passes them through the subprocess environment.
"""
import json
import re
import uuid
from typing import Dict, Any, Callable, Optional
from app.modules.deployments.schemas import ResourceKind

IAM_POLICY_BY_PERMISSION = {
    "read-only": "ReadOnlyAccess",
    "power-user": "PowerUserAccess",
    "admin": "AdministratorAccess",
}


def _hcl_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n").replace("${", "$${")
    return f'"{escaped}"'


def render_tfvars(variables: Dict[str, Any]) -> str:
    """Render a flat ``key = value`` variable file. ``None`` values are skipped."""
    lines = []
    for key, value in variables.items():
        if value is None:
            continue
        if isinstance(value, bool):
            rendered = "true" if value else "false"
        elif isinstance(value, (int, float)):
            rendered = str(value)
        elif isinstance(value, str):
            rendered = _hcl_string(value)
        elif isinstance(value, (list, tuple, dict)):
            rendered = json.dumps(value)
        else:
            rendered = _hcl_string(str(value))
        lines.append(f"{key} = {rendered}")
    return "\n".join(lines) + "\n"


def sanitize_bucket_name(name: str) -> str:
    return re.sub(r"[^a-z0-9-]", "-", name.lower())


def ec2_variables(config: Dict[str, Any], region: str, user_id: Optional[str]) -> Dict[str, Any]:
    security_group_ids = config.get("security_group_ids") or []
    iam_role = config.get("iam_role")
    return {
        "aws_region": config.get("region") or region,
        "deployment_id": str(uuid.uuid4()),
        "created_by": user_id or "system",
        "environment": "production",
        "instance_name": config["instance_name"],
        "instance_type": config["instance_type"],
        "ami_id": config["ami_id"],
        "key_name": config["key_name"],
        "vpc_id": config.get("vpc_id") or "",
        "subnet_id": config.get("subnet_id") or "",
        "associate_public_ip": config.get("assign_public_ip") is not False,
        "create_security_group": len(security_group_ids) == 0,
        "security_group_ids": list(security_group_ids),
        "security_group_name": f"{config['instance_name']}-sg",
        "allowed_ssh_cidrs": ["0.0.0.0/0"],
        "root_volume_size": config.get("root_volume_size") or 20,
        "root_volume_type": config.get("root_volume_type") or "gp3",
        "enable_ebs_encryption": config.get("enable_ebs_encryption") is not False,
        "delete_on_termination": True,
        "create_iam_instance_profile": bool(iam_role),
        "iam_role_policies": [f"arn:aws:iam::aws:policy/{iam_role}"] if iam_role else [],
        "user_data": config.get("user_data") or "",
        "enable_detailed_monitoring": bool(config.get("enable_monitoring")),
        "additional_tags": {
            "ShutdownBehavior": config.get("shutdown_behavior") or "stop",
            "AvailabilityZone": config.get("availability_zone") or "auto",
        },
    }


def s3_variables(config: Dict[str, Any], region: str, user_id: Optional[str]) -> Dict[str, Any]:
    tags = {}
    for tag in config.get("tags") or []:
        if tag.get("key") and tag.get("value"):
            tags[tag["key"]] = tag["value"]
    is_public = bool(config.get("is_public"))
    return {
        "aws_region": config.get("region") or region,
        "bucket_name": sanitize_bucket_name(config["bucket_name"]),
        "versioning_enabled": bool(config.get("versioning")),
        "encryption_enabled": config.get("encryption") is not False,
        "encryption_type": config.get("encryption_type") or "SSE-S3",
        "kms_key_id": config.get("kms_key_id") or "",
        "bucket_key_enabled": True,
        "is_public": is_public,
        "block_public_acls": not is_public,
        "block_public_policy": not is_public,
        "ignore_public_acls": not is_public,
        "restrict_public_buckets": not is_public,
        "static_website_hosting": bool(config.get("static_website_hosting")),
        "index_document": config.get("index_document") or "index.html",
        "error_document": config.get("error_document") or "error.html",
        "tags": tags,
    }


def iam_variables(config: Dict[str, Any], region: str, user_id: Optional[str]) -> Dict[str, Any]:
    policy = IAM_POLICY_BY_PERMISSION[config["permissions"]]
    return {
        "aws_region": config.get("region") or region,
        "deployment_id": str(uuid.uuid4()),
        "created_by": user_id or "system",
        "environment": "production",
        "username": config["username"],
        "policy_arn": f"arn:aws:iam::aws:policy/{policy}",
        "additional_tags": {},
    }


def security_group_rule_variables(region: str, security_group_id: str, port: int, description: str) -> Dict[str, Any]:
    return {
        "aws_region": region,
        "security_group_id": security_group_id,
        "port": int(port),
        "description": description,
    }


VARIABLE_BUILDERS: Dict[ResourceKind, Callable[[Dict[str, Any], str, Optional[str]], Dict[str, Any]]] = {
    ResourceKind.EC2: ec2_variables,
    ResourceKind.S3: s3_variables,
    ResourceKind.IAM: iam_variables,
}

missing = set(ResourceKind) - set(VARIABLE_BUILDERS)
if missing:
    raise RuntimeError(f"No tfvars builder for resource kinds: {sorted(k.value for k in missing)}")
del missing


def build_variables(kind: ResourceKind, config: Dict[str, Any], region: str, user_id: Optional[str] = None) -> Dict[str, Any]:
    return VARIABLE_BUILDERS[ResourceKind(kind)](config, region, user_id)
