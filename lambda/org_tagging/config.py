"""
Runtime configuration read from the Lambda environment.
"""

import os
from dataclasses import dataclass, field


def _int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {raw!r}")


def _float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number, got {raw!r}")


def _list(name: str, default: list[str]) -> list[str]:
    raw = os.environ.get(name, "")
    items = [item.strip() for item in raw.split(",") if item.strip()]
    return items or list(default)


def _percentage(name: str, default: int) -> int:
    value = _int(name, default)
    if not 0 <= value <= 100:
        raise ValueError(f"Environment variable {name} must be between 0 and 100, got {value}")
    return value


def _actor() -> str | None:
    """Suffix of the caller ARN our own Organizations writes appear under."""
    if os.environ.get("PROPAGATION_ACTOR"):
        return os.environ["PROPAGATION_ACTOR"]
    function_name = os.environ.get("AWS_LAMBDA_FUNCTION_NAME")
    return f"/{function_name}" if function_name else None


@dataclass(frozen=True)
class Settings:
    region: str = "us-east-1"
    rules_table_name: str = "TagComplianceRules"
    enforce_tag_values: bool = False
    cross_account_role_name: str = "OrgTaggingRole"
    target_regions: list[str] = field(default_factory=lambda: ["us-east-1"])
    propagation_marker: str = "org-tag-propagator"
    propagation_actor: str | None = None
    propagation_workers: int = 8
    max_hierarchy_depth: int = 6
    retry_max_attempts: int = 4
    retry_base_delay: float = 0.5
    stack_set_name: str = "org-tagging-role"
    stack_set_permission_model: str = "SERVICE_MANAGED"
    failure_tolerance_percentage: int = 10
    max_concurrent_percentage: int = 25
    deployment_timeout_seconds: int = 600
    poll_interval_seconds: float = 10.0
    sns_topic_arn: str | None = None
    taggable_resource_types: list[str] | None = None

    @classmethod
    def from_env(cls) -> "Settings":
        region = os.environ.get("AWS_REGION", "us-east-1")
        taggable = _list("TAGGABLE_RESOURCE_TYPES", [])
        return cls(
            region=region,
            rules_table_name=os.environ.get("RULES_TABLE_NAME", "TagComplianceRules"),
            enforce_tag_values=os.environ.get("ENFORCE_TAG_VALUES", "false").lower() in ("1", "true", "yes"),
            cross_account_role_name=os.environ.get("CROSS_ACCOUNT_ROLE_NAME", "OrgTaggingRole"),
            target_regions=_list("TARGET_REGIONS", [region]),
            propagation_marker=os.environ.get("PROPAGATION_MARKER", "org-tag-propagator"),
            propagation_actor=_actor(),
            propagation_workers=max(1, _int("PROPAGATION_WORKERS", 8)),
            max_hierarchy_depth=max(1, _int("MAX_HIERARCHY_DEPTH", 6)),
            retry_max_attempts=max(1, _int("RETRY_MAX_ATTEMPTS", 4)),
            retry_base_delay=_float("RETRY_BASE_DELAY", 0.5),
            stack_set_name=os.environ.get("STACK_SET_NAME", "org-tagging-role"),
            stack_set_permission_model=os.environ.get("STACK_SET_PERMISSION_MODEL", "SERVICE_MANAGED"),
            failure_tolerance_percentage=_percentage("FAILURE_TOLERANCE_PERCENTAGE", 10),
            max_concurrent_percentage=_percentage("MAX_CONCURRENT_PERCENTAGE", 25),
            deployment_timeout_seconds=_int("DEPLOYMENT_TIMEOUT_SECONDS", 600),
            poll_interval_seconds=_float("POLL_INTERVAL_SECONDS", 10.0),
            sns_topic_arn=os.environ.get("SNS_TOPIC_ARN") or None,
            taggable_resource_types=taggable or None,
        )
