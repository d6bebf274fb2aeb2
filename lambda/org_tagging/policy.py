"""
Tag policy model and merge rules.

A policy is an ordered set of tag rules. Rules are stored in a DynamoDB table;
each defines a required tag key and optionally which values it may carry.
"""

import logging
import re
from dataclasses import dataclass

import boto3

from .errors import call_with_retry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TagRule:
    key: str
    allowed_values: tuple[str, ...] = ()
    pattern: str | None = None
    resource_types: tuple[str, ...] = ()
    default_value: str | None = None
    rule_id: str | None = None

    def allows(self, value: str) -> bool:
        """Empty allowed_values and no pattern means any value is OK."""
        if self.allowed_values and value not in self.allowed_values:
            return False
        if self.pattern and not re.fullmatch(self.pattern, value or ""):
            return False
        return True

    def applies_to(self, resource_type: str | None) -> bool:
        return not self.resource_types or resource_type is None or resource_type in self.resource_types

    @classmethod
    def from_item(cls, item: dict) -> "TagRule":
        """Build a rule from a rules-table item (camelCase attribute names)."""
        return cls(
            key=item["tagKey"],
            allowed_values=tuple(item.get("allowedValues") or ()),
            pattern=item.get("pattern") or None,
            resource_types=tuple(item.get("resourceTypes") or ()),
            default_value=item.get("defaultValue") or None,
            rule_id=item.get("ruleId", item["tagKey"]),
        )


@dataclass(frozen=True)
class TagPolicy:
    rules: tuple[TagRule, ...] = ()
    enforce_values: bool = False

    @property
    def required_keys(self) -> list[str]:
        keys = []
        for rule in self.rules:
            if rule.key not in keys:
                keys.append(rule.key)
        return keys

    def rule_for(self, key: str) -> TagRule | None:
        for rule in self.rules:
            if rule.key == key:
                return rule
        return None

    def for_resource_type(self, resource_type: str | None) -> "TagPolicy":
        """Policy restricted to rules that apply to the given resource type."""
        return TagPolicy(
            rules=tuple(r for r in self.rules if r.applies_to(resource_type)),
            enforce_values=self.enforce_values,
        )

    def missing_keys(self, current_tags: dict) -> set[str]:
        return {key for key in self.required_keys if key not in current_tags}

    def violations(self, current_tags: dict) -> list[str]:
        """Missing keys, plus keys with disallowed values when enforce_values is set."""
        violated = []
        for rule in self.rules:
            if rule.key in violated:
                continue
            if rule.key not in current_tags:
                violated.append(rule.key)
            elif self.enforce_values and not rule.allows(current_tags[rule.key]):
                violated.append(rule.key)
        return violated

    def invalid_values(self, current_tags: dict) -> list[dict]:
        """Detail of present keys whose value fails the rule."""
        invalid = []
        for rule in self.rules:
            if rule.key in current_tags and not rule.allows(current_tags[rule.key]):
                invalid.append({
                    "tagKey": rule.key,
                    "currentValue": current_tags[rule.key],
                    "allowedValues": list(rule.allowed_values),
                })
        return invalid

    @classmethod
    def from_rules(cls, items: list[dict], enforce_values: bool = False) -> "TagPolicy":
        rules = [TagRule.from_item(item) for item in items if item.get("enabled", True)]
        return cls(rules=tuple(rules), enforce_values=enforce_values)


def merge_tags(*layers: dict) -> dict:
    """Merge tag maps in order; later layers win on key conflict."""
    merged = {}
    for layer in layers:
        merged.update(layer or {})
    return merged


def inherited_subset(parent_effective: dict, child_direct: dict) -> dict:
    """Parent tags the child does not own directly."""
    return {k: v for k, v in parent_effective.items() if k not in child_direct}


def tags_to_dict(tags: list | None) -> dict:
    """Convert the AWS [{"Key": .., "Value": ..}] shape into a plain map."""
    return {tag.get("Key"): tag.get("Value") for tag in tags or []}


def load_tag_policy(
    table_name: str,
    region: str,
    enforce_values: bool = False,
    dynamodb=None,
    retry_attempts: int = 4,
) -> TagPolicy:
    """
    Load enabled tag rules from DynamoDB.

    Args:
        table_name: Rules table name
        region: AWS region of the table
        enforce_values: Whether value mismatches count as violations
        dynamodb: Optional boto3 DynamoDB resource (injected in tests)
        retry_attempts: Attempts for throttled scans

    Returns:
        TagPolicy holding every enabled rule, in table scan order
    """
    logger.info(f"Loading tag rules from {table_name}")

    dynamodb = dynamodb or boto3.resource("dynamodb", region_name=region)
    table = dynamodb.Table(table_name)

    items = []
    scan_kwargs = {
        "FilterExpression": "enabled = :enabled",
        "ExpressionAttributeValues": {":enabled": True},
    }
    while True:
        response = call_with_retry(table.scan, attempts=retry_attempts, target=table_name, **scan_kwargs)
        items.extend(response.get("Items", []))
        last_key = response.get("LastEvaluatedKey")
        if not last_key:
            break
        scan_kwargs["ExclusiveStartKey"] = last_key

    policy = TagPolicy.from_rules(items, enforce_values=enforce_values)
    logger.info(f"Loaded {len(policy.rules)} tag rules, required keys: {policy.required_keys}")
    return policy
