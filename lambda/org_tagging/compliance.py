"""
Compliance evaluator for resource tags.

Checks a resource's tags against the tag policy and reports the verdict to
AWS Config using the result token of the invoking rule evaluation.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

import boto3
from botocore.exceptions import ClientError

from .errors import DeliveryError
from .policy import TagPolicy

logger = logging.getLogger(__name__)

COMPLIANT = "COMPLIANT"
NON_COMPLIANT = "NON_COMPLIANT"
NOT_APPLICABLE = "NOT_APPLICABLE"

# AWS Config annotations are limited to 256 characters
MAX_ANNOTATION_LENGTH = 256

DEFAULT_TAGGABLE_RESOURCE_TYPES = frozenset({
    "AWS::AutoScaling::AutoScalingGroup",
    "AWS::DynamoDB::Table",
    "AWS::EC2::EIP",
    "AWS::EC2::Instance",
    "AWS::EC2::SecurityGroup",
    "AWS::EC2::Subnet",
    "AWS::EC2::Volume",
    "AWS::EC2::VPC",
    "AWS::ElasticLoadBalancingV2::LoadBalancer",
    "AWS::Lambda::Function",
    "AWS::RDS::DBCluster",
    "AWS::RDS::DBInstance",
    "AWS::S3::Bucket",
    "AWS::SNS::Topic",
    "AWS::SQS::Queue",
})


@dataclass
class ComplianceVerdict:
    resource_id: str
    resource_type: str
    verdict: str
    violated_keys: list[str] = field(default_factory=list)
    annotation: str = ""

    def to_dict(self) -> dict:
        return {
            "resource_id": self.resource_id,
            "resource_type": self.resource_type,
            "verdict": self.verdict,
            "violated_keys": list(self.violated_keys),
            "annotation": self.annotation,
        }


class ConfigComplianceSink:
    """Delivers verdicts to AWS Config."""

    def __init__(self, config_client=None, region: str | None = None):
        self.config = config_client or boto3.client("config", region_name=region)

    def put_verdict(self, verdict: ComplianceVerdict, result_token: str) -> None:
        try:
            response = self.config.put_evaluations(
                Evaluations=[
                    {
                        "ComplianceResourceType": verdict.resource_type,
                        "ComplianceResourceId": verdict.resource_id,
                        "ComplianceType": verdict.verdict,
                        "Annotation": verdict.annotation or verdict.verdict,
                        "OrderingTimestamp": datetime.now(tz=timezone.utc),
                    }
                ],
                ResultToken=result_token,
            )
        except ClientError as e:
            raise DeliveryError(f"AWS Config rejected the evaluation: {e}", verdict.resource_id) from e

        if response.get("FailedEvaluations"):
            raise DeliveryError(
                f"AWS Config reported failed evaluations: {response['FailedEvaluations']}",
                verdict.resource_id,
            )


def _annotation(tags: dict, violated: list[str]) -> str:
    missing = [k for k in violated if k not in tags]
    invalid = [k for k in violated if k in tags]
    parts = []
    if missing:
        parts.append(f"Missing required tags: {', '.join(missing)}")
    if invalid:
        parts.append(f"Invalid tag values: {', '.join(invalid)}")
    text = ". ".join(parts)
    if len(text) > MAX_ANNOTATION_LENGTH:
        text = text[:MAX_ANNOTATION_LENGTH - 3] + "..."
    return text


class ComplianceEvaluator:
    def __init__(self, policy: TagPolicy, sink: ConfigComplianceSink | None = None, taggable_types=None):
        self.policy = policy
        self.sink = sink
        self.taggable_types = frozenset(taggable_types) if taggable_types else DEFAULT_TAGGABLE_RESOURCE_TYPES

    def is_taggable(self, resource_type: str) -> bool:
        return resource_type in self.taggable_types

    def evaluate(self, resource_type: str, resource_id: str, tags: dict) -> ComplianceVerdict:
        if not self.is_taggable(resource_type):
            return ComplianceVerdict(
                resource_id=resource_id,
                resource_type=resource_type,
                verdict=NOT_APPLICABLE,
                annotation=f"{resource_type} does not support tags.",
            )

        policy = self.policy.for_resource_type(resource_type)
        violated = policy.violations(tags or {})
        if not violated:
            verdict = ComplianceVerdict(
                resource_id=resource_id,
                resource_type=resource_type,
                verdict=COMPLIANT,
                annotation="Resource is compliant with tagging rules.",
            )
        else:
            verdict = ComplianceVerdict(
                resource_id=resource_id,
                resource_type=resource_type,
                verdict=NON_COMPLIANT,
                violated_keys=violated,
                annotation=_annotation(tags or {}, violated),
            )
        logger.info(f"Compliance verdict for {resource_type} {resource_id}: {verdict.verdict} {verdict.violated_keys}")
        return verdict

    def report(self, verdict: ComplianceVerdict, result_token: str) -> None:
        """Deliver a verdict. Failures raise DeliveryError; the caller owns retry."""
        if self.sink is None:
            raise DeliveryError("No compliance sink configured", verdict.resource_id)
        self.sink.put_verdict(verdict, result_token)
        logger.info(f"Reported {verdict.verdict} for {verdict.resource_id}")

    def evaluate_and_report(self, resource_type: str, resource_id: str, tags: dict, result_token: str) -> ComplianceVerdict:
        verdict = self.evaluate(resource_type, resource_id, tags)
        self.report(verdict, result_token)
        return verdict
