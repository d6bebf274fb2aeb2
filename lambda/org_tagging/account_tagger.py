"""
Account tagger.

Applies the policy's missing tags to every taggable resource of a member
account, taking values from the account's effective tag set. Existing tag
values on a resource are never overwritten, so a second pass over a compliant
account writes nothing.
"""

import logging
from dataclasses import dataclass, field

import boto3
from botocore.exceptions import OperationNotPageableError

from .errors import (
    AuthorizationError,
    NotFoundError,
    PartialFailure,
    TaggingError,
    TransientError,
    call_with_retry,
)
from .policy import TagPolicy, merge_tags, tags_to_dict

logger = logging.getLogger(__name__)

TRANSIENT_TAGGING_ERROR_CODES = {"InternalServiceException", "ThrottledException"}

# Services whose ARNs end in a bare name, with no type segment
UNTYPED_RESOURCE_KINDS = {"s3": "bucket", "sns": "topic", "sqs": "queue"}


@dataclass
class TaggableResource:
    arn: str
    resource_type: str
    tags: dict = field(default_factory=dict)


def resource_type_from_arn(arn: str) -> str:
    """'arn:aws:ec2:us-east-1:123:instance/i-1' -> 'ec2:instance'."""
    parts = arn.split(":", 5)
    if len(parts) < 6:
        return "unknown"
    service, resource = parts[2], parts[5]
    if "/" in resource:
        kind = resource.split("/", 1)[0]
    elif ":" in resource:
        kind = resource.split(":", 1)[0]
    elif service in UNTYPED_RESOURCE_KINDS:
        kind = UNTYPED_RESOURCE_KINDS[service]
    else:
        kind = resource
    return f"{service}:{kind}"


class CrossAccountCredentialProvider:
    """Assumes the standing cross-account role in member accounts."""

    def __init__(self, role_name: str, sts_client=None, session_name: str = "OrgTagging", partition: str = "aws", retry_attempts: int = 4):
        self.role_name = role_name
        self.sts = sts_client or boto3.client("sts")
        self.session_name = session_name
        self.partition = partition
        self.retry_attempts = retry_attempts

    def assume_role(self, account_id: str) -> boto3.Session:
        role_arn = f"arn:{self.partition}:iam::{account_id}:role/{self.role_name}"
        try:
            response = call_with_retry(
                self.sts.assume_role,
                attempts=self.retry_attempts,
                target=account_id,
                RoleArn=role_arn,
                RoleSessionName=self.session_name,
            )
        except (AuthorizationError, NotFoundError) as e:
            raise AuthorizationError(
                f"Role {self.role_name} absent in account {account_id} or its trust policy rejects the caller ({e.message})",
                account_id,
            ) from e

        credentials = response["Credentials"]
        return boto3.Session(
            aws_access_key_id=credentials["AccessKeyId"],
            aws_secret_access_key=credentials["SecretAccessKey"],
            aws_session_token=credentials["SessionToken"],
        )


@dataclass(frozen=True)
class ResourceSource:
    """
    One describe/list call that enumerates a resource type, tagged or not.

    ARNs come from arn_attr when the listing carries them, otherwise from
    arn_template filled with partition, region, account and id. Listings of
    bare strings (table names, queue URLs) use the last path segment as id.
    """

    client_name: str
    list_method: str
    list_key: str
    id_attr: str | None = None
    arn_attr: str | None = None
    arn_template: str | None = None
    nested_key: str | None = None
    region_kwarg: str | None = None
    list_kwargs: dict = field(default_factory=dict)


EC2_ARN_TEMPLATE = "arn:{partition}:ec2:{region}:{account}:%s/{id}"

EC2_RESOURCES = [
    ("instance", "describe_instances", "Reservations", "InstanceId", "Instances"),
    ("volume", "describe_volumes", "Volumes", "VolumeId", None),
    ("snapshot", "describe_snapshots", "Snapshots", "SnapshotId", None),
    ("security-group", "describe_security_groups", "SecurityGroups", "GroupId", None),
    ("subnet", "describe_subnets", "Subnets", "SubnetId", None),
    ("vpc", "describe_vpcs", "Vpcs", "VpcId", None),
]

RESOURCE_SOURCES = {
    f"ec2:{kind}": ResourceSource(
        client_name="ec2",
        list_method=method,
        list_key=key,
        id_attr=id_attr,
        nested_key=nested,
        arn_template=EC2_ARN_TEMPLATE % kind,
        list_kwargs={"OwnerIds": ["self"]} if kind == "snapshot" else {},
    )
    for kind, method, key, id_attr, nested in EC2_RESOURCES
}
RESOURCE_SOURCES.update({
    "s3:bucket": ResourceSource(
        "s3", "list_buckets", "Buckets", id_attr="Name", arn_template="arn:{partition}:s3:::{id}", region_kwarg="BucketRegion"
    ),
    "rds:db": ResourceSource("rds", "describe_db_instances", "DBInstances", arn_attr="DBInstanceArn"),
    "lambda:function": ResourceSource("lambda", "list_functions", "Functions", arn_attr="FunctionArn"),
    "dynamodb:table": ResourceSource(
        "dynamodb", "list_tables", "TableNames", arn_template="arn:{partition}:dynamodb:{region}:{account}:table/{id}"
    ),
    "sns:topic": ResourceSource("sns", "list_topics", "Topics", arn_attr="TopicArn"),
    "sqs:queue": ResourceSource(
        "sqs", "list_queues", "QueueUrls", arn_template="arn:{partition}:sqs:{region}:{account}:{id}"
    ),
})


class ResourceTagClient:
    """
    Lists and tags resources of one account/region.

    The Resource Groups Tagging API only knows resources that carry or once
    carried a tag, so resources are enumerated per service with the sources
    above and their current tags joined in from get_resources. Writes go
    through tag_resources.
    """

    def __init__(self, session, region: str, account_id: str, partition: str = "aws", sources=None, retry_attempts: int = 4):
        self.session = session
        self.region = region
        self.account_id = account_id
        self.partition = partition
        self.sources = list(RESOURCE_SOURCES.values()) if sources is None else list(sources)
        self.client = session.client("resourcegroupstaggingapi", region_name=region)
        self.retry_attempts = retry_attempts
        self.listing_failures = []
        self._service_clients = {}

    def _service_client(self, name: str):
        if name not in self._service_clients:
            self._service_clients[name] = self.session.client(name, region_name=self.region)
        return self._service_clients[name]

    def _tag_mappings(self) -> dict:
        tags_by_arn = {}
        paginator = self.client.get_paginator("get_resources")
        for page in paginator.paginate(ResourcesPerPage=100):
            for mapping in page.get("ResourceTagMappingList", []):
                tags_by_arn[mapping["ResourceARN"]] = tags_to_dict(mapping.get("Tags"))
        return tags_by_arn

    def _pages(self, source: ResourceSource):
        client = self._service_client(source.client_name)
        kwargs = dict(source.list_kwargs)
        if source.region_kwarg:
            kwargs[source.region_kwarg] = self.region
        try:
            paginator = client.get_paginator(source.list_method)
        except OperationNotPageableError:
            return [getattr(client, source.list_method)(**kwargs)]
        return paginator.paginate(**kwargs)

    def _arn(self, source: ResourceSource, item) -> str | None:
        if isinstance(item, str):
            identifier = item.rstrip("/").rsplit("/", 1)[-1]
        elif source.arn_attr:
            return item.get(source.arn_attr)
        else:
            identifier = item.get(source.id_attr)
        if not identifier or not source.arn_template:
            return None
        return source.arn_template.format(
            partition=self.partition, region=self.region, account=self.account_id, id=identifier
        )

    def _discover(self, source: ResourceSource) -> list[str]:
        arns = []
        for page in self._pages(source):
            items = page.get(source.list_key, [])
            if source.nested_key:
                items = [nested for item in items for nested in item.get(source.nested_key, [])]
            for item in items:
                arn = self._arn(source, item)
                if arn:
                    arns.append(arn)
        return arns

    def list_resources(self) -> list[TaggableResource]:
        """
        Every enumerable resource of the region with its current tags.

        A failing source is recorded in listing_failures and skipped; a
        failing get_resources call fails the whole listing.
        """
        self.listing_failures = []
        tags_by_arn = call_with_retry(self._tag_mappings, attempts=self.retry_attempts, target=self.region)

        arns = list(tags_by_arn)
        for source in self.sources:
            target = f"{self.region}/{source.client_name}:{source.list_method}"
            try:
                found = call_with_retry(self._discover, source, attempts=self.retry_attempts, target=target)
            except TaggingError as e:
                logger.warning(f"Could not enumerate {target}: {e.kind}: {e.message}")
                self.listing_failures.append({"target": target, "kind": e.kind, "cause": e.message})
                continue
            arns.extend(found)

        return [
            TaggableResource(arn=arn, resource_type=resource_type_from_arn(arn), tags=tags_by_arn.get(arn, {}))
            for arn in dict.fromkeys(arns)
        ]

    def _tag(self, arn: str, tags: dict) -> None:
        response = self.client.tag_resources(ResourceARNList=[arn], Tags=tags)
        failed = response.get("FailedResourcesMap", {}).get(arn)
        if failed:
            message = f"{failed.get('ErrorCode')}: {failed.get('ErrorMessage')}"
            if failed.get("ErrorCode") in TRANSIENT_TAGGING_ERROR_CODES:
                raise TransientError(message, arn)
            raise TaggingError(message, arn)

    def apply_tags(self, arn: str, tags: dict) -> None:
        call_with_retry(self._tag, arn, tags, attempts=self.retry_attempts, target=arn)


@dataclass
class AccountTaggingResult:
    account_id: str
    tagged: dict = field(default_factory=dict)
    unchanged: list = field(default_factory=list)
    unresolved: dict = field(default_factory=dict)
    failures: list = field(default_factory=list)

    @property
    def writes(self) -> int:
        return len(self.tagged)

    def raise_for_failures(self) -> None:
        if self.failures:
            raise PartialFailure(
                f"{len(self.failures)} resource(s) in account {self.account_id} could not be tagged",
                self.failures,
                self.account_id,
            )

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "writes": self.writes,
            "tagged": self.tagged,
            "unchanged_count": len(self.unchanged),
            "unresolved": self.unresolved,
            "failures": self.failures,
        }


class AccountTagger:
    def __init__(
        self,
        policy: TagPolicy,
        org_client,
        credentials,
        regions: list[str],
        resource_client_factory=None,
        partition: str = "aws",
        retry_attempts: int = 4,
    ):
        self.policy = policy
        self.org = org_client
        self.credentials = credentials
        self.regions = regions
        self.resource_client_factory = resource_client_factory or (
            lambda session, region, account_id: ResourceTagClient(
                session, region, account_id, partition=partition, retry_attempts=retry_attempts
            )
        )

    def _tags_to_apply(self, resource: TaggableResource, values: dict) -> tuple[dict, list]:
        policy = self.policy.for_resource_type(resource.resource_type)
        missing = policy.missing_keys(resource.tags)
        to_apply, unresolved = {}, []
        for key in policy.required_keys:
            if key not in missing:
                continue
            rule = policy.rule_for(key)
            if key in values:
                to_apply[key] = values[key]
            elif rule and rule.default_value is not None:
                to_apply[key] = rule.default_value
            else:
                unresolved.append(key)
        return to_apply, unresolved

    def tag_account(self, account_id: str, overrides: dict | None = None) -> AccountTaggingResult:
        """
        Tag every taggable resource of an account with its missing policy keys.

        Raises AuthorizationError when the cross-account role cannot be assumed.
        Per-resource failures are collected in the result.
        """
        result = AccountTaggingResult(account_id=account_id)
        values = merge_tags(self.org.get_effective_tags(account_id), overrides)
        logger.info(f"Effective tags for account {account_id}: {values}")

        session = self.credentials.assume_role(account_id)

        for region in self.regions:
            client = self.resource_client_factory(session, region, account_id)
            try:
                resources = client.list_resources()
            except TaggingError as e:
                logger.warning(f"Could not list resources of {account_id} in {region}: {e.message}")
                result.failures.append({"target": f"{account_id}/{region}", "kind": e.kind, "cause": e.message})
                continue
            result.failures.extend(
                dict(failure, target=f"{account_id}/{failure['target']}") for failure in client.listing_failures
            )

            for resource in resources:
                to_apply, unresolved = self._tags_to_apply(resource, values)
                if unresolved:
                    result.unresolved[resource.arn] = unresolved
                if not to_apply:
                    if not unresolved:
                        result.unchanged.append(resource.arn)
                    continue
                try:
                    client.apply_tags(resource.arn, to_apply)
                except TaggingError as e:
                    logger.warning(f"Failed to tag {resource.arn}: {e.message}")
                    result.failures.append({"target": resource.arn, "kind": e.kind, "cause": e.message})
                    continue
                result.tagged[resource.arn] = to_apply
                logger.info(f"Tagged {resource.arn} with {sorted(to_apply)}")

        logger.info(
            f"Account {account_id}: tagged={len(result.tagged)}, unchanged={len(result.unchanged)}, "
            f"unresolved={len(result.unresolved)}, failed={len(result.failures)}"
        )
        return result
