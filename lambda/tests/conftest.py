"""Pytest fixtures for the organization tagging Lambda tests."""

import os
import pytest

from botocore.exceptions import ClientError

from org_tagging.errors import NotFoundError
from org_tagging.org_client import (
    ACCOUNT,
    MAX_TAG_VALUE_LENGTH,
    UNIT,
    OrgHierarchyClient,
    OrgNode,
    is_reserved_key,
    node_kind,
)
from org_tagging.policy import TagPolicy, merge_tags


@pytest.fixture(autouse=True)
def set_env_vars():
    """Set environment variables for all tests."""
    os.environ["AWS_REGION"] = "us-east-1"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
    os.environ["RULES_TABLE_NAME"] = "TagComplianceRules"
    os.environ["SNS_TOPIC_ARN"] = "arn:aws:sns:us-east-1:123456789012:org-tagging-alerts"
    os.environ["TARGET_REGIONS"] = "us-east-1"
    os.environ["PROPAGATION_MARKER"] = "org-tag-propagator"
    os.environ["LOG_LEVEL"] = "DEBUG"
    yield


class FakeOrgHierarchy:
    """In-memory hierarchy keyed by node id, with the OrgHierarchyClient interface."""

    def __init__(self):
        self.nodes = {}
        self.writes = []
        self.removals = []
        self.adoptions = []
        self.fail_writes = {}
        self.management_account_id = None

    def add(self, node_id, parent_id=None, tags=None, inherited=None):
        self.nodes[node_id] = OrgNode(
            id=node_id,
            kind=node_kind(node_id),
            parent_id=parent_id,
            direct_tags=dict(tags or {}),
            inherited_tags=dict(inherited or {}),
        )
        if parent_id:
            self.nodes[parent_id].child_ids.append(node_id)
        return self

    def move(self, node_id, new_parent_id):
        node = self.nodes[node_id]
        self.nodes[node.parent_id].child_ids.remove(node_id)
        node.parent_id = new_parent_id
        self.nodes[new_parent_id].child_ids.append(node_id)

    def tags(self, node_id):
        node = self.nodes[node_id]
        return merge_tags(node.inherited_tags, node.direct_tags)

    def _node(self, node_id):
        if node_id not in self.nodes:
            raise NotFoundError(f"{node_id} not found", node_id)
        return self.nodes[node_id]

    # OrgHierarchyClient interface

    def get_root_id(self):
        return next(n.id for n in self.nodes.values() if n.parent_id is None)

    def get_node(self, node_id):
        node = self._node(node_id)
        return OrgNode(
            id=node.id,
            kind=node.kind,
            parent_id=node.parent_id,
            child_ids=list(node.child_ids),
            direct_tags=dict(node.direct_tags),
            inherited_tags=dict(node.inherited_tags),
        )

    def list_children(self, parent_id):
        return [self.get_node(child_id) for child_id in self._node(parent_id).child_ids]

    def get_direct_tags(self, node_id):
        return dict(self._node(node_id).direct_tags)

    def get_ancestor_ids(self, node_id):
        chain = []
        current = self._node(node_id).parent_id
        while current is not None:
            chain.insert(0, current)
            current = self.nodes[current].parent_id
        return chain

    def get_effective_tags(self, node_id):
        chain = self.get_ancestor_ids(node_id) + [node_id]
        return merge_tags(*(self.nodes[n].direct_tags for n in chain))

    def set_tags(self, node_id, tags, marker, inherited_keys=None):
        if node_id in self.fail_writes:
            raise self.fail_writes[node_id]
        self.writes.append((node_id, dict(tags), marker))
        self._node(node_id).inherited_tags.update(tags)

    def remove_tags(self, node_id, keys, marker, inherited_keys=None):
        if node_id in self.fail_writes:
            raise self.fail_writes[node_id]
        self.removals.append((node_id, list(keys), marker))
        for key in keys:
            self._node(node_id).inherited_tags.pop(key, None)

    def adopt_direct(self, node_id, keys, marker):
        node = self._node(node_id)
        adopted = sorted(k for k in keys if k in node.inherited_tags)
        for key in adopted:
            node.direct_tags[key] = node.inherited_tags.pop(key)
        if adopted:
            self.adoptions.append((node_id, adopted, marker))
        return adopted

    def list_accounts_in(self, unit_id):
        accounts = []
        frontier = [unit_id]
        while frontier:
            node = self._node(frontier.pop(0))
            for child_id in node.child_ids:
                if self.nodes[child_id].kind == ACCOUNT:
                    accounts.append(child_id)
                else:
                    frontier.append(child_id)
        return accounts

    def list_all_accounts(self):
        return [n.id for n in self.nodes.values() if n.kind == ACCOUNT]

    def get_management_account_id(self):
        return self.management_account_id


def _client_error(code, operation):
    return ClientError({"Error": {"Code": code, "Message": f"{code} in {operation}"}}, operation)


class FakeOrganizationsApi:
    """
    Stand-in for the boto3 organizations client. Tags are kept flat per node,
    the way Organizations stores them, so the ledger tags are visible here.
    """

    def __init__(self, management_account_id="999999999999"):
        self.parents = {}
        self.raw_tags = {}
        self.management_account_id = management_account_id
        self.tag_calls = []
        self.untag_calls = []

    def add(self, node_id, parent_id=None, tags=None):
        self.parents[node_id] = parent_id
        self.raw_tags[node_id] = dict(tags or {})
        return self

    def operator_tags(self, node_id, **tags):
        """Tag a node the way a person would, without the marker."""
        self.raw_tags[node_id].update(tags)

    def operator_untags(self, node_id, *keys):
        for key in keys:
            self.raw_tags[node_id].pop(key, None)

    def visible_tags(self, node_id):
        return {k: v for k, v in self.raw_tags[node_id].items() if not is_reserved_key(k)}

    def _require(self, node_id, operation):
        if node_id not in self.parents:
            raise _client_error("TargetNotFoundException", operation)

    # boto3 interface

    def list_roots(self, **kwargs):
        return {"Roots": [{"Id": n} for n, parent in self.parents.items() if parent is None]}

    def list_parents(self, ChildId):
        self._require(ChildId, "ListParents")
        parent_id = self.parents[ChildId]
        return {"Parents": [{"Id": parent_id}] if parent_id else []}

    def list_children(self, ParentId, ChildType, NextToken=None):
        self._require(ParentId, "ListChildren")
        kind = ACCOUNT if ChildType == "ACCOUNT" else UNIT
        children = [n for n, parent in self.parents.items() if parent == ParentId and node_kind(n) == kind]
        return {"Children": [{"Id": c, "Type": ChildType} for c in children]}

    def list_tags_for_resource(self, ResourceId, NextToken=None):
        self._require(ResourceId, "ListTagsForResource")
        return {"Tags": [{"Key": k, "Value": v} for k, v in self.raw_tags[ResourceId].items()]}

    def tag_resource(self, ResourceId, Tags):
        self._require(ResourceId, "TagResource")
        if any(len(tag["Value"]) > MAX_TAG_VALUE_LENGTH for tag in Tags):
            raise _client_error("InvalidInputException", "TagResource")
        self.tag_calls.append((ResourceId, {tag["Key"]: tag["Value"] for tag in Tags}))
        self.raw_tags[ResourceId].update({tag["Key"]: tag["Value"] for tag in Tags})
        return {}

    def untag_resource(self, ResourceId, TagKeys):
        self._require(ResourceId, "UntagResource")
        self.untag_calls.append((ResourceId, list(TagKeys)))
        for key in TagKeys:
            self.raw_tags[ResourceId].pop(key, None)
        return {}

    def list_accounts(self, NextToken=None):
        accounts = [n for n in self.parents if node_kind(n) == ACCOUNT]
        return {"Accounts": [{"Id": a, "Status": "ACTIVE"} for a in accounts]}

    def describe_organization(self):
        return {"Organization": {"Id": "o-acme", "MasterAccountId": self.management_account_id}}


@pytest.fixture
def fake_org():
    """Empty in-memory hierarchy."""
    return FakeOrgHierarchy()


@pytest.fixture
def sample_org(fake_org):
    """
    r-root
    └── ou-root-prod   {Env: prod, CostCenter: 1001}
        ├── 111111111111   {Team: infra}
        ├── 222222222222   {Env: staging}
        └── ou-root-apps   {App: billing}
            └── 333333333333
    """
    fake_org.add("r-root", tags={"Company": "acme"})
    fake_org.add("ou-root-prod", "r-root", {"Env": "prod", "CostCenter": "1001"})
    fake_org.add("111111111111", "ou-root-prod", {"Team": "infra"})
    fake_org.add("222222222222", "ou-root-prod", {"Env": "staging"})
    fake_org.add("ou-root-apps", "ou-root-prod", {"App": "billing"})
    fake_org.add("333333333333", "ou-root-apps")
    return fake_org


@pytest.fixture
def orgs_api():
    """
    The sample_org tree, stored flat behind the organizations API:

    r-root {Company: acme}
    └── ou-root-prod   {Env: prod, CostCenter: 1001}
        ├── 111111111111   {Team: infra}
        ├── 222222222222   {Env: staging}
        └── ou-root-apps   {App: billing}
            └── 333333333333
    """
    api = FakeOrganizationsApi()
    api.add("r-root", tags={"Company": "acme"})
    api.add("ou-root-prod", "r-root", {"Env": "prod", "CostCenter": "1001"})
    api.add("111111111111", "ou-root-prod", {"Team": "infra"})
    api.add("222222222222", "ou-root-prod", {"Env": "staging"})
    api.add("ou-root-apps", "ou-root-prod", {"App": "billing"})
    api.add("333333333333", "ou-root-apps")
    return api


@pytest.fixture
def live_org(orgs_api):
    """The real hierarchy client over orgs_api."""
    return OrgHierarchyClient(orgs_api, retry_base_delay=0)


@pytest.fixture
def sample_tag_rules():
    """Sample tag compliance rules."""
    return [
        {
            "ruleId": "rule-001",
            "tagKey": "Env",
            "allowedValues": ["dev", "staging", "prod"],
            "enabled": True,
        },
        {
            "ruleId": "rule-002",
            "tagKey": "CostCenter",
            "allowedValues": [],  # Any value allowed
            "enabled": True,
        },
        {
            "ruleId": "rule-003",
            "tagKey": "Owner",
            "allowedValues": [],
            "enabled": True,
        },
    ]


@pytest.fixture
def sample_policy(sample_tag_rules):
    return TagPolicy.from_rules(sample_tag_rules, enforce_values=True)


@pytest.fixture
def sample_tag_event():
    """Organizations TagResource call on a unit, via EventBridge."""
    return {
        "version": "0",
        "id": "12345678-1234-1234-1234-123456789012",
        "detail-type": "AWS API Call via CloudTrail",
        "source": "aws.organizations",
        "account": "123456789012",
        "time": "2024-01-15T10:30:00Z",
        "region": "us-east-1",
        "detail": {
            "eventVersion": "1.08",
            "eventTime": "2024-01-15T10:30:00Z",
            "eventSource": "organizations.amazonaws.com",
            "eventName": "TagResource",
            "awsRegion": "us-east-1",
            "userIdentity": {
                "type": "AssumedRole",
                "arn": "arn:aws:sts::123456789012:assumed-role/Admin/user@example.com",
            },
            "requestParameters": {
                "resourceId": "ou-root-prod",
                "tags": [
                    {"key": "Env", "value": "prod"},
                    {"key": "CostCenter", "value": "1001"},
                ],
            },
            "responseElements": None,
        },
    }


@pytest.fixture
def sample_move_event():
    """Organizations MoveAccount call, via EventBridge."""
    return {
        "source": "aws.organizations",
        "detail-type": "AWS API Call via CloudTrail",
        "detail": {
            "eventSource": "organizations.amazonaws.com",
            "eventName": "MoveAccount",
            "userIdentity": {"arn": "arn:aws:iam::123456789012:user/admin"},
            "requestParameters": {
                "accountId": "111111111111",
                "sourceParentId": "ou-root-prod",
                "destinationParentId": "ou-root-apps",
            },
        },
    }


@pytest.fixture
def sample_config_event():
    """AWS Config custom rule invocation for an EC2 instance."""
    return {
        "invokingEvent": (
            '{"messageType": "ConfigurationItemChangeNotification", '
            '"configurationItem": {"resourceType": "AWS::EC2::Instance", '
            '"resourceId": "i-0123456789abcdef0", "configurationItemStatus": "OK", '
            '"tags": {"Env": "prod", "CostCenter": "1001"}}}'
        ),
        "resultToken": "token-123",
        "accountId": "123456789012",
    }
