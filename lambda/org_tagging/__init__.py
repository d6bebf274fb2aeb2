"""
Tag propagation, reconciliation and bulk deployment for AWS Organizations.

- policy: tag rules, missing keys, violations and merge rules
- compliance: per-resource verdicts reported to AWS Config
- account_tagger: apply missing tags to a member account's resources
- propagator: push unit tags down the organization tree
- deployment: roll the cross-account role out with StackSets
"""

from .account_tagger import AccountTagger, CrossAccountCredentialProvider
from .compliance import ComplianceEvaluator, ComplianceVerdict
from .config import Settings
from .deployment import BulkDeploymentOrchestrator, DeploymentOutcome, DeploymentTarget
from .errors import (
    AuthorizationError,
    DeliveryError,
    EmptyTargetError,
    NotFoundError,
    PartialFailure,
    TaggingError,
    TransientError,
)
from .org_client import OrgHierarchyClient, OrgNode
from .policy import TagPolicy, TagRule, load_tag_policy
from .propagator import AccountCreated, AccountMoved, OUTagPropagator, UnitTagged, UnitUntagged

__all__ = [
    "AccountCreated",
    "AccountMoved",
    "AccountTagger",
    "AuthorizationError",
    "BulkDeploymentOrchestrator",
    "ComplianceEvaluator",
    "ComplianceVerdict",
    "CrossAccountCredentialProvider",
    "DeliveryError",
    "DeploymentOutcome",
    "DeploymentTarget",
    "EmptyTargetError",
    "NotFoundError",
    "OUTagPropagator",
    "OrgHierarchyClient",
    "OrgNode",
    "PartialFailure",
    "Settings",
    "TagPolicy",
    "TagRule",
    "TaggingError",
    "TransientError",
    "UnitTagged",
    "UnitUntagged",
    "load_tag_policy",
]
