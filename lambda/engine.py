"""
Tag engine wiring.

Builds each component from the Lambda environment so the handlers stay thin.
Every invocation constructs a fresh engine; nothing is kept between runs.
"""

import logging

import boto3

from org_tagging.account_tagger import AccountTagger, CrossAccountCredentialProvider
from org_tagging.compliance import ComplianceEvaluator, ConfigComplianceSink
from org_tagging.config import Settings
from org_tagging.deployment import BulkDeploymentOrchestrator, DeploymentTarget
from org_tagging.errors import TaggingError
from org_tagging.notifier import send_failure_notification
from org_tagging.org_client import OrgHierarchyClient
from org_tagging.policy import TagPolicy, load_tag_policy
from org_tagging.propagator import OUTagPropagator

logger = logging.getLogger(__name__)


class TagEngine:
    """Entry point for the four components."""

    def __init__(self, settings: Settings | None = None, policy: TagPolicy | None = None):
        self.settings = settings or Settings.from_env()
        self._policy = policy
        self._org = None

        logger.info(f"Initializing TagEngine in {self.settings.region}, regions={self.settings.target_regions}")

    @property
    def policy(self) -> TagPolicy:
        if self._policy is None:
            self._policy = load_tag_policy(
                self.settings.rules_table_name,
                self.settings.region,
                enforce_values=self.settings.enforce_tag_values,
                retry_attempts=self.settings.retry_max_attempts,
            )
        return self._policy

    @property
    def org(self) -> OrgHierarchyClient:
        if self._org is None:
            self._org = OrgHierarchyClient(
                boto3.client("organizations"),
                retry_attempts=self.settings.retry_max_attempts,
                retry_base_delay=self.settings.retry_base_delay,
                max_depth=self.settings.max_hierarchy_depth,
            )
        return self._org

    def notify(self, component: str, target_id: str, failures: list) -> dict:
        return send_failure_notification(
            self.settings.sns_topic_arn,
            component,
            target_id,
            failures,
            region=self.settings.region,
        )

    # --- components ---

    def account_tagger(self) -> AccountTagger:
        credentials = CrossAccountCredentialProvider(
            self.settings.cross_account_role_name,
            boto3.client("sts", region_name=self.settings.region),
            retry_attempts=self.settings.retry_max_attempts,
        )
        return AccountTagger(
            self.policy,
            self.org,
            credentials,
            self.settings.target_regions,
            retry_attempts=self.settings.retry_max_attempts,
        )

    def compliance_evaluator(self) -> ComplianceEvaluator:
        return ComplianceEvaluator(
            self.policy,
            ConfigComplianceSink(region=self.settings.region),
            taggable_types=self.settings.taggable_resource_types,
        )

    def propagator(self) -> OUTagPropagator:
        return OUTagPropagator(
            self.org,
            marker=self.settings.propagation_marker,
            actor=self.settings.propagation_actor,
            max_workers=self.settings.propagation_workers,
            max_depth=self.settings.max_hierarchy_depth,
        )

    def orchestrator(self) -> BulkDeploymentOrchestrator:
        return BulkDeploymentOrchestrator(
            self.org,
            self.settings.stack_set_name,
            boto3.client("cloudformation", region_name=self.settings.region),
            permission_model=self.settings.stack_set_permission_model,
            failure_tolerance_percentage=self.settings.failure_tolerance_percentage,
            max_concurrent_percentage=self.settings.max_concurrent_percentage,
            poll_interval=self.settings.poll_interval_seconds,
            retry_attempts=self.settings.retry_max_attempts,
        )

    # --- operations ---

    def tag_accounts(self, account_ids: list | None = None, overrides: dict | None = None) -> list[dict]:
        """
        Tag one or more accounts; all active accounts when none are given.

        Each account is isolated: a failure on one is recorded and the sweep
        continues with the next.
        """
        tagger = self.account_tagger()
        account_ids = account_ids or self.org.list_all_accounts()
        results = []
        for account_id in account_ids:
            try:
                result = tagger.tag_account(account_id, overrides)
            except TaggingError as e:
                logger.error(f"Tagging account {account_id} failed: {e.kind}: {e.message}")
                failure = e.to_dict()
                failure["target"] = account_id
                self.notify("tagger", account_id, [failure])
                results.append({"account_id": account_id, "error": failure})
                continue
            if result.failures:
                self.notify("tagger", account_id, result.failures)
            results.append(result.to_dict())
        return results

    def deployment_target(self, request: dict) -> DeploymentTarget:
        return DeploymentTarget(
            organization_id=request.get("OrganizationId") or request.get("organization_id", ""),
            regions=tuple(request.get("Regions") or request.get("regions") or self.settings.target_regions),
            account_ids=tuple(request.get("AccountIds") or request.get("account_ids") or ()),
            unit_ids=tuple(request.get("OrganizationalUnitIds") or request.get("unit_ids") or ()),
        )
