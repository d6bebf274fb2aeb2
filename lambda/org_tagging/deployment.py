"""
Bulk deployment orchestrator.

Rolls the standard cross-account role out to member accounts through a
CloudFormation StackSet, one operation per region, and aggregates the
per-account results against a failure tolerance.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field

import boto3

from .errors import EmptyTargetError, call_with_retry

logger = logging.getLogger(__name__)

SUCCEEDED = "SUCCEEDED"
FAILED = "FAILED"
SKIPPED = "SKIPPED"

TERMINAL_OPERATION_STATUSES = {"SUCCEEDED", "FAILED", "STOPPED"}

# StackSet instance result status -> outcome status
RESULT_STATUS_MAP = {
    "SUCCEEDED": SUCCEEDED,
    "FAILED": FAILED,
    "CANCELLED": SKIPPED,
    "PENDING": SKIPPED,
    "RUNNING": SKIPPED,
}


@dataclass(frozen=True)
class DeploymentTarget:
    organization_id: str
    regions: tuple = ()
    account_ids: tuple = ()
    unit_ids: tuple = ()


@dataclass
class AccountRegionResult:
    account_id: str
    region: str
    status: str
    reason: str = ""


@dataclass
class DeploymentOutcome:
    accounts: list
    regions: list
    failure_tolerance_percentage: int
    operation_ids: list = field(default_factory=list)
    results: list = field(default_factory=list)
    timed_out: bool = False
    timeout_reason: str = ""

    @property
    def total(self) -> int:
        return len(self.accounts) * len(self.regions)

    @property
    def failure_count(self) -> int:
        return sum(1 for r in self.results if r.status == FAILED)

    @property
    def within_tolerance(self) -> bool:
        return self.failure_count * 100 <= self.failure_tolerance_percentage * self.total

    @property
    def status(self) -> str:
        return SUCCEEDED if self.within_tolerance and not self.timed_out else FAILED

    @property
    def reason(self) -> str:
        if self.timed_out:
            return self.timeout_reason
        if not self.within_tolerance:
            return (
                f"tolerance exceeded: {self.failure_count} of {self.total} account deployments failed "
                f"(tolerance {self.failure_tolerance_percentage}%)"
            )
        return f"{self.total - self.failure_count} of {self.total} account deployments succeeded"

    def fill_missing(self, reason: str) -> None:
        """Mark every account/region pair without a result as SKIPPED."""
        seen = {(r.account_id, r.region) for r in self.results}
        for region in self.regions:
            for account_id in self.accounts:
                if (account_id, region) not in seen:
                    self.results.append(AccountRegionResult(account_id, region, SKIPPED, reason))

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "reason": self.reason,
            "operation_ids": list(self.operation_ids),
            "account_count": len(self.accounts),
            "regions": list(self.regions),
            "failure_count": self.failure_count,
            "within_tolerance": self.within_tolerance,
            "results": [
                {"account_id": r.account_id, "region": r.region, "status": r.status, "reason": r.reason}
                for r in self.results
            ],
        }


def _check_percentage(name: str, value: int) -> int:
    if not 0 <= value <= 100:
        raise ValueError(f"{name} must be between 0 and 100, got {value}")
    return value


class BulkDeploymentOrchestrator:
    def __init__(
        self,
        org_client,
        stack_set_name: str,
        cfn_client=None,
        permission_model: str = "SERVICE_MANAGED",
        failure_tolerance_percentage: int = 10,
        max_concurrent_percentage: int = 25,
        poll_interval: float = 10.0,
        retry_attempts: int = 4,
        clock=time.monotonic,
        sleep=time.sleep,
    ):
        self.org = org_client
        self.stack_set_name = stack_set_name
        self.cfn = cfn_client or boto3.client("cloudformation")
        self.permission_model = permission_model
        self.failure_tolerance_percentage = failure_tolerance_percentage
        self.max_concurrent_percentage = max_concurrent_percentage
        self.poll_interval = poll_interval
        self.retry_attempts = retry_attempts
        self.clock = clock
        self.sleep = sleep

    def _call(self, method: str, **kwargs) -> dict:
        return call_with_retry(getattr(self.cfn, method), attempts=self.retry_attempts, target=self.stack_set_name, **kwargs)

    def _deployable(self, accounts: list) -> list:
        """Drop the management account, which service-managed StackSets never deploy to."""
        if self.permission_model != "SERVICE_MANAGED":
            return accounts
        management_id = self.org.get_management_account_id()
        if management_id in accounts:
            logger.info(f"Excluding management account {management_id} from service-managed deployment")
        return [a for a in accounts if a != management_id]

    def resolve_accounts(self, target: DeploymentTarget) -> tuple[list, list]:
        """
        Resolve the concrete account list and the unit scope it was drawn from.

        Explicit accounts win. Otherwise the unit scope (the root when unset) is
        expanded; an empty expansion falls back to the whole organization. With
        SERVICE_MANAGED permissions the management account is never included.
        """
        root_id = self.org.get_root_id()
        units = list(target.unit_ids) or [root_id]

        if target.account_ids:
            accounts = self._deployable(list(dict.fromkeys(target.account_ids)))
        else:
            accounts = []
            for unit_id in units:
                accounts.extend(self.org.list_accounts_in(unit_id))
            accounts = self._deployable(list(dict.fromkeys(accounts)))

            if not accounts and units != [root_id]:
                logger.warning(f"Unit scope {units} holds no accounts, falling back to organization root {root_id}")
                units = [root_id]
                accounts = self._deployable(self.org.list_accounts_in(root_id))

        if not accounts:
            raise EmptyTargetError(
                f"No deployable accounts in organization {target.organization_id}, including under root {root_id}",
                target.organization_id,
            )
        return accounts, units

    def _submit(self, region: str, accounts: list, units: list, tolerance: int, concurrency: int) -> str:
        operation_id = str(uuid.uuid4())
        kwargs = {
            "StackSetName": self.stack_set_name,
            "Regions": [region],
            "OperationId": operation_id,
            "OperationPreferences": {
                "FailureTolerancePercentage": tolerance,
                "MaxConcurrentPercentage": concurrency,
            },
        }
        if self.permission_model == "SERVICE_MANAGED":
            kwargs["DeploymentTargets"] = {
                "OrganizationalUnitIds": units,
                "Accounts": accounts,
                "AccountFilterType": "INTERSECTION",
            }
        else:
            kwargs["Accounts"] = accounts

        # The same OperationId on retry keeps submission idempotent
        self._call("create_stack_instances", **kwargs)
        logger.info(f"Submitted operation {operation_id} for {len(accounts)} accounts in {region}")
        return operation_id

    def _wait(self, operation_id: str, deadline: float) -> str | None:
        """Poll until the operation is terminal; None when the deadline passes first."""
        while True:
            operation = self._call(
                "describe_stack_set_operation",
                StackSetName=self.stack_set_name,
                OperationId=operation_id,
            )["StackSetOperation"]
            status = operation["Status"]
            if status in TERMINAL_OPERATION_STATUSES:
                logger.info(f"Operation {operation_id} finished with {status}")
                return status
            remaining = deadline - self.clock()
            if remaining <= 0:
                return None
            self.sleep(min(self.poll_interval, remaining))

    def _results(self, operation_id: str) -> list[AccountRegionResult]:
        results = []
        next_token = None
        while True:
            params = {"StackSetName": self.stack_set_name, "OperationId": operation_id}
            if next_token:
                params["NextToken"] = next_token
            resp = self._call("list_stack_set_operation_results", **params)
            for summary in resp.get("Summaries", []):
                results.append(AccountRegionResult(
                    account_id=summary["Account"],
                    region=summary["Region"],
                    status=RESULT_STATUS_MAP.get(summary.get("Status"), SKIPPED),
                    reason=summary.get("StatusReason", ""),
                ))
            next_token = resp.get("NextToken")
            if not next_token:
                return results

    def deploy(
        self,
        target: DeploymentTarget,
        failure_tolerance_percentage: int | None = None,
        max_concurrent_percentage: int | None = None,
        timeout: float = 600,
    ) -> DeploymentOutcome:
        """
        Deploy the StackSet to every resolved account in every target region.

        A timeout reports FAILED without stopping operations already submitted;
        their results can be picked up later with reconcile().
        """
        tolerance = _check_percentage(
            "failure_tolerance_percentage",
            self.failure_tolerance_percentage if failure_tolerance_percentage is None else failure_tolerance_percentage,
        )
        concurrency = _check_percentage(
            "max_concurrent_percentage",
            self.max_concurrent_percentage if max_concurrent_percentage is None else max_concurrent_percentage,
        )
        if not target.regions:
            raise EmptyTargetError("Deployment target has no regions", target.organization_id)

        accounts, units = self.resolve_accounts(target)
        outcome = DeploymentOutcome(
            accounts=accounts,
            regions=list(target.regions),
            failure_tolerance_percentage=tolerance,
        )
        deadline = self.clock() + timeout

        for region in target.regions:
            operation_id = self._submit(region, accounts, units, tolerance, concurrency)
            outcome.operation_ids.append(operation_id)
            status = self._wait(operation_id, deadline)
            outcome.results.extend(self._results(operation_id))
            if status is None:
                outcome.timed_out = True
                outcome.timeout_reason = (
                    f"timed out after {timeout}s waiting for operation {operation_id} in {region}; "
                    f"submitted work continues and can be reconciled later"
                )
                logger.warning(outcome.timeout_reason)
                break

        outcome.fill_missing("not deployed before the operation ended")
        logger.info(f"Deployment of {self.stack_set_name}: {outcome.status} ({outcome.reason})")
        return outcome

    def reconcile(self, operation_ids: list, failure_tolerance_percentage: int | None = None) -> DeploymentOutcome:
        """Rebuild an outcome from earlier operations, e.g. after a timeout."""
        tolerance = self.failure_tolerance_percentage if failure_tolerance_percentage is None else failure_tolerance_percentage
        outcome = DeploymentOutcome(accounts=[], regions=[], failure_tolerance_percentage=tolerance)
        running = []
        for operation_id in operation_ids:
            operation = self._call(
                "describe_stack_set_operation",
                StackSetName=self.stack_set_name,
                OperationId=operation_id,
            )["StackSetOperation"]
            if operation["Status"] not in TERMINAL_OPERATION_STATUSES:
                running.append(operation_id)
            outcome.operation_ids.append(operation_id)
            outcome.results.extend(self._results(operation_id))

        outcome.accounts = list(dict.fromkeys(r.account_id for r in outcome.results))
        outcome.regions = list(dict.fromkeys(r.region for r in outcome.results))
        if running:
            outcome.timed_out = True
            outcome.timeout_reason = f"operations still running: {', '.join(running)}"
        return outcome
