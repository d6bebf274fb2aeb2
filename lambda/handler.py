"""
Organization Tagging Lambda Handlers

Four entry points share one engine:
- account_tagger_handler: on demand or scheduled tagging of member accounts
- compliance_handler: AWS Config custom rule evaluation
- propagation_handler: Organizations hierarchy changes from EventBridge/SQS
- deployment_handler: CloudFormation custom resource for the bulk role rollout
"""

import json
import logging
import os
from typing import Any

import boto3

from engine import TagEngine
from org_tagging.callback import FAILED as CALLBACK_FAILED
from org_tagging.callback import SUCCESS as CALLBACK_SUCCESS
from org_tagging.callback import send_response
from org_tagging.compliance import NOT_APPLICABLE, ComplianceVerdict
from org_tagging.deployment import SUCCEEDED
from org_tagging.errors import DeliveryError, NotFoundError, TaggingError
from org_tagging.org_client import MARKER_TAG_KEY, UNIT, is_reserved_key, node_kind
from org_tagging.propagator import AccountCreated, AccountMoved, AccountTagged, UnitTagged, UnitUntagged

# Configure logging
log_level = os.environ.get("LOG_LEVEL", "INFO")
logging.basicConfig(level=getattr(logging, log_level))
logger = logging.getLogger(__name__)

# Leave this much of the Lambda's time to report back to CloudFormation
CALLBACK_MARGIN_SECONDS = 30

DIRECT_EVENT_TYPES = {
    "UnitTagged": UnitTagged,
    "UnitUntagged": UnitUntagged,
    "AccountCreated": AccountCreated,
    "AccountMoved": AccountMoved,
    "AccountTagged": AccountTagged,
}


def _response(status_code: int, body: dict) -> dict:
    return {"statusCode": status_code, "body": json.dumps(body, default=str)}


# --- hierarchy events ---


def _tag_pairs(tags: list | None) -> dict:
    """CloudTrail records tags as [{"key": .., "value": ..}]."""
    pairs = {}
    for tag in tags or []:
        key = tag.get("key", tag.get("Key"))
        pairs[key] = tag.get("value", tag.get("Value"))
    return pairs


def _direct_hierarchy_event(event: dict):
    event_cls = DIRECT_EVENT_TYPES.get(event.get("event_type"))
    if event_cls is None:
        return None
    fields = {k: v for k, v in event.items() if k != "event_type"}
    for key in ("changed_keys", "removed_keys"):
        if key in fields:
            fields[key] = tuple(fields[key])
    return event_cls(**fields)


def extract_hierarchy_event(event: dict):
    """Turn an EventBridge Organizations/Control Tower event into a hierarchy event."""
    try:
        if "event_type" in event:
            return _direct_hierarchy_event(event)

        detail = event.get("detail", {}) or {}
        event_name = detail.get("eventName", "")
        request_parameters = detail.get("requestParameters", {}) or {}
        actor = (detail.get("userIdentity", {}) or {}).get("arn")

        if event_name == "TagResource":
            resource_id = request_parameters.get("resourceId", "")
            tags = _tag_pairs(request_parameters.get("tags"))
            changed_keys = tuple(k for k in tags if not is_reserved_key(k))
            if node_kind(resource_id) != UNIT:
                # Nothing below an account; its ledger may still need the keys dropped
                return AccountTagged(
                    account_id=resource_id,
                    changed_keys=changed_keys,
                    marker=tags.get(MARKER_TAG_KEY),
                    actor=actor,
                )
            return UnitTagged(
                unit_id=resource_id,
                changed_keys=changed_keys,
                marker=tags.get(MARKER_TAG_KEY),
                actor=actor,
            )

        if event_name == "UntagResource":
            resource_id = request_parameters.get("resourceId", "")
            removed = tuple(k for k in request_parameters.get("tagKeys", []) if not is_reserved_key(k))
            if node_kind(resource_id) != UNIT or not removed:
                return None
            return UnitUntagged(unit_id=resource_id, removed_keys=removed, actor=actor)

        if event_name == "MoveAccount":
            return AccountMoved(
                account_id=request_parameters["accountId"],
                old_parent_unit_id=request_parameters["sourceParentId"],
                new_parent_unit_id=request_parameters["destinationParentId"],
            )

        if event_name == "CreateAccountResult":
            status = (detail.get("serviceEventDetails", {}) or {}).get("createAccountStatus", {})
            if status.get("state") != "SUCCEEDED":
                logger.info(f"Account creation not successful: {status.get('state')}")
                return None
            # New accounts land in the root; the propagator reads the real parent
            return AccountCreated(account_id=status["accountId"], parent_unit_id=None)

        if event_name == "CreateManagedAccount":
            status = (detail.get("serviceEventDetails", {}) or {}).get("createManagedAccountStatus", {})
            if status.get("state") != "SUCCEEDED":
                return None
            return AccountCreated(
                account_id=status["account"]["accountId"],
                parent_unit_id=status["organizationalUnit"]["organizationalUnitId"],
            )

        logger.info(f"Unsupported event: {detail.get('eventSource')} - {event_name}")
        return None

    except (KeyError, TypeError) as e:
        logger.error(f"Error extracting hierarchy event: {e}")
        return None


def _propagate(engine: TagEngine, body: dict) -> dict:
    hierarchy_event = extract_hierarchy_event(body)
    if hierarchy_event is None:
        return {"message": "Event not applicable for tag propagation"}

    result = engine.propagator().handle(hierarchy_event)
    if result.failed:
        engine.notify("propagator", type(hierarchy_event).__name__, [o.error for o in result.failed])
    result.raise_for_failures()
    return result.to_dict()


def propagation_handler(event: dict, context: Any) -> dict:
    """
    Propagate tags for hierarchy change events.

    SQS batches report failed records in batchItemFailures so only those
    events are re-delivered. Direct invocations raise on failure.
    """
    logger.info(f"Received event: {json.dumps(event, default=str)}")
    engine = TagEngine()

    if "Records" not in event:
        return _response(200, _propagate(engine, event))

    failures = []
    malformed = 0
    for record in event["Records"]:
        message_id = record.get("messageId")
        try:
            body = json.loads(record.get("body", ""))
        except json.JSONDecodeError:
            logger.error(f"Discarding malformed record {message_id}")
            malformed += 1
            continue

        try:
            _propagate(engine, body)
        except NotFoundError as e:
            # The node is gone; re-delivery cannot help
            logger.warning(f"Dropping record {message_id}: {e.message}")
        except TaggingError as e:
            logger.error(f"Record {message_id} failed: {e.kind}: {e.message}")
            failures.append({"itemIdentifier": message_id})

    logger.info(f"Processed {len(event['Records'])} records, failed={len(failures)}, malformed={malformed}")
    return {"batchItemFailures": failures}


# --- account tagging ---


def account_tagger_handler(event: dict, context: Any) -> dict:
    """Tag the requested accounts, or every active account on a schedule."""
    logger.info(f"Received event: {json.dumps(event, default=str)}")

    try:
        account_ids = event.get("account_ids") or ([event["account_id"]] if event.get("account_id") else None)
        results = TagEngine().tag_accounts(account_ids, overrides=event.get("tags"))
        partial = any(r.get("error") or r.get("failures") for r in results)
        return _response(207 if partial else 200, {"message": "Account tagging completed", "results": results})

    except Exception as e:
        logger.error(f"Error processing event: {e}", exc_info=True)
        return _response(500, {"error": str(e)})


# --- compliance ---


def parse_configuration_item(event: dict, config_client=None) -> dict:
    """Extract the configuration item from an AWS Config rule invocation."""
    invoking_event = json.loads(event.get("invokingEvent", "{}"))
    message_type = invoking_event.get("messageType")

    if message_type == "OversizedConfigurationItemChangeNotification":
        summary = invoking_event.get("configurationItemSummary", {})
        config_client = config_client or boto3.client("config")
        history = config_client.get_resource_config_history(
            resourceType=summary["resourceType"],
            resourceId=summary["resourceId"],
            limit=1,
        )
        item = history["configurationItems"][0]
        return {
            "resourceType": item["resourceType"],
            "resourceId": item["resourceId"],
            "configurationItemStatus": item.get("configurationItemStatus"),
            "tags": item.get("tags", {}),
        }

    return invoking_event.get("configurationItem", {})


def compliance_handler(event: dict, context: Any) -> dict:
    """
    Evaluate one resource for an AWS Config custom rule.

    Also accepts direct requests with resource_type, resource_id, tags and
    result_token. A verdict that cannot be delivered raises DeliveryError.
    """
    logger.info(f"Received event: {json.dumps(event, default=str)}")

    if "invokingEvent" in event:
        item = parse_configuration_item(event)
        resource_type = item.get("resourceType", "")
        resource_id = item.get("resourceId", "")
        tags = item.get("tags") or {}
        result_token = event.get("resultToken", "")
        deleted = item.get("configurationItemStatus") in ("ResourceDeleted", "ResourceDeletedNotRecorded")
    else:
        resource_type = event.get("resource_type", "")
        resource_id = event.get("resource_id", "")
        tags = event.get("tags") or {}
        result_token = event.get("result_token", "")
        deleted = False

    evaluator = TagEngine().compliance_evaluator()
    if deleted:
        verdict = ComplianceVerdict(
            resource_id=resource_id,
            resource_type=resource_type,
            verdict=NOT_APPLICABLE,
            annotation="Resource has been deleted, ignoring tagging compliance.",
        )
    else:
        verdict = evaluator.evaluate(resource_type, resource_id, tags)

    try:
        evaluator.report(verdict, result_token)
    except DeliveryError as e:
        logger.error(f"Could not deliver verdict for {resource_id}: {e.message}")
        raise

    return _response(200, {"message": "Compliance evaluation delivered", "result": verdict.to_dict()})


# --- bulk deployment ---


def _deployment_timeout(engine: TagEngine, context: Any) -> float:
    timeout = engine.settings.deployment_timeout_seconds
    if context is not None and hasattr(context, "get_remaining_time_in_millis"):
        remaining = context.get_remaining_time_in_millis() / 1000 - CALLBACK_MARGIN_SECONDS
        timeout = max(0, min(timeout, remaining))
    return timeout


def deployment_handler(event: dict, context: Any) -> dict:
    """
    Roll the cross-account role out to the organization.

    As a CloudFormation custom resource the outcome is sent to ResponseURL;
    invoked directly it is returned. Passing operation_ids reconciles earlier
    operations instead of starting new ones.
    """
    logger.info(f"Received event: {json.dumps(event, default=str)}")
    engine = TagEngine()

    if "RequestType" not in event:
        try:
            orchestrator = engine.orchestrator()
            if event.get("operation_ids"):
                outcome = orchestrator.reconcile(event["operation_ids"], event.get("failure_tolerance_percentage"))
            else:
                outcome = orchestrator.deploy(
                    engine.deployment_target(event),
                    event.get("failure_tolerance_percentage"),
                    event.get("max_concurrent_percentage"),
                    timeout=event.get("timeout_seconds") or _deployment_timeout(engine, context),
                )
            return _response(200 if outcome.status == SUCCEEDED else 500, outcome.to_dict())
        except TaggingError as e:
            logger.error(f"Deployment failed: {e.kind}: {e.message}")
            return _response(500, {"error": e.to_dict()})

    physical_id = event.get("PhysicalResourceId") or f"{engine.settings.stack_set_name}-deployment"
    if event["RequestType"] == "Delete":
        return send_response(event, CALLBACK_SUCCESS, "Nothing to remove", physical_id)

    try:
        props = event.get("ResourceProperties", {})
        outcome = engine.orchestrator().deploy(
            engine.deployment_target(props),
            int(props["FailureTolerancePercentage"]) if props.get("FailureTolerancePercentage") else None,
            int(props["MaxConcurrentPercentage"]) if props.get("MaxConcurrentPercentage") else None,
            timeout=_deployment_timeout(engine, context),
        )
    except Exception as e:
        # CloudFormation waits for a response whatever happened
        logger.error(f"Deployment failed: {e}", exc_info=True)
        kind = e.kind if isinstance(e, TaggingError) else type(e).__name__
        return send_response(event, CALLBACK_FAILED, f"{kind}: {e}", physical_id)

    data = {
        "OperationIds": ",".join(outcome.operation_ids),
        "AccountCount": len(outcome.accounts),
        "FailureCount": outcome.failure_count,
    }
    status = CALLBACK_SUCCESS if outcome.status == SUCCEEDED else CALLBACK_FAILED
    return send_response(event, status, outcome.reason, physical_id, data)
