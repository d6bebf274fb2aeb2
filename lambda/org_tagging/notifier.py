"""
Amazon SNS notifications for partial failures.

The tagger and the propagator are best effort; when some items fail, a summary
is published to the alert topic so operators can follow up.
"""

import json
import logging

import boto3

logger = logging.getLogger(__name__)


def send_failure_notification(
    topic_arn: str | None,
    component: str,
    target_id: str,
    failures: list,
    region: str = "us-east-1",
    sns_client=None,
) -> dict:
    """
    Publish a failure summary to SNS.

    Args:
        topic_arn: Alert topic; when unset nothing is sent
        component: Component that produced the failures (e.g. "propagator")
        target_id: Account, unit or event the failures belong to
        failures: Items with target, kind and cause
        region: Region of the topic

    Returns:
        Dictionary containing:
        - success: Boolean indicating if notification was sent
        - message_id: SNS message ID (if successful)
        - error: Error message (if failed)
    """
    if not topic_arn:
        logger.info("SNS_TOPIC_ARN not set, skipping failure notification")
        return {"success": False, "error": "SNS_TOPIC_ARN not set"}

    logger.info(f"Sending SNS notification for {component} failures on {target_id}")

    try:
        sns_client = sns_client or boto3.client("sns", region_name=region)
        subject = f"Tag {component} failures: {target_id}"
        message = _build_notification_message(component, target_id, failures)
        message_structure = {
            "default": message,
            "email": message,
            "sms": _build_sms_message(component, target_id, failures),
        }
        response = sns_client.publish(
            TopicArn=topic_arn,
            Subject=subject[:100],  # SNS subject max 100 chars
            Message=json.dumps(message_structure),
            MessageStructure="json",
        )
        message_id = response.get("MessageId")
        logger.info(f"SNS notification sent successfully: {message_id}")
        return {"success": True, "message_id": message_id}

    except Exception as e:
        # Alerting must not mask the failure being reported
        logger.error(f"Error sending SNS notification: {e}", exc_info=True)
        return {"success": False, "error": str(e)}


def _build_notification_message(component: str, target_id: str, failures: list) -> str:
    lines = [
        "=" * 60,
        f"TAG {component.upper()} PARTIAL FAILURE",
        "=" * 60,
        "",
        f"Target: {target_id}",
        f"Failed items: {len(failures)}",
        "",
        "FAILURES",
        "-" * 40,
    ]
    for failure in failures:
        lines.append(f"  - {failure.get('target')}: {failure.get('kind')}")
        lines.append(f"    {failure.get('cause')}")
    lines.extend([
        "",
        "REMEDIATION",
        "-" * 40,
        "Transient failures are retried on the next delivery of the event.",
        "Authorization and not-found failures need the role or hierarchy fixed.",
        "",
        "=" * 60,
    ])
    return "\n".join(lines)


def _build_sms_message(component: str, target_id: str, failures: list) -> str:
    """Build a short SMS message (max 160 chars recommended)."""
    kinds = sorted({f.get("kind", "Error") for f in failures})
    msg = f"Tag {component}: {len(failures)} failure(s) on {target_id} ({', '.join(kinds)})"
    if len(msg) > 160:
        msg = msg[:157] + "..."
    return msg
