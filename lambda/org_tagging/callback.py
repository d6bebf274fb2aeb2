"""
Provisioning callback for CloudFormation custom resources.

CloudFormation waits on a pre-signed S3 URL for the custom resource's result;
this module builds that response body and PUTs it.
"""

import json
import logging

import requests

logger = logging.getLogger(__name__)

SUCCESS = "SUCCESS"
FAILED = "FAILED"

# CloudFormation truncates reasons beyond this length
MAX_REASON_LENGTH = 4000


def build_response(event: dict, status: str, reason: str, physical_resource_id: str, data: dict | None = None) -> dict:
    return {
        "Status": status,
        "Reason": reason[:MAX_REASON_LENGTH],
        "PhysicalResourceId": physical_resource_id,
        "StackId": event.get("StackId"),
        "RequestId": event.get("RequestId"),
        "LogicalResourceId": event.get("LogicalResourceId"),
        "NoEcho": False,
        "Data": data or {},
    }


def send_response(event: dict, status: str, reason: str, physical_resource_id: str, data: dict | None = None) -> dict:
    """
    Report a custom resource result to CloudFormation.

    Args:
        event: The custom resource request event (carries ResponseURL)
        status: SUCCESS or FAILED
        reason: Human-readable reason, shown in the stack events
        physical_resource_id: Stable id of the provisioned resource
        data: Attributes exposed to Fn::GetAtt

    Returns:
        The response body that was sent
    """
    body = build_response(event, status, reason, physical_resource_id, data)
    response_url = event["ResponseURL"]
    logger.info(f"Sending {status} for {event.get('LogicalResourceId')} to CloudFormation: {reason}")

    payload = json.dumps(body, default=str)
    response = requests.put(
        response_url,
        data=payload,
        headers={"Content-Type": "", "Content-Length": str(len(payload))},
        timeout=10,
    )
    response.raise_for_status()
    return body
