"""
Error taxonomy shared by every component.

AWS API failures surface as botocore ClientError; translate_client_error maps
them onto the kinds the engine reasons about (retry or not, terminal or not).
"""

import logging
import time

from botocore.exceptions import ClientError, ConnectionError as BotoConnectionError

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {
    "AccountNotFoundException",
    "ChildNotFoundException",
    "NoSuchEntity",
    "OrganizationalUnitNotFoundException",
    "ParentNotFoundException",
    "ResourceNotFoundException",
    "RootNotFoundException",
    "StackSetNotFoundException",
    "OperationNotFoundException",
    "TargetNotFoundException",
}

TRANSIENT_CODES = {
    "ConcurrentModificationException",
    "InternalFailure",
    "OperationInProgressException",
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
    "ServiceException",
    "ServiceUnavailable",
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
}

AUTHORIZATION_CODES = {
    "AccessDenied",
    "AccessDeniedException",
    "AWSOrganizationsNotInUseException",
    "ExpiredToken",
    "InvalidClientTokenId",
    "UnauthorizedOperation",
    "UnrecognizedClientException",
}


class TaggingError(Exception):
    """Base error. Carries the target identifier and an actionable cause."""

    kind = "TaggingError"

    def __init__(self, message: str, target: str | None = None):
        super().__init__(message)
        self.message = message
        self.target = target

    def to_dict(self) -> dict:
        return {"target": self.target, "kind": self.kind, "cause": self.message}


class NotFoundError(TaggingError):
    kind = "NotFoundError"


class TransientError(TaggingError):
    kind = "TransientError"


class AuthorizationError(TaggingError):
    kind = "AuthorizationError"


class EmptyTargetError(TaggingError):
    kind = "EmptyTargetError"


class DeliveryError(TaggingError):
    """The compliance verdict could not be handed to the monitoring service."""

    kind = "DeliveryError"


class PartialFailure(TaggingError):
    """Some sub-items failed; the rest of the operation completed."""

    kind = "PartialFailure"

    def __init__(self, message: str, failures: list, target: str | None = None):
        super().__init__(message, target)
        self.failures = failures

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["failures"] = list(self.failures)
        return data


def translate_client_error(error: Exception, target: str | None = None) -> TaggingError:
    """Map a botocore error onto the engine's taxonomy."""
    if isinstance(error, TaggingError):
        return error
    if isinstance(error, BotoConnectionError):
        return TransientError(f"connection error: {error}", target)
    if not isinstance(error, ClientError):
        return TaggingError(str(error), target)

    code = error.response.get("Error", {}).get("Code", "")
    message = error.response.get("Error", {}).get("Message", str(error))
    if code in NOT_FOUND_CODES:
        return NotFoundError(f"{code}: {message}", target)
    if code in TRANSIENT_CODES:
        return TransientError(f"{code}: {message}", target)
    if code in AUTHORIZATION_CODES:
        return AuthorizationError(f"{code}: {message}", target)
    return TaggingError(f"{code}: {message}", target)


def call_with_retry(fn, *args, attempts: int = 4, base_delay: float = 0.5, max_delay: float = 8.0, target: str | None = None, **kwargs):
    """
    Call fn, retrying TransientError with exponential backoff.

    ClientErrors raised by fn are translated first, so callers can hand boto3
    methods in directly. Every other error kind propagates on the first failure.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn(*args, **kwargs)
        except (ClientError, BotoConnectionError) as e:
            error = translate_client_error(e, target)
            if not isinstance(error, TransientError):
                raise error from e
        except TransientError as e:
            error = e

        if attempt >= attempts:
            logger.warning(f"Giving up on {target or getattr(fn, '__name__', fn)} after {attempt} attempts: {error.message}")
            raise error
        delay = min(max_delay, base_delay * (2 ** (attempt - 1)))
        logger.info(f"Transient failure on {target or getattr(fn, '__name__', fn)} (attempt {attempt}/{attempts}), retrying in {delay}s")
        time.sleep(delay)
