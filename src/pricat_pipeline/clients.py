# src/pricat_pipeline/clients.py

"""
Client wrappers for the AWS services the pipeline talks to (SQS, DynamoDB).

These classes provide a narrow, typed interface over raw boto3 clients and
translate botocore failures into the pipeline's retryable / non-retryable
exception hierarchy, so the consumer runtime can classify them uniformly.
"""

import json
import logging
from typing import TYPE_CHECKING, Any

import boto3
from botocore.config import Config
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from .exceptions import QueuePublishError, QueueUnavailableError

if TYPE_CHECKING:
    from mypy_boto3_sqs.client import SQSClient as SQSClientType

logger = logging.getLogger(__name__)

# botocore errors that mean "the dependency is unreachable right now".
TRANSIENT_CONNECTION_ERRORS = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
)

THROTTLING_ERROR_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "ProvisionedThroughputExceededException",
    "RequestThrottled",
    "TooManyRequestsException",
}


def build_boto_client(service_name: str, timeout_seconds: int, max_attempts: int = 3):
    """
    Creates a boto3 client whose calls can never block indefinitely: every
    request is bounded by connect/read timeouts and a capped retry budget.
    """
    config = Config(
        connect_timeout=timeout_seconds,
        read_timeout=timeout_seconds,
        retries={"max_attempts": max_attempts, "mode": "standard"},
    )
    return boto3.client(service_name, config=config)


class SqsClient:
    """
    A wrapper for the SQS operations used by the consumers and the publisher.
    """

    def __init__(self, sqs_client: "SQSClientType"):
        self._client = sqs_client

    def send_json(
        self,
        queue_url: str,
        payload: dict[str, Any],
        attributes: dict[str, str] | None = None,
    ) -> str:
        """Serializes *payload* and enqueues it. Returns the broker message id."""
        message_attributes = {
            name: {"DataType": "String", "StringValue": value}
            for name, value in (attributes or {}).items()
        }
        try:
            response = self._client.send_message(
                QueueUrl=queue_url,
                MessageBody=json.dumps(payload, separators=(",", ":")),
                MessageAttributes=message_attributes,
            )
        except ClientError as e:
            error_code = e.response["Error"]["Code"]
            raise QueuePublishError(
                queue_url,
                context={
                    "aws_error_code": error_code,
                    "aws_error_message": e.response["Error"].get("Message"),
                    "throttled": error_code in THROTTLING_ERROR_CODES,
                },
            ) from e
        except TRANSIENT_CONNECTION_ERRORS as e:
            raise QueuePublishError(
                queue_url, context={"connection_error": str(e)}
            ) from e
        return response["MessageId"]

    def send_raw(
        self,
        queue_url: str,
        body: str,
        attributes: dict[str, str] | None = None,
    ) -> str:
        """Enqueues an already-serialized body unchanged (used for dead-lettering)."""
        message_attributes = {
            name: {"DataType": "String", "StringValue": value}
            for name, value in (attributes or {}).items()
        }
        try:
            response = self._client.send_message(
                QueueUrl=queue_url,
                MessageBody=body,
                MessageAttributes=message_attributes,
            )
        except ClientError as e:
            raise QueuePublishError(
                queue_url,
                context={"aws_error_code": e.response["Error"]["Code"]},
            ) from e
        except TRANSIENT_CONNECTION_ERRORS as e:
            raise QueuePublishError(
                queue_url, context={"connection_error": str(e)}
            ) from e
        return response["MessageId"]

    def receive(
        self, queue_url: str, max_messages: int = 10, wait_seconds: int = 20
    ) -> list[dict[str, Any]]:
        """Long-polls the queue. Returns raw SQS message dicts."""
        try:
            response = self._client.receive_message(
                QueueUrl=queue_url,
                MaxNumberOfMessages=max_messages,
                WaitTimeSeconds=wait_seconds,
                AttributeNames=["ApproximateReceiveCount"],
                MessageAttributeNames=["All"],
            )
        except ClientError as e:
            raise QueueUnavailableError(
                "ReceiveMessage",
                queue_url,
                context={"aws_error_code": e.response["Error"]["Code"]},
            ) from e
        except TRANSIENT_CONNECTION_ERRORS as e:
            raise QueueUnavailableError(
                "ReceiveMessage", queue_url, context={"connection_error": str(e)}
            ) from e
        return response.get("Messages", [])

    def delete(self, queue_url: str, receipt_handle: str) -> None:
        try:
            self._client.delete_message(QueueUrl=queue_url, ReceiptHandle=receipt_handle)
        except (ClientError, *TRANSIENT_CONNECTION_ERRORS) as e:
            # The message becomes visible again and is redelivered; the
            # idempotent handlers absorb the duplicate.
            raise QueueUnavailableError(
                "DeleteMessage", queue_url, context={"error": str(e)}
            ) from e

    def change_visibility(
        self, queue_url: str, receipt_handle: str, timeout_seconds: int
    ) -> None:
        try:
            self._client.change_message_visibility(
                QueueUrl=queue_url,
                ReceiptHandle=receipt_handle,
                VisibilityTimeout=timeout_seconds,
            )
        except (ClientError, *TRANSIENT_CONNECTION_ERRORS) as e:
            raise QueueUnavailableError(
                "ChangeMessageVisibility", queue_url, context={"error": str(e)}
            ) from e

    def ping(self, queue_url: str) -> bool:
        """Returns True when the queue answers a metadata request."""
        try:
            self._client.get_queue_attributes(
                QueueUrl=queue_url, AttributeNames=["ApproximateNumberOfMessages"]
            )
        except (ClientError, *TRANSIENT_CONNECTION_ERRORS):
            logger.warning("Queue health check failed.", extra={"queue_url": queue_url})
            return False
        return True
