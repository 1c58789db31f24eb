"""Fetch CloudFormation resource statuses for a single stack.

Wraps the ``DescribeStackResources`` call and turns its raw records into
:class:`StackResource` values. Failures are wrapped in :class:`FetchError`
with the original botocore exception kept as the cause; retry policy is
left to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

LOG = logging.getLogger(__name__)

MISSING_IDENTIFIER = "?"


# ── Statuses ───────────────────────────────────────────────────────────────


class ResourceStatus(str, Enum):
    CREATE_IN_PROGRESS = "CREATE_IN_PROGRESS"
    CREATE_FAILED = "CREATE_FAILED"
    CREATE_COMPLETE = "CREATE_COMPLETE"
    DELETE_IN_PROGRESS = "DELETE_IN_PROGRESS"
    DELETE_FAILED = "DELETE_FAILED"
    DELETE_COMPLETE = "DELETE_COMPLETE"
    DELETE_SKIPPED = "DELETE_SKIPPED"
    UPDATE_IN_PROGRESS = "UPDATE_IN_PROGRESS"
    UPDATE_FAILED = "UPDATE_FAILED"
    UPDATE_COMPLETE = "UPDATE_COMPLETE"
    IMPORT_FAILED = "IMPORT_FAILED"
    IMPORT_COMPLETE = "IMPORT_COMPLETE"
    IMPORT_IN_PROGRESS = "IMPORT_IN_PROGRESS"
    IMPORT_ROLLBACK_IN_PROGRESS = "IMPORT_ROLLBACK_IN_PROGRESS"
    IMPORT_ROLLBACK_FAILED = "IMPORT_ROLLBACK_FAILED"
    IMPORT_ROLLBACK_COMPLETE = "IMPORT_ROLLBACK_COMPLETE"
    UPDATE_ROLLBACK_IN_PROGRESS = "UPDATE_ROLLBACK_IN_PROGRESS"
    UPDATE_ROLLBACK_COMPLETE = "UPDATE_ROLLBACK_COMPLETE"
    UPDATE_ROLLBACK_FAILED = "UPDATE_ROLLBACK_FAILED"
    ROLLBACK_IN_PROGRESS = "ROLLBACK_IN_PROGRESS"
    ROLLBACK_COMPLETE = "ROLLBACK_COMPLETE"
    ROLLBACK_FAILED = "ROLLBACK_FAILED"


class StatusCategory(Enum):
    """Display grouping of resource statuses."""

    SUCCESS = "success"
    IN_PROGRESS = "in progress"
    FAILURE = "failure"
    UNKNOWN = "unknown"


_CATEGORIES: dict[str, StatusCategory] = {
    ResourceStatus.CREATE_COMPLETE.value: StatusCategory.SUCCESS,
    ResourceStatus.UPDATE_COMPLETE.value: StatusCategory.SUCCESS,
    ResourceStatus.DELETE_COMPLETE.value: StatusCategory.SUCCESS,
    ResourceStatus.ROLLBACK_COMPLETE.value: StatusCategory.SUCCESS,
    ResourceStatus.CREATE_IN_PROGRESS.value: StatusCategory.IN_PROGRESS,
    ResourceStatus.UPDATE_IN_PROGRESS.value: StatusCategory.IN_PROGRESS,
    ResourceStatus.DELETE_IN_PROGRESS.value: StatusCategory.IN_PROGRESS,
    ResourceStatus.ROLLBACK_IN_PROGRESS.value: StatusCategory.IN_PROGRESS,
    ResourceStatus.CREATE_FAILED.value: StatusCategory.FAILURE,
    ResourceStatus.UPDATE_FAILED.value: StatusCategory.FAILURE,
    ResourceStatus.DELETE_FAILED.value: StatusCategory.FAILURE,
    ResourceStatus.ROLLBACK_FAILED.value: StatusCategory.FAILURE,
}


def status_category(status: str) -> StatusCategory:
    """Map a raw status string to its display category."""
    if isinstance(status, ResourceStatus):
        status = status.value
    return _CATEGORIES.get(status, StatusCategory.UNKNOWN)


# ── Data types ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class StackResource:
    identifier: str  # logical resource id, "?" when missing
    status: str  # verbatim from the API
    reason: str | None = None

    @property
    def category(self) -> StatusCategory:
        return status_category(self.status)


class FetchError(Exception):
    """A describe call against a stack failed.

    The botocore exception is kept on ``cause`` (and as ``__cause__``) so
    callers can still tell service errors from transport errors.
    """

    def __init__(self, stack_name: str, cause: Exception) -> None:
        self.stack_name = stack_name
        self.cause = cause
        super().__init__(f"describing resources of stack {stack_name}: {self.message}")

    @property
    def is_service_error(self) -> bool:
        return isinstance(self.cause, ClientError)

    @property
    def code(self) -> str | None:
        if isinstance(self.cause, ClientError):
            return self.cause.response.get("Error", {}).get("Code")
        return None

    @property
    def message(self) -> str:
        if isinstance(self.cause, ClientError):
            return self.cause.response.get("Error", {}).get("Message", "")
        return str(self.cause)


# ── Client construction ────────────────────────────────────────────────────


class _UnconfiguredClient:
    """Stands in for a client that could not be built.

    Every describe call re-raises the configuration error so it surfaces
    through the normal fetch/classify path.
    """

    def __init__(self, error: BotoCoreError) -> None:
        self.error = error

    def describe_stack_resources(self, **_kwargs: Any) -> dict[str, Any]:
        raise self.error


def make_client(
    region: str | None = None,
    profile: str | None = None,
    endpoint_url: str | None = None,
) -> Any:
    """Build a CloudFormation client from the boto3 default chain.

    Empty arguments are left to boto3. A configuration failure is logged
    and yields a degraded client whose calls fail with that error.
    """
    try:
        session = boto3.Session(
            region_name=region or None,
            profile_name=profile or None,
        )
        return session.client("cloudformation", endpoint_url=endpoint_url or None)
    except BotoCoreError as e:
        LOG.warning("error loading AWS configuration: %s", e)
        return _UnconfiguredClient(e)


# ── Fetcher ────────────────────────────────────────────────────────────────


def _to_resource(record: dict[str, Any]) -> StackResource:
    return StackResource(
        identifier=record.get("LogicalResourceId") or MISSING_IDENTIFIER,
        status=record.get("ResourceStatus") or "",
        reason=record.get("ResourceStatusReason") or None,
    )


class StatusFetcher:
    """Describes every resource of one stack, one call per ``fetch``."""

    def __init__(self, stack_name: str, client: Any) -> None:
        self.stack_name = stack_name
        self.client = client

    def fetch(self) -> list[StackResource]:
        try:
            response = self.client.describe_stack_resources(StackName=self.stack_name)
        except (ClientError, BotoCoreError) as e:
            raise FetchError(self.stack_name, e) from e

        records: list[dict[str, Any]] = response.get("StackResources", [])
        resources = [_to_resource(r) for r in records]
        LOG.debug("fetched %d resources for stack %s", len(resources), self.stack_name)
        return resources
