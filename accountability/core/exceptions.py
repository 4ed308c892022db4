"""
Workflow engine exception hierarchy.

Services raise these types; the blueprint registers one handler per type
and maps them to HTTP status codes. Every error is recoverable by the
caller: either the input is corrected or, for StaleStateError, the
document is re-fetched and the request retried.

Usage:
    from accountability.core.exceptions import IllegalTransitionError, NotFoundError

    raise NotFoundError(resource="Report", resource_id=42)
    raise IllegalTransitionError("report", 42, "draft", "approved")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Report", "Committee").
        resource_id: The PK that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would create a duplicate unique constraint violation.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


# ── Workflow errors ──────────────────────────────────────────────────────────


class WorkflowError(Exception):
    """Base class for status / approval / forwarding / confidentiality errors."""


class IllegalTransitionError(WorkflowError):
    """The requested status change is not an edge of the transition table."""

    def __init__(
        self,
        document_type: str,
        document_id: int | None,
        from_status: str,
        to_status: str,
        reason: str | None = None,
    ) -> None:
        self.document_type = document_type
        self.document_id = document_id
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Cannot move {document_type} {document_id} from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class StaleStateError(WorkflowError):
    """The caller's expected status no longer matches the stored status.

    Refetch the document and retry.
    """

    def __init__(
        self,
        document_type: str,
        document_id: int,
        expected_status: str,
        actual_status: str | None,
    ) -> None:
        self.document_type = document_type
        self.document_id = document_id
        self.expected_status = expected_status
        self.actual_status = actual_status
        super().__init__(
            f"{document_type} {document_id} is '{actual_status}', expected '{expected_status}'"
        )


class NotAMemberError(WorkflowError):
    """The acting user is not an active member of the owning committee."""

    def __init__(self, user_id: int, committee_id: int) -> None:
        self.user_id = user_id
        self.committee_id = committee_id
        super().__init__(f"User {user_id} is not an active member of committee {committee_id}")


class SelfApprovalError(WorkflowError):
    """The report author tried to approve their own report."""

    def __init__(self, user_id: int, report_id: int) -> None:
        self.user_id = user_id
        self.report_id = report_id
        super().__init__(f"User {user_id} cannot approve their own report {report_id}")


class ChildrenNotClosedError(WorkflowError):
    """A directive cannot close while any forwarded child is still open."""

    def __init__(self, directive_id: int, open_child_ids: list[int]) -> None:
        self.directive_id = directive_id
        self.open_child_ids = list(open_child_ids)
        super().__init__(
            f"Directive {directive_id} has {len(self.open_child_ids)} open child directive(s)"
        )


class InvalidForwardingTargetError(WorkflowError):
    """The forwarding target is outside the parent's committee subtree."""

    def __init__(self, parent_directive_id: int, target_committee_id: int, reason: str | None = None) -> None:
        self.parent_directive_id = parent_directive_id
        self.target_committee_id = target_committee_id
        msg = (
            f"Directive {parent_directive_id} cannot be forwarded to committee "
            f"{target_committee_id}"
        )
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class CycleError(WorkflowError):
    """Linking the source would make a report its own ancestor."""

    def __init__(self, summary_report_id: int, source_report_id: int) -> None:
        self.summary_report_id = summary_report_id
        self.source_report_id = source_report_id
        super().__init__(
            f"Linking report {source_report_id} as a source of {summary_report_id} would create a cycle"
        )


class DuplicateLinkError(WorkflowError):
    """The (summary, source) pair is already linked."""

    def __init__(self, summary_report_id: int, source_report_id: int) -> None:
        self.summary_report_id = summary_report_id
        self.source_report_id = source_report_id
        super().__init__(
            f"Report {source_report_id} is already a source of {summary_report_id}"
        )


class AccessDeniedError(WorkflowError):
    """The viewer may not see or act on a confidential item.

    The message deliberately names only the item, never the marking reason.
    """

    def __init__(self, item_type: str, item_id: int, user_id: int | None) -> None:
        self.item_type = item_type
        self.item_id = item_id
        self.user_id = user_id
        super().__init__(f"Access denied to {item_type} {item_id}")
