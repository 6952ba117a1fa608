"""
Abuse-control exception hierarchy
"""

from typing import List, Optional


class AbuseControlError(Exception):
    """Base class for every error raised by the abuse-control services"""


class ValidationError(AbuseControlError):
    """Bad override or quota input. Reported to the caller, never retried."""

    def __init__(self, errors):
        if isinstance(errors, str):
            errors = [errors]
        self.errors: List[str] = list(errors)
        super().__init__("; ".join(self.errors))


class NotFoundError(AbuseControlError):
    """Unknown project, suspension or override id"""

    def __init__(self, resource: str, resource_id):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found: {resource_id}")


class StorageError(AbuseControlError):
    """Transient failure of the relational store"""


class DeliveryError(AbuseControlError):
    """Notification delivery failed on one channel"""

    def __init__(self, message: str, channel: Optional[str] = None, permanent: bool = False):
        self.channel = channel
        self.permanent = permanent
        super().__init__(message)


class QuotaExceededError(AbuseControlError):
    """Operation would exceed the project's hard cap"""

    def __init__(self, project_id, cap_type: str, current_usage: int, limit: int):
        self.project_id = project_id
        self.cap_type = cap_type
        self.current_usage = current_usage
        self.limit = limit
        super().__init__(
            f"Quota exceeded for {cap_type}: {current_usage}/{limit} (project {project_id})"
        )


class ProjectSuspendedError(AbuseControlError):
    """
    The project is suspended. Distinct from a generic failure so callers can
    show support-contact guidance instead of a retry hint.
    """

    def __init__(
        self,
        project_id,
        reason: Optional[dict] = None,
        support_email: Optional[str] = None,
        support_url: Optional[str] = None,
    ):
        self.project_id = project_id
        self.reason = reason or {}
        self.support_email = support_email
        self.support_url = support_url
        message = f"Project {project_id} is suspended"
        if support_email:
            message += f"; contact {support_email}"
        super().__init__(message)
