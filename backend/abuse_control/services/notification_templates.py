"""
Notification subject/body templates
"""

from typing import Dict, Tuple

from ..config import Settings
from ..models.database import Project, Suspension


def _project_label(project: Project) -> str:
    return project.name or str(project.id)


def _support_footer(settings: Settings) -> str:
    return (
        f"Need help? Contact {settings.SUPPORT_EMAIL} or visit {settings.SUPPORT_URL}.\n"
    )


def project_suspended(project: Project, suspension: Suspension, settings: Settings) -> Tuple[str, str]:
    organization = project.organization_name or "your organization"
    reason: Dict = suspension.reason or {}
    cap_type = reason.get("cap_type", "unknown")

    subject = f'[URGENT] Project "{_project_label(project)}" Suspended - {organization}'
    body = (
        f'Your project "{_project_label(project)}" has been suspended.\n\n'
        f"Reason: {reason.get('details') or 'Hard cap exceeded'}\n"
        f"Cap type: {cap_type}\n"
        f"Current value: {reason.get('current_value')}\n"
        f"Limit: {reason.get('limit_exceeded')}\n"
        f"Suspended at: {suspension.suspended_at.isoformat()} UTC\n\n"
        "While suspended, API requests, database queries, realtime connections, "
        "storage uploads and function invocations for this project are rejected.\n\n"
        "To resolve this:\n"
        "  1. Review recent usage in the project dashboard.\n"
        "  2. Identify and stop the workload that caused the excess usage.\n"
        "  3. Contact support to request reactivation or a higher limit.\n\n"
        + _support_footer(settings)
    )
    return subject, body


def project_unsuspended(project: Project, notes: str, settings: Settings) -> Tuple[str, str]:
    subject = f'Project "{_project_label(project)}" Reactivated'
    body = (
        f'Your project "{_project_label(project)}" has been reactivated and is '
        "accepting requests again.\n\n"
        + (f"Notes: {notes}\n\n" if notes else "")
        + _support_footer(settings)
    )
    return subject, body


def quota_warning(project: Project, cap_type: str, usage: int, limit: int, level: int, settings: Settings) -> Tuple[str, str]:
    subject = f'Project "{_project_label(project)}" at {level}% of its {cap_type} limit'
    body = (
        f'Your project "{_project_label(project)}" has used {usage} of {limit} '
        f"for {cap_type} ({level}% threshold reached).\n"
        "The project will be suspended automatically if the limit is exceeded.\n\n"
        + _support_footer(settings)
    )
    return subject, body


def detection_alert(project: Project, title: str, description: str, severity: str, action: str, settings: Settings) -> Tuple[str, str]:
    subject = f'[{severity.upper()}] {title} - "{_project_label(project)}"'
    body = (
        f"{description}\n\n"
        f"Severity: {severity}\n"
        f"Action taken: {action}\n\n"
        + _support_footer(settings)
    )
    return subject, body
