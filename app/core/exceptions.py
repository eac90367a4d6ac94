"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere. Messages are written for
end users and are surfaced largely unmodified.

Usage:
    from app.core.exceptions import NotFoundError, IllegalTransitionError

    raise NotFoundError(resource="File", resource_id=42)
    raise IllegalTransitionError(action="APPROVE", state="DRAFT")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "File", "Department").
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

    Distinct from HTTP 400 (malformed input, caught in blueprint) — this
    exception signals that the data was well-formed but violated a business
    rule (e.g. editing a file outside DRAFT/RETURNED, empty template).

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would create a duplicate (e.g. a second active
    template for the same scope).

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None, message: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(message or f"{resource} with {field}={value!r} already exists")


class ForbiddenError(Exception):
    """Raised when the caller lacks the ownership or role an action requires.

    Maps to HTTP 403.
    """

    def __init__(self, message: str, user_id: int | None = None, action: str | None = None) -> None:
        self.user_id = user_id
        self.action = action
        super().__init__(message)


# ── Workflow execution ───────────────────────────────────────────────────────


class UnknownActionError(Exception):
    """Raised when an action name is not part of the workflow vocabulary."""

    def __init__(self, action: str) -> None:
        self.action = action
        super().__init__(f"Unknown action: {action}")


class IllegalTransitionError(Exception):
    """Raised when an action is not legal from the file's current state.

    Maps to HTTP 409. Also what the losing side of a concurrent transition
    sees once it re-reads the locked row.
    """

    def __init__(self, action: str, state: str, file_id: int | None = None) -> None:
        self.action = action
        self.state = state
        self.file_id = file_id
        super().__init__(f'Action "{action}" is not allowed in state "{state}"')


# ── Workflow configuration ───────────────────────────────────────────────────


class WorkflowConfigurationError(Exception):
    """Base for template-selection failures. Both block file creation."""

    def __init__(self, message: str, department_id: int | None, document_type: str | None) -> None:
        self.department_id = department_id
        self.document_type = document_type
        super().__init__(message)


class ConfigurationConflictError(WorkflowConfigurationError):
    """More than one active template matches at the same resolution tier."""

    def __init__(
        self,
        department_id: int | None,
        document_type: str | None,
        tier: str,
        template_ids: list[int] | None = None,
    ) -> None:
        self.tier = tier
        self.template_ids = list(template_ids or [])
        msg = (
            f"Workflow configuration conflict: {len(self.template_ids)} active templates "
            f"match department={department_id} document_type={document_type!r} "
            f"at tier {tier} (template ids: {self.template_ids}). "
            f"An administrator must deactivate all but one."
        )
        super().__init__(msg, department_id, document_type)


class NoWorkflowConfiguredError(WorkflowConfigurationError):
    """No tier produced an active template."""

    def __init__(self, department_id: int | None, document_type: str | None, tiers_checked: list[str]) -> None:
        self.tiers_checked = list(tiers_checked)
        msg = (
            f"No workflow configured for department={department_id} "
            f"document_type={document_type!r}. Checked: {', '.join(self.tiers_checked)}. "
            f"An administrator must configure a workflow template before files can be created."
        )
        super().__init__(msg, department_id, document_type)
