"""Error kinds raised by the deal workflow.

Rejections (ValidationError, ForbiddenError) are raised before any state
change. InfrastructureError propagates to the caller or task runner, which
applies retry/backoff. PrerequisiteError means "skip this cycle" and is
never surfaced to end users.
"""


class DealWorkflowError(Exception):
    """Base class for workflow errors."""

    code = "workflow_error"

    def __init__(self, message: str, code: str | None = None):
        self.message = message
        if code:
            self.code = code
        super().__init__(message)


class ValidationError(DealWorkflowError):
    """Illegal or unknown transition target."""

    code = "invalid_transition"


class ForbiddenError(DealWorkflowError):
    """Actor role is not permitted to request the target status."""

    code = "forbidden_actor"


class DealNotFoundError(DealWorkflowError):
    code = "deal_not_found"

    def __init__(self, deal_id: int):
        self.deal_id = deal_id
        super().__init__(f"Deal {deal_id} not found")


class InfrastructureError(DealWorkflowError):
    """Store, queue or collaborator unreachable."""

    code = "infrastructure_unavailable"


class PrerequisiteError(DealWorkflowError):
    """A precondition for a periodic check is missing; retried next cycle."""

    code = "prerequisite_missing"


class RuleTableError(DealWorkflowError):
    """The static transition rule table is inconsistent."""

    code = "invalid_rule_table"
