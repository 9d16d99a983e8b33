class PhaseGateError(Exception):
    """Base exception for the phase gate service."""

    pass


class PhaseNotFoundError(PhaseGateError):
    """Raised when a (project, phase) pair is unknown."""

    code = "not_found"

    def __init__(self, project_id: str, phase_number: int):
        self.project_id = project_id
        self.phase_number = phase_number
        super().__init__(f"Phase {phase_number} of project '{project_id}' not found")


class FactProviderError(PhaseGateError):
    """Raised when gate facts cannot be fetched. Callers must treat the gate as blocked."""

    code = "facts_unavailable"


class StorageError(PhaseGateError):
    """Raised when a gate or audit transaction fails to commit."""

    code = "storage_error"


class AuditImmutableError(PhaseGateError):
    """Raised on any attempt to modify or delete an audit entry."""

    pass


class OverrideError(PhaseGateError):
    """Base for every rejection of a forced override request."""

    code = "override_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class UnauthorizedError(OverrideError):
    """Actor lacks the override role for the failing rule's category."""

    code = "unauthorized"


class ValidationFailedError(OverrideError):
    """Reason too short or confirmation phrase does not match exactly."""

    code = "validation_failed"


class StaleError(OverrideError):
    """Phase is no longer pending and blocked at the moment of override."""

    code = "stale"


class AlreadyOverriddenError(OverrideError):
    """Another override for the same phase won the race."""

    code = "already_overridden"
