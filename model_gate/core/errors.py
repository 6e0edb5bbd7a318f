"""
Error taxonomy for the decision engine.
"""


class ModelGateError(Exception):
    """Base class for all Model Gate errors."""


class ConfigurationError(ModelGateError, ValueError):
    """Policy configuration is missing or invalid. Fatal at startup."""


class UnknownModel(ModelGateError, KeyError):
    """No pricing exists for the requested model."""

    def __init__(self, model: str):
        super().__init__(f"Unsupported model: {model}")
        self.model = model

    def __str__(self) -> str:
        return self.args[0]


class ApprovalNotFound(ModelGateError, LookupError):
    """No pending approval record with the given id."""

    def __init__(self, approval_id: str, message: str = ""):
        super().__init__(message or f"Approval not found: {approval_id}")
        self.approval_id = approval_id


class ApprovalAlreadyDecided(ApprovalNotFound):
    """The approval record exists but already has a terminal disposition."""

    def __init__(self, approval_id: str, disposition: str):
        super().__init__(
            approval_id,
            f"Approval {approval_id} already decided: {disposition}",
        )
        self.disposition = disposition


class PersistenceFailure(ModelGateError):
    """A ledger or approval-queue read or write failed."""
