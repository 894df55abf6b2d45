"""Error taxonomy for the audit-execution core.

Validation errors are raised before any network call. Transient errors are
raised after the optimistic local change has been rolled back. Neither ends
the session: every operation can be retried once the cause is addressed.
"""


class AuditError(Exception):
    recoverable = True


class AuditValidationError(AuditError):
    pass


class SessionNotEditable(AuditValidationError):
    pass


class UnknownItem(AuditValidationError):
    pass


class UnknownEvidence(AuditValidationError):
    pass


class InvalidAnswer(AuditValidationError):
    pass


class EvidenceNotAllowed(AuditValidationError):
    pass


class EvidenceCapReached(AuditValidationError):
    pass


class EvidenceInFlight(AuditValidationError):
    pass


class InvalidImage(AuditValidationError):
    pass


class DocumentationIncomplete(AuditValidationError):
    pass


class InvalidTransition(AuditValidationError):
    pass


class FinalizeBlocked(AuditValidationError):
    def __init__(self, missing_item_ids):
        self.missing_item_ids = list(missing_item_ids)
        self.missing_count = len(self.missing_item_ids)
        super().__init__(f"{self.missing_count} mandatory items not evaluated")


class FinalizeRejected(AuditValidationError):
    pass


class TransientError(AuditError):
    def __init__(self, operation, cause):
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation} failed: {cause}")


class BackendUnavailable(Exception):
    pass


class BackendRejected(Exception):
    def __init__(self, status_code, message):
        self.status_code = status_code
        self.message = message
        super().__init__(f"[{status_code}] {message}")

    @property
    def is_validation(self):
        return 400 <= self.status_code < 500
