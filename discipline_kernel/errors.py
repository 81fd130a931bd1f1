"""
Error taxonomy for the discipline kernel.

ValidationError and InvalidStateError reject a call without mutating anything.
The two enforcement errors (BindingViolationError, ActionLockedError) are the
exception: the rejected attempt itself is recorded before the error reaches
the caller.
ConcurrencyError asks the caller to retry once the in-flight tick completes.
PersistenceError never undoes in-memory lock/pressure/debt state.
"""


class DisciplineError(Exception):
    """Base class for every error raised by the kernel."""
    pass


class ValidationError(DisciplineError):
    """Raised on malformed input: non-positive units, empty name, bad schedule."""
    pass


class ObligationNotFoundError(ValidationError):
    """Raised when an operation names an obligation that does not exist."""

    def __init__(self, obligation_id: str):
        super().__init__(f"Obligation not found: {obligation_id}")
        self.obligation_id = obligation_id


class InvalidStateError(DisciplineError):
    """Raised when an operation is not permitted in the current state."""
    pass


class ActionLockedError(InvalidStateError):
    """Raised when a blocked action is attempted while the system is locked."""

    def __init__(self, obligation_id: str, attempted_action: str):
        super().__init__(
            f"EXECUTION REQUIRED: Cannot {attempted_action}. "
            f"Obligation [{obligation_id}] unresolved. Complete execution to unlock."
        )
        self.obligation_id = obligation_id
        self.attempted_action = attempted_action


class BindingViolationError(InvalidStateError):
    """Raised when a BINDING or BOUND obligation is deleted, rescheduled or modified."""

    def __init__(self, obligation_id: str, attempted_operation: str, current_status: str):
        super().__init__(
            f"ENFORCEMENT VIOLATION: Cannot {attempted_operation} obligation "
            f"[{obligation_id}] in {current_status} state. Obligation is locked."
        )
        self.obligation_id = obligation_id
        self.attempted_operation = attempted_operation
        self.current_status = current_status


class ConcurrencyError(DisciplineError):
    """Raised when tick is re-entered while another tick is in flight."""
    pass


class PersistenceError(DisciplineError):
    """Raised by durable store collaborators when load or save fails."""
    pass
