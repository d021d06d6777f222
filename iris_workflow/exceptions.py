"""Typed exceptions for the iris workflow.

Validation and collaborator failures travel as values (the state's error
list, Err results). These exceptions cover the places where raising is the
contract: unwrapping a failed result and misconfigured clients.
"""


class WorkflowError(Exception):
    """Base exception for workflow errors."""
    pass


class CollaboratorError(WorkflowError):
    """A collaborator returned a structured error record."""

    def __init__(self, record):
        self.record = record
        super().__init__(record.message)


class ProviderNotConfiguredError(WorkflowError):
    """A generation client was built without credentials."""
    pass
