"""
Exceptions raised by the report engine.

Validation and lookup failures reuse Django's exception hierarchy so that
views and tasks can handle them the same way as model errors.
"""
from django.core.exceptions import ObjectDoesNotExist, ValidationError


class ScoreValidationError(ValidationError):
    """A score, term or coefficient outside its allowed range."""


class NotFoundError(ObjectDoesNotExist):
    """A referenced student, class or subject does not exist."""

    def __init__(self, kind, identifier):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f'{kind} {identifier} not found')


class IncompleteDataWarning(UserWarning):
    """
    Not an error: attached to reports whose data is partial
    (a missing term, a student with no recorded score).
    """

    def __init__(self, message, term=None):
        self.term = term
        super().__init__(message)

    def __str__(self):
        return self.args[0]


class ReportCancelled(Exception):
    """A batch report run was cancelled or ran past its deadline."""
