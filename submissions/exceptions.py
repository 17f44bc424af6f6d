"""
Submission pipeline errors.

Eligibility and validation errors reach the submitter; externalization
and dispatch errors never do.
"""

from typing import Dict, List

from formbuilder.validation import flatten_errors


class SubmissionError(Exception):
    """Base class for submission pipeline errors"""
    pass


class FormNotFoundError(SubmissionError):
    pass


class SubmissionNotFoundError(SubmissionError):
    pass


class EligibilityError(SubmissionError):
    """The form does not accept this submission right now"""

    NOT_PUBLISHED = 'not_published'
    NOT_OPEN_YET = 'not_open_yet'
    CLOSED = 'closed'
    AUTHENTICATION_REQUIRED = 'authentication_required'
    QUOTA_REACHED = 'quota_reached'
    ALREADY_SUBMITTED = 'already_submitted'

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    def as_dict(self):
        return {'code': self.code, 'message': self.message}


class SubmissionValidationError(SubmissionError):
    """Submitted data failed validation; carries field id -> messages"""

    def __init__(self, errors: Dict[str, List[str]], message: str = 'Form validation failed'):
        super().__init__(message)
        self.message = message
        self.errors = errors

    @property
    def error_messages(self) -> List[str]:
        return flatten_errors(self.errors)

    def as_dict(self):
        return {
            'message': self.message,
            'errors': self.errors,
            'errorMessages': self.error_messages,
        }


class ExternalizationError(SubmissionError):
    """An attachment could not be moved to the blob store"""
    pass
