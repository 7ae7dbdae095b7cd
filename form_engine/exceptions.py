"""
Custom exception classes for the form engine.

Each class maps to one kind of failure the engine knows how to recover from:
descriptor mistakes made by the page author, schema files that cannot be read,
update-mode data loads, attachment rejections and persistence failures.
"""

import logging
from typing import Optional, Dict, Any, List
from pathlib import Path

logger = logging.getLogger(__name__)


class FormEngineError(Exception):
    """
    Base exception for form engine errors.
    
    Attributes:
        message: Error message
        context: Additional context information
        recovery_suggestions: List of suggested recovery actions
    """
    
    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None, 
                 recovery_suggestions: Optional[List[str]] = None):
        self.message = message
        self.context = context or {}
        self.recovery_suggestions = recovery_suggestions or []
        super().__init__(self.message)
    
    def __str__(self) -> str:
        return self.message
    
    def get_full_details(self) -> Dict[str, Any]:
        """Get complete error details including context and suggestions."""
        return {
            'error_type': self.__class__.__name__,
            'message': self.message,
            'context': self.context,
            'recovery_suggestions': self.recovery_suggestions
        }


class FieldDescriptorError(FormEngineError):
    """
    Raised when a list of field descriptors breaks a form invariant.

    Examples are duplicate names, a paginated select without a reference
    configuration, or a dependency on a field that is not part of the form.
    """

    def __init__(self, message: str, field_name: Optional[str] = None):
        self.field_name = field_name
        context = {'field_name': field_name} if field_name else {}
        super().__init__(message, context, [
            "Check the field list declared by the page",
            "Field names must be unique within one form"
        ])


class SchemaLoadError(FormEngineError):
    """
    Exception raised when a form schema file cannot be loaded.
    
    This includes YAML parsing errors, file not found, invalid field entries, etc.
    """
    
    def __init__(self, schema_path: Path, original_error: Exception, 
                 message: Optional[str] = None):
        self.schema_path = schema_path
        self.original_error = original_error
        
        if message is None:
            message = f"Failed to load form schema from {schema_path}: {str(original_error)}"
        
        context = {
            'schema_path': str(schema_path),
            'original_error_type': type(original_error).__name__,
            'original_error_message': str(original_error)
        }
        
        recovery_suggestions = [
            "Check if the schema file exists and is readable",
            "Verify YAML syntax is correct",
            "Make sure every field has a name and a known kind"
        ]
        
        super().__init__(message, context, recovery_suggestions)


class DataLoadError(FormEngineError):
    """Raised when the initial entity load of an update form fails."""

    def __init__(self, entity_id: Any, original_error: Exception):
        self.entity_id = entity_id
        self.original_error = original_error
        message = getattr(original_error, 'message', None) or str(original_error) or "Failed to load data"
        super().__init__(message, {
            'entity_id': entity_id,
            'original_error_type': type(original_error).__name__
        }, ["Retry loading the record", "Go back to the list and open the record again"])


class AttachmentError(FormEngineError):
    """Raised when a chosen file is rejected by size or type."""

    def __init__(self, message: str, field_name: str, file_name: Optional[str] = None):
        self.field_name = field_name
        self.file_name = file_name
        super().__init__(message, {'field_name': field_name, 'file_name': file_name})


class SubmissionError(FormEngineError):
    """Raised when the persistence call of a form rejects."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.original_error = original_error
        context = {}
        if original_error is not None:
            context['original_error_type'] = type(original_error).__name__
        super().__init__(message, context, ["Correct the highlighted data and submit again"])


class CatalogAPIError(FormEngineError):
    """
    Raised by the catalog HTTP adapter when the remote API answers with an error.

    The message is the server supplied one when the response carries it.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, url: Optional[str] = None):
        self.status_code = status_code
        self.url = url
        super().__init__(message, {'status_code': status_code, 'url': url})


def error_message(error: BaseException, default: str = "An error occurred") -> str:
    """Extract the human readable message carried by an exception."""
    message = getattr(error, 'message', None)
    if isinstance(message, str) and message:
        return message
    text = str(error)
    return text if text else default
