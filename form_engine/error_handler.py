"""
Error handling utilities for the admin console.
Maps failures to the form engine's error kinds and shows user-friendly messages with recovery options.
"""

import streamlit as st
import logging
import traceback
from typing import Dict, Any, Optional, Callable, List

import httpx
import yaml

from .exceptions import (
    AttachmentError, CatalogAPIError, DataLoadError, FieldDescriptorError,
    FormEngineError, SchemaLoadError, SubmissionError
)

logger = logging.getLogger(__name__)


class ErrorType:
    """Error type constants."""
    FIELD_VALIDATION = "field_validation"
    DATA_LOAD = "data_load"
    ATTACHMENT = "attachment"
    SUBMISSION = "submission"
    SCHEMA = "schema"
    NETWORK = "network"
    SYSTEM = "system"


_EXCEPTION_TYPES = [
    (DataLoadError, ErrorType.DATA_LOAD),
    (AttachmentError, ErrorType.ATTACHMENT),
    (SubmissionError, ErrorType.SUBMISSION),
    (SchemaLoadError, ErrorType.SCHEMA),
    (FieldDescriptorError, ErrorType.SCHEMA),
    (CatalogAPIError, ErrorType.NETWORK),
    (httpx.HTTPError, ErrorType.NETWORK),
    (ConnectionError, ErrorType.NETWORK),
    (TimeoutError, ErrorType.NETWORK),
    (ValueError, ErrorType.FIELD_VALIDATION),
]


class ErrorHandler:
    """Error handling for the form engine and the console pages."""

    @staticmethod
    def classify(error: Exception) -> str:
        """Error type constant for an exception."""
        for exception_type, error_type in _EXCEPTION_TYPES:
            if isinstance(error, exception_type):
                return error_type
        return ErrorType.SYSTEM

    @staticmethod
    def handle_error(
        error: Exception,
        context: str,
        error_type: Optional[str] = None,
        user_message: Optional[str] = None,
        recovery_options: Optional[List[Dict[str, Any]]] = None,
        show_details: bool = False
    ) -> None:
        """
        Handle errors with user-friendly messages and recovery options.

        Args:
            error: The exception that occurred
            context: Context where the error occurred
            error_type: Type of error (from ErrorType constants), classified when omitted
            user_message: Custom user-friendly message
            recovery_options: List of recovery actions
            show_details: Whether to show technical details
        """
        logger.error(f"Error in {context}: {str(error)}", exc_info=True)

        if error_type is None:
            error_type = ErrorHandler.classify(error)
        if not user_message:
            user_message = ErrorHandler.get_user_friendly_message(error, error_type)

        ErrorHandler._display_error(user_message, error, context, recovery_options, show_details)

    @staticmethod
    def get_user_friendly_message(error: Exception, error_type: str) -> str:
        """Generate user-friendly error messages based on error type."""
        # messages written for users travel with the engine's own exceptions
        if isinstance(error, FormEngineError) and error.message:
            prefix = {
                ErrorType.DATA_LOAD: "📥",
                ErrorType.ATTACHMENT: "📎",
                ErrorType.SUBMISSION: "💾",
                ErrorType.SCHEMA: "📋",
                ErrorType.NETWORK: "🌐",
            }.get(error_type, "⚠️")
            return f"{prefix} {error.message}"

        error_messages = {
            ErrorType.SCHEMA: {
                yaml.YAMLError: "📋 Form schema contains invalid YAML. Please check the schema file.",
                FileNotFoundError: "📋 Form schema file not found.",
                "default": "📋 Form schema error occurred. Please check your schema files."
            },
            ErrorType.FIELD_VALIDATION: {
                ValueError: "✅ Data validation failed. Please check your input and try again.",
                "default": "✅ Validation error occurred. Please review your data and try again."
            },
            ErrorType.NETWORK: {
                httpx.TimeoutException: "⏱️ Request timed out. Please try again.",
                httpx.ConnectError: "🌐 Cannot reach the catalog API. Please check the API address.",
                "default": "🌐 Network error occurred. Please check your connection and try again."
            },
            ErrorType.DATA_LOAD: {
                "default": "📥 Failed to load the record. Please retry."
            },
            ErrorType.SUBMISSION: {
                "default": "💾 Saving failed. Your changes are kept, please try again."
            },
            ErrorType.ATTACHMENT: {
                "default": "📎 The chosen file was rejected."
            },
            ErrorType.SYSTEM: {
                "default": "💻 System error occurred. Please try again or contact support."
            }
        }

        error_type_messages = error_messages.get(error_type, error_messages[ErrorType.SYSTEM])

        for exception_type, message in error_type_messages.items():
            if exception_type != "default" and isinstance(error, exception_type):
                return message

        return error_type_messages.get("default", "An unexpected error occurred.")

    @staticmethod
    def _display_error(
        user_message: str,
        error: Exception,
        context: str,
        recovery_options: Optional[List[Dict[str, Any]]] = None,
        show_details: bool = False
    ) -> None:
        """Display error message to user with recovery options."""
        st.error(user_message)

        if isinstance(error, FormEngineError) and error.recovery_suggestions:
            st.markdown("\n".join(f"- {suggestion}" for suggestion in error.recovery_suggestions))

        if recovery_options:
            st.subheader("🔧 Suggested Actions:")

            for i, option in enumerate(recovery_options):
                col1, col2 = st.columns([3, 1])

                with col1:
                    st.write(f"**{option['title']}**")
                    st.write(option['description'])

                with col2:
                    if st.button(option['button_text'], key=f"recovery_{context}_{i}"):
                        if 'action' in option and callable(option['action']):
                            try:
                                option['action']()
                            except Exception as e:
                                logger.error(f"Recovery action '{option['title']}' failed: {e}")
                                st.error(f"Recovery action failed: {str(e)}")

        if show_details:
            with st.expander("🔍 Technical Details"):
                st.write(f"**Error Type:** {type(error).__name__}")
                st.write(f"**Context:** {context}")
                st.write(f"**Error Message:** {str(error)}")
                if isinstance(error, FormEngineError) and error.context:
                    st.json(error.context)
                st.code("".join(traceback.format_exception(type(error), error, error.__traceback__)))

    @staticmethod
    def with_error_handling(
        func: Callable,
        context: str,
        error_type: Optional[str] = None,
        user_message: Optional[str] = None,
        recovery_options: Optional[List[Dict[str, Any]]] = None,
        show_details: bool = False,
        default_return: Any = None
    ) -> Any:
        """
        Decorator-like function to wrap operations with error handling.

        Returns:
            Function result or default_return on error
        """
        try:
            return func()
        except Exception as e:
            ErrorHandler.handle_error(
                e, context, error_type, user_message, recovery_options, show_details
            )
            return default_return

    @staticmethod
    def create_recovery_options(error_type: str, retry: Optional[Callable[[], Any]] = None) -> List[Dict[str, Any]]:
        """Create recovery options for an error type."""
        recovery_options: List[Dict[str, Any]] = []

        if error_type == ErrorType.DATA_LOAD and retry is not None:
            recovery_options.append({
                'title': 'Retry Loading',
                'description': 'Fetch the record from the catalog again',
                'button_text': '🔄 Retry',
                'action': retry
            })

        if error_type == ErrorType.SCHEMA:
            recovery_options.append({
                'title': 'Reload Schemas',
                'description': 'Read the form schema files again',
                'button_text': '📋 Reload',
                'action': lambda: st.rerun()
            })

        if error_type == ErrorType.NETWORK:
            recovery_options.append({
                'title': 'Try Again',
                'description': 'Repeat the request against the catalog API',
                'button_text': '🌐 Retry',
                'action': retry if retry is not None else (lambda: st.rerun())
            })

        return recovery_options


def handle_error(error: Exception, context: str, error_type: Optional[str] = None) -> None:
    """Convenience function for error handling."""
    ErrorHandler.handle_error(error, context, error_type)
