"""
UI feedback utilities for the admin console.
Implements the notification sink the form session reports to, plus loading indicators.
"""

import streamlit as st
from typing import Any, Optional
from contextlib import contextmanager
import logging

logger = logging.getLogger(__name__)

ICONS = {
    'success': '✅',
    'info': 'ℹ️',
    'warning': '⚠️',
    'error': '❌',
    'loading': '⏳'
}


class LoadingIndicator:
    """Loading indicator utilities."""

    @staticmethod
    @contextmanager
    def spinner(message: str = "Loading..."):
        """Context manager for spinner loading indicator."""
        with st.spinner(message):
            yield

    @staticmethod
    def skeleton(message: str = "Loading...") -> None:
        """Placeholder shown while an update form fetches its record."""
        st.info(f"{ICONS['loading']} {message}")


class Notify:
    """
    Toast-first notification helper.

    The class itself is handed to the form session as its ``notify``
    collaborator: success, error and loading are called by the session,
    info, warn and once by pages.

    Usage:
    Notify.success("Saved")
    handle = Notify.loading("Saving...")
    Notify.dismiss(handle)
    """

    @staticmethod
    def _display_notification(message: str, notification_type: str = 'info') -> Any:
        """Internal method to display notification based on type."""
        icon = ICONS.get(notification_type, ICONS['info'])
        try:
            return st.toast(message, icon=icon)
        except Exception as e:
            logger.error(f"Error using st.toast: {e}", exc_info=True)
            full_message = f"{icon} {message}"
            if notification_type == 'success':
                st.success(full_message)
            elif notification_type == 'warning':
                st.warning(full_message)
            elif notification_type == 'error':
                st.error(full_message)
            else:
                st.info(full_message)
            return None

    @staticmethod
    def success(message: str) -> None:
        """Show success notification."""
        Notify._display_notification(message, 'success')

    @staticmethod
    def info(message: str) -> None:
        """Show info notification."""
        Notify._display_notification(message, 'info')

    @staticmethod
    def warn(message: str) -> None:
        """Show warning notification."""
        Notify._display_notification(message, 'warning')

    @staticmethod
    def error(message: str) -> None:
        """Show error notification."""
        Notify._display_notification(message, 'error')

    @staticmethod
    def loading(message: str) -> Any:
        """Show a loading notification and return its handle."""
        return Notify._display_notification(message, 'loading')

    @staticmethod
    def dismiss(handle: Optional[Any]) -> None:
        # toasts expire on their own; nothing to do for a missing handle
        if handle is None:
            return
        logger.debug("Loading notification finished")

    @staticmethod
    def once(message: str, notification_type: str = 'info', key: str = 'default_once') -> bool:
        """
        Show notification only once per session for the given key.
        Returns True if shown, False if already shown.
        """
        if key not in st.session_state:
            st.session_state[key] = False
        if not st.session_state[key]:
            Notify._display_notification(message, notification_type)
            st.session_state[key] = True
            return True
        return False
