"""
Custom field behaviors and form hooks shipped with the console.
"""

from datetime import date, datetime
from typing import Any, Callable, Dict, List, Tuple
import logging

import streamlit as st

from .field_descriptor import CustomFieldBehavior, FieldDescriptor

logger = logging.getLogger(__name__)


class TagListBehavior(CustomFieldBehavior):
    """
    Free-form list of tags (promotion keywords, search aliases).

    Edited as comma separated text, held as a list of strings and sent to
    the API as a comma joined string.
    """

    def __init__(self, separator: str = ",", max_tags: int = 20):
        self.separator = separator
        self.max_tags = max_tags

    def parse(self, text: str) -> List[str]:
        tags = []
        for part in (text or "").split(self.separator):
            tag = part.strip()
            if tag and tag not in tags:
                tags.append(tag)
        return tags

    def render(self, descriptor: FieldDescriptor, value: Any, key: str) -> Any:
        shown = f"{self.separator} ".join(value or [])
        text = st.text_input(
            descriptor.display_label,
            value=shown,
            key=key,
            placeholder=descriptor.placeholder or "tag1, tag2",
            help=descriptor.help_text,
            disabled=descriptor.read_only
        )
        if text == shown:
            return value
        return self.parse(text)

    def validate(self, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            value = self.parse(value)
        if not isinstance(value, list) or not all(isinstance(tag, str) for tag in value):
            raise ValueError("Tags must be a list of text values")
        if len(value) > self.max_tags:
            raise ValueError(f"At most {self.max_tags} tags are allowed")
        return value

    def serialize(self, value: Any) -> Any:
        return self.separator.join(value or [])

    def default(self) -> Any:
        return []


def bilingual_title_options(items: List[Any], languages: Tuple[str, ...] = ("en", "ar")) -> List[Dict[str, Any]]:
    """
    Option transform for records titled in several languages.

    ``{"id": 3, "title": {"en": "Shoes", "ar": "أحذية"}}`` becomes
    ``{"value": "3", "label": "Shoes - أحذية"}``.
    """
    options = []
    for item in items:
        if not isinstance(item, dict) or item.get('id') is None:
            logger.debug(f"Skipping option without id: {item!r}")
            continue
        title = item.get('title')
        if isinstance(title, dict):
            label = " - ".join(str(title.get(lang) or "N/A") for lang in languages)
        else:
            label = str(title or item.get('name') or item['id'])
        options.append({'value': str(item['id']), 'label': label, 'raw': item})
    return options


def require_value(value: Any) -> Any:
    """Presence check for kinds whose generated rule accepts anything."""
    if value is None or value == "" or value == []:
        raise ValueError("This field is required")
    return value


CrossValidator = Callable[[Dict[str, Any]], Dict[str, str]]


def _comparable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.date()
    return value


def date_order(start_field: str, end_field: str,
               message: str = "End date must be after start date") -> CrossValidator:
    """
    Form check that one date does not precede another.

    Equal dates pass; a missing date is left to the field rules.
    """
    def check(values: Dict[str, Any]) -> Dict[str, str]:
        start, end = values.get(start_field), values.get(end_field)
        if not isinstance(start, date) or not isinstance(end, date):
            return {}
        if isinstance(start, datetime) and isinstance(end, datetime):
            ordered = end >= start
        else:
            ordered = _comparable(end) >= _comparable(start)
        return {} if ordered else {end_field: message}

    return check


def fields_match(field: str, confirm_field: str, message: str = "Values do not match") -> CrossValidator:
    """Form check for confirmation fields (password, email)."""
    def check(values: Dict[str, Any]) -> Dict[str, str]:
        if values.get(field) != values.get(confirm_field):
            return {confirm_field: message}
        return {}

    return check
