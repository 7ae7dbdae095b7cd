"""
Diff utilities for the form engine.
Summarizes the unsaved changes of a form session field by field, using DeepDiff
for list and object values.
"""

from typing import Dict, Any, List, Optional, Iterable
from deepdiff import DeepDiff
import json
import logging

from .attachment import LocalFile
from .field_descriptor import FieldDescriptor

logger = logging.getLogger(__name__)

_DEEPDIFF_SECTIONS = {
    'iterable_item_added': "{count} item(s) added",
    'iterable_item_removed': "{count} item(s) removed",
    'dictionary_item_added': "{count} key(s) added",
    'dictionary_item_removed': "{count} key(s) removed",
    'values_changed': "{count} value(s) changed",
    'type_changes': "{count} value(s) changed type",
}


def _format_value(value: Any, max_length: int = 60) -> str:
    """
    Format a value for display, truncating if necessary.

    Args:
        value: Value to format
        max_length: Maximum length for display

    Returns:
        Formatted string
    """
    if value is None or value == '':
        return "empty"

    if isinstance(value, LocalFile):
        return f"new file {value.name}"

    if isinstance(value, bool):
        return "yes" if value else "no"

    if isinstance(value, float):
        rounded = round(value, 10)
        return str(int(rounded)) if rounded == int(rounded) else f"{rounded:g}"

    if isinstance(value, str):
        if len(value) > max_length:
            return f"{value[:max_length-3]}..."
        return value

    if isinstance(value, (dict, list)):
        json_str = json.dumps(value, ensure_ascii=False, default=str)
        if len(json_str) > max_length:
            return f"{json_str[:max_length-3]}..."
        return json_str

    return str(value)


def describe_change(old: Any, new: Any) -> str:
    """One-line description of how a single field value changed."""
    if isinstance(new, LocalFile):
        return f"replaced with {new.name}" if old else f"{new.name} added"

    if isinstance(old, (list, dict)) or isinstance(new, (list, dict)):
        empty = [] if isinstance(old if old is not None else new, list) else {}
        try:
            diff = DeepDiff(old if old is not None else empty, new if new is not None else empty, verbose_level=0)
        except Exception as e:
            logger.error(f"Error calculating diff: {e}", exc_info=True)
            return f"{_format_value(old)} → {_format_value(new)}"
        parts = []
        for section, template in _DEEPDIFF_SECTIONS.items():
            if section in diff:
                parts.append(template.format(count=len(diff[section])))
        return ", ".join(parts) if parts else "reordered"

    if new is None and old:
        return "removed"

    return f"{_format_value(old)} → {_format_value(new)}"


def summarize_changes(original: Dict[str, Any], current: Dict[str, Any],
                      fields: Iterable[FieldDescriptor]) -> List[Dict[str, Any]]:
    """
    List every field whose current value differs from its original value.

    Args:
        original: Baseline values (loaded or last saved)
        current: Current form values
        fields: Descriptors in display order

    Returns:
        One dict per changed field with ``field``, ``label``, ``old``, ``new``
        and a human readable ``description``
    """
    changes = []
    for descriptor in fields:
        name = descriptor.name
        old = original.get(name)
        new = current.get(name)
        if old == new:
            continue
        changes.append({
            'field': name,
            'label': descriptor.display_label,
            'old': old,
            'new': new,
            'description': describe_change(old, new)
        })
    return changes


def has_changes(original: Dict[str, Any], current: Dict[str, Any],
                fields: Optional[Iterable[str]] = None) -> bool:
    names = fields if fields is not None else set(original) | set(current)
    return any(original.get(name) != current.get(name) for name in names)
