"""
Immutable operations for dynamic list fields.

Every operation returns a new list of new item dicts. The list held by the
form session is never spliced in place, so what a renderer shows and what a
submission sends cannot share one mutable object.
"""

from typing import Dict, Any, List, Optional, Sequence
import logging

from .field_descriptor import ArrayConfig

logger = logging.getLogger(__name__)

Item = Dict[str, Any]


def _copy_items(items: Optional[Sequence[Item]]) -> List[Item]:
    return [dict(item) for item in (items or [])]


def _check_index(items: Sequence[Item], index: int) -> None:
    if index < 0 or index >= len(items):
        raise IndexError(f"Item index {index} out of range for list of {len(items)}")


def new_item(config: ArrayConfig) -> Item:
    """Empty item with the default value of every item field."""
    from .field_handlers import default_value_for
    return {descriptor.name: default_value_for(descriptor) for descriptor in config.fields}


def can_add(items: Optional[Sequence[Item]], config: ArrayConfig) -> bool:
    return config.max_items is None or len(items or []) < config.max_items


def can_remove(items: Optional[Sequence[Item]], config: ArrayConfig) -> bool:
    return len(items or []) > config.min_items


def append_item(items: Optional[Sequence[Item]], item: Optional[Item] = None) -> List[Item]:
    """Return a new list with ``item`` (or an empty dict) added at the end."""
    result = _copy_items(items)
    result.append(dict(item) if item else {})
    return result


def remove_item(items: Optional[Sequence[Item]], index: int) -> List[Item]:
    """Return a new list without the item at ``index``."""
    items = items or []
    _check_index(items, index)
    return [dict(item) for position, item in enumerate(items) if position != index]


def replace_item(items: Optional[Sequence[Item]], index: int, item: Item) -> List[Item]:
    """Return a new list where the item at ``index`` is replaced by a copy of ``item``."""
    items = items or []
    _check_index(items, index)
    result = _copy_items(items)
    result[index] = dict(item)
    return result


def move_item(items: Optional[Sequence[Item]], source: int, target: int) -> List[Item]:
    """Return a new list with the item at ``source`` moved to position ``target``."""
    items = items or []
    _check_index(items, source)
    _check_index(items, target)
    result = _copy_items(items)
    moved = result.pop(source)
    result.insert(target, moved)
    return result


def reindex(items: Optional[Sequence[Item]], key: str, start: int = 1) -> List[Item]:
    """
    Rewrite a positional key on every item.

    Banner placements, for example, carry an ``order`` that must follow the
    list position after items are removed or moved.
    """
    return [{**item, key: start + position} for position, item in enumerate(items or [])]
