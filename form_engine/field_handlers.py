"""
Kind handler table.

One entry per field kind bundles the three things the engine needs to know
about a kind: how to build its validation rule, which renderer draws it, and which
value an empty form starts with.
"""

from typing import Any, Callable, Dict, NamedTuple
import logging

from .field_descriptor import FieldDescriptor, FieldKind
from . import validation_rules as rules

logger = logging.getLogger(__name__)


class KindHandler(NamedTuple):
    build_rule: Callable[[FieldDescriptor], rules.Rule]
    renderer: str
    default: Callable[[FieldDescriptor], Any]

    def render(self, ctx: Any, descriptor: FieldDescriptor, value: Any) -> Any:
        # FormRenderer is looked up on use; validation imports no UI modules
        from .form_renderer import FormRenderer
        return getattr(FormRenderer, self.renderer)(ctx, descriptor, value)


def _none(descriptor: FieldDescriptor) -> Any:
    return None


def _empty_string(descriptor: FieldDescriptor) -> str:
    return ""


def _empty_list(descriptor: FieldDescriptor) -> list:
    return []


def _false(descriptor: FieldDescriptor) -> bool:
    return False


def _custom_default(descriptor: FieldDescriptor) -> Any:
    if descriptor.behavior is not None:
        return descriptor.behavior.default()
    return None


HANDLERS: Dict[FieldKind, KindHandler] = {
    FieldKind.TEXT: KindHandler(rules.build_text_rule, "render_text_input", _empty_string),
    FieldKind.EMAIL: KindHandler(rules.build_text_rule, "render_text_input", _empty_string),
    FieldKind.PASSWORD: KindHandler(rules.build_text_rule, "render_text_input", _empty_string),
    FieldKind.MULTILINE_TEXT: KindHandler(rules.build_text_rule, "render_text_area", _empty_string),
    FieldKind.NUMBER: KindHandler(rules.build_number_rule, "render_number_input", _none),
    FieldKind.SINGLE_SELECT: KindHandler(rules.build_choice_rule, "render_select", _none),
    FieldKind.RADIO_GROUP: KindHandler(rules.build_choice_rule, "render_radio", _none),
    FieldKind.PAGINATED_SELECT: KindHandler(rules.build_permissive_rule, "render_paginated_select", _none),
    FieldKind.MULTI_SELECT: KindHandler(rules.build_multi_select_rule, "render_multi_select", _empty_list),
    FieldKind.DATE: KindHandler(rules.build_date_rule, "render_date_input", _none),
    FieldKind.DATE_TIME: KindHandler(rules.build_date_rule, "render_datetime_input", _none),
    FieldKind.BOOLEAN: KindHandler(rules.build_boolean_rule, "render_checkbox", _false),
    FieldKind.FILE: KindHandler(rules.build_permissive_rule, "render_attachment", _none),
    FieldKind.IMAGE: KindHandler(rules.build_permissive_rule, "render_attachment", _none),
    FieldKind.CUSTOM: KindHandler(rules.build_custom_rule, "render_custom", _custom_default),
    FieldKind.HIDDEN: KindHandler(rules.build_permissive_rule, "render_hidden", _none),
    FieldKind.ARRAY: KindHandler(rules.build_array_rule, "render_array", _empty_list),
}


def default_value_for(descriptor: FieldDescriptor) -> Any:
    """Initial value of a field in create mode."""
    if descriptor.default is not None:
        default = descriptor.default
        # lists are copied so two forms never share one default list
        return list(default) if isinstance(default, list) else default
    return HANDLERS[descriptor.kind].default(descriptor)
