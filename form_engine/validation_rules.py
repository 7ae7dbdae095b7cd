"""
Per-kind validation rules.

Every builder takes a field descriptor and returns a rule: a callable that
receives the raw form value, returns the coerced value and raises
``ValueError`` with a readable, field-scoped message when the value is not
acceptable. The schema generator wires these rules into a pydantic model.
"""

from datetime import datetime, date
from typing import Any, Callable, List, Optional
import logging
import re

from .field_descriptor import FieldDescriptor, FieldKind, ValueType

logger = logging.getLogger(__name__)

Rule = Callable[[Any], Any]

EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
BOOLEAN_STRINGS = {'true': True, 'false': False}


def is_blank(value: Any) -> bool:
    """None and the empty string both mean 'nothing entered'."""
    return value is None or (isinstance(value, str) and value.strip() == '')


def _format_number(value: float) -> str:
    return f"{value:g}"


def coerce_number(value: Any) -> Optional[float]:
    """
    Coerce form input to a number.

    Returns None for blank input and raises ValueError for anything that is
    not numeric. Integral strings become ``int``.
    """
    if is_blank(value):
        return None
    if isinstance(value, bool):
        raise ValueError("not a number")
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            return float(text)
    raise ValueError("not a number")


def coerce_to_value_type(value: Any, value_type: ValueType) -> Any:
    """Coerce a choice value to the declared value type."""
    if value_type == ValueType.BOOLEAN:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in BOOLEAN_STRINGS:
            return BOOLEAN_STRINGS[value.strip().lower()]
        raise ValueError("not a boolean")
    if value_type == ValueType.NUMBER:
        return coerce_number(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_text_rule(field: FieldDescriptor) -> Rule:
    label = field.display_label
    constraints = field.constraints
    check_email = field.kind == FieldKind.EMAIL

    def rule(value):
        if value is None or value == '':
            if field.required:
                raise ValueError(f"{label} is required")
            return value
        if not isinstance(value, str):
            raise ValueError(f"{label} must be text")
        if constraints.min_length is not None and len(value) < constraints.min_length:
            raise ValueError(f"{label} must be at least {constraints.min_length} characters")
        if constraints.max_length is not None and len(value) > constraints.max_length:
            raise ValueError(f"{label} must be at most {constraints.max_length} characters")
        if check_email and not EMAIL_PATTERN.match(value):
            raise ValueError("Invalid email address")
        return value

    return rule


def build_number_rule(field: FieldDescriptor) -> Rule:
    """
    Numbers are coerced from string input.

    A required number must be at least 1, which doubles as the presence
    check. An explicit ``min_value`` is combined with that bound, not
    substituted for it, and is checked first.
    """
    label = field.display_label
    constraints = field.constraints

    def rule(value):
        try:
            number = coerce_number(value)
        except ValueError:
            raise ValueError(f"{label} must be a number")
        if number is None:
            if field.required:
                raise ValueError(f"{label} is required")
            return None
        if constraints.min_value is not None and number < constraints.min_value:
            raise ValueError(f"Minimum value is {_format_number(constraints.min_value)}")
        if field.required and number < 1:
            raise ValueError(f"{label} is required")
        if constraints.max_value is not None and number > constraints.max_value:
            raise ValueError(f"Maximum value is {_format_number(constraints.max_value)}")
        return number

    return rule


def build_boolean_rule(field: FieldDescriptor) -> Rule:
    """Required checkboxes enforce acceptance."""
    label = field.display_label

    def rule(value):
        if value is None:
            if field.required:
                raise ValueError("This field is required")
            return None
        try:
            flag = coerce_to_value_type(value, ValueType.BOOLEAN)
        except ValueError:
            raise ValueError(f"{label} must be true or false")
        if field.required and flag is not True:
            raise ValueError("This field is required")
        return flag

    return rule


def build_choice_rule(field: FieldDescriptor) -> Rule:
    """Radio groups and single selects: value must be one of the declared options."""
    label = field.display_label
    value_type = field.value_type
    allowed = []
    for option_value in field.option_values:
        try:
            allowed.append(coerce_to_value_type(option_value, value_type))
        except ValueError:
            logger.warning(f"Option {option_value!r} of '{field.name}' does not match value type {value_type.value}")
    shown = ', '.join(str(option.label) for option in field.options)

    def rule(value):
        if is_blank(value):
            if field.required:
                raise ValueError(f"{label} is required")
            return None
        try:
            coerced = coerce_to_value_type(value, value_type)
        except ValueError:
            raise ValueError(f"{label} must be one of: {shown}")
        if field.options and coerced not in allowed:
            raise ValueError(f"{label} must be one of: {shown}")
        return coerced

    return rule


def build_multi_select_rule(field: FieldDescriptor) -> Rule:
    label = field.display_label
    allowed = {str(value) for value in field.option_values}

    def rule(value):
        if value is None:
            value = []
        if not isinstance(value, (list, tuple)) or not all(isinstance(item, str) for item in value):
            raise ValueError(f"{label} must be a list of values")
        if field.required and len(value) == 0:
            raise ValueError(f"{label} is required")
        if allowed:
            unknown = [item for item in value if item not in allowed]
            if unknown:
                raise ValueError(f"{label} contains unknown values: {', '.join(unknown)}")
        return list(value)

    return rule


def build_date_rule(field: FieldDescriptor) -> Rule:
    label = field.display_label
    with_time = field.kind == FieldKind.DATE_TIME

    def rule(value):
        if is_blank(value):
            if field.required:
                raise ValueError(f"{label} is required")
            return None
        if with_time:
            if isinstance(value, datetime):
                return value
            if isinstance(value, date):
                return datetime(value.year, value.month, value.day)
        else:
            if isinstance(value, datetime):
                return value.date()
            if isinstance(value, date):
                return value
        if isinstance(value, str):
            try:
                parsed = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
            except ValueError:
                raise ValueError(f"{label} must be a valid {'date and time' if with_time else 'date'}")
            return parsed if with_time else parsed.date()
        raise ValueError(f"{label} must be a valid {'date and time' if with_time else 'date'}")

    return rule


def build_custom_rule(field: FieldDescriptor) -> Rule:
    """Custom fields validate themselves through their behavior."""
    if field.behavior is not None:
        return field.behavior.validate
    return build_permissive_rule(field)


def build_permissive_rule(field: FieldDescriptor) -> Rule:
    # file, image, paginated-select and hidden values carry no structural constraint
    def rule(value):
        return value

    return rule


def build_array_rule(field: FieldDescriptor) -> Rule:
    """
    Dynamic list fields validate every item against a nested schema built
    from the item fields.
    """
    from .model_builder import generate_schema

    label = field.display_label
    config = field.array
    item_schema = generate_schema(config.fields, model_name=f"{field.name.title()}Item")
    min_items = max(config.min_items, 1 if field.required else 0)

    def rule(value):
        if value is None:
            value = []
        if not isinstance(value, (list, tuple)):
            raise ValueError(f"{label} must be a list")
        if len(value) < min_items:
            if field.required and config.min_items <= 1:
                raise ValueError(f"{label} is required")
            raise ValueError(f"At least {min_items} item(s) required")
        if config.max_items is not None and len(value) > config.max_items:
            raise ValueError(f"Maximum {config.max_items} item(s) allowed")
        items: List[Any] = []
        for index, item in enumerate(value):
            if not isinstance(item, dict):
                raise ValueError(f"Item {index + 1}: must be an object")
            result = item_schema.validate(item)
            if result.errors:
                first_field = next(iter(result.errors))
                raise ValueError(f"Item {index + 1}: {result.errors[first_field]}")
            items.append({**item, **result.data})
        return items

    return rule
