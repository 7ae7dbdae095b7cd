"""
Schema generator for the form engine.
Creates Pydantic models from field descriptors for form validation.
"""

from typing import Annotated, Dict, Any, List, Optional, Tuple, Iterable, NamedTuple, get_origin
from pydantic import ConfigDict, Field, TypeAdapter, ValidationError, create_model, AfterValidator
import logging

from .field_descriptor import FieldDescriptor, validate_descriptors
from .field_handlers import HANDLERS

logger = logging.getLogger(__name__)

_MESSAGE_PREFIXES = ('Value error, ', 'Assertion failed, ')


class ValidationResult(NamedTuple):
    """Outcome of validating form values."""
    data: Dict[str, Any]
    errors: Dict[str, str]

    @property
    def is_valid(self) -> bool:
        return not self.errors


class ValidationSchema:
    """
    Structural validation rules derived from a list of field descriptors.

    Read-only descriptors are not part of the schema: they are rendered but
    never validated or included in the validated data.
    """

    def __init__(self, model_class, fields: Dict[str, FieldDescriptor], annotations: Dict[str, Any]):
        self.model_class = model_class
        self.fields = fields
        self._attributes = {name: f"field_{index}" for index, name in enumerate(fields)}
        self._adapters = {name: TypeAdapter(annotation) for name, annotation in annotations.items()}

    @property
    def field_names(self) -> List[str]:
        return list(self.fields)

    def __contains__(self, name: str) -> bool:
        return name in self.fields

    def validate(self, values: Dict[str, Any]) -> ValidationResult:
        """
        Validate all schema fields.

        Args:
            values: Current form values keyed by field name

        Returns:
            ValidationResult with coerced data, or field-scoped error messages
        """
        payload = {name: values[name] for name in self.fields if name in values}
        try:
            instance = self.model_class.model_validate(payload)
        except ValidationError as e:
            errors = format_validation_errors(e)
            logger.debug(f"Validation failed for {len(errors)} field(s): {sorted(errors)}")
            return ValidationResult({}, errors)
        # attribute access keeps rich values such as files untouched by serialization
        data = {name: getattr(instance, attribute) for name, attribute in self._attributes.items()}
        return ValidationResult(data, {})

    def validate_field(self, name: str, value: Any) -> Optional[str]:
        """
        Validate one field in isolation (change/blur feedback).

        Returns:
            The error message, or None when the value is acceptable or the
            field is not part of the schema
        """
        adapter = self._adapters.get(name)
        if adapter is None:
            return None
        try:
            adapter.validate_python(value)
        except ValidationError as e:
            return _clean_message(e.errors()[0].get('msg', ''))
        return None


def generate_schema(fields: Iterable[FieldDescriptor], model_name: str = "FormModel") -> ValidationSchema:
    """
    Create a validation schema from field descriptors.

    Args:
        fields: Ordered field descriptors of one form
        model_name: Name for the generated model class

    Returns:
        ValidationSchema wrapping the generated Pydantic model
    """
    fields = validate_descriptors(fields)
    model_fields = {}
    annotations = {}
    included = {}

    for descriptor in fields:
        if descriptor.read_only:
            logger.debug(f"Skipping read-only field '{descriptor.name}'")
            continue
        annotation, field_info = create_field_from_descriptor(descriptor)
        model_fields[f"field_{len(included)}"] = (annotation, field_info)
        annotations[descriptor.name] = annotation
        included[descriptor.name] = descriptor

    try:
        model_class = create_model(
            model_name,
            __config__=ConfigDict(extra='ignore', arbitrary_types_allowed=True),
            **model_fields
        )
    except Exception as e:
        logger.error(f"Failed to create model '{model_name}': {e}")
        raise

    logger.info(f"Created validation model '{model_name}' with {len(included)} fields")
    return ValidationSchema(model_class, included, annotations)


def create_field_from_descriptor(descriptor: FieldDescriptor) -> Tuple[Any, Any]:
    """
    Create a Pydantic field from a field descriptor.

    The descriptor's explicit validation wins over the generated rule. It may
    be a plain callable raising ValueError, or a type annotation.

    Returns:
        Tuple of (annotation, FieldInfo)
    """
    explicit = descriptor.explicit_validation

    if explicit is None:
        rule = HANDLERS[descriptor.kind].build_rule(descriptor)
        annotation = Annotated[Any, AfterValidator(rule)]
    elif _is_rule_callable(explicit):
        annotation = Annotated[Any, AfterValidator(explicit)]
    else:
        annotation = explicit

    # absent values are validated like empty ones
    field_info = Field(
        default=None,
        validate_default=True,
        alias=descriptor.name,
        description=descriptor.display_label
    )
    return annotation, field_info


def _is_rule_callable(obj: Any) -> bool:
    return callable(obj) and not isinstance(obj, type) and get_origin(obj) is None


def _clean_message(message: str) -> str:
    for prefix in _MESSAGE_PREFIXES:
        if message.startswith(prefix):
            return message[len(prefix):]
    return message


def format_validation_errors(error: ValidationError) -> Dict[str, str]:
    """
    Convert a Pydantic ValidationError into field-scoped messages.

    Only the first message per field is kept.
    """
    errors: Dict[str, str] = {}
    for item in error.errors():
        loc = item.get('loc', ())
        field_name = str(loc[0]) if loc else '__root__'
        if field_name not in errors:
            errors[field_name] = _clean_message(item.get('msg', ''))
    return errors
