"""
Field descriptors for the form engine.

A field descriptor is the declarative, serializable description of one form
field: its kind, constraints, default value and dependent behavior. Pages
declare an ordered list of descriptors; everything else (validation rules,
rendering, payload construction) is derived from that list.
"""

from enum import Enum
from typing import Dict, Any, List, Optional, Union, Iterable
import logging

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .exceptions import FieldDescriptorError

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "default"


class FieldKind(str, Enum):
    """Supported field kinds."""
    TEXT = "text"
    EMAIL = "email"
    NUMBER = "number"
    PASSWORD = "password"
    MULTILINE_TEXT = "multiline-text"
    SINGLE_SELECT = "single-select"
    PAGINATED_SELECT = "paginated-select"
    MULTI_SELECT = "multi-select"
    DATE = "date"
    DATE_TIME = "date-time"
    BOOLEAN = "boolean"
    RADIO_GROUP = "radio-group"
    FILE = "file"
    IMAGE = "image"
    CUSTOM = "custom"
    HIDDEN = "hidden"
    ARRAY = "array"


class ValueType(str, Enum):
    """Declared type of the values offered by a radio group or single select."""
    STRING = "string"
    BOOLEAN = "boolean"
    NUMBER = "number"


TEXT_KINDS = frozenset({FieldKind.TEXT, FieldKind.EMAIL, FieldKind.PASSWORD, FieldKind.MULTILINE_TEXT})
CHOICE_KINDS = frozenset({FieldKind.SINGLE_SELECT, FieldKind.RADIO_GROUP})
ATTACHMENT_KINDS = frozenset({FieldKind.FILE, FieldKind.IMAGE})


class FieldOption(BaseModel):
    """One selectable choice."""
    value: Union[bool, int, float, str, None]
    label: str
    description: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class Constraints(BaseModel):
    """Kind specific constraints."""
    min_length: Optional[int] = Field(default=None, ge=0)
    max_length: Optional[int] = Field(default=None, ge=0)
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    step: Optional[float] = None
    accept: List[str] = Field(default_factory=list)
    max_size: Optional[int] = Field(default=None, gt=0)

    @field_validator('accept', mode='before')
    @classmethod
    def _split_accept(cls, v):
        # "image/*,application/pdf" is the HTML accept attribute form
        if isinstance(v, str):
            return [part.strip() for part in v.split(',') if part.strip()]
        return v


class ReferenceConfig(BaseModel):
    """Remote lookup configuration of a paginated select."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    endpoint: str
    label_key: str = "name"
    value_key: str = "id"
    search_param: str = "search"
    page_size: int = Field(default=10, gt=0)
    debounce_ms: int = Field(default=500, ge=0)
    params: Dict[str, Any] = Field(default_factory=dict)
    transform: Optional[Any] = Field(default=None, exclude=True)

    @field_validator('transform')
    @classmethod
    def _check_transform(cls, v):
        if v is not None and not callable(v):
            raise ValueError("transform must be callable")
        return v


class CustomFieldBehavior:
    """
    Capability interface for fields that own their rendering and validation.

    Implementations override ``render`` and optionally ``validate`` and
    ``serialize``. ``validate`` raises ``ValueError`` with a readable message
    and returns the (possibly coerced) value.
    """

    def render(self, descriptor: "FieldDescriptor", value: Any, key: str) -> Any:
        raise NotImplementedError

    def validate(self, value: Any) -> Any:
        return value

    def serialize(self, value: Any) -> Any:
        return value

    def default(self) -> Any:
        return None


class ArrayConfig(BaseModel):
    """Item layout of a dynamic list field."""
    fields: List["FieldDescriptor"]
    min_items: int = Field(default=0, ge=0)
    max_items: Optional[int] = Field(default=None, ge=1)
    item_label: Optional[str] = None
    order_key: Optional[str] = None

    @model_validator(mode='after')
    def _check_bounds(self):
        if self.max_items is not None and self.max_items < self.min_items:
            raise ValueError("max_items must not be smaller than min_items")
        validate_descriptors(self.fields)
        return self


class FieldVariant(BaseModel):
    """Descriptor overrides applied while the watched field holds one value."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: Optional[FieldKind] = None
    label: Optional[str] = None
    required: Optional[bool] = None
    placeholder: Optional[str] = None
    reference: Optional[ReferenceConfig] = None
    options: Optional[List[FieldOption]] = None
    constraints: Optional[Constraints] = None
    explicit_validation: Optional[Any] = Field(default=None, exclude=True)

    def overrides(self) -> Dict[str, Any]:
        """Only the attributes the variant actually sets."""
        return {name: getattr(self, name) for name in self.model_fields_set}


class FieldDependency(BaseModel):
    """Makes a descriptor depend on the value of another field."""
    field: str
    variants: Dict[str, FieldVariant] = Field(default_factory=dict)

    @staticmethod
    def key_for(value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    def category_of(self, watched_value: Any) -> str:
        """Variant key the watched value falls into."""
        key = self.key_for(watched_value)
        return key if key in self.variants else DEFAULT_CATEGORY

    def variant_for(self, watched_value: Any) -> Optional[FieldVariant]:
        return self.variants.get(self.key_for(watched_value))


class FieldDescriptor(BaseModel):
    """Declarative description of one form field."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str = Field(min_length=1)
    kind: FieldKind = FieldKind.TEXT
    label: Optional[str] = None
    required: bool = False
    read_only: bool = False
    default: Any = None
    placeholder: Optional[str] = None
    help_text: Optional[str] = None
    constraints: Constraints = Field(default_factory=Constraints)
    options: List[FieldOption] = Field(default_factory=list)
    value_type: ValueType = ValueType.STRING
    reference: Optional[ReferenceConfig] = None
    array: Optional[ArrayConfig] = None
    depends_on: Optional[FieldDependency] = None
    explicit_validation: Optional[Any] = Field(default=None, exclude=True)
    behavior: Optional[CustomFieldBehavior] = Field(default=None, exclude=True)

    @field_validator('options', mode='before')
    @classmethod
    def _options_from_mapping(cls, v):
        # value -> label mapping is accepted as shorthand
        if isinstance(v, dict):
            return [{'value': value, 'label': str(label)} for value, label in v.items()]
        return v

    @model_validator(mode='after')
    def _check_kind_requirements(self):
        _check_kind_requirements(self)
        return self

    @property
    def display_label(self) -> str:
        return self.label or self.name.replace('_', ' ').title()

    @property
    def option_values(self) -> List[Any]:
        return [option.value for option in self.options]

    def resolve(self, watched_value: Any) -> "FieldDescriptor":
        """
        Return the descriptor that applies while the watched field holds ``watched_value``.

        Descriptors without a dependency, or values without a variant, resolve
        to the descriptor itself.
        """
        if self.depends_on is None:
            return self
        variant = self.depends_on.variant_for(watched_value)
        if variant is None:
            return self
        resolved = self.model_copy(update=variant.overrides())
        try:
            _check_kind_requirements(resolved)
        except ValueError as e:
            raise FieldDescriptorError(str(e), self.name)
        return resolved

    def category_of(self, watched_value: Any) -> str:
        if self.depends_on is None:
            return DEFAULT_CATEGORY
        return self.depends_on.category_of(watched_value)


def _check_kind_requirements(descriptor: FieldDescriptor) -> None:
    if descriptor.kind == FieldKind.PAGINATED_SELECT and descriptor.reference is None:
        raise ValueError(f"Field '{descriptor.name}' of kind paginated-select requires a reference configuration")
    if descriptor.kind == FieldKind.ARRAY and descriptor.array is None:
        raise ValueError(f"Field '{descriptor.name}' of kind array requires an array configuration")
    values = [FieldDependency.key_for(option.value) for option in descriptor.options]
    if len(values) != len(set(values)):
        raise ValueError(f"Field '{descriptor.name}' declares duplicate option values")


ArrayConfig.model_rebuild()


def validate_descriptors(fields: Iterable[FieldDescriptor]) -> List[FieldDescriptor]:
    """
    Check the invariants that span a whole field list.

    Args:
        fields: Ordered field descriptors of one form

    Returns:
        The descriptors as a list

    Raises:
        FieldDescriptorError: On duplicate names or dangling dependencies
    """
    fields = list(fields)
    seen = set()
    for descriptor in fields:
        if descriptor.name in seen:
            raise FieldDescriptorError(f"Duplicate field name '{descriptor.name}'", descriptor.name)
        seen.add(descriptor.name)

    for descriptor in fields:
        if descriptor.depends_on is None:
            continue
        watched = descriptor.depends_on.field
        if watched == descriptor.name:
            raise FieldDescriptorError(f"Field '{descriptor.name}' cannot depend on itself", descriptor.name)
        if watched not in seen:
            raise FieldDescriptorError(
                f"Field '{descriptor.name}' depends on unknown field '{watched}'", descriptor.name
            )

    return fields


def find_descriptor(fields: Iterable[FieldDescriptor], name: str) -> Optional[FieldDescriptor]:
    for descriptor in fields:
        if descriptor.name == name:
            return descriptor
    return None
