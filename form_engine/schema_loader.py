"""
Form schema loader for the admin console.
Reads YAML/JSON form definitions (one per entity page) into field descriptor lists.
"""

import json
import yaml
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Dict, Any, Optional, List, Callable, Union
import logging
import os

from pydantic import ValidationError

from .custom_fields import TagListBehavior, bilingual_title_options, date_order, fields_match, require_value
from .exceptions import FieldDescriptorError, SchemaLoadError
from .field_descriptor import CustomFieldBehavior, FieldDescriptor, validate_descriptors

logger = logging.getLogger(__name__)

SCHEMAS_DIR = Path("schemas")
SCHEMA_SUFFIXES = ('.yaml', '.yml', '.json')


@dataclass
class FormSchema:
    """One entity form: its page title, API resource and ordered fields."""
    title: str
    entity: str
    description: str = ""
    fields: List[FieldDescriptor] = field(default_factory=list)
    cross_validators: List[Callable[[Dict[str, Any]], Dict[str, str]]] = field(default_factory=list)

    def cross_validate(self, values: Dict[str, Any]) -> Dict[str, str]:
        """Run the form level checks; the first message per field wins."""
        errors: Dict[str, str] = {}
        for check in self.cross_validators:
            for name, message in (check(values) or {}).items():
                errors.setdefault(name, message)
        return errors


class HookRegistry:
    """
    Named callables that YAML files refer to by string.

    Transforms shape reference option responses, validators replace the
    generated rule of a field, behaviors implement custom fields.
    Cross validators check several fields together and return
    ``{field: message}``.
    ``reference_defaults`` fill reference settings a file leaves out
    (``page_size``, ``debounce_ms``).
    """

    def __init__(self, reference_defaults: Optional[Dict[str, Any]] = None):
        self.transforms: Dict[str, Callable] = {}
        self.validators: Dict[str, Any] = {}
        self.behaviors: Dict[str, CustomFieldBehavior] = {}
        self.cross_validators: Dict[str, Callable] = {}
        self.reference_defaults: Dict[str, Any] = dict(reference_defaults or {})

    def register_transform(self, name: str, func: Callable) -> None:
        self.transforms[name] = func

    def register_validator(self, name: str, rule: Any) -> None:
        self.validators[name] = rule

    def register_behavior(self, name: str, behavior: CustomFieldBehavior) -> None:
        self.behaviors[name] = behavior

    def register_cross_validator(self, name: str, check: Callable) -> None:
        self.cross_validators[name] = check

    def _lookup(self, table: Dict[str, Any], kind: str, name: str) -> Any:
        try:
            return table[name]
        except KeyError:
            raise KeyError(f"Unknown {kind} '{name}'")

    def transform(self, name: str) -> Callable:
        return self._lookup(self.transforms, "transform", name)

    def validator(self, name: str) -> Any:
        return self._lookup(self.validators, "validator", name)

    def behavior(self, name: str) -> CustomFieldBehavior:
        return self._lookup(self.behaviors, "behavior", name)

    def cross_validator(self, name: str) -> Callable:
        return self._lookup(self.cross_validators, "cross validator", name)


def default_registry(reference_defaults: Optional[Dict[str, Any]] = None) -> HookRegistry:
    """Registry with the hooks shipped with the console."""
    registry = HookRegistry(reference_defaults)
    registry.register_behavior("tag_list", TagListBehavior())
    registry.register_transform("bilingual_title", bilingual_title_options)
    registry.register_validator("required", require_value)
    registry.register_cross_validator("end_after_start", date_order("startDate", "endDate"))
    registry.register_cross_validator(
        "confirm_password", fields_match("password", "confirmPassword", "Passwords do not match")
    )
    return registry


def _resolve_hooks(entry: Dict[str, Any], registry: HookRegistry) -> Dict[str, Any]:
    """Replace hook names by the registered objects, recursively."""
    entry = dict(entry)

    if isinstance(entry.get('behavior'), str):
        entry['behavior'] = registry.behavior(entry['behavior'])
    if isinstance(entry.get('explicit_validation'), str):
        entry['explicit_validation'] = registry.validator(entry['explicit_validation'])

    reference = entry.get('reference')
    if isinstance(reference, dict):
        reference = {**registry.reference_defaults, **reference}
        if isinstance(reference.get('transform'), str):
            reference['transform'] = registry.transform(reference['transform'])
        entry['reference'] = reference

    array = entry.get('array')
    if isinstance(array, dict) and isinstance(array.get('fields'), list):
        entry['array'] = {**array, 'fields': [_resolve_hooks(item, registry) for item in array['fields']]}

    depends_on = entry.get('depends_on')
    if isinstance(depends_on, dict) and isinstance(depends_on.get('variants'), dict):
        variants = {}
        for key, variant in depends_on['variants'].items():
            # YAML reads true/false/1 as non-strings; variant keys follow the string form
            variant_key = str(key).lower() if isinstance(key, bool) else str(key)
            variants[variant_key] = _resolve_hooks(variant or {}, registry)
        entry['depends_on'] = {**depends_on, 'variants': variants}

    return entry


def parse_form_schema(data: Any, registry: Optional[HookRegistry] = None,
                      source: Union[str, Path] = "<memory>") -> FormSchema:
    """
    Build a FormSchema from already parsed YAML/JSON data.

    Raises:
        SchemaLoadError: When the structure or any field entry is invalid
    """
    registry = registry or default_registry()
    source = Path(source)

    if not isinstance(data, dict):
        raise SchemaLoadError(source, ValueError("Schema must be a mapping"))
    entries = data.get('fields')
    if not isinstance(entries, list) or not entries:
        raise SchemaLoadError(source, ValueError("Schema must declare a non-empty 'fields' list"))

    fields = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise SchemaLoadError(source, ValueError(f"Field #{index + 1} must be a mapping"))
        try:
            fields.append(FieldDescriptor.model_validate(_resolve_hooks(entry, registry)))
        except (ValidationError, KeyError, FieldDescriptorError) as e:
            name = entry.get('name', f"#{index + 1}")
            raise SchemaLoadError(source, e, f"Invalid field '{name}' in {source}: {e}")

    try:
        validate_descriptors(fields)
    except FieldDescriptorError as e:
        raise SchemaLoadError(source, e, f"Invalid field list in {source}: {e.message}")

    names = data.get('cross_validation') or []
    if isinstance(names, str):
        names = [names]
    try:
        cross_validators = [registry.cross_validator(name) for name in names]
    except KeyError as e:
        raise SchemaLoadError(source, e, f"Invalid cross validation in {source}: {e}")

    entity = data.get('entity') or source.stem
    return FormSchema(
        title=data.get('title') or entity.replace('_', ' ').title(),
        entity=entity,
        description=data.get('description', ''),
        fields=fields,
        cross_validators=cross_validators
    )


def load_form_schema(path: Union[str, Path], registry: Optional[HookRegistry] = None) -> FormSchema:
    """
    Load a form schema from a YAML or JSON file.

    Args:
        path: Path to the schema file
        registry: Hook registry for named transforms, validators and behaviors

    Returns:
        FormSchema

    Raises:
        SchemaLoadError: When the file is missing, unreadable or invalid
    """
    path = Path(path)
    if not path.exists():
        raise SchemaLoadError(path, FileNotFoundError(f"Schema file not found: {path}"))
    if path.suffix.lower() not in SCHEMA_SUFFIXES:
        raise SchemaLoadError(path, ValueError(f"Unsupported schema file format: {path.suffix}"))

    try:
        with open(path, 'r', encoding='utf-8') as f:
            if path.suffix.lower() == '.json':
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (yaml.YAMLError, json.JSONDecodeError, OSError) as e:
        logger.error(f"Error reading schema {path}: {e}")
        raise SchemaLoadError(path, e)

    schema = parse_form_schema(data, registry, path)
    logger.info(f"Successfully loaded form schema: {path} ({len(schema.fields)} fields)")
    return schema


@lru_cache(maxsize=64)
def _load_with_mtime(path: str, mtime: float, registry: HookRegistry) -> FormSchema:
    return load_form_schema(path, registry)


def load_form_schema_cached(path: Union[str, Path], registry: HookRegistry) -> FormSchema:
    """Load a schema, re-reading the file only when its modification time changed."""
    path = Path(path)
    if not path.exists():
        raise SchemaLoadError(path, FileNotFoundError(f"Schema file not found: {path}"))
    return _load_with_mtime(str(path), os.path.getmtime(path), registry)


def list_form_schemas(directory: Union[str, Path] = SCHEMAS_DIR) -> List[str]:
    """
    List all form schema files in a directory.

    Returns:
        Sorted list of schema filenames
    """
    directory = Path(directory)
    if not directory.is_dir():
        logger.warning(f"Schema directory {directory} not found")
        return []
    return sorted(f.name for f in directory.iterdir() if f.suffix.lower() in SCHEMA_SUFFIXES)
