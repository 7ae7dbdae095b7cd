"""
Form session controller.

Owns the state of one mounted form: values, the original baseline, field
errors and the submission status. All collaborators (data load, persistence,
notifications, translation) are injected, so the controller knows nothing
about HTTP or Streamlit.

Status machine::

    loading -> ready -> submitting -> success | error
    success | error -> ready      after the display interval, or on the next edit
    loading -> data_error         left only through retry_load()
"""

import asyncio
import inspect
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Iterable

from .attachment import (
    DEFAULT_MAX_SIZE, UNCHANGED, AttachmentFieldController, PreviewRegistry,
    attachment_payload_value, check_attachment_presence
)
from .exceptions import DataLoadError, FieldDescriptorError, FormEngineError, SubmissionError, error_message
from .field_descriptor import ATTACHMENT_KINDS, FieldDescriptor, FieldKind, validate_descriptors
from .field_handlers import default_value_for
from .model_builder import ValidationSchema, generate_schema
from . import list_fields

logger = logging.getLogger(__name__)

DEFAULT_MESSAGES = {
    'form.created': "Created successfully",
    'form.updated': "Updated successfully",
    'form.submitting': "Saving...",
    'form.submitFailed': "Submission failed",
    'form.loadFailed': "Failed to load data",
}


class FormStatus(str, Enum):
    LOADING = "loading"
    READY = "ready"
    SUBMITTING = "submitting"
    SUCCESS = "success"
    ERROR = "error"
    DATA_ERROR = "data_error"


class FormMode(str, Enum):
    CREATE = "create"
    UPDATE = "update"


def default_translate(key: str, params: Optional[Dict[str, Any]] = None) -> str:
    text = DEFAULT_MESSAGES.get(key, key)
    return text.format(**params) if params else text


class LoggingNotifier:
    """Notification sink used when the page supplies none."""

    def success(self, message: str) -> None:
        logger.info(message)

    def error(self, message: str) -> None:
        logger.error(message)

    def info(self, message: str) -> None:
        logger.info(message)

    def loading(self, message: str) -> str:
        logger.info(message)
        return message

    def dismiss(self, handle: Any) -> None:
        pass


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _copy_value(value: Any) -> Any:
    # lists of items are copied one level deep, files and scalars are kept as is
    if isinstance(value, list):
        return [dict(item) if isinstance(item, dict) else item for item in value]
    if isinstance(value, dict):
        return dict(value)
    return value


def snapshot(values: Dict[str, Any]) -> Dict[str, Any]:
    return {name: _copy_value(value) for name, value in values.items()}


FieldListener = Callable[[str, FieldDescriptor], None]


class FormSessionController:
    """
    State and lifecycle of one create or update form.

    Update mode is selected by passing ``entity_id``; the form then starts in
    ``loading`` until ``mount()`` has fetched the entity. Create mode starts
    ``ready`` with the declared defaults, overridden by ``defaults``.
    """

    def __init__(self, fields: Iterable[FieldDescriptor], *, entity_id: Any = None,
                 defaults: Optional[Dict[str, Any]] = None,
                 fetch_data: Optional[Callable[[Any], Awaitable[Dict[str, Any]]]] = None,
                 on_create: Optional[Callable[[Dict[str, Any]], Awaitable[Any]]] = None,
                 on_update: Optional[Callable[[Any, Dict[str, Any]], Awaitable[Any]]] = None,
                 before_submit: Optional[Callable[[Dict[str, Any]], Any]] = None,
                 cross_validate: Optional[Callable[[Dict[str, Any]], Dict[str, str]]] = None,
                 after_success: Optional[Callable[[Any], Any]] = None,
                 after_error: Optional[Callable[[Exception], Any]] = None,
                 on_cancel: Optional[Callable[[], Any]] = None,
                 notify: Any = None,
                 translate: Optional[Callable[..., str]] = None,
                 status_display_seconds: float = 2.0,
                 max_upload_size: int = DEFAULT_MAX_SIZE):
        self.declared_fields: List[FieldDescriptor] = validate_descriptors(fields)
        self.entity_id = entity_id
        self.mode = FormMode.UPDATE if entity_id is not None else FormMode.CREATE
        self.defaults = dict(defaults or {})

        self.fetch_data = fetch_data
        self.on_create = on_create
        self.on_update = on_update
        self.before_submit = before_submit
        self.cross_validate = cross_validate
        self.after_success = after_success
        self.after_error = after_error
        self.on_cancel = on_cancel
        self.notify = notify if notify is not None else LoggingNotifier()
        self.translate = translate or default_translate
        self.status_display_seconds = status_display_seconds
        self.max_upload_size = max_upload_size

        self.descriptors: Dict[str, FieldDescriptor] = {d.name: d for d in self.declared_fields}
        self.values: Dict[str, Any] = {}
        self.original_values: Dict[str, Any] = {}
        self.field_errors: Dict[str, str] = {}
        self.touched: Set[str] = set()
        self.submit_error: Optional[str] = None
        self.load_error: Optional[DataLoadError] = None
        self.last_result: Any = None
        self.previews = PreviewRegistry()
        self.attachments: Dict[str, AttachmentFieldController] = {}
        self.closed = False

        self._categories: Dict[str, str] = {}
        self._listeners: List[FieldListener] = []
        self._validated: Dict[str, Any] = {}
        self._submitted_values: Dict[str, Any] = {}
        self._settle_task: Optional[asyncio.Task] = None
        self._status_deadline: Optional[float] = None

        self.schema: ValidationSchema = generate_schema(self.declared_fields)

        if self.mode == FormMode.UPDATE:
            self.status = FormStatus.LOADING
        else:
            self.status = FormStatus.READY
            self._populate(self._create_values())

    # ------------------------------------------------------------ properties

    @property
    def fields(self) -> List[FieldDescriptor]:
        """Descriptors currently in effect, in declaration order."""
        return [self.descriptors[d.name] for d in self.declared_fields]

    @property
    def is_update(self) -> bool:
        return self.mode == FormMode.UPDATE

    def is_field_dirty(self, name: str) -> bool:
        return self.values.get(name) != self.original_values.get(name)

    @property
    def dirty_fields(self) -> Set[str]:
        return {name for name in self.descriptors if self.is_field_dirty(name)}

    @property
    def is_dirty(self) -> bool:
        return any(self.is_field_dirty(name) for name in self.descriptors)

    @property
    def can_submit(self) -> bool:
        return self.is_dirty and self.status in (FormStatus.READY, FormStatus.SUCCESS, FormStatus.ERROR)

    @property
    def can_reset(self) -> bool:
        return self.is_dirty and self.status not in (FormStatus.SUBMITTING, FormStatus.LOADING, FormStatus.DATA_ERROR)

    def descriptor(self, name: str) -> FieldDescriptor:
        try:
            return self.descriptors[name]
        except KeyError:
            raise FieldDescriptorError(f"Unknown field '{name}'", name)

    def add_field_listener(self, callback: FieldListener) -> None:
        """Register a callback invoked with (name, descriptor) when a dependent field is swapped."""
        self._listeners.append(callback)

    # ---------------------------------------------------------------- loading

    async def mount(self) -> None:
        """Load the entity in update mode; create mode is ready on construction."""
        if self.mode == FormMode.UPDATE and self.status == FormStatus.LOADING:
            await self._load()

    async def retry_load(self) -> bool:
        """Manual retry after a data-load failure."""
        if self.mode != FormMode.UPDATE:
            return False
        self.status = FormStatus.LOADING
        self.load_error = None
        return await self._load()

    async def _load(self) -> bool:
        try:
            if self.fetch_data is None:
                raise FormEngineError("No data loader configured")
            data = await _maybe_await(self.fetch_data(self.entity_id))
            if not isinstance(data, dict):
                raise ValueError(f"Expected an object for entity {self.entity_id}, got {type(data).__name__}")
        except Exception as e:
            self.load_error = DataLoadError(self.entity_id, e)
            self.status = FormStatus.DATA_ERROR
            logger.error(f"Failed to load entity {self.entity_id}: {e}")
            self.notify.error(self.translate('form.loadFailed'))
            return False

        values = {}
        for descriptor in self.declared_fields:
            if descriptor.name in data:
                values[descriptor.name] = data[descriptor.name]
            else:
                values[descriptor.name] = default_value_for(descriptor)
        self._populate(values)
        self.status = FormStatus.READY
        logger.info(f"Loaded entity {self.entity_id} with {len(values)} field(s)")
        return True

    def _create_values(self) -> Dict[str, Any]:
        values = {d.name: default_value_for(d) for d in self.declared_fields}
        for name, value in self.defaults.items():
            if name in values:
                values[name] = _copy_value(value)
        return values

    def _populate(self, values: Dict[str, Any]) -> None:
        self.values = values
        self.original_values = snapshot(values)
        self.field_errors = {}
        self.touched = set()
        self._resolve_all()
        self._build_attachments()

    def _build_attachments(self) -> None:
        for controller in self.attachments.values():
            controller.close()
        self.attachments = {}
        for descriptor in self.fields:
            if descriptor.kind in ATTACHMENT_KINDS:
                self.attachments[descriptor.name] = AttachmentFieldController(
                    descriptor,
                    value=self.values.get(descriptor.name),
                    original=self.original_values.get(descriptor.name),
                    on_change=lambda value, name=descriptor.name: self.set_value(name, value),
                    registry=self.previews,
                    max_size=self.max_upload_size
                )

    # ----------------------------------------------------------- dependencies

    def _resolve_all(self) -> None:
        swapped = []
        for declared in self.declared_fields:
            if declared.depends_on is None:
                continue
            watched_value = self.values.get(declared.depends_on.field)
            resolved = declared.resolve(watched_value)
            self._categories[declared.name] = declared.category_of(watched_value)
            if resolved != self.descriptors.get(declared.name):
                swapped.append(resolved)
            self.descriptors[declared.name] = resolved
        if swapped:
            self.schema = generate_schema(self.fields)
            for descriptor in swapped:
                self._notify_listeners(descriptor)

    def _apply_dependencies(self, changed: str, visited: Optional[Set[str]] = None) -> None:
        visited = visited if visited is not None else {changed}
        swapped = []
        for declared in self.declared_fields:
            dependency = declared.depends_on
            if dependency is None or dependency.field != changed or declared.name in visited:
                continue
            watched_value = self.values.get(changed)
            category = declared.category_of(watched_value)
            resolved = declared.resolve(watched_value)
            self.descriptors[declared.name] = resolved
            if category == self._categories.get(declared.name):
                continue
            logger.debug(f"Field '{declared.name}' switched to category '{category}'")
            self._categories[declared.name] = category
            # a reference id chosen for the previous category is meaningless now
            self.values[declared.name] = default_value_for(resolved)
            self.field_errors.pop(declared.name, None)
            visited.add(declared.name)
            swapped.append(resolved)

        if not swapped:
            return
        self.schema = generate_schema(self.fields)
        for descriptor in swapped:
            self._sync_attachment(descriptor)
            self._notify_listeners(descriptor)
            self._apply_dependencies(descriptor.name, visited)

    def _sync_attachment(self, descriptor: FieldDescriptor) -> None:
        if descriptor.kind not in ATTACHMENT_KINDS:
            old = self.attachments.pop(descriptor.name, None)
            if old is not None:
                old.close()
            return
        controller = self.attachments.get(descriptor.name)
        if controller is None:
            self._build_attachments()
        else:
            controller.descriptor = descriptor
            controller.set_value(self.values.get(descriptor.name))

    def _notify_listeners(self, descriptor: FieldDescriptor) -> None:
        for listener in list(self._listeners):
            listener(descriptor.name, descriptor)

    # ---------------------------------------------------------------- editing

    def set_value(self, name: str, value: Any) -> bool:
        """
        Record an edit.

        Returns:
            False when the form cannot be edited (loading or failed load)
        """
        self.descriptor(name)
        if self.status in (FormStatus.LOADING, FormStatus.DATA_ERROR) or self.closed:
            logger.warning(f"Ignoring edit of '{name}' while form is {self.status.value}")
            return False
        self._settle_now()

        self.values[name] = value
        self.field_errors.pop(name, None)
        controller = self.attachments.get(name)
        if controller is not None:
            controller.set_value(value)
        error = self._check_field(name)
        if error:
            self.field_errors[name] = error
        self._apply_dependencies(name)
        return True

    def blur(self, name: str) -> Optional[str]:
        """Field lost focus: validate it and record the result."""
        self.descriptor(name)
        self.touched.add(name)
        error = self._check_field(name)
        if error:
            self.field_errors[name] = error
        else:
            self.field_errors.pop(name, None)
        return error

    def _check_field(self, name: str) -> Optional[str]:
        descriptor = self.descriptors[name]
        if descriptor.kind in ATTACHMENT_KINDS:
            return None
        return self.schema.validate_field(name, self.values.get(name))

    def validate(self) -> bool:
        """Full validation; populates ``field_errors``."""
        result = self.schema.validate(self.values)
        errors = dict(result.errors)
        for descriptor in self.fields:
            if descriptor.kind in ATTACHMENT_KINDS and descriptor.name not in errors:
                message = check_attachment_presence(descriptor, self.values.get(descriptor.name))
                if message:
                    errors[descriptor.name] = message
        if not errors and self.cross_validate is not None:
            # form level checks see the coerced values, after every field passed
            for name, message in (self.cross_validate({**self.values, **result.data}) or {}).items():
                errors.setdefault(name, message)
        self.field_errors = errors
        self._validated = result.data if not errors else {}
        return not errors

    # ------------------------------------------------------------- list fields

    def _array_descriptor(self, name: str) -> FieldDescriptor:
        descriptor = self.descriptor(name)
        if descriptor.kind != FieldKind.ARRAY:
            raise FieldDescriptorError(f"Field '{name}' is not a list field", name)
        return descriptor

    def _set_items(self, descriptor: FieldDescriptor, items: List[Dict[str, Any]]) -> None:
        if descriptor.array.order_key:
            items = list_fields.reindex(items, descriptor.array.order_key)
        self.set_value(descriptor.name, items)

    def append_item(self, name: str, item: Optional[Dict[str, Any]] = None) -> bool:
        descriptor = self._array_descriptor(name)
        items = self.values.get(name) or []
        if not list_fields.can_add(items, descriptor.array):
            return False
        self._set_items(descriptor, list_fields.append_item(items, item or list_fields.new_item(descriptor.array)))
        return True

    def remove_item(self, name: str, index: int) -> bool:
        descriptor = self._array_descriptor(name)
        items = self.values.get(name) or []
        if not list_fields.can_remove(items, descriptor.array):
            return False
        self._set_items(descriptor, list_fields.remove_item(items, index))
        return True

    def update_item(self, name: str, index: int, item: Dict[str, Any]) -> None:
        descriptor = self._array_descriptor(name)
        self._set_items(descriptor, list_fields.replace_item(self.values.get(name), index, item))

    def move_item(self, name: str, source: int, target: int) -> None:
        descriptor = self._array_descriptor(name)
        self._set_items(descriptor, list_fields.move_item(self.values.get(name), source, target))

    # ------------------------------------------------------------- submission

    def build_payload(self, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Payload of the current values.

        Read-only fields are left out; attachments follow the three-state
        rule; custom fields are serialized by their behavior.
        """
        data = data if data is not None else self._validated
        payload: Dict[str, Any] = {}
        for descriptor in self.fields:
            if descriptor.read_only:
                continue
            name = descriptor.name
            if descriptor.kind in ATTACHMENT_KINDS:
                value = attachment_payload_value(self.values.get(name), self.original_values.get(name))
                if value is UNCHANGED:
                    continue
                payload[name] = value
                continue
            value = data.get(name, self.values.get(name))
            if descriptor.kind == FieldKind.CUSTOM and descriptor.behavior is not None:
                value = descriptor.behavior.serialize(value)
            payload[name] = value
        return payload

    async def submit(self) -> bool:
        """
        Validate and persist.

        Returns:
            True when the persistence call resolved
        """
        if self.status == FormStatus.SUBMITTING:
            logger.debug("Submit ignored, a submission is already in flight")
            return False
        if self.status in (FormStatus.LOADING, FormStatus.DATA_ERROR) or self.closed:
            return False
        self._settle_now()
        if not self.is_dirty:
            logger.debug("Submit ignored, form has no changes")
            return False
        if not self.validate():
            logger.info(f"Submit blocked by {len(self.field_errors)} invalid field(s): {sorted(self.field_errors)}")
            return False

        self.status = FormStatus.SUBMITTING
        self.submit_error = None
        submitted_values = snapshot(self.values)
        handle = self.notify.loading(self.translate('form.submitting'))
        try:
            payload = self.build_payload()
            if self.before_submit is not None:
                payload = await _maybe_await(self.before_submit(payload))
            if self.mode == FormMode.UPDATE:
                if self.on_update is None:
                    raise SubmissionError("No update handler configured")
                result = await _maybe_await(self.on_update(self.entity_id, payload))
            else:
                if self.on_create is None:
                    raise SubmissionError("No create handler configured")
                result = await _maybe_await(self.on_create(payload))
        except Exception as e:
            message = error_message(e, self.translate('form.submitFailed'))
            logger.error(f"Submission of {self.mode.value} form failed: {message}")
            self.status = FormStatus.ERROR
            self.submit_error = message
            self._dismiss(handle)
            self.notify.error(message)
            await self._run_hook('after_error', self.after_error, e)
            self._schedule_settle()
            return False

        self._dismiss(handle)
        self.status = FormStatus.SUCCESS
        self.last_result = result
        self._submitted_values = submitted_values
        logger.info(f"Submitted {self.mode.value} form with {len(payload)} field(s)")
        self.notify.success(self.translate('form.updated' if self.mode == FormMode.UPDATE else 'form.created'))
        await self._run_hook('after_success', self.after_success, result)
        self._schedule_settle()
        return True

    async def _run_hook(self, name: str, hook: Optional[Callable[[Any], Any]], argument: Any) -> None:
        """Run a page callback; its failure is logged and never reaches the page."""
        if hook is None:
            return
        try:
            await _maybe_await(hook(argument))
        except Exception as e:
            logger.error(f"{name} callback failed: {e}", exc_info=True)

    def _dismiss(self, handle: Any) -> None:
        dismiss = getattr(self.notify, 'dismiss', None)
        if dismiss is not None:
            dismiss(handle)

    # ----------------------------------------------------------- status reset

    def _schedule_settle(self) -> None:
        self._status_deadline = time.monotonic() + self.status_display_seconds
        if self.status_display_seconds <= 0:
            self._settle()
            return
        self._settle_task = asyncio.ensure_future(self._settle_later())

    async def _settle_later(self) -> None:
        await asyncio.sleep(self.status_display_seconds)
        self._settle_task = None
        self._settle()

    def settle_if_due(self) -> bool:
        """Return success/error to ready once the display interval has passed."""
        if self._status_deadline is not None and time.monotonic() >= self._status_deadline:
            self._settle_now()
            return True
        return False

    def _settle_now(self) -> None:
        if self._settle_task is not None and not self._settle_task.done():
            self._settle_task.cancel()
        self._settle_task = None
        self._settle()

    def _settle(self) -> None:
        if self.status == FormStatus.SUCCESS:
            # the submitted values are the new baseline
            self.original_values = snapshot(self._submitted_values)
            for name, controller in self.attachments.items():
                controller.original = self.original_values.get(name)
            self.status = FormStatus.READY
        elif self.status == FormStatus.ERROR:
            self.submit_error = None
            self.status = FormStatus.READY
        self._status_deadline = None

    # ------------------------------------------------------------ reset/close

    def reset(self) -> None:
        """Restore the original values and clear every error."""
        if self.status in (FormStatus.LOADING, FormStatus.DATA_ERROR, FormStatus.SUBMITTING):
            return
        self._settle_now()
        self.values = snapshot(self.original_values)
        self.field_errors = {}
        self.touched = set()
        self.submit_error = None
        self._resolve_all()
        for name, controller in self.attachments.items():
            controller.error = None
            controller.set_value(self.values.get(name))
        self.status = FormStatus.READY

    async def cancel(self) -> None:
        """Leave the form without saving."""
        self.close()
        if self.on_cancel is not None:
            await _maybe_await(self.on_cancel())

    def close(self) -> None:
        """Discard the session: stop timers and release previews."""
        if self._settle_task is not None and not self._settle_task.done():
            self._settle_task.cancel()
        self._settle_task = None
        for controller in self.attachments.values():
            controller.close()
        self.previews.revoke_all()
        self._listeners.clear()
        self.closed = True
