"""
Streamlit renderer for form sessions.

Renders the current descriptors of a ``FormSessionController`` one widget per
field and feeds every widget change back through ``set_value``. Widgets are
keyed by field name plus a revision number: reset, reload and dependent-field
swaps bump the revision so the widgets pick up the session's values again.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Any, Awaitable, Callable, Dict, List, Optional
import logging

import pandas as pd
import numpy as np
import streamlit as st

from .attachment import LocalFile
from .diff_utils import summarize_changes
from .error_handler import ErrorHandler, ErrorType
from .field_descriptor import FieldDependency, FieldDescriptor, FieldKind, FieldOption, TEXT_KINDS
from .field_handlers import HANDLERS
from .list_fields import can_add, can_remove
from .reference_selector import PaginatedReferenceSelector, SCROLL_THRESHOLD_PX
from .ui_feedback import LoadingIndicator
from .validation_rules import coerce_number

logger = logging.getLogger(__name__)

FetchOptions = Callable[[str, Dict[str, Any]], Awaitable[Any]]


class EventLoopRunner:
    """
    One private event loop per browser session.

    Streamlit scripts are synchronous; coroutines of the form session and its
    selectors run to completion on this loop, and tasks they leave behind
    (debounce and status timers) progress on the next call.
    """

    def __init__(self):
        self.loop = asyncio.new_event_loop()

    def run(self, coro: Awaitable[Any]) -> Any:
        return self.loop.run_until_complete(coro)

    def close(self) -> None:
        if self.loop.is_closed():
            return
        pending = [task for task in asyncio.all_tasks(self.loop) if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            self.loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        self.loop.close()


@dataclass
class RenderContext:
    """Widget state of one rendered form that outlives a script run."""
    session: "FormSessionController"
    runner: EventLoopRunner
    key_prefix: str
    fetch_options: Optional[FetchOptions] = None
    scroll_threshold: int = SCROLL_THRESHOLD_PX
    revision: int = 0
    field_revisions: Dict[str, int] = field(default_factory=dict)
    selectors: Dict[str, PaginatedReferenceSelector] = field(default_factory=dict)
    processed_uploads: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.session.add_field_listener(self._on_field_swapped)

    def key(self, name: str, suffix: str = "") -> str:
        key = f"field_{self.key_prefix}_{name}_{self.revision}_{self.field_revisions.get(name, 0)}"
        return f"{key}_{suffix}" if suffix else key

    def bump(self, name: Optional[str] = None) -> None:
        """Force widgets (all, or one field's) to re-read the session values."""
        if name is None:
            self.revision += 1
            self.processed_uploads.clear()
        else:
            self.field_revisions[name] = self.field_revisions.get(name, 0) + 1
            self.processed_uploads.pop(name, None)

    def _on_field_swapped(self, name: str, descriptor: FieldDescriptor) -> None:
        logger.debug(f"Descriptor of '{name}' swapped to kind {descriptor.kind.value}")
        self.bump(name)

    def close(self) -> None:
        for selector in self.selectors.values():
            selector.close()
        self.selectors.clear()
        self.session.close()
        self.runner.close()


def _unchanged(widget_value: Any, shown: Any, raw: Any) -> Any:
    # widgets normalize values (str -> date, None -> False); only real edits count
    return raw if widget_value == shown else widget_value


def _option_index(options: List[FieldOption], value: Any) -> Optional[int]:
    key = FieldDependency.key_for(value)
    for index, option in enumerate(options):
        if FieldDependency.key_for(option.value) == key:
            return index
    return None


def _as_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return datetime.fromisoformat(value.strip().replace('Z', '+00:00')).date()
        except ValueError:
            logger.warning(f"Failed to parse date string '{value}'")
    return None


def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    if isinstance(value, str) and value.strip():
        try:
            return datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
        except ValueError:
            logger.warning(f"Failed to parse datetime string '{value}'")
    return None


def _number_kwargs(descriptor: FieldDescriptor, value: Any) -> Dict[str, Any]:
    """number_input rejects mixed int/float arguments."""
    constraints = descriptor.constraints
    try:
        shown = coerce_number(value)
    except ValueError:
        shown = None
    raw = {
        'value': shown,
        'min_value': constraints.min_value,
        'max_value': constraints.max_value,
        'step': constraints.step,
    }
    present = [v for v in raw.values() if v is not None]
    integral = all(float(v).is_integer() for v in present)
    cast = int if integral else float
    kwargs = {name: cast(v) for name, v in raw.items() if v is not None}
    kwargs.setdefault('value', None)
    kwargs.setdefault('step', 1 if integral else 0.01)
    return kwargs


def _clean_items(items: List[Dict[str, Any]], item_fields: List[FieldDescriptor]) -> List[Dict[str, Any]]:
    """Drop pandas NaN and numpy scalar types from edited rows."""
    cleaned = []
    for item in items:
        row = {}
        for key, value in item.items():
            if isinstance(value, (list, dict)):
                row[key] = value
            elif pd.isna(value):
                row[key] = None
            elif isinstance(value, np.bool_):
                row[key] = bool(value)
            elif isinstance(value, np.integer):
                row[key] = int(value)
            elif isinstance(value, np.floating):
                row[key] = int(value) if float(value).is_integer() else float(value)
            elif isinstance(value, pd.Timestamp):
                row[key] = value.date()
            else:
                row[key] = value
        for descriptor in item_fields:
            row.setdefault(descriptor.name, None)
        cleaned.append(row)
    return cleaned


class FormRenderer:
    """Renders form sessions with Streamlit widgets."""

    # ---------------------------------------------------------------- fields

    @staticmethod
    def render_text_input(ctx: RenderContext, descriptor: FieldDescriptor, value: Any) -> Any:
        shown = "" if value is None else str(value)
        result = st.text_input(
            descriptor.display_label,
            value=shown,
            key=ctx.key(descriptor.name),
            type="password" if descriptor.kind == FieldKind.PASSWORD else "default",
            placeholder=descriptor.placeholder,
            help=descriptor.help_text,
            max_chars=descriptor.constraints.max_length,
            disabled=descriptor.read_only
        )
        return _unchanged(result, shown, value)

    @staticmethod
    def render_text_area(ctx: RenderContext, descriptor: FieldDescriptor, value: Any) -> Any:
        shown = "" if value is None else str(value)
        result = st.text_area(
            descriptor.display_label,
            value=shown,
            key=ctx.key(descriptor.name),
            placeholder=descriptor.placeholder,
            help=descriptor.help_text,
            height=100,
            max_chars=descriptor.constraints.max_length,
            disabled=descriptor.read_only
        )
        return _unchanged(result, shown, value)

    @staticmethod
    def render_number_input(ctx: RenderContext, descriptor: FieldDescriptor, value: Any) -> Any:
        kwargs = _number_kwargs(descriptor, value)
        result = st.number_input(
            descriptor.display_label,
            key=ctx.key(descriptor.name),
            placeholder=descriptor.placeholder,
            help=descriptor.help_text,
            disabled=descriptor.read_only,
            **kwargs
        )
        return _unchanged(result, kwargs['value'], value)

    @staticmethod
    def render_select(ctx: RenderContext, descriptor: FieldDescriptor, value: Any) -> Any:
        options = descriptor.options
        index = _option_index(options, value)
        result = st.selectbox(
            descriptor.display_label,
            options=list(range(len(options))),
            index=index,
            format_func=lambda i: options[i].label,
            key=ctx.key(descriptor.name),
            placeholder=descriptor.placeholder or "-- Select --",
            help=descriptor.help_text,
            disabled=descriptor.read_only
        )
        if result == index:
            return value
        return None if result is None else options[result].value

    @staticmethod
    def render_radio(ctx: RenderContext, descriptor: FieldDescriptor, value: Any) -> Any:
        options = descriptor.options
        index = _option_index(options, value)
        result = st.radio(
            descriptor.display_label,
            options=list(range(len(options))),
            index=index,
            format_func=lambda i: options[i].label,
            key=ctx.key(descriptor.name),
            help=descriptor.help_text,
            horizontal=len(options) <= 4,
            disabled=descriptor.read_only
        )
        if result == index:
            return value
        return None if result is None else options[result].value

    @staticmethod
    def render_multi_select(ctx: RenderContext, descriptor: FieldDescriptor, value: Any) -> Any:
        labels = {str(option.value): option.label for option in descriptor.options}
        shown = [str(item) for item in (value or []) if str(item) in labels]
        result = st.multiselect(
            descriptor.display_label,
            options=list(labels),
            default=shown,
            format_func=lambda v: labels.get(v, v),
            key=ctx.key(descriptor.name),
            placeholder=descriptor.placeholder or "Choose options",
            help=descriptor.help_text,
            disabled=descriptor.read_only
        )
        return _unchanged(result, shown, value)

    @staticmethod
    def render_date_input(ctx: RenderContext, descriptor: FieldDescriptor, value: Any) -> Any:
        shown = _as_date(value)
        result = st.date_input(
            descriptor.display_label,
            value=shown,
            key=ctx.key(descriptor.name),
            help=descriptor.help_text,
            disabled=descriptor.read_only
        )
        return _unchanged(result, shown, value)

    @staticmethod
    def render_datetime_input(ctx: RenderContext, descriptor: FieldDescriptor, value: Any) -> Any:
        # Streamlit has no native datetime input, use date + time
        shown = _as_datetime(value)
        col1, col2 = st.columns(2)
        with col1:
            date_part = st.date_input(
                f"{descriptor.display_label} (Date)",
                value=shown.date() if shown else None,
                key=ctx.key(descriptor.name, "date"),
                help=descriptor.help_text,
                disabled=descriptor.read_only
            )
        with col2:
            time_part = st.time_input(
                f"{descriptor.display_label} (Time)",
                value=shown.timetz() if shown else None,
                key=ctx.key(descriptor.name, "time"),
                disabled=descriptor.read_only
            )
        if date_part is None or time_part is None:
            return _unchanged(None, shown, value)
        return _unchanged(datetime.combine(date_part, time_part), shown, value)

    @staticmethod
    def render_checkbox(ctx: RenderContext, descriptor: FieldDescriptor, value: Any) -> Any:
        shown = value is True
        result = st.checkbox(
            descriptor.display_label,
            value=shown,
            key=ctx.key(descriptor.name),
            help=descriptor.help_text,
            disabled=descriptor.read_only
        )
        return _unchanged(result, shown, value)

    @staticmethod
    def render_hidden(ctx: RenderContext, descriptor: FieldDescriptor, value: Any) -> Any:
        return value

    @staticmethod
    def render_custom(ctx: RenderContext, descriptor: FieldDescriptor, value: Any) -> Any:
        if descriptor.behavior is None:
            return FormRenderer.render_text_input(ctx, descriptor, value)
        return descriptor.behavior.render(descriptor, value, ctx.key(descriptor.name))

    @staticmethod
    def render_paginated_select(ctx: RenderContext, descriptor: FieldDescriptor, value: Any) -> Any:
        """Searchable remote select; selection goes through the selector, not the return value."""
        session = ctx.session
        name = descriptor.name
        selector = FormRenderer._selector_for(ctx, descriptor, value)

        if descriptor.read_only:
            st.text_input(descriptor.display_label, value=selector.display_label or "Not selected",
                          key=ctx.key(name, "readonly"), disabled=True)
            return value

        search = st.text_input(
            f"Search {descriptor.display_label}",
            value=selector.search_text,
            key=ctx.key(name, "search"),
            placeholder=f"Search {selector.cache.total or 0} options..."
        )
        if search != selector.search_text:
            ctx.runner.run(selector.search_now(search))

        options = list(selector.options)
        index = _option_index(options, value)
        if index is None and value not in (None, ""):
            # unresolved value stays visible under its raw form
            options.insert(0, FieldOption(value=value, label=selector.display_label))
            index = 0

        result = st.selectbox(
            descriptor.display_label,
            options=list(range(len(options))),
            index=index,
            format_func=lambda i: options[i].label,
            key=ctx.key(name, f"select_{selector.version}"),
            placeholder=descriptor.placeholder or "Select an option",
            help=descriptor.help_text
        )
        if result is not None and result != index:
            selector.select(options[result])

        col1, col2, col3 = st.columns([2, 1, 1])
        with col1:
            st.caption(f"Showing {len(selector.options)} of {selector.cache.total or len(selector.options)} options")
            if selector.last_error:
                st.caption(f"⚠️ {selector.last_error}")
        with col2:
            if st.button("Load more", key=ctx.key(name, "more"), disabled=not selector.has_more or selector.loading):
                ctx.runner.run(selector.fetch_next_page())
                st.rerun()
        with col3:
            if st.button("Clear", key=ctx.key(name, "clear"), disabled=value in (None, "")):
                selector.clear()
                ctx.bump(name)
                st.rerun()
        return session.values.get(name)

    @staticmethod
    def _selector_for(ctx: RenderContext, descriptor: FieldDescriptor, value: Any) -> PaginatedReferenceSelector:
        name = descriptor.name
        selector = ctx.selectors.get(name)
        if selector is None:
            if ctx.fetch_options is None:
                raise ValueError(f"Field '{name}' needs an options loader")
            selector = PaginatedReferenceSelector(
                descriptor.reference,
                ctx.fetch_options,
                value=value,
                on_change=lambda new_value: ctx.session.set_value(name, new_value),
                scroll_threshold=ctx.scroll_threshold
            )
            ctx.selectors[name] = selector
            ctx.runner.run(selector.mount())
        elif selector.config != descriptor.reference:
            ctx.runner.run(selector.reconfigure(descriptor.reference))
        selector.set_value(value)
        return selector

    @staticmethod
    def render_attachment(ctx: RenderContext, descriptor: FieldDescriptor, value: Any) -> Any:
        """File/image field; choose, remove and restore go through the attachment controller."""
        name = descriptor.name
        controller = ctx.session.attachments[name]
        st.markdown(f"**{descriptor.display_label}**")

        FormRenderer._render_preview(ctx, descriptor, controller.preview)
        if controller.read_only:
            return value

        upload = st.file_uploader(
            "Choose a file",
            key=ctx.key(name, "upload"),
            help=descriptor.help_text,
            label_visibility="collapsed"
        )
        if upload is not None:
            signature = (upload.name, upload.size)
            if ctx.processed_uploads.get(name) != signature:
                ctx.processed_uploads[name] = signature
                controller.choose(LocalFile.from_upload(upload))
        if controller.error:
            st.error(controller.error)

        col1, col2 = st.columns(2)
        with col1:
            if st.button("Remove", key=ctx.key(name, "remove"), disabled=controller.value is None):
                controller.remove()
                ctx.bump(name)
                st.rerun()
        with col2:
            if controller.has_remote_original and controller.value is not controller.original:
                if st.button("Keep current", key=ctx.key(name, "restore")):
                    controller.restore()
                    ctx.bump(name)
                    st.rerun()
        return ctx.session.values.get(name)

    @staticmethod
    def _render_preview(ctx: RenderContext, descriptor: FieldDescriptor, preview: Optional[str]) -> None:
        if preview is None:
            st.caption("No file selected")
            return
        local = ctx.session.previews.resolve(preview)
        if descriptor.kind == FieldKind.IMAGE:
            st.image(local.data if local is not None else preview, width=200)
        elif local is not None:
            st.caption(f"📎 {local.name} ({local.size / 1024:.1f} KB)")
        else:
            st.markdown(f"📎 [{preview.rsplit('/', 1)[-1]}]({preview})")

    @staticmethod
    def render_array(ctx: RenderContext, descriptor: FieldDescriptor, value: Any) -> Any:
        """Dynamic list field edited as a table; rows are added and removed through the session."""
        session = ctx.session
        name = descriptor.name
        config = descriptor.array
        items = list(value or [])
        columns = [item.name for item in config.fields]

        col1, col2 = st.columns([3, 1])
        with col1:
            st.markdown(f"**{descriptor.display_label}**")
        with col2:
            if st.button(f"Add {config.item_label or 'Row'}", key=ctx.key(name, "add"),
                         disabled=descriptor.read_only or not can_add(items, config)):
                session.append_item(name)
                ctx.bump(name)
                st.rerun()

        if not items:
            st.info("No items yet.")
            return value

        df = pd.DataFrame(items, columns=columns)
        for item_field in config.fields:
            if item_field.kind == FieldKind.DATE:
                df[item_field.name] = pd.to_datetime(df[item_field.name], errors="coerce")
        edited_df = st.data_editor(
            df,
            column_config=FormRenderer._column_config(config.fields),
            num_rows="fixed",
            use_container_width=True,
            key=ctx.key(name, "editor"),
            disabled=descriptor.read_only
        )
        edited = _clean_items(edited_df.to_dict('records'), config.fields)
        for index, (before, after) in enumerate(zip(items, edited)):
            merged = {**before, **after}
            if merged != before:
                session.update_item(name, index, merged)

        if not descriptor.read_only and can_remove(items, config):
            col1, col2 = st.columns([2, 1])
            with col1:
                row_to_delete = st.selectbox(
                    "Select row to delete:",
                    options=list(range(len(items))),
                    format_func=lambda i: f"Row {i + 1}",
                    key=ctx.key(name, "delete_select")
                )
            with col2:
                if st.button("Delete Selected Row", key=ctx.key(name, "delete")):
                    session.remove_item(name, row_to_delete)
                    ctx.bump(name)
                    st.rerun()
        return session.values.get(name)

    @staticmethod
    def _column_config(item_fields: List[FieldDescriptor]) -> Dict[str, Any]:
        """Generate column configuration for st.data_editor from item descriptors."""
        column_config = {}
        for item in item_fields:
            label = item.display_label
            if item.kind == FieldKind.NUMBER:
                column_config[item.name] = st.column_config.NumberColumn(
                    label=label, help=item.help_text, required=item.required,
                    min_value=item.constraints.min_value, max_value=item.constraints.max_value,
                    step=item.constraints.step or 1
                )
            elif item.kind == FieldKind.BOOLEAN:
                column_config[item.name] = st.column_config.CheckboxColumn(
                    label=label, help=item.help_text, required=item.required
                )
            elif item.kind == FieldKind.DATE:
                column_config[item.name] = st.column_config.DateColumn(
                    label=label, help=item.help_text, required=item.required
                )
            elif item.kind in (FieldKind.SINGLE_SELECT, FieldKind.RADIO_GROUP):
                column_config[item.name] = st.column_config.SelectboxColumn(
                    label=label, help=item.help_text, required=item.required,
                    options=item.option_values
                )
            elif item.kind in TEXT_KINDS:
                column_config[item.name] = st.column_config.TextColumn(
                    label=label, help=item.help_text, required=item.required,
                    max_chars=item.constraints.max_length
                )
            else:
                column_config[item.name] = st.column_config.Column(label=label, help=item.help_text)
        return column_config

    @staticmethod
    def render_field(ctx: RenderContext, descriptor: FieldDescriptor) -> None:
        """Render one field and record a changed widget value."""
        session = ctx.session
        name = descriptor.name
        value = session.values.get(name)
        try:
            result = HANDLERS[descriptor.kind].render(ctx, descriptor, value)
        except Exception as e:
            st.error(f"Error rendering field {name}: {str(e)}")
            logger.error(f"Error rendering field {name}: {e}", exc_info=True)
            return

        if not descriptor.read_only and result is not value and result != value:
            session.set_value(name, result)
            session.blur(name)

        error = session.field_errors.get(name)
        if error:
            st.error(error)

    # ------------------------------------------------------------------ form

    @staticmethod
    def render_form(ctx: RenderContext, title: str) -> None:
        """Render a whole form page: load state, fields, change notice and actions."""
        from .form_session import FormStatus

        session = ctx.session
        session.settle_if_due()
        st.header(title)

        if session.status == FormStatus.LOADING:
            with LoadingIndicator.spinner("Loading record..."):
                ctx.runner.run(session.mount())
            ctx.bump()

        if session.status == FormStatus.DATA_ERROR:
            FormRenderer._render_data_error(ctx)
            return

        if session.status == FormStatus.ERROR and session.submit_error:
            st.error(f"❌ {session.submit_error}")
        elif session.status == FormStatus.SUCCESS:
            st.success(f"✅ {session.translate('form.updated' if session.is_update else 'form.created')}")

        for descriptor in session.fields:
            FormRenderer.render_field(ctx, descriptor)

        if session.is_update and session.is_dirty:
            FormRenderer._render_change_summary(session)

        FormRenderer._render_actions(ctx)

    @staticmethod
    def _render_data_error(ctx: RenderContext) -> None:
        session = ctx.session

        def retry():
            ctx.runner.run(session.retry_load())
            ctx.bump()
            st.rerun()

        ErrorHandler.handle_error(
            session.load_error,
            f"loading {session.entity_id}",
            ErrorType.DATA_LOAD,
            recovery_options=ErrorHandler.create_recovery_options(ErrorType.DATA_LOAD, retry=retry)
        )

    @staticmethod
    def _render_change_summary(session: "FormSessionController") -> None:
        dirty = session.dirty_fields
        changes = summarize_changes(session.original_values, session.values,
                                    [descriptor for descriptor in session.fields if descriptor.name in dirty])
        st.warning(f"⚠️ You have {len(changes)} unsaved change(s)")
        with st.expander("Review changes"):
            for change in changes:
                st.markdown(f"- **{change['label']}**: {change['description']}")

    @staticmethod
    def _render_actions(ctx: RenderContext) -> None:
        session = ctx.session
        col1, col2, col3 = st.columns(3)
        with col1:
            submitted = st.button(
                "Submit", type="primary", key=f"submit_{ctx.key_prefix}",
                disabled=not session.can_submit
            )
        with col2:
            reset = st.button("Reset", key=f"reset_{ctx.key_prefix}", disabled=not session.can_reset)
        with col3:
            cancelled = st.button("Cancel", key=f"cancel_{ctx.key_prefix}")

        if submitted:
            with LoadingIndicator.spinner("Saving..."):
                ctx.runner.run(session.submit())
            st.rerun()
        if reset:
            session.reset()
            ctx.bump()
            st.rerun()
        if cancelled:
            ctx.runner.run(session.cancel())
            st.rerun()
