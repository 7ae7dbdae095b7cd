"""
Main Streamlit application for the catalog admin console.
Schema-driven create/edit forms for catalog entities backed by the catalog REST API.
"""

import streamlit as st
from pathlib import Path
import logging

from form_engine.catalog_client import CatalogClient
from form_engine.config_loader import load_config, get_config_value, configure_logging
from form_engine.error_handler import ErrorHandler, ErrorType
from form_engine.form_renderer import EventLoopRunner, FormRenderer, RenderContext
from form_engine.form_session import FormSessionController
from form_engine.schema_loader import default_registry, list_form_schemas, load_form_schema_cached
from form_engine.ui_feedback import Notify

config = load_config()
configure_logging(config)
logger = logging.getLogger(__name__)

st.set_page_config(
    page_title=get_config_value(config, 'app', 'name', 'Catalog Admin Console'),
    page_icon="🗂️",
    layout="wide",
    initial_sidebar_state="expanded"
)

SCHEMAS_DIR = Path(get_config_value(config, 'forms', 'schemas_dir', 'schemas'))


@st.cache_resource
def get_registry():
    return default_registry({
        'page_size': int(get_config_value(config, 'forms', 'page_size', 10)),
        'debounce_ms': int(get_config_value(config, 'forms', 'debounce_ms', 500))
    })


@st.cache_resource
def get_client() -> CatalogClient:
    return CatalogClient.from_config(config)


def main():
    """Main application entry point."""
    try:
        init_session_state()
        render_sidebar()
        render_main_content()
    except Exception as e:
        ErrorHandler.handle_error(
            e,
            "application startup",
            ErrorType.SYSTEM,
            recovery_options=ErrorHandler.create_recovery_options(ErrorType.SYSTEM)
        )


def init_session_state():
    """Initialize session state variables."""
    if 'schema_file' not in st.session_state:
        st.session_state.schema_file = None

    if 'entity_id' not in st.session_state:
        st.session_state.entity_id = ""

    if 'form_context' not in st.session_state:
        st.session_state.form_context = None

    if 'form_key' not in st.session_state:
        st.session_state.form_key = None


def render_sidebar():
    """Render application sidebar."""
    with st.sidebar:
        st.header(get_config_value(config, 'app', 'name', 'Catalog Admin Console'))

        schema_files = list_form_schemas(SCHEMAS_DIR)
        if not schema_files:
            st.warning(f"No form schemas found in {SCHEMAS_DIR}")
            return

        current = st.session_state.schema_file
        index = schema_files.index(current) if current in schema_files else 0
        st.session_state.schema_file = st.selectbox(
            "Entity:",
            options=schema_files,
            index=index,
            format_func=lambda name: Path(name).stem.replace('_', ' ').title()
        )

        st.session_state.entity_id = st.text_input(
            "Record ID:",
            value=st.session_state.entity_id,
            help="Leave empty to create a new record"
        ).strip()

        st.divider()

        if st.button("🆕 New Record", help="Discard the open form and start a new record"):
            st.session_state.entity_id = ""
            close_form()
            st.rerun()

        if st.button("🔄 Reload", help="Discard unsaved changes and reload the record"):
            close_form()
            st.rerun()

        st.divider()
        st.caption(f"API: {get_config_value(config, 'api', 'base_url')}")


def close_form():
    """Dispose the open form, its selectors and its event loop."""
    ctx = st.session_state.get('form_context')
    if ctx is not None:
        ctx.close()
    st.session_state.form_context = None
    st.session_state.form_key = None


def open_form(schema_file: str, entity_id: str) -> RenderContext:
    """Build a form session for the chosen entity and record."""
    schema = load_form_schema_cached(SCHEMAS_DIR / schema_file, get_registry())
    client = get_client()
    adapter = client.bind(schema.entity)

    def on_cancel():
        # Runs inside the form's event loop; the context is disposed on the next run
        st.session_state.entity_id = ""
        st.session_state.form_key = None

    session = FormSessionController(
        schema.fields,
        entity_id=entity_id or None,
        on_cancel=on_cancel,
        cross_validate=schema.cross_validate,
        notify=Notify,
        status_display_seconds=float(get_config_value(config, 'forms', 'status_display_seconds', 2.0)),
        max_upload_size=int(float(get_config_value(config, 'forms', 'max_upload_mb', 5)) * 1024 * 1024),
        **adapter.collaborators()
    )
    logger.info(f"Opened {session.mode.value} form for {schema.entity} {entity_id or ''}".rstrip())
    return RenderContext(
        session=session,
        runner=EventLoopRunner(),
        key_prefix=f"{schema.entity}_{entity_id or 'new'}",
        fetch_options=client.fetch_options,
        scroll_threshold=int(get_config_value(config, 'forms', 'scroll_threshold_px', 100))
    )


def render_main_content():
    """Render the form of the selected entity."""
    schema_file = st.session_state.schema_file
    if not schema_file:
        st.info("Select an entity in the sidebar")
        return

    form_key = (schema_file, st.session_state.entity_id)
    if st.session_state.form_key != form_key:
        close_form()
        try:
            st.session_state.form_context = open_form(*form_key)
        except Exception as e:
            ErrorHandler.handle_error(
                e,
                f"opening {schema_file}",
                ErrorType.SCHEMA,
                recovery_options=ErrorHandler.create_recovery_options(ErrorType.SCHEMA)
            )
            return
        st.session_state.form_key = form_key

    ctx = st.session_state.form_context
    schema = load_form_schema_cached(SCHEMAS_DIR / schema_file, get_registry())
    action = "Edit" if ctx.session.is_update else "New"
    title = f"{action} {schema.title}"
    if schema.description:
        st.caption(schema.description)
    FormRenderer.render_form(ctx, title)


if __name__ == "__main__":
    main()
