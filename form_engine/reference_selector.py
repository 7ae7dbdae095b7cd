"""
Paginated reference selector.

Binds one scalar form value to a remote, paged and searchable list of
options (brands, categories, cities...). The selector owns its option cache;
nothing is shared between selector instances.

Ordering rules:
    - search input is debounced; only the last text after the quiet
      interval is fetched
    - every response carries the version it was requested under and is
      dropped when a newer query or configuration has replaced it
    - at most one page load per selector is started by scrolling
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .exceptions import error_message
from .field_descriptor import FieldDependency, FieldOption, ReferenceConfig

logger = logging.getLogger(__name__)

SCROLL_THRESHOLD_PX = 100

FetchOptions = Callable[[str, Dict[str, Any]], Awaitable[Any]]


@dataclass
class ReferenceOptionCache:
    """Fetched option pages of one selector, in request order."""
    pages: List[List[FieldOption]] = field(default_factory=list)
    query: str = ""
    exhausted: bool = False
    total: Optional[int] = None

    @property
    def options(self) -> List[FieldOption]:
        # pages are concatenated as delivered, the remote source does not repeat items
        return [option for page in self.pages for option in page]

    @property
    def page(self) -> int:
        """Number of the last page loaded, 0 before the first load."""
        return len(self.pages)

    def reset(self, query: str = "") -> None:
        self.pages = []
        self.query = query
        self.exhausted = False
        self.total = None


def extract_items(response: Any) -> List[Any]:
    """Item list of a ``{data: [...]}``, ``{items: [...]}`` or bare list response."""
    if isinstance(response, dict):
        for key in ('data', 'items'):
            if isinstance(response.get(key), list):
                return response[key]
        return []
    if isinstance(response, list):
        return response
    return []


def extract_total(response: Any, items: List[Any]) -> int:
    if isinstance(response, dict):
        meta = response.get('meta')
        if isinstance(meta, dict) and meta.get('total') is not None:
            return int(meta['total'])
        if response.get('total') is not None:
            return int(response['total'])
    return len(items)


def to_option(item: Any, config: ReferenceConfig) -> FieldOption:
    """Derive a ``FieldOption`` from one raw item using the configured keys."""
    if isinstance(item, FieldOption):
        return item
    if isinstance(item, dict):
        value = item.get(config.value_key)
        label = item.get(config.label_key)
        return FieldOption(value=value, label=str(label if label is not None else value), raw=item)
    return FieldOption(value=item, label=str(item))


def _transformed_option(item: Any) -> FieldOption:
    # transform functions return ready made {label, value} pairs
    if isinstance(item, FieldOption):
        return item
    raw = item.get('raw') if isinstance(item.get('raw'), dict) else item
    return FieldOption(value=item.get('value'), label=str(item.get('label', item.get('value'))), raw=dict(raw))


class PaginatedReferenceSelector:
    """
    Async searchable picker over a remote paged dataset.

    Args:
        config: Remote lookup configuration of the field
        fetch_options: Awaitable collaborator ``(endpoint, params) -> response``
        value: Value already bound to the field (update mode)
        on_change: Called with the new value on select and clear
        scroll_threshold: Distance in pixels from the list end that triggers the next page
    """

    def __init__(self, config: ReferenceConfig, fetch_options: FetchOptions, value: Any = None,
                 on_change: Optional[Callable[[Any], None]] = None,
                 scroll_threshold: int = SCROLL_THRESHOLD_PX):
        self.config = config
        self.fetch_options = fetch_options
        self.value = value
        self.on_change = on_change
        self.scroll_threshold = scroll_threshold

        self.cache = ReferenceOptionCache()
        self.version = 0
        self.search_text = ""
        self.selected_label: Optional[str] = None
        self.is_open = False
        self.last_error: Optional[str] = None
        self.closed = False

        self._timer: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------ state

    @property
    def loading(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    @property
    def options(self) -> List[FieldOption]:
        return self.cache.options

    @property
    def has_more(self) -> bool:
        return not self.cache.exhausted

    @property
    def display_label(self) -> str:
        """Label of the bound value, or the raw value while it is unresolved."""
        if self.value is None or self.value == "":
            return ""
        if self.selected_label is not None:
            return self.selected_label
        return str(self.value)

    def find_option(self, value: Any) -> Optional[FieldOption]:
        key = FieldDependency.key_for(value)
        for option in self.cache.options:
            if FieldDependency.key_for(option.value) == key:
                return option
        return None

    # -------------------------------------------------------------- lifecycle

    async def mount(self) -> None:
        """Initial unfiltered fetch; resolves the label of a pre-existing value."""
        await self.search_now("")

    def close(self) -> None:
        """Unmount: drop the pending debounce and ignore responses still in flight."""
        self._cancel_timer()
        self.version += 1
        self.closed = True
        self.is_open = False

    async def wait_until_idle(self) -> None:
        """Wait for every pending debounce timer and page load."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ---------------------------------------------------------------- search

    def search(self, text: str) -> asyncio.Task:
        """
        Schedule a debounced query.

        A call within the debounce interval of the previous one cancels the
        previous timer, so fast typing issues a single request.
        """
        self.search_text = text
        self.is_open = True
        self._cancel_timer()
        self._timer = self._track(asyncio.ensure_future(self._debounced(text)))
        return self._timer

    async def search_now(self, text: str) -> None:
        """Run a query immediately, superseding any pending one."""
        self.search_text = text
        self._cancel_timer()
        await self._restart(text)

    async def _debounced(self, text: str) -> None:
        await asyncio.sleep(self.config.debounce_ms / 1000)
        # past the quiet interval the query is no longer cancellable, only superseded
        self._timer = None
        await self._restart(text)

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def _restart(self, query: str) -> None:
        self.version += 1
        self.cache.reset(query)
        task = self._start_load(1)
        await task

    # ------------------------------------------------------------- pagination

    def on_scroll(self, scroll_top: float, scroll_height: float, client_height: float) -> Optional[asyncio.Task]:
        """
        Scroll position of the option list changed.

        Returns:
            The page-load task when the list end is near and another page is due
        """
        if scroll_height - scroll_top - client_height >= self.scroll_threshold:
            return None
        return self.load_more()

    def load_more(self) -> Optional[asyncio.Task]:
        """Start loading the next page unless one is in flight or the source is exhausted."""
        if self.closed or self.loading or self.cache.exhausted:
            return None
        return self._start_load(self.cache.page + 1)

    async def fetch_next_page(self) -> bool:
        """Awaitable form of ``load_more``; True when a page was requested."""
        task = self.load_more()
        if task is None:
            return False
        await task
        return True

    async def refresh(self) -> None:
        """Reload page 1 of the current query."""
        await self._restart(self.cache.query)

    async def reconfigure(self, config: ReferenceConfig) -> None:
        """Swap endpoint or filters and restart from page 1 without a query."""
        logger.debug(f"Reconfiguring selector from '{self.config.endpoint}' to '{config.endpoint}'")
        self.config = config
        self.selected_label = None
        self.search_text = ""
        self._cancel_timer()
        await self._restart("")

    def _start_load(self, page: int) -> asyncio.Task:
        task = self._track(asyncio.ensure_future(self._load_page(page, self.version, self.cache.query)))
        self._inflight = task
        return task

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def build_params(self, page: int, query: str) -> Dict[str, Any]:
        params: Dict[str, Any] = {'page': page, 'pageSize': self.config.page_size}
        params.update(self.config.params)
        if query:
            params[self.config.search_param] = query
        return params

    async def _load_page(self, page: int, version: int, query: str) -> bool:
        config = self.config
        params = self.build_params(page, query)
        try:
            response = await self.fetch_options(config.endpoint, params)
            items = extract_items(response)
            if config.transform is not None:
                options = [_transformed_option(item) for item in config.transform(items)]
            else:
                options = [to_option(item, config) for item in items]
        except Exception as e:
            if version == self.version:
                self.last_error = error_message(e, "Failed to load options")
            logger.warning(f"Failed to load page {page} of '{config.endpoint}': {e}")
            return False

        if version != self.version:
            logger.debug(f"Discarding stale page {page} of '{config.endpoint}' (query {query!r})")
            return False

        if page == 1:
            self.cache.pages = [options]
        else:
            self.cache.pages.append(options)
        self.cache.exhausted = len(options) < config.page_size
        self.cache.total = extract_total(response, items)
        self.last_error = None
        logger.debug(f"Loaded page {page} of '{config.endpoint}' with {len(options)} option(s)")

        if self.selected_label is None and self.value not in (None, ""):
            option = self.find_option(self.value)
            if option is not None:
                self.selected_label = option.label
        return True

    # -------------------------------------------------------------- selection

    def open_dropdown(self) -> None:
        self.is_open = True

    def close_dropdown(self) -> None:
        self.is_open = False

    def select(self, option: FieldOption) -> None:
        """Bind the option's value and show its label."""
        self.value = option.value
        self.selected_label = option.label
        self.is_open = False
        if self.on_change is not None:
            self.on_change(option.value)

    def clear(self) -> None:
        """Reset the bound value to empty and close the dropdown."""
        self.value = None
        self.selected_label = None
        self.search_text = ""
        self.is_open = False
        if self.on_change is not None:
            self.on_change(None)

    def set_value(self, value: Any) -> None:
        """Follow a value changed by the form (reset, dependent clear) without notifying."""
        if FieldDependency.key_for(value) == FieldDependency.key_for(self.value):
            return
        self.value = value
        option = self.find_option(value) if value not in (None, "") else None
        self.selected_label = option.label if option is not None else None
