import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Iterator, List, Optional, TypeVar

from pydantic import ValidationError

from bizledger.modules.errors import BillingError
from bizledger.modules.models import ListPage
from bizledger.services.resources import ListResource

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ListState(Generic[T]):
    filters: Dict[str, Any]
    pagination: Dict[str, int]
    data: List[T] = field(default_factory=list)
    total: int = 0
    loading: bool = False
    error: Optional[str] = None


class QueryController(Generic[T]):
    """Filter, paginate and reload one list resource.

    Every fetch takes a generation token; only the response of the most
    recently issued fetch is applied, late ones are dropped.
    """

    def __init__(self, resource: ListResource, api, page_number: int = 1, page_size: int = 100,
                 filters: Optional[Dict[str, Any]] = None):
        self.resource = resource
        self.api = api
        self.state: ListState[T] = ListState(
            filters=dict(resource.defaults),
            pagination={"page_number": page_number, "page_size": page_size},
        )
        if filters:
            self._merge_filters(filters)
        self._generation = 0
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, resource: ListResource, api, config) -> "QueryController":
        lists = config.business_rules.lists
        return cls(resource, api, page_number=lists.page_number, page_size=lists.page_size)

    # ------------------------------------------------------------------
    # Filters
    # ------------------------------------------------------------------
    @property
    def filters(self) -> Dict[str, Any]:
        return dict(self.state.filters)

    @property
    def pagination(self) -> Dict[str, int]:
        return dict(self.state.pagination)

    @property
    def filter_counter(self) -> int:
        defaults = self.resource.defaults
        return sum(1 for name, value in self.state.filters.items() if value != defaults[name])

    def _merge_filters(self, partial: Dict[str, Any]) -> None:
        for name in partial:
            self.resource.get_field(name)
        self.state.filters = {**self.state.filters, **partial}

    def set_filters(self, **partial) -> ListState[T]:
        self._merge_filters(partial)
        return self.reload_list()

    def clear_filters(self) -> ListState[T]:
        self.state.filters = dict(self.resource.defaults)
        return self.reload_list()

    def set_pagination(self, **partial) -> ListState[T]:
        unknown = set(partial) - {"page_number", "page_size"}
        if unknown:
            raise KeyError(f"Unknown pagination keys: {sorted(unknown)}")
        for key, value in partial.items():
            if int(value) < 1:
                raise ValueError(f"{key} must be positive")
        self.state.pagination = {**self.state.pagination, **partial}
        return self.reload_list()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    def _begin(self) -> int:
        with self._lock:
            self._generation += 1
            self.state.loading = True
            return self._generation

    def _is_current(self, token: int) -> bool:
        return token == self._generation

    def abandon(self) -> None:
        """Any fetch still in flight will be ignored when it returns."""
        with self._lock:
            self._generation += 1
            self.state.loading = False

    def reload_list(self) -> ListState[T]:
        token = self._begin()
        params = self.resource.query_params(self.state.filters, self.state.pagination)
        try:
            raw = self.api.list_page(self.resource.path, params)
            page = ListPage.model_validate(raw or {})
            items = self.resource.parse_items(page.data)
        except (BillingError, ValidationError) as e:
            with self._lock:
                if not self._is_current(token):
                    logger.debug(f"Dropped failure of superseded {self.resource.name} fetch: {e}")
                    return self.state
                # keep the last successful data and total
                self.state.error = str(e)
                self.state.loading = False
            logger.error(f"Failed to load {self.resource.name}: {e}")
            raise

        with self._lock:
            if not self._is_current(token):
                logger.debug(f"Dropped superseded {self.resource.name} response (token {token})")
                return self.state
            self.state.data = items
            self.state.total = page.meta.total
            self.state.error = None
            self.state.loading = False
        return self.state


def iter_all(resource: ListResource, api, filters: Optional[Dict[str, Any]] = None,
             page_size: int = 100) -> Iterator[Any]:
    """Walks every page of a list resource with the given filters."""
    merged = {**resource.defaults, **(filters or {})}
    page_number = 1
    seen = 0
    while True:
        params = resource.query_params(merged, {"page_number": page_number, "page_size": page_size})
        page = ListPage.model_validate(api.list_page(resource.path, params) or {})
        items = resource.parse_items(page.data)
        yield from items
        seen += len(items)
        if not items or seen >= page.meta.total:
            break
        page_number += 1
