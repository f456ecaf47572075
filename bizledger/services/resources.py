"""List-backed resources and the filters each one accepts."""

import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel

from bizledger.modules.models import (
    Agreement,
    Contact,
    Expense,
    Invoice,
    InvoiceStatus,
    Rate,
)
from bizledger.modules.report_models import ALL


def encode_value(value: Any) -> Any:
    if isinstance(value, InvoiceStatus):
        return value.api_value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()
    if isinstance(value, bool):
        return "true" if value else "false"
    return value


@dataclass(frozen=True)
class FilterField:
    """One filter: its default, its query parameter, and the values that mean "no filter"."""

    name: str
    default: Any = None
    param: Optional[str] = None
    omit: Tuple[Any, ...] = (None, "")
    encode: Callable[[Any], Any] = encode_value

    @property
    def query_name(self) -> str:
        return self.param or self.name


@dataclass(frozen=True)
class ListResource:
    name: str
    path: str
    item_model: Type[BaseModel]
    fields: List[FilterField] = field(default_factory=list)

    @property
    def defaults(self) -> Dict[str, Any]:
        return {f.name: f.default for f in self.fields}

    def get_field(self, name: str) -> FilterField:
        for f in self.fields:
            if f.name == name:
                return f
        raise KeyError(f"{self.name} has no filter named {name!r}")

    def query_params(self, filters: Dict[str, Any], pagination: Dict[str, int]) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "pageNumber": pagination["page_number"],
            "pageSize": pagination["page_size"],
        }
        for f in self.fields:
            value = filters.get(f.name, f.default)
            if value in f.omit:
                continue
            params[f.query_name] = f.encode(value)
        return params

    def parse_items(self, raw_items: List[Dict[str, Any]]) -> List[BaseModel]:
        return [self.item_model.model_validate(item) for item in raw_items]


CONTACTS = ListResource(
    name="contacts",
    path="/contacts",
    item_model=Contact,
    fields=[
        FilterField("type", default="All", omit=(None, "", "All")),
        FilterField("search", default=""),
        FilterField("status"),
    ],
)

INVOICES = ListResource(
    name="invoices",
    path="/invoices",
    item_model=Invoice,
    fields=[
        FilterField("status"),
        FilterField("contact", default=ALL, omit=(None, "", ALL)),
        FilterField("from_date", param="from"),
        FilterField("to_date", param="to"),
    ],
)

EXPENSES = ListResource(
    name="expenses",
    path="/expenses",
    item_model=Expense,
    fields=[
        FilterField("type", default="All types", omit=(None, "", "All types")),
        FilterField("contact", default=ALL, omit=(None, "", ALL)),
        FilterField("from_date", param="from"),
        FilterField("to_date", param="to"),
        FilterField("action"),
    ],
)

RATES = ListResource(
    name="rates",
    path="/rates",
    item_model=Rate,
    fields=[
        FilterField("search", default=""),
        FilterField("rate_type", param="rateType"),
        FilterField("is_archived", default=False, param="isArchived", omit=(None,)),
    ],
)

AGREEMENTS = ListResource(
    name="agreements",
    path="/agreements",
    item_model=Agreement,
    fields=[
        FilterField("search", default=""),
        FilterField("id_contact", default=ALL, param="idContact", omit=(None, "", ALL)),
        FilterField("status", default="All", omit=(None, "", "All")),
        FilterField("start_date", param="startDate"),
        FilterField("end_date", param="endDate"),
    ],
)
