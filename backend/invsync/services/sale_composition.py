# Overview: In-memory state machine for a sale being assembled; recomputes the price ledger on every action.

"""
Sale Composition

Transition table (reduce):
- AddItem:      serialized lines are keyed by (product_id, serial_number) and a
                repeated key is a silent no-op; other lines are keyed by
                product_id and quantities add. Serialized quantity is always 1.
- UpdateItem:   patch quantity / unit_price / product_unit_id of matching lines.
- RemoveItem:   drop matching lines.
- UpdateForm:   patch payment / discount / VAT / notes fields.
- SetClient:    set or clear the client.
- RefreshStock: merge fresh effective stock into the cache and line
                availability; never removes lines.
- Reset:        back to an empty sale, keeping the stock cache.

Every transition returns a new SaleState whose totals were recomputed from
its own items and form; totals are never stale.

One store instance has one writer. The store is not thread-safe and does not
need to be.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields, replace
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from sqlalchemy import Boolean, Integer, Numeric

from ..channel import (
    DOMAIN_STOCK_CHANGED,
    EVENT_UPDATE,
    ChangeEvent,
)
from .pricing import (
    DEFAULT_VAT_RATE,
    Discount,
    LedgerSummary,
    PaymentSplit,
    calculate_totals,
)
from ..validation import coerce_fields

logger = logging.getLogger(__name__)

StockLookup = Callable[[Iterable[int]], Mapping[int, int]]
Observer = Callable[[str, dict], None]

# JSON coercion for line and form fields, same rules as the REST payloads
LINE_FIELD_TYPES = {
    "product_id": Integer(),
    "quantity": Integer(),
    "product_unit_id": Integer(),
    "stock": Integer(),
    "unit_price": Numeric(12, 2),
    "min_price": Numeric(12, 2),
    "max_price": Numeric(12, 2),
    "has_serial": Boolean(),
}
FORM_FIELD_TYPES = {
    "cash_amount": Numeric(12, 2),
    "card_amount": Numeric(12, 2),
    "bank_transfer_amount": Numeric(12, 2),
    "discount_value": Numeric(12, 2),
    "vat_included": Boolean(),
}


def _reject_nulls(values: dict, names) -> dict:
    for name in names:
        if name in values and values[name] is None:
            raise ValueError(f"{name} must not be null")
    return values


@dataclass(frozen=True)
class SaleLineItem:
    product_id: int
    unit_price: float
    quantity: int = 1
    has_serial: bool = False
    serial_number: Optional[str] = None
    product_unit_id: Optional[int] = None
    product_name: str = ""
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    stock: Optional[int] = None

    @property
    def key(self) -> tuple:
        if self.has_serial:
            return (self.product_id, self.serial_number)
        return (self.product_id, None)

    @property
    def line_total(self) -> float:
        return self.quantity * self.unit_price

    @classmethod
    def from_dict(cls, data: dict) -> "SaleLineItem":
        allowed = {f.name for f in fields(cls)}
        values = coerce_fields({k: v for k, v in data.items() if k in allowed}, LINE_FIELD_TYPES)
        _reject_nulls(values, ("product_id", "unit_price", "quantity"))
        if "product_id" not in values or "unit_price" not in values:
            raise ValueError("product_id and unit_price are required")
        if values.get("serial_number") is not None:
            values["serial_number"] = str(values["serial_number"]).strip() or None
        return cls(**values)

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "product_unit_id": self.product_unit_id,
            "product_name": self.product_name,
            "has_serial": self.has_serial,
            "serial_number": self.serial_number,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "min_price": self.min_price,
            "max_price": self.max_price,
            "line_total": self.line_total,
            "stock": self.stock,
        }


@dataclass(frozen=True)
class SaleForm:
    payment_method: str = "cash"
    payment_type: str = "single"
    cash_amount: float = 0.0
    card_amount: float = 0.0
    bank_transfer_amount: float = 0.0
    discount_type: Optional[str] = None
    discount_value: float = 0.0
    notes: str = ""
    vat_included: bool = True
    client_id: Optional[int] = None

    @property
    def discount(self) -> Discount:
        return Discount(type=self.discount_type, value=self.discount_value or 0.0)

    @property
    def payment(self) -> PaymentSplit:
        return PaymentSplit(
            cash=self.cash_amount or 0.0,
            card=self.card_amount or 0.0,
            bank_transfer=self.bank_transfer_amount or 0.0,
        )

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


_EMPTY_SUMMARY = LedgerSummary(
    subtotal=0.0,
    discount_amount=0.0,
    tax_amount=0.0,
    total_amount=0.0,
    pre_discount_total=0.0,
    errors=("Add at least one product",),
)


@dataclass(frozen=True)
class SaleState:
    items: tuple = ()
    form: SaleForm = field(default_factory=SaleForm)
    client: Optional[Mapping] = None
    stock_cache: Mapping = field(default_factory=lambda: MappingProxyType({}))
    summary: LedgerSummary = _EMPTY_SUMMARY
    vat_rate: float = DEFAULT_VAT_RATE

    @property
    def is_valid(self) -> bool:
        return self.summary.is_valid

    @property
    def errors(self) -> list[str]:
        return list(self.summary.errors)

    @property
    def product_ids(self) -> set[int]:
        return {item.product_id for item in self.items}

    def to_dict(self) -> dict:
        return {
            "items": [item.to_dict() for item in self.items],
            "form": self.form.to_dict(),
            "client": dict(self.client) if self.client else None,
            "totals": {
                "subtotal": self.summary.subtotal,
                "discount_amount": self.summary.discount_amount,
                "tax_amount": self.summary.tax_amount,
                "total_amount": self.summary.total_amount,
            },
            "is_valid": self.is_valid,
            "errors": self.errors,
        }


# --- actions -----------------------------------------------------------------

@dataclass(frozen=True)
class AddItem:
    item: SaleLineItem


@dataclass(frozen=True)
class UpdateItem:
    product_id: int
    updates: Mapping
    serial_number: Optional[str] = None


@dataclass(frozen=True)
class RemoveItem:
    product_id: int
    serial_number: Optional[str] = None


@dataclass(frozen=True)
class UpdateForm:
    changes: Mapping


@dataclass(frozen=True)
class SetClient:
    client: Optional[Mapping]


@dataclass(frozen=True)
class RefreshStock:
    stock: Mapping


@dataclass(frozen=True)
class Reset:
    pass


Action = Union[AddItem, UpdateItem, RemoveItem, UpdateForm, SetClient, RefreshStock, Reset]

UPDATABLE_ITEM_FIELDS = {"quantity", "unit_price", "product_unit_id"}
UPDATABLE_FORM_FIELDS = {f.name for f in fields(SaleForm)} - {"client_id"}


def enforced_quantity(has_serial: bool, quantity: int) -> int:
    """Serialized lines always carry exactly one unit."""
    return 1 if has_serial else quantity


def _line_matches(item: SaleLineItem, product_id: int, serial_number: Optional[str]) -> bool:
    if item.product_id != product_id:
        return False
    return serial_number is None or item.serial_number == serial_number


def _composition_errors(items: Iterable[SaleLineItem]) -> list[str]:
    errors = []
    for item in items:
        if item.has_serial and not item.serial_number:
            errors.append(f"Serial number required for {item.product_name or f'product {item.product_id}'}")
    return errors


def with_totals(state: SaleState) -> SaleState:
    summary = calculate_totals(
        state.items,
        vat_included=state.form.vat_included,
        discount=state.form.discount,
        payment_method=state.form.payment_method,
        payment=state.form.payment,
        vat_rate=state.vat_rate,
    )
    extra = _composition_errors(state.items)
    if extra:
        summary = replace(summary, errors=summary.errors + tuple(extra))
    return replace(state, summary=summary)


def initial_state(*, vat_rate: float = DEFAULT_VAT_RATE, stock_cache: Optional[Mapping] = None) -> SaleState:
    return with_totals(SaleState(
        vat_rate=vat_rate,
        stock_cache=MappingProxyType(dict(stock_cache or {})),
    ))


def _add_item(state: SaleState, item: SaleLineItem) -> SaleState:
    if item.stock is None and item.product_id in state.stock_cache:
        item = replace(item, stock=state.stock_cache[item.product_id])

    existing = next((i for i in state.items if i.key == item.key), None)
    if existing is not None:
        if existing.has_serial:
            # same unit already on this sale
            return state
        merged = replace(existing, quantity=existing.quantity + item.quantity)
        items = tuple(merged if i is existing else i for i in state.items)
    else:
        item = replace(item, quantity=enforced_quantity(item.has_serial, item.quantity))
        items = state.items + (item,)
    return with_totals(replace(state, items=items))


def _update_item(state: SaleState, action: UpdateItem) -> SaleState:
    updates = {k: v for k, v in action.updates.items() if k in UPDATABLE_ITEM_FIELDS}
    items = []
    for item in state.items:
        if _line_matches(item, action.product_id, action.serial_number):
            patch = dict(updates)
            if "quantity" in patch:
                patch["quantity"] = enforced_quantity(item.has_serial, patch["quantity"])
            item = replace(item, **patch)
        items.append(item)
    return with_totals(replace(state, items=tuple(items)))


def _refresh_stock(state: SaleState, stock: Mapping) -> SaleState:
    cache = dict(state.stock_cache)
    cache.update({int(k): int(v) for k, v in stock.items()})
    items = tuple(
        replace(item, stock=cache[item.product_id]) if item.product_id in cache else item
        for item in state.items
    )
    return with_totals(replace(state, stock_cache=MappingProxyType(cache), items=items))


def reduce(state: SaleState, action: Action) -> SaleState:
    """Pure transition function."""
    if isinstance(action, AddItem):
        return _add_item(state, action.item)

    if isinstance(action, UpdateItem):
        return _update_item(state, action)

    if isinstance(action, RemoveItem):
        items = tuple(i for i in state.items if not _line_matches(i, action.product_id, action.serial_number))
        return with_totals(replace(state, items=items))

    if isinstance(action, UpdateForm):
        changes = {k: v for k, v in action.changes.items() if k in UPDATABLE_FORM_FIELDS}
        return with_totals(replace(state, form=replace(state.form, **changes)))

    if isinstance(action, SetClient):
        client = MappingProxyType(dict(action.client)) if action.client else None
        client_id = client.get("id") if client else None
        return with_totals(replace(state, client=client, form=replace(state.form, client_id=client_id)))

    if isinstance(action, RefreshStock):
        return _refresh_stock(state, action.stock)

    if isinstance(action, Reset):
        return initial_state(vat_rate=state.vat_rate, stock_cache=state.stock_cache)

    raise TypeError(f"Unknown sale composition action: {action!r}")


_ACTION_PARSERS = {
    "add_item": lambda d: AddItem(SaleLineItem.from_dict(d.get("item") or {})),
    "update_item": lambda d: UpdateItem(
        product_id=int(d["product_id"]),
        updates=_reject_nulls(
            coerce_fields(dict(d.get("updates") or {}), LINE_FIELD_TYPES), ("quantity", "unit_price")),
        serial_number=d.get("serial_number"),
    ),
    "remove_item": lambda d: RemoveItem(product_id=int(d["product_id"]), serial_number=d.get("serial_number")),
    "update_form": lambda d: UpdateForm(changes=coerce_fields(dict(d.get("changes") or {}), FORM_FIELD_TYPES)),
    "set_client": lambda d: SetClient(client=d.get("client")),
    "refresh_stock": lambda d: RefreshStock(stock={int(k): int(v) for k, v in (d.get("stock") or {}).items()}),
    "reset": lambda d: Reset(),
}


def parse_action(data: dict) -> Action:
    """Build a typed action from its JSON form: {"type": "add_item", ...}."""
    kind = (data or {}).get("type")
    parser = _ACTION_PARSERS.get(kind)
    if parser is None:
        raise ValueError(f"Unknown action type: {kind!r}")
    try:
        return parser(data)
    except (AttributeError, KeyError, TypeError) as exc:
        raise ValueError(f"Invalid {kind} action: {exc}") from exc


class SaleCompositionStore:
    """
    Single-writer holder of one sale's SaleState.

    stock_lookup: batched effective-stock reader (see stock_query.get_effective_stock)
    observer: optional hook called with (action_name, details) after each dispatch
    """

    def __init__(
        self,
        *,
        stock_lookup: Optional[StockLookup] = None,
        vat_rate: float = DEFAULT_VAT_RATE,
        observer: Optional[Observer] = None,
    ):
        self._state = initial_state(vat_rate=vat_rate)
        self._stock_lookup = stock_lookup
        self._observer = observer
        self._subscriptions: list = []

    @property
    def state(self) -> SaleState:
        return self._state

    def dispatch(self, action: Action) -> SaleState:
        self._state = reduce(self._state, action)
        if self._observer is not None:
            self._observer(type(action).__name__, {
                "items": len(self._state.items),
                "total_amount": self._state.summary.total_amount,
                "is_valid": self._state.is_valid,
            })
        return self._state

    def refresh_stock(self, product_ids: Iterable[int]) -> SaleState:
        """Fetch effective stock for exactly these products and merge it."""
        ids = {int(pid) for pid in product_ids}
        if not ids or self._stock_lookup is None:
            return self._state
        return self.dispatch(RefreshStock(stock=dict(self._stock_lookup(ids))))

    # -- change notifications -------------------------------------------------

    def _on_change(self, event: ChangeEvent) -> None:
        row = event.row
        product_id = row.get("id") if event.table == "products" else row.get("product_id")
        if product_id is not None and int(product_id) in self._state.product_ids:
            self.refresh_stock([int(product_id)])

    def start(self, channel) -> "SaleCompositionStore":
        """Follow stock changes for the products on this sale."""
        if self._subscriptions:
            return self
        self._subscriptions = [
            channel.subscribe("products", self._on_change, event_types=[EVENT_UPDATE]),
            channel.subscribe("product_units", self._on_change),
            channel.subscribe(DOMAIN_STOCK_CHANGED, self._on_change),
        ]
        return self

    def stop(self) -> None:
        for sub in self._subscriptions:
            sub.stop()
        self._subscriptions = []


def compose_sale(
    actions: Iterable[Action],
    *,
    stock_lookup: Optional[StockLookup] = None,
    vat_rate: float = DEFAULT_VAT_RATE,
    observer: Optional[Observer] = None,
) -> SaleState:
    """
    Apply actions in order and return the resulting state.

    When stock_lookup is given, effective stock for every product on the sale
    is refreshed once at the end, so the stock validation reflects the store.
    """
    store = SaleCompositionStore(stock_lookup=stock_lookup, vat_rate=vat_rate, observer=observer)
    for action in actions:
        store.dispatch(action)
    if stock_lookup is not None:
        store.refresh_stock(store.state.product_ids)
    return store.state
