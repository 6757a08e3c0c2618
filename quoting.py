import math
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

# ---------------- Regions / options ----------------
TAX_RATES: Dict[str, float] = {
    "QC_MONTREAL": 14.975,
    "ON_TORONTO": 13.0,
    "NYC": 8.875,
}

REGION_LABELS: Dict[str, str] = {
    "QC_MONTREAL": "Montreal, QC",
    "ON_TORONTO": "Toronto, ON",
    "NYC": "New York, NY",
}

ROOM_TYPES = ["Kitchen", "Bathroom", "Bedroom", "Other"]

RENDER_STYLES = ["Modern", "Scandinavian", "Farmhouse", "Industrial", "Transitional", "Coastal"]

DEFAULT_REGION = "QC_MONTREAL"
DEFAULT_ROOM_TYPE = "Kitchen"
DEFAULT_STYLE = "Modern"
DEFAULT_OVERHEAD_PERCENT = 7.5
DEFAULT_CONTINGENCY_PERCENT = 5.0
DEFAULT_RATE_ADJUST_PERCENT = 5.0
DEFAULT_DISCLAIMER = "This is a labor-only quote and does not include major materials."

NUMERIC_FIELDS = ("quantity", "rate", "total")
TEXT_FIELDS = ("item", "unit")

# ---------------- Models ----------------
class LineItem(BaseModel):
    item: str
    quantity: float
    unit: str
    rate: float
    total: float

class QuoteSummary(BaseModel):
    subtotal: float = 0.0
    overhead: float = 0.0
    contingency: float = 0.0
    tax: float = 0.0
    grand_total: float = 0.0
    disclaimer: str = DEFAULT_DISCLAIMER

class Quote(BaseModel):
    line_items: List[LineItem] = Field(default_factory=list)
    summary: QuoteSummary = Field(default_factory=QuoteSummary)

class QuoteReply(BaseModel):
    line_items: List[LineItem]
    summary: QuoteSummary

class QuoteParams(BaseModel):
    overhead_percent: float = DEFAULT_OVERHEAD_PERCENT
    contingency_percent: float = DEFAULT_CONTINGENCY_PERCENT
    tax_percent: float = TAX_RATES[DEFAULT_REGION]

class ContractorRate(BaseModel):
    rate: float
    unit: str

class SavedProject(BaseModel):
    id: str
    name: str
    file_preview: str
    file_name: str = ""
    file_type: str = ""
    room_type: str = DEFAULT_ROOM_TYPE
    region: str = DEFAULT_REGION
    scope: str = ""
    style: str = DEFAULT_STYLE
    quote: Optional[Quote] = None
    render_preview: Optional[str] = None
    overhead_percent: float = DEFAULT_OVERHEAD_PERCENT
    contingency_percent: float = DEFAULT_CONTINGENCY_PERCENT

# ---------------- Helpers ----------------
def parse_number(x) -> Optional[float]:
    """Lenient float parse. Returns None for blanks, junk, NaN and infinities."""
    if x is None or isinstance(x, bool):
        return None
    try:
        if isinstance(x, (int, float)):
            v = float(x)
        else:
            s = str(x).strip().replace("$", "").replace(",", "")
            if not s:
                return None
            v = float(s)
    except (TypeError, ValueError):
        return None
    if math.isnan(v) or math.isinf(v):
        return None
    return v

def tax_rate_for(region: str) -> float:
    try:
        return TAX_RATES[region]
    except KeyError:
        raise ValueError(f"Unknown region: {region}")

def params_for(region: str, overhead_percent: float, contingency_percent: float) -> QuoteParams:
    return QuoteParams(
        overhead_percent=overhead_percent,
        contingency_percent=contingency_percent,
        tax_percent=tax_rate_for(region),
    )

def rate_key(description: str) -> str:
    return (description or "").strip().lower()

# ---------------- Recalculation ----------------
def recalculate(line_items: List[LineItem], params: QuoteParams, disclaimer: Optional[str] = None) -> Quote:
    """
    Rebuild the summary from scratch:
      subtotal -> overhead / contingency (on subtotal) -> pre-tax -> tax (on pre-tax) -> grand total
    """
    items = [it.model_copy() for it in line_items]
    subtotal = sum(it.total for it in items)
    overhead = subtotal * (params.overhead_percent / 100)
    contingency = subtotal * (params.contingency_percent / 100)
    pre_tax = subtotal + overhead + contingency
    tax = pre_tax * (params.tax_percent / 100)
    return Quote(
        line_items=items,
        summary=QuoteSummary(
            subtotal=subtotal,
            overhead=overhead,
            contingency=contingency,
            tax=tax,
            grand_total=pre_tax + tax,
            disclaimer=disclaimer or DEFAULT_DISCLAIMER,
        ),
    )

def requote(quote: Quote, params: QuoteParams) -> Quote:
    return recalculate(quote.line_items, params, quote.summary.disclaimer)

def quote_from_model_reply(payload: dict, params: QuoteParams) -> Quote:
    # model totals are advisory; local tax table wins
    raw = QuoteReply.model_validate(payload)
    return recalculate(raw.line_items, params, raw.summary.disclaimer)

# ---------------- Line-item edits ----------------
def update_item(quote: Quote, index: int, field: str, value, params: QuoteParams) -> Quote:
    if index < 0 or index >= len(quote.line_items):
        raise IndexError(f"No line item at index {index}")
    if field not in TEXT_FIELDS and field not in NUMERIC_FIELDS:
        raise ValueError(f"Unknown line item field: {field}")

    items = list(quote.line_items)
    it = items[index].model_copy()

    if field in TEXT_FIELDS:
        if isinstance(value, str):
            setattr(it, field, value)
    else:
        v = parse_number(value)
        if v is not None:
            setattr(it, field, v)

    if field in ("quantity", "rate"):
        it.total = it.quantity * it.rate
    elif field == "total":
        if it.quantity != 0:
            it.rate = it.total / it.quantity

    items[index] = it
    return recalculate(items, params, quote.summary.disclaimer)

def add_item(quote: Quote, params: QuoteParams) -> Quote:
    items = list(quote.line_items)
    items.append(LineItem(item="New Item", quantity=1, unit="each", rate=0, total=0))
    return recalculate(items, params, quote.summary.disclaimer)

def remove_item(quote: Quote, index: int, params: QuoteParams) -> Quote:
    if index < 0 or index >= len(quote.line_items):
        raise IndexError(f"No line item at index {index}")
    items = [it for i, it in enumerate(quote.line_items) if i != index]
    return recalculate(items, params, quote.summary.disclaimer)

def _multiplier(direction: str, percent) -> Optional[float]:
    pct = parse_number(percent)
    if pct is None:
        return None
    if direction == "up":
        return 1 + pct / 100
    if direction == "down":
        return 1 - pct / 100
    raise ValueError(f"Unknown direction: {direction}")

def _bumped(it: LineItem, multiplier: float) -> LineItem:
    rate = it.rate * multiplier
    return it.model_copy(update={"rate": rate, "total": it.quantity * rate})

def bump_item_rate(quote: Quote, index: int, direction: str, percent, params: QuoteParams) -> Quote:
    if index < 0 or index >= len(quote.line_items):
        raise IndexError(f"No line item at index {index}")
    m = _multiplier(direction, percent)
    if m is None:
        return quote
    items = list(quote.line_items)
    items[index] = _bumped(items[index], m)
    return recalculate(items, params, quote.summary.disclaimer)

def bump_all_rates(quote: Quote, direction: str, percent, params: QuoteParams) -> Quote:
    m = _multiplier(direction, percent)
    if m is None:
        return quote
    items = [_bumped(it, m) for it in quote.line_items]
    return recalculate(items, params, quote.summary.disclaimer)

def set_grand_total(quote: Quote, target, params: QuoteParams) -> Quote:
    """
    Reverse-solve: scale every rate/total so the grand total lands on `target`.
      target_subtotal = (target / (1 + tax%)) / (1 + overhead% + contingency%)
    Non-positive or unparseable targets are ignored.
    """
    new_total = parse_number(target)
    if new_total is None or new_total <= 0:
        return quote

    subtotal = quote.summary.subtotal
    if subtotal == 0:
        raise ValueError("Cannot adjust total when subtotal is zero.")

    pre_tax_multiplier = 1 + (params.overhead_percent / 100) + (params.contingency_percent / 100)
    tax_multiplier = 1 + (params.tax_percent / 100)
    if pre_tax_multiplier <= 0 or tax_multiplier <= 0:
        raise ValueError("Cannot adjust total with these percentages.")
    target_subtotal = (new_total / tax_multiplier) / pre_tax_multiplier
    ratio = target_subtotal / subtotal

    items = [
        it.model_copy(update={"rate": it.rate * ratio, "total": it.total * ratio})
        for it in quote.line_items
    ]
    return recalculate(items, params, quote.summary.disclaimer)

# ---------------- Rate book ----------------
def save_rate(rates: Dict[str, ContractorRate], item: LineItem) -> Dict[str, ContractorRate]:
    key = rate_key(item.item)
    if not key:
        raise ValueError("Cannot save a rate for an item with no description.")
    updated = dict(rates)
    updated[key] = ContractorRate(rate=item.rate, unit=item.unit)
    return updated

def remove_rate(rates: Dict[str, ContractorRate], item: LineItem) -> Dict[str, ContractorRate]:
    key = rate_key(item.item)
    return {k: v for k, v in rates.items() if k != key}

def apply_rate_book(quote: Quote, rates: Dict[str, ContractorRate], params: QuoteParams) -> Quote:
    if not rates:
        return quote
    items = []
    for it in quote.line_items:
        saved = rates.get(rate_key(it.item))
        if saved:
            it = it.model_copy(update={"rate": saved.rate, "unit": saved.unit, "total": it.quantity * saved.rate})
        items.append(it)
    return recalculate(items, params, quote.summary.disclaimer)
