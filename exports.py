import csv
import io
from datetime import date
from typing import Dict, Optional

from quoting import Quote, QuoteParams

CSV_HEADERS = ["Item", "Quantity", "Unit", "Rate", "Total"]

def fmt_percent(p: float) -> str:
    return f"{p:g}"

def fmt_currency(amount: float) -> str:
    if amount < 0:
        return f"-${abs(amount):,.2f}"
    return f"${amount:,.2f}"

def csv_filename(project_name: str) -> str:
    name = (project_name or "").strip() or "renovation"
    return f"{name}_quote.csv"

def quote_to_csv(quote: Quote, params: QuoteParams) -> str:
    buf = io.StringIO()
    w = csv.writer(buf, lineterminator="\n")
    w.writerow(CSV_HEADERS)
    for it in quote.line_items:
        w.writerow([it.item, f"{it.quantity:.2f}", it.unit, f"{it.rate:.2f}", f"{it.total:.2f}"])

    s = quote.summary
    w.writerow([])
    w.writerow(["Subtotal", f"{s.subtotal:.2f}"])
    w.writerow([f"Overhead ({fmt_percent(params.overhead_percent)}%)", f"{s.overhead:.2f}"])
    w.writerow([f"Contingency ({fmt_percent(params.contingency_percent)}%)", f"{s.contingency:.2f}"])
    w.writerow([f"Tax ({fmt_percent(params.tax_percent)}%)", f"{s.tax:.2f}"])
    w.writerow(["Grand Total", f"{s.grand_total:.2f}"])
    return buf.getvalue()

def print_context(
    project_name: str,
    quote: Quote,
    params: QuoteParams,
    region_label: str,
    image: Optional[str] = None,
    render: Optional[str] = None,
    today: Optional[date] = None,
) -> Dict:
    s = quote.summary
    rows = [
        {
            "item": it.item,
            "quantity": f"{it.quantity:g}",
            "unit": it.unit,
            "rate": fmt_currency(it.rate),
            "total": fmt_currency(it.total),
        }
        for it in quote.line_items
    ]
    summary_rows = [
        ("Subtotal", fmt_currency(s.subtotal)),
        (f"Overhead ({fmt_percent(params.overhead_percent)}%)", fmt_currency(s.overhead)),
        (f"Contingency ({fmt_percent(params.contingency_percent)}%)", fmt_currency(s.contingency)),
        (f"Tax ({fmt_percent(params.tax_percent)}%)", fmt_currency(s.tax)),
    ]
    return {
        "project_name": project_name,
        "date": (today or date.today()).strftime("%m/%d/%Y"),
        "region_label": region_label,
        "image": image,
        "render": render,
        "rows": rows,
        "summary_rows": summary_rows,
        "grand_total": fmt_currency(s.grand_total),
        "disclaimer": s.disclaimer,
    }
