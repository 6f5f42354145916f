# services/documents.py
"""
Proposal documents: totals and a printable HTML rendering.
"""
from __future__ import annotations

import html
import logging
import os
import tempfile
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class LineItem(BaseModel):
    description: str = Field(min_length=1)
    quantity: float = Field(gt=0)
    unit_price: float = Field(ge=0)


@dataclass(frozen=True)
class ProposalTotals:
    subtotal: Decimal
    tax: Decimal
    total: Decimal


def _money(value: float | Decimal) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def line_total(item: LineItem) -> Decimal:
    return _money(Decimal(str(item.quantity)) * Decimal(str(item.unit_price)))


def proposal_totals(items: list[LineItem], tax_rate: float) -> ProposalTotals:
    subtotal = sum((line_total(i) for i in items), Decimal("0.00"))
    tax = _money(subtotal * Decimal(str(tax_rate)))
    return ProposalTotals(subtotal=subtotal, tax=tax, total=subtotal + tax)


def render_proposal_html(
    proposal_id: str,
    customer_name: str,
    address: str,
    items: list[LineItem],
    totals: ProposalTotals,
    tax_rate: float,
) -> str:
    e = html.escape
    rows = "\n".join(
        f"      <tr><td>{e(item.description)}</td><td class=\"num\">{item.quantity:g}</td>"
        f"<td class=\"num\">${_money(item.unit_price):,}</td><td class=\"num\">${line_total(item):,}</td></tr>"
        for item in items
    )
    return f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>Proposal {e(proposal_id)}</title>
  <style>
    body {{ font-family: sans-serif; margin: 2em; }}
    table {{ border-collapse: collapse; width: 100%; }}
    td, th {{ border-bottom: 1px solid #ddd; padding: 6px; text-align: left; }}
    .num {{ text-align: right; }}
  </style>
</head>
<body>
  <h1>Proposal {e(proposal_id)}</h1>
  <p>{e(customer_name)}<br>{e(address)}</p>
  <table>
    <thead>
      <tr><th>Description</th><th class="num">Qty</th><th class="num">Unit price</th><th class="num">Amount</th></tr>
    </thead>
    <tbody>
{rows}
    </tbody>
  </table>
  <p class="num">Subtotal: ${totals.subtotal:,}</p>
  <p class="num">Tax ({Decimal(str(tax_rate)) * 100:g}%): ${totals.tax:,}</p>
  <p class="num"><strong>Total: ${totals.total:,}</strong></p>
</body>
</html>
"""


def write_document(directory: Path, filename: str, content: str) -> Path:
    """Write atomically; a rerun replaces the previous file instead of adding one."""
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / filename
    fd, tmp = tempfile.mkstemp(dir=directory, prefix=f".{filename}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)
        os.replace(tmp, target)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
    logger.info("Wrote document %s (%d bytes)", target, len(content))
    return target
