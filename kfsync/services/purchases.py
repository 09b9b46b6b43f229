"""Purchase date handling and UK CIS tax-period derivation.

CIS tax years start on 6 April and are labelled by the calendar year they
start in. Tax month 1 runs 6 Apr – 5 May, month 2 6 May – 5 Jun, …,
month 12 6 Mar – 5 Apr.

The period is recomputed on every sync: a purchase first seen without a
payment can later gain a payment line whose date moves the period.
"""

from dataclasses import dataclass
from datetime import date, datetime

from dateutil import parser as date_parser

TAX_YEAR_START_MONTH = 4
TAX_YEAR_START_DAY = 6


@dataclass(frozen=True)
class CisTaxPeriod:
    tax_year: int
    tax_month: int


def to_datetime(value) -> datetime | None:
    """Parse a KashFlow date ("2025-12-10 12:00:00", ISO 8601) or return None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if not isinstance(value, str):
        return None
    try:
        return date_parser.parse(value)
    except (ValueError, OverflowError):
        return None


def compute_cis_tax_period(value) -> CisTaxPeriod | None:
    d = to_datetime(value)
    if d is None:
        return None

    on_or_after_start = (d.month, d.day) >= (TAX_YEAR_START_MONTH, TAX_YEAR_START_DAY)
    tax_year = d.year if on_or_after_start else d.year - 1

    # whole months elapsed since 6 April of the tax year
    months = (d.year - tax_year) * 12 + (d.month - TAX_YEAR_START_MONTH)
    if d.day < TAX_YEAR_START_DAY:
        months -= 1
    return CisTaxPeriod(tax_year=tax_year, tax_month=months + 1)


def reference_date(item: dict) -> datetime | None:
    """First payment line PayDate, else PaidDate, else IssuedDate."""
    for line in item.get("PaymentLines") or []:
        if isinstance(line, dict) and line.get("PayDate"):
            return to_datetime(line["PayDate"])
    return to_datetime(item.get("PaidDate")) or to_datetime(item.get("IssuedDate"))


def prepare_purchase_for_upsert(item: dict) -> dict:
    """Convert purchase dates to datetimes and set TaxYear/TaxMonth in place."""
    for key in ("PaidDate", "IssuedDate", "DueDate"):
        if key in item:
            item[key] = to_datetime(item[key])

    lines = item.get("PaymentLines")
    if isinstance(lines, list):
        for line in lines:
            if not isinstance(line, dict):
                continue
            for key in ("PayDate", "Date"):
                if key in line:
                    line[key] = to_datetime(line[key])

    period = compute_cis_tax_period(reference_date(item))
    if period is not None:
        item["TaxYear"] = period.tax_year
        item["TaxMonth"] = period.tax_month
    return item
