from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List

from .core import CostEntry, Trip, money


@dataclass(frozen=True)
class TripFinancialSummary:
    trip_id: str
    currency: str
    total_revenue: Decimal
    total_costs: Decimal
    manual_costs: Decimal
    system_costs: Decimal
    profit: Decimal
    margin_percent: Decimal
    cost_entries_count: int
    flagged_items_count: int
    unresolved_items_count: int
    by_category: Dict[str, Decimal] = field(default_factory=dict)
    foreign_currency_costs: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trip_id": self.trip_id,
            "currency": self.currency,
            "total_revenue": str(self.total_revenue),
            "total_costs": str(self.total_costs),
            "manual_costs": str(self.manual_costs),
            "system_costs": str(self.system_costs),
            "profit": str(self.profit),
            "margin_percent": str(self.margin_percent),
            "cost_entries_count": self.cost_entries_count,
            "flagged_items_count": self.flagged_items_count,
            "unresolved_items_count": self.unresolved_items_count,
            "by_category": {name: str(amount) for name, amount in self.by_category.items()},
            "foreign_currency_costs": list(self.foreign_currency_costs),
        }


def summarize_trip(trip: Trip) -> TripFinancialSummary:
    """Revenue versus costs for one trip.

    Only costs in the trip's revenue currency are totalled; the ids of the rest
    are listed so a reader can see what was left out.
    """
    currency = trip.revenue_currency
    same_currency: List[CostEntry] = [entry for entry in trip.costs if entry.currency == currency]
    foreign = [entry.entry_id for entry in trip.costs if entry.currency != currency]

    manual = _total(entry for entry in same_currency if not entry.is_system_generated)
    system = _total(entry for entry in same_currency if entry.is_system_generated)
    total_costs = money(manual + system)
    revenue = money(trip.base_revenue)
    profit = money(revenue - total_costs)
    margin = money(profit / revenue * 100) if revenue else Decimal("0.00")

    by_category: Dict[str, Decimal] = {}
    for entry in same_currency:
        by_category[entry.category] = money(by_category.get(entry.category, Decimal("0.00")) + entry.amount)

    return TripFinancialSummary(
        trip_id=trip.trip_id,
        currency=currency,
        total_revenue=revenue,
        total_costs=total_costs,
        manual_costs=manual,
        system_costs=system,
        profit=profit,
        margin_percent=margin,
        cost_entries_count=len(trip.costs),
        flagged_items_count=len(trip.flagged_costs()),
        unresolved_items_count=len(trip.unresolved_flags()),
        by_category=dict(sorted(by_category.items())),
        foreign_currency_costs=foreign,
    )


def _total(entries) -> Decimal:
    return money(sum((entry.amount for entry in entries), Decimal("0.00")))
