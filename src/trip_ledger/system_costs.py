from __future__ import annotations

import logging
import math
from datetime import date
from decimal import Decimal
from typing import List, Optional, Sequence

from .config import SystemCostRates, WorkflowConfig
from .core import SYSTEM_COST_CATEGORY, CostEntry, Trip, money
from .errors import ValidationError

logger = logging.getLogger(__name__)


class SystemCostGenerator:
    """Derives per-km and per-day system costs for a trip.

    The output is deterministic: ids are derived from the trip id and cost type,
    so re-running with unchanged inputs yields an identical set that can replace
    the previous one (see ``apply_system_costs``).
    """

    def __init__(self, config: Optional[WorkflowConfig] = None):
        self.config = config or WorkflowConfig()

    def generate_for_trip(self, trip: Trip, rates: Optional[SystemCostRates] = None) -> List[CostEntry]:
        errors = {}
        if trip.distance_km is None:
            errors["distance_km"] = "Distance is required to generate system costs"
        if trip.duration_hours is None:
            errors["duration_hours"] = "Duration is required to generate system costs"
        if errors:
            raise ValidationError(errors)
        return self.generate(
            trip.trip_id,
            trip.distance_km,
            trip.duration_hours,
            rates or self.config.rates_for(trip.revenue_currency),
            on_date=trip.start_date,
        )

    def generate(
        self,
        trip_id: str,
        distance_km: Decimal,
        duration_hours: Decimal,
        rates: SystemCostRates,
        consumption_l_per_km: Optional[Decimal] = None,
        on_date: Optional[date] = None,
    ) -> List[CostEntry]:
        distance = Decimal(str(distance_km))
        hours = Decimal(str(duration_hours))
        if distance < 0:
            raise ValidationError({"distance_km": "Distance cannot be negative"})
        if hours < 0:
            raise ValidationError({"duration_hours": "Duration cannot be negative"})

        consumption = (
            self.config.fuel_consumption_l_per_km if consumption_l_per_km is None else consumption_l_per_km
        )
        days = days_for_duration(hours)
        cur = rates.currency

        repair = money(distance * rates.per_km_repair)
        tyre = money(distance * rates.per_km_tyre)
        git = money(days * rates.per_day_git)
        litres = distance * consumption
        fuel = money(litres * rates.fuel_rate)
        driver = money(days * rates.driver_rate)

        lines = [
            (
                "repair",
                "Repair & Maintenance per KM",
                "per-km",
                repair,
                f"{distance} km x {rates.per_km_repair} {cur}/km = {repair} {cur}",
            ),
            (
                "tyre",
                "Tyre Cost per KM",
                "per-km",
                tyre,
                f"{distance} km x {rates.per_km_tyre} {cur}/km = {tyre} {cur}",
            ),
            (
                "git",
                "GIT Insurance",
                "per-day",
                git,
                f"{days} day(s) ({hours} h) x {rates.per_day_git} {cur}/day = {git} {cur}",
            ),
            (
                "fuel",
                "Estimated Fuel",
                "per-km",
                fuel,
                f"{distance} km x {consumption} L/km x {rates.fuel_rate} {cur}/L = {fuel} {cur}",
            ),
            (
                "driver",
                "Wages",
                "per-day",
                driver,
                f"{days} day(s) ({hours} h) x {rates.driver_rate} {cur}/day = {driver} {cur}",
            ),
        ]

        entries = [
            CostEntry(
                entry_id=f"{trip_id}-system-{cost_type}",
                trip_id=trip_id,
                category=SYSTEM_COST_CATEGORY,
                sub_category=sub_category,
                amount=amount,
                currency=cur,
                reference_number=f"SYS-{cost_type.upper()}",
                date=on_date,
                is_system_generated=True,
                system_cost_type=basis,
                calculation_details=trace,
            )
            for cost_type, sub_category, basis, amount, trace in lines
        ]
        logger.info(
            f"Generated {len(entries)} system costs for trip {trip_id}: "
            f"{distance} km over {days} day(s), total {sum_amounts(entries)} {cur}"
        )
        return entries


def apply_system_costs(costs: Sequence[CostEntry], generated: Sequence[CostEntry]) -> List[CostEntry]:
    """Replace any previously generated system costs with ``generated``."""
    manual = [entry for entry in costs if not entry.is_system_generated]
    return manual + list(generated)


def days_for_duration(duration_hours: Decimal) -> int:
    return math.ceil(Decimal(str(duration_hours)) / Decimal("24"))


def sum_amounts(entries: Sequence[CostEntry]) -> Decimal:
    return money(sum((entry.amount for entry in entries), Decimal("0.00")))
