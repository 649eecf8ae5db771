from __future__ import annotations

from dataclasses import replace
from datetime import date
from decimal import Decimal
from pathlib import Path

from backend.services.report_export import TripReportExportService, read_cells
from trip_ledger.core import Trip
from trip_ledger.flags import CostEntryDraft, FlagEngine
from trip_ledger.reporting import summarize_trip
from trip_ledger.system_costs import SystemCostGenerator, apply_system_costs


def build_sample_trip() -> Trip:
    """A Beitbridge run with one border fee, one diesel slip and system costs."""
    trip = Trip(
        trip_id="sample-trip",
        fleet_number="FL-22",
        route="Johannesburg - Harare",
        client_name="Sample Client",
        driver_name="Sample Driver",
        base_revenue=Decimal("48000.00"),
        start_date=date(2026, 2, 1),
        end_date=date(2026, 2, 3),
        distance_km=Decimal("1120"),
        duration_hours=Decimal("52"),
    )
    engine = FlagEngine()
    costs = [
        engine.create_entry(
            trip.trip_id,
            CostEntryDraft(
                category="Border Costs",
                sub_category="Beitbridge Border Fee",
                amount=Decimal("1850.00"),
                currency="ZAR",
                reference_number="BB-2201",
                date=date(2026, 2, 2),
                attachments=("uploads/bb-2201.pdf",),
            ),
        ),
        engine.create_entry(
            trip.trip_id,
            CostEntryDraft(
                category="Diesel",
                sub_category="Engen Beitbridge - Horse",
                amount=Decimal("9400.00"),
                currency="ZAR",
                reference_number="DSL-2201",
                date=date(2026, 2, 2),
                attachments=("uploads/dsl-2201.pdf",),
            ),
        ),
    ]
    generated = SystemCostGenerator().generate_for_trip(trip)
    return replace(trip, costs=apply_system_costs(costs, generated))


def main() -> int:
    service = TripReportExportService()
    trip = build_sample_trip()

    output_path = Path("artifacts/sample_trip_report.xlsx")
    service.generate_export(trip, summarize_trip(trip), output_path)

    mandatory_cells = service.get_mandatory_cells()
    values = read_cells(output_path, mandatory_cells, service.sheet_name)
    missing = [cell for cell, value in values.items() if value in (None, "")]

    if missing:
        print("Verification failed. Missing mandatory values in:", ", ".join(missing))
        return 1

    print(f"Verification passed. Report generated at {output_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
