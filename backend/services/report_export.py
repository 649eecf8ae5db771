from __future__ import annotations

from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import yaml
from openpyxl import Workbook, load_workbook
from openpyxl.styles import Font
from openpyxl.worksheet.worksheet import Worksheet

from trip_ledger.core import CostEntry, Trip, to_jsonable
from trip_ledger.reporting import TripFinancialSummary

CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


@dataclass
class TripReportExportService:
    """Write a trip's financial summary and cost lines into an xlsx workbook."""

    mapping_path: Path = CONFIG_DIR / "report_mapping.yaml"

    def __post_init__(self) -> None:
        self.mapping = self._load_mapping(self.mapping_path)

    @staticmethod
    def _load_mapping(mapping_path: Path) -> dict[str, Any]:
        with Path(mapping_path).open("r", encoding="utf-8") as mapping_file:
            loaded = yaml.safe_load(mapping_file)

        if not isinstance(loaded, dict):
            msg = f"Mapping file must contain a dictionary at root: {mapping_path}"
            raise ValueError(msg)

        return loaded

    @property
    def sheet_name(self) -> str:
        return self.mapping["workbook"]["sheet_name"]

    def generate_export(self, trip: Trip, summary: TripFinancialSummary, output_path: Path | str) -> Path:
        workbook = Workbook()
        worksheet = workbook.active
        worksheet.title = self.sheet_name

        title_cell = self.mapping["workbook"]["title_cell"]
        worksheet[title_cell] = f"Trip report {trip.fleet_number} - {trip.route}"
        worksheet[title_cell].font = Font(bold=True, size=14)

        self._map_labels(worksheet)
        self._map_summary(worksheet, {**to_jsonable(trip), **asdict(summary)})
        self._map_costs(worksheet, trip.costs)

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        workbook.save(output_path)

        return output_path

    def _map_labels(self, sheet: Worksheet) -> None:
        for cell, label in self.mapping.get("labels", {}).items():
            sheet[cell] = label

    def _map_summary(self, sheet: Worksheet, values: dict[str, Any]) -> None:
        for field, cell in self.mapping["summary"].items():
            sheet[cell] = values.get(field)

    def _map_costs(self, sheet: Worksheet, entries: list[CostEntry]) -> None:
        section = self.mapping["costs"]
        header_row = int(section["header_row"])
        start_row = int(section["start_row"])
        columns = section["columns"]

        for key, column in columns.items():
            sheet[f"{column}{header_row}"] = key.replace("_", " ").capitalize()
            sheet[f"{column}{header_row}"].font = Font(bold=True)

        for offset, entry in enumerate(entries):
            row = start_row + offset
            line = _cost_line(entry)
            for key, column in columns.items():
                sheet[f"{column}{row}"] = line.get(key)

    def get_mandatory_cells(self) -> list[str]:
        verification = self.mapping.get("verification", {})
        mandatory_cells = verification.get("mandatory_cells", [])
        if not isinstance(mandatory_cells, list):
            msg = "verification.mandatory_cells must be a list of cell references"
            raise ValueError(msg)
        return mandatory_cells


def _cost_line(entry: CostEntry) -> dict[str, Any]:
    if not entry.is_flagged:
        status = "ok"
    elif entry.is_resolved:
        status = "resolved"
    else:
        status = "flagged"
    return {
        "reference_number": entry.reference_number,
        "date": entry.date,
        "category": entry.category,
        "sub_category": entry.sub_category,
        "amount": entry.amount,
        "currency": entry.currency,
        "flag_reason": entry.flag_reason,
        "status": status,
    }


def read_cells(path: Path | str, cells: list[str], sheet_name: str) -> dict[str, Any]:
    """Read exact cell values back from an exported workbook."""
    workbook = load_workbook(path, data_only=False)
    sheet = workbook[sheet_name]
    return {cell: sheet[cell].value for cell in cells}
