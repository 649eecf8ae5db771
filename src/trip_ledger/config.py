from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Union

import yaml


OTHER_REASON = "Other (specify in comments)"
ADMIN_ROLE = "admin"
DEFAULT_PAYMENT_TERMS_DAYS = 30
# 35L/100km average for a loaded horse and trailer.
DEFAULT_FUEL_CONSUMPTION_L_PER_KM = Decimal("0.35")


# Step predicates are plain data; trip_ledger.workflow evaluates them.


@dataclass(frozen=True)
class RequiresFields:
    fields: tuple[str, ...]


@dataclass(frozen=True)
class NoUnresolvedFlags:
    pass


@dataclass(frozen=True)
class Custom:
    name: str


Predicate = Union[RequiresFields, NoUnresolvedFlags, Custom]


@dataclass(frozen=True)
class WorkflowStep:
    step_id: str
    name: str
    order: int
    required: bool = True
    validation: tuple[Predicate, ...] = ()
    next_step: tuple[Predicate, ...] = ()


@dataclass(frozen=True)
class SystemCostRates:
    currency: str
    per_km_repair: Decimal
    per_km_tyre: Decimal
    per_day_git: Decimal
    fuel_rate: Decimal
    driver_rate: Decimal


@dataclass(frozen=True)
class FlagThresholds:
    cost_variance_percent: Decimal = Decimal("10")
    time_variance_hours: Decimal = Decimal("2")
    fuel_consumption_l_per_100km: Decimal = Decimal("40")


DEFAULT_STEPS: tuple[WorkflowStep, ...] = (
    WorkflowStep(
        "create-trip",
        "Create Trip",
        1,
        validation=(
            RequiresFields(
                (
                    "trip.fleet_number",
                    "trip.route",
                    "trip.client_name",
                    "trip.driver_name",
                    "trip.base_revenue",
                )
            ),
        ),
    ),
    WorkflowStep("add-costs", "Add Costs", 2, validation=(Custom("cost_entries_valid"),)),
    WorkflowStep(
        "generate-system-costs",
        "System Costs",
        3,
        validation=(Custom("system_costs_generated"),),
    ),
    WorkflowStep("resolve-flags", "Resolve Flags", 4, next_step=(NoUnresolvedFlags(),)),
    WorkflowStep(
        "complete-trip",
        "Complete Trip",
        5,
        validation=(NoUnresolvedFlags(), RequiresFields(("trip.proof_of_delivery",))),
    ),
    WorkflowStep(
        "submit-invoice",
        "Submit Invoice",
        6,
        validation=(RequiresFields(("invoice.invoice_number",)),),
    ),
    WorkflowStep("track-payment", "Track Payment", 7, required=False),
    WorkflowStep("reporting", "Reporting", 8, required=False),
)

DEFAULT_RATES: Mapping[str, SystemCostRates] = MappingProxyType(
    {
        "ZAR": SystemCostRates(
            currency="ZAR",
            per_km_repair=Decimal("2.05"),
            per_km_tyre=Decimal("0.64"),
            per_day_git=Decimal("134.82"),
            fuel_rate=Decimal("23.50"),
            driver_rate=Decimal("300.15"),
        ),
        "USD": SystemCostRates(
            currency="USD",
            per_km_repair=Decimal("0.11"),
            per_km_tyre=Decimal("0.03"),
            per_day_git=Decimal("10.21"),
            fuel_rate=Decimal("1.28"),
            driver_rate=Decimal("16.88"),
        ),
    }
)

COST_CATEGORIES: Mapping[str, tuple[str, ...]] = MappingProxyType(
    {
        "Border Costs": (
            "Beitbridge Border Fee",
            "Gate Pass",
            "Coupon",
            "Carbon Tax Horse",
            "CVG Horse",
            "CVG Trailer",
            "Road Access",
            "Bridge Fee",
            "Road Toll Fee",
            "Transit Permit Horse",
            "Transit Permit Trailer",
            "Electronic Seal",
            "Zim Clearing",
            "SA Clearing",
            "Runner Fee Beitbridge",
        ),
        "Parking": ("Bubi", "Lunde", "Mvuma", "Gweru", "Harare", "Mutare", "Bulawayo", "Beitbridge"),
        "Diesel": (
            "Engen Beitbridge - Horse",
            "Engen Beitbridge - Reefer",
            "Shell Mutare - Horse",
            "Shell Mutare - Reefer",
            "BP Bulawayo - Horse",
            "BP Bulawayo - Reefer",
        ),
        "Non-Value-Added Costs": (
            "Fines",
            "Penalties",
            "Passport Stamping",
            "Push Documents",
            "Jump Queue",
            "Dismiss Inspection",
            "Parcels",
            "Labour",
        ),
        "Trip Allowances": ("Food", "Airtime", "Taxi"),
        "Tolls": (
            "Tolls BB to JHB",
            "Tolls Cape Town to JHB",
            "Tolls Mutare to BB",
            "Tolls BB to Harare",
            "Tolls Zambia",
        ),
        "System Costs": (
            "Repair & Maintenance per KM",
            "Tyre Cost per KM",
            "GIT Insurance",
            "Estimated Fuel",
            "Wages",
        ),
    }
)

DEFAULT_APPROVAL_LIMITS: Mapping[str, Decimal | None] = MappingProxyType(
    {"operator": Decimal("5000"), "manager": Decimal("50000"), ADMIN_ROLE: None}
)

TRIP_EDIT_REASONS: tuple[str, ...] = (
    "Correction of data entry error",
    "Client requested change",
    "Route modification due to operational requirements",
    "Revenue adjustment per contract amendment",
    "Distance correction based on actual route",
    "Driver change due to operational needs",
    "Date adjustment for accurate reporting",
    OTHER_REASON,
)

TRIP_DELETION_REASONS: tuple[str, ...] = (
    "Duplicate entry",
    "Trip cancelled before execution",
    "Data entry error - trip never occurred",
    "Merged with another trip record",
    "Client contract cancellation",
    "Regulatory compliance requirement",
    OTHER_REASON,
)


@dataclass(frozen=True)
class WorkflowConfig:
    """Read-only registry of steps, rates, thresholds and limits."""

    steps: tuple[WorkflowStep, ...] = DEFAULT_STEPS
    rates: Mapping[str, SystemCostRates] = field(default_factory=lambda: DEFAULT_RATES)
    fuel_consumption_l_per_km: Decimal = DEFAULT_FUEL_CONSUMPTION_L_PER_KM
    high_risk_categories: frozenset[str] = frozenset({"Border Costs", "Non-Value-Added Costs"})
    cost_categories: Mapping[str, tuple[str, ...]] = field(default_factory=lambda: COST_CATEGORIES)
    thresholds: FlagThresholds = field(default_factory=FlagThresholds)
    # None means no limit.
    approval_limits: Mapping[str, Decimal | None] = field(default_factory=lambda: DEFAULT_APPROVAL_LIMITS)
    edit_reasons: tuple[str, ...] = TRIP_EDIT_REASONS
    deletion_reasons: tuple[str, ...] = TRIP_DELETION_REASONS
    payment_terms_days: int = DEFAULT_PAYMENT_TERMS_DAYS
    admin_role: str = ADMIN_ROLE

    def __post_init__(self) -> None:
        orders = [step.order for step in self.steps]
        if orders != sorted(orders) or len(set(orders)) != len(orders):
            raise ValueError("Workflow steps must be listed in strictly increasing order")
        ids = [step.step_id for step in self.steps]
        if len(set(ids)) != len(ids):
            raise ValueError("Workflow step ids must be unique")

    def step(self, step_id: str) -> WorkflowStep:
        return self.steps[self.step_index(step_id)]

    def step_index(self, step_id: str) -> int:
        for index, step in enumerate(self.steps):
            if step.step_id == step_id:
                return index
        raise KeyError(f"Unknown workflow step: {step_id}")

    def rates_for(self, currency: str) -> SystemCostRates:
        try:
            return self.rates[currency]
        except KeyError:
            raise KeyError(f"No system cost rates configured for currency {currency}") from None

    def approval_limit(self, role: str) -> Decimal | None:
        """Largest single cost amount ``role`` may approve; ``None`` is unlimited."""
        if role not in self.approval_limits:
            return Decimal("0")
        return self.approval_limits[role]

    def is_high_risk(self, category: str) -> bool:
        return category in self.high_risk_categories


def load_config(path: Path | str) -> WorkflowConfig:
    """Load a YAML file and overlay it on the default configuration."""
    with Path(path).open("r", encoding="utf-8") as config_file:
        loaded = yaml.safe_load(config_file)

    if loaded is None:
        return WorkflowConfig()
    if not isinstance(loaded, dict):
        msg = f"Workflow configuration must contain a dictionary at root: {path}"
        raise ValueError(msg)
    return config_from_mapping(loaded)


def config_from_mapping(values: Mapping[str, Any]) -> WorkflowConfig:
    config = WorkflowConfig()
    overrides: dict[str, Any] = {}

    if "steps" in values:
        overrides["steps"] = tuple(_parse_step(raw) for raw in values["steps"])
    if "rates" in values:
        rates = dict(config.rates)
        for currency, raw in values["rates"].items():
            rates[currency] = SystemCostRates(
                currency=currency, **{key: Decimal(str(value)) for key, value in raw.items()}
            )
        overrides["rates"] = MappingProxyType(rates)
    if "fuel_consumption_l_per_km" in values:
        overrides["fuel_consumption_l_per_km"] = Decimal(str(values["fuel_consumption_l_per_km"]))
    if "high_risk_categories" in values:
        overrides["high_risk_categories"] = frozenset(values["high_risk_categories"])
    if "cost_categories" in values:
        overrides["cost_categories"] = MappingProxyType(
            {name: tuple(subs) for name, subs in values["cost_categories"].items()}
        )
    if "thresholds" in values:
        overrides["thresholds"] = FlagThresholds(
            **{key: Decimal(str(value)) for key, value in values["thresholds"].items()}
        )
    if "approval_limits" in values:
        overrides["approval_limits"] = MappingProxyType(
            {
                role: None if limit is None else Decimal(str(limit))
                for role, limit in values["approval_limits"].items()
            }
        )
    for key in ("edit_reasons", "deletion_reasons"):
        if key in values:
            overrides[key] = tuple(values[key])
    if "payment_terms_days" in values:
        overrides["payment_terms_days"] = int(values["payment_terms_days"])
    if "admin_role" in values:
        overrides["admin_role"] = str(values["admin_role"])

    return replace(config, **overrides)


def _parse_step(raw: Mapping[str, Any]) -> WorkflowStep:
    return WorkflowStep(
        step_id=raw["id"],
        name=raw.get("name", raw["id"]),
        order=int(raw["order"]),
        required=bool(raw.get("required", True)),
        validation=tuple(_parse_predicate(item) for item in raw.get("validation", [])),
        next_step=tuple(_parse_predicate(item) for item in raw.get("next_step", [])),
    )


def _parse_predicate(raw: Mapping[str, Any]) -> Predicate:
    kind = raw.get("kind")
    if kind == "requires_fields":
        return RequiresFields(tuple(raw["fields"]))
    if kind == "no_unresolved_flags":
        return NoUnresolvedFlags()
    if kind == "custom":
        return Custom(raw["name"])
    raise ValueError(f"Unknown workflow predicate kind: {kind!r}")
