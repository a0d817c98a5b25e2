"""SenangPay fee schedule, delivery fee table and the fee calculator.

Gateway fee: MAX(percentage * amount, minimum_fee).
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional


@dataclass(frozen=True)
class FeeScheduleEntry:
    name: str
    percentage: float
    minimum: float

    def __post_init__(self) -> None:
        if not 0 <= self.percentage <= 1:
            raise ValueError(f"Fee percentage for {self.name} must be between 0 and 1")
        if self.minimum < 0:
            raise ValueError(f"Minimum fee for {self.name} cannot be negative")


@dataclass(frozen=True)
class FeeResult:
    fee: float
    fee_type: str
    percentage: float
    minimum: float
    calculated_from: str


def _freeze(mapping: Mapping[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class FeeConfig:
    senangpay_fees: Mapping[str, FeeScheduleEntry]
    state_delivery_fees: Mapping[str, float]
    default_delivery_fee: float = 8.00
    free_shipping_threshold: float = 150.0

    def __post_init__(self) -> None:
        if "default" not in self.senangpay_fees:
            raise ValueError("Fee schedule needs a 'default' entry")
        if self.default_delivery_fee <= 0:
            raise ValueError("Default delivery fee must be positive")
        for state, fee in self.state_delivery_fees.items():
            if fee <= 0:
                raise ValueError(f"Delivery fee for {state} must be positive")
        object.__setattr__(self, "senangpay_fees", _freeze(self.senangpay_fees))
        object.__setattr__(self, "state_delivery_fees", _freeze(self.state_delivery_fees))


SENANGPAY_FEES = {
    "fpx": FeeScheduleEntry("FPX (Online Banking)", 0.015, 1.00),
    "card": FeeScheduleEntry("Credit/Debit Card", 0.025, 0.65),
    "ewallet": FeeScheduleEntry("E-Wallet (TNG/Boost)", 0.015, 0.65),
    "spaylater": FeeScheduleEntry("SPayLater", 0.02, 0),
    "atome": FeeScheduleEntry("Atome", 0.055, 0),
    "grabpay_later": FeeScheduleEntry("GrabPay Later", 0.06, 0),
    # unknown methods are charged like the most common expensive option
    "default": FeeScheduleEntry("Other", 0.025, 1.00),
}

STATE_DELIVERY_FEES = {
    "Selangor": 8.00,
    "Kuala Lumpur": 8.00,
    "Putrajaya": 8.00,
    "Negeri Sembilan": 10.00,
    "Melaka": 10.00,
    "Johor": 12.00,
    "Perak": 12.00,
    "Penang": 15.00,
    "Kedah": 15.00,
    "Perlis": 18.00,
    "Kelantan": 18.00,
    "Terengganu": 18.00,
    "Pahang": 15.00,
    "Sabah": 25.00,
    "Sarawak": 25.00,
    "Labuan": 25.00,
}

DEFAULT_FEE_CONFIG = FeeConfig(
    senangpay_fees=SENANGPAY_FEES,
    state_delivery_fees=STATE_DELIVERY_FEES,
    default_delivery_fee=8.00,
    free_shipping_threshold=150.0,
)

# SPX Express, West Malaysia, SST included
SPX_BASE_RATE = 6.89
SPX_BASE_MAX_KG = 2
SPX_HEAVY_RATE = 9.00
SPX_HEAVY_FROM_KG = 3
SPX_PER_EXTRA_KG = 1.00

# (fee type, keywords) checked in order, first hit wins
_PAYMENT_KEYWORDS = (
    ("fpx", ("fpx", "online banking")),
    ("card", ("card", "visa", "mastercard")),
    ("ewallet", ("tng", "touch", "boost", "ewallet", "e-wallet")),
    ("spaylater", ("spaylater", "shopee")),
    ("atome", ("atome",)),
)


def round2(value: float) -> float:
    """Round half-up on cents."""
    return math.floor(value * 100 + 0.5) / 100


def map_payment_method_to_fee_type(payment_method: Optional[str]) -> str:
    if not payment_method:
        return "default"
    method = str(payment_method).lower()
    for fee_type, keywords in _PAYMENT_KEYWORDS:
        if any(keyword in method for keyword in keywords):
            return fee_type
    if "grabpay" in method and "later" in method:
        return "grabpay_later"
    return "default"


@dataclass(frozen=True)
class FeeCalculator:
    config: FeeConfig = field(default=DEFAULT_FEE_CONFIG)

    @property
    def default_delivery_fee(self) -> float:
        return self.config.default_delivery_fee

    def schedule_for(self, payment_type: Optional[str]) -> FeeScheduleEntry:
        fees = self.config.senangpay_fees
        return fees.get(payment_type or "default") or fees["default"]

    def calculate_fee(self, amount: float, payment_type: Optional[str]) -> FeeResult:
        entry = self.schedule_for(payment_type)
        percentage_fee = amount * entry.percentage
        fee = max(percentage_fee, entry.minimum)
        return FeeResult(
            fee=round2(fee),
            fee_type=entry.name,
            percentage=entry.percentage * 100,
            minimum=entry.minimum,
            calculated_from="percentage" if percentage_fee >= entry.minimum else "minimum",
        )

    def get_delivery_fee(self, state: Optional[str]) -> float:
        # exact match only; callers must pass the canonical state spelling
        if state and state in self.config.state_delivery_fees:
            return self.config.state_delivery_fees[state]
        return self.config.default_delivery_fee

    @staticmethod
    def calculate_spx_shipping(total_weight_kg: float) -> float:
        if total_weight_kg <= 0:
            return SPX_BASE_RATE
        weight = math.ceil(total_weight_kg)
        if weight <= SPX_BASE_MAX_KG:
            return SPX_BASE_RATE
        return round2(SPX_HEAVY_RATE + (weight - SPX_HEAVY_FROM_KG) * SPX_PER_EXTRA_KG)

    def calculate_delivery_fee(self, total_weight_kg: float, subtotal: float) -> float:
        if subtotal >= self.config.free_shipping_threshold:
            return 0.0
        return self.calculate_spx_shipping(total_weight_kg)

    def describe(self) -> Dict[str, Any]:
        return {
            "senangPayFees": {
                code: {
                    "name": entry.name,
                    "percentage": entry.percentage,
                    "minimum": entry.minimum,
                }
                for code, entry in self.config.senangpay_fees.items()
            },
            "defaultDeliveryFee": self.config.default_delivery_fee,
            "freeShippingThreshold": self.config.free_shipping_threshold,
            "stateDeliveryFees": dict(self.config.state_delivery_fees),
        }


default_calculator = FeeCalculator()
