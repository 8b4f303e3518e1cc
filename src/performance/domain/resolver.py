"""
SLA Resolver
============

Resolves the effective SLA targets for a contract, an optional product
override, and a calendar date.

Resolution order:
1. Contract defaults
2. ProductSLA overrides (only while the override is effective)
3. Seasonal rule for the month (peak before off-peak)
4. Special periods covering the date

The resolver is pure: same inputs, same targets.
"""

from datetime import date
from typing import Optional

from src.config import ContractStatus, MetricType, settings
from src.core import ContractConfigurationException
from src.performance.domain.entities import Contract, ProductSLA
from src.performance.domain.value_objects import EffectiveTargets

DEFAULT_QUANTITY_SHORTAGE_PENALTY_PERCENT = 2.0


def _pick(override: Optional[float], default: Optional[float]) -> Optional[float]:
    return default if override is None else override


class SLAResolver:
    """
    Resolver for effective SLA targets.

    Defaults for targets the contract does not carry (quantity threshold,
    fulfillment target) come from settings unless given explicitly.
    """

    def __init__(
        self,
        default_quantity_accuracy_threshold: Optional[float] = None,
        default_fulfillment_target: Optional[float] = None,
    ):
        self.default_quantity_accuracy_threshold = (
            settings.default_quantity_accuracy_threshold
            if default_quantity_accuracy_threshold is None
            else default_quantity_accuracy_threshold
        )
        self.default_fulfillment_target = (
            settings.default_fulfillment_target
            if default_fulfillment_target is None
            else default_fulfillment_target
        )

    @staticmethod
    def validate(contract: Contract) -> None:
        """
        Reject contract terms that cannot produce meaningful targets.

        Raises:
            ContractConfigurationException: If the terms are invalid
        """
        if not isinstance(contract.status, ContractStatus):
            raise ContractConfigurationException(contract.id, f"unknown status {contract.status!r}")
        if contract.valid_until <= contract.valid_from:
            raise ContractConfigurationException(contract.id, "valid_until must be after valid_from")
        if contract.default_delivery_sla_days is None or contract.default_delivery_sla_days < 0:
            raise ContractConfigurationException(contract.id, "delivery SLA days must be non-negative")
        for name in ("default_quality_tolerance_percent", "default_delivery_tolerance_percent"):
            value = getattr(contract, name)
            if value is None or not 0 <= value <= 100:
                raise ContractConfigurationException(contract.id, f"{name} must be within 0-100")
        for sla in contract.product_slas:
            if sla.contract_id != contract.id:
                raise ContractConfigurationException(
                    contract.id, f"product SLA {sla.id} belongs to contract {sla.contract_id}"
                )
            if sla.effective_until is not None and sla.effective_until < sla.effective_from:
                raise ContractConfigurationException(
                    contract.id, f"product SLA {sla.id} ends before it starts"
                )

    def resolve(
        self,
        contract: Contract,
        product_sla: Optional[ProductSLA],
        as_of: date,
    ) -> EffectiveTargets:
        """
        Resolve effective targets on ``as_of``.

        Args:
            contract: Contract carrying the defaults
            product_sla: Optional product override
            as_of: Date the targets apply to

        Returns:
            EffectiveTargets: Targets after overrides and adjustments
        """
        sla = product_sla if product_sla is not None and product_sla.is_effective_on(as_of) else None

        delivery_days = contract.default_delivery_sla_days
        quality_tolerance = contract.default_quality_tolerance_percent
        delivery_tolerance = contract.default_delivery_tolerance_percent
        quantity_threshold = self.default_quantity_accuracy_threshold
        fulfillment_target = _pick(contract.minimum_fulfillment_rate, self.default_fulfillment_target)
        max_delay = None

        late_penalty = contract.late_delivery_penalty_percent
        quality_penalty = contract.quality_issue_penalty_percent
        shortage_penalty = DEFAULT_QUANTITY_SHORTAGE_PENALTY_PERCENT
        early_bonus = contract.early_delivery_bonus_percent
        quality_bonus = contract.quality_excellence_bonus_percent

        if sla is not None:
            delivery_days = _pick(sla.delivery_sla_days, delivery_days)
            quality_tolerance = _pick(sla.quality_tolerance_percent, quality_tolerance)
            delivery_tolerance = _pick(sla.delivery_tolerance_percent, delivery_tolerance)
            quantity_threshold = _pick(sla.quantity_accuracy_threshold, quantity_threshold)
            fulfillment_target = _pick(sla.minimum_order_fulfillment_rate, fulfillment_target)
            max_delay = sla.max_delivery_delay_days

            late_penalty = _pick(sla.late_delivery_penalty_percent, late_penalty)
            quality_penalty = _pick(sla.quality_issue_penalty_percent, quality_penalty)
            shortage_penalty = _pick(sla.quantity_shortage_penalty_percent, shortage_penalty)
            early_bonus = _pick(sla.early_delivery_bonus_percent, early_bonus)
            quality_bonus = _pick(sla.quality_excellence_bonus_percent, quality_bonus)

            adjustments = []
            seasonal = sla.seasonal_rule_for(as_of)
            if seasonal is not None:
                adjustments.append(seasonal)
            adjustments.extend(sla.special_periods_for(as_of))

            for rule in adjustments:
                delivery_days += rule.delivery_days_adjustment
                quality_tolerance += rule.quality_tolerance_adjustment
                delivery_tolerance += rule.delivery_tolerance_adjustment

        return EffectiveTargets(
            delivery_days=max(delivery_days, 0.0),
            quality_tolerance_percent=min(max(quality_tolerance, 0.0), 100.0),
            delivery_tolerance_percent=min(max(delivery_tolerance, 0.0), 100.0),
            quantity_accuracy_threshold=quantity_threshold,
            fulfillment_target=fulfillment_target,
            max_delivery_delay_days=max_delay,
            penalty_rates={
                MetricType.DELIVERY_PERFORMANCE: late_penalty,
                MetricType.QUALITY_PERFORMANCE: quality_penalty,
                MetricType.QUANTITY_ACCURACY: shortage_penalty,
            },
            bonus_rates={
                MetricType.DELIVERY_PERFORMANCE: early_bonus,
                MetricType.QUALITY_PERFORMANCE: quality_bonus,
            },
        )
