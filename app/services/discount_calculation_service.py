"""折扣金额计算

金额统一用 Decimal，四舍五入到分。
"""

import logging
from decimal import Decimal, ROUND_HALF_UP, ROUND_FLOOR
from typing import List, Optional, Sequence

from app.models.discounts import (
    BuyXTriggerType,
    Discount,
    DiscountType,
    GetYAppliesTo,
    GetYType,
    TargetType,
)
from app.schemas.discount import (
    CalculationResult,
    CartLine,
    DiscountBreakdown,
    FreeItem,
    ValidationContext,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def money(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def _decimal(value, default: str = "0") -> Decimal:
    return Decimal(value) if value is not None else Decimal(default)


class DiscountCalculationService:
    """根据折扣类型计算优惠金额"""

    def calculate_discount(
        self,
        discount: Discount,
        context: ValidationContext,
        applicable_items: Optional[Sequence[CartLine]] = None,
    ) -> CalculationResult:
        items = list(applicable_items) if applicable_items is not None else list(context.cart_items)

        if discount.type == DiscountType.PERCENTAGE:
            return self._percentage(discount, items)
        if discount.type == DiscountType.FIXED_AMOUNT:
            return self._fixed_amount(discount, items)
        if discount.type == DiscountType.BUY_X_GET_Y:
            return self._buy_x_get_y(discount, context)
        if discount.type == DiscountType.FREE_SHIPPING:
            return self._free_shipping(discount, context)

        logger.warning(f"未知的折扣类型: {discount.type}")
        return CalculationResult(discount_type=str(discount.type))

    def _percentage(self, discount: Discount, items: List[CartLine]) -> CalculationResult:
        """百分比折扣；超过封顶时所有行按同一比例缩减"""
        rate = _decimal(discount.value) / Decimal(100)
        raw = [line.line_total * rate for line in items]
        total = sum(raw, Decimal("0"))

        if discount.max_discount_amount is not None:
            cap = Decimal(discount.max_discount_amount)
            if total > cap:
                factor = cap / total
                raw = [amount * factor for amount in raw]
                total = cap

        return CalculationResult(
            discount_amount=money(total),
            discount_type=DiscountType.PERCENTAGE.value,
            breakdown=self._breakdown(items, raw, money(total)),
        )

    def _fixed_amount(self, discount: Discount, items: List[CartLine]) -> CalculationResult:
        """固定金额折扣，不超过适用商品合计，按金额占比分摊"""
        applicable_total = sum((line.line_total for line in items), Decimal("0"))
        amount = min(_decimal(discount.value), applicable_total)

        raw = [
            amount * line.line_total / applicable_total if applicable_total > 0 else Decimal("0")
            for line in items
        ]
        return CalculationResult(
            discount_amount=money(amount),
            discount_type=DiscountType.FIXED_AMOUNT.value,
            breakdown=self._breakdown(items, raw, money(amount)),
        )

    def _buy_x_get_y(self, discount: Discount, context: ValidationContext) -> CalculationResult:
        """买 X 送 Y

        触发次数按数量或金额计算，不可重复时最多触发一次；
        奖励从最便宜的可赠商品开始分配。
        """
        lines = list(context.cart_items)
        buy_products = discount.target_values(TargetType.BUY_X_PRODUCT)
        buy_collections = discount.target_values(TargetType.BUY_X_COLLECTION)
        get_products = discount.target_values(TargetType.GET_Y_PRODUCT)
        get_collections = discount.target_values(TargetType.GET_Y_COLLECTION)

        def is_buy(line: CartLine) -> bool:
            # 未指定买入范围时任意商品都算
            if not buy_products and not buy_collections:
                return True
            return str(line.product_id) in buy_products or bool(buy_collections.intersection(line.collection_ids))

        buy_items = [line for line in lines if is_buy(line)]
        buy_product_ids = {line.product_id for line in buy_items}

        if discount.get_y_applies_to == GetYAppliesTo.SAME:
            get_items = [line for line in lines if line.product_id in buy_product_ids]
        elif discount.get_y_applies_to == GetYAppliesTo.CHEAPEST:
            get_items = lines
        else:
            get_items = [
                line for line in lines
                if str(line.product_id) in get_products or get_collections.intersection(line.collection_ids)
            ]

        result = CalculationResult(discount_type=DiscountType.BUY_X_GET_Y.value)

        buy_value = _decimal(discount.buy_x_value)
        if not buy_items or buy_value <= 0:
            return result

        if discount.buy_x_trigger_type == BuyXTriggerType.AMOUNT:
            buy_amount = sum((line.line_total for line in buy_items), Decimal("0"))
            times_triggered = int((buy_amount / buy_value).to_integral_value(rounding=ROUND_FLOOR))
        else:
            if discount.buy_x_same_product:
                buy_quantity = max(line.quantity for line in buy_items)
            else:
                buy_quantity = sum(line.quantity for line in buy_items)
            times_triggered = int((Decimal(buy_quantity) / buy_value).to_integral_value(rounding=ROUND_FLOOR))

        if not discount.buy_x_repeat:
            times_triggered = min(times_triggered, 1)
        if times_triggered <= 0:
            return result

        rewards_to_give = times_triggered * (discount.get_y_quantity or 1)
        if discount.get_y_max_rewards:
            rewards_to_give = min(rewards_to_give, discount.get_y_max_rewards)

        reward_value = _decimal(discount.get_y_value)
        total_savings = Decimal("0")
        given = 0

        for line in sorted(get_items, key=lambda l: l.price):
            if given >= rewards_to_give:
                break
            quantity = min(line.quantity, rewards_to_give - given)

            if discount.get_y_type == GetYType.PERCENTAGE:
                savings = line.price * quantity * reward_value / Decimal(100)
            elif discount.get_y_type == GetYType.AMOUNT:
                savings = min(reward_value, line.price) * quantity
            elif discount.get_y_type == GetYType.FIXED_PRICE:
                savings = max(Decimal("0"), line.price - reward_value) * quantity
            else:
                savings = line.price * quantity

            result.free_items.append(FreeItem(
                product_id=line.product_id,
                product_name=line.name,
                quantity=quantity,
                original_price=money(line.price * quantity),
                discount_amount=money(savings),
            ))
            total_savings += savings
            given += quantity

        result.discount_amount = money(total_savings)
        return result

    def _free_shipping(self, discount: Discount, context: ValidationContext) -> CalculationResult:
        result = CalculationResult(discount_type=DiscountType.FREE_SHIPPING.value)

        shipping = context.shipping_amount or Decimal("0")
        if shipping <= 0:
            return result
        if discount.shipping_min_amount is not None and context.subtotal < Decimal(discount.shipping_min_amount):
            return result
        if discount.shipping_min_items and context.total_quantity < discount.shipping_min_items:
            return result

        amount = shipping
        if discount.shipping_cap is not None:
            amount = min(amount, Decimal(discount.shipping_cap))

        result.discount_amount = money(amount)
        result.free_shipping_amount = money(amount)
        return result

    @staticmethod
    def _breakdown(items: List[CartLine], raw: List[Decimal], total: Decimal) -> List[DiscountBreakdown]:
        """逐行分摊；舍入误差记到最后一行，保证各行之和等于总优惠"""
        amounts = [money(amount) for amount in raw]
        if amounts:
            amounts[-1] += total - sum(amounts, ZERO)

        breakdown = []
        for line, amount in zip(items, amounts):
            original = money(line.line_total)
            breakdown.append(DiscountBreakdown(
                product_id=line.product_id,
                product_name=line.name,
                quantity=line.quantity,
                original_price=original,
                discount_amount=amount,
                final_price=original - amount,
            ))
        return breakdown
