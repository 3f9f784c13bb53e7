"""折扣码校验服务

按固定顺序逐项检查，遇到第一个不满足的条件即返回对应错误码：
折扣码存在 -> 状态/有效期 -> 总次数 -> 单用户次数 -> 每日次数 -> 最低门槛
-> 新老客户 -> 定向人群 -> 地区 -> 适用商品
"""

import enum
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update, func, or_
from sqlalchemy.orm import Session

from app.core.exceptions import DiscountValidationError
from app.models.discounts import (
    AppliesTo,
    Discount,
    DiscountCode,
    DiscountStatus,
    DiscountUsage,
    GeoRestriction,
    MinRequirementType,
    TargetAudience,
    TargetType,
)
from app.schemas.discount import ValidationContext, ValidationResult

logger = logging.getLogger(__name__)


class DiscountErrorCode(str, enum.Enum):
    INVALID_CODE = "DISCOUNT_INVALID_CODE"
    EXPIRED = "DISCOUNT_EXPIRED"
    NOT_STARTED = "DISCOUNT_NOT_STARTED"
    INACTIVE = "DISCOUNT_INACTIVE"
    MIN_AMOUNT_NOT_MET = "DISCOUNT_MIN_AMOUNT_NOT_MET"
    MIN_QUANTITY_NOT_MET = "DISCOUNT_MIN_QUANTITY_NOT_MET"
    USAGE_LIMIT_REACHED = "DISCOUNT_USAGE_LIMIT_REACHED"
    ALREADY_USED = "DISCOUNT_ALREADY_USED"
    NOT_ELIGIBLE = "DISCOUNT_NOT_ELIGIBLE"
    GEO_RESTRICTED = "DISCOUNT_GEO_RESTRICTED"
    NO_APPLICABLE_ITEMS = "DISCOUNT_NO_APPLICABLE_ITEMS"
    NEW_CUSTOMERS_ONLY = "DISCOUNT_NEW_CUSTOMERS_ONLY"
    RETURNING_CUSTOMERS_ONLY = "DISCOUNT_RETURNING_CUSTOMERS_ONLY"
    DAILY_LIMIT_REACHED = "DISCOUNT_DAILY_LIMIT_REACHED"


ERROR_MESSAGES = {
    DiscountErrorCode.INVALID_CODE: "折扣码不存在，请检查后重试",
    DiscountErrorCode.EXPIRED: "折扣码已过期",
    DiscountErrorCode.NOT_STARTED: "折扣活动尚未开始",
    DiscountErrorCode.INACTIVE: "折扣码当前不可用",
    DiscountErrorCode.MIN_AMOUNT_NOT_MET: "订单金额未达到使用门槛",
    DiscountErrorCode.MIN_QUANTITY_NOT_MET: "商品件数未达到使用门槛",
    DiscountErrorCode.USAGE_LIMIT_REACHED: "折扣码已达到使用次数上限",
    DiscountErrorCode.ALREADY_USED: "您已经使用过该折扣码",
    DiscountErrorCode.NOT_ELIGIBLE: "您不符合该折扣的使用条件",
    DiscountErrorCode.GEO_RESTRICTED: "该折扣在您所在的地区不可用",
    DiscountErrorCode.NO_APPLICABLE_ITEMS: "购物车中没有适用该折扣的商品",
    DiscountErrorCode.NEW_CUSTOMERS_ONLY: "该折扣仅限新客户使用",
    DiscountErrorCode.RETURNING_CUSTOMERS_ONLY: "该折扣仅限老客户使用",
    DiscountErrorCode.DAILY_LIMIT_REACHED: "该折扣今日使用次数已达上限",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite 读回的时间不带时区，统一按 UTC 处理"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class DiscountValidationService:
    """折扣码校验服务类"""

    def __init__(self, db: Session):
        self.db = db

    def validate_discount_code(self, context: ValidationContext) -> ValidationResult:
        code = context.code.strip().upper()

        code_row = self.db.execute(
            select(DiscountCode)
            .where(DiscountCode.code == code)
            .execution_options(populate_existing=True)
        ).scalars().first()
        if code_row is None:
            return self._error(DiscountErrorCode.INVALID_CODE)

        discount = self.db.execute(
            select(Discount)
            .where(Discount.id == code_row.discount_id, Discount.is_deleted.is_(False))
            .execution_options(populate_existing=True)
        ).scalars().first()
        if discount is None:
            return self._error(DiscountErrorCode.INVALID_CODE)

        checks = (
            lambda: self._check_status(discount),
            lambda: self._check_date_range(discount),
            lambda: self._check_global_usage(discount, code_row),
            lambda: self._check_customer_usage(discount, code_row, context.user_id),
            lambda: self._check_daily_usage(discount),
            lambda: self._check_minimum_requirements(discount, context),
            lambda: self._check_customer_type(discount, context),
            lambda: self._check_customer_targeting(discount, context),
            lambda: self._check_geo_restriction(discount, context),
        )
        for check in checks:
            failure = check()
            if failure is not None:
                logger.info(f"折扣码校验未通过: code={code}, error_code={failure.error_code}")
                return failure

        applicable_items = self._applicable_items(discount, context)
        if not applicable_items:
            return self._error(DiscountErrorCode.NO_APPLICABLE_ITEMS)

        logger.info(f"折扣码校验通过: code={code}, user={context.user_id or 'guest'}")
        return ValidationResult(
            valid=True,
            discount=discount,
            discount_code=code,
            applicable_items=applicable_items,
        )

    def record_usage(
        self,
        discount: Discount,
        discount_code: str,
        discount_amount: Decimal,
        user_id: Optional[str] = None,
        order_id: Optional[int] = None,
        order_number: Optional[str] = None,
        order_subtotal: Optional[Decimal] = None,
        items_count: Optional[int] = None,
    ) -> DiscountUsage:
        """记录一次使用（不提交，由下单事务负责）

        计数器用相对更新，并把上限写在 WHERE 里；并发下单抢最后一次名额时，
        没抢到的一方抛 DiscountValidationError。
        """
        code = discount_code.strip().upper()

        result = self.db.execute(
            update(DiscountCode)
            .where(
                DiscountCode.code == code,
                or_(
                    DiscountCode.usage_limit.is_(None),
                    DiscountCode.usage_count < DiscountCode.usage_limit,
                ),
            )
            .values(usage_count=DiscountCode.usage_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise self._exception(DiscountErrorCode.USAGE_LIMIT_REACHED)

        result = self.db.execute(
            update(Discount)
            .where(
                Discount.id == discount.id,
                or_(
                    Discount.usage_limit.is_(None),
                    Discount.total_usage_count < Discount.usage_limit,
                ),
            )
            .values(total_usage_count=Discount.total_usage_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise self._exception(DiscountErrorCode.USAGE_LIMIT_REACHED)

        usage = DiscountUsage(
            discount_id=discount.id,
            discount_code=code,
            user_id=user_id,
            order_id=order_id,
            order_number=order_number,
            discount_type=discount.type.value,
            discount_amount=discount_amount,
            order_subtotal=order_subtotal,
            items_count=items_count,
            used_at=utcnow(),
        )
        self.db.add(usage)
        logger.info(f"记录折扣码使用: code={code}, order_number={order_number}, amount={discount_amount}")
        return usage

    # ==================== 校验项 ====================

    def _check_status(self, discount: Discount):
        if discount.status == DiscountStatus.ACTIVE:
            return None
        if discount.status == DiscountStatus.SCHEDULED:
            return self._error(DiscountErrorCode.NOT_STARTED)
        if discount.status == DiscountStatus.EXPIRED:
            return self._error(DiscountErrorCode.EXPIRED)
        return self._error(DiscountErrorCode.INACTIVE)

    def _check_date_range(self, discount: Discount):
        now = utcnow()
        if _aware(discount.starts_at) > now:
            return self._error(DiscountErrorCode.NOT_STARTED)
        if discount.ends_at is not None and _aware(discount.ends_at) < now:
            return self._error(DiscountErrorCode.EXPIRED)
        return None

    def _check_global_usage(self, discount: Discount, code_row: DiscountCode):
        if discount.usage_limit is not None and (discount.total_usage_count or 0) >= discount.usage_limit:
            return self._error(DiscountErrorCode.USAGE_LIMIT_REACHED)
        if code_row.usage_limit is not None and (code_row.usage_count or 0) >= code_row.usage_limit:
            return self._error(DiscountErrorCode.USAGE_LIMIT_REACHED)
        return None

    def _check_customer_usage(self, discount: Discount, code_row: DiscountCode, user_id: Optional[str]):
        # 游客无法按人统计
        if not user_id:
            return None

        if discount.once_per_customer or discount.usage_per_customer is not None:
            used = self._count_usage(DiscountUsage.discount_id == discount.id, DiscountUsage.user_id == user_id)
            if discount.once_per_customer and used > 0:
                return self._error(DiscountErrorCode.ALREADY_USED)
            if discount.usage_per_customer is not None and used >= discount.usage_per_customer:
                return self._error(DiscountErrorCode.ALREADY_USED)

        if code_row.max_uses_per_customer is not None:
            used = self._count_usage(DiscountUsage.discount_code == code_row.code, DiscountUsage.user_id == user_id)
            if used >= code_row.max_uses_per_customer:
                return self._error(DiscountErrorCode.ALREADY_USED)
        return None

    def _check_daily_usage(self, discount: Discount):
        if not discount.usage_per_day:
            return None
        start_of_day = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
        used_today = self._count_usage(
            DiscountUsage.discount_id == discount.id,
            DiscountUsage.used_at >= start_of_day,
        )
        if used_today >= discount.usage_per_day:
            return self._error(DiscountErrorCode.DAILY_LIMIT_REACHED)
        return None

    def _check_minimum_requirements(self, discount: Discount, context: ValidationContext):
        if not discount.min_requirement_value:
            return None

        if discount.min_requirement_type == MinRequirementType.MIN_AMOUNT:
            min_amount = Decimal(discount.min_requirement_value)
            if context.subtotal < min_amount:
                return ValidationResult(
                    valid=False,
                    error_code=DiscountErrorCode.MIN_AMOUNT_NOT_MET.value,
                    message=f"再购买 ₹{(min_amount - context.subtotal):.2f} 即可使用该折扣",
                )

        if discount.min_requirement_type == MinRequirementType.MIN_QUANTITY:
            min_quantity = int(discount.min_requirement_value)
            if context.total_quantity < min_quantity:
                return ValidationResult(
                    valid=False,
                    error_code=DiscountErrorCode.MIN_QUANTITY_NOT_MET.value,
                    message=f"再添加 {min_quantity - context.total_quantity} 件商品即可使用该折扣",
                )
        return None

    def _check_customer_type(self, discount: Discount, context: ValidationContext):
        if discount.limit_new_customers and context.is_new_customer is False:
            return self._error(DiscountErrorCode.NEW_CUSTOMERS_ONLY)
        if discount.limit_returning_customers and context.is_new_customer is True:
            return self._error(DiscountErrorCode.RETURNING_CUSTOMERS_ONLY)
        return None

    def _check_customer_targeting(self, discount: Discount, context: ValidationContext):
        if discount.target_audience == TargetAudience.SPECIFIC_CUSTOMERS:
            allowed = discount.target_values(TargetType.CUSTOMER)
            if not context.user_id or context.user_id not in allowed:
                return self._error(DiscountErrorCode.NOT_ELIGIBLE)

        if discount.target_audience == TargetAudience.SEGMENTS:
            allowed = discount.target_values(TargetType.SEGMENT)
            if not allowed.intersection(context.segment_ids):
                return self._error(DiscountErrorCode.NOT_ELIGIBLE)
        return None

    def _check_geo_restriction(self, discount: Discount, context: ValidationContext):
        if discount.geo_restriction != GeoRestriction.SPECIFIC_REGIONS:
            return None

        # 没有收货地址时先放行，结算时会再校验一次
        if not context.shipping_address_country:
            return None

        regions = discount.regions()
        if not regions:
            return None

        country = context.shipping_address_country.lower()
        for region in regions:
            if region.target_value.lower() != country:
                continue
            if not region.region_code or region.region_code == context.shipping_address_region:
                return None
        return self._error(DiscountErrorCode.GEO_RESTRICTED)

    def _applicable_items(self, discount: Discount, context: ValidationContext):
        if discount.applies_to == AppliesTo.SPECIFIC_PRODUCTS:
            allowed = discount.target_values(TargetType.PRODUCT)
            return [line for line in context.cart_items if str(line.product_id) in allowed]

        if discount.applies_to == AppliesTo.SPECIFIC_COLLECTIONS:
            allowed = discount.target_values(TargetType.COLLECTION)
            return [line for line in context.cart_items if allowed.intersection(line.collection_ids)]

        return list(context.cart_items)

    # ==================== 内部工具 ====================

    def _count_usage(self, *conditions) -> int:
        return self.db.execute(
            select(func.count()).select_from(DiscountUsage).where(*conditions)
        ).scalar_one()

    @staticmethod
    def _error(code: DiscountErrorCode) -> ValidationResult:
        return ValidationResult(valid=False, error_code=code.value, message=ERROR_MESSAGES[code])

    @staticmethod
    def _exception(code: DiscountErrorCode) -> DiscountValidationError:
        return DiscountValidationError(ERROR_MESSAGES[code], code=code.value)
