"""订单服务

把订单写入、库存预占、折扣使用记录放在同一个事务里；
发货/取消/退货分别驱动订单预占的状态流转。
"""

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from redis import Redis
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.core.exceptions import (
    DiscountValidationError,
    InvalidStateError,
    InventoryNotFoundError,
    OrderNotFoundError,
)
from app.models.discounts import DiscountType
from app.models.inventory_reservations import InventoryReservation, ReservationKind, ReservationStatus
from app.models.orders import Order, OrderItem, OrderStatus
from app.models.payments import PaymentTransaction, TransactionStatus
from app.models.product import Product, ProductStatus, ProductVariant
from app.schemas.discount import CalculationResult, CartLine, ValidationContext
from app.schemas.inventory_api import StockItem
from app.schemas.order import CreateOrderRequest
from app.services.discount_calculation_service import DiscountCalculationService, money
from app.services.discount_validation_service import DiscountValidationService
from app.services.inventory_service import invalidate_stock_cache
from app.services.order_reservation_service import OrderReservationService

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_order_number() -> str:
    return f"ORD-{utcnow():%Y%m%d}-{uuid.uuid4().hex[:10].upper()}"


class OrderService:
    """订单服务类"""

    def __init__(self, db: Session, redis: Redis = None):
        self.db = db
        self.redis = redis
        self.reservations = OrderReservationService(db, redis)
        self.discount_validation = DiscountValidationService(db)
        self.discount_calculation = DiscountCalculationService()

    def create_order(
        self,
        request: CreateOrderRequest,
        allow_overselling: bool = False,
        is_direct: bool = False,
    ) -> Order:
        """创建订单（订单、明细、预占、折扣使用一起提交或一起回滚）

        Raises:
            InventoryNotFoundError: 商品不存在或不可售
            InsufficientStockError: 不允许超卖时库存不足
            DiscountValidationError: 折扣码校验未通过
        """
        order_number = generate_order_number()

        try:
            lines = self._price_lines(request.items)
            subtotal = money(sum((line.line_total for line in lines), Decimal("0")))
            shipping = money(request.shipping_amount)

            discount = None
            calculation = None
            if request.discount_code:
                discount, calculation = self._apply_discount(request, lines, subtotal, shipping)

            item_discounts = self._allocate_item_discounts(lines, calculation)
            items_discount = money(sum(item_discounts, Decimal("0")))
            shipping_discount = calculation.free_shipping_amount if calculation else Decimal("0")
            total = max(Decimal("0"), subtotal - items_discount + shipping - shipping_discount)

            order = Order(
                order_number=order_number,
                user_id=request.user_id,
                cart_id=request.cart_id,
                subtotal=subtotal,
                discount_amount=money(items_discount + shipping_discount),
                shipping_amount=shipping,
                total_amount=money(total),
                discount_code=request.discount_code.strip().upper() if discount is not None else None,
                is_direct=is_direct,
                razorpay_order_id=request.razorpay_order_id,
            )
            for item, line, line_discount in zip(request.items, lines, item_discounts):
                order.items.append(OrderItem(
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    location_id=item.location_id,
                    product_name=line.name,
                    quantity=item.quantity,
                    unit_price=line.price,
                    discount_amount=line_discount,
                    line_total=money(line.line_total - line_discount),
                ))
            self.db.add(order)
            self.db.flush()

            self.reservations.reserve_stock_for_order(
                request.items,
                order_number,
                owner_id=request.user_id,
                allow_overselling=allow_overselling,
                cart_id=request.cart_id,
                commit=False,
            )

            if discount is not None:
                self.discount_validation.record_usage(
                    discount,
                    request.discount_code,
                    order.discount_amount,
                    user_id=request.user_id,
                    order_id=order.id,
                    order_number=order_number,
                    order_subtotal=subtotal,
                    items_count=sum(item.quantity for item in request.items),
                )

            if request.razorpay_order_id:
                self.db.add(PaymentTransaction(
                    order_id=order.id,
                    razorpay_order_id=request.razorpay_order_id,
                    amount=order.total_amount,
                    status=TransactionStatus.INITIATED,
                ))

            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"创建订单失败: order_number={order_number}, error={str(e)}")
            raise

        logger.info(
            f"创建订单成功: order_number={order_number}, total={order.total_amount}, "
            f"direct={is_direct}, oversell={allow_overselling}"
        )
        invalidate_stock_cache(self.redis, [item.product_id for item in request.items])
        return order

    def get_order(self, order_id: int) -> Order:
        order = self.db.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        ).scalars().first()
        if order is None:
            raise OrderNotFoundError(f"订单 {order_id} 不存在")
        return order

    def ship_order(self, order_id: int) -> Order:
        """发货：扣减库存，订单进入 shipped"""
        order = self.get_order(order_id)
        try:
            self._move_status(order, (OrderStatus.PENDING, OrderStatus.CONFIRMED), OrderStatus.SHIPPED)
            self.reservations.fulfill_order_inventory(order.order_number, commit=False)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"订单发货失败: order_number={order.order_number}, error={str(e)}")
            raise

        logger.info(f"订单已发货: order_number={order.order_number}")
        self._invalidate(order)
        return self.get_order(order_id)

    def cancel_order(self, order_id: int) -> Order:
        """取消：释放预占，订单进入 cancelled"""
        order = self.get_order(order_id)
        try:
            self._move_status(order, (OrderStatus.PENDING, OrderStatus.CONFIRMED), OrderStatus.CANCELLED)
            self.reservations.release_reservation(order.order_number, commit=False)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"取消订单失败: order_number={order.order_number}, error={str(e)}")
            raise

        logger.info(f"订单已取消: order_number={order.order_number}")
        self._invalidate(order)
        return self.get_order(order_id)

    def return_order(
        self,
        order_id: int,
        items: Optional[Sequence[StockItem]] = None,
        restock: bool = True,
    ) -> Order:
        """退货：全部退回后订单进入 returned，部分退货保持原状态"""
        order = self.get_order(order_id)
        if order.order_status not in (OrderStatus.SHIPPED, OrderStatus.DELIVERED):
            raise InvalidStateError(f"订单 {order.order_number} 当前状态 {order.order_status.value} 不能退货")

        try:
            self.reservations.process_order_return(order.order_number, items=items, restock=restock, commit=False)

            remaining = self.db.execute(
                select(InventoryReservation.id).where(
                    InventoryReservation.order_number == order.order_number,
                    InventoryReservation.kind == ReservationKind.ORDER,
                    InventoryReservation.status == ReservationStatus.FULFILLED,
                )
            ).first()
            if remaining is None:
                self._move_status(order, (OrderStatus.SHIPPED, OrderStatus.DELIVERED), OrderStatus.RETURNED)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"订单退货失败: order_number={order.order_number}, error={str(e)}")
            raise

        logger.info(f"订单退货完成: order_number={order.order_number}, restock={restock}")
        if restock:
            self._invalidate(order)
        return self.get_order(order_id)

    # ==================== 内部方法 ====================

    def _price_lines(self, items: Sequence[StockItem]) -> List[CartLine]:
        """按服务端售价生成计价行"""
        product_ids = {item.product_id for item in items}
        products = {
            p.id: p for p in self.db.execute(
                select(Product).where(
                    Product.id.in_(list(product_ids)),
                    Product.status != ProductStatus.ARCHIVED,
                    Product.is_deleted.is_(False),
                )
            ).scalars().all()
        }

        variant_ids = {item.variant_id for item in items if item.variant_id}
        variants = {}
        if variant_ids:
            variants = {
                v.id: v for v in self.db.execute(
                    select(ProductVariant).where(ProductVariant.id.in_(list(variant_ids)))
                ).scalars().all()
            }

        lines = []
        for item in items:
            product = products.get(item.product_id)
            if product is None:
                raise InventoryNotFoundError(
                    f"商品 {item.product_id} 不存在或不可售",
                    data={"product_id": item.product_id},
                )

            name = product.name
            price = Decimal(product.price)
            if item.variant_id:
                variant = variants.get(item.variant_id)
                if variant is None or variant.product_id != product.id:
                    raise InventoryNotFoundError(
                        f"规格 {item.variant_id} 不属于商品 {item.product_id}",
                        data={"product_id": item.product_id, "variant_id": item.variant_id},
                    )
                name = f"{product.name} - {variant.name}"
                if variant.price is not None:
                    price = Decimal(variant.price)

            lines.append(CartLine(
                product_id=item.product_id,
                variant_id=item.variant_id,
                name=name,
                quantity=item.quantity,
                price=price,
            ))
        return lines

    def _apply_discount(self, request: CreateOrderRequest, lines, subtotal: Decimal, shipping: Decimal):
        context = ValidationContext(
            code=request.discount_code,
            cart_items=lines,
            cart_subtotal=subtotal,
            shipping_amount=shipping,
            user_id=request.user_id,
            is_new_customer=request.is_new_customer,
            segment_ids=request.segment_ids,
            shipping_address_country=request.shipping_address_country,
            shipping_address_region=request.shipping_address_region,
        )
        result = self.discount_validation.validate_discount_code(context)
        if not result.valid:
            raise DiscountValidationError(result.message, code=result.error_code)

        calculation = self.discount_calculation.calculate_discount(
            result.discount, context, result.applicable_items
        )
        return result.discount, calculation

    @staticmethod
    def _allocate_item_discounts(lines: List[CartLine], calculation: Optional[CalculationResult]) -> List[Decimal]:
        """把折扣分摊回订单行（按商品ID匹配，每行不超过行金额）"""
        allocated = [Decimal("0.00") for _ in lines]
        if calculation is None or calculation.discount_type == DiscountType.FREE_SHIPPING.value:
            return allocated

        by_product: Dict[int, Decimal] = {}
        for entry in list(calculation.breakdown) + list(calculation.free_items):
            by_product[entry.product_id] = by_product.get(entry.product_id, Decimal("0")) + entry.discount_amount

        for index, line in enumerate(lines):
            remaining = by_product.get(line.product_id, Decimal("0"))
            if remaining <= 0:
                continue
            amount = min(remaining, money(line.line_total))
            allocated[index] = amount
            by_product[line.product_id] = remaining - amount
        return allocated

    def _move_status(self, order: Order, allowed, target: OrderStatus):
        """订单状态 CAS"""
        result = self.db.execute(
            update(Order)
            .where(Order.id == order.id, Order.order_status.in_(allowed))
            .values(order_status=target, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidStateError(
                f"订单 {order.order_number} 当前状态 {order.order_status.value} 不能变更为 {target.value}"
            )

    def _invalidate(self, order: Order):
        invalidate_stock_cache(self.redis, [item.product_id for item in order.items])
