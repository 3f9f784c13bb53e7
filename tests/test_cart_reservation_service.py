"""购物车预占服务单元测试"""
from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import patch

from app.core.exceptions import InsufficientStockError, InventoryNotFoundError
from app.models.inventory import Inventory
from app.models.inventory_reservations import (
    InventoryReservation,
    ReservationKind,
    ReservationStatus,
)
from app.schemas.inventory_api import StockItem
from app.services.cart_reservation_service import CartReservationService


def reserved_of(db_session, row):
    return db_session.get(Inventory, row.id, populate_existing=True).reserved_quantity


def holds_of(db_session, cart_id):
    return db_session.query(InventoryReservation).filter_by(cart_id=cart_id).populate_existing().all()


def add_expired_hold(db_session, product, row, cart_id, quantity=1, minutes_ago=5):
    """直接写入一条已过期的购物车预占（同时占用库存行）"""
    row = db_session.get(Inventory, row.id, populate_existing=True)
    row.reserved_quantity += quantity
    hold = InventoryReservation(
        kind=ReservationKind.CART,
        status=ReservationStatus.RESERVED,
        inventory_id=row.id,
        product_id=product.id,
        quantity=quantity,
        cart_id=cart_id,
        expires_at=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
    )
    db_session.add(hold)
    db_session.commit()
    return hold


class TestReserveCartStock:
    """购物车预占测试"""

    @pytest.fixture
    def service(self, db_session, mock_redis):
        return CartReservationService(db_session, mock_redis)

    def test_reserve_success(self, service, db_session, factory, mock_redis):
        """测试预占成功"""
        product, row = factory.stocked_product(available=10)

        result = service.reserve_cart_stock([StockItem(product_id=product.id, quantity=3)], "cart_001")

        assert result["cart_id"] == "cart_001"
        assert len(result["reservation_ids"]) == 1
        assert reserved_of(db_session, row) == 3
        hold = holds_of(db_session, "cart_001")[0]
        assert hold.kind == ReservationKind.CART
        assert hold.status == ReservationStatus.RESERVED
        assert hold.expires_at is not None
        mock_redis.delete.assert_called_once()

    def test_reserve_all_or_nothing(self, service, db_session, factory):
        """测试任一商品不足时整批回滚"""
        first, first_row = factory.stocked_product(available=10)
        second, second_row = factory.stocked_product(available=1)

        with pytest.raises(InsufficientStockError) as exc_info:
            service.reserve_cart_stock([
                StockItem(product_id=first.id, quantity=2),
                StockItem(product_id=second.id, quantity=5),
            ], "cart_001")

        shortfall = exc_info.value.data[0]
        assert shortfall["product_id"] == second.id
        assert shortfall["available"] == 1
        assert reserved_of(db_session, first_row) == 0
        assert holds_of(db_session, "cart_001") == []

    def test_reserve_exact_stock(self, service, db_session, factory):
        """测试恰好等于可售库存时可以预占"""
        product, row = factory.stocked_product(available=5, reserved=2)

        service.reserve_cart_stock([StockItem(product_id=product.id, quantity=3)], "cart_001")

        assert reserved_of(db_session, row) == 5

    def test_reserve_unknown_product(self, service):
        """测试商品没有库存行"""
        with pytest.raises(InventoryNotFoundError):
            service.reserve_cart_stock([StockItem(product_id=999, quantity=1)], "cart_001")

    def test_reserve_empty_items(self, service):
        """测试空购物项"""
        with pytest.raises(ValueError):
            service.reserve_cart_stock([], "cart_001")

    def test_second_reserve_refreshes_cart_expiry(self, service, db_session, factory):
        """测试再次加购时整个购物车统一刷新有效期"""
        product, row = factory.stocked_product(available=10)
        service.reserve_cart_stock([StockItem(product_id=product.id, quantity=1)], "cart_001", 5)
        service.reserve_cart_stock([StockItem(product_id=product.id, quantity=1)], "cart_001", 30)

        expiries = {h.expires_at for h in holds_of(db_session, "cart_001")}

        assert len(expiries) == 1
        assert reserved_of(db_session, row) == 2


class TestReleaseAndExtend:
    """释放与延长测试"""

    @pytest.fixture
    def service(self, db_session, mock_redis):
        return CartReservationService(db_session, mock_redis)

    def test_release_is_idempotent(self, service, db_session, factory):
        """测试重复释放第二次返回 0"""
        product, row = factory.stocked_product(available=10)
        service.reserve_cart_stock([StockItem(product_id=product.id, quantity=4)], "cart_001")

        assert service.release_cart_stock("cart_001") == 1
        assert service.release_cart_stock("cart_001") == 0
        assert reserved_of(db_session, row) == 0
        assert holds_of(db_session, "cart_001")[0].status == ReservationStatus.RELEASED

    def test_extend(self, service, db_session, factory):
        """测试延长有效期"""
        product, row = factory.stocked_product(available=10)
        service.reserve_cart_stock([StockItem(product_id=product.id, quantity=1)], "cart_001", 1)

        assert service.extend_cart_reservation("cart_001", 60) == 1
        hold = holds_of(db_session, "cart_001")[0]
        expires_at = hold.expires_at.replace(tzinfo=timezone.utc) if hold.expires_at.tzinfo is None else hold.expires_at
        assert expires_at > datetime.now(timezone.utc) + timedelta(minutes=50)

    def test_extend_unknown_cart(self, service):
        """测试延长不存在的购物车"""
        assert service.extend_cart_reservation("cart_missing") == 0

    def test_get_cart_reservations_only_active(self, service, db_session, factory):
        """测试只返回占用中的预占"""
        product, row = factory.stocked_product(available=10)
        service.reserve_cart_stock([StockItem(product_id=product.id, quantity=1)], "cart_001")
        service.release_cart_stock("cart_001")

        assert service.get_cart_reservations("cart_001") == []


class TestCleanupExpiredCartReservations:
    """过期预占清理测试"""

    @pytest.fixture
    def service(self, db_session, mock_redis):
        return CartReservationService(db_session, mock_redis)

    def test_cleanup_releases_expired_only(self, service, db_session, factory):
        """测试只释放已过期的预占"""
        product, row = factory.stocked_product(available=10)
        add_expired_hold(db_session, product, row, "cart_old", quantity=2)
        service.reserve_cart_stock([StockItem(product_id=product.id, quantity=3)], "cart_new")

        assert service.count_expired_cart_reservations() == 1
        assert service.cleanup_expired_cart_reservations() == 1

        assert reserved_of(db_session, row) == 3
        assert holds_of(db_session, "cart_old")[0].status == ReservationStatus.EXPIRED
        assert holds_of(db_session, "cart_new")[0].status == ReservationStatus.RESERVED

    def test_cleanup_twice_releases_once(self, service, db_session, factory):
        """测试重复清理不会重复归还"""
        product, row = factory.stocked_product(available=10)
        add_expired_hold(db_session, product, row, "cart_old", quantity=2)

        assert service.cleanup_expired_cart_reservations() == 1
        assert service.cleanup_expired_cart_reservations() == 0
        assert reserved_of(db_session, row) == 0

    def test_cleanup_small_batches(self, service, db_session, factory):
        """测试分批清理直到没有过期预占"""
        product, row = factory.stocked_product(available=10)
        for index in range(3):
            add_expired_hold(db_session, product, row, f"cart_{index}")

        assert service.cleanup_expired_cart_reservations(batch_size=1) == 3
        assert reserved_of(db_session, row) == 0

    def test_cleanup_skips_failed_cart(self, service, db_session, factory):
        """测试某个购物车释放失败时跳过它继续处理其它购物车"""
        product, row = factory.stocked_product(available=10)
        add_expired_hold(db_session, product, row, "cart_bad")
        add_expired_hold(db_session, product, row, "cart_good")

        original = service._release_holds

        def flaky_release(cart_id, *args, **kwargs):
            if cart_id == "cart_bad":
                raise RuntimeError("模拟数据库错误")
            return original(cart_id, *args, **kwargs)

        with patch.object(service, "_release_holds", side_effect=flaky_release):
            released = service.cleanup_expired_cart_reservations()

        assert released == 1
        assert holds_of(db_session, "cart_bad")[0].status == ReservationStatus.RESERVED
        assert holds_of(db_session, "cart_good")[0].status == ReservationStatus.EXPIRED
