"""库存路由测试（数据库为内存 SQLite，Redis 为 Mock）"""
import pytest
from unittest.mock import Mock, patch

from app.models.inventory_reservations import InventoryReservation, ReservationStatus
from app.services.inventory_service import InventoryService


class TestStockQuery:
    """库存查询接口测试"""

    def test_get_stock_success(self, client, factory, mock_redis):
        """测试查询可售库存并写入缓存"""
        product, _ = factory.stocked_product(available=10, reserved=2)

        response = client.get(f"/api/v1/inventory/stock/{product.id}")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["product_id"] == product.id
        assert data["available_stock"] == 8
        mock_redis.setex.assert_called_once()

    def test_get_stock_from_cache(self, client, mock_redis):
        """测试缓存命中时不查数据库"""
        mock_redis.get.return_value = "42"

        response = client.get("/api/v1/inventory/stock/7")

        assert response.json()["available_stock"] == 42
        mock_redis.setex.assert_not_called()

    def test_get_stock_unknown_product(self, client):
        """测试没有库存记录的商品返回 0"""
        response = client.get("/api/v1/inventory/stock/999")

        assert response.status_code == 200
        assert response.json()["available_stock"] == 0

    def test_get_stock_invalid_id(self, client):
        """测试商品ID必须大于 0"""
        response = client.get("/api/v1/inventory/stock/0")

        assert response.status_code == 422
        assert response.json()["success"] is False

    def test_get_stock_exception(self, client):
        """测试未知异常转为 500"""
        with patch.object(InventoryService, "get_product_stock", side_effect=RuntimeError("数据库连接失败")):
            response = client.get("/api/v1/inventory/stock/1")

        assert response.status_code == 500
        assert "数据库连接失败" in response.json()["message"]

    def test_batch_get_stocks(self, client, factory, mock_redis):
        """测试批量查询，返回的键为字符串形式的商品ID"""
        first, _ = factory.stocked_product(available=5)
        second = factory.product(name="无库存商品")
        mock_redis.mget.return_value = [None, None]

        response = client.post(
            "/api/v1/inventory/stock/batch",
            json={"product_ids": [first.id, second.id]},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["data"] == {str(first.id): 5, str(second.id): 0}
        mock_redis.pipeline.return_value.execute.assert_called_once()

    def test_batch_empty_list(self, client):
        """测试空列表请求被拒绝"""
        response = client.post("/api/v1/inventory/stock/batch", json={"product_ids": []})

        assert response.status_code == 422


class TestAdjustStock:
    """人工调整库存接口测试"""

    def test_adjust_in(self, client, factory, db_session, mock_redis):
        """测试入库"""
        product, row = factory.stocked_product(available=10)

        response = client.post(
            "/api/v1/inventory/adjust",
            json={"product_id": product.id, "delta": 5, "reason": "采购入库"},
        )

        assert response.status_code == 200
        assert response.json()["data"]["available_quantity"] == 15
        db_session.refresh(row)
        assert row.available_quantity == 15
        mock_redis.delete.assert_called_with(f"stock:available:{product.id}")

    def test_adjust_out_cannot_touch_reserved(self, client, factory):
        """测试出库不能扣减已预占部分"""
        product, _ = factory.stocked_product(available=10, reserved=8)

        response = client.post(
            "/api/v1/inventory/adjust",
            json={"product_id": product.id, "delta": -5},
        )

        assert response.status_code == 409
        assert response.json()["code"] == "LEDGER_VIOLATION"

    def test_adjust_no_inventory(self, client):
        """测试没有库存记录"""
        response = client.post("/api/v1/inventory/adjust", json={"product_id": 999, "delta": 1})

        assert response.status_code == 404
        assert response.json()["code"] == "INVENTORY_NOT_FOUND"

    def test_adjust_zero_rejected(self, client):
        """测试调整数量为 0"""
        response = client.post("/api/v1/inventory/adjust", json={"product_id": 1, "delta": 0})

        assert response.status_code == 422


class TestCartReservationRoutes:
    """购物车预占接口测试"""

    def test_reserve_success(self, client, factory, db_session):
        """测试预占成功"""
        product, row = factory.stocked_product(available=10)

        response = client.post(
            "/api/v1/inventory/cart/cart_001/reserve",
            json={"items": [{"product_id": product.id, "quantity": 3}]},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["data"]["cart_id"] == "cart_001"
        assert len(data["data"]["reservation_ids"]) == 1
        db_session.refresh(row)
        assert row.reserved_quantity == 3

    def test_reserve_insufficient(self, client, factory, db_session):
        """测试库存不足时返回缺货明细且不留下预占"""
        product, row = factory.stocked_product(available=2)

        response = client.post(
            "/api/v1/inventory/cart/cart_001/reserve",
            json={"items": [{"product_id": product.id, "quantity": 5}]},
        )

        assert response.status_code == 400
        data = response.json()
        assert data["success"] is False
        assert data["code"] == "INSUFFICIENT_STOCK"
        assert data["data"] == [{
            "product_id": product.id,
            "variant_id": None,
            "requested": 5,
            "available": 2,
        }]
        db_session.refresh(row)
        assert row.reserved_quantity == 0
        assert db_session.query(InventoryReservation).count() == 0

    def test_reserve_requires_items(self, client):
        """测试购物项不能为空"""
        response = client.post("/api/v1/inventory/cart/cart_001/reserve", json={"items": []})

        assert response.status_code == 422

    def test_release(self, client, factory, db_session):
        """测试释放，重复调用返回 0"""
        product, row = factory.stocked_product(available=10)
        client.post(
            "/api/v1/inventory/cart/cart_001/reserve",
            json={"items": [{"product_id": product.id, "quantity": 4}]},
        )

        first = client.post("/api/v1/inventory/cart/cart_001/release")
        second = client.post("/api/v1/inventory/cart/cart_001/release")

        assert first.json()["data"]["released"] == 1
        assert second.json()["data"]["released"] == 0
        db_session.refresh(row)
        assert row.reserved_quantity == 0
        hold = db_session.query(InventoryReservation).one()
        db_session.refresh(hold)
        assert hold.status == ReservationStatus.RELEASED

    def test_extend_and_list(self, client, factory):
        """测试延长有效期并查询购物车预占"""
        product, _ = factory.stocked_product(available=10)
        client.post(
            "/api/v1/inventory/cart/cart_001/reserve",
            json={"items": [{"product_id": product.id, "quantity": 1}]},
        )

        extended = client.post("/api/v1/inventory/cart/cart_001/extend", json={"minutes": 90})
        listed = client.get("/api/v1/inventory/cart/cart_001")

        assert extended.status_code == 200
        assert extended.json()["data"]["extended"] == 1
        holds = listed.json()["data"]
        assert len(holds) == 1
        assert holds[0]["product_id"] == product.id
        assert holds[0]["quantity"] == 1

    def test_extend_without_body(self, client):
        """测试不传请求体时使用默认时长"""
        response = client.post("/api/v1/inventory/cart/empty_cart/extend")

        assert response.status_code == 200
        assert response.json()["data"]["extended"] == 0


class TestCleanupRoutes:
    """过期预占清理接口测试"""

    def test_manual_cleanup(self, client, factory, db_session):
        """测试手动清理没有过期预占时返回 0"""
        factory.stocked_product(available=10)

        response = client.post("/api/v1/inventory/cleanup/manual", params={"batch_size": 100})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["cleaned_count"] == 0

    def test_manual_cleanup_invalid_batch(self, client):
        """测试批处理大小越界"""
        response = client.post("/api/v1/inventory/cleanup/manual", params={"batch_size": 0})

        assert response.status_code == 422

    def test_celery_cleanup_success(self, client):
        """测试提交 Celery 清理任务"""
        mock_task_result = Mock()
        mock_task_result.id = "task_123"

        with patch("app.routers.inventory_router.celery_cleanup_task") as mock_task:
            mock_task.delay.return_value = mock_task_result
            response = client.post("/api/v1/inventory/cleanup/celery", params={"batch_size": 200})

        assert response.status_code == 200
        data = response.json()
        assert data["task_id"] == "task_123"
        mock_task.delay.assert_called_once_with(200)

    def test_celery_cleanup_exception(self, client):
        """测试 Celery 不可用"""
        with patch("app.routers.inventory_router.celery_cleanup_task") as mock_task:
            mock_task.delay.side_effect = Exception("Celery连接失败")
            response = client.post("/api/v1/inventory/cleanup/celery")

        assert response.status_code == 500
        assert "Celery连接失败" in response.json()["message"]

    @pytest.mark.parametrize("state,result,info,expected", [
        ("PENDING", None, None, "任务等待中"),
        ("SUCCESS", 5, None, "任务完成: 5"),
        ("FAILURE", None, "锁超时", "任务失败: 锁超时"),
        ("RETRY", None, None, "任务状态: RETRY"),
    ])
    def test_cleanup_status(self, client, state, result, info, expected):
        """测试查询任务状态"""
        mock_result = Mock(state=state, result=result, info=info)

        with patch("celery_app.app.AsyncResult", return_value=mock_result):
            response = client.get("/api/v1/inventory/cleanup/status/task_123")

        assert response.status_code == 200
        data = response.json()
        assert data["task_id"] == "task_123"
        assert data["state"] == state
        assert data["status"] == expected
