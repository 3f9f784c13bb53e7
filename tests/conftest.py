"""测试配置和 fixtures"""
import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from unittest.mock import Mock, patch
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from redis import Redis

from app.db import init_db
from app.db.base import Base
from app.core.config import settings
from app.models.discounts import (
    Discount,
    DiscountCode,
    DiscountStatus,
    DiscountTarget,
    DiscountType,
)
from app.models.inventory import Inventory, InventoryLocation
from app.models.orders import Order, OrderStatus, PaymentStatus
from app.models.payments import PaymentTransaction, TransactionStatus
from app.models.product import Product, ProductStatus, ProductVariant

WEBHOOK_SECRET = "test_webhook_secret"


@pytest.fixture
def db_engine():
    """内存 SQLite；StaticPool 保证 TestClient 的工作线程拿到同一个连接"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    init_db(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def db_session(db_engine):
    """创建测试数据库会话（配置与 app.db.session 保持一致）"""
    SessionLocal = sessionmaker(
        bind=db_engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )
    db = SessionLocal()

    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def mock_redis():
    """创建模拟 Redis 客户端"""
    redis_mock = Mock(spec=Redis)
    redis_mock.get.return_value = None
    redis_mock.setex.return_value = True
    redis_mock.delete.return_value = 1
    redis_mock.mget.return_value = [None, None]
    redis_mock.pipeline.return_value = Mock()
    return redis_mock


@pytest.fixture
def webhook_secret():
    """替换 Razorpay webhook 密钥"""
    with patch.object(settings, "RAZORPAY_WEBHOOK_SECRET", WEBHOOK_SECRET):
        yield WEBHOOK_SECRET


def sign_payload(payload: dict, secret: str = WEBHOOK_SECRET):
    """返回 (原始请求体, 签名)"""
    raw_body = json.dumps(payload).encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return raw_body, signature


@pytest.fixture
def sign():
    """按 Razorpay 的方式给请求体签名"""
    return sign_payload


class DataFactory:
    """测试数据构造器，每个方法写入后立即提交"""

    def __init__(self, db):
        self.db = db
        self._seq = 0

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    def _save(self, obj):
        self.db.add(obj)
        self.db.commit()
        return obj

    def location(self, code=None, is_default=True, is_active=True):
        seq = self._next()
        return self._save(InventoryLocation(
            code=code or f"WH{seq:03d}",
            name=f"仓库{seq}",
            is_default=is_default,
            is_active=is_active,
        ))

    def product(self, name="测试商品", price="100.00", status=ProductStatus.ACTIVE, is_deleted=False):
        seq = self._next()
        return self._save(Product(
            sku=f"SKU{seq:04d}",
            name=name,
            price=Decimal(price),
            status=status,
            is_deleted=is_deleted,
        ))

    def variant(self, product, name="红色", price=None):
        seq = self._next()
        return self._save(ProductVariant(
            product_id=product.id,
            sku=f"VAR{seq:04d}",
            name=name,
            price=Decimal(price) if price is not None else None,
        ))

    def inventory(self, product, available=10, reserved=0, location=None, variant=None):
        if location is None:
            location = self.default_location()
        return self._save(Inventory(
            product_id=product.id,
            variant_id=variant.id if variant is not None else None,
            location_id=location.id,
            available_quantity=available,
            reserved_quantity=reserved,
        ))

    def default_location(self):
        location = self.db.query(InventoryLocation).filter_by(is_default=True).first()
        return location or self.location()

    def stocked_product(self, available=10, reserved=0, price="100.00", name="测试商品"):
        product = self.product(name=name, price=price)
        row = self.inventory(product, available=available, reserved=reserved)
        return product, row

    def order(
        self,
        total="1000.00",
        razorpay_order_id="order_TEST001",
        payment_status=PaymentStatus.PENDING,
        order_status=OrderStatus.PENDING,
        **kwargs
    ):
        seq = self._next()
        return self._save(Order(
            order_number=kwargs.pop("order_number", f"ORD-TEST-{seq:04d}"),
            subtotal=Decimal(total),
            total_amount=Decimal(total),
            razorpay_order_id=razorpay_order_id,
            payment_status=payment_status,
            order_status=order_status,
            **kwargs
        ))

    def transaction(self, order, amount=None, status=TransactionStatus.INITIATED, razorpay_payment_id=None):
        return self._save(PaymentTransaction(
            order_id=order.id,
            razorpay_order_id=order.razorpay_order_id,
            razorpay_payment_id=razorpay_payment_id,
            amount=Decimal(amount) if amount is not None else order.total_amount,
            status=status,
        ))

    def discount(self, code="SAVE20", type=DiscountType.PERCENTAGE, value="20", targets=(), code_options=None, **kwargs):
        kwargs.setdefault("status", DiscountStatus.ACTIVE)
        kwargs.setdefault("starts_at", datetime.now(timezone.utc) - timedelta(days=1))
        discount = Discount(
            title=f"测试折扣 {code}",
            type=type,
            value=Decimal(value) if value is not None else None,
            **kwargs
        )
        for target in targets:
            if isinstance(target, DiscountTarget):
                discount.targets.append(target)
            else:
                target_type, target_value = target[0], target[1]
                region_code = target[2] if len(target) > 2 else None
                discount.targets.append(DiscountTarget(
                    target_type=target_type,
                    target_value=str(target_value),
                    region_code=region_code,
                ))
        self.db.add(discount)
        self.db.flush()
        self.db.add(DiscountCode(discount_id=discount.id, code=code.upper(), **(code_options or {})))
        self.db.commit()
        return discount


@pytest.fixture
def factory(db_session):
    """测试数据构造器"""
    return DataFactory(db_session)


@pytest.fixture
def client(db_session, mock_redis):
    """创建测试客户端（数据库与 Redis 替换为测试实例）"""
    from fastapi.testclient import TestClient
    from app.main import app
    from app.core.dependencies import get_db, get_redis

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = lambda: mock_redis
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
