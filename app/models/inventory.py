import enum

from sqlalchemy import (
    Column,
    BigInteger,
    Boolean,
    Integer,
    String,
    ForeignKey,
    CheckConstraint,
    UniqueConstraint,
    TIMESTAMP,
    func,
    Index,
)
from app.db.base import Base, BigIntPK, enum_type


class StockStatus(str, enum.Enum):
    IN_STOCK = "in_stock"
    LOW_STOCK = "low_stock"
    OUT_OF_STOCK = "out_of_stock"


class InventoryLocation(Base):
    __tablename__ = "inventory_locations"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    code = Column(
        String(32),
        nullable=False,
        unique=True,
        comment="仓库编码",
    )

    name = Column(
        String(255),
        nullable=False,
        comment="仓库名称",
    )

    # 未指定仓库的预占落在默认仓
    is_default = Column(
        Boolean,
        nullable=False,
        default=False,
        server_default="0",
    )

    is_active = Column(
        Boolean,
        nullable=False,
        default=True,
        server_default="1",
    )


class Inventory(Base):
    __tablename__ = "inventory"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    product_id = Column(
        BigInteger,
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        comment="商品ID",
    )

    variant_id = Column(
        BigInteger,
        ForeignKey("product_variants.id", ondelete="CASCADE"),
        nullable=True,
        comment="规格ID（为空表示基础商品）",
    )

    location_id = Column(
        BigInteger,
        ForeignKey("inventory_locations.id"),
        nullable=False,
        comment="仓库ID",
    )

    available_quantity = Column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
        comment="实物库存（不扣除预占）",
    )

    reserved_quantity = Column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
        comment="被购物车/订单占用的数量",
    )

    status = Column(
        enum_type(StockStatus, "inventory_status_type"),
        nullable=False,
        default=StockStatus.IN_STOCK,
        server_default=StockStatus.IN_STOCK.value,
        comment="库存状态（按实物库存计算）",
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    updated_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        UniqueConstraint(
            "product_id",
            "variant_id",
            "location_id",
            name="uq_inventory_product_variant_location",
        ),
        CheckConstraint(
            "available_quantity >= 0",
            name="ck_inventory_available_non_negative",
        ),
        CheckConstraint(
            "reserved_quantity >= 0",
            name="ck_inventory_reserved_non_negative",
        ),
    )

    @property
    def effective_quantity(self) -> int:
        """可售库存 = 实物 - 预占，展示时不小于 0"""
        return max(0, self.available_quantity - self.reserved_quantity)


Index(
    "idx_inventory_product_location",
    Inventory.product_id,
    Inventory.location_id,
)
