import enum

from sqlalchemy import (
    Column,
    BigInteger,
    Boolean,
    String,
    Numeric,
    TIMESTAMP,
    ForeignKey,
    func,
    Index,
)
from app.db.base import Base, BigIntPK, enum_type


class ProductStatus(str, enum.Enum):
    ACTIVE = "active"
    DRAFT = "draft"
    ARCHIVED = "archived"


class Product(Base):
    __tablename__ = "products"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    sku = Column(
        String(64),
        nullable=False,
        unique=True,
        comment="商品唯一SKU",
    )

    name = Column(
        String(255),
        nullable=False,
        comment="商品名称",
    )

    price = Column(
        Numeric(12, 2),
        nullable=False,
        default=0,
        server_default="0",
        comment="售价（元）",
    )

    status = Column(
        enum_type(ProductStatus, "product_status_type"),
        nullable=False,
        default=ProductStatus.ACTIVE,
        server_default=ProductStatus.ACTIVE.value,
        comment="商品状态，archived 不可售",
    )

    # 软删除：库存行保留用于对账
    is_deleted = Column(
        Boolean,
        nullable=False,
        default=False,
        server_default="0",
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    updated_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
        onupdate=func.now(),
    )


class ProductVariant(Base):
    __tablename__ = "product_variants"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    product_id = Column(
        BigInteger,
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="所属商品ID",
    )

    sku = Column(
        String(64),
        nullable=False,
        unique=True,
        comment="规格SKU",
    )

    name = Column(
        String(255),
        nullable=False,
        comment="规格名称，如 红色/XL",
    )

    price = Column(
        Numeric(12, 2),
        nullable=True,
        comment="规格售价，为空时使用商品售价",
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


Index(
    "idx_products_name",
    Product.name,
)
