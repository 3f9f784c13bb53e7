import enum

from sqlalchemy import (
    Column,
    BigInteger,
    Boolean,
    String,
    Integer,
    Numeric,
    TIMESTAMP,
    ForeignKey,
    func,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from app.db.base import Base, BigIntPK, enum_type



# 1️ 折扣枚举

class DiscountType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"
    BUY_X_GET_Y = "buy_x_get_y"
    FREE_SHIPPING = "free_shipping"


class DiscountStatus(str, enum.Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    SCHEDULED = "scheduled"
    EXPIRED = "expired"
    PAUSED = "paused"


class AppliesTo(str, enum.Enum):
    ENTIRE_ORDER = "entire_order"
    SPECIFIC_PRODUCTS = "specific_products"
    SPECIFIC_COLLECTIONS = "specific_collections"


class MinRequirementType(str, enum.Enum):
    NONE = "none"
    MIN_AMOUNT = "min_amount"
    MIN_QUANTITY = "min_quantity"


class TargetAudience(str, enum.Enum):
    ALL = "all"
    SPECIFIC_CUSTOMERS = "specific_customers"
    SEGMENTS = "segments"


class GeoRestriction(str, enum.Enum):
    NONE = "none"
    SPECIFIC_REGIONS = "specific_regions"


class BuyXTriggerType(str, enum.Enum):
    QUANTITY = "quantity"
    AMOUNT = "amount"


class GetYAppliesTo(str, enum.Enum):
    SPECIFIC = "specific"   # 指定商品/集合
    SAME = "same"           # 与买入商品相同
    CHEAPEST = "cheapest"   # 购物车内任意商品，从最便宜的开始


class GetYType(str, enum.Enum):
    FREE = "free"
    PERCENTAGE = "percentage"
    AMOUNT = "amount"
    FIXED_PRICE = "fixed_price"


class TargetType(str, enum.Enum):
    PRODUCT = "product"
    COLLECTION = "collection"
    CUSTOMER = "customer"
    SEGMENT = "segment"
    REGION = "region"
    BUY_X_PRODUCT = "buy_x_product"
    BUY_X_COLLECTION = "buy_x_collection"
    GET_Y_PRODUCT = "get_y_product"
    GET_Y_COLLECTION = "get_y_collection"



# 2️ 折扣活动表

class Discount(Base):
    __tablename__ = "discounts"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    title = Column(String(180), nullable=False, comment="后台展示名称")

    type = Column(
        enum_type(DiscountType, "discount_type"),
        nullable=False,
    )

    value = Column(
        Numeric(12, 2),
        nullable=True,
        comment="百分比或固定金额",
    )

    max_discount_amount = Column(
        Numeric(12, 2),
        nullable=True,
        comment="百分比折扣的封顶金额",
    )

    applies_to = Column(
        enum_type(AppliesTo, "discount_applies_to_type"),
        nullable=False,
        default=AppliesTo.ENTIRE_ORDER,
    )

    min_requirement_type = Column(
        enum_type(MinRequirementType, "discount_min_requirement_type"),
        nullable=False,
        default=MinRequirementType.NONE,
    )
    min_requirement_value = Column(Numeric(12, 2), nullable=True)

    # 使用次数限制
    usage_limit = Column(Integer, nullable=True, comment="全局可用次数")
    total_usage_count = Column(Integer, nullable=False, default=0, server_default="0")
    usage_per_customer = Column(Integer, nullable=True)
    usage_per_day = Column(Integer, nullable=True)
    once_per_customer = Column(Boolean, nullable=False, default=False, server_default="0")

    # 客户限制
    limit_new_customers = Column(Boolean, nullable=False, default=False, server_default="0")
    limit_returning_customers = Column(Boolean, nullable=False, default=False, server_default="0")
    target_audience = Column(
        enum_type(TargetAudience, "discount_target_audience_type"),
        nullable=False,
        default=TargetAudience.ALL,
    )
    geo_restriction = Column(
        enum_type(GeoRestriction, "discount_geo_restriction_type"),
        nullable=False,
        default=GeoRestriction.NONE,
    )

    # 买X送Y
    buy_x_trigger_type = Column(
        enum_type(BuyXTriggerType, "discount_buy_x_trigger_type"),
        nullable=True,
    )
    buy_x_value = Column(Numeric(12, 2), nullable=True, comment="触发数量或金额")
    buy_x_same_product = Column(Boolean, nullable=False, default=False, server_default="0")
    buy_x_repeat = Column(Boolean, nullable=False, default=True, server_default="1")
    get_y_quantity = Column(Integer, nullable=True)
    get_y_applies_to = Column(
        enum_type(GetYAppliesTo, "discount_get_y_applies_to_type"),
        nullable=True,
    )
    get_y_type = Column(
        enum_type(GetYType, "discount_get_y_type"),
        nullable=True,
    )
    get_y_value = Column(Numeric(12, 2), nullable=True)
    get_y_max_rewards = Column(Integer, nullable=True)

    # 免运费
    shipping_min_amount = Column(Numeric(12, 2), nullable=True)
    shipping_min_items = Column(Integer, nullable=True)
    shipping_cap = Column(Numeric(12, 2), nullable=True)

    status = Column(
        enum_type(DiscountStatus, "discount_status_type"),
        nullable=False,
        default=DiscountStatus.DRAFT,
    )

    starts_at = Column(TIMESTAMP(timezone=True), nullable=False)
    ends_at = Column(TIMESTAMP(timezone=True), nullable=True)

    is_deleted = Column(Boolean, nullable=False, default=False, server_default="0")

    created_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    updated_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    codes = relationship("DiscountCode", back_populates="discount", lazy="selectin")
    targets = relationship("DiscountTarget", lazy="selectin", cascade="all, delete-orphan")

    def target_values(self, target_type: TargetType) -> set:
        return {t.target_value for t in self.targets if t.target_type == target_type}

    def regions(self) -> list:
        return [t for t in self.targets if t.target_type == TargetType.REGION]



# 3️ 折扣码

class DiscountCode(Base):
    __tablename__ = "discount_codes"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    discount_id = Column(
        BigInteger,
        ForeignKey("discounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    code = Column(
        String(50),
        nullable=False,
        unique=True,
        comment="大写存储",
    )

    usage_limit = Column(Integer, nullable=True)
    usage_count = Column(Integer, nullable=False, default=0, server_default="0")
    max_uses_per_customer = Column(Integer, nullable=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    discount = relationship("Discount", back_populates="codes")



# 4️ 折扣适用对象（商品/集合/客户/分群/地区/买X送Y）

class DiscountTarget(Base):
    __tablename__ = "discount_targets"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    discount_id = Column(
        BigInteger,
        ForeignKey("discounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    target_type = Column(
        enum_type(TargetType, "discount_target_type"),
        nullable=False,
    )

    # 商品ID/集合ID/用户ID/分群ID/国家代码，统一按字符串存
    target_value = Column(String(64), nullable=False)

    # 仅 REGION 使用，为空表示整个国家
    region_code = Column(String(16), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "discount_id", "target_type", "target_value", "region_code",
            name="uq_discount_target",
        ),
    )



# 5️ 折扣使用记录

class DiscountUsage(Base):
    __tablename__ = "discount_usage"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    discount_id = Column(
        BigInteger,
        ForeignKey("discounts.id"),
        nullable=False,
        index=True,
    )

    discount_code = Column(String(50), nullable=True, index=True)
    user_id = Column(String(64), nullable=True, index=True)
    order_id = Column(BigInteger, nullable=True)
    order_number = Column(String(40), nullable=True)

    discount_type = Column(String(30), nullable=False)
    discount_amount = Column(Numeric(12, 2), nullable=False)
    order_subtotal = Column(Numeric(12, 2), nullable=True)
    items_count = Column(Integer, nullable=True)

    used_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )



Index(
    "idx_discount_usage_user_discount",
    DiscountUsage.user_id,
    DiscountUsage.discount_id,
)
