from sqlalchemy import BigInteger, Enum, Integer, JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# SQLite 只对 INTEGER PRIMARY KEY 自增，测试环境下退化为 Integer
BigIntPK = BigInteger().with_variant(Integer, "sqlite")

# PostgreSQL 使用 JSONB，其它数据库退化为 JSON
JSONType = JSON().with_variant(JSONB, "postgresql")


def enum_type(enum_cls, name: str) -> Enum:
    """按枚举值（小写字符串）落库的 ENUM 类型"""
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )
