from .base import Base


def init_db(bind=None):
    """建表（开发/测试环境使用，生产环境走迁移）"""
    # 导入全部模型，确保注册到 Base.metadata
    import app.models  # noqa: F401

    if bind is None:
        from .session import engine
        bind = engine
    Base.metadata.create_all(bind=bind)


__all__ = ["Base", "init_db"]
