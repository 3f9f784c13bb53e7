import os
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # 数据库配置
    POSTGRES_USER: str = os.getenv("POSTGRES_USER", "postgres")
    POSTGRES_PASSWORD: str = os.getenv("POSTGRES_PASSWORD", "123456")
    POSTGRES_HOST: str = os.getenv("POSTGRES_HOST", "localhost")
    POSTGRES_PORT: int = int(os.getenv("POSTGRES_PORT", "5432"))
    POSTGRES_DB: str = os.getenv("POSTGRES_DB", "storefront")
    # 完整连接串，设置后覆盖上面的拼接结果
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")
    DB_POOL_SIZE: int = int(os.getenv("DB_POOL_SIZE", "10"))
    DB_MAX_OVERFLOW: int = int(os.getenv("DB_MAX_OVERFLOW", "20"))
    DB_ECHO: bool = os.getenv("DB_ECHO", "false").lower() == "true"

    # Redis 配置
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))
    REDIS_HOSTS: str = os.getenv("REDIS_HOSTS", "")

    # 库存预占
    CART_RESERVATION_TTL_MINUTES: int = int(os.getenv("CART_RESERVATION_TTL_MINUTES", "30"))
    CHECKOUT_RESERVATION_TTL_MINUTES: int = int(os.getenv("CHECKOUT_RESERVATION_TTL_MINUTES", "60"))
    CART_CLEANUP_INTERVAL_SECONDS: int = int(os.getenv("CART_CLEANUP_INTERVAL_SECONDS", "300"))
    CART_CLEANUP_BATCH_SIZE: int = int(os.getenv("CART_CLEANUP_BATCH_SIZE", "500"))
    STOCK_CACHE_TTL_SECONDS: int = int(os.getenv("STOCK_CACHE_TTL_SECONDS", "300"))
    LOW_STOCK_THRESHOLD: int = int(os.getenv("LOW_STOCK_THRESHOLD", "10"))

    # Razorpay 配置
    RAZORPAY_WEBHOOK_SECRET: str = os.getenv("RAZORPAY_WEBHOOK_SECRET", "")

    # Outbox 投递
    OUTBOX_DISPATCH_INTERVAL_SECONDS: int = int(os.getenv("OUTBOX_DISPATCH_INTERVAL_SECONDS", "10"))
    OUTBOX_BATCH_SIZE: int = int(os.getenv("OUTBOX_BATCH_SIZE", "100"))

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg://"
            f"{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/"
            f"{self.POSTGRES_DB}"
        )

    @property
    def redis_url(self) -> str:
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

settings = Settings()
