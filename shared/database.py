"""
SQLAlchemy модели базы данных
"""
import uuid

from sqlalchemy import (
    BigInteger, Boolean, CheckConstraint, Column, DateTime, Integer,
    String, Uuid, Index
)
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

from shared.config import DATABASE_URL

# Создаем базовый класс
Base = declarative_base()

# BIGSERIAL в PostgreSQL, INTEGER PRIMARY KEY в SQLite
BigIntPK = BigInteger().with_variant(Integer, "sqlite")

# Создаем async engine
engine = create_async_engine(
    DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://"),
    echo=False,
    pool_pre_ping=True,
    pool_size=20,
    max_overflow=40
)

# Создаем session maker
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)


# ========== Модели ==========

class Balance(Base):
    """Балансы баллов пользователей"""
    __tablename__ = "balances"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    user_id = Column(String(128), unique=True, nullable=False)
    points = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("points >= 0", name="ck_balance_points_non_negative"),
        Index('idx_balance_user_id', 'user_id'),
    )


class PointsTransaction(Base):
    """История начислений и списаний баллов"""
    __tablename__ = "points_transactions"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    user_id = Column(String(128), nullable=False)
    transaction_type = Column(String(50), nullable=False)  # reward_redeemed, reward_expiration_refund, referral, admin_adjustment
    amount = Column(Integer, nullable=False)  # положительное для начисления, отрицательное для списания
    balance_after = Column(Integer, nullable=False)
    reference_id = Column(String(64), nullable=True)  # redemption id или реферальный код
    created_at = Column(DateTime, default=func.now())

    __table_args__ = (
        Index('idx_points_tx_user_id', 'user_id'),
        Index('idx_points_tx_type', 'transaction_type'),
        Index('idx_points_tx_created_at', 'created_at'),
    )


class Redemption(Base):
    """Погашенные награды (коды на кассе, живут REDEMPTION_TTL_MINUTES)"""
    __tablename__ = "redemptions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(128), nullable=False)
    reward_id = Column(String(64), nullable=False)
    reward_title = Column(String(255), nullable=False)
    code = Column(String(16), nullable=False)
    points_value = Column(Integer, nullable=False)
    redeemed_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    is_used = Column(Boolean, default=False, nullable=False)
    used_at = Column(DateTime, nullable=True)
    is_expired = Column(Boolean, default=False, nullable=False)
    expired_at = Column(DateTime, nullable=True)
    points_refunded = Column(Boolean, default=False, nullable=False)

    __table_args__ = (
        # points_refunded => is_expired
        CheckConstraint(
            "NOT points_refunded OR is_expired",
            name="ck_redemption_refund_implies_expired"
        ),
        Index('idx_redemption_user_active', 'user_id', 'is_used', 'is_expired'),
        Index('idx_redemption_expires_at', 'expires_at'),
        Index('idx_redemption_code', 'code'),
    )

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "userId": self.user_id,
            "rewardId": self.reward_id,
            "rewardTitle": self.reward_title,
            "code": self.code,
            "pointsValue": self.points_value,
            "redeemedAt": self.redeemed_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
            "isUsed": self.is_used,
            "isExpired": self.is_expired,
            "pointsRefunded": self.points_refunded,
        }


# ========== Функции для работы с БД ==========

async def init_db():
    """Инициализация базы данных"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session() -> AsyncSession:
    """Получить сессию БД"""
    async with AsyncSessionLocal() as session:
        yield session


async def close_db():
    """Закрыть соединение с БД"""
    await engine.dispose()


def dialect_insert(session: AsyncSession, model):
    """
    INSERT с поддержкой ON CONFLICT для текущего диалекта (PostgreSQL / SQLite)
    """
    if session.bind.dialect.name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as sqlite_insert
        return sqlite_insert(model)

    from sqlalchemy.dialects.postgresql import insert as pg_insert
    return pg_insert(model)


# Импортируем реферальные модели после определения всех моделей
from shared.referral_model import ReferralCode, Referral, ReferredMarker, ReferralStatus  # noqa: E402
