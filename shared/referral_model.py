"""
Реферальные модели: коды, принятия и глобальная отметка "уже приглашён"
"""
from sqlalchemy import Column, DateTime, String, Enum as SQLEnum, Index, UniqueConstraint
from shared.database import Base, BigIntPK
import enum


class ReferralStatus(str, enum.Enum):
    """Статусы реферала"""
    ACCEPTED = "accepted"  # Код принят, оба участника получили баллы


class ReferralCode(Base):
    """Реферальные коды (один код на реферера)"""
    __tablename__ = "referral_codes"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    code = Column(String(16), unique=True, nullable=False)
    referrer_id = Column(String(128), unique=True, nullable=False)
    created_at = Column(DateTime, nullable=False)


class Referral(Base):
    """Принятия реферальных кодов: одна строка на пару (код, получатель)"""
    __tablename__ = "referrals"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    code = Column(String(16), nullable=False)
    referrer_id = Column(String(128), nullable=False)
    receiver_id = Column(String(128), nullable=False)
    status = Column(SQLEnum(ReferralStatus), default=ReferralStatus.ACCEPTED, nullable=False)
    accepted_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint('code', 'receiver_id', name='uq_referral_code_receiver'),
        Index('idx_referral_referrer_status', 'referrer_id', 'status'),
    )


class ReferredMarker(Base):
    """Получатель уже принял какой-либо код (не зависит от кода)"""
    __tablename__ = "referred_markers"

    receiver_id = Column(String(128), primary_key=True)
    code = Column(String(16), nullable=False)
    referred_at = Column(DateTime, nullable=False)
