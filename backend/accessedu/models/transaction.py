import enum

from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, Enum as SAEnum, func
from accessedu.core.database import Base


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    reference = Column(String(100), nullable=False, unique=True, index=True)
    subscription_code = Column(String(100), nullable=True, index=True)
    user_id = Column(String(128), nullable=True, index=True)
    amount = Column(Integer, nullable=False, default=0, comment="smallest currency unit")
    currency = Column(String(8), nullable=False, default="NGN")
    status = Column(
        SAEnum(*[s.value for s in TransactionStatus], name="transaction_status"),
        nullable=False,
        default=TransactionStatus.PENDING.value,
    )
    channel = Column(String(50), nullable=True)
    gateway_response = Column(Text, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
