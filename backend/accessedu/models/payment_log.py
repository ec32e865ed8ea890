from sqlalchemy import Column, Integer, String, DateTime, JSON, func
from accessedu.core.database import Base


class PaymentLog(Base):
    __tablename__ = "payment_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String(100), nullable=False, index=True, comment="payment_successful / subscription_renewed / ...")
    subscription_code = Column(String(100), nullable=True, index=True)
    user_id = Column(String(128), nullable=True, index=True)
    reference = Column(String(100), nullable=True)
    amount = Column(Integer, nullable=True)
    status = Column(String(50), nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now(), index=True)
