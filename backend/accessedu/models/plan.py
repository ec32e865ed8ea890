from sqlalchemy import Column, Integer, String, Boolean, Text, DateTime, func
from accessedu.core.database import Base


class Plan(Base):
    __tablename__ = "plans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    plan_code = Column(String(50), nullable=False, unique=True, comment="local code, e.g. monthly")
    gateway_plan_code = Column(String(100), nullable=True, unique=True, comment="PLN_xxx issued by Paystack")
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    amount = Column(Integer, nullable=False, comment="kobo")
    currency = Column(String(8), nullable=False, default="NGN")
    interval = Column(String(20), nullable=False, default="monthly")
    is_active = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
