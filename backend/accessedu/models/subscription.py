import enum

from sqlalchemy import Column, Integer, String, DateTime, JSON, Enum as SAEnum, func
from accessedu.core.database import Base


class SubscriptionStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    PAYMENT_FAILED = "payment_failed"


class BillingInterval(str, enum.Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    # Gateway-issued code. Until the gateway issues one, the initialization reference stands in.
    subscription_code = Column(String(100), nullable=False, unique=True, index=True)
    initial_reference = Column(String(100), nullable=True, unique=True)
    user_id = Column(String(128), nullable=True, index=True)
    email = Column(String(255), nullable=True, index=True)
    customer_code = Column(String(100), nullable=True, index=True)
    email_token = Column(String(100), nullable=True, comment="gateway capability for disable/enable")

    plan_code = Column(String(100), nullable=False, index=True)
    plan_name = Column(String(255), nullable=True)
    amount = Column(Integer, nullable=False, default=0, comment="smallest currency unit")
    currency = Column(String(8), nullable=False, default="NGN")
    interval = Column(
        SAEnum(*[i.value for i in BillingInterval], name="billing_interval"),
        nullable=False,
        default=BillingInterval.MONTHLY.value,
    )

    status = Column(
        SAEnum(*[s.value for s in SubscriptionStatus], name="subscription_status"),
        nullable=False,
        default=SubscriptionStatus.PENDING.value,
        index=True,
    )
    start_date = Column(DateTime, nullable=True)
    next_payment_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    last_payment_date = Column(DateTime, nullable=True)

    metadata_ = Column("metadata", JSON, nullable=True)
    last_event_key = Column(String(255), nullable=True)
    revision = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    @property
    def is_provisional(self) -> bool:
        return self.initial_reference is not None and self.subscription_code == self.initial_reference
