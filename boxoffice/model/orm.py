from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)


Base = declarative_base()

# PendingOrder.status
PENDING = "PENDING"
COMPLETED = "COMPLETED"
FAILED = "FAILED"

# PromoCode.discount_kind
PERCENTAGE = "percentage"
FIXED = "fixed"


# ----------------------------
# ORM models
# ----------------------------
class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    location = Column(String, nullable=False, default="")
    starts_at = Column(Float, nullable=True)
    # organizer's payment-receiving account; events without one can't sell
    receiving_account = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)


class TicketTier(Base):
    __tablename__ = "ticket_tiers"
    __table_args__ = (
        CheckConstraint(
            "sold_count >= 0 AND sold_count <= capacity",
            name="ck_tier_sold_within_capacity",
        ),
    )
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False,
                      index=True)
    name = Column(String, nullable=False)
    capacity = Column(Integer, nullable=False)
    sold_count = Column(Integer, nullable=False, default=0)
    unit_price = Column(Integer, nullable=False)  # minor units


class PromoCode(Base):
    __tablename__ = "promo_codes"
    __table_args__ = (
        UniqueConstraint("event_id", "code", name="uq_promo_event_code"),
        CheckConstraint(
            "usage_count >= 0 AND usage_count <= usage_cap",
            name="ck_promo_usage_within_cap",
        ),
    )
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    code = Column(String, nullable=False)
    discount_kind = Column(String, nullable=False)  # percentage | fixed
    discount_value = Column(Integer, nullable=False)
    usage_cap = Column(Integer, nullable=False)
    usage_count = Column(Integer, nullable=False, default=0)


class PendingOrder(Base):
    __tablename__ = "pending_orders"
    id = Column(String, primary_key=True)
    transaction_id = Column(String, nullable=False, unique=True)
    # assigned once the gateway accepted the session
    gateway_session_id = Column(String, nullable=True, unique=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    # first tier of the checkout; the full list lives in pending_order_items
    ticket_tier_id = Column(String, ForeignKey("ticket_tiers.id"),
                            nullable=False)
    buyer_payload = Column(JSON, nullable=False)
    promo_code = Column(String, nullable=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)

    # PENDING | COMPLETED | FAILED
    status = Column(String, nullable=False, default=PENDING)
    failure_reason = Column(String, nullable=True)
    linked_attendee_id = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    settled_at = Column(Float, nullable=True)


class PendingOrderItem(Base):
    __tablename__ = "pending_order_items"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("pending_orders.id"),
                      nullable=False, index=True)
    ticket_tier_id = Column(String, ForeignKey("ticket_tiers.id"),
                            nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)


class Attendee(Base):
    __tablename__ = "attendees"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False,
                      index=True)
    ticket_tier_id = Column(String, ForeignKey("ticket_tiers.id"),
                            nullable=False)
    # NULL for guest purchases
    user_id = Column(String, nullable=True, index=True)
    order_id = Column(String, ForeignKey("pending_orders.id"),
                      nullable=False)
    checked_in = Column(Boolean, nullable=False, default=False)
    checked_in_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)
