from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    ForeignKey,
)


Base = declarative_base()

# order status
ORDER_PENDING = "pending"
ORDER_COMPLETED = "completed"
ORDER_CANCELLED = "cancelled"
ORDER_FAILED = "failed"

# ticket status
TICKET_ACTIVE = "active"
TICKET_REFUNDED = "refunded"


# ----------------------------
# ORM models
# ----------------------------
class TicketType(Base):
    __tablename__ = "ticket_types"
    id = Column(Integer, primary_key=True)
    event_id = Column(Integer, nullable=False, index=True)
    event_title = Column(String, nullable=False, default="")
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=False)  # minor units
    quantity = Column(Integer, nullable=False)
    sold = Column(Integer, nullable=False, default=0)

    def available(self) -> int:
        return max(0, self.quantity - (self.sold or 0))


class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    event_id = Column(Integer, nullable=False)
    order_number = Column(String, nullable=False, unique=True)
    total_amount = Column(Integer, nullable=False)  # minor units, fixed
    # pending | completed | cancelled | failed
    status = Column(String, nullable=False, default=ORDER_PENDING)
    # idempotency key: one order per payment, ever
    payment_id = Column(String, nullable=False, unique=True)
    billing_email = Column(String, nullable=False)
    billing_name = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "event_id": self.event_id,
            "order_number": self.order_number,
            "total_amount": self.total_amount,
            "status": self.status,
            "payment_id": self.payment_id,
            "billing_email": self.billing_email,
            "billing_name": self.billing_name,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False,
                      index=True)
    ticket_type_id = Column(Integer, nullable=False)
    code = Column(String, nullable=False, unique=True)
    # active | refunded
    status = Column(String, nullable=False, default=TICKET_ACTIVE)
    created_at = Column(Float, nullable=False)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "ticket_type_id": self.ticket_type_id,
            "code": self.code,
            "status": self.status,
        }


async def create_tables(conn) -> None:
    await conn.run_sync(Base.metadata.create_all)
