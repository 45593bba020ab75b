from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class Product(Base):
    __tablename__ = "products"

    id = Column(String(64), primary_key=True, index=True)
    title = Column(String(200), nullable=False)
    category = Column(String(50), index=True)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    stock = Column(Integer, nullable=False, default=0)

    reservations = relationship(
        "StockReservation",
        back_populates="product",
        cascade="all, delete-orphan",
    )


class StockReservation(Base):
    """A time-bounded hold of stock for one shopper session.

    Stock is NOT decremented when reserving. Availability is computed as
    product.stock - sum(non-expired reservations of other sessions).
    At most one row exists per (product_id, session_id).
    """

    __tablename__ = "stock_reservations"
    __table_args__ = (UniqueConstraint("product_id", "session_id", name="uq_reservation_product_session"),)

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(String(64), ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    session_id = Column(String(128), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    reserved_until = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    product = relationship("Product", back_populates="reservations")


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(64), primary_key=True, index=True)
    session_id = Column(String(128), index=True)
    status = Column(String(32), nullable=False, default="payment_pending", index=True)
    total = Column(Numeric(12, 2), nullable=False, default=0)
    customer_name = Column(String(200), nullable=False)
    customer_email = Column(String(320), nullable=False)
    customer_phone = Column(String(50))
    customer_address = Column(Text)
    payment_receipt = Column(String(500))
    message = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(64), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(String(100), nullable=False)
    title = Column(String(200), nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    size = Column(String(10))

    order = relationship("Order", back_populates="items")
