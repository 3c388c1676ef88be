from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    ForeignKey,
    JSON,
    UniqueConstraint,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    starts_at = Column(Float, nullable=False)
    location = Column(String, nullable=False, default="")
    published = Column(Boolean, nullable=False, default=True)

    # two independent pools; prices in pence
    walk_on_slots = Column(Integer, nullable=False, default=0)
    walk_on_price = Column(Integer, nullable=False, default=0)
    rental_slots = Column(Integer, nullable=False, default=0)
    rental_price = Column(Integer, nullable=False, default=0)

    created_at = Column(Float, nullable=False)

    extras = relationship(
        "EventExtra", order_by="EventExtra.sort_order",
        cascade="all, delete-orphan", lazy="selectin",
    )


class EventExtra(Base):
    __tablename__ = "event_extras"
    id = Column(String, primary_key=True)
    event_id = Column(
        String, ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    product_id = Column(String, ForeignKey("products.id"), nullable=False)
    sort_order = Column(Integer, nullable=False, default=0)


class Product(Base):
    __tablename__ = "products"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=False)  # pence
    sale_price = Column(Integer, nullable=True)
    on_sale = Column(Boolean, nullable=False, default=False)
    stock = Column(Integer, nullable=False, default=0)
    no_post = Column(Boolean, nullable=False, default=False)
    extra_eligible = Column(Boolean, nullable=False, default=False)
    sort_order = Column(Integer, nullable=False, default=0)

    variants = relationship(
        "ProductVariant", order_by="ProductVariant.sort_order",
        cascade="all, delete-orphan", lazy="selectin",
    )


class ProductVariant(Base):
    __tablename__ = "product_variants"
    id = Column(String, primary_key=True)
    product_id = Column(
        String, ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    sort_order = Column(Integer, nullable=False, default=0)


class PostageOption(Base):
    __tablename__ = "postage_options"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=False)
    sort_order = Column(Integer, nullable=False, default=0)


class Booking(Base):
    __tablename__ = "bookings"
    id = Column(String, primary_key=True)
    event_id = Column(
        String, ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(String, nullable=False, index=True)
    user_name = Column(String, nullable=False)
    ticket_type = Column(String, nullable=False)  # walkOn | rental
    qty = Column(Integer, nullable=False)
    # {"<extra_id>" | "<extra_id>:<variant_id>": qty}
    extras = Column(JSON, nullable=False, default=dict)
    total = Column(Integer, nullable=False)  # pence
    payment_reference = Column(String, nullable=False, index=True)
    attended = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False)


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=True)
    customer_name = Column(String, nullable=False)
    customer_email = Column(String, nullable=False, default="")
    # [{"product_id", "variant_id", "name", "unit_price", "qty"}]
    items = Column(JSON, nullable=False)
    subtotal = Column(Integer, nullable=False)
    shipping_fee = Column(Integer, nullable=False, default=0)
    postage_name = Column(String, nullable=False, default="")
    total = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="gbp")

    # pending | processing | dispatched | completed | cancelled
    status = Column(String, nullable=False, default="pending")
    payment_reference = Column(String, nullable=False, index=True)
    created_at = Column(Float, nullable=False)


class Profile(Base):
    __tablename__ = "profiles"
    __table_args__ = (UniqueConstraint("member_ref"),)
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False, default="")
    role = Column(String, nullable=False, default="player")

    # cache of count(bookings where attended); see checkin.recount
    games_attended = Column(Integer, nullable=False, default=0)

    # none | active | rejected | expired
    member_status = Column(String, nullable=False, default="none")
    member_applied = Column(Boolean, nullable=False, default=False)
    member_ref = Column(String, nullable=True)

    waiver_signed = Column(Boolean, nullable=False, default=False)
    waiver_year = Column(Integer, nullable=True)
    credits = Column(Integer, nullable=False, default=0)
    created_at = Column(Float, nullable=False)
