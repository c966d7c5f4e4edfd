import uuid

from sqlalchemy import Boolean, CheckConstraint, Column, Date, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from loan_tracker.db.base import Base


def new_identifier() -> str:
    return uuid.uuid4().hex


class Item(Base):
    __tablename__ = "items"
    __table_args__ = (
        CheckConstraint("total_quantity >= 0", name="ck_items_total_nonnegative"),
        CheckConstraint(
            "available_quantity >= 0 AND available_quantity <= total_quantity",
            name="ck_items_available_bounds",
        ),
    )

    id = Column(String(36), primary_key=True, default=new_identifier)
    name = Column(String(255), nullable=False)
    total_quantity = Column(Integer, nullable=False, default=0)
    available_quantity = Column(Integer, nullable=False, default=0)
    # Bumped by every counter write; readers use it to order snapshots.
    version = Column(Integer, nullable=False, default=1)
    consumable = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, server_default=func.now())

    variants = relationship(
        "ItemVariant",
        back_populates="item",
        cascade="all, delete-orphan",
        order_by="ItemVariant.name",
    )
    loans = relationship("Loan", back_populates="item")


class ItemVariant(Base):
    __tablename__ = "item_variants"
    __table_args__ = (
        CheckConstraint("total_quantity >= 0", name="ck_item_variants_total_nonnegative"),
        CheckConstraint(
            "available_quantity >= 0 AND available_quantity <= total_quantity",
            name="ck_item_variants_available_bounds",
        ),
    )

    id = Column(String(36), primary_key=True, default=new_identifier)
    item_id = Column(String(36), ForeignKey("items.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    total_quantity = Column(Integer, nullable=False, default=0)
    available_quantity = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, server_default=func.now())

    item = relationship("Item", back_populates="variants")
    loans = relationship("Loan", back_populates="variant")


class Person(Base):
    __tablename__ = "people"

    id = Column(String(36), primary_key=True, default=new_identifier)
    name = Column(String(255), nullable=False)
    date_of_birth = Column(Date)
    photo_url = Column(String(1000))
    created_at = Column(DateTime, server_default=func.now())

    loans = relationship("Loan", back_populates="person")


class Loan(Base):
    __tablename__ = "loans"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_loans_quantity_positive"),
    )

    id = Column(String(36), primary_key=True, default=new_identifier)
    # Nullable so returned loans survive deletion of their item or variant.
    item_id = Column(String(36), ForeignKey("items.id", ondelete="SET NULL"), index=True)
    variant_id = Column(String(36), ForeignKey("item_variants.id", ondelete="SET NULL"), index=True)
    person_id = Column(String(36), ForeignKey("people.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False, default=1)
    notes = Column(String(2000), nullable=False, default="")
    condition_notes = Column(String(2000), nullable=False, default="")
    condition_photo = Column(String(1000), nullable=False, default="")
    loaned_at = Column(DateTime, nullable=False, server_default=func.now())
    returned_at = Column(DateTime)

    item = relationship("Item", back_populates="loans")
    variant = relationship("ItemVariant", back_populates="loans")
    person = relationship("Person", back_populates="loans")


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(36), nullable=False)
    action = Column(String(100), nullable=False)
    details = Column(String(2000))
    created_at = Column(DateTime, server_default=func.now())
