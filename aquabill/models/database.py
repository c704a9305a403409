from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey
from sqlalchemy.orm import declarative_base, relationship

from aquabill.utils.timeutils import utcnow

Base = declarative_base()


class Account(Base):
    __tablename__ = "accounts"

    # Issued by the identity provider
    id = Column(String(128), primary_key=True)
    role = Column(String(20), nullable=False)
    name = Column(String(255), nullable=False)
    email = Column(String(255))
    phone = Column(String(50))
    flat_id = Column(Integer, ForeignKey("flats.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Property(Base):
    __tablename__ = "properties"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(128), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    address = Column(String(512))
    city = Column(String(120))
    property_code = Column(String(64), unique=True, nullable=False, index=True)
    water_rate_per_unit = Column(Numeric(14, 4), nullable=False, default=0)
    fixed_charge = Column(Numeric(12, 2), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    # Relationships
    flats = relationship("Flat", back_populates="property")


class Flat(Base):
    __tablename__ = "flats"

    id = Column(Integer, primary_key=True, index=True)
    property_id = Column(Integer, ForeignKey("properties.id"), nullable=False, index=True)
    flat_number = Column(String(20), nullable=False)
    floor = Column(String(20))
    flat_code = Column(String(64), unique=True, nullable=False, index=True)
    tenant_id = Column(String(128), nullable=True, index=True)
    tenant_name = Column(String(255))
    tenant_phone = Column(String(50))
    previous_tenant_id = Column(String(128))
    free_water_units = Column(Numeric(14, 4), nullable=False, default=0)
    vacated_at = Column(DateTime(timezone=True))
    final_reading = Column(Numeric(14, 4))
    # Bumped on every reading insert/delete; guards concurrent submissions
    reading_version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    # Relationships
    property = relationship("Property", back_populates="flats")
    readings = relationship("Reading", back_populates="flat", cascade="all, delete-orphan")


class RetiredFlatCode(Base):
    __tablename__ = "retired_flat_codes"

    code = Column(String(64), primary_key=True)
    flat_id = Column(Integer, nullable=False, index=True)
    retired_at = Column(DateTime(timezone=True), default=utcnow)


class Reading(Base):
    """A meter reading; each row is also the bill for that period."""
    __tablename__ = "readings"

    id = Column(Integer, primary_key=True, index=True)
    flat_id = Column(Integer, ForeignKey("flats.id"), nullable=False, index=True)
    property_id = Column(Integer, ForeignKey("properties.id"), nullable=False, index=True)
    previous_reading = Column(Numeric(14, 4), nullable=False)
    current_reading = Column(Numeric(14, 4), nullable=False)
    units_consumed = Column(Numeric(14, 4), nullable=False)
    free_water_units = Column(Numeric(14, 4), nullable=False, default=0)
    billable_units = Column(Numeric(14, 4), nullable=False)
    bill_amount = Column(Numeric(12, 2), nullable=False)
    bill_month = Column(String(40), nullable=False)
    status = Column(String(30), nullable=False, default="pending", index=True)
    due_date = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True))
    paid_at = Column(DateTime(timezone=True))
    screenshot_submitted_at = Column(DateTime(timezone=True))

    # Relationships
    flat = relationship("Flat", back_populates="readings")
    payments = relationship("Payment", back_populates="bill", cascade="all, delete-orphan")
    corrections = relationship("BillCorrection", back_populates="bill", cascade="all, delete-orphan")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    bill_id = Column(Integer, ForeignKey("readings.id"), nullable=False, index=True)
    tenant_id = Column(String(128), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    method = Column(String(20), nullable=False)
    external_reference = Column(String(128), unique=True)
    proof_reference = Column(String(512))
    idempotency_key = Column(String(128), unique=True)
    status = Column(String(30), nullable=False)
    paid_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)

    # Relationships
    bill = relationship("Reading", back_populates="payments")


class BillCorrection(Base):
    __tablename__ = "bill_corrections"

    id = Column(Integer, primary_key=True, index=True)
    bill_id = Column(Integer, ForeignKey("readings.id"), nullable=False, index=True)
    previous_amount = Column(Numeric(12, 2), nullable=False)
    new_amount = Column(Numeric(12, 2), nullable=False)
    corrected_by = Column(String(128), nullable=False)
    corrected_at = Column(DateTime(timezone=True), default=utcnow)

    # Relationships
    bill = relationship("Reading", back_populates="corrections")
