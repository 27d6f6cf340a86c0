from sqlalchemy import create_engine, Column, Integer, String, Float, DateTime, Time, Boolean, ForeignKey
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
import datetime
import os
import uuid

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./data/database.db")

if DATABASE_URL.startswith("sqlite:///"):
    # sqlite will not create the parent directory on its own
    db_dir = os.path.dirname(DATABASE_URL[len("sqlite:///"):])
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)

engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {})
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

# id -> display label
INJECTION_SITES = {
    "left_arm": "Left Arm",
    "right_arm": "Right Arm",
    "left_thigh": "Left Thigh",
    "right_thigh": "Right Thigh",
    "abdomen": "Abdomen",
    "other": "Other",
}

MEDICATION_UNITS = ("mg", "mL", "IU", "mcg")

# id -> (label, interval in days); custom intervals are supplied by the user
FREQUENCIES = {
    "daily": ("Daily", 1),
    "every_other_day": ("Every Other Day", 2),
    "twice_weekly": ("Twice Weekly", 3.5),
    "weekly": ("Weekly", 7),
    "biweekly": ("Bi-weekly", 14),
    "monthly": ("Monthly", 30),
    "custom": ("Custom", None),
}


def utcnow() -> datetime.datetime:
    """Naive UTC timestamp, the storage format for every DateTime column."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String, primary_key=True, default=new_id)
    email = Column(String, unique=True, nullable=False, index=True)
    full_name = Column(String, nullable=True)
    timezone = Column(String, nullable=False, default="UTC")
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    medications = relationship("Medication", back_populates="owner")


class Medication(Base):
    __tablename__ = "medications"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("profiles.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    dosage = Column(Float, nullable=False)
    unit = Column(String, nullable=False)
    frequency = Column(String, nullable=False)
    frequency_days = Column(Float, nullable=False)
    preferred_injection_site = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    owner = relationship("Profile", back_populates="medications")
    injections = relationship("InjectionLog", back_populates="medication")


class InjectionLog(Base):
    __tablename__ = "injection_logs"

    # Autoincrement id doubles as insertion order for tie-breaks
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, ForeignKey("profiles.id"), nullable=False, index=True)
    medication_id = Column(String, ForeignKey("medications.id"), nullable=False, index=True)
    injection_date = Column(DateTime, nullable=False, index=True)  # naive UTC
    dosage = Column(Float, nullable=False)
    injection_site = Column(String, nullable=False)
    notes = Column(String, nullable=True)
    is_completed = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    medication = relationship("Medication", back_populates="injections")


class Reminder(Base):
    __tablename__ = "reminders"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("profiles.id"), nullable=False, index=True)
    medication_id = Column(String, ForeignKey("medications.id"), nullable=False)
    reminder_time = Column(Time, nullable=False)
    hours_before = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class LoginToken(Base):
    __tablename__ = "login_tokens"

    id = Column(String, primary_key=True, default=new_id)
    email = Column(String, nullable=False, index=True)
    token_hash = Column(String, nullable=False)  # bcrypt(sha256(secret))
    expires_at = Column(DateTime, nullable=False)
    used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

Base.metadata.create_all(bind=engine)
