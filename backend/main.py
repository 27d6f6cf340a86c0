from fastapi import FastAPI, Depends, HTTPException, Response, Cookie, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session
import models
from models import SessionLocal, engine, INJECTION_SITES, MEDICATION_UNITS, FREQUENCIES
from pydantic import BaseModel, field_validator, model_validator
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import calendar
import csv
import datetime
import io
import os
import re
import secrets
import hashlib
import logging
import bcrypt
import hmac
import time
import adherence

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

models.Base.metadata.create_all(bind=engine)

# Check if we're in development mode (for cookie security settings)
IS_DEVELOPMENT = os.getenv("ENVIRONMENT", "production") == "development"

# Where the web frontend lives; login links and post-login redirects point there
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")

LOGIN_TOKEN_TTL_MINUTES = int(os.getenv("LOGIN_TOKEN_TTL_MINUTES", "15"))
SESSION_MAX_AGE = 60 * 60 * 24 * 360  # 360 days

CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()]

app = FastAPI(title="Shot Tracker")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Auth secret for cookie signing
AUTH_SECRET = os.getenv("AUTH_SECRET", secrets.token_hex(32))

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Dependency to get DB session
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def get_now() -> datetime.datetime:
    """Reference time for due/overdue calculations. Overridden in tests."""
    return datetime.datetime.now(datetime.timezone.utc)

def hash_login_secret(secret: str) -> str:
    """Hash a magic-link secret for storage."""
    # SHA256 first to stay under bcrypt's 72-byte limit
    digest = hashlib.sha256(secret.encode()).hexdigest()
    return bcrypt.hashpw(digest.encode(), bcrypt.gensalt()).decode('utf-8')

def verify_login_secret(secret: str, token_hash: str) -> bool:
    digest = hashlib.sha256(secret.encode()).hexdigest()
    return bcrypt.checkpw(digest.encode(), token_hash.encode())

def sign_session(profile_id: str, issued_at: str) -> str:
    """HMAC-SHA256 over the profile id and issue time."""
    return hmac.new(AUTH_SECRET.encode(), f"{profile_id}:{issued_at}".encode(), hashlib.sha256).hexdigest()

def create_auth_token(profile_id: str) -> str:
    """Session cookie value: profile_id:issued_at:signature."""
    issued_at = str(int(time.time()))
    return f"{profile_id}:{issued_at}:{sign_session(profile_id, issued_at)}"

def verify_auth_token(token: str, max_age_seconds: int = SESSION_MAX_AGE) -> str | None:
    """
    Return the profile id from a session cookie, or None if the cookie is
    malformed, expired, issued in the future or carries a bad signature.
    """
    parts = token.split(":")
    if len(parts) != 3:
        logger.warning(f"Invalid session format: expected 3 parts, got {len(parts)}")
        return None
    profile_id, issued_at, provided_signature = parts

    try:
        session_age = int(time.time()) - int(issued_at)
        # Cookies arrive latin-1 decoded, so compare bytes rather than str
        valid = hmac.compare_digest(
            sign_session(profile_id, issued_at).encode(),
            provided_signature.encode()
        )
    except (ValueError, TypeError) as e:
        logger.warning(f"Unreadable session cookie: {e}")
        return None

    if session_age > max_age_seconds:
        logger.warning(f"Session expired: age={session_age}s, max={max_age_seconds}s")
        return None
    # Clock skew tolerance: 5 minutes
    if session_age < -300:
        logger.warning(f"Session from future: age={session_age}s")
        return None
    if not valid:
        logger.warning(f"Invalid session signature for profile: {profile_id}")
        return None
    return profile_id

def send_login_link(email: str, link: str):
    """Hand the login link to the mailer. Delivery happens outside this service."""
    if IS_DEVELOPMENT:
        logger.info(f"Login link for {email}: {link}")
    else:
        logger.info(f"Login link issued for {email}")

def get_current_profile_from_cookie(auth_token: str, db: Session):
    """Extract and validate the profile from the auth cookie."""
    if not auth_token:
        logger.warning("No auth token provided")
        return None

    profile_id = verify_auth_token(auth_token)
    if not profile_id:
        logger.warning("Failed to verify auth token")
        return None

    profile = db.query(models.Profile).filter(models.Profile.id == profile_id).first()
    if not profile:
        logger.warning(f"Profile not found: {profile_id}")
        return None
    return profile

def require_auth(auth_token: str = Cookie(None), db: Session = Depends(get_db)):
    """Dependency returning the signed-in profile."""
    profile = get_current_profile_from_cookie(auth_token, db)
    if not profile:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return profile

def profile_tz(profile: models.Profile):
    try:
        return ZoneInfo(profile.timezone or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {profile.timezone!r} for profile {profile.id}, using UTC")
        return datetime.timezone.utc

def to_utc_naive(value: datetime.datetime, tz) -> datetime.datetime:
    """Naive values are wall-clock time in the profile's timezone."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=tz)
    return value.astimezone(datetime.timezone.utc).replace(tzinfo=None)

def as_utc(value: datetime.datetime | None) -> datetime.datetime | None:
    if value is None:
        return None
    return value.replace(tzinfo=datetime.timezone.utc)

def local_midnight_utc(day: datetime.date, tz) -> datetime.datetime:
    return to_utc_naive(datetime.datetime.combine(day, datetime.time.min), tz)

def subtract_months(day: datetime.date, months: int) -> datetime.date:
    month_index = day.year * 12 + day.month - 1 - months
    year, month = divmod(month_index, 12)
    month += 1
    return datetime.date(year, month, min(day.day, calendar.monthrange(year, month)[1]))

def resolve_frequency_days(frequency: str, frequency_days: float | None) -> float:
    if frequency not in FREQUENCIES:
        raise ValueError(f"Unknown frequency: {frequency}")
    standard_days = FREQUENCIES[frequency][1]
    if standard_days is not None:
        return float(standard_days)
    if frequency_days is None or frequency_days <= 0:
        raise ValueError("Custom frequency requires a positive frequency_days")
    return float(frequency_days)

# Serializers
def profile_to_dict(profile: models.Profile) -> dict:
    return {
        "id": profile.id,
        "email": profile.email,
        "full_name": profile.full_name,
        "timezone": profile.timezone,
        "created_at": as_utc(profile.created_at),
        "updated_at": as_utc(profile.updated_at),
    }

def medication_to_dict(medication: models.Medication) -> dict:
    return {
        "id": medication.id,
        "user_id": medication.user_id,
        "name": medication.name,
        "dosage": medication.dosage,
        "unit": medication.unit,
        "frequency": medication.frequency,
        "frequency_label": FREQUENCIES.get(medication.frequency, (medication.frequency, None))[0],
        "frequency_days": medication.frequency_days,
        "preferred_injection_site": medication.preferred_injection_site,
        "is_active": medication.is_active,
        "created_at": as_utc(medication.created_at),
        "updated_at": as_utc(medication.updated_at),
    }

def injection_to_dict(log: models.InjectionLog) -> dict:
    return {
        "id": log.id,
        "user_id": log.user_id,
        "medication_id": log.medication_id,
        "injection_date": as_utc(log.injection_date),
        "dosage": log.dosage,
        "injection_site": log.injection_site,
        "notes": log.notes,
        "is_completed": log.is_completed,
        "created_at": as_utc(log.created_at),
    }

def reminder_to_dict(reminder: models.Reminder) -> dict:
    return {
        "id": reminder.id,
        "medication_id": reminder.medication_id,
        "reminder_time": reminder.reminder_time.strftime("%H:%M"),
        "hours_before": reminder.hours_before,
        "is_active": reminder.is_active,
    }

def injection_to_event(log: models.InjectionLog) -> dict:
    """Shape an injection log the way the adherence module expects."""
    return {
        "id": log.id,
        "timestamp": as_utc(log.injection_date),
        "site": log.injection_site,
        "dosage": log.dosage,
    }

def get_owned_medication(db: Session, profile: models.Profile, medication_id: str) -> models.Medication:
    medication = db.query(models.Medication).filter(
        models.Medication.id == medication_id,
        models.Medication.user_id == profile.id
    ).first()
    if medication is None:
        raise HTTPException(status_code=404, detail="Medication not found")
    return medication

def get_selected_medication(db: Session, profile: models.Profile, medication_id: str | None):
    """The requested medication, or the user's first active one."""
    if medication_id:
        return get_owned_medication(db, profile, medication_id)
    return db.query(models.Medication).filter(
        models.Medication.user_id == profile.id,
        models.Medication.is_active == True
    ).order_by(models.Medication.created_at.asc()).first()

# Auth endpoints
class LoginRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def check_email(cls, value: str) -> str:
        value = value.strip().lower()
        if not EMAIL_RE.match(value):
            raise ValueError("Invalid email address")
        return value

@app.post("/api/auth/login")
def login(login_data: LoginRequest, db: Session = Depends(get_db)):
    """Send a one-time login link to the given email address."""
    secret = secrets.token_urlsafe(32)
    login_token = models.LoginToken(
        email=login_data.email,
        token_hash=hash_login_secret(secret),
        expires_at=models.utcnow() + datetime.timedelta(minutes=LOGIN_TOKEN_TTL_MINUTES)
    )
    db.add(login_token)
    db.commit()
    db.refresh(login_token)

    link = f"{FRONTEND_URL}/api/auth/callback?token={login_token.id}.{secret}"
    send_login_link(login_data.email, link)
    return {"success": True}

def redeem_login_token(db: Session, token: str):
    """Return the email for a valid, unused login token and mark it used."""
    token_id, _, secret = (token or "").partition(".")
    if not token_id or not secret:
        logger.warning("Malformed login token")
        return None

    login_token = db.query(models.LoginToken).filter(models.LoginToken.id == token_id).first()
    if login_token is None:
        logger.warning(f"Unknown login token: {token_id}")
        return None
    if login_token.used_at is not None:
        logger.warning(f"Login token already used: {token_id}")
        return None
    if login_token.expires_at < models.utcnow():
        logger.warning(f"Login token expired: {token_id}")
        return None
    if not verify_login_secret(secret, login_token.token_hash):
        logger.warning(f"Login token secret mismatch: {token_id}")
        return None

    login_token.used_at = models.utcnow()
    db.commit()
    return login_token.email

@app.get("/api/auth/callback")
def auth_callback(token: str = "", db: Session = Depends(get_db)):
    """Exchange a login link for a session cookie and route the user onwards."""
    email = redeem_login_token(db, token)
    if email is None:
        return RedirectResponse(f"{FRONTEND_URL}/auth/login?error=invalid_link", status_code=303)

    profile = db.query(models.Profile).filter(models.Profile.email == email).first()
    if profile is None:
        profile = models.Profile(email=email)
        db.add(profile)
        db.commit()
        db.refresh(profile)
        logger.info(f"Created profile {profile.id} for {email}")
        destination = "/onboarding"
    else:
        has_medication = db.query(models.Medication).filter(
            models.Medication.user_id == profile.id,
            models.Medication.is_active == True
        ).first() is not None
        destination = "/dashboard" if has_medication else "/onboarding"

    response = RedirectResponse(f"{FRONTEND_URL}{destination}", status_code=303)
    response.set_cookie(
        key="auth_token",
        value=create_auth_token(profile.id),
        httponly=True,
        secure=not IS_DEVELOPMENT,  # Allow cookies over HTTP in development
        samesite="lax",  # the link is opened from a mail client
        max_age=SESSION_MAX_AGE
    )
    logger.info(f"Login successful for profile: {profile.id}")
    return response

@app.post("/api/auth/logout")
def logout(response: Response):
    """Clear the auth cookie."""
    response.delete_cookie(key="auth_token")
    return {"success": True}

@app.get("/api/auth/me")
def get_current_user(profile: models.Profile = Depends(require_auth)):
    """Get the signed-in profile."""
    return profile_to_dict(profile)

# Profile endpoints
class ProfileUpdate(BaseModel):
    full_name: str | None = None
    timezone: str | None = None

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, value: str | None) -> str | None:
        if value is None:
            return value
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {value}")
        return value

@app.get("/api/profile")
def get_profile(profile: models.Profile = Depends(require_auth)):
    return profile_to_dict(profile)

@app.put("/api/profile")
def update_profile(update: ProfileUpdate, db: Session = Depends(get_db), profile: models.Profile = Depends(require_auth)):
    for key, value in update.model_dump(exclude_unset=True).items():
        if key == "timezone" and value is None:
            continue
        setattr(profile, key, value)
    db.commit()
    db.refresh(profile)
    return profile_to_dict(profile)

# Medication endpoints
class MedicationCreate(BaseModel):
    name: str
    dosage: float
    unit: str = "mg"
    frequency: str = "weekly"
    frequency_days: float | None = None
    preferred_injection_site: str | None = None

    @field_validator("name")
    @classmethod
    def check_name(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Please enter medication name")
        return value.strip()

    @field_validator("dosage")
    @classmethod
    def check_dosage(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Please enter a valid dosage")
        return value

    @field_validator("unit")
    @classmethod
    def check_unit(cls, value: str) -> str:
        if value not in MEDICATION_UNITS:
            raise ValueError(f"Unit must be one of {', '.join(MEDICATION_UNITS)}")
        return value

    @field_validator("preferred_injection_site")
    @classmethod
    def check_site(cls, value: str | None) -> str | None:
        if value is not None and value not in INJECTION_SITES:
            raise ValueError(f"Unknown injection site: {value}")
        return value

    @model_validator(mode="after")
    def fill_frequency_days(self):
        self.frequency_days = resolve_frequency_days(self.frequency, self.frequency_days)
        return self

class MedicationUpdate(BaseModel):
    name: str | None = None
    dosage: float | None = None
    unit: str | None = None
    frequency: str | None = None
    frequency_days: float | None = None
    preferred_injection_site: str | None = None
    is_active: bool | None = None

    @field_validator("dosage")
    @classmethod
    def check_dosage(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("Please enter a valid dosage")
        return value

    @field_validator("unit")
    @classmethod
    def check_unit(cls, value: str | None) -> str | None:
        if value is not None and value not in MEDICATION_UNITS:
            raise ValueError(f"Unit must be one of {', '.join(MEDICATION_UNITS)}")
        return value

    @field_validator("preferred_injection_site")
    @classmethod
    def check_site(cls, value: str | None) -> str | None:
        if value is not None and value not in INJECTION_SITES:
            raise ValueError(f"Unknown injection site: {value}")
        return value

def create_medication_for(db: Session, profile: models.Profile, medication: MedicationCreate) -> models.Medication:
    db_medication = models.Medication(
        user_id=profile.id,
        name=medication.name,
        dosage=medication.dosage,
        unit=medication.unit,
        frequency=medication.frequency,
        frequency_days=medication.frequency_days,
        preferred_injection_site=medication.preferred_injection_site,
        is_active=True
    )
    db.add(db_medication)
    return db_medication

@app.get("/api/medications")
def get_medications(include_inactive: bool = False, db: Session = Depends(get_db), profile: models.Profile = Depends(require_auth)):
    """List the user's medications, active ones only unless asked otherwise."""
    query = db.query(models.Medication).filter(models.Medication.user_id == profile.id)
    if not include_inactive:
        query = query.filter(models.Medication.is_active == True)
    return [medication_to_dict(m) for m in query.order_by(models.Medication.created_at.asc()).all()]

@app.post("/api/medications")
def create_medication(medication: MedicationCreate, db: Session = Depends(get_db), profile: models.Profile = Depends(require_auth)):
    db_medication = create_medication_for(db, profile, medication)
    db.commit()
    db.refresh(db_medication)
    return medication_to_dict(db_medication)

@app.get("/api/medications/{medication_id}")
def get_medication(medication_id: str, db: Session = Depends(get_db), profile: models.Profile = Depends(require_auth)):
    return medication_to_dict(get_owned_medication(db, profile, medication_id))

@app.put("/api/medications/{medication_id}")
def update_medication(medication_id: str, medication: MedicationUpdate, db: Session = Depends(get_db), profile: models.Profile = Depends(require_auth)):
    db_medication = get_owned_medication(db, profile, medication_id)
    changes = medication.model_dump(exclude_unset=True)

    if "name" in changes:
        if not (changes["name"] or "").strip():
            raise HTTPException(status_code=422, detail="Please enter medication name")
        changes["name"] = changes["name"].strip()

    frequency = changes.get("frequency") or db_medication.frequency
    if "frequency" in changes or "frequency_days" in changes:
        try:
            changes["frequency_days"] = resolve_frequency_days(frequency, changes.get("frequency_days", db_medication.frequency_days))
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        changes["frequency"] = frequency

    for key, value in changes.items():
        if value is None and key != "preferred_injection_site":
            continue
        setattr(db_medication, key, value)

    db.commit()
    db.refresh(db_medication)
    return medication_to_dict(db_medication)

@app.delete("/api/medications/{medication_id}")
def deactivate_medication(medication_id: str, db: Session = Depends(get_db), profile: models.Profile = Depends(require_auth)):
    """Medications are deactivated, never deleted, so their history stays intact."""
    db_medication = get_owned_medication(db, profile, medication_id)
    db_medication.is_active = False
    db.commit()
    return {"ok": True}

# Onboarding
class OnboardingRequest(BaseModel):
    full_name: str
    medication: MedicationCreate

    @field_validator("full_name")
    @classmethod
    def check_full_name(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Please enter your name")
        return value.strip()

@app.post("/api/onboarding")
def complete_onboarding(onboarding: OnboardingRequest, db: Session = Depends(get_db), profile: models.Profile = Depends(require_auth)):
    """Store the wizard's answers: the user's name and their first medication."""
    profile.full_name = onboarding.full_name
    db_medication = create_medication_for(db, profile, onboarding.medication)
    db.commit()
    db.refresh(profile)
    db.refresh(db_medication)
    logger.info(f"Onboarding complete for profile: {profile.id}")
    return {"profile": profile_to_dict(profile), "medication": medication_to_dict(db_medication)}

# Injection log endpoints
class InjectionCreate(BaseModel):
    medication_id: str
    injection_date: datetime.datetime | None = None
    dosage: float | None = None
    injection_site: str | None = None
    notes: str | None = None

    @field_validator("dosage")
    @classmethod
    def check_dosage(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("Please enter a valid dosage")
        return value

    @field_validator("injection_site")
    @classmethod
    def check_site(cls, value: str | None) -> str | None:
        if value is not None and value not in INJECTION_SITES:
            raise ValueError(f"Unknown injection site: {value}")
        return value

@app.get("/api/injections")
def get_injections(
    medication_id: str | None = None,
    start: datetime.datetime | None = None,
    end: datetime.datetime | None = None,
    limit: int | None = Query(None, ge=1, le=1000),
    db: Session = Depends(get_db),
    profile: models.Profile = Depends(require_auth)
):
    """Injection history, newest first."""
    tz = profile_tz(profile)
    query = db.query(models.InjectionLog).filter(models.InjectionLog.user_id == profile.id)
    if medication_id:
        query = query.filter(models.InjectionLog.medication_id == medication_id)
    if start:
        query = query.filter(models.InjectionLog.injection_date >= to_utc_naive(start, tz))
    if end:
        query = query.filter(models.InjectionLog.injection_date <= to_utc_naive(end, tz))
    query = query.order_by(models.InjectionLog.injection_date.desc(), models.InjectionLog.id.desc())
    if limit:
        query = query.limit(limit)
    return [injection_to_dict(log) for log in query.all()]

@app.post("/api/injections")
def create_injection(
    injection: InjectionCreate,
    db: Session = Depends(get_db),
    profile: models.Profile = Depends(require_auth),
    now: datetime.datetime = Depends(get_now)
):
    """Log a shot. Anything left out falls back to the medication's defaults and the current time."""
    medication = get_owned_medication(db, profile, injection.medication_id)
    if not medication.is_active:
        raise HTTPException(status_code=400, detail="Medication is not active")

    injection_date = injection.injection_date or now
    db_log = models.InjectionLog(
        user_id=profile.id,
        medication_id=medication.id,
        injection_date=to_utc_naive(injection_date, profile_tz(profile)),
        dosage=injection.dosage if injection.dosage is not None else medication.dosage,
        injection_site=injection.injection_site or medication.preferred_injection_site or "abdomen",
        notes=injection.notes or None,
        is_completed=True
    )
    db.add(db_log)
    db.commit()
    db.refresh(db_log)
    logger.info(f"Logged injection {db_log.id} for medication {medication.id}")
    return injection_to_dict(db_log)

@app.get("/api/injections/export.csv")
def export_injections_csv(db: Session = Depends(get_db), profile: models.Profile = Depends(require_auth), now: datetime.datetime = Depends(get_now)):
    """Full injection history as a CSV download, times in the user's timezone."""
    tz = profile_tz(profile)
    medications = {
        m.id: m for m in db.query(models.Medication).filter(models.Medication.user_id == profile.id).all()
    }
    logs = db.query(models.InjectionLog).filter(
        models.InjectionLog.user_id == profile.id
    ).order_by(models.InjectionLog.injection_date.desc(), models.InjectionLog.id.desc()).all()

    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(["Date", "Time", "Medication", "Dosage", "Unit", "Site", "Notes"])
    for log in logs:
        medication = medications.get(log.medication_id)
        local = as_utc(log.injection_date).astimezone(tz)
        writer.writerow([
            local.date().isoformat(),
            local.strftime("%H:%M"),
            medication.name if medication else "Unknown",
            f"{log.dosage:g}",
            medication.unit if medication else "",
            INJECTION_SITES.get(log.injection_site, log.injection_site),
            log.notes or "",
        ])

    filename = f"injection-history-{now.astimezone(tz).date().isoformat()}.csv"
    return Response(
        content=buffer.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'}
    )

def medication_events(db: Session, profile: models.Profile, medication: models.Medication, since: datetime.datetime | None = None):
    query = db.query(models.InjectionLog).filter(
        models.InjectionLog.user_id == profile.id,
        models.InjectionLog.medication_id == medication.id
    )
    if since is not None:
        query = query.filter(models.InjectionLog.injection_date >= since)
    logs = query.order_by(models.InjectionLog.injection_date.asc(), models.InjectionLog.id.asc()).all()
    return logs, [injection_to_event(log) for log in logs]

# Dashboard, stats and calendar
@app.get("/api/dashboard")
def get_dashboard(
    medication_id: str | None = None,
    db: Session = Depends(get_db),
    profile: models.Profile = Depends(require_auth),
    now: datetime.datetime = Depends(get_now)
):
    """Selected medication with its next due date and the most recent shots."""
    medication = get_selected_medication(db, profile, medication_id)
    if medication is None:
        return {
            "medication": None,
            "next_due": None,
            "days_until_due": None,
            "status": adherence.classify(None)._asdict(),
            "recent_injections": [],
        }

    tz = profile_tz(profile)
    logs, events = medication_events(db, profile, medication)
    try:
        next_due = adherence.next_due_date(medication, events, tz)
        days = adherence.days_until_due(medication, events, now, tz)
    except adherence.InvalidScheduleError as e:
        raise HTTPException(status_code=400, detail=str(e))

    recent = sorted(logs, key=lambda log: (log.injection_date, log.id), reverse=True)[:5]
    return {
        "medication": medication_to_dict(medication),
        "next_due": next_due,
        "days_until_due": days,
        "status": adherence.classify(days)._asdict(),
        "recent_injections": [injection_to_dict(log) for log in recent],
    }

@app.get("/api/stats")
def get_stats(
    medication_id: str | None = None,
    months: int = Query(3, ge=1, le=60),
    db: Session = Depends(get_db),
    profile: models.Profile = Depends(require_auth),
    now: datetime.datetime = Depends(get_now)
):
    """Adherence, interval and histogram figures over the last few months."""
    tz = profile_tz(profile)
    local_now = now.astimezone(tz)
    window_start = datetime.datetime.combine(subtract_months(local_now.date(), months), local_now.time(), tzinfo=tz)

    medication = get_selected_medication(db, profile, medication_id)
    if medication is None:
        summary = adherence.summarize(None, [], now, tz)
        summary["medication"] = None
        return summary

    # Full history: the due status needs the last shot even when it predates the window
    _, events = medication_events(db, profile, medication)
    try:
        summary = adherence.summarize(medication, events, now, tz, window_start=window_start, window_end=now)
    except adherence.InvalidScheduleError as e:
        raise HTTPException(status_code=400, detail=str(e))
    summary["medication"] = medication_to_dict(medication)
    summary["window_start"] = window_start
    summary["window_end"] = now
    return summary

@app.get("/api/calendar")
def get_calendar(
    year: int | None = Query(None, ge=1970, le=9999),
    month: int | None = Query(None, ge=1, le=12),
    db: Session = Depends(get_db),
    profile: models.Profile = Depends(require_auth),
    now: datetime.datetime = Depends(get_now)
):
    """Sunday-first weeks covering one month, with the shots logged on each day."""
    tz = profile_tz(profile)
    today = now.astimezone(tz).date()
    year = year or today.year
    month = month or today.month

    first = datetime.date(year, month, 1)
    last = datetime.date(year, month, calendar.monthrange(year, month)[1])
    grid_start = first - datetime.timedelta(days=(first.weekday() + 1) % 7)
    grid_end = last + datetime.timedelta(days=(5 - last.weekday()) % 7)

    logs = db.query(models.InjectionLog).filter(
        models.InjectionLog.user_id == profile.id,
        models.InjectionLog.injection_date >= local_midnight_utc(grid_start, tz),
        models.InjectionLog.injection_date < local_midnight_utc(grid_end + datetime.timedelta(days=1), tz)
    ).order_by(models.InjectionLog.injection_date.asc(), models.InjectionLog.id.asc()).all()

    by_day = {}
    for log in logs:
        day = as_utc(log.injection_date).astimezone(tz).date()
        by_day.setdefault(day, []).append(injection_to_dict(log))

    weeks = []
    day = grid_start
    while day <= grid_end:
        week = []
        for _ in range(7):
            week.append({
                "date": day.isoformat(),
                "in_month": day.month == month,
                "is_today": day == today,
                "injections": by_day.get(day, []),
            })
            day += datetime.timedelta(days=1)
        weeks.append(week)

    return {"year": year, "month": month, "label": f"{calendar.month_name[month]} {year}", "weeks": weeks}

# Reminder endpoints; stored for the frontend, nothing here sends them
class ReminderCreate(BaseModel):
    medication_id: str
    reminder_time: datetime.time
    hours_before: int = 0
    is_active: bool = True

    @field_validator("hours_before")
    @classmethod
    def check_hours_before(cls, value: int) -> int:
        if value < 0:
            raise ValueError("hours_before cannot be negative")
        return value

class ReminderUpdate(BaseModel):
    reminder_time: datetime.time | None = None
    hours_before: int | None = None
    is_active: bool | None = None

    @field_validator("hours_before")
    @classmethod
    def check_hours_before(cls, value: int | None) -> int | None:
        if value is not None and value < 0:
            raise ValueError("hours_before cannot be negative")
        return value

def get_owned_reminder(db: Session, profile: models.Profile, reminder_id: str) -> models.Reminder:
    reminder = db.query(models.Reminder).filter(
        models.Reminder.id == reminder_id,
        models.Reminder.user_id == profile.id
    ).first()
    if reminder is None:
        raise HTTPException(status_code=404, detail="Reminder not found")
    return reminder

@app.get("/api/reminders")
def get_reminders(db: Session = Depends(get_db), profile: models.Profile = Depends(require_auth)):
    reminders = db.query(models.Reminder).filter(models.Reminder.user_id == profile.id).order_by(models.Reminder.reminder_time.asc()).all()
    return [reminder_to_dict(r) for r in reminders]

@app.post("/api/reminders")
def create_reminder(reminder: ReminderCreate, db: Session = Depends(get_db), profile: models.Profile = Depends(require_auth)):
    get_owned_medication(db, profile, reminder.medication_id)
    db_reminder = models.Reminder(
        user_id=profile.id,
        medication_id=reminder.medication_id,
        reminder_time=reminder.reminder_time,
        hours_before=reminder.hours_before,
        is_active=reminder.is_active
    )
    db.add(db_reminder)
    db.commit()
    db.refresh(db_reminder)
    return reminder_to_dict(db_reminder)

@app.put("/api/reminders/{reminder_id}")
def update_reminder(reminder_id: str, reminder: ReminderUpdate, db: Session = Depends(get_db), profile: models.Profile = Depends(require_auth)):
    db_reminder = get_owned_reminder(db, profile, reminder_id)
    for key, value in reminder.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(db_reminder, key, value)
    db.commit()
    db.refresh(db_reminder)
    return reminder_to_dict(db_reminder)

@app.delete("/api/reminders/{reminder_id}")
def delete_reminder(reminder_id: str, db: Session = Depends(get_db), profile: models.Profile = Depends(require_auth)):
    db_reminder = get_owned_reminder(db, profile, reminder_id)
    db.delete(db_reminder)
    db.commit()
    return {"ok": True}

@app.get("/api/health")
def health():
    return {"status": "ok"}
