from fastapi import FastAPI, HTTPException, Depends, Header, APIRouter, BackgroundTasks
from pydantic import BaseModel, Field, ConfigDict
from typing import Any, Dict, List, Optional
from clinicdesk_shared import (
    RequestIDMiddleware,
    configure_cors,
    add_standard_health,
    install_error_handlers,
    register_shutdown,
    register_startup,
    setup_json_logging,
)
from sqlalchemy import create_engine, String, Integer, Text, DateTime, JSON, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, Session
from datetime import datetime, timezone
import logging
import os
import uuid

from .events import publish_notifications
from .notifications import build_jobs, is_valid_email, is_valid_phone_number
from .scheduling import (
    ACTIVE_STATUSES,
    AppointmentConflict,
    AppointmentWindow,
    ConflictReason,
    add_appointment_slots,
    adjacent_dates,
    availability_from_json,
    availability_to_json,
    detect_conflicts,
    find_overlapping,
    format_minutes,
    parse_duration,
    parse_hhmm,
    parse_iso_date,
    prune_appointment_slots,
    slot_fits,
    sort_slots,
    Slot,
    DaySchedule,
)


def _env_or(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v is not None else default


def _env_bool(key: str, default: bool = False) -> bool:
    v = os.getenv(key)
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on", "t")


log = logging.getLogger("clinicdesk.clinic")

app = FastAPI(title="Clinic API", version="0.1.0")
setup_json_logging(service="clinic")
app.add_middleware(RequestIDMiddleware)
configure_cors(app, os.getenv("ALLOWED_ORIGINS", ""))
install_error_handlers(app)

router = APIRouter()


DB_URL = _env_or("DB_URL", "sqlite+pysqlite:////tmp/clinic.db")
DB_SCHEMA = os.getenv("DB_SCHEMA") if not DB_URL.startswith("sqlite") else None

STAFF_ROLES = ("Physiotherapist", "StrengthAndConditioning", "ClinicalTeam", "FrontDesk", "Admin")
CLINICAL_ROLES = ("Physiotherapist", "StrengthAndConditioning", "ClinicalTeam")
STAFF_STATUSES = ("Active", "Inactive")
PATIENT_STATUSES = ("pending", "ongoing", "completed", "cancelled")
APPOINTMENT_STATUSES = ("pending", "ongoing", "completed", "cancelled")
NOTIFICATION_CATEGORIES = ("appointment", "reminder", "system", "patient", "billing", "other")


class Base(DeclarativeBase):
    pass


class Staff(Base):
    __tablename__ = "staff"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200))
    role: Mapped[str] = mapped_column(String(32), default="Physiotherapist")
    status: Mapped[str] = mapped_column(String(16), default="Active")  # Active|Inactive
    email: Mapped[Optional[str]] = mapped_column(String(200), default=None)
    phone: Mapped[Optional[str]] = mapped_column(String(32), default=None)
    availability: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)  # {"YYYY-MM-DD": {enabled, slots}}
    availability_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Patient(Base):
    __tablename__ = "patients"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    patient_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(200))
    email: Mapped[Optional[str]] = mapped_column(String(200), default=None)
    phone: Mapped[Optional[str]] = mapped_column(String(32), default=None)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    assigned_staff_id: Mapped[Optional[str]] = mapped_column(String(64), default=None, index=True)
    assigned_doctor: Mapped[Optional[str]] = mapped_column(String(200), default=None)
    report_access: Mapped[List[str]] = mapped_column(JSON, default=list)  # staff names
    transferred_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    patient_id: Mapped[str] = mapped_column(String(36), index=True)  # Patient.id
    patient: Mapped[Optional[str]] = mapped_column(String(200), default=None)
    staff_id: Mapped[str] = mapped_column(String(64), index=True)
    doctor: Mapped[Optional[str]] = mapped_column(String(200), default=None)
    date: Mapped[str] = mapped_column(String(10))  # YYYY-MM-DD
    time: Mapped[str] = mapped_column(String(5))  # HH:MM
    duration: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    transferred_from: Mapped[Optional[str]] = mapped_column(String(200), default=None)
    transferred_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TransferRequest(Base):
    __tablename__ = "transfer_requests"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    patient_id: Mapped[str] = mapped_column(String(64))  # clinic-facing id
    patient_name: Mapped[str] = mapped_column(String(200))
    patient_document_id: Mapped[str] = mapped_column(String(36), index=True)
    from_staff_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    from_therapist: Mapped[Optional[str]] = mapped_column(String(200), default=None)
    to_staff_id: Mapped[str] = mapped_column(String(64), index=True)
    to_therapist: Mapped[str] = mapped_column(String(200))
    requested_by_id: Mapped[str] = mapped_column(String(64))
    requested_by: Mapped[str] = mapped_column(String(200))
    status: Mapped[str] = mapped_column(String(16), default="pending")  # pending|accepted|rejected
    reason: Mapped[Optional[str]] = mapped_column(Text, default=None)
    requested_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)


class TransferHistory(Base):
    __tablename__ = "transfer_history"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transfer_request_id: Mapped[Optional[str]] = mapped_column(String(36), default=None)
    patient_id: Mapped[str] = mapped_column(String(64), index=True)
    patient_name: Mapped[str] = mapped_column(String(200))
    from_therapist: Mapped[Optional[str]] = mapped_column(String(200), default=None)
    to_therapist: Mapped[str] = mapped_column(String(200))
    transferred_by: Mapped[str] = mapped_column(String(200))
    transferred_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    reason: Mapped[Optional[str]] = mapped_column(Text, default=None)


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    title: Mapped[str] = mapped_column(String(200))
    message: Mapped[str] = mapped_column(Text)
    category: Mapped[str] = mapped_column(String(16), default="patient")
    status: Mapped[str] = mapped_column(String(8), default="unread")  # unread|read
    meta: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    action: Mapped[str] = mapped_column(String(64), index=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    resource_type: Mapped[Optional[str]] = mapped_column(String(32), default=None)
    resource_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    meta: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)


engine = create_engine(DB_URL, future=True)


def get_session() -> Session:
    with Session(engine) as s:
        yield s


def _db_ok() -> bool:
    with Session(engine) as s:
        s.execute(select(1))
    return True


add_standard_health(app, checks={"db": _db_ok})


@register_startup(app)
def _startup():
    Base.metadata.create_all(engine)
    _seed_demo_data()


@register_shutdown(app)
def _shutdown():
    engine.dispose()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def _norm_date(val: Optional[str]) -> str:
    try:
        return parse_iso_date(val or "")
    except ValueError:
        raise HTTPException(status_code=400, detail="date must be YYYY-MM-DD")


def _norm_time(val: Optional[str]) -> str:
    try:
        return format_minutes(parse_hhmm(val or ""))
    except ValueError:
        raise HTTPException(status_code=400, detail="time must be HH:MM 24h")


def _window(a: Appointment, date: Optional[str] = None, time: Optional[str] = None) -> AppointmentWindow:
    return AppointmentWindow(id=a.id, date=date or a.date, time=time or a.time, duration=a.duration)


def _actor(s: Session, staff_id: Optional[str]) -> Staff:
    if not staff_id:
        raise HTTPException(status_code=401, detail="X-Staff-Id header required")
    st = s.get(Staff, staff_id.strip())
    if not st:
        raise HTTPException(status_code=401, detail="unknown staff member")
    return st


def _active_appointments_for_patient(s: Session, patient_doc_id: str) -> List[Appointment]:
    stmt = (
        select(Appointment)
        .where(Appointment.patient_id == patient_doc_id, Appointment.status.in_(ACTIVE_STATUSES))
        .order_by(Appointment.date, Appointment.time)
    )
    return list(s.execute(stmt).scalars().all())


def _active_appointments_for_staff(s: Session, staff_id: str) -> List[Appointment]:
    stmt = select(Appointment).where(Appointment.staff_id == staff_id, Appointment.status.in_(ACTIVE_STATUSES))
    return list(s.execute(stmt).scalars().all())


def _booked_checker(s: Session, staff_id: str):
    def is_booked(w: AppointmentWindow) -> bool:
        stmt = select(Appointment.id).where(
            Appointment.staff_id == staff_id,
            Appointment.date == w.date,
            Appointment.time == w.time,
            Appointment.status.in_(ACTIVE_STATUSES),
            Appointment.id != w.id,
        )
        return s.execute(stmt.limit(1)).first() is not None

    return is_booked


def check_transfer_conflicts(s: Session, windows: List[AppointmentWindow], to_staff_id: str) -> List[AppointmentConflict]:
    """Conflicts the receiving therapist would inherit. Lookup failures mean none."""
    try:
        dest = s.get(Staff, to_staff_id)
        if not dest:
            log.warning("conflict check: staff %s not found", to_staff_id)
            return []
        availability = availability_from_json(dest.availability)
        return detect_conflicts(windows, availability, _booked_checker(s, dest.id))
    except SQLAlchemyError as e:
        log.warning("conflict check for staff %s failed: %s", to_staff_id, e)
        return []


def _count_uncovered(availability: Dict[str, DaySchedule], windows: List[AppointmentWindow]) -> int:
    n = 0
    for w in windows:
        day = availability.get(w.date)
        if day is None or not day.enabled or not any(slot_fits(sl, w) for sl in day.slots):
            n += 1
    return n


def _notify(s: Session, user_id: Optional[str], title: str, message: str, meta: Dict[str, Any], category: str = "patient") -> None:
    if not user_id:
        return
    s.add(
        Notification(
            id=_new_id(),
            user_id=user_id,
            title=title,
            message=message,
            category=(category if category in NOTIFICATION_CATEGORIES else "other"),
            status="unread",
            meta=meta,
            created_at=_now(),
        )
    )


def _audit(s: Session, action: str, user_id: Optional[str], resource_type: str, resource_id: str, meta: Optional[Dict[str, Any]] = None) -> None:
    s.add(
        AuditLog(
            action=action,
            user_id=user_id,
            resource_type=resource_type,
            resource_id=resource_id,
            meta=meta or {},
            created_at=_now(),
        )
    )


def _publish(jobs: List[Dict[str, Any]]) -> None:
    try:
        publish_notifications(jobs)
    except Exception as e:
        log.error("notification dispatch failed: %s", e)


def _dispatch(background_tasks: BackgroundTasks, jobs: List[Dict[str, Any]]) -> None:
    # Call only after commit. Delivery runs once the response has been sent.
    if jobs:
        background_tasks.add_task(_publish, jobs)


def _seed_demo_data():
    if not _env_bool("CLINIC_DEMO_SEED", False):
        return
    with Session(engine) as s:
        existing = s.execute(select(func.count(Staff.id))).scalar() or 0
        if existing > 0:
            return
        today = _now().date().isoformat()
        day = {"enabled": True, "slots": [{"start": "09:00", "end": "12:00"}, {"start": "13:00", "end": "17:00"}]}
        s.add_all(
            [
                Staff(id="staff-a", name="Dr. Amelia Hart", role="Physiotherapist", email="amelia@example.com", availability={today: day}),
                Staff(id="staff-b", name="Dr. Ben Okafor", role="Physiotherapist", email="ben@example.com", availability={today: day}),
                Staff(id="staff-c", name="Chris Lee", role="StrengthAndConditioning", availability={}),
                Staff(id="front-1", name="Front Desk", role="FrontDesk"),
            ]
        )
        p = Patient(id=_new_id(), patient_id="CSS-0001", name="Jordan Smith", status="ongoing", assigned_staff_id="staff-a", assigned_doctor="Dr. Amelia Hart", report_access=[])
        s.add(p)
        s.add(Appointment(id=_new_id(), patient_id=p.id, patient=p.name, staff_id="staff-a", doctor="Dr. Amelia Hart", date=today, time="10:00", duration=30, status="pending"))
        s.commit()


# ---------------------------------------------------------------------------
# Schemas


class SlotIn(BaseModel):
    start: str = Field(description="HH:MM 24h")
    end: str = Field(description="HH:MM 24h; not after start means the slot runs past midnight")


class DayScheduleIn(BaseModel):
    enabled: bool = True
    slots: List[SlotIn] = []


class StaffCreate(BaseModel):
    id: Optional[str] = None
    name: str
    role: str = Field(default="Physiotherapist", description="|".join(STAFF_ROLES))
    status: str = Field(default="Active", description="Active|Inactive")
    email: Optional[str] = None
    phone: Optional[str] = None


class StaffOut(BaseModel):
    id: str
    name: str
    role: str
    status: str
    email: Optional[str]
    phone: Optional[str]
    model_config = ConfigDict(from_attributes=True)


class AvailabilityOut(BaseModel):
    staff_id: str
    availability: Dict[str, Any]
    updated_at: Optional[datetime] = None


class PatientCreate(BaseModel):
    patient_id: Optional[str] = None
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    status: str = "pending"
    assigned_staff_id: Optional[str] = None


class PatientOut(BaseModel):
    id: str
    patient_id: str
    name: str
    email: Optional[str]
    phone: Optional[str]
    status: str
    assigned_staff_id: Optional[str]
    assigned_doctor: Optional[str]
    report_access: List[str] = []
    transferred_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class StatusUpdate(BaseModel):
    status: str


class AppointmentCreate(BaseModel):
    patient_id: str = Field(description="patient document id")
    staff_id: str
    date: str = Field(description="YYYY-MM-DD")
    time: str = Field(description="HH:MM 24h")
    duration: Optional[Any] = Field(default=None, description="minutes; 30 when absent or invalid")
    status: str = "pending"


class AppointmentReschedule(BaseModel):
    date: str = Field(description="YYYY-MM-DD")
    time: str = Field(description="HH:MM 24h")
    duration: Optional[Any] = Field(default=None, description="minutes; keeps the current length when absent")


class AppointmentOut(BaseModel):
    id: str
    patient_id: str
    patient: Optional[str]
    staff_id: str
    doctor: Optional[str]
    date: str
    time: str
    duration: Optional[int]
    status: str
    transferred_from: Optional[str] = None
    transferred_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class ConflictCheckIn(BaseModel):
    staff_id: str
    date: str
    time: str
    duration: Optional[Any] = None
    appointment_id: Optional[str] = None


class ConflictCheckOut(BaseModel):
    has_conflict: bool
    conflicting_appointments: List[AppointmentOut] = []


class ConflictOut(BaseModel):
    appointment_id: str
    date: str
    time: str
    reason: str


class TransferCheckIn(BaseModel):
    patient_id: str = Field(description="patient document id")
    to_staff_id: str


class TransferCreate(BaseModel):
    patient_id: str = Field(description="patient document id")
    to_staff_id: Optional[str] = None
    reason: Optional[str] = None


class TransferAccept(BaseModel):
    confirm_conflicts: bool = False


class TransferOut(BaseModel):
    id: str
    patient_id: str
    patient_name: str
    patient_document_id: str
    from_staff_id: Optional[str]
    from_therapist: Optional[str]
    to_staff_id: str
    to_therapist: str
    requested_by_id: str
    requested_by: str
    status: str
    reason: Optional[str]
    requested_at: Optional[datetime]
    responded_at: Optional[datetime]
    model_config = ConfigDict(from_attributes=True)


class TransferResultOut(BaseModel):
    transfer: TransferOut
    conflicts: List[ConflictOut] = []
    auto_created_slots: int = 0


class TransferHistoryOut(BaseModel):
    id: int
    transfer_request_id: Optional[str]
    patient_id: str
    patient_name: str
    from_therapist: Optional[str]
    to_therapist: str
    transferred_by: str
    transferred_at: Optional[datetime]
    reason: Optional[str]
    model_config = ConfigDict(from_attributes=True)


class SessionTransferItem(BaseModel):
    appointment_id: str
    date: Optional[str] = None
    time: Optional[str] = None


class SessionTransferIn(BaseModel):
    appointments: List[SessionTransferItem] = []
    to_staff_id: Optional[str] = None
    reason: Optional[str] = None


class SessionTransferOut(BaseModel):
    transferred: int
    appointments: List[AppointmentOut] = []
    conflicts: List[ConflictOut] = []
    auto_created_slots: int = 0


class NotificationOut(BaseModel):
    id: str
    user_id: str
    title: str
    message: str
    category: str
    status: str
    metadata: Dict[str, Any] = {}
    created_at: Optional[datetime] = None
    read_at: Optional[datetime] = None


class AuditLogOut(BaseModel):
    id: int
    action: str
    user_id: Optional[str]
    resource_type: Optional[str]
    resource_id: Optional[str]
    metadata: Dict[str, Any] = {}
    created_at: Optional[datetime] = None


def _conflicts_out(conflicts: List[AppointmentConflict]) -> List[ConflictOut]:
    return [ConflictOut(appointment_id=c.appointment_id, date=c.date, time=c.time, reason=c.reason.value) for c in conflicts]


def _notification_to_out(n: Notification) -> NotificationOut:
    return NotificationOut(
        id=n.id,
        user_id=n.user_id,
        title=n.title,
        message=n.message,
        category=n.category,
        status=n.status,
        metadata=n.meta or {},
        created_at=n.created_at,
        read_at=n.read_at,
    )


def _transfer_to_result(tr: TransferRequest, conflicts: List[AppointmentConflict], auto_created: int = 0) -> TransferResultOut:
    return TransferResultOut(
        transfer=TransferOut.model_validate(tr),
        conflicts=_conflicts_out(conflicts),
        auto_created_slots=auto_created,
    )


# ---------------------------------------------------------------------------
# Staff


@router.post("/staff", response_model=StaffOut)
def create_staff(req: StaffCreate, s: Session = Depends(get_session)):
    if not req.name.strip():
        raise HTTPException(status_code=400, detail="name required")
    if req.role not in STAFF_ROLES:
        raise HTTPException(status_code=400, detail="invalid role")
    if req.status not in STAFF_STATUSES:
        raise HTTPException(status_code=400, detail="invalid status")
    if req.email and not is_valid_email(req.email):
        raise HTTPException(status_code=400, detail="invalid email")
    if req.phone and not is_valid_phone_number(req.phone):
        raise HTTPException(status_code=400, detail="invalid phone number")
    sid = (req.id or "").strip() or _new_id()
    if s.get(Staff, sid):
        raise HTTPException(status_code=409, detail="staff id already exists")
    st = Staff(
        id=sid,
        name=req.name.strip(),
        role=req.role,
        status=req.status,
        email=(req.email or None),
        phone=(req.phone or None),
        availability={},
    )
    s.add(st)
    s.commit()
    s.refresh(st)
    return st


@router.get("/staff", response_model=List[StaffOut])
def list_staff(role: str = "", status: str = "", limit: int = 100, s: Session = Depends(get_session)):
    stmt = select(Staff)
    if role:
        stmt = stmt.where(Staff.role == role)
    if status:
        stmt = stmt.where(Staff.status == status)
    stmt = stmt.order_by(Staff.name).limit(max(1, min(limit, 500)))
    return s.execute(stmt).scalars().all()


@router.get("/staff/{staff_id}", response_model=StaffOut)
def get_staff(staff_id: str, s: Session = Depends(get_session)):
    st = s.get(Staff, staff_id)
    if not st:
        raise HTTPException(status_code=404, detail="staff not found")
    return st


@router.get("/staff/{staff_id}/availability", response_model=AvailabilityOut)
def get_staff_availability(staff_id: str, s: Session = Depends(get_session)):
    st = s.get(Staff, staff_id)
    if not st:
        raise HTTPException(status_code=404, detail="staff not found")
    av = availability_from_json(st.availability)
    return AvailabilityOut(staff_id=st.id, availability=availability_to_json(av), updated_at=st.availability_updated_at)


@router.put("/staff/{staff_id}/availability", response_model=AvailabilityOut)
def set_staff_availability(staff_id: str, days: Dict[str, DayScheduleIn], s: Session = Depends(get_session)):
    st = s.get(Staff, staff_id)
    if not st:
        raise HTTPException(status_code=404, detail="staff not found")
    av: Dict[str, DaySchedule] = {}
    for date_key, day in days.items():
        d = _norm_date(date_key)
        slots = [Slot(start=_norm_time(sl.start), end=_norm_time(sl.end)) for sl in day.slots]
        av[d] = DaySchedule(enabled=day.enabled, slots=sort_slots(slots))
    st.availability = availability_to_json(av)
    st.availability_updated_at = _now()
    _audit(s, "availability_updated", st.id, "staff", st.id, {"dates": sorted(av)})
    s.commit()
    return AvailabilityOut(staff_id=st.id, availability=st.availability, updated_at=st.availability_updated_at)


# ---------------------------------------------------------------------------
# Patients


@router.post("/patients", response_model=PatientOut)
def create_patient(req: PatientCreate, s: Session = Depends(get_session)):
    if not req.name.strip():
        raise HTTPException(status_code=400, detail="name required")
    if req.status not in PATIENT_STATUSES:
        raise HTTPException(status_code=400, detail="invalid status")
    if req.email and not is_valid_email(req.email):
        raise HTTPException(status_code=400, detail="invalid email")
    if req.phone and not is_valid_phone_number(req.phone):
        raise HTTPException(status_code=400, detail="invalid phone number")
    doctor = None
    if req.assigned_staff_id:
        st = s.get(Staff, req.assigned_staff_id)
        if not st:
            raise HTTPException(status_code=404, detail="staff not found")
        doctor = st.name
    p = Patient(
        id=_new_id(),
        patient_id=(req.patient_id or "").strip() or f"P-{uuid.uuid4().hex[:8].upper()}",
        name=req.name.strip(),
        email=(req.email or None),
        phone=(req.phone or None),
        status=req.status,
        assigned_staff_id=(req.assigned_staff_id or None),
        assigned_doctor=doctor,
        report_access=[],
    )
    s.add(p)
    _audit(s, "patient_created", None, "patient", p.id, {"patientId": p.patient_id})
    s.commit()
    s.refresh(p)
    return p


@router.get("/patients", response_model=List[PatientOut])
def list_patients(assigned_staff_id: str = "", status: str = "", q: str = "", limit: int = 100, s: Session = Depends(get_session)):
    stmt = select(Patient)
    if assigned_staff_id:
        stmt = stmt.where(Patient.assigned_staff_id == assigned_staff_id)
    if status:
        stmt = stmt.where(Patient.status == status)
    if q:
        stmt = stmt.where(func.lower(Patient.name).like(f"%{q.lower()}%") | func.lower(Patient.patient_id).like(f"%{q.lower()}%"))
    stmt = stmt.order_by(Patient.name).limit(max(1, min(limit, 500)))
    return s.execute(stmt).scalars().all()


@router.get("/patients/{patient_doc_id}", response_model=PatientOut)
def get_patient(patient_doc_id: str, s: Session = Depends(get_session)):
    p = s.get(Patient, patient_doc_id)
    if not p:
        raise HTTPException(status_code=404, detail="patient not found")
    return p


@router.post("/patients/{patient_doc_id}/status", response_model=PatientOut)
def update_patient_status(patient_doc_id: str, req: StatusUpdate, s: Session = Depends(get_session)):
    if req.status not in PATIENT_STATUSES:
        raise HTTPException(status_code=400, detail="invalid status")
    p = s.get(Patient, patient_doc_id)
    if not p:
        raise HTTPException(status_code=404, detail="patient not found")
    p.status = req.status
    s.commit()
    s.refresh(p)
    return p


# ---------------------------------------------------------------------------
# Appointments


def _overlapping(s: Session, staff_id: str, candidate: AppointmentWindow) -> List[Appointment]:
    stmt = select(Appointment).where(
        Appointment.staff_id == staff_id,
        Appointment.date.in_(adjacent_dates(candidate.date)),
        Appointment.status != "cancelled",
    )
    rows = {a.id: a for a in s.execute(stmt).scalars().all()}
    hits = find_overlapping([_window(a) for a in rows.values()], candidate)
    return [rows[w.id] for w in hits]


@router.post("/appointments/check-conflict", response_model=ConflictCheckOut)
def check_appointment_conflict(req: ConflictCheckIn, s: Session = Depends(get_session)):
    candidate = AppointmentWindow(
        id=req.appointment_id or "",
        date=_norm_date(req.date),
        time=_norm_time(req.time),
        duration=parse_duration(req.duration),
    )
    hits = _overlapping(s, req.staff_id, candidate)
    return ConflictCheckOut(
        has_conflict=bool(hits),
        conflicting_appointments=[AppointmentOut.model_validate(a) for a in hits],
    )


@router.post("/appointments", response_model=AppointmentOut)
def create_appointment(req: AppointmentCreate, background_tasks: BackgroundTasks, s: Session = Depends(get_session)):
    if req.status not in APPOINTMENT_STATUSES:
        raise HTTPException(status_code=400, detail="invalid status")
    date = _norm_date(req.date)
    time = _norm_time(req.time)
    p = s.get(Patient, req.patient_id)
    if not p:
        raise HTTPException(status_code=404, detail="patient not found")
    st = s.get(Staff, req.staff_id)
    if not st:
        raise HTTPException(status_code=404, detail="staff not found")
    a = Appointment(
        id=_new_id(),
        patient_id=p.id,
        patient=p.name,
        staff_id=st.id,
        doctor=st.name,
        date=date,
        time=time,
        duration=parse_duration(req.duration),
        status=req.status,
    )
    if req.status != "cancelled" and _overlapping(s, st.id, _window(a)):
        raise HTTPException(status_code=409, detail="time slot conflicts with an existing appointment")
    s.add(a)
    _notify(s, st.id, "New Appointment", f"{p.name} booked for {date} at {time}.", {"type": "appointment", "appointmentId": a.id}, category="appointment")
    _audit(s, "appointment_created", st.id, "appointment", a.id, {"patientId": p.patient_id, "date": date, "time": time})
    s.commit()
    s.refresh(a)
    data = {"patientName": p.name, "date": date, "time": time, "doctor": st.name, "appointmentId": a.id}
    _dispatch(background_tasks, build_jobs("appointment-created", data, email=p.email, phone=p.phone))
    return a


@router.get("/appointments", response_model=List[AppointmentOut])
def list_appointments(
    patient_id: str = "",
    staff_id: str = "",
    date: str = "",
    status: str = "",
    limit: int = 200,
    s: Session = Depends(get_session),
):
    stmt = select(Appointment)
    if patient_id:
        stmt = stmt.where(Appointment.patient_id == patient_id)
    if staff_id:
        stmt = stmt.where(Appointment.staff_id == staff_id)
    if date:
        stmt = stmt.where(Appointment.date == date)
    if status:
        stmt = stmt.where(Appointment.status == status)
    stmt = stmt.order_by(Appointment.date, Appointment.time).limit(max(1, min(limit, 1000)))
    return s.execute(stmt).scalars().all()


@router.post("/appointments/{appt_id}/status", response_model=AppointmentOut)
def update_appointment_status(
    appt_id: str,
    req: StatusUpdate,
    background_tasks: BackgroundTasks,
    s: Session = Depends(get_session),
):
    if req.status not in APPOINTMENT_STATUSES:
        raise HTTPException(status_code=400, detail="invalid status")
    a = s.get(Appointment, appt_id)
    if not a:
        raise HTTPException(status_code=404, detail="appointment not found")
    previous = a.status
    a.status = req.status
    _audit(s, "appointment_status", a.staff_id, "appointment", a.id, {"from": previous, "to": req.status})
    s.commit()
    s.refresh(a)
    if req.status == "cancelled" and previous != "cancelled":
        p = s.get(Patient, a.patient_id)
        if p:
            data = {"patientName": p.name, "date": a.date, "time": a.time, "doctor": a.doctor}
            _dispatch(background_tasks, build_jobs("appointment-cancelled", data, email=p.email, phone=p.phone))
    return a


@router.post("/appointments/{appt_id}/reschedule", response_model=AppointmentOut)
def reschedule_appointment(
    appt_id: str,
    req: AppointmentReschedule,
    background_tasks: BackgroundTasks,
    s: Session = Depends(get_session),
):
    a = s.get(Appointment, appt_id)
    if not a:
        raise HTTPException(status_code=404, detail="appointment not found")
    if a.status in ("completed", "cancelled"):
        raise HTTPException(status_code=400, detail=f"cannot reschedule a {a.status} appointment")
    date = _norm_date(req.date)
    time = _norm_time(req.time)
    duration = parse_duration(req.duration) if req.duration is not None else a.duration
    candidate = AppointmentWindow(id=a.id, date=date, time=time, duration=duration)
    if _overlapping(s, a.staff_id, candidate):
        raise HTTPException(status_code=409, detail="time slot conflicts with an existing appointment")
    previous = {"date": a.date, "time": a.time}
    a.date = date
    a.time = time
    a.duration = duration
    _notify(
        s,
        a.staff_id,
        "Appointment Rescheduled",
        f"{a.patient or 'An appointment'} moved from {previous['date']} {previous['time']} to {date} at {time}.",
        {"type": "appointment", "appointmentId": a.id},
        category="appointment",
    )
    _audit(s, "appointment_rescheduled", a.staff_id, "appointment", a.id, {"from": previous, "to": {"date": date, "time": time}})
    s.commit()
    s.refresh(a)
    p = s.get(Patient, a.patient_id)
    if p:
        data = {"patientName": p.name, "date": a.date, "time": a.time, "doctor": a.doctor}
        _dispatch(background_tasks, build_jobs("appointment-updated", data, email=p.email, phone=p.phone))
    return a


# ---------------------------------------------------------------------------
# Transfer requests


@router.post("/transfers/check", response_model=List[ConflictOut])
def check_transfer(req: TransferCheckIn, s: Session = Depends(get_session)):
    p = s.get(Patient, req.patient_id)
    if not p:
        raise HTTPException(status_code=404, detail="patient not found")
    windows = [_window(a) for a in _active_appointments_for_patient(s, p.id)]
    return _conflicts_out(check_transfer_conflicts(s, windows, req.to_staff_id))


@router.post("/transfers", response_model=TransferResultOut)
def create_transfer(
    req: TransferCreate,
    background_tasks: BackgroundTasks,
    x_staff_id: Optional[str] = Header(default=None, alias="X-Staff-Id"),
    s: Session = Depends(get_session),
):
    actor = _actor(s, x_staff_id)
    to_id = (req.to_staff_id or "").strip()
    if not to_id:
        raise HTTPException(status_code=400, detail="destination therapist required")
    if to_id == actor.id:
        raise HTTPException(status_code=400, detail="cannot transfer a patient to yourself")
    p = s.get(Patient, req.patient_id)
    if not p:
        raise HTTPException(status_code=404, detail="patient not found")
    if p.assigned_staff_id == to_id:
        raise HTTPException(status_code=400, detail="patient is already assigned to this therapist")
    dest = s.get(Staff, to_id)
    if not dest or dest.status != "Active" or dest.role not in CLINICAL_ROLES:
        raise HTTPException(status_code=404, detail="destination therapist not found")
    pending = s.execute(
        select(TransferRequest.id).where(
            TransferRequest.patient_document_id == p.id,
            TransferRequest.status == "pending",
        ).limit(1)
    ).first()
    if pending is not None:
        raise HTTPException(status_code=409, detail="a transfer request is already pending for this patient")

    windows = [_window(a) for a in _active_appointments_for_patient(s, p.id)]
    conflicts = check_transfer_conflicts(s, windows, dest.id)

    tr = TransferRequest(
        id=_new_id(),
        patient_id=p.patient_id,
        patient_name=p.name,
        patient_document_id=p.id,
        from_staff_id=p.assigned_staff_id,
        from_therapist=p.assigned_doctor,
        to_staff_id=dest.id,
        to_therapist=dest.name,
        requested_by_id=actor.id,
        requested_by=actor.name,
        status="pending",
        reason=(req.reason or None),
        requested_at=_now(),
    )
    s.add(tr)
    meta = {"type": "transfer_request", "transferRequestId": tr.id, "patientId": p.patient_id}
    _notify(
        s,
        dest.id,
        "Patient Transfer Request",
        f"{actor.name} has requested to transfer {p.name} ({p.patient_id}) to you. Please accept or reject the request.",
        meta,
    )
    if tr.from_staff_id and tr.from_staff_id != actor.id:
        _notify(
            s,
            tr.from_staff_id,
            "Patient Transfer Requested",
            f"A transfer request has been sent for {p.name} ({p.patient_id}) to {dest.name}. Waiting for acceptance.",
            meta,
        )
    _audit(s, "transfer_requested", actor.id, "transfer_request", tr.id, {"patientId": p.patient_id, "to": dest.id, "conflicts": len(conflicts)})
    s.commit()
    s.refresh(tr)
    log.info("transfer %s requested for patient %s to %s", tr.id, p.patient_id, dest.id)

    data = {"patientName": p.name, "patientId": p.patient_id, "toTherapist": dest.name, "requestedBy": actor.name}
    jobs = build_jobs("transfer-requested", data, email=dest.email, phone=dest.phone)
    if tr.from_staff_id and tr.from_staff_id != actor.id:
        src = s.get(Staff, tr.from_staff_id)
        if src:
            jobs += build_jobs("transfer-request-sent", data, email=src.email, phone=src.phone)
    _dispatch(background_tasks, jobs)
    return _transfer_to_result(tr, conflicts)


@router.get("/transfers/pending", response_model=List[TransferOut])
def list_pending_transfers(
    x_staff_id: Optional[str] = Header(default=None, alias="X-Staff-Id"),
    s: Session = Depends(get_session),
):
    actor = _actor(s, x_staff_id)
    stmt = (
        select(TransferRequest)
        .where(TransferRequest.to_staff_id == actor.id, TransferRequest.status == "pending")
        .order_by(TransferRequest.requested_at.desc())
    )
    return s.execute(stmt).scalars().all()


@router.get("/transfers/history", response_model=List[TransferHistoryOut])
def list_transfer_history(patient_id: str = "", limit: int = 100, s: Session = Depends(get_session)):
    stmt = select(TransferHistory)
    if patient_id:
        stmt = stmt.where(TransferHistory.patient_id == patient_id)
    stmt = stmt.order_by(TransferHistory.id.desc()).limit(max(1, min(limit, 500)))
    return s.execute(stmt).scalars().all()


@router.get("/transfers/{transfer_id}", response_model=TransferOut)
def get_transfer(transfer_id: str, s: Session = Depends(get_session)):
    tr = s.get(TransferRequest, transfer_id)
    if not tr:
        raise HTTPException(status_code=404, detail="transfer request not found")
    return tr


def _load_decidable(s: Session, transfer_id: str, actor: Staff) -> TransferRequest:
    tr = s.get(TransferRequest, transfer_id)
    if not tr:
        raise HTTPException(status_code=404, detail="transfer request not found")
    if tr.to_staff_id != actor.id:
        raise HTTPException(status_code=403, detail="only the receiving therapist can respond to this request")
    if tr.status != "pending":
        raise HTTPException(status_code=409, detail=f"transfer request already {tr.status}")
    return tr


def _claim(s: Session, tr: TransferRequest, status: str) -> None:
    res = s.execute(
        update(TransferRequest)
        .where(TransferRequest.id == tr.id, TransferRequest.status == "pending")
        .values(status=status, responded_at=_now())
    )
    if res.rowcount != 1:
        raise HTTPException(status_code=409, detail="transfer request is no longer pending")


@router.post("/transfers/{transfer_id}/accept", response_model=TransferResultOut)
def accept_transfer(
    transfer_id: str,
    background_tasks: BackgroundTasks,
    req: Optional[TransferAccept] = None,
    x_staff_id: Optional[str] = Header(default=None, alias="X-Staff-Id"),
    s: Session = Depends(get_session),
):
    actor = _actor(s, x_staff_id)
    tr = _load_decidable(s, transfer_id, actor)
    confirm = bool(req and req.confirm_conflicts)

    patient_windows = [_window(a) for a in _active_appointments_for_patient(s, tr.patient_document_id)]
    conflicts = check_transfer_conflicts(s, patient_windows, tr.to_staff_id)
    if not confirm and any(c.reason == ConflictReason.ALREADY_BOOKED for c in conflicts):
        raise HTTPException(
            status_code=409,
            detail={
                "message": "receiving therapist is already booked at some of these times; confirm to proceed",
                "conflicts": [c.model_dump() for c in _conflicts_out(conflicts)],
            },
        )

    now = _now()
    try:
        _claim(s, tr, "accepted")
        dest = s.get(Staff, tr.to_staff_id)
        p = s.get(Patient, tr.patient_document_id)
        if not dest or not p:
            raise HTTPException(status_code=404, detail="patient or therapist no longer exists")

        appts = _active_appointments_for_patient(s, p.id)
        windows = [_window(a) for a in appts]
        before = availability_from_json(dest.availability)
        auto_created = _count_uncovered(before, windows)
        after = add_appointment_slots(before, windows)
        if after != before:
            dest.availability = availability_to_json(after)
            dest.availability_updated_at = now

        p.assigned_staff_id = dest.id
        p.assigned_doctor = dest.name
        p.transferred_at = now
        for a in appts:
            a.staff_id = dest.id
            a.doctor = dest.name
            a.transferred_from = tr.from_therapist
            a.transferred_at = now
        s.flush()

        src = s.get(Staff, tr.from_staff_id) if tr.from_staff_id else None
        if src is not None:
            remaining = [_window(a) for a in _active_appointments_for_staff(s, src.id)]
            src_before = availability_from_json(src.availability)
            src_after = prune_appointment_slots(src_before, windows, remaining)
            if src_after != src_before:
                src.availability = availability_to_json(src_after)
                src.availability_updated_at = now

        s.add(
            TransferHistory(
                transfer_request_id=tr.id,
                patient_id=tr.patient_id,
                patient_name=tr.patient_name,
                from_therapist=tr.from_therapist,
                to_therapist=dest.name,
                transferred_by=actor.name,
                transferred_at=now,
                reason=tr.reason,
            )
        )
        _notify(
            s,
            tr.requested_by_id,
            "Transfer Request Accepted",
            f"{dest.name} has accepted the transfer request for {tr.patient_name} ({tr.patient_id}).",
            {"type": "transfer_accepted", "transferRequestId": tr.id, "patientId": tr.patient_id},
        )
        if tr.from_staff_id and tr.from_staff_id != tr.requested_by_id:
            _notify(
                s,
                tr.from_staff_id,
                "Patient Transferred",
                f"{tr.patient_name} ({tr.patient_id}) has been transferred from you to {dest.name}.",
                {"type": "transfer", "transferRequestId": tr.id, "patientId": tr.patient_id},
            )
        _audit(
            s,
            "transfer_accepted",
            actor.id,
            "transfer_request",
            tr.id,
            {"patientId": tr.patient_id, "appointments": len(appts), "autoCreatedSlots": auto_created},
        )
        s.commit()
    except HTTPException:
        s.rollback()
        raise
    except Exception:
        s.rollback()
        log.exception("failed to accept transfer %s", transfer_id)
        raise HTTPException(status_code=500, detail="failed to accept transfer, please try again")

    s.refresh(tr)
    log.info("transfer %s accepted by %s (%d appointments)", tr.id, actor.id, len(windows))

    data = {"patientName": tr.patient_name, "patientId": tr.patient_id, "toTherapist": tr.to_therapist}
    jobs: List[Dict[str, Any]] = []
    requester = s.get(Staff, tr.requested_by_id)
    if requester:
        jobs += build_jobs("transfer-accepted", data, email=requester.email, phone=requester.phone)
    if src is not None and src.id != tr.requested_by_id:
        jobs += build_jobs("patient-transferred", data, email=src.email, phone=src.phone)
    _dispatch(background_tasks, jobs)
    return _transfer_to_result(tr, conflicts, auto_created)


@router.post("/transfers/{transfer_id}/reject", response_model=TransferResultOut)
def reject_transfer(
    transfer_id: str,
    background_tasks: BackgroundTasks,
    x_staff_id: Optional[str] = Header(default=None, alias="X-Staff-Id"),
    s: Session = Depends(get_session),
):
    actor = _actor(s, x_staff_id)
    tr = _load_decidable(s, transfer_id, actor)
    try:
        _claim(s, tr, "rejected")
        _notify(
            s,
            tr.requested_by_id,
            "Transfer Request Rejected",
            f"{actor.name} has rejected the transfer request for {tr.patient_name} ({tr.patient_id}).",
            {"type": "transfer_rejected", "transferRequestId": tr.id, "patientId": tr.patient_id},
        )
        _audit(s, "transfer_rejected", actor.id, "transfer_request", tr.id, {"patientId": tr.patient_id})
        s.commit()
    except HTTPException:
        s.rollback()
        raise
    except Exception:
        s.rollback()
        log.exception("failed to reject transfer %s", transfer_id)
        raise HTTPException(status_code=500, detail="failed to reject transfer, please try again")

    s.refresh(tr)
    requester = s.get(Staff, tr.requested_by_id)
    if requester:
        data = {"patientName": tr.patient_name, "patientId": tr.patient_id, "toTherapist": tr.to_therapist}
        _dispatch(background_tasks, build_jobs("transfer-rejected", data, email=requester.email, phone=requester.phone))
    return _transfer_to_result(tr, [])


# ---------------------------------------------------------------------------
# Session transfers


def _session_transfer_plan(s: Session, req: SessionTransferIn):
    if not req.appointments:
        raise HTTPException(status_code=400, detail="select at least one appointment")
    to_id = (req.to_staff_id or "").strip()
    if not to_id:
        raise HTTPException(status_code=400, detail="target therapist required")
    target = s.get(Staff, to_id)
    if not target:
        raise HTTPException(status_code=404, detail="target therapist not found")
    plan = []
    seen = set()
    for item in req.appointments:
        if item.appointment_id in seen:
            continue
        seen.add(item.appointment_id)
        a = s.get(Appointment, item.appointment_id)
        if not a:
            raise HTTPException(status_code=400, detail=f"appointment {item.appointment_id} not found")
        if a.status == "cancelled":
            raise HTTPException(status_code=400, detail=f"appointment {item.appointment_id} is cancelled")
        date = _norm_date(item.date) if item.date else a.date
        time = _norm_time(item.time) if item.time else a.time
        plan.append((a, _window(a, date=date, time=time)))
    return target, plan


@router.post("/session-transfers/check", response_model=List[ConflictOut])
def check_session_transfer(req: SessionTransferIn, s: Session = Depends(get_session)):
    target, plan = _session_transfer_plan(s, req)
    return _conflicts_out(check_transfer_conflicts(s, [w for _, w in plan], target.id))


@router.post("/session-transfers", response_model=SessionTransferOut)
def execute_session_transfer(
    req: SessionTransferIn,
    background_tasks: BackgroundTasks,
    x_staff_id: Optional[str] = Header(default=None, alias="X-Staff-Id"),
    s: Session = Depends(get_session),
):
    actor = _actor(s, x_staff_id)
    target, plan = _session_transfer_plan(s, req)
    windows = [w for _, w in plan]
    conflicts = check_transfer_conflicts(s, windows, target.id)
    now = _now()
    patients: Dict[str, Patient] = {}
    try:
        for a, w in plan:
            original = a.doctor
            a.date = w.date
            a.time = w.time
            a.transferred_from = original
            a.transferred_at = now
            a.staff_id = target.id
            a.doctor = target.name
            p = patients.get(a.patient_id) or s.get(Patient, a.patient_id)
            if p is None:
                continue
            patients[p.id] = p
            access = list(p.report_access or [])
            for name in (original, target.name):
                if name and name not in access:
                    access.append(name)
            p.report_access = access

        before = availability_from_json(target.availability)
        auto_created = _count_uncovered(before, windows)
        after = add_appointment_slots(before, windows)
        if after != before:
            target.availability = availability_to_json(after)
            target.availability_updated_at = now

        _notify(
            s,
            target.id,
            "Sessions Transferred",
            f"{len(plan)} session(s) have been transferred to you by {actor.name}.",
            {"type": "transfer", "appointmentIds": [a.id for a, _ in plan]},
            category="appointment",
        )
        _audit(
            s,
            "session_transfer",
            actor.id,
            "appointment",
            ",".join(a.id for a, _ in plan)[:64],
            {"to": target.id, "count": len(plan), "reason": req.reason},
        )
        s.commit()
    except Exception:
        s.rollback()
        log.exception("session transfer to %s failed", target.id)
        raise HTTPException(status_code=500, detail="failed to transfer sessions, please try again")

    jobs: List[Dict[str, Any]] = []
    for a, _ in plan:
        s.refresh(a)
        p = patients.get(a.patient_id)
        if p:
            data = {"patientName": p.name, "date": a.date, "time": a.time, "doctor": target.name}
            jobs += build_jobs("appointment-updated", data, email=p.email, phone=p.phone)
    _dispatch(background_tasks, jobs)
    return SessionTransferOut(
        transferred=len(plan),
        appointments=[AppointmentOut.model_validate(a) for a, _ in plan],
        conflicts=_conflicts_out(conflicts),
        auto_created_slots=auto_created,
    )


# ---------------------------------------------------------------------------
# In-app notifications and audit


@router.get("/notifications", response_model=List[NotificationOut])
def list_notifications(
    unread_only: bool = False,
    limit: int = 50,
    x_staff_id: Optional[str] = Header(default=None, alias="X-Staff-Id"),
    s: Session = Depends(get_session),
):
    actor = _actor(s, x_staff_id)
    stmt = select(Notification).where(Notification.user_id == actor.id)
    if unread_only:
        stmt = stmt.where(Notification.status == "unread")
    stmt = stmt.order_by(Notification.created_at.desc()).limit(max(1, min(limit, 200)))
    return [_notification_to_out(n) for n in s.execute(stmt).scalars().all()]


@router.post("/notifications/{notification_id}/read", response_model=NotificationOut)
def mark_notification_read(
    notification_id: str,
    x_staff_id: Optional[str] = Header(default=None, alias="X-Staff-Id"),
    s: Session = Depends(get_session),
):
    actor = _actor(s, x_staff_id)
    n = s.get(Notification, notification_id)
    if not n or n.user_id != actor.id:
        raise HTTPException(status_code=404, detail="notification not found")
    if n.status != "read":
        n.status = "read"
        n.read_at = _now()
        s.commit()
        s.refresh(n)
    return _notification_to_out(n)


@router.get("/admin/audit-logs", response_model=List[AuditLogOut])
def list_audit_logs(action: str = "", limit: int = 100, s: Session = Depends(get_session)):
    stmt = select(AuditLog)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    stmt = stmt.order_by(AuditLog.id.desc()).limit(max(1, min(limit, 500)))
    return [
        AuditLogOut(
            id=r.id,
            action=r.action,
            user_id=r.user_id,
            resource_type=r.resource_type,
            resource_id=r.resource_id,
            metadata=r.meta or {},
            created_at=r.created_at,
        )
        for r in s.execute(stmt).scalars().all()
    ]


app.include_router(router)
