from datetime import date, datetime
from enum import Enum

from sqlalchemy import JSON, Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from attendance_engine.db import Base


class Role(str, Enum):
    ADMIN = 'admin'
    TEACHER = 'teacher'


class OverrideKind(str, Enum):
    ACADEMIC = 'academic'
    EMERGENCY = 'emergency'


class LeaveStatus(str, Enum):
    ACTIVE = 'active'
    CANCELLED = 'cancelled'
    COMPLETED = 'completed'


class AttendanceStatus(str, Enum):
    PRESENT = 'present'
    ABSENT = 'absent'
    ON_LEAVE = 'on_leave'
    EMERGENCY = 'emergency'


class UnitKind(str, Enum):
    PERIOD = 'period'
    PRAYER = 'prayer'


class RecordSource(str, Enum):
    TEACHER = 'teacher'
    LEAVE_SYNC = 'leave_sync'
    EMERGENCY = 'emergency'
    MAKEUP = 'makeup'


class Student(Base):
    __tablename__ = 'students'
    __table_args__ = (
        Index('ix_students_class', 'course_type', 'year', 'stream', 'section', 'active'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(160))
    roll_no: Mapped[str] = mapped_column(String(40), default='')
    course_type: Mapped[str] = mapped_column(String(20))
    year: Mapped[int] = mapped_column(Integer)
    stream: Mapped[str] = mapped_column(String(60), default='')
    section: Mapped[str] = mapped_column(String(10), default='A')
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    leave_grants: Mapped[list['LeaveGrant']] = relationship('LeaveGrant', back_populates='student')


class Subject(Base):
    __tablename__ = 'subjects'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(120))
    subject_code: Mapped[str | None] = mapped_column(String(40), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class TimetableSlot(Base):
    __tablename__ = 'timetable_slots'
    __table_args__ = (
        UniqueConstraint(
            'course_type', 'year', 'stream', 'section', 'day_of_week', 'period_number',
            name='uq_timetable_slots_class_day_period',
        ),
        Index('ix_timetable_slots_day', 'day_of_week', 'course_type', 'year'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    course_type: Mapped[str] = mapped_column(String(20))
    year: Mapped[int] = mapped_column(Integer)
    stream: Mapped[str] = mapped_column(String(60), default='')
    section: Mapped[str] = mapped_column(String(10), default='A')
    day_of_week: Mapped[str] = mapped_column(String(10))
    period_number: Mapped[int] = mapped_column(Integer)
    subject_id: Mapped[int | None] = mapped_column(ForeignKey('subjects.id'), nullable=True)
    start_time: Mapped[str] = mapped_column(String(5), default='')
    end_time: Mapped[str] = mapped_column(String(5), default='')
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    subject: Mapped['Subject'] = relationship('Subject')


class CalendarOverride(Base):
    __tablename__ = 'calendar_overrides'
    __table_args__ = (
        Index('ix_calendar_overrides_date_deleted', 'override_date', 'is_deleted'),
        Index('ix_calendar_overrides_class_date', 'course_type', 'year', 'section', 'override_date'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    override_date: Mapped[date] = mapped_column(Date, index=True)
    name: Mapped[str] = mapped_column(String(160))
    kind: Mapped[str] = mapped_column(String(20), default=OverrideKind.ACADEMIC.value)
    reason: Mapped[str] = mapped_column(Text, default='')
    affected_scope: Mapped[list] = mapped_column(JSON, default=lambda: ['all'])
    course_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    stream: Mapped[str | None] = mapped_column(String(60), nullable=True)
    section: Mapped[str | None] = mapped_column(String(10), nullable=True)
    affected_periods: Mapped[list] = mapped_column(JSON, default=list)
    triggered_at: Mapped[str | None] = mapped_column(String(5), nullable=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    deleted_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class LeaveGrant(Base):
    __tablename__ = 'leave_grants'
    __table_args__ = (
        Index('ix_leave_grants_student_status', 'student_id', 'status'),
        Index('ix_leave_grants_range', 'from_date', 'to_date'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    student_id: Mapped[int] = mapped_column(ForeignKey('students.id'))
    from_date: Mapped[date] = mapped_column(Date)
    to_date: Mapped[date] = mapped_column(Date)
    reason: Mapped[str] = mapped_column(Text, default='')
    status: Mapped[str] = mapped_column(String(20), default=LeaveStatus.ACTIVE.value)
    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cancelled_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    student: Mapped['Student'] = relationship('Student', back_populates='leave_grants')


class AttendanceRecord(Base):
    __tablename__ = 'attendance_records'
    __table_args__ = (
        UniqueConstraint('student_id', 'record_date', 'unit_kind', 'unit', name='uq_attendance_records_student_date_unit'),
        Index('ix_attendance_records_class_slot', 'record_date', 'unit_kind', 'unit', 'course_type', 'year', 'section'),
        Index('ix_attendance_records_leave_grant', 'leave_grant_id', 'source'),
        Index('ix_attendance_records_lock', 'lock_id'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    student_id: Mapped[int] = mapped_column(ForeignKey('students.id'))
    record_date: Mapped[date] = mapped_column(Date)
    unit_kind: Mapped[str] = mapped_column(String(10))
    unit: Mapped[str] = mapped_column(String(20))
    status: Mapped[str] = mapped_column(String(20))
    subject_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    course_type: Mapped[str] = mapped_column(String(20), default='')
    year: Mapped[int] = mapped_column(Integer, default=0)
    stream: Mapped[str] = mapped_column(String(60), default='')
    section: Mapped[str] = mapped_column(String(10), default='A')
    source: Mapped[str] = mapped_column(String(20), default=RecordSource.TEACHER.value)
    leave_grant_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    override_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    lock_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime)
    recorded_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class MissedSession(Base):
    __tablename__ = 'missed_sessions'
    __table_args__ = (
        UniqueConstraint('open_key', name='uq_missed_sessions_open_key'),
        Index('ix_missed_sessions_natural_key', 'course_type', 'year', 'stream', 'section', 'missed_date', 'period_number'),
        Index('ix_missed_sessions_completed_date', 'is_completed', 'missed_date'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    course_type: Mapped[str] = mapped_column(String(20))
    year: Mapped[int] = mapped_column(Integer)
    stream: Mapped[str] = mapped_column(String(60), default='')
    section: Mapped[str] = mapped_column(String(10), default='A')
    subject_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    subject_code: Mapped[str] = mapped_column(String(40), default='')
    subject_name: Mapped[str] = mapped_column(String(120), default='')
    missed_date: Mapped[date] = mapped_column(Date)
    period_number: Mapped[int] = mapped_column(Integer)
    day_of_week: Mapped[str] = mapped_column(String(10))
    scheduled_start_time: Mapped[str] = mapped_column(String(5), default='')
    scheduled_end_time: Mapped[str] = mapped_column(String(5), default='')
    detected_at: Mapped[datetime] = mapped_column(DateTime)
    reason: Mapped[str] = mapped_column(String(120), default='Attendance not taken')
    priority: Mapped[str] = mapped_column(String(10), default='normal')
    days_pending: Mapped[int] = mapped_column(Integer, default=0)
    auto_detected: Mapped[bool] = mapped_column(Boolean, default=True)
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    makeup_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    makeup_period: Mapped[int | None] = mapped_column(Integer, nullable=True)
    completed_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    open_key: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class AttendanceLock(Base):
    __tablename__ = 'attendance_locks'
    __table_args__ = (
        UniqueConstraint('lock_date', 'unit_kind', 'unit', 'scope_key', name='uq_attendance_locks_date_unit_scope'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    lock_date: Mapped[date] = mapped_column(Date, index=True)
    unit_kind: Mapped[str] = mapped_column(String(10))
    unit: Mapped[str] = mapped_column(String(20))
    scope_key: Mapped[str] = mapped_column(String(120))
    record_count: Mapped[int] = mapped_column(Integer, default=0)
    locked_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    locked_at: Mapped[datetime] = mapped_column(DateTime)


class AttendanceLockAudit(Base):
    __tablename__ = 'attendance_lock_audit'
    __table_args__ = (
        Index('ix_attendance_lock_audit_slot', 'lock_date', 'unit_kind', 'unit', 'scope_key'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    action: Mapped[str] = mapped_column(String(10))
    lock_date: Mapped[date] = mapped_column(Date)
    unit_kind: Mapped[str] = mapped_column(String(10))
    unit: Mapped[str] = mapped_column(String(20))
    scope_key: Mapped[str] = mapped_column(String(120))
    record_count: Mapped[int] = mapped_column(Integer, default=0)
    actor_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reason: Mapped[str] = mapped_column(Text, default='')
    created_at: Mapped[datetime] = mapped_column(DateTime)


class DetectionRun(Base):
    __tablename__ = 'detection_runs'
    __table_args__ = (
        Index('ix_detection_runs_target_stale', 'target_date', 'stale'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    target_date: Mapped[date] = mapped_column(Date)
    trigger: Mapped[str] = mapped_column(String(20), default='scheduler')
    triggered_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(30), default='ok')
    scanned: Mapped[int] = mapped_column(Integer, default=0)
    newly_missed: Mapped[int] = mapped_column(Integer, default=0)
    already_queued: Mapped[int] = mapped_column(Integer, default=0)
    conducted: Mapped[int] = mapped_column(Integer, default=0)
    closed: Mapped[int] = mapped_column(Integer, default=0)
    failures: Mapped[int] = mapped_column(Integer, default=0)
    started_at: Mapped[datetime] = mapped_column(DateTime)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    stale: Mapped[bool] = mapped_column(Boolean, default=False)
