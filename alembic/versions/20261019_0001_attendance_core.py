"""attendance core tables

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 09:00:00
"""

from alembic import op
import sqlalchemy as sa


revision = '20261019_0001'
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def _index_exists(inspector: sa.Inspector, table_name: str, index_name: str) -> bool:
    if not _table_exists(inspector, table_name):
        return False
    return any(idx['name'] == index_name for idx in inspector.get_indexes(table_name))


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('(CURRENT_TIMESTAMP)')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('(CURRENT_TIMESTAMP)')),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not _table_exists(inspector, 'students'):
        op.create_table(
            'students',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('name', sa.String(length=160), nullable=False),
            sa.Column('roll_no', sa.String(length=40), nullable=False, server_default=''),
            sa.Column('course_type', sa.String(length=20), nullable=False),
            sa.Column('year', sa.Integer(), nullable=False),
            sa.Column('stream', sa.String(length=60), nullable=False, server_default=''),
            sa.Column('section', sa.String(length=10), nullable=False, server_default='A'),
            sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
            *_timestamps(),
            sa.PrimaryKeyConstraint('id'),
        )

    if not _table_exists(inspector, 'subjects'):
        op.create_table(
            'subjects',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('name', sa.String(length=120), nullable=False),
            sa.Column('subject_code', sa.String(length=40), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('(CURRENT_TIMESTAMP)')),
            sa.PrimaryKeyConstraint('id'),
        )

    if not _table_exists(inspector, 'timetable_slots'):
        op.create_table(
            'timetable_slots',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('course_type', sa.String(length=20), nullable=False),
            sa.Column('year', sa.Integer(), nullable=False),
            sa.Column('stream', sa.String(length=60), nullable=False, server_default=''),
            sa.Column('section', sa.String(length=10), nullable=False, server_default='A'),
            sa.Column('day_of_week', sa.String(length=10), nullable=False),
            sa.Column('period_number', sa.Integer(), nullable=False),
            sa.Column('subject_id', sa.Integer(), sa.ForeignKey('subjects.id'), nullable=True),
            sa.Column('start_time', sa.String(length=5), nullable=False, server_default=''),
            sa.Column('end_time', sa.String(length=5), nullable=False, server_default=''),
            *_timestamps(),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint(
                'course_type', 'year', 'stream', 'section', 'day_of_week', 'period_number',
                name='uq_timetable_slots_class_day_period',
            ),
        )

    if not _table_exists(inspector, 'calendar_overrides'):
        op.create_table(
            'calendar_overrides',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('override_date', sa.Date(), nullable=False),
            sa.Column('name', sa.String(length=160), nullable=False),
            sa.Column('kind', sa.String(length=20), nullable=False, server_default='academic'),
            sa.Column('reason', sa.Text(), nullable=False, server_default=''),
            sa.Column('affected_scope', sa.JSON(), nullable=False),
            sa.Column('course_type', sa.String(length=20), nullable=True),
            sa.Column('year', sa.Integer(), nullable=True),
            sa.Column('stream', sa.String(length=60), nullable=True),
            sa.Column('section', sa.String(length=10), nullable=True),
            sa.Column('affected_periods', sa.JSON(), nullable=False),
            sa.Column('triggered_at', sa.String(length=5), nullable=True),
            sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('deleted_at', sa.DateTime(), nullable=True),
            sa.Column('deleted_by', sa.Integer(), nullable=True),
            sa.Column('created_by', sa.Integer(), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint('id'),
        )

    if not _table_exists(inspector, 'leave_grants'):
        op.create_table(
            'leave_grants',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('student_id', sa.Integer(), sa.ForeignKey('students.id'), nullable=False),
            sa.Column('from_date', sa.Date(), nullable=False),
            sa.Column('to_date', sa.Date(), nullable=False),
            sa.Column('reason', sa.Text(), nullable=False, server_default=''),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
            sa.Column('created_by', sa.Integer(), nullable=True),
            sa.Column('cancelled_by', sa.Integer(), nullable=True),
            sa.Column('cancelled_at', sa.DateTime(), nullable=True),
            sa.Column('last_synced_at', sa.DateTime(), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint('id'),
        )

    if not _table_exists(inspector, 'attendance_records'):
        op.create_table(
            'attendance_records',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('student_id', sa.Integer(), sa.ForeignKey('students.id'), nullable=False),
            sa.Column('record_date', sa.Date(), nullable=False),
            sa.Column('unit_kind', sa.String(length=10), nullable=False),
            sa.Column('unit', sa.String(length=20), nullable=False),
            sa.Column('status', sa.String(length=20), nullable=False),
            sa.Column('subject_id', sa.Integer(), nullable=True),
            sa.Column('course_type', sa.String(length=20), nullable=False, server_default=''),
            sa.Column('year', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('stream', sa.String(length=60), nullable=False, server_default=''),
            sa.Column('section', sa.String(length=10), nullable=False, server_default='A'),
            sa.Column('source', sa.String(length=20), nullable=False, server_default='teacher'),
            sa.Column('leave_grant_id', sa.Integer(), nullable=True),
            sa.Column('override_id', sa.Integer(), nullable=True),
            sa.Column('lock_id', sa.Integer(), nullable=True),
            sa.Column('recorded_at', sa.DateTime(), nullable=False),
            sa.Column('recorded_by', sa.Integer(), nullable=True),
            sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('(CURRENT_TIMESTAMP)')),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('student_id', 'record_date', 'unit_kind', 'unit', name='uq_attendance_records_student_date_unit'),
        )

    inspector = sa.inspect(op.get_bind())
    indexes = [
        ('students', 'ix_students_class', ['course_type', 'year', 'stream', 'section', 'active']),
        ('subjects', 'ix_subjects_subject_code', ['subject_code']),
        ('timetable_slots', 'ix_timetable_slots_day', ['day_of_week', 'course_type', 'year']),
        ('calendar_overrides', 'ix_calendar_overrides_override_date', ['override_date']),
        ('calendar_overrides', 'ix_calendar_overrides_date_deleted', ['override_date', 'is_deleted']),
        ('calendar_overrides', 'ix_calendar_overrides_class_date', ['course_type', 'year', 'section', 'override_date']),
        ('leave_grants', 'ix_leave_grants_student_status', ['student_id', 'status']),
        ('leave_grants', 'ix_leave_grants_range', ['from_date', 'to_date']),
        ('attendance_records', 'ix_attendance_records_class_slot', ['record_date', 'unit_kind', 'unit', 'course_type', 'year', 'section']),
        ('attendance_records', 'ix_attendance_records_leave_grant', ['leave_grant_id', 'source']),
        ('attendance_records', 'ix_attendance_records_lock', ['lock_id']),
    ]
    for table_name, index_name, columns in indexes:
        if not _index_exists(inspector, table_name, index_name):
            op.create_index(index_name, table_name, columns)


def downgrade() -> None:
    inspector = sa.inspect(op.get_bind())
    for table_name in ('attendance_records', 'leave_grants', 'calendar_overrides', 'timetable_slots', 'subjects', 'students'):
        if _table_exists(inspector, table_name):
            op.drop_table(table_name)
