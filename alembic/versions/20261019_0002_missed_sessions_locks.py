"""missed session queue, attendance locks and detection runs

Revision ID: 20261019_0002
Revises: 20261019_0001
Create Date: 2026-10-19 09:30:00
"""

from alembic import op
import sqlalchemy as sa


revision = '20261019_0002'
down_revision = '20261019_0001'
branch_labels = None
depends_on = None


def _table_exists(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def _index_exists(inspector: sa.Inspector, table_name: str, index_name: str) -> bool:
    if not _table_exists(inspector, table_name):
        return False
    return any(idx['name'] == index_name for idx in inspector.get_indexes(table_name))


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not _table_exists(inspector, 'missed_sessions'):
        op.create_table(
            'missed_sessions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('course_type', sa.String(length=20), nullable=False),
            sa.Column('year', sa.Integer(), nullable=False),
            sa.Column('stream', sa.String(length=60), nullable=False, server_default=''),
            sa.Column('section', sa.String(length=10), nullable=False, server_default='A'),
            sa.Column('subject_id', sa.Integer(), nullable=True),
            sa.Column('subject_code', sa.String(length=40), nullable=False, server_default=''),
            sa.Column('subject_name', sa.String(length=120), nullable=False, server_default=''),
            sa.Column('missed_date', sa.Date(), nullable=False),
            sa.Column('period_number', sa.Integer(), nullable=False),
            sa.Column('day_of_week', sa.String(length=10), nullable=False),
            sa.Column('scheduled_start_time', sa.String(length=5), nullable=False, server_default=''),
            sa.Column('scheduled_end_time', sa.String(length=5), nullable=False, server_default=''),
            sa.Column('detected_at', sa.DateTime(), nullable=False),
            sa.Column('reason', sa.String(length=120), nullable=False, server_default='Attendance not taken'),
            sa.Column('priority', sa.String(length=10), nullable=False, server_default='normal'),
            sa.Column('days_pending', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('auto_detected', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('is_completed', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('completed_at', sa.DateTime(), nullable=True),
            sa.Column('makeup_date', sa.Date(), nullable=True),
            sa.Column('makeup_period', sa.Integer(), nullable=True),
            sa.Column('completed_by', sa.Integer(), nullable=True),
            sa.Column('remarks', sa.Text(), nullable=True),
            sa.Column('open_key', sa.String(length=200), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('(CURRENT_TIMESTAMP)')),
            sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('(CURRENT_TIMESTAMP)')),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('open_key', name='uq_missed_sessions_open_key'),
        )

    if not _table_exists(inspector, 'attendance_locks'):
        op.create_table(
            'attendance_locks',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('lock_date', sa.Date(), nullable=False),
            sa.Column('unit_kind', sa.String(length=10), nullable=False),
            sa.Column('unit', sa.String(length=20), nullable=False),
            sa.Column('scope_key', sa.String(length=120), nullable=False),
            sa.Column('record_count', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('locked_by', sa.Integer(), nullable=True),
            sa.Column('locked_at', sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('lock_date', 'unit_kind', 'unit', 'scope_key', name='uq_attendance_locks_date_unit_scope'),
        )

    if not _table_exists(inspector, 'attendance_lock_audit'):
        op.create_table(
            'attendance_lock_audit',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('action', sa.String(length=10), nullable=False),
            sa.Column('lock_date', sa.Date(), nullable=False),
            sa.Column('unit_kind', sa.String(length=10), nullable=False),
            sa.Column('unit', sa.String(length=20), nullable=False),
            sa.Column('scope_key', sa.String(length=120), nullable=False),
            sa.Column('record_count', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('actor_id', sa.Integer(), nullable=True),
            sa.Column('reason', sa.Text(), nullable=False, server_default=''),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint('id'),
        )

    if not _table_exists(inspector, 'detection_runs'):
        op.create_table(
            'detection_runs',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('target_date', sa.Date(), nullable=False),
            sa.Column('trigger', sa.String(length=20), nullable=False, server_default='scheduler'),
            sa.Column('triggered_by', sa.Integer(), nullable=True),
            sa.Column('status', sa.String(length=30), nullable=False, server_default='ok'),
            sa.Column('scanned', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('newly_missed', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('already_queued', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('conducted', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('closed', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('failures', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('started_at', sa.DateTime(), nullable=False),
            sa.Column('finished_at', sa.DateTime(), nullable=True),
            sa.Column('stale', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.PrimaryKeyConstraint('id'),
        )

    inspector = sa.inspect(op.get_bind())
    indexes = [
        ('missed_sessions', 'ix_missed_sessions_natural_key', ['course_type', 'year', 'stream', 'section', 'missed_date', 'period_number']),
        ('missed_sessions', 'ix_missed_sessions_completed_date', ['is_completed', 'missed_date']),
        ('attendance_locks', 'ix_attendance_locks_lock_date', ['lock_date']),
        ('attendance_lock_audit', 'ix_attendance_lock_audit_slot', ['lock_date', 'unit_kind', 'unit', 'scope_key']),
        ('detection_runs', 'ix_detection_runs_target_stale', ['target_date', 'stale']),
    ]
    for table_name, index_name, columns in indexes:
        if not _index_exists(inspector, table_name, index_name):
            op.create_index(index_name, table_name, columns)


def downgrade() -> None:
    inspector = sa.inspect(op.get_bind())
    for table_name in ('detection_runs', 'attendance_lock_audit', 'attendance_locks', 'missed_sessions'):
        if _table_exists(inspector, table_name):
            op.drop_table(table_name)
