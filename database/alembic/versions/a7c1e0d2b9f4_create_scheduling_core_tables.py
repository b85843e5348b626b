"""create scheduling core tables

Revision ID: a7c1e0d2b9f4
Revises:
Create Date: 2026-10-19

Creates the appointment lifecycle and resource maintenance tables:
- patients, doctors, doctor_working_hours, rooms
- maintenance_batches: Appointments moved together by one apply
- appointments: Lifecycle state + optimistic version token
- attendance_records: Gate for confirmed -> completed
- scheduling_policy / scheduling_policy_history: Singleton policy + audit trail
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = 'a7c1e0d2b9f4'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


APPOINTMENT_STATUS = postgresql.ENUM(
    'pending', 'confirmed', 'cancelled', 'completed', 'rescheduling', 'maintenance',
    name='appointment_status',
    create_type=False,
)
RESOURCE_TYPE = postgresql.ENUM('doctor', 'room', name='resource_type', create_type=False)
MAINTENANCE_KIND = postgresql.ENUM(
    'deactivate', 'reactivate', 'schedule-change',
    name='maintenance_kind',
    create_type=False,
)
CANCELLATION_REASON = postgresql.ENUM(
    'patient', 'no_show', 'clinic',
    name='cancellation_reason',
    create_type=False,
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in (APPOINTMENT_STATUS, RESOURCE_TYPE, MAINTENANCE_KIND, CANCELLATION_REASON):
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        'patients',
        sa.Column('id', sa.UUID(), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('first_name', sa.String(100), nullable=False),
        sa.Column('last_name', sa.String(100), nullable=True),
        sa.Column('phone', sa.String(20), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'doctors',
        sa.Column('id', sa.UUID(), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('first_name', sa.String(100), nullable=False),
        sa.Column('last_name', sa.String(100), nullable=True),
        sa.Column('phone', sa.String(20), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'doctor_working_hours',
        sa.Column('id', sa.UUID(), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('doctor_id', sa.UUID(), nullable=False),
        sa.Column('day_of_week', sa.Integer(), nullable=False),
        sa.Column('start_time', sa.Time(), nullable=True),
        sa.Column('end_time', sa.Time(), nullable=True),
        sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default='true'),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['doctor_id'], ['doctors.id'], ondelete='CASCADE'),
        sa.CheckConstraint('day_of_week >= 0 AND day_of_week <= 6', name='valid_working_day'),
        sa.UniqueConstraint('doctor_id', 'day_of_week', name='uq_working_hours_doctor_day'),
    )
    op.create_index('ix_doctor_working_hours_doctor_id', 'doctor_working_hours', ['doctor_id'])

    op.create_table(
        'rooms',
        sa.Column('id', sa.UUID(), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('number', sa.String(20), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('number', name='uq_rooms_number'),
    )

    op.create_table(
        'maintenance_batches',
        sa.Column('id', sa.UUID(), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('resource_type', RESOURCE_TYPE, nullable=False),
        sa.Column('resource_id', sa.UUID(), nullable=False),
        sa.Column('kind', MAINTENANCE_KIND, nullable=False),
        sa.Column('affected_appointment_ids', postgresql.JSONB(astext_type=sa.Text()),
                  nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('counts_by_prior_state', postgresql.JSONB(astext_type=sa.Text()),
                  nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('created_by', sa.String(100), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'idx_maintenance_batches_resource', 'maintenance_batches', ['resource_type', 'resource_id']
    )

    op.create_table(
        'appointments',
        sa.Column('id', sa.UUID(), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('patient_id', sa.UUID(), nullable=False),
        sa.Column('doctor_id', sa.UUID(), nullable=False),
        sa.Column('room_id', sa.UUID(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('start_time', sa.Time(), nullable=False),
        sa.Column('end_time', sa.Time(), nullable=False),
        sa.Column('status', APPOINTMENT_STATUS, nullable=False, server_default='pending'),
        sa.Column('reschedule_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('maintenance_batch_id', sa.UUID(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('booked_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('confirmed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('completed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('cancellation_reason', CANCELLATION_REASON, nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['patient_id'], ['patients.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['doctor_id'], ['doctors.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['room_id'], ['rooms.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(
            ['maintenance_batch_id'], ['maintenance_batches.id'], ondelete='SET NULL'
        ),
        sa.CheckConstraint('end_time > start_time', name='check_appointment_end_after_start'),
        sa.CheckConstraint('reschedule_count >= 0', name='check_reschedule_count_positive'),
    )
    op.create_index('ix_appointments_patient_id', 'appointments', ['patient_id'])
    op.create_index('ix_appointments_doctor_id', 'appointments', ['doctor_id'])
    op.create_index('ix_appointments_room_id', 'appointments', ['room_id'])
    op.create_index('ix_appointments_date', 'appointments', ['date'])
    op.create_index('ix_appointments_status', 'appointments', ['status'])
    op.create_index('ix_appointments_maintenance_batch_id', 'appointments', ['maintenance_batch_id'])
    op.create_index(
        'idx_appointments_room_date_status', 'appointments', ['room_id', 'date', 'status']
    )
    op.create_index(
        'idx_appointments_doctor_date_status', 'appointments', ['doctor_id', 'date', 'status']
    )

    op.create_table(
        'attendance_records',
        sa.Column('id', sa.UUID(), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('appointment_id', sa.UUID(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('recorded_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['appointment_id'], ['appointments.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('appointment_id', name='uq_attendance_records_appointment'),
    )

    op.create_table(
        'scheduling_policy',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('max_active_appointments_per_patient', sa.Integer(), nullable=False),
        sa.Column('confirm_window_open_hours', sa.Integer(), nullable=False),
        sa.Column('confirm_window_close_hours', sa.Integer(), nullable=False),
        sa.Column('auto_confirm_threshold_hours', sa.Integer(), nullable=False),
        sa.Column('max_appointments_per_patient_per_day', sa.Integer(), nullable=False),
        sa.Column('cooldown_days', sa.Integer(), nullable=False),
        sa.Column('max_reschedules_per_appointment', sa.Integer(), nullable=False),
        sa.Column('min_lead_time_hours', sa.Integer(), nullable=False),
        sa.Column('contact_phone', sa.String(20), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_by', sa.String(100), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('id = 1', name='check_policy_singleton'),
        sa.CheckConstraint(
            'confirm_window_close_hours < auto_confirm_threshold_hours '
            'AND auto_confirm_threshold_hours <= confirm_window_open_hours '
            'AND min_lead_time_hours < confirm_window_open_hours',
            name='check_policy_windows',
        ),
    )

    op.create_table(
        'scheduling_policy_history',
        sa.Column('id', sa.UUID(), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('policy_version', sa.Integer(), nullable=False),
        sa.Column('previous_values', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('new_values', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('changed_by', sa.String(100), nullable=False),
        sa.Column('change_reason', sa.Text(), nullable=True),
        sa.Column('changed_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'idx_policy_history_changed_at', 'scheduling_policy_history', ['changed_at']
    )

    # Default policy row (version 1)
    op.execute(
        """
        INSERT INTO scheduling_policy (
            id, max_active_appointments_per_patient, confirm_window_open_hours,
            confirm_window_close_hours, auto_confirm_threshold_hours,
            max_appointments_per_patient_per_day, cooldown_days,
            max_reschedules_per_appointment, min_lead_time_hours, contact_phone,
            version, updated_by
        ) VALUES (1, 3, 48, 12, 24, 1, 7, 2, 2, '+593999999999', 1, 'migration')
        """
    )


def downgrade() -> None:
    op.drop_index('idx_policy_history_changed_at', table_name='scheduling_policy_history')
    op.drop_table('scheduling_policy_history')
    op.drop_table('scheduling_policy')
    op.drop_table('attendance_records')

    for index_name in (
        'idx_appointments_doctor_date_status',
        'idx_appointments_room_date_status',
        'ix_appointments_maintenance_batch_id',
        'ix_appointments_status',
        'ix_appointments_date',
        'ix_appointments_room_id',
        'ix_appointments_doctor_id',
        'ix_appointments_patient_id',
    ):
        op.drop_index(index_name, table_name='appointments')
    op.drop_table('appointments')

    op.drop_index('idx_maintenance_batches_resource', table_name='maintenance_batches')
    op.drop_table('maintenance_batches')
    op.drop_table('rooms')
    op.drop_index('ix_doctor_working_hours_doctor_id', table_name='doctor_working_hours')
    op.drop_table('doctor_working_hours')
    op.drop_table('doctors')
    op.drop_table('patients')

    bind = op.get_bind()
    for enum_type in (CANCELLATION_REASON, MAINTENANCE_KIND, RESOURCE_TYPE, APPOINTMENT_STATUS):
        enum_type.drop(bind, checkfirst=True)
