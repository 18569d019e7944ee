"""Create users, donations and donation_events tables.

Revision ID: create_donation_lifecycle
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = 'create_donation_lifecycle'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('role', sa.String(20), nullable=False, server_default='donor', index=True),
        sa.Column('email', sa.String(255), nullable=True, unique=True),
        sa.Column('phone', sa.String(20), nullable=True, unique=True),
        sa.Column('created_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False),
    )

    op.create_table(
        'donations',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('donor_id', postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column('food_type', sa.String(255), nullable=False),
        sa.Column('quantity', sa.String(100), nullable=False),
        sa.Column('image_url', sa.Text(), nullable=True),
        sa.Column('expiry_date', sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column('pickup_latitude', sa.Float(), nullable=False),
        sa.Column('pickup_longitude', sa.Float(), nullable=False),
        sa.Column('pickup_address', sa.String(500), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='posted', index=True),
        sa.Column('recipient_id', postgresql.UUID(as_uuid=True), nullable=True, index=True),
        sa.Column('volunteer_id', postgresql.UUID(as_uuid=True), nullable=True, index=True),
        sa.Column('recipient_latitude', sa.Float(), nullable=True),
        sa.Column('recipient_longitude', sa.Float(), nullable=True),
        sa.Column('recipient_address', sa.String(500), nullable=True),
        sa.Column('pickup_deadline', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivery_deadline', sa.DateTime(timezone=True), nullable=True),
        # OTP handshake columns, one set per stage
        sa.Column('pickup_otp_code', sa.String(6), nullable=True),
        sa.Column('pickup_otp_generated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('pickup_otp_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('pickup_otp_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('delivery_otp_code', sa.String(6), nullable=True),
        sa.Column('delivery_otp_generated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivery_otp_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivery_otp_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('assigned_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('picked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expired_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False, index=True),
        sa.Column('updated_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False),
    )

    # Expiry sweep scans open donations by expiry date
    op.create_index(
        'ix_donations_open_expiry',
        'donations',
        ['expiry_date'],
        postgresql_where=sa.text("status IN ('posted', 'requested')")
    )

    op.create_table(
        'donation_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('donation_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('donations.id', ondelete='CASCADE'),
                  nullable=False, index=True),
        sa.Column('event_name', sa.String(50), nullable=False, index=True),
        sa.Column('from_status', sa.String(20), nullable=True),
        sa.Column('to_status', sa.String(20), nullable=False),
        sa.Column('actor_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('actor_role', sa.String(20), nullable=True),
        sa.Column('details', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False, index=True),
    )


def downgrade() -> None:
    op.drop_table('donation_events')
    op.drop_index('ix_donations_open_expiry', table_name='donations')
    op.drop_table('donations')
    op.drop_table('users')
