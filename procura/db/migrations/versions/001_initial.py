"""initial sourcing workflow schema

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

Creates the tenant, party, sourcing workflow and tracking tables for
Procura OS. Statuses are stored as VARCHAR so the schema is portable.
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Organizations
    op.create_table('organizations',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('slug', sa.String(100), nullable=False, unique=True, index=True),
        sa.Column('settings', sa.JSON()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Audit logs
    op.create_table('audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), index=True),
        sa.Column('user_id', sa.Integer()),
        sa.Column('organization_id', sa.Integer(), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('action', sa.String(100), nullable=False, index=True),
        sa.Column('entity_type', sa.String(100), index=True),
        sa.Column('entity_id', sa.Integer()),
        sa.Column('details', sa.JSON()),
    )
    op.create_index('ix_audit_logs_org_timestamp', 'audit_logs', ['organization_id', 'timestamp'])

    # Customers
    op.create_table('customers',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('organization_id', sa.Integer(), sa.ForeignKey('organizations.id'), nullable=False, index=True),
        sa.Column('company_name', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255)),
        sa.Column('total_orders', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_spend', sa.Float(), nullable=False, server_default='0'),
        sa.Column('last_activity_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Suppliers
    op.create_table('suppliers',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('organization_id', sa.Integer(), sa.ForeignKey('organizations.id'), nullable=False, index=True),
        sa.Column('company_name', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255)),
        sa.Column('capabilities', sa.JSON()),
        sa.Column('certifications', sa.JSON()),
        sa.Column('service_types', sa.JSON()),
        sa.Column('total_quotes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('won_quotes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('win_rate', sa.Float(), nullable=False, server_default='0'),
        sa.Column('total_orders', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_revenue', sa.Float(), nullable=False, server_default='0'),
        sa.Column('completed_orders', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('rated_orders', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('dispute_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('avg_response_hours', sa.Float(), nullable=False, server_default='0'),
        sa.Column('reliability_score', sa.Float(), nullable=False, server_default='75'),
        sa.Column('quality_score', sa.Float(), nullable=False, server_default='75'),
        sa.Column('performance_score', sa.Float(), nullable=False, server_default='75'),
        sa.Column('on_time_delivery_rate', sa.Float(), nullable=False, server_default='100'),
        sa.Column('last_activity_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Sourcing requests
    op.create_table('sourcing_requests',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('organization_id', sa.Integer(), sa.ForeignKey('organizations.id'), nullable=False, index=True),
        sa.Column('customer_id', sa.Integer(), sa.ForeignKey('customers.id'), nullable=False, index=True),
        sa.Column('request_number', sa.String(64), nullable=False),
        sa.Column('domain', sa.String(50), nullable=False),
        sa.Column('category', sa.String(100), nullable=False),
        sa.Column('title', sa.String(255)),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('origin', sa.String(255)),
        sa.Column('destination', sa.String(255)),
        sa.Column('service_type', sa.String(100)),
        sa.Column('requirements', sa.JSON()),
        sa.Column('budget', sa.Float()),
        sa.Column('currency', sa.String(10)),
        sa.Column('deadline', sa.DateTime(timezone=True)),
        sa.Column('requested_lead_time_days', sa.Float()),
        sa.Column('is_urgent', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('priority', sa.String(32), nullable=False, server_default='normal'),
        sa.Column('status', sa.String(32), nullable=False, server_default='draft', index=True),
        sa.Column('review_notes', sa.Text()),
        sa.Column('submitted_at', sa.DateTime(timezone=True)),
        sa.Column('reviewed_at', sa.DateTime(timezone=True)),
        sa.Column('reviewed_by', sa.Integer()),
        sa.Column('archived_at', sa.DateTime(timezone=True)),
        sa.Column('created_by', sa.Integer()),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.UniqueConstraint('organization_id', 'request_number', name='uq_request_org_number'),
    )

    # RFQs
    op.create_table('rfqs',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('organization_id', sa.Integer(), sa.ForeignKey('organizations.id'), nullable=False, index=True),
        sa.Column('request_id', sa.Integer(), sa.ForeignKey('sourcing_requests.id'), nullable=False, index=True),
        sa.Column('rfq_number', sa.String(64), nullable=False),
        sa.Column('domain', sa.String(50), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('criteria_weights', sa.JSON(), nullable=False),
        sa.Column('required_capabilities', sa.JSON()),
        sa.Column('target_supplier_ids', sa.JSON()),
        sa.Column('budget', sa.Float()),
        sa.Column('currency', sa.String(10)),
        sa.Column('requested_lead_time_days', sa.Float()),
        sa.Column('is_urgent', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('deadline', sa.DateTime(timezone=True), nullable=False),
        sa.Column('extended_deadline', sa.DateTime(timezone=True)),
        sa.Column('status', sa.String(32), nullable=False, server_default='draft', index=True),
        sa.Column('winning_quote_id', sa.Integer(), index=True),
        sa.Column('published_at', sa.DateTime(timezone=True)),
        sa.Column('awarded_at', sa.DateTime(timezone=True)),
        sa.Column('awarded_by', sa.Integer()),
        sa.Column('cancelled_at', sa.DateTime(timezone=True)),
        sa.Column('cancel_reason', sa.Text()),
        sa.Column('created_by', sa.Integer()),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.UniqueConstraint('organization_id', 'rfq_number', name='uq_rfq_org_number'),
    )

    # Quotes
    op.create_table('quotes',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('organization_id', sa.Integer(), sa.ForeignKey('organizations.id'), nullable=False, index=True),
        sa.Column('rfq_id', sa.Integer(), sa.ForeignKey('rfqs.id'), nullable=False, index=True),
        sa.Column('supplier_id', sa.Integer(), sa.ForeignKey('suppliers.id'), nullable=False, index=True),
        sa.Column('quote_number', sa.String(64), nullable=False),
        sa.Column('base_price', sa.Float(), nullable=False),
        sa.Column('additional_costs', sa.JSON()),
        sa.Column('total_price', sa.Float(), nullable=False),
        sa.Column('currency', sa.String(10)),
        sa.Column('valid_until', sa.DateTime(timezone=True), nullable=False),
        sa.Column('lead_time_days', sa.Float(), nullable=False),
        sa.Column('delivery_terms', sa.String(100)),
        sa.Column('payment_terms', sa.String(100)),
        sa.Column('notes', sa.Text()),
        sa.Column('status', sa.String(32), nullable=False, server_default='submitted', index=True),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('withdrawn_at', sa.DateTime(timezone=True)),
        sa.Column('score', sa.Float()),
        sa.Column('score_breakdown', sa.JSON()),
        sa.Column('rank', sa.Integer()),
        sa.Column('recommendation', sa.String(32)),
        sa.Column('rationale', sa.Text()),
        sa.Column('scored_at', sa.DateTime(timezone=True)),
        sa.Column('is_winning', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('advisory_confidence', sa.Float()),
        sa.Column('advisory_recommendation', sa.String(32)),
        sa.Column('advisory_rationale', sa.Text()),
        sa.Column('advisory_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.UniqueConstraint('organization_id', 'quote_number', name='uq_quote_org_number'),
    )
    # At most one winner per RFQ; one active quote per supplier per RFQ
    op.create_index(
        'uq_quotes_one_winner_per_rfq', 'quotes', ['rfq_id'], unique=True,
        postgresql_where=sa.text("is_winning"),
        sqlite_where=sa.text("is_winning = 1"),
    )
    op.create_index(
        'uq_quotes_active_per_supplier', 'quotes', ['rfq_id', 'supplier_id'], unique=True,
        postgresql_where=sa.text("status != 'withdrawn'"),
        sqlite_where=sa.text("status != 'withdrawn'"),
    )

    # Orders
    op.create_table('orders',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('organization_id', sa.Integer(), sa.ForeignKey('organizations.id'), nullable=False, index=True),
        sa.Column('order_number', sa.String(64), nullable=False),
        sa.Column('domain', sa.String(50), nullable=False),
        sa.Column('request_id', sa.Integer(), sa.ForeignKey('sourcing_requests.id'), nullable=False),
        sa.Column('rfq_id', sa.Integer(), sa.ForeignKey('rfqs.id'), nullable=False),
        sa.Column('quote_id', sa.Integer(), sa.ForeignKey('quotes.id'), nullable=False),
        sa.Column('customer_id', sa.Integer(), sa.ForeignKey('customers.id'), nullable=False, index=True),
        sa.Column('supplier_id', sa.Integer(), sa.ForeignKey('suppliers.id'), nullable=False, index=True),
        sa.Column('agreed_price', sa.Float(), nullable=False),
        sa.Column('currency', sa.String(10)),
        sa.Column('status', sa.String(32), nullable=False, server_default='pending', index=True),
        sa.Column('promised_delivery_at', sa.DateTime(timezone=True)),
        sa.Column('progress_percent', sa.Float(), nullable=False, server_default='0'),
        sa.Column('delay_risk_score', sa.Float(), nullable=False, server_default='0'),
        sa.Column('predicted_next_event', sa.String(32)),
        sa.Column('predicted_next_event_at', sa.DateTime(timezone=True)),
        sa.Column('last_event_type', sa.String(32)),
        sa.Column('last_event_at', sa.DateTime(timezone=True)),
        sa.Column('route_efficiency', sa.Float()),
        sa.Column('actual_delivery_at', sa.DateTime(timezone=True)),
        sa.Column('performance_rating', sa.Float()),
        sa.Column('satisfaction_rating', sa.Integer()),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.UniqueConstraint('organization_id', 'order_number', name='uq_order_org_number'),
        sa.UniqueConstraint('rfq_id', name='uq_orders_rfq'),
    )

    # Tracking events
    op.create_table('tracking_events',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('organization_id', sa.Integer(), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id'), nullable=False, index=True),
        sa.Column('event_key', sa.String(128), nullable=False),
        sa.Column('event_type', sa.String(32), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('location', sa.String(255)),
        sa.Column('description', sa.Text()),
        sa.Column('reported_by', sa.String(50)),
        sa.Column('predicted_next_event', sa.String(32)),
        sa.Column('delay_risk_score', sa.Float(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.UniqueConstraint('order_id', 'event_key', name='uq_tracking_event_key'),
    )


def downgrade() -> None:
    op.drop_table('tracking_events')
    op.drop_table('orders')
    op.drop_index('uq_quotes_active_per_supplier', table_name='quotes')
    op.drop_index('uq_quotes_one_winner_per_rfq', table_name='quotes')
    op.drop_table('quotes')
    op.drop_table('rfqs')
    op.drop_table('sourcing_requests')
    op.drop_table('suppliers')
    op.drop_table('customers')
    op.drop_index('ix_audit_logs_org_timestamp', table_name='audit_logs')
    op.drop_table('audit_logs')
    op.drop_table('organizations')
