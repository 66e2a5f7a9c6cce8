"""initial procurement schema

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

Creates tenancy, procurement master data and intelligence tables for Procura.
Enum columns are stored as plain strings (see procura.db.models.enum_column_type).
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Companies
    op.create_table('companies',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('slug', sa.String(100), nullable=False, unique=True, index=True),
        sa.Column('gstin', sa.String(20)),
        sa.Column('settings', sa.JSON()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Audit Logs
    op.create_table('audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('action', sa.String(100), nullable=False, index=True),
        sa.Column('entity_type', sa.String(100), index=True),
        sa.Column('entity_id', sa.Integer()),
        sa.Column('details', sa.JSON()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), index=True),
        sa.Index('ix_audit_logs_company_created', 'company_id', 'created_at'),
    )

    # AI Usage Logs
    op.create_table('ai_usage_logs',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('feature', sa.String(30), nullable=False),
        sa.Column('model', sa.String(100), nullable=False),
        sa.Column('input_tokens', sa.Integer(), default=0),
        sa.Column('output_tokens', sa.Integer(), default=0),
        sa.Column('total_tokens', sa.Integer(), default=0),
        sa.Column('estimated_cost', sa.Float(), default=0.0),
        sa.Column('latency_ms', sa.Integer(), default=0),
        sa.Column('success', sa.Boolean(), default=True),
        sa.Column('error', sa.Text()),
        sa.Column('extra_data', sa.JSON()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), index=True),
    )

    # Vendors
    op.create_table('vendors',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255)),
        sa.Column('phone', sa.String(50)),
        sa.Column('gstin', sa.String(20)),
        sa.Column('category', sa.String(100)),
        sa.Column('materials_supplied', sa.JSON()),
        sa.Column('is_active', sa.Boolean(), default=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Items
    op.create_table('items',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('sku', sa.String(100), index=True),
        sa.Column('category', sa.String(100), index=True),
        sa.Column('unit', sa.String(50)),
        sa.Column('description', sa.Text()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # RFQs
    op.create_table('rfqs',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('rfq_number', sa.String(50), nullable=False, unique=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('status', sa.String(20), default='draft'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table('rfq_items',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('rfq_id', sa.Integer(), sa.ForeignKey('rfqs.id'), nullable=False),
        sa.Column('item_id', sa.Integer(), sa.ForeignKey('items.id'), nullable=False),
        sa.Column('quantity', sa.Float(), default=1.0),
        sa.UniqueConstraint('rfq_id', 'item_id', name='uq_rfq_item'),
    )

    # Quotes
    op.create_table('quotes',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('rfq_id', sa.Integer(), sa.ForeignKey('rfqs.id'), nullable=False),
        sa.Column('vendor_id', sa.Integer(), sa.ForeignKey('vendors.id'), nullable=False),
        sa.Column('base_price', sa.Float(), nullable=False, default=0.0),
        sa.Column('gst_amount', sa.Float(), default=0.0),
        sa.Column('freight_cost', sa.Float(), default=0.0),
        sa.Column('landed_cost', sa.Float(), nullable=False),
        sa.Column('status', sa.String(20), default='submitted'),
        sa.Column('submitted_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Purchase Orders
    op.create_table('purchase_orders',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('vendor_id', sa.Integer(), sa.ForeignKey('vendors.id'), nullable=False),
        sa.Column('quote_id', sa.Integer(), sa.ForeignKey('quotes.id'), nullable=True),
        sa.Column('po_number', sa.String(50), nullable=False, unique=True),
        sa.Column('status', sa.String(20), default='draft'),
        sa.Column('total_amount', sa.Float(), default=0.0),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table('deliveries',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('po_id', sa.Integer(), sa.ForeignKey('purchase_orders.id'), nullable=False),
        sa.Column('status', sa.String(20), default='pending'),
        sa.Column('delivery_date', sa.DateTime(timezone=True)),
        sa.Column('received_date', sa.DateTime(timezone=True)),
        sa.Column('notes', sa.Text()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Price History
    op.create_table('price_history',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('item_id', sa.Integer(), sa.ForeignKey('items.id'), nullable=False),
        sa.Column('vendor_id', sa.Integer(), sa.ForeignKey('vendors.id'), nullable=True),
        sa.Column('quote_id', sa.Integer(), sa.ForeignKey('quotes.id'), nullable=True),
        sa.Column('po_id', sa.Integer(), sa.ForeignKey('purchase_orders.id'), nullable=True),
        sa.Column('price', sa.Float(), nullable=False),
        sa.Column('source', sa.String(20), default='manual'),
        sa.Column('recorded_at', sa.DateTime(timezone=True), server_default=sa.func.now(), index=True),
        sa.Index('ix_price_history_item_recorded', 'item_id', 'recorded_at'),
    )

    # Quote Extractions
    op.create_table('quote_extractions',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('rfq_id', sa.Integer(), sa.ForeignKey('rfqs.id'), nullable=True),
        sa.Column('file_name', sa.String(255), nullable=False),
        sa.Column('file_type', sa.String(100)),
        sa.Column('source_file_ref', sa.Text()),
        sa.Column('status', sa.String(20), default='pending'),
        sa.Column('raw_text', sa.Text()),
        sa.Column('structured_data', sa.JSON()),
        sa.Column('confidence', sa.Float(), default=0.0),
        sa.Column('extraction_method', sa.String(20), nullable=True),
        sa.Column('model_used', sa.String(100)),
        sa.Column('processing_time_ms', sa.Integer()),
        sa.Column('error', sa.Text()),
        sa.Column('created_by', sa.Integer()),
        sa.Column('approved_by', sa.Integer()),
        sa.Column('approved_at', sa.DateTime(timezone=True)),
        sa.Column('processed_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Price Anomalies
    op.create_table('price_anomalies',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('quote_id', sa.Integer(), sa.ForeignKey('quotes.id'), nullable=False, index=True),
        sa.Column('item_id', sa.Integer(), sa.ForeignKey('items.id'), nullable=True),
        sa.Column('detected_price', sa.Float(), nullable=False),
        sa.Column('expected_price', sa.Float(), nullable=False),
        sa.Column('deviation_pct', sa.Float(), nullable=False),
        sa.Column('severity', sa.String(20), nullable=False),
        sa.Column('explanation', sa.Text()),
        sa.Column('historical_data', sa.JSON()),
        sa.Column('acknowledged', sa.Boolean(), default=False),
        sa.Column('acknowledged_by', sa.Integer()),
        sa.Column('acknowledged_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Price Forecasts
    op.create_table('price_forecasts',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('item_id', sa.Integer(), sa.ForeignKey('items.id'), nullable=False, index=True),
        sa.Column('horizon_days', sa.Integer(), nullable=False),
        sa.Column('forecast_date', sa.DateTime(timezone=True)),
        sa.Column('current_price', sa.Float()),
        sa.Column('predicted_price', sa.Float(), nullable=False),
        sa.Column('confidence_low', sa.Float()),
        sa.Column('confidence_high', sa.Float()),
        sa.Column('confidence_pct', sa.Float()),
        sa.Column('trend', sa.String(10), nullable=False),
        sa.Column('data_points_used', sa.Integer(), default=0),
        sa.Column('explanation_factors', sa.JSON()),
        sa.Column('valid_until', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Vendor Scores
    op.create_table('vendor_scores',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('vendor_id', sa.Integer(), sa.ForeignKey('vendors.id'), nullable=False),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('overall_score', sa.Float(), default=0),
        sa.Column('tier', sa.String(1), nullable=False),
        sa.Column('delivery_score', sa.Float(), default=0),
        sa.Column('price_score', sa.Float(), default=0),
        sa.Column('quality_score', sa.Float(), default=0),
        sa.Column('response_score', sa.Float(), default=0),
        sa.Column('consistency_score', sa.Float(), default=0),
        sa.Column('data_points', sa.Integer(), default=0),
        sa.Column('explanation', sa.Text()),
        sa.Column('calculated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('valid_until', sa.DateTime(timezone=True)),
        sa.UniqueConstraint('vendor_id', 'company_id', name='uq_vendor_score_vendor_company'),
    )

    op.create_table('vendor_performance',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('vendor_id', sa.Integer(), sa.ForeignKey('vendors.id'), nullable=False),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('total_orders', sa.Integer(), default=0),
        sa.Column('completed_orders', sa.Integer(), default=0),
        sa.Column('on_time_deliveries', sa.Integer(), default=0),
        sa.Column('late_deliveries', sa.Integer(), default=0),
        sa.Column('rejected_deliveries', sa.Integer(), default=0),
        sa.Column('total_quotes', sa.Integer(), default=0),
        sa.Column('accepted_quotes', sa.Integer(), default=0),
        sa.Column('avg_response_hours', sa.Float(), default=0),
        sa.Column('last_calculated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('vendor_id', 'company_id', name='uq_vendor_performance_vendor_company'),
    )

    # Vendor Recommendations
    op.create_table('vendor_recommendations',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('item_id', sa.Integer(), sa.ForeignKey('items.id'), nullable=False),
        sa.Column('vendor_id', sa.Integer(), sa.ForeignKey('vendors.id'), nullable=False),
        sa.Column('rank', sa.Integer(), nullable=False),
        sa.Column('score', sa.Float(), nullable=False),
        sa.Column('reason', sa.Text()),
        sa.Column('factors', sa.JSON()),
        sa.Column('urgency', sa.String(20)),
        sa.Column('is_selected', sa.Boolean(), default=False),
        sa.Column('selected_by', sa.Integer()),
        sa.Column('selected_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), index=True),
    )

    # Negotiation
    op.create_table('negotiation_sessions',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('vendor_id', sa.Integer(), sa.ForeignKey('vendors.id'), nullable=False),
        sa.Column('quote_id', sa.Integer(), sa.ForeignKey('quotes.id'), nullable=True),
        sa.Column('rfq_id', sa.Integer(), sa.ForeignKey('rfqs.id'), nullable=True),
        sa.Column('current_price', sa.Float(), nullable=False),
        sa.Column('target_price', sa.Float()),
        sa.Column('ai_suggested_price', sa.Float()),
        sa.Column('status', sa.String(20), default='active'),
        sa.Column('created_by', sa.Integer()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), onupdate=sa.func.now()),
        sa.Column('closed_at', sa.DateTime(timezone=True)),
    )

    op.create_table('negotiation_messages',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('session_id', sa.Integer(), sa.ForeignKey('negotiation_sessions.id'), nullable=False, index=True),
        sa.Column('role', sa.String(20), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('is_ai_generated', sa.Boolean(), default=False),
        sa.Column('is_edited', sa.Boolean(), default=False),
        sa.Column('original_content', sa.Text()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    # Drop tables in reverse order (respecting foreign keys)
    op.drop_table('negotiation_messages')
    op.drop_table('negotiation_sessions')
    op.drop_table('vendor_recommendations')
    op.drop_table('vendor_performance')
    op.drop_table('vendor_scores')
    op.drop_table('price_forecasts')
    op.drop_table('price_anomalies')
    op.drop_table('quote_extractions')
    op.drop_table('price_history')
    op.drop_table('deliveries')
    op.drop_table('purchase_orders')
    op.drop_table('quotes')
    op.drop_table('rfq_items')
    op.drop_table('rfqs')
    op.drop_table('items')
    op.drop_table('vendors')
    op.drop_table('ai_usage_logs')
    op.drop_table('audit_logs')
    op.drop_table('companies')
