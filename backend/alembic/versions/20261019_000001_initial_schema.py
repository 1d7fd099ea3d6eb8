"""Initial attribution schema.

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 09:00:00.000000

WHAT:
    Creates every table:
    - users: admin accounts
    - leads / visitors: identity records correlated by click id
    - provider_configs: one encrypted credential set per provider
    - postback_configs: event name -> channel routing
    - conversion_events: the per-channel ledger
    - blocked_ips: IP blocklist

REFERENCES:
    - leadflow/models.py
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_000001'
down_revision = None
branch_labels = None
depends_on = None


ROLE = sa.Enum('admin', 'editor', 'viewer', name='roleenum')
PROVIDER = sa.Enum('google_ads', 'bing_ads', 'salesforce', 'meta', name='providerenum')
STATUS = sa.Enum('pending', 'sent', 'failed', 'logged', 'blocked', 'auto', name='eventstatusenum')
SOURCE = sa.Enum('postback', 'auto', 'google_ads', 'bing_ads', 'meta_capi', 'salesforce', name='eventsourceenum')
RESOLUTION = sa.Enum('lead', 'visitor_only', 'uncorrelated', name='resolutionenum')


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('role', ROLE, nullable=False),
        sa.Column('password_hash', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    # Leads before visitors: visitors.lead_id references leads
    op.create_table(
        'leads',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('click_id', sa.String(), nullable=True),
        sa.Column('full_name', sa.String(), nullable=True),
        sa.Column('first_name', sa.String(), nullable=True),
        sa.Column('last_name', sa.String(), nullable=True),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('phone', sa.String(), nullable=True),
        sa.Column('company_name', sa.String(), nullable=True),
        sa.Column('gclid', sa.String(), nullable=True),
        sa.Column('msclkid', sa.String(), nullable=True),
        sa.Column('fbclid', sa.String(), nullable=True),
        sa.Column('fbc', sa.String(), nullable=True),
        sa.Column('fbp', sa.String(), nullable=True),
        sa.Column('debt_amount', sa.Numeric(14, 2), nullable=True),
        sa.Column('revenue', sa.Numeric(14, 2), nullable=True),
        sa.Column('crm_lead_id', sa.String(), nullable=True),
        sa.Column('is_blocked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('ip_address', sa.String(), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('landing_page', sa.String(), nullable=True),
        sa.Column('hidden_fields', sa.JSON(), nullable=True),
        sa.Column('transfer_status', sa.String(), nullable=True),
        sa.Column('disposition', sa.String(), nullable=True),
        sa.Column('stage', sa.String(), nullable=True),
        sa.Column('contract_sign_date', sa.String(), nullable=True),
        sa.Column('total_debt_sign', sa.Numeric(14, 2), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_leads_click_id', 'leads', ['click_id'])
    op.create_index('ix_leads_email', 'leads', ['email'])

    op.create_table(
        'visitors',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('click_id', sa.String(), nullable=False),
        sa.Column('gclid', sa.String(), nullable=True),
        sa.Column('msclkid', sa.String(), nullable=True),
        sa.Column('fbclid', sa.String(), nullable=True),
        sa.Column('fbc', sa.String(), nullable=True),
        sa.Column('fbp', sa.String(), nullable=True),
        sa.Column('ip_address', sa.String(), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('landing_page', sa.String(), nullable=True),
        sa.Column('utm_source', sa.String(), nullable=True),
        sa.Column('utm_medium', sa.String(), nullable=True),
        sa.Column('utm_campaign', sa.String(), nullable=True),
        sa.Column('converted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('lead_id', sa.Integer(), sa.ForeignKey('leads.id', ondelete='SET NULL'), nullable=True),
        sa.Column('first_visit', sa.DateTime(), nullable=True),
        sa.Column('last_visit', sa.DateTime(), nullable=True),
        sa.Column('visit_count', sa.Integer(), nullable=False, server_default='1'),
    )
    op.create_index('ix_visitors_click_id', 'visitors', ['click_id'], unique=True)

    op.create_table(
        'provider_configs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('provider', PROVIDER, nullable=False, unique=True),
        sa.Column('access_token_enc', sa.Text(), nullable=True),
        sa.Column('refresh_token_enc', sa.Text(), nullable=True),
        sa.Column('client_secret_enc', sa.Text(), nullable=True),
        sa.Column('client_id', sa.String(), nullable=True),
        sa.Column('token_expires_at', sa.DateTime(), nullable=True),
        sa.Column('connected_at', sa.DateTime(), nullable=True),
        sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('account_id', sa.String(), nullable=True),
        sa.Column('customer_id', sa.String(), nullable=True),
        sa.Column('login_customer_id', sa.String(), nullable=True),
        sa.Column('account_name', sa.String(), nullable=True),
        sa.Column('instance_url', sa.String(), nullable=True),
        sa.Column('settings', sa.JSON(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'postback_configs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('event_name', sa.String(), nullable=False),
        sa.Column('conversion_action_id', sa.String(), nullable=True),
        sa.Column('google_ads_event_name', sa.String(), nullable=True),
        sa.Column('send_to_bing', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('bing_conversion_name', sa.String(), nullable=True),
        sa.Column('send_to_meta', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('meta_event_name', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_postback_configs_event_name', 'postback_configs', ['event_name'])

    op.create_table(
        'conversion_events',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('lead_id', sa.Integer(), sa.ForeignKey('leads.id', ondelete='SET NULL'), nullable=True),
        sa.Column('click_id', sa.String(), nullable=True),
        sa.Column('gclid', sa.String(), nullable=True),
        sa.Column('msclkid', sa.String(), nullable=True),
        sa.Column('fbclid', sa.String(), nullable=True),
        sa.Column('fbc', sa.String(), nullable=True),
        sa.Column('conversion_action_id', sa.String(), nullable=True),
        sa.Column('conversion_action_name', sa.String(), nullable=True),
        sa.Column('outbound_event_name', sa.String(), nullable=True),
        sa.Column('conversion_value', sa.Numeric(14, 2), nullable=True),
        sa.Column('debt_amount', sa.Numeric(14, 2), nullable=True),
        sa.Column('revenue', sa.Numeric(14, 2), nullable=True),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('transaction_id', sa.String(), nullable=True),
        sa.Column('source', SOURCE, nullable=False),
        sa.Column('resolution', RESOLUTION, nullable=True),
        sa.Column('status', STATUS, nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('capi_payload', sa.JSON(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_conversion_events_created_at', 'conversion_events', ['created_at'])
    op.create_index(
        'ix_conversion_events_dedup',
        'conversion_events',
        ['click_id', 'conversion_action_name', 'source', 'created_at'],
    )
    op.create_index('ix_conversion_events_status', 'conversion_events', ['status', 'created_at'])

    op.create_table(
        'blocked_ips',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('ip_address', sa.String(), nullable=False, unique=True),
        sa.Column('reason', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table('blocked_ips')
    op.drop_index('ix_conversion_events_status', table_name='conversion_events')
    op.drop_index('ix_conversion_events_dedup', table_name='conversion_events')
    op.drop_index('ix_conversion_events_created_at', table_name='conversion_events')
    op.drop_table('conversion_events')
    op.drop_index('ix_postback_configs_event_name', table_name='postback_configs')
    op.drop_table('postback_configs')
    op.drop_table('provider_configs')
    op.drop_index('ix_visitors_click_id', table_name='visitors')
    op.drop_table('visitors')
    op.drop_index('ix_leads_email', table_name='leads')
    op.drop_index('ix_leads_click_id', table_name='leads')
    op.drop_table('leads')
    op.drop_index('ix_users_email', table_name='users')
    op.drop_table('users')

    bind = op.get_bind()
    for enum_type in (RESOLUTION, SOURCE, STATUS, PROVIDER, ROLE):
        enum_type.drop(bind, checkfirst=True)
