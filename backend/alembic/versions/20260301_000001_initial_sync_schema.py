"""Initial sync schema

Revision ID: 20260301_000001
Revises:
Create Date: 2026-03-01 09:00:00.000000

Purpose:
    Tenants, identities and encrypted credentials, branches, ad accounts,
    the entity hierarchy (campaigns, ad groups, creatives, ads), daily and
    hourly insight facts with their breakdowns, branch rollups, schedules,
    leads and Telegram notification targets.

    Every natural key the sync upserts on is a named UniqueConstraint.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20260301_000001'
down_revision = None
branch_labels = None
depends_on = None


def _uuid(name, *args, **kwargs):
    return sa.Column(name, postgresql.UUID(as_uuid=True), *args, **kwargs)


def _money(name):
    return sa.Column(name, sa.Numeric(18, 2), nullable=False, server_default='0')


def _count(name):
    return sa.Column(name, sa.BigInteger(), nullable=False, server_default='0')


def upgrade() -> None:
    # Tenancy --------------------------------------------------------
    op.create_table(
        'users',
        _uuid('id', primary_key=True),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'platform_identities',
        _uuid('id', primary_key=True),
        _uuid('user_id', sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'platform_credentials',
        _uuid('id', primary_key=True),
        _uuid('identity_id', sa.ForeignKey('platform_identities.id'), nullable=False, index=True),
        sa.Column('credential_type', sa.String(), nullable=False, server_default='access_token'),
        sa.Column('credential_value_enc', sa.Text(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'branches',
        _uuid('id', primary_key=True),
        _uuid('user_id', sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('code', sa.String(), nullable=False),
        sa.Column('auto_match_keywords', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'platform_accounts',
        _uuid('id', primary_key=True),
        _uuid('identity_id', sa.ForeignKey('platform_identities.id'), nullable=False, index=True),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('currency', sa.String(), nullable=True),
        sa.Column('timezone', sa.String(), nullable=True),
        sa.Column('account_status', sa.String(), nullable=False, server_default='ACTIVE'),
        sa.Column('amount_spent', sa.Numeric(18, 2), nullable=True),
        sa.Column('balance', sa.Numeric(18, 2), nullable=True),
        _uuid('branch_id', sa.ForeignKey('branches.id'), nullable=True, index=True),
        sa.Column('last_synced_at', sa.DateTime(), nullable=True),
        sa.Column('entities_synced_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('identity_id', 'external_id', name='uq_platform_accounts_identity_external'),
    )

    # Entity hierarchy -----------------------------------------------
    op.create_table(
        'unified_campaigns',
        _uuid('id', primary_key=True),
        _uuid('platform_account_id', sa.ForeignKey('platform_accounts.id'), nullable=False, index=True),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('objective', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('effective_status', sa.String(), nullable=True),
        sa.Column('daily_budget', sa.Numeric(18, 2), nullable=True),
        sa.Column('lifetime_budget', sa.Numeric(18, 2), nullable=True),
        sa.Column('start_time', sa.DateTime(), nullable=True),
        sa.Column('end_time', sa.DateTime(), nullable=True),
        sa.Column('created_time', sa.DateTime(), nullable=True),
        sa.Column('updated_time', sa.DateTime(), nullable=True),
        sa.Column('synced_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('platform_account_id', 'external_id', name='uq_unified_campaigns_account_external'),
    )

    op.create_table(
        'unified_ad_groups',
        _uuid('id', primary_key=True),
        _uuid('platform_account_id', sa.ForeignKey('platform_accounts.id'), nullable=False, index=True),
        _uuid('campaign_id', sa.ForeignKey('unified_campaigns.id'), nullable=False, index=True),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('effective_status', sa.String(), nullable=True),
        sa.Column('optimization_goal', sa.String(), nullable=True),
        sa.Column('daily_budget', sa.Numeric(18, 2), nullable=True),
        sa.Column('lifetime_budget', sa.Numeric(18, 2), nullable=True),
        sa.Column('start_time', sa.DateTime(), nullable=True),
        sa.Column('end_time', sa.DateTime(), nullable=True),
        sa.Column('created_time', sa.DateTime(), nullable=True),
        sa.Column('updated_time', sa.DateTime(), nullable=True),
        sa.Column('synced_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('platform_account_id', 'external_id', name='uq_unified_ad_groups_account_external'),
    )

    op.create_table(
        'unified_ad_creatives',
        _uuid('id', primary_key=True),
        _uuid('platform_account_id', sa.ForeignKey('platform_accounts.id'), nullable=False, index=True),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('thumbnail_url', sa.Text(), nullable=True),
        sa.Column('object_story_spec', sa.JSON(), nullable=True),
        sa.Column('synced_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('platform_account_id', 'external_id', name='uq_unified_ad_creatives_account_external'),
    )

    op.create_table(
        'unified_ads',
        _uuid('id', primary_key=True),
        _uuid('platform_account_id', sa.ForeignKey('platform_accounts.id'), nullable=False, index=True),
        _uuid('ad_group_id', sa.ForeignKey('unified_ad_groups.id'), nullable=False, index=True),
        _uuid('creative_id', sa.ForeignKey('unified_ad_creatives.id'), nullable=True),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('effective_status', sa.String(), nullable=True),
        sa.Column('created_time', sa.DateTime(), nullable=True),
        sa.Column('updated_time', sa.DateTime(), nullable=True),
        sa.Column('synced_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('platform_account_id', 'external_id', name='uq_unified_ads_account_external'),
    )

    # Performance facts ----------------------------------------------
    op.create_table(
        'unified_insights',
        _uuid('id', primary_key=True),
        _uuid('platform_account_id', sa.ForeignKey('platform_accounts.id'), nullable=False, index=True),
        _uuid('campaign_id', sa.ForeignKey('unified_campaigns.id'), nullable=True),
        _uuid('ad_group_id', sa.ForeignKey('unified_ad_groups.id'), nullable=True),
        _uuid('ad_id', sa.ForeignKey('unified_ads.id'), nullable=False, index=True),
        sa.Column('date', sa.Date(), nullable=False, index=True),
        _money('spend'),
        _count('impressions'),
        _count('clicks'),
        _count('reach'),
        _count('results'),
        _count('messaging_total'),
        _count('messaging_new'),
        _money('purchase_value'),
        sa.Column('raw_actions', sa.JSON(), nullable=True),
        sa.Column('synced_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('platform_account_id', 'ad_id', 'date', name='uq_unified_insights_account_ad_date'),
    )

    op.create_table(
        'unified_hourly_insights',
        _uuid('id', primary_key=True),
        _uuid('platform_account_id', sa.ForeignKey('platform_accounts.id'), nullable=False, index=True),
        _uuid('campaign_id', sa.ForeignKey('unified_campaigns.id'), nullable=True),
        _uuid('ad_group_id', sa.ForeignKey('unified_ad_groups.id'), nullable=True),
        _uuid('ad_id', sa.ForeignKey('unified_ads.id'), nullable=False, index=True),
        sa.Column('date', sa.Date(), nullable=False, index=True),
        sa.Column('hour', sa.Integer(), nullable=False),
        _money('spend'),
        _count('impressions'),
        _count('clicks'),
        _count('results'),
        _count('messaging_total'),
        _count('messaging_new'),
        _money('purchase_value'),
        sa.Column('synced_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint(
            'platform_account_id', 'ad_id', 'date', 'hour',
            name='uq_unified_hourly_insights_account_ad_date_hour',
        ),
    )

    breakdowns = {
        'insight_device_breakdowns': (['device'], 'uq_insight_device_breakdowns_insight_device'),
        'insight_age_gender_breakdowns': (['age', 'gender'], 'uq_insight_age_gender_breakdowns_insight_age_gender'),
        'insight_region_breakdowns': (['region'], 'uq_insight_region_breakdowns_insight_region'),
    }
    for table, (dims, constraint) in breakdowns.items():
        op.create_table(
            table,
            _uuid('id', primary_key=True),
            _uuid(
                'insight_id',
                sa.ForeignKey('unified_insights.id', ondelete='CASCADE'),
                nullable=False,
                index=True,
            ),
            *[sa.Column(dim, sa.String(), nullable=False) for dim in dims],
            _money('spend'),
            _count('impressions'),
            _count('clicks'),
            _count('reach'),
            _count('results'),
            sa.UniqueConstraint('insight_id', *dims, name=constraint),
        )

    op.create_table(
        'branch_daily_stats',
        _uuid('id', primary_key=True),
        _uuid('branch_id', sa.ForeignKey('branches.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('date', sa.Date(), nullable=False, index=True),
        sa.Column('platform_code', sa.String(), nullable=False, server_default='facebook'),
        _money('total_spend'),
        _count('total_impressions'),
        _count('total_clicks'),
        _count('total_reach'),
        _count('total_results'),
        _count('total_messaging'),
        sa.Column('ad_account_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('ads_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('branch_id', 'date', 'platform_code', name='uq_branch_daily_stats_branch_date_platform'),
    )

    # Scheduling, leads, notifications -------------------------------
    op.create_table(
        'cron_settings',
        _uuid('id', primary_key=True),
        _uuid('user_id', sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('cron_type', sa.String(), nullable=False),
        sa.Column('allowed_hours', sa.JSON(), nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('user_id', 'cron_type', name='uq_cron_settings_user_type'),
    )

    op.create_table(
        'leads',
        _uuid('id', primary_key=True),
        _uuid('user_id', sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('fb_page_id', sa.String(), nullable=False),
        sa.Column('customer_name', sa.String(), nullable=True),
        sa.Column('last_message_at', sa.DateTime(), nullable=True, index=True),
        sa.Column('lead_metadata', sa.JSON(), nullable=True),
        sa.Column('platform_data', sa.JSON(), nullable=True),
        sa.Column('source_ad_external_id', sa.String(), nullable=True),
        _uuid('source_ad_id', sa.ForeignKey('unified_ads.id'), nullable=True),
        _uuid('platform_account_id', sa.ForeignKey('platform_accounts.id'), nullable=True),
        sa.Column('is_qualified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'telegram_bots',
        _uuid('id', primary_key=True),
        _uuid('user_id', sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('bot_token_enc', sa.Text(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
    )

    op.create_table(
        'telegram_subscribers',
        _uuid('id', primary_key=True),
        _uuid('bot_id', sa.ForeignKey('telegram_bots.id'), nullable=False, index=True),
        sa.Column('chat_id', sa.String(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
    )


def downgrade() -> None:
    for table in (
        'telegram_subscribers',
        'telegram_bots',
        'leads',
        'cron_settings',
        'branch_daily_stats',
        'insight_region_breakdowns',
        'insight_age_gender_breakdowns',
        'insight_device_breakdowns',
        'unified_hourly_insights',
        'unified_insights',
        'unified_ads',
        'unified_ad_creatives',
        'unified_ad_groups',
        'unified_campaigns',
        'platform_accounts',
        'branches',
        'platform_credentials',
        'platform_identities',
    ):
        op.drop_table(table)
    op.drop_index('ix_users_email', table_name='users')
    op.drop_table('users')
