"""LoadVoice schema: organizations, calls, usage, billing, CRM, referrals, partners, GDPR.

Tables are created from the declarative models so the migration and the ORM
cannot drift; hot-path indexes that the models don't declare are added with
raw SQL.
"""
from alembic import op

from app.database import Base
from app.models import billing, calls, gdpr, load, organization, partner, referral  # noqa: F401

revision = "0001_loadvoice_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    Base.metadata.create_all(bind=bind, checkfirst=True)

    op.execute("CREATE INDEX IF NOT EXISTS idx_calls_org_status ON calls (organization_id, status)")
    op.execute("CREATE INDEX IF NOT EXISTS idx_calls_status_updated ON calls (status, updated_at)")
    op.execute("CREATE INDEX IF NOT EXISTS idx_usage_logs_org_created ON usage_logs (organization_id, created_at)")
    op.execute("CREATE INDEX IF NOT EXISTS idx_loads_org_status ON loads (organization_id, status)")
    op.execute("CREATE INDEX IF NOT EXISTS idx_notifications_user_read ON notifications (user_id, is_read)")
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_deletion_requests_due ON data_deletion_requests (status, scheduled_for)"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_magic_link_attempts_email ON magic_link_send_attempts (email, created_at)"
    )


def downgrade():
    bind = op.get_bind()
    Base.metadata.drop_all(bind=bind, checkfirst=True)
