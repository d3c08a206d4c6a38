"""Create payments table"""
from alembic import op
import sqlalchemy as sa

revision = "0001_create_payments"
down_revision = None
branch_labels = None
depends_on = None

payment_status = sa.Enum("PENDING", "SUCCESS", "FAILED", name="payment_status")
payment_currency = sa.Enum("USD", "ETB", name="payment_currency")


def upgrade() -> None:
    op.create_table(
        "payments",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", payment_currency, nullable=False),
        sa.Column("reference", sa.String(255), nullable=False, unique=True),
        sa.Column("status", payment_status, nullable=False, server_default="PENDING"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
    )
    op.create_index("idx_payments_status", "payments", ["status"])
    op.create_index("idx_payments_reference", "payments", ["reference"])


def downgrade() -> None:
    op.drop_index("idx_payments_reference", table_name="payments")
    op.drop_index("idx_payments_status", table_name="payments")
    op.drop_table("payments")
    payment_status.drop(op.get_bind(), checkfirst=True)
    payment_currency.drop(op.get_bind(), checkfirst=True)
