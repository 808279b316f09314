from __future__ import annotations
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = "20261001_0001"
down_revision = None
branch_labels = None
depends_on = None

def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("username", sa.String(length=64), nullable=False),
        sa.Column("role", sa.String(length=24), nullable=False, server_default="user"),
        sa.Column("level", sa.String(length=16), nullable=False, server_default="bronze"),
        sa.Column("xp", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("in_game_name", sa.String(length=64), nullable=True),
        sa.Column("in_game_id", sa.String(length=64), nullable=True),
        sa.Column("matches_played", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("matches_won", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_earnings", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("wallet_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("wallet_balance >= 0", name="ck_users_wallet_non_negative"),
    )
    op.create_index("ix_users_username", "users", ["username"], unique=True)

    op.create_table(
        "prize_distribution_rules",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("match_type", sa.String(length=32), nullable=False, server_default="all"),
        sa.Column("game_type", sa.String(length=32), nullable=False, server_default="all"),
        sa.Column("min_participants", sa.Integer(), nullable=False, server_default="2"),
        sa.Column("max_participants", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("entry_fee_min", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("entry_fee_max", sa.Integer(), nullable=True),
        sa.Column("prize_pool_min", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("prize_pool_max", sa.Integer(), nullable=True),
        sa.Column("effective_from", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("effective_until", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("distribution_type", sa.String(length=16), nullable=False),
        sa.Column("config_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_prize_rules_lookup", "prize_distribution_rules", ["match_type", "game_type", "is_active"])
    op.create_index("ix_prize_rules_priority", "prize_distribution_rules", ["priority"])

    op.create_table(
        "matches",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("title", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("game_type", sa.String(length=32), nullable=False),
        sa.Column("match_type", sa.String(length=32), nullable=False),
        sa.Column("mode", sa.String(length=16), nullable=False, server_default="solo"),
        sa.Column("scheduled_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("registration_close_time", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("credentials_reveal_time", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("max_slots", sa.Integer(), nullable=False),
        sa.Column("filled_slots", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("min_level_required", sa.String(length=16), nullable=False, server_default="bronze"),
        sa.Column("entry_fee", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("prize_pool", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("per_kill_prize", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("prize_distribution", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("prize_rule_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("prize_distribution_rules.id", ondelete="SET NULL"), nullable=True),
        sa.Column("room_id", sa.String(length=64), nullable=True),
        sa.Column("room_password", sa.String(length=64), nullable=True),
        sa.Column("room_credentials_visible", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("status", sa.String(length=24), nullable=False, server_default="upcoming"),
        sa.Column("is_challenge", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("creation_fee", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_by", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("results", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("result_declared_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("cancelled_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("cancellation_reason", sa.String(length=255), nullable=True),
        sa.Column("cancelled_by_system", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("refunds_processed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("max_slots >= 2 AND max_slots <= 100", name="ck_matches_max_slots"),
        sa.CheckConstraint("filled_slots >= 0 AND filled_slots <= max_slots", name="ck_matches_filled_slots"),
        sa.CheckConstraint("entry_fee >= 0 AND prize_pool >= 0 AND per_kill_prize >= 0", name="ck_matches_money_non_negative"),
    )
    op.create_index("ix_matches_game_type", "matches", ["game_type"])
    op.create_index("ix_matches_match_type", "matches", ["match_type"])
    op.create_index("ix_matches_scheduled_at", "matches", ["scheduled_at"])
    op.create_index("ix_matches_status", "matches", ["status"])
    op.create_index("ix_matches_is_challenge", "matches", ["is_challenge"])
    op.create_index("ix_matches_created_by", "matches", ["created_by"])
    op.create_index("ix_matches_status_scheduled", "matches", ["status", "scheduled_at"])

    op.create_table(
        "match_slots",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("match_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("matches.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("slot_number", sa.Integer(), nullable=False),
        sa.Column("in_game_name", sa.String(length=64), nullable=True),
        sa.Column("in_game_id", sa.String(length=64), nullable=True),
        sa.Column("entry_fee_paid", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("kills", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("position", sa.Integer(), nullable=True),
        sa.Column("prize_won", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("prize_distributed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("screenshot_url", sa.Text(), nullable=True),
        sa.Column("screenshot_hash", sa.String(length=64), nullable=True),
        sa.Column("screenshot_uploaded_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("screenshot_status", sa.String(length=16), nullable=False, server_default="not_uploaded"),
        sa.Column("screenshot_rejection_reason", sa.String(length=255), nullable=True),
        sa.Column("joined_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("match_id", "user_id", name="uq_match_slot_user"),
        sa.UniqueConstraint("match_id", "slot_number", name="uq_match_slot_number"),
    )
    op.create_index("ix_match_slots_match_id", "match_slots", ["match_id"])
    op.create_index("ix_match_slots_user_id", "match_slots", ["user_id"])

    op.create_table(
        "transactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("direction", sa.String(length=8), nullable=False),
        sa.Column("category", sa.String(length=32), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_before", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("reference_type", sa.String(length=16), nullable=True),
        sa.Column("reference_id", sa.String(length=64), nullable=True),
        sa.Column("description", sa.String(length=500), nullable=False, server_default=""),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="completed"),
        sa.Column("idempotency_key", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("amount >= 0", name="ck_transactions_amount_non_negative"),
        sa.CheckConstraint("balance_after >= 0", name="ck_transactions_balance_non_negative"),
        sa.CheckConstraint(
            "(direction = 'credit' AND balance_after = balance_before + amount) OR "
            "(direction = 'debit' AND balance_after = balance_before - amount)",
            name="ck_transactions_balance_arithmetic",
        ),
        sa.UniqueConstraint("idempotency_key", name="uq_transactions_idempotency_key"),
    )
    op.create_index("ix_transactions_user_id", "transactions", ["user_id"])
    op.create_index("ix_transactions_category", "transactions", ["category"])
    op.create_index("ix_transactions_user_created", "transactions", ["user_id", "created_at"])
    op.create_index("ix_transactions_reference", "transactions", ["reference_type", "reference_id"])

    op.create_table(
        "screenshot_hashes",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("content_hash", sa.String(length=64), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("match_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("matches.id", ondelete="CASCADE"), nullable=False),
        sa.Column("image_url", sa.Text(), nullable=True),
        sa.Column("is_duplicate", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("duplicate_of_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("screenshot_hashes.id", ondelete="SET NULL"), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("flag_reason", sa.String(length=255), nullable=True),
        sa.Column("meta_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_screenshot_hashes_content_hash", "screenshot_hashes", ["content_hash"])
    op.create_index("ix_screenshot_hashes_user_id", "screenshot_hashes", ["user_id"])
    op.create_index("ix_screenshot_hashes_match_id", "screenshot_hashes", ["match_id"])
    op.create_index("ix_screenshot_hashes_user_match", "screenshot_hashes", ["user_id", "match_id"])
    # one original per digest; flagged resubmissions may repeat it
    op.create_index(
        "uq_screenshot_hash_original", "screenshot_hashes", ["content_hash"],
        unique=True, postgresql_where=sa.text("NOT is_duplicate"),
    )

def downgrade() -> None:
    op.drop_table("screenshot_hashes")
    op.drop_table("transactions")
    op.drop_table("match_slots")
    op.drop_table("matches")
    op.drop_table("prize_distribution_rules")
    op.drop_index("ix_users_username", table_name="users")
    op.drop_table("users")
