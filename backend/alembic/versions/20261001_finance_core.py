"""finance core: projects, incomes, balances ledger, payment instructions"""

from alembic import op
import sqlalchemy as sa

# --- REVISION INFO ---
revision = "20261001_finance_core"
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(18, 2)
RATE = sa.Numeric(9, 4)

ONE_PERSON = (
    "(user_id IS NOT NULL AND personnel_id IS NULL) OR "
    "(user_id IS NULL AND personnel_id IS NOT NULL)"
)


def _person_columns():
    return [
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=True),
        sa.Column("personnel_id", sa.Integer(), sa.ForeignKey("personnel.id", ondelete="RESTRICT"), nullable=True),
    ]


def upgrade() -> None:
    # --- Kişiler ---
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(), nullable=False, unique=True),
        sa.Column("full_name", sa.String(), nullable=False),
        sa.Column("role_name", sa.String(), nullable=False, server_default=sa.text("'academician'")),
        sa.Column("iban", sa.String(34), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_users_id", "users", ["id"])

    op.create_table(
        "personnel",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("full_name", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("iban", sa.String(34), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_personnel_id", "personnel", ["id"])

    # --- Projeler ---
    op.create_table(
        "projects",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("code", sa.String(50), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("budget", MONEY, nullable=False, server_default=sa.text("0")),
        sa.Column("company_rate", RATE, nullable=False, server_default=sa.text("0")),
        sa.Column("vat_rate", RATE, nullable=False, server_default=sa.text("18")),
        sa.Column("has_withholding_tax", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("withholding_tax_rate", RATE, nullable=False, server_default=sa.text("0")),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'active'")),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.CheckConstraint("status IN ('active','completed','cancelled')", name="ck_project_status"),
        sa.CheckConstraint("company_rate >= 0 AND company_rate <= 100", name="ck_project_company_rate"),
    )
    op.create_index("ix_projects_id", "projects", ["id"])
    op.create_index("ix_projects_status", "projects", ["status"])

    op.create_table(
        "project_representatives",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("project_id", sa.Integer(), sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
        *_person_columns(),
        sa.Column("role", sa.String(20), nullable=False, server_default=sa.text("'researcher'")),
        sa.Column("share_percentage", RATE, nullable=False),
        sa.CheckConstraint(ONE_PERSON, name="ck_rep_one_person"),
        sa.CheckConstraint("role IN ('project_leader','researcher')", name="ck_rep_role"),
        sa.CheckConstraint("share_percentage > 0 AND share_percentage <= 100", name="ck_rep_share"),
        sa.UniqueConstraint("project_id", "user_id", name="uix_rep_project_user"),
        sa.UniqueConstraint("project_id", "personnel_id", name="uix_rep_project_personnel"),
    )
    op.create_index("ix_project_representatives_id", "project_representatives", ["id"])
    op.create_index("ix_rep_project", "project_representatives", ["project_id"])

    # --- Gelirler ---
    op.create_table(
        "incomes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("project_id", sa.Integer(), sa.ForeignKey("projects.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("gross_amount", MONEY, nullable=False),
        sa.Column("vat_rate", RATE, nullable=False),
        sa.Column("income_date", sa.Date(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_fsmh_income", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("income_type", sa.String(10), nullable=False, server_default=sa.text("'ozel'")),
        sa.Column("is_tto_income", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("collected_amount", MONEY, nullable=False, server_default=sa.text("0")),
        sa.Column("vat_amount", MONEY, nullable=False),
        sa.Column("withholding_tax_amount", MONEY, nullable=False, server_default=sa.text("0")),
        sa.Column("paid_vat_amount", MONEY, nullable=False),
        sa.Column("net_amount", MONEY, nullable=False),
        sa.Column("company_amount", MONEY, nullable=False),
        sa.Column("distributable_amount", MONEY, nullable=False),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.CheckConstraint("gross_amount > 0", name="ck_income_gross_positive"),
        sa.CheckConstraint("collected_amount >= 0 AND collected_amount <= gross_amount", name="ck_income_collected"),
        sa.CheckConstraint("income_type IN ('ozel','kamu')", name="ck_income_type"),
    )
    op.create_index("ix_incomes_id", "incomes", ["id"])
    op.create_index("ix_incomes_project", "incomes", ["project_id"])
    op.create_index("ix_incomes_date", "incomes", ["income_date"])

    op.create_table(
        "income_distributions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("income_id", sa.Integer(), sa.ForeignKey("incomes.id", ondelete="CASCADE"), nullable=False),
        *_person_columns(),
        sa.Column("share_percentage", RATE, nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.CheckConstraint(ONE_PERSON, name="ck_dist_one_person"),
    )
    op.create_index("ix_income_distributions_id", "income_distributions", ["id"])
    op.create_index("ix_dist_income", "income_distributions", ["income_id"])

    # --- Bakiye defteri ---
    op.create_table(
        "balances",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("balance_key", sa.String(100), nullable=False, unique=True),
        *_person_columns(),
        sa.Column("project_id", sa.Integer(), sa.ForeignKey("projects.id", ondelete="RESTRICT"), nullable=True),
        sa.Column("available_amount", MONEY, nullable=False, server_default=sa.text("0")),
        sa.Column("debt_amount", MONEY, nullable=False, server_default=sa.text("0")),
        sa.Column("reserved_amount", MONEY, nullable=False, server_default=sa.text("0")),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("last_updated", sa.DateTime(), nullable=False),
        sa.CheckConstraint(ONE_PERSON, name="ck_balance_one_person"),
        sa.CheckConstraint("available_amount >= 0", name="ck_balance_available"),
        sa.CheckConstraint("reserved_amount >= 0", name="ck_balance_reserved"),
    )
    op.create_index("ix_balances_id", "balances", ["id"])
    op.create_index("ix_balances_user", "balances", ["user_id"])
    op.create_index("ix_balances_personnel", "balances", ["personnel_id"])
    op.create_index("ix_balances_project", "balances", ["project_id"])

    op.create_table(
        "balance_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("balance_id", sa.Integer(), sa.ForeignKey("balances.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("reserved_delta", MONEY, nullable=False, server_default=sa.text("0")),
        sa.Column("debt_delta", MONEY, nullable=False, server_default=sa.text("0")),
        sa.Column("balance_before", MONEY, nullable=False),
        sa.Column("balance_after", MONEY, nullable=False),
        sa.Column("reference_type", sa.String(30), nullable=True),
        sa.Column("reference_id", sa.Integer(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("type IN ('income','payment','debt','adjustment')", name="ck_btx_type"),
    )
    op.create_index("ix_balance_transactions_id", "balance_transactions", ["id"])
    op.create_index("ix_btx_balance_created", "balance_transactions", ["balance_id", "created_at", "id"])
    op.create_index("ix_btx_reference", "balance_transactions", ["reference_type", "reference_id"])

    op.create_table(
        "manual_balance_allocations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("project_id", sa.Integer(), sa.ForeignKey("projects.id", ondelete="RESTRICT"), nullable=False),
        *_person_columns(),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.CheckConstraint(ONE_PERSON, name="ck_alloc_one_person"),
    )
    op.create_index("ix_manual_balance_allocations_id", "manual_balance_allocations", ["id"])
    op.create_index("ix_alloc_project", "manual_balance_allocations", ["project_id"])

    # --- Ödeme talimatları ---
    op.create_table(
        "payment_instructions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("instruction_number", sa.String(30), nullable=False, unique=True),
        *_person_columns(),
        sa.Column("project_id", sa.Integer(), sa.ForeignKey("projects.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("total_amount", MONEY, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.Column("approved_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("rejected_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint(ONE_PERSON, name="ck_pi_one_person"),
        sa.CheckConstraint("total_amount > 0", name="ck_pi_total_positive"),
        sa.CheckConstraint(
            "status IN ('pending','approved','processing','completed','rejected')", name="ck_pi_status"
        ),
    )
    op.create_index("ix_payment_instructions_id", "payment_instructions", ["id"])
    op.create_index("ix_pi_status", "payment_instructions", ["status"])
    op.create_index("ix_pi_project", "payment_instructions", ["project_id"])

    op.create_table(
        "payment_instruction_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "instruction_id",
            sa.Integer(),
            sa.ForeignKey("payment_instructions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "income_distribution_id",
            sa.Integer(),
            sa.ForeignKey("income_distributions.id", ondelete="RESTRICT"),
            nullable=True,
        ),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.CheckConstraint("amount > 0", name="ck_pi_item_amount"),
    )
    op.create_index("ix_payment_instruction_items_id", "payment_instruction_items", ["id"])
    op.create_index("ix_pi_items_instruction", "payment_instruction_items", ["instruction_id"])

    op.create_table(
        "instruction_sequences",
        sa.Column("year", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("last_value", sa.Integer(), nullable=False, server_default=sa.text("0")),
    )


def downgrade() -> None:
    for table in (
        "instruction_sequences",
        "payment_instruction_items",
        "payment_instructions",
        "manual_balance_allocations",
        "balance_transactions",
        "balances",
        "income_distributions",
        "incomes",
        "project_representatives",
        "projects",
        "personnel",
        "users",
    ):
        op.drop_table(table)
