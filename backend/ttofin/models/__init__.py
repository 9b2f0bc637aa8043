# [BEGIN FILE] backend/ttofin/models/__init__.py
from datetime import datetime

from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    DateTime,
    Date,
    ForeignKey,
    UniqueConstraint,
    Index,
    CheckConstraint,
    func,
    Numeric,
    Boolean,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# Tutarlar kuruş hassasiyetinde, oranlar yüzde olarak tutulur
Money = Numeric(18, 2)
Rate = Numeric(9, 4)

# Tam olarak bir kişi kolonu dolu olmalı (user XOR personnel)
_ONE_PERSON = (
    "(user_id IS NOT NULL AND personnel_id IS NULL) OR "
    "(user_id IS NULL AND personnel_id IS NOT NULL)"
)


# =========================
# Kişiler (User / Personnel)
# =========================
class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)

    email = Column(String, nullable=False, unique=True)
    full_name = Column(String, nullable=False)
    role_name = Column(String, nullable=False, default="academician")  # admin|manager|finance_officer|academician
    iban = Column(String(34), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="1")

    created_at = Column(DateTime, server_default=func.now())


class Personnel(Base):
    """Sisteme girişi olmayan proje personeli (bursiyer, dış araştırmacı vb.)."""
    __tablename__ = "personnel"
    id = Column(Integer, primary_key=True, index=True)

    full_name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    iban = Column(String(34), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="1")

    created_at = Column(DateTime, server_default=func.now())


# =========================
# Projects
# =========================
class Project(Base):
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(50), nullable=False, unique=True)
    name = Column(String(255), nullable=False)

    budget = Column(Money, nullable=False, default=0)
    company_rate = Column(Rate, nullable=False, default=0)          # TTO komisyon oranı (%)
    vat_rate = Column(Rate, nullable=False, default=18)             # proje varsayılan KDV (%)
    has_withholding_tax = Column(Boolean, nullable=False, default=False, server_default="0")
    withholding_tax_rate = Column(Rate, nullable=False, default=0)  # tevkifat oranı (%)

    status = Column(String(20), nullable=False, default="active")   # active|completed|cancelled
    created_at = Column(DateTime, server_default=func.now())

    representatives = relationship(
        "ProjectRepresentative", back_populates="project", cascade="all, delete-orphan", lazy="selectin"
    )
    incomes = relationship("Income", back_populates="project", lazy="selectin")

    __table_args__ = (
        CheckConstraint("status IN ('active','completed','cancelled')", name="ck_project_status"),
        CheckConstraint("company_rate >= 0 AND company_rate <= 100", name="ck_project_company_rate"),
        Index("ix_projects_status", "status"),
    )


class ProjectRepresentative(Base):
    __tablename__ = "project_representatives"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=True)
    personnel_id = Column(Integer, ForeignKey("personnel.id", ondelete="RESTRICT"), nullable=True)

    role = Column(String(20), nullable=False, default="researcher")  # project_leader|researcher
    share_percentage = Column(Rate, nullable=False)

    project = relationship("Project", back_populates="representatives", lazy="selectin")

    __table_args__ = (
        CheckConstraint(_ONE_PERSON, name="ck_rep_one_person"),
        CheckConstraint("role IN ('project_leader','researcher')", name="ck_rep_role"),
        CheckConstraint("share_percentage > 0 AND share_percentage <= 100", name="ck_rep_share"),
        UniqueConstraint("project_id", "user_id", name="uix_rep_project_user"),
        UniqueConstraint("project_id", "personnel_id", name="uix_rep_project_personnel"),
        Index("ix_rep_project", "project_id"),
    )


# =========================
# Incomes & Distributions
# =========================
class Income(Base):
    __tablename__ = "incomes"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="RESTRICT"), nullable=False)

    gross_amount = Column(Money, nullable=False)
    vat_rate = Column(Rate, nullable=False)
    income_date = Column(Date, nullable=False)
    description = Column(Text, nullable=True)

    is_fsmh_income = Column(Boolean, nullable=False, default=False, server_default="0")
    income_type = Column(String(10), nullable=False, default="ozel")  # ozel|kamu
    is_tto_income = Column(Boolean, nullable=False, default=True, server_default="1")

    collected_amount = Column(Money, nullable=False, default=0)

    # Oluşturulurken bir kez hesaplanır, sonra değişmez
    vat_amount = Column(Money, nullable=False)
    withholding_tax_amount = Column(Money, nullable=False, default=0)
    paid_vat_amount = Column(Money, nullable=False)
    net_amount = Column(Money, nullable=False)
    company_amount = Column(Money, nullable=False)
    distributable_amount = Column(Money, nullable=False)

    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    project = relationship("Project", back_populates="incomes", lazy="selectin")
    distributions = relationship(
        "IncomeDistribution", back_populates="income", cascade="all, delete-orphan", lazy="selectin"
    )

    __table_args__ = (
        CheckConstraint("gross_amount > 0", name="ck_income_gross_positive"),
        CheckConstraint("collected_amount >= 0 AND collected_amount <= gross_amount", name="ck_income_collected"),
        CheckConstraint("income_type IN ('ozel','kamu')", name="ck_income_type"),
        Index("ix_incomes_project", "project_id"),
        Index("ix_incomes_date", "income_date"),
    )


class IncomeDistribution(Base):
    __tablename__ = "income_distributions"

    id = Column(Integer, primary_key=True, index=True)
    income_id = Column(Integer, ForeignKey("incomes.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=True)
    personnel_id = Column(Integer, ForeignKey("personnel.id", ondelete="RESTRICT"), nullable=True)

    share_percentage = Column(Rate, nullable=False)
    amount = Column(Money, nullable=False)

    income = relationship("Income", back_populates="distributions", lazy="selectin")

    __table_args__ = (
        CheckConstraint(_ONE_PERSON, name="ck_dist_one_person"),
        Index("ix_dist_income", "income_id"),
    )


# =========================
# Balances (ledger)
# =========================
class Balance(Base):
    __tablename__ = "balances"

    id = Column(Integer, primary_key=True, index=True)
    # "user:5:12" / "personnel:3:*": kişi + proje için tekil anahtar
    balance_key = Column(String(100), nullable=False, unique=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=True)
    personnel_id = Column(Integer, ForeignKey("personnel.id", ondelete="RESTRICT"), nullable=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="RESTRICT"), nullable=True)

    available_amount = Column(Money, nullable=False, default=0)
    debt_amount = Column(Money, nullable=False, default=0)
    reserved_amount = Column(Money, nullable=False, default=0)

    version = Column(Integer, nullable=False)
    last_updated = Column(DateTime, nullable=False, default=datetime.utcnow)

    transactions = relationship("BalanceTransaction", back_populates="balance", lazy="noload")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(_ONE_PERSON, name="ck_balance_one_person"),
        CheckConstraint("available_amount >= 0", name="ck_balance_available"),
        CheckConstraint("reserved_amount >= 0", name="ck_balance_reserved"),
        Index("ix_balances_user", "user_id"),
        Index("ix_balances_personnel", "personnel_id"),
        Index("ix_balances_project", "project_id"),
    )


class BalanceTransaction(Base):
    """Append-only; satırlar eklendikten sonra asla güncellenmez."""
    __tablename__ = "balance_transactions"

    id = Column(Integer, primary_key=True, index=True)
    balance_id = Column(Integer, ForeignKey("balances.id", ondelete="RESTRICT"), nullable=False)

    type = Column(String(20), nullable=False)  # income|payment|debt|adjustment
    amount = Column(Money, nullable=False)     # available_amount üzerindeki işaretli etki
    reserved_delta = Column(Money, nullable=False, default=0)
    debt_delta = Column(Money, nullable=False, default=0)
    balance_before = Column(Money, nullable=False)
    balance_after = Column(Money, nullable=False)

    reference_type = Column(String(30), nullable=True)  # income|payment_instruction|manual_allocation|balance_transaction
    reference_id = Column(Integer, nullable=True)
    description = Column(Text, nullable=True)

    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    balance = relationship("Balance", back_populates="transactions", lazy="selectin")

    __table_args__ = (
        CheckConstraint("type IN ('income','payment','debt','adjustment')", name="ck_btx_type"),
        Index("ix_btx_balance_created", "balance_id", "created_at", "id"),
        Index("ix_btx_reference", "reference_type", "reference_id"),
    )


class ManualBalanceAllocation(Base):
    __tablename__ = "manual_balance_allocations"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="RESTRICT"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=True)
    personnel_id = Column(Integer, ForeignKey("personnel.id", ondelete="RESTRICT"), nullable=True)

    amount = Column(Money, nullable=False)  # negatif = bakiye düşümü
    notes = Column(Text, nullable=True)

    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    __table_args__ = (
        CheckConstraint(_ONE_PERSON, name="ck_alloc_one_person"),
        Index("ix_alloc_project", "project_id"),
    )


# =========================
# Payment Instructions
# =========================
class PaymentInstruction(Base):
    __tablename__ = "payment_instructions"

    id = Column(Integer, primary_key=True, index=True)
    instruction_number = Column(String(30), nullable=False, unique=True)

    user_id = Column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=True)
    personnel_id = Column(Integer, ForeignKey("personnel.id", ondelete="RESTRICT"), nullable=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="RESTRICT"), nullable=False)

    total_amount = Column(Money, nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    notes = Column(Text, nullable=True)

    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=True, onupdate=datetime.utcnow)
    approved_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    rejected_at = Column(DateTime, nullable=True)

    items = relationship(
        "PaymentInstructionItem", back_populates="instruction", cascade="all, delete-orphan", lazy="selectin"
    )

    __table_args__ = (
        CheckConstraint(_ONE_PERSON, name="ck_pi_one_person"),
        CheckConstraint("total_amount > 0", name="ck_pi_total_positive"),
        CheckConstraint(
            "status IN ('pending','approved','processing','completed','rejected')", name="ck_pi_status"
        ),
        Index("ix_pi_status", "status"),
        Index("ix_pi_project", "project_id"),
    )


class PaymentInstructionItem(Base):
    __tablename__ = "payment_instruction_items"

    id = Column(Integer, primary_key=True, index=True)
    instruction_id = Column(Integer, ForeignKey("payment_instructions.id", ondelete="CASCADE"), nullable=False)
    income_distribution_id = Column(
        Integer, ForeignKey("income_distributions.id", ondelete="RESTRICT"), nullable=True
    )  # NULL = manuel kalem

    amount = Column(Money, nullable=False)
    description = Column(Text, nullable=True)

    instruction = relationship("PaymentInstruction", back_populates="items", lazy="selectin")

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_pi_item_amount"),
        Index("ix_pi_items_instruction", "instruction_id"),
    )


class InstructionSequence(Base):
    """Talimat numaraları için yıl bazlı sayaç."""
    __tablename__ = "instruction_sequences"

    year = Column(Integer, primary_key=True, autoincrement=False)
    last_value = Column(Integer, nullable=False, default=0)
