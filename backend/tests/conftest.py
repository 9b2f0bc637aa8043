# backend/tests/conftest.py
import os
from datetime import date
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Uygulama & modeller
from ttofin.main import app
from ttofin.api import deps as app_deps
from ttofin.models import Base, Personnel, User
from ttofin.services import incomes as income_service
from ttofin.services import projects as project_service
from ttofin.services.persons import UserRef

# -----------------------------
# Test DB: ayrı bir SQLite dosyası
# -----------------------------
TEST_DB_PATH = os.path.abspath(os.path.join(os.path.dirname(__file__), "test_ttofin.db"))
TEST_DB_URL = f"sqlite:///{TEST_DB_PATH}"

engine = create_engine(TEST_DB_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


# -----------------------------
# Bağımlılık override'ları
# -----------------------------
def override_get_db():
    """App'in get_db bağımlılığını test DB ile değiştirir."""
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


class _FakeCurrentUser:
    def __init__(self, id: int, email: str, role_name: str = "admin"):
        self.id = id
        self.email = email
        self.role_name = role_name


# Testler rolü / kullanıcıyı as_user fixture'ı ile değiştirir
_current = {"user": _FakeCurrentUser(id=1, email="admin@tto.local", role_name="admin")}


def override_get_current_user():
    """Auth'u bypass etmek için sahte kullanıcı döndür."""
    return _current["user"]


app.dependency_overrides[app_deps.get_db] = override_get_db
app.dependency_overrides[app_deps.get_current_user] = override_get_current_user


# -----------------------------
# Pytest fixture'ları
# -----------------------------
@pytest.fixture(scope="session", autouse=True)
def _test_db_file():
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)
    yield
    engine.dispose()
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)


@pytest.fixture(autouse=True)
def _fresh_schema():
    # Her test temiz tablolarla başlar
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    _current["user"] = _FakeCurrentUser(id=1, email="admin@tto.local", role_name="admin")
    yield


@pytest.fixture
def session_factory():
    return TestingSessionLocal


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def as_user():
    """API çağrılarını verilen kullanıcı/rol ile yapmak için."""
    def _set(user_id: int, role_name: str, email: str = "user@tto.local"):
        _current["user"] = _FakeCurrentUser(id=user_id, email=email, role_name=role_name)
    return _set


# -----------------------------
# Seed yardımcıları
# -----------------------------
def make_user(db, email, *, iban="TR330006100519786457841326", role_name="academician", is_active=True):
    user = User(email=email, full_name=email.split("@")[0].title(), role_name=role_name, iban=iban, is_active=is_active)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_personnel(db, full_name, *, iban="TR320010009999901234567890"):
    person = Personnel(full_name=full_name, iban=iban)
    db.add(person)
    db.commit()
    db.refresh(person)
    return person


def make_project(db, code, reps, *, budget=500000, company_rate=10, vat_rate=18,
                 has_withholding_tax=False, withholding_tax_rate=0):
    """reps: [(Person, share, role), ...]"""
    return project_service.create_project(
        db,
        code=code,
        name=f"Project {code}",
        budget=budget,
        company_rate=company_rate,
        vat_rate=vat_rate,
        has_withholding_tax=has_withholding_tax,
        withholding_tax_rate=withholding_tax_rate,
        representatives=[
            project_service.RepresentativeInput(person=p, share_percentage=s, role=r) for p, s, r in reps
        ],
    )


@pytest.fixture
def funded(db):
    """
    İki akademisyenli (60/40) proje ve 118.000 TL brüt gelir:
    leader → 54000.00, researcher → 36000.00.
    """
    admin = make_user(db, "admin@tto.local", role_name="admin")
    leader = make_user(db, "leader@uni.edu")
    researcher = make_user(db, "researcher@uni.edu")
    project = make_project(
        db,
        "TTO-001",
        [
            (UserRef(leader.id), 60, project_service.ROLE_LEADER),
            (UserRef(researcher.id), 40, project_service.ROLE_RESEARCHER),
        ],
    )
    result = income_service.create_income(
        db, project_id=project.id, gross_amount=Decimal("118000"), income_date=date(2026, 3, 1), created_by=admin.id
    )
    return {
        "admin": admin,
        "leader": leader,
        "researcher": researcher,
        "project": project,
        "income": result.income,
    }
