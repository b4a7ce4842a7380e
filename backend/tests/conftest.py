# tests/conftest.py - Shared test fixtures
import os
import uuid

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test.db"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"

from models import Customer, Job, JobStatus, Material, Order, OrderStatus, User, UserRole
from auth import AuthService
from audit_events import AuditDispatcher
from database import Database
import evidence_files
import quote_service
from main import app


@pytest.fixture(autouse=True)
def evidence_dir(tmp_path, monkeypatch):
    """Every test writes evidence exports to its own directory"""
    directory = tmp_path / "evidence"
    monkeypatch.setattr(evidence_files, "EVIDENCE_DIR", str(directory))
    return directory


@pytest_asyncio.fixture(scope="function")
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}").open()
    await db.create_all()
    yield db
    await db.drop_all()
    await db.close()


@pytest_asyncio.fixture(scope="function")
async def db_session(database):
    async with database.session() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def dispatcher(database):
    d = AuditDispatcher(database)
    d.start()
    yield d
    await d.stop()


@pytest_asyncio.fixture(scope="function")
async def client(database, dispatcher):
    """HTTP test client wired to the per-test database and dispatcher"""
    app.state.database = database
    app.state.audit_dispatcher = dispatcher
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def _make_user(db_session, email: str, name: str, role: UserRole) -> User:
    user = User(id=str(uuid.uuid4()), email=email, name=name, role=role, is_active=True)
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def test_user(db_session):
    return await _make_user(db_session, "estimator@fabtrack.dev", "Erin Estimator", UserRole.STAFF)


@pytest_asyncio.fixture
async def manager_user(db_session):
    return await _make_user(db_session, "manager@fabtrack.dev", "Morgan Manager", UserRole.MANAGER)


@pytest_asyncio.fixture
async def customer(db_session):
    c = Customer(
        id=str(uuid.uuid4()),
        name="Acme Steelworks",
        email="buyer@acme.example",
        contact_person="Pat Buyer",
    )
    db_session.add(c)
    await db_session.commit()
    await db_session.refresh(c)
    return c


@pytest_asyncio.fixture
async def material(db_session):
    m = Material(id=str(uuid.uuid4()), code="STL-10MM", name="10mm mild steel plate", unit_cost=42)
    db_session.add(m)
    await db_session.commit()
    await db_session.refresh(m)
    return m


@pytest_asyncio.fixture
async def quote(db_session, test_user, customer, material):
    return await quote_service.create_quote(db_session, {
        "customer_id": customer.id,
        "title": "Mezzanine floor",
        "description": "Steel mezzanine, 40m2",
        "line_items": [
            {"description": "Plate", "quantity": 10, "unit_price": 40, "material_id": material.id},
            {"description": "Fabrication labour", "quantity": 8, "unit_price": 25},
        ],
    }, created_by_id=test_user.id)


@pytest_asyncio.fixture
async def order(db_session, test_user, customer):
    o = Order(
        id=str(uuid.uuid4()),
        project_title="Mezzanine floor",
        status=OrderStatus.APPROVED,
        customer_id=customer.id,
        created_by_id=test_user.id,
        project_owner_id=test_user.id,
        total_amount=960,
    )
    db_session.add(o)
    await db_session.commit()
    await db_session.refresh(o)
    return o


@pytest_asyncio.fixture
async def job(db_session, customer):
    j = Job(
        id=str(uuid.uuid4()),
        job_number="JOB-0001",
        title="Fabricate mezzanine",
        status=JobStatus.ACTIVE,
        customer_id=customer.id,
    )
    db_session.add(j)
    await db_session.commit()
    await db_session.refresh(j)
    return j


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token_data = {
        "sub": user.id,
        "email": user.email,
        "role": user.role.value if isinstance(user.role, UserRole) else user.role,
    }
    token = AuthService.create_access_token(token_data)
    return {"Authorization": f"Bearer {token}"}
