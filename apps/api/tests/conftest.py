from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db
from main import app
from models.plan import Plan
from models.submission import Submission
from models.user import User
from routers import rate_limit
from services.session_token import create_session_token


TRAINER_ID = "trainer-ada"
OTHER_TRAINER_ID = "trainer-bo"
STUDENT_ID = "student-sam"
OTHER_STUDENT_ID = "student-kim"
PLAN_ID = "plan-basic"
PREMIUM_PLAN_ID = "plan-premium"


def auth_header(user_id: str, role: str = "student") -> dict:
    return {"Authorization": f"Bearer {create_session_token(user_id, role)['token']}"}


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "ledger.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with maker() as session:
        session.add_all(
            [
                User(id=TRAINER_ID, email="ada@example.com", name="Ada", role="trainer", stripe_account_id="acct_test_ada"),
                User(id=OTHER_TRAINER_ID, email="bo@example.com", name="Bo", role="trainer"),
                User(
                    id=STUDENT_ID,
                    email="sam@example.com",
                    name="Sam Student",
                    role="student",
                    assigned_trainer_id=TRAINER_ID,
                ),
                User(
                    id=OTHER_STUDENT_ID,
                    email="kim@example.com",
                    name="Kim Student",
                    role="student",
                    assigned_trainer_id=OTHER_TRAINER_ID,
                ),
            ]
        )
        await session.commit()
        session.add_all(
            [
                Plan(id=PLAN_ID, trainer_id=TRAINER_ID, plan_name="Basic", credits=100, price=Decimal("10.00")),
                Plan(id=PREMIUM_PLAN_ID, trainer_id=TRAINER_ID, plan_name="Premium", credits=250, price=Decimal("22.50")),
            ]
        )
        await session.commit()

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client

    app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def make_submission(session_maker):
    async def _make(submission_id: str, student_id: str = STUDENT_ID, title: str = "Task 1: Line graph") -> str:
        async with session_maker() as session:
            session.add(Submission(id=submission_id, student_id=student_id, test_id="test-1", test_title=title))
            await session.commit()
        return submission_id

    return _make
