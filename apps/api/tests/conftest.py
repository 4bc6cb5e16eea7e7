import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db
from main import app
from models.credit_account import CreditAccount
from models.user import User
from routers import rate_limit
from services.session_token import create_session_token


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

    yield maker
    await engine.dispose()


async def seed_user(maker, user_id: str, **balances) -> None:
    """Create a user, optionally with a credit account holding ``balances``."""
    async with maker() as session:
        session.add(User(id=user_id, email=f"{user_id}@example.com", name=user_id.replace("-", " ").title()))
        if balances:
            ai_guru = int(balances.get("ai_guru", 0))
            session.add(
                CreditAccount(
                    user_id=user_id,
                    ai_guru_balance=ai_guru,
                    kundali_balance=int(balances.get("kundali", 0)),
                    lifetime_prediction_balance=int(balances.get("lifetime_prediction", 0)),
                    legacy_ai_questions=ai_guru,
                )
            )
        await session.commit()


@pytest_asyncio.fixture
async def api_client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)


def auth_header(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_session_token(user_id)['token']}"}
