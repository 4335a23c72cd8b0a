import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.context import RequestContext
from app.core.database import ApiKey, Base, User
from app.core.security import generate_api_key, get_key_prefix, hash_api_key
from app.services.download_tokens import DownloadTokenService
from app.services.jobs import JobQueue
from app.services.storage import LocalBlobStorage
from app.services.webhooks import WebhookDispatcher

RECEIVER_BASE_URL = "http://receiver.test"


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """SQLite engine on a per-test file (background jobs use their own sessions)."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    """Async session bound to the test engine."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def test_user(db_session):
    user = User(id="user-1", name="Ada Lovelace", email="ada@example.com")
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def other_user(db_session):
    user = User(id="user-2", name="Charles Babbage", email="charles@example.com")
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture
def ctx(test_user):
    return RequestContext(user_id=test_user.id)


@pytest.fixture
def other_ctx(other_user):
    return RequestContext(user_id=other_user.id)


@pytest.fixture
def storage(tmp_path):
    blob_storage = LocalBlobStorage(root_dir=str(tmp_path / "blobs"))
    blob_storage.init_directories()
    return blob_storage


@pytest_asyncio.fixture
async def job_queue():
    queue = JobQueue(max_concurrency=4)
    yield queue
    await queue.drain()


@pytest_asyncio.fixture
async def receiver():
    """In-process webhook receiver; returns the module so tests can read ``received``."""
    from tests.mocks import fake_webhook_receiver

    fake_webhook_receiver.reset()
    yield fake_webhook_receiver
    fake_webhook_receiver.reset()


@pytest_asyncio.fixture
async def receiver_client(receiver):
    transport = ASGITransport(app=receiver.app)
    async with AsyncClient(transport=transport, base_url=RECEIVER_BASE_URL) as client:
        yield client


@pytest.fixture
def dispatcher(receiver_client, session_factory, job_queue):
    return WebhookDispatcher(
        http_client=receiver_client,
        session_factory=session_factory,
        job_queue=job_queue,
        timeout_seconds=10.0,
        max_attempts=3,
    )


@pytest_asyncio.fixture
async def app_with_db(db_engine, session_factory, storage, job_queue, dispatcher):
    """FastAPI app wired to the test database, blob storage and fake receiver."""
    import app.core.database as db_module
    import app.core.middleware as mw_module

    # Patch the module-level engine and session factory
    original_engine = db_module.engine
    original_session = db_module.async_session
    original_mw_session = mw_module.async_session

    db_module.engine = db_engine
    db_module.async_session = session_factory

    # Also patch the middleware's imported async_session
    mw_module.async_session = session_factory

    from app.main import app

    # Lifespan does not run under ASGITransport; wire app state by hand
    app.state.storage = storage
    app.state.job_queue = job_queue
    app.state.webhook_dispatcher = dispatcher
    app.state.download_tokens = DownloadTokenService(secret_key="test-secret")

    yield app

    await job_queue.drain()
    db_module.engine = original_engine
    db_module.async_session = original_session
    mw_module.async_session = original_mw_session


@pytest_asyncio.fixture
async def api_key(session_factory, test_user):
    """Create an API key for test_user and return (raw_key, key_row)."""
    raw_key = generate_api_key()
    async with session_factory() as session:
        key_row = ApiKey(
            key_hash=hash_api_key(raw_key),
            key_prefix=get_key_prefix(raw_key),
            label="integration-test",
            user_id=test_user.id,
            is_active=True,
        )
        session.add(key_row)
        await session.commit()
        await session.refresh(key_row)
    return raw_key, key_row


@pytest_asyncio.fixture
async def auth_client(app_with_db, api_key):
    """Authenticated async HTTP client acting as test_user."""
    raw_key, _ = api_key
    transport = ASGITransport(app=app_with_db)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        client.headers["Authorization"] = f"Bearer {raw_key}"
        yield client


@pytest_asyncio.fixture
async def other_client(app_with_db, session_factory, other_user):
    """Authenticated client for a second tenant."""
    raw_key = generate_api_key()
    async with session_factory() as session:
        session.add(
            ApiKey(
                key_hash=hash_api_key(raw_key),
                key_prefix=get_key_prefix(raw_key),
                label="other-tenant",
                user_id=other_user.id,
                is_active=True,
            )
        )
        await session.commit()

    transport = ASGITransport(app=app_with_db)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        client.headers["Authorization"] = f"Bearer {raw_key}"
        yield client


@pytest_asyncio.fixture
async def anon_client(app_with_db):
    """Unauthenticated async HTTP client."""
    transport = ASGITransport(app=app_with_db)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
