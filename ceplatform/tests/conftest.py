import random
from datetime import datetime

import pytest
import pytest_asyncio

from ceplatform.config.settings import EngineSettings
from ceplatform.database import Database
from ceplatform.events.publisher import InMemoryEventPublisher
from ceplatform.orm.user import UserRole
from ceplatform.services.enrollment_service import EnrollmentService
from ceplatform.services.progression_coordinator import ProgressionCoordinator

from factories import FakeClock, build_course, create_user

START = datetime(2026, 1, 15, 9, 0, 0)


@pytest.fixture
def clock():
    return FakeClock(START)


@pytest.fixture
def settings(tmp_path):
    return EngineSettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'ceplatform_test.db'}",
        environment="test",
        jwt_secret_key="test-secret",
        rate_limit_enabled=False,
    )


@pytest_asyncio.fixture
async def database(settings):
    database = Database(settings.database_url)
    await database.init_db()
    yield database
    await database.dispose()


@pytest_asyncio.fixture
async def db(database):
    async with database.session() as session:
        yield session


@pytest.fixture
def publisher():
    return InMemoryEventPublisher()


@pytest.fixture
def coordinator(db, settings, publisher, clock):
    return ProgressionCoordinator(db, settings, publisher=publisher, rng=random.Random(7), clock=clock)


@pytest_asyncio.fixture
async def learner_id(db):
    return await create_user(db, "learner@example.com")


@pytest_asyncio.fixture
async def admin_id(db):
    return await create_user(db, "admin@example.com", role=UserRole.admin)


@pytest_asyncio.fixture
async def fl_course(db):
    return await build_course(db, jurisdiction="FL")


@pytest_asyncio.fixture
async def enrollment_id(db, settings, clock, learner_id, fl_course):
    enrollment, _ = await EnrollmentService(db, settings, clock).create_enrollment(learner_id, fl_course.course_id)
    return enrollment.id
