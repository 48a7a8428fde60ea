# bulkseo/conftest.py
import pytest

from bulkseo.core.database import create_all_tables, dispose_engine, init_engine


@pytest.fixture(scope="function")
def db():
    """
    Fresh in-memory sqlite database for one test.

    StaticPool keeps the single connection alive so every session sees
    the same tables.
    """
    init_engine("sqlite://")
    create_all_tables()
    yield
    dispose_engine()


@pytest.fixture
def shop():
    return "demo-store.myshopify.com"
