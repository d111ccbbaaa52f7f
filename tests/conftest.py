"""
Pytest configuration and shared fixtures for spending classifier tests.

Provides:
- In-memory async test database
- Fake embedding client and oracle from tests.fixtures.fakes
- A fully wired classifier built from the fakes
"""

import pytest

from spendcat.database import create_test_db
from spendcat.matching import build_classifier
from spendcat.matching.types import EmbeddingConfig
from spendcat.utils.config_manager import ConfigManager

from tests.fixtures.fakes import FakeEmbeddingClient, FakeOracle


# ============================================================================
# DATABASE AND CLASSIFIER FIXTURES
# ============================================================================

@pytest.fixture
async def db():
    """Fresh in-memory database with all tables."""
    manager = await create_test_db()
    yield manager
    await manager.close()


@pytest.fixture
def embedding_client() -> FakeEmbeddingClient:
    return FakeEmbeddingClient()


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def config_manager() -> ConfigManager:
    """Default configuration with inter-batch delays disabled."""
    cm = ConfigManager()
    cm.config['embedding']['batch_delay_seconds'] = 0.0
    cm.config['oracle']['batch_delay_seconds'] = 0.0
    return cm


@pytest.fixture
def classifier(db, config_manager, embedding_client, oracle):
    return build_classifier(db, config_manager, embedding_client=embedding_client, oracle=oracle)


@pytest.fixture
def fast_embedding_config() -> EmbeddingConfig:
    return EmbeddingConfig(batch_delay_seconds=0.0)
