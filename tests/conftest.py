import logging

import pytest

from erc20_indexer.writers.schema import create_engine_from_url, create_tables


# Configure logging for tests
@pytest.fixture(autouse=True)
def configure_logging():
    # Set up logging
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    yield


@pytest.fixture
def engine(tmp_path):
    engine = create_engine_from_url(f"sqlite:///{tmp_path / 'indexer.db'}")
    create_tables(engine)
    yield engine
    engine.dispose()
