# conftest.py
import pytest

from predblink_fixtures import CONTRACT, ChainSimulator, InMemoryEventStore, InMemorySyncState
from predblink.service.activity_service import PredBlinkService
from predblink.tasks.blockchain_indexer import PredBlinkIndexer

DEPLOYMENT_BLOCK = 1000


@pytest.fixture
def chain():
    return ChainSimulator(head=1500)


@pytest.fixture
def store():
    return InMemoryEventStore()


@pytest.fixture
def sync_state():
    return InMemorySyncState(deployment_block=DEPLOYMENT_BLOCK)


@pytest.fixture
def make_indexer(chain, store, sync_state):
    def _make(**overrides):
        options = {"batch_size": 2000, "degrade_on_fetch_error": False}
        options.update(overrides)
        return PredBlinkIndexer(
            rpc=chain.client(),
            store=store,
            sync_state=sync_state,
            contract_address=CONTRACT,
            **options
        )
    return _make


@pytest.fixture
def indexer(make_indexer):
    return make_indexer()


@pytest.fixture
def service(store, sync_state, indexer):
    return PredBlinkService(store, sync_state, indexer, chain_name="monad-testnet")
