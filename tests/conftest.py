import pytest
from notevault.conf import EmbeddedStoreConf, SqliteStoreConf


STORE_CONF_CLASSES = {
    'embedded': EmbeddedStoreConf,
    'sqlite': SqliteStoreConf,
}


@pytest.fixture(params=sorted(STORE_CONF_CLASSES))
def store_conf_cls(request):
    """The configuration class of each backend in turn, so a test runs once per backend."""
    return STORE_CONF_CLASSES[request.param]


@pytest.fixture
def make_store(store_conf_cls):
    """Returns a function that opens an in-memory store of the current backend; stores are closed afterward."""
    opened = []

    def make(**kwargs):
        store = store_conf_cls(**kwargs).instantiate()
        opened.append(store)
        return store

    yield make
    for store in opened:
        store.close()


@pytest.fixture
def store(make_store):
    return make_store()
