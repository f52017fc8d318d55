import pytest

import main
from config.settings import STORE_FILE
from storage.local_store import LocalStore


@pytest.fixture
def live_store():
    store = LocalStore(STORE_FILE)
    for key in store.keys():
        store.remove(key)
    yield store
    for key in store.keys():
        store.remove(key)


def test_inspect_prints_mock_keys(live_store, capsys):
    live_store.set("orchestrator:mock-1:currentStage", "reading")
    live_store.set("progress:mock-1:reading", '{"answers":{"1":"A"}}')

    main.main(["inspect", "mock-1"])

    out = capsys.readouterr().out
    assert "orchestrator:mock-1:currentStage" in out
    assert '"1": "A"' in out


def test_abandon_mock_clears_namespace(live_store, capsys):
    live_store.set("mailbox:mock-1:reading:completed", "true")
    live_store.set("progress:reading", "{}")

    main.main(["abandon", "--mock", "mock-1"])

    assert live_store.keys() == ["progress:reading"]
    assert "1 keys removed" in capsys.readouterr().out


def test_abandon_section(live_store):
    live_store.set("progress:mock-1:reading", "{}")

    main.main(["abandon", "--section", "reading", "--mock", "mock-1"])

    assert live_store.keys() == []
