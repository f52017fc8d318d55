import json
import os
import threading

import pytest

from core.errors import PersistenceError
from storage.local_store import LocalStore


def test_values_survive_a_new_store_instance(tmp_path):
    path = tmp_path / "store.json"
    LocalStore(path).set("a", "1")

    assert LocalStore(path).get("a") == "1"


def test_two_owners_see_each_others_writes(tmp_path):
    path = tmp_path / "store.json"
    first, second = LocalStore(path), LocalStore(path)

    first.set("k", "v")
    assert second.get("k") == "v"

    second.remove("k")
    assert "k" not in first


def test_only_strings_are_accepted(store):
    with pytest.raises(TypeError):
        store.set("k", 1)


def test_remove_prefix_and_keys(store):
    for key in ("mailbox:m1:a", "mailbox:m1:b", "mailbox:m10:a", "progress:m1:x"):
        store.set(key, "1")

    assert store.keys("mailbox:m1:") == ["mailbox:m1:a", "mailbox:m1:b"]
    assert store.remove_prefix("mailbox:m1:") == 2
    assert store.keys() == ["mailbox:m10:a", "progress:m1:x"]
    assert store.remove_prefix("nothing:") == 0


def test_corrupt_file_reads_as_empty(tmp_path):
    path = tmp_path / "store.json"
    path.write_text("{not json", encoding="utf-8")

    store = LocalStore(path)
    assert store.get("a") is None

    store.set("a", "1")
    assert json.loads(path.read_text(encoding="utf-8")) == {"a": "1"}


def test_write_failure_raises_persistence_error(tmp_path):
    path = tmp_path / "store.json"
    store = LocalStore(path)
    store.set("a", "1")
    os.chmod(tmp_path, 0o500)
    try:
        if os.access(tmp_path, os.W_OK):
            pytest.skip("running with permissions that ignore chmod")
        with pytest.raises(PersistenceError):
            store.set("b", "2")
    finally:
        os.chmod(tmp_path, 0o700)

    assert store.get("a") == "1"


def test_in_memory_store():
    store = LocalStore()
    store.set("a", "1")
    assert store.get("a") == "1"
    assert store.remove("a")
    assert not store.remove("a")


def test_concurrent_writers_on_one_file_keep_every_key(tmp_path):
    path = tmp_path / "store.json"
    per_writer = 100

    def write_keys(candidate):
        store = LocalStore(path)
        for i in range(per_writer):
            store.set(f"progress:{candidate}:{i}", str(i))

    threads = [threading.Thread(target=write_keys, args=(f"cand{n}",)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    store = LocalStore(path)
    assert len(store.keys("progress:")) == 4 * per_writer
    assert store.get("progress:cand3:99") == "99"


def test_concurrent_remove_prefix_leaves_other_namespaces(tmp_path):
    path = tmp_path / "store.json"
    seed = LocalStore(path)
    for i in range(50):
        seed.set(f"mailbox:mock-1:{i}", "true")

    def clear_mock():
        LocalStore(path).remove_prefix("mailbox:mock-1:")

    def write_other():
        store = LocalStore(path)
        for i in range(50):
            store.set(f"progress:mock-2:{i}", "{}")

    threads = [threading.Thread(target=clear_mock), threading.Thread(target=write_other)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert seed.keys("mailbox:mock-1:") == []
    assert len(seed.keys("progress:mock-2:")) == 50
