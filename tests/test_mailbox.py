import pytest

from core.errors import DuplicateSignalError
from storage.mailbox import CompletionMailbox


def test_post_then_consume_deletes_signal(store, fake_time):
    mailbox = CompletionMailbox(store, "mock-1", now_ms=fake_time)
    mailbox.post("reading", {"attemptId": "a1"})

    signal = mailbox.consume("reading")

    assert signal.stage == "reading"
    assert signal.result == {"attemptId": "a1"}
    assert signal.written_at_ms == fake_time()
    assert not mailbox.has_signal("reading")
    assert mailbox.consume("reading") is None


def test_second_post_while_live_is_rejected(store):
    mailbox = CompletionMailbox(store, "mock-1")
    mailbox.post("reading", {})

    with pytest.raises(DuplicateSignalError):
        mailbox.post("reading", {"attemptId": "other"})


def test_sentinel_without_result_is_not_delivered(store):
    mailbox = CompletionMailbox(store, "mock-1")
    store.set("mailbox:mock-1:reading:completed", "true")

    assert mailbox.peek("reading") is None
    assert mailbox.has_signal("reading")


def test_corrupt_payload_is_discarded(store):
    mailbox = CompletionMailbox(store, "mock-1")
    store.set("mailbox:mock-1:reading:result", "{broken")
    store.set("mailbox:mock-1:reading:completed", "true")

    assert mailbox.peek("reading") is None
    assert not mailbox.has_signal("reading")


def test_mailboxes_are_namespaced_by_mock(store):
    first = CompletionMailbox(store, "mock-1")
    second = CompletionMailbox(store, "mock-10")
    first.post("reading", {})

    assert not second.has_signal("reading")
    assert second.clear() == 0
    assert first.clear() == 2


def test_force_submit_flag(store):
    mailbox = CompletionMailbox(store, "mock-1")
    assert not mailbox.force_requested("writing")

    mailbox.request_force_submit("writing")
    assert mailbox.force_requested("writing")

    mailbox.clear_force_submit("writing")
    assert not mailbox.force_requested("writing")


def test_mock_id_is_required(store):
    with pytest.raises(ValueError):
        CompletionMailbox(store, "")
