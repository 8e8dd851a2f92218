import logging

from conftest import MALFORMED, FakeStore, folder, msg
from mail_dedup.dedup import FolderDeduplicator
from mail_dedup.fingerprint import fingerprint
from mail_dedup.store import FolderRef, open_folder

CLASS_AND_SUBJECT = ("message_class", "subject")


def _process(store, logger, name="Inbox", **kwargs):
    dedup = FolderDeduplicator(store, logger, fields=CLASS_AND_SUBJECT, **kwargs)
    with open_folder(store, FolderRef(name, name)) as handle:
        return dedup.process_folder(handle, name)


def test_inbox_hello_world(logger):
    store = FakeStore(folder("Inbox", [
        msg("m1", "Hello"), msg("m2", "Hello"), msg("m3", "World"), msg("m4", "World"),
    ]))

    result = _process(store, logger)

    assert result.removed == 2
    assert result.error is None
    assert [g.survivor for g in result.groups] == ["m1", "m3"]
    assert [g.removed for g in result.groups] == [("m2",), ("m4",)]
    assert result.groups[0].fingerprint == fingerprint(
        [("message_class", "IPM.Note"), ("subject", "Hello")]
    )
    assert store.deleted_ids() == ["m2", "m4"]
    store.assert_balanced()


def test_empty_folder(logger):
    store = FakeStore(folder("Empty"))
    result = _process(store, logger, name="Empty")
    assert result.removed == 0
    assert result.groups == ()
    store.assert_balanced()


def test_removal_count_is_group_size_minus_one(logger):
    store = FakeStore(folder("Inbox", [
        msg("a1", "A"), msg("b1", "B"), msg("a2", "A"), msg("c1", "C"),
        msg("a3", "A"), msg("c2", "C"),
    ]))

    result = _process(store, logger)

    assert result.removed == (3 - 1) + (2 - 1)
    assert sorted(store.deleted_ids()) == ["a2", "a3", "c2"]
    assert not store.messages["b1"].deleted
    store.assert_balanced()


def test_candidates_removed_in_listing_order(logger):
    store = FakeStore(folder("Inbox", [msg("x1", "X"), msg("x2", "X"), msg("x3", "X")]))
    _process(store, logger)
    assert [c for c in store.calls if c[0] == "delete"] == [("delete", "x2"), ("delete", "x3")]


def test_second_run_removes_nothing(logger):
    store = FakeStore(folder("Inbox", [
        msg("m1", "Hello"), msg("m2", "Hello"), msg("m3", "World"), msg("m4", "World"),
    ]))
    assert _process(store, logger).removed == 2

    again = _process(store, logger)

    assert again.removed == 0
    assert again.groups == ()
    store.assert_balanced()


def test_malformed_subject_forms_its_own_group(logger):
    store = FakeStore(folder("Inbox", [
        msg("m1", "Hello"), msg("m2", MALFORMED), msg("m3", "Hello"),
    ]))

    result = _process(store, logger)

    assert result.removed == 1
    assert store.deleted_ids() == ["m3"]
    store.assert_balanced()


def test_malformed_subject_merges_with_empty_subject(logger):
    store = FakeStore(folder("Inbox", [msg("m1", ""), msg("m2", MALFORMED)]))

    result = _process(store, logger)

    assert result.removed == 1
    assert result.groups[0].survivor == "m1"
    assert store.deleted_ids() == ["m2"]


def test_delete_failure_only_skips_that_message(logger, caplog):
    store = FakeStore(folder("Inbox", [
        msg("m1", "Hello"), msg("m2", "Hello", fail_delete=True), msg("m3", "Hello"),
    ]))

    with caplog.at_level(logging.ERROR, logger="dedup_tests"):
        result = _process(store, logger)

    assert result.removed == 1
    group = result.groups[0]
    assert group.candidates == ("m2", "m3")
    assert group.removed == ("m3",)
    assert group.failed == ("m2",)
    assert any("Cannot remove duplicate m2" in r.getMessage() for r in caplog.records)
    store.assert_balanced()


def test_listing_failure_returns_zero(logger, caplog):
    store = FakeStore(folder("Inbox", [msg("m1", "Hello"), msg("m2", "Hello")], fail_list_messages=True))

    with caplog.at_level(logging.ERROR, logger="dedup_tests"):
        result = _process(store, logger)

    assert result.removed == 0
    assert "message listing failed" in result.error
    assert store.deleted_ids() == []
    store.assert_balanced()


def test_unopenable_message_is_skipped(logger):
    store = FakeStore(folder("Inbox", [
        msg("m1", "Hello", fail_open=True), msg("m2", "Hello"), msg("m3", "Hello"),
    ]))

    result = _process(store, logger)

    assert result.removed == 1
    assert result.groups[0].survivor == "m2"
    assert store.deleted_ids() == ["m3"]
    store.assert_balanced()


def test_dry_run_deletes_nothing(logger):
    store = FakeStore(folder("Inbox", [msg("m1", "Hello"), msg("m2", "Hello"), msg("m3", "Hello")]))

    result = _process(store, logger, dry_run=True)

    assert result.removed == 0
    assert result.groups[0].candidates == ("m2", "m3")
    assert result.groups[0].removed == ()
    assert store.deleted_ids() == []
    store.assert_balanced()


def test_survivor_mismatch_is_logged(logger, caplog):
    store = FakeStore(folder("Inbox", [
        msg("m1", "Hello", sender="alice@example.com"),
        msg("m2", "Hello", sender="bob@example.com"),
    ]))

    with caplog.at_level(logging.ERROR, logger="dedup_tests"):
        result = _process(store, logger)

    assert result.removed == 1
    assert any("does not match survivor m1" in r.getMessage() for r in caplog.records)


def test_synopsis_check_can_be_disabled(logger, caplog):
    store = FakeStore(folder("Inbox", [
        msg("m1", "Hello", sender="alice@example.com"),
        msg("m2", "Hello", sender="bob@example.com"),
    ]))

    with caplog.at_level(logging.ERROR, logger="dedup_tests"):
        _process(store, logger, check_synopsis=False)

    assert not any("does not match" in r.getMessage() for r in caplog.records)
