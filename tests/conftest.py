import itertools
import logging
from collections import Counter
from dataclasses import dataclass, field

import pytest

from mail_dedup.store import (
    AcquireError,
    DeleteError,
    FolderRef,
    ListingError,
    MalformedProperty,
    MessageRef,
    MissingProperty,
)

MALFORMED = object()


@dataclass
class FakeMessage:
    id: str
    props: dict
    fail_open: bool = False
    fail_delete: bool = False
    deleted: bool = False


@dataclass
class FakeFolder:
    name: str
    messages: list = field(default_factory=list)
    children: list = field(default_factory=list)
    fail_list_messages: bool = False
    fail_list_children: bool = False
    fail_open: bool = False
    id: str = ""


@dataclass(eq=False)
class Handle:
    serial: int
    kind: str
    target: object


def msg(entry_id, subject="", message_class="IPM.Note", **props):
    """A message whose missing keyword props read as Missing, MALFORMED ones as Malformed."""
    values = {"subject": subject, "message_class": message_class}
    values.update(props)
    fail_open = values.pop("fail_open", False)
    fail_delete = values.pop("fail_delete", False)
    return FakeMessage(entry_id, values, fail_open=fail_open, fail_delete=fail_delete)


def folder(name, messages=(), children=(), **faults):
    return FakeFolder(name, list(messages), list(children), **faults)


class FakeStore:
    """In-memory store that tracks every handle it gives out."""

    name = "fake"

    def __init__(self, *roots: FakeFolder):
        self.roots = list(roots)
        self.folders = {}
        self.messages = {}
        for root in self.roots:
            self._index(root, "")
        self._serials = itertools.count(1)
        self.acquired = {}
        self.released = Counter()
        self.calls = []

    def _index(self, f: FakeFolder, parent: str):
        f.id = f"{parent}/{f.name}" if parent else f.name
        self.folders[f.id] = f
        for m in f.messages:
            self.messages[m.id] = m
        for child in f.children:
            self._index(child, f.id)

    def _new_handle(self, kind, target):
        handle = Handle(next(self._serials), kind, target)
        self.acquired[handle.serial] = handle
        return handle

    def _live(self, handle, kind):
        assert handle.kind == kind
        assert self.released[handle.serial] == 0, f"{kind} handle used after release"
        return handle.target

    def root_folders(self):
        return [FolderRef(r.id, r.name) for r in self.roots]

    def open_folder(self, ref):
        f = self.folders[ref.entry_id]
        if f.fail_open:
            raise AcquireError(f"cannot open {ref.entry_id}")
        return self._new_handle("folder", f)

    def open_message(self, ref):
        m = self.messages[ref.entry_id]
        if m.fail_open:
            raise AcquireError(f"cannot open {ref.entry_id}")
        return self._new_handle("message", m)

    def list_child_folders(self, handle):
        f = self._live(handle, "folder")
        self.calls.append(("children", f.id))
        if f.fail_list_children:
            raise ListingError("hierarchy table unavailable")
        return [FolderRef(c.id, c.name) for c in f.children]

    def list_messages(self, handle):
        f = self._live(handle, "folder")
        self.calls.append(("messages", f.id))
        if f.fail_list_messages:
            raise ListingError("contents table unavailable")
        return [MessageRef(m.id) for m in f.messages if not m.deleted]

    def get_property(self, handle, field):
        m = self._live(handle, "message")
        if field not in m.props:
            raise MissingProperty(field)
        value = m.props[field]
        if value is MALFORMED:
            raise MalformedProperty(field, "MAPI_E_NOT_ENOUGH_MEMORY")
        return value

    def delete_message(self, handle):
        m = self._live(handle, "message")
        self.calls.append(("delete", m.id))
        if m.fail_delete:
            raise DeleteError("access denied")
        m.deleted = True

    def release(self, handle):
        self.released[handle.serial] += 1

    def display_name(self, handle):
        return self._live(handle, "folder").name

    def deleted_ids(self):
        return [m.id for m in self.messages.values() if m.deleted]

    def assert_balanced(self):
        for serial, handle in self.acquired.items():
            count = self.released[serial]
            assert count == 1, f"{handle.kind} handle {serial} released {count} times"
        assert set(self.released) <= set(self.acquired)


@pytest.fixture
def logger():
    return logging.getLogger("dedup_tests")


@pytest.fixture(autouse=True)
def _cache_home(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "cache"))
