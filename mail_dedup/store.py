from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, Protocol

FIELD_IDS = (
    "message_class",
    "subject",
    "sender",
    "recipients",
    "sent_at",
    "message_id",
    "body",
)


@dataclass(frozen=True)
class FolderRef:
    entry_id: str
    name: str = ""


@dataclass(frozen=True)
class MessageRef:
    entry_id: str


class StoreError(Exception):
    """Base class for every failure reported by a mail store."""


class ListingError(StoreError):
    pass


class AcquireError(StoreError):
    pass


class DeleteError(StoreError):
    pass


class PropertyError(StoreError):
    def __init__(self, field: str, reason: str = ""):
        super().__init__(f"{field}: {reason}" if reason else field)
        self.field = field
        self.reason = reason


class MissingProperty(PropertyError):
    pass


class MalformedProperty(PropertyError):
    pass


class MailStore(Protocol):
    """What the dedup engine needs from a mail store.

    Handles returned by ``open_folder``/``open_message`` must be given back
    through ``release``; refs returned by the listings need no release.
    """

    def root_folders(self) -> list[FolderRef]: ...

    def open_folder(self, ref: FolderRef) -> Any: ...

    def open_message(self, ref: MessageRef) -> Any: ...

    def list_child_folders(self, folder: Any) -> list[FolderRef]: ...

    def list_messages(self, folder: Any) -> list[MessageRef]: ...

    def get_property(self, message: Any, field: str) -> Any: ...

    def delete_message(self, message: Any) -> None: ...

    def release(self, handle: Any) -> None: ...

    def display_name(self, folder: Any) -> str: ...


@contextmanager
def opened(store: MailStore, handle: Any) -> Iterator[Any]:
    """Yield ``handle`` and release it on the way out, whatever happens."""
    try:
        yield handle
    finally:
        store.release(handle)


def open_folder(store: MailStore, ref: FolderRef):
    return opened(store, store.open_folder(ref))


def open_message(store: MailStore, ref: MessageRef):
    return opened(store, store.open_message(ref))
