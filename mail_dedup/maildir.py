import email.errors
import mailbox
import re
from dataclasses import dataclass
from email.message import EmailMessage
from email.parser import BytesParser
from email.policy import default
from pathlib import Path

from mail_dedup.store import (
    AcquireError,
    DeleteError,
    FolderRef,
    ListingError,
    MalformedProperty,
    MessageRef,
    MissingProperty,
)

TRASH_FOLDER = "Trash"

# <seconds>.M<usec>P<pid>... ; the usec part is not zero padded
_UNIQUE_NAME = re.compile(r"^(\d+)\.(?:M(\d+))?")

_HEADERS = {
    "subject": "Subject",
    "message_id": "Message-ID",
    "sent_at": "Date",
}


@dataclass
class MaildirFolder:
    id: str
    name: str
    maildir: mailbox.Maildir


@dataclass
class MaildirMessage:
    folder_id: str
    key: str
    message: EmailMessage | None


class MaildirStore:
    """A Maildir tree on disk; sub folders are the ``.Name`` directories."""

    def __init__(self, path: str | Path, delete_policy: str = "trash"):
        if delete_policy not in ("trash", "destroy"):
            raise ValueError(f"Unknown delete policy: {delete_policy}")
        self.path = Path(path)
        self.name = self.path.name or str(self.path)
        self.delete_policy = delete_policy
        self._root = mailbox.Maildir(str(self.path), factory=None, create=False)

    def _folder(self, folder_id: str) -> mailbox.Maildir:
        md = self._root
        for part in filter(None, folder_id.split("/")):
            md = md.get_folder(part)
        return md

    def root_folders(self) -> list[FolderRef]:
        return [FolderRef("", self.name)]

    def open_folder(self, ref: FolderRef) -> MaildirFolder:
        try:
            md = self._folder(ref.entry_id)
        except (mailbox.NoSuchMailboxError, OSError) as e:
            raise AcquireError(f"No Maildir folder {ref.entry_id!r}: {e}") from e
        name = ref.name or ref.entry_id.rsplit("/", 1)[-1] or self.name
        return MaildirFolder(ref.entry_id, name, md)

    def display_name(self, folder: MaildirFolder) -> str:
        return folder.name

    def list_child_folders(self, folder: MaildirFolder) -> list[FolderRef]:
        try:
            names = sorted(folder.maildir.list_folders())
        except OSError as e:
            raise ListingError(str(e)) from e
        prefix = f"{folder.id}/" if folder.id else ""
        return [FolderRef(prefix + name, name) for name in names]

    def list_messages(self, folder: MaildirFolder) -> list[MessageRef]:
        try:
            keys = sorted(folder.maildir.keys(), key=_delivery_order)
        except OSError as e:
            raise ListingError(str(e)) from e
        prefix = f"{folder.id}/" if folder.id else ""
        return [MessageRef(prefix + key) for key in keys]

    def _split(self, entry_id: str) -> tuple[str, str]:
        folder_id, _, key = entry_id.rpartition("/")
        return folder_id, key

    def open_message(self, ref: MessageRef) -> MaildirMessage:
        folder_id, key = self._split(ref.entry_id)
        try:
            with self._folder(folder_id).get_file(key) as f:
                message = BytesParser(policy=default).parse(f)
        except (KeyError, OSError, mailbox.NoSuchMailboxError) as e:
            raise AcquireError(f"Cannot open {ref.entry_id}: {e}") from e
        return MaildirMessage(folder_id, key, message)

    def release(self, handle) -> None:
        if isinstance(handle, MaildirMessage):
            handle.message = None

    def get_property(self, message: MaildirMessage, field: str):
        msg = message.message
        if field == "message_class":
            if msg.get("Content-Type") is None:
                raise MissingProperty(field)
            return msg.get_content_type()
        if field in _HEADERS:
            value = _header(msg, _HEADERS[field], field)
            if field == "sent_at":
                if value.datetime is None:
                    raise MalformedProperty(field, f"unparseable date {str(value)!r}")
                return value.datetime
            return str(value)
        if field == "sender":
            return str(_header(msg, "From", field))
        if field == "recipients":
            found = [str(_header(msg, name, field)) for name in ("To", "Cc") if msg.get(name) is not None]
            if not found:
                raise MissingProperty(field)
            return "; ".join(found)
        if field == "body":
            return _body(msg, field)
        raise MissingProperty(field, "not available in Maildir")

    def delete_message(self, message: MaildirMessage) -> None:
        try:
            md = self._folder(message.folder_id)
            if self.delete_policy == "trash":
                self._trash().add(md.get_bytes(message.key))
            md.remove(message.key)
        except (KeyError, OSError, mailbox.Error) as e:
            raise DeleteError(f"Cannot remove {message.key}: {e}") from e

    def _trash(self) -> mailbox.Maildir:
        try:
            return self._root.get_folder(TRASH_FOLDER)
        except mailbox.NoSuchMailboxError:
            return self._root.add_folder(TRASH_FOLDER)


def _delivery_order(key: str) -> tuple:
    """Sort key for unique names: delivery time first, names we cannot parse last."""
    match = _UNIQUE_NAME.match(key)
    if match is None:
        return (1, 0, 0, key)
    return (0, int(match.group(1)), int(match.group(2) or 0), key)


def _header(msg: EmailMessage, name: str, field: str):
    try:
        value = msg[name]
    except (ValueError, TypeError, IndexError, email.errors.MessageError) as e:
        raise MalformedProperty(field, str(e)) from e
    if value is None:
        raise MissingProperty(field)
    if getattr(value, "defects", None):
        raise MalformedProperty(field, "; ".join(type(d).__name__ for d in value.defects))
    return value


def _body(msg: EmailMessage, field: str) -> str:
    part = msg.get_body(preferencelist=("plain", "html"))
    if part is None:
        raise MissingProperty(field)
    try:
        return part.get_content()
    except (LookupError, UnicodeError, KeyError) as e:
        raise MalformedProperty(field, str(e)) from e
