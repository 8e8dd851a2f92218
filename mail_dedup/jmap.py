from dataclasses import dataclass, field

import httpx

from mail_dedup.store import (
    AcquireError,
    DeleteError,
    FolderRef,
    ListingError,
    MalformedProperty,
    MessageRef,
    MissingProperty,
    StoreError,
)

DEFAULT_SESSION_URL = "https://api.fastmail.com/.well-known/jmap"

MAIL_CAPABILITY = "urn:ietf:params:jmap:mail"

EMAIL_PROPERTIES = [
    "id",
    "mailboxIds",
    "subject",
    "from",
    "to",
    "cc",
    "sentAt",
    "receivedAt",
    "messageId",
    "header:Content-Type:asText",
    "textBody",
    "bodyValues",
]


class JMAPError(StoreError):
    pass


@dataclass
class MailboxHandle:
    id: str
    name: str


@dataclass
class EmailHandle:
    id: str
    mailbox_id: str | None
    data: dict = field(default_factory=dict)


class JMAPSession:
    def __init__(
        self,
        token: str | None,
        session_url: str = DEFAULT_SESSION_URL,
        transport: httpx.BaseTransport | None = None,
    ):
        if not token:
            raise RuntimeError("JMAP_TOKEN must be set in environment or .env")
        self.http = httpx.Client(
            headers={"Authorization": f"Bearer {token}"},
            follow_redirects=True,
            transport=transport,
            timeout=60.0,
        )
        self._discover_session(session_url)

    def _discover_session(self, session_url: str):
        try:
            resp = self.http.get(session_url)
            resp.raise_for_status()
            data = resp.json()
            self.api_url = data["apiUrl"]
        except httpx.HTTPError as e:
            raise RuntimeError(f"Cannot reach JMAP session at {session_url}: {e}") from e
        except (ValueError, KeyError, TypeError) as e:
            raise RuntimeError(f"Unexpected JMAP session response from {session_url}: {e!r}") from e
        self.primary_account = data.get("primaryAccounts", {}).get(MAIL_CAPABILITY)
        self.accounts = {
            account_id: account.get("name", account_id)
            for account_id, account in data.get("accounts", {}).items()
            if MAIL_CAPABILITY in (account.get("accountCapabilities") or {})
        }

    def call(self, method_calls: list) -> list:
        try:
            resp = self.http.post(
                self.api_url,
                json={
                    "using": [
                        "urn:ietf:params:jmap:core",
                        MAIL_CAPABILITY,
                    ],
                    "methodCalls": method_calls,
                },
            )
            resp.raise_for_status()
            responses = resp.json()["methodResponses"]
            failed = [r for r in responses if r[0].endswith("/error") or r[0] == "error"]
        except httpx.HTTPError as e:
            raise JMAPError(f"JMAP request failed: {e}") from e
        except (ValueError, KeyError, TypeError, IndexError, AttributeError) as e:
            raise JMAPError(f"Unexpected JMAP response: {e!r}") from e
        if failed:
            name, *details = failed[0]
            raise JMAPError(f"JMAP error in {name}: {details[0] if details else ''}")
        return responses

    def stores(self, delete_policy: str = "trash") -> list["JMAPStore"]:
        """One store per mail account; accounts are never deduplicated against each other."""
        return [
            JMAPStore(self, account_id, name, delete_policy=delete_policy)
            for account_id, name in self.accounts.items()
        ]

    def close(self):
        self.http.close()


class JMAPStore:
    def __init__(
        self,
        session: JMAPSession,
        account_id: str,
        name: str = "",
        delete_policy: str = "trash",
    ):
        if delete_policy not in ("trash", "destroy"):
            raise ValueError(f"Unknown delete policy: {delete_policy}")
        self.session = session
        self.account_id = account_id
        self.name = name or account_id
        self.delete_policy = delete_policy
        self._mailboxes: dict[str, dict] | None = None
        self._prefetched: dict[str, dict] = {}
        self._listed_in: dict[str, str] = {}

    def _call(self, method: str, args: dict) -> dict:
        responses = self.session.call([[method, {"accountId": self.account_id, **args}, "0"]])
        try:
            return responses[0][1]
        except (IndexError, KeyError, TypeError) as e:
            raise JMAPError(f"Malformed {method} response: {e!r}") from e

    def _load_mailboxes(self) -> dict[str, dict]:
        if self._mailboxes is None:
            try:
                mailboxes = self._call("Mailbox/get", {"ids": None})["list"]
                self._mailboxes = {m["id"]: m for m in mailboxes}
            except (KeyError, TypeError) as e:
                raise JMAPError(f"Malformed Mailbox/get response: {e!r}") from e
        return self._mailboxes

    def _children_of(self, parent_id: str | None) -> list[FolderRef]:
        try:
            mailboxes = self._load_mailboxes()
        except JMAPError as e:
            raise ListingError(str(e)) from e
        children = [m for m in mailboxes.values() if m.get("parentId") == parent_id]
        children.sort(key=lambda m: (m.get("sortOrder", 0), m.get("name", "")))
        return [FolderRef(m["id"], m.get("name", "")) for m in children]

    def root_folders(self) -> list[FolderRef]:
        return self._children_of(None)

    def list_child_folders(self, folder: MailboxHandle) -> list[FolderRef]:
        return self._children_of(folder.id)

    def open_folder(self, ref: FolderRef) -> MailboxHandle:
        try:
            mailbox = self._load_mailboxes().get(ref.entry_id)
        except JMAPError as e:
            raise AcquireError(str(e)) from e
        if mailbox is None:
            raise AcquireError(f"No mailbox with id {ref.entry_id}")
        return MailboxHandle(mailbox["id"], mailbox.get("name", ""))

    def display_name(self, folder: MailboxHandle) -> str:
        return folder.name

    def _query_email_ids(self, mailbox_id: str) -> list[str]:
        all_ids = []
        position = 0
        batch_size = 500
        while True:
            result = self._call(
                "Email/query",
                {
                    "filter": {"inMailbox": mailbox_id},
                    "sort": [{"property": "receivedAt", "isAscending": True}],
                    "position": position,
                    "limit": batch_size,
                },
            )
            ids = result["ids"]
            if not ids:
                break
            all_ids.extend(ids)
            position += len(ids)
            # servers may cap the page size below the requested limit
            total = result.get("total")
            if total is not None and position >= total:
                break
        return all_ids

    def _fetch_emails(self, ids: list[str]) -> list[dict]:
        all_emails = []
        for i in range(0, len(ids), 100):
            chunk = ids[i : i + 100]
            result = self._call(
                "Email/get",
                {
                    "ids": chunk,
                    "properties": EMAIL_PROPERTIES,
                    "fetchTextBodyValues": True,
                },
            )
            all_emails.extend(result["list"])
        return all_emails

    def list_messages(self, folder: MailboxHandle) -> list[MessageRef]:
        """Oldest first, so the earliest delivered copy of a message is kept."""
        try:
            ids = self._query_email_ids(folder.id)
            emails = self._fetch_emails(ids)
        except (JMAPError, KeyError, TypeError) as e:
            raise ListingError(str(e)) from e
        for email in emails:
            self._prefetched[email["id"]] = email
            self._listed_in[email["id"]] = folder.id
        return [MessageRef(eid) for eid in ids]

    def open_message(self, ref: MessageRef) -> EmailHandle:
        data = self._prefetched.pop(ref.entry_id, None)
        if data is None:
            try:
                found = self._fetch_emails([ref.entry_id])
            except (JMAPError, KeyError, TypeError) as e:
                raise AcquireError(str(e)) from e
            if not found:
                raise AcquireError(f"No email with id {ref.entry_id}")
            data = found[0]
        return EmailHandle(ref.entry_id, self._listed_in.get(ref.entry_id), data)

    def release(self, handle) -> None:
        if isinstance(handle, EmailHandle):
            handle.data = {}
            self._listed_in.pop(handle.id, None)

    def get_property(self, message: EmailHandle, field: str):
        data = message.data
        if field == "message_class":
            value = _text(data, "header:Content-Type:asText", field)
            return value.split(";", 1)[0].strip().lower()
        if field == "subject":
            return _text(data, "subject", field)
        if field == "sender":
            return _addresses(data, ["from"], field)
        if field == "recipients":
            return _addresses(data, ["to", "cc"], field)
        if field == "sent_at":
            return _text(data, "sentAt", field)
        if field == "message_id":
            ids = data.get("messageId")
            if ids is None:
                raise MissingProperty(field)
            if not isinstance(ids, list):
                raise MalformedProperty(field, f"unexpected {type(ids).__name__}")
            return " ".join(ids)
        if field == "body":
            return _body(data, field)
        raise MissingProperty(field, "not available over JMAP")

    def _trash_id(self) -> str:
        mailboxes = self._load_mailboxes()
        try:
            return next(m["id"] for m in mailboxes.values() if m.get("role") == "trash")
        except StopIteration:
            raise DeleteError("No trash mailbox") from None

    def delete_message(self, message: EmailHandle) -> None:
        try:
            if self.delete_policy == "destroy":
                result = self._call("Email/set", {"destroy": [message.id]})
                failed = result.get("notDestroyed")
            else:
                result = self._call("Email/set", {"update": {message.id: self._trash_patch(message)}})
                failed = result.get("notUpdated")
        except JMAPError as e:
            raise DeleteError(str(e)) from e
        if failed:
            raise DeleteError(f"Failed to delete email {message.id}: {failed.get(message.id, failed)}")

    def _trash_patch(self, message: EmailHandle) -> dict:
        mailbox_ids = message.data.get("mailboxIds") or {}
        if message.mailbox_id and len(mailbox_ids) > 1:
            # still filed elsewhere, only take it out of this mailbox
            return {f"mailboxIds/{message.mailbox_id}": None}
        return {"mailboxIds": {self._trash_id(): True}}


def _text(data: dict, key: str, field: str) -> str:
    value = data.get(key)
    if value is None:
        raise MissingProperty(field)
    if not isinstance(value, str):
        raise MalformedProperty(field, f"unexpected {type(value).__name__}")
    return value


def _addresses(data: dict, keys: list[str], field: str) -> str:
    found = False
    parts = []
    for key in keys:
        value = data.get(key)
        if value is None:
            continue
        found = True
        if not isinstance(value, list):
            raise MalformedProperty(field, f"unexpected {type(value).__name__} in {key}")
        for addr in value:
            if not isinstance(addr, dict):
                raise MalformedProperty(field, f"unexpected address in {key}")
            name = addr.get("name") or ""
            email = (addr.get("email") or "").lower()
            parts.append(f"{name} <{email}>" if name else email)
    if not found:
        raise MissingProperty(field)
    return "; ".join(parts)


def _body(data: dict, field: str) -> str:
    parts = data.get("textBody")
    if parts is None:
        raise MissingProperty(field)
    values = data.get("bodyValues") or {}
    text = []
    for part in parts:
        value = values.get(part.get("partId"))
        if value is None:
            continue
        if value.get("isEncodingProblem"):
            raise MalformedProperty(field, "encoding problem")
        text.append(value.get("value", ""))
    return "\n".join(text)
