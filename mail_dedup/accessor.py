import enum
import logging

from mail_dedup.fingerprint import OrderedFieldValues, fingerprint, to_text
from mail_dedup.store import FIELD_IDS, MailStore, MessageRef, MissingProperty, StoreError

DEFAULT_FIELDS = ("message_class", "subject", "sender", "sent_at", "body")

SYNOPSIS_FIELDS = ("sent_at", "sender", "subject")


class FieldStatus(enum.Enum):
    OK = "ok"
    MISSING = "missing"
    MALFORMED = "malformed"


def classify(error: StoreError | None) -> FieldStatus:
    if error is None:
        return FieldStatus.OK
    if isinstance(error, MissingProperty):
        return FieldStatus.MISSING
    return FieldStatus.MALFORMED


def parse_fields(value: str | None) -> tuple[str, ...]:
    """Parse a comma-separated field policy such as ``"message_class,subject"``."""
    if not value or not value.strip():
        return DEFAULT_FIELDS
    fields = tuple(f.strip().lower() for f in value.split(",") if f.strip())
    unknown = [f for f in fields if f not in FIELD_IDS]
    if unknown:
        raise ValueError(
            f"Unknown field(s) {', '.join(unknown)}; expected some of {', '.join(FIELD_IDS)}"
        )
    if len(set(fields)) != len(fields):
        raise ValueError(f"Duplicate field in policy: {value}")
    return fields


class MessageAccessor:
    """Reads the identifying fields of a message, never raising for bad properties."""

    def __init__(
        self,
        store: MailStore,
        logger: logging.Logger,
        fields: tuple[str, ...] = DEFAULT_FIELDS,
    ):
        self.store = store
        self.logger = logger
        self.fields = fields

    def _read(self, message, field: str) -> tuple[FieldStatus, str, StoreError | None]:
        try:
            value = self.store.get_property(message, field)
        except StoreError as e:
            return classify(e), "", e
        return FieldStatus.OK, to_text(value), None

    def read_fields(self, message, ref: MessageRef) -> OrderedFieldValues:
        values = []
        for field in self.fields:
            status, text, error = self._read(message, field)
            if status is not FieldStatus.OK:
                self.logger.warning(
                    "Field %s is %s on message %s, using empty value (%s)",
                    field, status.value, ref.entry_id, error,
                )
            values.append((field, text))
        return values

    def fingerprint(self, message, ref: MessageRef) -> str:
        return fingerprint(self.read_fields(message, ref))

    def synopsis(self, message) -> str:
        """Short ``sent: From: sender Subject: subject`` line, degraded fields left blank."""
        sent, sender, subject = (self._read(message, f)[1] for f in SYNOPSIS_FIELDS)
        return f"{sent}: From: {sender} Subject: {subject}"
