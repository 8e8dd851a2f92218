import logging
import os
from dataclasses import dataclass

from mail_dedup.accessor import DEFAULT_FIELDS, parse_fields
from mail_dedup.jmap import DEFAULT_SESSION_URL
from mail_dedup.walker import RESERVED_FOLDERS

DELETE_POLICIES = ("trash", "destroy")


@dataclass(frozen=True)
class Settings:
    session_url: str = DEFAULT_SESSION_URL
    token: str | None = None
    fields: tuple[str, ...] = DEFAULT_FIELDS
    skip_folders: frozenset[str] = RESERVED_FOLDERS
    delete_policy: str = "trash"
    log_file: str | None = None
    log_level: int = logging.INFO

    @classmethod
    def from_env(cls, environ=None) -> "Settings":
        """Build settings from ``os.environ`` (after ``.env`` has been loaded)."""
        env = os.environ if environ is None else environ

        delete_policy = env.get("MAIL_DEDUP_DELETE_POLICY", "trash").strip().lower()
        if delete_policy not in DELETE_POLICIES:
            raise ValueError(
                f"MAIL_DEDUP_DELETE_POLICY must be one of {', '.join(DELETE_POLICIES)}, got {delete_policy!r}"
            )

        skip = env.get("MAIL_DEDUP_SKIP_FOLDERS")
        if skip is None:
            skip_folders = RESERVED_FOLDERS
        else:
            skip_folders = frozenset(s.strip() for s in skip.split(",") if s.strip())

        level_name = env.get("MAIL_DEDUP_LOG_LEVEL", "INFO").strip().upper()
        level = logging.getLevelName(level_name)
        if not isinstance(level, int):
            raise ValueError(f"Unknown MAIL_DEDUP_LOG_LEVEL: {level_name}")

        return cls(
            session_url=env.get("JMAP_SESSION_URL", DEFAULT_SESSION_URL),
            token=env.get("JMAP_TOKEN"),
            fields=parse_fields(env.get("MAIL_DEDUP_FIELDS")),
            skip_folders=skip_folders,
            delete_policy=delete_policy,
            log_file=env.get("MAIL_DEDUP_LOG_FILE") or None,
            log_level=level,
        )
