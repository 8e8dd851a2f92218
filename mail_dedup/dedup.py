import logging
from contextlib import ExitStack
from dataclasses import dataclass
from typing import Any

from mail_dedup.accessor import DEFAULT_FIELDS, MessageAccessor
from mail_dedup.report import DuplicateGroup
from mail_dedup.store import MailStore, MessageRef, StoreError, open_message


@dataclass(frozen=True)
class FolderPass:
    removed: int
    groups: tuple[DuplicateGroup, ...] = ()
    error: str | None = None


@dataclass
class _Candidate:
    ref: MessageRef
    handle: Any
    scope: ExitStack


class FolderDeduplicator:
    """Removes all but the first-listed message of each fingerprint group in one folder."""

    def __init__(
        self,
        store: MailStore,
        logger: logging.Logger,
        fields: tuple[str, ...] = DEFAULT_FIELDS,
        dry_run: bool = False,
        check_synopsis: bool = True,
    ):
        self.store = store
        self.logger = logger
        self.accessor = MessageAccessor(store, logger, fields)
        self.dry_run = dry_run
        self.check_synopsis = check_synopsis

    def process_folder(self, folder, path: str = "") -> FolderPass:
        try:
            refs = list(self.store.list_messages(folder))
        except StoreError as e:
            self.logger.error("Cannot list messages at %s: %s", path, e)
            return FolderPass(removed=0, error=f"message listing failed: {e}")

        self.logger.info("Checking for duplicates at: %s Total items: %d", path, len(refs))

        with ExitStack() as pass_scope:
            survivors: dict[str, tuple[MessageRef, str]] = {}
            candidates: dict[str, list[_Candidate]] = {}

            for ref in refs:
                with ExitStack() as message_scope:
                    try:
                        handle = message_scope.enter_context(open_message(self.store, ref))
                    except StoreError as e:
                        self.logger.error("Cannot open message %s at %s: %s", ref.entry_id, path, e)
                        continue

                    digest = self.accessor.fingerprint(handle, ref)
                    self.logger.debug("%s %s", digest, ref.entry_id)

                    if digest not in survivors:
                        synopsis = self.accessor.synopsis(handle) if self.check_synopsis else ""
                        survivors[digest] = (ref, synopsis)
                        continue

                    # candidates stay open until their removal is issued
                    scope = pass_scope.enter_context(message_scope.pop_all())
                    candidates.setdefault(digest, []).append(_Candidate(ref, handle, scope))

            groups = []
            for digest, (survivor, synopsis) in survivors.items():
                if digest in candidates:
                    groups.append(self._remove_group(path, digest, survivor, synopsis, candidates[digest]))

        removed = sum(len(g.removed) for g in groups)
        if groups:
            self.logger.info(
                "%s: %d duplicate sets, %d %s",
                path, len(groups), sum(len(g.candidates) for g in groups),
                "would be removed" if self.dry_run else f"found, {removed} removed",
            )
        return FolderPass(removed=removed, groups=tuple(groups))

    def _remove_group(
        self,
        path: str,
        digest: str,
        survivor: MessageRef,
        survivor_synopsis: str,
        members: list[_Candidate],
    ) -> DuplicateGroup:
        self.logger.info(
            "%d duplicates found for %s at %s: %s",
            len(members) + 1, survivor.entry_id, path, survivor_synopsis,
        )
        removed, failed = [], []
        for candidate in members:
            with candidate.scope:
                if self.check_synopsis:
                    synopsis = self.accessor.synopsis(candidate.handle)
                    if synopsis != survivor_synopsis:
                        self.logger.error(
                            "Duplicate %s does not match survivor %s: %s",
                            candidate.ref.entry_id, survivor.entry_id, synopsis,
                        )
                if self.dry_run:
                    continue
                try:
                    self.store.delete_message(candidate.handle)
                except StoreError as e:
                    self.logger.error("Cannot remove duplicate %s at %s: %s", candidate.ref.entry_id, path, e)
                    failed.append(candidate.ref.entry_id)
                    continue
                removed.append(candidate.ref.entry_id)

        return DuplicateGroup(
            fingerprint=digest,
            survivor=survivor.entry_id,
            candidates=tuple(c.ref.entry_id for c in members),
            removed=tuple(removed),
            failed=tuple(failed),
        )
