import logging

from mail_dedup.accessor import DEFAULT_FIELDS
from mail_dedup.dedup import FolderDeduplicator
from mail_dedup.report import FolderResult
from mail_dedup.store import FolderRef, MailStore, StoreError, open_folder

# Outlook system folders, never deduplicated
RESERVED_FOLDERS = frozenset({
    "Calendar", "Contacts", "Conversation Action Settings",
    "Deleted Items", "Deleted Messages", "Drafts", "Junk E-mail",
    "Journal", "Notes", "Outbox", "Quick Step Settings",
    "RSS Feeds", "Search Folders", "Sent Items", "Tasks", "Trash",
})


def _join(parent: str, name: str) -> str:
    return f"{parent}/{name}" if parent else name


class TreeWalker:
    """Depth-first walk: a folder's own messages first, then each child in listing order."""

    def __init__(
        self,
        store: MailStore,
        logger: logging.Logger,
        fields: tuple[str, ...] = DEFAULT_FIELDS,
        dry_run: bool = False,
        skip_folders: frozenset[str] = RESERVED_FOLDERS,
        deduplicator: FolderDeduplicator | None = None,
    ):
        self.store = store
        self.logger = logger
        self.skip_folders = skip_folders
        self.dry_run = dry_run
        self.deduplicator = deduplicator or FolderDeduplicator(
            store, logger, fields=fields, dry_run=dry_run,
        )

    def _name(self, folder, fallback: str) -> str:
        try:
            return self.store.display_name(folder) or fallback
        except StoreError as e:
            self.logger.warning("Cannot read folder name, using %r: %s", fallback, e)
            return fallback

    def walk(self, folder, parent_path: str = "", fallback_name: str = "?") -> FolderResult:
        name = self._name(folder, fallback_name)
        path = _join(parent_path, name)

        if name in self.skip_folders:
            self.logger.info("Skipping reserved folder: %s", path)
            return FolderResult(name=name, path=path, skipped=True, dry_run=self.dry_run)

        self.logger.info("Folder: %s", path)
        own = self.deduplicator.process_folder(folder, path)

        try:
            refs = list(self.store.list_child_folders(folder))
        except StoreError as e:
            self.logger.warning("Cannot list sub folders of %s, treating as leaf: %s", path, e)
            refs = []

        children = []
        for ref in refs:
            children.append(self._walk_child(ref, path))

        return FolderResult(
            name=name,
            path=path,
            duplicates_removed=own.removed,
            child_results=tuple(children),
            groups=own.groups,
            error=own.error,
            dry_run=self.dry_run,
        )

    def _walk_child(self, ref: FolderRef, parent_path: str) -> FolderResult:
        fallback = ref.name or ref.entry_id
        try:
            scope = open_folder(self.store, ref)
        except StoreError as e:
            path = _join(parent_path, fallback)
            self.logger.error("Cannot open folder %s: %s", path, e)
            return FolderResult(
                name=fallback, path=path, error=f"cannot open folder: {e}", dry_run=self.dry_run,
            )
        with scope as child:
            return self.walk(child, parent_path, fallback)

    def walk_roots(self) -> list[FolderResult]:
        """Walk every top-level folder of the store."""
        try:
            roots = list(self.store.root_folders())
        except StoreError as e:
            self.logger.error("Cannot list top level folders: %s", e)
            return []
        return [self._walk_child(ref, "") for ref in roots]
