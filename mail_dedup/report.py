import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Iterable, Iterator

from rich.markup import escape
from rich.table import Table


@dataclass(frozen=True)
class DuplicateGroup:
    """One fingerprint shared by two or more messages of a folder."""

    fingerprint: str
    survivor: str
    candidates: tuple[str, ...]
    removed: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()


@dataclass(frozen=True)
class FolderResult:
    name: str
    path: str
    duplicates_removed: int = 0
    child_results: tuple["FolderResult", ...] = ()
    groups: tuple[DuplicateGroup, ...] = ()
    error: str | None = None
    skipped: bool = False
    dry_run: bool = False

    @property
    def duplicate_sets(self) -> int:
        return len(self.groups)

    @property
    def duplicates_found(self) -> int:
        return sum(len(g.candidates) for g in self.groups)


@dataclass(frozen=True)
class RemovalRecord:
    path: str
    fingerprint: str
    survivor: str
    removed: tuple[str, ...]
    pending: tuple[str, ...] = field(default=())


def iter_results(results: FolderResult | Iterable[FolderResult]) -> Iterator[FolderResult]:
    """Pre-order walk over one or more result trees."""
    if isinstance(results, FolderResult):
        results = [results]
    for result in results:
        yield result
        yield from iter_results(result.child_results)


def total_removed(results: FolderResult | Iterable[FolderResult]) -> int:
    return sum(r.duplicates_removed for r in iter_results(results))


def total_found(results: FolderResult | Iterable[FolderResult]) -> int:
    return sum(r.duplicates_found for r in iter_results(results))


def total_sets(results: FolderResult | Iterable[FolderResult]) -> int:
    return sum(r.duplicate_sets for r in iter_results(results))


def failed_folders(results: FolderResult | Iterable[FolderResult]) -> list[FolderResult]:
    return [r for r in iter_results(results) if r.error]


def flatten(results: FolderResult | Iterable[FolderResult]) -> list[RemovalRecord]:
    records = []
    for result in iter_results(results):
        for group in result.groups:
            pending = tuple(
                c for c in group.candidates
                if c not in group.removed and c not in group.failed
            ) if result.dry_run else ()
            records.append(RemovalRecord(
                path=result.path,
                fingerprint=group.fingerprint,
                survivor=group.survivor,
                removed=group.removed,
                pending=pending,
            ))
    return records


def result_to_dict(result: FolderResult) -> dict:
    return asdict(result)


def result_from_dict(data: dict) -> FolderResult:
    return FolderResult(
        name=data["name"],
        path=data["path"],
        duplicates_removed=data.get("duplicates_removed", 0),
        child_results=tuple(result_from_dict(c) for c in data.get("child_results") or []),
        groups=tuple(
            DuplicateGroup(
                fingerprint=g["fingerprint"],
                survivor=g["survivor"],
                candidates=tuple(g.get("candidates") or []),
                removed=tuple(g.get("removed") or []),
                failed=tuple(g.get("failed") or []),
            )
            for g in data.get("groups") or []
        ),
        error=data.get("error"),
        skipped=data.get("skipped", False),
        dry_run=data.get("dry_run", False),
    )


def _report_path() -> Path:
    base = Path(os.environ.get("XDG_CACHE_HOME", Path.home() / ".cache"))
    return base / "mail-dedup" / "last-report.json"


def save_report(stores: dict[str, list[FolderResult]]) -> Path:
    """Write ``{store name: [root results]}`` as the last run's report."""
    path = _report_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(
        {name: [result_to_dict(r) for r in results] for name, results in stores.items()},
        indent=2,
    ))
    return path


def load_report() -> dict[str, list[FolderResult]]:
    path = _report_path()
    if not path.exists():
        return {}
    data = json.loads(path.read_text())
    return {name: [result_from_dict(r) for r in results] for name, results in data.items()}


def folder_table(results: Iterable[FolderResult], title: str | None = None) -> Table:
    results = list(results)
    dry_run = any(r.dry_run for r in iter_results(results))

    table = Table(title=title)
    table.add_column("Folder", style="cyan", max_width=60)
    table.add_column("Sets", justify="right")
    table.add_column("Pending" if dry_run else "Removed", justify="right", style="green")
    table.add_column("Note", style="dim", max_width=50)

    for r in iter_results(results):
        if r.skipped:
            note = "skipped"
        elif r.error:
            note = f"[red]{escape(r.error)}[/red]"
        else:
            note = ""
        count = r.duplicates_found if r.dry_run else r.duplicates_removed
        table.add_row(escape(r.path), str(r.duplicate_sets), str(count), note)
    return table


def groups_table(results: Iterable[FolderResult]) -> Table:
    table = Table(title="Duplicate groups")
    table.add_column("Folder", style="cyan", max_width=40)
    table.add_column("Fingerprint", style="dim")
    table.add_column("Survivor", max_width=30)
    table.add_column("Removed", max_width=50)
    for record in flatten(results):
        removed = escape(", ".join(record.removed))
        if record.pending:
            removed = f"[yellow]{escape(', '.join(record.pending))}[/yellow]"
        table.add_row(escape(record.path), record.fingerprint[:12], escape(record.survivor), removed)
    return table
