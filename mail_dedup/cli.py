import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from mail_dedup.accessor import parse_fields
from mail_dedup.config import DELETE_POLICIES, Settings
from mail_dedup.jmap import JMAPSession
from mail_dedup.log import build_logger
from mail_dedup.maildir import MaildirStore
from mail_dedup.report import (
    FolderResult,
    failed_folders,
    flatten,
    folder_table,
    groups_table,
    load_report,
    save_report,
    total_found,
    total_removed,
    total_sets,
)
from mail_dedup.walker import TreeWalker

load_dotenv()

console = Console()


def _settings() -> Settings:
    try:
        return Settings.from_env()
    except ValueError as e:
        raise click.UsageError(str(e)) from e


def _fields(settings: Settings, fields: str | None) -> tuple[str, ...]:
    if fields is None:
        return settings.fields
    try:
        return parse_fields(fields)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--fields") from e


def _print_results(results_by_store: dict[str, list[FolderResult]], dry_run: bool):
    for name, results in results_by_store.items():
        console.print(folder_table(results, title=f"Store: {name}"))
        if flatten(results):
            console.print(groups_table(results))

    all_results = [r for results in results_by_store.values() for r in results]
    sets = total_sets(all_results)
    failed = failed_folders(all_results)
    if failed:
        console.print(f"[red]{len(failed)} folder(s) could not be fully processed.[/red]")

    if dry_run:
        console.print(
            f"\n[yellow]{sets} duplicate sets, {total_found(all_results)} "
            f"duplicates would be removed.[/yellow]"
        )
    else:
        console.print(
            f"\n[green]{sets} duplicate sets, {total_removed(all_results)} "
            f"duplicates removed.[/green]"
        )


def _dedup_stores(stores, settings: Settings, fields, dry_run: bool, log_file: str | None):
    logger = build_logger(
        level=settings.log_level,
        log_file=log_file or settings.log_file,
        console=Console(stderr=True),
    )
    results_by_store = {}
    for store in stores:
        logger.info("Starting store: %s", store.name)
        walker = TreeWalker(
            store,
            logger,
            fields=fields,
            dry_run=dry_run,
            skip_folders=settings.skip_folders,
        )
        results_by_store[store.name] = walker.walk_roots()

    _print_results(results_by_store, dry_run)
    path = save_report(results_by_store)
    console.print(f"[dim]Report saved to {path}[/dim]")


def _common_options(func):
    func = click.option(
        "--log-file", default=None, type=click.Path(dir_okay=False), help="Also write the log to this file."
    )(func)
    func = click.option(
        "--delete-policy", default=None, type=click.Choice(DELETE_POLICIES),
        help="Move duplicates to trash or destroy them (default from MAIL_DEDUP_DELETE_POLICY).",
    )(func)
    func = click.option(
        "--fields", default=None, help="Comma-separated fields that make two messages the same."
    )(func)
    func = click.option(
        "--dry-run/--execute", default=True, help="Dry run (default) or execute removal."
    )(func)
    return func


@click.group()
def cli():
    """Mail dedup: remove duplicate messages folder by folder."""


@cli.command()
@_common_options
@click.option("--account", default=None, help="Only this JMAP account id.")
def jmap(dry_run: bool, fields: str | None, delete_policy: str | None, log_file: str | None, account: str | None):
    """Deduplicate every mailbox of your JMAP mail account(s)."""
    settings = _settings()
    fields = _fields(settings, fields)
    try:
        session = JMAPSession(settings.token, settings.session_url)
    except RuntimeError as e:
        raise click.ClickException(str(e)) from e

    try:
        stores = session.stores(delete_policy=delete_policy or settings.delete_policy)
        if account is not None:
            stores = [s for s in stores if s.account_id == account]
            if not stores:
                raise click.BadParameter(f"No mail account {account}", param_hint="--account")
        _dedup_stores(stores, settings, fields, dry_run, log_file)
    finally:
        session.close()


@cli.command()
@click.argument("path", type=click.Path(exists=True, file_okay=False))
@_common_options
def maildir(path: str, dry_run: bool, fields: str | None, delete_policy: str | None, log_file: str | None):
    """Deduplicate a local Maildir tree."""
    settings = _settings()
    fields = _fields(settings, fields)
    store = MaildirStore(path, delete_policy=delete_policy or settings.delete_policy)
    _dedup_stores([store], settings, fields, dry_run, log_file)


@cli.command()
def stores():
    """List the JMAP mail accounts that can be deduplicated."""
    settings = _settings()
    try:
        session = JMAPSession(settings.token, settings.session_url)
    except RuntimeError as e:
        raise click.ClickException(str(e)) from e

    try:
        table = Table(title="Mail accounts")
        table.add_column("Account", style="cyan")
        table.add_column("Name")
        table.add_column("Primary", justify="center")
        for account_id, name in session.accounts.items():
            table.add_row(account_id, name, "*" if account_id == session.primary_account else "")
    finally:
        session.close()
    console.print(table)


@cli.command()
def last():
    """Show the report of the last run."""
    results_by_store = load_report()
    if not results_by_store:
        console.print("No saved report.")
        return
    all_results = [r for results in results_by_store.values() for r in results]
    _print_results(results_by_store, dry_run=any(r.dry_run for r in all_results))
