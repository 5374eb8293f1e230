"""Command-line entry point: ``finance-sync``.

Syncs run against captured scrape results (``ReplaySource``): pass one with
``--capture`` or point ``FS_REPLAY_DIR`` at a directory of ``<vendor>.json``
files. ``.env`` in the working directory is loaded before any command runs.
"""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import date, timedelta
from pathlib import Path
from typing import Annotated, Any

import typer
from dotenv import load_dotenv

from .logging_setup import configure_logging

app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help="Sync bank and card transactions, fix categories and inspect payment patterns.",
)

DATABASE_URL_OPTION = typer.Option(None, help="Override DATABASE_URL (falls back to env var).")


def _settings(database_url: str | None):
    from .settings import SyncSettings

    try:
        settings = SyncSettings.from_env()
    except ValueError as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        raise typer.Exit(2) from e
    if database_url:
        settings = settings.model_copy(update={"database_url": database_url})
    return settings


def _parse_fields(pairs: list[str]) -> dict[str, str]:
    fields: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--credential")
        fields[key.strip()] = value
    return fields


def _render(event: Any) -> str:
    data = event.data
    if event.event == "progress":
        return f"[{data.get('percent', 0):>3}%] {data.get('message', '')}"
    if event.event == "complete":
        s = data.get("summary", {})
        return (
            f"Done: {s.get('savedTransactions', 0)} new, "
            f"{s.get('updatedTransactions', 0)} updated, "
            f"{s.get('duplicateTransactions', 0)} duplicates "
            f"across {s.get('accounts', 0)} account(s)"
        )
    hint = f"\n  hint: {data['hint']}" if data.get("hint") else ""
    return f"Error: {data.get('message', 'sync failed')}{hint}"


@app.command("sync")
def sync_cmd(
    vendor: Annotated[str, typer.Option(help="Vendor identifier, e.g. hapoalim, isracard, max.")],
    *,
    capture: Annotated[
        Path | None,
        typer.Option(help="Captured scrape result (JSON). Defaults to $FS_REPLAY_DIR/<vendor>.json."),
    ] = None,
    credential: Annotated[
        list[str] | None,
        typer.Option("--credential", "-c", help="Login field as KEY=VALUE (repeatable)."),
    ] = None,
    credential_id: str | None = typer.Option(None, help="Stable credential identifier."),
    start_date: Annotated[
        str | None, typer.Option(help="First date to sync (YYYY-MM-DD).")
    ] = None,
    end_date: Annotated[str | None, typer.Option(help="Last date to sync (YYYY-MM-DD).")] = None,
    continue_: Annotated[
        bool,
        typer.Option("--continue", help="Start the day after the last stored transaction."),
    ] = False,
    max_retries: int | None = typer.Option(None, min=0, help="Override FS_MAX_RETRIES."),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Run one sync session and print its progress."""

    from .api import get_continuation_start
    from .errors import FinanceSyncError
    from .models import DateRange, SyncOptions
    from .orchestrator import SyncOrchestrator
    from .sources import ReplaySource, prepare_credential

    settings = _settings(database_url)
    if capture is None:
        if settings.replay_dir is None:
            print("Error: pass --capture or set FS_REPLAY_DIR.", file=sys.stderr)
            raise typer.Exit(2)
        capture = settings.replay_dir / f"{vendor}.json"

    try:
        start = (
            date.fromisoformat(start_date)
            if start_date
            else date.today() - timedelta(days=settings.default_sync_days)
        )
        end = date.fromisoformat(end_date) if end_date else None
    except ValueError as e:
        raise typer.BadParameter(str(e)) from e
    if continue_:
        start = (
            get_continuation_start(
                vendor, credential_id, fallback=start, database_url=settings.database_url
            )
            or start
        )

    async def _drive() -> bool:
        cred = prepare_credential(vendor, _parse_fields(credential or []), credential_id=credential_id)
        stream = SyncOrchestrator(settings=settings).start_session(
            cred,
            DateRange(start=start, end=end),
            SyncOptions(max_retries=max_retries),
            source=ReplaySource(capture),
        )
        ok = False
        try:
            async for event in stream:
                print(_render(event), file=sys.stdout if event.event != "error" else sys.stderr)
                ok = event.event == "complete"
        finally:
            await stream.aclose()
        return ok

    try:
        ok = asyncio.run(_drive())
    except (FinanceSyncError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        raise typer.Exit(2) from e
    except KeyboardInterrupt:
        print("Sync cancelled.", file=sys.stderr)
        raise typer.Exit(130) from None
    if not ok:
        raise typer.Exit(1)


@app.command("last-date")
def last_date_cmd(
    vendor: str,
    credential_id: str | None = typer.Option(None),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Print the latest stored transaction date for a vendor."""

    from .api import get_last_transaction_date

    settings = _settings(database_url)
    last = get_last_transaction_date(vendor, credential_id, database_url=settings.database_url)
    print(last.isoformat() if last else "none")


@app.command("patterns")
def patterns_cmd(
    pattern_type: Annotated[str, typer.Option("--type", help="installments or recurring")] = "recurring",
    sort_by: str = typer.Option("amount", help="amount, count, name, next_payment_date, last_charge_date"),
    sort_order: str = typer.Option("desc", help="asc or desc"),
    limit: int = typer.Option(50),
    offset: int = typer.Option(0),
    frequency: str | None = typer.Option(None, help="monthly or bi-monthly (recurring only)"),
    status: str | None = typer.Option(None, help="active or completed (installments only)"),
    as_json: Annotated[bool, typer.Option("--json", help="Print the raw JSON page.")] = False,
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """List installment plans or recurring charges."""

    from .api import find_patterns
    from .errors import PatternQueryError
    from .patterns import PatternQuery

    settings = _settings(database_url)
    try:
        query = PatternQuery.parse(
            type=pattern_type,
            sort_by=sort_by,
            sort_order=sort_order,
            limit=limit,
            offset=offset,
            frequency=frequency,
            status=status,
        )
    except PatternQueryError as e:
        raise typer.BadParameter(str(e)) from e
    page = find_patterns(
        query,
        excluded_categories=settings.recurring_excluded_categories,
        database_url=settings.database_url,
    )
    if as_json:
        print(json.dumps(page, ensure_ascii=False, indent=2))
        return
    for item in page[query.type.value]:
        if query.type.value == "installments":
            print(
                f"{item['name']}\t{item['current_installment']}/{item['total_installments']}\t"
                f"{item['monthly_price']:.2f}\t{item['next_payment_date'] or '-'}\t{item['status']}"
            )
        else:
            print(
                f"{item['name']}\t{item['frequency']}\t{item['monthly_amount']:.2f}\t"
                f"{item['next_payment_date']}"
            )
    p = page["pagination"]
    print(f"-- {p['offset'] + 1 if p['total'] else 0}-{p['offset'] + len(page[query.type.value])} of {p['total']}")


@app.command("recategorize")
def recategorize_cmd(
    description: str,
    category: str,
    no_rule: Annotated[bool, typer.Option("--no-rule", help="Do not create a rule.")] = False,
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Set the category of every transaction with this description."""

    from .api import update_category
    from .errors import CategoryUpdateError

    settings = _settings(database_url)
    try:
        result = update_category(
            description, category, create_rule=not no_rule, database_url=settings.database_url
        )
    except CategoryUpdateError as e:
        raise typer.BadParameter(str(e)) from e
    rule = "created" if result.rule_created else "updated" if result.rule_updated else "not created"
    print(f"Updated {result.transactions_updated} transaction(s); rule {rule}.")


@app.command("merge-categories")
def merge_categories_cmd(
    sources: list[str],
    into: Annotated[str, typer.Option("--into", help="Category that absorbs the others.")],
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Fold one or more categories into another."""

    from .api import merge_categories
    from .errors import CategoryUpdateError

    settings = _settings(database_url)
    try:
        moved = merge_categories(sources, into, database_url=settings.database_url)
    except CategoryUpdateError as e:
        raise typer.BadParameter(str(e)) from e
    print(f"Moved {moved} transaction(s) into {into}.")


@app.command("apply-rules")
def apply_rules_cmd(database_url: str | None = DATABASE_URL_OPTION) -> None:
    """Re-apply active rules to stored transactions (manual corrections are kept)."""

    from .api import apply_rules

    settings = _settings(database_url)
    rules, updated = apply_rules(database_url=settings.database_url)
    print(f"Applied {rules} rule(s); {updated} transaction(s) updated.")


@app.command("exclude")
def exclude_cmd(
    name: str,
    account: str | None = typer.Option(None, help="Limit the exclusion to one account number."),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Hide a charge from recurring-payment detection."""

    from .api import add_exclusion
    from .errors import PatternQueryError

    settings = _settings(database_url)
    try:
        row = add_exclusion(name, account, database_url=settings.database_url)
    except PatternQueryError as e:
        raise typer.BadParameter(str(e)) from e
    state = "already excluded" if row["alreadyExisted"] else "excluded"
    print(f"#{row['id']} {row['name']} {state}.")


@app.command("exclusions")
def exclusions_cmd(database_url: str | None = DATABASE_URL_OPTION) -> None:
    """List exclusions."""

    from .api import list_exclusions

    settings = _settings(database_url)
    for row in list_exclusions(database_url=settings.database_url):
        print(f"{row['id']}\t{row['name']}\t{row['account_number'] or '-'}")


@app.command("unexclude")
def unexclude_cmd(exclusion_id: int, database_url: str | None = DATABASE_URL_OPTION) -> None:
    """Delete an exclusion by id."""

    from .api import delete_exclusion

    settings = _settings(database_url)
    if not delete_exclusion(exclusion_id, database_url=settings.database_url):
        print(f"Error: exclusion {exclusion_id} not found.", file=sys.stderr)
        raise typer.Exit(1)
    print(f"Deleted exclusion {exclusion_id}.")


@app.command("history")
def history_cmd(
    vendor: str | None = typer.Option(None),
    limit: int = typer.Option(20, min=1, max=500),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Show recent sync runs."""

    from .api import list_sync_events

    settings = _settings(database_url)
    for ev in list_sync_events(vendor=vendor, limit=limit, database_url=settings.database_url):
        print(f"{ev['createdAt']}\t{ev['vendor']}\t{ev['status']}\t{ev['message'] or ''}")


@app.command("serve")
def serve_cmd(
    host: str = typer.Option("127.0.0.1"),
    port: int = typer.Option(8000),
    reload: bool = typer.Option(False, help="Auto-reload on code changes (development)."),
    log_level: str | None = typer.Option(None, help="Override FINANCE_SYNC_LOG_LEVEL."),
) -> None:
    """Serve the HTTP API with uvicorn."""

    import uvicorn

    if log_level:
        configure_logging(log_level, force=True)
    uvicorn.run(
        "finance_sync.web.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_config=None,
    )


@app.callback()
def _root() -> None:
    """Load ``.env`` (without overriding the environment) and configure logging."""

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    configure_logging()


if __name__ == "__main__":  # pragma: no cover
    app()
