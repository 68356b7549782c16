import logging
import os
from contextlib import contextmanager
from typing import Iterator, Optional

import typer
import uvicorn
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from sqlite_browser.config import DEFAULT_PAGE_SIZE, ENV_DB_DIR, Settings
from sqlite_browser.db.keys import MemoryKeyFormatCache
from sqlite_browser.db.connection import load_driver
from sqlite_browser.engine import DatabaseBrowser
from sqlite_browser.errors import BrowserError, ValidationError
from sqlite_browser.export import export_filename, parse_format
from sqlite_browser.logging_config import configure_logging
from sqlite_browser.query import Cell, CountMode, NoResult, Page, ResultSet
from sqlite_browser.session import JsonFileSessionStore, SessionState

app = typer.Typer(help="SQLite Browser CLI")
console = Console()
logger = logging.getLogger("sqlite_browser.cli")

KEY_ENVVAR = "SQLITE_BROWSER_KEY"
MAX_CELL_WIDTH = 100


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit structured JSON logs"),
):
    with handle_errors():
        settings = Settings.from_env()
    configure_logging("DEBUG" if verbose else settings.log_level, json_format=json_logs)


def get_session(settings: Settings) -> SessionState:
    return SessionState(JsonFileSessionStore(settings.session_file))


def get_browser(db_path: str, key: Optional[str], count_mode: CountMode = CountMode.WRAP) -> DatabaseBrowser:
    settings = Settings.from_env()
    logger.debug(f"Opening {db_path} with driver {settings.driver}")
    # Key commands embed the passphrase, so the CLI keeps them in memory only
    return DatabaseBrowser(
        os.path.abspath(db_path),
        passphrase=key,
        cache=MemoryKeyFormatCache(),
        driver=load_driver(settings.driver),
        statement_timeout=settings.statement_timeout,
        count_mode=count_mode,
    )


@contextmanager
def handle_errors() -> Iterator[None]:
    try:
        yield
    except BrowserError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(code=1)


def parse_assignments(assignments: Optional[list[str]]) -> dict[str, str]:
    """Turn ``column=value`` options into a mapping."""
    values = {}
    for item in assignments or []:
        column, sep, value = item.partition("=")
        if not sep or not column:
            raise ValidationError(f"Expected column=value, got '{item}'", field="set", value=item)
        values[column] = value
    return values


def format_cell(cell: Cell) -> str:
    if cell.is_null:
        return "[dim]NULL[/dim]"
    text = cell.to_text()
    if text == "":
        return "[dim]empty[/dim]"
    if len(text) > MAX_CELL_WIDTH:
        text = text[:MAX_CELL_WIDTH] + "..."
    return escape(text)


def render_result(result: ResultSet, title: Optional[str] = None) -> None:
    if not result.columns:
        console.print("[yellow]Statement returned no columns.[/yellow]")
        return
    table = Table(title=title)
    for column in result.columns:
        table.add_column(escape(column), style="cyan" if column == result.columns[0] else None)
    for row in result.rows:
        table.add_row(*(format_cell(row[col]) for col in result.columns))
    console.print(table)
    if result.is_empty:
        console.print("No data found.")


def render_page(page: Page, title: Optional[str] = None) -> None:
    render_result(page.result, title=title)
    console.print(
        f"[dim]{page.total_rows} records found - page {page.page} of {max(page.total_pages, 1)}[/dim]"
    )


@app.command()
def tables(
    db_path: str = typer.Argument(..., help="Path to SQLite database"),
    key: Optional[str] = typer.Option(None, "--key", "-k", envvar=KEY_ENVVAR, help="Encryption passphrase"),
    internal: bool = typer.Option(False, "--internal", help="Include sqlite_ internal tables"),
):
    """List the tables of a database."""
    with handle_errors():
        names = get_browser(db_path, key).tables(include_internal=internal)
    if not names:
        console.print("[yellow]No tables found.[/yellow]")
        return
    for name in names:
        console.print(escape(name))


@app.command()
def info(
    db_path: str = typer.Argument(..., help="Path to SQLite database"),
    key: Optional[str] = typer.Option(None, "--key", "-k", envvar=KEY_ENVVAR, help="Encryption passphrase"),
):
    """Show table counts and file size."""
    with handle_errors():
        summary = get_browser(db_path, key).info()

    table = Table(title=f"Database: {escape(os.path.basename(summary.path))}")
    table.add_column("Table", style="cyan")
    table.add_column("Rows", style="magenta", justify="right")
    for name, count in summary.table_counts.items():
        table.add_row(escape(name), str(count))
    console.print(table)
    console.print(f"Tables: {summary.total_tables}, Size: {summary.size_bytes} bytes")


@app.command()
def schema(
    db_path: str = typer.Argument(..., help="Path to SQLite database"),
    table_name: str = typer.Argument(..., help="Table to describe"),
    key: Optional[str] = typer.Option(None, "--key", "-k", envvar=KEY_ENVVAR, help="Encryption passphrase"),
):
    """Describe the columns of a table."""
    with handle_errors():
        table_schema = get_browser(db_path, key).schema(table_name)

    table = Table(title=f"Schema: {escape(table_name)}")
    table.add_column("Column", style="cyan")
    table.add_column("Type")
    table.add_column("Not Null")
    table.add_column("Default")
    table.add_column("PK")
    for col in table_schema.columns:
        table.add_row(
            escape(col.name),
            escape(col.declared_type),
            "yes" if col.not_null else "",
            escape(col.default_value) if col.default_value is not None else "",
            "yes" if col.is_primary_key else "",
        )
    console.print(table)
    if table_schema.primary_key is None:
        console.print("[yellow]No single-column primary key: update and delete are disabled.[/yellow]")


@app.command()
def browse(
    db_path: str = typer.Argument(..., help="Path to SQLite database"),
    table_name: str = typer.Argument(..., help="Table to browse"),
    page: int = typer.Option(1, "--page", "-p", help="Page number (1-based)"),
    page_size: int = typer.Option(DEFAULT_PAGE_SIZE, "--page-size", "-n", help="Rows per page"),
    key: Optional[str] = typer.Option(None, "--key", "-k", envvar=KEY_ENVVAR, help="Encryption passphrase"),
):
    """Page through the rows of a table."""
    with handle_errors():
        result = get_browser(db_path, key).browse(table_name, page, page_size)
    render_page(result, title=escape(table_name))


@app.command()
def query(
    db_path: str = typer.Argument(..., help="Path to SQLite database"),
    sql: str = typer.Argument(..., help="Statement to run"),
    page: Optional[int] = typer.Option(None, "--page", "-p", help="Paginate SELECT results"),
    page_size: int = typer.Option(DEFAULT_PAGE_SIZE, "--page-size", "-n", help="Rows per page"),
    key: Optional[str] = typer.Option(None, "--key", "-k", envvar=KEY_ENVVAR, help="Encryption passphrase"),
):
    """Run any SQL statement."""
    with handle_errors():
        session = get_session(Settings.from_env())
        session.record_query(sql)
        session.current_query = sql
        result = get_browser(db_path, key).query(sql, page=page, page_size=page_size)

    if isinstance(result, Page):
        render_page(result)
    elif isinstance(result, ResultSet):
        render_result(result)
        console.print(f"[dim]{len(result)} row(s)[/dim]")
    elif isinstance(result, NoResult):
        console.print(f"[green]Query executed successfully.[/green] {result.changes} row(s) changed.")


@app.command()
def count(
    db_path: str = typer.Argument(..., help="Path to SQLite database"),
    sql: str = typer.Argument(..., help="SELECT statement to count"),
    legacy: bool = typer.Option(False, "--legacy", help="Use the text-rewrite count heuristic"),
    key: Optional[str] = typer.Option(None, "--key", "-k", envvar=KEY_ENVVAR, help="Encryption passphrase"),
):
    """Count the rows a SELECT returns, ignoring any trailing LIMIT."""
    mode = CountMode.LEGACY if legacy else CountMode.WRAP
    with handle_errors():
        total = get_browser(db_path, key, count_mode=mode).count(sql)
    console.print(str(total))


@app.command()
def insert(
    db_path: str = typer.Argument(..., help="Path to SQLite database"),
    table_name: str = typer.Argument(..., help="Target table"),
    assignments: Optional[list[str]] = typer.Option(None, "--set", "-s", help="column=value"),
    key: Optional[str] = typer.Option(None, "--key", "-k", envvar=KEY_ENVVAR, help="Encryption passphrase"),
):
    """Insert a row."""
    with handle_errors():
        result = get_browser(db_path, key).insert(table_name, parse_assignments(assignments))
    console.print(f"[green]{escape(result.message)}[/green] rowid={result.last_row_id}")


@app.command()
def update(
    db_path: str = typer.Argument(..., help="Path to SQLite database"),
    table_name: str = typer.Argument(..., help="Target table"),
    pk_value: str = typer.Argument(..., help="Primary key of the row to update"),
    assignments: Optional[list[str]] = typer.Option(None, "--set", "-s", help="column=value"),
    pk_column: Optional[str] = typer.Option(None, "--pk-column", help="Primary key column (discovered if omitted)"),
    key: Optional[str] = typer.Option(None, "--key", "-k", envvar=KEY_ENVVAR, help="Encryption passphrase"),
):
    """Update fields of one row."""
    with handle_errors():
        browser = get_browser(db_path, key)
        values = parse_assignments(assignments)
        if pk_column:
            result = browser.update(table_name, pk_column, pk_value, values)
        else:
            result = browser.update_row(table_name, pk_value, values)
    console.print(f"[green]{escape(result.message)}[/green]")


@app.command()
def delete(
    db_path: str = typer.Argument(..., help="Path to SQLite database"),
    table_name: str = typer.Argument(..., help="Target table"),
    ids: list[str] = typer.Argument(..., help="Primary key values to delete"),
    key: Optional[str] = typer.Option(None, "--key", "-k", envvar=KEY_ENVVAR, help="Encryption passphrase"),
):
    """Delete rows by primary key."""
    with handle_errors():
        result = get_browser(db_path, key).delete(table_name, ids)
    console.print(f"[green]{escape(result.message)}[/green]")


@app.command()
def drop(
    db_path: str = typer.Argument(..., help="Path to SQLite database"),
    table_name: str = typer.Argument(..., help="Table to drop"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    key: Optional[str] = typer.Option(None, "--key", "-k", envvar=KEY_ENVVAR, help="Encryption passphrase"),
):
    """Drop a table."""
    if not yes:
        typer.confirm(f"Drop table '{table_name}'? This cannot be undone", abort=True)
    with handle_errors():
        result = get_browser(db_path, key).drop_table(table_name)
    console.print(f"[green]{escape(result.message)}[/green]")


@app.command()
def export(
    db_path: str = typer.Argument(..., help="Path to SQLite database"),
    sql: str = typer.Argument(..., help="Statement whose rows are exported"),
    fmt: str = typer.Option("csv", "--format", "-f", help="csv, json or sql"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Output file"),
    table_name: Optional[str] = typer.Option(None, "--table", "-t", help="Target table for sql exports"),
    key: Optional[str] = typer.Option(None, "--key", "-k", envvar=KEY_ENVVAR, help="Encryption passphrase"),
):
    """Export query results to a file."""
    with handle_errors():
        export_format = parse_format(fmt)
        data = get_browser(db_path, key).export(sql, export_format, table_name=table_name)
    path = output or export_filename(export_format)
    with open(path, "wb") as f:
        f.write(data)
    console.print(f"[green]Exported {len(data)} bytes to {escape(path)}[/green]")


@app.command()
def history(
    clear: bool = typer.Option(False, "--clear", help="Forget the query history"),
):
    """Show the most recent queries, newest first."""
    with handle_errors():
        session = get_session(Settings.from_env())
        if clear:
            session.clear_history()
            console.print("[green]History cleared.[/green]")
            return
        entries = session.history
    if not entries:
        console.print("[yellow]No queries in history.[/yellow]")
        return
    for index, sql in enumerate(reversed(entries), start=1):
        console.print(f"[cyan]{index:>2}[/cyan] {escape(sql)}")


@app.command()
def favorites(
    add: Optional[str] = typer.Option(None, "--add", help="Save a query as favorite"),
    remove: Optional[str] = typer.Option(None, "--remove", help="Forget a favorite query"),
):
    """List, add or remove favorite queries."""
    with handle_errors():
        session = get_session(Settings.from_env())
        if add:
            if session.add_favorite(add):
                console.print("[green]Query added to favorites.[/green]")
            else:
                console.print("[yellow]Query is already a favorite.[/yellow]")
            return
        if remove:
            if session.remove_favorite(remove):
                console.print("[green]Favorite removed.[/green]")
            else:
                console.print("[yellow]No such favorite.[/yellow]")
            return
        entries = session.favorites
    if not entries:
        console.print("[yellow]No favorite queries.[/yellow]")
        return
    for sql in entries:
        console.print(escape(sql))


@app.command()
def serve(
    db_dir: str = typer.Option(".", "--db-dir", help="Directory holding the databases"),
    host: str = typer.Option("127.0.0.1", help="Host to bind to"),
    port: int = typer.Option(8000, help="Port to bind to"),
    reload: bool = typer.Option(False, help="Enable auto-reload"),
):
    """Start the HTTP API."""
    os.environ[ENV_DB_DIR] = db_dir
    console.print(f"[bold green]Starting browser API on http://{host}:{port}[/bold green]")
    uvicorn.run("sqlite_browser.server:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    app()
