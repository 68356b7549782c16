"""
server.py - JSON HTTP API for browsing databases.

Each client sends an opaque ``X-Session-Id`` header; the passphrase,
history, favorites and key-format cache of that session live in an
in-process registry. Every request opens and closes its own
connection through DatabaseBrowser.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from sqlite_browser.config import Settings
from sqlite_browser.db.connection import list_databases
from sqlite_browser.engine import DatabaseBrowser
from sqlite_browser.errors import (
    BrowserError,
    ConstraintError,
    DatabaseConnectionError,
    DriverUnavailableError,
    FileError,
    QueryError,
    SchemaError,
    ValidationError,
)
from sqlite_browser.export import CONTENT_TYPES, export_filename, parse_format
from sqlite_browser.query import NoResult, Page, ResultSet
from sqlite_browser.session import SessionRegistry, SessionState

logger = logging.getLogger("sqlite_browser.server")

# First match wins, so subclasses come before their bases
ERROR_STATUS: dict[type[BrowserError], int] = {
    DriverUnavailableError: 500,
    FileError: 404,
    DatabaseConnectionError: 401,
    SchemaError: 404,
    QueryError: 400,
    ConstraintError: 409,
    ValidationError: 422,
}


class PassphraseRequest(BaseModel):
    passphrase: Optional[str] = None


class QueryRequest(BaseModel):
    sql: str
    page: Optional[int] = None
    page_size: Optional[int] = None


class CountRequest(BaseModel):
    sql: str


class InsertRequest(BaseModel):
    values: Dict[str, Any] = Field(default_factory=dict)


class UpdateRequest(BaseModel):
    pk_value: Any
    values: Dict[str, Any] = Field(default_factory=dict)
    pk_column: Optional[str] = None


class DeleteRequest(BaseModel):
    ids: List[Any] = Field(default_factory=list)
    pk_column: Optional[str] = None


class ExportRequest(BaseModel):
    sql: str
    format: str = "csv"
    table_name: Optional[str] = None


class FavoriteRequest(BaseModel):
    sql: str


app = FastAPI(title="SQLite Browser API")
registry = SessionRegistry()


def get_settings() -> Settings:
    return Settings.from_env()


def get_session(x_session_id: str = Header(..., alias="X-Session-Id")) -> SessionState:
    return registry.get(x_session_id)


def open_browser(db_name: str, settings: Settings, session: SessionState) -> DatabaseBrowser:
    return DatabaseBrowser.from_session(settings, db_name, session)


def result_to_dict(result: ResultSet) -> dict[str, Any]:
    payload = result.to_dict()
    payload["row_count"] = len(result)
    payload["source_table"] = result.source_table
    return payload


def page_to_dict(page: Page) -> dict[str, Any]:
    payload = result_to_dict(page.result)
    payload.update({
        "total_rows": page.total_rows,
        "page": page.page,
        "page_size": page.page_size,
        "total_pages": page.total_pages,
        "has_previous": page.has_previous,
        "has_next": page.has_next,
    })
    return payload


@app.exception_handler(BrowserError)
async def browser_error_handler(request: Request, exc: BrowserError):
    status_code = 500
    for error_type, code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            status_code = code
            break
    if status_code >= 500:
        logger.error(f"Server-side browser error: {exc}")
    else:
        logger.info(f"{type(exc).__name__}: {exc.message}", extra={"path": request.url.path})
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "error": type(exc).__name__, "context": exc.context},
    )


@app.get("/health")
def health_check():
    return {"status": "ok", "service": "sqlite-browser"}


@app.get("/databases")
def get_databases(settings: Settings = Depends(get_settings)):
    return {"databases": list_databases(settings.db_dir)}


@app.delete("/session")
def end_session(x_session_id: str = Header(..., alias="X-Session-Id")):
    registry.drop(x_session_id)
    return {"ended": True}


@app.put("/session/passphrase")
def set_passphrase(request: PassphraseRequest, session: SessionState = Depends(get_session)):
    session.passphrase = request.passphrase
    return {"passphrase_set": session.passphrase is not None}


@app.get("/session/history")
def get_history(session: SessionState = Depends(get_session)):
    return {"history": list(reversed(session.history))}


@app.delete("/session/history")
def clear_history(session: SessionState = Depends(get_session)):
    session.clear_history()
    return {"history": []}


@app.get("/session/favorites")
def get_favorites(session: SessionState = Depends(get_session)):
    return {"favorites": session.favorites}


@app.post("/session/favorites")
def add_favorite(request: FavoriteRequest, session: SessionState = Depends(get_session)):
    added = session.add_favorite(request.sql)
    return {"added": added, "favorites": session.favorites}


@app.post("/session/favorites/remove")
def remove_favorite(request: FavoriteRequest, session: SessionState = Depends(get_session)):
    removed = session.remove_favorite(request.sql)
    return {"removed": removed, "favorites": session.favorites}


@app.get("/databases/{db_name}/tables")
def get_tables(
    db_name: str,
    settings: Settings = Depends(get_settings),
    session: SessionState = Depends(get_session),
):
    return {"tables": open_browser(db_name, settings, session).tables()}


@app.get("/databases/{db_name}/info")
def get_info(
    db_name: str,
    settings: Settings = Depends(get_settings),
    session: SessionState = Depends(get_session),
):
    summary = open_browser(db_name, settings, session).info()
    return {
        "database": db_name,
        "size_bytes": summary.size_bytes,
        "total_tables": summary.total_tables,
        "table_counts": summary.table_counts,
    }


@app.get("/databases/{db_name}/tables/{table_name}/schema")
def get_schema(
    db_name: str,
    table_name: str,
    settings: Settings = Depends(get_settings),
    session: SessionState = Depends(get_session),
):
    schema = open_browser(db_name, settings, session).schema(table_name)
    return {
        "table": schema.table_name,
        "primary_key": schema.primary_key,
        "columns": [col.to_dict() for col in schema.columns],
    }


@app.get("/databases/{db_name}/tables/{table_name}/rows")
def browse_rows(
    db_name: str,
    table_name: str,
    page: int = 1,
    page_size: Optional[int] = None,
    settings: Settings = Depends(get_settings),
    session: SessionState = Depends(get_session),
):
    browser = open_browser(db_name, settings, session)
    return page_to_dict(browser.browse(table_name, page, page_size or settings.page_size))


@app.post("/databases/{db_name}/tables/{table_name}/rows", status_code=status.HTTP_201_CREATED)
def insert_row(
    db_name: str,
    table_name: str,
    request: InsertRequest,
    settings: Settings = Depends(get_settings),
    session: SessionState = Depends(get_session),
):
    result = open_browser(db_name, settings, session).insert(table_name, request.values)
    return {"message": result.message, "affected": result.affected, "last_row_id": result.last_row_id}


@app.patch("/databases/{db_name}/tables/{table_name}/rows")
def update_row(
    db_name: str,
    table_name: str,
    request: UpdateRequest,
    settings: Settings = Depends(get_settings),
    session: SessionState = Depends(get_session),
):
    browser = open_browser(db_name, settings, session)
    if request.pk_column:
        result = browser.update(table_name, request.pk_column, request.pk_value, request.values)
    else:
        result = browser.update_row(table_name, request.pk_value, request.values)
    return {"message": result.message, "affected": result.affected}


@app.post("/databases/{db_name}/tables/{table_name}/rows/delete")
def delete_rows(
    db_name: str,
    table_name: str,
    request: DeleteRequest,
    settings: Settings = Depends(get_settings),
    session: SessionState = Depends(get_session),
):
    result = open_browser(db_name, settings, session).delete(table_name, request.ids, pk_column=request.pk_column)
    return {"message": result.message, "affected": result.affected}


@app.delete("/databases/{db_name}/tables/{table_name}")
def drop_table(
    db_name: str,
    table_name: str,
    settings: Settings = Depends(get_settings),
    session: SessionState = Depends(get_session),
):
    result = open_browser(db_name, settings, session).drop_table(table_name)
    return {"message": result.message}


@app.post("/databases/{db_name}/query")
def run_query(
    db_name: str,
    request: QueryRequest,
    settings: Settings = Depends(get_settings),
    session: SessionState = Depends(get_session),
):
    browser = open_browser(db_name, settings, session)
    session.record_query(request.sql)
    session.current_query = request.sql
    result = browser.query(request.sql, page=request.page, page_size=request.page_size or settings.page_size)

    if isinstance(result, Page):
        return {"type": "page", **page_to_dict(result)}
    if isinstance(result, NoResult):
        return {"type": "no_result", "changes": result.changes, "message": "Query executed successfully."}
    return {"type": "rows", **result_to_dict(result)}


@app.post("/databases/{db_name}/count")
def count_rows(
    db_name: str,
    request: CountRequest,
    settings: Settings = Depends(get_settings),
    session: SessionState = Depends(get_session),
):
    return {"total_rows": open_browser(db_name, settings, session).count(request.sql)}


@app.post("/databases/{db_name}/export")
def export_rows(
    db_name: str,
    request: ExportRequest,
    settings: Settings = Depends(get_settings),
    session: SessionState = Depends(get_session),
):
    fmt = parse_format(request.format)
    data = open_browser(db_name, settings, session).export(request.sql, fmt, table_name=request.table_name)
    filename = export_filename(fmt)
    return Response(
        content=data,
        media_type=CONTENT_TYPES[fmt],
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
