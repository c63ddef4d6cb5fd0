"""CLI for the shelfsync book catalogue (browse, edit, sync)."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Annotated, TypeVar

import typer
from loguru import logger

from shelfsync.config import REMOTE_URL, resolve_data_directory
from shelfsync.core.queue.offline_queue import OfflineQueue
from shelfsync.core.storage.local import SqliteLocalStorage
from shelfsync.core.tree.category_tree import render_forest
from shelfsync.errors import CatalogError
from shelfsync.logging_config import configure_logging
from shelfsync.lookup.isbn import IsbnLookup
from shelfsync.remote.http_store import DetachedStore, HttpDocumentStore
from shelfsync.session import Session

app = typer.Typer(help="shelfsync: an offline-tolerant book catalogue.")

T = TypeVar("T")

DB_FILENAME = "shelfsync.db"


@dataclass
class Settings:
    data_dir: Path
    remote: str

    @property
    def db_path(self) -> Path:
        return self.data_dir / DB_FILENAME


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    data_dir: Annotated[
        Path | None,
        typer.Option("--data-dir", "-d", help="Local storage directory"),
    ] = None,
    remote: Annotated[
        str | None,
        typer.Option("--remote", "-r", help="Remote store base URL (empty for local-only)"),
    ] = None,
) -> None:
    ctx.obj = Settings(
        data_dir=data_dir or resolve_data_directory(),
        remote=REMOTE_URL if remote is None else remote,
    )
    configure_logging(verbose=verbose, log_dir=ctx.obj.data_dir)


def _with_session(settings: Settings, action: Callable[[Session], Awaitable[T]]) -> T:
    """Run ``action`` inside a started session, mapping catalog errors to exit code 1."""

    async def run() -> T:
        storage = SqliteLocalStorage(settings.db_path)
        store = HttpDocumentStore(settings.remote) if settings.remote else DetachedStore()
        try:
            async with Session(store, storage, connect=bool(settings.remote)) as session:
                return await action(session)
        finally:
            await store.close()
            storage.close()

    try:
        return asyncio.run(run())
    except CatalogError as e:
        logger.error("{}", e)
        raise typer.Exit(1) from e


def _format_ms(value: int | None) -> str:
    if not value:
        return "never"
    return f"{datetime.fromtimestamp(value / 1000, tz=UTC):%Y-%m-%d %H:%M}"


@app.command()
def status(ctx: typer.Context) -> None:
    """Show connection state, pending operations and catalog size."""

    async def action(session: Session) -> None:
        state = session.engine.state
        typer.echo(f"Status: {state.status}")
        typer.echo(f"Remote: {ctx.obj.remote or '(local only)'}")
        typer.echo(f"Last synced: {_format_ms(state.last_synced_at)}")
        typer.echo(f"Pending operations: {len(session.queue)}")
        typer.echo(f"Books: {len(session.books)}  Categories: {len(session.categories)}")

    _with_session(ctx.obj, action)


@app.command()
def sync(ctx: typer.Context) -> None:
    """Connect to the remote store and replay pending offline operations."""
    if not ctx.obj.remote:
        logger.error("No remote store configured, use --remote or SHELFSYNC_REMOTE_URL")
        raise typer.Exit(1)

    async def action(session: Session) -> int:
        return len(session.queue)

    remaining = _with_session(ctx.obj, action)
    if remaining:
        typer.echo(f"{remaining} operations still pending.")
        raise typer.Exit(1)
    typer.echo("All changes synced.")


@app.command()
def queue(
    ctx: typer.Context,
    drop: Annotated[
        str | None,
        typer.Option("--drop", help="Discard the pending operation with this id"),
    ] = None,
) -> None:
    """List pending offline operations."""
    storage = SqliteLocalStorage(ctx.obj.db_path)
    try:
        pending = OfflineQueue(storage)
        if drop:
            if not pending.discard(drop):
                typer.echo(f"Operation '{drop}' not found.")
                raise typer.Exit(1)
            typer.echo(f"Dropped {drop}")
            return

        ops = pending.pending()
        typer.echo(f"{len(ops)} pending operations:\n")
        for op in ops:
            typer.echo(f"  {op.type:<6} {op.target_collection}/{op.target_id}  {op.payload}")
            typer.echo(f"    {_format_ms(op.enqueued_at)}  id={op.id}")
    finally:
        storage.close()


@app.command()
def tree(
    ctx: typer.Context,
    ids: bool = typer.Option(False, "--ids", help="Show category ids"),
) -> None:
    """Show the category tree."""

    async def action(session: Session) -> str:
        return render_forest(session.tree.build_forest(), show_ids=ids)

    typer.echo(_with_session(ctx.obj, action), nl=False)


@app.command()
def books(
    ctx: typer.Context,
    category: Annotated[
        str | None,
        typer.Option("--category", "-c", help="Only books in this category and its subcategories"),
    ] = None,
) -> None:
    """List books."""

    async def action(session: Session) -> list[str]:
        selected = session.books.all()
        if category:
            session.categories.require(category)
            ids = [category, *(d.id for d in session.tree.descendants_of(category))]
            selected = session.books.in_categories(ids)

        lines = [f"{len(selected)} books:\n"]
        for book in sorted(selected, key=lambda b: b.title.lower()):
            placed = session.categories.get(book.category)
            where = placed.path if placed else book.category
            lines.append(f"  {book.title} by {book.author}  [{where}]")
            lines.append(f"    id={book.id}" + (f"  isbn={book.isbn}" if book.isbn else ""))
        return lines

    for line in _with_session(ctx.obj, action):
        typer.echo(line)


@app.command(name="add-category")
def add_category(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Category name"),
    parent: Annotated[
        str | None,
        typer.Option("--parent", "-p", help="Parent category id"),
    ] = None,
    description: str = typer.Option("", "--description", help="Category description"),
) -> None:
    """Create a category."""

    async def action(session: Session) -> str:
        category = await session.service.add_category(name, parent, description=description)
        return f"Created {category.path}  id={category.id}"

    typer.echo(_with_session(ctx.obj, action))


@app.command(name="rename-category")
def rename_category(
    ctx: typer.Context,
    category_id: str = typer.Argument(..., help="Category id"),
    name: str = typer.Argument(..., help="New name"),
) -> None:
    """Rename a category; paths of its subcategories follow."""

    async def action(session: Session) -> str:
        category = await session.service.rename_category(category_id, name)
        return f"Renamed to {category.path}"

    typer.echo(_with_session(ctx.obj, action))


@app.command(name="move-category")
def move_category(
    ctx: typer.Context,
    category_id: str = typer.Argument(..., help="Category id"),
    parent: Annotated[
        str | None,
        typer.Option("--parent", "-p", help="New parent id (omit to move to the root)"),
    ] = None,
) -> None:
    """Move a category under another parent."""

    async def action(session: Session) -> str:
        category = await session.service.move_category(category_id, parent)
        return f"Moved to {category.path}"

    typer.echo(_with_session(ctx.obj, action))


@app.command(name="delete-category")
def delete_category(
    ctx: typer.Context,
    category_id: str = typer.Argument(..., help="Category id"),
) -> None:
    """Delete a category and its subcategories; their books become uncategorized."""

    async def action(session: Session) -> str:
        plan = await session.service.delete_category(category_id)
        return (
            f"Deleted {len(plan.category_ids)} categories, "
            f"moved {len(plan.book_ids)} books to Uncategorized"
        )

    typer.echo(_with_session(ctx.obj, action))


@app.command(name="add-book")
def add_book(
    ctx: typer.Context,
    title: str = typer.Argument(..., help="Book title"),
    author: str = typer.Argument(..., help="Author"),
    category: Annotated[
        str | None,
        typer.Option("--category", "-c", help="Category id"),
    ] = None,
    isbn: str = typer.Option("", "--isbn", help="ISBN"),
    cover: str = typer.Option("", "--cover", help="Cover image URL"),
    description: str = typer.Option("", "--description", help="Description"),
) -> None:
    """Add a book."""

    async def action(session: Session) -> str:
        book = await session.service.add_book(
            title, author, category=category, cover=cover, isbn=isbn, description=description
        )
        return f"Added {book.title!r}  id={book.id}"

    typer.echo(_with_session(ctx.obj, action))


@app.command(name="delete-book")
def delete_book(
    ctx: typer.Context,
    book_id: str = typer.Argument(..., help="Book id"),
) -> None:
    """Delete a book."""

    async def action(session: Session) -> None:
        await session.service.delete_book(book_id)

    _with_session(ctx.obj, action)
    typer.echo(f"Deleted {book_id}")


@app.command()
def lookup(
    ctx: typer.Context,
    isbn: str = typer.Argument(..., help="ISBN-10 or ISBN-13"),
    add: bool = typer.Option(False, "--add", "-a", help="Add the book to the catalogue"),
    category: Annotated[
        str | None,
        typer.Option("--category", "-c", help="Category id for --add"),
    ] = None,
) -> None:
    """Look up book details by ISBN."""
    try:
        metadata = IsbnLookup().lookup(isbn)
    except CatalogError as e:
        logger.error("{}", e)
        raise typer.Exit(1) from e

    if metadata is None:
        typer.echo(f"No book found for ISBN {isbn}.")
        raise typer.Exit(1)

    typer.echo(f"{metadata.title} by {metadata.author}")
    if metadata.published_date:
        typer.echo(f"  published {metadata.published_date}")
    if metadata.page_count:
        typer.echo(f"  {metadata.page_count} pages")
    if metadata.cover:
        typer.echo(f"  cover {metadata.cover}")

    if not add:
        return
    found = metadata

    async def action(session: Session) -> str:
        book = await session.service.add_book(
            found.title,
            found.author,
            category=category,
            cover=found.cover or "",
            isbn=found.isbn,
            description=found.description,
        )
        return f"Added {book.title!r}  id={book.id}"

    typer.echo(_with_session(ctx.obj, action))
