import asyncio
import logging
from logging.handlers import RotatingFileHandler
from typing import Annotated, Optional
import os
import typer

from lotwatch import db
from lotwatch.fetchers.auctivo import supports
from lotwatch.settings import load_settings
from lotwatch.tracker import Tracker

if os.getenv("DEBUG_CLI", "0") == "1":
    import debugpy

    debugpy.listen(("0.0.0.0", 5679))
    if os.getenv("DEBUGPY_WAIT", "0") == "1":
        debugpy.wait_for_client()


# ---------------------------------------------------------------------------
# Global logging configuration - set once at import time
# ---------------------------------------------------------------------------
LOG_LEVEL = logging.DEBUG if os.getenv("LOTWATCH_DEBUG", "0") == "1" else logging.INFO
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s -- %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
file_handler = RotatingFileHandler(
    "./lotwatch.log", maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"
)
file_handler.setLevel(LOG_LEVEL)
file_handler.setFormatter(
    logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s -- %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
)

root = logging.getLogger()  # root logger
root.addHandler(file_handler)


app = typer.Typer(help="lotwatch CLI")


def _store():
    settings = load_settings()
    db.configure(settings.storage.database)
    return settings


async def _run() -> None:
    settings = _store()
    tracker = Tracker(settings)
    tracker.start()
    tracker.enable_backups()
    print("lotwatch started – Ctrl+C to quit")
    try:
        await asyncio.Event().wait()
    finally:
        tracker.shutdown()


@app.command()
def start():
    """Run the poller without the HTTP API."""
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        pass


@app.command()
def serve(
    host: Annotated[str, typer.Option("--host")] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port", "-p")] = 3000,
):
    """Run the poller behind the JSON/SSE API."""
    import uvicorn

    uvicorn.run("lotwatch.web.app:app", host=host, port=port)


@app.command()
def add(
    url: str,
    name: Annotated[
        Optional[str], typer.Option("--name", "-n", help="Display name.")
    ] = None,
):
    """Register a lot; a running poller picks it up on its next start."""
    if not supports(url):
        typer.echo(f"unsupported auction site: {url}", err=True)
        raise typer.Exit(1)
    _store()
    listing = db.listing_add(url, display_name=name)
    typer.echo(listing.id)


@app.command()
def rm(listing_id: str):
    """Remove a lot together with its history."""
    _store()
    if not db.listing_remove(listing_id):
        typer.echo(f"unknown listing {listing_id}", err=True)
        raise typer.Exit(1)


@app.command()
def ls():
    """Show tracked lots."""
    _store()
    for l in db.listing_list():
        price = f"€ {l.current_price:,.2f}" if l.current_price is not None else "—"
        ends = f"{l.ends_at:%Y-%m-%d %H:%M}" if l.ends_at else "—"
        name = l.display_name or l.title
        print(f"{l.id} | {name[:40]:40} | {price:>12} | {ends}")


@app.command()
def history(
    listing_id: str,
    limit: Annotated[
        int, typer.Option("--limit", "-n", help="Number of bids to show.")
    ] = 20,
):
    """Show the canonical bid history of one lot, newest first."""
    _store()
    listing = db.listing_get(listing_id)
    if listing is None:
        typer.echo(f"unknown listing {listing_id}", err=True)
        raise typer.Exit(1)
    for b in listing.recent_bids(limit):
        when = (
            f"{b.time_iso:%Y-%m-%d %H:%M:%S}"
            if b.time_iso
            else (b.date_iso.isoformat() if b.date_iso else "?")
        )
        print(f"{when:19} | € {b.amount:>10,.2f} | {b.source.value}")


@app.command()
def backup():
    """Snapshot the database into the backup directory."""
    settings = _store()
    path = db.backup_database(settings.storage.backup_dir, "manual")
    db.prune_backups(settings.storage.backup_dir, settings.storage.backup_retention_days)
    typer.echo(str(path) if path else "nothing to back up")


if __name__ == "__main__":
    app()
