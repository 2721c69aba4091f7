"""
Galerie CLI - Command Line Interface for the marketplace engine

Main entry point for all CLI commands.
"""

import json
import click
from pathlib import Path

from galerie import __version__
from galerie.utils.logger import setup_logging


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--env-file", default=None, help="dotenv file with GALERIE_* settings")
@click.version_option(version=__version__)
@click.pass_context
def cli(ctx, debug, env_file):
    """Galerie - single-unit collectible marketplace engine"""
    import logging
    from galerie.core.config import load_config

    level = logging.DEBUG if debug else logging.INFO
    setup_logging(level=level)

    ctx.ensure_object(dict)
    ctx.obj["config"] = load_config(env_file)


# =============================================================================
# Validation Commands
# =============================================================================


@cli.command("validate-code")
@click.argument("raw")
@click.pass_context
def validate_code(ctx, raw):
    """Normalize and validate an asset code"""
    from galerie.utils.validation import asset_code_class, check_asset_code

    result = check_asset_code(raw, ctx.obj["config"].native_code)
    if not result.is_valid:
        click.echo(f"✗ {raw!r}: {result.reason}")
        ctx.exit(1)
    click.echo(f"✓ {result.value} ({asset_code_class(result.value)})")


@cli.command("validate-price")
@click.argument("raw")
@click.pass_context
def validate_price(ctx, raw):
    """Validate and canonicalize a price"""
    from galerie.utils.validation import check_price

    result = check_price(raw)
    if not result.is_valid:
        click.echo(f"✗ {raw!r}: {result.reason}")
        ctx.exit(1)
    click.echo(f"✓ {result.value}")


# =============================================================================
# Store Commands
# =============================================================================


@cli.group()
@click.option("--db", default=None, help="SQLite pin store path (default: <data_dir>/pins.db)")
@click.pass_context
def store(ctx, db):
    """Local pin store commands"""
    from galerie.core.store import SQLiteContentStore

    path = Path(db).expanduser() if db else ctx.obj["config"].data_dir / "pins.db"
    ctx.obj["store"] = SQLiteContentStore(path)


@store.command("list")
@click.option("--all", "include_unpinned", is_flag=True, help="Include unpinned documents")
@click.option("--limit", default=20, help="Maximum rows")
@click.pass_context
def store_list(ctx, include_unpinned, limit):
    """List pinned documents, newest first"""
    pins = ctx.obj["store"].list_pins(include_unpinned=include_unpinned, limit=limit)
    if not pins:
        click.echo("No documents pinned.")
        return
    for pin in pins:
        marker = " " if pin["pinned"] else "-"
        tags = ", ".join(f"{k}={v}" for k, v in pin["tags"].items())
        click.echo(f" {marker} {pin['content_id'][:16]}...  {tags}")
    click.echo(f"  {ctx.obj['store'].stats()}")


@store.command("find")
@click.option("--tag", "tags", multiple=True, help="name=value (repeatable)")
@click.option("--show", is_flag=True, help="Print document contents")
@click.pass_context
def store_find(ctx, tags, show):
    """Find pinned documents by tags"""
    query = {}
    for tag in tags:
        name, sep, value = tag.partition("=")
        if not sep:
            raise click.BadParameter(f"expected name=value, got {tag!r}", param_hint="--tag")
        query[name] = value

    content_store = ctx.obj["store"]
    ids = content_store.find(query)
    click.echo(f"{len(ids)} match(es)")
    for content_id in ids:
        click.echo(f"  {content_id}")
        if show:
            click.echo(json.dumps(content_store.get(content_id), indent=2, sort_keys=True))


# =============================================================================
# Demo Command
# =============================================================================


@cli.command("demo")
@click.option("--duration", default=3600, help="Auction duration in seconds")
@click.pass_context
def demo(ctx, duration):
    """Run a simulated marketplace session end to end"""
    from dataclasses import replace
    import time
    from galerie.core.ledger import InMemoryLedger, SimulatedSigner
    from galerie.core.market import ListingKind, MarketplaceService
    from galerie.core.store import InMemoryContentStore
    from galerie.crypto import random_address

    click.echo("=" * 60)
    click.echo("  GALERIE - MARKETPLACE DEMO")
    click.echo("=" * 60)
    click.echo()

    clock = {"now": int(time.time())}
    ledger = InMemoryLedger(clock=lambda: clock["now"], native_code=ctx.obj["config"].native_code)
    creator, collector, rival, escrow = (random_address() for _ in range(4))
    for address in (creator, collector, rival, escrow):
        ledger.create_account(address, 1000)
    config = replace(ctx.obj["config"], escrow_account=escrow)
    market = MarketplaceService(ledger, SimulatedSigner(ledger), config, InMemoryContentStore())

    click.echo("📦 Accounts funded with 1000 each (creator, collector, rival, escrow)")
    click.echo()

    # Fixed price
    click.echo("🎨 Creator issues and lists a collectible at 5.5...")
    token, settlement = market.issue_token("sunset-01", creator, name="Sunset #1", image="ipfs://sunset-01")
    click.echo(f"  ✓ Issued {token.code} ({settlement.reference[:16]}...)")
    market.list_token(token, creator, ListingKind.FIXED_PRICE, "5.5")
    listing = market.get_listing(token, creator)
    click.echo(f"  ✓ Listed: {listing.kind.value} at {listing.price}, verified={listing.verified}")
    market.buy(token, collector, "5.5")
    click.echo(f"  ✓ Collector bought it, sold={market.is_sold(token, creator)}")
    click.echo()

    # Timed auction
    click.echo("⏱️  Creator auctions a second collectible...")
    lot, _ = market.issue_token("dawn-02", creator, name="Dawn #2", image="ipfs://dawn-02")
    market.list_token(lot, creator, ListingKind.TIMED_AUCTION, "2", end_time=clock["now"] + duration)
    market.place_bid(lot, collector, "10")
    market.place_bid(lot, rival, "15")
    for bid in market.get_bids(lot):
        click.echo(f"  • {bid.bidder[:8]}... bid {bid.price} ({bid.origin.value})")

    result = market.check_and_finalize_auction(lot, creator)
    click.echo(f"  ✓ Before deadline: {result.status.value}, {result.time_remaining}s remaining")

    clock["now"] += duration
    result = market.check_and_finalize_auction(lot, creator)
    click.echo(f"  ✓ After deadline: {result.status.value}, winner {result.winner[:8]}... at {result.amount}")
    again = market.check_and_finalize_auction(lot, creator)
    click.echo(f"  ✓ Re-check is a no-op: {again.status.value} (already_final={again.already_final})")
    click.echo()

    click.echo("📊 Ledger statistics:")
    click.echo(f"  {ledger.stats()}")


if __name__ == "__main__":
    cli()
