#!/usr/bin/env python3
"""
Gall3ry CLI entrypoint
"""

import asyncio
import json
from typing import Awaitable, Callable, Optional, TypeVar

import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from gall3ry import Chain, NftQueryOptions
from gall3ry.config import config, setup_logging
from gall3ry.errors import GalleryError
from gall3ry.filters import FilterOptions, SortOptions
from gall3ry.models import SortKey
from gall3ry.services import Services, build_services
from gall3ry.utils import parse_chains

app = typer.Typer(help="Gall3ry - Farcaster NFT aggregation and collection friends")
console = Console()

T = TypeVar("T")


def _short(value: Optional[str], width: int = 20) -> str:
    value = value or ""
    return value[:width] + "..." if len(value) > width else value


def run_with_services(description: str, call: Callable[[Services], Awaitable[T]]) -> T:
    """Run one service call with a spinner; errors exit with status 1"""

    async def runner() -> T:
        services = build_services(config)
        try:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
            ) as progress:
                task = progress.add_task(description, total=None)
                result = await call(services)
                progress.update(task, completed=True)
            return result
        finally:
            await services.close()

    try:
        return asyncio.run(runner())
    except GalleryError as e:
        console.print(f"[bold red]{e.kind}[/bold red]: {e.message}")
        raise typer.Exit(code=1)


@app.callback()
def main():
    setup_logging(config)


@app.command()
def identity(
    username_or_fid: str = typer.Argument(..., help="Farcaster username or FID"),
):
    """Resolve a username or FID to its addresses"""
    result = run_with_services(
        f"Resolving {username_or_fid}...",
        lambda services: services.aggregator.resolve_identity(username_or_fid),
    )

    table = Table(title=f"@{result.username} (fid {result.fid})")
    table.add_column("Address", style="cyan")
    table.add_column("Origin", style="magenta")
    for address in result.addresses():
        table.add_row(address.value, address.origin.value)
    console.print(table)


@app.command()
def search(
    query: str = typer.Argument(..., help="Username or display-name prefix"),
    limit: int = typer.Option(5, help="Maximum matches (1-10)"),
):
    """Search Farcaster profiles by name"""
    users = run_with_services(
        f"Searching for {query}...",
        lambda services: services.aggregator.search_users(query, limit),
    )

    if not users:
        console.print("[yellow]No matching users[/yellow]")
        return
    table = Table(title=f"Users matching {query!r}")
    table.add_column("Username", style="cyan")
    table.add_column("FID", style="yellow")
    table.add_column("Display name", style="white")
    for user in users:
        table.add_row(user.username or "-", str(user.fid), user.display_name or "")
    console.print(table)


@app.command()
def nfts(
    username_or_fid: str = typer.Argument(..., help="Farcaster username or FID"),
    chains: str = typer.Option("all", help="Comma-separated chains (eth,base,polygon,...) or all"),
    sort: SortKey = typer.Option(SortKey.COLLECTION, help="Sort key"),
    descending: Optional[bool] = typer.Option(None, "--desc/--asc", help="Sort direction"),
    query: Optional[str] = typer.Option(None, "--query", "-q", help="Text filter"),
    exclude_spam: bool = typer.Option(True, "--exclude-spam/--include-spam", help="Drop spam NFTs"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Output file (JSON)"),
):
    """Aggregate every NFT held by an identity's wallets"""
    options = NftQueryOptions(
        chains=parse_chains(chains, config.default_chains),
        exclude_spam=exclude_spam,
        filters=FilterOptions(query=query),
        sort=SortOptions(key=sort, descending=descending),
    )
    page = run_with_services(
        f"Fetching NFTs for {username_or_fid}...",
        lambda services: services.aggregator.get_nfts_for_identity(username_or_fid, options),
    )

    console.print(f"\n[bold green]Found {len(page.items)} NFTs[/bold green]")
    if page.diagnostics and page.diagnostics.partial:
        console.print(f"[yellow]Partial result: {len(page.diagnostics.failures)} wallet fetch(es) failed[/yellow]")

    if page.items:
        table = Table(title=f"NFTs for {username_or_fid}")
        table.add_column("Chain", style="cyan")
        table.add_column("Collection", style="magenta")
        table.add_column("Token ID", style="yellow")
        table.add_column("Name", style="white")
        table.add_column("Floor (USD)", style="green")

        for nft in page.items[:20]:
            table.add_row(
                nft.chain.value,
                nft.collection.name,
                _short(nft.token_id),
                nft.title or "Unnamed",
                f"{nft.floor_price_usd:.2f}" if nft.floor_price_usd is not None else "-",
            )
        console.print(table)

        if len(page.items) > 20:
            console.print(f"\n[dim]... and {len(page.items) - 20} more[/dim]")
    if page.has_more:
        console.print("[dim]More results are available upstream[/dim]")

    if output:
        with open(output, "w") as f:
            json.dump(page.to_json(), f, indent=2)
        console.print(f"\n[green]Saved to {output}[/green]")


@app.command()
def friends(
    contract: str = typer.Argument(..., help="Collection contract address"),
    viewer_fid: int = typer.Argument(..., help="FID whose follow list is checked"),
    chain: str = typer.Option("eth", help="Chain of the collection"),
    limit: int = typer.Option(50, help="Maximum friends to show"),
):
    """List followed accounts that hold a collection"""
    chain_enum = Chain.from_string(chain)
    result = run_with_services(
        f"Checking holders of {contract}...",
        lambda services: services.friends.get_collection_friends(contract, chain_enum, viewer_fid, limit=limit),
    )

    if result.diagnostics and result.diagnostics.code:
        console.print(f"[yellow]{result.diagnostics.code}[/yellow]")
    console.print(f"\n[bold green]{result.total} followed account(s) hold this collection[/bold green]")

    if result.friends:
        table = Table(title=f"Friends holding {_short(contract)}")
        table.add_column("Username", style="cyan")
        table.add_column("FID", style="yellow")
        table.add_column("Holding", style="green")
        table.add_column("Addresses", style="white")
        for profile in result.friends:
            table.add_row(
                profile.username,
                str(profile.fid),
                str(profile.holding_count),
                ", ".join(_short(a, 12) for a in profile.addresses),
            )
        console.print(table)


@app.command()
def serve(
    port: int = typer.Option(8000, "--port", "-p", help="Port to run the gateway on"),
    host: str = typer.Option("0.0.0.0", "--host", "-h", help="Host to bind to"),
):
    """Start the HTTP gateway"""
    import uvicorn
    from gall3ry.gateway import app as gateway_app

    console.print(f"[bold green]Starting gateway on {host}:{port}[/bold green]")
    console.print("[dim]Endpoints:[/dim]")
    console.print("  POST /api/identity")
    console.print("  GET  /api/user-search")
    console.print("  GET  /api/nfts")
    console.print("  GET  /api/collection-friends")
    console.print("  GET  /api/collection-holders")
    console.print("  GET  /api/check-spam")
    console.print("  GET  /api/image-proxy")
    console.print("  GET  /health")

    uvicorn.run(gateway_app, host=host, port=port)


if __name__ == "__main__":
    app()
