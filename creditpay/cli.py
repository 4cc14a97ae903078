"""
CLI entry point for CreditPay.
"""

import asyncio
from typing import Optional

import structlog
import typer

from .config import get_settings
from .errors import CreditPayError
from .registry import build_adapter
from .services import build_engine

# Configure structlog
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ]
)

app = typer.Typer(
    name="creditpay",
    help="CreditPay: crypto-funded prepaid credits",
    add_completion=False,
)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default: HOST)"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port (default: PORT)"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
) -> None:
    """
    Start the HTTP API.
    """
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "creditpay.main:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload or settings.debug,
    )


@app.command()
def derive(
    identifier: str = typer.Argument(..., help="Payment token or customer identifier"),
    chain: str = typer.Option("bitcoin", "--chain", "-c", help="bitcoin, polygon, ethereum or solana"),
) -> None:
    """
    Show the deposit address derived for an identifier.

    Uses PAYMENT_MASTER_SECRET / BITCOIN_XPUB from the environment. Nothing is
    written anywhere; the same inputs always print the same address.
    """
    settings = get_settings()
    try:
        engine = build_engine(settings.model_copy(update={"address_cache": "memory"}))
        derived = engine.address_for_customer(identifier, chain)
    except CreditPayError as e:
        typer.echo(f"Error: {e.message}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"Chain:   {derived.chain}")
    typer.echo(f"Address: {derived.address}")
    if derived.index is not None:
        typer.echo(f"Path:    xpub/0/{derived.index}")


@app.command()
def status(
    address: str = typer.Argument(..., help="Deposit address to check"),
    required: int = typer.Argument(..., help="Required amount in smallest units (sats or 6-decimal USDC)"),
    chain: str = typer.Option("bitcoin", "--chain", "-c", help="bitcoin, polygon, ethereum or solana"),
) -> None:
    """
    Check an address against a required amount (read-only, no database).
    """
    settings = get_settings()

    async def _check() -> None:
        adapter = build_adapter(chain, settings)
        try:
            result = await adapter.check_status(address, required)
        finally:
            await adapter.close()

        typer.echo(f"Chain:          {result.chain}")
        typer.echo(f"Required:       {result.required_amount}")
        typer.echo(f"Received:       {result.total_received} ({result.percent_paid}%)")
        typer.echo(f"Confirmed:      {result.confirmed_received}")
        typer.echo(f"Confirmations:  {result.confirmations}/{result.required_confirmations}")
        typer.echo(f"Paid:           {'yes' if result.is_paid else 'no'}")
        typer.echo(f"Confirmed:      {'yes' if result.is_confirmed else 'no'}")
        for tx in result.transactions:
            typer.echo(f"  {tx.tx_hash}  {tx.amount}  confirmations={tx.confirmations}")

    try:
        asyncio.run(_check())
    except CreditPayError as e:
        typer.echo(f"Error: {e.message}", err=True)
        raise typer.Exit(code=1)


@app.command()
def version() -> None:
    """Show the CreditPay version."""
    from creditpay import __version__
    typer.echo(f"creditpay v{__version__}")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
