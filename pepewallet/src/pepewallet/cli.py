"""
Pepecoin wallet CLI - generate phrases, derive addresses, sign messages and
build unsigned payments.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import typer
from loguru import logger
from pepecore.constants import DEFAULT_FEE_RATE, SATOSHIS_PER_COIN

from pepewallet.backends.mypepe import DEFAULT_INDEXER_URL

app = typer.Typer(
    name="pepe-wallet",
    help="Pepecoin Wallet Tools",
    add_completion=False,
)


def setup_logging(level: str = "INFO") -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def _load_mnemonic(mnemonic: str | None, mnemonic_file: Path | None) -> str:
    from pepewallet.wallet.keys import KeyFormatError, validate_phrase

    if mnemonic_file:
        if not mnemonic_file.exists():
            logger.error(f"Mnemonic file not found: {mnemonic_file}")
            raise typer.Exit(1)
        mnemonic = mnemonic_file.read_text().strip()

    if not mnemonic:
        logger.error("Mnemonic required. Use --mnemonic, --mnemonic-file, or MNEMONIC env var")
        raise typer.Exit(1)

    try:
        return validate_phrase(mnemonic)
    except KeyFormatError as e:
        logger.error(str(e))
        raise typer.Exit(1)


@app.command()
def generate(
    word_count: int = typer.Option(12, "--words", "-w", help="Number of words (12 or 24)"),
    log_level: str = typer.Option("INFO", "--log-level", "-l"),
) -> None:
    """Generate a new BIP39 mnemonic phrase."""
    from pepewallet.wallet.keys import generate_phrase

    setup_logging(log_level)

    if word_count not in (12, 24):
        logger.error(f"Unsupported word count: {word_count}")
        raise typer.Exit(1)

    mnemonic = generate_phrase(strength=128 if word_count == 12 else 256)

    typer.echo("\n" + "=" * 80)
    typer.echo("GENERATED MNEMONIC - WRITE THIS DOWN AND KEEP IT SAFE!")
    typer.echo("=" * 80)
    typer.echo(f"\n{mnemonic}\n")
    typer.echo("=" * 80)
    typer.echo("\nAnyone with this phrase can spend your coins.")
    typer.echo("=" * 80 + "\n")


@app.command()
def addresses(
    mnemonic: str = typer.Option(None, "--mnemonic", envvar="MNEMONIC", help="BIP39 mnemonic"),
    mnemonic_file: Path | None = typer.Option(
        None, "--mnemonic-file", "-f", help="Path to mnemonic file"
    ),
    count: int = typer.Option(5, "--count", "-c", min=1, help="Number of addresses"),
    log_level: str = typer.Option("INFO", "--log-level", "-l"),
) -> None:
    """Derive the first receive addresses of a wallet."""
    from pepewallet.wallet.keys import generate_address, generate_child, generate_root

    setup_logging(log_level)
    phrase = _load_mnemonic(mnemonic, mnemonic_file)

    root = generate_root(phrase)
    for index in range(count):
        child = generate_child(root, index)
        typer.echo(f"{index:>4}  {generate_address(child)}")


@app.command()
def sign_message(
    message: str = typer.Argument(..., help="Message to sign"),
    mnemonic: str = typer.Option(None, "--mnemonic", envvar="MNEMONIC", help="BIP39 mnemonic"),
    mnemonic_file: Path | None = typer.Option(
        None, "--mnemonic-file", "-f", help="Path to mnemonic file"
    ),
    index: int = typer.Option(0, "--index", "-i", min=0, help="Address index"),
    log_level: str = typer.Option("INFO", "--log-level", "-l"),
) -> None:
    """Sign a message with the key at an address index."""
    from pepewallet.wallet.keys import generate_address, generate_child, generate_root, to_wif
    from pepewallet.wallet.signing import sign_message as sign

    setup_logging(log_level)
    phrase = _load_mnemonic(mnemonic, mnemonic_file)

    child = generate_child(generate_root(phrase), index)
    typer.echo(f"Address:   {generate_address(child)}")
    typer.echo(f"Signature: {sign(message, to_wif(child))}")


@app.command()
def build_tx(
    sender: str = typer.Option(..., "--from", help="Sender address"),
    recipient: str = typer.Option(..., "--to", help="Recipient address"),
    amount: int = typer.Option(..., "--amount", "-a", min=1, help="Amount in smallest units"),
    indexer_url: str = typer.Option(
        DEFAULT_INDEXER_URL, "--indexer-url", envvar="PEPE_INDEXER_URL", help="Indexer URL"
    ),
    fee_rate: int = typer.Option(
        DEFAULT_FEE_RATE, "--fee-rate", envvar="PEPE_FEE_RATE", min=1, help="Units per byte"
    ),
    log_level: str = typer.Option("INFO", "--log-level", "-l"),
) -> None:
    """Fetch UTXOs and print an unsigned payment transaction."""
    setup_logging(log_level)
    asyncio.run(_build_tx(sender, recipient, amount, indexer_url, fee_rate))


async def _build_tx(
    sender: str, recipient: str, amount: int, indexer_url: str, fee_rate: int
) -> None:
    """Build tx implementation."""
    from pepewallet.backends.mypepe import MyPepeBackend
    from pepewallet.wallet.tx_builder import (
        FeePolicy,
        InsufficientFundsError,
        build_unsigned_transaction,
    )

    backend = MyPepeBackend(base_url=indexer_url)

    try:
        utxos = await backend.get_utxos(sender)
        built = build_unsigned_transaction(
            sender, recipient, amount, utxos, FeePolicy(fee_rate=fee_rate)
        )
    except InsufficientFundsError as e:
        logger.error(str(e))
        raise typer.Exit(1)
    except ValueError as e:
        logger.error(f"Invalid transaction: {e}")
        raise typer.Exit(1)
    finally:
        await backend.close()

    coins = built.actual_amount / SATOSHIS_PER_COIN
    typer.echo(f"\nInputs: {len(built.inputs)}  ({built.total_input:,} units)")
    typer.echo(f"Amount: {built.actual_amount:,} ({coins:.8f} PEPE)")
    typer.echo(f"Fee:    {built.fee:,}")
    typer.echo(f"Change: {built.change:,}")
    typer.echo(f"\n{built.raw_transaction}\n")


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
