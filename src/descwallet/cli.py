"""
descwallet CLI - Inspect, sync and spend from a descriptor wallet.

Wallet options can also be set through DESCWALLET_* environment variables
(or a .env file), e.g. DESCWALLET_DESCRIPTOR and
DESCWALLET_BLOCKCHAIN__BASE_URL.
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import typer
from loguru import logger
from pydantic import ValidationError

from descwallet.config import (
    ElectrumConfig,
    EsploraConfig,
    SqliteConfig,
    WalletSettings,
)
from descwallet.errors import WalletError
from descwallet.models import AddressIndex, Confirmed
from descwallet.wallet.psbt import PSBT
from descwallet.wallet.service import Wallet

app = typer.Typer(
    name="descwallet",
    help="Descriptor-based Bitcoin wallet",
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


def _load_settings(
    descriptor: str | None,
    change_descriptor: str | None,
    network: str | None,
    esplora_url: str | None,
    electrum_url: str | None,
    database: Path | None,
) -> WalletSettings:
    overrides: dict[str, Any] = {}
    if descriptor:
        overrides["descriptor"] = descriptor
    if change_descriptor:
        overrides["change_descriptor"] = change_descriptor
    if network:
        overrides["network"] = network
    if esplora_url and electrum_url:
        logger.error("Use either --esplora-url or --electrum-url, not both")
        raise typer.Exit(1)
    if esplora_url:
        overrides["blockchain"] = EsploraConfig(base_url=esplora_url)
    if electrum_url:
        overrides["blockchain"] = ElectrumConfig(url=electrum_url)
    if database:
        overrides["database"] = SqliteConfig(path=str(database))

    try:
        settings = WalletSettings(**overrides)
    except ValidationError as e:
        logger.error(f"Invalid configuration: {e}")
        raise typer.Exit(1) from e
    if not settings.descriptor:
        logger.error("Descriptor required. Use --descriptor or DESCWALLET_DESCRIPTOR env var")
        raise typer.Exit(1)
    return settings


def _open_wallet(settings: WalletSettings, need_backend: bool = False) -> Wallet:
    try:
        wallet = Wallet.from_settings(settings)
    except WalletError as e:
        logger.error(str(e))
        raise typer.Exit(1) from e
    if need_backend and wallet.backend is None:
        logger.error("A blockchain backend is required: use --esplora-url or --electrum-url")
        raise typer.Exit(1)
    return wallet


def _parse_recipient(value: str) -> tuple[str, int]:
    address, sep, amount = value.rpartition(":")
    if not sep or not amount.isdigit():
        raise typer.BadParameter(f"Expected ADDRESS:SATS, got {value!r}")
    return address, int(amount)


DescriptorOpt = typer.Option(None, "--descriptor", "-d", help="External descriptor")
ChangeDescriptorOpt = typer.Option(None, "--change-descriptor", "-c", help="Change descriptor")
NetworkOpt = typer.Option(None, "--network", "-n", help="bitcoin, testnet, signet or regtest")
EsploraOpt = typer.Option(None, "--esplora-url", help="Esplora API base URL")
ElectrumOpt = typer.Option(None, "--electrum-url", help="Electrum server, ssl://host:port")
DatabaseOpt = typer.Option(None, "--database", help="SQLite file to persist the wallet in")
LogLevelOpt = typer.Option("INFO", "--log-level", "-l")


@app.command()
def info(
    descriptor: str | None = DescriptorOpt,
    change_descriptor: str | None = ChangeDescriptorOpt,
    network: str | None = NetworkOpt,
    esplora_url: str | None = EsploraOpt,
    electrum_url: str | None = ElectrumOpt,
    database: Path | None = DatabaseOpt,
    log_level: str = LogLevelOpt,
) -> None:
    """Sync the wallet and show balances and recent transactions."""
    setup_logging(log_level)
    settings = _load_settings(
        descriptor, change_descriptor, network, esplora_url, electrum_url, database
    )
    wallet = _open_wallet(settings, need_backend=True)
    asyncio.run(_show_info(wallet))


async def _show_info(wallet: Wallet) -> None:
    try:
        await wallet.sync(
            progress=lambda percent, message: logger.debug(f"Sync {percent:.0f}%: {message}")
        )
        balance = wallet.get_balance()
        print(f"\nTotal Balance: {balance.total:,} sats ({balance.total / 1e8:.8f} BTC)")
        print(f"  Confirmed:   {balance.confirmed:>15,} sats")
        print(f"  Unconfirmed: {balance.unconfirmed:>15,} sats")
        print(f"\nReceive address: {wallet.get_address(AddressIndex.LAST_UNUSED).address}")

        transactions = wallet.list_transactions()
        if transactions:
            print(f"\nTransactions ({len(transactions)}):")
        for status in transactions:
            details = status.details
            if isinstance(status, Confirmed):
                state = f"height {status.confirmation_time.height}"
            else:
                state = "unconfirmed"
            net = details.received - details.sent
            print(f"  {details.txid}  {net:>+15,} sats  {state}")
    except WalletError as e:
        logger.error(str(e))
        raise typer.Exit(1) from e
    finally:
        await wallet.close()


@app.command()
def address(
    descriptor: str | None = DescriptorOpt,
    change_descriptor: str | None = ChangeDescriptorOpt,
    network: str | None = NetworkOpt,
    database: Path | None = DatabaseOpt,
    new: bool = typer.Option(False, "--new", help="Always reveal a new address"),
    change: bool = typer.Option(False, "--change", help="Use the change keychain"),
    log_level: str = LogLevelOpt,
) -> None:
    """Show a receive (or change) address."""
    setup_logging(log_level)
    settings = _load_settings(descriptor, change_descriptor, network, None, None, database)
    settings.blockchain = None
    wallet = _open_wallet(settings)
    strategy = AddressIndex.NEW if new else AddressIndex.LAST_UNUSED
    try:
        if change:
            address_info = wallet.get_internal_address(strategy)
        else:
            address_info = wallet.get_address(strategy)
        print(f"{address_info.address}  (index {address_info.index})")
    finally:
        asyncio.run(wallet.close())


@app.command()
def list_unspent(
    descriptor: str | None = DescriptorOpt,
    change_descriptor: str | None = ChangeDescriptorOpt,
    network: str | None = NetworkOpt,
    esplora_url: str | None = EsploraOpt,
    electrum_url: str | None = ElectrumOpt,
    database: Path | None = DatabaseOpt,
    log_level: str = LogLevelOpt,
) -> None:
    """Sync the wallet and list its unspent outputs."""
    setup_logging(log_level)
    settings = _load_settings(
        descriptor, change_descriptor, network, esplora_url, electrum_url, database
    )
    wallet = _open_wallet(settings, need_backend=True)
    asyncio.run(_list_unspent(wallet))


async def _list_unspent(wallet: Wallet) -> None:
    try:
        await wallet.sync()
        utxos = wallet.list_unspent()
        if not utxos:
            print("\nNo unspent outputs.")
            return
        print(f"\nFound {len(utxos)} unspent output(s):\n")
        for utxo in utxos:
            print(f"  {utxo.outpoint}  {utxo.value:>15,} sats  {utxo.keychain.value}")
    except WalletError as e:
        logger.error(str(e))
        raise typer.Exit(1) from e
    finally:
        await wallet.close()


@app.command()
def send(
    to: list[str] = typer.Option(..., "--to", "-t", help="Recipient as ADDRESS:SATS"),
    fee_rate: float | None = typer.Option(None, "--fee-rate", "-f", help="sat/vB"),
    rbf: bool = typer.Option(True, "--rbf/--no-rbf", help="Signal replaceability"),
    broadcast: bool = typer.Option(False, "--broadcast", help="Broadcast after signing"),
    descriptor: str | None = DescriptorOpt,
    change_descriptor: str | None = ChangeDescriptorOpt,
    network: str | None = NetworkOpt,
    esplora_url: str | None = EsploraOpt,
    electrum_url: str | None = ElectrumOpt,
    database: Path | None = DatabaseOpt,
    log_level: str = LogLevelOpt,
) -> None:
    """Build and sign a payment; print the PSBT or broadcast it."""
    setup_logging(log_level)
    recipients = [_parse_recipient(value) for value in to]
    settings = _load_settings(
        descriptor, change_descriptor, network, esplora_url, electrum_url, database
    )
    wallet = _open_wallet(settings, need_backend=True)
    asyncio.run(_send(wallet, recipients, fee_rate, rbf, broadcast))


async def _send(
    wallet: Wallet,
    recipients: list[tuple[str, int]],
    fee_rate: float | None,
    rbf: bool,
    broadcast: bool,
) -> None:
    try:
        await wallet.sync()
        if fee_rate is None:
            fee_rate = await wallet.backend.estimate_fee(6)
            logger.info(f"Using estimated fee rate {fee_rate:.1f} sat/vB")

        builder = wallet.build_tx().set_recipients(recipients).fee_rate(fee_rate)
        if rbf:
            builder.enable_rbf()
        result = builder.finish(wallet)
        await _sign_and_output(wallet, result.psbt, broadcast)
    except WalletError as e:
        logger.error(str(e))
        raise typer.Exit(1) from e
    finally:
        await wallet.close()


@app.command()
def bump_fee(
    txid: str = typer.Argument(..., help="Transaction to replace"),
    fee_rate: float = typer.Option(..., "--fee-rate", "-f", help="New fee rate in sat/vB"),
    shrink: str | None = typer.Option(
        None, "--shrink", help="Take the extra fee from this output address"
    ),
    broadcast: bool = typer.Option(False, "--broadcast", help="Broadcast after signing"),
    descriptor: str | None = DescriptorOpt,
    change_descriptor: str | None = ChangeDescriptorOpt,
    network: str | None = NetworkOpt,
    esplora_url: str | None = EsploraOpt,
    electrum_url: str | None = ElectrumOpt,
    database: Path | None = DatabaseOpt,
    log_level: str = LogLevelOpt,
) -> None:
    """Replace an unconfirmed wallet transaction with a higher-fee version."""
    setup_logging(log_level)
    settings = _load_settings(
        descriptor, change_descriptor, network, esplora_url, electrum_url, database
    )
    wallet = _open_wallet(settings, need_backend=True)
    asyncio.run(_bump_fee(wallet, txid, fee_rate, shrink, broadcast))


async def _bump_fee(
    wallet: Wallet, txid: str, fee_rate: float, shrink: str | None, broadcast: bool
) -> None:
    try:
        await wallet.sync()
        result = wallet.build_fee_bump(txid, fee_rate, allow_shrinking=shrink)
        await _sign_and_output(wallet, result.psbt, broadcast)
    except WalletError as e:
        logger.error(str(e))
        raise typer.Exit(1) from e
    finally:
        await wallet.close()


async def _sign_and_output(wallet: Wallet, psbt: PSBT, broadcast: bool) -> None:
    complete = wallet.sign(psbt)
    fee = psbt.fee()
    print(f"\nTransaction: {psbt.txid()}")
    if fee is not None:
        print(f"Fee:         {fee:,} sats")
    if broadcast:
        if not complete:
            logger.error("Cannot broadcast: not every input could be signed")
            raise typer.Exit(1)
        txid = await wallet.broadcast(psbt)
        print(f"Broadcast:   {txid}")
    else:
        print(f"\nPSBT:\n{psbt.to_base64()}")


@app.command()
def decode_psbt(
    psbt: str = typer.Argument(..., help="Base64-encoded PSBT"),
) -> None:
    """Print a PSBT as JSON."""
    try:
        decoded = PSBT.from_base64(psbt)
    except WalletError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e
    typer.echo(json.dumps(decoded.to_dict(), indent=2))


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
