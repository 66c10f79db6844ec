"""
zkv-relay command-line interface.

Usage:
    zkv-relay [OPTIONS] COMMAND [ARGS]...
"""
from __future__ import annotations

import asyncio

import click
from eth_account import Account
from rich.console import Console
from rich.table import Table

from .config import get_settings
from .coordinator import open_coordinator
from .exceptions import ConfigurationError, RelayException
from .logging_config import setup_logging
from .models import ProofBundle, RelayOutcome

console = Console()


@click.group()
@click.version_option(package_name="zkv-relay", message="%(prog)s %(version)s")
@click.option("--log-level", default=None, help="Override LOG_LEVEL")
@click.option("--json-logs", is_flag=True, help="Emit JSON log lines")
@click.pass_context
def cli(ctx, log_level: str | None, json_logs: bool):
    """Relay zkVerify attestations to the destination chain."""
    ctx.ensure_object(dict)
    settings = get_settings()
    setup_logging(
        level=(log_level or settings.log_level).upper(),
        json_format=json_logs or settings.log_json,
    )
    ctx.obj["settings"] = settings


def _print_outcome(outcome: RelayOutcome) -> None:
    table = Table(title="Relay Outcome")
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    proof = outcome.inclusion_proof
    table.add_row("Attestation ID", str(outcome.attestation_id))
    table.add_row("Transaction", outcome.transaction_hash)
    table.add_row("Block", str(outcome.block_number))
    table.add_row("Accepted on chain", "[green]yes[/green]" if outcome.accepted_on_chain else "[red]no[/red]")
    table.add_row(
        "Acknowledged",
        "[green]yes[/green]" if outcome.application_acknowledged else "[red]no[/red]",
    )
    table.add_row("Leaf index", f"{proof.leaf_index} of {proof.number_of_leaves}")
    table.add_row("Merkle path length", str(len(proof.merkle_path)))
    console.print(table)


def _print_error(error: RelayException) -> None:
    console.print(f"[red]Error ({error.error_code}, stage {error.stage}): {error.message}[/red]")
    if error.attestation_id is not None:
        console.print(f"Attestation ID: [cyan]{error.attestation_id}[/cyan]")
    for key, value in error.details.items():
        console.print(f"  {key}: {value}")


def _run(ctx, coro) -> None:
    try:
        outcome = asyncio.run(coro)
    except RelayException as e:
        _print_error(e)
        ctx.exit(1)
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        ctx.exit(1)
    else:
        _print_outcome(outcome)


@cli.command()
@click.argument("bundle_path", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--proof-system",
    type=click.Choice(["risc0", "groth16", "fflonk", "ultraplonk"]),
    default=None,
    help="Override ZKV_PROOF_SYSTEM",
)
@click.pass_context
def relay(ctx, bundle_path: str, proof_system: str | None):
    """Submit a proof bundle (JSON with vk, proof, pub) and relay it."""
    settings = ctx.obj["settings"]
    try:
        bundle = ProofBundle.from_file(bundle_path, proof_system or settings.zkv_proof_system)
    except ValueError as e:
        console.print(f"[red]Invalid proof bundle: {e}[/red]")
        ctx.exit(1)

    console.print(f"\n[bold blue]Relaying {bundle.proof_system.value} proof[/bold blue]\n")

    async def _relay() -> RelayOutcome:
        async with open_coordinator(settings) as coordinator:
            return await coordinator.relay_proof(bundle)

    _run(ctx, _relay())


@cli.command()
@click.option("--attestation-id", required=True, type=int, help="Finalized attestation id")
@click.option("--leaf-digest", required=True, help="Leaf digest (0x-prefixed)")
@click.pass_context
def resume(ctx, attestation_id: int, leaf_digest: str):
    """Resume a relay at retrieval for a finalized attestation."""
    settings = ctx.obj["settings"]
    console.print(f"\n[bold blue]Resuming attestation {attestation_id}[/bold blue]\n")

    async def _resume() -> RelayOutcome:
        async with open_coordinator(settings) as coordinator:
            return await coordinator.resume(attestation_id, leaf_digest)

    _run(ctx, _resume())


@cli.command()
@click.pass_context
def address(ctx):
    """Show the destination caller address (the SuccessfulProofSubmission winner)."""
    settings = ctx.obj["settings"]
    if not settings.eth_secret_key:
        _print_error(ConfigurationError("ETH_SECRET_KEY is not set", missing=["ETH_SECRET_KEY"]))
        ctx.exit(1)

    account = Account.from_key(settings.eth_secret_key)
    console.print(f"Caller address: [cyan]{account.address}[/cyan]")


def main():
    """Entry point for the CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
