"""Command-line interface for the DOCI registry."""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from typing import Optional, TypeVar

import httpx
import structlog
import typer
from rich.console import Console
from rich.table import Table

from doci.errors import DociError
from doci.escrow import EscrowAccount
from doci.log import configure_logging
from doci.models import Identifier, IdentifierKind
from doci.settings import get_settings
from doci.utils import split_composite_code
from doci.wiring import Services, build_services, needs_http_client

console = Console()
app = typer.Typer(help="DOCI – Direct On-Chain Identifier registry")
escrow_app = typer.Typer(help="Submission fee escrow")
app.add_typer(escrow_app, name="escrow")
logger = structlog.get_logger(__name__)

T = TypeVar("T")


@app.callback()
def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, json_format=settings.log_json)


def _run(action: Callable[[Services], Awaitable[T]]) -> T:
    """Build the service graph, run one async action and report DOCI errors."""

    async def runner() -> T:
        settings = get_settings()
        if needs_http_client(settings):
            async with httpx.AsyncClient(timeout=30) as client:
                return await action(build_services(settings, client=client))
        return await action(build_services(settings))

    try:
        return asyncio.run(runner())
    except DociError as exc:
        console.print(f"[red]{exc.kind}[/red]: {exc.message}")
        raise typer.Exit(code=1) from exc


def _run_sync(action: Callable[[Services], T]) -> T:
    async def wrapped(services: Services) -> T:
        return await asyncio.to_thread(action, services)

    return _run(wrapped)


def _print_identifier(identifier: Identifier) -> None:
    table = Table(title=identifier.composite_code)
    table.add_column("Field")
    table.add_column("Value", overflow="fold")
    table.add_row("ID", str(identifier.id))
    table.add_row("Kind", identifier.kind.value)
    table.add_row("Status", identifier.status.value)
    table.add_row("Owner", identifier.owner_user_id)
    table.add_row("Title", str(identifier.metadata.get("title") or "—"))
    table.add_row("Metadata ref", identifier.metadata_ref or "—")
    table.add_row("Chain ref", identifier.chain_ref or "—")
    console.print(table)


def _print_escrow(account: EscrowAccount) -> None:
    table = Table(title=f"Escrow {account.id}")
    table.add_column("Field")
    table.add_column("Value", overflow="fold")
    table.add_row("State", account.state.value)
    table.add_row("Payer", account.payer_ref)
    table.add_row("Manuscript", account.manuscript_ref)
    table.add_row("Amount", str(account.amount))
    table.add_row(
        "Approvals", f"{account.approval_count}/{account.required_approvals}"
    )
    table.add_row("Approvers", ", ".join(account.approvers) or "—")
    console.print(table)


def _parse_fields(values: list[str]) -> dict[str, str]:
    fields: dict[str, str] = {}
    for value in values:
        key, sep, item = value.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"Expected key=value, got {value!r}")
        fields[key.strip()] = item.strip()
    return fields


@app.command()
def config(
    json_output: bool = typer.Option(False, "--json", help="Output settings as JSON"),
) -> None:
    """Display the resolved settings."""
    settings = get_settings()
    if json_output:
        typer.echo(settings.model_dump_json(indent=2))
        return
    table = Table(title="DOCI Settings")
    table.add_column("Key")
    table.add_column("Value", overflow="fold")
    for key, value in settings.model_dump().items():
        table.add_row(key, str(value))
    console.print(table)


@app.command()
def register(
    prefix: str = typer.Argument(..., help="Namespace prefix, e.g. 10.FRONS"),
    owner: str = typer.Option(..., help="Owning user id"),
    kind: IdentifierKind = typer.Option(IdentifierKind.PUBLICATION, help="Identifier kind"),
    suffix: Optional[str] = typer.Option(None, help="Explicit suffix; allocated when omitted"),
    title: Optional[str] = typer.Option(None, help="Publication title"),
    author: Optional[list[str]] = typer.Option(None, "--author", "-a", help="Author name"),
    field: Optional[list[str]] = typer.Option(None, "--field", "-f", help="Extra metadata key=value"),
) -> None:
    """Register a publication or researcher profile."""
    metadata: dict[str, object] = dict(_parse_fields(list(field or [])))
    if title:
        metadata["title"] = title
    if author:
        metadata["authors"] = list(author)

    async def action(services: Services) -> Identifier:
        return await services.registration.register(
            kind=kind,
            namespace_prefix=prefix,
            owner_user_id=owner,
            metadata=metadata,
            suffix=suffix,
        )

    identifier = _run(action)
    console.print(f"[green]Registered[/green] {identifier.composite_code} ({identifier.status.value})")
    _print_identifier(identifier)


@app.command()
def resolve(
    prefix: str = typer.Argument(..., help="Namespace prefix, or a full PREFIX/SUFFIX code"),
    suffix: Optional[str] = typer.Argument(None, help="Suffix"),
    json_output: bool = typer.Option(False, "--json", help="Output the resolution as JSON"),
) -> None:
    """Resolve a composite code to its record."""
    if suffix is None:
        parts = split_composite_code(prefix)
        if parts is None:
            raise typer.BadParameter(f"Expected PREFIX/SUFFIX, got {prefix!r}")
        prefix, suffix = parts

    async def action(services: Services):
        return await services.resolution.resolve(prefix, suffix, {"channel": "cli"})

    resolution = _run(action)
    if json_output:
        typer.echo(json.dumps(resolution.to_wire(), indent=2))
        return
    console.print(f"[green]{resolution.kind.value}[/green] via {resolution.source}")
    _print_identifier(resolution.identifier)


@app.command()
def show(identifier_id: int = typer.Argument(..., help="Identifier id")) -> None:
    """Show a stored identifier regardless of status."""

    async def action(services: Services) -> Identifier:
        return await services.registration.get(identifier_id)

    _print_identifier(_run(action))


@app.command()
def revoke(
    identifier_id: int = typer.Argument(..., help="Identifier id"),
    user: str = typer.Option(..., help="Calling user id (must own the identifier)"),
) -> None:
    """Revoke an identifier; the record is kept but no longer resolves."""

    async def action(services: Services) -> Identifier:
        return await services.registration.revoke(identifier_id, user)

    identifier = _run(action)
    console.print(f"[yellow]Revoked[/yellow] {identifier.composite_code}")


@app.command("list")
def list_identifiers(owner: str = typer.Option(..., help="Owning user id")) -> None:
    """List identifiers owned by a user."""

    async def action(services: Services) -> list[Identifier]:
        return await services.registration.list_for_owner(owner)

    items = _run(action)
    if not items:
        console.print("[yellow]No identifiers found.")
        return
    table = Table(title=f"Identifiers owned by {owner}")
    table.add_column("ID")
    table.add_column("Code")
    table.add_column("Kind")
    table.add_column("Status")
    table.add_column("Title", overflow="fold")
    for item in items:
        table.add_row(
            str(item.id),
            item.composite_code,
            item.kind.value,
            item.status.value,
            str(item.metadata.get("title") or "—"),
        )
    console.print(table)


@escrow_app.command("create")
def escrow_create(
    payer: str = typer.Option(..., help="Payer reference"),
    manuscript: str = typer.Option(..., help="Manuscript reference (beneficiary)"),
    amount: int = typer.Option(..., help="Amount in minor units"),
    approvals: int = typer.Option(1, help="Required distinct approvals"),
) -> None:
    """Open an escrow in the Created state."""
    account = _run_sync(
        lambda services: services.escrow.create(
            payer_ref=payer,
            manuscript_ref=manuscript,
            amount=amount,
            required_approvals=approvals,
        )
    )
    console.print(f"[green]Created escrow[/green] {account.id}")
    _print_escrow(account)


@escrow_app.command("fund")
def escrow_fund(
    escrow_id: int = typer.Argument(...),
    amount: int = typer.Option(..., help="Amount deposited"),
) -> None:
    _print_escrow(_run_sync(lambda services: services.escrow.fund(escrow_id, amount)))


@escrow_app.command("approve")
def escrow_approve(
    escrow_id: int = typer.Argument(...),
    approver: str = typer.Option(..., help="Approver identity"),
) -> None:
    _print_escrow(_run_sync(lambda services: services.escrow.approve(escrow_id, approver)))


@escrow_app.command("release")
def escrow_release(escrow_id: int = typer.Argument(...)) -> None:
    """Release held funds to the manuscript beneficiary."""
    _print_escrow(_run_sync(lambda services: services.escrow.release(escrow_id)))


@escrow_app.command("refund")
def escrow_refund(escrow_id: int = typer.Argument(...)) -> None:
    """Return held funds to the payer."""
    _print_escrow(_run_sync(lambda services: services.escrow.refund(escrow_id)))


@escrow_app.command("show")
def escrow_show(escrow_id: int = typer.Argument(...)) -> None:
    _print_escrow(_run_sync(lambda services: services.escrow.get(escrow_id)))


@app.command()
def doctor() -> None:
    """Environment checks (Python, deps, data directory)."""
    checks: list[tuple[str, bool, str]] = []
    checks.append(("python>=3.11", sys.version_info >= (3, 11), sys.version))
    for mod in ("fastapi", "httpx", "sqlmodel", "structlog"):
        try:
            module = __import__(mod)
            ver = getattr(module, "__version__", "unknown")
            checks.append((f"{mod} import", True, ver))
        except ImportError as exc:  # pragma: no cover
            checks.append((f"{mod} import", False, str(exc)))
    settings = get_settings()
    try:
        test = settings.data_dir / ".doci_doctor"
        test.write_text("ok", encoding="utf-8")
        test.unlink()
        checks.append(("data_dir writable", True, str(settings.data_dir)))
    except OSError as exc:  # pragma: no cover
        checks.append(("data_dir writable", False, str(exc)))

    passed = True
    for name, ok, note in checks:
        status = "[green]OK[/green]" if ok else "[red]FAIL[/red]"
        console.print(f"{status} {name} ({note})")
        passed = passed and ok
    if not passed:
        raise typer.Exit(code=1)


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Host interface"),
    port: int = typer.Option(8000, help="Port to bind"),
    reload: bool = typer.Option(False, help="Enable auto-reload"),
) -> None:
    """Launch the registry API."""
    import uvicorn

    uvicorn.run(
        "doci.web.app:create_app",
        host=host,
        port=port,
        reload=reload,
        factory=True,
    )


if __name__ == "__main__":  # pragma: no cover
    app()
