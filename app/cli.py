import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

console = Console()
cli_app = typer.Typer(name="promptforge-admin", help="PromptForge administrative CLI")


def _run_async(coro):
    """Run async code from sync CLI context."""
    return asyncio.run(coro)


async def _ensure_db():
    from app.core.database import init_db
    await init_db()


@cli_app.command("create-user")
def create_user(
    name: str = typer.Option(..., "--name", help="Display name"),
    email: str = typer.Option(..., "--email", help="Unique e-mail address"),
):
    """Create a tenant user."""
    async def _create():
        await _ensure_db()
        from app.services.auth import AuthService
        return await AuthService().create_user(name=name, email=email)

    from app.core.exceptions import PromptForgeError

    try:
        user = _run_async(_create())
    except PromptForgeError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(code=1)

    console.print(f"\n[bold green]User created.[/bold green]")
    console.print(f"  ID:    {user.id}")
    console.print(f"  Email: {user.email}\n")


@cli_app.command("create-key")
def create_key(
    email: str = typer.Option(..., "--email", help="E-mail of the user who owns the key"),
    label: str = typer.Option(..., "--label", help="Human-readable label for this key"),
    notes: str = typer.Option(None, "--notes", help="Optional notes"),
):
    """Create a new API key for a user."""
    async def _create():
        await _ensure_db()
        from app.services.auth import AuthService
        service = AuthService()
        user = await service.get_user_by_email(email)
        if user is None:
            return None
        return await service.create_key(user_id=user.id, label=label, notes=notes)

    created = _run_async(_create())
    if created is None:
        console.print(f"[yellow]No user with email '{email}'.[/yellow]")
        raise typer.Exit(code=1)
    raw_key, key_row = created

    console.print(f"\n[bold green]API key created successfully![/bold green]\n")
    console.print(f"  Label:  {key_row.label}")
    console.print(f"  User:   {key_row.user_id}")
    console.print(f"  Prefix: {key_row.key_prefix}")
    console.print(f"\n  [bold yellow]Key: {raw_key}[/bold yellow]")
    console.print(f"\n  [dim]Save this key now. It cannot be retrieved later.[/dim]\n")


@cli_app.command("list-keys")
def list_keys():
    """List all active API keys."""
    async def _list():
        await _ensure_db()
        from app.services.auth import AuthService
        return await AuthService().list_keys()

    keys = _run_async(_list())

    if not keys:
        console.print("[dim]No active API keys found.[/dim]")
        return

    table = Table(title="Active API Keys")
    table.add_column("Prefix", style="cyan")
    table.add_column("Label")
    table.add_column("User", style="green")
    table.add_column("Created")
    table.add_column("Last Used")

    for key in keys:
        created = key.created_at.strftime("%Y-%m-%d %H:%M") if key.created_at else "-"
        last_used = key.last_used_at.strftime("%Y-%m-%d %H:%M") if key.last_used_at else "never"
        table.add_row(key.key_prefix, key.label, key.user_id, created, last_used)

    console.print(table)


@cli_app.command("revoke-key")
def revoke_key(
    key: str = typer.Argument(help="Full API key or key prefix to revoke"),
):
    """Revoke an API key."""
    async def _revoke():
        await _ensure_db()
        from app.services.auth import AuthService
        return await AuthService().revoke_key(key)

    success = _run_async(_revoke())

    if success:
        console.print(f"[bold red]Key revoked successfully.[/bold red]")
    else:
        console.print(f"[yellow]No active key found matching '{key}'.[/yellow]")
        raise typer.Exit(code=1)


@cli_app.command("decrypt-export")
def decrypt_export(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Encrypted export (.enc) file"),
    output: Path = typer.Option(..., "--output", "-o", help="Where to write the decrypted artifact"),
    password: str = typer.Option(..., "--password", prompt=True, hide_input=True),
):
    """Decrypt a password-protected export package."""
    from app.core.exceptions import PromptForgeError
    from app.services.encryption import decrypt_export as _decrypt, is_encrypted_export

    content = path.read_bytes()
    if not is_encrypted_export(content):
        console.print(f"[yellow]{path} is not an encrypted PromptForge export.[/yellow]")
        raise typer.Exit(code=1)

    try:
        plaintext = _decrypt(content, password)
    except PromptForgeError as e:
        console.print(f"[bold red]{e.message}[/bold red]")
        raise typer.Exit(code=1)

    output.write_bytes(plaintext)
    console.print(f"[green]Decrypted {len(plaintext)} bytes to {output}[/green]")


@cli_app.command("purge-expired-exports")
def purge_expired_exports():
    """Mark overdue exports expired and delete their artifacts."""
    async def _purge():
        await _ensure_db()
        from app.services.exports import ExportService
        from app.services.jobs import JobQueue
        from app.services.storage import LocalBlobStorage

        service = ExportService(storage=LocalBlobStorage(), job_queue=JobQueue())
        return await service.expire_overdue()

    count = _run_async(_purge())
    console.print(f"[green]{count} export(s) expired.[/green]")


def main():
    cli_app()


if __name__ == "__main__":
    main()
