"""Backup commands: key, export, import, list, auto, gc, log."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import click
from rich.panel import Panel
from rich.table import Table

from .. import BULLIONDESK_HOME
from ..backup.action_log import read_action_log
from ..backup.exporter import BackupExporter
from ..backup.importer import BackupImporter
from ..backup.scheduler import AutoBackupScheduler, ScheduleOutcome
from ..grants import DeniedGrant, StaticDirectoryGrant
from ..models import BaseInventory, InventoryPatch
from ..secrets import BACKUP_KEY, set_export_key
from ._common import console, error_style, load_context


def _confirm_inventory(answer: Optional[bool]):
    """Build a conflict resolver from --yes/--no, prompting when unset."""

    async def resolve(local: BaseInventory, incoming: InventoryPatch) -> bool:
        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Field")
        table.add_column("Local", justify="right")
        table.add_column("Backup", justify="right", style="cyan")
        current = local.model_dump()
        for name, value in incoming.present_fields().items():
            marker = "" if current[name] == value else " *"
            table.add_row(name + marker, f"{current[name]:g}", f"{value:g}")
        console.print("\n[bold yellow]Base inventory conflict[/]")
        console.print(table)
        if answer is not None:
            return answer
        return click.confirm("Override local base inventory with the backup values?", default=False)

    return resolve


def register_backup_commands(main: click.Group) -> None:
    """Register the backup command group."""

    @main.group()
    def backup():
        """Encrypted export, import and automatic backups.

        Exports carry every customer, transaction, ledger entry and
        stock item. Importing merges them into the local book without
        losing records created on either device.
        """

    # ------------------------------------------------------------------
    # key
    # ------------------------------------------------------------------

    @backup.group("key")
    def backup_key():
        """Manage the export encryption key."""

    @backup_key.command("set")
    @click.option("--home", default=BULLIONDESK_HOME, type=click.Path(), help="Application home directory.")
    @click.password_option("--key", prompt="Export key", help="Passphrase (at least 8 characters).")
    def key_set(home: str, key: str):
        """Set the passphrase that encrypts exports.

        Keep it somewhere safe: every device importing your exports
        needs the same key.
        """
        from ..secrets import FileKeyValueStore

        try:
            set_export_key(FileKeyValueStore(Path(home)), key)
        except ValueError as exc:
            console.print(f"[red]{exc}[/]")
            raise SystemExit(1)
        console.print("[green]Export key saved.[/]")

    # ------------------------------------------------------------------
    # export
    # ------------------------------------------------------------------

    @backup.command("export")
    @click.option("--home", default=BULLIONDESK_HOME, type=click.Path(), help="Application home directory.")
    @click.option("--dest", "-d", default=None, type=click.Path(), help="Destination directory (first export).")
    @click.option("--since", type=click.DateTime(formats=["%Y-%m-%d"]), default=None,
                  help="Only transactions and ledger entries from this date on.")
    @click.option("--today", is_flag=True, help="Only today's transactions and ledger entries.")
    def backup_export(home: str, dest: Optional[str], since: Optional[datetime], today: bool):
        """Write an encrypted export to the backup destination.

        Examples:

            bulliondesk backup export --dest /mnt/usb/bullion

            bulliondesk backup export --today
        """
        since_date = since.date() if since else None
        if today:
            since_date = datetime.now(timezone.utc).date()

        async def run():
            ctx = await load_context(home)
            grant = StaticDirectoryGrant(Path(dest)) if dest else DeniedGrant()
            exporter = BackupExporter(ctx.services, ctx.secrets, ctx.settings, grant, ctx.object_store)
            return await exporter.export("manual", since_date)

        console.print("\n[cyan]Exporting...[/]")
        result = asyncio.run(run())
        if not result.success:
            console.print(f"[{error_style(result.error_kind)}]{result.message}[/]")
            raise SystemExit(1)
        console.print(Panel(
            f"[bold green]Export complete[/]\n"
            f"Records: {result.record_count}\n"
            f"File: {result.file_name}\n"
            f"Path: [cyan]{result.path}[/]",
            title="Backup Export",
            border_style="green",
        ))

    # ------------------------------------------------------------------
    # import
    # ------------------------------------------------------------------

    @backup.command("import")
    @click.argument("archive", type=click.Path(dir_okay=False))
    @click.option("--home", default=BULLIONDESK_HOME, type=click.Path(), help="Application home directory.")
    @click.option("--yes/--no", "override", default=None,
                  help="Accept or decline a differing base inventory without asking.")
    def backup_import(archive: str, home: str, override: Optional[bool]):
        """Merge an export file into the local book.

        Examples:

            bulliondesk backup import export_all_2026-10-17.encrypted

            bulliondesk backup import autobackup.encrypted --no
        """

        async def run():
            ctx = await load_context(home)
            importer = BackupImporter(ctx.services, ctx.secrets, ctx.settings, _confirm_inventory(override))
            return await importer.import_file(Path(archive))

        console.print(f"\n[cyan]Importing {archive}...[/]")
        result = asyncio.run(run())
        if not result.success:
            console.print(f"[{error_style(result.error_kind)}]{result.message}[/]")
            raise SystemExit(1)

        report = result.report
        lines = [
            "[bold green]Import complete[/]",
            f"From device: {result.source_device}",
            f"Customers: {report.customers_added} added, {report.customers_updated} updated",
            f"Transactions: {report.transactions_added} added, {report.transactions_existing} already present",
            f"Ledger entries: {report.ledger_added} added",
            f"Stock items: {report.stock_restored} restored",
        ]
        if report.renamed:
            lines.append(f"Renamed: {len(report.renamed)} colliding transaction id(s)")
        console.print(Panel("\n".join(lines), title="Backup Import", border_style="green"))
        for note in report.skipped:
            console.print(f"  [yellow]Skipped[/] {note}")
        for conflict in report.conflicts:
            console.print(f"  [yellow]Unresolved[/] {conflict}")

    # ------------------------------------------------------------------
    # list / log
    # ------------------------------------------------------------------

    @backup.command("list")
    @click.option("--home", default=BULLIONDESK_HOME, type=click.Path(), help="Application home directory.")
    def backup_list(home: str):
        """List export files in the backup destination."""

        async def run():
            ctx = await load_context(home)
            return BackupExporter(ctx.services, ctx.secrets, ctx.settings).list_exports()

        exports = asyncio.run(run())
        if not exports:
            console.print("\n[dim]No exports found.[/]\n")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Filename", style="cyan")
        table.add_column("Size", justify="right")
        table.add_column("Created", style="dim")
        for e in exports:
            table.add_row(e["filename"], f"{e['size'] / 1024:.1f} KB", e["created"][:19])

        console.print(f"\n[bold]{len(exports)}[/] export(s):\n")
        console.print(table)
        console.print()

    @backup.command("log")
    @click.option("--home", default=BULLIONDESK_HOME, type=click.Path(), help="Application home directory.")
    @click.option("--limit", "-n", default=20, help="Number of entries to show.")
    def backup_log(home: str, limit: int):
        """Show recent backup actions."""
        from ..settings import Settings

        destination = Settings(Path(home)).destination
        entries = read_action_log(destination, limit) if destination else []
        if not entries:
            console.print("\n[dim]No backup actions logged.[/]\n")
            return
        for entry in entries:
            status = "[green]OK[/]" if entry.success else f"[red]{entry.error_kind or 'FAILED'}[/]"
            console.print(f"  [dim]{entry.timestamp[:19]}[/] {entry.action:<12} {status} {entry.detail}")

    # ------------------------------------------------------------------
    # auto
    # ------------------------------------------------------------------

    @backup.group("auto")
    def backup_auto():
        """Automatic daily backups."""

    @backup_auto.command("enable")
    @click.option("--home", default=BULLIONDESK_HOME, type=click.Path(), help="Application home directory.")
    @click.option("--dest", "-d", default=None, type=click.Path(), help="Destination directory.")
    def auto_enable(home: str, dest: Optional[str]):
        """Turn automatic backups on."""
        from ..errors import PermissionDenied

        async def run():
            ctx = await load_context(home)
            exporter = BackupExporter(ctx.services, ctx.secrets, ctx.settings)
            scheduler = AutoBackupScheduler(exporter, ctx.secrets, ctx.settings)
            grant = StaticDirectoryGrant(Path(dest)) if dest else None
            await scheduler.enable(grant)
            return ctx.settings.destination

        try:
            destination = asyncio.run(run())
        except PermissionDenied as exc:
            console.print(f"[yellow]{exc.user_message}[/] Pass --dest to choose a directory.")
            raise SystemExit(1)
        console.print(f"[green]Auto backup enabled[/] -> [cyan]{destination}[/]")

    @backup_auto.command("disable")
    @click.option("--home", default=BULLIONDESK_HOME, type=click.Path(), help="Application home directory.")
    def auto_disable(home: str):
        """Turn automatic backups off."""

        async def run():
            ctx = await load_context(home)
            exporter = BackupExporter(ctx.services, ctx.secrets, ctx.settings)
            AutoBackupScheduler(exporter, ctx.secrets, ctx.settings).disable()

        asyncio.run(run())
        console.print("[yellow]Auto backup disabled.[/]")

    @backup_auto.command("status")
    @click.option("--home", default=BULLIONDESK_HOME, type=click.Path(), help="Application home directory.")
    def auto_status(home: str):
        """Show automatic backup configuration and history."""
        from ..secrets import FileKeyValueStore
        from ..settings import Settings

        settings = Settings(Path(home))
        has_key = bool(FileKeyValueStore(Path(home)).get(BACKUP_KEY))
        state = settings.state
        last = state.last_backup_time.isoformat()[:19] if state.last_backup_time else "never"
        console.print(Panel(
            f"Enabled: {'[green]yes[/]' if settings.config.auto_backup_enabled else '[dim]no[/]'}\n"
            f"Export key: {'[green]set[/]' if has_key else '[red]missing[/]'}\n"
            f"Destination: [cyan]{settings.destination or '-'}[/]\n"
            f"Interval: {settings.config.auto_interval_hours:g}h\n"
            f"Last backup: {last}\n"
            f"Last error: {state.last_error or '-'}",
            title="Auto Backup",
            border_style="cyan",
        ))

    @backup_auto.command("run")
    @click.option("--home", default=BULLIONDESK_HOME, type=click.Path(), help="Application home directory.")
    @click.option("--loop", is_flag=True, help="Keep running and tick periodically.")
    @click.option("--poll", default=3600.0, help="Seconds between ticks with --loop.")
    def auto_run(home: str, loop: bool, poll: float):
        """Run the automatic backup if it is due."""

        async def run():
            ctx = await load_context(home)
            exporter = BackupExporter(ctx.services, ctx.secrets, ctx.settings, object_store=ctx.object_store)
            scheduler = AutoBackupScheduler(exporter, ctx.secrets, ctx.settings)
            if loop:
                await scheduler.run(asyncio.Event(), poll)
                return None
            return await scheduler.tick()

        try:
            outcome = asyncio.run(run())
        except KeyboardInterrupt:
            console.print("\n[dim]Stopped.[/]")
            return
        if outcome is not None:
            succeeded = outcome is ScheduleOutcome.SUCCEEDED
            style = ("green" if succeeded else "red") if outcome.ran else "dim"
            console.print(f"[{style}]Auto backup: {outcome.value}[/]")
            if outcome.ran and not succeeded:
                raise SystemExit(1)

    # ------------------------------------------------------------------
    # gc
    # ------------------------------------------------------------------

    @backup.command("gc")
    @click.option("--home", default=BULLIONDESK_HOME, type=click.Path(), help="Application home directory.")
    def backup_gc(home: str):
        """Delete object store blobs no snapshot or manifest references."""

        async def run():
            ctx = await load_context(home)
            return await ctx.object_store.collect_garbage()

        deleted = asyncio.run(run())
        console.print(f"[green]Garbage collection:[/] {deleted} orphaned object(s) deleted")

    main.add_command(backup)
