"""
Interactive menu for backing up and restoring virtual machines.
"""
import logging
import sys
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.markup import escape
from rich.prompt import Confirm, Prompt
from rich.table import Table

from vmbackup.core.config import Settings, settings as default_settings
from vmbackup.core.logging_handler import setup_logging
from vmbackup.services.kvm.backup import KVMBackupService
from vmbackup.services.kvm.errors import VMBackupError
from vmbackup.services.kvm.hypervisor import Hypervisor
from vmbackup.services.kvm.restore import KVMRestoreService, list_backups

logger = logging.getLogger(__name__)

console = Console()


def print_header(title: str):
    border = "=" * 40
    console.print(f"\n[bold green]{border}[/bold green]")
    console.print(f"[bold]{title}[/bold]")
    console.print(f"[bold green]{border}[/bold green]")


def print_success(message: str):
    console.print(f"[bold green]✅ {escape(message)}[/bold green]")


def print_warning(message: str):
    console.print(f"[bold yellow]⚠️ {escape(message)}[/bold yellow]")


def print_error(message: str):
    console.print(f"[bold red]❌ {escape(message)}[/bold red]")


def console_log_callback(level: str, message: str, details: dict = None):
    """Echo service progress to the terminal."""
    if level == "WARNING":
        print_warning(message)
    elif level in ("ERROR", "CRITICAL"):
        print_error(message)
    elif level == "INFO":
        console.print(escape(message))


def format_size(size: float) -> str:
    for unit in ("B", "K", "M", "G", "T"):
        if size < 1024 or unit == "T":
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024


def show_directory(path: str):
    table = Table(show_header=True, header_style="bold")
    table.add_column("File")
    table.add_column("Size", justify="right")
    for entry in sorted(Path(path).iterdir()):
        table.add_row(escape(entry.name), format_size(entry.stat().st_size))
    console.print(table)


def backup_vm(hypervisor: Hypervisor, settings: Settings):
    console.print("\n[bold green]📦 Starting VM Backup[/bold green]")

    console.print("[yellow]🔍 Available VMs:[/yellow]")
    machines = hypervisor.list_machines()
    if not machines:
        print_error("No VMs found")
        return
    for name in machines:
        console.print(f"  • {escape(name)}")

    vm_name = Prompt.ask("⌨️ Enter VM name", default="", show_default=False, console=console)
    backup_root = Prompt.ask("💾 Backup location", default=settings.BACKUP_BASE_PATH, console=console)

    service = KVMBackupService(hypervisor, settings, log_callback=console_log_callback)
    result = service.create_backup(vm_name, backup_root)

    print_success("Backup complete!")
    console.print(f"Location: {escape(result.backup_dir)}")
    show_directory(result.backup_dir)


def restore_vm(hypervisor: Hypervisor, settings: Settings):
    console.print("\n[bold green]♻️ Starting VM Restore[/bold green]")

    console.print("[yellow]🔍 Available backups:[/yellow]")
    for backup in list_backups(settings.BACKUP_BASE_PATH):
        console.print(f"  • {escape(str(backup))}")

    backup_dir = Prompt.ask("⌨️ Enter backup directory", default="", show_default=False, console=console)
    backup_dir = backup_dir.strip() or settings.BACKUP_BASE_PATH

    service = KVMRestoreService(hypervisor, settings, log_callback=console_log_callback)
    new_name = Prompt.ask("⌨️ Enter new VM name", default="", show_default=False, console=console)
    new_name = service.validate_name(new_name)

    storage = Prompt.ask("💾 Disk storage", default=settings.DISK_STORAGE_PATH, console=console)
    result = service.restore_vm(backup_dir, new_name, storage)

    if Confirm.ask("🚀 Start VM now?", default=False, console=console):
        service.start_vm(result)

    print_success("Restore complete!")
    console.print(f"VM Name: {escape(result.machine_name)}")
    console.print(f"Disks: {escape(result.storage_dir)}")


def main_menu(hypervisor: Hypervisor, settings: Settings):
    """Run the menu until the user chooses to exit."""
    actions = {"1": backup_vm, "2": restore_vm}
    while True:
        print_header(f"🧠 {settings.APP_NAME}")
        console.print("1) Backup Virtual Machine")
        console.print("2) Restore from Backup")
        console.print("3) Exit")

        choice = Prompt.ask("⌨️ Select operation (1-3)", default="", show_default=False, console=console).strip()
        if choice == "3":
            console.print("👋 Exiting...")
            return

        action = actions.get(choice)
        if action is None:
            print_warning("Invalid selection")
            continue

        try:
            action(hypervisor, settings)
        except VMBackupError as e:
            logger.error(f"{action.__name__} aborted: {e}")
            print_error(str(e))


def main(hypervisor: Optional[Hypervisor] = None, settings: Optional[Settings] = None) -> int:
    """Entry point for the interactive tool; returns the process exit code."""
    settings = settings or default_settings
    setup_logging(settings, console=False)

    if hypervisor is None:
        from vmbackup.services.kvm.libvirt_hypervisor import LibvirtHypervisor
        hypervisor = LibvirtHypervisor(settings.LIBVIRT_DEFAULT_URI)

    try:
        main_menu(hypervisor, settings)
        return 0
    except KeyboardInterrupt:
        console.print("\n👋 Interrupted")
        return 130
    except Exception as e:
        logger.exception("Unexpected error")
        print_error(f"Unexpected error: {e}")
        return 1
    finally:
        hypervisor.close()


def run():
    sys.exit(main())
