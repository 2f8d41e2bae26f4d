"""
FAST Board Flasher CLI

Lists FAST Pinball boards on the serial ports and updates their firmware.
"""

import sys
import json
import logging
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, TypeVar

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.logging import RichHandler
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TransferSpeedColumn,
)

from fast_board_flasher import __version__
from fast_board_flasher.core.download import DownloadError, download_firmware
from fast_board_flasher.core.image_store import (
    FirmwareImageStore,
    ImageEntry,
    ImageStoreError,
    default_firmware_dir,
)
from fast_board_flasher.core.messages import (
    COMMON_WARNINGS,
    MessageLevel,
    WarningItem,
    results_to_warnings,
)
from fast_board_flasher.core.orchestrator import UpdateOrchestrator
from fast_board_flasher.core.results import UpdateResult
from fast_board_flasher.models import Board, BoardKind, FirmwareImage, board_name_for_address
from fast_board_flasher.protocol.frames import normalize_version
from fast_board_flasher.protocol.session import FlashEvent, UpdateOutcome
from fast_board_flasher.protocol.settings import FlashSettings, LinkSettings
from fast_board_flasher.protocol.simulator import demo_ports, write_demo_firmware
from fast_board_flasher.protocol.transport import (
    LinkError,
    PortHandle,
    enumerate_ports,
    list_candidate_ports,
)

# Setup logging
logging.basicConfig(
    level=logging.WARNING,
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True)],
)
logger = logging.getLogger("fast_board_flasher")

# Setup Rich console
console = Console()

app = typer.Typer(help="FAST Pinball board discovery and firmware updates")

# Exit code when no serial ports are available
EXIT_NO_PORTS = 2

T = TypeVar("T")


@dataclass
class CliState:
    """Options shared by every command."""
    link_settings: LinkSettings = field(default_factory=LinkSettings)
    flash_settings: FlashSettings = field(default_factory=FlashSettings)
    firmware_dir: Path = field(default_factory=default_firmware_dir)
    simulate: bool = False
    verbose: bool = False


def print_header(text: str) -> None:
    """Print fancy header."""
    console.print(Panel(text, expand=False, style="bold blue"))


def print_success(text: str) -> None:
    """Print success message."""
    console.print(f"✓ {text}", style="green")


def print_warning(text: str) -> None:
    """Print warning message."""
    console.print(f"⚠️  {text}", style="yellow")


def print_error(text: str) -> None:
    """Print error message."""
    console.print(f"❌ {text}", style="red")


def print_structured_warning(warning: WarningItem, verbose: bool = False) -> None:
    """Print a structured warning with optional remediation."""
    if warning.level == MessageLevel.ERROR:
        style = "red"
        icon = "❌"
    elif warning.level == MessageLevel.WARN:
        style = "yellow"
        icon = "⚠️"
    else:
        style = "blue"
        icon = "ℹ️"

    console.print(f"{icon} [{warning.code.value}] {warning.title}", style=style)
    if warning.detail:
        console.print(f"   {warning.detail}", style="dim")
    if verbose and warning.remediation:
        console.print(f"   → {warning.remediation}", style="cyan")


def _state(ctx: typer.Context) -> CliState:
    if ctx.obj is None:
        ctx.obj = CliState()
    return ctx.obj


# ============================================================================
# SHARED PLUMBING
# ============================================================================

def _open_ports(state: CliState) -> List[PortHandle]:
    """Open the candidate ports, exiting with EXIT_NO_PORTS when there are none."""
    if state.simulate:
        print_structured_warning(COMMON_WARNINGS["simulation_mode"], verbose=state.verbose)
        return demo_ports(state.link_settings)

    ports = enumerate_ports(state.link_settings)
    if not ports:
        print_structured_warning(COMMON_WARNINGS["no_ports"], verbose=True)
        raise typer.Exit(EXIT_NO_PORTS)
    return ports


def _image_store(state: CliState) -> FirmwareImageStore:
    """Image store over the cache, filling an empty cache first."""
    store = FirmwareImageStore(state.firmware_dir)
    if not store.is_empty():
        return store

    if state.simulate:
        write_demo_firmware(state.firmware_dir)
        return store

    console.print(f"[dim]Firmware cache {state.firmware_dir} is empty; downloading...[/dim]")
    try:
        written = download_firmware(state.firmware_dir)
        print_success(f"Downloaded {len(written)} firmware files")
    except DownloadError as e:
        print_structured_warning(COMMON_WARNINGS["cache_empty"], verbose=True)
        print_warning(str(e))
    return store


def _orchestrator(state: CliState, store: FirmwareImageStore, on_event=None) -> UpdateOrchestrator:
    return UpdateOrchestrator(
        store,
        link_settings=state.link_settings,
        flash_settings=state.flash_settings,
        on_event=on_event,
    )


def _discover(state: CliState, orchestrator: UpdateOrchestrator) -> List[Board]:
    ports = _open_ports(state)
    with console.status("Scanning for FAST boards..."):
        boards = orchestrator.enumerate_boards(ports)
    if not boards:
        print_structured_warning(COMMON_WARNINGS["no_boards"], verbose=True)
    return boards


def _available(store: FirmwareImageStore, board: Board) -> List[str]:
    return [e.version for e in store.list_images(board.board_name, board.firmware_protocol)]


def _version_cell(board: Board, available: List[str]) -> str:
    if not available:
        return "[dim]-[/dim]"
    latest = available[-1]
    if normalize_version(board.reported_version) == latest:
        return f"[green]{latest}[/green]"
    return f"[yellow]{latest}[/yellow]"


def _boards_table(title: str, boards: List[Board], store: FirmwareImageStore) -> Table:
    table = Table(title=title)
    table.add_column("Port", style="cyan")
    table.add_column("ID", style="magenta")
    table.add_column("Board", style="green")
    table.add_column("Kind")
    table.add_column("Version", justify="right")
    table.add_column("Latest", justify="right")
    table.add_column("Available")

    for board in boards:
        available = _available(store, board)
        kind = "node" if board.is_node else board.kind.value
        table.add_row(
            board.port.name,
            board.hardware_id,
            board.board_name,
            kind,
            board.reported_version,
            _version_cell(board, available),
            ", ".join(reversed(available)) or "-",
        )
    return table


def _results_table(results: List[UpdateResult]) -> Table:
    styles = {
        UpdateOutcome.SUCCESS: "green",
        UpdateOutcome.VERSION_MISMATCH: "yellow",
        UpdateOutcome.FAILED: "red",
        UpdateOutcome.SKIPPED: "dim",
    }
    table = Table(title="Update Results")
    table.add_column("Target", style="cyan")
    table.add_column("Board")
    table.add_column("Before", justify="right")
    table.add_column("Requested", justify="right")
    table.add_column("Reported", justify="right")
    table.add_column("Outcome")
    table.add_column("Time", justify="right")

    for result in results:
        outcome = result.outcome.value
        if result.outcome == UpdateOutcome.FAILED and result.reason is not None:
            outcome = f"{outcome} ({result.reason.value})"
        style = styles[result.outcome]
        table.add_row(
            result.target_id,
            result.board_name,
            result.previous_version or "-",
            result.requested_version or "-",
            result.reported_version or "-",
            f"[{style}]{outcome}[/{style}]",
            f"{result.elapsed:.1f}s",
        )
    return table


class FlashProgress:
    """Renders FlashEvents as one progress bar per target."""

    def __init__(self, progress: Progress):
        self.progress = progress
        self.tasks: Dict[str, int] = {}

    def __call__(self, event: FlashEvent) -> None:
        task = self.tasks.get(event.target_id)
        if task is None:
            task = self.progress.add_task(event.target_id, total=event.chunk_count or None)
            self.tasks[event.target_id] = task
        if event.chunk is not None:
            self.progress.update(task, completed=event.chunk, total=event.chunk_count)
        else:
            self.progress.update(
                task,
                description=f"{event.target_id} {event.state.value}",
            )


def _run_cancellable(orchestrator: UpdateOrchestrator, work: Callable[[], T]) -> T:
    """
    Run ``work`` on a worker thread so Ctrl-C can cancel it between chunks.

    The flash in progress stops before its next chunk and reports CANCELLED.
    """
    outcome: Dict[str, object] = {}

    def target() -> None:
        try:
            outcome["value"] = work()
        except Exception as e:
            outcome["error"] = e

    worker = threading.Thread(target=target, name="fast-flash", daemon=True)
    worker.start()
    try:
        while worker.is_alive():
            worker.join(0.1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelling after the current chunk...[/yellow]")
        orchestrator.cancel()
        worker.join()

    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]


def _report(results: List[UpdateResult], state: CliState, output_json: bool) -> None:
    """Print results and exit non-zero when any board failed."""
    if output_json:
        console.print_json(json.dumps([r.to_dict() for r in results]))
    else:
        console.print(_results_table(results))
        for warning in results_to_warnings(results):
            print_structured_warning(warning, verbose=state.verbose)

    if any(r.outcome == UpdateOutcome.FAILED for r in results):
        raise typer.Exit(1)
    if all(r.outcome == UpdateOutcome.SUCCESS for r in results) and not output_json:
        print_success("Update complete")


def _choose_version(
    store: FirmwareImageStore,
    board: Board,
    version: Optional[str],
    yes: bool,
) -> ImageEntry:
    """Resolve the image to flash from --version, or ask for one."""
    entries = store.list_images(board.board_name, board.firmware_protocol)
    if not entries:
        print_error(f"No {board.firmware_protocol} firmware for {board.board_name} in {store.directory}")
        raise typer.Exit(1)

    if version is not None:
        entry = store.find_image(board.board_name, board.firmware_protocol, version)
        if entry is None:
            print_error(
                f"Version {version} not available for {board.board_name}. "
                f"Available: {', '.join(e.version for e in reversed(entries))}"
            )
            raise typer.Exit(1)
        return entry

    newest_first = list(reversed(entries))
    if yes:
        return newest_first[0]

    console.print(f"\nAvailable {board.firmware_protocol} firmware for {board.board_name} (newest first):")
    for i, entry in enumerate(newest_first, 1):
        marker = " (installed)" if entry.version == board.reported_version else ""
        console.print(f"  {i}) {entry.version}{marker}")
    choice = typer.prompt("Select version", default=1, type=int)
    if not 1 <= choice <= len(newest_first):
        print_error("Selection out of range")
        raise typer.Abort()
    return newest_first[choice - 1]


def _confirm(text: str, yes: bool) -> None:
    if yes:
        return
    if not typer.confirm(text):
        console.print("Canceled.")
        raise typer.Exit(0)


def _flash_progress() -> Progress:
    return Progress(
        TextColumn("[{task.description}]"),
        BarColumn(),
        TextColumn("[{task.percentage:.0f}%]"),
        console=console,
    )


# ============================================================================
# COMMANDS
# ============================================================================

@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show protocol traffic and debug logging"),
    firmware_dir: Optional[Path] = typer.Option(
        None,
        "--firmware-dir",
        envvar="FAST_FIRMWARE_DIR",
        help="Firmware cache directory (default ~/.fast/firmware)",
    ),
    simulate: bool = typer.Option(False, "--simulate", help="Use simulated boards instead of serial ports"),
    vendor_id: Optional[str] = typer.Option(None, "--vid", help="Only scan ports with this USB vendor id (hex)"),
    chunk_size: Optional[int] = typer.Option(None, "--chunk-size", min=1, help="Firmware bytes per chunk"),
    ack_timeout: Optional[float] = typer.Option(None, "--ack-timeout", min=0.001, help="Chunk acknowledgement timeout (s)"),
    commit_timeout: Optional[float] = typer.Option(None, "--commit-timeout", min=0.001, help="Commit completion timeout (s)"),
    identify_timeout: Optional[float] = typer.Option(None, "--identify-timeout", min=0.001, help="ID reply timeout (s)"),
) -> None:
    """FAST Pinball board discovery and firmware updates."""
    if verbose:
        logger.setLevel(logging.DEBUG)

    vid = None
    if vendor_id is not None:
        try:
            vid = int(vendor_id, 16)
        except ValueError:
            raise typer.BadParameter(f"Invalid vendor id: {vendor_id}")

    if firmware_dir is None and simulate:
        firmware_dir = Path(tempfile.mkdtemp(prefix="fast_sim_firmware_"))

    ctx.obj = CliState(
        link_settings=LinkSettings().with_overrides(
            vendor_id=vid,
            identify_timeout=identify_timeout,
        ),
        flash_settings=FlashSettings().with_overrides(
            chunk_size=chunk_size,
            ack_timeout=ack_timeout,
            commit_timeout=commit_timeout,
        ),
        firmware_dir=firmware_dir or default_firmware_dir(),
        simulate=simulate,
        verbose=verbose,
    )

    if ctx.invoked_subcommand is None:
        list_boards(ctx, output_json=False)


@app.command()
def version() -> None:
    """Show the tool version."""
    console.print(f"fast-flasher {__version__}")


@app.command()
def ports(ctx: typer.Context) -> None:
    """List available serial ports."""
    state = _state(ctx)
    print_header("Available Serial Ports")

    if state.simulate:
        names = [p.name for p in demo_ports(state.link_settings)]
    else:
        names = list_candidate_ports(state.link_settings)

    if not names:
        print_warning("No serial ports found")
        raise typer.Exit(EXIT_NO_PORTS)

    table = Table(title="Serial Ports")
    table.add_column("Port", style="cyan")
    for name in names:
        table.add_row(name)
    console.print(table)


@app.command("list")
def list_boards(
    ctx: typer.Context,
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON for scripting"),
) -> None:
    """List every FAST board found, including NET node boards."""
    state = _state(ctx)
    store = _image_store(state)
    orchestrator = _orchestrator(state, store)
    try:
        boards = _discover(state, orchestrator)
        everything: List[Board] = []
        for board in boards:
            everything.append(board)
            if board.kind == BoardKind.NET:
                everything.extend(orchestrator.list_nodes(board))
    finally:
        orchestrator.close()

    if output_json:
        console.print_json(json.dumps([
            {
                "port": b.port.name,
                "id": b.hardware_id,
                "board": b.board_name,
                "kind": b.kind.value,
                "node_index": b.node_index,
                "version": b.reported_version,
                "available": _available(store, b),
            }
            for b in everything
        ]))
        return

    if everything:
        console.print(_boards_table("FAST Boards", everything, store))


@app.command("list-exp")
def list_exp(ctx: typer.Context) -> None:
    """List EXP boards and the firmware versions available for them."""
    state = _state(ctx)
    store = _image_store(state)
    orchestrator = _orchestrator(state, store)
    try:
        boards = [b for b in _discover(state, orchestrator) if b.kind == BoardKind.EXP]
    finally:
        orchestrator.close()

    if not boards:
        print_warning("No EXP boards found")
        return
    console.print(_boards_table("EXP Boards", boards, store))


@app.command("list-net")
def list_net(ctx: typer.Context) -> None:
    """List the NET controller and its node boards."""
    state = _state(ctx)
    store = _image_store(state)
    orchestrator = _orchestrator(state, store)
    try:
        boards: List[Board] = []
        for cpu in (b for b in _discover(state, orchestrator) if b.kind == BoardKind.NET):
            boards.append(cpu)
            boards.extend(orchestrator.list_nodes(cpu))
    finally:
        orchestrator.close()

    if not boards:
        print_warning("No NET controller found")
        return
    console.print(_boards_table("NET Boards", boards, store))


@app.command("update-exp")
def update_exp(
    ctx: typer.Context,
    address: Optional[str] = typer.Option(None, "--address", "-a", help="EXP board address (e.g. B4)"),
    port: Optional[str] = typer.Option(None, "--port", "-p", help="Only consider boards on this port"),
    version: Optional[str] = typer.Option(None, "--version", help="Firmware version to flash (default: ask)"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip prompts; flash the newest version if none given"),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output results as JSON"),
) -> None:
    """Flash firmware onto one EXP board."""
    state = _state(ctx)
    store = _image_store(state)
    progress = _flash_progress()
    orchestrator = _orchestrator(state, store, on_event=FlashProgress(progress))
    try:
        boards = [
            b for b in _discover(state, orchestrator)
            if b.kind == BoardKind.EXP and (port is None or b.port.name == port)
        ]
        if not boards:
            print_error("No EXP boards found")
            raise typer.Exit(1)

        target = _select_exp_board(boards, address, yes)
        entry = _choose_version(store, target, version, yes)
        _confirm(
            f"Flash {target.board_name} at {target.target_id} "
            f"from v{target.reported_version} to v{entry.version}?",
            yes,
        )
        image = _load(store, entry)

        try:
            with progress:
                result = _run_cancellable(orchestrator, lambda: orchestrator.update_board(target, image))
        except LinkError as e:
            print_error(f"Update failed: {e}")
            raise typer.Exit(1)
    finally:
        orchestrator.close()

    _report([result], state, output_json)


def _load(store: FirmwareImageStore, entry: ImageEntry) -> FirmwareImage:
    try:
        return store.load_image(entry)
    except ImageStoreError as e:
        print_error(str(e))
        raise typer.Exit(1)


def _select_exp_board(boards: List[Board], address: Optional[str], yes: bool) -> Board:
    if address is not None:
        for board in boards:
            if board.hardware_id == address.upper():
                return board
        expected = board_name_for_address(address)
        hint = f" (expected {expected})" if expected else ""
        print_error(f"No EXP board answered at address {address.upper()}{hint}")
        raise typer.Exit(1)

    if len(boards) == 1:
        return boards[0]
    if yes:
        print_error("Several EXP boards found; choose one with --address")
        raise typer.Exit(1)

    console.print("\nEXP boards:")
    for i, board in enumerate(boards, 1):
        console.print(f"  {i}) {board.board_name} at {board.hardware_id} (v{board.reported_version})")
    choice = typer.prompt("Select board", type=int)
    if not 1 <= choice <= len(boards):
        print_error("Selection out of range")
        raise typer.Abort()
    return boards[choice - 1]


def _parse_node_versions(values: List[str]) -> Dict[str, str]:
    """Parse repeated ``BOARD=VERSION`` options."""
    parsed: Dict[str, str] = {}
    for value in values:
        name, sep, ver = value.partition("=")
        if not sep or not name.strip() or not ver.strip():
            raise typer.BadParameter(f"Expected BOARD=VERSION, got {value!r}")
        parsed[name.strip()] = normalize_version(ver)
    return parsed


@app.command("update-net")
def update_net(
    ctx: typer.Context,
    version: Optional[str] = typer.Option(None, "--version", help="CPU firmware version (default: ask)"),
    node_version: List[str] = typer.Option(
        [],
        "--node-version",
        help="Node firmware as BOARD=VERSION (repeatable; default newest)",
    ),
    skip_nodes: bool = typer.Option(False, "--skip-nodes", help="Flash the CPU only"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip prompts; flash the newest version if none given"),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output results as JSON"),
) -> None:
    """Flash the NET controller, then every node board behind it."""
    state = _state(ctx)
    node_versions = _parse_node_versions(node_version)
    store = _image_store(state)
    progress = _flash_progress()
    orchestrator = _orchestrator(state, store, on_event=FlashProgress(progress))
    try:
        cpus = [b for b in _discover(state, orchestrator) if b.kind == BoardKind.NET]
        if not cpus:
            print_error("No NET controller found")
            raise typer.Exit(1)
        cpu = cpus[0]

        entry = _choose_version(store, cpu, version, yes)
        scope = "" if skip_nodes else " and its node boards"
        _confirm(
            f"Flash {cpu.board_name}{scope} to v{entry.version}? This may take a few minutes.",
            yes,
        )
        image = _load(store, entry)

        if skip_nodes:
            work = lambda: [orchestrator.update_board(cpu, image)]
        else:
            work = lambda: orchestrator.update_cpu_and_nodes(cpu, image, node_versions)
        try:
            with progress:
                results = _run_cancellable(orchestrator, work)
        except LinkError as e:
            print_error(f"Update failed: {e}")
            raise typer.Exit(1)
    finally:
        orchestrator.close()

    _report(results, state, output_json)


@app.command("get-latest-firmware")
def get_latest_firmware(ctx: typer.Context) -> None:
    """Download the latest firmware archive into the cache."""
    state = _state(ctx)
    print_header("Firmware Download")
    console.print(f"Target: {state.firmware_dir}")

    with Progress(
        TextColumn("[{task.description}]"),
        BarColumn(),
        DownloadColumn(),
        TransferSpeedColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Downloading...", total=None)

        def on_progress(received: int, total: int) -> None:
            progress.update(task, completed=received, total=total or None)

        try:
            written = download_firmware(state.firmware_dir, on_progress=on_progress)
        except DownloadError as e:
            print_error(str(e))
            raise typer.Exit(1)

    if not written:
        print_warning("No .txt firmware files were found in the archive")
        return

    store = FirmwareImageStore(state.firmware_dir)
    table = Table(title="Cached Firmware")
    table.add_column("Board", style="cyan")
    table.add_column("Protocol", style="magenta")
    table.add_column("Versions", style="green")
    for (board_name, protocol), versions in store.list_all().items():
        table.add_row(board_name, protocol, ", ".join(reversed(versions)))
    console.print(table)
    print_success(f"Downloaded {len(written)} firmware files into {state.firmware_dir}")


@app.command("check-updates", hidden=True)
def check_updates(ctx: typer.Context) -> None:
    """Alias for get-latest-firmware."""
    get_latest_firmware(ctx)


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(0)
    except Exception as e:
        console.print(f"\n[red bold]Fatal error:[/red bold] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
