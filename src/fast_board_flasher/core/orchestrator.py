"""
Update orchestration.

Ties discovery, the image store and flash sessions together:

- ``enumerate_boards`` identifies every candidate port. A NET port yields
  its CPU board; an EXP port is queried at every known EXP bus address.
- ``update_board`` runs one flash session and reports its UpdateResult.
- ``update_cpu_and_nodes`` flashes the CPU board and then sweeps the node
  boards behind it, one independent session per node.

Nothing is rolled back. A board whose session failed before commit keeps
its previous firmware; the others keep the new one.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional

from fast_board_flasher.models import Board, BoardKind, FirmwareImage, exp_addresses
from fast_board_flasher.protocol.identify import (
    BoardIdentifier,
    IdentifyOutcome,
    IdentifyResult,
)
from fast_board_flasher.protocol.session import (
    FailureReason,
    FlashEvent,
    FlashSession,
    UpdateOutcome,
)
from fast_board_flasher.protocol.settings import FlashSettings, LinkSettings
from fast_board_flasher.protocol.transport import (
    LinkError,
    PortHandle,
    enumerate_ports,
)

from .image_store import FirmwareImageStore, ImageStoreError
from .results import UpdateResult

logger = logging.getLogger(__name__)


class UpdateOrchestrator:
    """
    Discovers boards and sequences firmware updates.

    Example:
        orchestrator = UpdateOrchestrator(FirmwareImageStore())
        boards = orchestrator.enumerate_boards()
        cpu = next(b for b in boards if b.kind == BoardKind.NET)
        image = store.load_image(store.latest_image(cpu.board_name, "NET"))
        for result in orchestrator.update_cpu_and_nodes(cpu, image):
            print(result.to_summary())
    """

    def __init__(
        self,
        store: Optional[FirmwareImageStore] = None,
        link_settings: Optional[LinkSettings] = None,
        flash_settings: Optional[FlashSettings] = None,
        on_event: Optional[Callable[[FlashEvent], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.store = store or FirmwareImageStore()
        self.link_settings = link_settings or LinkSettings()
        self.flash_settings = flash_settings or FlashSettings()
        self.identifier = BoardIdentifier(self.link_settings)
        self.on_event = on_event
        self.cancel_event = cancel_event or threading.Event()
        self.ports: List[PortHandle] = []

    def cancel(self) -> None:
        """Stop the running session before its next chunk and skip remaining nodes."""
        self.cancel_event.set()

    def close(self) -> None:
        for port in self.ports:
            port.close()
        self.ports = []

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def identify_port(self, port: PortHandle) -> IdentifyResult:
        """
        Identify the interface behind a port, retrying transport errors.

        NOT_A_BOARD is final; only IO_ERROR is retried, up to
        ``identify_retries`` extra attempts.
        """
        attempts = self.link_settings.identify_retries + 1
        result = IdentifyResult.not_a_board()
        for attempt in range(1, attempts + 1):
            result = self.identifier.identify(port)
            if result.outcome != IdentifyOutcome.IO_ERROR:
                return result
            logger.debug(f"Identify {attempt}/{attempts} on {port.name} failed: {result.error}")
        logger.warning(f"Giving up on {port.name}: {result.error}")
        return result

    def scan_exp_bus(self, port: PortHandle) -> List[Board]:
        """Query every known EXP address on an EXP port."""
        boards = []
        for address in exp_addresses():
            result = self.identifier.identify(port, address)
            if result.is_board:
                boards.append(result.board)
            elif result.outcome == IdentifyOutcome.IO_ERROR:
                logger.warning(f"Stopped EXP scan on {port.name} at {address}: {result.error}")
                break
        logger.info(f"Found {len(boards)} EXP board(s) on {port.name}")
        return boards

    def enumerate_boards(self, ports: Optional[List[PortHandle]] = None) -> List[Board]:
        """
        Identify the boards on every candidate port.

        Args:
            ports: Open ports to use; by default candidate ports are
                enumerated and opened

        Returns:
            Boards in port order. Ports where nothing answered are dropped.
        """
        if ports is None:
            ports = enumerate_ports(self.link_settings)
        self.ports = list(ports)

        boards: List[Board] = []
        for port in self.ports:
            result = self.identify_port(port)
            if not result.is_board:
                logger.debug(f"{port.name}: no FAST board ({result.outcome.value})")
                continue
            if result.board.kind == BoardKind.EXP:
                boards.extend(self.scan_exp_bus(port))
            else:
                boards.append(result.board)
        return boards

    def list_nodes(self, cpu: Board) -> List[Board]:
        """Node boards reachable through a CPU board's link, in index order."""
        if cpu.kind != BoardKind.NET:
            raise ValueError(f"{cpu.target_id} is not a NET board")
        return self.identifier.list_nodes(cpu.port)

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def update_board(self, target: Board, image: FirmwareImage) -> UpdateResult:
        """
        Flash one board.

        Raises:
            PortBusyError: If another operation owns the board's port
        """
        previous = target.reported_version
        session = FlashSession(
            target,
            image,
            settings=self.flash_settings,
            identifier=self.identifier,
            on_event=self.on_event,
            cancel_event=self.cancel_event,
        )
        session.run()
        result = UpdateResult.from_session(session, previous_version=previous)
        logger.info(f"{target.target_id}: {result.outcome.value}")
        return result

    def update_cpu_and_nodes(
        self,
        target: Board,
        image: FirmwareImage,
        node_versions: Optional[Dict[str, str]] = None,
    ) -> List[UpdateResult]:
        """
        Flash a CPU board, then every node board behind it.

        Args:
            target: NET board to flash first
            image: CPU firmware
            node_versions: Board name -> version to flash on matching nodes;
                other nodes get the newest cached image

        Returns:
            The CPU result followed by one result per node in discovery
            order. If the CPU flash failed, only the CPU result.
        """
        results = [self.update_board(target, image)]
        if results[0].outcome == UpdateOutcome.FAILED:
            logger.error("CPU update failed; not touching node boards")
            return results

        try:
            nodes = self.list_nodes(target)
        except LinkError as e:
            logger.error(f"Could not list node boards: {e}")
            return results

        for node in nodes:
            if self.cancel_event.is_set():
                results.append(UpdateResult.failure(
                    node, FailureReason.CANCELLED, "Cancelled before this node",
                ))
                continue
            results.append(self._update_node(node, node_versions or {}))
        return results

    def _update_node(self, node: Board, node_versions: Dict[str, str]) -> UpdateResult:
        """One node of the sweep. Failures become this node's result."""
        version = node_versions.get(node.board_name)
        try:
            entry = self.store.best_image(node, version)
            if entry is None:
                wanted = f" v{version}" if version else ""
                logger.warning(f"No firmware{wanted} for node {node.board_name}; skipping")
                return UpdateResult.skipped(
                    node, f"No {node.firmware_protocol} firmware{wanted} for {node.board_name}",
                )
            image = self.store.load_image(entry)
            return self.update_board(node, image)
        except ImageStoreError as e:
            logger.error(f"Node {node.target_id}: {e}")
            return UpdateResult.failure(node, FailureReason.NO_IMAGE, str(e))
        except LinkError as e:
            logger.error(f"Node {node.target_id}: {e}")
            return UpdateResult.failure(node, FailureReason.IO_ERROR, str(e))
        except Exception as e:
            logger.exception(f"Update of node {node.target_id} failed")
            return UpdateResult.failure(node, FailureReason.INTERNAL_ERROR, str(e))
