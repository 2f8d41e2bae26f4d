"""
FAST Serial Link Layer

Handles low-level serial communication with FAST NET and EXP interfaces.

This module provides:
- Port enumeration and opening with the fixed line settings
- Line-oriented send/receive with bounded timeouts
- Exclusive ownership of a port for the duration of one operation
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Iterator, List, Optional

import serial
import serial.tools.list_ports

from .settings import LinkSettings

logger = logging.getLogger(__name__)

TERMINATOR = b"\r"


class LinkError(Exception):
    """Base exception for serial link errors"""
    pass


class LinkIOError(LinkError):
    """Port could not be opened, was closed unexpectedly, or a write failed"""
    pass


class LinkTimeout(LinkIOError):
    """No usable reply arrived within the allotted time"""

    def __init__(self, phase: str, timeout: float, detail: str = ""):
        self.phase = phase
        self.timeout = timeout
        message = f"Timed out after {timeout:.2f}s during {phase}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class PortBusyError(LinkError):
    """Another operation already owns the port"""
    pass


class PortHandle:
    """
    Line-oriented serial link to one FAST interface.

    FAST commands and replies are ASCII lines terminated by a carriage
    return. Partial lines are buffered across reads.

    Example:
        port = PortHandle("/dev/ttyACM0")
        port.open()
        port.send_line("ID:")
        reply = port.read_line(timeout=0.3)
        port.close()
    """

    def __init__(
        self,
        name: str,
        settings: Optional[LinkSettings] = None,
        ser=None,
    ):
        """
        Initialize the handle.

        Args:
            name: Serial port (e.g., "/dev/ttyACM0", "COM3")
            settings: Line settings (defaults to LinkSettings())
            ser: Already-open serial-like object to use instead of opening ``name``
        """
        self.name = name
        self.settings = settings or LinkSettings()
        self.ser = ser
        self._buffer = bytearray()
        self._owner = threading.RLock()

    def __repr__(self) -> str:
        return f"PortHandle({self.name!r})"

    @property
    def is_open(self) -> bool:
        return bool(self.ser is not None and self.ser.is_open)

    def open(self) -> None:
        """
        Open the serial port with the FAST line settings.

        Raises:
            LinkIOError: If the port cannot be opened
        """
        if self.is_open:
            return
        try:
            self.ser = serial.Serial(
                port=self.name,
                baudrate=self.settings.baudrate,
                bytesize=8,
                parity='N',
                stopbits=1,
                timeout=self.settings.read_timeout,
                write_timeout=self.settings.read_timeout,
                rtscts=False,
                dsrdtr=False,
            )
            self.ser.dtr = True
            self.ser.reset_input_buffer()
            self.ser.reset_output_buffer()
            logger.debug(
                f"Opened {self.name} at {self.settings.baudrate} bps "
                f"(timeout={self.settings.read_timeout}s)"
            )
        except (serial.SerialException, OSError) as e:
            raise LinkIOError(f"Cannot open port {self.name}: {e}")

    def close(self) -> None:
        """Close serial port."""
        if self.is_open:
            self.ser.close()
            logger.debug(f"Closed {self.name}")
        self._buffer.clear()

    def __enter__(self) -> "PortHandle":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @contextmanager
    def exclusive(self) -> Iterator["PortHandle"]:
        """
        Hold the port for one operation.

        Re-entrant for the owning thread, so a flash session can run its
        post-flash identification on the port it already holds.

        Raises:
            PortBusyError: If another thread owns the port
        """
        if not self._owner.acquire(blocking=False):
            raise PortBusyError(f"{self.name} is in use by another operation")
        try:
            yield self
        finally:
            self._owner.release()

    def _require_open(self) -> None:
        if not self.is_open:
            raise LinkIOError(f"Serial port {self.name} not open")

    def discard_input(self) -> None:
        """Drop anything already received, including buffered partial lines."""
        self._require_open()
        try:
            self.ser.reset_input_buffer()
        except (serial.SerialException, OSError) as e:
            raise LinkIOError(f"Reset error on {self.name}: {e}")
        if self._buffer:
            logger.debug(f"Discarded {len(self._buffer)} buffered bytes on {self.name}")
        self._buffer.clear()

    def send_line(self, line: str) -> None:
        """
        Send one command line (the terminator is appended).

        Raises:
            LinkIOError: If the write fails or is short
        """
        self._require_open()
        data = line.encode("ascii") + TERMINATOR
        try:
            written = self.ser.write(data)
            self.ser.flush()
        except (serial.SerialException, OSError) as e:
            raise LinkIOError(f"Write error on {self.name}: {e}")
        if written is not None and written != len(data):
            raise LinkIOError(
                f"Incomplete write on {self.name}: sent {written}/{len(data)} bytes"
            )
        logger.debug(f">>> {line[:64]}" + ("..." if len(line) > 64 else ""))

    def _pop_line(self) -> Optional[str]:
        while True:
            end = self._buffer.find(TERMINATOR)
            if end < 0:
                return None
            raw = bytes(self._buffer[:end])
            del self._buffer[:end + 1]
            line = raw.decode("ascii", errors="replace").strip()
            if line:
                return line

    def read_line(self, timeout: float) -> Optional[str]:
        """
        Read the next non-empty reply line.

        Args:
            timeout: Upper bound on the wait (seconds)

        Returns:
            The line without its terminator, or None if nothing complete
            arrived in time.

        Raises:
            LinkIOError: If the port fails while reading
        """
        self._require_open()
        line = self._pop_line()
        if line is not None:
            logger.debug(f"<<< {line}")
            return line

        deadline = time.monotonic() + timeout
        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self.ser.timeout = remaining
                data = self.ser.read_until(TERMINATOR)
                if data:
                    self._buffer.extend(data)
                line = self._pop_line()
                if line is not None:
                    logger.debug(f"<<< {line}")
                    return line
                if not data:
                    return None
        except (serial.SerialException, OSError) as e:
            raise LinkIOError(f"Read error on {self.name}: {e}")
        finally:
            if self.ser is not None and self.ser.is_open:
                self.ser.timeout = self.settings.read_timeout


def list_candidate_ports(settings: Optional[LinkSettings] = None) -> List[str]:
    """
    List OS-visible serial ports, filtered by vendor id when one is configured.

    Returns:
        Device names in the order pyserial reports them.
    """
    settings = settings or LinkSettings()
    names = []
    for info in serial.tools.list_ports.comports():
        if settings.vendor_id is not None and info.vid != settings.vendor_id:
            logger.debug(f"Skipping {info.device} (vid={info.vid})")
            continue
        names.append(info.device)
    return names


def open_port(name: str, settings: Optional[LinkSettings] = None) -> PortHandle:
    """
    Open a link to one port.

    Args:
        name: Serial port name
        settings: Line settings

    Returns:
        PortHandle instance (already open)
    """
    port = PortHandle(name, settings)
    port.open()
    return port


def enumerate_ports(settings: Optional[LinkSettings] = None) -> List[PortHandle]:
    """
    Open every candidate port.

    Ports that fail to open (permission denied, device busy) are skipped
    with a warning; the rest are returned open. An empty list is a valid
    result.
    """
    settings = settings or LinkSettings()
    handles = []
    for name in list_candidate_ports(settings):
        try:
            handles.append(open_port(name, settings))
        except LinkIOError as e:
            logger.warning(f"Skipping {name}: {e}")
    logger.info(f"Opened {len(handles)} candidate serial port(s)")
    return handles
