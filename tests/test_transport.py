"""Tests for the line-oriented serial link."""

import threading
from unittest.mock import MagicMock

import pytest
import serial

from fast_board_flasher.protocol import transport
from fast_board_flasher.protocol.settings import LinkSettings
from fast_board_flasher.protocol.transport import (
    LinkIOError,
    LinkTimeout,
    PortBusyError,
    PortHandle,
    enumerate_ports,
    list_candidate_ports,
)


def make_port(reads=None, settings=None):
    ser = MagicMock()
    ser.is_open = True
    ser.read_until.side_effect = list(reads or []) + [b""] * 10
    ser.write.side_effect = lambda data: len(data)
    return PortHandle("COM7", settings or LinkSettings(), ser=ser), ser


class TestReadLine:
    """Replies are split on carriage returns and buffered across reads."""

    def test_line_split_across_reads(self):
        port, _ = make_port([b"ID:NET FP", b"-CPU-2000 02.28\r"])
        assert port.read_line(0.5) == "ID:NET FP-CPU-2000 02.28"

    def test_two_lines_in_one_read(self):
        port, ser = make_port([b"BE:P\rBD:0000,P\r"])
        assert port.read_line(0.5) == "BE:P"
        assert port.read_line(0.5) == "BD:0000,P"
        assert ser.read_until.call_count == 1

    def test_empty_lines_skipped(self):
        port, _ = make_port([b"\r\r\nBE:P\r"])
        assert port.read_line(0.5) == "BE:P"

    def test_silence_returns_none(self):
        port, _ = make_port([])
        assert port.read_line(0.1) is None

    def test_timeout_restored_after_read(self):
        settings = LinkSettings(read_timeout=0.25)
        port, ser = make_port([b"BE:P\r"], settings)
        port.read_line(0.5)
        assert ser.timeout == 0.25

    def test_serial_exception_becomes_link_error(self):
        port, ser = make_port()
        ser.read_until.side_effect = serial.SerialException("gone")
        with pytest.raises(LinkIOError):
            port.read_line(0.1)

    def test_discard_input_drops_partial_line(self):
        port, ser = make_port([b"garbage", b"", b"BE:P\r"])
        assert port.read_line(0.5) is None
        port.discard_input()
        ser.reset_input_buffer.assert_called()
        assert port.read_line(0.5) == "BE:P"


class TestSendLine:
    """Commands are written as ASCII with a CR terminator."""

    def test_terminator_appended(self):
        port, ser = make_port()
        port.send_line("ID@B4:")
        ser.write.assert_called_once_with(b"ID@B4:\r")
        ser.flush.assert_called_once()

    def test_short_write_is_error(self):
        port, ser = make_port()
        ser.write.side_effect = lambda data: 2
        with pytest.raises(LinkIOError, match="Incomplete write"):
            port.send_line("ID:")

    def test_write_exception_is_error(self):
        port, ser = make_port()
        ser.write.side_effect = serial.SerialException("unplugged")
        with pytest.raises(LinkIOError):
            port.send_line("ID:")

    def test_closed_port(self):
        port = PortHandle("COM9")
        with pytest.raises(LinkIOError, match="not open"):
            port.send_line("ID:")


class TestOpen:
    """Opening applies the FAST line settings."""

    def test_open_settings(self, monkeypatch):
        fake = MagicMock()
        monkeypatch.setattr(transport.serial, "Serial", fake)
        port = PortHandle("/dev/ttyACM0")
        port.open()

        kwargs = fake.call_args.kwargs
        assert kwargs["baudrate"] == 921_600
        assert kwargs["bytesize"] == 8
        assert kwargs["parity"] == "N"
        assert kwargs["stopbits"] == 1
        assert kwargs["rtscts"] is False
        assert fake.return_value.dtr is True

    def test_open_failure(self, monkeypatch):
        monkeypatch.setattr(
            transport.serial,
            "Serial",
            MagicMock(side_effect=serial.SerialException("Permission denied")),
        )
        with pytest.raises(LinkIOError, match="Permission denied"):
            PortHandle("/dev/ttyACM0").open()


class TestExclusive:
    """Only one operation may own a port at a time."""

    def test_reentrant_in_owner_thread(self):
        port, _ = make_port()
        with port.exclusive():
            with port.exclusive():
                pass

    def test_other_thread_is_refused(self):
        port, _ = make_port()
        errors = []

        def contender():
            try:
                with port.exclusive():
                    pass
            except PortBusyError as e:
                errors.append(e)

        with port.exclusive():
            t = threading.Thread(target=contender)
            t.start()
            t.join(5)

        assert len(errors) == 1

    def test_released_after_use(self):
        port, _ = make_port()
        with port.exclusive():
            pass
        done = []

        def user():
            with port.exclusive():
                done.append(True)

        t = threading.Thread(target=user)
        t.start()
        t.join(5)
        assert done


def test_link_timeout_is_io_error():
    err = LinkTimeout("erase", 5.0)
    assert isinstance(err, LinkIOError)
    assert err.phase == "erase"
    assert "erase" in str(err)


def test_list_candidate_ports_vendor_filter(monkeypatch):
    fast = MagicMock(device="/dev/ttyACM0", vid=0x2E8A)
    other = MagicMock(device="/dev/ttyUSB0", vid=0x0403)
    monkeypatch.setattr(transport.serial.tools.list_ports, "comports", lambda: [fast, other])

    assert list_candidate_ports(LinkSettings()) == ["/dev/ttyACM0", "/dev/ttyUSB0"]
    assert list_candidate_ports(LinkSettings(vendor_id=0x2E8A)) == ["/dev/ttyACM0"]


def test_enumerate_ports_skips_unopenable(monkeypatch):
    monkeypatch.setattr(transport, "list_candidate_ports", lambda settings: ["COM3", "COM4"])

    def fake_open(name, settings):
        if name == "COM3":
            raise LinkIOError("Cannot open port COM3: busy")
        return PortHandle(name, settings, ser=MagicMock(is_open=True))

    monkeypatch.setattr(transport, "open_port", fake_open)
    ports = enumerate_ports()
    assert [p.name for p in ports] == ["COM4"]


def test_enumerate_ports_empty(monkeypatch):
    monkeypatch.setattr(transport, "list_candidate_ports", lambda settings: [])
    assert enumerate_ports() == []
