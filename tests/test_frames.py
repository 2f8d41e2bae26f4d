import pytest

from fast_board_flasher.protocol.frames import (
    build_chunk_command,
    build_commit_command,
    build_erase_command,
    build_identify_command,
    build_node_query,
    chunk_image,
    completion_token,
    crc16_xmodem,
    normalize_version,
    parse_ack,
    parse_chunk_ack,
    parse_id_reply,
    parse_nn_reply,
    version_sort_key,
)


def test_crc16_xmodem_check_vector():
    # Standard XMODEM check value for "123456789"
    assert crc16_xmodem(b"123456789") == 0x31C3


def test_crc16_xmodem_empty():
    assert crc16_xmodem(b"") == 0


class TestNormalizeVersion:
    """Versions are compared as major.MM strings."""

    def test_leading_zero_major(self):
        assert normalize_version("02.28") == "2.28"

    def test_single_digit_minor_padded(self):
        assert normalize_version("1.5") == "1.05"

    def test_trailing_annotation_dropped(self):
        assert normalize_version("0.48,") == "0.48"
        assert normalize_version(" 1.07 \r") == "1.07"

    def test_major_only(self):
        assert normalize_version("3") == "3"

    def test_v_prefix_dropped(self):
        assert normalize_version("v1.3") == "1.03"
        assert normalize_version("V2.31") == "2.31"

    def test_non_numeric_returned_stripped(self):
        assert normalize_version(" beta ") == "beta"

    def test_sort_key_is_numeric(self):
        assert version_sort_key("1.10") > version_sort_key("1.9")
        assert version_sort_key("2.0") > version_sort_key("1.99")


class TestCommandBuilders:
    """Command lines as sent on the wire (terminator added by the link)."""

    def test_identify(self):
        assert build_identify_command() == "ID:"
        assert build_identify_command("B4") == "ID@B4:"

    def test_node_query_two_digits(self):
        assert build_node_query(3) == "NN:03"
        assert build_node_query(12) == "NN:12"

    def test_erase_hex_fields(self):
        assert build_erase_command(2560, 10) == "BE:A00,A"
        assert build_erase_command(160, 10, "B4") == "BE@B4:A0,A"

    def test_chunk_frame(self):
        chunk = b"\x01\x02\xAB"
        crc = crc16_xmodem(chunk)
        assert build_chunk_command(1, chunk) == f"BD:0001,{crc:04X},0102AB"
        assert build_chunk_command(0x1F, chunk, "02") == f"BD@02:001F,{crc:04X},0102AB"

    def test_chunk_sequence_range(self):
        with pytest.raises(ValueError):
            build_chunk_command(0x10000, b"x")
        with pytest.raises(ValueError):
            build_chunk_command(-1, b"x")

    def test_commit_carries_image_crc(self):
        image = b"firmware"
        assert build_commit_command(image, "B4") == f"BC@B4:{crc16_xmodem(image):04X}"

    def test_completion_tokens(self):
        assert completion_token("NET") == "!B:02"
        assert completion_token("EXP") == "!BL2040:02"


class TestChunkImage:
    """Images split into fixed-size chunks without padding."""

    def test_short_final_chunk(self):
        chunks = chunk_image(b"x" * 600, 256)
        assert [offset for offset, _ in chunks] == [0, 256, 512]
        assert [len(c) for _, c in chunks] == [256, 256, 88]

    def test_exact_multiple(self):
        assert len(chunk_image(b"x" * 512, 256)) == 2

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            chunk_image(b"x", 0)


class TestParseIdReply:
    """ID: replies from NET and EXP boards."""

    def test_net_reply(self):
        reply = parse_id_reply("ID:NET FP-CPU-2000 02.28")
        assert reply.protocol == "NET"
        assert reply.board_name == "FP-CPU-2000"
        assert reply.version == "2.28"

    def test_exp_reply_with_comma_and_v_prefix(self):
        reply = parse_id_reply("ID:EXP, FP-EXP-0091 v0.48")
        assert reply.protocol == "EXP"
        assert reply.board_name == "FP-EXP-0091"
        assert reply.version == "0.48"

    def test_reply_after_noise(self):
        reply = parse_id_reply("\x00ID:EXP FP-EXP-0071 1.2")
        assert reply.board_name == "FP-EXP-0071"
        assert reply.version == "1.02"

    @pytest.mark.parametrize("line", [
        "ID:FOO FP-CPU-2000 1.0",
        "ID:NET FP-CPU-2000",
        "ID:NET FP-CPU-2000 abc",
        "hello world",
        "",
    ])
    def test_invalid_replies(self, line):
        assert parse_id_reply(line) is None


class TestParseNodeReply:
    """NN: replies listing node boards."""

    def test_full_reply(self):
        reply = parse_nn_reply("NN:03,FP-I/O-3208-2,01.05,32,08")
        assert reply.node_id == "03"
        assert reply.board_name == "FP-I/O-3208-2"
        assert reply.version == "1.05"
        assert reply.extra_fields == ["32", "08"]

    def test_not_found(self):
        assert parse_nn_reply("!Node Not Found!") is None

    def test_missing_fields(self):
        assert parse_nn_reply("NN:03,FP-I/O-3208") is None
        assert parse_nn_reply("NN:03,FP-I/O-3208,xx") is None


class TestAcks:
    """Erase/commit acks and per-chunk acks."""

    def test_command_ack(self):
        assert parse_ack("BE:P", "BE") is True
        assert parse_ack("BE:F", "BE") is False
        assert parse_ack("BC:F", "BC") is False

    def test_command_ack_ignores_other_lines(self):
        assert parse_ack("ID:NET FP-CPU-2000 2.28", "BE") is None
        assert parse_ack("BC:ABCD", "BC") is None

    def test_chunk_ack(self):
        assert parse_chunk_ack("BD:0003,P") == (3, True)
        assert parse_chunk_ack("BD:000A,F") == (10, False)

    def test_chunk_echo_is_not_an_ack(self):
        assert parse_chunk_ack("BD:0001,ABCD,0102") is None
        assert parse_chunk_ack("BD:0001,FFFF,0F") is None
