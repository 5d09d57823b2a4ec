"""
AGI session tests: preamble parsing, reply grammar, single outstanding
command discipline, timeouts and session end.
"""

import asyncio

import pytest

from voicebot.agi.server import AGIServer
from voicebot.agi.session import (
    AGIError,
    AGISession,
    AGISessionClosed,
    AGISessionState,
    AGITimeout,
    parse_response,
)
from voicebot.config import AGIConfig

PREAMBLE = (
    "agi_request: agi://127.0.0.1:4573\n"
    "agi_channel: PJSIP/trunk-navetec-00000001\n"
    "agi_uniqueid: 1700000000.12\n"
    "agi_callerid: 4421234567\n"
    "agi_arg_1: 4421234567\n"
    "agi_arg_2: contact-7\n"
    "\n"
)


class FakeWriter:
    """Records written commands; optionally answers each with the next scripted reply."""

    def __init__(self, reader, replies=None):
        self.reader = reader
        self.replies = list(replies or [])
        self.lines = []
        self.closed = False

    def write(self, data):
        self.lines.append(data.decode().rstrip("\n"))
        if self.replies:
            reply = self.replies.pop(0)
            if reply is not None:
                self.reader.feed_data(reply.encode())

    async def drain(self):
        pass

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass


async def _session(replies=None, timeout=1.0):
    reader = asyncio.StreamReader()
    reader.feed_data(PREAMBLE.encode())
    writer = FakeWriter(reader, replies)
    session = AGISession(reader, writer, AGIConfig(command_timeout_sec=timeout, variable_timeout_sec=timeout))
    await session.start()
    return session, reader, writer


class TestParseResponse:
    def test_result_with_data_and_extras(self):
        response = parse_response(["200 result=1 (4421234567) endpos=8000"])

        assert response.ok
        assert response.result == 1
        assert response.data == "4421234567"
        assert response.extras == {"endpos": "8000"}

    def test_negative_result(self):
        response = parse_response(["200 result=-1"])

        assert response.result == -1
        assert response.data is None

    def test_error_code(self):
        response = parse_response(["510 Invalid or unknown command"])

        assert not response.ok
        assert response.code == 510
        assert response.data == "Invalid or unknown command"

    def test_usage_block(self):
        response = parse_response(["520-Invalid command syntax.  Proper usage follows:", "Usage: ANSWER", "520 End of proper usage."])

        assert response.code == 520
        assert "Usage: ANSWER" in response.data

    def test_garbage_rejected(self):
        with pytest.raises(ValueError):
            parse_response(["hello"])


@pytest.mark.asyncio
class TestAGISession:
    async def test_preamble_parsed(self):
        session, _, _ = await _session()

        assert session.state is AGISessionState.READY
        assert session.channel == "PJSIP/trunk-navetec-00000001"
        assert session.uniqueid == "1700000000.12"
        assert session.arguments == ["4421234567", "contact-7"]
        await session.close()

    async def test_get_variable(self):
        session, _, writer = await _session(["200 result=1 (4421234567)\n", "200 result=0\n"])

        assert await session.get_variable("VOICEBOT_PHONE") == "4421234567"
        assert await session.get_variable("MISSING") is None
        assert writer.lines == ["GET VARIABLE VOICEBOT_PHONE", "GET VARIABLE MISSING"]
        await session.close()

    async def test_stream_and_record_commands(self):
        session, _, writer = await _session(["200 result=0 endpos=16000\n", "200 result=0 endpos=24000\n"])

        played = await session.stream_file("custom/tts_1", escape_digits="#")
        recorded = await session.record_file("/tmp/rec/turn_1", "wav", escape_digits="#", timeout_ms=3000, silence_sec=1.0)

        assert played.result == 0
        assert recorded.extras["endpos"] == "24000"
        assert writer.lines[0] == 'STREAM FILE custom/tts_1 "#"'
        assert writer.lines[1] == 'RECORD FILE /tmp/rec/turn_1 wav "#" 3000 s=1'
        await session.close()

    async def test_exec_quotes_arguments(self):
        session, _, writer = await _session(["200 result=0\n"])

        await session.exec("Playback", "custom/hola", "noanswer")

        assert writer.lines == ['EXEC Playback "custom/hola,noanswer"']
        await session.close()

    async def test_error_reply_raises(self):
        session, _, _ = await _session(["510 Invalid or unknown command\n"])

        with pytest.raises(AGIError) as exc_info:
            await session.answer()

        assert exc_info.value.response.code == 510
        assert session.state is AGISessionState.READY
        await session.close()

    async def test_one_command_outstanding_at_a_time(self):
        session, reader, writer = await _session()

        first = asyncio.create_task(session.get_variable("A"))
        second = asyncio.create_task(session.get_variable("B"))
        await asyncio.sleep(0.02)

        assert writer.lines == ["GET VARIABLE A"]
        assert session.state is AGISessionState.COMMAND_OUTSTANDING

        reader.feed_data(b"200 result=1 (a)\n")
        assert await first == "a"
        await asyncio.sleep(0.02)
        assert writer.lines == ["GET VARIABLE A", "GET VARIABLE B"]

        reader.feed_data(b"200 result=1 (b)\n")
        assert await second == "b"
        await session.close()

    async def test_timeout_then_late_reply_discarded(self):
        session, reader, writer = await _session([None, "200 result=1 (fresh)\n"], timeout=0.05)

        with pytest.raises(AGITimeout):
            await session.get_variable("SLOW")
        reader.feed_data(b"200 result=1 (stale)\n")

        assert await session.get_variable("NEXT") == "fresh"
        await session.close()

    async def test_socket_close_fails_pending_command(self):
        session, reader, _ = await _session([None])

        pending = asyncio.create_task(session.send_command("ANSWER"))
        await asyncio.sleep(0.02)
        reader.feed_eof()

        with pytest.raises(AGISessionClosed):
            await pending
        assert session.ended
        with pytest.raises(AGISessionClosed):
            await session.send_command("ANSWER")
        # Hanging up an ended session is a no-op
        await session.hangup()

    async def test_hangup_notice_sets_flag(self):
        session, reader, _ = await _session()

        reader.feed_data(b"HANGUP\n")
        await asyncio.sleep(0.02)

        assert session.hung_up
        await session.close()

    async def test_preamble_eof(self):
        reader = asyncio.StreamReader()
        reader.feed_data(b"agi_channel: PJSIP/x\n")
        reader.feed_eof()
        session = AGISession(reader, FakeWriter(reader), AGIConfig())

        with pytest.raises(AGISessionClosed):
            await session.start()


@pytest.mark.asyncio
async def test_server_hands_sessions_to_callback():
    seen = []

    async def on_session(session):
        seen.append((session.channel, await session.get_variable("VOICEBOT_PHONE")))

    server = AGIServer(AGIConfig(host="127.0.0.1", port=0), on_session)
    await server.start()
    try:
        reader, writer = await asyncio.open_connection("127.0.0.1", server.port)
        writer.write(PREAMBLE.encode())
        await writer.drain()

        command = await asyncio.wait_for(reader.readline(), 1.0)
        assert command == b"GET VARIABLE VOICEBOT_PHONE\n"
        writer.write(b"200 result=1 (4421234567)\n")
        await writer.drain()

        # Server closes the socket once the callback returns
        assert await asyncio.wait_for(reader.read(), 1.0) == b""
        writer.close()
    finally:
        await server.stop()

    assert seen == [("PJSIP/trunk-navetec-00000001", "4421234567")]
