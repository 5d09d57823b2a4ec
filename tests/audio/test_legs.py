"""Media leg tests: ARI bridge delegation and AGI command translation."""

import pytest

from voicebot.agi.session import AGIResponse, AGITimeout
from voicebot.audio.legs import AGILeg, BridgeLeg


class FakeARI:
    def __init__(self):
        self.calls = []
        self.gone = set()

    async def play_audio(self, bridge_id, asset, timeout=None):
        self.calls.append(("play", bridge_id, asset, timeout))
        return True

    async def record_audio(self, bridge_id, name, max_duration, max_silence):
        self.calls.append(("record", bridge_id, name, max_duration, max_silence))
        return f"/spool/{name}.wav"

    async def hangup(self, channel_id):
        self.calls.append(("hangup", channel_id))
        self.gone.add(channel_id)

    def is_channel_gone(self, channel_id):
        return channel_id in self.gone


class FakeAGISession:
    channel = "PJSIP/trunk-0002"
    uniqueid = "1700000000.3"

    def __init__(self, result=0, error=None):
        self.result = result
        self.error = error
        self.commands = []
        self.hung_up = False
        self.ended = False

    async def stream_file(self, filename, escape_digits="", timeout=None):
        self.commands.append(("stream", filename, timeout))
        if self.error:
            raise self.error
        return AGIResponse(code=200, result=self.result)

    async def record_file(self, path, fmt="wav", escape_digits="#", timeout_ms=8000, silence_sec=None, beep=False):
        self.commands.append(("record", path, fmt, escape_digits, timeout_ms, silence_sec))
        if self.error:
            raise self.error
        return AGIResponse(code=200, result=self.result)

    async def hangup(self):
        self.ended = True


@pytest.mark.asyncio
class TestBridgeLeg:
    async def test_delegates_to_ari(self):
        ari = FakeARI()
        leg = BridgeLeg(ari, "chan-1", "br-1")

        assert await leg.play("custom/tts_1", timeout=4) is True
        assert await leg.record("turn_1", 8, 1.0) == "/spool/turn_1.wav"
        assert not leg.hung_up
        await leg.hangup()

        assert leg.hung_up
        assert ari.calls == [
            ("play", "br-1", "custom/tts_1", 4),
            ("record", "br-1", "turn_1", 8, 1.0),
            ("hangup", "chan-1"),
        ]


@pytest.mark.asyncio
class TestAGILeg:
    async def test_channel_identity(self, tmp_path):
        assert AGILeg(FakeAGISession(), str(tmp_path)).channel_id == "PJSIP/trunk-0002"

    @pytest.mark.parametrize("result, expected", [(0, True), (35, True), (-1, False)])
    async def test_play_result(self, tmp_path, result, expected):
        leg = AGILeg(FakeAGISession(result=result), str(tmp_path))

        assert await leg.play("custom/tts_1") is expected

    async def test_play_timeout_is_failure(self, tmp_path):
        leg = AGILeg(FakeAGISession(error=AGITimeout("slow")), str(tmp_path))

        assert await leg.play("custom/tts_1", timeout=2) is False

    async def test_record_builds_path_and_limits(self, tmp_path):
        session = FakeAGISession()
        recordings = tmp_path / "agi"
        leg = AGILeg(session, str(recordings), terminator="*")

        path = await leg.record("turn_5", 8, 1.5)

        assert path == str(recordings / "turn_5.wav")
        assert recordings.is_dir()
        assert session.commands == [("record", str(recordings / "turn_5"), "wav", "*", 8000, 1.5)]

    async def test_record_hangup_returns_none(self, tmp_path):
        leg = AGILeg(FakeAGISession(result=-1), str(tmp_path))

        assert await leg.record("turn_6", 8, 1) is None

    async def test_hung_up_reflects_session(self, tmp_path):
        session = FakeAGISession()
        leg = AGILeg(session, str(tmp_path))

        assert not leg.hung_up
        await leg.hangup()
        assert leg.hung_up
