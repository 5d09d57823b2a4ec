"""Asterisk Gateway Interface (AGI) session over an asyncio stream.

A session starts by reading the `agi_<key>: <value>` preamble Asterisk
sends when the dialplan runs `AGI(agi://...)`, terminated by a blank line.
After that every command gets exactly one reply such as

    200 result=1 (some value) endpos=1234

Replies carry no request id and are correlated by arrival order only, so a
session never has more than one command on the wire.
"""

from __future__ import annotations

import asyncio
import contextlib
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from ..config import AGIConfig
from ..logging_config import get_logger

logger = get_logger(__name__)

_RESULT_RE = re.compile(
    r"^(?P<code>\d{3})\s+result=(?P<result>-?\d+)"
    r"(?:\s+\((?P<data>.*)\))?"
    r"(?P<extras>(?:\s+[\w-]+=\S*)*)\s*$"
)
_CODE_RE = re.compile(r"^(?P<code>\d{3})[ -](?P<message>.*)$")


class AGIError(Exception):
    """Asterisk rejected a command (non-200 reply)."""

    def __init__(self, response: "AGIResponse"):
        super().__init__(f"AGI command failed: {response.raw}")
        self.response = response


class AGISessionClosed(Exception):
    """The channel hung up or the socket closed."""


class AGITimeout(Exception):
    """No reply arrived within the command's timeout."""


class AGISessionState(str, Enum):
    AWAITING_PREAMBLE = "awaiting_preamble"
    READY = "ready"
    COMMAND_OUTSTANDING = "command_outstanding"
    ENDED = "ended"


@dataclass
class AGIResponse:
    code: int
    result: Optional[int] = None
    data: Optional[str] = None
    extras: Dict[str, str] = field(default_factory=dict)
    raw: str = ""

    @property
    def ok(self) -> bool:
        return self.code == 200


def parse_response(lines: List[str]) -> AGIResponse:
    """Parse one reply. `lines` holds a single line except for `520-` usage blocks."""
    raw = "\n".join(lines)
    first = lines[0].strip()
    match = _RESULT_RE.match(first)
    if match:
        extras = {}
        for pair in match.group("extras").split():
            key, _, value = pair.partition("=")
            extras[key] = value
        return AGIResponse(
            code=int(match.group("code")),
            result=int(match.group("result")),
            data=match.group("data"),
            extras=extras,
            raw=raw,
        )
    match = _CODE_RE.match(first)
    if match:
        parts = [match.group("message").strip()]
        for line in lines[1:]:
            # Usage text lines are bare; the closing line repeats the code
            parts.append(line[4:].strip() if _CODE_RE.match(line) else line.strip())
        message = " ".join(part for part in parts if part)
        return AGIResponse(code=int(match.group("code")), data=message, raw=raw)
    raise ValueError(f"Unparseable AGI reply: {first!r}")


def _quote(value: str) -> str:
    return '"' + str(value).replace("\\", "\\\\").replace('"', '\\"') + '"'


class AGISession:
    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        config: Optional[AGIConfig] = None,
    ):
        self._reader = reader
        self._writer = writer
        self.config = config or AGIConfig()
        self.variables: Dict[str, str] = {}
        self.state = AGISessionState.AWAITING_PREAMBLE
        self.hung_up = False
        self._lock = asyncio.Lock()
        self._pending: Optional[asyncio.Future] = None
        self._stale_replies = 0
        self._reader_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self, timeout: Optional[float] = None) -> Dict[str, str]:
        """Read the preamble and move to ready."""
        if self.state is not AGISessionState.AWAITING_PREAMBLE:
            raise RuntimeError(f"AGI session already started (state={self.state.value})")
        try:
            await asyncio.wait_for(self._read_preamble(), timeout or self.config.command_timeout_sec)
        except asyncio.TimeoutError:
            await self.close()
            raise AGITimeout("AGI preamble not received")
        if self.state is AGISessionState.ENDED:
            raise AGISessionClosed("connection closed during AGI preamble")
        self.state = AGISessionState.READY
        self._reader_task = asyncio.create_task(self._read_replies())
        logger.info(
            "AGI session ready",
            channel=self.channel,
            uniqueid=self.uniqueid,
            callerid=self.variables.get("callerid"),
        )
        return self.variables

    async def _read_preamble(self) -> None:
        while True:
            raw = await self._reader.readline()
            if not raw:
                self._end("eof during preamble")
                return
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if not line.strip():
                return
            key, sep, value = line.partition(":")
            if not sep:
                logger.debug("Ignoring malformed AGI preamble line", line=line)
                continue
            key = key.strip()
            if key.startswith("agi_"):
                key = key[4:]
            self.variables[key] = value.strip()

    async def close(self) -> None:
        self._end("closed")
        if self._reader_task and not self._reader_task.done():
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
        self._writer.close()
        with contextlib.suppress(Exception):
            await self._writer.wait_closed()

    def _end(self, reason: str) -> None:
        if self.state is AGISessionState.ENDED:
            return
        self.state = AGISessionState.ENDED
        if self._pending is not None and not self._pending.done():
            self._pending.set_exception(AGISessionClosed(reason))
        logger.debug("AGI session ended", channel=self.channel, reason=reason)

    @property
    def ended(self) -> bool:
        return self.state is AGISessionState.ENDED

    @property
    def channel(self) -> Optional[str]:
        return self.variables.get("channel")

    @property
    def uniqueid(self) -> Optional[str]:
        return self.variables.get("uniqueid")

    @property
    def arguments(self) -> List[str]:
        args = []
        index = 1
        while f"arg_{index}" in self.variables:
            args.append(self.variables[f"arg_{index}"])
            index += 1
        return args

    # ------------------------------------------------------------------
    # Reply routing
    # ------------------------------------------------------------------
    async def _read_replies(self) -> None:
        try:
            while True:
                raw = await self._reader.readline()
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                if not line:
                    continue
                if line.strip() == "HANGUP":
                    self.hung_up = True
                    logger.info("AGI channel hung up", channel=self.channel)
                    continue
                lines = [line]
                if line.startswith("520-"):
                    while True:
                        more = await self._reader.readline()
                        if not more:
                            break
                        text = more.decode("utf-8", errors="replace").rstrip("\r\n")
                        lines.append(text)
                        if text.startswith("520 "):
                            break
                self._deliver(lines)
        except (ConnectionError, asyncio.IncompleteReadError) as exc:
            logger.debug("AGI socket read failed", channel=self.channel, error=str(exc))
        finally:
            self._end("eof")

    def _deliver(self, lines: List[str]) -> None:
        if self._stale_replies:
            # Late reply to a command that already timed out
            self._stale_replies -= 1
            logger.debug("Discarding late AGI reply", line=lines[0])
            return
        if self._pending is None or self._pending.done():
            logger.warning("Unsolicited AGI reply", line=lines[0], channel=self.channel)
            return
        try:
            self._pending.set_result(parse_response(lines))
        except ValueError as exc:
            self._pending.set_exception(exc)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    async def send_command(self, command: str, timeout: Optional[float] = None) -> AGIResponse:
        """Send one command and wait for its reply; callers queue on the session lock."""
        timeout = self.config.command_timeout_sec if timeout is None else timeout
        async with self._lock:
            if self.state is not AGISessionState.READY:
                raise AGISessionClosed(f"AGI session not ready (state={self.state.value})")
            future = asyncio.get_running_loop().create_future()
            self._pending = future
            self.state = AGISessionState.COMMAND_OUTSTANDING
            try:
                self._writer.write(f"{command}\n".encode("utf-8"))
                await self._writer.drain()
                response = await asyncio.wait_for(future, timeout)
            except asyncio.TimeoutError:
                self._stale_replies += 1
                logger.warning("AGI command timed out", command=command.split(" ", 1)[0], timeout=timeout)
                raise AGITimeout(f"no reply to {command!r} within {timeout}s")
            except ConnectionError as exc:
                self._end("write failed")
                raise AGISessionClosed(str(exc)) from exc
            finally:
                self._pending = None
                if self.state is AGISessionState.COMMAND_OUTSTANDING:
                    self.state = AGISessionState.READY
        logger.debug("AGI reply", command=command.split(" ", 1)[0], code=response.code, result=response.result)
        return response

    async def _checked(self, command: str, timeout: Optional[float] = None) -> AGIResponse:
        response = await self.send_command(command, timeout)
        if not response.ok:
            raise AGIError(response)
        return response

    async def answer(self) -> AGIResponse:
        return await self._checked("ANSWER")

    async def hangup(self) -> None:
        """Hang up the channel; a session that already ended is not an error."""
        if self.ended:
            return
        with contextlib.suppress(AGISessionClosed, AGITimeout, AGIError):
            await self._checked("HANGUP")

    async def exec(self, application: str, *args: str, timeout: Optional[float] = None) -> AGIResponse:
        command = f"EXEC {application}"
        if args:
            command += " " + _quote(",".join(str(a) for a in args))
        return await self._checked(command, timeout)

    async def playback(self, filename: str, timeout: Optional[float] = None) -> AGIResponse:
        return await self.exec("Playback", filename, timeout=timeout)

    async def stream_file(self, filename: str, escape_digits: str = "", timeout: Optional[float] = None) -> AGIResponse:
        return await self._checked(f"STREAM FILE {filename} {_quote(escape_digits)}", timeout)

    async def record_file(
        self,
        path: str,
        fmt: str = "wav",
        escape_digits: str = "#",
        timeout_ms: int = 8000,
        silence_sec: Optional[int] = None,
        beep: bool = False,
    ) -> AGIResponse:
        """RECORD FILE; `path` has no extension. Blocks until silence, timeout or a digit."""
        command = f"RECORD FILE {path} {fmt} {_quote(escape_digits)} {int(timeout_ms)}"
        if beep:
            command += " BEEP"
        if silence_sec:
            command += f" s={max(1, int(round(silence_sec)))}"
        # Asterisk replies only when recording stops
        timeout = timeout_ms / 1000.0 + self.config.command_timeout_sec
        return await self._checked(command, timeout)

    async def get_variable(self, name: str) -> Optional[str]:
        response = await self._checked(f"GET VARIABLE {name}", self.config.variable_timeout_sec)
        if response.result == 1:
            return response.data
        return None

    async def set_variable(self, name: str, value: str) -> AGIResponse:
        return await self._checked(f"SET VARIABLE {name} {_quote(value)}", self.config.variable_timeout_sec)

    async def verbose(self, message: str, level: int = 1) -> AGIResponse:
        return await self._checked(f"VERBOSE {_quote(message)} {int(level)}", self.config.variable_timeout_sec)

    async def wait(self, seconds: float) -> AGIResponse:
        return await self.exec("Wait", str(seconds), timeout=seconds + self.config.command_timeout_sec)
