"""
Asterisk ARI client: the dialer's telephony event bridge.

HTTP commands go through an aiohttp session; call lifecycle events arrive
over the ARI websocket. Raw ARI events are translated into three lifecycle
events the dialer subscribes to:

    call_answered  AnsweredCall  channel entered Stasis, answered and bridged
    call_ended     CallEnded     channel left Stasis or was destroyed
    call_failed    CallEnded     channel went busy before answer

Playback and recording commands return only once Asterisk reports
completion; a local watchdog is raced against the completion event so a
dead platform cannot wedge a call.
"""

import asyncio
import contextlib
import json
import math
import os
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from urllib.parse import quote

import aiohttp
import websockets
from prometheus_client import Counter
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential
from websockets.exceptions import ConnectionClosed, WebSocketException

from .config import AsteriskConfig
from .core.timers import ScheduledTask
from .logging_config import get_logger

logger = get_logger(__name__)

_ORIGINATIONS = Counter(
    "voicebot_originations_total",
    "Originate commands sent to Asterisk",
    labelnames=("outcome",),
)
_MEDIA_OPS = Counter(
    "voicebot_media_operations_total",
    "Bridge playback/record operations by outcome",
    labelnames=("operation", "outcome"),
)

_RETRYABLE = (ConnectionError, OSError, aiohttp.ClientError, asyncio.TimeoutError, WebSocketException)
_FAILED_STATES = {"Busy": "busy"}
# Hangup events can trail the dispatcher's cleanup; only the newest are remembered
GONE_CHANNELS_KEPT = 512


class OriginationError(Exception):
    """Asterisk refused or never acknowledged an originate command."""


class TelephonyUnavailable(ConnectionError):
    """The ARI control channel is gone and reconnection was exhausted."""


@dataclass
class AnsweredCall:
    phone_number: str
    channel_id: str
    bridge_id: Optional[str]
    args: List[str] = field(default_factory=list)
    leg: Any = None


@dataclass
class CallEnded:
    channel_id: str
    reason: str


EventHandler = Callable[[Any], Awaitable[None]]


class ARIClient:
    """A client for the Asterisk REST Interface (ARI)."""

    def __init__(
        self,
        config: AsteriskConfig,
        *,
        session_factory: Optional[Callable[..., aiohttp.ClientSession]] = None,
        ws_connect: Optional[Callable[[str], Awaitable[Any]]] = None,
    ):
        self.config = config
        self.app_name = config.app_name
        self.http_url = f"{config.scheme}://{config.host}:{config.port}/ari"
        ws_scheme = "wss" if config.scheme == "https" else "ws"
        self.ws_url = (
            f"{ws_scheme}://{config.host}:{config.port}/ari/events"
            f"?api_key={quote(config.username)}:{quote(config.password)}&app={quote(config.app_name)}"
        )
        self._session_factory = session_factory or aiohttp.ClientSession
        self._ws_connect = ws_connect or websockets.connect
        self.websocket = None
        self.http_session: Optional[aiohttp.ClientSession] = None
        self.running = False
        self._closing = False
        self.event_handlers: Dict[str, List[EventHandler]] = {}
        self._playback_waiters: Dict[str, asyncio.Future] = {}
        self._recording_waiters: Dict[str, asyncio.Future] = {}
        self._bridges: Dict[str, str] = {}
        self._gone_channels: "OrderedDict[str, None]" = OrderedDict()
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        """Open the HTTP session and event websocket, retrying with backoff."""
        logger.info("Connecting to ARI...", url=self.http_url, app=self.app_name)
        self._closing = False
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.connect_attempts),
                wait=wait_exponential(
                    multiplier=1,
                    min=self.config.reconnect_backoff_sec,
                    max=self.config.reconnect_backoff_max_sec,
                ),
                retry=retry_if_exception_type(_RETRYABLE),
                reraise=True,
            ):
                with attempt:
                    await self._open()
        except _RETRYABLE as exc:
            raise ConnectionError(f"ARI unreachable at {self.http_url}: {exc}") from exc

    async def _open(self) -> None:
        try:
            if self.http_session is None or self.http_session.closed:
                self.http_session = self._session_factory(
                    auth=aiohttp.BasicAuth(self.config.username, self.config.password),
                    timeout=aiohttp.ClientTimeout(total=self.config.connect_timeout_sec),
                )
            async with self.http_session.get(f"{self.http_url}/asterisk/info") as response:
                if response.status != 200:
                    raise ConnectionError(f"ARI HTTP endpoint returned status {response.status}")
            self.websocket = await asyncio.wait_for(self._ws_connect(self.ws_url), self.config.connect_timeout_sec)
        except _RETRYABLE as exc:
            logger.warning("ARI connection attempt failed", error=str(exc))
            raise
        self.running = True
        logger.info("Connected to ARI", url=self.http_url)

    async def _reconnect(self) -> None:
        if self.websocket is not None:
            with contextlib.suppress(Exception):
                await self.websocket.close()
            self.websocket = None
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.reconnect_attempts),
                wait=wait_exponential(
                    multiplier=1,
                    min=self.config.reconnect_backoff_sec,
                    max=self.config.reconnect_backoff_max_sec,
                ),
                retry=retry_if_exception_type(_RETRYABLE),
                reraise=True,
            ):
                with attempt:
                    await self._open()
        except _RETRYABLE as exc:
            raise ConnectionError(str(exc)) from exc

    async def listen(self) -> None:
        """Consume ARI events until `disconnect()`.

        Raises TelephonyUnavailable when the websocket drops and reconnection
        is exhausted.
        """
        if not self.running or self.websocket is None:
            raise RuntimeError("ARI client is not connected")
        logger.info("Starting ARI event listener")
        while not self._closing:
            try:
                async for message in self.websocket:
                    self._handle_message(message)
            except ConnectionClosed as exc:
                logger.debug("ARI websocket closed", code=getattr(exc, "code", None))
            if self._closing:
                break
            self.running = False
            logger.warning("ARI event stream lost; reconnecting")
            self._fail_waiters("event stream lost")
            try:
                await self._reconnect()
            except ConnectionError as exc:
                logger.error("ARI reconnection exhausted", attempts=self.config.reconnect_attempts, error=str(exc))
                raise TelephonyUnavailable(f"ARI reconnection failed: {exc}") from exc
        logger.info("ARI event listener stopped")

    async def disconnect(self) -> None:
        self._closing = True
        self.running = False
        self._fail_waiters("client disconnected")
        if self.websocket is not None:
            with contextlib.suppress(Exception):
                await self.websocket.close()
            self.websocket = None
        if self.http_session and not self.http_session.closed:
            await self.http_session.close()
        self.http_session = None
        for task in list(self._tasks):
            task.cancel()
        logger.info("Disconnected from ARI")

    def _fail_waiters(self, reason: str) -> None:
        for waiters in (self._playback_waiters, self._recording_waiters):
            for future in waiters.values():
                if not future.done():
                    future.set_exception(TelephonyUnavailable(reason))

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    def add_event_handler(self, event_type: str, handler: EventHandler) -> None:
        """Register a handler for a raw ARI event type or a lifecycle event."""
        self.event_handlers.setdefault(event_type, []).append(handler)
        logger.debug("Added event handler", event_type=event_type, handler=getattr(handler, "__name__", repr(handler)))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _emit(self, event_type: str, payload: Any) -> None:
        for handler in self.event_handlers.get(event_type, []):
            self._spawn(handler(payload))

    def _handle_message(self, message) -> None:
        try:
            event = json.loads(message)
        except (TypeError, json.JSONDecodeError):
            logger.warning("Failed to decode ARI event JSON", message=str(message)[:200])
            return
        self.handle_event(event)

    def handle_event(self, event: Dict[str, Any]) -> None:
        event_type = event.get("type")
        channel = event.get("channel") or {}
        channel_id = channel.get("id")

        if event_type == "PlaybackFinished":
            playback = event.get("playback") or {}
            self._resolve(self._playback_waiters, playback.get("id"), "failed" if playback.get("state") == "failed" else "done")
        elif event_type in ("RecordingFinished", "RecordingFailed"):
            recording = event.get("recording") or {}
            self._resolve(self._recording_waiters, recording.get("name"), "done" if event_type == "RecordingFinished" else "failed")
        elif event_type == "StasisStart" and channel_id:
            self._spawn(self._on_stasis_start(event))
        elif event_type == "StasisEnd" and channel_id:
            self._spawn(self._on_stasis_end(channel_id))
        elif event_type == "ChannelDestroyed" and channel_id:
            self._mark_gone(channel_id)
            self._emit("call_ended", CallEnded(channel_id, event.get("cause_txt") or "destroyed"))
        elif event_type == "ChannelStateChange" and channel.get("state") in _FAILED_STATES:
            self._emit("call_failed", CallEnded(channel_id, _FAILED_STATES[channel["state"]]))

        if event_type:
            self._emit(event_type, event)

    @staticmethod
    def _resolve(waiters: Dict[str, asyncio.Future], key: Optional[str], outcome: str) -> None:
        future = waiters.get(key) if key else None
        if future is not None and not future.done():
            future.set_result(outcome)

    async def _on_stasis_start(self, event: Dict[str, Any]) -> None:
        channel = event["channel"]
        channel_id = channel["id"]
        args = [str(a) for a in (event.get("args") or [])]
        phone_number = args[0] if args else (channel.get("connected") or {}).get("number", "")
        logger.info("Call entered Stasis", channel_id=channel_id, phone_number=phone_number)

        await self.answer_channel(channel_id)
        bridge_id = await self.create_bridge()
        if not bridge_id or not await self.add_channel_to_bridge(bridge_id, channel_id):
            logger.error("Bridge setup failed; hanging up", channel_id=channel_id, bridge_id=bridge_id)
            if bridge_id:
                await self.destroy_bridge(bridge_id)
            await self.hangup(channel_id)
            self._emit("call_failed", CallEnded(channel_id, "bridge_setup_failed"))
            return
        self._bridges[channel_id] = bridge_id
        self._emit("call_answered", AnsweredCall(phone_number, channel_id, bridge_id, args))

    async def _on_stasis_end(self, channel_id: str) -> None:
        self._mark_gone(channel_id)
        bridge_id = self._bridges.pop(channel_id, None)
        if bridge_id:
            await self.destroy_bridge(bridge_id)
        self._emit("call_ended", CallEnded(channel_id, "stasis_end"))

    def is_channel_gone(self, channel_id: str) -> bool:
        return channel_id in self._gone_channels

    def forget_channel(self, channel_id: str) -> None:
        self._gone_channels.pop(channel_id, None)

    @property
    def gone_channel_count(self) -> int:
        return len(self._gone_channels)

    def _mark_gone(self, channel_id: str) -> None:
        self._gone_channels[channel_id] = None
        self._gone_channels.move_to_end(channel_id)
        while len(self._gone_channels) > GONE_CHANNELS_KEPT:
            self._gone_channels.popitem(last=False)

    # ------------------------------------------------------------------
    # HTTP commands
    # ------------------------------------------------------------------
    async def send_command(
        self,
        method: str,
        resource: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        tolerate_statuses: Optional[List[int]] = None,
    ) -> Dict[str, Any]:
        """Send a command to the ARI HTTP endpoint.

        Never raises for HTTP or transport failures; the returned dict carries
        a `status` key on errors and on empty (204) replies so callers can
        branch on it. `tolerate_statuses` lists codes that are expected (e.g.
        404 when deleting something already gone) and logged at debug only.
        """
        if self.http_session is None or self.http_session.closed:
            logger.error("ARI command issued without an HTTP session", method=method, resource=resource)
            return {"status": 503, "reason": "not connected"}
        url = f"{self.http_url}/{resource}"
        try:
            async with self.http_session.request(method, url, json=data, params=params) as response:
                if response.status >= 400:
                    reason = await response.text()
                    if tolerate_statuses and response.status in tolerate_statuses:
                        logger.debug("ARI command tolerated non-2xx", method=method, url=url, status=response.status)
                    else:
                        logger.error("ARI command failed", method=method, url=url, status=response.status, reason=reason)
                    return {"status": response.status, "reason": reason}
                if response.status == 204:
                    return {"status": response.status}
                return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("ARI HTTP request failed", method=method, url=url, error=str(e))
            return {"status": 500, "reason": str(e)}

    @staticmethod
    def _is_success(response: Dict[str, Any]) -> bool:
        status = response.get("status") if isinstance(response, dict) else None
        return status is None or 200 <= int(status) < 300

    async def originate_call(self, number: str, context: Optional[str] = None) -> str:
        """Ask Asterisk to ring `number`; returns the new channel id.

        Only the command is acknowledged here: the call's fate arrives later
        as call_answered / call_ended / call_failed.
        """
        channel_id = f"voicebot-{uuid.uuid4().hex}"
        data: Dict[str, Any] = {
            "endpoint": self.config.endpoint_template.format(number=f"{self.config.dial_prefix}{number}"),
            "callerId": self.config.caller_id,
            "timeout": self.config.originate_timeout_sec,
            "variables": {"VOICEBOT_PHONE": number, "VOICEBOT_CONTEXT": context or ""},
        }
        params: Dict[str, Any] = {}
        if self.config.control_mode == "agi":
            data.update(context=self.config.agi_context, extension=self.config.agi_extension, priority=1)
        else:
            params = {"app": self.app_name, "appArgs": ",".join([number] + ([context] if context else []))}

        logger.info("Originating call", phone_number=number, channel_id=channel_id, mode=self.config.control_mode)
        response = await self.send_command("POST", f"channels/{channel_id}", data=data, params=params or None)
        if not self._is_success(response) or response.get("id") != channel_id:
            _ORIGINATIONS.labels(outcome="rejected").inc()
            raise OriginationError(f"originate {number} failed: {response.get('reason') or response}")
        _ORIGINATIONS.labels(outcome="accepted").inc()
        return channel_id

    async def answer_channel(self, channel_id: str) -> bool:
        response = await self.send_command("POST", f"channels/{channel_id}/answer")
        return self._is_success(response)

    async def hangup(self, channel_id: str) -> None:
        """Hang up a channel. Safe to call on channels that are already gone."""
        try:
            response = await self.send_command("DELETE", f"channels/{channel_id}", tolerate_statuses=[404])
            if response.get("status") == 404:
                logger.debug("Channel already gone", channel_id=channel_id)
        except Exception:
            logger.warning("Hangup failed", channel_id=channel_id, exc_info=True)

    async def create_bridge(self, bridge_type: str = "mixing") -> Optional[str]:
        response = await self.send_command(
            "POST", "bridges", data={"type": bridge_type, "name": f"voicebot_{uuid.uuid4().hex[:8]}"}
        )
        bridge_id = response.get("id")
        if not bridge_id:
            logger.error("Failed to create bridge", response=response)
            return None
        logger.debug("Bridge created", bridge_id=bridge_id, bridge_type=bridge_type)
        return bridge_id

    async def add_channel_to_bridge(self, bridge_id: str, channel_id: str) -> bool:
        response = await self.send_command("POST", f"bridges/{bridge_id}/addChannel", data={"channel": channel_id})
        return self._is_success(response)

    async def destroy_bridge(self, bridge_id: str) -> bool:
        response = await self.send_command("DELETE", f"bridges/{bridge_id}", tolerate_statuses=[404])
        return self._is_success(response) or response.get("status") == 404

    async def stop_playback(self, playback_id: str) -> None:
        await self.send_command("DELETE", f"playbacks/{playback_id}", tolerate_statuses=[404])

    async def stop_recording(self, name: str) -> None:
        await self.send_command("POST", f"recordings/live/{name}/stop", tolerate_statuses=[404])

    # ------------------------------------------------------------------
    # Media with completion tracking
    # ------------------------------------------------------------------
    async def _await_completion(self, future: asyncio.Future, timeout: float, label: str) -> str:
        def _expire():
            if not future.done():
                future.set_result("timeout")

        watchdog = ScheduledTask(timeout, _expire, name=label)
        try:
            return await future
        finally:
            watchdog.cancel()

    async def play_audio(self, bridge_id: str, asset: str, timeout: Optional[float] = None) -> bool:
        """Play `asset` on the bridge and wait until Asterisk reports it finished."""
        playback_id = f"pb-{uuid.uuid4().hex[:12]}"
        media = asset if ":" in asset else f"sound:{asset}"
        future = asyncio.get_running_loop().create_future()
        self._playback_waiters[playback_id] = future
        try:
            response = await self.send_command(
                "POST", f"bridges/{bridge_id}/play", data={"media": media, "playbackId": playback_id}
            )
            if not self._is_success(response):
                _MEDIA_OPS.labels(operation="play", outcome="rejected").inc()
                return False
            outcome = await self._await_completion(future, timeout or 30.0, f"playback:{playback_id}")
        except TelephonyUnavailable:
            outcome = "disconnected"
        finally:
            self._playback_waiters.pop(playback_id, None)

        _MEDIA_OPS.labels(operation="play", outcome=outcome).inc()
        if outcome == "timeout":
            logger.warning("Playback completion not signalled; stopping", bridge_id=bridge_id, media=media)
            await self.stop_playback(playback_id)
        return outcome == "done"

    async def record_audio(
        self,
        bridge_id: str,
        name: str,
        max_duration: float,
        max_silence: float,
    ) -> Optional[str]:
        """Record the bridge until silence, the duration cap or '#'.

        Returns the path Asterisk wrote to, or None when recording failed.
        """
        future = asyncio.get_running_loop().create_future()
        self._recording_waiters[name] = future
        params = {
            "name": name,
            "format": "wav",
            "ifExists": "overwrite",
            "maxDurationSeconds": str(int(math.ceil(max_duration))),
            "maxSilenceSeconds": str(max(1, int(math.ceil(max_silence)))),
            "beep": "false",
            "terminateOn": "#",
        }
        try:
            response = await self.send_command("POST", f"bridges/{bridge_id}/record", params=params)
            if not self._is_success(response):
                _MEDIA_OPS.labels(operation="record", outcome="rejected").inc()
                return None
            outcome = await self._await_completion(future, max_duration + 1.0, f"recording:{name}")
        except TelephonyUnavailable:
            outcome = "disconnected"
        finally:
            self._recording_waiters.pop(name, None)

        _MEDIA_OPS.labels(operation="record", outcome=outcome).inc()
        if outcome == "timeout":
            logger.warning("Recording completion not signalled; stopping", bridge_id=bridge_id, name=name)
            await self.stop_recording(name)
        elif outcome != "done":
            return None
        return os.path.join(self.config.recording_dir, f"{name}.wav")
