"""
Command and event channel to the native CTC audio engine.

The engine runs as a separate process. Commands are sent as JSON lines on its
stdin and answered on its stdout; the same stream carries asynchronous
events such as ``finished``.

Wire format::

    -> {"id": 1, "command": "start_session", "args": {...}}
    <- {"id": 1, "ok": true, "result": null}
    <- {"event": "finished", "payload": {"isFinished": false}}
"""

import json
import logging
import os
import subprocess
import threading
from typing import Any, Callable, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

FINISHED_EVENT = "finished"

EventCallback = Callable[[Dict[str, Any]], None]


class CommunicationError(Exception):
    """Raised when a command cannot reach the audio engine or is refused by it."""
    pass


class Subscription:
    """Handle for a registered event listener."""

    def __init__(self, channel: "EngineChannel", event: str, token: int):
        self.channel = channel
        self.event = event
        self.token = token
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self):
        if self._active:
            self.channel._remove_listener(self.event, self.token)
            self._active = False


class EngineChannel:
    """
    Base class for engine channels.

    Subclasses implement the three commands and call ``_emit`` for every event
    received from the engine.
    """

    def __init__(self):
        self._listeners: Dict[str, Dict[int, EventCallback]] = {}
        self._listener_lock = threading.Lock()
        self._next_token = 0

    def _ensure_ready(self):
        """Make sure events can be delivered. Raises CommunicationError otherwise."""
        pass

    def subscribe(self, event: str, callback: EventCallback) -> Subscription:
        """
        Register a listener for an engine event.

        Returns only once the listener is registered and the channel is able
        to deliver events.
        """
        self._ensure_ready()
        with self._listener_lock:
            self._next_token += 1
            token = self._next_token
            self._listeners.setdefault(event, {})[token] = callback
        logger.debug(f"Subscribed to engine event '{event}' (token {token})")
        return Subscription(self, event, token)

    def _remove_listener(self, event: str, token: int):
        with self._listener_lock:
            self._listeners.get(event, {}).pop(token, None)
        logger.debug(f"Unsubscribed from engine event '{event}' (token {token})")

    def _emit(self, event: str, payload: Dict[str, Any]):
        with self._listener_lock:
            callbacks = list(self._listeners.get(event, {}).values())
        logger.debug(f"Engine event '{event}' -> {len(callbacks)} listener(s): {payload}")
        for callback in callbacks:
            try:
                callback(payload)
            except Exception as e:
                logger.error(f"Error in listener for engine event '{event}': {e}")

    def list_devices(self) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def start_session(self, payload: Dict[str, Any]):
        raise NotImplementedError

    def abort_session(self):
        raise NotImplementedError

    def close(self):
        pass


def subscribe_then_dispatch(channel: EngineChannel, event: str, callback: EventCallback,
                            command: Callable[[], Any]) -> Subscription:
    """
    Subscribe to an event, then run a command on the channel.

    The subscription is established before the command is issued, so an
    event the engine emits while handling the command is not lost. If the
    command fails the subscription is released and the error re-raised.
    """
    subscription = channel.subscribe(event, callback)
    if not subscription.active:
        raise CommunicationError(f"Subscription to '{event}' is not active")
    try:
        command()
    except Exception:
        subscription.unsubscribe()
        raise
    return subscription


class _PendingReply:
    def __init__(self):
        self.event = threading.Event()
        self.reply: Optional[Dict[str, Any]] = None


class ProcessEngine(EngineChannel):
    """Engine channel backed by the native engine binary."""

    def __init__(self, binary_path: Optional[str] = None, args: Sequence[str] = (),
                 timeout: float = 10.0):
        super().__init__()
        self.binary_path = binary_path
        self.args = list(args)
        self.timeout = timeout
        self.process: Optional[subprocess.Popen] = None
        self._reader_thread: Optional[threading.Thread] = None
        self._pending: Dict[int, _PendingReply] = {}
        self._pending_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._start_lock = threading.Lock()
        self._next_request_id = 0
        self._session_started = False

    def _find_engine_binary(self) -> str:
        """Find the engine binary."""
        possible_paths = [
            os.environ.get("CTCROUTER_ENGINE"),
            # Development build
            os.path.join(os.path.dirname(__file__), "..", "..", "engine", "target", "release", "ctc-engine"),
            # Installed package
            "/usr/local/bin/ctc-engine",
            "/usr/bin/ctc-engine",
            # Current directory
            "./ctc-engine",
        ]

        for path in possible_paths:
            if not path:
                continue
            if os.path.exists(path):
                if os.access(path, os.X_OK):
                    logger.info(f"Found executable engine binary: {path}")
                    return path
                logger.warning(f"Path exists but is not executable: {path}")
            else:
                logger.debug(f"Path does not exist: {path}")

        tried = [p for p in possible_paths if p]
        raise CommunicationError(f"Audio engine binary not found. Tried: {tried}")

    def _ensure_ready(self):
        with self._start_lock:
            if self.process is not None and self.process.poll() is None:
                return

            if self.binary_path is None:
                self.binary_path = self._find_engine_binary()

            cmd = [self.binary_path] + self.args
            logger.info(f"Starting audio engine: {' '.join(cmd)}")
            try:
                self.process = subprocess.Popen(
                    cmd,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    universal_newlines=True,
                    bufsize=1  # Line buffered
                )
            except OSError as e:
                self.process = None
                raise CommunicationError(f"Failed to start audio engine {self.binary_path}: {e}")

            logger.info(f"Audio engine started with PID: {self.process.pid}")
            self._reader_thread = threading.Thread(
                target=self._read_loop, args=(self.process,), name="ctc-engine-reader"
            )
            self._reader_thread.daemon = True
            self._reader_thread.start()

    def _read_loop(self, process: subprocess.Popen):
        """Route replies to waiting callers and events to subscribers."""
        for line in process.stdout:
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                # The engine prints plain diagnostics as well
                logger.info(f"Engine output: {line}")
                continue
            if not isinstance(data, dict):
                logger.warning(f"Ignoring unexpected engine message: {line[:200]}")
                continue

            if "event" in data:
                payload = data.get("payload") or {}
                if data["event"] == FINISHED_EVENT and payload.get("isFinished", True):
                    self._session_started = False
                self._emit(data["event"], payload)
            elif "id" in data:
                with self._pending_lock:
                    pending = self._pending.pop(data["id"], None)
                if pending is None:
                    logger.warning(f"Reply for unknown request {data['id']}")
                    continue
                pending.reply = data
                pending.event.set()
            else:
                logger.warning(f"Ignoring unexpected engine message: {line[:200]}")

        returncode = process.wait()
        logger.warning(f"Audio engine exited with code {returncode}")
        with self._pending_lock:
            pending_replies = list(self._pending.values())
            self._pending.clear()
        for pending in pending_replies:
            pending.event.set()
        if self._session_started:
            # No finished event will come from a dead process
            self._session_started = False
            self._emit(FINISHED_EVENT, {"isFinished": True})

    def _request(self, command: str, args: Optional[Dict[str, Any]] = None) -> Any:
        self._ensure_ready()

        with self._pending_lock:
            self._next_request_id += 1
            request_id = self._next_request_id
            pending = _PendingReply()
            self._pending[request_id] = pending

        message = json.dumps({"id": request_id, "command": command, "args": args or {}})
        logger.debug(f"Engine request {request_id}: {command}")
        try:
            with self._write_lock:
                self.process.stdin.write(message + "\n")
                self.process.stdin.flush()
        except (OSError, ValueError) as e:
            with self._pending_lock:
                self._pending.pop(request_id, None)
            raise CommunicationError(f"Failed to send '{command}' to audio engine: {e}")

        if not pending.event.wait(self.timeout):
            with self._pending_lock:
                self._pending.pop(request_id, None)
            raise CommunicationError(f"Timed out waiting for audio engine reply to '{command}'")

        reply = pending.reply
        if reply is None:
            raise CommunicationError(f"Audio engine exited before replying to '{command}'")
        if not reply.get("ok", False):
            raise CommunicationError(
                f"Audio engine refused '{command}': {reply.get('error', 'unknown error')}"
            )
        return reply.get("result")

    def list_devices(self) -> List[Dict[str, Any]]:
        result = self._request("list_devices")
        if not isinstance(result, list):
            raise CommunicationError("Audio engine returned an invalid device list")
        return result

    def start_session(self, payload: Dict[str, Any]):
        self._session_started = True
        try:
            self._request("start_session", payload)
        except CommunicationError:
            self._session_started = False
            raise

    def abort_session(self):
        self._request("abort_session")

    def close(self):
        """Terminate the engine process."""
        with self._start_lock:
            process = self.process
            self.process = None
        if process is None or process.poll() is not None:
            return
        logger.info(f"Stopping audio engine (PID {process.pid})")
        try:
            process.stdin.close()
        except OSError:
            pass
        try:
            process.terminate()
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.warning("Audio engine did not terminate, killing it")
            process.kill()
