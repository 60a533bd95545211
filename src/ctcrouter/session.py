"""
Session lifecycle controller for the CTC router.

Owns the idle/starting/running state machine, persists the configuration and
issues start and abort commands to the audio engine. The engine's
``finished`` event is subscribed to before the start command is sent.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .config_codec import SessionConfig, decode, encode
from .devices import DeviceCatalog
from .engine import FINISHED_EVENT, CommunicationError, EngineChannel, subscribe_then_dispatch
from .presets import default_form
from .storage import ConfigStore

logger = logging.getLogger(__name__)


class SessionState(Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"


class SessionStateError(Exception):
    """An operation is not allowed in the current session state."""
    pass


class ConfigValidationError(ValueError):
    """The configuration references a device the catalog does not know."""
    pass


@dataclass(frozen=True)
class UiEffect:
    """Declarative description of a change to the user-facing surface."""
    kind: str  # 'set_switch', 'set_controls_enabled', 'move_marker', 'show_error'
    target: str
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "target": self.target, "value": self.value}


@dataclass(frozen=True)
class Transition:
    state: SessionState
    effects: Tuple[UiEffect, ...] = ()
    rejected: bool = False


# Events accepted by transition()
START = "start"
STARTED = "started"
FAILED = "failed"
DISPATCH_ERROR = "dispatch_error"
STOP = "stop"
TEARDOWN = "teardown"

_TRANSITIONS = {
    (SessionState.IDLE, START): SessionState.STARTING,
    (SessionState.STARTING, STARTED): SessionState.RUNNING,
    (SessionState.STARTING, FAILED): SessionState.IDLE,
    (SessionState.STARTING, DISPATCH_ERROR): SessionState.IDLE,
    (SessionState.RUNNING, FAILED): SessionState.IDLE,
    (SessionState.RUNNING, STOP): SessionState.IDLE,
}


def state_effects(state: SessionState) -> List[UiEffect]:
    """Switch and control enablement for a state."""
    return [
        UiEffect("set_switch", "switch", "off" if state == SessionState.IDLE else "on"),
        UiEffect("set_controls_enabled", "fieldsets", state == SessionState.IDLE),
    ]


def transition(state: SessionState, event: str, message: Optional[str] = None) -> Transition:
    """
    Pure state transition.

    Returns the next state and the UI effects it implies. Events that are
    not valid in the current state leave the state unchanged and are marked
    rejected.
    """
    if event == TEARDOWN:
        next_state = SessionState.IDLE
    else:
        next_state = _TRANSITIONS.get((state, event))
        if next_state is None:
            return Transition(state, (), rejected=True)

    effects = state_effects(next_state)
    if event in (FAILED, DISPATCH_ERROR):
        effects.append(UiEffect("show_error", "session", message or "Audio routing failed"))
    return Transition(next_state, tuple(effects))


@dataclass
class _LastError:
    kind: str
    message: str
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "timestamp": self.timestamp.isoformat()}


StateListener = Callable[[SessionState, Tuple[UiEffect, ...]], None]


class SessionController:
    """Drives audio routing sessions on the engine."""

    def __init__(self, channel: EngineChannel, store: ConfigStore,
                 catalog: Optional[DeviceCatalog] = None):
        self.channel = channel
        self.store = store
        self.catalog = catalog
        self.state = SessionState.IDLE
        self.config: Optional[SessionConfig] = None
        self.last_error: Optional[_LastError] = None
        self._lock = threading.RLock()
        self._generation = 0
        self._subscription = None
        self._listeners: List[StateListener] = []

    def add_listener(self, listener: StateListener):
        self._listeners.append(listener)

    def _notify(self, result: Transition):
        for listener in list(self._listeners):
            try:
                listener(result.state, result.effects)
            except Exception as e:
                logger.error(f"Error in session state listener: {e}")

    def _apply(self, event: str, message: Optional[str] = None) -> Transition:
        """Run a transition under the lock. Caller must hold the lock."""
        previous = self.state
        result = transition(self.state, event, message)
        if result.rejected:
            logger.debug(f"Ignoring '{event}' in state {self.state.value}")
            return result
        self.state = result.state
        logger.info(f"Session state: {previous.value} -> {self.state.value} ({event})")
        return result

    def _release_subscription(self):
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def catalog_defaults(self) -> Tuple[str, str]:
        if self.catalog is None:
            return "", ""
        default_input = self.catalog.default_input()
        default_output = self.catalog.default_output()
        return (default_input.id if default_input else "",
                default_output.id if default_output else "")

    def _validate_devices(self, config: SessionConfig):
        if not config.input_id or not config.output_id:
            raise ConfigValidationError("Both an input and an output device must be selected")
        if self.catalog is None or not self.catalog.fetched:
            return
        if not self.catalog.has_device("input", config.input_id):
            raise ConfigValidationError(f"Unknown input device: {config.input_id}")
        if not self.catalog.has_device("output", config.output_id):
            raise ConfigValidationError(f"Unknown output device: {config.output_id}")

    def _persist(self, config: SessionConfig):
        try:
            self.store.save(config)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to save configuration: {e}")

    def start(self, raw: Optional[Mapping[str, Any]] = None) -> SessionState:
        """
        Start a session with the given raw form values.

        Raises:
            SessionStateError: if a session is already starting or running
            ConfigValidationError: if a selected device is not in the catalog
            CommunicationError: if the start command cannot be delivered; the
                state is back to idle in that case
        """
        with self._lock:
            if self.state != SessionState.IDLE:
                raise SessionStateError(f"Cannot start a session while {self.state.value}")

            config = encode(raw, *self.catalog_defaults())
            self._validate_devices(config)
            self._persist(config)
            self.config = config

            self.last_error = None
            self._generation += 1
            generation = self._generation
            result = self._apply(START)
        self._notify(result)

        def on_finished(payload: Dict[str, Any]):
            self._on_finished(generation, payload)

        logger.info(f"Starting audio routing: {config.input_id} -> {config.output_id}, "
                    f"latency={config.latency}ms")
        try:
            subscription = subscribe_then_dispatch(
                self.channel, FINISHED_EVENT, on_finished,
                lambda: self.channel.start_session(config.to_engine_payload())
            )
        except CommunicationError as e:
            logger.error(f"Failed to start audio routing: {e}")
            with self._lock:
                result = None
                if self._generation == generation:
                    self.last_error = _LastError("communication", str(e))
                    result = self._apply(DISPATCH_ERROR, str(e))
            if result is not None:
                self._notify(result)
            raise

        with self._lock:
            if self._generation == generation and self.state != SessionState.IDLE:
                self._subscription = subscription
            else:
                # The session already ended while the command was in flight
                subscription.unsubscribe()
            return self.state

    def _on_finished(self, generation: int, payload: Dict[str, Any]):
        is_finished = bool(payload.get("isFinished", True))
        with self._lock:
            if generation != self._generation:
                logger.debug("Ignoring finished event from a previous session")
                return
            if is_finished:
                message = "Audio routing stopped unexpectedly"
                event = FAILED
            else:
                message = None
                event = STARTED
            result = self._apply(event, message)
            if result.rejected:
                return
            if is_finished:
                logger.warning(f"Session failure: {message}")
                self.last_error = _LastError("session", message)
                self._release_subscription()
        self._notify(result)

    def stop(self) -> SessionState:
        """
        Stop a running session. The abort command is not waited on.

        Raises:
            SessionStateError: if no session is running
        """
        with self._lock:
            if self.state != SessionState.RUNNING:
                raise SessionStateError(f"Cannot stop a session while {self.state.value}")
            self._generation += 1
            self._release_subscription()
            result = self._apply(STOP)
        self._notify(result)
        self._request_abort()
        return self.state

    def _request_abort(self):
        try:
            self.channel.abort_session()
        except CommunicationError as e:
            logger.warning(f"Abort request failed: {e}")

    def teardown(self, raw: Optional[Mapping[str, Any]] = None):
        """Abort any session and persist the configuration; used on shutdown."""
        with self._lock:
            previous = self.state
            self._generation += 1
            self._release_subscription()
            result = self._apply(TEARDOWN)
            if raw is not None:
                self.config = encode(raw, *self.catalog_defaults())
            config = self.config
        logger.info(f"Tearing down session controller (was {previous.value})")
        self._request_abort()
        if config is not None:
            self._persist(config)
        self._notify(result)

    def save(self, raw: Optional[Mapping[str, Any]] = None) -> SessionConfig:
        """
        Normalize and save form values without starting a session.

        The saved config also becomes the one teardown persists.

        Raises:
            OSError: if the record cannot be written
        """
        with self._lock:
            config = encode(raw, *self.catalog_defaults())
            self.store.save(config)
            self.config = config
        logger.info(f"Saved configuration: {config.input_id} -> {config.output_id}")
        return config

    def restore(self) -> Dict[str, Any]:
        """
        Raw form values from the saved configuration, or the defaults.

        Device ids missing from the current catalog are replaced by the
        catalog's default devices.
        """
        config = self.store.load()
        if config is None:
            form = default_form()
            form["input_device"], form["output_device"] = self.catalog_defaults()
            return form

        if self.catalog is not None and self.catalog.fetched:
            default_input, default_output = self.catalog_defaults()
            input_id = config.input_id
            output_id = config.output_id
            if not self.catalog.has_device("input", input_id):
                logger.info(f"Saved input device {input_id} not available, using default")
                input_id = default_input
            if not self.catalog.has_device("output", output_id):
                logger.info(f"Saved output device {output_id} not available, using default")
                output_id = default_output
            config = config.with_devices(input_id, output_id)

        with self._lock:
            if self.config is None:
                self.config = config
        return decode(config)

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "state": self.state.value,
                "active": self.state != SessionState.IDLE,
                "last_error": self.last_error.to_dict() if self.last_error else None,
                "config": self.config.to_engine_payload() if self.config else None,
            }
