import pytest

from ctcrouter.config_codec import encode
from ctcrouter.engine import CommunicationError
from ctcrouter.session import (
    DISPATCH_ERROR,
    FAILED,
    START,
    STARTED,
    STOP,
    TEARDOWN,
    ConfigValidationError,
    SessionController,
    SessionState,
    SessionStateError,
    transition,
)

from conftest import FakeEngine


IDLE = SessionState.IDLE
STARTING = SessionState.STARTING
RUNNING = SessionState.RUNNING


# -- pure transition function ------------------------------------------------

@pytest.mark.parametrize("state, event, expected", [
    (IDLE, START, STARTING),
    (STARTING, STARTED, RUNNING),
    (STARTING, FAILED, IDLE),
    (STARTING, DISPATCH_ERROR, IDLE),
    (RUNNING, FAILED, IDLE),
    (RUNNING, STOP, IDLE),
    (IDLE, TEARDOWN, IDLE),
    (STARTING, TEARDOWN, IDLE),
    (RUNNING, TEARDOWN, IDLE),
])
def test_valid_transitions(state, event, expected):
    result = transition(state, event)
    assert not result.rejected
    assert result.state == expected


@pytest.mark.parametrize("state, event", [
    (STARTING, START),
    (RUNNING, START),
    (IDLE, STOP),
    (STARTING, STOP),
    (IDLE, STARTED),
    (RUNNING, STARTED),
])
def test_rejected_transitions(state, event):
    result = transition(state, event)
    assert result.rejected
    assert result.state == state
    assert result.effects == ()


def test_transition_effects_disable_controls_while_active():
    effects = {e.kind: e.value for e in transition(IDLE, START).effects}
    assert effects == {"set_switch": "on", "set_controls_enabled": False}

    effects = {e.kind: e.value for e in transition(RUNNING, STOP).effects}
    assert effects == {"set_switch": "off", "set_controls_enabled": True}


def test_failure_transition_shows_error():
    result = transition(STARTING, FAILED, "boom")
    errors = [e for e in result.effects if e.kind == "show_error"]
    assert len(errors) == 1
    assert errors[0].value == "boom"


# -- controller ----------------------------------------------------------------

def test_start_subscribes_before_dispatch(controller, engine, form):
    controller.start(form)

    assert engine.listeners_at_dispatch == 1
    assert controller.state == STARTING


def test_synchronous_success_event_is_observed(store, catalog, form):
    engine = FakeEngine(emit_on_start=False)
    controller = SessionController(engine, store, catalog)

    assert controller.start(form) == RUNNING
    assert controller.state == RUNNING


def test_synchronous_failure_event_is_observed(store, catalog, form):
    engine = FakeEngine(emit_on_start=True)
    controller = SessionController(engine, store, catalog)

    assert controller.start(form) == IDLE
    assert controller.status()["last_error"]["kind"] == "session"
    assert engine.listener_count() == 0


def test_asynchronous_events(controller, engine, form):
    controller.start(form)
    engine.finish(False)
    assert controller.state == RUNNING

    engine.finish(True)
    assert controller.state == IDLE
    assert controller.last_error is not None
    assert engine.listener_count() == 0


def test_start_sends_encoded_config(controller, engine, form):
    controller.start(form)

    name, payload = engine.calls[-1]
    assert name == "start_session"
    assert payload == encode(form).to_engine_payload()


def test_start_persists_config(controller, store, form):
    controller.start(form)
    assert store.load() == encode(form)


def test_start_while_starting_or_running_is_rejected(controller, engine, form):
    controller.start(form)
    with pytest.raises(SessionStateError):
        controller.start(form)

    engine.finish(False)
    with pytest.raises(SessionStateError):
        controller.start(form)

    starts = [c for c in engine.calls if c[0] == "start_session"]
    assert len(starts) == 1


def test_stop_while_idle_is_rejected(controller, engine):
    with pytest.raises(SessionStateError):
        controller.stop()
    assert "abort_session" not in engine.calls


def test_stop_while_starting_is_rejected(controller, form):
    controller.start(form)
    with pytest.raises(SessionStateError):
        controller.stop()
    assert controller.state == STARTING


def test_stop_running_session(controller, engine, form):
    controller.start(form)
    engine.finish(False)

    assert controller.stop() == IDLE
    assert engine.calls[-1] == "abort_session"
    assert engine.listener_count() == 0


def test_stop_succeeds_even_if_abort_fails(controller, engine, form):
    controller.start(form)
    engine.finish(False)
    engine.fail_abort = True

    assert controller.stop() == IDLE


def test_events_after_stop_are_ignored(controller, engine, form):
    controller.start(form)
    engine.finish(False)
    controller.stop()

    engine.finish(True)
    assert controller.state == IDLE
    assert controller.last_error is None


def test_dispatch_error_returns_to_idle(store, catalog, form):
    engine = FakeEngine(fail_start=True)
    controller = SessionController(engine, store, catalog)

    with pytest.raises(CommunicationError):
        controller.start(form)

    assert controller.state == IDLE
    assert controller.status()["last_error"]["kind"] == "communication"
    assert engine.listener_count() == 0


def test_restart_after_failure(controller, engine, form):
    controller.start(form)
    engine.finish(True)
    controller.start(form)
    engine.finish(False)
    assert controller.state == RUNNING
    assert controller.last_error is None


def test_unknown_device_is_rejected(controller, engine, form):
    with pytest.raises(ConfigValidationError):
        controller.start(dict(form, output_device="gone"))
    assert controller.state == IDLE
    assert not [c for c in engine.calls if c[0] == "start_session"]


def test_missing_devices_use_catalog_defaults(controller, engine, form):
    raw = dict(form)
    del raw["input_device"]
    del raw["output_device"]
    controller.start(raw)

    payload = engine.calls[-1][1]
    assert (payload["inputId"], payload["outputId"]) == ("usb-in", "spk0")


def test_teardown_from_running(controller, engine, store, form):
    controller.start(form)
    engine.finish(False)

    controller.teardown()
    assert controller.state == IDLE
    assert engine.calls[-1] == "abort_session"
    assert store.load() == encode(form)


def test_teardown_persists_given_form_from_idle(controller, engine, store, form):
    controller.teardown(dict(form, master_latency="300"))

    assert controller.state == IDLE
    assert "abort_session" in engine.calls
    assert store.load().latency == 300


def test_teardown_while_starting_ignores_late_event(controller, engine, form):
    controller.start(form)
    controller.teardown()
    engine.finish(False)
    assert controller.state == IDLE


def test_listeners_receive_effects(controller, engine, form):
    seen = []
    controller.add_listener(lambda state, effects: seen.append((state, effects)))

    controller.start(form)
    engine.finish(False)
    controller.stop()

    assert [state for state, _ in seen] == [STARTING, RUNNING, IDLE]
    assert all(effects for _, effects in seen)


def test_restore_defaults_without_saved_config(controller):
    restored = controller.restore()
    assert restored["input_device"] == "usb-in"
    assert restored["output_device"] == "spk0"
    assert restored["master_latency"] == 100
    assert restored["interaural_distance"] == 16


def test_restore_saved_config(controller, store, form):
    store.save(encode(dict(form, input_device="mic0", master_latency="64")))

    restored = controller.restore()
    assert restored["input_device"] == "mic0"
    assert restored["master_latency"] == 64


def test_restore_replaces_stale_device_ids(controller, store, form):
    store.save(encode(dict(form, input_device="unplugged", output_device="hdmi")))

    restored = controller.restore()
    assert restored["input_device"] == "usb-in"
    assert restored["output_device"] == "hdmi"


def test_restore_malformed_record_uses_defaults(controller, store, form):
    path = store.save(encode(form))
    with open(path, "w") as f:
        f.write("garbage")

    assert controller.restore()["master_latency"] == 100


def test_rejected_start_keeps_saved_config(controller, store, form):
    store.save(encode(form))

    with pytest.raises(ConfigValidationError):
        controller.start(dict(form, input_device="gone", master_latency="300"))

    saved = store.load()
    assert saved.input_id == "usb-in"
    assert saved.latency == 80
    assert controller.config is None


def test_save_becomes_current_config(controller, store, form):
    controller.restore()
    config = controller.save(dict(form, master_latency="222"))

    assert controller.config == config
    assert store.load().latency == 222

    controller.teardown()
    assert store.load().latency == 222
