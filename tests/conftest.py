from pathlib import Path
import sys

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC = PROJECT_ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from ctcrouter.devices import DeviceCatalog
from ctcrouter.engine import FINISHED_EVENT, CommunicationError, EngineChannel
from ctcrouter.session import SessionController
from ctcrouter.storage import ConfigStore


DEVICES = [
    {"id": "mic0", "name": "Built-in Microphone", "driver": "alsa", "direction": "input", "isDefault": False},
    {"id": "usb-in", "name": "USB Interface In", "driver": "alsa", "direction": "input", "isDefault": True},
    {"id": "spk0", "name": "Built-in Speakers", "direction": "output", "isDefault": True},
    {"id": "hdmi", "name": "HDMI Out", "direction": "output", "isDefault": False},
]


class FakeEngine(EngineChannel):
    """In-process engine double recording every command it receives."""

    def __init__(self, devices=None, emit_on_start=None, fail_start=False,
                 fail_list=False, fail_abort=False):
        super().__init__()
        self.devices = DEVICES if devices is None else devices
        self.emit_on_start = emit_on_start
        self.fail_start = fail_start
        self.fail_list = fail_list
        self.fail_abort = fail_abort
        self.calls = []
        self.listeners_at_dispatch = None

    def listener_count(self, event=FINISHED_EVENT):
        return len(self._listeners.get(event, {}))

    def list_devices(self):
        self.calls.append("list_devices")
        if self.fail_list:
            raise CommunicationError("engine unreachable")
        return [dict(d) for d in self.devices]

    def start_session(self, payload):
        self.calls.append(("start_session", payload))
        self.listeners_at_dispatch = self.listener_count()
        if self.fail_start:
            raise CommunicationError("engine unreachable")
        if self.emit_on_start is not None:
            # Emitted synchronously, before the command returns
            self.finish(self.emit_on_start)

    def abort_session(self):
        self.calls.append("abort_session")
        if self.fail_abort:
            raise CommunicationError("engine unreachable")

    def finish(self, is_finished):
        self._emit(FINISHED_EVENT, {"isFinished": is_finished})


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def store(tmp_path):
    return ConfigStore(str(tmp_path / "config"))


@pytest.fixture
def catalog(engine):
    catalog = DeviceCatalog(engine)
    catalog.fetch()
    return catalog


@pytest.fixture
def controller(engine, store, catalog):
    return SessionController(engine, store, catalog)


@pytest.fixture
def form():
    return {
        "input_device": "usb-in",
        "output_device": "spk0",
        "master_latency": "80",
        "listener_coord_x": "0",
        "listener_coord_y": "0",
        "speaker_coord_lx": "-60",
        "speaker_coord_ly": "60",
        "speaker_coord_rx": "60",
        "speaker_coord_ry": "60",
        "interaural_distance": "16",
        "master_gain": "75",
        "canceling_attenuation": "70",
        "lowpass_cutoff_min": "800",
        "highpass_cutoff": "50",
        "lowshelf_cutoff": "200",
        "lowshelf_gain": "3",
        "wet_dry": "100",
        "temperature": "20",
    }
