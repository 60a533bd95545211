#!/usr/bin/env python3
"""
Audio device catalog for the CTC router.

Asks the audio engine for its input and output devices and keeps them as two
selectable lists, with the system default of each direction marked.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from .engine import CommunicationError, EngineChannel

logger = logging.getLogger(__name__)

DIRECTIONS = ("input", "output")


@dataclass(frozen=True)
class AudioDeviceDescription:
    """One audio device as reported by the engine."""
    id: str
    name: str
    direction: str
    is_default: bool = False
    driver: Optional[str] = None

    @classmethod
    def from_engine(cls, data: Mapping[str, Any]) -> "AudioDeviceDescription":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            direction=str(data["direction"]).lower(),
            is_default=bool(data.get("isDefault", False)),
            driver=data.get("driver"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "driver": self.driver,
            "direction": self.direction,
            "is_default": self.is_default,
        }


class DeviceCatalog:
    """Device lists fetched from the engine, partitioned by direction."""

    def __init__(self, channel: EngineChannel):
        self.channel = channel
        self.inputs: List[AudioDeviceDescription] = []
        self.outputs: List[AudioDeviceDescription] = []
        self.fetched = False
        self._lock = threading.Lock()

    def fetch(self) -> List[AudioDeviceDescription]:
        """
        Fetch the device list from the engine and replace both lists.

        Raises:
            CommunicationError: if the engine cannot be reached; the previous
                lists are kept in that case
        """
        raw_devices = self.channel.list_devices()

        devices = []
        for data in raw_devices:
            try:
                device = AudioDeviceDescription.from_engine(data)
            except (KeyError, TypeError) as e:
                logger.warning(f"Skipping malformed device entry {data!r}: {e}")
                continue
            if device.direction not in DIRECTIONS:
                logger.warning(f"Skipping device {device.id} with unknown direction '{device.direction}'")
                continue
            devices.append(device)

        with self._lock:
            self.inputs = [d for d in devices if d.direction == "input"]
            self.outputs = [d for d in devices if d.direction == "output"]
            self.fetched = True

        logger.info(f"Fetched {len(self.inputs)} input and {len(self.outputs)} output devices")
        return devices

    def devices(self, direction: str) -> List[AudioDeviceDescription]:
        if direction == "input":
            return list(self.inputs)
        if direction == "output":
            return list(self.outputs)
        raise ValueError(f"Unknown direction: {direction}")

    def _default(self, direction: str) -> Optional[AudioDeviceDescription]:
        devices = self.devices(direction)
        for device in devices:
            if device.is_default:
                return device
        return devices[0] if devices else None

    def default_input(self) -> Optional[AudioDeviceDescription]:
        return self._default("input")

    def default_output(self) -> Optional[AudioDeviceDescription]:
        return self._default("output")

    def has_device(self, direction: str, device_id: str) -> bool:
        return any(d.id == device_id for d in self.devices(direction))

    def to_options(self) -> Dict[str, List[Dict[str, Any]]]:
        """Selectable options per direction, with the default entry pre-selected."""
        options = {}
        for direction in DIRECTIONS:
            default = self._default(direction)
            options[direction] = [
                dict(device.to_dict(), selected=(default is not None and device.id == default.id))
                for device in self.devices(direction)
            ]
        return options


def format_devices(devices: List[AudioDeviceDescription]) -> List[str]:
    """
    Format devices one per line.
    Returns list of strings in format: "direction:id:name:default"
    """
    result = []
    for device in devices:
        default_str = "default" if device.is_default else ""
        result.append(f"{device.direction}:{device.id}:{device.name}:{default_str}")
    return result


def main():
    """Main function for command-line usage."""
    from .engine import ProcessEngine

    engine = ProcessEngine()
    try:
        catalog = DeviceCatalog(engine)
        for line in format_devices(catalog.fetch()):
            print(line)
    except CommunicationError as e:
        logger.error(f"Error listing audio devices: {e}")
        return 1
    finally:
        engine.close()

    return 0


if __name__ == "__main__":
    import sys
    logging.basicConfig(level=logging.INFO)
    sys.exit(main())
