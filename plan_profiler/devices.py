from dataclasses import dataclass
from enum import Enum
from typing import List, Tuple

from .errors import InvalidInput


class Device(Enum):
    CPU = "CPU"
    GPU = "GPU"
    ANE = "ANE"
    UNKNOWN = ""

    @classmethod
    def parse(cls, value) -> "Device":
        if isinstance(value, Device):
            return value
        try:
            return cls(str(value or "").upper())
        except ValueError:
            return cls.UNKNOWN


class ComputeUnits(Enum):
    ALL = (0, "all", (Device.CPU, Device.GPU, Device.ANE))
    CPU_ONLY = (1, "cpuOnly", (Device.CPU,))
    CPU_AND_GPU = (2, "cpuAndGPU", (Device.CPU, Device.GPU))
    CPU_AND_NEURAL_ENGINE = (3, "cpuAndNeuralEngine", (Device.CPU, Device.ANE))

    def __init__(self, selector: int, label: str, devices: Tuple[Device, ...]):
        self.selector = selector
        self.label = label
        self.devices = devices

    @classmethod
    def from_selector(cls, selector) -> "ComputeUnits":
        if isinstance(selector, bool) or not isinstance(selector, int):
            raise InvalidInput(f"Invalid processing unit value {selector!r}. Must be between 0 and 3.")
        for units in cls:
            if units.selector == selector:
                return units
        raise InvalidInput(f"Invalid processing unit value {selector}. Must be between 0 and 3.")

    def allows(self, device: Device) -> bool:
        return device in self.devices


DEVICE_SELECTORS = {u.selector: u.label for u in ComputeUnits}


@dataclass
class DeviceUsage:
    preferred: Device
    supported: List[Device]

    @property
    def preferred_label(self) -> str:
        return self.preferred.value

    @property
    def supported_label(self) -> str:
        return ", ".join(d.value for d in self.supported if d is not Device.UNKNOWN)
