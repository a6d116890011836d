from __future__ import annotations

from enum import IntEnum

from .errors import UnknownVariantError


class _StrictIntEnum(IntEnum):
    @classmethod
    def from_value(cls, value: int):
        try:
            return cls(int(value))
        except ValueError:
            raise UnknownVariantError(cls.__name__, int(value)) from None


class ModelType(_StrictIntEnum):
    NONE = 0
    MODEL = 1
    LORA = 2
    CNET = 3
    UPSCALER = 4


class ItemType(_StrictIntEnum):
    NONE = 0
    PROJECTS = 1
    MODEL_INFO = 2


class SeedMode(_StrictIntEnum):
    LEGACY = 0
    TORCH_CPU_COMPATIBLE = 1
    SCALE_ALIKE = 2
    NVIDIA_GPU_COMPATIBLE = 3

    @property
    def label(self) -> str:
        return _SEED_MODE_LABELS[self]


class Sampler(_StrictIntEnum):
    UNKNOWN = -1
    DPMPP_2M_KARRAS = 0
    EULER_A = 1
    DDIM = 2
    PLMS = 3
    DPMPP_SDE_KARRAS = 4
    UNI_PC = 5
    LCM = 6
    EULER_A_SUBSTEP = 7
    DPMPP_SDE_SUBSTEP = 8
    TCD = 9
    EULER_A_TRAILING = 10
    DPMPP_SDE_TRAILING = 11
    DPMPP_2M_AYS = 12
    EULER_A_AYS = 13
    DPMPP_SDE_AYS = 14
    DPMPP_2M_TRAILING = 15
    DDIM_TRAILING = 16
    UNI_PC_TRAILING = 17
    UNI_PC_AYS = 18

    @property
    def label(self) -> str:
        return _SAMPLER_LABELS[self]


class SyncAction(IntEnum):
    NONE = 0
    ADD = 1
    REMOVE = 2
    UPDATE = 3


_SEED_MODE_LABELS = {
    SeedMode.LEGACY: "Legacy",
    SeedMode.TORCH_CPU_COMPATIBLE: "Torch CPU Compatible",
    SeedMode.SCALE_ALIKE: "Scale Alike",
    SeedMode.NVIDIA_GPU_COMPATIBLE: "Nvidia GPU Compatible",
}

_SAMPLER_LABELS = {
    Sampler.UNKNOWN: "Unknown",
    Sampler.DPMPP_2M_KARRAS: "DPM++ 2M Karras",
    Sampler.EULER_A: "Euler A",
    Sampler.DDIM: "DDIM",
    Sampler.PLMS: "PLMS",
    Sampler.DPMPP_SDE_KARRAS: "DPM++ SDE Karras",
    Sampler.UNI_PC: "UniPC",
    Sampler.LCM: "LCM",
    Sampler.EULER_A_SUBSTEP: "Euler A Substep",
    Sampler.DPMPP_SDE_SUBSTEP: "DPM++ SDE Substep",
    Sampler.TCD: "TCD",
    Sampler.EULER_A_TRAILING: "Euler A Trailing",
    Sampler.DPMPP_SDE_TRAILING: "DPM++ SDE Trailing",
    Sampler.DPMPP_2M_AYS: "DPM++ 2M AYS",
    Sampler.EULER_A_AYS: "Euler A AYS",
    Sampler.DPMPP_SDE_AYS: "DPM++ SDE AYS",
    Sampler.DPMPP_2M_TRAILING: "DPM++ 2M Trailing",
    Sampler.DDIM_TRAILING: "DDIM Trailing",
    Sampler.UNI_PC_TRAILING: "UniPC Trailing",
    Sampler.UNI_PC_AYS: "UniPC AYS",
}

# File names of the model catalogues Draw Things keeps beside its models.
MODEL_INFO_FILES = {
    "custom.json": ModelType.MODEL,
    "uncurated_models.json": ModelType.MODEL,
    "models.json": ModelType.MODEL,
    "custom_controlnet.json": ModelType.CNET,
    "controlnets.json": ModelType.CNET,
    "custom_lora.json": ModelType.LORA,
    "loras.json": ModelType.LORA,
}
