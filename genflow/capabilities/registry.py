from __future__ import annotations

from typing import Dict, List

from genflow.capabilities.audio import MUSIC
from genflow.capabilities.base import CapabilitySpec
from genflow.capabilities.image import FLUX_PRO, NANO_BANANA_PRO
from genflow.capabilities.model3d import HUNYUAN3D
from genflow.capabilities.training import LORA_TRAINING
from genflow.capabilities.video import VEO3_FAST, WAN_ANIMATE


CAPABILITIES: Dict[str, CapabilitySpec] = {
    spec.key: spec
    for spec in (
        FLUX_PRO,
        NANO_BANANA_PRO,
        VEO3_FAST,
        WAN_ANIMATE,
        HUNYUAN3D,
        MUSIC,
        LORA_TRAINING,
    )
}


def list_capabilities() -> List[CapabilitySpec]:
    return list(CAPABILITIES.values())


def get_capability(key: str) -> CapabilitySpec | None:
    return CAPABILITIES.get(key)
