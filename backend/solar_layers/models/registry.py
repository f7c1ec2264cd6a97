from __future__ import annotations

from typing import Any

from ..config.layers import LAYER_PRESETS
from .base import (
    AnnualFluxLayer,
    DsmLayer,
    HourlyShadeLayer,
    LayerId,
    LayerSpec,
    MaskLayer,
    MonthlyFluxLayer,
    RgbLayer,
)

LAYER_REGISTRY: dict[LayerId, LayerSpec] = {
    LayerId.MASK: MaskLayer(),
    LayerId.DSM: DsmLayer(),
    LayerId.RGB: RgbLayer(),
    LayerId.ANNUAL_FLUX: AnnualFluxLayer(),
    LayerId.MONTHLY_FLUX: MonthlyFluxLayer(),
    LayerId.HOURLY_SHADE: HourlyShadeLayer(),
}


def parse_layer_id(value: LayerId | str) -> LayerId:
    if isinstance(value, LayerId):
        return value
    try:
        return LayerId(str(value or "").strip())
    except ValueError:
        raise KeyError(f"Unknown layer: {value!r}") from None


def layer_spec(layer_id: LayerId | str) -> LayerSpec:
    return LAYER_REGISTRY[parse_layer_id(layer_id)]


def list_layer_catalog() -> list[dict[str, Any]]:
    catalog: list[dict[str, Any]] = []
    for layer_id, spec in LAYER_REGISTRY.items():
        legend = spec.legend()
        catalog.append(
            {
                "id": layer_id.value,
                "label": LAYER_PRESETS[layer_id.value]["label"],
                "frames": spec.frames,
                "legend": legend.to_dict() if legend is not None else None,
            }
        )
    return catalog
