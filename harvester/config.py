from __future__ import annotations

import math
import os
from dataclasses import dataclass, fields

DEFAULT_BASE_URL = (
    "http://ccff02.minfin.fgov.be/geoservices/arcgis/services/WMS/"
    "Cadastral_LayersWFS/MapServer/WFSServer"
)
DEFAULT_TYPENAME = "CL:Cadastral_parcel"
DEFAULT_USER_AGENT = "wfs-tile-harvester/0.1 (bulk parcel download)"

ENV_PREFIX = "HARVEST_"


@dataclass(frozen=True)
class HarvestSettings:
    """Policy values for a harvest run.

    Every field can be overridden through a ``HARVEST_<FIELD>`` environment
    variable (for example ``HARVEST_MAX_CONCURRENT=10``).
    """

    base_url: str = DEFAULT_BASE_URL
    typename: str = DEFAULT_TYPENAME
    output_format: str = "GML3"
    srs_name: str = "EPSG:4326"
    layer_name: str = "parcels"
    dedup_key: str = "CaPaKey"
    user_agent: str = DEFAULT_USER_AGENT

    step: float = 0.01
    # Server-side cap requested per GetFeature call.
    max_features: int = 1000
    saturation_ratio: float = 0.4
    max_depth: int = 5

    max_concurrent: int = 5
    max_attempts: int = 3
    retry_base_delay: float = 1.0
    request_timeout: float = 60.0

    validation_chunk_size: int = 500
    merge_batch_size: int = 1000
    output_name: str = "parcels"

    ogr2ogr: str = "ogr2ogr"
    ogrinfo: str = "ogrinfo"

    @property
    def saturation_threshold(self) -> int:
        # Rounding first keeps 100 * 0.29 == 28.999999999999996 at 29.
        return math.ceil(round(self.max_features * self.saturation_ratio, 9))

    @classmethod
    def from_env(cls) -> "HarvestSettings":
        defaults = cls()
        overrides = {}
        for item in fields(cls):
            raw_value = os.getenv(f"{ENV_PREFIX}{item.name.upper()}", "").strip()
            if not raw_value:
                continue
            default = getattr(defaults, item.name)
            overrides[item.name] = _coerce(raw_value, default)
        return cls(**overrides)


_MINIMUMS = {
    "step": 1e-6,
    "max_features": 1,
    "saturation_ratio": 0.01,
    "max_depth": 0,
    "max_concurrent": 1,
    "max_attempts": 1,
    "retry_base_delay": 0.0,
    "request_timeout": 1.0,
    "validation_chunk_size": 1,
    "merge_batch_size": 1,
}


def _coerce(raw_value: str, default):
    if isinstance(default, str):
        return raw_value
    try:
        value = type(default)(raw_value)
    except ValueError:
        return default
    return value


def _clamp_settings(settings: HarvestSettings) -> HarvestSettings:
    adjusted = {}
    for name, minimum in _MINIMUMS.items():
        value = getattr(settings, name)
        if value < minimum:
            adjusted[name] = type(value)(minimum)
    if not adjusted:
        return settings
    return HarvestSettings(**{**settings.__dict__, **adjusted})


def load_settings() -> HarvestSettings:
    """Read settings from the environment, clamping values below their minimum."""

    return _clamp_settings(HarvestSettings.from_env())
