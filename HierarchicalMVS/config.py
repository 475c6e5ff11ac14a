"""
Configuration management for HierarchicalMVS.

Dataclass configurations with JSON round-tripping and a few presets.
"""

import json
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Tuple, Union

from .core.structures import ModeFlags


@dataclass
class JBUConfig:
    """Joint bilateral upsampling parameters"""
    radius: int = 2              # coarse-pixel neighbourhood half-width
    sigma_spatial: float = 0.5   # in coarse pixels
    sigma_range: float = 25.5    # in guide intensity units (0-255 images)


@dataclass
class SupportPointConfig:
    """Support-point selection thresholds"""
    cell_size: int = 5
    score_threshold: float = 0.1
    texture_penalty: float = 0.2
    invalid_cost: float = 2.0      # costs at or above this mean "no valid cost"
    texture_threshold: float = 0.5


@dataclass
class PlanarPriorConfig:
    """Planar-prior fitting parameters"""
    degenerate_eps: float = 1e-6   # relative singular-value / normal-magnitude floor


@dataclass
class MVSConfig:
    """Configuration for one multi-view stereo run"""

    # Operating modes
    modes: ModeFlags = field(default_factory=ModeFlags)

    # Device selection
    device: Literal['auto', 'cuda', 'cpu'] = 'auto'
    address_mode: Literal['wrap', 'clamp'] = 'wrap'

    # Input handling
    max_image_size: int = 3200
    depth_range_scale: Tuple[float, float] = (0.6, 1.2)
    results_dirname: str = 'mvs_results'

    # Components
    jbu: JBUConfig = field(default_factory=JBUConfig)
    support_points: SupportPointConfig = field(default_factory=SupportPointConfig)
    planar_prior: PlanarPriorConfig = field(default_factory=PlanarPriorConfig)

    # Export
    export_normals: bool = True

    # Logging
    verbose: bool = True
    log_file: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['depth_range_scale'] = list(self.depth_range_scale)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MVSConfig':
        """
        Build a configuration from a (possibly partial) dictionary.

        Unknown keys raise ``ValueError`` so typos do not pass silently.
        """
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")

        kwargs = dict(data)
        nested = {
            'modes': ModeFlags,
            'jbu': JBUConfig,
            'support_points': SupportPointConfig,
            'planar_prior': PlanarPriorConfig,
        }
        for key, sub_cls in nested.items():
            if key in kwargs and isinstance(kwargs[key], dict):
                kwargs[key] = sub_cls(**kwargs[key])
        if 'depth_range_scale' in kwargs:
            kwargs['depth_range_scale'] = tuple(kwargs['depth_range_scale'])
        return cls(**kwargs)

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> 'MVSConfig':
        with open(path, 'r') as f:
            return cls.from_dict(json.load(f))

    def save_json(self, path: Union[str, Path]):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


PRESET_CONFIGS = {
    'fast': {
        'max_image_size': 1600,
        'jbu': {'radius': 1},
        'support_points': {'cell_size': 8},
    },
    'default': {},
    'accurate': {
        'max_image_size': 4800,
        'jbu': {'radius': 3},
        'support_points': {'cell_size': 4},
    },
}


def get_preset_config(name: str) -> MVSConfig:
    """
    Get a preset configuration by name.

    Args:
        name: 'fast', 'default' or 'accurate'
    """
    if name not in PRESET_CONFIGS:
        raise ValueError(f"Unknown preset '{name}'. Available: {list(PRESET_CONFIGS.keys())}")
    return MVSConfig.from_dict(PRESET_CONFIGS[name])
