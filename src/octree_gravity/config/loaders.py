"""
Configuration loaders for YAML and JSON files.

Files use nested sections (``physics``, ``octree``, ``integration``,
``bounds``, ``runtime``) that are flattened onto :class:`GravityConfig`
fields; flat files with the field names directly are accepted too.
"""

from typing import Dict, Any, Union
from pathlib import Path
import yaml
import json

from octree_gravity.core.system import GravityConfig

# Section -> {file key: GravityConfig field}
FIELD_MAPPINGS = {
    'physics': {
        'G': 'gravity_strength',
        'gravity_strength': 'gravity_strength',
        'softening': 'softening',
        'theta': 'theta',
        'particle_count': 'particle_count',
    },
    'octree': {
        'order': 'multipole_order',
        'multipole_order': 'multipole_order',
        'levels': 'num_levels',
        'num_levels': 'num_levels',
        'base_resolution': 'base_grid_resolution',
        'base_grid_resolution': 'base_grid_resolution',
        'radius': 'neighbourhood_radius',
        'neighbourhood_radius': 'neighbourhood_radius',
        'occupancy_mask': 'use_occupancy_mask',
        'use_occupancy_mask': 'use_occupancy_mask',
    },
    'integration': {
        'dt': 'dt',
        'damping': 'damping',
        'max_speed': 'max_speed',
        'max_accel': 'max_accel',
    },
    'bounds': {
        'min': 'world_min',
        'max': 'world_max',
        'update_interval': 'bounds_update_interval',
        'margin': 'bounds_margin',
    },
    'runtime': {
        'backend': 'backend',
        'float_blend': 'float_blend',
        'max_texture_size': 'max_texture_size',
        'verbose': 'verbose',
        'log_interval': 'log_interval',
    },
}


def load_config(filename: Union[str, Path], **overrides) -> GravityConfig:
    """
    Load gravity configuration from a YAML or JSON file.

    Parameters
    ----------
    filename : str or Path
        Path to configuration file (.yaml, .yml, or .json)
    **overrides : keyword arguments
        Override specific config values (e.g., theta=0.3, backend="cpu")

    Returns
    -------
    config : GravityConfig
        Validated configuration

    Raises
    ------
    FileNotFoundError
        If configuration file does not exist
    ValueError
        If file format is unsupported or config is invalid

    Examples
    --------
    >>> config = load_config("galaxy.yaml")
    >>> config = load_config("galaxy.yaml", multipole_order="quadrupole")
    """
    filepath = Path(filename)

    if not filepath.exists():
        raise FileNotFoundError(f"Configuration file not found: {filepath}")

    suffix = filepath.suffix.lower()
    if suffix in ['.yaml', '.yml']:
        config_dict = load_yaml(filepath)
    elif suffix == '.json':
        config_dict = load_json(filepath)
    else:
        raise ValueError(
            f"Unsupported config file format: {suffix}. "
            "Use .yaml, .yml, or .json"
        )

    flat_config = flatten_config(config_dict)
    flat_config.update(overrides)

    try:
        config = GravityConfig(**flat_config)
    except ValueError as e:
        raise ValueError(
            f"Configuration validation failed for {filepath}: {e}"
        ) from e

    return config


def load_yaml(filepath: Path) -> Dict[str, Any]:
    """Load a YAML file into a dictionary (empty file -> {})."""
    with open(filepath, 'r') as f:
        config_dict = yaml.safe_load(f)

    if config_dict is None:
        config_dict = {}

    return config_dict


def load_json(filepath: Path) -> Dict[str, Any]:
    """Load a JSON file into a dictionary."""
    with open(filepath, 'r') as f:
        config_dict = json.load(f)

    return config_dict


def flatten_config(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """
    Flatten nested configuration dictionary.

    Converts nested structures like:
        {'physics': {'G': 1.0, 'theta': 0.7}, 'bounds': {'margin': 0.2}}
    to:
        {'gravity_strength': 1.0, 'theta': 0.7, 'bounds_margin': 0.2}

    Keys of known sections are mapped through ``FIELD_MAPPINGS``; unknown
    keys pass through unchanged (and are rejected by the model if they are
    not fields).
    """
    flat = {}

    for key, value in config_dict.items():
        if key in FIELD_MAPPINGS and isinstance(value, dict):
            for subkey, subvalue in value.items():
                flat[FIELD_MAPPINGS[key].get(subkey, subkey)] = subvalue
        elif isinstance(value, dict):
            flat.update(flatten_config(value))
        else:
            flat[key] = value

    for key in ('world_min', 'world_max'):
        if isinstance(flat.get(key), list):
            flat[key] = tuple(flat[key])

    return flat


def save_config(config: GravityConfig, filename: Union[str, Path]) -> None:
    """
    Save GravityConfig to a YAML or JSON file, organised in sections.

    Parameters
    ----------
    config : GravityConfig
        Configuration to save
    filename : str or Path
        Output file path (.yaml, .yml or .json)
    """
    filepath = Path(filename)
    config_dict = config.model_dump()

    organized = {
        'physics': {
            'gravity_strength': config_dict['gravity_strength'],
            'softening': config_dict['softening'],
            'theta': config_dict['theta'],
            'particle_count': config_dict['particle_count'],
        },
        'octree': {
            'multipole_order': config_dict['multipole_order'],
            'num_levels': config_dict['num_levels'],
            'base_grid_resolution': config_dict['base_grid_resolution'],
            'neighbourhood_radius': config_dict['neighbourhood_radius'],
            'use_occupancy_mask': config_dict['use_occupancy_mask'],
        },
        'integration': {
            'dt': config_dict['dt'],
            'damping': config_dict['damping'],
            'max_speed': config_dict['max_speed'],
            'max_accel': config_dict['max_accel'],
        },
        'bounds': {
            'min': list(config_dict['world_min']),
            'max': list(config_dict['world_max']),
            'update_interval': config_dict['bounds_update_interval'],
            'margin': config_dict['bounds_margin'],
        },
        'runtime': {
            'backend': config_dict['backend'],
            'float_blend': config_dict['float_blend'],
            'max_texture_size': config_dict['max_texture_size'],
            'verbose': config_dict['verbose'],
            'log_interval': config_dict['log_interval'],
        },
    }

    suffix = filepath.suffix.lower()
    if suffix in ['.yaml', '.yml']:
        with open(filepath, 'w') as f:
            yaml.dump(organized, f, default_flow_style=False, sort_keys=False)
    elif suffix == '.json':
        with open(filepath, 'w') as f:
            json.dump(organized, f, indent=2)
    else:
        raise ValueError(f"Unsupported output format: {suffix}. Use .yaml or .json")


def config_from_dict(config_dict: Dict[str, Any]) -> GravityConfig:
    """
    Create GravityConfig from a (possibly nested) dictionary.
    """
    return GravityConfig(**flatten_config(config_dict))
