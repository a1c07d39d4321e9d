"""
Tests for the configuration system.

Validates:
- GravityConfig defaults and field validation
- Cross-field consistency (level caps, occupancy mask, world bounds)
- YAML/JSON loading with nested sections, overrides and saving
"""

import json
import shutil
import tempfile
from pathlib import Path

import pytest
import yaml

from octree_gravity.config import config_from_dict, flatten_config, load_config, save_config
from octree_gravity.core.system import GravityConfig


class TestGravityConfig:
    """Test GravityConfig Pydantic model."""

    def test_default_config(self):
        """Defaults describe a 64^3 monopole pyramid."""
        config = GravityConfig()
        assert config.theta == 0.5
        assert config.gravity_strength == 3e-4
        assert config.softening == 0.2
        assert config.dt == pytest.approx(1.0 / 60.0)
        assert config.multipole_order == "monopole"
        assert config.num_levels == 7
        assert config.base_grid_resolution == 64
        assert config.bounds_update_interval == 90
        assert config.bounds_margin == 0.1
        assert config.world_min == (-4.0, -4.0, -4.0)
        assert config.world_max == (4.0, 4.0, 4.0)
        assert config.backend == "auto"
        assert config.neighbourhood_radius is None
        assert not config.is_quadrupole

    def test_quadrupole_default_levels(self):
        config = GravityConfig(multipole_order="quadrupole")
        assert config.num_levels == 4
        assert config.is_quadrupole

    def test_invalid_multipole_order(self):
        with pytest.raises(ValueError, match="multipole_order must be one of"):
            GravityConfig(multipole_order="octupole")

    def test_invalid_backend(self):
        with pytest.raises(ValueError, match="backend must be one of"):
            GravityConfig(backend="metal")

    def test_positive_parameters(self):
        with pytest.raises(ValueError):
            GravityConfig(theta=0.0)
        with pytest.raises(ValueError):
            GravityConfig(dt=-0.1)
        with pytest.raises(ValueError):
            GravityConfig(max_accel=0.0)
        with pytest.raises(ValueError):
            GravityConfig(damping=1.5)

    def test_level_caps(self):
        assert GravityConfig(num_levels=8, base_grid_resolution=128).num_levels == 8
        with pytest.raises(ValueError, match="at most 8 levels"):
            GravityConfig(num_levels=9, base_grid_resolution=256)
        with pytest.raises(ValueError, match="at most 4 levels"):
            GravityConfig(multipole_order="quadrupole", num_levels=5)

    def test_redundant_levels_warn(self):
        with pytest.warns(UserWarning, match="repeat resolution 1"):
            GravityConfig(base_grid_resolution=8, num_levels=6)

    def test_occupancy_mask_requires_quadrupole(self):
        with pytest.raises(ValueError, match="use_occupancy_mask requires"):
            GravityConfig(use_occupancy_mask=True)
        assert GravityConfig(multipole_order="quadrupole", use_occupancy_mask=True).use_occupancy_mask

    def test_world_bounds_order(self):
        with pytest.raises(ValueError, match="must exceed world_min"):
            GravityConfig(world_min=(0.0, 0.0, 0.0), world_max=(1.0, 0.0, 1.0))

    def test_unknown_field_rejected(self):
        with pytest.raises(ValueError):
            GravityConfig(opening_angle=0.3)

    def test_validate_assignment(self):
        config = GravityConfig()
        config.theta = 0.7
        assert config.theta == 0.7
        with pytest.raises(ValueError):
            config.theta = -1.0


class TestFlattenConfig:
    """Nested section mapping."""

    def test_section_aliases(self):
        flat = flatten_config({
            "physics": {"G": 1.0, "theta": 0.3},
            "octree": {"order": "quadrupole", "levels": 3, "radius": 4},
            "bounds": {"min": [-1, -1, -1], "max": [1, 1, 1], "update_interval": 10},
        })
        assert flat == {
            "gravity_strength": 1.0,
            "theta": 0.3,
            "multipole_order": "quadrupole",
            "num_levels": 3,
            "neighbourhood_radius": 4,
            "world_min": (-1, -1, -1),
            "world_max": (1, 1, 1),
            "bounds_update_interval": 10,
        }

    def test_flat_keys_pass_through(self):
        assert flatten_config({"theta": 0.4, "dt": 0.01}) == {"theta": 0.4, "dt": 0.01}

    def test_config_from_dict(self):
        config = config_from_dict({"physics": {"softening": 0.05}, "runtime": {"backend": "cpu"}})
        assert config.softening == 0.05
        assert config.backend == "cpu"


class TestConfigFiles:
    """Loading and saving YAML/JSON files."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        shutil.rmtree(self.temp_dir)

    def test_load_nested_yaml(self):
        path = Path(self.temp_dir) / "galaxy.yaml"
        with open(path, "w") as f:
            yaml.dump({
                "physics": {"G": 1.0, "softening": 0.1},
                "octree": {"order": "quadrupole", "base_resolution": 32},
                "integration": {"dt": 0.005, "damping": 0.01},
                "runtime": {"backend": "cpu", "verbose": False},
            }, f)
        config = load_config(path)
        assert config.gravity_strength == 1.0
        assert config.multipole_order == "quadrupole"
        assert config.num_levels == 4
        assert config.base_grid_resolution == 32
        assert config.dt == 0.005
        assert config.verbose is False

    def test_load_json_with_overrides(self):
        path = Path(self.temp_dir) / "run.json"
        with open(path, "w") as f:
            json.dump({"physics": {"theta": 0.7}, "bounds": {"margin": 0.5}}, f)
        config = load_config(path, theta=0.3, backend="cpu")
        assert config.theta == 0.3
        assert config.bounds_margin == 0.5
        assert config.backend == "cpu"

    def test_empty_yaml_gives_defaults(self):
        path = Path(self.temp_dir) / "empty.yml"
        path.write_text("")
        assert load_config(path) == GravityConfig()

    @pytest.mark.parametrize("suffix", [".yaml", ".json"])
    def test_save_and_reload(self, suffix):
        config = GravityConfig(
            theta=0.4,
            multipole_order="quadrupole",
            use_occupancy_mask=True,
            world_min=(-2.0, -3.0, -1.0),
            world_max=(2.0, 3.0, 1.0),
            backend="cpu",
        )
        path = Path(self.temp_dir) / f"saved{suffix}"
        save_config(config, path)
        assert load_config(path).model_dump() == config.model_dump()

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            load_config(Path(self.temp_dir) / "missing.yaml")

    def test_unsupported_suffix(self):
        path = Path(self.temp_dir) / "config.toml"
        path.write_text("theta = 0.5")
        with pytest.raises(ValueError, match="Unsupported config file format"):
            load_config(path)
        with pytest.raises(ValueError, match="Unsupported output format"):
            save_config(GravityConfig(), path)

    def test_invalid_values_reported_with_path(self):
        path = Path(self.temp_dir) / "bad.yaml"
        path.write_text("octree:\n  order: hexadecapole\n")
        with pytest.raises(ValueError, match="Configuration validation failed"):
            load_config(path)
