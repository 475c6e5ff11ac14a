"""Configuration, mode flags and logging setup"""

import logging

import pytest

from HierarchicalMVS.config import MVSConfig, get_preset_config
from HierarchicalMVS.core.structures import ModeFlags, Resolution
from HierarchicalMVS.logger import configure_from_config, get_logger, problem_logger, set_level, setup_logger


def test_defaults():
    config = MVSConfig()
    assert config.modes == ModeFlags()
    assert config.depth_range_scale == (0.6, 1.2)
    assert config.jbu.radius == 2
    assert config.support_points.cell_size == 5
    assert config.support_points.invalid_cost == 2.0
    assert config.planar_prior.degenerate_eps == 1e-6


def test_json_round_trip(tmp_path):
    config = MVSConfig(modes=ModeFlags(hierarchy=True, prior_consistency=True), device='cpu',
                       address_mode='clamp', results_dirname='out')
    config.jbu.sigma_range = 10.0
    config.save_json(tmp_path / "config.json")

    loaded = MVSConfig.from_json(tmp_path / "config.json")
    assert loaded == config
    assert isinstance(loaded.modes, ModeFlags)
    assert loaded.depth_range_scale == (0.6, 1.2)


def test_unknown_keys_are_rejected():
    with pytest.raises(ValueError, match="modez"):
        MVSConfig.from_dict({'modez': {}})


def test_presets():
    assert get_preset_config('fast').jbu.radius == 1
    assert get_preset_config('accurate').support_points.cell_size == 4
    assert get_preset_config('default') == MVSConfig()
    with pytest.raises(ValueError):
        get_preset_config('turbo')


def test_mode_flags_compose():
    flags = ModeFlags(geometric_consistency=True, prior_consistency=True)
    assert flags.active() == ['geometric_consistency', 'prior_consistency']
    assert str(flags) == 'geometric_consistency+prior_consistency'
    assert str(ModeFlags()) == 'photometric'


def test_resolution_helpers():
    res = Resolution(40, 30)
    assert res.shape == (30, 40)
    assert res.num_pixels == 1200
    assert res.scaled(0.5) == Resolution(20, 15)
    assert str(res) == "40x30"


def test_logger_hierarchy(tmp_path):
    log_file = tmp_path / "logs" / "mvs.log"
    root = setup_logger(level="DEBUG", log_file=str(log_file), console=False, force=True)
    try:
        get_logger("workspace").debug("allocating")
        problem_logger("pipeline", 3).info("started")
        for handler in root.handlers:
            handler.flush()
        text = log_file.read_text()
        assert "[HierarchicalMVS.workspace] allocating" in text
        assert "[HierarchicalMVS.pipeline] [problem 3] started" in text

        set_level("WARNING")
        assert root.level == logging.WARNING
    finally:
        for handler in list(root.handlers):
            handler.close()
        root.handlers = []


def test_logging_follows_config(tmp_path):
    config = MVSConfig(verbose=False, log_file=str(tmp_path / "run.log"))
    root = configure_from_config(config, force=True)
    try:
        assert root.level == logging.INFO
        assert any(isinstance(h, logging.FileHandler) for h in root.handlers)

        # An already configured logger is kept
        assert configure_from_config(MVSConfig(verbose=True)) is root
        assert root.level == logging.INFO
    finally:
        for handler in list(root.handlers):
            handler.close()
        root.handlers = []
