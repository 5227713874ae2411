"""ScannerConfig validation."""
import dataclasses

import pytest

from scanner import ConfigurationError, ScannerConfig, ScannerError


def test_defaults():
    config = ScannerConfig()
    assert config.aspect_band == (0.55, 0.90)
    assert config.min_area_fraction == 0.12
    assert config.lock_timeout == 5.0
    assert config.cloud_cooldown == 4.0
    assert config.canonical_size == (400, 560)
    assert config.match_threshold == 4
    assert config.local_first is True


def test_frozen():
    with pytest.raises(dataclasses.FrozenInstanceError):
        ScannerConfig().lock_timeout = 1.0


@pytest.mark.parametrize("overrides", [
    {"aspect_band": (0.9, 0.5)},
    {"aspect_band": (0.0, 0.8)},
    {"aspect_band": (0.5, 1.2)},
    {"canonical_size": (0, 560)},
    {"detect_width": 0},
    {"min_area_fraction": 1.5},
    {"lock_timeout": 0},
    {"cloud_cooldown": -1},
    {"tick_interval": 0},
    {"ocr_upscale": 0},
    {"binarize_threshold": 300},
    {"max_name_distance": -1},
    {"name_whitelist": ""},
    {"name_region": (0.5, 0.2, 0.0, 1.0)},
    {"number_region": (0.8, 0.9, 0.1)},
])
def test_invalid_values_rejected(overrides):
    with pytest.raises(ConfigurationError):
        ScannerConfig(**overrides)


def test_configuration_error_is_scanner_error():
    assert issubclass(ConfigurationError, ScannerError)


def test_zero_cooldown_allowed():
    assert ScannerConfig(cloud_cooldown=0).cloud_cooldown == 0
