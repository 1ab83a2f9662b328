"""Tests for taskgrid/config/settings.py."""

import logging

import pytest
from pydantic import ValidationError

from taskgrid.config.settings import Settings, get_settings
from taskgrid.scheduling.models import LoadBalancingStrategy


def test_defaults():
    settings = Settings(_env_file=None)
    assert settings.app_name == "TaskGrid"
    assert settings.auto_assign_tasks is True
    assert settings.load_balancing_strategy == LoadBalancingStrategy.BALANCED
    assert settings.max_reassignments_per_cycle == 3
    assert settings.utilization_threshold == 80.0
    assert settings.soft_dependency_boost == 5
    assert not settings.is_production


def test_scheduler_config_methods():
    settings = Settings(
        _env_file=None,
        auto_assign_tasks=False,
        load_balancing_enabled=False,
        max_reassignments_per_cycle=7,
        utilization_threshold=65.0,
    )
    assert settings.is_auto_assign_tasks() is False
    assert settings.is_load_balancing_enabled() is False
    assert settings.get_max_reassignments_per_cycle() == 7
    assert settings.get_utilization_threshold() == 65.0


def test_strategy_normalized():
    settings = Settings(_env_file=None, load_balancing_strategy="PERFORMANCE_OPTIMIZED")
    assert settings.get_load_balancing_strategy() == LoadBalancingStrategy.PERFORMANCE_OPTIMIZED


def test_unknown_strategy_rejected():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, load_balancing_strategy="round-robin")


def test_log_level_uppercased():
    settings = Settings(_env_file=None, log_level="debug")
    assert settings.log_level == "DEBUG"
    assert settings.get_log_level() == logging.DEBUG


@pytest.mark.parametrize("field,value", [
    ("environment", "qa"),
    ("log_level", "LOUD"),
    ("log_format", "xml"),
    ("utilization_threshold", 120.0),
    ("api_port", 80),
])
def test_invalid_values(field, value):
    with pytest.raises(ValidationError):
        Settings(_env_file=None, **{field: value})


def test_env_prefix(monkeypatch):
    monkeypatch.setenv("TASKGRID_SOFT_DEPENDENCY_BOOST", "12")
    monkeypatch.setenv("TASKGRID_ENVIRONMENT", "production")
    settings = Settings(_env_file=None)
    assert settings.soft_dependency_boost == 12
    assert settings.is_production


def test_get_settings_cached():
    assert get_settings() is get_settings()
