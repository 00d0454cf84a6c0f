"""Tests for configuration loading and precedence."""

import json

import pytest

from puller_config import (
    ENABLE_LABEL,
    ConfigError,
    PullerConfig,
    RegistryCredential,
    Verbosity,
    load_config,
)


def test_defaults():
    config = load_config([], environ={})

    assert config == PullerConfig()
    assert config.interval == 30
    assert config.verbosity == Verbosity.NORMAL
    assert config.registry.anonymous
    assert config.candidate_tag is None
    assert config.enable_label == ENABLE_LABEL == "puller.update.enable"


def test_environment():
    config = load_config([], environ={
        'CHECK_INTERVAL': '120',
        'CLEANUP': 'true',
        'LABEL_ENABLE': '1',
        'LOG_LEVEL': 'verbose',
        'REGISTRY_URL': 'registry.example.com',
        'REGISTRY_USERNAME': 'acme',
        'REGISTRY_PASSWORD': 's3cret',
        'REGISTRY_TAG': 'canary',
        'NOTIFICATION_URL': 'http://hooks.local/puller',
    })

    assert config.interval == 120
    assert config.cleanup and config.label_enable
    assert config.verbosity == Verbosity.VERBOSE
    assert config.registry == RegistryCredential('registry.example.com', 'acme', 's3cret')
    assert not config.registry.anonymous
    assert config.candidate_tag == 'canary'
    assert config.notification_url == 'http://hooks.local/puller'


def test_flags_override_environment():
    config = load_config(
        ['--interval', '10', '--quiet', '--registry-tag', 'beta', '--run-once'],
        environ={'CHECK_INTERVAL': '120', 'LOG_LEVEL': 'verbose', 'REGISTRY_TAG': 'canary'},
    )

    assert config.interval == 10
    assert config.verbosity == Verbosity.QUIET
    assert config.candidate_tag == 'beta'
    assert config.run_once


def test_config_file_is_lowest_precedence(tmp_path):
    path = tmp_path / "puller.json"
    path.write_text(json.dumps({
        "interval": 300,
        "cleanup": True,
        "registry": {"url": "ghcr.io", "username": "acme", "tag": "next"},
        "notification_url": "http://file.local/hook",
    }))

    config = load_config(['--config', str(path)], environ={'CHECK_INTERVAL': '60'})

    assert config.interval == 60
    assert config.cleanup is True
    assert config.registry.url == 'ghcr.io'
    assert config.registry.username == 'acme'
    assert config.candidate_tag == 'next'
    assert config.notification_url == 'http://file.local/hook'


def test_config_file_from_environment(tmp_path):
    path = tmp_path / "puller.json"
    path.write_text('{"label_enable": true}')

    assert load_config([], environ={'PULLER_CONFIG': str(path)}).label_enable


@pytest.mark.parametrize("content,message", [
    ('{"interval": "often"}', "validation failed"),
    ('{"interval": 0}', "validation failed"),
    ('{"unknown": 1}', "validation failed"),
    ('{"registry": {"token": "x"}}', "validation failed"),
    ('{not json', "Error parsing"),
])
def test_invalid_config_file(tmp_path, content, message):
    path = tmp_path / "puller.json"
    path.write_text(content)

    with pytest.raises(ConfigError, match=message):
        load_config(['--config', str(path)], environ={})


def test_missing_config_file(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_config(['--config', str(tmp_path / "absent.json")], environ={})


@pytest.mark.parametrize("environ", [
    {'CHECK_INTERVAL': 'soon'},
    {'CHECK_INTERVAL': '0'},
    {'LOG_LEVEL': 'chatty'},
])
def test_invalid_environment(environ):
    with pytest.raises(ConfigError):
        load_config([], environ=environ)


@pytest.mark.parametrize("value,expected", [
    ('DEBUG', Verbosity.VERBOSE),
    ('INFO', Verbosity.NORMAL),
    ('WARNING', Verbosity.QUIET),
    ('error', Verbosity.QUIET),
    ('Quiet', Verbosity.QUIET),
])
def test_log_level_accepts_logging_names(value, expected):
    assert load_config([], environ={'LOG_LEVEL': value}).verbosity == expected


def test_verbose_and_quiet_are_exclusive():
    with pytest.raises(SystemExit) as exc:
        load_config(['--verbose', '--quiet'], environ={})
    assert exc.value.code == 2


def test_registry_host_strips_scheme():
    assert RegistryCredential(url='https://registry.example.com/').host == 'registry.example.com'
    assert RegistryCredential(url='registry.example.com:5000').host == 'registry.example.com:5000'


def test_password_not_in_repr():
    assert 's3cret' not in repr(RegistryCredential('r', 'acme', 's3cret'))
