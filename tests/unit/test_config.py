from __future__ import annotations

from grantflow.config import load_settings

_ENV_KEYS = (
    'GRANTFLOW_DATABASE_URL',
    'GRANTFLOW_DEFAULT_NETWORK',
    'GRANTFLOW_DEFAULT_VOTING_THRESHOLD',
    'GRANTFLOW_DEFAULT_APPROVAL_PERCENTAGE',
    'GRANTFLOW_DEFAULT_MULTISIG_THRESHOLD',
    'GRANTFLOW_API_TOKEN',
)


def _clear(monkeypatch):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_load_settings_defaults(monkeypatch):
    _clear(monkeypatch)
    settings = load_settings()
    assert 'connect_timeout=2' in settings.database_url
    assert settings.default_network == 'paseo'
    assert settings.default_voting_threshold == 0.5
    assert settings.default_approval_percentage == 0.6
    assert settings.default_multisig_threshold == 2
    assert settings.api_token is None


def test_load_settings_reads_vote_count_and_percent_style_approval(monkeypatch):
    _clear(monkeypatch)
    monkeypatch.setenv('GRANTFLOW_DEFAULT_VOTING_THRESHOLD', '2')
    monkeypatch.setenv('GRANTFLOW_DEFAULT_APPROVAL_PERCENTAGE', '66')
    settings = load_settings()
    assert settings.default_voting_threshold == 2.0
    assert settings.default_approval_percentage == 0.66


def test_load_settings_ignores_bad_values(monkeypatch):
    _clear(monkeypatch)
    monkeypatch.setenv('GRANTFLOW_DEFAULT_VOTING_THRESHOLD', 'half')
    monkeypatch.setenv('GRANTFLOW_DEFAULT_APPROVAL_PERCENTAGE', '250')
    monkeypatch.setenv('GRANTFLOW_DEFAULT_MULTISIG_THRESHOLD', '0')
    monkeypatch.setenv('GRANTFLOW_DEFAULT_NETWORK', 'Kusama')
    monkeypatch.setenv('GRANTFLOW_API_TOKEN', '  ')
    settings = load_settings()
    assert settings.default_voting_threshold == 0.5
    assert settings.default_approval_percentage == 1.0
    assert settings.default_multisig_threshold == 1
    assert settings.default_network == 'kusama'
    assert settings.api_token is None
