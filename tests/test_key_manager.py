import json
from datetime import datetime, timedelta, timezone

import pytest

import ppc_backend.key_manager as km


@pytest.fixture
def secrets_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(km, 'user_data_dir', lambda *a, **k: str(tmp_path))
    monkeypatch.delenv('EXAMPLE_SECRET', raising=False)
    monkeypatch.delenv('EXAMPLE_SECRET_ROTATED_AT', raising=False)
    return tmp_path


def test_environment_secret_wins(secrets_dir, monkeypatch):
    monkeypatch.setenv('EXAMPLE_SECRET', 'from-env')
    value, metadata = km.load_secret('example', 'EXAMPLE_SECRET', allow_missing_rotation=True)
    assert value == 'from-env'
    assert metadata['source'] == 'environment'


def test_missing_required_secret_raises(secrets_dir):
    with pytest.raises(km.SecretNotFoundError) as excinfo:
        km.require_secret('example', 'EXAMPLE_SECRET', allow_fallback=False)
    assert 'EXAMPLE_SECRET' in str(excinfo.value)


def test_local_store_round_trip(secrets_dir):
    km.store_secret('example', 'stored-value')

    raw = (secrets_dir / 'secrets.json.enc').read_bytes()
    assert b'stored-value' not in raw
    metadata = json.loads((secrets_dir / 'secrets_metadata.json').read_text())
    assert metadata['example']['source'] == 'local-file'
    assert metadata['example']['rotatedAt']

    value, meta = km.load_secret('example', 'EXAMPLE_SECRET', allow_fallback=True, allow_missing_rotation=False)
    assert value == 'stored-value'
    assert meta['source'] == 'local-file'


def test_local_store_ignored_without_fallback(secrets_dir):
    km.store_secret('example', 'stored-value')
    with pytest.raises(km.SecretNotFoundError):
        km.require_secret('example', 'EXAMPLE_SECRET', allow_fallback=False)


def test_stale_secret_rejected(secrets_dir, monkeypatch):
    stale = (datetime.now(timezone.utc) - timedelta(days=200)).isoformat()
    monkeypatch.setenv('EXAMPLE_SECRET', 'old')
    monkeypatch.setenv('EXAMPLE_SECRET_ROTATED_AT', stale)
    with pytest.raises(km.SecretRotationError):
        km.require_secret('example', 'EXAMPLE_SECRET', allow_fallback=False, allow_missing_rotation=False)


def test_missing_rotation_metadata_rejected_outside_development(secrets_dir, monkeypatch):
    monkeypatch.setenv('ENVIRONMENT', 'production')
    monkeypatch.setenv('EXAMPLE_SECRET', 'value')
    with pytest.raises(km.SecretRotationError):
        km.require_secret('example', 'EXAMPLE_SECRET', allow_fallback=False)


def test_ensure_local_secret_provisions_once(secrets_dir):
    first = km.ensure_local_secret('example', 'EXAMPLE_SECRET', allow_fallback=True)
    second = km.ensure_local_secret('example', 'EXAMPLE_SECRET', allow_fallback=True)
    assert first == second
    assert len(first) >= 48


def test_ensure_local_secret_requires_fallback(secrets_dir):
    with pytest.raises(km.SecretNotFoundError):
        km.ensure_local_secret('example', 'EXAMPLE_SECRET', allow_fallback=False)


@pytest.mark.parametrize(
    'environment, fallback, expected',
    [
        ('development', 'auto', True),
        ('production', 'auto', False),
        ('production', 'always', True),
        ('development', 'never', False),
    ],
)
def test_fallback_policy(monkeypatch, environment, fallback, expected):
    monkeypatch.setenv('ENVIRONMENT', environment)
    monkeypatch.setenv('SECRETS_FALLBACK', fallback)
    assert km._allow_fallback() is expected
