import re
import uuid

import pytest

from ppc_backend.errors import ConfigurationError, UpstreamFailure
from ppc_backend.pseudonymize import Pseudonymizer, load_pseudonymizer
from ppc_backend.research_schema import DatasetType, schema_for

TOKEN_RE = re.compile(r'^[A-Z]{3}_[a-f0-9]{16}$')


def _ids(count):
    namespace = uuid.UUID('6f1c2a52-5d0e-4bb4-9d1c-0a3c8f7d2e11')
    return [str(uuid.uuid5(namespace, f'patient-{i}')) for i in range(count)]


def test_token_is_deterministic_for_same_salt():
    first = Pseudonymizer('salt-a')
    second = Pseudonymizer('salt-a')
    original = 'b7d8e1f0-1111-4222-8333-944455556666'
    assert first.token(original, 'PAT') == second.token(original, 'PAT')


def test_token_changes_with_salt():
    original = 'b7d8e1f0-1111-4222-8333-944455556666'
    assert Pseudonymizer('salt-a').token(original, 'PAT') != Pseudonymizer('salt-b').token(original, 'PAT')


def test_no_collisions_across_ten_thousand_ids():
    pseudonymizer = Pseudonymizer('collision-salt')
    tokens = {pseudonymizer.token(value, 'PAT') for value in _ids(10_000)}
    assert len(tokens) == 10_000


def test_token_format_and_no_original_id_leak():
    pseudonymizer = Pseudonymizer('format-salt')
    for original in _ids(500):
        token = pseudonymizer.token(original, 'EPI')
        assert TOKEN_RE.match(token)
        assert original not in token
        assert original.split('-')[0] not in token


def test_empty_salt_is_rejected():
    with pytest.raises(ConfigurationError):
        Pseudonymizer('')


def test_transform_renames_identifiers_and_keeps_content():
    pseudonymizer = Pseudonymizer('transform-salt')
    schema = schema_for(DatasetType.EPISODES)
    rows = [
        {
            'episode_uuid': 'ep-1',
            'patient_uuid': 'pt-1',
            'episode_start_bucket': '2024-Q1',
            'episode_end_bucket': '2024-Q2',
            'number_of_care_targets': 3,
            'episode_status': 'discharged',
        },
        {
            'episode_uuid': 'ep-2',
            'patient_uuid': None,
            'episode_start_bucket': '2024-Q1',
            'episode_end_bucket': None,
            'number_of_care_targets': 1,
            'episode_status': 'active',
        },
    ]
    original = [dict(row) for row in rows]

    result = pseudonymizer.transform(schema, rows)

    assert rows == original
    assert list(result[0].keys()) == list(schema.allowed_columns)
    assert result[0]['episode_pid'] == pseudonymizer.token('ep-1', 'EPI')
    assert result[0]['patient_pid'] == pseudonymizer.token('pt-1', 'PAT')
    assert result[0]['number_of_care_targets'] == 3
    assert result[1]['patient_pid'] is None
    assert result[1]['episode_end_bucket'] is None
    assert result[1]['episode_status'] == 'active'


def test_transform_uses_column_prefixes():
    pseudonymizer = Pseudonymizer('prefix-salt')
    schema = schema_for(DatasetType.CARE_TARGETS)
    row = {column: None for column in schema.source_columns}
    row.update(care_target_uuid='ct-1', episode_uuid='ep-1', patient_uuid='pt-1')

    [result] = pseudonymizer.transform(schema, [row])

    assert result['care_target_pid'].startswith('CAR_')
    assert result['episode_pid'].startswith('EPI_')
    assert result['patient_pid'].startswith('PAT_')


def test_transform_rejects_undeclared_columns():
    pseudonymizer = Pseudonymizer('strict-salt')
    schema = schema_for(DatasetType.OUTCOMES)
    rows = [{'care_target_uuid': 'ct-1', 'instrument_type': 'ODI', 'patient_name': 'Jane Doe'}]
    with pytest.raises(UpstreamFailure):
        pseudonymizer.transform(schema, rows)


def test_load_pseudonymizer_reads_salt_from_environment(monkeypatch):
    monkeypatch.setenv('RESEARCH_PSEUDONYM_SALT', 'env-salt')
    load_pseudonymizer.cache_clear()
    assert load_pseudonymizer().token('x', 'PAT') == Pseudonymizer('env-salt').token('x', 'PAT')


def test_load_pseudonymizer_without_salt_fails(monkeypatch):
    monkeypatch.delenv('RESEARCH_PSEUDONYM_SALT', raising=False)
    monkeypatch.setenv('SECRETS_FALLBACK', 'always')
    load_pseudonymizer.cache_clear()
    with pytest.raises(ConfigurationError):
        load_pseudonymizer()
