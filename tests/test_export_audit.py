import pytest

from ppc_backend.export_audit import DO_NOT_DISTRIBUTE, audit_export, main, parse_export
from ppc_backend.pseudonymize import Pseudonymizer
from ppc_backend.research_export import render_csv
from ppc_backend.research_schema import DatasetType, schema_for


def _clean_outcomes_csv():
    pseudonymizer = Pseudonymizer('audit-salt')
    rows = [
        {
            'care_target_uuid': f'ct-{i}',
            'instrument_type': 'ODI',
            'baseline_score': 40.0 + i,
            'discharge_score': 20.0,
            'score_delta': -20.0 - i,
            'mcid_met': True,
        }
        for i in range(3)
    ]
    return render_csv(pseudonymizer.transform(schema_for(DatasetType.OUTCOMES), rows))


def _write(tmp_path, text, name='export.csv'):
    path = tmp_path / name
    path.write_text(text, encoding='utf-8')
    return str(path)


def test_clean_export_passes(tmp_path, capsys):
    path = _write(tmp_path, _clean_outcomes_csv())
    assert main([path, 'outcomes']) == 0
    out = capsys.readouterr().out
    assert 'All checks passed.' in out
    assert '[OK] Row count: 3 data rows' in out
    assert DO_NOT_DISTRIBUTE not in out


def test_pseudonyms_with_digit_runs_are_not_flagged():
    text = (
        'care_target_pid,instrument_type,baseline_score,discharge_score,score_delta,mcid_met\n'
        'CAR_1234567890abcdef,ODI,40,20,-20,true\n'
    )
    outcomes = audit_export(text, DatasetType.OUTCOMES)
    assert all(item.ok for item in outcomes)


def test_phi_in_cell_fails(tmp_path, capsys):
    text = _clean_outcomes_csv().replace('ODI', 'jane.doe@example.com', 1)
    path = _write(tmp_path, text)
    assert main([path, 'outcomes']) == 1
    out = capsys.readouterr().out
    assert '[FAIL] PHI pattern scan: Email: 1 potential matches' in out
    assert DO_NOT_DISTRIBUTE in out


def test_unexpected_and_forbidden_columns_fail():
    text = (
        'care_target_pid,instrument_type,baseline_score,discharge_score,score_delta,mcid_met,patient_name\n'
        'CAR_0123456789abcdef,ODI,40,20,-20,true,redacted\n'
    )
    results = {item.label: item for item in audit_export(text, DatasetType.OUTCOMES)}
    assert not results['Header validation'].ok
    assert 'unexpected: patient_name' in results['Header validation'].details
    assert not results['Forbidden column check'].ok
    assert results['Row count'].ok


def test_missing_header_is_reported():
    text = 'care_target_pid,instrument_type\nCAR_0123456789abcdef,ODI\n'
    [headers, *_] = audit_export(text, DatasetType.OUTCOMES)
    assert not headers.ok
    assert 'missing: baseline_score' in headers.details


def test_malformed_pseudonym_fails():
    text = (
        'care_target_pid,instrument_type,baseline_score,discharge_score,score_delta,mcid_met\n'
        'ct-raw-id,ODI,40,20,-20,true\n'
        ',ODI,40,20,-20,true\n'
    )
    results = {item.label: item for item in audit_export(text, DatasetType.OUTCOMES)}
    assert not results['Pseudonym ID format'].ok
    assert results['Pseudonym ID format'].details.startswith('1 PIDs')


def test_export_without_pid_columns_fails():
    text = 'instrument_type,baseline_score\nODI,40\n'
    results = {item.label: item for item in audit_export(text, DatasetType.OUTCOMES)}
    assert not results['Pseudonym ID format'].ok


def test_parse_export_normalises_headers():
    parsed = parse_export(' Care_Target_PID ,Instrument_Type\nCAR_0123456789abcdef,"ODI, modified"\n')
    assert parsed.headers == ['care_target_pid', 'instrument_type']
    assert parsed.rows == [['CAR_0123456789abcdef', 'ODI, modified']]


@pytest.mark.parametrize(
    'content, dataset',
    [
        ('care_target_pid\nCAR_0123456789abcdef\n', 'patients'),
        ('', 'outcomes'),
    ],
)
def test_bad_invocations_exit_nonzero(tmp_path, content, dataset):
    path = _write(tmp_path, content)
    assert main([path, dataset]) == 1


def test_unreadable_file_exits_nonzero(tmp_path, capsys):
    assert main([str(tmp_path / 'missing.csv'), 'outcomes']) == 1
    assert 'Error reading file' in capsys.readouterr().out
