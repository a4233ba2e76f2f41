from __future__ import annotations

import grantflow.cli as cli_module
from grantflow.cli import build_parser
import pytest


class _FakeResponse:
    def __init__(self, status_code=200, payload=None, text='ok'):
        self.status_code = int(status_code)
        self._payload = payload if payload is not None else {'success': True}
        self.text = text

    def json(self):
        return self._payload


class _FakeClient:
    def __init__(self, response=None):
        self.calls = []
        self.headers = None
        self._response = response or _FakeResponse()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def get(self, url, params=None):
        self.calls.append(('GET', url, params, None))
        return self._response

    def post(self, url, json=None):
        self.calls.append(('POST', url, None, json))
        return self._response


@pytest.fixture
def fake(monkeypatch):
    monkeypatch.delenv('GRANTFLOW_API_TOKEN', raising=False)
    monkeypatch.delenv('GRANTFLOW_USER_ID', raising=False)
    client = _FakeClient()

    def _factory(timeout=60, headers=None):
        client.headers = dict(headers or {})
        return client

    monkeypatch.setattr(cli_module.httpx, 'Client', _factory)
    return client


def test_cli_parser_review_subcommand():
    args = build_parser().parse_args(
        ['--user-id', '3', 'review', '12', '--vote', 'reject', '--milestone-id', '4', '--feedback', 'needs tests']
    )
    assert args.command == 'review'
    assert args.user_id == 3
    assert args.submission_id == 12
    assert args.milestone_id == 4
    assert args.vote == 'reject'


def test_cli_parser_rejects_unknown_vote():
    with pytest.raises(SystemExit):
        build_parser().parse_args(['review', '1', '--vote', 'abstain'])


def test_cli_main_routes_http_commands(fake, capsys):
    cases = [
        (['review', '1', '--vote', 'approve'], 'POST', '/api/reviews'),
        (
            [
                'initiate', '4', '--wallet', 'sig-1', '--tx-hash', '0xinit', '--call-hash', '0xcall',
                '--call-data', '0xdata', '--height', '100', '--index', '2',
            ],
            'POST',
            '/api/milestones/4/approvals',
        ),
        (['vote', '7', '--wallet', 'sig-2', '--tx-hash', '0xv'], 'POST', '/api/approvals/7/votes'),
        (['finalize', '7', '--wallet', 'sig-2', '--tx-hash', '0xf', '--block-number', '9'], 'POST', '/api/approvals/7/finalize'),
        (['cancel', '7'], 'POST', '/api/approvals/7/cancel'),
        (['complete', '4', '--tx-hash', '0xm'], 'POST', '/api/milestones/4/complete'),
        (['approval-status', '4'], 'GET', '/api/milestones/4/approval-status'),
    ]

    for argv, method, endpoint in cases:
        fake.calls.clear()
        code = cli_module.main(['--user-id', '2', *argv])
        assert code == 0
        call = fake.calls[-1]
        assert call[0] == method
        assert call[1].endswith(endpoint)
        assert '"success": true' in capsys.readouterr().out.lower()
    assert fake.headers == {'x-grantflow-user-id': '2'}


def test_cli_main_vote_payload_carries_execution(fake):
    code = cli_module.main(
        [
            '--user-id', '2', 'vote', '7', '--wallet', 'sig-2', '--tx-hash', '0xexec',
            '--executed', '--block-number', '12345', '--child-bounty-id', '3',
        ]
    )
    assert code == 0
    _method, _url, _params, payload = fake.calls[-1]
    assert payload['was_executed'] is True
    assert payload['execution_block_number'] == 12345
    assert payload['child_bounty_id'] == 3
    assert payload['signature_type'] == 'signed'


def test_cli_main_initiate_payload_has_timepoint(fake):
    cli_module.main(
        [
            '--user-id', '1', 'initiate', '4', '--wallet', 'sig-1', '--tx-hash', '0xinit', '--call-hash', '0xcall',
            '--call-data', '0xdata', '--height', '100', '--index', '2', '--workflow', 'separated',
        ]
    )
    payload = fake.calls[-1][3]
    assert payload['timepoint'] == {'height': 100, 'index': 2}
    assert payload['approval_workflow'] == 'separated'


def test_cli_main_reads_user_and_token_from_environment(fake, monkeypatch):
    monkeypatch.setenv('GRANTFLOW_USER_ID', '5')
    monkeypatch.setenv('GRANTFLOW_API_TOKEN', 'tok')
    assert cli_module.main(['cancel', '7']) == 0
    assert fake.headers == {'x-grantflow-user-id': '5', 'x-grantflow-api-token': 'tok'}


def test_cli_main_requires_user_for_actions(fake):
    with pytest.raises(SystemExit):
        cli_module.main(['cancel', '7'])
    assert cli_module.main(['approval-status', '4']) == 0


def test_cli_main_http_error_returns_non_zero(fake, capsys):
    fake._response = _FakeResponse(status_code=409, payload={'success': False}, text='conflict')
    code = cli_module.main(['--user-id', '1', 'review', '1', '--vote', 'approve'])
    assert code == 1
    assert 'HTTP 409' in capsys.readouterr().err
