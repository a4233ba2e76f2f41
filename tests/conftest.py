from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace
import sys

import pytest


def _prepend_repo_src_to_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src = repo_root / 'src'
    if not src.is_dir():
        return
    src_text = str(src)
    normalized = src_text.replace('\\', '/').lower()
    rest = [
        item for item in sys.path
        if str(item or '').strip() and str(item).replace('\\', '/').lower() != normalized
    ]
    sys.path[:] = [src_text, *rest]


_prepend_repo_src_to_syspath()

SUBMITTER_ID = 900
BENEFICIARY_WALLET = '5GrantBeneficiaryWallet'
MULTISIG_ADDRESS = '5CommitteeMultisigWallet'


def multisig_settings(*, threshold: int = 2, signatories: int = 3, network: str = 'polkadot') -> dict:
    """Signatory ``sig-N`` is bound to member user ``N``."""
    return {
        'multisig_address': MULTISIG_ADDRESS,
        'threshold': threshold,
        'network': network,
        'signatories': [{'address': f'sig-{n}', 'user_id': n} for n in range(1, signatories + 1)],
    }


def _seed(
    repo,
    *,
    members: int = 4,
    voting_threshold: float | None = 0.5,
    required_approval_percentage: float | None = 0.6,
    multisig: dict | None = None,
    milestone_amount: int | None = 1000,
    wallet_address: str | None = BENEFICIARY_WALLET,
):
    settings: dict = {}
    if voting_threshold is not None:
        settings['voting_threshold'] = voting_threshold
    if required_approval_percentage is not None:
        settings['required_approval_percentage'] = required_approval_percentage
    if multisig is not None:
        settings['multisig'] = multisig
    committee = repo.create_committee(name='Infra Grants', settings=settings)
    for user_id in range(1, members + 1):
        repo.add_membership(group_id=committee['id'], user_id=user_id)
    submission = repo.create_submission(
        group_id=committee['id'],
        submitter_id=SUBMITTER_ID,
        title='Indexer rewrite',
        wallet_address=wallet_address,
        status='in-review',
    )
    milestone = repo.create_milestone(
        submission_id=submission['id'],
        group_id=committee['id'],
        title='Milestone 1',
        amount=milestone_amount,
        status='in-review',
    )
    return SimpleNamespace(
        repo=repo,
        committee=committee,
        group_id=committee['id'],
        submission=submission,
        submission_id=submission['id'],
        milestone=milestone,
        milestone_id=milestone['id'],
    )


@pytest.fixture
def seed():
    return _seed


@pytest.fixture
def multisig():
    return multisig_settings
