from __future__ import annotations

import pytest

from grantflow.domain import Network, NotificationType, normalize_notification_type
from grantflow.domain.models import ReviewType, VoteValue, normalize_enum, target_key
from grantflow.domain.networks import block_explorer_url, normalize_network


def test_block_explorer_url_per_network():
    assert block_explorer_url('0xabc', network='polkadot') == 'https://polkadot.subscan.io/extrinsic/0xabc'
    assert block_explorer_url('0xabc', network='kusama') == 'https://kusama.subscan.io/extrinsic/0xabc'
    assert block_explorer_url('0xabc', network=Network.PASEO_ASSET_HUB).startswith('https://assethub-paseo.subscan.io/')


def test_unknown_network_falls_back_to_default():
    assert normalize_network('moonbeam') == 'paseo'
    assert normalize_network(None, default='kusama') == 'kusama'
    assert normalize_network('Paseo-Asset-Hub') == 'paseo_asset_hub'
    assert block_explorer_url(' 0xdef ', network=None) == 'https://paseo.subscan.io/extrinsic/0xdef'


def test_normalize_enum_accepts_case_and_rejects_unknown():
    assert normalize_enum(VoteValue, ' Approve ', field='vote') is VoteValue.APPROVE
    assert normalize_enum(ReviewType, ReviewType.FINAL, field='review_type') is ReviewType.FINAL
    with pytest.raises(ValueError, match='vote must be one of'):
        normalize_enum(VoteValue, 'maybe', field='vote')


def test_target_key_separates_submission_and_milestone_votes():
    assert target_key(submission_id=5, milestone_id=None) == 'submission:5'
    assert target_key(submission_id=5, milestone_id=9) == 'milestone:9'


def test_normalize_notification_type():
    assert normalize_notification_type(NotificationType.MILESTONE_REJECTED) == 'milestone_rejected'
    assert normalize_notification_type(' Approval_Initiated ') == 'approval_initiated'
    with pytest.raises(ValueError):
        normalize_notification_type('')
