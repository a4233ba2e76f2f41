from __future__ import annotations

import pytest

from grantflow.repository import InMemoryGrantRepository
from grantflow.service import CompleteMilestoneInput, GrantService, InputValidationError


@pytest.fixture
def world(seed, multisig):
    return seed(InMemoryGrantRepository(), multisig=multisig(network='kusama'))


@pytest.fixture
def service(world):
    return GrantService(repository=world.repo)


def test_manual_completion_defaults_from_committee_and_submission(service, world):
    result = service.complete_milestone(
        2,
        CompleteMilestoneInput(milestone_id=world.milestone_id, transaction_hash='0xmanual'),
    )
    assert result.success is True
    assert result.message == 'Milestone completed and payment processed successfully'
    assert result.data['milestone']['status'] == 'completed'

    payout = result.data['payout']
    assert payout['amount'] == 1000
    assert payout['triggered_by'] == 2
    assert payout['block_explorer_url'] == 'https://kusama.subscan.io/extrinsic/0xmanual'
    assert payout['wallet_from'] == '5CommitteeMultisigWallet'
    assert payout['wallet_to'] == '5GrantBeneficiaryWallet'

    notices = world.repo.list_notifications(user_id=900)
    assert [n['content'] for n in notices] == [
        'Milestone "Milestone 1" has been completed and payment has been processed.'
    ]


def test_manual_completion_honours_explicit_values(service, world):
    result = service.complete_milestone(
        1,
        CompleteMilestoneInput(
            milestone_id=world.milestone_id,
            transaction_hash='0xmanual',
            amount=250,
            block_explorer_url='https://explorer.example/tx/0xmanual',
            wallet_from='treasury',
            wallet_to='team',
        ),
    )
    payout = result.data['payout']
    assert payout['amount'] == 250
    assert payout['block_explorer_url'] == 'https://explorer.example/tx/0xmanual'
    assert (payout['wallet_from'], payout['wallet_to']) == ('treasury', 'team')


def test_manual_completion_is_one_shot(service, world):
    payload = CompleteMilestoneInput(milestone_id=world.milestone_id, transaction_hash='0xmanual')
    assert service.complete_milestone(1, payload).success is True
    again = service.complete_milestone(1, payload)
    assert again.code == 'conflict'
    assert again.error == 'This milestone has already been completed'
    assert len(world.repo.list_payouts()) == 1


def test_manual_completion_rejections(service, world):
    payload = CompleteMilestoneInput(milestone_id=world.milestone_id, transaction_hash='0xmanual')
    denied = service.complete_milestone(77, payload)
    assert denied.code == 'forbidden'
    assert denied.error == 'You are not authorized to complete milestones'
    missing = service.complete_milestone(1, CompleteMilestoneInput(milestone_id=999, transaction_hash='0x1'))
    assert missing.code == 'not_found'
    with pytest.raises(InputValidationError):
        service.complete_milestone(1, CompleteMilestoneInput(milestone_id=world.milestone_id, transaction_hash=' '))


def test_manual_completion_needs_an_amount(seed):
    world = seed(InMemoryGrantRepository(), milestone_amount=None)
    service = GrantService(repository=world.repo)
    with pytest.raises(InputValidationError) as excinfo:
        service.complete_milestone(1, CompleteMilestoneInput(milestone_id=world.milestone_id, transaction_hash='0x1'))
    assert excinfo.value.field == 'amount'


def test_manual_completion_without_multisig_uses_default_network(seed):
    world = seed(InMemoryGrantRepository())
    service = GrantService(repository=world.repo, default_network='polkadot')
    result = service.complete_milestone(
        1,
        CompleteMilestoneInput(milestone_id=world.milestone_id, transaction_hash='0xabc'),
    )
    payout = result.data['payout']
    assert payout['block_explorer_url'] == 'https://polkadot.subscan.io/extrinsic/0xabc'
    assert payout['wallet_from'] is None
    assert payout['wallet_to'] == '5GrantBeneficiaryWallet'
