from __future__ import annotations

from grantflow.collaborators import (
    MultisigConfig,
    RepositoryAuthorizer,
    RepositoryCommitteeConfigProvider,
    Signatory,
)
from grantflow.repository import InMemoryGrantRepository


def test_config_provider_reads_settings_fresh(seed, multisig):
    world = seed(InMemoryGrantRepository(), multisig=multisig(threshold=3, network='kusama'))
    provider = RepositoryCommitteeConfigProvider(world.repo)

    config = provider.get_committee_config(world.group_id)
    assert config.name == 'Infra Grants'
    assert config.active_member_count == 4
    assert config.voting_threshold == 0.5
    assert config.required_approval_percentage == 0.6
    assert config.multisig.threshold == 3
    assert config.multisig.network == 'kusama'
    assert config.multisig.multisig_address == '5CommitteeMultisigWallet'
    assert [s.address for s in config.multisig.signatories] == ['sig-1', 'sig-2', 'sig-3']

    world.repo.add_membership(group_id=world.group_id, user_id=5)
    world.repo.update_committee_settings(
        world.group_id,
        settings={'voting_threshold': 3, 'required_approval_percentage': 75},
    )
    refreshed = provider.get_committee_config(world.group_id)
    assert refreshed.active_member_count == 5
    assert refreshed.required_approval_percentage == 0.75
    assert refreshed.voting_threshold == 3.0
    assert refreshed.quorum_policy().required_vote_count == 3
    assert refreshed.multisig is None


def test_config_provider_defaults(seed):
    world = seed(InMemoryGrantRepository(), voting_threshold=None, required_approval_percentage='junk')
    provider = RepositoryCommitteeConfigProvider(
        world.repo,
        default_voting_threshold=0.4,
        default_approval_percentage=0.9,
        default_network='kusama',
    )
    config = provider.get_committee_config(world.group_id)
    assert config.voting_threshold == 0.4
    assert config.required_approval_percentage == 0.9
    assert config.quorum_policy().required_vote_count == 2
    assert provider.get_committee_config(999) is None


def test_multisig_signatory_lookup():
    config = MultisigConfig(
        signatories=(Signatory('sig-1', 1), Signatory('sig-2')),
        threshold=2,
        multisig_address=None,
        network='paseo',
    )
    assert config.find_signatory(' sig-2 ') == Signatory('sig-2')
    assert config.find_signatory('') is None
    assert config.find_signatory('sig-1').user_id == 1


def test_repository_authorizer(seed):
    world = seed(InMemoryGrantRepository(), members=1)
    authorizer = RepositoryAuthorizer(world.repo)
    assert authorizer.is_user_reviewer(1) is True
    assert authorizer.is_user_reviewer(1, world.group_id) is True
    assert authorizer.is_user_reviewer(1, world.group_id + 1) is False
    assert authorizer.is_user_group_member(1, world.group_id, role='member') is True
    assert authorizer.is_user_group_member(1, world.group_id, role='admin') is False
