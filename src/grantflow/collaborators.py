from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from grantflow.domain.models import ApprovalWorkflow
from grantflow.domain.networks import DEFAULT_NETWORK, normalize_network
from grantflow.domain.quorum import QuorumPolicy
from grantflow.repository import NotificationCreateRecord


class Authorizer(Protocol):
    def is_user_reviewer(self, user_id: int, group_id: int | None = None) -> bool:
        ...

    def is_user_group_member(self, user_id: int, group_id: int | None = None, role: str | None = None) -> bool:
        ...


class NotificationWriter(Protocol):
    def create_notification(self, record: NotificationCreateRecord) -> dict:
        ...


@dataclass(frozen=True)
class Signatory:
    address: str
    user_id: int | None = None


@dataclass(frozen=True)
class MultisigConfig:
    signatories: tuple[Signatory, ...]
    threshold: int
    multisig_address: str | None
    network: str
    parent_bounty_id: int | None = None
    approval_workflow: str = ApprovalWorkflow.MERGED.value

    def find_signatory(self, address: str | None) -> Signatory | None:
        text = str(address or '').strip()
        if not text:
            return None
        for item in self.signatories:
            if item.address == text:
                return item
        return None


@dataclass(frozen=True)
class CommitteeConfig:
    group_id: int
    name: str
    voting_threshold: float
    required_approval_percentage: float
    active_member_count: int
    multisig: MultisigConfig | None = None

    def quorum_policy(self) -> QuorumPolicy:
        return QuorumPolicy(
            active_member_count=self.active_member_count,
            voting_threshold=self.voting_threshold,
            required_approval_percentage=self.required_approval_percentage,
        )


class CommitteeConfigProvider(Protocol):
    def get_committee_config(self, group_id: int) -> CommitteeConfig | None:
        ...


def _ratio(value, default: float) -> float:
    if value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    # Committees store percentages either as 0.6 or as 60.
    if number > 1.0:
        number = number / 100.0
    return min(1.0, max(0.0, number))


def _threshold(value, default: float) -> float:
    if value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    # Fractions of the active membership, or a vote count when above 1.
    return max(0.0, number)


class RepositoryAuthorizer:
    """Membership-backed authorization: a reviewer is an active committee member."""

    def __init__(self, repository):
        self.repository = repository

    def is_user_reviewer(self, user_id: int, group_id: int | None = None) -> bool:
        return self.repository.has_active_membership(int(user_id), group_id=group_id)

    def is_user_group_member(self, user_id: int, group_id: int | None = None, role: str | None = None) -> bool:
        return self.repository.has_active_membership(int(user_id), group_id=group_id, role=role)


class RepositoryCommitteeConfigProvider:
    """Reads committee settings fresh on every call; nothing is cached."""

    def __init__(
        self,
        repository,
        *,
        default_voting_threshold: float = 0.5,
        default_approval_percentage: float = 0.6,
        default_multisig_threshold: int = 2,
        default_network: str = DEFAULT_NETWORK,
    ):
        self.repository = repository
        self.default_voting_threshold = float(default_voting_threshold)
        self.default_approval_percentage = float(default_approval_percentage)
        self.default_multisig_threshold = max(1, int(default_multisig_threshold))
        self.default_network = normalize_network(default_network)

    def get_committee_config(self, group_id: int) -> CommitteeConfig | None:
        committee = self.repository.get_committee(int(group_id))
        if committee is None:
            return None
        settings = dict(committee.get('settings') or {})
        return CommitteeConfig(
            group_id=int(committee['id']),
            name=str(committee.get('name') or ''),
            voting_threshold=_threshold(settings.get('voting_threshold'), self.default_voting_threshold),
            required_approval_percentage=_ratio(
                settings.get('required_approval_percentage'),
                self.default_approval_percentage,
            ),
            active_member_count=self.repository.count_active_members(int(group_id)),
            multisig=self._multisig_config(settings.get('multisig')),
        )

    def _multisig_config(self, raw) -> MultisigConfig | None:
        if not isinstance(raw, dict):
            return None
        signatories = tuple(
            Signatory(address=str(item['address']), user_id=item.get('user_id'))
            for item in raw.get('signatories') or []
            if isinstance(item, dict) and item.get('address')
        )
        threshold = raw.get('threshold')
        return MultisigConfig(
            signatories=signatories,
            threshold=int(threshold) if threshold is not None else self.default_multisig_threshold,
            multisig_address=str(raw.get('multisig_address') or '').strip() or None,
            network=normalize_network(raw.get('network'), default=self.default_network),
            parent_bounty_id=raw.get('parent_bounty_id'),
            approval_workflow=str(raw.get('approval_workflow') or ApprovalWorkflow.MERGED.value),
        )


class RepositoryNotificationWriter:
    def __init__(self, repository):
        self.repository = repository

    def create_notification(self, record: NotificationCreateRecord) -> dict:
        return self.repository.create_notification(record)
