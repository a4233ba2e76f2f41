from __future__ import annotations

from dataclasses import dataclass
from fractions import Fraction
import math
from typing import Iterable, Mapping

from grantflow.domain.models import (
    MilestoneStatus,
    SignatureType,
    SubmissionStatus,
    VoteScope,
    VoteValue,
)


def _fraction(value: float | int | str) -> Fraction:
    # str() keeps 0.7 as 7/10 instead of the nearest binary float.
    return Fraction(str(value))


@dataclass(frozen=True)
class QuorumPolicy:
    active_member_count: int
    voting_threshold: float = 0.5
    required_approval_percentage: float = 0.6

    @property
    def required_vote_count(self) -> int:
        members = max(0, int(self.active_member_count))
        threshold = _fraction(self.voting_threshold)
        if threshold > 1:
            # Above 1 the threshold is an absolute vote count.
            return min(members, math.ceil(threshold))
        return math.ceil(threshold * members)


@dataclass(frozen=True)
class VoteTally:
    approve: int
    reject: int

    @property
    def total(self) -> int:
        return self.approve + self.reject


@dataclass(frozen=True)
class QuorumDecision:
    quorum_reached: bool
    outcome: str | None
    required_vote_count: int
    tally: VoteTally
    approval_percentage: float | None
    reason: str


def tally_votes(votes: Iterable[Mapping | str | VoteValue]) -> VoteTally:
    approve = 0
    reject = 0
    for item in votes:
        raw = item.get('vote') if isinstance(item, Mapping) else item
        value = raw.value if isinstance(raw, VoteValue) else str(raw or '').strip().lower()
        if value == VoteValue.APPROVE.value:
            approve += 1
        elif value == VoteValue.REJECT.value:
            reject += 1
    return VoteTally(approve=approve, reject=reject)


def evaluate_quorum(
    *,
    scope: VoteScope | str,
    votes: Iterable[Mapping | str | VoteValue],
    policy: QuorumPolicy,
) -> QuorumDecision:
    """Decide whether a vote set reaches quorum and, if so, what it decides.

    ``votes`` must already be scoped to the target: submission-level votes
    carry no milestone, milestone-level votes carry exactly that milestone.
    The decision is recomputed from the full set on every call, so calling
    it twice with the same inputs yields the same decision.
    """
    scope_value = VoteScope(scope.value if isinstance(scope, VoteScope) else str(scope))
    tally = tally_votes(votes)
    required = policy.required_vote_count

    if tally.total == 0:
        return QuorumDecision(False, None, required, tally, None, 'no_votes')
    if tally.total < required:
        return QuorumDecision(False, None, required, tally, None, 'awaiting_votes')

    ratio = Fraction(tally.approve, tally.total)
    approved = ratio >= _fraction(policy.required_approval_percentage)

    if scope_value == VoteScope.MILESTONE:
        outcome = MilestoneStatus.COMPLETED.value if approved else MilestoneStatus.REJECTED.value
    elif approved:
        outcome = SubmissionStatus.APPROVED.value
    elif tally.reject > tally.approve:
        outcome = SubmissionStatus.REJECTED.value
    else:
        # Ties and weak majorities fall here.
        outcome = SubmissionStatus.CHANGES_REQUESTED.value

    return QuorumDecision(True, outcome, required, tally, float(ratio), 'quorum_reached')


@dataclass(frozen=True)
class SignatureTally:
    approvals: int
    rejections: int

    @property
    def total(self) -> int:
        return self.approvals + self.rejections


def tally_signatures(signatures: Iterable[Mapping]) -> SignatureTally:
    approvals = 0
    rejections = 0
    for row in signatures:
        kind = str(row.get('signature_type') or '').strip().lower()
        if kind == SignatureType.SIGNED.value:
            approvals += 1
        elif kind == SignatureType.REJECTED.value:
            rejections += 1
    return SignatureTally(approvals=approvals, rejections=rejections)


def votes_needed(*, threshold: int, approvals: int) -> int:
    return max(0, int(threshold) - int(approvals))


def multisig_threshold_met(*, threshold: int, approvals: int) -> bool:
    return int(approvals) >= int(threshold)
