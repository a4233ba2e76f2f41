from __future__ import annotations

import pytest

from grantflow.domain.models import VoteScope
from grantflow.domain.quorum import (
    QuorumPolicy,
    evaluate_quorum,
    multisig_threshold_met,
    tally_signatures,
    tally_votes,
    votes_needed,
)


def _policy(members=4, threshold=0.5, approval=0.6) -> QuorumPolicy:
    return QuorumPolicy(active_member_count=members, voting_threshold=threshold, required_approval_percentage=approval)


@pytest.mark.parametrize(
    ('members', 'threshold', 'expected'),
    [
        (4, 0.5, 2),
        (3, 0.5, 2),
        (10, 0.7, 7),
        (5, 1.0, 5),
        (7, 0.33, 3),
        (0, 0.5, 0),
        (4, 2, 2),
        (3, 5, 3),
        (0, 2, 0),
    ],
)
def test_required_vote_count_rounds_up(members, threshold, expected):
    assert _policy(members=members, threshold=threshold).required_vote_count == expected


def test_two_approvals_of_four_members_approve_submission():
    decision = evaluate_quorum(scope='submission', votes=['approve', 'approve'], policy=_policy())
    assert decision.quorum_reached is True
    assert decision.outcome == 'approved'
    assert decision.approval_percentage == 1.0
    assert decision.required_vote_count == 2


def test_split_vote_below_approval_percentage_requests_changes():
    decision = evaluate_quorum(scope=VoteScope.SUBMISSION, votes=['reject', 'approve'], policy=_policy())
    assert decision.quorum_reached is True
    assert decision.outcome == 'changes-requested'
    assert decision.approval_percentage == 0.5


def test_reject_majority_rejects_submission():
    decision = evaluate_quorum(
        scope='submission',
        votes=['reject', 'reject', 'approve'],
        policy=_policy(members=5),
    )
    assert decision.outcome == 'rejected'


def test_milestone_split_vote_is_rejected():
    decision = evaluate_quorum(scope='milestone', votes=[{'vote': 'approve'}, {'vote': 'reject'}], policy=_policy())
    assert decision.quorum_reached is True
    assert decision.outcome == 'rejected'


def test_milestone_approval_completes_milestone():
    decision = evaluate_quorum(
        scope='milestone',
        votes=[{'vote': 'approve'}, {'vote': 'approve'}, {'vote': 'reject'}],
        policy=_policy(members=4, approval=0.6),
    )
    assert decision.outcome == 'completed'


def test_approval_percentage_boundary_is_inclusive():
    decision = evaluate_quorum(
        scope='submission',
        votes=['approve'] * 3 + ['reject'] * 2,
        policy=_policy(members=5, approval=0.6),
    )
    assert decision.outcome == 'approved'
    assert decision.approval_percentage == pytest.approx(0.6)


def test_below_required_vote_count_waits():
    decision = evaluate_quorum(scope='submission', votes=['approve'], policy=_policy())
    assert decision.quorum_reached is False
    assert decision.outcome is None
    assert decision.reason == 'awaiting_votes'


def test_no_votes_never_reach_quorum_even_without_members():
    decision = evaluate_quorum(scope='submission', votes=[], policy=_policy(members=0))
    assert decision.quorum_reached is False
    assert decision.reason == 'no_votes'


def test_evaluation_is_repeatable():
    votes = [{'vote': 'approve'}, {'vote': 'reject'}, {'vote': 'approve'}]
    first = evaluate_quorum(scope='milestone', votes=votes, policy=_policy())
    second = evaluate_quorum(scope='milestone', votes=votes, policy=_policy())
    assert first == second


def test_tally_votes_ignores_unknown_values():
    tally = tally_votes(['approve', 'APPROVE', 'reject', 'abstain', None])
    assert tally.approve == 2
    assert tally.reject == 1
    assert tally.total == 3


def test_signature_tally_and_threshold_helpers():
    tally = tally_signatures(
        [
            {'signature_type': 'signed'},
            {'signature_type': 'signed'},
            {'signature_type': 'rejected'},
        ]
    )
    assert (tally.approvals, tally.rejections, tally.total) == (2, 1, 3)
    assert multisig_threshold_met(threshold=2, approvals=tally.approvals) is True
    assert multisig_threshold_met(threshold=3, approvals=tally.approvals) is False
    assert votes_needed(threshold=3, approvals=2) == 1
    assert votes_needed(threshold=2, approvals=5) == 0
