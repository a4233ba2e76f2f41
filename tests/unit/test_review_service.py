from __future__ import annotations

import pytest

from grantflow.collaborators import CommitteeConfig
from grantflow.repository import InMemoryGrantRepository
from grantflow.service import GrantService, InputValidationError, SubmitReviewInput


def _vote(service, caller_id, world, vote, *, milestone=False, **extra):
    return service.submit_review(
        caller_id,
        SubmitReviewInput(
            submission_id=world.submission_id,
            milestone_id=world.milestone_id if milestone else None,
            vote=vote,
            **extra,
        ),
    )


@pytest.fixture
def world(seed):
    return seed(InMemoryGrantRepository())


@pytest.fixture
def service(world):
    return GrantService(repository=world.repo)


def test_two_approvals_of_four_members_approve_submission(service, world):
    first = _vote(service, 1, world, 'approve')
    assert first.success is True
    assert first.message == 'Review submitted successfully'
    assert first.data['quorum']['quorum_reached'] is False
    assert world.repo.get_submission(world.submission_id)['status'] == 'in-review'

    second = _vote(service, 2, world, 'approve')
    assert second.data['quorum']['outcome'] == 'approved'
    assert world.repo.get_submission(world.submission_id)['status'] == 'approved'


def test_split_submission_vote_requests_changes(service, world):
    _vote(service, 1, world, 'reject')
    result = _vote(service, 2, world, 'approve')
    assert result.data['quorum']['outcome'] == 'changes-requested'
    assert world.repo.get_submission(world.submission_id)['status'] == 'changes-requested'


def test_milestone_rejection_counts_and_notifies_submitter(service, world):
    _vote(service, 1, world, 'approve', milestone=True)
    result = _vote(service, 2, world, 'reject', milestone=True, feedback='  Docs are missing.  ')
    assert result.success is True

    milestone = world.repo.get_milestone(world.milestone_id)
    assert milestone['status'] == 'rejected'
    assert milestone['rejection_count'] == 1
    assert milestone['last_rejected_at'] is not None

    notices = world.repo.list_notifications(user_id=900)
    assert len(notices) == 1
    assert notices[0]['type'] == 'milestone_rejected'
    assert 'Docs are missing.' in notices[0]['content']
    assert notices[0]['metadata'] == {'rejection_count': 1}
    # Milestone votes leave the submission alone.
    assert world.repo.get_submission(world.submission_id)['status'] == 'in-review'


def test_late_vote_on_decided_milestone_does_not_reject_twice(service, world):
    _vote(service, 1, world, 'approve', milestone=True)
    _vote(service, 2, world, 'reject', milestone=True)
    late = _vote(service, 3, world, 'reject', milestone=True)
    assert late.data['quorum']['outcome'] == 'rejected'

    assert world.repo.get_milestone(world.milestone_id)['rejection_count'] == 1
    assert len(world.repo.list_notifications(user_id=900)) == 1


def test_non_member_cannot_review(service, world):
    result = _vote(service, 77, world, 'approve')
    assert result.success is False
    assert result.code == 'forbidden'
    assert result.error == 'You are not authorized to review submissions'
    assert world.repo.list_reviews(submission_id=world.submission_id, milestone_id=None) == []


def test_member_of_another_committee_cannot_review(service, world):
    other = world.repo.create_committee(name='Other')
    world.repo.add_membership(group_id=other['id'], user_id=55)
    result = _vote(service, 55, world, 'approve')
    assert result.code == 'forbidden'


def test_duplicate_review_is_a_conflict(service, world):
    assert _vote(service, 1, world, 'approve').success is True
    again = _vote(service, 1, world, 'reject')
    assert again.code == 'conflict'
    assert again.error == 'You have already submitted a review for this item'
    # A milestone vote is a separate target.
    assert _vote(service, 1, world, 'approve', milestone=True).success is True


def test_unknown_submission_and_foreign_milestone(service, world):
    missing = service.submit_review(1, SubmitReviewInput(submission_id=999, vote='approve'))
    assert missing.code == 'not_found'
    assert missing.error == 'Submission not found'

    other_submission = world.repo.create_submission(group_id=world.group_id, submitter_id=901, title='Other')
    foreign = service.submit_review(
        1,
        SubmitReviewInput(submission_id=other_submission['id'], milestone_id=world.milestone_id, vote='approve'),
    )
    assert foreign.code == 'not_found'
    assert foreign.error == 'Milestone not found'


def test_invalid_vote_raises_validation_error(service, world):
    with pytest.raises(InputValidationError) as excinfo:
        _vote(service, 1, world, 'maybe')
    assert excinfo.value.field == 'vote'
    with pytest.raises(InputValidationError):
        _vote(service, 1, world, 'approve', weight=0)


def test_final_review_is_weighted_and_binding(service, world):
    result = _vote(service, 1, world, 'approve', review_type='final')
    review = result.data['review']
    assert review['review_type'] == 'final'
    assert review['weight'] == 2
    assert review['is_binding'] is True


def test_vote_count_threshold_with_percent_style_approval(seed):
    world = seed(InMemoryGrantRepository(), voting_threshold=2, required_approval_percentage=66)
    service = GrantService(repository=world.repo)
    first = _vote(service, 1, world, 'approve')
    assert first.data['quorum']['required_vote_count'] == 2
    assert first.data['quorum']['quorum_reached'] is False
    assert world.repo.get_submission(world.submission_id)['status'] == 'in-review'

    result = _vote(service, 2, world, 'approve')
    assert result.data['quorum']['required_vote_count'] == 2
    assert world.repo.get_submission(world.submission_id)['status'] == 'approved'


def test_missing_settings_use_service_defaults(seed):
    world = seed(InMemoryGrantRepository(), voting_threshold=None, required_approval_percentage=None)
    service = GrantService(repository=world.repo, default_voting_threshold=0.75)
    _vote(service, 1, world, 'approve')
    result = _vote(service, 2, world, 'approve')
    assert result.data['quorum']['required_vote_count'] == 3
    assert result.data['quorum']['quorum_reached'] is False


def test_reevaluate_quorum_after_policy_change(seed):
    world = seed(InMemoryGrantRepository(), voting_threshold=0.75)
    service = GrantService(repository=world.repo)
    _vote(service, 1, world, 'approve')
    _vote(service, 2, world, 'approve')
    assert world.repo.get_submission(world.submission_id)['status'] == 'in-review'

    world.repo.update_committee_settings(world.group_id, settings={'voting_threshold': 0.5})
    result = service.reevaluate_quorum(submission_id=world.submission_id)
    assert result.success is True
    assert result.data['quorum']['outcome'] == 'approved'
    assert world.repo.get_submission(world.submission_id)['status'] == 'approved'

    missing_submission = service.reevaluate_quorum(submission_id=999)
    assert missing_submission.code == 'not_found'
    assert missing_submission.error == 'Submission not found'
    missing_milestone = service.reevaluate_quorum(submission_id=world.submission_id, milestone_id=999)
    assert missing_milestone.code == 'not_found'
    assert missing_milestone.error == 'Milestone not found'


class _EmptyCommitteeProvider:
    def get_committee_config(self, group_id):
        return CommitteeConfig(
            group_id=group_id,
            name='Empty',
            voting_threshold=0.5,
            required_approval_percentage=0.6,
            active_member_count=0,
        )


class _BrokenProvider:
    def get_committee_config(self, group_id):
        raise RuntimeError('settings store down')


def test_committee_without_active_members_skips_evaluation(world):
    service = GrantService(repository=world.repo, config_provider=_EmptyCommitteeProvider())
    result = _vote(service, 1, world, 'approve')
    assert result.success is True
    assert result.data['quorum'] is None
    assert world.repo.get_submission(world.submission_id)['status'] == 'in-review'


def test_evaluation_failure_keeps_stored_vote(world):
    service = GrantService(repository=world.repo, config_provider=_BrokenProvider())
    result = _vote(service, 1, world, 'approve')
    assert result.success is True
    assert result.data['quorum'] is None
    assert len(world.repo.list_reviews(submission_id=world.submission_id, milestone_id=None)) == 1


class _FailingReviewRepo(InMemoryGrantRepository):
    def create_review(self, record):
        raise RuntimeError('disk full')


def test_review_insert_failure_is_internal(seed):
    world = seed(_FailingReviewRepo())
    service = GrantService(repository=world.repo)
    result = _vote(service, 1, world, 'approve')
    assert result.code == 'internal'
    assert result.error == 'Failed to submit review. Please try again.'


class _BrokenNotifier:
    def create_notification(self, record):
        raise RuntimeError('mail relay down')


def test_rejection_notice_failure_does_not_undo_rejection(world):
    service = GrantService(repository=world.repo, notifier=_BrokenNotifier())
    _vote(service, 1, world, 'approve', milestone=True)
    result = _vote(service, 2, world, 'reject', milestone=True)
    assert result.success is True
    assert world.repo.get_milestone(world.milestone_id)['status'] == 'rejected'
