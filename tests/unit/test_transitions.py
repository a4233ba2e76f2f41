from __future__ import annotations

from grantflow.repository import InMemoryGrantRepository
from grantflow.service_layers.transitions import StatusTransitionApplier, build_rejection_content


class _RecordingNotifier:
    def __init__(self):
        self.records = []

    def create_notification(self, record):
        self.records.append(record)
        return {'id': len(self.records)}


def test_rejection_content_lists_reject_feedback_only():
    content = build_rejection_content(
        {'id': 3, 'title': 'Milestone 1'},
        [
            {'vote': 'approve', 'feedback': 'Looks great'},
            {'vote': 'reject', 'feedback': 'Missing   benchmarks\nand docs'},
            {'vote': 'reject', 'feedback': '   '},
            {'vote': 'reject', 'feedback': None},
        ],
    )
    lines = content.split('\n')
    assert lines[0] == 'Milestone "Milestone 1" was rejected by the committee.'
    assert lines[1] == 'Reviewer feedback:'
    assert lines[2:] == ['- Missing benchmarks and docs']


def test_rejection_content_caps_and_clips_excerpts():
    reviews = [{'vote': 'reject', 'feedback': 'x' * 500} for _ in range(5)]
    content = build_rejection_content({'id': 3, 'title': ''}, reviews, max_excerpts=2)
    lines = content.split('\n')
    assert lines[0] == 'Milestone "#3" was rejected by the committee.'
    assert len(lines) == 4
    assert lines[2].endswith('...')
    assert len(lines[2]) == len('- ') + 240


def test_rejection_content_without_feedback_is_one_line():
    assert build_rejection_content({'id': 1, 'title': 'M'}, [{'vote': 'reject'}]) == (
        'Milestone "M" was rejected by the committee.'
    )


def test_applier_skips_target_already_in_outcome(seed):
    world = seed(InMemoryGrantRepository())
    notifier = _RecordingNotifier()
    applier = StatusTransitionApplier(repository=world.repo, notifier=notifier)

    milestone = world.repo.get_milestone(world.milestone_id)
    updated = applier.apply_milestone_outcome(milestone, 'rejected', reviews=[])
    assert updated['rejection_count'] == 1
    assert len(notifier.records) == 1
    assert notifier.records[0].user_id == 900
    assert notifier.records[0].metadata == {'rejection_count': 1}

    again = applier.apply_milestone_outcome(world.repo.get_milestone(world.milestone_id), 'rejected', reviews=[])
    assert again is None
    assert world.repo.get_milestone(world.milestone_id)['rejection_count'] == 1
    assert len(notifier.records) == 1


def test_applier_completes_milestone_without_notice(seed):
    world = seed(InMemoryGrantRepository())
    notifier = _RecordingNotifier()
    applier = StatusTransitionApplier(repository=world.repo, notifier=notifier)
    updated = applier.apply_milestone_outcome(world.repo.get_milestone(world.milestone_id), 'completed', reviews=[])
    assert updated['status'] == 'completed'
    assert updated['rejection_count'] == 0
    assert notifier.records == []


def test_applier_updates_submission_status(seed):
    world = seed(InMemoryGrantRepository())
    applier = StatusTransitionApplier(repository=world.repo, notifier=_RecordingNotifier())
    submission = world.repo.get_submission(world.submission_id)
    assert applier.apply_submission_outcome(submission, 'approved')['status'] == 'approved'
    assert applier.apply_submission_outcome(world.repo.get_submission(world.submission_id), 'approved') is None
