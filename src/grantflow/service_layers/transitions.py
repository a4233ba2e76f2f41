from __future__ import annotations

from grantflow.domain.events import NotificationType
from grantflow.domain.models import MilestoneStatus
from grantflow.observability import get_logger
from grantflow.repository import NotificationCreateRecord

_log = get_logger('grantflow.service_layers.transitions')

MAX_FEEDBACK_EXCERPTS = 3
FEEDBACK_EXCERPT_CHARS = 240


def _clip(text: str, limit: int) -> str:
    value = ' '.join(str(text or '').split())
    if len(value) <= limit:
        return value
    return value[: max(0, limit - 3)].rstrip() + '...'


def build_rejection_content(milestone: dict, reviews: list[dict], *, max_excerpts: int = MAX_FEEDBACK_EXCERPTS) -> str:
    title = str(milestone.get('title') or f'#{milestone.get("id")}')
    excerpts = [
        _clip(r.get('feedback') or '', FEEDBACK_EXCERPT_CHARS)
        for r in reviews
        if str(r.get('vote') or '') == 'reject' and str(r.get('feedback') or '').strip()
    ][: max(0, int(max_excerpts))]
    lines = [f'Milestone "{title}" was rejected by the committee.']
    if excerpts:
        lines.append('Reviewer feedback:')
        lines.extend(f'- {item}' for item in excerpts)
    return '\n'.join(lines)


class StatusTransitionApplier:
    """Writes quorum outcomes onto submissions and milestones.

    A target that already holds the outcome status is left untouched, so a
    later vote on a decided target does not bump the rejection counter again.
    """

    def __init__(self, *, repository, notifier, max_feedback_excerpts: int = MAX_FEEDBACK_EXCERPTS):
        self.repository = repository
        self.notifier = notifier
        self.max_feedback_excerpts = max(0, int(max_feedback_excerpts))

    def apply_submission_outcome(self, submission: dict, outcome: str) -> dict | None:
        if str(submission.get('status') or '') == outcome:
            _log.info('submission already %s submission_id=%s', outcome, submission['id'])
            return None
        updated = self.repository.update_submission_status(int(submission['id']), status=outcome)
        _log.info(
            'submission status changed submission_id=%s from=%s to=%s',
            submission['id'],
            submission.get('status'),
            outcome,
        )
        return updated

    def apply_milestone_outcome(self, milestone: dict, outcome: str, *, reviews: list[dict]) -> dict | None:
        if str(milestone.get('status') or '') == outcome:
            _log.info('milestone already %s milestone_id=%s', outcome, milestone['id'])
            return None
        rejected = outcome == MilestoneStatus.REJECTED.value
        updated = self.repository.update_milestone_status(int(milestone['id']), status=outcome, rejected=rejected)
        _log.info(
            'milestone status changed milestone_id=%s from=%s to=%s rejection_count=%s',
            milestone['id'],
            milestone.get('status'),
            outcome,
            updated.get('rejection_count'),
        )
        if rejected:
            self._notify_rejection(updated, reviews)
        return updated

    def _notify_rejection(self, milestone: dict, reviews: list[dict]) -> None:
        try:
            submission = self.repository.get_submission(int(milestone['submission_id']))
            if submission is None:
                _log.warning('rejection notice skipped, submission missing milestone_id=%s', milestone['id'])
                return
            self.notifier.create_notification(
                NotificationCreateRecord(
                    user_id=int(submission['submitter_id']),
                    type=NotificationType.MILESTONE_REJECTED.value,
                    content=build_rejection_content(milestone, reviews, max_excerpts=self.max_feedback_excerpts),
                    submission_id=int(submission['id']),
                    milestone_id=int(milestone['id']),
                    group_id=int(milestone['group_id']),
                    metadata={'rejection_count': int(milestone.get('rejection_count') or 0)},
                )
            )
        except Exception:
            _log.exception('rejection notification failed milestone_id=%s', milestone.get('id'))
