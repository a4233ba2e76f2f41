from __future__ import annotations

from grantflow.domain.models import ReviewType, VoteScope, VoteValue, normalize_enum
from grantflow.domain.quorum import QuorumDecision, evaluate_quorum
from grantflow.observability import get_logger, set_grant_context
from grantflow.repository import DuplicateRecordError, ReviewCreateRecord
from grantflow.service_layers import results as r
from grantflow.service_layers.results import ActionResult

_log = get_logger('grantflow.service_layers.reviews')

FINAL_REVIEW_WEIGHT = 2


def decision_to_dict(decision: QuorumDecision | None) -> dict | None:
    if decision is None:
        return None
    return {
        'quorum_reached': decision.quorum_reached,
        'outcome': decision.outcome,
        'required_vote_count': decision.required_vote_count,
        'approve_votes': decision.tally.approve,
        'reject_votes': decision.tally.reject,
        'total_votes': decision.tally.total,
        'approval_percentage': decision.approval_percentage,
        'reason': decision.reason,
    }


class ReviewService:
    def __init__(
        self,
        *,
        repository,
        authorizer,
        config_provider,
        applier,
        validation_error_cls,
    ):
        self.repository = repository
        self.authorizer = authorizer
        self.config_provider = config_provider
        self.applier = applier
        self._validation_error_cls = validation_error_cls

    def submit_review(self, caller_id: int, payload) -> ActionResult:
        vote = self._normalize_vote(payload.vote)
        review_type = self._normalize_review_type(payload.review_type)
        weight = self._normalize_weight(payload.weight, review_type=review_type)
        is_binding = bool(payload.is_binding) or review_type == ReviewType.FINAL.value
        feedback = str(payload.feedback).strip() if payload.feedback is not None else None

        set_grant_context(submission_id=payload.submission_id, milestone_id=payload.milestone_id)
        if not self.authorizer.is_user_reviewer(caller_id):
            return ActionResult.fail(r.FORBIDDEN, r.NOT_AUTHORIZED_REVIEW)

        submission = self.repository.get_submission(payload.submission_id)
        if submission is None:
            return ActionResult.fail(r.NOT_FOUND, r.SUBMISSION_NOT_FOUND)
        milestone = None
        if payload.milestone_id is not None:
            milestone = self.repository.get_milestone(payload.milestone_id)
            if milestone is None or int(milestone['submission_id']) != int(submission['id']):
                return ActionResult.fail(r.NOT_FOUND, r.MILESTONE_NOT_FOUND)

        group_id = int(milestone['group_id'] if milestone is not None else submission['group_id'])
        if not self.authorizer.is_user_reviewer(caller_id, group_id):
            return ActionResult.fail(r.FORBIDDEN, r.NOT_AUTHORIZED_REVIEW)

        existing = self.repository.find_review(
            reviewer_id=caller_id,
            submission_id=submission['id'],
            milestone_id=payload.milestone_id,
        )
        if existing is not None:
            return ActionResult.fail(r.CONFLICT, r.ALREADY_REVIEWED)

        try:
            review = self.repository.create_review(
                ReviewCreateRecord(
                    submission_id=int(submission['id']),
                    milestone_id=int(milestone['id']) if milestone is not None else None,
                    group_id=group_id,
                    reviewer_id=int(caller_id),
                    vote=vote,
                    feedback=feedback or None,
                    review_type=review_type,
                    weight=weight,
                    is_binding=is_binding,
                )
            )
        except DuplicateRecordError:
            # Lost the race against a concurrent insert of the same vote.
            return ActionResult.fail(r.CONFLICT, r.ALREADY_REVIEWED)
        except Exception:
            _log.exception('review insert failed submission_id=%s reviewer_id=%s', submission['id'], caller_id)
            return ActionResult.fail(r.INTERNAL, r.FAILED_REVIEW)

        _log.info('review recorded review_id=%s vote=%s group_id=%s', review['id'], vote, group_id)
        decision = self.evaluate_and_apply(
            submission_id=int(submission['id']),
            milestone_id=int(milestone['id']) if milestone is not None else None,
            group_id=group_id,
        )
        return ActionResult.ok(
            'Review submitted successfully',
            review=review,
            quorum=decision_to_dict(decision),
        )

    def evaluate_and_apply(self, *, submission_id: int, milestone_id: int | None, group_id: int) -> QuorumDecision | None:
        """Recompute the quorum for one target and apply its outcome.

        Never raises: the vote that triggered this is already stored, and a
        failure here is logged instead of failing that request.
        """
        try:
            config = self.config_provider.get_committee_config(group_id)
            if config is None:
                _log.warning('quorum skipped, committee missing group_id=%s', group_id)
                return None
            if config.active_member_count <= 0:
                _log.warning('quorum skipped, committee has no active members group_id=%s', group_id)
                return None

            votes = self.repository.list_reviews(submission_id=submission_id, milestone_id=milestone_id)
            scope = VoteScope.MILESTONE if milestone_id is not None else VoteScope.SUBMISSION
            decision = evaluate_quorum(scope=scope, votes=votes, policy=config.quorum_policy())
            if not decision.quorum_reached:
                _log.info(
                    'quorum not reached scope=%s votes=%s required=%s',
                    scope.value,
                    decision.tally.total,
                    decision.required_vote_count,
                )
                return decision

            if milestone_id is not None:
                milestone = self.repository.get_milestone(milestone_id)
                if milestone is not None:
                    self.applier.apply_milestone_outcome(milestone, decision.outcome, reviews=votes)
            else:
                submission = self.repository.get_submission(submission_id)
                if submission is not None:
                    self.applier.apply_submission_outcome(submission, decision.outcome)
            return decision
        except Exception:
            _log.exception(
                'quorum evaluation failed submission_id=%s milestone_id=%s',
                submission_id,
                milestone_id,
            )
            return None

    def _normalize_vote(self, value) -> str:
        try:
            return normalize_enum(VoteValue, value, field='vote').value
        except ValueError as exc:
            raise self._validation_error_cls(str(exc), field='vote') from exc

    def _normalize_review_type(self, value) -> str:
        if value is None or not str(value).strip():
            return ReviewType.STANDARD.value
        try:
            return normalize_enum(ReviewType, value, field='review_type').value
        except ValueError as exc:
            raise self._validation_error_cls(str(exc), field='review_type') from exc

    def _normalize_weight(self, value, *, review_type: str) -> int:
        if value is None:
            return FINAL_REVIEW_WEIGHT if review_type == ReviewType.FINAL.value else 1
        try:
            weight = int(value)
        except (TypeError, ValueError) as exc:
            raise self._validation_error_cls('weight must be an integer', field='weight') from exc
        if weight < 1:
            raise self._validation_error_cls('weight must be >= 1', field='weight')
        return weight
