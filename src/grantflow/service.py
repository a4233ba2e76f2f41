from __future__ import annotations

from dataclasses import dataclass

from grantflow.collaborators import (
    RepositoryAuthorizer,
    RepositoryCommitteeConfigProvider,
    RepositoryNotificationWriter,
)
from grantflow.domain.networks import DEFAULT_NETWORK
from grantflow.observability import clear_grant_context, get_logger
from grantflow.service_layers import (
    ActionResult,
    MilestoneCompletionService,
    MultisigApprovalService,
    ReviewService,
    StatusTransitionApplier,
)
from grantflow.service_layers import results as r
from grantflow.service_layers.reviews import decision_to_dict

_log = get_logger('grantflow.service')


class InputValidationError(ValueError):
    def __init__(self, message: str, *, field: str | None = None, code: str = 'validation_error'):
        super().__init__(message)
        self.message = message
        self.field = field
        self.code = code


@dataclass(frozen=True)
class SubmitReviewInput:
    submission_id: int
    vote: str
    milestone_id: int | None = None
    feedback: str | None = None
    review_type: str | None = None
    weight: int | None = None
    is_binding: bool = False


@dataclass(frozen=True)
class InitiateApprovalInput:
    milestone_id: int
    initiator_wallet_address: str
    tx_hash: str
    call_hash: str
    call_data_hex: str
    timepoint: dict
    approval_workflow: str | None = None
    review_id: int | None = None
    price_usd: str | None = None
    price_date: str | None = None
    price_source: str | None = None
    token_amount: str | None = None


@dataclass(frozen=True)
class CastVoteInput:
    approval_id: int
    signatory_address: str
    signature_type: str
    tx_hash: str
    review_id: int | None = None
    was_executed: bool = False
    execution_block_number: int | None = None
    child_bounty_id: int | None = None


@dataclass(frozen=True)
class FinalizeApprovalInput:
    approval_id: int
    signatory_address: str
    execution_tx_hash: str
    execution_block_number: int
    child_bounty_id: int | None = None


@dataclass(frozen=True)
class CompleteMilestoneInput:
    milestone_id: int
    transaction_hash: str
    amount: int | None = None
    block_explorer_url: str | None = None
    wallet_from: str | None = None
    wallet_to: str | None = None


class GrantService:
    """Entry point for every review, approval and payout action.

    Collaborators default to repository-backed implementations; tests and
    embedding applications may inject their own.
    """

    def __init__(
        self,
        *,
        repository,
        authorizer=None,
        config_provider=None,
        notifier=None,
        default_voting_threshold: float = 0.5,
        default_approval_percentage: float = 0.6,
        default_multisig_threshold: int = 2,
        default_network: str | None = None,
    ):
        self.repository = repository
        self.authorizer = authorizer or RepositoryAuthorizer(repository)
        if config_provider is None:
            provider_kwargs: dict = {
                'default_voting_threshold': default_voting_threshold,
                'default_approval_percentage': default_approval_percentage,
                'default_multisig_threshold': default_multisig_threshold,
            }
            if default_network:
                provider_kwargs['default_network'] = default_network
            config_provider = RepositoryCommitteeConfigProvider(repository, **provider_kwargs)
        self.config_provider = config_provider
        self.notifier = notifier or RepositoryNotificationWriter(repository)

        self.transitions = StatusTransitionApplier(repository=repository, notifier=self.notifier)
        self.reviews = ReviewService(
            repository=repository,
            authorizer=self.authorizer,
            config_provider=self.config_provider,
            applier=self.transitions,
            validation_error_cls=InputValidationError,
        )
        self.multisig = MultisigApprovalService(
            repository=repository,
            authorizer=self.authorizer,
            config_provider=self.config_provider,
            notifier=self.notifier,
            validation_error_cls=InputValidationError,
            default_multisig_threshold=default_multisig_threshold,
        )
        self.payouts = MilestoneCompletionService(
            repository=repository,
            authorizer=self.authorizer,
            config_provider=self.config_provider,
            notifier=self.notifier,
            validation_error_cls=InputValidationError,
            default_network=default_network or DEFAULT_NETWORK,
        )

    def submit_review(self, caller_id: int, payload: SubmitReviewInput) -> ActionResult:
        try:
            return self.reviews.submit_review(int(caller_id), payload)
        finally:
            clear_grant_context()

    def initiate_approval(self, caller_id: int, payload: InitiateApprovalInput) -> ActionResult:
        try:
            return self.multisig.initiate_approval(int(caller_id), payload)
        finally:
            clear_grant_context()

    def cast_vote(self, caller_id: int, payload: CastVoteInput) -> ActionResult:
        try:
            return self.multisig.cast_vote(int(caller_id), payload)
        finally:
            clear_grant_context()

    def finalize_approval(self, caller_id: int, payload: FinalizeApprovalInput) -> ActionResult:
        try:
            return self.multisig.finalize_approval(int(caller_id), payload)
        finally:
            clear_grant_context()

    def cancel_approval(self, caller_id: int, approval_id: int) -> ActionResult:
        try:
            return self.multisig.cancel_approval(int(caller_id), int(approval_id))
        finally:
            clear_grant_context()

    def complete_milestone(self, caller_id: int, payload: CompleteMilestoneInput) -> ActionResult:
        try:
            return self.payouts.complete_milestone(int(caller_id), payload)
        finally:
            clear_grant_context()

    def get_approval_status(self, milestone_id: int) -> dict:
        try:
            return self.multisig.get_approval_status(int(milestone_id))
        except Exception:
            _log.exception('approval status lookup failed milestone_id=%s', milestone_id)
            return {'status': 'error', 'error': 'Failed to get approval status'}

    def reevaluate_quorum(self, *, submission_id: int, milestone_id: int | None = None) -> ActionResult:
        """Re-run the quorum for a target, e.g. after committee policy changes.

        ``data['quorum']`` is None when evaluation was skipped or failed.
        """
        submission = self.repository.get_submission(int(submission_id))
        if submission is None:
            return ActionResult.fail(r.NOT_FOUND, r.SUBMISSION_NOT_FOUND)
        group_id = int(submission['group_id'])
        if milestone_id is not None:
            milestone = self.repository.get_milestone(int(milestone_id))
            if milestone is None:
                return ActionResult.fail(r.NOT_FOUND, r.MILESTONE_NOT_FOUND)
            group_id = int(milestone['group_id'])
        try:
            decision = self.reviews.evaluate_and_apply(
                submission_id=int(submission_id),
                milestone_id=int(milestone_id) if milestone_id is not None else None,
                group_id=group_id,
            )
        finally:
            clear_grant_context()
        return ActionResult.ok('Quorum re-evaluated', quorum=decision_to_dict(decision))
