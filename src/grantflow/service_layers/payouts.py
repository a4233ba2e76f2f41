from __future__ import annotations

from grantflow.domain.events import NotificationType
from grantflow.domain.models import MilestoneStatus
from grantflow.domain.networks import DEFAULT_NETWORK, block_explorer_url, normalize_network
from grantflow.observability import get_logger, set_grant_context
from grantflow.repository import NotificationCreateRecord, PayoutCreateRecord
from grantflow.service_layers import results as r
from grantflow.service_layers.results import ActionResult

_log = get_logger('grantflow.service_layers.payouts')


class MilestoneCompletionService:
    """Manual payout path for committees that pay outside the multisig flow."""

    def __init__(
        self,
        *,
        repository,
        authorizer,
        config_provider,
        notifier,
        validation_error_cls,
        default_network: str = DEFAULT_NETWORK,
    ):
        self.repository = repository
        self.authorizer = authorizer
        self.config_provider = config_provider
        self.notifier = notifier
        self._validation_error_cls = validation_error_cls
        self.default_network = normalize_network(default_network)

    def complete_milestone(self, caller_id: int, payload) -> ActionResult:
        tx_hash = str(payload.transaction_hash or '').strip()
        if not tx_hash:
            raise self._validation_error_cls('transaction_hash is required', field='transaction_hash')

        set_grant_context(milestone_id=payload.milestone_id)
        if not self.authorizer.is_user_reviewer(caller_id):
            return ActionResult.fail(r.FORBIDDEN, r.NOT_AUTHORIZED_COMPLETE)

        milestone = self.repository.get_milestone(payload.milestone_id)
        if milestone is None:
            return ActionResult.fail(r.NOT_FOUND, r.MILESTONE_NOT_FOUND)
        group_id = int(milestone['group_id'])
        if not self.authorizer.is_user_reviewer(caller_id, group_id):
            return ActionResult.fail(r.FORBIDDEN, r.NOT_AUTHORIZED_COMPLETE)
        if milestone['status'] == MilestoneStatus.COMPLETED.value:
            return ActionResult.fail(r.CONFLICT, r.MILESTONE_ALREADY_COMPLETED)

        amount = payload.amount if payload.amount is not None else milestone.get('amount')
        try:
            amount = int(amount)
        except (TypeError, ValueError) as exc:
            raise self._validation_error_cls('amount is required', field='amount') from exc
        if amount < 0:
            raise self._validation_error_cls('amount must be >= 0', field='amount')

        explorer_url = str(payload.block_explorer_url or '').strip()
        wallet_from = payload.wallet_from
        wallet_to = payload.wallet_to
        if not explorer_url or wallet_from is None or wallet_to is None:
            config = self.config_provider.get_committee_config(group_id)
            multisig = config.multisig if config is not None else None
            if not explorer_url:
                explorer_url = block_explorer_url(tx_hash, network=multisig.network if multisig else self.default_network)
            if wallet_from is None and multisig is not None:
                wallet_from = multisig.multisig_address
            if wallet_to is None:
                submission = self.repository.get_submission(milestone['submission_id'])
                wallet_to = submission.get('wallet_address') if submission else None

        try:
            result = self.repository.complete_milestone_with_payout(
                PayoutCreateRecord(
                    submission_id=int(milestone['submission_id']),
                    milestone_id=int(milestone['id']),
                    group_id=group_id,
                    amount=amount,
                    transaction_hash=tx_hash,
                    block_explorer_url=explorer_url,
                    triggered_by=int(caller_id),
                    wallet_from=wallet_from,
                    wallet_to=wallet_to,
                )
            )
        except Exception:
            _log.exception('manual completion failed milestone_id=%s', milestone['id'])
            return ActionResult.fail(r.INTERNAL, r.FAILED_COMPLETE)

        _log.info('milestone completed manually milestone_id=%s payout_id=%s', milestone['id'], result['payout']['id'])
        self._notify_submitter(result['milestone'])
        return ActionResult.ok(
            'Milestone completed and payment processed successfully',
            milestone=result['milestone'],
            payout=result['payout'],
        )

    def _notify_submitter(self, milestone: dict) -> None:
        try:
            submission = self.repository.get_submission(milestone['submission_id'])
            if submission is None:
                return
            self.notifier.create_notification(
                NotificationCreateRecord(
                    user_id=int(submission['submitter_id']),
                    type=NotificationType.MILESTONE_COMPLETED.value,
                    content=f'Milestone "{milestone.get("title")}" has been completed and payment has been processed.',
                    submission_id=int(submission['id']),
                    milestone_id=int(milestone['id']),
                    group_id=int(milestone['group_id']),
                )
            )
        except Exception:
            _log.exception('completion notification failed milestone_id=%s', milestone.get('id'))
