from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from grantflow.domain.events import NotificationType
from grantflow.domain.models import (
    ApprovalStatus,
    ApprovalWorkflow,
    SignatureType,
    normalize_enum,
)
from grantflow.domain.networks import block_explorer_url
from grantflow.domain.quorum import multisig_threshold_met, tally_signatures, votes_needed
from grantflow.observability import get_logger, set_grant_context
from grantflow.repository import (
    ApprovalCreateRecord,
    ApprovalNotPendingError,
    DuplicateRecordError,
    ExecutionRecord,
    NotificationCreateRecord,
    PayoutCreateRecord,
    SignatureCreateRecord,
)
from grantflow.service_layers import results as r
from grantflow.service_layers.results import ActionResult

_log = get_logger('grantflow.service_layers.multisig')


@dataclass(frozen=True)
class ExecutionDescriptor:
    """On-chain execution facts reported by the wallet client."""

    tx_hash: str
    block_number: int
    child_bounty_id: int | None = None


def _payout_amount(value) -> int | None:
    if value is None or not str(value).strip():
        return None
    try:
        return int(Decimal(str(value).strip()))
    except (InvalidOperation, ValueError):
        return None


class MultisigApprovalService:
    """Tracks one on-chain multisig call per milestone payout.

    pending -> executed happens only on an explicit execution signal, either
    bundled in a vote or sent through finalize; reaching the numeric threshold
    alone never completes an approval.
    """

    def __init__(
        self,
        *,
        repository,
        authorizer,
        config_provider,
        notifier,
        validation_error_cls,
        default_multisig_threshold: int = 2,
    ):
        self.repository = repository
        self.authorizer = authorizer
        self.config_provider = config_provider
        self.notifier = notifier
        self._validation_error_cls = validation_error_cls
        self.default_multisig_threshold = max(1, int(default_multisig_threshold))

    def initiate_approval(self, caller_id: int, payload) -> ActionResult:
        address = self._require_text(payload.initiator_wallet_address, field='initiator_wallet_address')
        tx_hash = self._require_text(payload.tx_hash, field='tx_hash')
        call_hash = self._require_text(payload.call_hash, field='call_hash')
        call_data = self._require_text(payload.call_data_hex, field='call_data_hex')
        timepoint = self._normalize_timepoint(payload.timepoint)
        workflow = self._normalize_workflow(payload.approval_workflow)

        set_grant_context(milestone_id=payload.milestone_id)
        if not self.authorizer.is_user_reviewer(caller_id):
            return ActionResult.fail(r.FORBIDDEN, r.NOT_AUTHORIZED_INITIATE)

        milestone = self.repository.get_milestone(payload.milestone_id)
        if milestone is None:
            return ActionResult.fail(r.NOT_FOUND, r.MILESTONE_NOT_FOUND)
        if self.repository.get_active_milestone_approval(milestone['id']) is not None:
            return ActionResult.fail(r.CONFLICT, r.ACTIVE_APPROVAL_EXISTS)

        config = self.config_provider.get_committee_config(milestone['group_id'])
        if config is None:
            return ActionResult.fail(r.NOT_FOUND, r.COMMITTEE_NOT_FOUND)
        if config.multisig is None:
            return ActionResult.fail(r.PRECONDITION, r.NO_MULTISIG_WALLET)
        if not self._is_signatory(config.multisig, address, caller_id):
            return ActionResult.fail(r.FORBIDDEN, r.NOT_A_SIGNATORY)

        submission = self.repository.get_submission(milestone['submission_id'])
        if submission is None or not submission.get('wallet_address'):
            return ActionResult.fail(r.PRECONDITION, r.MISSING_WALLET)

        amount = milestone.get('amount')
        try:
            approval = self.repository.create_milestone_approval(
                ApprovalCreateRecord(
                    milestone_id=int(milestone['id']),
                    group_id=int(milestone['group_id']),
                    multisig_call_hash=call_hash,
                    multisig_call_data=call_data,
                    timepoint=timepoint,
                    initiator_id=int(caller_id),
                    initiator_address=address,
                    approval_workflow=workflow or config.multisig.approval_workflow,
                    beneficiary_address=str(submission['wallet_address']),
                    payout_amount=str(amount) if amount is not None else None,
                    parent_bounty_id=config.multisig.parent_bounty_id,
                    price_usd=payload.price_usd,
                    price_date=payload.price_date,
                    price_source=payload.price_source,
                    token_amount=payload.token_amount,
                )
            )
        except DuplicateRecordError:
            return ActionResult.fail(r.CONFLICT, r.ACTIVE_APPROVAL_EXISTS)
        except Exception:
            _log.exception('approval insert failed milestone_id=%s', milestone['id'])
            return ActionResult.fail(r.INTERNAL, r.FAILED_INITIATE)

        set_grant_context(milestone_id=milestone['id'], approval_id=approval['id'])
        try:
            self.repository.create_multisig_signature(
                SignatureCreateRecord(
                    approval_id=int(approval['id']),
                    review_id=payload.review_id,
                    user_id=int(caller_id),
                    signatory_address=address,
                    signature_type=SignatureType.SIGNED.value,
                    tx_hash=tx_hash,
                    is_initiator=True,
                    is_final_approval=False,
                )
            )
        except Exception:
            _log.exception('initiator signature insert failed approval_id=%s', approval['id'])
            self._release_approval(approval['id'])
            return ActionResult.fail(r.INTERNAL, r.FAILED_INITIATE)

        _log.info('approval initiated approval_id=%s workflow=%s', approval['id'], approval['approval_workflow'])
        self._notify_signatories(approval, milestone, config.multisig, exclude_user_id=caller_id)
        return ActionResult.ok(
            'Milestone approval initiated successfully',
            approval_id=approval['id'],
            approval=approval,
        )

    def cast_vote(self, caller_id: int, payload) -> ActionResult:
        address = self._require_text(payload.signatory_address, field='signatory_address')
        tx_hash = self._require_text(payload.tx_hash, field='tx_hash')
        signature_type = self._normalize_signature_type(payload.signature_type)
        block_number = self._optional_block_number(payload.execution_block_number)
        executes = bool(payload.was_executed) and block_number is not None
        if executes and signature_type != SignatureType.SIGNED.value:
            raise self._validation_error_cls(
                'only a signed vote can execute the multisig call',
                field='was_executed',
            )

        set_grant_context(approval_id=payload.approval_id)
        if not self.authorizer.is_user_reviewer(caller_id):
            return ActionResult.fail(r.FORBIDDEN, r.NOT_AUTHORIZED_VOTE)

        checked = self._check_signatory_action(caller_id, payload.approval_id, address)
        if isinstance(checked, ActionResult):
            return checked
        approval, config = checked
        multisig = config.multisig
        signature = SignatureCreateRecord(
            approval_id=int(approval['id']),
            review_id=payload.review_id,
            user_id=int(caller_id),
            signatory_address=address,
            signature_type=signature_type,
            tx_hash=tx_hash,
            is_initiator=False,
            is_final_approval=executes,
        )

        if executes:
            try:
                completed = self._complete(
                    approval,
                    ExecutionDescriptor(
                        tx_hash=tx_hash,
                        block_number=block_number,
                        child_bounty_id=payload.child_bounty_id,
                    ),
                    multisig=multisig,
                    final_signature=signature,
                )
            except ApprovalNotPendingError:
                return ActionResult.fail(r.PRECONDITION, r.APPROVAL_NOT_ACTIVE)
            except DuplicateRecordError:
                return ActionResult.fail(r.CONFLICT, r.ALREADY_VOTED)
            except Exception:
                _log.exception('execution bundled in vote failed approval_id=%s', approval['id'])
                return ActionResult.fail(r.INTERNAL, r.FAILED_VOTE)
            return ActionResult.ok(
                'Vote recorded successfully',
                threshold_met=True,
                votes_needed=0,
                was_executed=True,
                approval=completed['approval'],
                payout=completed['payout'],
            )

        try:
            self.repository.create_multisig_signature(signature)
        except DuplicateRecordError:
            return ActionResult.fail(r.CONFLICT, r.ALREADY_VOTED)
        except Exception:
            _log.exception('signature insert failed approval_id=%s', approval['id'])
            return ActionResult.fail(r.INTERNAL, r.FAILED_VOTE)

        tally = tally_signatures(self.repository.list_multisig_signatures(approval['id']))
        threshold_met = multisig_threshold_met(threshold=multisig.threshold, approvals=tally.approvals)
        _log.info(
            'signature recorded approval_id=%s approvals=%s rejections=%s threshold=%s met=%s',
            approval['id'],
            tally.approvals,
            tally.rejections,
            multisig.threshold,
            threshold_met,
        )
        self._notify_initiator(approval, caller_id=caller_id, signature_type=signature_type)
        return ActionResult.ok(
            'Vote recorded successfully',
            threshold_met=threshold_met,
            votes_needed=votes_needed(threshold=multisig.threshold, approvals=tally.approvals),
            was_executed=False,
        )

    def finalize_approval(self, caller_id: int, payload) -> ActionResult:
        address = self._require_text(payload.signatory_address, field='signatory_address')
        tx_hash = self._require_text(payload.execution_tx_hash, field='execution_tx_hash')
        block_number = self._optional_block_number(payload.execution_block_number)
        if block_number is None:
            raise self._validation_error_cls(
                'execution_block_number is required',
                field='execution_block_number',
            )

        set_grant_context(approval_id=payload.approval_id)
        if not self.authorizer.is_user_reviewer(caller_id):
            return ActionResult.fail(r.FORBIDDEN, r.NOT_AUTHORIZED_FINALIZE)

        checked = self._check_signatory_action(caller_id, payload.approval_id, address)
        if isinstance(checked, ActionResult):
            return checked
        approval, config = checked

        try:
            completed = self._complete(
                approval,
                ExecutionDescriptor(
                    tx_hash=tx_hash,
                    block_number=block_number,
                    child_bounty_id=payload.child_bounty_id,
                ),
                multisig=config.multisig,
                final_signature=SignatureCreateRecord(
                    approval_id=int(approval['id']),
                    user_id=int(caller_id),
                    signatory_address=address,
                    signature_type=SignatureType.SIGNED.value,
                    tx_hash=tx_hash,
                    is_initiator=False,
                    is_final_approval=True,
                ),
            )
        except ApprovalNotPendingError:
            return ActionResult.fail(r.PRECONDITION, r.APPROVAL_NOT_ACTIVE)
        except DuplicateRecordError:
            return ActionResult.fail(r.CONFLICT, r.ALREADY_VOTED)
        except Exception:
            _log.exception('finalize failed approval_id=%s', approval['id'])
            return ActionResult.fail(r.INTERNAL, r.FAILED_FINALIZE)

        return ActionResult.ok(
            'Milestone approved and payment executed successfully',
            approval=completed['approval'],
            milestone=completed['milestone'],
            payout=completed['payout'],
        )

    def get_approval_status(self, milestone_id: int) -> dict:
        approval = self.repository.get_active_milestone_approval(milestone_id)
        if approval is None:
            return {'status': 'no_active_approval'}

        signatures = self.repository.list_multisig_signatures(approval['id'])
        tally = tally_signatures(signatures)
        config = self.config_provider.get_committee_config(approval['group_id'])
        multisig = config.multisig if config is not None else None
        threshold = multisig.threshold if multisig is not None else self.default_multisig_threshold
        voted = {s['signatory_address'] for s in signatures}
        pending = [s.address for s in multisig.signatories if s.address not in voted] if multisig else []
        return {
            'status': 'active',
            'approval': {
                'id': approval['id'],
                'call_hash': approval['multisig_call_hash'],
                'timepoint': approval['timepoint'],
                'initiator_address': approval['initiator_address'],
                'approval_workflow': approval['approval_workflow'],
                'payout_amount': approval['payout_amount'],
                'created_at': approval['created_at'],
            },
            'votes': {
                'total': tally.total,
                'approvals': tally.approvals,
                'rejections': tally.rejections,
                'threshold': threshold,
                'threshold_met': multisig_threshold_met(threshold=threshold, approvals=tally.approvals),
                'votes_needed': votes_needed(threshold=threshold, approvals=tally.approvals),
            },
            'signatories': [
                {
                    'address': s['signatory_address'],
                    'signature_type': s['signature_type'],
                    'tx_hash': s['tx_hash'],
                    'signed_at': s['signed_at'],
                    'is_initiator': s['is_initiator'],
                    'user_id': s['user_id'],
                }
                for s in signatures
            ],
            'pending_signatories': pending,
        }

    def cancel_approval(self, caller_id: int, approval_id: int) -> ActionResult:
        set_grant_context(approval_id=approval_id)
        if not self.authorizer.is_user_reviewer(caller_id):
            return ActionResult.fail(r.FORBIDDEN, r.NOT_AUTHORIZED_CANCEL)
        approval = self.repository.get_milestone_approval(approval_id)
        if approval is None:
            return ActionResult.fail(r.NOT_FOUND, r.APPROVAL_NOT_FOUND)
        if not self.authorizer.is_user_reviewer(caller_id, approval['group_id']):
            return ActionResult.fail(r.FORBIDDEN, r.NOT_AUTHORIZED_CANCEL)
        if approval['status'] != ApprovalStatus.PENDING.value:
            return ActionResult.fail(r.PRECONDITION, r.APPROVAL_NOT_ACTIVE)
        cancelled = self.repository.cancel_milestone_approval(approval['id'])
        _log.info('approval cancelled approval_id=%s by=%s', approval['id'], caller_id)
        return ActionResult.ok('Approval cancelled successfully', approval=cancelled)

    def _complete(
        self,
        approval: dict,
        execution: ExecutionDescriptor,
        *,
        multisig,
        final_signature: SignatureCreateRecord,
    ) -> dict:
        """Execute an approval: the final signature, approval, milestone and payout commit together.

        The completion notice is sent afterwards and may fail without
        affecting the result.
        """
        milestone = self.repository.get_milestone(approval['milestone_id'])
        if milestone is None:
            raise KeyError(approval['milestone_id'])

        payout = None
        amount = _payout_amount(approval.get('payout_amount'))
        if amount is not None:
            payout = PayoutCreateRecord(
                submission_id=int(milestone['submission_id']),
                milestone_id=int(milestone['id']),
                group_id=int(approval['group_id']),
                amount=amount,
                transaction_hash=execution.tx_hash,
                block_explorer_url=block_explorer_url(execution.tx_hash, network=multisig.network),
                triggered_by=int(approval['initiator_id']),
                wallet_from=multisig.multisig_address,
                wallet_to=approval.get('beneficiary_address'),
            )
        elif approval.get('payout_amount'):
            _log.warning('payout skipped, unreadable amount approval_id=%s', approval['id'])

        result = self.repository.complete_milestone_approval(
            ExecutionRecord(
                approval_id=int(approval['id']),
                milestone_id=int(milestone['id']),
                execution_tx_hash=execution.tx_hash,
                execution_block_number=int(execution.block_number),
                child_bounty_id=execution.child_bounty_id,
                payout=payout,
                final_signature=final_signature,
            )
        )
        _log.info(
            'approval executed approval_id=%s block=%s payout_id=%s',
            approval['id'],
            execution.block_number,
            (result.get('payout') or {}).get('id'),
        )
        self._notify_completion(result['milestone'], approval)
        return result

    def _check_signatory_action(self, caller_id: int, approval_id: int, address: str):
        approval = self.repository.get_milestone_approval(approval_id)
        if approval is None:
            return ActionResult.fail(r.NOT_FOUND, r.APPROVAL_NOT_FOUND)
        if approval['status'] != ApprovalStatus.PENDING.value:
            return ActionResult.fail(r.PRECONDITION, r.APPROVAL_NOT_ACTIVE)
        config = self.config_provider.get_committee_config(approval['group_id'])
        if config is None or config.multisig is None:
            return ActionResult.fail(r.PRECONDITION, r.NO_MULTISIG_CONFIG)
        if not self._is_signatory(config.multisig, address, caller_id):
            return ActionResult.fail(r.FORBIDDEN, r.NOT_A_SIGNATORY)
        existing = self.repository.find_multisig_signature(approval_id=approval['id'], signatory_address=address)
        if existing is not None:
            return ActionResult.fail(r.CONFLICT, r.ALREADY_VOTED)
        return approval, config

    @staticmethod
    def _is_signatory(multisig, address: str, caller_id: int) -> bool:
        signatory = multisig.find_signatory(address)
        if signatory is None:
            return False
        # An address bound to a user may only be used by that user.
        return signatory.user_id is None or int(signatory.user_id) == int(caller_id)

    def _release_approval(self, approval_id: int) -> None:
        try:
            self.repository.cancel_milestone_approval(approval_id)
        except Exception:
            _log.exception('could not cancel orphaned approval approval_id=%s', approval_id)

    def _notify_signatories(self, approval: dict, milestone: dict, multisig, *, exclude_user_id: int) -> None:
        for signatory in multisig.signatories:
            if signatory.user_id is None or int(signatory.user_id) == int(exclude_user_id):
                continue
            self._send(
                NotificationCreateRecord(
                    user_id=int(signatory.user_id),
                    type=NotificationType.APPROVAL_INITIATED.value,
                    content=f'Payout approval started for milestone "{milestone.get("title")}". Your signature is requested.',
                    submission_id=int(milestone['submission_id']),
                    milestone_id=int(milestone['id']),
                    group_id=int(approval['group_id']),
                    metadata={'approval_id': approval['id'], 'call_hash': approval['multisig_call_hash']},
                )
            )

    def _notify_initiator(self, approval: dict, *, caller_id: int, signature_type: str) -> None:
        if int(approval['initiator_id']) == int(caller_id):
            return
        self._send(
            NotificationCreateRecord(
                user_id=int(approval['initiator_id']),
                type=NotificationType.APPROVAL_VOTE_CAST.value,
                content=f'A signatory {signature_type} the payout approval #{approval["id"]}.',
                milestone_id=int(approval['milestone_id']),
                group_id=int(approval['group_id']),
                metadata={'approval_id': approval['id'], 'signature_type': signature_type},
            )
        )

    def _notify_completion(self, milestone: dict, approval: dict) -> None:
        submission = self.repository.get_submission(milestone['submission_id'])
        if submission is None:
            _log.warning('completion notice skipped, submission missing milestone_id=%s', milestone['id'])
            return
        self._send(
            NotificationCreateRecord(
                user_id=int(submission['submitter_id']),
                type=NotificationType.MILESTONE_COMPLETED.value,
                content=f'Milestone "{milestone.get("title")}" has been approved and payment has been executed.',
                submission_id=int(submission['id']),
                milestone_id=int(milestone['id']),
                group_id=int(approval['group_id']),
                metadata={'approval_id': approval['id']},
            )
        )

    def _send(self, record: NotificationCreateRecord) -> None:
        try:
            self.notifier.create_notification(record)
        except Exception:
            _log.exception('notification failed type=%s user_id=%s', record.type, record.user_id)

    def _require_text(self, value, *, field: str) -> str:
        text = str(value or '').strip()
        if not text:
            raise self._validation_error_cls(f'{field} is required', field=field)
        return text

    def _normalize_timepoint(self, value) -> dict:
        if not isinstance(value, dict):
            raise self._validation_error_cls('timepoint must include height and index', field='timepoint')
        try:
            return {'height': int(value['height']), 'index': int(value['index'])}
        except (KeyError, TypeError, ValueError) as exc:
            raise self._validation_error_cls('timepoint must include height and index', field='timepoint') from exc

    def _normalize_workflow(self, value) -> str | None:
        if value is None or not str(value).strip():
            return None
        try:
            return normalize_enum(ApprovalWorkflow, value, field='approval_workflow').value
        except ValueError as exc:
            raise self._validation_error_cls(str(exc), field='approval_workflow') from exc

    def _normalize_signature_type(self, value) -> str:
        try:
            return normalize_enum(SignatureType, value, field='signature_type').value
        except ValueError as exc:
            raise self._validation_error_cls(str(exc), field='signature_type') from exc

    def _optional_block_number(self, value) -> int | None:
        if value is None:
            return None
        try:
            number = int(value)
        except (TypeError, ValueError) as exc:
            raise self._validation_error_cls(
                'execution_block_number must be an integer',
                field='execution_block_number',
            ) from exc
        if number < 1:
            raise self._validation_error_cls('execution_block_number must be >= 1', field='execution_block_number')
        return number
