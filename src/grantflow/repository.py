from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
from threading import RLock
from typing import Protocol

from grantflow.domain.events import normalize_notification_type
from grantflow.domain.models import ApprovalStatus, MilestoneStatus, target_key


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class DuplicateRecordError(Exception):
    """Raised when an insert would break a one-per-key rule."""

    def __init__(self, message: str, *, constraint: str):
        super().__init__(message)
        self.constraint = constraint


class ApprovalNotPendingError(Exception):
    """Raised when completing an approval that has already left the pending state."""


@dataclass(frozen=True)
class ReviewCreateRecord:
    submission_id: int
    group_id: int
    reviewer_id: int
    vote: str
    milestone_id: int | None = None
    feedback: str | None = None
    review_type: str = 'standard'
    weight: int = 1
    is_binding: bool = False


@dataclass(frozen=True)
class ApprovalCreateRecord:
    milestone_id: int
    group_id: int
    multisig_call_hash: str
    multisig_call_data: str
    timepoint: dict | None
    initiator_id: int
    initiator_address: str
    approval_workflow: str
    beneficiary_address: str
    payout_amount: str | None = None
    parent_bounty_id: int | None = None
    child_bounty_id: int | None = None
    price_usd: str | None = None
    price_date: str | None = None
    price_source: str | None = None
    token_amount: str | None = None


@dataclass(frozen=True)
class SignatureCreateRecord:
    approval_id: int
    signatory_address: str
    signature_type: str
    tx_hash: str
    user_id: int | None = None
    review_id: int | None = None
    is_initiator: bool = False
    is_final_approval: bool = False


@dataclass(frozen=True)
class PayoutCreateRecord:
    milestone_id: int
    group_id: int
    amount: int
    transaction_hash: str
    block_explorer_url: str
    triggered_by: int
    submission_id: int | None = None
    wallet_from: str | None = None
    wallet_to: str | None = None


@dataclass(frozen=True)
class ExecutionRecord:
    approval_id: int
    milestone_id: int
    execution_tx_hash: str
    execution_block_number: int
    child_bounty_id: int | None = None
    payout: PayoutCreateRecord | None = None
    final_signature: SignatureCreateRecord | None = None


@dataclass(frozen=True)
class NotificationCreateRecord:
    user_id: int
    type: str
    content: str
    submission_id: int | None = None
    milestone_id: int | None = None
    group_id: int | None = None
    metadata: dict = field(default_factory=dict)


class GrantRepository(Protocol):
    def create_committee(self, *, name: str, settings: dict | None = None) -> dict:
        ...

    def get_committee(self, group_id: int) -> dict | None:
        ...

    def update_committee_settings(self, group_id: int, *, settings: dict) -> dict:
        ...

    def add_membership(self, *, group_id: int, user_id: int, role: str = 'member', is_active: bool = True) -> dict:
        ...

    def count_active_members(self, group_id: int) -> int:
        ...

    def has_active_membership(self, user_id: int, *, group_id: int | None = None, role: str | None = None) -> bool:
        ...

    def create_submission(
        self,
        *,
        group_id: int,
        submitter_id: int,
        title: str,
        wallet_address: str | None = None,
        status: str = 'pending',
    ) -> dict:
        ...

    def get_submission(self, submission_id: int) -> dict | None:
        ...

    def update_submission_status(self, submission_id: int, *, status: str) -> dict:
        ...

    def create_milestone(
        self,
        *,
        submission_id: int,
        group_id: int,
        title: str,
        amount: int | None = None,
        status: str = 'pending',
    ) -> dict:
        ...

    def get_milestone(self, milestone_id: int) -> dict | None:
        ...

    def update_milestone_status(self, milestone_id: int, *, status: str, rejected: bool = False) -> dict:
        """Set status with reviewed/updated stamps; ``rejected`` also bumps the rejection counter."""
        ...

    def create_review(self, record: ReviewCreateRecord) -> dict:
        ...

    def find_review(self, *, reviewer_id: int, submission_id: int, milestone_id: int | None) -> dict | None:
        ...

    def list_reviews(self, *, submission_id: int, milestone_id: int | None) -> list[dict]:
        ...

    def create_milestone_approval(self, record: ApprovalCreateRecord) -> dict:
        ...

    def get_milestone_approval(self, approval_id: int) -> dict | None:
        ...

    def get_active_milestone_approval(self, milestone_id: int) -> dict | None:
        ...

    def list_milestone_approvals(self, milestone_id: int) -> list[dict]:
        ...

    def cancel_milestone_approval(self, approval_id: int) -> dict:
        ...

    def create_multisig_signature(self, record: SignatureCreateRecord) -> dict:
        ...

    def find_multisig_signature(self, *, approval_id: int, signatory_address: str) -> dict | None:
        ...

    def list_multisig_signatures(self, approval_id: int) -> list[dict]:
        ...

    def complete_milestone_approval(self, record: ExecutionRecord) -> dict:
        """Mark the approval executed, the milestone completed and record the payout atomically.

        When ``final_signature`` is set it is written in the same transaction,
        so a failed completion leaves no signature behind.
        """
        ...

    def complete_milestone_with_payout(self, payout: PayoutCreateRecord) -> dict:
        ...

    def create_payout(self, record: PayoutCreateRecord) -> dict:
        ...

    def list_payouts(self, *, milestone_id: int | None = None) -> list[dict]:
        ...

    def create_notification(self, record: NotificationCreateRecord) -> dict:
        ...

    def list_notifications(self, *, user_id: int | None = None) -> list[dict]:
        ...


class InMemoryGrantRepository:
    def __init__(self):
        self._lock = RLock()
        self._seq: dict[str, int] = {}
        self.committees: dict[int, dict] = {}
        self.memberships: dict[int, dict] = {}
        self.submissions: dict[int, dict] = {}
        self.milestones: dict[int, dict] = {}
        self.reviews: dict[int, dict] = {}
        self.approvals: dict[int, dict] = {}
        self.signatures: dict[int, dict] = {}
        self.payouts: dict[int, dict] = {}
        self.notifications: dict[int, dict] = {}

    def _next_id(self, table: str) -> int:
        value = self._seq.get(table, 0) + 1
        self._seq[table] = value
        return value

    def create_committee(self, *, name: str, settings: dict | None = None) -> dict:
        with self._lock:
            group_id = self._next_id('committees')
            row = {
                'id': group_id,
                'name': str(name),
                'settings': decode_committee_settings(encode_committee_settings(settings or {})),
                'created_at': _utc_now_iso(),
                'updated_at': _utc_now_iso(),
            }
            self.committees[group_id] = row
            return _copy(row)

    def get_committee(self, group_id: int) -> dict | None:
        row = self.committees.get(int(group_id))
        return _copy(row) if row else None

    def update_committee_settings(self, group_id: int, *, settings: dict) -> dict:
        with self._lock:
            row = self.committees.get(int(group_id))
            if row is None:
                raise KeyError(group_id)
            row['settings'] = decode_committee_settings(encode_committee_settings(settings))
            row['updated_at'] = _utc_now_iso()
            return _copy(row)

    def add_membership(self, *, group_id: int, user_id: int, role: str = 'member', is_active: bool = True) -> dict:
        with self._lock:
            if int(group_id) not in self.committees:
                raise KeyError(group_id)
            membership_id = self._next_id('memberships')
            row = {
                'id': membership_id,
                'group_id': int(group_id),
                'user_id': int(user_id),
                'role': str(role or 'member').strip().lower(),
                'is_active': bool(is_active),
                'joined_at': _utc_now_iso(),
            }
            self.memberships[membership_id] = row
            return dict(row)

    def count_active_members(self, group_id: int) -> int:
        return sum(
            1 for m in self.memberships.values()
            if m['group_id'] == int(group_id) and m['is_active']
        )

    def has_active_membership(self, user_id: int, *, group_id: int | None = None, role: str | None = None) -> bool:
        for m in self.memberships.values():
            if m['user_id'] != int(user_id) or not m['is_active']:
                continue
            if group_id is not None and m['group_id'] != int(group_id):
                continue
            if role is not None and m['role'] != str(role).strip().lower():
                continue
            return True
        return False

    def create_submission(
        self,
        *,
        group_id: int,
        submitter_id: int,
        title: str,
        wallet_address: str | None = None,
        status: str = 'pending',
    ) -> dict:
        with self._lock:
            submission_id = self._next_id('submissions')
            now = _utc_now_iso()
            row = {
                'id': submission_id,
                'group_id': int(group_id),
                'submitter_id': int(submitter_id),
                'title': str(title),
                'wallet_address': (str(wallet_address).strip() or None) if wallet_address else None,
                'status': str(status),
                'created_at': now,
                'updated_at': now,
            }
            self.submissions[submission_id] = row
            return dict(row)

    def get_submission(self, submission_id: int) -> dict | None:
        row = self.submissions.get(int(submission_id))
        return dict(row) if row else None

    def update_submission_status(self, submission_id: int, *, status: str) -> dict:
        with self._lock:
            row = self.submissions.get(int(submission_id))
            if row is None:
                raise KeyError(submission_id)
            row['status'] = str(status)
            row['updated_at'] = _utc_now_iso()
            return dict(row)

    def create_milestone(
        self,
        *,
        submission_id: int,
        group_id: int,
        title: str,
        amount: int | None = None,
        status: str = 'pending',
    ) -> dict:
        with self._lock:
            milestone_id = self._next_id('milestones')
            now = _utc_now_iso()
            row = {
                'id': milestone_id,
                'submission_id': int(submission_id),
                'group_id': int(group_id),
                'title': str(title),
                'amount': int(amount) if amount is not None else None,
                'status': str(status),
                'rejection_count': 0,
                'last_rejected_at': None,
                'reviewed_at': None,
                'created_at': now,
                'updated_at': now,
            }
            self.milestones[milestone_id] = row
            return dict(row)

    def get_milestone(self, milestone_id: int) -> dict | None:
        row = self.milestones.get(int(milestone_id))
        return dict(row) if row else None

    def update_milestone_status(self, milestone_id: int, *, status: str, rejected: bool = False) -> dict:
        with self._lock:
            row = self.milestones.get(int(milestone_id))
            if row is None:
                raise KeyError(milestone_id)
            self._set_milestone_status(row, status=status, rejected=rejected)
            return dict(row)

    @staticmethod
    def _set_milestone_status(row: dict, *, status: str, rejected: bool) -> None:
        now = _utc_now_iso()
        row['status'] = str(status)
        row['reviewed_at'] = now
        row['updated_at'] = now
        if rejected:
            row['rejection_count'] = int(row.get('rejection_count') or 0) + 1
            row['last_rejected_at'] = now

    def create_review(self, record: ReviewCreateRecord) -> dict:
        with self._lock:
            if self.find_review(
                reviewer_id=record.reviewer_id,
                submission_id=record.submission_id,
                milestone_id=record.milestone_id,
            ) is not None:
                raise DuplicateRecordError('review already exists', constraint='uq_reviews_target_reviewer')
            review_id = self._next_id('reviews')
            row = {
                'id': review_id,
                'submission_id': int(record.submission_id),
                'milestone_id': int(record.milestone_id) if record.milestone_id is not None else None,
                'group_id': int(record.group_id),
                'reviewer_id': int(record.reviewer_id),
                'vote': str(record.vote),
                'feedback': record.feedback,
                'review_type': str(record.review_type or 'standard'),
                'weight': int(record.weight),
                'is_binding': bool(record.is_binding),
                'created_at': _utc_now_iso(),
            }
            self.reviews[review_id] = row
            return dict(row)

    def find_review(self, *, reviewer_id: int, submission_id: int, milestone_id: int | None) -> dict | None:
        key = target_key(submission_id=submission_id, milestone_id=milestone_id)
        for row in self.reviews.values():
            if row['reviewer_id'] != int(reviewer_id):
                continue
            if target_key(submission_id=row['submission_id'], milestone_id=row['milestone_id']) == key:
                return dict(row)
        return None

    def list_reviews(self, *, submission_id: int, milestone_id: int | None) -> list[dict]:
        rows = []
        for row in self.reviews.values():
            if milestone_id is None:
                if row['submission_id'] == int(submission_id) and row['milestone_id'] is None:
                    rows.append(dict(row))
            elif row['milestone_id'] == int(milestone_id):
                rows.append(dict(row))
        rows.sort(key=lambda r: r['id'])
        return rows

    def create_milestone_approval(self, record: ApprovalCreateRecord) -> dict:
        with self._lock:
            if self.get_active_milestone_approval(record.milestone_id) is not None:
                raise DuplicateRecordError(
                    'pending approval already exists',
                    constraint='uq_milestone_approvals_active_key',
                )
            approval_id = self._next_id('approvals')
            row = {
                'id': approval_id,
                'milestone_id': int(record.milestone_id),
                'group_id': int(record.group_id),
                'multisig_call_hash': record.multisig_call_hash,
                'multisig_call_data': record.multisig_call_data,
                'timepoint': dict(record.timepoint) if record.timepoint else None,
                'status': ApprovalStatus.PENDING.value,
                'initiator_id': int(record.initiator_id),
                'initiator_address': record.initiator_address,
                'approval_workflow': record.approval_workflow,
                'payout_amount': record.payout_amount,
                'beneficiary_address': record.beneficiary_address,
                'parent_bounty_id': record.parent_bounty_id,
                'child_bounty_id': record.child_bounty_id,
                'price_usd': record.price_usd,
                'price_date': record.price_date,
                'price_source': record.price_source,
                'token_amount': record.token_amount,
                'created_at': _utc_now_iso(),
                'executed_at': None,
                'execution_tx_hash': None,
                'execution_block_number': None,
            }
            self.approvals[approval_id] = row
            return _copy(row)

    def get_milestone_approval(self, approval_id: int) -> dict | None:
        row = self.approvals.get(int(approval_id))
        return _copy(row) if row else None

    def get_active_milestone_approval(self, milestone_id: int) -> dict | None:
        pending = [
            row for row in self.approvals.values()
            if row['milestone_id'] == int(milestone_id) and row['status'] == ApprovalStatus.PENDING.value
        ]
        if not pending:
            return None
        pending.sort(key=lambda r: r['id'], reverse=True)
        return _copy(pending[0])

    def list_milestone_approvals(self, milestone_id: int) -> list[dict]:
        rows = [_copy(r) for r in self.approvals.values() if r['milestone_id'] == int(milestone_id)]
        rows.sort(key=lambda r: r['id'], reverse=True)
        return rows

    def cancel_milestone_approval(self, approval_id: int) -> dict:
        with self._lock:
            row = self.approvals.get(int(approval_id))
            if row is None:
                raise KeyError(approval_id)
            row['status'] = ApprovalStatus.CANCELLED.value
            return _copy(row)

    def create_multisig_signature(self, record: SignatureCreateRecord) -> dict:
        with self._lock:
            if int(record.approval_id) not in self.approvals:
                raise KeyError(record.approval_id)
            if self.find_multisig_signature(
                approval_id=record.approval_id,
                signatory_address=record.signatory_address,
            ) is not None:
                raise DuplicateRecordError(
                    'signatory already voted',
                    constraint='uq_multisig_signatures_approval_signatory',
                )
            signature_id = self._next_id('signatures')
            row = {
                'id': signature_id,
                'approval_id': int(record.approval_id),
                'review_id': record.review_id,
                'user_id': record.user_id,
                'signatory_address': record.signatory_address,
                'signature_type': record.signature_type,
                'tx_hash': record.tx_hash,
                'is_initiator': bool(record.is_initiator),
                'is_final_approval': bool(record.is_final_approval),
                'signed_at': _utc_now_iso(),
            }
            self.signatures[signature_id] = row
            return dict(row)

    def find_multisig_signature(self, *, approval_id: int, signatory_address: str) -> dict | None:
        for row in self.signatures.values():
            if row['approval_id'] == int(approval_id) and row['signatory_address'] == signatory_address:
                return dict(row)
        return None

    def list_multisig_signatures(self, approval_id: int) -> list[dict]:
        rows = [dict(r) for r in self.signatures.values() if r['approval_id'] == int(approval_id)]
        rows.sort(key=lambda r: r['id'])
        return rows

    def complete_milestone_approval(self, record: ExecutionRecord) -> dict:
        with self._lock:
            approval = self.approvals.get(int(record.approval_id))
            if approval is None:
                raise KeyError(record.approval_id)
            if approval['status'] != ApprovalStatus.PENDING.value:
                raise ApprovalNotPendingError(record.approval_id)
            milestone = self.milestones.get(int(record.milestone_id))
            if milestone is None:
                raise KeyError(record.milestone_id)
            signature = None
            if record.final_signature is not None:
                signature = self.create_multisig_signature(record.final_signature)
            approval['status'] = ApprovalStatus.EXECUTED.value
            approval['executed_at'] = _utc_now_iso()
            approval['execution_tx_hash'] = record.execution_tx_hash
            approval['execution_block_number'] = int(record.execution_block_number)
            if record.child_bounty_id is not None:
                approval['child_bounty_id'] = int(record.child_bounty_id)
            self._set_milestone_status(milestone, status=MilestoneStatus.COMPLETED.value, rejected=False)
            payout = self.create_payout(record.payout) if record.payout is not None else None
            return {'approval': _copy(approval), 'milestone': dict(milestone), 'payout': payout, 'signature': signature}

    def complete_milestone_with_payout(self, payout: PayoutCreateRecord) -> dict:
        with self._lock:
            milestone = self.milestones.get(int(payout.milestone_id))
            if milestone is None:
                raise KeyError(payout.milestone_id)
            self._set_milestone_status(milestone, status=MilestoneStatus.COMPLETED.value, rejected=False)
            created = self.create_payout(payout)
            return {'milestone': dict(milestone), 'payout': created}

    def create_payout(self, record: PayoutCreateRecord) -> dict:
        with self._lock:
            payout_id = self._next_id('payouts')
            now = _utc_now_iso()
            row = {
                'id': payout_id,
                'submission_id': record.submission_id,
                'milestone_id': int(record.milestone_id),
                'group_id': int(record.group_id),
                'amount': int(record.amount),
                'transaction_hash': record.transaction_hash,
                'block_explorer_url': record.block_explorer_url,
                'status': 'completed',
                'triggered_by': int(record.triggered_by),
                'approved_by': int(record.triggered_by),
                'wallet_from': record.wallet_from,
                'wallet_to': record.wallet_to,
                'processed_at': now,
                'created_at': now,
            }
            self.payouts[payout_id] = row
            return dict(row)

    def list_payouts(self, *, milestone_id: int | None = None) -> list[dict]:
        rows = [
            dict(r) for r in self.payouts.values()
            if milestone_id is None or r['milestone_id'] == int(milestone_id)
        ]
        rows.sort(key=lambda r: r['id'])
        return rows

    def create_notification(self, record: NotificationCreateRecord) -> dict:
        with self._lock:
            notification_id = self._next_id('notifications')
            row = {
                'id': notification_id,
                'user_id': int(record.user_id),
                'type': normalize_notification_type(record.type),
                'content': str(record.content),
                'submission_id': record.submission_id,
                'milestone_id': record.milestone_id,
                'group_id': record.group_id,
                'metadata': dict(record.metadata or {}),
                'read': False,
                'created_at': _utc_now_iso(),
            }
            self.notifications[notification_id] = row
            return _copy(row)

    def list_notifications(self, *, user_id: int | None = None) -> list[dict]:
        rows = [
            _copy(r) for r in self.notifications.values()
            if user_id is None or r['user_id'] == int(user_id)
        ]
        rows.sort(key=lambda r: r['id'])
        return rows


def _copy(row: dict) -> dict:
    return json.loads(json.dumps(row))


def encode_committee_settings(settings: dict | None) -> str:
    return json.dumps(decode_committee_settings(settings or {}), ensure_ascii=True, sort_keys=True)


def decode_committee_settings(raw) -> dict:
    """Normalize stored committee settings into a predictable dict.

    Accepts a JSON string or an already-parsed dict; unknown keys are kept
    so committees can carry settings this service does not interpret.
    """
    if isinstance(raw, (str, bytes)):
        try:
            parsed = json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            parsed = {}
    else:
        parsed = raw
    if not isinstance(parsed, dict):
        parsed = {}

    out = dict(parsed)
    for key in ('voting_threshold', 'required_approval_percentage'):
        value = parsed.get(key)
        if value is None:
            out.pop(key, None)
            continue
        try:
            out[key] = float(value)
        except (TypeError, ValueError):
            out.pop(key, None)

    multisig = parsed.get('multisig')
    if isinstance(multisig, dict):
        out['multisig'] = _decode_multisig_settings(multisig)
    else:
        out.pop('multisig', None)
    return out


def _decode_multisig_settings(raw: dict) -> dict:
    signatories: list[dict] = []
    seen: set[str] = set()
    for item in raw.get('signatories') or []:
        if isinstance(item, dict):
            address = str(item.get('address') or '').strip()
            user_id = item.get('user_id')
        else:
            address = str(item or '').strip()
            user_id = None
        if not address or address in seen:
            continue
        seen.add(address)
        try:
            user_id = int(user_id) if user_id is not None else None
        except (TypeError, ValueError):
            user_id = None
        signatories.append({'address': address, 'user_id': user_id})

    threshold = raw.get('threshold')
    try:
        threshold = max(1, int(threshold)) if threshold is not None else None
    except (TypeError, ValueError):
        threshold = None
    parent_bounty_id = raw.get('parent_bounty_id')
    try:
        parent_bounty_id = int(parent_bounty_id) if parent_bounty_id is not None else None
    except (TypeError, ValueError):
        parent_bounty_id = None

    out = dict(raw)
    out['signatories'] = signatories
    out['threshold'] = threshold
    out['multisig_address'] = str(raw.get('multisig_address') or '').strip()
    out['network'] = str(raw.get('network') or '').strip().lower() or None
    out['parent_bounty_id'] = parent_bounty_id
    workflow = str(raw.get('approval_workflow') or 'merged').strip().lower()
    out['approval_workflow'] = workflow if workflow in {'merged', 'separated'} else 'merged'
    return out


__all__ = [
    'ApprovalCreateRecord',
    'ApprovalNotPendingError',
    'DuplicateRecordError',
    'ExecutionRecord',
    'GrantRepository',
    'InMemoryGrantRepository',
    'NotificationCreateRecord',
    'PayoutCreateRecord',
    'ReviewCreateRecord',
    'SignatureCreateRecord',
    'decode_committee_settings',
    'encode_committee_settings',
]
