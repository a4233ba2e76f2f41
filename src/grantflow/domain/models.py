from __future__ import annotations

from enum import Enum


class VoteValue(str, Enum):
    APPROVE = 'approve'
    REJECT = 'reject'


class ReviewType(str, Enum):
    STANDARD = 'standard'
    FINAL = 'final'
    MILESTONE = 'milestone'


class SubmissionStatus(str, Enum):
    DRAFT = 'draft'
    PENDING = 'pending'
    IN_REVIEW = 'in-review'
    APPROVED = 'approved'
    REJECTED = 'rejected'
    CHANGES_REQUESTED = 'changes-requested'


class MilestoneStatus(str, Enum):
    PENDING = 'pending'
    IN_PROGRESS = 'in-progress'
    IN_REVIEW = 'in-review'
    COMPLETED = 'completed'
    REJECTED = 'rejected'
    CHANGES_REQUESTED = 'changes-requested'


class ApprovalStatus(str, Enum):
    PENDING = 'pending'
    EXECUTED = 'executed'
    CANCELLED = 'cancelled'


class SignatureType(str, Enum):
    SIGNED = 'signed'
    REJECTED = 'rejected'


class ApprovalWorkflow(str, Enum):
    # merged: the committee vote and the multisig signature are one action.
    MERGED = 'merged'
    SEPARATED = 'separated'


class Network(str, Enum):
    POLKADOT = 'polkadot'
    KUSAMA = 'kusama'
    PASEO = 'paseo'
    PASEO_ASSET_HUB = 'paseo_asset_hub'


class VoteScope(str, Enum):
    SUBMISSION = 'submission'
    MILESTONE = 'milestone'


def normalize_enum(enum_cls, value, *, field: str):
    if isinstance(value, enum_cls):
        return value
    text = str(value or '').strip().lower()
    try:
        return enum_cls(text)
    except ValueError as exc:
        allowed = ', '.join(item.value for item in enum_cls)
        raise ValueError(f'{field} must be one of: {allowed}') from exc


def target_key(*, submission_id: int, milestone_id: int | None) -> str:
    """Return the vote-scope key used for the one-review-per-target constraint."""
    if milestone_id is not None:
        return f'milestone:{int(milestone_id)}'
    return f'submission:{int(submission_id)}'
