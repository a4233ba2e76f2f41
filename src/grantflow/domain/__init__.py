from grantflow.domain.events import NotificationType, normalize_notification_type
from grantflow.domain.models import (
    ApprovalStatus,
    ApprovalWorkflow,
    MilestoneStatus,
    Network,
    ReviewType,
    SignatureType,
    SubmissionStatus,
    VoteScope,
    VoteValue,
)
from grantflow.domain.quorum import QuorumDecision, QuorumPolicy, evaluate_quorum

__all__ = [
    'ApprovalStatus',
    'ApprovalWorkflow',
    'MilestoneStatus',
    'Network',
    'NotificationType',
    'QuorumDecision',
    'QuorumPolicy',
    'ReviewType',
    'SignatureType',
    'SubmissionStatus',
    'VoteScope',
    'VoteValue',
    'evaluate_quorum',
    'normalize_notification_type',
]
