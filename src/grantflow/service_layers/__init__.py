from .multisig import ExecutionDescriptor, MultisigApprovalService
from .payouts import MilestoneCompletionService
from .results import ActionResult
from .reviews import ReviewService
from .transitions import StatusTransitionApplier

__all__ = [
    'ActionResult',
    'ExecutionDescriptor',
    'MilestoneCompletionService',
    'MultisigApprovalService',
    'ReviewService',
    'StatusTransitionApplier',
]
