from __future__ import annotations

from dataclasses import dataclass, field

FORBIDDEN = 'forbidden'
NOT_FOUND = 'not_found'
CONFLICT = 'conflict'
PRECONDITION = 'precondition'
INTERNAL = 'internal'

ERROR_CODES = (FORBIDDEN, NOT_FOUND, CONFLICT, PRECONDITION, INTERNAL)

NOT_AUTHORIZED_REVIEW = 'You are not authorized to review submissions'
NOT_AUTHORIZED_INITIATE = 'You are not authorized to initiate approvals'
NOT_AUTHORIZED_VOTE = 'You are not authorized to vote on approvals'
NOT_AUTHORIZED_FINALIZE = 'You are not authorized to finalize approvals'
NOT_AUTHORIZED_COMPLETE = 'You are not authorized to complete milestones'
NOT_AUTHORIZED_CANCEL = 'You are not authorized to cancel approvals'

SUBMISSION_NOT_FOUND = 'Submission not found'
MILESTONE_NOT_FOUND = 'Milestone not found'
APPROVAL_NOT_FOUND = 'Approval not found'
COMMITTEE_NOT_FOUND = 'Committee not found'

ALREADY_REVIEWED = 'You have already submitted a review for this item'
ACTIVE_APPROVAL_EXISTS = 'There is already an active approval process for this milestone'
NO_MULTISIG_WALLET = 'Committee does not have multisig wallet configured'
NO_MULTISIG_CONFIG = 'Committee multisig configuration not found'
NOT_A_SIGNATORY = 'Your wallet address is not a signatory for this committee'
ALREADY_VOTED = 'You have already voted on this approval'
APPROVAL_NOT_ACTIVE = 'This approval is no longer active'
MISSING_WALLET = 'Submission or beneficiary wallet address not found'
MILESTONE_ALREADY_COMPLETED = 'This milestone has already been completed'

FAILED_REVIEW = 'Failed to submit review. Please try again.'
FAILED_INITIATE = 'Failed to initiate approval. Please try again.'
FAILED_VOTE = 'Failed to record vote. Please try again.'
FAILED_FINALIZE = 'Failed to finalize approval. Please try again.'
FAILED_COMPLETE = 'Failed to complete milestone. Please try again.'


@dataclass(frozen=True)
class ActionResult:
    """Outcome of a user-facing action.

    Failures carry a display-ready ``error`` string and a machine ``code``;
    the engine never raises past this boundary for expected failures.
    """

    success: bool
    error: str | None = None
    code: str | None = None
    message: str | None = None
    data: dict = field(default_factory=dict)

    @classmethod
    def ok(cls, message: str | None = None, **data) -> 'ActionResult':
        return cls(success=True, message=message, data=dict(data))

    @classmethod
    def fail(cls, code: str, error: str) -> 'ActionResult':
        if code not in ERROR_CODES:
            raise ValueError(f'unknown error code: {code}')
        return cls(success=False, error=error, code=code)

    def to_dict(self) -> dict:
        if not self.success:
            return {'success': False, 'code': self.code, 'error': self.error}
        out: dict = {'success': True}
        if self.message:
            out['message'] = self.message
        out.update(self.data)
        return out
