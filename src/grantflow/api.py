from __future__ import annotations

import os
from typing import Literal

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from grantflow.repository import GrantRepository, InMemoryGrantRepository
from grantflow.service import (
    CastVoteInput,
    CompleteMilestoneInput,
    FinalizeApprovalInput,
    GrantService,
    InitiateApprovalInput,
    InputValidationError,
    SubmitReviewInput,
)
from grantflow.service_layers.results import ActionResult

CALLER_HEADER = 'x-grantflow-user-id'

_STATUS_BY_CODE = {
    'forbidden': 403,
    'not_found': 404,
    'conflict': 409,
    'precondition': 422,
    'internal': 500,
}


class SubmitReviewRequest(BaseModel):
    submission_id: int = Field(gt=0)
    milestone_id: int | None = Field(default=None, gt=0)
    vote: Literal['approve', 'reject']
    feedback: str | None = Field(default=None, max_length=20000)
    review_type: Literal['standard', 'final', 'milestone'] | None = None
    weight: int | None = Field(default=None, ge=1)
    is_binding: bool = False


class TimepointRequest(BaseModel):
    height: int = Field(ge=0)
    index: int = Field(ge=0)


class InitiateApprovalRequest(BaseModel):
    approval_workflow: Literal['merged', 'separated'] | None = None
    initiator_wallet_address: str = Field(min_length=1, max_length=128)
    tx_hash: str = Field(min_length=1, max_length=128)
    call_hash: str = Field(min_length=1, max_length=128)
    call_data_hex: str = Field(min_length=1)
    timepoint: TimepointRequest
    review_id: int | None = Field(default=None, gt=0)
    price_usd: str | None = None
    price_date: str | None = None
    price_source: str | None = None
    token_amount: str | None = None


class CastVoteRequest(BaseModel):
    signatory_address: str = Field(min_length=1, max_length=128)
    signature_type: Literal['signed', 'rejected']
    tx_hash: str = Field(min_length=1, max_length=128)
    review_id: int | None = Field(default=None, gt=0)
    was_executed: bool = False
    execution_block_number: int | None = Field(default=None, ge=1)
    child_bounty_id: int | None = Field(default=None, ge=0)


class FinalizeApprovalRequest(BaseModel):
    signatory_address: str = Field(min_length=1, max_length=128)
    execution_tx_hash: str = Field(min_length=1, max_length=128)
    execution_block_number: int = Field(ge=1)
    child_bounty_id: int | None = Field(default=None, ge=0)


class CompleteMilestoneRequest(BaseModel):
    transaction_hash: str = Field(min_length=1, max_length=128)
    amount: int | None = Field(default=None, ge=0)
    block_explorer_url: str | None = Field(default=None, max_length=500)
    wallet_from: str | None = Field(default=None, max_length=128)
    wallet_to: str | None = Field(default=None, max_length=128)


class ValidationErrorResponse(BaseModel):
    code: str
    message: str
    field: str | None = None


_ERROR_RESPONSES = {400: {'model': ValidationErrorResponse}}


class AppState:
    def __init__(self, service: GrantService):
        self.service = service


def _result_response(result: ActionResult, *, success_status: int = 200) -> JSONResponse:
    if result.success:
        return JSONResponse(status_code=success_status, content=result.to_dict())
    return JSONResponse(status_code=_STATUS_BY_CODE.get(str(result.code), 400), content=result.to_dict())


def create_app(
    *,
    repository: GrantRepository | None = None,
    service: GrantService | None = None,
    api_access_token: str | None = None,
    api_access_token_header: str = 'x-grantflow-api-token',
) -> FastAPI:
    if service is None:
        service = GrantService(repository=repository or InMemoryGrantRepository())

    app = FastAPI(title='grantflow api', version='0.3.0')
    app.state.container = AppState(service=service)

    resolved_api_access_token = api_access_token
    if resolved_api_access_token is None:
        resolved_api_access_token = str(os.getenv('GRANTFLOW_API_TOKEN', '')).strip() or None
    resolved_api_access_token_header = str(api_access_token_header or 'x-grantflow-api-token').strip().lower()

    def _field_from_loc(loc: tuple | list | None) -> str | None:
        if not loc:
            return None
        source_prefixes = {'body', 'query', 'path', 'header', 'cookie'}
        parts = list(loc)
        if parts and str(parts[0]) in source_prefixes:
            parts = parts[1:]
        if not parts:
            return None

        field = ''
        for part in parts:
            if isinstance(part, int):
                field += f'[{part}]'
                continue

            text = str(part)
            if field:
                field += f'.{text}'
            else:
                field = text

        return field or None

    def _validation_error_payload(*, message: str, field: str | None = None, code: str = 'validation_error') -> dict:
        payload: dict[str, str] = {
            'code': code,
            'message': message,
        }
        if field:
            payload['field'] = field
        return payload

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):  # noqa: ARG001
        details = exc.errors()
        if details:
            first = details[0]
            message = str(first.get('msg') or 'invalid request body')
            field = _field_from_loc(first.get('loc'))
        else:
            message = 'invalid request body'
            field = None
        return JSONResponse(
            status_code=400,
            content=_validation_error_payload(message=message, field=field),
        )

    @app.exception_handler(InputValidationError)
    async def handle_input_validation_error(request: Request, exc: InputValidationError):  # noqa: ARG001
        return JSONResponse(
            status_code=400,
            content=_validation_error_payload(
                message=str(exc),
                field=exc.field,
                code=exc.code,
            ),
        )

    def get_service() -> GrantService:
        return app.state.container.service

    @app.middleware('http')
    async def enforce_api_token(request: Request, call_next):
        if request.url.path.startswith('/api/') and resolved_api_access_token:
            token = request.headers.get(resolved_api_access_token_header)
            if token != resolved_api_access_token:
                return JSONResponse(
                    status_code=401,
                    content=_validation_error_payload(code='unauthorized', message='invalid api token'),
                )
        return await call_next(request)

    @app.get('/healthz')
    def healthz() -> dict[str, str]:
        return {'status': 'ok'}

    @app.post('/api/reviews', responses=_ERROR_RESPONSES)
    def submit_review(
        payload: SubmitReviewRequest,
        caller_id: int = Header(..., alias=CALLER_HEADER, gt=0),
        service: GrantService = Depends(get_service),
    ) -> JSONResponse:
        result = service.submit_review(
            caller_id,
            SubmitReviewInput(
                submission_id=payload.submission_id,
                milestone_id=payload.milestone_id,
                vote=payload.vote,
                feedback=payload.feedback,
                review_type=payload.review_type,
                weight=payload.weight,
                is_binding=payload.is_binding,
            ),
        )
        return _result_response(result, success_status=201)

    @app.post('/api/milestones/{milestone_id}/approvals', responses=_ERROR_RESPONSES)
    def initiate_approval(
        milestone_id: int,
        payload: InitiateApprovalRequest,
        caller_id: int = Header(..., alias=CALLER_HEADER, gt=0),
        service: GrantService = Depends(get_service),
    ) -> JSONResponse:
        result = service.initiate_approval(
            caller_id,
            InitiateApprovalInput(
                milestone_id=milestone_id,
                approval_workflow=payload.approval_workflow,
                initiator_wallet_address=payload.initiator_wallet_address,
                tx_hash=payload.tx_hash,
                call_hash=payload.call_hash,
                call_data_hex=payload.call_data_hex,
                timepoint=payload.timepoint.model_dump(),
                review_id=payload.review_id,
                price_usd=payload.price_usd,
                price_date=payload.price_date,
                price_source=payload.price_source,
                token_amount=payload.token_amount,
            ),
        )
        return _result_response(result, success_status=201)

    @app.get('/api/milestones/{milestone_id}/approval-status')
    def approval_status(milestone_id: int, service: GrantService = Depends(get_service)) -> JSONResponse:
        status = service.get_approval_status(milestone_id)
        return JSONResponse(status_code=500 if status.get('status') == 'error' else 200, content=status)

    @app.post('/api/approvals/{approval_id}/votes', responses=_ERROR_RESPONSES)
    def cast_vote(
        approval_id: int,
        payload: CastVoteRequest,
        caller_id: int = Header(..., alias=CALLER_HEADER, gt=0),
        service: GrantService = Depends(get_service),
    ) -> JSONResponse:
        result = service.cast_vote(
            caller_id,
            CastVoteInput(
                approval_id=approval_id,
                signatory_address=payload.signatory_address,
                signature_type=payload.signature_type,
                tx_hash=payload.tx_hash,
                review_id=payload.review_id,
                was_executed=payload.was_executed,
                execution_block_number=payload.execution_block_number,
                child_bounty_id=payload.child_bounty_id,
            ),
        )
        return _result_response(result)

    @app.post('/api/approvals/{approval_id}/finalize', responses=_ERROR_RESPONSES)
    def finalize_approval(
        approval_id: int,
        payload: FinalizeApprovalRequest,
        caller_id: int = Header(..., alias=CALLER_HEADER, gt=0),
        service: GrantService = Depends(get_service),
    ) -> JSONResponse:
        result = service.finalize_approval(
            caller_id,
            FinalizeApprovalInput(
                approval_id=approval_id,
                signatory_address=payload.signatory_address,
                execution_tx_hash=payload.execution_tx_hash,
                execution_block_number=payload.execution_block_number,
                child_bounty_id=payload.child_bounty_id,
            ),
        )
        return _result_response(result)

    @app.post('/api/approvals/{approval_id}/cancel', responses=_ERROR_RESPONSES)
    def cancel_approval(
        approval_id: int,
        caller_id: int = Header(..., alias=CALLER_HEADER, gt=0),
        service: GrantService = Depends(get_service),
    ) -> JSONResponse:
        return _result_response(service.cancel_approval(caller_id, approval_id))

    @app.post('/api/milestones/{milestone_id}/complete', responses=_ERROR_RESPONSES)
    def complete_milestone(
        milestone_id: int,
        payload: CompleteMilestoneRequest,
        caller_id: int = Header(..., alias=CALLER_HEADER, gt=0),
        service: GrantService = Depends(get_service),
    ) -> JSONResponse:
        result = service.complete_milestone(
            caller_id,
            CompleteMilestoneInput(
                milestone_id=milestone_id,
                transaction_hash=payload.transaction_hash,
                amount=payload.amount,
                block_explorer_url=payload.block_explorer_url,
                wallet_from=payload.wallet_from,
                wallet_to=payload.wallet_to,
            ),
        )
        return _result_response(result)

    return app
