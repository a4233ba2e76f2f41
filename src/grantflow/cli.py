from __future__ import annotations

import argparse
import json
import os
import sys

import httpx

from grantflow.config import load_settings

_USER_HEADER = 'x-grantflow-user-id'
_TOKEN_HEADER = 'x-grantflow-api-token'


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='grantflow', description='Committee reviews and multisig milestone payouts')
    parser.add_argument('--api-base', default='http://127.0.0.1:8000', help='grantflow API base URL')
    parser.add_argument(
        '--user-id',
        type=int,
        default=None,
        help='Acting user id (defaults to GRANTFLOW_USER_ID)',
    )
    parser.add_argument('--api-token', default=None, help='Shared API token (defaults to GRANTFLOW_API_TOKEN)')

    sub = parser.add_subparsers(dest='command', required=True)

    review = sub.add_parser('review', help='Vote on a submission or milestone')
    review.add_argument('submission_id', type=int, help='Submission id')
    review.add_argument('--vote', required=True, choices=['approve', 'reject'])
    review.add_argument('--milestone-id', type=int, default=None, help='Vote on this milestone instead of the submission')
    review.add_argument('--feedback', default='', help='Optional feedback text')
    review.add_argument('--review-type', default=None, choices=['standard', 'final', 'milestone'])
    review.add_argument('--weight', type=int, default=None)
    review.add_argument('--binding', action='store_true', help='Mark the vote as binding')

    initiate = sub.add_parser('initiate', help='Start a multisig approval for a milestone')
    initiate.add_argument('milestone_id', type=int, help='Milestone id')
    initiate.add_argument('--wallet', required=True, help='Initiator signatory address')
    initiate.add_argument('--tx-hash', required=True, help='Transaction hash of the initiating call')
    initiate.add_argument('--call-hash', required=True)
    initiate.add_argument('--call-data', required=True, help='Hex-encoded call data')
    initiate.add_argument('--height', type=int, required=True, help='Timepoint block height')
    initiate.add_argument('--index', type=int, required=True, help='Timepoint extrinsic index')
    initiate.add_argument('--workflow', default=None, choices=['merged', 'separated'])
    initiate.add_argument('--review-id', type=int, default=None)
    initiate.add_argument('--price-usd', default=None)
    initiate.add_argument('--price-date', default=None)
    initiate.add_argument('--price-source', default=None)
    initiate.add_argument('--token-amount', default=None)

    vote = sub.add_parser('vote', help='Sign or reject a pending approval')
    vote.add_argument('approval_id', type=int, help='Approval id')
    vote.add_argument('--wallet', required=True, help='Signatory address')
    vote.add_argument('--signature-type', default='signed', choices=['signed', 'rejected'])
    vote.add_argument('--tx-hash', required=True)
    vote.add_argument('--review-id', type=int, default=None)
    vote.add_argument('--executed', action='store_true', help='This signature executed the call on-chain')
    vote.add_argument('--block-number', type=int, default=None, help='Execution block number')
    vote.add_argument('--child-bounty-id', type=int, default=None)

    finalize = sub.add_parser('finalize', help='Record the executing signature of an approval')
    finalize.add_argument('approval_id', type=int, help='Approval id')
    finalize.add_argument('--wallet', required=True, help='Signatory address')
    finalize.add_argument('--tx-hash', required=True, help='Execution transaction hash')
    finalize.add_argument('--block-number', type=int, required=True, help='Execution block number')
    finalize.add_argument('--child-bounty-id', type=int, default=None)

    cancel = sub.add_parser('cancel', help='Cancel a pending approval')
    cancel.add_argument('approval_id', type=int, help='Approval id')

    complete = sub.add_parser('complete', help='Complete a milestone with a manual payout')
    complete.add_argument('milestone_id', type=int, help='Milestone id')
    complete.add_argument('--tx-hash', required=True, help='Payout transaction hash')
    complete.add_argument('--amount', type=int, default=None, help='Defaults to the milestone amount')
    complete.add_argument('--explorer-url', default=None)
    complete.add_argument('--wallet-from', default=None)
    complete.add_argument('--wallet-to', default=None)

    status = sub.add_parser('approval-status', help='Show the active approval of a milestone')
    status.add_argument('milestone_id', type=int, help='Milestone id')

    return parser


def _print_json(payload) -> None:
    print(json.dumps(payload, ensure_ascii=True, indent=2))


def _resolve_user_id(value: int | None) -> int | None:
    if value is not None:
        return int(value)
    raw = str(os.getenv('GRANTFLOW_USER_ID', '') or '').strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _headers(args) -> dict[str, str]:
    headers: dict[str, str] = {}
    token = args.api_token
    if token is None:
        token = load_settings().api_token
    if token:
        headers[_TOKEN_HEADER] = str(token)
    user_id = _resolve_user_id(args.user_id)
    if user_id is not None:
        headers[_USER_HEADER] = str(user_id)
    return headers


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    base = args.api_base.rstrip('/')
    headers = _headers(args)
    if args.command != 'approval-status' and _USER_HEADER not in headers:
        parser.error('--user-id (or GRANTFLOW_USER_ID) is required for this command')
        return 2

    with httpx.Client(timeout=60, headers=headers) as client:
        if args.command == 'review':
            response = client.post(
                f'{base}/api/reviews',
                json={
                    'submission_id': int(args.submission_id),
                    'milestone_id': args.milestone_id,
                    'vote': args.vote,
                    'feedback': (args.feedback.strip() or None),
                    'review_type': args.review_type,
                    'weight': args.weight,
                    'is_binding': bool(args.binding),
                },
            )
        elif args.command == 'initiate':
            response = client.post(
                f'{base}/api/milestones/{args.milestone_id}/approvals',
                json={
                    'approval_workflow': args.workflow,
                    'initiator_wallet_address': args.wallet,
                    'tx_hash': args.tx_hash,
                    'call_hash': args.call_hash,
                    'call_data_hex': args.call_data,
                    'timepoint': {'height': int(args.height), 'index': int(args.index)},
                    'review_id': args.review_id,
                    'price_usd': args.price_usd,
                    'price_date': args.price_date,
                    'price_source': args.price_source,
                    'token_amount': args.token_amount,
                },
            )
        elif args.command == 'vote':
            response = client.post(
                f'{base}/api/approvals/{args.approval_id}/votes',
                json={
                    'signatory_address': args.wallet,
                    'signature_type': args.signature_type,
                    'tx_hash': args.tx_hash,
                    'review_id': args.review_id,
                    'was_executed': bool(args.executed),
                    'execution_block_number': args.block_number,
                    'child_bounty_id': args.child_bounty_id,
                },
            )
        elif args.command == 'finalize':
            response = client.post(
                f'{base}/api/approvals/{args.approval_id}/finalize',
                json={
                    'signatory_address': args.wallet,
                    'execution_tx_hash': args.tx_hash,
                    'execution_block_number': int(args.block_number),
                    'child_bounty_id': args.child_bounty_id,
                },
            )
        elif args.command == 'cancel':
            response = client.post(f'{base}/api/approvals/{args.approval_id}/cancel')
        elif args.command == 'complete':
            response = client.post(
                f'{base}/api/milestones/{args.milestone_id}/complete',
                json={
                    'transaction_hash': args.tx_hash,
                    'amount': args.amount,
                    'block_explorer_url': args.explorer_url,
                    'wallet_from': args.wallet_from,
                    'wallet_to': args.wallet_to,
                },
            )
        elif args.command == 'approval-status':
            response = client.get(f'{base}/api/milestones/{args.milestone_id}/approval-status')
        else:
            parser.error(f'unsupported command: {args.command}')
            return 2

    if response.status_code >= 400:
        print(f'HTTP {response.status_code}: {response.text}', file=sys.stderr)
        return 1

    _print_json(response.json())
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
