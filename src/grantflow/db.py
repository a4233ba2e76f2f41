from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
import json
import time
from typing import Callable, Iterator, TypeVar

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from grantflow.domain.events import normalize_notification_type
from grantflow.domain.models import ApprovalStatus, MilestoneStatus, target_key
from grantflow.observability import get_logger
from grantflow.repository import (
    ApprovalCreateRecord,
    ApprovalNotPendingError,
    DuplicateRecordError,
    ExecutionRecord,
    NotificationCreateRecord,
    PayoutCreateRecord,
    ReviewCreateRecord,
    SignatureCreateRecord,
    decode_committee_settings,
    encode_committee_settings,
)

_log = get_logger('grantflow.db')

T = TypeVar('T')


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso_utc(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.isoformat()


class Base(DeclarativeBase):
    pass


class CommitteeEntity(Base):
    __tablename__ = 'groups'

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    settings_json: Mapped[str] = mapped_column(Text(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class MembershipEntity(Base):
    __tablename__ = 'group_memberships'
    __table_args__ = (
        Index('ix_group_memberships_group_id_is_active', 'group_id', 'is_active'),
        Index('ix_group_memberships_user_id_is_active', 'user_id', 'is_active'),
    )

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    group_id: Mapped[int] = mapped_column(Integer(), ForeignKey('groups.id'), nullable=False)
    user_id: Mapped[int] = mapped_column(Integer(), nullable=False)
    role: Mapped[str] = mapped_column(String(32), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean(), nullable=False)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SubmissionEntity(Base):
    __tablename__ = 'submissions'

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    group_id: Mapped[int] = mapped_column(Integer(), ForeignKey('groups.id'), nullable=False, index=True)
    submitter_id: Mapped[int] = mapped_column(Integer(), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    wallet_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class MilestoneEntity(Base):
    __tablename__ = 'milestones'

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    submission_id: Mapped[int] = mapped_column(Integer(), ForeignKey('submissions.id'), nullable=False, index=True)
    group_id: Mapped[int] = mapped_column(Integer(), ForeignKey('groups.id'), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[int | None] = mapped_column(BigInteger(), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    rejection_count: Mapped[int] = mapped_column(Integer(), nullable=False, default=0)
    last_rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ReviewEntity(Base):
    __tablename__ = 'reviews'
    __table_args__ = (
        UniqueConstraint('target_key', 'reviewer_id', name='uq_reviews_target_reviewer'),
        Index('ix_reviews_submission_id_milestone_id', 'submission_id', 'milestone_id'),
    )

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    submission_id: Mapped[int] = mapped_column(Integer(), ForeignKey('submissions.id'), nullable=False)
    milestone_id: Mapped[int | None] = mapped_column(Integer(), ForeignKey('milestones.id'), nullable=True)
    target_key: Mapped[str] = mapped_column(String(64), nullable=False)
    group_id: Mapped[int] = mapped_column(Integer(), ForeignKey('groups.id'), nullable=False)
    reviewer_id: Mapped[int] = mapped_column(Integer(), nullable=False)
    vote: Mapped[str] = mapped_column(String(16), nullable=False)
    feedback: Mapped[str | None] = mapped_column(Text(), nullable=True)
    review_type: Mapped[str] = mapped_column(String(20), nullable=False)
    weight: Mapped[int] = mapped_column(Integer(), nullable=False)
    is_binding: Mapped[bool] = mapped_column(Boolean(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class MilestoneApprovalEntity(Base):
    __tablename__ = 'milestone_approvals'
    __table_args__ = (
        # active_key holds the milestone id only while the approval is pending.
        UniqueConstraint('active_key', name='uq_milestone_approvals_active_key'),
        Index('ix_milestone_approvals_milestone_id_status', 'milestone_id', 'status'),
    )

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    milestone_id: Mapped[int] = mapped_column(Integer(), ForeignKey('milestones.id'), nullable=False)
    group_id: Mapped[int] = mapped_column(Integer(), ForeignKey('groups.id'), nullable=False)
    active_key: Mapped[int | None] = mapped_column(Integer(), nullable=True)
    multisig_call_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    multisig_call_data: Mapped[str] = mapped_column(Text(), nullable=False)
    timepoint_json: Mapped[str | None] = mapped_column(Text(), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    initiator_id: Mapped[int] = mapped_column(Integer(), nullable=False)
    initiator_address: Mapped[str] = mapped_column(String(64), nullable=False)
    approval_workflow: Mapped[str] = mapped_column(String(20), nullable=False)
    payout_amount: Mapped[str | None] = mapped_column(String(64), nullable=True)
    beneficiary_address: Mapped[str] = mapped_column(String(64), nullable=False)
    parent_bounty_id: Mapped[int | None] = mapped_column(Integer(), nullable=True)
    child_bounty_id: Mapped[int | None] = mapped_column(Integer(), nullable=True)
    price_usd: Mapped[str | None] = mapped_column(String(64), nullable=True)
    price_date: Mapped[str | None] = mapped_column(String(32), nullable=True)
    price_source: Mapped[str | None] = mapped_column(String(32), nullable=True)
    token_amount: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    execution_tx_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    execution_block_number: Mapped[int | None] = mapped_column(Integer(), nullable=True)


class MultisigSignatureEntity(Base):
    __tablename__ = 'multisig_signatures'
    __table_args__ = (
        UniqueConstraint('approval_id', 'signatory_address', name='uq_multisig_signatures_approval_signatory'),
    )

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    approval_id: Mapped[int] = mapped_column(Integer(), ForeignKey('milestone_approvals.id'), nullable=False, index=True)
    review_id: Mapped[int | None] = mapped_column(Integer(), ForeignKey('reviews.id'), nullable=True)
    user_id: Mapped[int | None] = mapped_column(Integer(), nullable=True)
    signatory_address: Mapped[str] = mapped_column(String(64), nullable=False)
    signature_type: Mapped[str] = mapped_column(String(16), nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    is_initiator: Mapped[bool] = mapped_column(Boolean(), nullable=False)
    is_final_approval: Mapped[bool] = mapped_column(Boolean(), nullable=False)
    signed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class PayoutEntity(Base):
    __tablename__ = 'payouts'

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    submission_id: Mapped[int | None] = mapped_column(Integer(), ForeignKey('submissions.id'), nullable=True)
    milestone_id: Mapped[int] = mapped_column(Integer(), ForeignKey('milestones.id'), nullable=False, index=True)
    group_id: Mapped[int] = mapped_column(Integer(), ForeignKey('groups.id'), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger(), nullable=False)
    transaction_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    block_explorer_url: Mapped[str] = mapped_column(String(500), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    triggered_by: Mapped[int] = mapped_column(Integer(), nullable=False)
    approved_by: Mapped[int] = mapped_column(Integer(), nullable=False)
    wallet_from: Mapped[str | None] = mapped_column(String(64), nullable=True)
    wallet_to: Mapped[str | None] = mapped_column(String(64), nullable=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class NotificationEntity(Base):
    __tablename__ = 'notifications'
    __table_args__ = (
        Index('ix_notifications_user_id_created_at', 'user_id', 'created_at'),
    )

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer(), nullable=False)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    content: Mapped[str] = mapped_column(Text(), nullable=False)
    submission_id: Mapped[int | None] = mapped_column(Integer(), nullable=True)
    milestone_id: Mapped[int | None] = mapped_column(Integer(), nullable=True)
    group_id: Mapped[int | None] = mapped_column(Integer(), nullable=True)
    metadata_json: Mapped[str] = mapped_column(Text(), nullable=False)
    read: Mapped[bool] = mapped_column(Boolean(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Database:
    def __init__(self, url: str):
        engine_kwargs: dict[str, object] = {
            'future': True,
        }
        if str(url or '').strip().lower().startswith('sqlite'):
            # Concurrent voters share one sqlite file in tests and local runs.
            engine_kwargs['connect_args'] = {'check_same_thread': False, 'timeout': 30}
        self.engine = create_engine(url, **engine_kwargs)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False, class_=Session)
        if self.engine.dialect.name == 'sqlite':
            self._configure_sqlite_pragmas()

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _configure_sqlite_pragmas(self) -> None:
        with self.engine.connect() as conn:
            conn.exec_driver_sql('PRAGMA journal_mode=WAL')
            conn.exec_driver_sql('PRAGMA synchronous=NORMAL')
            conn.exec_driver_sql('PRAGMA foreign_keys=ON')
            conn.exec_driver_sql('PRAGMA busy_timeout=30000')


class SqlGrantRepository:
    def __init__(self, db: Database):
        self.db = db

    def _sqlite_lock_retry_attempts(self) -> int:
        return 8 if self.db.engine.dialect.name == 'sqlite' else 1

    @staticmethod
    def _is_sqlite_lock_error(exc: Exception) -> bool:
        text = str(exc or '').lower()
        return 'database is locked' in text or 'database table is locked' in text

    @staticmethod
    def _sqlite_lock_backoff_seconds(attempt: int) -> float:
        return min(0.2, 0.02 * (2 ** max(0, int(attempt) - 1)))

    def _write(self, label: str, fn: Callable[[Session], T]) -> T:
        attempts = self._sqlite_lock_retry_attempts()
        for attempt in range(1, attempts + 1):
            try:
                with self.db.session() as session:
                    return fn(session)
            except OperationalError as exc:
                if (not self._is_sqlite_lock_error(exc)) or attempt >= attempts:
                    raise
                _log.warning('sqlite locked op=%s attempt=%s', label, attempt)
                time.sleep(self._sqlite_lock_backoff_seconds(attempt))
        raise RuntimeError(f'{label}_retry_exhausted')

    # committees and memberships

    def create_committee(self, *, name: str, settings: dict | None = None) -> dict:
        now = _utc_now()
        row = CommitteeEntity(
            name=str(name),
            settings_json=encode_committee_settings(settings or {}),
            created_at=now,
            updated_at=now,
        )

        def op(session: Session) -> dict:
            session.add(row)
            session.flush()
            return self._committee_to_dict(row)

        return self._write('create_committee', op)

    def get_committee(self, group_id: int) -> dict | None:
        with self.db.session() as session:
            row = session.get(CommitteeEntity, int(group_id))
            return self._committee_to_dict(row) if row is not None else None

    def update_committee_settings(self, group_id: int, *, settings: dict) -> dict:
        def op(session: Session) -> dict:
            row = session.get(CommitteeEntity, int(group_id))
            if row is None:
                raise KeyError(group_id)
            row.settings_json = encode_committee_settings(settings)
            row.updated_at = _utc_now()
            session.flush()
            return self._committee_to_dict(row)

        return self._write('update_committee_settings', op)

    def add_membership(self, *, group_id: int, user_id: int, role: str = 'member', is_active: bool = True) -> dict:
        def op(session: Session) -> dict:
            if session.get(CommitteeEntity, int(group_id)) is None:
                raise KeyError(group_id)
            row = MembershipEntity(
                group_id=int(group_id),
                user_id=int(user_id),
                role=str(role or 'member').strip().lower(),
                is_active=bool(is_active),
                joined_at=_utc_now(),
            )
            session.add(row)
            session.flush()
            return {
                'id': row.id,
                'group_id': row.group_id,
                'user_id': row.user_id,
                'role': row.role,
                'is_active': row.is_active,
                'joined_at': _iso_utc(row.joined_at),
            }

        return self._write('add_membership', op)

    def count_active_members(self, group_id: int) -> int:
        with self.db.session() as session:
            return int(
                session.execute(
                    select(func.count(MembershipEntity.id)).where(
                        MembershipEntity.group_id == int(group_id),
                        MembershipEntity.is_active.is_(True),
                    )
                ).scalar_one()
            )

    def has_active_membership(self, user_id: int, *, group_id: int | None = None, role: str | None = None) -> bool:
        stmt = select(MembershipEntity.id).where(
            MembershipEntity.user_id == int(user_id),
            MembershipEntity.is_active.is_(True),
        )
        if group_id is not None:
            stmt = stmt.where(MembershipEntity.group_id == int(group_id))
        if role is not None:
            stmt = stmt.where(MembershipEntity.role == str(role).strip().lower())
        with self.db.session() as session:
            return session.execute(stmt.limit(1)).first() is not None

    # submissions and milestones

    def create_submission(
        self,
        *,
        group_id: int,
        submitter_id: int,
        title: str,
        wallet_address: str | None = None,
        status: str = 'pending',
    ) -> dict:
        now = _utc_now()
        row = SubmissionEntity(
            group_id=int(group_id),
            submitter_id=int(submitter_id),
            title=str(title),
            wallet_address=(str(wallet_address).strip() or None) if wallet_address else None,
            status=str(status),
            created_at=now,
            updated_at=now,
        )

        def op(session: Session) -> dict:
            session.add(row)
            session.flush()
            return self._submission_to_dict(row)

        return self._write('create_submission', op)

    def get_submission(self, submission_id: int) -> dict | None:
        with self.db.session() as session:
            row = session.get(SubmissionEntity, int(submission_id))
            return self._submission_to_dict(row) if row is not None else None

    def update_submission_status(self, submission_id: int, *, status: str) -> dict:
        def op(session: Session) -> dict:
            row = session.get(SubmissionEntity, int(submission_id))
            if row is None:
                raise KeyError(submission_id)
            row.status = str(status)
            row.updated_at = _utc_now()
            session.flush()
            return self._submission_to_dict(row)

        return self._write('update_submission_status', op)

    def create_milestone(
        self,
        *,
        submission_id: int,
        group_id: int,
        title: str,
        amount: int | None = None,
        status: str = 'pending',
    ) -> dict:
        now = _utc_now()
        row = MilestoneEntity(
            submission_id=int(submission_id),
            group_id=int(group_id),
            title=str(title),
            amount=int(amount) if amount is not None else None,
            status=str(status),
            rejection_count=0,
            last_rejected_at=None,
            reviewed_at=None,
            created_at=now,
            updated_at=now,
        )

        def op(session: Session) -> dict:
            session.add(row)
            session.flush()
            return self._milestone_to_dict(row)

        return self._write('create_milestone', op)

    def get_milestone(self, milestone_id: int) -> dict | None:
        with self.db.session() as session:
            row = session.get(MilestoneEntity, int(milestone_id))
            return self._milestone_to_dict(row) if row is not None else None

    def update_milestone_status(self, milestone_id: int, *, status: str, rejected: bool = False) -> dict:
        def op(session: Session) -> dict:
            row = session.get(MilestoneEntity, int(milestone_id))
            if row is None:
                raise KeyError(milestone_id)
            self._set_milestone_status(row, status=status, rejected=rejected)
            session.flush()
            return self._milestone_to_dict(row)

        return self._write('update_milestone_status', op)

    @staticmethod
    def _set_milestone_status(row: MilestoneEntity, *, status: str, rejected: bool) -> None:
        now = _utc_now()
        row.status = str(status)
        row.reviewed_at = now
        row.updated_at = now
        if rejected:
            row.rejection_count = int(row.rejection_count or 0) + 1
            row.last_rejected_at = now

    # reviews

    def create_review(self, record: ReviewCreateRecord) -> dict:
        def op(session: Session) -> dict:
            row = ReviewEntity(
                submission_id=int(record.submission_id),
                milestone_id=int(record.milestone_id) if record.milestone_id is not None else None,
                target_key=target_key(submission_id=record.submission_id, milestone_id=record.milestone_id),
                group_id=int(record.group_id),
                reviewer_id=int(record.reviewer_id),
                vote=str(record.vote),
                feedback=record.feedback,
                review_type=str(record.review_type or 'standard'),
                weight=int(record.weight),
                is_binding=bool(record.is_binding),
                created_at=_utc_now(),
            )
            session.add(row)
            session.flush()
            return self._review_to_dict(row)

        try:
            return self._write('create_review', op)
        except IntegrityError as exc:
            raise DuplicateRecordError('review already exists', constraint='uq_reviews_target_reviewer') from exc

    def find_review(self, *, reviewer_id: int, submission_id: int, milestone_id: int | None) -> dict | None:
        key = target_key(submission_id=submission_id, milestone_id=milestone_id)
        with self.db.session() as session:
            row = session.execute(
                select(ReviewEntity)
                .where(ReviewEntity.target_key == key, ReviewEntity.reviewer_id == int(reviewer_id))
                .limit(1)
            ).scalars().first()
            return self._review_to_dict(row) if row is not None else None

    def list_reviews(self, *, submission_id: int, milestone_id: int | None) -> list[dict]:
        stmt = select(ReviewEntity)
        if milestone_id is None:
            stmt = stmt.where(
                ReviewEntity.submission_id == int(submission_id),
                ReviewEntity.milestone_id.is_(None),
            )
        else:
            stmt = stmt.where(ReviewEntity.milestone_id == int(milestone_id))
        with self.db.session() as session:
            rows = session.execute(stmt.order_by(ReviewEntity.id.asc())).scalars().all()
            return [self._review_to_dict(r) for r in rows]

    # multisig approvals

    def create_milestone_approval(self, record: ApprovalCreateRecord) -> dict:
        def op(session: Session) -> dict:
            row = MilestoneApprovalEntity(
                milestone_id=int(record.milestone_id),
                group_id=int(record.group_id),
                active_key=int(record.milestone_id),
                multisig_call_hash=record.multisig_call_hash,
                multisig_call_data=record.multisig_call_data,
                timepoint_json=json.dumps(record.timepoint) if record.timepoint else None,
                status=ApprovalStatus.PENDING.value,
                initiator_id=int(record.initiator_id),
                initiator_address=record.initiator_address,
                approval_workflow=record.approval_workflow,
                payout_amount=record.payout_amount,
                beneficiary_address=record.beneficiary_address,
                parent_bounty_id=record.parent_bounty_id,
                child_bounty_id=record.child_bounty_id,
                price_usd=record.price_usd,
                price_date=record.price_date,
                price_source=record.price_source,
                token_amount=record.token_amount,
                created_at=_utc_now(),
            )
            session.add(row)
            session.flush()
            return self._approval_to_dict(row)

        try:
            return self._write('create_milestone_approval', op)
        except IntegrityError as exc:
            raise DuplicateRecordError(
                'pending approval already exists',
                constraint='uq_milestone_approvals_active_key',
            ) from exc

    def get_milestone_approval(self, approval_id: int) -> dict | None:
        with self.db.session() as session:
            row = session.get(MilestoneApprovalEntity, int(approval_id))
            return self._approval_to_dict(row) if row is not None else None

    def get_active_milestone_approval(self, milestone_id: int) -> dict | None:
        with self.db.session() as session:
            row = session.execute(
                select(MilestoneApprovalEntity)
                .where(
                    MilestoneApprovalEntity.milestone_id == int(milestone_id),
                    MilestoneApprovalEntity.status == ApprovalStatus.PENDING.value,
                )
                .order_by(MilestoneApprovalEntity.created_at.desc(), MilestoneApprovalEntity.id.desc())
                .limit(1)
            ).scalars().first()
            return self._approval_to_dict(row) if row is not None else None

    def list_milestone_approvals(self, milestone_id: int) -> list[dict]:
        with self.db.session() as session:
            rows = session.execute(
                select(MilestoneApprovalEntity)
                .where(MilestoneApprovalEntity.milestone_id == int(milestone_id))
                .order_by(MilestoneApprovalEntity.id.desc())
            ).scalars().all()
            return [self._approval_to_dict(r) for r in rows]

    def cancel_milestone_approval(self, approval_id: int) -> dict:
        def op(session: Session) -> dict:
            row = session.get(MilestoneApprovalEntity, int(approval_id))
            if row is None:
                raise KeyError(approval_id)
            row.status = ApprovalStatus.CANCELLED.value
            row.active_key = None
            session.flush()
            return self._approval_to_dict(row)

        return self._write('cancel_milestone_approval', op)

    def create_multisig_signature(self, record: SignatureCreateRecord) -> dict:
        def op(session: Session) -> dict:
            if session.get(MilestoneApprovalEntity, int(record.approval_id)) is None:
                raise KeyError(record.approval_id)
            row = self._add_signature(session, record)
            session.flush()
            return self._signature_to_dict(row)

        try:
            return self._write('create_multisig_signature', op)
        except IntegrityError as exc:
            raise DuplicateRecordError(
                'signatory already voted',
                constraint='uq_multisig_signatures_approval_signatory',
            ) from exc

    @staticmethod
    def _add_signature(session: Session, record: SignatureCreateRecord) -> MultisigSignatureEntity:
        row = MultisigSignatureEntity(
            approval_id=int(record.approval_id),
            review_id=record.review_id,
            user_id=record.user_id,
            signatory_address=record.signatory_address,
            signature_type=record.signature_type,
            tx_hash=record.tx_hash,
            is_initiator=bool(record.is_initiator),
            is_final_approval=bool(record.is_final_approval),
            signed_at=_utc_now(),
        )
        session.add(row)
        return row

    def find_multisig_signature(self, *, approval_id: int, signatory_address: str) -> dict | None:
        with self.db.session() as session:
            row = session.execute(
                select(MultisigSignatureEntity)
                .where(
                    MultisigSignatureEntity.approval_id == int(approval_id),
                    MultisigSignatureEntity.signatory_address == signatory_address,
                )
                .limit(1)
            ).scalars().first()
            return self._signature_to_dict(row) if row is not None else None

    def list_multisig_signatures(self, approval_id: int) -> list[dict]:
        with self.db.session() as session:
            rows = session.execute(
                select(MultisigSignatureEntity)
                .where(MultisigSignatureEntity.approval_id == int(approval_id))
                .order_by(MultisigSignatureEntity.id.asc())
            ).scalars().all()
            return [self._signature_to_dict(r) for r in rows]

    def complete_milestone_approval(self, record: ExecutionRecord) -> dict:
        def op(session: Session) -> dict:
            approval = session.get(MilestoneApprovalEntity, int(record.approval_id))
            if approval is None:
                raise KeyError(record.approval_id)
            milestone = session.get(MilestoneEntity, int(record.milestone_id))
            if milestone is None:
                raise KeyError(record.milestone_id)
            values: dict[str, object] = {
                'status': ApprovalStatus.EXECUTED.value,
                'active_key': None,
                'executed_at': _utc_now(),
                'execution_tx_hash': record.execution_tx_hash,
                'execution_block_number': int(record.execution_block_number),
            }
            if record.child_bounty_id is not None:
                values['child_bounty_id'] = int(record.child_bounty_id)
            # Conditional update so two finalizers cannot both execute one approval.
            result = session.execute(
                update(MilestoneApprovalEntity)
                .where(
                    MilestoneApprovalEntity.id == int(record.approval_id),
                    MilestoneApprovalEntity.status == ApprovalStatus.PENDING.value,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if int(result.rowcount or 0) != 1:
                raise ApprovalNotPendingError(record.approval_id)
            session.refresh(approval)
            signature = None
            if record.final_signature is not None:
                signature = self._add_signature(session, record.final_signature)
            self._set_milestone_status(milestone, status=MilestoneStatus.COMPLETED.value, rejected=False)
            payout = self._add_payout(session, record.payout) if record.payout is not None else None
            session.flush()
            return {
                'approval': self._approval_to_dict(approval),
                'milestone': self._milestone_to_dict(milestone),
                'payout': self._payout_to_dict(payout) if payout is not None else None,
                'signature': self._signature_to_dict(signature) if signature is not None else None,
            }

        try:
            return self._write('complete_milestone_approval', op)
        except IntegrityError as exc:
            raise DuplicateRecordError(
                'signatory already voted',
                constraint='uq_multisig_signatures_approval_signatory',
            ) from exc

    # payouts and notifications

    def complete_milestone_with_payout(self, payout: PayoutCreateRecord) -> dict:
        def op(session: Session) -> dict:
            milestone = session.get(MilestoneEntity, int(payout.milestone_id))
            if milestone is None:
                raise KeyError(payout.milestone_id)
            self._set_milestone_status(milestone, status=MilestoneStatus.COMPLETED.value, rejected=False)
            created = self._add_payout(session, payout)
            session.flush()
            return {
                'milestone': self._milestone_to_dict(milestone),
                'payout': self._payout_to_dict(created),
            }

        return self._write('complete_milestone_with_payout', op)

    def create_payout(self, record: PayoutCreateRecord) -> dict:
        def op(session: Session) -> dict:
            row = self._add_payout(session, record)
            session.flush()
            return self._payout_to_dict(row)

        return self._write('create_payout', op)

    @staticmethod
    def _add_payout(session: Session, record: PayoutCreateRecord) -> PayoutEntity:
        now = _utc_now()
        row = PayoutEntity(
            submission_id=record.submission_id,
            milestone_id=int(record.milestone_id),
            group_id=int(record.group_id),
            amount=int(record.amount),
            transaction_hash=record.transaction_hash,
            block_explorer_url=record.block_explorer_url,
            status='completed',
            triggered_by=int(record.triggered_by),
            approved_by=int(record.triggered_by),
            wallet_from=record.wallet_from,
            wallet_to=record.wallet_to,
            processed_at=now,
            created_at=now,
        )
        session.add(row)
        return row

    def list_payouts(self, *, milestone_id: int | None = None) -> list[dict]:
        stmt = select(PayoutEntity)
        if milestone_id is not None:
            stmt = stmt.where(PayoutEntity.milestone_id == int(milestone_id))
        with self.db.session() as session:
            rows = session.execute(stmt.order_by(PayoutEntity.id.asc())).scalars().all()
            return [self._payout_to_dict(r) for r in rows]

    def create_notification(self, record: NotificationCreateRecord) -> dict:
        def op(session: Session) -> dict:
            row = NotificationEntity(
                user_id=int(record.user_id),
                type=normalize_notification_type(record.type),
                content=str(record.content),
                submission_id=record.submission_id,
                milestone_id=record.milestone_id,
                group_id=record.group_id,
                metadata_json=json.dumps(dict(record.metadata or {}), ensure_ascii=True),
                read=False,
                created_at=_utc_now(),
            )
            session.add(row)
            session.flush()
            return self._notification_to_dict(row)

        return self._write('create_notification', op)

    def list_notifications(self, *, user_id: int | None = None) -> list[dict]:
        stmt = select(NotificationEntity)
        if user_id is not None:
            stmt = stmt.where(NotificationEntity.user_id == int(user_id))
        with self.db.session() as session:
            rows = session.execute(stmt.order_by(NotificationEntity.id.asc())).scalars().all()
            return [self._notification_to_dict(r) for r in rows]

    # row mapping

    @staticmethod
    def _committee_to_dict(row: CommitteeEntity) -> dict:
        return {
            'id': row.id,
            'name': row.name,
            'settings': decode_committee_settings(row.settings_json),
            'created_at': _iso_utc(row.created_at),
            'updated_at': _iso_utc(row.updated_at),
        }

    @staticmethod
    def _submission_to_dict(row: SubmissionEntity) -> dict:
        return {
            'id': row.id,
            'group_id': row.group_id,
            'submitter_id': row.submitter_id,
            'title': row.title,
            'wallet_address': row.wallet_address,
            'status': row.status,
            'created_at': _iso_utc(row.created_at),
            'updated_at': _iso_utc(row.updated_at),
        }

    @staticmethod
    def _milestone_to_dict(row: MilestoneEntity) -> dict:
        return {
            'id': row.id,
            'submission_id': row.submission_id,
            'group_id': row.group_id,
            'title': row.title,
            'amount': row.amount,
            'status': row.status,
            'rejection_count': int(row.rejection_count or 0),
            'last_rejected_at': _iso_utc(row.last_rejected_at),
            'reviewed_at': _iso_utc(row.reviewed_at),
            'created_at': _iso_utc(row.created_at),
            'updated_at': _iso_utc(row.updated_at),
        }

    @staticmethod
    def _review_to_dict(row: ReviewEntity) -> dict:
        return {
            'id': row.id,
            'submission_id': row.submission_id,
            'milestone_id': row.milestone_id,
            'group_id': row.group_id,
            'reviewer_id': row.reviewer_id,
            'vote': row.vote,
            'feedback': row.feedback,
            'review_type': row.review_type,
            'weight': row.weight,
            'is_binding': row.is_binding,
            'created_at': _iso_utc(row.created_at),
        }

    @staticmethod
    def _approval_to_dict(row: MilestoneApprovalEntity) -> dict:
        try:
            timepoint = json.loads(row.timepoint_json) if row.timepoint_json else None
        except json.JSONDecodeError:
            timepoint = None
        return {
            'id': row.id,
            'milestone_id': row.milestone_id,
            'group_id': row.group_id,
            'multisig_call_hash': row.multisig_call_hash,
            'multisig_call_data': row.multisig_call_data,
            'timepoint': timepoint,
            'status': row.status,
            'initiator_id': row.initiator_id,
            'initiator_address': row.initiator_address,
            'approval_workflow': row.approval_workflow,
            'payout_amount': row.payout_amount,
            'beneficiary_address': row.beneficiary_address,
            'parent_bounty_id': row.parent_bounty_id,
            'child_bounty_id': row.child_bounty_id,
            'price_usd': row.price_usd,
            'price_date': row.price_date,
            'price_source': row.price_source,
            'token_amount': row.token_amount,
            'created_at': _iso_utc(row.created_at),
            'executed_at': _iso_utc(row.executed_at),
            'execution_tx_hash': row.execution_tx_hash,
            'execution_block_number': row.execution_block_number,
        }

    @staticmethod
    def _signature_to_dict(row: MultisigSignatureEntity) -> dict:
        return {
            'id': row.id,
            'approval_id': row.approval_id,
            'review_id': row.review_id,
            'user_id': row.user_id,
            'signatory_address': row.signatory_address,
            'signature_type': row.signature_type,
            'tx_hash': row.tx_hash,
            'is_initiator': row.is_initiator,
            'is_final_approval': row.is_final_approval,
            'signed_at': _iso_utc(row.signed_at),
        }

    @staticmethod
    def _payout_to_dict(row: PayoutEntity) -> dict:
        return {
            'id': row.id,
            'submission_id': row.submission_id,
            'milestone_id': row.milestone_id,
            'group_id': row.group_id,
            'amount': row.amount,
            'transaction_hash': row.transaction_hash,
            'block_explorer_url': row.block_explorer_url,
            'status': row.status,
            'triggered_by': row.triggered_by,
            'approved_by': row.approved_by,
            'wallet_from': row.wallet_from,
            'wallet_to': row.wallet_to,
            'processed_at': _iso_utc(row.processed_at),
            'created_at': _iso_utc(row.created_at),
        }

    @staticmethod
    def _notification_to_dict(row: NotificationEntity) -> dict:
        return {
            'id': row.id,
            'user_id': row.user_id,
            'type': row.type,
            'content': row.content,
            'submission_id': row.submission_id,
            'milestone_id': row.milestone_id,
            'group_id': row.group_id,
            'metadata': json.loads(row.metadata_json or '{}'),
            'read': row.read,
            'created_at': _iso_utc(row.created_at),
        }
