# app/settlements/coordinator.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional

from app.errors import (
    AmountMismatchError,
    ConflictError,
    NotAuthorizedError,
    NotFoundError,
    ProviderError,
    ProviderUnavailableError,
    ValidationError,
)
from app.ious import service, state_machine
from app.ious.model import IouRecord, SETTLEABLE_STATUSES
from app.providers.base import PaymentProvider
from app.settlements.model import SettlementAttempt
from app.store.base import IouStore
from services.metrics import increment_settlement_attempt, increment_settlement_callback

logger = logging.getLogger("ioupay.settlements")

DEFAULT_ATTEMPT_TTL_SECONDS = 900
MAX_CAS_RETRIES = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_amount(value: Any) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError("amount must be a number")
    if not amount.is_finite():
        raise ValidationError("amount must be a finite number")
    return amount


@dataclass(frozen=True)
class CallbackAck:
    provider_payment_id: Optional[str]
    phase: str
    applied: bool
    iou_status: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "provider_payment_id": self.provider_payment_id,
            "phase": self.phase,
            "applied": self.applied,
            "iou_status": self.iou_status,
            "error": self.error,
        }


class SettlementCoordinator:
    """
    Drives the provider handshake for one IOU settlement:

        initiate -> approval callback -> completion callback
                 \\-> cancel / error callbacks at any in-flight point

    All state lives in the store; every step is a compare-and-swap so
    duplicate, late or concurrent callbacks either no-op or fail with
    ConflictError, never overwrite.
    """

    def __init__(
        self,
        store: IouStore,
        provider: PaymentProvider,
        *,
        attempt_ttl_seconds: int = DEFAULT_ATTEMPT_TTL_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.provider = provider
        self.attempt_ttl = timedelta(seconds=attempt_ttl_seconds)
        self.clock = clock

    # ==========================================================
    # 1. Initiate
    # ==========================================================

    def begin_settlement(self, iou_id: str, acting_user_id: str) -> SettlementAttempt:
        if not getattr(self.provider, "available", False):
            increment_settlement_attempt("provider_unavailable")
            raise ProviderUnavailableError("Payment provider is not available")

        record = self.store.fetch_by_id(iou_id)
        active = self.store.fetch_active_attempt(iou_id)
        if active is not None and self._expire_if_stale(active):
            active = None

        attempt = state_machine.begin_settlement(
            record,
            acting_user_id,
            active_attempt=active,
            counterparty_user_id=service.resolve_counterparty(self.store, record),
        )
        try:
            attempt = self.store.insert_attempt(attempt, record_statuses=SETTLEABLE_STATUSES)
        except ConflictError:
            increment_settlement_attempt("conflict")
            logger.info("settlement single-flight rejected iou=%s user=%s", iou_id, acting_user_id)
            raise

        try:
            result = self.provider.initiate(attempt)
        except ProviderUnavailableError:
            self._fail(attempt, "PROVIDER_UNAVAILABLE")
            increment_settlement_attempt("provider_unavailable")
            raise

        if not result.ok:
            self._fail(attempt, result.error or "PROVIDER_ERROR")
            increment_settlement_attempt("provider_error")
            raise ProviderError(result.error or "Payment provider rejected the payment")

        if result.provider_payment_id:
            attempt = self.store.bind_payment_id(attempt.id, result.provider_payment_id)

        increment_settlement_attempt("initiated")
        logger.info(
            "settlement initiated iou=%s attempt=%s payment=%s amount=%s",
            attempt.iou_id,
            attempt.id,
            attempt.provider_payment_id,
            attempt.amount,
        )
        return attempt

    # ==========================================================
    # 2. Approval
    # ==========================================================

    def on_approval(
        self,
        provider_payment_id: str,
        iou_id: Optional[str] = None,
        *,
        notify_provider: bool = True,
    ) -> CallbackAck:
        attempt = self.store.fetch_attempt_by_payment_id(provider_payment_id)
        if attempt is None:
            if not iou_id:
                increment_settlement_callback("approval", "unknown")
                raise NotFoundError(f"Unknown payment {provider_payment_id}")
            active = self.store.fetch_active_attempt(iou_id)
            if active is None:
                increment_settlement_callback("approval", "conflict")
                raise ConflictError(f"No settlement in flight for IOU {iou_id}")
            # Provider-assigned id shows up here for client-created payments.
            attempt = self.store.bind_payment_id(active.id, provider_payment_id)

        self._check_owner(attempt, provider_payment_id, iou_id, kind="approval")

        if attempt.phase in ("approved", "completed"):
            increment_settlement_callback("approval", "duplicate")
            return self._ack(attempt, applied=False)
        if attempt.phase != "initiated":
            increment_settlement_callback("approval", "stale")
            logger.warning("approval for finished attempt payment=%s phase=%s", provider_payment_id, attempt.phase)
            raise ConflictError(f"Payment {provider_payment_id} is already {attempt.phase}")

        # Client-created payments carry whatever amount the client chose; refuse to approve a wrong one.
        reported = self._provider_amount(provider_payment_id)
        if reported is not None and reported != attempt.amount:
            self._reject_amount(attempt, reported, kind="approval")

        try:
            approved = self.store.update_phase(attempt.id, expected_phase="initiated", new_phase="approved")
        except ConflictError:
            current = self.store.fetch_attempt(attempt.id)
            if current.phase in ("approved", "completed"):
                increment_settlement_callback("approval", "duplicate")
                return self._ack(current, applied=False)
            increment_settlement_callback("approval", "conflict")
            raise

        if not notify_provider:
            increment_settlement_callback("approval", "applied")
            return self._ack(approved, applied=True)

        result = self.provider.approve(provider_payment_id)
        if not result.ok:
            failed = self._fail(approved, result.error or "PROVIDER_APPROVAL_FAILED")
            increment_settlement_callback("approval", "provider_error")
            raise ProviderError(failed.last_error or "Provider approval failed")

        increment_settlement_callback("approval", "applied")
        logger.info("settlement approved iou=%s payment=%s", approved.iou_id, provider_payment_id)
        return self._ack(approved, applied=True)

    # ==========================================================
    # 3. Completion
    # ==========================================================

    def on_completion(
        self,
        provider_payment_id: str,
        amount: Any = None,
        txid: Optional[str] = None,
        iou_id: Optional[str] = None,
    ) -> CallbackAck:
        attempt = self.store.fetch_attempt_by_payment_id(provider_payment_id)
        if attempt is None:
            increment_settlement_callback("completion", "out_of_order")
            logger.warning("completion before approval payment=%s (unknown id)", provider_payment_id)
            raise ConflictError(f"Payment {provider_payment_id} was never approved")

        self._check_owner(attempt, provider_payment_id, iou_id, kind="completion")

        if attempt.phase == "completed":
            # Duplicate callback; finalize is idempotent and also repairs a missed record update.
            record = self._finalize(attempt)
            increment_settlement_callback("completion", "duplicate")
            return self._ack(attempt, applied=False, record=record)
        if attempt.phase == "initiated":
            increment_settlement_callback("completion", "out_of_order")
            logger.warning("completion before approval payment=%s iou=%s", provider_payment_id, attempt.iou_id)
            raise ConflictError(f"Payment {provider_payment_id} has not been approved")
        if attempt.phase != "approved":
            increment_settlement_callback("completion", "stale")
            logger.warning("completion for finished attempt payment=%s phase=%s", provider_payment_id, attempt.phase)
            raise ConflictError(f"Payment {provider_payment_id} is already {attempt.phase}")

        # The provider's own record is authoritative; a callback amount can only narrow it.
        claimed = _as_amount(amount) if amount is not None else None
        reported = self._provider_amount(provider_payment_id)
        if reported is None and claimed is None:
            self._reject_amount(attempt, None, kind="completion")
        for observed in (reported, claimed):
            if observed is not None and observed != attempt.amount:
                self._reject_amount(attempt, observed, kind="completion")

        # Provider first: the IOU is only paid once the provider has accepted the completion.
        clean_txid = (txid or "").strip() or None
        result = self.provider.complete(provider_payment_id, clean_txid)
        if not result.ok:
            increment_settlement_callback("completion", "provider_error")
            logger.error(
                "provider completion failed payment=%s iou=%s err=%s; attempt stays approved",
                provider_payment_id,
                attempt.iou_id,
                result.error,
            )
            raise ProviderError(result.error or "Provider completion failed")

        try:
            completed = self.store.update_phase(
                attempt.id,
                expected_phase="approved",
                new_phase="completed",
                txid=clean_txid,
            )
        except ConflictError:
            increment_settlement_callback("completion", "conflict")
            logger.error("completion lost race after provider completed payment=%s", provider_payment_id)
            raise

        record = self._finalize(completed)
        increment_settlement_callback("completion", "applied")
        logger.info("settlement completed iou=%s payment=%s txid=%s", record.id, provider_payment_id, completed.txid)
        return self._ack(completed, applied=True, record=record)

    # ==========================================================
    # 4. Cancel / 5. Error
    # ==========================================================

    def on_cancel(self, provider_payment_id: Optional[str] = None, iou_id: Optional[str] = None) -> CallbackAck:
        attempt = self._locate(provider_payment_id, iou_id, kind="cancel")
        if attempt.phase == "cancelled":
            increment_settlement_callback("cancel", "duplicate")
            return self._ack(attempt, applied=False)

        cancelled = self._terminate(attempt, "cancelled", "CANCELLED", kind="cancel")
        increment_settlement_callback("cancel", "applied")
        logger.info("settlement cancelled iou=%s payment=%s", cancelled.iou_id, cancelled.provider_payment_id)
        return self._ack(cancelled, applied=True)

    def on_error(
        self,
        provider_payment_id: Optional[str] = None,
        error: Optional[str] = None,
        iou_id: Optional[str] = None,
    ) -> CallbackAck:
        message = (error or "").strip() or "PROVIDER_ERROR"
        attempt = self._locate(provider_payment_id, iou_id, kind="error")
        if not attempt.is_active:
            # Nothing in flight to fail; keep the terminal outcome.
            increment_settlement_callback("error", "stale")
            logger.warning("error callback for finished attempt payment=%s phase=%s", attempt.provider_payment_id, attempt.phase)
            return self._ack(attempt, applied=False, error=message)

        errored = self._terminate(attempt, "errored", message, kind="error")
        increment_settlement_callback("error", "applied")
        logger.warning("settlement errored iou=%s payment=%s err=%s", errored.iou_id, errored.provider_payment_id, message)
        return self._ack(errored, applied=True, error=message)

    # ==========================================================
    # Authorization
    # ==========================================================

    def authorize(
        self,
        acting_user_id: str,
        provider_payment_id: Optional[str] = None,
        iou_id: Optional[str] = None,
    ) -> None:
        """
        Only participants of the IOU a callback touches may relay it. A known
        payment id decides the IOU; otherwise the claimed iou_id does.
        """
        attempt = self.store.fetch_attempt_by_payment_id(provider_payment_id) if provider_payment_id else None
        target = attempt.iou_id if attempt is not None else iou_id
        if not target:
            return
        try:
            service.get_for_user(self.store, target, acting_user_id)
        except NotAuthorizedError:
            increment_settlement_callback("authorize", "forbidden")
            logger.warning(
                "callback from non-participant user=%s iou=%s payment=%s",
                acting_user_id,
                target,
                provider_payment_id,
            )
            raise

    # ==========================================================
    # Recovery
    # ==========================================================

    def reconcile_payment(
        self,
        provider_payment_id: str,
        iou_id: Optional[str] = None,
        *,
        acting_user_id: Optional[str] = None,
    ) -> CallbackAck:
        """
        Bring local state in line with what the provider reports for a
        payment the client found unfinished, replaying the callbacks it implies.

        With `acting_user_id` the caller must be a participant of the IOU the
        payment belongs to, whether that comes from local state or the provider.
        """
        if not getattr(self.provider, "available", False):
            raise ProviderUnavailableError("Payment provider is not available")
        if acting_user_id is not None:
            self.authorize(acting_user_id, provider_payment_id, iou_id)

        payment = self.provider.get_payment(provider_payment_id)
        if payment is None:
            raise NotFoundError(f"Provider has no payment {provider_payment_id}")

        target_iou = iou_id or payment.iou_id
        attempt = self.store.fetch_attempt_by_payment_id(provider_payment_id)
        if acting_user_id is not None and attempt is None and not iou_id:
            self.authorize(acting_user_id, iou_id=target_iou)

        if payment.cancelled:
            if attempt is None and not target_iou:
                raise NotFoundError(f"Unknown payment {provider_payment_id}")
            return self.on_cancel(provider_payment_id, iou_id=target_iou)

        if attempt is None or attempt.phase == "initiated":
            ack = self.on_approval(
                provider_payment_id,
                iou_id=target_iou,
                notify_provider=not payment.developer_approved,
            )
            attempt = self.store.fetch_attempt_by_payment_id(provider_payment_id)
            if not (payment.transaction_verified or payment.developer_completed):
                return ack

        if attempt.phase == "approved" and (payment.transaction_verified or payment.developer_completed):
            return self.on_completion(provider_payment_id, amount=payment.amount, txid=payment.txid)

        if attempt.phase == "completed" and not payment.developer_completed:
            result = self.provider.complete(provider_payment_id, attempt.txid or payment.txid)
            record = self._finalize(attempt)
            return self._ack(attempt, applied=result.ok, record=record, error=None if result.ok else result.error)

        return self._ack(attempt, applied=False)

    def expire_stale_attempts(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or self.clock()) - self.attempt_ttl
        expired = 0
        for attempt in self.store.list_stale_attempts(phase="initiated", older_than=cutoff):
            if self._expire(attempt):
                expired += 1
        return expired

    # ==========================================================
    # Internals
    # ==========================================================

    def _ack(
        self,
        attempt: SettlementAttempt,
        *,
        applied: bool,
        record: Optional[IouRecord] = None,
        error: Optional[str] = None,
    ) -> CallbackAck:
        if record is None:
            record = self.store.fetch_by_id(attempt.iou_id)
        return CallbackAck(
            provider_payment_id=attempt.provider_payment_id,
            phase=attempt.phase,
            applied=applied,
            iou_status=record.status,
            error=error,
        )

    def _check_owner(self, attempt: SettlementAttempt, provider_payment_id: str, iou_id: Optional[str], *, kind: str) -> None:
        if iou_id and attempt.iou_id != iou_id:
            increment_settlement_callback(kind, "conflict")
            logger.warning(
                "payment id reuse payment=%s bound_iou=%s claimed_iou=%s",
                provider_payment_id,
                attempt.iou_id,
                iou_id,
            )
            raise ConflictError(f"Payment {provider_payment_id} belongs to another IOU")

    def _locate(self, provider_payment_id: Optional[str], iou_id: Optional[str], *, kind: str) -> SettlementAttempt:
        attempt = None
        if provider_payment_id:
            attempt = self.store.fetch_attempt_by_payment_id(provider_payment_id)
            if attempt is not None:
                self._check_owner(attempt, provider_payment_id, iou_id, kind=kind)
        if attempt is None and iou_id:
            # Payment cancelled/failed before the provider assigned an id.
            attempt = self.store.fetch_active_attempt(iou_id)
        if attempt is None:
            increment_settlement_callback(kind, "unknown")
            raise NotFoundError(f"No settlement found for payment {provider_payment_id or '-'} / IOU {iou_id or '-'}")
        return attempt

    def _terminate(self, attempt: SettlementAttempt, new_phase: str, reason: str, *, kind: str) -> SettlementAttempt:
        current = attempt
        for _ in range(MAX_CAS_RETRIES):
            if not current.is_active:
                increment_settlement_callback(kind, "conflict")
                logger.warning(
                    "%s lost to %s payment=%s iou=%s",
                    kind,
                    current.phase,
                    current.provider_payment_id,
                    current.iou_id,
                )
                raise ConflictError(f"Settlement is already {current.phase}")
            try:
                updated = self.store.update_phase(
                    current.id,
                    expected_phase=current.phase,
                    new_phase=new_phase,
                    last_error=reason,
                )
            except ConflictError:
                current = self.store.fetch_attempt(current.id)
                continue
            state_machine.abort_settlement(self.store.fetch_by_id(updated.iou_id), updated)
            return updated
        raise ConflictError(f"Attempt {attempt.id} kept changing; re-fetch and retry")

    def _fail(self, attempt: SettlementAttempt, reason: str) -> SettlementAttempt:
        return self._terminate(attempt, "errored", reason, kind="fail")

    def _provider_amount(self, provider_payment_id: str) -> Optional[Decimal]:
        payment = self.provider.get_payment(provider_payment_id)
        return payment.amount if payment is not None else None

    def _reject_amount(self, attempt: SettlementAttempt, observed: Optional[Decimal], *, kind: str) -> None:
        self._fail(attempt, "AMOUNT_MISMATCH")
        increment_settlement_callback(kind, "amount_mismatch")
        logger.warning(
            "%s amount mismatch payment=%s iou=%s expected=%s got=%s",
            kind,
            attempt.provider_payment_id,
            attempt.iou_id,
            attempt.amount,
            observed,
        )
        if observed is None:
            raise AmountMismatchError(f"Could not determine the paid amount; expected {attempt.amount}")
        raise AmountMismatchError(f"Paid amount {observed} does not match IOU amount {attempt.amount}")

    def _finalize(self, attempt: SettlementAttempt) -> IouRecord:
        record = self.store.fetch_by_id(attempt.iou_id)
        for _ in range(MAX_CAS_RETRIES):
            transition = state_machine.finalize_settlement(record, attempt)
            if transition is None:
                return record
            try:
                return self.store.update_status(
                    record.id,
                    expected_status=transition.from_status,
                    new_status=transition.to_status,
                    timestamp_field=transition.timestamp_field,
                )
            except ConflictError:
                # e.g. accepted while the payment was moving; re-validate on fresh state
                record = self.store.fetch_by_id(attempt.iou_id)
        raise ConflictError(f"IOU {attempt.iou_id} kept changing during finalize")

    def _is_stale(self, attempt: SettlementAttempt, now: Optional[datetime] = None) -> bool:
        return attempt.phase == "initiated" and attempt.created_at <= (now or self.clock()) - self.attempt_ttl

    def _expire(self, attempt: SettlementAttempt) -> bool:
        try:
            self.store.update_phase(attempt.id, expected_phase="initiated", new_phase="cancelled", last_error="EXPIRED")
        except ConflictError:
            return False
        logger.info("settlement attempt expired iou=%s attempt=%s", attempt.iou_id, attempt.id)
        increment_settlement_attempt("expired")
        return True

    def _expire_if_stale(self, attempt: SettlementAttempt) -> bool:
        return self._is_stale(attempt) and self._expire(attempt)
