"""
VerificationService: per-request state machine composing the order ledger,
the device limiter and the session store into one grant/deny decision.

RECEIVED -> FORMAT_CHECKED -> (SESSION_SHORT_CIRCUIT) -> CLASSIFIED
  -> DEVICE_AUTHORIZED -> CONSUMED -> GRANTED, DENIED from any checkpoint.

First use of a single-use order is claimed with one conditional insert, and
quota-limited multi-use consumption is one conditional append (behind a
whitelist row lock on PostgreSQL), so racing requests cannot both take the
same first grant or the same last unit.
"""
from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from order_gate.core.logging import short_id
from order_gate.errors import DenialReason, PolicyDenial, StorageError
from order_gate.services.devices.identity import generate_device_id
from order_gate.services.devices.models import DeviceDecision, DeviceReason
from order_gate.services.devices.service import DeviceLimiter
from order_gate.services.orders.models import UNLIMITED, MultiOrderKind, SingleOrderKind
from order_gate.services.orders.service import OrderService, is_valid_order_number
from order_gate.services.sessions.store import SessionStore
from order_gate.services.verification.models import (
    AccessWindowInfo,
    DeviceInfo,
    DeviceLimitInfo,
    VerificationDecision,
    VerificationRequest,
    VerificationState,
)
from order_gate.utils.metrics import verifications_total
from order_gate.utils.time import Clock, utcnow

logger = logging.getLogger(__name__)

GENERIC_DENIAL_MESSAGE = "Verification failed, please try again later or contact support"
GRANTED_MESSAGE = "Verification succeeded"
EXPIRED_MESSAGE = "This order's 24-hour access period has ended, please contact support"
DEVICE_LIMIT_MESSAGE = "This order has been verified on {current} devices; at most {max} are supported"


class VerificationService:
    def __init__(
        self,
        db: Session,
        sessions: SessionStore,
        clock: Clock = utcnow,
        orders: OrderService | None = None,
        devices: DeviceLimiter | None = None,
    ):
        self.db = db
        self.sessions = sessions
        self.clock = clock
        self.orders = orders or OrderService(db, clock=clock)
        self.devices = devices or DeviceLimiter(db, clock=clock)

    def verify(self, request: VerificationRequest) -> VerificationDecision:
        state = VerificationState.RECEIVED
        order_number = request.order_number
        device_id = request.device_id
        minted = False
        try:
            if not is_valid_order_number(order_number):
                logger.warning(
                    "verification_invalid_format",
                    extra={"order_number": str(order_number)[:32] if order_number else None, "ip": request.ip_address},
                )
                raise PolicyDenial(DenialReason.INVALID_FORMAT)
            state = VerificationState.FORMAT_CHECKED

            if not device_id:
                device_id = generate_device_id()
                minted = True
                logger.info(
                    "device_id_minted",
                    extra={"order_number": order_number, "device": short_id(device_id), "ip": request.ip_address},
                )

            decision = self._existing_session(request)
            if decision is not None:
                state = VerificationState.SESSION_SHORT_CIRCUIT
            else:
                kind = self.orders.classify(order_number, now=self.clock())
                state = VerificationState.CLASSIFIED

                device = self.devices.authorize(order_number, device_id)
                self._check_device(device)
                state = VerificationState.DEVICE_AUTHORIZED

                if isinstance(kind, SingleOrderKind):
                    decision = self._consume_single(request, kind, device, device_id)
                elif isinstance(kind, MultiOrderKind):
                    decision = self._consume_multi(request, kind, device, device_id)
                else:
                    raise PolicyDenial(DenialReason.INTERNAL_ERROR)
                state = VerificationState.CONSUMED

        except PolicyDenial as denial:
            verifications_total.labels(outcome="denied", reason=denial.reason.value).inc()
            logger.info(
                "verification_denied",
                extra={
                    "order_number": order_number if state != VerificationState.RECEIVED else None,
                    "ip": request.ip_address,
                    "device": short_id(device_id),
                    "reason": denial.reason.value,
                    "state": state.value,
                },
            )
            return VerificationDecision(
                granted=False,
                message=denial.message or GENERIC_DENIAL_MESSAGE,
                reason=denial.reason,
                device_limit=denial.details.get("device_limit"),
                device_id=device_id,
                device_id_minted=minted,
            )
        except (StorageError, SQLAlchemyError) as exc:
            verifications_total.labels(outcome="denied", reason=DenialReason.INTERNAL_ERROR.value).inc()
            logger.exception(
                "verification_storage_error",
                extra={"order_number": order_number, "state": state.value, "error": str(exc)},
            )
            return VerificationDecision(
                granted=False,
                message=GENERIC_DENIAL_MESSAGE,
                reason=DenialReason.INTERNAL_ERROR,
                device_id=device_id,
                device_id_minted=minted,
            )

        state = VerificationState.GRANTED
        verifications_total.labels(outcome="granted", reason=decision.order_type or "session").inc()
        logger.info(
            "verification_granted",
            extra={
                "order_number": order_number,
                "order_type": decision.order_type,
                "ip": request.ip_address,
                "device": short_id(device_id),
                "session": short_id(decision.session_id),
                "remaining": decision.remaining_access,
                "state": state.value,
            },
        )
        return decision.model_copy(update={"device_id": device_id, "device_id_minted": minted})

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _existing_session(self, request: VerificationRequest) -> VerificationDecision | None:
        """A live session for the same order is sufficient proof; nothing is consumed."""
        if not request.session_id:
            return None
        if not self.sessions.validate(request.session_id, request.ip_address):
            return None
        record = self.sessions.get(request.session_id)
        if record is None or record.order_number != request.order_number:
            return None
        return VerificationDecision(
            granted=True,
            message=GRANTED_MESSAGE,
            session_id=record.session_id,
            session_expires_at=self.sessions.expires_at(record),
        )

    def _check_device(self, device: DeviceDecision) -> None:
        if device.allowed:
            return
        if device.reason == DeviceReason.DEVICE_LIMIT_EXCEEDED:
            raise PolicyDenial(
                DenialReason.DEVICE_LIMIT_EXCEEDED,
                message=DEVICE_LIMIT_MESSAGE.format(current=device.current_count, max=device.max_devices),
                details={"device_limit": DeviceLimitInfo(current=device.current_count, max=device.max_devices)},
            )
        raise PolicyDenial(DenialReason.MISSING_DEVICE_ID)

    def _bind_after_consume(self, order_number: str, device: DeviceDecision, device_id: str) -> DeviceInfo | None:
        """
        Bind a newly authorized device once the order has been consumed. The
        grant stands if the bind fails; the device is bound on its next
        verification.
        """
        if not device.is_new_device:
            return None
        try:
            self.devices.bind(order_number, device_id)
        except (StorageError, SQLAlchemyError) as exc:
            logger.warning(
                "device_bind_failed",
                extra={"order_number": order_number, "device": short_id(device_id), "error": str(exc)},
            )
            return None
        return DeviceInfo(
            is_new_device=True,
            remaining_devices=max(0, device.max_devices - device.current_count - 1),
        )

    def _consume_single(
        self,
        request: VerificationRequest,
        kind: SingleOrderKind,
        device: DeviceDecision,
        device_id: str,
    ) -> VerificationDecision:
        order_number = request.order_number
        if not kind.eligible:
            message = EXPIRED_MESSAGE if kind.reason == DenialReason.EXPIRED_24H else None
            raise PolicyDenial(kind.reason or DenialReason.LEGACY_USED, message=message)

        now = self.clock()
        window = kind.window
        if window is None:
            window, claimed = self.orders.claim_access_window(order_number, now=now)
            if not claimed:
                logger.warning(
                    "verification_concurrent_claim",
                    extra={"order_number": order_number, "ip": request.ip_address, "device": short_id(device_id)},
                )
                raise PolicyDenial(DenialReason.CONCURRENT_CLAIM)

        # Single-use rows carry no session id.
        self.orders.record_usage(
            order_number,
            request.ip_address,
            request.user_agent,
            session_id=None,
            device_id=device_id,
            now=now,
        )
        device_info = self._bind_after_consume(order_number, device, device_id)
        session_id = self.sessions.create(order_number, request.ip_address)

        return VerificationDecision(
            granted=True,
            message=GRANTED_MESSAGE,
            order_type="single",
            session_id=session_id,
            device_info=device_info,
            access_window=AccessWindowInfo(
                expires_at=window.expires_at,
                remaining_hours=round(window.remaining_hours(self.clock()), 2),
            ),
        )

    def _consume_multi(
        self,
        request: VerificationRequest,
        kind: MultiOrderKind,
        device: DeviceDecision,
        device_id: str,
    ) -> VerificationDecision:
        order_number = request.order_number
        if not kind.eligible:
            raise PolicyDenial(DenialReason.QUOTA_EXHAUSTED)

        # The session exists before the usage row so the row can carry its id.
        session_id = self.sessions.create(order_number, request.ip_address)
        try:
            if kind.max_access is None:
                self.orders.record_usage(
                    order_number,
                    request.ip_address,
                    request.user_agent,
                    session_id=session_id,
                    device_id=device_id,
                )
            else:
                consumed = self.orders.consume_multi_access(
                    order_number,
                    kind.max_access,
                    request.ip_address,
                    request.user_agent,
                    session_id=session_id,
                    device_id=device_id,
                )
                if not consumed:
                    logger.warning(
                        "verification_quota_race",
                        extra={"order_number": order_number, "ip": request.ip_address},
                    )
                    raise PolicyDenial(DenialReason.QUOTA_EXHAUSTED)
        except (PolicyDenial, StorageError, SQLAlchemyError):
            self.sessions.remove(session_id)
            raise

        remaining = UNLIMITED if kind.max_access is None else self._remaining_after_consume(order_number, kind)
        device_info = self._bind_after_consume(order_number, device, device_id)
        record = self.sessions.get(session_id)
        return VerificationDecision(
            granted=True,
            message=GRANTED_MESSAGE,
            order_type="multi",
            session_id=session_id,
            remaining_access=remaining,
            device_info=device_info,
            session_expires_at=self.sessions.expires_at(record) if record else None,
        )

    def _remaining_after_consume(self, order_number: str, kind: MultiOrderKind) -> int:
        """Quota left, counted after this request's row committed."""
        try:
            used = self.orders.usage_count(order_number)
        except (StorageError, SQLAlchemyError) as exc:
            logger.warning("usage_count_failed", extra={"order_number": order_number, "error": str(exc)})
            used = kind.usage_count + 1
        return max(0, kind.max_access - used)
