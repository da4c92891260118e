"""
PurchaseOrchestrator — drives a VPN purchase from payment link to issued key.

Ответственности:
- создание платежа и регистрация сессии (не более одной активной на покупателя)
- проверка оплаты и выдача ключа строго один раз на успешный платёж
- отмена и истечение неоплаченных сессий

At-most-once provisioning: only the caller that wins the PENDING -> SUCCEEDED
compare-and-swap in the registry talks to the VPN panel. Everybody else re-reads
the session and reports what is already there. The orchestrator keeps no session
state of its own and never formats chat messages: every operation returns outcome
events for the chat layer.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol

from app.services.payments.base import GatewayError, PaymentGateway, PaymentStatus
from app.services.provisioning.base import VpnPanelProvider
from app.services.purchases.errors import (
    ConcurrentPurchase,
    ConflictError,
    DuplicateSession,
    NotFound,
    SessionExpired,
)
from app.services.purchases.models import (
    ErrorKind,
    FailureReason,
    Outcome,
    PaymentLink,
    Provisioned,
    PurchaseError,
    PurchaseSession,
    SessionState,
    StatusUpdate,
)
from app.services.purchases.registry import SessionRegistry
from app.utils.metrics import (
    cas_conflicts_total,
    payment_checks_total,
    purchase_outcomes_total,
    purchases_started_total,
)

logger = logging.getLogger(__name__)


class CredentialStore(Protocol):
    def put(self, buyer_id: str, access_link: str, issued_at: datetime) -> None: ...

    def get(self, buyer_id: str): ...


@dataclass(frozen=True)
class PurchaseConfig:
    amount_minor_units: int
    currency: str = "RUB"
    description_template: str = "Оплата VPN подписки для пользователя {buyer_id}"
    return_url: str = ""
    session_ttl: timedelta = timedelta(minutes=15)
    retention: timedelta = timedelta(hours=1)
    support_url: str | None = None

    @classmethod
    def from_settings(cls, settings) -> "PurchaseConfig":
        return cls(
            amount_minor_units=settings.vpn_price_minor_units,
            currency=settings.vpn_currency,
            description_template=settings.vpn_payment_description,
            return_url=settings.yookassa_return_url,
            session_ttl=timedelta(seconds=settings.session_ttl_seconds),
            retention=timedelta(seconds=settings.session_retention_seconds),
            support_url=settings.support_url,
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PurchaseOrchestrator:
    def __init__(
        self,
        registry: SessionRegistry,
        gateway: PaymentGateway,
        provisioning: VpnPanelProvider,
        credentials: CredentialStore,
        config: PurchaseConfig,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.registry = registry
        self.gateway = gateway
        self.provisioning = provisioning
        self.credentials = credentials
        self.config = config
        self._clock = clock or _utcnow

    # ------------------------------------------------------------------
    # Buyer events
    # ------------------------------------------------------------------

    def start_purchase(self, buyer_id: str, channel_id: str) -> list[Outcome]:
        active = self.registry.find_active(buyer_id)
        if active is not None:
            return [self._already_in_progress(active, channel_id)]

        description = self.config.description_template.format(buyer_id=buyer_id)
        try:
            created = self.gateway.create_payment(
                self.config.amount_minor_units,
                self.config.currency,
                description,
                self.config.return_url,
            )
        except GatewayError as e:
            logger.warning(
                "payment_create_failed",
                extra={"buyer_id": buyer_id, "error": type(e).__name__},
            )
            return [self._gateway_failure(None, channel_id, e)]

        payment_id = created.payment_id
        try:
            self.registry.create(
                payment_id,
                buyer_id,
                channel_id,
                confirmation_url=created.confirmation_url,
            )
        except ConcurrentPurchase as e:
            # Another start_purchase of this buyer registered first
            logger.warning(
                "concurrent_purchase_race",
                extra={"buyer_id": buyer_id, "payment_id": payment_id},
            )
            self._cancel_remote(payment_id)
            try:
                active = self.registry.get(e.payment_id)
            except NotFound:
                active = None
            if active is not None:
                return [self._already_in_progress(active, channel_id)]
            return [PurchaseError(
                channel_id=channel_id,
                error=ErrorKind.CONCURRENT_PURCHASE,
                message="Another purchase is in progress",
                retryable=True,
            )]
        except DuplicateSession:
            logger.error(
                "payment_id_already_tracked",
                extra={"buyer_id": buyer_id, "payment_id": payment_id},
            )
            return [PurchaseError(
                payment_id=payment_id,
                channel_id=channel_id,
                error=ErrorKind.INTERNAL,
                message="Gateway returned an already tracked payment id",
            )]

        try:
            self.registry.transition(payment_id, SessionState.CREATED, SessionState.PENDING)
        except ConflictError:
            return self._lost_race(payment_id)

        purchases_started_total.inc()
        return [PaymentLink(payment_id=payment_id, channel_id=channel_id, url=created.confirmation_url)]

    def check_payment(self, payment_id: str, buyer_id: str | None = None) -> list[Outcome]:
        try:
            session = self._load(payment_id, buyer_id)
        except NotFound:
            return [self._not_found(payment_id)]
        except SessionExpired:
            return self._check_expired(payment_id)

        if session.state != SessionState.PENDING:
            return self._report(session)

        try:
            status = self.gateway.check_status(payment_id)
        except GatewayError as e:
            logger.warning(
                "payment_check_failed",
                extra={"payment_id": payment_id, "error": type(e).__name__},
            )
            return [self._gateway_failure(payment_id, session.channel_id, e)]

        payment_checks_total.labels(status=status.value).inc()

        if status == PaymentStatus.PENDING:
            return [StatusUpdate(
                payment_id=payment_id,
                channel_id=session.channel_id,
                state=SessionState.PENDING,
                confirmation_url=session.confirmation_url,
            )]

        if status == PaymentStatus.SUCCEEDED:
            try:
                session = self.registry.transition(
                    payment_id, SessionState.PENDING, SessionState.SUCCEEDED
                )
            except ConflictError:
                cas_conflicts_total.inc()
                logger.info("session_transition_conflict", extra={"payment_id": payment_id})
                try:
                    current = self.registry.get(payment_id)
                except NotFound:
                    return [self._not_found(payment_id)]
                if self._closed_unpaid(current):
                    # Expiry or cancel won, but the buyer has paid
                    return [self._paid_after_close(current)]
                return self._report(current)
            return self._provision(session)

        try:
            session = self.registry.transition(
                payment_id,
                SessionState.PENDING,
                SessionState.FAILED,
                failure_reason=FailureReason.PAYMENT_NOT_COMPLETED,
            )
        except ConflictError:
            return self._lost_race(payment_id)
        purchase_outcomes_total.labels(state=SessionState.FAILED.value).inc()
        logger.info(
            "payment_not_completed",
            extra={"payment_id": payment_id, "status": status.value},
        )
        return [StatusUpdate(payment_id=payment_id, channel_id=session.channel_id, state=SessionState.FAILED)]

    def cancel_payment(self, payment_id: str, buyer_id: str | None = None) -> list[Outcome]:
        try:
            session = self._load(payment_id, buyer_id)
        except NotFound:
            return [self._not_found(payment_id)]
        except SessionExpired:
            return [self._expired(payment_id, None)]

        if session.state != SessionState.PENDING:
            return self._report(session)

        try:
            canceled_remotely = self.gateway.cancel_payment(payment_id)
        except GatewayError as e:
            # State untouched, the buyer can press cancel again
            logger.warning(
                "payment_cancel_failed",
                extra={"payment_id": payment_id, "error": type(e).__name__},
            )
            return [self._gateway_failure(payment_id, session.channel_id, e)]

        if not canceled_remotely:
            logger.error(
                "payment_cancel_unconfirmed_reconcile",
                extra={"payment_id": payment_id, "buyer_id": session.buyer_id},
            )

        try:
            session = self.registry.transition(
                payment_id, SessionState.PENDING, SessionState.CANCELED
            )
        except ConflictError:
            return self._lost_race(payment_id)

        purchase_outcomes_total.labels(state=SessionState.CANCELED.value).inc()
        return [StatusUpdate(payment_id=payment_id, channel_id=session.channel_id, state=SessionState.CANCELED)]

    # ------------------------------------------------------------------
    # Background
    # ------------------------------------------------------------------

    def sweep_expired(self) -> list[Outcome]:
        """
        Expire unpaid sessions older than the TTL and purge retired ones.
        Returns one EXPIRED status update per newly expired session.
        """
        now = self._clock()
        expired_ids = self.registry.sweep_expired(now, self.config.session_ttl)
        outcomes: list[Outcome] = []
        for payment_id in expired_ids:
            try:
                session = self.registry.get(payment_id)
            except NotFound:
                continue
            purchase_outcomes_total.labels(state=SessionState.EXPIRED.value).inc()
            outcomes.append(StatusUpdate(
                payment_id=payment_id,
                channel_id=session.channel_id,
                state=SessionState.EXPIRED,
            ))
            # The link must stop accepting money once we stopped tracking it
            if not self._cancel_remote(payment_id):
                logger.error(
                    "expired_payment_not_canceled_reconcile",
                    extra={"payment_id": payment_id, "buyer_id": session.buyer_id},
                )
        self.registry.purge_retired(now, self.config.retention)
        return outcomes

    def current_credential(self, buyer_id: str):
        return self.credentials.get(buyer_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load(self, payment_id: str, buyer_id: str | None) -> PurchaseSession:
        session = self.registry.get(payment_id)
        if buyer_id is not None and session.buyer_id != buyer_id:
            logger.warning(
                "payment_owner_mismatch",
                extra={"payment_id": payment_id, "buyer_id": buyer_id},
            )
            raise NotFound(f"Unknown payment {payment_id}", payment_id=payment_id)
        if session.state == SessionState.EXPIRED:
            raise SessionExpired(f"Payment {payment_id} expired", payment_id=payment_id)
        return session

    def _check_expired(self, payment_id: str) -> list[Outcome]:
        """A check on an expired session still asks the gateway whether money arrived."""
        try:
            session = self.registry.get(payment_id)
        except NotFound:
            return [self._not_found(payment_id)]
        try:
            status = self.gateway.check_status(payment_id)
        except GatewayError as e:
            logger.warning(
                "payment_check_failed",
                extra={"payment_id": payment_id, "error": type(e).__name__},
            )
            return [self._expired(payment_id, session.channel_id)]
        payment_checks_total.labels(status=status.value).inc()
        if status == PaymentStatus.SUCCEEDED:
            return [self._paid_after_close(session)]
        return [self._expired(payment_id, session.channel_id)]

    @staticmethod
    def _closed_unpaid(session: PurchaseSession) -> bool:
        if session.state in (SessionState.EXPIRED, SessionState.CANCELED):
            return True
        return (
            session.state == SessionState.FAILED
            and session.failure_reason == FailureReason.PAYMENT_NOT_COMPLETED
        )

    def _paid_after_close(self, session: PurchaseSession) -> PurchaseError:
        logger.error(
            "paid_payment_not_provisioned_reconcile",
            extra={
                "payment_id": session.payment_id,
                "buyer_id": session.buyer_id,
                "state": session.state.value,
            },
        )
        return PurchaseError(
            payment_id=session.payment_id,
            channel_id=session.channel_id,
            error=ErrorKind.PROVISIONING_FAILED,
            message="Payment received after the purchase was closed",
            support_url=self.config.support_url,
        )

    def _provision(self, session: PurchaseSession) -> list[Outcome]:
        """Called only by the winner of PENDING -> SUCCEEDED."""
        paid = StatusUpdate(
            payment_id=session.payment_id,
            channel_id=session.channel_id,
            state=SessionState.SUCCEEDED,
        )
        try:
            access_link = self.provisioning.create_access(session.buyer_id)
        except Exception as e:
            # Money has moved: no automatic retry, a human takes over
            logger.error(
                "provisioning_failed_reconcile",
                extra={
                    "payment_id": session.payment_id,
                    "buyer_id": session.buyer_id,
                    "backend": getattr(self.provisioning, "name", None),
                    "error": f"{type(e).__name__}: {e}",
                },
                exc_info=True,
            )
            self.registry.transition(
                session.payment_id,
                SessionState.SUCCEEDED,
                SessionState.FAILED,
                failure_reason=FailureReason.PROVISIONING_FAILED,
            )
            purchase_outcomes_total.labels(state=SessionState.FAILED.value).inc()
            return [paid, self._provisioning_failed(session)]

        issued_at = self._clock()
        try:
            self.credentials.put(session.buyer_id, access_link, issued_at)
        except Exception:
            # The key exists on the panel; it is kept on the session and shown anyway
            logger.exception(
                "credential_persist_failed",
                extra={"payment_id": session.payment_id, "buyer_id": session.buyer_id},
            )

        self.registry.transition(
            session.payment_id,
            SessionState.SUCCEEDED,
            SessionState.PROVISIONED,
            access_link=access_link,
        )
        purchase_outcomes_total.labels(state=SessionState.PROVISIONED.value).inc()
        logger.info(
            "vpn_access_provisioned",
            extra={"payment_id": session.payment_id, "buyer_id": session.buyer_id},
        )
        return [paid, Provisioned(
            payment_id=session.payment_id,
            channel_id=session.channel_id,
            access_link=access_link,
            issued_at=issued_at,
        )]

    def _lost_race(self, payment_id: str) -> list[Outcome]:
        """Another action already moved the session; report where it is now."""
        cas_conflicts_total.inc()
        logger.info("session_transition_conflict", extra={"payment_id": payment_id})
        try:
            session = self.registry.get(payment_id)
        except NotFound:
            return [self._not_found(payment_id)]
        return self._report(session)

    def _report(self, session: PurchaseSession) -> list[Outcome]:
        """Describe a session that needs no further action from this call."""
        state = session.state
        if state == SessionState.PROVISIONED:
            return [self._existing_credential(session)]
        if state == SessionState.EXPIRED:
            return [self._expired(session.payment_id, session.channel_id)]
        if state == SessionState.FAILED and session.failure_reason == FailureReason.PROVISIONING_FAILED:
            return [self._provisioning_failed(session)]
        confirmation_url = session.confirmation_url if state in (SessionState.CREATED, SessionState.PENDING) else None
        return [StatusUpdate(
            payment_id=session.payment_id,
            channel_id=session.channel_id,
            state=state,
            confirmation_url=confirmation_url,
        )]

    def _existing_credential(self, session: PurchaseSession) -> Outcome:
        access_link = session.access_link
        issued_at = None
        if access_link is None:
            credential = self.credentials.get(session.buyer_id)
            if credential is not None:
                access_link = credential.access_link
                issued_at = credential.issued_at
        if access_link is None:
            return StatusUpdate(
                payment_id=session.payment_id,
                channel_id=session.channel_id,
                state=session.state,
            )
        return Provisioned(
            payment_id=session.payment_id,
            channel_id=session.channel_id,
            access_link=access_link,
            issued_at=issued_at or session.finished_at,
            reissued=True,
        )

    def _cancel_remote(self, payment_id: str) -> bool:
        try:
            return self.gateway.cancel_payment(payment_id)
        except GatewayError as e:
            logger.warning(
                "payment_cancel_failed",
                extra={"payment_id": payment_id, "error": type(e).__name__},
            )
            return False

    def _already_in_progress(self, active: PurchaseSession, channel_id: str) -> PurchaseError:
        return PurchaseError(
            payment_id=active.payment_id,
            channel_id=channel_id,
            error=ErrorKind.CONCURRENT_PURCHASE,
            message="You already have a purchase in progress",
            confirmation_url=active.confirmation_url,
        )

    def _gateway_failure(self, payment_id: str | None, channel_id: str | None, exc: GatewayError) -> PurchaseError:
        return PurchaseError(
            payment_id=payment_id,
            channel_id=channel_id,
            error=ErrorKind.GATEWAY_UNAVAILABLE,
            message=f"Payment service error: {type(exc).__name__}",
            retryable=True,
        )

    def _provisioning_failed(self, session: PurchaseSession) -> PurchaseError:
        return PurchaseError(
            payment_id=session.payment_id,
            channel_id=session.channel_id,
            error=ErrorKind.PROVISIONING_FAILED,
            message="Payment received but VPN access could not be created",
            support_url=self.config.support_url,
        )

    def _not_found(self, payment_id: str) -> PurchaseError:
        return PurchaseError(
            payment_id=payment_id,
            error=ErrorKind.NOT_FOUND,
            message="Unknown payment",
        )

    def _expired(self, payment_id: str, channel_id: str | None) -> PurchaseError:
        return PurchaseError(
            payment_id=payment_id,
            channel_id=channel_id,
            error=ErrorKind.SESSION_EXPIRED,
            message="Payment session expired",
            support_url=self.config.support_url,
        )
