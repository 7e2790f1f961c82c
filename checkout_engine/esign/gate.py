"""
eSign Gate
==========
Guarantees a backend-confirmed signature artifact exists before payment.

State machine per attempt:
    Idle -> ConsentShown -> SigningInProgress -> Completed | Failed | Cancelled

While signing, two independent sources (a 2s poll tick and the surface
closing) feed one status check. The backend status is the only source of
truth: a closed window without "completed" is a failure.
"""

import asyncio
from enum import Enum
from typing import Awaitable, Callable, Optional

import structlog
from pydantic import BaseModel

from checkout_engine.config import settings
from checkout_engine.errors import CheckoutError, EsignRequired, PopupBlocked
from checkout_engine.esign.surfaces import ISigningSurface, SurfaceHandle, SurfaceMode, preferred_mode
from checkout_engine.schemas.domain import EsignArtifact, EsignStatus, ProductType
from checkout_engine.services.backend_client import IBackendApi
from checkout_engine.services.session_store import ISessionStore, SessionKeys


class EsignState(str, Enum):
    IDLE = "idle"
    CONSENT_SHOWN = "consent_shown"
    SIGNING_IN_PROGRESS = "signing_in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EsignOutcome(BaseModel):
    state: EsignState
    artifact: Optional[EsignArtifact] = None
    reason: Optional[str] = None
    fallback_url: Optional[str] = None
    redirected: bool = False

    @property
    def completed(self) -> bool:
        return self.state == EsignState.COMPLETED


ConsentProvider = Callable[[EsignArtifact], Awaitable[bool]]

_COMPLETED = {"completed", "signed"}
_FAILED = {"failed", "expired", "rejected", "cancelled"}


def status_from_payload(payload: dict) -> EsignStatus:
    raw = str(payload.get("agreement_status") or payload.get("status") or "").lower()
    if raw in _COMPLETED:
        return EsignStatus.COMPLETED
    if raw in _FAILED:
        return EsignStatus.FAILED
    return EsignStatus.PENDING


class EsignGate:
    """
    Example:
        gate = EsignGate(api, surface, session)
        outcome = await gate.start_verification(ProductType.BUNDLE, bundle_id, consent=ask_user)
        if outcome.completed:
            ...resume payment
    """

    def __init__(
        self,
        api: IBackendApi,
        surface: ISigningSurface,
        session: Optional[ISessionStore] = None,
        *,
        user_agent: Optional[str] = None,
        poll_interval: Optional[float] = None,
        max_polls: Optional[int] = None,
        grace_period: Optional[float] = None,
        resume_attempts: Optional[int] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._api = api
        self._surface = surface
        self._session = session
        self._user_agent = user_agent
        self._poll_interval = poll_interval if poll_interval is not None else settings.ESIGN_POLL_INTERVAL_SECONDS
        self._max_polls = max_polls if max_polls is not None else settings.ESIGN_MAX_POLL_ATTEMPTS
        self._grace_period = grace_period if grace_period is not None else settings.ESIGN_GRACE_PERIOD_SECONDS
        self._resume_attempts = resume_attempts if resume_attempts is not None else settings.ESIGN_RESUME_ATTEMPTS
        self._sleep = sleep

        self._state = EsignState.IDLE
        self._current: Optional[EsignArtifact] = None
        self._handle: Optional[SurfaceHandle] = None
        self._cancelled = False
        self._completed: dict[tuple[str, str], EsignArtifact] = {}
        self._logger = structlog.get_logger().bind(component="esign_gate")

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def state(self) -> EsignState:
        return self._state

    @property
    def current_artifact(self) -> Optional[EsignArtifact]:
        return self._current

    def completed_artifact(self, product_type: ProductType, product_id: str) -> Optional[EsignArtifact]:
        return self._completed.get((product_type.value, product_id))

    def is_satisfied(self, product_type: ProductType, product_id: str) -> bool:
        return self.completed_artifact(product_type, product_id) is not None

    def _transition(self, state: EsignState) -> None:
        self._logger.info("esign_transition", previous=self._state.value, state=state.value)
        self._state = state

    def _outcome(self, state: EsignState, reason: Optional[str] = None, **extra) -> EsignOutcome:
        self._transition(state)
        return EsignOutcome(state=state, artifact=self._current, reason=reason, **extra)

    # =========================================================================
    # ENTRY
    # =========================================================================

    async def start_verification(
        self,
        product_type: ProductType,
        product_id: str,
        consent: ConsentProvider,
        *,
        signal: Optional[EsignRequired] = None,
        customer: Optional[dict] = None,
        force: bool = False,
    ) -> EsignOutcome:
        """
        Run one verification attempt from Idle.

        Skipped when a completed artifact is already held for the product,
        unless ``force`` is set because the backend demanded it again.
        """
        existing = self.completed_artifact(product_type, product_id)
        if existing is not None and not force:
            self._logger.info("esign_skipped", product_id=product_id, document_id=existing.document_id)
            return EsignOutcome(state=EsignState.COMPLETED, artifact=existing, reason="already_signed")

        self._reset()
        self._current = await self._prepare_artifact(product_type, product_id, signal, customer)
        self._transition(EsignState.CONSENT_SHOWN)

        agreed = await consent(self._current)
        if self._cancelled or not agreed:
            return self._outcome(EsignState.CANCELLED, reason="consent_declined")

        return await self._sign()

    async def _prepare_artifact(
        self,
        product_type: ProductType,
        product_id: str,
        signal: Optional[EsignRequired],
        customer: Optional[dict],
    ) -> EsignArtifact:
        if signal is not None and signal.document_id and signal.authentication_url:
            document_id, url = signal.document_id, signal.authentication_url
        else:
            created = await self._api.create_esign_request(product_type.value, product_id, customer or {})
            document_id = str(created.get("documentId") or created.get("id"))
            url = created.get("authenticationUrl")
        if not url:
            raise CheckoutError("Verification link unavailable", details={"document_id": document_id})
        return EsignArtifact(
            document_id=document_id,
            product_type=product_type,
            product_id=product_id,
            authentication_url=url,
        )

    def _reset(self) -> None:
        self._state = EsignState.IDLE
        self._current = None
        self._handle = None
        self._cancelled = False

    # =========================================================================
    # SIGNING
    # =========================================================================

    async def _sign(self) -> EsignOutcome:
        artifact = self._current
        self._transition(EsignState.SIGNING_IN_PROGRESS)
        mode = preferred_mode(self._user_agent)

        try:
            handle = await self._surface.open(artifact.authentication_url, mode)
        except PopupBlocked:
            self._logger.warning("esign_popup_blocked", document_id=artifact.document_id)
            return self._outcome(
                EsignState.FAILED,
                reason=PopupBlocked.code,
                fallback_url=artifact.authentication_url,
            )

        self._handle = handle
        if handle.mode == SurfaceMode.REDIRECT:
            await self._persist_pending(artifact)
            self._logger.info("esign_redirected", document_id=artifact.document_id)
            return EsignOutcome(state=self._state, artifact=artifact, redirected=True)

        return await self._monitor(handle, self._max_polls)

    async def open_in_same_tab(self) -> EsignOutcome:
        """Fallback after a blocked popup: navigate this page instead."""
        if self._current is None:
            raise CheckoutError("No verification to reopen")
        self._cancelled = False
        self._transition(EsignState.SIGNING_IN_PROGRESS)
        self._handle = await self._surface.open(self._current.authentication_url, SurfaceMode.REDIRECT)
        await self._persist_pending(self._current)
        return EsignOutcome(state=self._state, artifact=self._current, redirected=True)

    async def resume_after_redirect(self) -> EsignOutcome:
        """Re-enter after the redirect surface returned to us."""
        pending = await self._session.get(SessionKeys.ESIGN_PENDING) if self._session else None
        if not pending:
            return EsignOutcome(state=EsignState.FAILED, reason="nothing_to_resume")

        self._reset()
        self._current = EsignArtifact.model_validate(pending)
        self._transition(EsignState.SIGNING_IN_PROGRESS)
        handle = SurfaceHandle(SurfaceMode.REDIRECT, self._current.authentication_url or "")
        handle.mark_closed()
        self._handle = handle
        return await self._monitor(handle, self._resume_attempts, stop_on_closed=False)

    async def _monitor(self, handle: SurfaceHandle, max_polls: int, stop_on_closed: bool = True) -> EsignOutcome:
        for _ in range(max_polls):
            closed = await self._next_signal(handle)
            if self._cancelled:
                return self._outcome(EsignState.CANCELLED, reason="user_cancelled")

            status = await self._check_status()
            if self._cancelled:
                return self._outcome(EsignState.CANCELLED, reason="user_cancelled")

            if status == EsignStatus.COMPLETED:
                return await self._complete(handle)
            if status == EsignStatus.FAILED:
                return await self._fail(handle, "signing_failed")
            if closed and stop_on_closed:
                reason = "status_unavailable" if status is None else "window_closed"
                return await self._fail(handle, reason)

        return await self._fail(handle, "timeout")

    async def _next_signal(self, handle: SurfaceHandle) -> bool:
        """Wait for the next poll tick or the surface closing, whichever is first."""
        if handle.closed:
            if handle.mode == SurfaceMode.REDIRECT:
                await self._sleep(self._poll_interval)
            return True
        tick = asyncio.ensure_future(self._sleep(self._poll_interval))
        closing = asyncio.ensure_future(handle.wait_closed())
        _, pending = await asyncio.wait({tick, closing}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        return handle.closed

    async def _check_status(self) -> Optional[EsignStatus]:
        try:
            payload = await self._api.get_esign_status(self._current.document_id)
        except CheckoutError as e:
            # Keep monitoring; a later tick may succeed
            self._logger.warning("esign_status_check_failed", error=str(e))
            return None
        return status_from_payload(payload)

    async def _complete(self, handle: SurfaceHandle) -> EsignOutcome:
        self._current = self._current.transition_to(EsignStatus.COMPLETED)
        key = (self._current.product_type.value, self._current.product_id)
        self._completed[key] = self._current
        await handle.close()
        await self._clear_pending()
        outcome = self._outcome(EsignState.COMPLETED)
        self._logger.info("esign_completed", document_id=self._current.document_id)

        # Let the confirmation show before handing control back
        await self._sleep(self._grace_period)
        if self._cancelled:
            return self._outcome(EsignState.CANCELLED, reason="user_cancelled")
        return outcome

    async def _fail(self, handle: SurfaceHandle, reason: str) -> EsignOutcome:
        if self._current is not None:
            self._current = self._current.transition_to(EsignStatus.FAILED)
        await handle.close()
        await self._clear_pending()
        self._logger.warning("esign_failed", reason=reason)
        return self._outcome(EsignState.FAILED, reason=reason)

    # =========================================================================
    # CANCELLATION
    # =========================================================================

    async def cancel(self) -> None:
        """User closed the gate: stop polling, close the surface, drop state."""
        self._cancelled = True
        if self._handle is not None:
            await self._handle.close()
        await self._clear_pending()
        if self._state not in (EsignState.COMPLETED, EsignState.IDLE):
            self._transition(EsignState.CANCELLED)
        self._logger.info("esign_cancelled")

    # =========================================================================
    # REDIRECT PERSISTENCE
    # =========================================================================

    async def _persist_pending(self, artifact: EsignArtifact) -> None:
        if self._session is not None:
            await self._session.set(SessionKeys.ESIGN_PENDING, artifact.model_dump(mode="json"))

    async def _clear_pending(self) -> None:
        if self._session is not None:
            await self._session.delete(SessionKeys.ESIGN_PENDING)
