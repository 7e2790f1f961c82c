# ==============================================================================
# FILE: tests/test_esign_gate.py
# DESCRIPTION: eSign gate lifecycle: consent, signing surfaces, polling,
#              redirect resumption and cancellation
# ==============================================================================

import pytest

from checkout_engine.errors import EsignRequired
from checkout_engine.esign import EsignGate, EsignState, SurfaceMode, preferred_mode, status_from_payload
from checkout_engine.schemas.domain import EsignStatus, ProductType
from checkout_engine.services.session_store import SessionKeys
from fakes import FakeSigningSurface, instant_sleep

MOBILE_UA = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X)"
DESKTOP_UA = "Mozilla/5.0 (X11; Linux x86_64)"


def make_gate(api, surface, session=None, **kwargs):
    kwargs.setdefault("sleep", instant_sleep)
    kwargs.setdefault("grace_period", 0)
    return EsignGate(api, surface, session, **kwargs)


async def agree(artifact):
    return True


async def decline(artifact):
    return False


class TestHelpers:

    def test_status_mapping(self):
        assert status_from_payload({"agreement_status": "signed"}) == EsignStatus.COMPLETED
        assert status_from_payload({"status": "Completed"}) == EsignStatus.COMPLETED
        assert status_from_payload({"status": "expired"}) == EsignStatus.FAILED
        assert status_from_payload({"status": "requested"}) == EsignStatus.PENDING
        assert status_from_payload({}) == EsignStatus.PENDING

    def test_mobile_user_agents_redirect(self):
        assert preferred_mode(MOBILE_UA) == SurfaceMode.REDIRECT
        assert preferred_mode(DESKTOP_UA) == SurfaceMode.POPUP
        assert preferred_mode(None) == SurfaceMode.POPUP


@pytest.mark.asyncio
async def test_completes_once_backend_reports_signed(authed_api, surface):
    authed_api.esign_statuses = [{"status": "pending"}, {"status": "completed"}]
    gate = make_gate(authed_api, surface)

    outcome = await gate.start_verification(ProductType.BUNDLE, "b1", consent=agree)

    assert outcome.completed
    assert outcome.artifact.document_id == "DOC-1"
    assert outcome.artifact.status == EsignStatus.COMPLETED
    assert gate.is_satisfied(ProductType.BUNDLE, "b1")
    assert len(authed_api.called("get_esign_status")) == 2
    assert surface.handles[0].closed


@pytest.mark.asyncio
async def test_window_closed_without_completion_fails(authed_api):
    surface = FakeSigningSurface(close_immediately=True)
    gate = make_gate(authed_api, surface)

    outcome = await gate.start_verification(ProductType.PORTFOLIO, "p1", consent=agree)

    assert outcome.state == EsignState.FAILED
    assert outcome.reason == "window_closed"
    assert not gate.is_satisfied(ProductType.PORTFOLIO, "p1")


@pytest.mark.asyncio
async def test_polling_stops_after_max_attempts(authed_api, surface):
    gate = make_gate(authed_api, surface, max_polls=3)

    outcome = await gate.start_verification(ProductType.PORTFOLIO, "p1", consent=agree)

    assert outcome.state == EsignState.FAILED
    assert outcome.reason == "timeout"
    assert len(authed_api.called("get_esign_status")) == 3


@pytest.mark.asyncio
async def test_blocked_popup_offers_same_tab_fallback(authed_api, session):
    surface = FakeSigningSurface(blocked=True)
    gate = make_gate(authed_api, surface, session)

    outcome = await gate.start_verification(ProductType.PORTFOLIO, "p1", consent=agree)

    assert outcome.state == EsignState.FAILED
    assert outcome.reason == "popup_blocked"
    assert outcome.fallback_url == "https://sign.example/DOC-1"

    reopened = await gate.open_in_same_tab()
    assert reopened.redirected
    assert surface.opened[-1] == ("https://sign.example/DOC-1", SurfaceMode.REDIRECT)
    assert (await session.get(SessionKeys.ESIGN_PENDING))["document_id"] == "DOC-1"


@pytest.mark.asyncio
async def test_completed_artifact_skips_second_verification(authed_api, surface):
    authed_api.esign_statuses = [{"status": "completed"}]
    gate = make_gate(authed_api, surface)
    await gate.start_verification(ProductType.BUNDLE, "b1", consent=agree)

    again = await gate.start_verification(ProductType.BUNDLE, "b1", consent=decline)

    assert again.completed
    assert again.reason == "already_signed"
    assert len(authed_api.called("create_esign_request")) == 1


@pytest.mark.asyncio
async def test_backend_signal_document_is_reused(authed_api, surface):
    authed_api.esign_statuses = [{"status": "completed"}]
    gate = make_gate(authed_api, surface)
    signal = EsignRequired(document_id="DOC-9", authentication_url="https://sign.example/DOC-9")

    outcome = await gate.start_verification(ProductType.PORTFOLIO, "p1", consent=agree, signal=signal, force=True)

    assert outcome.artifact.document_id == "DOC-9"
    assert authed_api.called("create_esign_request") == []
    assert surface.opened[0][0] == "https://sign.example/DOC-9"


@pytest.mark.asyncio
async def test_declined_consent_is_cancelled(authed_api, surface):
    gate = make_gate(authed_api, surface)

    outcome = await gate.start_verification(ProductType.PORTFOLIO, "p1", consent=decline)

    assert outcome.state == EsignState.CANCELLED
    assert surface.opened == []


@pytest.mark.asyncio
async def test_cancel_while_signing_stops_polling(authed_api, surface):
    gate = None

    async def cancelling_sleep(_seconds):
        await gate.cancel()

    gate = make_gate(authed_api, surface, sleep=cancelling_sleep)

    outcome = await gate.start_verification(ProductType.PORTFOLIO, "p1", consent=agree)

    assert outcome.state == EsignState.CANCELLED
    assert outcome.reason == "user_cancelled"
    assert authed_api.called("get_esign_status") == []
    assert surface.handles[0].closed


@pytest.mark.asyncio
async def test_mobile_redirect_then_resume(authed_api, session):
    surface = FakeSigningSurface()
    gate = make_gate(authed_api, surface, session, user_agent=MOBILE_UA)

    outcome = await gate.start_verification(ProductType.PORTFOLIO, "p1", consent=agree)

    assert outcome.redirected
    assert surface.opened[0][1] == SurfaceMode.REDIRECT
    assert await session.get(SessionKeys.ESIGN_PENDING) is not None

    authed_api.esign_statuses = [{"status": "pending"}, {"status": "completed"}]
    returned = make_gate(authed_api, FakeSigningSurface(), session, user_agent=MOBILE_UA)
    resumed = await returned.resume_after_redirect()

    assert resumed.completed
    assert returned.is_satisfied(ProductType.PORTFOLIO, "p1")
    assert await session.get(SessionKeys.ESIGN_PENDING) is None


@pytest.mark.asyncio
async def test_resume_gives_up_after_bounded_checks(authed_api, session):
    gate = make_gate(authed_api, FakeSigningSurface(), session, user_agent=MOBILE_UA, resume_attempts=2)
    await gate.start_verification(ProductType.PORTFOLIO, "p1", consent=agree)

    outcome = await gate.resume_after_redirect()

    assert outcome.state == EsignState.FAILED
    assert len(authed_api.called("get_esign_status")) == 2


@pytest.mark.asyncio
async def test_resume_without_pending_document(authed_api, session, surface):
    gate = make_gate(authed_api, surface, session)

    outcome = await gate.resume_after_redirect()

    assert outcome.state == EsignState.FAILED
    assert outcome.reason == "nothing_to_resume"
