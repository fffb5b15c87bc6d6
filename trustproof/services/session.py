import asyncio
import logging
import uuid
from typing import Awaitable, Dict, Mapping, Optional, Set

from trustproof.errors import InvalidTransition, SessionNotFound, StaleResult
from trustproof.schemas import (
    CertaintySnapshot,
    ExtractedIdentityFields,
    PhoneCertificationResult,
    ProofSource,
    ProofSourceType,
)
from trustproof.services.fields import confirm_fields
from trustproof.services.phone_certification import CertificationState, PhoneCertificationFlow
from trustproof.services.pipeline import PipelineOutcome
from trustproof.services.registry import ProofRegistry

logger = logging.getLogger(__name__)

# Hand-typed identity fields carry no recognition confidence
MANUAL_ENTRY_CONFIDENCE = 0.0


class DocumentJob:
    """One document analysis running in the background, addressed by its token."""

    def __init__(self, token: str):
        self.token = token
        self.task: Optional["asyncio.Task[PipelineOutcome]"] = None
        self.slow_analysis = False
        self.confirmed = False
        self._slow = asyncio.Event()

    def mark_slow(self) -> None:
        self.slow_analysis = True
        self._slow.set()

    @property
    def pending(self) -> bool:
        return self.task is not None and not self.task.done()

    @property
    def outcome(self) -> Optional[PipelineOutcome]:
        if self.task is None or not self.task.done() or self.task.cancelled() or self.task.exception():
            return None
        return self.task.result()

    @property
    def error(self) -> Optional[BaseException]:
        if self.task is None or not self.task.done() or self.task.cancelled():
            return None
        return self.task.exception()

    async def wait(self) -> None:
        """Return once the analysis is finished or has been flagged slow."""
        if self.task is None:
            return
        slow = asyncio.ensure_future(self._slow.wait())
        try:
            await asyncio.wait({self.task, slow}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            slow.cancel()


class VerificationSession:
    """
    Owns the proof registry for one user going through verification.
    Document results are keyed by a token; only the newest token is current,
    so a late result for an abandoned document is rejected instead of registered.
    """

    def __init__(self, session_id: Optional[str] = None):
        self.id = session_id or uuid.uuid4().hex
        self.registry = ProofRegistry()
        self.document_token: Optional[str] = None
        self.document_job: Optional[DocumentJob] = None
        self.pending_fields: Optional[ExtractedIdentityFields] = None
        self.identity: Optional[ExtractedIdentityFields] = None
        self.phone_flow: Optional[PhoneCertificationFlow] = None
        self.phone_result: Optional[PhoneCertificationResult] = None
        self.closed = False
        self._tasks: Set[asyncio.Task] = set()

    # ---- document ----

    def begin_document(self) -> str:
        self.document_token = uuid.uuid4().hex
        self.document_job = DocumentJob(self.document_token)
        self.pending_fields = None
        return self.document_token

    def cancel_document(self) -> None:
        self.document_token = None
        self.document_job = None
        self.pending_fields = None

    def _check_current(self, token: str) -> None:
        if self.closed or token != self.document_token:
            logger.warning("Discarding result for stale document token %s", token[:8])
            raise StaleResult("This document is no longer the current one")

    def job(self, token: str) -> DocumentJob:
        self._check_current(token)
        return self.document_job

    def start_analysis(self, token: str, analysis: Awaitable[PipelineOutcome]) -> DocumentJob:
        """Run ``analysis`` in the background; its fields become the preview if still wanted."""
        job = self.job(token)
        job.task = asyncio.ensure_future(self._collect(job, analysis))
        self._tasks.add(job.task)
        job.task.add_done_callback(self._analysis_done)
        return job

    async def _collect(self, job: DocumentJob, analysis: Awaitable[PipelineOutcome]) -> PipelineOutcome:
        outcome = await analysis
        if job.confirmed or self.closed or job.token != self.document_token:
            logger.info("Dropping late analysis of document %s", job.token[:8])
        else:
            self.pending_fields = outcome.fields
        return outcome

    def _analysis_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Document analysis failed: %s", task.exception())

    def store_preview(self, token: str, fields: ExtractedIdentityFields) -> None:
        self._check_current(token)
        self.pending_fields = fields

    def confirm_document(
        self,
        token: str,
        corrections: Optional[Mapping[str, Optional[str]]] = None,
        acknowledge_review: bool = False,
        review_threshold: float = 70,
    ) -> ExtractedIdentityFields:
        self._check_current(token)
        if self.pending_fields is None:
            raise StaleResult("No extracted fields are waiting for confirmation")
        fields = confirm_fields(self.pending_fields, corrections, acknowledge_review, review_threshold)
        self.identity = fields
        self.pending_fields = None
        if self.document_job is not None:
            self.document_job.confirmed = True
        self.registry.register(ProofSource(
            type=ProofSourceType.DOCUMENT_OCR,
            verified=True,
            detail_score=fields.extraction_confidence,
        ))
        return fields

    def confirm_manual_entry(
        self,
        token: str,
        fields: Mapping[str, Optional[str]],
        acknowledge_review: bool = False,
        review_threshold: float = 70,
    ) -> ExtractedIdentityFields:
        """
        Accept identity fields typed by the user instead of waiting for OCR.

        They are registered as declarative evidence, and the OCR result for the
        same token is dropped when it arrives.
        """
        job = self.job(token)
        if job.confirmed:
            raise StaleResult("This document has already been confirmed")
        identity = confirm_fields(
            ExtractedIdentityFields(extraction_confidence=MANUAL_ENTRY_CONFIDENCE),
            fields, acknowledge_review, review_threshold,
        )
        job.confirmed = True
        self.identity = identity
        self.pending_fields = None

        current = self.registry.get(ProofSourceType.DOCUMENT_OCR)
        if current is None or not current.verified:
            self.registry.register(ProofSource(
                type=ProofSourceType.DOCUMENT_OCR,
                verified=False,
                detail_score=MANUAL_ENTRY_CONFIDENCE,
            ))
        return identity

    # ---- phone ----

    def start_phone(self, flow: PhoneCertificationFlow) -> None:
        """A new flow may only replace one that has not left the otp state."""
        if self.phone_result is not None:
            raise InvalidTransition(CertificationState.COMPLETE.value, "start")
        current = self.phone_flow
        if current is not None and current.state is not CertificationState.OTP:
            raise InvalidTransition(current.state.value, "start")
        self.phone_flow = flow

    def record_phone_result(self, result: PhoneCertificationResult) -> None:
        proofs = result.proofs
        self.phone_result = result
        self.registry.register(ProofSource(type=ProofSourceType.OTP, verified=proofs.otp_verified))
        self.registry.register(ProofSource(
            type=ProofSourceType.USSD_CAPTURE,
            verified=proofs.ussd_captured and proofs.name_matched,
            detail_score=result.name_match_score,
        ))
        if proofs.sms_analyzed:
            self.registry.register(ProofSource(
                type=ProofSourceType.SMS_ANALYSIS,
                verified=True,
                detail_score=result.sms_confidence,
            ))

    def snapshot(self) -> CertaintySnapshot:
        return self.registry.snapshot()

    def close(self) -> None:
        self.cancel_document()
        self.registry.clear()
        self.phone_flow = None
        self.closed = True


class SessionStore:
    def __init__(self) -> None:
        self._sessions: Dict[str, VerificationSession] = {}

    def create(self) -> VerificationSession:
        session = VerificationSession()
        self._sessions[session.id] = session
        return session

    def get(self, session_id: str) -> VerificationSession:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise SessionNotFound(f"Unknown verification session {session_id}") from None

    def close(self, session_id: str) -> None:
        self.get(session_id).close()
        del self._sessions[session_id]

    def __len__(self) -> int:
        return len(self._sessions)
