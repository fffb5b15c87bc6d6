"""
Phone certification as an explicit state machine:

    otp ──verify──▶ ussd ──capture──▶ validation ──complete──▶ complete
     └────skip─────▶  └─────skip──────▶

No backward edges. Failures inside a state (wrong code, analyzer error) leave
the flags false and never block forward progress.
"""
import asyncio
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Optional, Protocol, Sequence, Tuple

from trustproof.errors import InvalidTransition, OtpError
from trustproof.schemas import (
    PhoneCertificationResult,
    PhoneCertificationView,
    ProofFlags,
    ProofLevel,
    SmsAnalysis,
    SmsMessage,
    UssdAnalysis,
)
from trustproof.services.otp import OtpService
from trustproof.services.sms import analyze_sms_messages

logger = logging.getLogger(__name__)

PROOF_POINTS = {
    "otp_verified": 25,
    "ussd_captured": 25,
    "name_matched": 35,
    "sms_analyzed": 15,
}

LEVEL_THRESHOLDS = (
    (80, ProofLevel.CERTIFIED),
    (50, ProofLevel.MEDIUM),
    (20, ProofLevel.LOW),
)

MAX_CODE_LENGTH = 6
WRONG_CODE = "Code incorrect or expired"


class CertificationState(str, Enum):
    OTP = "otp"
    USSD = "ussd"
    VALIDATION = "validation"
    COMPLETE = "complete"


TRANSITIONS: Dict[Tuple[CertificationState, str], CertificationState] = {
    (CertificationState.OTP, "otp_verified"): CertificationState.USSD,
    (CertificationState.OTP, "skip"): CertificationState.USSD,
    (CertificationState.USSD, "captured"): CertificationState.VALIDATION,
    (CertificationState.USSD, "skip"): CertificationState.VALIDATION,
    (CertificationState.VALIDATION, "complete"): CertificationState.COMPLETE,
}


class VisualProofAnalyzer(Protocol):
    def analyze(self, screenshot: bytes, reference_name: Optional[str]) -> UssdAnalysis: ...


def compute_trust_score(flags: ProofFlags) -> int:
    return sum(points for name, points in PROOF_POINTS.items() if getattr(flags, name))


def classify_proof_level(score: int) -> ProofLevel:
    for threshold, level in LEVEL_THRESHOLDS:
        if score >= threshold:
            return level
    return ProofLevel.NONE


class PhoneCertificationFlow:
    def __init__(
        self,
        phone_number: str,
        identity_name: Optional[str],
        otp_service: OtpService,
        analyzer: VisualProofAnalyzer,
        name_match_threshold: float = 85,
        purpose: str = "kyc",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.phone_number = phone_number
        self.identity_name = identity_name
        self.otp_service = otp_service
        self.analyzer = analyzer
        self.name_match_threshold = name_match_threshold
        self.purpose = purpose
        self._clock = clock

        self.state = CertificationState.OTP
        self.flags = ProofFlags()
        self.name_match_score: Optional[float] = None
        self.ussd_analysis: Optional[UssdAnalysis] = None
        self.sms_analysis: Optional[SmsAnalysis] = None
        self.error: Optional[str] = None
        self.code_sent = False
        self.masked_phone: Optional[str] = None
        self.result: Optional[PhoneCertificationResult] = None
        self._expires_at = 0.0
        self._code_generation = 0

    # ---- transitions ----

    def _advance(self, action: str) -> None:
        target = TRANSITIONS.get((self.state, action))
        if target is None:
            raise InvalidTransition(self.state.value, action)
        logger.debug("Phone certification %s -> %s (%s)", self.state.value, target.value, action)
        self.state = target
        self.error = None

    def _require(self, state: CertificationState, action: str) -> None:
        if self.state is not state:
            raise InvalidTransition(self.state.value, action)

    # ---- otp ----

    async def start(self) -> None:
        """Entering the otp state dispatches a code unless one is already out."""
        if self.state is CertificationState.OTP and not self.code_sent and not self.flags.otp_verified:
            await self.send_code()

    async def send_code(self) -> bool:
        self._require(CertificationState.OTP, "send_code")
        self._code_generation += 1
        self.error = None
        try:
            dispatch = await asyncio.to_thread(self.otp_service.send, self.phone_number, self.purpose)
        except OtpError as e:
            logger.warning("OTP dispatch failed: %s", e)
            self.error = "The code could not be sent"
            return False
        self.code_sent = True
        self.masked_phone = dispatch.masked_phone
        self._expires_at = self._clock() + dispatch.expires_in_seconds
        return True

    async def resend_code(self) -> bool:
        self._require(CertificationState.OTP, "resend_code")
        # New generation: an in-flight verification of the old code is discarded
        self.code_sent = False
        self._expires_at = 0.0
        return await self.send_code()

    @property
    def expires_in(self) -> int:
        if not self.code_sent:
            return 0
        return max(0, int(self._expires_at - self._clock()))

    async def verify_code(self, code: str) -> bool:
        self._require(CertificationState.OTP, "verify_code")
        code = code.strip()
        if not code or len(code) > MAX_CODE_LENGTH:
            self.error = WRONG_CODE
            return False

        generation = self._code_generation
        try:
            ok = await asyncio.to_thread(self.otp_service.verify, self.phone_number, code, self.purpose)
        except OtpError as e:
            logger.warning("OTP verification failed: %s", e)
            self.error = "Verification failed, please retry"
            return False

        if generation != self._code_generation or self.state is not CertificationState.OTP:
            logger.info("Discarding verification of a superseded code")
            return False
        if not ok:
            self.error = WRONG_CODE
            return False

        self.flags = self.flags.model_copy(update={"otp_verified": True})
        self._advance("otp_verified")
        return True

    # ---- ussd ----

    async def submit_screenshot(self, screenshot: bytes) -> Optional[UssdAnalysis]:
        self._require(CertificationState.USSD, "submit_screenshot")
        try:
            analysis = await asyncio.to_thread(self.analyzer.analyze, screenshot, self.identity_name)
        except Exception:
            logger.warning("Screenshot analysis failed, continuing without capture proof", exc_info=True)
            self.flags = self.flags.model_copy(update={"ussd_captured": False, "name_matched": False})
            self._advance("captured")
            return None

        # None when no name could be read from the capture
        match_score = analysis.name_match_result.match_score if analysis.name_match_result else None
        self.ussd_analysis = analysis
        self.name_match_score = match_score
        self.flags = self.flags.model_copy(update={
            "ussd_captured": True,
            "name_matched": (
                match_score is not None and match_score >= self.name_match_threshold and analysis.can_certify
            ),
        })
        self._advance("captured")
        return analysis

    def submit_sms(self, messages: Sequence[SmsMessage]) -> SmsAnalysis:
        """Accepted before validation. A weaker later batch never replaces a certifying one."""
        if self.state not in (CertificationState.OTP, CertificationState.USSD):
            raise InvalidTransition(self.state.value, "submit_sms")
        analysis = analyze_sms_messages(messages)
        if analysis.can_certify or not self.flags.sms_analyzed:
            self.sms_analysis = analysis
            self.flags = self.flags.model_copy(update={"sms_analyzed": analysis.can_certify})
        return analysis

    @property
    def sms_confidence(self) -> Optional[float]:
        return self.sms_analysis.confidence if self.sms_analysis else None

    def skip(self) -> None:
        self._advance("skip")

    # ---- validation ----

    @property
    def trust_score(self) -> int:
        return compute_trust_score(self.flags)

    @property
    def proof_level(self) -> ProofLevel:
        return classify_proof_level(self.trust_score)

    def complete(self) -> PhoneCertificationResult:
        self._require(CertificationState.VALIDATION, "complete")
        score = self.trust_score
        self.result = PhoneCertificationResult(
            phone_number=self.phone_number,
            proof_level=classify_proof_level(score),
            trust_score=score,
            proofs=self.flags,
            name_match_score=self.name_match_score,
            sms_confidence=self.sms_confidence,
            certified_at=datetime.now(timezone.utc),
        )
        self._advance("complete")
        return self.result

    def view(self) -> PhoneCertificationView:
        return PhoneCertificationView(
            state=self.state.value,
            phone_number=self.phone_number,
            code_sent=self.code_sent,
            masked_phone=self.masked_phone,
            expires_in_seconds=self.expires_in,
            error=self.error,
            proofs=self.flags,
            trust_score=self.trust_score,
            proof_level=self.proof_level,
            name_match_score=self.name_match_score,
            sms_confidence=self.sms_confidence,
            result=self.result,
        )
