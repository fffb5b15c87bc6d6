import logging
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse

from trustproof.config import Settings, get_settings
from trustproof.errors import (
    InvalidTransition,
    InvalidUpload,
    ManualReviewRequired,
    OcrFailure,
    SessionNotFound,
    StaleResult,
)
from trustproof.schemas import (
    CertaintySnapshot,
    DocumentAnalysisRequest,
    DocumentAnalysisResponse,
    DocumentConfirmation,
    DocumentPreview,
    DocumentStatus,
    ExtractedIdentityFields,
    OtpVerifyRequest,
    PhoneCertificationView,
    PhoneStartRequest,
    SessionCreated,
    SmsSubmission,
)
from trustproof.services.analyzer import analyze_document
from trustproof.services.document_service import DocumentAnalysisClient
from trustproof.services.fields import FieldExtractionEngine, requires_manual_review
from trustproof.services.ocr import TesseractEngine
from trustproof.services.otp import OtpClient
from trustproof.services.phone_certification import PhoneCertificationFlow
from trustproof.services.pipeline import DocumentPipeline, PipelineOutcome
from trustproof.services.session import DocumentJob, SessionStore, VerificationSession
from trustproof.services.ussd import UssdScreenshotAnalyzer
from trustproof.utils.image import read_upload

settings: Settings = get_settings()
logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="TrustProof", version="0.1.0")

# Global singletons (lazy init)
_engine: Optional[TesseractEngine] = None
_store = SessionStore()


def ocr_engine() -> TesseractEngine:
    global _engine
    if _engine is None:
        _engine = TesseractEngine(lang=settings.OCR_LANG, tesseract_cmd=settings.TESSERACT_CMD)
    return _engine


def document_pipeline(engine: TesseractEngine = Depends(ocr_engine)) -> DocumentPipeline:
    client = DocumentAnalysisClient(
        settings.DOCUMENT_ANALYZE_URL, api_key=settings.SERVICE_API_KEY, timeout=settings.HTTP_TIMEOUT
    )
    return DocumentPipeline(engine, FieldExtractionEngine(client), slow_threshold=settings.OCR_SLOW_THRESHOLD_SECONDS)


def otp_service() -> OtpClient:
    return OtpClient(
        settings.OTP_SEND_URL, settings.OTP_VERIFY_URL,
        api_key=settings.SERVICE_API_KEY, timeout=settings.HTTP_TIMEOUT,
    )


def screenshot_analyzer(engine: TesseractEngine = Depends(ocr_engine)) -> UssdScreenshotAnalyzer:
    return UssdScreenshotAnalyzer(engine, name_threshold=settings.NAME_MATCH_THRESHOLD)


def session_store() -> SessionStore:
    return _store


def current_session(session_id: str, store: SessionStore = Depends(session_store)) -> VerificationSession:
    return store.get(session_id)


def phone_flow(session: VerificationSession = Depends(current_session)) -> PhoneCertificationFlow:
    if session.phone_flow is None:
        raise HTTPException(status_code=409, detail="Phone certification has not been started.")
    return session.phone_flow


# ---- error mapping ----

@app.exception_handler(SessionNotFound)
async def session_not_found_handler(request: Request, exc: SessionNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(StaleResult)
@app.exception_handler(InvalidTransition)
async def conflict_handler(request: Request, exc: Exception):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(InvalidUpload)
async def invalid_upload_handler(request: Request, exc: InvalidUpload):
    return JSONResponse(status_code=400, content={"detail": f"Invalid image upload: {exc}"})


@app.exception_handler(ManualReviewRequired)
async def manual_review_handler(request: Request, exc: ManualReviewRequired):
    return JSONResponse(
        status_code=422,
        content={"detail": str(exc), "manual_review_required": True, "confidence": exc.confidence},
    )


@app.exception_handler(OcrFailure)
async def ocr_failure_handler(request: Request, exc: OcrFailure):
    return JSONResponse(status_code=422, content={"detail": str(exc), "retry": True})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("%s %s failed", request.method, request.url, exc_info=exc)
    # Return JSON so the frontend can display it
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal Server Error", "error": str(exc)},
    )


# ---- routes ----

@app.get("/api/health")
def health():
    return {"status": "ok"}


@app.post("/api/documents/analyze", response_model=DocumentAnalysisResponse)
def documents_analyze(body: DocumentAnalysisRequest):
    return analyze_document(body)


@app.post("/api/sessions", response_model=SessionCreated, status_code=201)
def create_session(store: SessionStore = Depends(session_store)):
    return SessionCreated(session_id=store.create().id)


@app.delete("/api/sessions/{session_id}", status_code=204)
def close_session(session_id: str, store: SessionStore = Depends(session_store)):
    store.close(session_id)


@app.get("/api/sessions/{session_id}/snapshot", response_model=CertaintySnapshot)
def session_snapshot(session: VerificationSession = Depends(current_session)):
    return session.snapshot()


def _preview(token: str, outcome: PipelineOutcome, slow_analysis: bool) -> DocumentPreview:
    return DocumentPreview(
        document_token=token,
        fields=outcome.fields,
        requires_manual_review=requires_manual_review(outcome.fields, settings.MANUAL_REVIEW_THRESHOLD),
        degraded=outcome.degraded,
        degraded_reason=outcome.degraded_reason,
        slow_analysis=slow_analysis or outcome.slow_analysis,
        applied_steps=outcome.applied_steps,
    )


def _status(job: DocumentJob) -> DocumentStatus:
    status = DocumentStatus(document_token=job.token, status="pending", slow_analysis=job.slow_analysis)
    if job.confirmed:
        status.status = "confirmed"
    elif job.error is not None:
        status.status = "failed"
        status.error = str(job.error)
        status.retry = isinstance(job.error, OcrFailure)
    elif job.outcome is not None:
        status.status = "ready"
        status.preview = _preview(job.token, job.outcome, job.slow_analysis)
    return status


@app.post("/api/sessions/{session_id}/document", response_model=DocumentPreview)
async def upload_document(
    document: UploadFile = File(...),
    document_type: str = Form("cni"),
    session: VerificationSession = Depends(current_session),
    pipeline: DocumentPipeline = Depends(document_pipeline),
):
    content = await read_upload(document, settings.MAX_UPLOAD_BYTES)
    token = session.begin_document()
    job = session.job(token)
    session.start_analysis(token, pipeline.run(content, document_type, on_slow=job.mark_slow))

    await job.wait()
    if job.pending:
        # Slow analysis: the client polls the status route or types the fields in
        return JSONResponse(status_code=202, content=_status(job).model_dump(mode="json"))

    outcome = await job.task
    session.job(token)  # StaleResult if another upload replaced this one meanwhile
    return _preview(token, outcome, job.slow_analysis)


@app.get("/api/sessions/{session_id}/document/{document_token}", response_model=DocumentStatus)
async def document_status(document_token: str, session: VerificationSession = Depends(current_session)):
    return _status(session.job(document_token))


@app.delete("/api/sessions/{session_id}/document", status_code=204)
def cancel_document(session: VerificationSession = Depends(current_session)):
    session.cancel_document()


@app.post("/api/sessions/{session_id}/document/confirm", response_model=ExtractedIdentityFields)
async def confirm_document(body: DocumentConfirmation, session: VerificationSession = Depends(current_session)):
    try:
        if body.manual_entry:
            return session.confirm_manual_entry(
                body.document_token,
                body.corrections,
                acknowledge_review=body.acknowledge_review,
                review_threshold=settings.MANUAL_REVIEW_THRESHOLD,
            )
        return session.confirm_document(
            body.document_token,
            corrections=body.corrections,
            acknowledge_review=body.acknowledge_review,
            review_threshold=settings.MANUAL_REVIEW_THRESHOLD,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/api/sessions/{session_id}/phone", response_model=PhoneCertificationView)
async def start_phone_certification(
    body: PhoneStartRequest,
    session: VerificationSession = Depends(current_session),
    otp: OtpClient = Depends(otp_service),
    analyzer: UssdScreenshotAnalyzer = Depends(screenshot_analyzer),
):
    identity_name = body.identity_name or (session.identity.full_name if session.identity else None)
    flow = PhoneCertificationFlow(
        body.phone_number, identity_name, otp, analyzer,
        name_match_threshold=settings.NAME_MATCH_THRESHOLD,
    )
    session.start_phone(flow)
    await flow.start()
    return flow.view()


@app.post("/api/sessions/{session_id}/phone/otp/resend", response_model=PhoneCertificationView)
async def resend_otp(flow: PhoneCertificationFlow = Depends(phone_flow)):
    await flow.resend_code()
    return flow.view()


@app.post("/api/sessions/{session_id}/phone/otp/verify", response_model=PhoneCertificationView)
async def verify_otp(body: OtpVerifyRequest, flow: PhoneCertificationFlow = Depends(phone_flow)):
    await flow.verify_code(body.code)
    return flow.view()


@app.post("/api/sessions/{session_id}/phone/ussd", response_model=PhoneCertificationView)
async def upload_ussd_capture(
    screenshot: UploadFile = File(...),
    flow: PhoneCertificationFlow = Depends(phone_flow),
):
    content = await read_upload(screenshot, settings.MAX_UPLOAD_BYTES)
    await flow.submit_screenshot(content)
    return flow.view()


@app.post("/api/sessions/{session_id}/phone/sms", response_model=PhoneCertificationView)
def submit_sms(body: SmsSubmission, flow: PhoneCertificationFlow = Depends(phone_flow)):
    flow.submit_sms(body.messages)
    return flow.view()


@app.post("/api/sessions/{session_id}/phone/skip", response_model=PhoneCertificationView)
def skip_phone_step(flow: PhoneCertificationFlow = Depends(phone_flow)):
    flow.skip()
    return flow.view()


@app.post("/api/sessions/{session_id}/phone/complete", response_model=PhoneCertificationView)
def complete_phone_certification(
    session: VerificationSession = Depends(current_session),
    flow: PhoneCertificationFlow = Depends(phone_flow),
):
    session.record_phone_result(flow.complete())
    return flow.view()
