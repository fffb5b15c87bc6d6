"""
Mobile-money profile screenshot analysis.

The screenshot is decoded and read in memory only; nothing is written to disk
and the bytes are not kept once ``analyze`` returns.
"""
import logging
import re
from typing import Dict, List, Optional, Tuple

from trustproof.schemas import UssdAnalysis
from trustproof.services.name_match import match_names
from trustproof.services.ocr import OcrEngine
from trustproof.utils.image import decode_image

logger = logging.getLogger(__name__)

PROVIDER_PATTERNS: Dict[str, List[re.Pattern]] = {
    "orange_money": [re.compile(p, re.I) for p in (
        r"orange\s*money", r"mon\s*compte\s*om", r"\*144#", r"\*122#", r"solde\s*disponible",
        r"orange\s*ci|orange\s*sn|orange\s*ml",
    )],
    "mtn_momo": [re.compile(p, re.I) for p in (
        r"mtn\s*mo(?:bile\s*)?mo(?:ney)?", r"momo", r"\*170#", r"\*126#", r"y'ello", r"mtn\s*ci|mtn\s*gh",
    )],
    "wave": [re.compile(p, re.I) for p in (r"wave", r"solde\s*wave", r"wave\s*mobile", r"transfert\s*wave")],
    "moov": [re.compile(p, re.I) for p in (r"moov\s*money", r"flooz", r"moov\s*africa", r"\*155#")],
}

SCREEN_TYPE_PATTERNS: Dict[str, List[re.Pattern]] = {
    "profile": [re.compile(p, re.I) for p in (
        r"profil|profile", r"mon\s*compte", r"informations?\s*personnelles?",
        r"nom\s*complet|nom\s*et\s*pr[eé]nom", r"titulaire", r"account\s*holder",
    )],
    "balance": [re.compile(p, re.I) for p in (
        r"solde|balance", r"disponible|available", r"fcfa|xof|gnf", r"votre\s*solde", r"your\s*balance",
    )],
    "history": [re.compile(p, re.I) for p in (
        r"historique|history", r"transactions?", r"derniers?\s*(?:op[eé]rations?|mouvements?)",
        r"recent\s*(?:transactions?|activity)",
    )],
    "menu": [re.compile(p, re.I) for p in (
        r"menu\s*principal", r"accueil|home", r"services?", r"transfert|paiement|retrait",
    )],
}

NAME_PATTERNS = [
    re.compile(r"(?:pr[eé]nom\s*et\s*nom|nom\s*et\s*pr[eé]nom)\s*:?\s*(.+)", re.I),
    re.compile(r"(?:nom\s*(?:complet)?|name|titulaire)\s*:?\s*([A-ZÀÂÄÉÈÊËÏÎÔÖÙÛÜÇ][A-Za-zàâäéèêëïîôöùûüç \t'-]+)", re.I),
    re.compile(r"^([A-Z][A-Za-z]+(?:[ \t]+[A-Z][A-Za-z]+){1,3})$", re.M),
]

PHONE_PATTERNS = [
    re.compile(r"(?:t[eé]l[eé]?(?:phone)?|num[eé]ro|n°|mobile)\s*:?\s*(\+?[\d\s-]{8,15})", re.I),
    re.compile(r"(\+?(?:221|225|223|226|228|229|245|224)[\d\s-]{8,12})"),
    re.compile(r"(\d{2}[\s.-]?\d{2}[\s.-]?\d{2}[\s.-]?\d{2}[\s.-]?\d{2})"),
]

AMOUNT_PATTERN = re.compile(r"([\d,]+)\s*(?:fcfa|xof)", re.I)

# Gate used before a capture may certify a phone number
CERTIFY_MIN_SCORE = 70


def detect_provider(text: str) -> str:
    for provider, patterns in PROVIDER_PATTERNS.items():
        if any(p.search(text) for p in patterns):
            return provider
    return "unknown"


def detect_screen_type(text: str) -> str:
    scores = {kind: sum(1 for p in patterns if p.search(text)) for kind, patterns in SCREEN_TYPE_PATTERNS.items()}
    best = max(scores.values())
    if best == 0:
        return "unknown"
    return next(kind for kind, score in scores.items() if score == best)


def extract_name(text: str) -> Optional[str]:
    for pattern in NAME_PATTERNS:
        m = pattern.search(text)
        if m and m.group(1):
            name = m.group(1).strip()
            if 3 <= len(name) <= 50 and " " in name:
                return name
    return None


def extract_phone(text: str) -> Optional[str]:
    for pattern in PHONE_PATTERNS:
        m = pattern.search(text)
        if m and m.group(1):
            phone = re.sub(r"[\s.-]", "", m.group(1))
            if 8 <= len(phone) <= 15:
                return phone
    return None


def tampering_probability(text: str, ocr_confidence: float) -> int:
    probability = 0
    if ocr_confidence < 60:
        probability += 20

    round_amounts = 0
    for raw in AMOUNT_PATTERN.findall(text):
        digits = re.sub(r"\D", "", raw)
        if digits and int(digits) > 0 and int(digits) % 10000 == 0:
            round_amounts += 1
    if round_amounts > 2:
        probability += 10

    # Mixed casing runs hint at pasted text
    if re.search(r"[A-Z]{3,}.*[a-z]{3,}.*[A-Z]{3,}", text):
        probability += 15

    has_name = any(p.search(text) for p in NAME_PATTERNS)
    has_phone = any(p.search(text) for p in PHONE_PATTERNS)
    if not has_name and not has_phone and detect_screen_type(text) == "profile":
        probability += 25

    return min(100, probability)


def ui_authenticity(text: str, provider: str) -> int:
    score = 50
    score += 10 * sum(1 for p in PROVIDER_PATTERNS.get(provider, []) if p.search(text))
    if re.search(r"menu|retour|suivant|\bok\b|annuler|valider", text, re.I):
        score += 10
    if re.search(r"\d{1,2}[:/h]\d{2}|\d{2}[/-]\d{2}[/-]\d{4}", text, re.I):
        score += 5
    if re.search(r"4g|3g|wifi|%|batterie|réseau", text, re.I):
        score += 5
    return min(100, score)


def certification_gate(analysis: UssdAnalysis) -> Tuple[bool, List[str], int]:
    reasons: List[str] = []
    score = 0

    if analysis.ocr_confidence >= 70:
        score += 20
    else:
        reasons.append("OCR quality too low")
    if analysis.provider != "unknown":
        score += 15
    else:
        reasons.append("Mobile-money provider not detected")
    if analysis.extracted_name:
        score += 20
    else:
        reasons.append("No name found on the capture")
    if analysis.extracted_phone:
        score += 10
    if analysis.tampering_probability < 30:
        score += 15
    elif analysis.tampering_probability > 50:
        reasons.append("Possible manipulation")
    if analysis.ui_authenticity_score >= 70:
        score += 10

    match = analysis.name_match_result
    if match is not None and match.is_match:
        score += 30
    elif match is not None:
        reasons.append(f"Name match: {match.match_score}%")

    return score >= CERTIFY_MIN_SCORE and not reasons, reasons, score


def analyze_text(text: str, ocr_confidence: float, reference_name: Optional[str],
                 name_threshold: float = 85) -> UssdAnalysis:
    provider = detect_provider(text)
    extracted_name = extract_name(text)
    analysis = UssdAnalysis(
        provider=provider,
        screen_type=detect_screen_type(text),
        extracted_name=extracted_name,
        extracted_phone=extract_phone(text),
        ocr_confidence=ocr_confidence,
        tampering_probability=tampering_probability(text, ocr_confidence),
        ui_authenticity_score=ui_authenticity(text, provider),
    )
    if reference_name and extracted_name:
        analysis.name_match_result = match_names(reference_name, extracted_name, threshold=name_threshold)

    can_certify, reasons, _ = certification_gate(analysis)
    analysis.can_certify = can_certify
    analysis.reasons = reasons
    return analysis


class UssdScreenshotAnalyzer:
    def __init__(self, engine: OcrEngine, name_threshold: float = 85):
        self.engine = engine
        self.name_threshold = name_threshold

    def analyze(self, screenshot: bytes, reference_name: Optional[str]) -> UssdAnalysis:
        image = decode_image(screenshot)
        ocr = self.engine.recognize(image)
        analysis = analyze_text(ocr.text, ocr.confidence, reference_name, self.name_threshold)
        logger.info(
            "Screenshot analyzed: provider=%s screen=%s can_certify=%s",
            analysis.provider, analysis.screen_type, analysis.can_certify,
        )
        return analysis
