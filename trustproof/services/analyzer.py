"""
Identity-document analysis behind ``POST /api/documents/analyze``.

MRZ first (highest confidence, checksum-validated), then labelled-field
regexes for whatever the MRZ did not provide.
"""
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from trustproof.schemas import DocumentAnalysisRequest, DocumentAnalysisResponse
from trustproof.services.mrz import CEDEAO_COUNTRY_CODES, UEMOA_COUNTRY_CODES, parse_mrz

NAME_CHARS = r"[A-ZÀ-ÿ '\-]+"

SURNAME_PATTERN = re.compile(rf"(?:\bNOM\b|SURNAME|FAMILY\s*NAME)\s*:?[ \t]+({NAME_CHARS})", re.IGNORECASE)
GIVEN_PATTERN = re.compile(rf"(?:PR[ÉE]NOMS?|GIVEN\s*NAMES?|FIRST\s*NAME)\s*:?[ \t]+({NAME_CHARS})", re.IGNORECASE)
FULL_NAME_PATTERN = re.compile(rf"(?:NOM\s*ET\s*PR[ÉE]NOMS?|FULL\s*NAME)\s*:?[ \t]+({NAME_CHARS})", re.IGNORECASE)

LABELLED_BIRTH_DATE = re.compile(
    r"(?:N[ÉE]E?\s*LE|DATE\s*(?:DE\s*)?NAISSANCE|BIRTH\s*DATE|DATE\s*OF\s*BIRTH)\s*:?\s*(\d{2}[/\-.]\d{2}[/\-.]\d{4})",
    re.IGNORECASE,
)
ANY_DATE = re.compile(r"(\d{2}[/\-.]\d{2}[/\-.]\d{4})")
EXPIRY_DATE = re.compile(
    r"(?:EXPIR\w*|VALID\w*\s*(?:UNTIL|JUSQU\w*)|FIN\s*(?:DE\s*)?VALIDIT\w*)\s*:?\s*(\d{2}[/\-.]\d{2}[/\-.]\d{4})",
    re.IGNORECASE,
)
DOCUMENT_NUMBER_PATTERNS = [
    re.compile(r"(?:DOCUMENT|\bID|\bCNI)\s*N[°O]?\s*:?\s*([A-Z0-9\-/]{6,20})", re.IGNORECASE),
    re.compile(r"\bN[°O]\s*:?\s*([A-Z0-9\-/]{6,20})", re.IGNORECASE),
    re.compile(r"\b([A-Z]{1,2}\d{6,12})\b"),
]
GENDER_PATTERN = re.compile(r"(?:SEXE|SEX)\s*:?\s*([MF])\b", re.IGNORECASE)

COUNTRY_PATTERNS = [
    (re.compile(r"C[ÔO]TE\s*D['’]?\s*IVOIRE|IVORY\s*COAST", re.IGNORECASE), "CIV"),
    (re.compile(r"S[ÉE]N[ÉE]GAL", re.IGNORECASE), "SEN"),
    (re.compile(r"\bMALI\b", re.IGNORECASE), "MLI"),
    (re.compile(r"BURKINA\s*FASO", re.IGNORECASE), "BFA"),
    (re.compile(r"\bTOGO", re.IGNORECASE), "TGO"),
    (re.compile(r"B[ÉE]NIN", re.IGNORECASE), "BEN"),
    (re.compile(r"\bNIGER(?!IA)", re.IGNORECASE), "NER"),
    (re.compile(r"GUIN[ÉE]E[\s\-]BISSAU", re.IGNORECASE), "GNB"),
]

DOCUMENT_TYPE_PATTERNS = [
    (re.compile(r"CARTE\s*NATIONALE\s*D['’]?\s*IDENTIT[ÉE]|\bCNI\b", re.IGNORECASE), "cni"),
    (re.compile(r"PASSEPORT|PASSPORT", re.IGNORECASE), "passport"),
    (re.compile(r"PERMIS\s*DE\s*CONDUIRE|DRIVING\s*LICEN[CS]E", re.IGNORECASE), "permis"),
    (re.compile(r"CARTE\s*DE\s*S[ÉE]JOUR|RESIDENT", re.IGNORECASE), "carte_sejour"),
]

# Confidence reported when nothing at all could be extracted
EMPTY_CONFIDENCE = 20


@dataclass
class ExtractedField:
    name: str
    value: str
    confidence: int
    source: str


def normalize_date(value: str) -> str:
    day, month, year = re.split(r"[/\-.]", value)
    return f"{day}/{month}/{year}"


def detect_document_type(text: str) -> str:
    for pattern, document_type in DOCUMENT_TYPE_PATTERNS:
        if pattern.search(text):
            return document_type
    return "unknown"


def _regex_fields(text: str, found: Dict[str, ExtractedField]) -> List[ExtractedField]:
    fields: List[ExtractedField] = []

    if "full_name" not in found:
        last = SURNAME_PATTERN.search(text)
        first = GIVEN_PATTERN.search(text)
        last_name = last.group(1).strip() if last else ""
        first_name = first.group(1).strip() if first else ""
        if not (last_name or first_name):
            both = FULL_NAME_PATTERN.search(text)
            parts = both.group(1).split() if both else []
            if len(parts) >= 2:
                last_name, first_name = parts[0], " ".join(parts[1:])
        if last_name or first_name:
            fields.append(ExtractedField(
                "full_name", " ".join(p for p in (last_name, first_name) if p),
                70 if last_name and first_name else 50, "ocr_regex",
            ))

    if "birth_date" not in found:
        labelled = LABELLED_BIRTH_DATE.search(text)
        if labelled:
            fields.append(ExtractedField("birth_date", normalize_date(labelled.group(1)), 75, "ocr_regex"))
        else:
            anywhere = ANY_DATE.search(text)
            if anywhere:
                fields.append(ExtractedField("birth_date", normalize_date(anywhere.group(1)), 40, "ocr_regex"))

    if "document_number" not in found:
        for pattern in DOCUMENT_NUMBER_PATTERNS:
            m = pattern.search(text)
            if m:
                fields.append(ExtractedField("document_number", m.group(1).strip(), 60, "ocr_regex"))
                break

    if "expiry_date" not in found:
        m = EXPIRY_DATE.search(text)
        if m:
            fields.append(ExtractedField("expiry_date", normalize_date(m.group(1)), 70, "ocr_regex"))

    if "gender" not in found:
        m = GENDER_PATTERN.search(text)
        if m:
            fields.append(ExtractedField("gender", m.group(1).upper(), 60, "ocr_regex"))

    if "issuing_country" not in found:
        for pattern, country in COUNTRY_PATTERNS:
            if pattern.search(text):
                fields.append(ExtractedField("issuing_country", country, 80, "ocr_regex"))
                break

    return fields


def analyze_document(request: DocumentAnalysisRequest) -> DocumentAnalysisResponse:
    text = request.ocr_text
    warnings: List[str] = []
    found: Dict[str, ExtractedField] = {}

    mrz = parse_mrz(text)
    if mrz is not None:
        candidates = [
            ("full_name", mrz.full_name, 98 if mrz.valid else 85),
            ("document_number", mrz.document_number, 100 if mrz.valid_document_number else 75),
            ("birth_date", mrz.date_of_birth, 100 if mrz.valid_date_of_birth else 80),
            ("expiry_date", mrz.expiry_date, 100 if mrz.valid_expiry_date else 80),
            ("issuing_country", mrz.issuing_country, 95),
            ("nationality", mrz.nationality, 95),
            ("gender", mrz.sex if mrz.sex in ("M", "F") else "", 95),
        ]
        for name, value, confidence in candidates:
            if value:
                found[name] = ExtractedField(name, value, confidence, "mrz")
        if not mrz.valid:
            warnings.append("MRZ detected but checksum validation failed")
    else:
        warnings.append("No MRZ zone detected")

    mrz_validated = mrz is not None and mrz.valid
    if not mrz_validated or len(found) < 3:
        for f in _regex_fields(text, found):
            found[f.name] = f

    document_type = {"passport": "passport", "id_card": "cni"}.get(mrz.document_type if mrz else "", "unknown")
    if document_type == "unknown":
        document_type = detect_document_type(text)

    country = found["issuing_country"].value if "issuing_country" in found else None
    is_uemoa = bool(mrz and mrz.is_uemoa) or (country is not None and country in UEMOA_COUNTRY_CODES)
    is_cedeao = bool(mrz and mrz.is_cedeao) or (country is not None and country in CEDEAO_COUNTRY_CODES)

    if found:
        confidence = round(sum(f.confidence for f in found.values()) / len(found))
    else:
        confidence = EMPTY_CONFIDENCE
    if mrz_validated:
        confidence = max(confidence, 90)

    def value(name: str) -> Optional[str]:
        return found[name].value if name in found else None

    return DocumentAnalysisResponse(
        document_type=document_type,
        full_name=value("full_name"),
        birth_date=value("birth_date"),
        document_number=value("document_number"),
        expiry_date=value("expiry_date"),
        nationality=value("nationality") or country,
        gender=value("gender"),
        issuing_country=country,
        mrz_validated=mrz_validated,
        is_uemoa=is_uemoa,
        is_cedeao=is_cedeao,
        extraction_confidence=confidence,
        validation_warnings=warnings,
        raw_fields={name: f.value for name, f in found.items()},
        field_sources={name: f"{f.source}:{f.confidence}" for name, f in found.items()},
    )

