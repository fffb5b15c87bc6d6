"""
MRZ detection for ID cards (TD1, 3x30) and passports (TD3, 2x44).
Check digits (ICAO 9303) are validated by passporteye's MRZ parser.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

from passporteye.mrz.text import MRZ

logger = logging.getLogger(__name__)

UEMOA_COUNTRY_CODES = frozenset({"SEN", "CIV", "MLI", "BFA", "NER", "TGO", "BEN", "GNB"})
CEDEAO_COUNTRY_CODES = UEMOA_COUNTRY_CODES | {"GHA", "NGA", "GIN", "LBR", "SLE", "GMB", "CPV"}

MRZ_LINE = re.compile(r"^[A-Z0-9<]{28,46}$")


@dataclass
class MrzData:
    mrz_type: str
    document_type: str  # "passport" | "id_card" | "unknown"
    issuing_country: str
    nationality: str
    last_name: str
    first_name: str
    document_number: str
    date_of_birth: str  # DD/MM/YYYY
    expiry_date: str  # DD/MM/YYYY
    sex: str
    valid: bool
    valid_document_number: bool
    valid_date_of_birth: bool
    valid_expiry_date: bool
    raw_lines: List[str] = field(default_factory=list)

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.last_name, self.first_name) if p)

    @property
    def is_uemoa(self) -> bool:
        return self.issuing_country in UEMOA_COUNTRY_CODES

    @property
    def is_cedeao(self) -> bool:
        return self.issuing_country in CEDEAO_COUNTRY_CODES

    @property
    def confidence(self) -> int:
        if self.valid:
            return 100
        return 80 if self.valid_document_number and self.valid_date_of_birth else 50


def format_mrz_date(yymmdd: str) -> str:
    if not yymmdd or len(yymmdd) != 6 or not yymmdd.isdigit():
        return ""
    yy, mm, dd = yymmdd[:2], yymmdd[2:4], yymmdd[4:]
    century = "19" if int(yy) > 30 else "20"
    return f"{dd}/{mm}/{century}{yy}"


def detect_mrz_lines(ocr_text: str) -> List[str]:
    cleaned = (re.sub(r"\s", "", line).upper() for line in ocr_text.splitlines())
    return [line for line in cleaned if MRZ_LINE.match(line)]


def _clean(value: Optional[str]) -> str:
    return (value or "").replace("<", " ").strip()


def _parse(lines: List[str]) -> Optional[MrzData]:
    try:
        mrz = MRZ(lines)
    except (ValueError, IndexError) as e:
        logger.debug("MRZ parser rejected lines: %s", e)
        return None
    if mrz.mrz_type is None:
        return None

    d = mrz.to_dict()
    code = d.get("type") or ""
    if mrz.mrz_type == "TD3":
        document_type = "passport"
    elif code.startswith("I"):
        document_type = "id_card"
    else:
        document_type = "unknown"

    return MrzData(
        mrz_type=mrz.mrz_type,
        document_type=document_type,
        issuing_country=_clean(d.get("country")).upper(),
        nationality=_clean(d.get("nationality")).upper(),
        last_name=_clean(d.get("surname")),
        first_name=_clean(d.get("names")),
        document_number=_clean(d.get("number")).replace(" ", ""),
        date_of_birth=format_mrz_date(d.get("date_of_birth") or ""),
        expiry_date=format_mrz_date(d.get("expiration_date") or ""),
        sex=_clean(d.get("sex")).upper(),
        valid=bool(mrz.valid),
        valid_document_number=bool(d.get("valid_number")),
        valid_date_of_birth=bool(d.get("valid_date_of_birth")),
        valid_expiry_date=bool(d.get("valid_expiration_date")),
        raw_lines=list(lines),
    )


def parse_mrz(ocr_text: str) -> Optional[MrzData]:
    """Find and parse an MRZ block in OCR text. Passports (TD3) are tried first."""
    lines = detect_mrz_lines(ocr_text)
    if not lines:
        return None

    td3 = [line[:44] for line in lines if len(line) >= 44]
    if len(td3) >= 2:
        parsed = _parse(td3[:2])
        if parsed is not None:
            return parsed

    td1 = [line[:30] for line in lines if 30 <= len(line) < 44]
    if len(td1) >= 3:
        return _parse(td1[:3])
    return None
