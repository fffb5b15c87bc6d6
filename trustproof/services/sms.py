"""
Mobile-money confirmation SMS analysis.

Messages are parsed in memory; only the structured transactions are kept,
never the message text.
"""
import logging
import re
from typing import List, NamedTuple, Optional, Sequence, Tuple

from trustproof.schemas import SmsAnalysis, SmsMessage, SmsTransaction

logger = logging.getLogger(__name__)

_AMOUNT = r"(\d[\d\s,.]*)"


class SmsPattern(NamedTuple):
    name: str
    provider: str
    transaction_type: str
    regex: re.Pattern
    groups: Tuple[str, ...]  # field captured by each regex group, in order


def _pattern(name: str, provider: str, transaction_type: str, regex: str, *groups: str) -> SmsPattern:
    return SmsPattern(name, provider, transaction_type, re.compile(regex, re.I), groups)


SMS_PATTERNS: List[SmsPattern] = [
    # Orange Money
    _pattern(
        "orange_credit_fr", "orange_money", "credit",
        rf"vous avez re[çc]u {_AMOUNT}\s*(?:fcfa|xof|f\s*cfa)?\s*(?:de|from)\s+([^.]+?)\.?\s*"
        rf"(?:nouveau\s+)?solde[:\s]*{_AMOUNT}",
        "amount", "counterparty", "balance",
    ),
    _pattern(
        "orange_debit_fr", "orange_money", "debit",
        rf"(?:transfert|envoi)\s*(?:de)?\s*{_AMOUNT}\s*(?:fcfa|xof)?\s*(?:vers|[àa])\s+([^.]+?)\.?\s*"
        rf"(?:effectu[ée]|r[ée]ussi).*?solde[:\s]*{_AMOUNT}",
        "amount", "counterparty", "balance",
    ),
    _pattern(
        "orange_withdrawal", "orange_money", "debit",
        rf"retrait\s*(?:de)?\s*{_AMOUNT}\s*(?:fcfa|xof)?.*?(?:effectu[ée]|r[ée]ussi).*?solde[:\s]*{_AMOUNT}",
        "amount", "balance",
    ),
    _pattern(
        "orange_deposit", "orange_money", "credit",
        rf"d[ée]p[oô]t\s*(?:de)?\s*{_AMOUNT}\s*(?:fcfa|xof)?.*?(?:effectu[ée]|r[ée]ussi).*?solde[:\s]*{_AMOUNT}",
        "amount", "balance",
    ),
    _pattern(
        "orange_balance", "orange_money", "balance",
        rf"(?:votre\s+)?solde\s*(?:est\s+de|:)\s*{_AMOUNT}\s*(?:fcfa|xof)",
        "balance",
    ),
    # MTN MoMo
    _pattern(
        "mtn_credit_en", "mtn_momo", "credit",
        rf"you\s+(?:have\s+)?received\s+{_AMOUNT}\s*(?:xof|fcfa|gnf)?\s*from\s+([^.]+?)\.?\s*"
        rf"(?:your\s+)?(?:new\s+)?balance[:\s]*{_AMOUNT}",
        "amount", "counterparty", "balance",
    ),
    _pattern(
        "mtn_debit_en", "mtn_momo", "debit",
        rf"(?:transfer|payment)\s+(?:of)?\s*{_AMOUNT}\s*(?:xof|fcfa)?\s*(?:to|vers)\s+([^.]+?)\.?\s*"
        rf"(?:successful|completed).*?balance[:\s]*{_AMOUNT}",
        "amount", "counterparty", "balance",
    ),
    _pattern(
        "mtn_cash_in", "mtn_momo", "credit",
        rf"cash\s*in\s*(?:of)?\s*{_AMOUNT}\s*(?:xof|fcfa)?.*?(?:successful|completed).*?balance[:\s]*{_AMOUNT}",
        "amount", "balance",
    ),
    _pattern(
        "mtn_cash_out", "mtn_momo", "debit",
        rf"cash\s*out\s*(?:of)?\s*{_AMOUNT}\s*(?:xof|fcfa)?.*?(?:successful|completed).*?balance[:\s]*{_AMOUNT}",
        "amount", "balance",
    ),
    _pattern(
        "mtn_credit_fr", "mtn_momo", "credit",
        rf"vous avez re[çc]u {_AMOUNT}\s*(?:fcfa|xof)?\s*de\s+([^.]+?)\.?\s*solde[:\s]*{_AMOUNT}",
        "amount", "counterparty", "balance",
    ),
    # Wave
    _pattern(
        "wave_credit", "wave", "credit",
        rf"{_AMOUNT}\s*f?\s*cfa\s*re[çc]us?\s*de\s+([^.]+)",
        "amount", "counterparty",
    ),
    _pattern(
        "wave_debit", "wave", "debit",
        rf"{_AMOUNT}\s*f?\s*cfa\s*(?:envoy[ée]s?|transf[ée]r[ée]s?)\s*(?:[àa]|vers)\s+([^.]+)",
        "amount", "counterparty",
    ),
    _pattern(
        "wave_payment", "wave", "debit",
        rf"paiement\s*(?:de)?\s*{_AMOUNT}\s*f?\s*cfa\s*(?:[àa]|chez)\s+([^.]+)",
        "amount", "counterparty",
    ),
    _pattern(
        "wave_balance", "wave", "balance",
        rf"solde\s*wave[:\s]*{_AMOUNT}\s*f?\s*cfa",
        "balance",
    ),
    # Moov / Flooz
    _pattern(
        "moov_credit", "moov", "credit",
        rf"(?:flooz|moov)\s*:?\s*(?:cr[ée]dit|re[çc]u)\s*{_AMOUNT}\s*(?:fcfa|xof)?.*?de\s+([^.]+)",
        "amount", "counterparty",
    ),
    _pattern(
        "moov_debit", "moov", "debit",
        rf"(?:flooz|moov)\s*:?\s*(?:d[ée]bit|envoy[ée])\s*{_AMOUNT}\s*(?:fcfa|xof)?.*?(?:vers|[àa])\s+([^.]+)",
        "amount", "counterparty",
    ),
    # Any provider
    _pattern(
        "generic_credit", "unknown", "credit",
        rf"(?:re[çc]u|received|cr[ée]dit)\s*:?\s*{_AMOUNT}\s*(?:fcfa|xof|gnf|f\s*cfa)",
        "amount",
    ),
    _pattern(
        "generic_debit", "unknown", "debit",
        rf"(?:envoy[ée]|sent|d[ée]bit|transfert)\s*:?\s*{_AMOUNT}\s*(?:fcfa|xof|gnf|f\s*cfa)",
        "amount",
    ),
]

SENDER_SHORTCODES = {
    "30303": "orange_money",
    "144": "orange_money",
    "om": "orange_money",
    "orangemoney": "orange_money",
    "orange money": "orange_money",
    "5050": "mtn_momo",
    "170": "mtn_momo",
    "mtn": "mtn_momo",
    "momo": "mtn_momo",
    "mtn momo": "mtn_momo",
    "wave": "wave",
    "wavemobile": "wave",
    "moov": "moov",
    "moov money": "moov",
    "flooz": "moov",
}

SENDER_KEYWORDS = ("orange", "mtn", "momo", "wave", "moov", "flooz")

MOMO_KEYWORDS = (
    "solde", "balance", "fcfa", "xof", "reçu", "recu", "received", "envoyé", "sent", "transfert",
    "orange", "mtn", "wave", "moov", "retrait", "dépôt", "depot", "paiement", "flooz", "momo",
)

FALLBACK_AMOUNT = re.compile(r"(\d[\d\s,.]{2,15})\s*(?:fcfa|xof|gnf|f\s*cfa)", re.I)
CREDIT_HINT = re.compile(r"re[çc]u|received|cr[ée]dit|d[ée]p[oô]t|\bfrom\b", re.I)
DEBIT_HINT = re.compile(r"envoy[ée]|\bsent\b|d[ée]bit|retrait|\bvers\b|\bto\b|paiement", re.I)
REFERENCE = re.compile(r"\b(?:r[ée]f|id|txn)\b\.?[:\s#]*([A-Z0-9]{6,20})", re.I)
PHONE_IN_NAME = re.compile(r"(\+?\d{8,12})")

FALLBACK_CONFIDENCE = 40
MIN_LENGTH = 10
MAX_LENGTH = 1000

ACTIVITY_LEVELS = ((20, "very_active"), (10, "active"), (5, "moderate"))

# Aggregate parse confidence needed before the SMS proof counts
SMS_CERTIFY_MIN_CONFIDENCE = 60


def parse_amount(raw: Optional[str]) -> float:
    """'25 000' -> 25000, '1.500.000' -> 1500000, '12,50' -> 12.5."""
    if not raw:
        return 0.0
    cleaned = re.sub(r"\s", "", raw)
    cleaned = re.sub(r"[.,](?=\d{3}(?!\d))", "", cleaned)
    cleaned = re.sub(r"[^\d.]", "", cleaned.replace(",", "."))
    head, dot, tail = cleaned.rpartition(".")
    if dot:
        cleaned = f"{head.replace('.', '')}.{tail}"
    try:
        return float(cleaned)
    except ValueError:
        return 0.0


def provider_from_sender(sender: Optional[str]) -> str:
    if not sender:
        return "unknown"
    return SENDER_SHORTCODES.get(sender.strip().lower(), "unknown")


def is_momo_sender(sender: str) -> bool:
    normalized = sender.strip().lower()
    return normalized in SENDER_SHORTCODES or any(k in normalized for k in SENDER_KEYWORDS)


def validate_sms_content(text: str) -> Optional[str]:
    """Return why a message cannot be a mobile-money confirmation, or None."""
    if not text or len(text.strip()) < MIN_LENGTH:
        return "message too short"
    if len(text) > MAX_LENGTH:
        return "message too long"
    lowered = text.lower()
    if not any(k in lowered for k in MOMO_KEYWORDS):
        return "not a mobile-money message"
    return None


def parse_confidence(pattern: SmsPattern, values: dict, text: str) -> int:
    confidence = 50
    if pattern.provider != "unknown":
        confidence += 15
    if values.get("amount", 0) > 0:
        confidence += 15
    if (values.get("balance") or 0) > 0:
        confidence += 10
    if values.get("counterparty"):
        confidence += 5
    if 50 < len(text) < 500:
        confidence += 5
    return min(100, confidence)


def _split_counterparty(name: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    if not name:
        return None, None
    name = name.strip()
    m = PHONE_IN_NAME.search(name)
    if not m:
        return name or None, None
    cleaned = name.replace(m.group(1), "").strip().strip("-: ")
    return cleaned or None, m.group(1)


def parse_sms(message: SmsMessage) -> Optional[SmsTransaction]:
    text = message.text.strip()
    if len(text) < MIN_LENGTH:
        return None

    sender_provider = provider_from_sender(message.sender)
    reference = REFERENCE.search(text)

    for pattern in SMS_PATTERNS:
        if sender_provider != "unknown" and pattern.provider not in (sender_provider, "unknown"):
            continue
        m = pattern.regex.search(text)
        if not m:
            continue

        values = {}
        for field, group in zip(pattern.groups, m.groups()):
            values[field] = group.strip() if field == "counterparty" and group else parse_amount(group)
        name, phone = _split_counterparty(values.get("counterparty"))

        return SmsTransaction(
            provider=pattern.provider if pattern.provider != "unknown" else sender_provider,
            transaction_type=pattern.transaction_type,
            amount=values.get("amount", 0.0),
            balance_after=values.get("balance"),
            counterparty_name=name,
            counterparty_phone=phone,
            reference=reference.group(1) if reference else None,
            received_at=message.received_at,
            parse_confidence=parse_confidence(pattern, values, text),
            pattern=pattern.name,
        )

    # Fallback: an amount in CFA with a direction guessed from the wording
    m = FALLBACK_AMOUNT.search(text)
    amount = parse_amount(m.group(1)) if m else 0.0
    if amount <= 0:
        return None
    if CREDIT_HINT.search(text):
        transaction_type = "credit"
    elif DEBIT_HINT.search(text):
        transaction_type = "debit"
    else:
        transaction_type = "other"
    return SmsTransaction(
        provider=sender_provider,
        transaction_type=transaction_type,
        amount=amount,
        received_at=message.received_at,
        parse_confidence=FALLBACK_CONFIDENCE,
        pattern="generic_fallback",
    )


def _activity_level(count: int) -> str:
    for threshold, level in ACTIVITY_LEVELS:
        if count >= threshold:
            return level
    return "low"


def _sort_key(indexed: Tuple[int, SmsTransaction]) -> Tuple[float, int]:
    index, tx = indexed
    return (tx.received_at.timestamp() if tx.received_at else float("-inf"), index)


def aggregate(transactions: List[SmsTransaction], total_messages: int, rejected: int) -> SmsAnalysis:
    credits = [t.amount for t in transactions if t.transaction_type == "credit"]
    debits = [t.amount for t in transactions if t.transaction_type == "debit"]
    moves = credits + debits
    providers = sorted({t.provider for t in transactions if t.provider != "unknown"})

    with_balance = [(i, t) for i, t in enumerate(transactions) if t.balance_after is not None]
    latest_balance = max(with_balance, key=_sort_key)[1].balance_after if with_balance else None
    dated = [t.received_at for t in transactions if t.received_at is not None]
    oldest = min(dated, key=lambda d: d.timestamp()) if dated else None

    confidence = sum(t.parse_confidence for t in transactions) / len(transactions) if transactions else 0.0

    risk_flags = []
    if len(transactions) < 5:
        risk_flags.append("insufficient_volume")
    if sum(debits) > sum(credits) * 2:
        risk_flags.append("high_debit_ratio")
    if sum(1 for t in transactions if t.provider == "unknown") > len(transactions) * 0.5:
        risk_flags.append("unidentified_providers")
    if sum(1 for t in transactions if t.parse_confidence < 50) > len(transactions) * 0.3:
        risk_flags.append("low_parse_confidence")

    return SmsAnalysis(
        transactions=transactions,
        total_messages=total_messages,
        rejected_messages=rejected,
        total_credits=sum(credits),
        total_debits=sum(debits),
        credit_count=len(credits),
        debit_count=len(debits),
        average_transaction=sum(moves) / len(moves) if moves else 0.0,
        largest_credit=max(credits, default=0.0),
        largest_debit=max(debits, default=0.0),
        providers=providers,
        latest_balance=latest_balance,
        activity_level=_activity_level(len(moves)),
        oldest_transaction=oldest,
        confidence=round(confidence, 2),
        risk_flags=risk_flags,
        can_certify=bool(providers) and confidence >= SMS_CERTIFY_MIN_CONFIDENCE,
    )


def analyze_sms_messages(messages: Sequence[SmsMessage]) -> SmsAnalysis:
    transactions: List[SmsTransaction] = []
    rejected = 0
    for message in messages:
        if message.sender and not is_momo_sender(message.sender):
            rejected += 1
            continue
        if validate_sms_content(message.text) is not None:
            rejected += 1
            continue
        parsed = parse_sms(message)
        if parsed is None:
            rejected += 1
            continue
        transactions.append(parsed)

    analysis = aggregate(transactions, len(messages), rejected)
    logger.info(
        "SMS analyzed: parsed=%d rejected=%d providers=%s confidence=%.1f can_certify=%s",
        len(transactions), rejected, ",".join(analysis.providers) or "-", analysis.confidence, analysis.can_certify,
    )
    return analysis
