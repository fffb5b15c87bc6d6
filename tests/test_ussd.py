"""Tests for name matching and mobile-money screenshot analysis."""

import pytest

from fakes import FakeOcrEngine
from trustproof.errors import InvalidUpload
from trustproof.services.name_match import match_names, name_parts, normalize_name
from trustproof.services.ussd import (
    UssdScreenshotAnalyzer,
    analyze_text,
    detect_provider,
    detect_screen_type,
    extract_phone,
)

PROFILE_SCREEN = "\n".join([
    "Orange Money",
    "Mon compte",
    "Nom et prénom: Kouassi Amani Jean",
    "Numéro: 07 07 12 34 56",
    "12:45 Menu Retour",
])


class TestNameMatch:
    def test_identical_names(self) -> None:
        result = match_names("Kouassi Amani Jean", "KOUASSI AMANI JEAN")
        assert result.match_score == 100
        assert result.is_match

    def test_accents_and_titles_ignored(self) -> None:
        assert normalize_name("Mme Aïcha Traoré") == "aicha traore"
        assert match_names("Mme Aïcha Traoré", "AICHA TRAORE").match_score == 100

    def test_particles_dropped(self) -> None:
        assert name_parts("Fatou de Souza") == ["fatou", "souza"]
        assert match_names("Fatou de Souza", "FATOU SOUZA").is_match

    def test_hyphenated_name(self) -> None:
        assert name_parts("Jean-Marc N'Guessan") == ["jean", "marc", "guessan"]

    def test_different_people(self) -> None:
        result = match_names("Kouassi Jean", "Diallo Moussa")
        assert not result.is_match
        assert result.match_score < 85

    def test_empty_name(self) -> None:
        result = match_names("", "Kouassi Jean")
        assert result.match_score == 0
        assert not result.is_match

    def test_threshold_is_configurable(self) -> None:
        result = match_names("Kouassi Amani Jean", "Kouassi Jean")
        assert match_names("Kouassi Amani Jean", "Kouassi Jean", threshold=result.match_score).is_match
        assert not match_names("Kouassi Amani Jean", "Kouassi Jean", threshold=result.match_score + 1).is_match


class TestScreenText:
    def test_detect_provider(self) -> None:
        assert detect_provider("Bienvenue sur MTN MoMo") == "mtn_momo"
        assert detect_provider("Solde Wave") == "wave"
        assert detect_provider("Flooz") == "moov"
        assert detect_provider("hello") == "unknown"

    def test_detect_screen_type(self) -> None:
        assert detect_screen_type(PROFILE_SCREEN) == "profile"
        assert detect_screen_type("Historique des transactions") == "history"
        assert detect_screen_type("nothing here") == "unknown"

    def test_extract_phone(self) -> None:
        assert extract_phone("Numéro: 07 07 12 34 56") == "0707123456"
        assert extract_phone("+225 0707123456") == "+2250707123456"
        assert extract_phone("no digits") is None

    def test_profile_screen_can_certify(self) -> None:
        analysis = analyze_text(PROFILE_SCREEN, 88, "Kouassi Amani Jean")
        assert analysis.provider == "orange_money"
        assert analysis.screen_type == "profile"
        assert analysis.extracted_name == "Kouassi Amani Jean"
        assert analysis.extracted_phone == "0707123456"
        assert analysis.tampering_probability == 0
        assert analysis.name_match_result.match_score == 100
        assert analysis.reasons == []
        assert analysis.can_certify

    def test_name_mismatch_blocks_certification(self) -> None:
        analysis = analyze_text(PROFILE_SCREEN, 88, "Diallo Moussa")
        assert not analysis.name_match_result.is_match
        assert not analysis.can_certify
        assert any(r.startswith("Name match") for r in analysis.reasons)

    def test_poor_capture(self) -> None:
        analysis = analyze_text("blurry", 40, "Kouassi Amani Jean")
        assert analysis.provider == "unknown"
        assert analysis.name_match_result is None
        assert not analysis.can_certify
        assert "OCR quality too low" in analysis.reasons
        assert analysis.tampering_probability >= 20

    def test_no_reference_name(self) -> None:
        analysis = analyze_text(PROFILE_SCREEN, 88, None)
        assert analysis.name_match_result is None


class TestUssdScreenshotAnalyzer:
    def test_reads_screenshot_in_memory(self, png_bytes) -> None:
        engine = FakeOcrEngine(text=PROFILE_SCREEN, confidence=90)
        analysis = UssdScreenshotAnalyzer(engine).analyze(png_bytes, "Kouassi Amani Jean")
        assert engine.calls == 1
        assert analysis.can_certify

    def test_undecodable_screenshot(self) -> None:
        with pytest.raises(InvalidUpload):
            UssdScreenshotAnalyzer(FakeOcrEngine()).analyze(b"not an image", "Kouassi")
