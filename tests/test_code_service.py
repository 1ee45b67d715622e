import pytest

from amazonia.services.code_service import CODE_ALPHABET, VerificationCodeGenerator


def test_generate_uses_configured_length_and_alphabet():
    code = VerificationCodeGenerator().generate()
    assert len(code) == 8
    assert set(code) <= set(CODE_ALPHABET)


def test_generate_custom_length():
    assert len(VerificationCodeGenerator(length=12).generate()) == 12


def test_generate_unique_skips_taken_codes(monkeypatch):
    generator = VerificationCodeGenerator()
    codes = iter(["TAKEN001", "TAKEN002", "FREE0003"])
    monkeypatch.setattr(generator, "generate", lambda: next(codes))

    assert generator.generate_unique(lambda code: code.startswith("TAKEN")) == "FREE0003"


def test_generate_unique_gives_up():
    generator = VerificationCodeGenerator(length=1, alphabet="A")
    with pytest.raises(RuntimeError):
        generator.generate_unique(lambda code: True)
