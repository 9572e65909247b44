# Tests for oauth2/pkce.py
# Created: 2026-10-19

import pytest

from tokensmith.oauth2.pkce import (
    code_challenge_s256,
    generate_code_verifier,
    verify_code_verifier,
)

# RFC 7636 Appendix B
RFC_VERIFIER = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
RFC_CHALLENGE = "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


class TestCodeChallenge:
    def test_rfc_vector(self):
        assert code_challenge_s256(RFC_VERIFIER) == RFC_CHALLENGE

    def test_no_padding(self):
        assert "=" not in code_challenge_s256(generate_code_verifier())

    def test_verify_matches(self):
        assert verify_code_verifier(RFC_VERIFIER, RFC_CHALLENGE) is True

    def test_single_character_mutation_fails(self):
        for i in range(len(RFC_VERIFIER)):
            replacement = "A" if RFC_VERIFIER[i] != "A" else "B"
            mutated = RFC_VERIFIER[:i] + replacement + RFC_VERIFIER[i + 1 :]
            assert verify_code_verifier(mutated, RFC_CHALLENGE) is False

    def test_blank_inputs_fail(self):
        assert verify_code_verifier("", RFC_CHALLENGE) is False
        assert verify_code_verifier(RFC_VERIFIER, None) is False

    def test_non_ascii_verifier_fails(self):
        assert verify_code_verifier("vérifier-" + "a" * 40, RFC_CHALLENGE) is False


class TestGenerateVerifier:
    def test_default_length(self):
        assert len(generate_code_verifier()) == 64

    def test_unique(self):
        assert generate_code_verifier() != generate_code_verifier()

    @pytest.mark.parametrize("length", [42, 129])
    def test_length_bounds(self, length):
        with pytest.raises(ValueError):
            generate_code_verifier(length)
