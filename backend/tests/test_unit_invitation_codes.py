"""Unit tests for invitation code generation."""

import os
import re
from unittest.mock import patch

import pytest

os.environ.setdefault("SECRET_KEY", "test-secret-key-for-unit-tests")

from edulift.services import invitation_codes
from edulift.services.invitation_codes import (
    CODE_ALPHABET,
    _generate_code,
    generate_invitation_code,
    normalize_code,
)
from edulift.services.results import CodeGenerationError


class TestCodeFormat:
    def test_default_length_and_alphabet(self):
        code = _generate_code()
        assert re.match(r"^[A-Z0-9]{7}$", code), f"Unexpected format: {code}"

    def test_custom_length(self):
        assert len(_generate_code(10)) == 10

    def test_too_short_rejected(self):
        with pytest.raises(ValueError):
            _generate_code(4)

    def test_codes_are_random(self):
        codes = {_generate_code() for _ in range(50)}
        assert len(codes) > 45

    def test_alphabet_is_upper_alphanumeric(self):
        assert set(CODE_ALPHABET) == set("ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789")

    def test_normalize(self):
        assert normalize_code("  abc1234 ") == "ABC1234"


class TestUniqueCodes:
    async def test_skips_codes_in_use(self, db_session, seed):
        admin = await seed.user()
        family = await seed.family(admin)
        await seed.family_invitation(family, admin, code="TAKEN01")

        with patch.object(invitation_codes, "_generate_code", side_effect=["TAKEN01", "FRESH01"]):
            code = await generate_invitation_code(db_session)

        assert code == "FRESH01"

    async def test_group_ledger_codes_count_as_taken(self, db_session, seed):
        admin = await seed.user()
        family = await seed.family(admin)
        group = await seed.group(family)
        await seed.group_invitation(group, admin, code="GROUP01")

        with patch.object(invitation_codes, "_generate_code", side_effect=["GROUP01", "FRESH02"]):
            code = await generate_invitation_code(db_session)

        assert code == "FRESH02"

    async def test_gives_up_after_max_attempts(self, db_session, seed):
        admin = await seed.user()
        family = await seed.family(admin)
        await seed.family_invitation(family, admin, code="SAME001")

        with patch.object(invitation_codes, "_generate_code", return_value="SAME001"):
            with pytest.raises(CodeGenerationError):
                await generate_invitation_code(db_session)
