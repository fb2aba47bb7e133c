from __future__ import annotations

import base64
import json
import os
import unittest
from unittest.mock import patch

from models import ApplianceFinderRepository

SUPABASE_URL = "https://appliances.supabase.co"


def _jwt(role: str) -> str:
    segments = [{"alg": "HS256", "typ": "JWT"}, {"role": role, "iss": "supabase"}]
    encoded = [base64.urlsafe_b64encode(json.dumps(part).encode("utf-8")).decode("ascii").rstrip("=") for part in segments]
    return ".".join(encoded + ["sig"])


class RepositoryFromEnvTests(unittest.TestCase):
    def setUp(self) -> None:
        client_patch = patch("models.create_client", return_value=object())
        self.create_client = client_patch.start()
        self.addCleanup(client_patch.stop)

    def _from_env(self, **env: str) -> ApplianceFinderRepository:
        with patch.dict(os.environ, env, clear=True):
            return ApplianceFinderRepository.from_env()

    def test_service_role_key_wins_and_silences_the_anon_warning(self) -> None:
        with self.assertNoLogs("models", level="WARNING"):
            self._from_env(
                SUPABASE_URL=SUPABASE_URL,
                SUPABASE_KEY=_jwt("anon"),
                SUPABASE_SERVICE_ROLE_KEY="service-secret",
            )

        self.create_client.assert_called_once_with(SUPABASE_URL, "service-secret")

    def test_fallback_key_with_service_role_claim_is_accepted_quietly(self) -> None:
        key = _jwt("service_role")

        with self.assertNoLogs("models", level="WARNING"):
            self._from_env(SUPABASE_URL=SUPABASE_URL, SUPABASE_KEY=key)

        self.create_client.assert_called_once_with(SUPABASE_URL, key)

    def test_fallback_anon_key_logs_row_level_security_warning(self) -> None:
        for role in ("anon", "authenticated"):
            with self.subTest(role=role), self.assertLogs("models", level="WARNING") as logs:
                self._from_env(SUPABASE_URL=SUPABASE_URL, SUPABASE_KEY=_jwt(role))
            self.assertIn("row level security", logs.output[0])

    def test_opaque_fallback_key_is_not_treated_as_anon(self) -> None:
        with self.assertNoLogs("models", level="WARNING"):
            self._from_env(SUPABASE_URL=SUPABASE_URL, SUPABASE_KEY="sb_secret_opaque")

        self.create_client.assert_called_once_with(SUPABASE_URL, "sb_secret_opaque")

    def test_missing_url_or_key_is_fatal(self) -> None:
        incomplete = [
            {"SUPABASE_KEY": _jwt("service_role")},
            {"SUPABASE_URL": SUPABASE_URL},
            {},
        ]
        for env in incomplete:
            with self.subTest(env=sorted(env)), self.assertRaisesRegex(RuntimeError, "SUPABASE_URL"):
                self._from_env(**env)

        self.create_client.assert_not_called()


if __name__ == "__main__":
    unittest.main()
