from __future__ import annotations

import unittest
from unittest import mock

from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials
from jose import jwt

from mealcart.auth import get_current_principal
from mealcart.config import Settings


def _creds(claims: dict) -> HTTPAuthorizationCredentials:
    token = jwt.encode(claims, "test-secret", algorithm="HS256")
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


class CurrentPrincipalTest(unittest.TestCase):
    def setUp(self):
        patcher = mock.patch(
            "mealcart.auth.get_settings",
            return_value=Settings(auth_disable_verification=True),
        )
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_unverified_token_in_dev(self):
        principal = get_current_principal(_creds({"sub": "user-9", "email": "cook@example.com"}))
        self.assertEqual(principal.user_id, "user-9")
        self.assertEqual(principal.email, "cook@example.com")

    def test_missing_credentials(self):
        with self.assertRaises(HTTPException) as ctx:
            get_current_principal(None)
        self.assertEqual(ctx.exception.status_code, 401)

    def test_token_without_subject(self):
        with self.assertRaises(HTTPException) as ctx:
            get_current_principal(_creds({"email": "cook@example.com"}))
        self.assertEqual(ctx.exception.status_code, 401)


if __name__ == "__main__":
    unittest.main()
