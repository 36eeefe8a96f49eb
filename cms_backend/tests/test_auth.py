import unittest

from jose import jwt

from cms_backend.auth import AuthService
from cms_backend.clock import FixedClock
from cms_backend.config import Settings
from cms_backend.db import IN_MEMORY_DATABASE_URL, SqlDbClient, UserRole, create_db_engine
from cms_backend.errors import AuthError


class AuthServiceTests(unittest.TestCase):
    def setUp(self):
        self.engine = create_db_engine(IN_MEMORY_DATABASE_URL)
        self.db = SqlDbClient(self.engine)
        self.clock = FixedClock()
        self.settings = Settings(jwt_secret="test-secret", environment="development")
        self.auth = AuthService(self.db, self.settings, self.clock)
        self.user = self.db.create_user("teacher@example.com", UserRole.TEACHER)

    def tearDown(self):
        self.engine.dispose()

    def test_token_round_trip(self):
        token = self.auth.create_jwt_token(self.user.id)
        claims = self.auth.verify_jwt_token(token)
        self.assertEqual(claims.sub, self.user.id)
        self.assertEqual(claims.exp - claims.iat, 7 * 24 * 3600)
        self.assertTrue(claims.jti)
        self.assertEqual(self.auth.verify_session_token(token).id, self.user.id)

    def test_each_token_has_its_own_jti(self):
        first = self.auth.verify_jwt_token(self.auth.create_jwt_token(self.user.id))
        second = self.auth.verify_jwt_token(self.auth.create_jwt_token(self.user.id))
        self.assertNotEqual(first.jti, second.jti)

    def test_expired_token_is_rejected(self):
        token = self.auth.create_jwt_token(self.user.id)
        self.clock.advance(days=7, seconds=1)
        with self.assertRaises(AuthError):
            self.auth.verify_jwt_token(token)

    def test_token_signed_with_other_secret_is_rejected(self):
        forged = jwt.encode(
            {"sub": self.user.id, "exp": 4102444800, "jti": "x", "iat": 0},
            "other-secret",
            algorithm="HS256",
        )
        with self.assertRaises(AuthError):
            self.auth.verify_jwt_token(forged)

    def test_garbage_token_is_rejected(self):
        with self.assertRaises(AuthError):
            self.auth.verify_jwt_token("not-a-token")

    def test_token_missing_claims_is_rejected(self):
        token = jwt.encode({"sub": self.user.id}, "test-secret", algorithm="HS256")
        with self.assertRaises(AuthError):
            self.auth.verify_jwt_token(token)

    def test_logout_revokes_token(self):
        token = self.auth.create_jwt_token(self.user.id)
        cookie = self.auth.logout(token)
        self.assertIn("session=;", cookie)
        self.assertIn("Max-Age=0", cookie)
        with self.assertRaises(AuthError):
            self.auth.verify_session_token(token)

    def test_logout_without_valid_token_still_clears_cookie(self):
        self.assertIn("Max-Age=0", self.auth.logout(None))
        self.assertIn("Max-Age=0", self.auth.logout("garbage"))

    def test_token_for_deleted_user_is_rejected(self):
        token = self.auth.create_jwt_token("ghost")
        with self.assertRaises(AuthError):
            self.auth.verify_session_token(token)

    def test_password_login_is_always_rejected(self):
        with self.assertRaises(AuthError) as ctx:
            self.auth.login("teacher@example.com")
        self.assertIn("Google OAuth", str(ctx.exception))
        with self.assertRaises(AuthError) as ctx:
            self.auth.login("   ")
        self.assertEqual(str(ctx.exception), "Email is required")

    def test_google_login_creates_student(self):
        result, cookie = self.auth.google_oauth_login("abcdefgh12345")
        self.assertEqual(result.user.email, "user@example.com")
        self.assertEqual(result.user.role, "student")
        self.assertEqual(result.user.google_id, "google_user_abcdefgh")
        self.assertTrue(cookie.startswith(f"session={result.token};"))
        self.assertEqual(self.auth.verify_session_token(result.token).id, result.user.id)

    def test_google_login_reuses_existing_user(self):
        first, _ = self.auth.google_oauth_login("abcdefgh12345")
        again, _ = self.auth.google_oauth_login("abcdefghXYZ")
        self.assertEqual(first.user.id, again.user.id)

        # A new Google id for the same email is linked to the existing account.
        relinked, _ = self.auth.google_oauth_login("zzzzzzzz")
        self.assertEqual(relinked.user.id, first.user.id)
        self.assertEqual(
            self.db.get_user_by_google_id("google_user_zzzzzzzz").id, first.user.id
        )

    def test_google_login_requires_code_and_valid_state(self):
        with self.assertRaises(AuthError):
            self.auth.google_oauth_login("")
        with self.assertRaises(AuthError):
            self.auth.google_oauth_login("abcdefgh", state="")
        result, _ = self.auth.google_oauth_login("abcdefgh", state="xyz")
        self.assertTrue(result.token)

    def test_cookie_strings(self):
        dev_cookie = self.auth.create_cookie_string("tok")
        self.assertEqual(
            dev_cookie,
            "session=tok; Path=/; HttpOnly; SameSite=Lax; Max-Age=604800",
        )
        prod = AuthService(
            self.db, Settings(jwt_secret="s", environment="production"), self.clock
        )
        prod_cookie = prod.create_cookie_string("tok")
        self.assertIn("Domain=.llacademy.ng", prod_cookie)
        self.assertIn("Secure", prod_cookie)
        self.assertIn("SameSite=None", prod_cookie)
        self.assertIn("Max-Age=0", prod.create_logout_cookie_string())

    def test_roles(self):
        self.assertTrue(self.auth.user_has_role(self.user.id, UserRole.TEACHER))
        self.assertFalse(self.auth.user_has_role(self.user.id, UserRole.ADMIN))
        self.assertFalse(self.auth.user_has_role("ghost", UserRole.ADMIN))
        self.assertEqual(self.auth.parse_user_role("parent"), UserRole.PARENT)
        with self.assertRaises(AuthError):
            self.auth.parse_user_role("owner")


if __name__ == "__main__":
    unittest.main()
