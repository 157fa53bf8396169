"""
HTTP Tests for the Gateway
==========================

End-to-end tests through FastAPI's TestClient, with Azure AD and the email
integrator replaced by an httpx.MockTransport.

Test Coverage:
--------------
1. Registration, approval links and login gating
2. OIDC login redirect and callback, cookies and return_url
3. Dual-mode bearer authentication
4. Refresh and logout (cookie and body)
5. Admin endpoints, role checks and profile maintenance
6. Password reset endpoints
7. Error rendering

Run tests:
----------
    pytest stormgate/tests/test_routes.py -v
"""

import asyncio
from urllib.parse import parse_qs, urlparse

import jwt
from fastapi import status

from stormgate.models import AccountStatus

from conftest import create_azure_token, make_admin, register_user

GENERIC_401 = "Unauthorized: Token verification failed"


def query_of(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


def path_of(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.path}?{parsed.query}"


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def set_cookies(response) -> list:
    return response.headers.get_list("set-cookie")


def refresh_cookie_of(response) -> str:
    return next(
        c.split(";")[0].split("=", 1)[1]
        for c in set_cookies(response)
        if c.startswith("refreshtoken=")
    )


def federated_login(client, application: str = None, return_url: str = None):
    params = {}
    if application:
        params["application"] = application
    if return_url:
        params["return_url"] = return_url
    login = client.get("/auth/login", params=params, follow_redirects=False)
    state = query_of(login.headers["location"])["state"]
    return client.get(
        "/auth/callback",
        params={"code": "auth-code", "state": state},
        follow_redirects=False,
    )


# ============================================================================
# Registration & Approval
# ============================================================================

class TestRegistrationFlow:

    def test_pending_registration_gets_no_tokens(self, client, app):
        response = register_user(client, status="PENDING")

        assert response.status_code == status.HTTP_201_CREATED
        body = response.json()
        assert body["status"] == "PENDING"
        assert body["requiresApproval"] is True
        assert "accesstoken" not in body

        stored = asyncio.run(app.state.user_store.find_by_email("a@x.com"))
        assert stored.status.value == "PENDING"

    def test_approved_registration_returns_token(self, client, app):
        response = register_user(client)

        assert response.status_code == status.HTTP_201_CREATED
        body = response.json()
        assert body["requiresApproval"] is False
        assert app.state.tokens.verify_access_token(body["accesstoken"])["email"] == "a@x.com"
        assert "passwordHash" not in body["user"] and "password_hash" not in body["user"]

    def test_role_in_body_is_ignored(self, client):
        response = register_user(client, role="superAdmin")
        assert response.json()["user"]["role"] == "basic"

    def test_approval_link_is_idempotent(self, client, provider):
        register_user(client, status="PENDING")
        [email] = provider.emails_of_type("approval")
        link = path_of(email["approvalUrl"])

        first = client.get(link)
        second = client.get(link)

        assert first.status_code == 200
        assert first.json()["status"] == "APPROVED"
        assert second.status_code == 200
        assert second.json()["status"] == "APPROVED"
        assert len(provider.emails_of_type("approved")) == 1

    def test_denied_account_cannot_log_in(self, client, provider):
        register_user(client, status="PENDING")
        [email] = provider.emails_of_type("approval")
        assert client.get(path_of(email["denyUrl"])).json()["status"] == "DENIED"

        response = client.post("/login", json={"email": "a@x.com", "password": "correct-horse"})

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert "accesstoken" not in response.json()
        assert set_cookies(response) == []

    def test_denied_login_with_wrong_password_is_still_403(self, client, provider):
        register_user(client, status="PENDING")
        [email] = provider.emails_of_type("approval")
        client.get(path_of(email["denyUrl"]))

        response = client.post("/login", json={"email": "a@x.com", "password": "nope-nope"})

        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_pending_login_has_limited_access(self, client):
        register_user(client, status="PENDING")

        response = client.post("/login", json={"email": "a@x.com", "password": "correct-horse"})

        assert response.status_code == 200
        assert response.json()["limitedAccess"] is True
        assert response.json()["status"] == "PENDING"

    def test_approving_denied_account_conflicts(self, client, provider):
        register_user(client, status="PENDING")
        [email] = provider.emails_of_type("approval")
        client.get(path_of(email["denyUrl"]))

        response = client.get(path_of(email["approvalUrl"]))

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.json()["error"] == "conflict"

    def test_invalid_approval_token(self, client):
        response = client.get("/auth/approve", params={"token": "garbage"})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "invalid_token"

    def test_missing_approval_token(self, client):
        assert client.get("/auth/deny").status_code == status.HTTP_400_BAD_REQUEST

    def test_duplicate_registration(self, client):
        assert register_user(client).status_code == 201

        response = register_user(client, email="A@X.com")

        assert response.status_code == status.HTTP_409_CONFLICT

    def test_short_password(self, client):
        response = register_user(client, password="123")
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_validation_errors_are_400(self, client):
        response = client.post("/register", json={"name": "x", "email": "not-an-email", "password": "123456"})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        body = response.json()
        assert body["error"] == "invalid_request"
        assert body["details"]["errors"][0]["field"] == "email"

    def test_check_status(self, client):
        register_user(client, status="PENDING")

        response = client.post("/check-status", json={"email": "a@x.com"})

        assert response.json()["user"]["status"] == "PENDING"
        assert client.post("/check-status", json={"email": "b@x.com"}).status_code == 404


# ============================================================================
# OIDC
# ============================================================================

class TestOIDCRoutes:

    def test_login_redirects_with_pkce_challenge(self, client, app):
        response = client.get(
            "/auth/login",
            params={"application": "blog", "return_url": "https://app/cb"},
            follow_redirects=False,
        )

        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith("https://login.microsoftonline.com/")
        params = query_of(location)
        assert params["state"]
        assert params["code_challenge"]
        assert params["code_challenge_method"] == "S256"

        entry = asyncio.run(app.state.session_store.consume(params["state"]))
        assert entry.application == "blog"

    def test_login_rejects_foreign_return_url(self, client):
        response = client.get(
            "/auth/login",
            params={"return_url": "https://evil.example/steal"},
            follow_redirects=False,
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_callback_json_and_cookies(self, client, app):
        response = federated_login(client)

        assert response.status_code == 200
        body = response.json()
        assert body["user"]["email"] == "federated.user@contoso.com"
        assert body["user"]["authProvider"] == "federated"
        assert app.state.tokens.verify_access_token(body["accesstoken"])["id"] == body["user"]["id"]

        cookies = set_cookies(response)
        access = next(c for c in cookies if c.startswith("accesstoken="))
        refresh = next(c for c in cookies if c.startswith("refreshtoken="))
        assert "HttpOnly" in access and "Path=/" in access and "Max-Age=900" in access
        assert "HttpOnly" in refresh
        assert "Path=/auth" in [part.strip() for part in refresh.split(";")]
        assert "Max-Age=604800" in refresh
        assert "samesite=lax" in refresh.lower()
        assert "Secure" not in refresh

    def test_callback_redirects_to_return_url(self, client):
        response = federated_login(client, "blog", "https://app/cb")

        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith("https://app/cb?token=")

    def test_callback_state_single_use(self, client):
        login = client.get("/auth/login", follow_redirects=False)
        state = query_of(login.headers["location"])["state"]
        params = {"code": "auth-code", "state": state}

        assert client.get("/auth/callback", params=params).status_code == 200
        second = client.get("/auth/callback", params=params)

        assert second.status_code == status.HTTP_400_BAD_REQUEST
        assert second.json()["message"] == "Invalid authentication request"

    def test_callback_provider_error(self, client):
        response = client.get(
            "/auth/callback",
            params={"error": "access_denied", "error_description": "User cancelled", "code": "x", "state": "y"},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["details"]["provider_error"] == "User cancelled"

    def test_callback_exchange_failure_is_generic_500(self, client, provider):
        provider.token_status = 400
        response = federated_login(client)

        assert response.status_code == 500
        assert response.json() == {
            "error": "upstream_failure",
            "message": "Authentication processing failed",
        }

    def test_callback_denied_account(self, client, provider):
        register_user(client, email="federated.user@contoso.com", status="PENDING")
        [email] = provider.emails_of_type("approval")
        client.get(path_of(email["denyUrl"]))

        response = federated_login(client)

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert set_cookies(response) == []


# ============================================================================
# Dual-mode Authentication
# ============================================================================

class TestBearerAuthentication:

    def test_internal_token(self, client):
        token = register_user(client).json()["accesstoken"]

        response = client.get("/auth/me", headers=bearer(token))

        assert response.status_code == 200
        assert response.json()["user"]["email"] == "a@x.com"
        assert response.json()["tokenSource"] == "internal"

    def test_federated_token_for_linked_account(self, client):
        user_id = federated_login(client).json()["user"]["id"]

        response = client.get("/auth/me", headers=bearer(create_azure_token()))

        assert response.status_code == 200
        assert response.json()["user"]["id"] == user_id
        assert response.json()["tokenSource"] == "federated"

    def test_federated_token_for_unknown_subject(self, client):
        response = client.get("/auth/me", headers=bearer(create_azure_token(sub="never-seen")))

        assert response.status_code == 401
        assert response.json()["message"] == GENERIC_401

    def test_federated_token_for_denied_account(self, client, app):
        user_id = federated_login(client).json()["user"]["id"]
        asyncio.run(app.state.user_store.update_by_id(user_id, status=AccountStatus.DENIED))

        response = client.get("/auth/me", headers=bearer(create_azure_token()))

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert response.json()["error"] == "forbidden"

    def test_token_signed_with_unknown_secret(self, client):
        forged = jwt.encode(
            {"id": "x", "type": "access", "iat": 1, "exp": 9999999999},
            "not-the-gateway-secret-0123456789abcdef",
            algorithm="HS256",
        )
        response = client.get("/auth/me", headers=bearer(forged))

        assert response.status_code == 401
        assert response.json()["message"] == GENERIC_401

    def test_federated_token_with_unknown_kid(self, client):
        response = client.get("/auth/me", headers=bearer(create_azure_token(kid="rotated-away")))

        assert response.status_code == 401
        assert response.json()["message"] == GENERIC_401

    def test_missing_header(self, client):
        assert client.get("/auth/me").status_code == 401
        assert client.get("/auth/me", headers={"Authorization": "Basic abc"}).status_code == 401


# ============================================================================
# Refresh & Logout
# ============================================================================

class TestRefreshAndLogout:

    def login(self, client):
        register_user(client)
        return client.post("/login", json={"email": "a@x.com", "password": "correct-horse"})

    def test_refresh_with_cookie(self, client, app):
        self.login(client)

        response = client.post("/auth/refresh")

        assert response.status_code == 200
        assert app.state.tokens.verify_access_token(response.json()["accesstoken"])["email"] == "a@x.com"

    def test_refresh_with_body(self, app, client):
        refresh_token = refresh_cookie_of(self.login(client))
        client.cookies.clear()

        response = client.post("/auth/refresh", json={"refreshToken": refresh_token})

        assert response.status_code == 200

    def test_refresh_without_token(self, client):
        response = client.post("/auth/refresh")
        assert response.status_code == 401

    def test_logout_with_body_revokes_refresh_token(self, client):
        refresh_token = refresh_cookie_of(self.login(client))
        client.cookies.clear()

        response = client.post("/auth/logout", json={"refreshToken": refresh_token})
        assert response.status_code == 200
        assert any(c.startswith("refreshtoken=") for c in set_cookies(response))

        again = client.post("/auth/refresh", json={"refreshToken": refresh_token})
        assert again.status_code == 401

    def test_logout_with_cookies_only_revokes_refresh_token(self, client, app):
        login = self.login(client)
        user_id = login.json()["user"]["id"]
        refresh_token = refresh_cookie_of(login)

        response = client.post("/auth/logout")

        assert response.status_code == 200
        assert not asyncio.run(app.state.refresh_tokens.is_current(user_id, refresh_token))
        again = client.post("/auth/refresh", json={"refreshToken": refresh_token})
        assert again.status_code == 401

    def test_local_logout_revokes_through_access_cookie(self, client, app):
        login = self.login(client)
        user_id = login.json()["user"]["id"]
        refresh_token = refresh_cookie_of(login)

        response = client.post("/logout")

        assert response.json()["status"] == "Successful"
        assert not asyncio.run(app.state.refresh_tokens.is_current(user_id, refresh_token))

    def test_logout_with_invalid_token_still_clears(self, client):
        response = client.post("/auth/logout", json={"refreshToken": "garbage"})

        assert response.status_code == 200
        assert any(c.startswith("accesstoken=") for c in set_cookies(response))

    def test_local_logout(self, client):
        response = client.post("/logout")
        assert response.json()["status"] == "Successful"


# ============================================================================
# Admin
# ============================================================================

class TestAdminRoutes:

    def test_pending_users_requires_admin(self, client):
        token = register_user(client).json()["accesstoken"]

        response = client.get("/auth/pending-users", headers=bearer(token))

        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_pending_users_requires_authentication(self, client):
        assert client.get("/auth/pending-users").status_code == 401

    def test_manual_approval(self, client, app):
        admin_token = make_admin(app)
        register_user(client, status="PENDING")
        register_user(client, email="b@x.com", status="PENDING")

        pending = client.get("/auth/pending-users", headers=bearer(admin_token)).json()
        assert pending["count"] == 2

        user_id = pending["users"][0]["id"]
        response = client.post("/auth/manual-approve", json={"userId": user_id}, headers=bearer(admin_token))
        assert response.json()["status"] == "APPROVED"

        other_id = pending["users"][1]["id"]
        response = client.post("/auth/manual-deny", json={"userId": other_id}, headers=bearer(admin_token))
        assert response.json()["status"] == "DENIED"

        assert client.get("/auth/pending-users", headers=bearer(admin_token)).json()["count"] == 0

    def test_manual_approve_unknown_user(self, client, app):
        admin_token = make_admin(app)
        response = client.post("/auth/manual-approve", json={"userId": "missing"}, headers=bearer(admin_token))
        assert response.status_code == 404

    def test_user_listing(self, client, app):
        admin_token = make_admin(app)
        user_id = register_user(client).json()["user"]["id"]

        listing = client.get("/admin/users", headers=bearer(admin_token)).json()
        single = client.get(f"/admin/users/{user_id}", headers=bearer(admin_token))

        assert listing["count"] == 2
        assert single.json()["user"]["email"] == "a@x.com"
        assert client.get("/admin/users/missing", headers=bearer(admin_token)).status_code == 404


# ============================================================================
# Profiles
# ============================================================================

class TestProfileRoutes:

    def test_update_own_blog_profile(self, client):
        registered = register_user(client, application="blog").json()
        token, user_id = registered["accesstoken"], registered["user"]["id"]

        client.put(f"/users/{user_id}", json={"aboutMe": "Writer", "likedArticles": ["a1", "a2"]}, headers=bearer(token))
        response = client.put(f"/users/{user_id}", json={"likedArticles": ["a2", "a3"]}, headers=bearer(token))

        assert response.status_code == 200
        user = response.json()["user"]
        assert user["aboutMe"] == "Writer"
        assert user["likedArticles"] == ["a1", "a2", "a3"]

    def test_status_and_role_are_not_editable(self, client):
        registered = register_user(client).json()

        response = client.put(
            f"/users/{registered['user']['id']}",
            json={"role": "admin", "status": "APPROVED"},
            headers=bearer(registered["accesstoken"]),
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "invalid_request"

    def test_profile_fields_need_matching_application(self, client):
        registered = register_user(client).json()

        response = client.put(
            f"/users/{registered['user']['id']}",
            json={"aboutMe": "Writer"},
            headers=bearer(registered["accesstoken"]),
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["details"] == {"fields": ["about_me"]}

    def test_other_users_profile_requires_admin(self, client, app):
        target_id = register_user(client).json()["user"]["id"]
        other_token = register_user(client, email="b@x.com").json()["accesstoken"]
        admin_token = make_admin(app)

        denied = client.put(f"/users/{target_id}", json={"name": "Mallory"}, headers=bearer(other_token))
        allowed = client.put(f"/users/{target_id}", json={"name": "Alice Renamed"}, headers=bearer(admin_token))

        assert denied.status_code == status.HTTP_403_FORBIDDEN
        assert allowed.json()["user"]["name"] == "Alice Renamed"
        assert client.delete(f"/users/{target_id}", headers=bearer(other_token)).status_code == 403

    def test_update_requires_authentication(self, client):
        user_id = register_user(client).json()["user"]["id"]
        assert client.put(f"/users/{user_id}", json={"name": "x"}).status_code == 401

    def test_delete_own_account(self, client):
        registered = register_user(client)
        body = registered.json()
        refresh_token = refresh_cookie_of(registered)

        response = client.delete(f"/users/{body['user']['id']}", headers=bearer(body["accesstoken"]))

        assert response.status_code == 200
        assert any(c.startswith("accesstoken=") for c in set_cookies(response))
        assert client.get("/auth/me", headers=bearer(body["accesstoken"])).status_code == 404
        again = client.post("/auth/refresh", json={"refreshToken": refresh_token})
        assert again.status_code == 401

    def test_admin_deletes_unknown_account(self, client, app):
        response = client.delete("/users/missing", headers=bearer(make_admin(app)))
        assert response.status_code == 404


# ============================================================================
# Password Reset
# ============================================================================

class TestPasswordResetRoutes:

    def test_reset_via_email_link(self, client, provider):
        register_user(client)
        response = client.post("/forgot-password", json={"email": "a@x.com"})
        assert response.status_code == 200

        [email] = provider.emails_of_type("passwordReset")
        path = urlparse(email["resetUrl"]).path

        assert client.get(path).json()["email"] == "a@x.com"
        assert client.post(path, json={"password": "brand-new-pw"}).status_code == 200
        assert client.post(path, json={"password": "brand-new-pw"}).status_code == 400

        login = client.post("/login", json={"email": "a@x.com", "password": "brand-new-pw"})
        assert login.status_code == 200

    def test_unknown_email_gets_same_response(self, client):
        register_user(client)
        known = client.post("/forgot-password", json={"email": "a@x.com"})
        unknown = client.post("/forgot-password", json={"email": "ghost@x.com"})

        assert known.json() == unknown.json()

    def test_bad_reset_token(self, client):
        response = client.get("/reset-password/garbage")
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_token"


# ============================================================================
# System
# ============================================================================

def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_error_responses_are_documented(client):
    schema = client.get("/openapi.json").json()

    assert "ErrorResponse" in schema["components"]["schemas"]
    register_responses = schema["paths"]["/register"]["post"]["responses"]
    assert register_responses["409"]["content"]["application/json"]["schema"]["$ref"].endswith("/ErrorResponse")
