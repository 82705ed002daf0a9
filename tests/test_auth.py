"""Tests for account routes and the sign-in/admin gates."""

from datetime import datetime, timedelta, timezone

import jwt
import pytest
from bson import ObjectId

import main

BASE = "/api/v1/auth"

REGISTRATION = {
    "name": "Jane Shopper",
    "email": "Jane@Example.com",
    "password": "secret123",
    "phone": "81234567",
    "address": "3 River Lane",
    "answer": "blue",
}


class TestRegister:
    def test_registers_and_hides_secrets(self, client, mongo):
        response = client.post(f"{BASE}/register", json=REGISTRATION)

        assert response.status_code == 201
        body = response.json()
        assert body["message"] == "User Register Successfully"
        assert body["user"]["email"] == "jane@example.com"
        assert body["user"]["role"] == 0
        assert "password" not in body["user"]
        assert "answer" not in body["user"]

        stored = mongo["users"].find_one({"email": "jane@example.com"})
        assert stored["password"] != "secret123"
        assert main.check_password("secret123", stored["password"])

    @pytest.mark.parametrize(
        "field,message",
        [
            ("name", "Name is Required"),
            ("email", "Email is Required"),
            ("password", "Password is Required"),
            ("phone", "Phone no is Required"),
            ("address", "Address is Required"),
            ("answer", "Answer is Required"),
        ],
    )
    def test_required_fields(self, client, mongo, field, message):
        payload = {**REGISTRATION, field: ""}

        response = client.post(f"{BASE}/register", json=payload)

        assert response.status_code == 400
        assert response.json()["message"] == message

    def test_duplicate_email_is_conflict(self, client, mongo):
        client.post(f"{BASE}/register", json=REGISTRATION)

        response = client.post(f"{BASE}/register", json={**REGISTRATION, "email": "jane@example.com"})

        assert response.status_code == 409
        assert response.json()["message"] == "Already Register please login"
        assert mongo["users"].count_documents({}) == 1

    def test_invalid_email(self, client, mongo):
        response = client.post(f"{BASE}/register", json={**REGISTRATION, "email": "not-an-email"})

        assert response.status_code == 400


class TestLogin:
    def test_returns_token_for_valid_credentials(self, client, shopper):
        response = client.post(f"{BASE}/login", json={"email": "shopper@example.com", "password": "secret123"})

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "login successfully"
        assert body["user"]["_id"] == str(shopper["_id"])
        claims = jwt.decode(body["token"], main.JWT_SECRET, algorithms=[main.JWT_ALGO])
        assert claims["_id"] == str(shopper["_id"])

    @pytest.mark.parametrize(
        "email,password",
        [("shopper@example.com", "wrong-password"), ("nobody@example.com", "secret123")],
    )
    def test_bad_credentials_share_one_message(self, client, shopper, email, password):
        response = client.post(f"{BASE}/login", json={"email": email, "password": password})

        assert response.status_code == 401
        assert response.json()["message"] == "Invalid email or password"

    def test_missing_fields(self, client, mongo):
        response = client.post(f"{BASE}/login", json={"email": "shopper@example.com"})

        assert response.status_code == 400


class TestForgotPassword:
    def test_resets_password_with_right_answer(self, client, mongo, shopper):
        response = client.post(
            f"{BASE}/forgot-password",
            json={"email": "shopper@example.com", "answer": "blue", "newPassword": "brand-new"},
        )

        assert response.status_code == 200
        assert response.json()["message"] == "Password Reset Successfully"
        stored = mongo["users"].find_one({"_id": shopper["_id"]})
        assert main.check_password("brand-new", stored["password"])

    def test_wrong_answer(self, client, mongo, shopper):
        response = client.post(
            f"{BASE}/forgot-password",
            json={"email": "shopper@example.com", "answer": "red", "newPassword": "brand-new"},
        )

        assert response.status_code == 404
        assert response.json()["message"] == "Wrong Email Or Answer"

    def test_new_password_required(self, client, mongo, shopper):
        response = client.post(f"{BASE}/forgot-password", json={"email": "shopper@example.com", "answer": "blue"})

        assert response.status_code == 400
        assert response.json()["message"] == "New Password is required"


class TestProfile:
    def test_partial_update(self, client, mongo, shopper, shopper_headers):
        response = client.put(f"{BASE}/profile", json={"phone": "99999999"}, headers=shopper_headers)

        assert response.status_code == 200
        updated = response.json()["updatedUser"]
        assert updated["phone"] == "99999999"
        assert updated["name"] == shopper["name"]
        assert "password" not in updated

    def test_short_password_rejected(self, client, mongo, shopper_headers):
        response = client.put(f"{BASE}/profile", json={"password": "123"}, headers=shopper_headers)

        assert response.status_code == 400

    def test_password_change(self, client, mongo, shopper, shopper_headers):
        client.put(f"{BASE}/profile", json={"password": "longer-password"}, headers=shopper_headers)

        stored = mongo["users"].find_one({"_id": shopper["_id"]})
        assert main.check_password("longer-password", stored["password"])


class TestSignInGate:
    def test_missing_header(self, client, mongo):
        response = client.get(f"{BASE}/user-auth")

        assert response.status_code == 401
        assert response.json()["message"] == "Authorization token missing"
        assert response.json()["error_code"] == "ERR_AUTH_001"

    def test_garbage_token(self, client, mongo):
        response = client.get(f"{BASE}/user-auth", headers={"Authorization": "not.a.jwt"})

        assert response.status_code == 401
        assert response.json()["message"] == "Token validation failed"

    def test_expired_token(self, client, shopper):
        token = jwt.encode(
            {"_id": str(shopper["_id"]), "exp": datetime.now(timezone.utc) - timedelta(minutes=1)},
            main.JWT_SECRET,
            algorithm=main.JWT_ALGO,
        )

        response = client.get(f"{BASE}/user-auth", headers={"Authorization": token})

        assert response.status_code == 401

    def test_token_signed_with_other_secret(self, client, shopper):
        token = jwt.encode({"_id": str(shopper["_id"])}, "another-secret", algorithm=main.JWT_ALGO)

        response = client.get(f"{BASE}/user-auth", headers={"Authorization": token})

        assert response.status_code == 401

    @pytest.mark.parametrize("prefix", ["", "Bearer "])
    def test_raw_and_bearer_tokens(self, client, shopper, prefix):
        headers = {"Authorization": prefix + main.create_token(shopper)}

        response = client.get(f"{BASE}/user-auth", headers=headers)

        assert response.json() == {"ok": True}


class TestAdminGate:
    def test_admin_passes(self, client, admin_headers):
        assert client.get(f"{BASE}/admin-auth", headers=admin_headers).json() == {"ok": True}

    def test_regular_user_is_forbidden(self, client, shopper_headers):
        response = client.get(f"{BASE}/admin-auth", headers=shopper_headers)

        assert response.status_code == 403
        assert response.json()["message"] == "UnAuthorized Access"

    def test_deleted_user_is_unauthorized(self, client, mongo):
        ghost = {"_id": ObjectId()}

        response = client.get(f"{BASE}/admin-auth", headers={"Authorization": main.create_token(ghost)})

        assert response.status_code == 401
        assert response.json()["message"] == "User not found"

    def test_protected_test_route(self, client, admin_headers):
        response = client.get(f"{BASE}/test", headers=admin_headers)

        assert response.text == "Protected Routes"

    def test_all_users_hides_hashes(self, client, admin_headers, shopper):
        body = client.get(f"{BASE}/all-users", headers=admin_headers).json()

        assert {u["email"] for u in body["users"]} == {"admin@example.com", "shopper@example.com"}
        assert all("password" not in u for u in body["users"])
