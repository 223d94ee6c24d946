from datetime import datetime, timedelta, timezone

import jwt
import pytest
from bson import ObjectId
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from utils import config, rbac


@pytest.fixture(scope="module")
def rsa_keys():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    public_pem = key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return key, public_pem


def _token(key, **claims):
    claims.setdefault("exp", datetime.now(timezone.utc) + timedelta(minutes=5))
    return jwt.encode(claims, key, algorithm="RS256")


class TestIdentity:

    def test_bearer_token(self, http_request, rsa_keys, monkeypatch):
        key, public_pem = rsa_keys
        monkeypatch.setenv("JWT_PUBLIC_KEY", public_pem)
        token = _token(key, id="abc", role="Admin", email="Boss@Example.com")

        identity = rbac.get_identity(http_request("GET", "/api/x", headers={"Authorization": f"Bearer {token}"}))

        assert identity == {"agent_id": "abc", "role": "admin", "email": "boss@example.com"}

    def test_auth_cookie(self, http_request, rsa_keys, monkeypatch):
        key, public_pem = rsa_keys
        monkeypatch.setenv("JWT_PUBLIC_KEY", public_pem)
        monkeypatch.setenv("JWT_COOKIE_NAME", "session")
        token = _token(key, sub="emp-7", role="employee")

        identity = rbac.get_identity(http_request("GET", "/api/x", headers={"Cookie": f"session={token}"}))

        assert identity["agent_id"] == "emp-7"
        assert identity["role"] == "employee"

    def test_expired_token_falls_back_to_nothing(self, http_request, rsa_keys, monkeypatch):
        key, public_pem = rsa_keys
        monkeypatch.setenv("JWT_PUBLIC_KEY", public_pem)
        monkeypatch.setenv("AZURE_FUNCTIONS_ENVIRONMENT", "Production")
        token = _token(key, id="abc", exp=datetime.now(timezone.utc) - timedelta(minutes=1))

        assert rbac.get_identity(http_request("GET", "/api/x", headers={"Authorization": f"Bearer {token}"})) is None

    def test_dev_headers(self, http_request):
        identity = rbac.get_identity(http_request("GET", "/api/x", user="u1", role="Employee", email="A@x.com"))
        assert identity == {"agent_id": "u1", "role": "employee", "email": "a@x.com"}

    def test_headers_ignored_in_production(self, http_request, monkeypatch):
        monkeypatch.setenv("AZURE_FUNCTIONS_ENVIRONMENT", "Production")
        monkeypatch.delenv("DEBUG_RBAC", raising=False)
        monkeypatch.delenv("E2E_MODE", raising=False)
        assert rbac.get_identity(http_request("GET", "/api/x", user="u1", role="admin")) is None


class TestRoles:

    def test_admin_by_role_email_or_permission_doc(self, db, monkeypatch):
        monkeypatch.setenv("LEAD_ADMIN_EMAILS", "ops@example.com")
        db[config.COLL_PERMISSIONS].insert_one({"email": "lead@example.com", "roles": ["super-admin"]})

        assert rbac.is_admin({"agent_id": "1", "role": "super-admin", "email": ""})
        assert rbac.is_admin({"agent_id": "2", "role": "employee", "email": "ops@example.com"})
        assert rbac.is_admin({"agent_id": "3", "role": "employee", "email": "lead@example.com"}, db)
        assert not rbac.is_admin({"agent_id": "4", "role": "employee", "email": "x@example.com"}, db)
        assert not rbac.is_admin(None)

    def test_lead_add_access_flag(self, db, make_agent):
        allowed = make_agent(access={"sales": True, "lead_add": True})
        denied = make_agent()

        assert rbac.can_add_leads({"agent_id": str(allowed["_id"]), "role": "employee", "email": ""}, db)
        assert not rbac.can_add_leads({"agent_id": str(denied["_id"]), "role": "employee", "email": ""}, db)
        assert not rbac.can_add_leads({"agent_id": "EMP001", "role": "employee", "email": ""}, db)
        assert rbac.can_add_leads({"agent_id": str(ObjectId()), "role": "admin", "email": ""}, db)
