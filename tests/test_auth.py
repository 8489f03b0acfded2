"""Tests for Firebase ID-token verification."""

import base64
import json
import time
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import NameOID
from fastapi import HTTPException

from brightcare import auth

PROJECT_ID = "brightcare-test"
KID = "key-1"


def b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


@pytest.fixture(scope="module")
def signing_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="module")
def certificate_pem(signing_key):
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "securetoken.test")])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(signing_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=1))
        .sign(signing_key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM).decode()


@pytest.fixture(autouse=True)
def firebase_config(monkeypatch, certificate_pem):
    monkeypatch.setattr(auth, "FIREBASE_PROJECT_ID", PROJECT_ID)

    async def fake_keys(force_refresh: bool = False):
        return {KID: certificate_pem}

    monkeypatch.setattr(auth, "get_google_public_keys", fake_keys)


def make_token(signing_key, **overrides) -> str:
    now = int(time.time())
    payload = {
        "aud": PROJECT_ID,
        "iss": f"https://securetoken.google.com/{PROJECT_ID}",
        "sub": "patient-1",
        "iat": now - 10,
        "exp": now + 3600,
    }
    payload.update(overrides)
    header = {"alg": "RS256", "kid": KID, "typ": "JWT"}
    signing_input = f"{b64(json.dumps(header).encode())}.{b64(json.dumps(payload).encode())}"
    signature = signing_key.sign(signing_input.encode(), padding.PKCS1v15(), hashes.SHA256())
    return f"{signing_input}.{b64(signature)}"


class TestVerifyFirebaseToken:
    @pytest.mark.asyncio
    async def test_valid_token(self, signing_key):
        payload = await auth.verify_firebase_token(make_token(signing_key))
        assert payload["sub"] == "patient-1"

    @pytest.mark.asyncio
    async def test_tampered_payload_rejected(self, signing_key):
        header, _, signature = make_token(signing_key).split(".")
        forged = b64(json.dumps({"sub": "provider-1", "aud": PROJECT_ID}).encode())

        with pytest.raises(HTTPException) as exc_info:
            await auth.verify_firebase_token(f"{header}.{forged}.{signature}")
        assert exc_info.value.detail == "Invalid token signature"

    @pytest.mark.asyncio
    async def test_expired_token(self, signing_key):
        with pytest.raises(HTTPException) as exc_info:
            await auth.verify_firebase_token(make_token(signing_key, exp=int(time.time()) - 5))
        assert exc_info.value.headers == {"X-Token-Expired": "true"}

    @pytest.mark.asyncio
    async def test_wrong_audience(self, signing_key):
        with pytest.raises(HTTPException, match="audience"):
            await auth.verify_firebase_token(make_token(signing_key, aud="other-project"))

    @pytest.mark.asyncio
    async def test_malformed_token(self):
        with pytest.raises(HTTPException) as exc_info:
            await auth.verify_firebase_token("not-a-jwt")
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_unconfigured_project(self, monkeypatch, signing_key):
        monkeypatch.setattr(auth, "FIREBASE_PROJECT_ID", None)

        with pytest.raises(HTTPException) as exc_info:
            await auth.verify_firebase_token(make_token(signing_key))
        assert exc_info.value.status_code == 500
