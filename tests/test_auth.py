import time

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwt

import auth as auth_module
from auth import InvalidToken, TokenVerifier, ensure_same_email
from config import Settings
from conftest import SECRET, make_token


@pytest.fixture
def verifier():
    return TokenVerifier(Settings(jwt_secret=SECRET))


def test_shared_secret_token(verifier):
    claims = verifier.verify(make_token("a@x.com"))
    assert claims["email"] == "a@x.com"
    assert verifier.mode == "shared-secret"


@pytest.mark.parametrize("token", [
    make_token("a@x.com", secret="wrong-secret"),
    make_token("a@x.com", expires_in=-60),
    make_token(None),
    jwt.encode({"email": "a@x.com"}, SECRET, algorithm="HS256"),
    "not.a.jwt",
])
def test_rejected_tokens(verifier, token):
    with pytest.raises(InvalidToken):
        verifier.verify(token)


def test_audience_is_checked_when_configured():
    verifier = TokenVerifier(Settings(jwt_secret=SECRET, jwt_audience="tastio"))
    assert verifier.verify(make_token("a@x.com", aud="tastio"))["email"] == "a@x.com"
    with pytest.raises(InvalidToken):
        verifier.verify(make_token("a@x.com", aud="someone-else"))


class FakeResponse:
    def __init__(self, certs, max_age=600):
        self._certs = certs
        self.headers = {"Cache-Control": f"public, max-age={max_age}, must-revalidate"}

    def raise_for_status(self):
        pass

    def json(self):
        return self._certs


@pytest.fixture
def firebase(monkeypatch):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, serialization.NoEncryption()
    ).decode()
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode()
    calls = []

    def fake_get(url, timeout):
        calls.append(url)
        return FakeResponse({"key-1": public_pem})

    monkeypatch.setattr(auth_module.requests, "get", fake_get)
    verifier = TokenVerifier(Settings(firebase_project_id="tastio-web"))

    def sign(**claims):
        issued = int(time.time())
        payload = {
            "aud": "tastio-web",
            "sub": "firebase-uid-1",
            "iat": issued,
            "auth_time": issued,
            "exp": issued + 3600,
            "iss": "https://securetoken.google.com/tastio-web",
            "email": "a@x.com",
            **claims,
        }
        payload = {k: v for k, v in payload.items() if v is not None}
        return jwt.encode(payload, private_pem, algorithm="RS256", headers={"kid": "key-1"})

    return verifier, sign, calls


def test_firebase_tokens_use_cached_google_certs(firebase):
    verifier, sign, calls = firebase
    assert verifier.mode == "firebase"
    assert verifier.verify(sign())["email"] == "a@x.com"
    assert verifier.verify(sign(email="b@x.com"))["email"] == "b@x.com"
    assert len(calls) == 1


@pytest.mark.parametrize("claims", [
    {"aud": "other-project"},
    {"iss": "https://accounts.example.com"},
    {"exp": int(time.time()) - 60},
    {"exp": None},
    {"iat": None},
    {"sub": None},
    {"sub": ""},
    {"auth_time": int(time.time()) + 3600},
])
def test_firebase_rejects_invalid_tokens(firebase, claims):
    verifier, sign, _ = firebase
    with pytest.raises(InvalidToken):
        verifier.verify(sign(**claims))


def test_firebase_rejects_shared_secret_tokens(firebase):
    verifier, _, _ = firebase
    with pytest.raises(InvalidToken):
        verifier.verify(make_token("a@x.com"))


def test_ensure_same_email():
    ensure_same_email("a@x.com", "A@x.com")
    with pytest.raises(Exception) as exc:
        ensure_same_email("a@x.com", "b@x.com")
    assert exc.value.status_code == 403


@pytest.mark.parametrize("headers", [
    {},
    {"Authorization": "Basic YTpi"},
    {"Authorization": "Bearer"},
    {"Authorization": f"Bearer {make_token('a@x.com', secret='forged')}"},
])
def test_protected_route_rejects_bad_credentials(client, headers):
    res = client.get("/my-reviews", params={"email": "a@x.com"}, headers=headers)
    assert res.status_code == 401
    assert res.json() == {"message": "unauthorized access"}


def test_email_case_does_not_split_identity(client, auth, menu_item):
    res = client.post(
        "/reviews",
        json={"reviewer_email": "A@X.com", "menu_id": menu_item["id"], "rating": 4},
        headers=auth("a@X.com"),
    )
    assert res.status_code == 200
    review = res.json()
    assert review["reviewer_email"] == "a@x.com"

    assert client.get("/my-reviews", params={"email": "A@x.COM"}, headers=auth("a@x.com")).json()[0]["id"] == review["id"]
    assert client.patch(f"/reviews/{review['id']}", json={"rating": 2}, headers=auth("A@x.com")).status_code == 200
    assert client.delete(f"/reviews/{review['id']}", headers=auth("a@X.com")).status_code == 200


def test_mixed_case_admin_reaches_admin_routes(client, auth, db):
    assert client.post("/users", json={"email": "Boss@Tastio.com"}).json()["email"] == "boss@tastio.com"
    db["user"].update_one({"email": "boss@tastio.com"}, {"$set": {"role": "admin"}})

    assert client.get("/users/BOSS@tastio.com/role").json()["role"] == "admin"
    assert client.get("/admin-stats", headers=auth("boss@Tastio.com")).status_code == 200
