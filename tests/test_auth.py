import asyncio
import datetime
from urllib.parse import parse_qs, urlparse

import pytest
from jose import jwt

import llm_humorizer.auth as auth
from llm_humorizer.auth import ActorTokenManager, OIDCClient, SessionManager, generate_state_token
from llm_humorizer.config import Settings


def _oidc_settings():
    return Settings(
        oidc_enabled=True,
        oidc_client_id="client-id",
        oidc_client_secret="client-secret",
        oidc_redirect_uri="http://localhost:8000/auth/callback",
    )


def test_actor_token_round_trip():
    tokens = ActorTokenManager("s3cret")
    owner = tokens.new_identifier()
    assert tokens.verify_token(tokens.create_token(owner)) == owner


def test_actor_token_rejects_tampering_and_other_secrets():
    tokens = ActorTokenManager("s3cret")
    token = tokens.create_token("owner-1")
    assert ActorTokenManager("other").verify_token(token) is None
    assert tokens.verify_token(token[:-2] + "xx") is None
    assert tokens.verify_token(None) is None
    assert tokens.verify_token("") is None


def test_actor_token_rejects_wrong_type_and_expired():
    tokens = ActorTokenManager("s3cret")
    now = datetime.datetime.now(datetime.timezone.utc)
    other_type = jwt.encode({'sub': 'x', 'typ': 'access', 'exp': now + datetime.timedelta(days=1)}, "s3cret", algorithm="HS256")
    expired = jwt.encode({'sub': 'x', 'typ': 'actor', 'exp': now - datetime.timedelta(days=1)}, "s3cret", algorithm="HS256")
    assert tokens.verify_token(other_type) is None
    assert tokens.verify_token(expired) is None


def test_session_holds_user_and_active_gallery():
    sessions = SessionManager()
    sid = sessions.create_session()
    sessions.set_user(sid, {'sub': 'g-1'})
    sessions.set_active_gallery(sid, "gallery-1", "ADM23456")

    session = sessions.get_session(sid)
    assert session['user_info'] == {'sub': 'g-1'}
    assert session['gallery_id'] == "gallery-1"
    assert session['admin_code'] == "ADM23456"

    sessions.clear_active_gallery(sid)
    assert sessions.get_session(sid)['gallery_id'] is None
    assert sessions.get_session(sid)['admin_code'] is None


def test_session_expiry():
    sessions = SessionManager(expiry_seconds=60)
    sid = sessions.create_session()
    sessions._sessions[sid]['created_at'] -= datetime.timedelta(seconds=120)
    assert sessions.get_session(sid) is None
    assert sessions.get_session(None) is None


def test_creating_a_session_drops_expired_ones():
    sessions = SessionManager(expiry_seconds=60)
    old = sessions.create_session()
    sessions._sessions[old]['created_at'] -= datetime.timedelta(seconds=120)
    fresh = sessions.create_session()
    assert old not in sessions._sessions
    assert fresh in sessions._sessions


def test_authorization_url_carries_pkce_and_state():
    oidc = OIDCClient(_oidc_settings())
    state = generate_state_token()

    url = oidc.get_authorization_url(state)
    params = parse_qs(urlparse(url).query)

    assert url.startswith("https://accounts.google.com/")
    assert params['state'] == [state]
    assert params['client_id'] == ["client-id"]
    assert params['code_challenge_method'] == ["S256"]
    assert state in oidc.pkce_states


def test_exchange_with_unknown_state_raises():
    oidc = OIDCClient(_oidc_settings())
    with pytest.raises(ValueError):
        asyncio.run(oidc.exchange_code_for_token("code", "unknown-state"))


def test_exchange_and_userinfo_use_oauth_client(monkeypatch):
    calls = {}

    class FakeResponse:
        def raise_for_status(self):
            return None

        def json(self):
            return {'sub': 'google-1', 'email': 'a@example.com', 'given_name': 'Dana'}

    class FakeOAuthClient:
        def __init__(self, **kwargs):
            calls.setdefault('init', []).append(kwargs)

        async def __aenter__(self):
            return self

        async def __aexit__(self, *exc):
            return False

        async def fetch_token(self, url, **kwargs):
            calls['fetch'] = (url, kwargs)
            return {'access_token': 'at'}

        async def get(self, url):
            calls['get'] = url
            return FakeResponse()

    monkeypatch.setattr(auth, "AsyncOAuth2Client", FakeOAuthClient)
    oidc = OIDCClient(_oidc_settings())
    oidc.get_authorization_url("st")
    verifier = oidc.pkce_states["st"]['code_verifier']

    token = asyncio.run(oidc.exchange_code_for_token("the-code", "st"))
    info = asyncio.run(oidc.get_userinfo(token['access_token']))

    assert calls['fetch'][1]['code_verifier'] == verifier
    assert "st" not in oidc.pkce_states
    assert info == {'sub': 'google-1', 'email': 'a@example.com', 'name': 'Dana'}


def test_abandoned_login_states_are_pruned():
    oidc = OIDCClient(_oidc_settings())
    oidc.get_authorization_url("abandoned")
    oidc.pkce_states["abandoned"]['created_at'] -= auth.PKCE_STATE_TTL + datetime.timedelta(seconds=1)

    oidc.get_authorization_url("fresh")

    assert "abandoned" not in oidc.pkce_states
    assert "fresh" in oidc.pkce_states


def test_exchange_rejects_expired_login_state():
    oidc = OIDCClient(_oidc_settings())
    oidc.get_authorization_url("late")
    oidc.pkce_states["late"]['created_at'] -= auth.PKCE_STATE_TTL + datetime.timedelta(seconds=1)
    with pytest.raises(ValueError):
        asyncio.run(oidc.exchange_code_for_token("code", "late"))
