import json

import pytest

from cafe_scraper.core.errors import SessionInvalid, SessionMissing
from cafe_scraper.session import is_storage_state, load_storage_state, store_storage_state

STATE = {"cookies": [{"name": "NID_AUT", "value": "x", "domain": ".naver.com", "path": "/"}], "origins": []}


def test_is_storage_state():
    assert is_storage_state(STATE)
    assert not is_storage_state({"cookies": []})
    assert not is_storage_state([])


def test_missing_session_everywhere(ctx):
    with pytest.raises(SessionMissing):
        load_storage_state(ctx.settings, ctx.store.settings)


def test_session_file_takes_precedence(ctx, tmp_path):
    path = tmp_path / "session.json"
    path.write_text(json.dumps(STATE), encoding="utf-8")
    ctx.settings.session_file = str(path)
    store_storage_state(ctx.settings, ctx.store.settings, {"cookies": [], "origins": []})
    assert load_storage_state(ctx.settings, ctx.store.settings) == str(path)


def test_malformed_session_file(ctx, tmp_path):
    path = tmp_path / "session.json"
    path.write_text(json.dumps({"cookies": "nope"}), encoding="utf-8")
    ctx.settings.session_file = str(path)
    with pytest.raises(SessionInvalid):
        load_storage_state(ctx.settings, ctx.store.settings)


def test_encrypted_store_round_trip(ctx):
    store_storage_state(ctx.settings, ctx.store.settings, STATE)
    raw = ctx.store.settings.get(ctx.settings.storage_state_key)
    assert raw.startswith("v1:") and "NID_AUT" not in raw
    assert load_storage_state(ctx.settings, ctx.store.settings) == STATE


def test_store_record_with_wrong_secret_is_invalid(ctx):
    store_storage_state(ctx.settings, ctx.store.settings, STATE)
    ctx.settings.app_auth_secret = "another-secret"
    with pytest.raises(SessionInvalid):
        load_storage_state(ctx.settings, ctx.store.settings)


def test_store_record_garbage_is_invalid(ctx):
    ctx.store.settings.upsert(ctx.settings.storage_state_key, "not-encrypted")
    with pytest.raises(SessionInvalid):
        load_storage_state(ctx.settings, ctx.store.settings)


def test_upload_rejects_malformed_state(ctx):
    with pytest.raises(SessionInvalid):
        store_storage_state(ctx.settings, ctx.store.settings, {"origins": []})
