import json


from keygate.auth import ENV_REDEEM_API_KEYS_FILE, ENV_REDEEM_API_KEYS_JSON, RelyingPartyAuth


def test_auth_disabled_allows_anonymous_redeem(monkeypatch):
    monkeypatch.delenv(ENV_REDEEM_API_KEYS_JSON, raising=False)
    monkeypatch.delenv(ENV_REDEEM_API_KEYS_FILE, raising=False)

    auth = RelyingPartyAuth.load_from_env()
    assert auth.enabled() is False
    assert auth.resolve(None) == (None, None)


def test_auth_configured_requires_api_key(monkeypatch):
    monkeypatch.setenv(ENV_REDEEM_API_KEYS_JSON, json.dumps({"k1": "shop"}))
    monkeypatch.delenv(ENV_REDEEM_API_KEYS_FILE, raising=False)

    auth = RelyingPartyAuth.load_from_env()
    assert auth.enabled() is True
    assert auth.resolve(None) == (None, "API_KEY_REQUIRED")


def test_auth_valid_key_resolves_party(monkeypatch):
    monkeypatch.setenv(ENV_REDEEM_API_KEYS_JSON, json.dumps({"k1": "shop"}))
    monkeypatch.delenv(ENV_REDEEM_API_KEYS_FILE, raising=False)

    auth = RelyingPartyAuth.load_from_env()
    assert auth.resolve("k1") == ("shop", None)
    assert auth.resolve("nope") == (None, "API_KEY_INVALID")


def test_auth_malformed_config_fails_closed(monkeypatch):
    monkeypatch.setenv(ENV_REDEEM_API_KEYS_JSON, "not json")
    monkeypatch.delenv(ENV_REDEEM_API_KEYS_FILE, raising=False)

    auth = RelyingPartyAuth.load_from_env()
    assert auth.enabled() is True
    assert auth.resolve("k1") == (None, "API_KEY_CONFIG_INVALID")


def test_auth_empty_mapping_fails_closed(monkeypatch):
    monkeypatch.setenv(ENV_REDEEM_API_KEYS_JSON, "{}")
    monkeypatch.delenv(ENV_REDEEM_API_KEYS_FILE, raising=False)

    assert RelyingPartyAuth.load_from_env().resolve("k1") == (None, "API_KEY_CONFIG_INVALID")


def test_auth_file_config(monkeypatch, tmp_path):
    p = tmp_path / "keys.json"
    p.write_text(json.dumps({"k2": "forum"}), encoding="utf-8")

    monkeypatch.delenv(ENV_REDEEM_API_KEYS_JSON, raising=False)
    monkeypatch.setenv(ENV_REDEEM_API_KEYS_FILE, str(p))

    auth = RelyingPartyAuth.load_from_env()
    assert auth.resolve("k2") == ("forum", None)


def test_auth_missing_file_fails_closed(monkeypatch, tmp_path):
    monkeypatch.delenv(ENV_REDEEM_API_KEYS_JSON, raising=False)
    monkeypatch.setenv(ENV_REDEEM_API_KEYS_FILE, str(tmp_path / "absent.json"))

    assert RelyingPartyAuth.load_from_env().resolve("k2") == (None, "API_KEY_CONFIG_INVALID")
