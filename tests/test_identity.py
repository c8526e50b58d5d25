from types import SimpleNamespace

from keygate.identity import ConnectionAttributes, attributes_from_request, bind


def test_bind_is_deterministic_hex():
    a = bind(ConnectionAttributes("203.0.113.5", "Mozilla/5.0"))
    b = bind(ConnectionAttributes("203.0.113.5", "Mozilla/5.0"))
    assert a == b
    assert len(a) == 64
    int(a, 16)


def test_bind_depends_on_both_attributes():
    base = bind(ConnectionAttributes("203.0.113.5", "Mozilla/5.0"))
    assert bind(ConnectionAttributes("203.0.113.6", "Mozilla/5.0")) != base
    assert bind(ConnectionAttributes("203.0.113.5", "curl/8.0")) != base


def test_bind_is_unambiguous_across_field_boundary():
    # Length-prefixed encoding: moving characters between fields changes the hash.
    assert bind(ConnectionAttributes("ab", "c")) != bind(ConnectionAttributes("a", "bc"))


def test_missing_attributes_still_bind():
    assert bind(ConnectionAttributes(None, None)) == bind(ConnectionAttributes("", ""))


def test_attributes_from_request():
    req = SimpleNamespace(client=SimpleNamespace(host="198.51.100.7"), headers={"user-agent": "UA/1"})
    attrs = attributes_from_request(req)
    assert attrs == ConnectionAttributes("198.51.100.7", "UA/1")


def test_attributes_from_request_without_client():
    req = SimpleNamespace(client=None, headers={})
    assert attributes_from_request(req) == ConnectionAttributes(None, None)
