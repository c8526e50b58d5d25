import importlib


def _read_pyproject_version() -> str:
    import re
    from pathlib import Path

    txt = (Path(__file__).resolve().parents[1] / "pyproject.toml").read_text(encoding="utf-8")
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    assert m, "Could not locate [project].version in pyproject.toml"
    return m.group(1)


def test_convenience_imports_work():
    import keygate

    assert hasattr(keygate, "KeyGate")
    assert hasattr(keygate, "create_app")

    from keygate import KeyGate, KeyStore, TagSigner, create_app  # noqa: F401

    importlib.reload(keygate)


def test_unknown_attribute_raises():
    import keygate

    try:
        keygate.does_not_exist
    except AttributeError:
        pass
    else:
        raise AssertionError("expected AttributeError")


def test_version_export_matches_pyproject():
    import keygate

    assert keygate.__version__ == _read_pyproject_version()
