import os

import pytest

tomllib = pytest.importorskip("tomllib")

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def test_utils_namespace_package_is_installed():
    with open(os.path.join(ROOT, "pyproject.toml"), "rb") as f:
        find = tomllib.load(f)["tool"]["setuptools"]["packages"]["find"]

    # volumebot/utils has no __init__.py
    assert not os.path.exists(os.path.join(ROOT, "volumebot", "utils", "__init__.py"))
    assert find["namespaces"] is True
    assert "volumebot*" in find["include"]
