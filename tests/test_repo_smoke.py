from __future__ import annotations

import re
import subprocess
import sys
from importlib.machinery import PathFinder
from pathlib import Path

import yaml


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


def _src_root() -> Path:
    return _repo_root() / "packages" / "rum-runtime-python" / "src"


def test_package_is_importable_without_install() -> None:
    src = _src_root()
    # site-packages 里可能装着旧版本：确保解析来源是 repo 内的 src
    spec = PathFinder.find_spec("rum_runtime", [str(src)])
    assert spec is not None
    assert spec.origin is not None and Path(spec.origin).is_relative_to(src)

    sys.path.insert(0, str(src))
    import rum_runtime

    assert rum_runtime.Runs is not None


def test_default_config_asset_ships_with_package() -> None:
    asset = _src_root() / "rum_runtime" / "assets" / "default.yaml"
    assert asset.is_file()
    assert "config_version: 1" in asset.read_text(encoding="utf-8")


def test_pyproject_version_matches_package_version() -> None:
    pyproject = (_repo_root() / "pyproject.toml").read_text(encoding="utf-8")
    init_py = (_src_root() / "rum_runtime" / "__init__.py").read_text(encoding="utf-8")

    m_project = re.search(r'^version\s*=\s*"([^"]+)"', pyproject, flags=re.MULTILINE)
    m_init = re.search(r'^__version__\s*=\s*"([^"]+)"', init_py, flags=re.MULTILINE)
    assert m_project and m_init
    assert m_project.group(1) == m_init.group(1)


def test_cli_module_prints_version() -> None:
    result = subprocess.run(
        [sys.executable, "-m", "rum_runtime.cli.main", "--version"],
        text=True,
        capture_output=True,
        env={"PYTHONPATH": str(_src_root()), "PATH": "/usr/bin:/bin"},
        check=False,
    )
    assert result.returncode == 0, (result.stdout, result.stderr)
    assert result.stdout.strip().startswith("rum ")


def test_readme_config_example_matches_packaged_defaults() -> None:
    readme = (_repo_root() / "README.md").read_text(encoding="utf-8")
    m = re.search(r"```yaml\n(.*?)```", readme, flags=re.DOTALL)
    assert m, "README has no yaml config example"
    example = yaml.safe_load(m.group(1))

    defaults = yaml.safe_load((_src_root() / "rum_runtime" / "assets" / "default.yaml").read_text(encoding="utf-8"))
    for section, values in example.items():
        assert values == defaults[section], section
