from collections.abc import Generator
import json
import os
import pathlib
import tempfile

import pytest

FAKE_HELM = """#!/bin/sh
DIR="$(dirname "$0")"
echo "$@" >> "$DIR/calls.log"
case "$1" in
  pull)
    # helm pull NAME --repo URL --version VERSION --destination DIR
    mkdir -p "$8"
    echo "chart" > "$8/$2-$6.tgz"
    ;;
  status)
    echo "Error: release: not found" >&2
    exit 1
    ;;
  install|upgrade)
    sed "s/RELEASE_NAME/$2/" "$DIR/release.json"
    ;;
  *)
    echo "Error: unexpected command $1" >&2
    exit 1
    ;;
esac
"""

RELEASE = {
    "name": "RELEASE_NAME",
    "namespace": "cache",
    "version": 1,
    "info": {"status": "deployed"},
    "chart": {"metadata": {"name": "redis", "version": "17.11.3"}},
    "config": {"architecture": "standalone"},
}


@pytest.fixture(name="helm_dir")
def helm_dir_fixture() -> Generator[pathlib.Path, None, None]:
    """Create a directory holding a fake helm binary."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        helm_dir = pathlib.Path(tmp_dir)
        helm_bin = helm_dir / "helm"
        helm_bin.write_text(FAKE_HELM)
        helm_bin.chmod(0o755)
        (helm_dir / "release.json").write_text(json.dumps(RELEASE))
        yield helm_dir


@pytest.fixture(name="helm_env")
def helm_env_fixture(helm_dir: pathlib.Path) -> dict[str, str]:
    """Environment that finds the fake helm binary first."""
    return {"PATH": f"{helm_dir}{os.pathsep}{os.environ.get('PATH', '')}"}
