from typing import Any, Callable
import pathlib
import textwrap
import pytest
import pytest_asyncio

from fuzzci import config

# prints a calibration summary when run with the calibration budget, otherwise one
# progress line and then idles until it is signalled
FAKE_ENGINE = """\
#!/bin/sh
case "$HFUZZ_RUN_ARGS" in
  *"-N 1"*)
    echo "Summary iterations:1 time:0 speed:0 crashes_count:0 timeout_count:0 new_units_added:0 slowest_unit_ms:0 guard_nb:500 branch_coverage_percent:0 peak_rss_mb:1" >&2
    exit 0;;
esac
echo "Sz:1 Tm:1us (i/b/h/e/p/c) New:0/0/0/12/0/0, Cur:0/0/0/120/0/0" >&2
exec sleep 1000
"""

# makes the project directories the configuration points at and logs the
# checkout directory next to itself
FAKE_CHECKOUT = """\
#!/bin/sh
set -e
mkdir -p "$1/proj"
echo "$2 $3" > "$1/checked_out"
echo "$1" >> "$(dirname "$0")/checkouts"
"""

type ScriptFactory = Callable[[str, str], pathlib.Path]

@pytest.fixture
def script(tmp_path: pathlib.Path) -> ScriptFactory:
    """Writes an executable shell script into tmp_path/bin and returns its path."""
    def make(name: str, body: str) -> pathlib.Path:
        path = tmp_path / "bin" / name
        path.parent.mkdir(exist_ok=True)
        _ = path.write_text(textwrap.dedent(body))
        path.chmod(0o755)
        return path
    return make

@pytest.fixture
def engine(script: ScriptFactory) -> pathlib.Path:
    return script("engine.sh", FAKE_ENGINE)

@pytest.fixture
def make_config(tmp_path: pathlib.Path, engine: pathlib.Path, script: ScriptFactory) -> Callable[..., config.Config]:
    """
    Config with one project "proj" of targets "t1" and "t2", fake checkout, build
    and engine commands and coverage disabled. Keyword arguments override fields.
    """
    checkout = script("checkout.sh", FAKE_CHECKOUT)

    def make(**overrides: Any) -> config.Config:
        raw: dict[str, Any] = {
            "branches": ["master", "develop"],
            "checkout_command": [str(checkout)],
            "corpus": str(tmp_path / "corpus"),
            "reports_path": str(tmp_path / "reports"),
            "build": {"command": ["true"]},
            "honggfuzz": {"command": [str(engine), "{target}"], "grace_period": 1, "calibration_timeout": 10},
            "coverage": {"enabled": False},
            "targets": {"proj": {"targets": ["t1", "t2"]}},
        }
        raw.update(overrides)
        return config.Config.model_validate(raw)
    return make

def pytest_collection_modifyitems(items: list[pytest.Item]):
    pytest_asyncio_tests = (item for item in items if pytest_asyncio.is_async_test(item))
    session_scope_marker = pytest.mark.asyncio(loop_scope="session")
    for async_test in pytest_asyncio_tests:
        async_test.add_marker(session_scope_marker, append=False)
