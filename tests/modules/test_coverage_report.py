from datetime import datetime, timezone
from typing import Callable
import pathlib

from fuzzci import config
from fuzzci.common import aio
from fuzzci.modules.coverage import CoverageReportGenerator

STAMP = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

FAKE_KCOV = """\
#!/bin/sh
out=$1
for bin; do :; done
echo "$CORPUS $*" > "$out/index.html"
mkdir -p "$out/$(basename "$bin")"
echo '{"percent_covered": "12.50", "covered_lines": 1, "total_lines": 8, "files": []}' > "$out/$(basename "$bin")/coverage.json"
"""

def checkout_with_binary(root: pathlib.Path, project: str = "proj") -> pathlib.Path:
    deps = root / project / "target" / "debug" / "deps"
    deps.mkdir(parents=True)
    _ = (deps / f"{project.replace('-', '_')}-0123abcd.d").write_text("deps")
    _ = (deps / f"{project.replace('-', '_')}-0123abcd").write_text("binary")
    _ = (deps / "other-0123abcd").write_text("binary")
    return deps

def coverage_config(make_config: Callable[..., config.Config], kcov: pathlib.Path, **kwargs) -> config.Config:
    return make_config(
        url="http://ci.example.com/reports/",
        coverage={"enabled": True, "command": str(kcov), "kcov_args": ["--include-pattern=code"], "test_build_command": ["true"]},
        **kwargs,
    )

def test_report_dir():
    assert CoverageReportGenerator.report_dir("feature/x", "0123456789abcdef", STAMP).as_posix() == "feature_x/0123456-2024-01-02T03-04-05Z"

async def test_generate(tmp_path: pathlib.Path, make_config: Callable[..., config.Config], script):
    conf = coverage_config(make_config, script("kcov.sh", FAKE_KCOV))
    root = tmp_path / "checkout"
    deps = checkout_with_binary(root)

    generator = CoverageReportGenerator(conf)
    reports = await generator.generate("feature/x", "0123456789abcdef", conf.projects(), aio.Path(root), stamp=STAMP)
    assert len(reports) == 1
    report = reports[0]
    assert report.project == "proj"
    assert report.branch == "feature/x"
    assert report.url == "http://ci.example.com/reports/feature_x/0123456-2024-01-02T03-04-05Z/proj/"

    out = conf.reports_path / "feature_x" / "0123456-2024-01-02T03-04-05Z" / "proj"
    assert report.path == out.as_posix()
    corpus, out_arg, include, binary = (out / "index.html").read_text().split()
    assert corpus == conf.corpus.as_posix()
    assert out_arg == out.as_posix()
    assert include == "--include-pattern=code"
    assert binary == (deps / "proj-0123abcd").as_posix()
    assert report.line_coverage == 12.5

async def test_find_binary(tmp_path: pathlib.Path, make_config: Callable[..., config.Config]):
    generator = CoverageReportGenerator(make_config())
    deps = checkout_with_binary(tmp_path, "my-proj")
    res = await generator.find_binary(aio.Path(tmp_path / "my-proj"))
    assert res.is_ok()
    assert res.unwrap() == aio.Path(deps / "my_proj-0123abcd")

    assert (await generator.find_binary(aio.Path(tmp_path / "missing"))).is_err()

async def test_failures_are_skipped(tmp_path: pathlib.Path, make_config: Callable[..., config.Config], script):
    kcov = script("kcov.sh", """\
        #!/bin/sh
        echo "kcov: unable to run" >&2
        exit 1
        """)
    conf = coverage_config(make_config, kcov)
    root = tmp_path / "checkout"
    _ = checkout_with_binary(root)
    generator = CoverageReportGenerator(conf)
    assert await generator.generate("master", "0123456789", conf.projects(), aio.Path(root), stamp=STAMP) == []

    # no test binary was built
    conf = coverage_config(make_config, script("kcov-ok.sh", FAKE_KCOV))
    (root / "proj" / "target").rename(root / "proj" / "moved")
    assert await CoverageReportGenerator(conf).generate("master", "0123456789", conf.projects(), aio.Path(root), stamp=STAMP) == []
