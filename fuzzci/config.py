"""
Process-wide settings for fuzzci: logging, telemetry and the fuzz-ci.toml schema.
Environment derived settings are read once at import; the TOML file is read by `load`.
"""

from datetime import datetime
from typing import Any, Optional, Self
import inspect
import logging
import os
import pathlib
import sys
import tomllib

from loguru import logger
from pydantic import AliasChoices, BaseModel, Field, ValidationError, model_validator

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
import opentelemetry.metrics

from fuzzci.common.types import ConfigError, FuzzProject, FuzzTarget

FUZZCIROOT = pathlib.Path(__file__).parent

DEFAULT_CONFIG = "fuzz-ci.toml"
DEFAULT_ADDRESS = "0.0.0.0:3030"
DEFAULT_BRANCHES = ["master", "develop"]
SLACK_TOKEN_ENV = "SLACK_AUTH_TOKEN"

MAX_ERROR_OUTPUT = 2048

OTEL_EXPORTER_OTLP_ENDPOINT = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
TRACING = bool(OTEL_EXPORTER_OTLP_ENDPOINT)
FUZZCI_SERVICE_NAME = os.getenv("FUZZCI_SERVICE_NAME", "fuzz-ci")
if TRACING:
    resource = Resource(attributes={"service.name": FUZZCI_SERVICE_NAME})
    trace_provider = TracerProvider(resource=resource)

    span_exporter = OTLPSpanExporter(OTEL_EXPORTER_OTLP_ENDPOINT)
    trace_provider.add_span_processor(BatchSpanProcessor(span_exporter, export_timeout_millis=4000))

    metric_exporter = OTLPMetricExporter(OTEL_EXPORTER_OTLP_ENDPOINT)
    metric_reader = PeriodicExportingMetricReader(metric_exporter, export_interval_millis=10000, export_timeout_millis=4000)

    meter_provider = MeterProvider(metric_readers=[metric_reader], resource=resource)
    opentelemetry.metrics.set_meter_provider(meter_provider)
    trace.set_tracer_provider(trace_provider)
else:
    trace.set_tracer_provider(trace.NoOpTracerProvider())

telem_tracer = trace.get_tracer(__name__)
meter = opentelemetry.metrics.get_meter(__name__)

cycles_counter = meter.create_counter("fuzzci.cycles", description="branch cycles started")
samples_counter = meter.create_counter("fuzzci.samples", description="progress samples accepted")
exits_counter = meter.create_counter("fuzzci.target_exits", description="fuzz target process exits")

# Logging configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOGS_DIR = pathlib.Path(os.getenv("LOGS_DIR", FUZZCIROOT / ".." / "logs"))
os.makedirs(LOGS_DIR, exist_ok=True)

# output text logs to stderr and JSON logs to a file
log_file = LOGS_DIR / datetime.now().strftime("fuzzci_%Y-%m-%d_%H_%M_%S_%f.jsonl")
logger.remove()
_ = logger.add(sys.stderr, level=LOG_LEVEL)
_ = logger.add(log_file, level=LOG_LEVEL, serialize=True)

def set_log_level(level: str):
    """Re-installs the stderr sink at `level` (used by the CLI -d flag)."""
    global LOG_LEVEL
    LOG_LEVEL = level = level.upper()
    logger.remove()
    _ = logger.add(sys.stderr, level=level)
    _ = logger.add(log_file, level=level, serialize=True)
    logging.getLogger().setLevel(level)

# standard logging handler to intercept messages and forward to logger
class InterceptHandler(logging.Handler):
    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find caller from where originated the logged message.
        frame, depth = inspect.currentframe(), 0
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())

# clear pre-existing handlers from all loggers
for logger_name in logging.root.manager.loggerDict:
    logging.getLogger(logger_name).handlers.clear()

# set up standard logging to only use our InterceptHandler
logging.basicConfig(handlers=[InterceptHandler()], level=LOG_LEVEL, force=True)

# attach intercept handler to any non-propagating loggers (they won't reach our handler otherwise)
for logger_name in logging.root.manager.loggerDict:
    std_logger = logging.getLogger(logger_name)
    if not std_logger.propagate:
        std_logger.handlers = [InterceptHandler()]


class HonggfuzzConfig(BaseModel):
    # {target}, {project} and {corpus} are substituted
    command: list[str] = ["cargo", "hfuzz", "run", "{target}"]
    # the engine reads its arguments from this environment variable
    args_env: str = "HFUZZ_RUN_ARGS"
    verbose_args: str = "-v"
    calibration_args: str = "-N 1 -n 1"
    corpus_args: str = "-i {corpus}"
    run_args: str = ""
    calibration_timeout: float = 5*60
    grace_period: float = 5.0

class ProjectEngineConfig(BaseModel):
    run_args: Optional[str] = None

class ProjectConfig(BaseModel):
    targets: list[str] = []
    path: Optional[str] = None
    honggfuzz: ProjectEngineConfig = ProjectEngineConfig()

class BuildConfig(BaseModel):
    command: list[str] = ["cargo", "hfuzz", "build"]
    # appended to `command` once per configured target
    target_args: list[str] = ["--bin", "{target}"]
    # run before `command` when set, e.g. ["cargo", "hfuzz", "clean"]
    clean_command: Optional[list[str]] = None
    timeout: Optional[float] = 60*60

class CoverageConfig(BaseModel):
    enabled: bool = True
    command: str = "kcov"
    kcov_args: list[str] = []
    test_build_command: Optional[list[str]] = ["cargo", "build", "--tests"]
    binary_dir: str = "target/debug/deps"
    interval: float = 6*60*60
    timeout: Optional[float] = 60*60

class FeedbackConfig(BaseModel):
    update_timeout: float = 10*60
    no_update_timeout: float = 24*60*60
    # deliver every event kind instead of errors only
    verbose: bool = False

class SlackConfig(BaseModel):
    channel: str
    token: str = ""
    api_url: str = "https://slack.com/api/chat.postMessage"
    timeout: float = 30.0

    @model_validator(mode="after")
    def token_from_env(self) -> Self:
        if env_token := os.environ.get(SLACK_TOKEN_ENV):
            self.token = env_token
        return self

class Config(BaseModel):
    address: str = DEFAULT_ADDRESS
    url: Optional[str] = None
    branches: list[str] = DEFAULT_BRANCHES
    checkout_command: list[str] = ["./checkout.sh"]
    checkout_timeout: Optional[float] = 60*60
    corpus: pathlib.Path = pathlib.Path("corpus")
    reports_path: pathlib.Path = pathlib.Path("reports")
    # PATH-like variables, values relative to the checkout root
    path_env: dict[str, str] = {}
    honggfuzz: HonggfuzzConfig = HonggfuzzConfig()
    build: BuildConfig = BuildConfig()
    coverage: CoverageConfig = Field(default_factory=CoverageConfig, validation_alias=AliasChoices("coverage", "kcov"))
    targets: dict[str, ProjectConfig] = {}
    feedback: FeedbackConfig = FeedbackConfig()
    slack: Optional[SlackConfig] = None
    history: int = 16

    @model_validator(mode="after")
    def unique_targets(self) -> Self:
        seen: dict[str, str] = {}
        for project, conf in self.targets.items():
            for target in conf.targets:
                if (other := seen.get(target)) is not None:
                    raise ValueError(f"target {target!r} is listed in both {other!r} and {project!r}")
                seen[target] = project
        return self

    @property
    def reports_url(self) -> str:
        return self.url or f"http://{self.address}/reports/"

    def projects(self) -> list[FuzzProject]:
        return [
            FuzzProject(
                name=name,
                targets=tuple(FuzzTarget(name=t, project=name) for t in conf.targets),
                path=conf.path or name,
                run_args=conf.honggfuzz.run_args,
            )
            for name, conf in self.targets.items()
        ]

    def run_args(self, project: FuzzProject) -> str:
        return self.honggfuzz.run_args if project.run_args is None else project.run_args

    def resolve(self, base: pathlib.Path) -> Self:
        """Returns a copy with relative storage paths anchored at `base`."""
        updates: dict[str, Any] = {}
        for field in ("corpus", "reports_path"):
            path: pathlib.Path = getattr(self, field)
            if not path.is_absolute():
                updates[field] = (base / path).absolute()
        return self.model_copy(update=updates)

def load(path: str | os.PathLike[str] = DEFAULT_CONFIG) -> Config:
    path = pathlib.Path(path)
    try:
        with open(path, "rb") as f:
            raw = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"cannot read configuration file {path}: {e}")
    try:
        conf = Config.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"invalid configuration file {path}", extra={"errors": e.errors(include_url=False)})
    return conf.resolve(path.absolute().parent)
