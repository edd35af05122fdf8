from .models import (
    AccelerationChoice, EncodeRequest, EncodeCommand, BuildNotice, ProgressEvent,
    EncodeOutcome, CapabilityEntry, BenchmarkTrial, BenchmarkRun, TestMedia,
    TrialStatus, WorkItem, JobStatus, ProbeResult,
)
from .errors import (
    EngineError, ToolNotFoundError, LaunchFailureError, TrialTimeoutError,
    EncodeFailureError, InvalidRequestError, PersistenceError,
)
from .config import EngineConfig, load_config, save_config
from .command_builder import build, build_encode_command, calculate_target_bitrate
from .process import launch, run_capture
from .channel import EventChannel
from .progress import ProgressParser, summarize_diagnostics
from .pipeline import run_encode, run_request
from .capabilities import CapabilityProber
from .benchmark import BenchmarkScheduler, TEST_VIDEOS
from .reducer import best_by_speed, best_by_fps, best_by_efficiency, sort_results
from .store import CapabilityCache, BenchmarkStore
from .probe import get_duration

__version__ = "0.1.0"

__all__ = [
    "AccelerationChoice", "EncodeRequest", "EncodeCommand", "BuildNotice", "ProgressEvent",
    "EncodeOutcome", "CapabilityEntry", "BenchmarkTrial", "BenchmarkRun", "TestMedia",
    "TrialStatus", "WorkItem", "JobStatus", "ProbeResult",
    "EngineError", "ToolNotFoundError", "LaunchFailureError", "TrialTimeoutError",
    "EncodeFailureError", "InvalidRequestError", "PersistenceError",
    "EngineConfig", "load_config", "save_config",
    "build", "build_encode_command", "calculate_target_bitrate",
    "launch", "run_capture",
    "EventChannel",
    "ProgressParser", "summarize_diagnostics",
    "run_encode", "run_request",
    "CapabilityProber",
    "BenchmarkScheduler", "TEST_VIDEOS",
    "best_by_speed", "best_by_fps", "best_by_efficiency", "sort_results",
    "CapabilityCache", "BenchmarkStore",
    "get_duration",
]
