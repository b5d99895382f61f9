from .config import load_pipeline, loads_pipeline, parse_pipeline
from .engine import PipelineEngine, run_pipeline
from .model import JobStatus, PipelineResult, PipelineSpec
from .settings import EngineSettings

__all__ = [
    "load_pipeline",
    "loads_pipeline",
    "parse_pipeline",
    "PipelineEngine",
    "run_pipeline",
    "JobStatus",
    "PipelineResult",
    "PipelineSpec",
    "EngineSettings",
]
