# config.py
from __future__ import annotations

import re
import runpy
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError
from .model import (
    BranchFilter,
    Checkout,
    ExecutorSpec,
    JobRef,
    JobSpec,
    PipelineSpec,
    RestoreCache,
    RunStep,
    SaveCache,
    StepSpec,
    WorkflowSpec,
)

IMPLICIT_WORKFLOW = "build"

_DURATION = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}


# ----------------------------------------------------------------------
# Scalar coercion
# ----------------------------------------------------------------------

def _stringify(value: Any) -> str:
    # YAML hands us ints/bools for things like CARGO_INCREMENTAL: 0
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _as_str_list(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (str, int, float)):
        return [_stringify(value)]
    if isinstance(value, list):
        return [_stringify(v) for v in value]
    return value


def _as_env(value: Any) -> Any:
    if value is None:
        return {}
    if isinstance(value, dict):
        return {str(k): _stringify(v) for k, v in value.items()}
    return value


def parse_duration(value: Union[str, int, float, None]) -> Optional[float]:
    """'90', 90, '30s', '10m', '1h' -> seconds."""
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    m = _DURATION.match(str(value))
    if not m:
        raise ValueError(f"invalid duration {value!r} (expected e.g. 30s, 10m, 1h)")
    return float(m.group(1)) * _UNIT_SECONDS[m.group(2)]


# ----------------------------------------------------------------------
# Document schema
# ----------------------------------------------------------------------

class _ImageDoc(BaseModel):
    image: str


class _MachineDoc(BaseModel):
    image: Optional[str] = None


class _CheckoutDoc(BaseModel):
    model_config = ConfigDict(extra="forbid")
    path: Optional[str] = None


class _RunDoc(BaseModel):
    model_config = ConfigDict(extra="forbid")

    command: str
    name: Optional[str] = None
    working_directory: Optional[str] = None
    environment: Dict[str, str] = Field(default_factory=dict)
    shell: Optional[str] = None
    timeout: Optional[float] = None

    @field_validator("environment", mode="before")
    @classmethod
    def coerce_environment(cls, v):
        return _as_env(v)

    @field_validator("timeout", mode="before")
    @classmethod
    def coerce_timeout(cls, v):
        return parse_duration(v)


class _RestoreCacheDoc(BaseModel):
    model_config = ConfigDict(extra="forbid")

    keys: Optional[List[str]] = None
    key: Optional[str] = None
    name: Optional[str] = None

    @field_validator("keys", mode="before")
    @classmethod
    def coerce_keys(cls, v):
        return _as_str_list(v)

    @model_validator(mode="after")
    def need_a_key(self):
        if not self.keys and not self.key:
            raise ValueError("restore_cache needs `keys` or `key`")
        return self

    def candidates(self) -> Tuple[str, ...]:
        out = list(self.keys or [])
        if self.key and self.key not in out:
            out.insert(0, self.key)
        return tuple(out)


class _SaveCacheDoc(BaseModel):
    model_config = ConfigDict(extra="forbid")

    key: str
    paths: List[str]
    name: Optional[str] = None

    @field_validator("paths", mode="before")
    @classmethod
    def coerce_paths(cls, v):
        return _as_str_list(v)


class _JobDoc(BaseModel):
    # resource_class, parallelism, ... are accepted and ignored
    docker: Optional[List[_ImageDoc]] = None
    machine: Union[_MachineDoc, bool, None] = None
    environment: Dict[str, str] = Field(default_factory=dict)
    working_directory: Optional[str] = None
    steps: List[Any] = Field(default_factory=list)

    @field_validator("environment", mode="before")
    @classmethod
    def coerce_environment(cls, v):
        return _as_env(v)

    @model_validator(mode="after")
    def one_executor(self):
        if self.docker is not None and self.machine not in (None, False):
            raise ValueError("a job declares either `docker` or `machine`, not both")
        return self


class _BranchesDoc(BaseModel):
    model_config = ConfigDict(extra="forbid")

    only: Optional[List[str]] = None
    ignore: Optional[List[str]] = None

    @field_validator("only", "ignore", mode="before")
    @classmethod
    def coerce_branches(cls, v):
        return _as_str_list(v)


class _FiltersDoc(BaseModel):
    # tag filters are accepted and ignored
    branches: Optional[_BranchesDoc] = None


class _WorkflowJobDoc(BaseModel):
    # context, type, ... are accepted and ignored
    filters: Optional[_FiltersDoc] = None
    requires: Optional[List[str]] = None


class _WorkflowDoc(BaseModel):
    jobs: List[Any] = Field(default_factory=list)


class _PipelineDoc(BaseModel):
    version: Union[str, float, int]
    jobs: Dict[str, _JobDoc] = Field(default_factory=dict)
    workflows: Optional[Dict[str, Any]] = None


# ----------------------------------------------------------------------
# Doc -> model
# ----------------------------------------------------------------------

def _validation_details(e: ValidationError, prefix: str = "") -> Dict[str, str]:
    details: Dict[str, str] = {}
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        where = f"{prefix}.{loc}" if prefix and loc else (prefix or loc or "<root>")
        details[where] = err.get("msg", "invalid")
    return details


def _validate(model: type, data: Any, source: Optional[str], where: str):
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ConfigError(source, f"invalid {where}", _validation_details(e, where)) from e


def _build_step(raw: Any, source: Optional[str], where: str) -> StepSpec:
    if isinstance(raw, str):
        if raw == "checkout":
            return Checkout()
        raise ConfigError(source, f"{where}: unknown step {raw!r}")

    if not isinstance(raw, dict) or len(raw) != 1:
        raise ConfigError(source, f"{where}: a step is a name or a single-key mapping, got {raw!r}")

    kind, body = next(iter(raw.items()))

    if kind == "checkout":
        doc = _validate(_CheckoutDoc, body or {}, source, where)
        return Checkout(path=doc.path)

    if kind == "run":
        if isinstance(body, str):
            body = {"command": body}
        doc = _validate(_RunDoc, body, source, where)
        return RunStep(
            command=doc.command,
            label=doc.name,
            working_directory=doc.working_directory,
            environment=MappingProxyType(dict(doc.environment)),
            shell=doc.shell,
            timeout=doc.timeout,
        )

    if kind == "restore_cache":
        doc = _validate(_RestoreCacheDoc, body, source, where)
        return RestoreCache(keys=doc.candidates(), label=doc.name)

    if kind == "save_cache":
        doc = _validate(_SaveCacheDoc, body, source, where)
        return SaveCache(key=doc.key, paths=tuple(doc.paths), label=doc.name)

    raise ConfigError(source, f"{where}: unsupported step type {kind!r}")


def _build_executor(doc: _JobDoc) -> ExecutorSpec:
    if doc.docker:
        images = [d.image for d in doc.docker]
        return ExecutorSpec(kind="docker", image=images[0], services=tuple(images[1:]))
    if isinstance(doc.machine, _MachineDoc):
        return ExecutorSpec(kind="machine", image=doc.machine.image)
    if doc.machine is True:
        return ExecutorSpec(kind="machine")
    return ExecutorSpec()


def _build_job(name: str, doc: _JobDoc, source: Optional[str]) -> JobSpec:
    steps = tuple(
        _build_step(raw, source, f"jobs.{name}.steps[{i}]")
        for i, raw in enumerate(doc.steps)
    )
    return JobSpec(
        name=name,
        steps=steps,
        executor=_build_executor(doc),
        environment=MappingProxyType(dict(doc.environment)),
        working_directory=doc.working_directory,
    )


def _build_job_ref(raw: Any, source: Optional[str], where: str) -> JobRef:
    if isinstance(raw, str):
        return JobRef(job=raw)

    if not isinstance(raw, dict) or len(raw) != 1:
        raise ConfigError(source, f"{where}: expected a job name or a single-key mapping, got {raw!r}")

    name, body = next(iter(raw.items()))
    doc = _validate(_WorkflowJobDoc, body or {}, source, f"{where}.{name}")
    if doc.requires:
        raise ConfigError(
            source,
            f"{where}.{name}: `requires` is not supported; jobs of a workflow run independently",
            {"requires": ", ".join(doc.requires)},
        )

    branch_filter = None
    if doc.filters is not None and doc.filters.branches is not None:
        b = doc.filters.branches
        branch_filter = BranchFilter(
            only=tuple(b.only) if b.only is not None else None,
            ignore=tuple(b.ignore) if b.ignore is not None else None,
        )
    return JobRef(job=str(name), filter=branch_filter)


def _build_workflows(raw: Optional[Dict[str, Any]], source: Optional[str]) -> Dict[str, WorkflowSpec]:
    workflows: Dict[str, WorkflowSpec] = {}
    for name, body in (raw or {}).items():
        if name == "version":
            # `workflows: {version: 2, ...}` from 2.0 configs
            continue
        doc = _validate(_WorkflowDoc, body or {}, source, f"workflows.{name}")
        refs = tuple(
            _build_job_ref(entry, source, f"workflows.{name}.jobs[{i}]")
            for i, entry in enumerate(doc.jobs)
        )
        workflows[name] = WorkflowSpec(name=name, jobs=refs)
    return workflows


def assemble_pipeline(
    version: str,
    jobs: Iterable[JobSpec],
    workflows: Iterable[WorkflowSpec],
    source: Optional[str] = None,
) -> PipelineSpec:
    """
    Cross-check jobs and workflows and freeze them into a PipelineSpec.

    Without workflows, a job named `build` runs on its own.
    """
    job_map: Dict[str, JobSpec] = {}
    for j in jobs:
        if j.name in job_map:
            raise ConfigError(source, f"duplicate job name: {j.name}")
        job_map[j.name] = j

    wf_map: Dict[str, WorkflowSpec] = {}
    for wf in workflows:
        if wf.name in wf_map:
            raise ConfigError(source, f"duplicate workflow name: {wf.name}")
        wf_map[wf.name] = wf

    if not wf_map:
        if IMPLICIT_WORKFLOW not in job_map:
            raise ConfigError(
                source,
                "no workflows declared and no job named 'build' to run",
                {"jobs": ", ".join(sorted(job_map)) or "<none>"},
            )
        wf_map[IMPLICIT_WORKFLOW] = WorkflowSpec(name=IMPLICIT_WORKFLOW, jobs=(JobRef(IMPLICIT_WORKFLOW),))

    for wf in wf_map.values():
        seen = set()
        for ref in wf.jobs:
            if ref.job not in job_map:
                raise ConfigError(
                    source,
                    f"workflow {wf.name!r} references undefined job {ref.job!r}",
                    {"known": ", ".join(sorted(job_map)) or "<none>"},
                )
            if ref.job in seen:
                raise ConfigError(source, f"workflow {wf.name!r} lists job {ref.job!r} twice")
            seen.add(ref.job)

    return PipelineSpec(
        version=str(version),
        jobs=MappingProxyType(job_map),
        workflows=MappingProxyType(wf_map),
    )


def parse_pipeline(data: Any, source: Optional[str] = None) -> PipelineSpec:
    """Build a PipelineSpec from an already-parsed document (a mapping)."""
    if not isinstance(data, dict):
        raise ConfigError(source, "pipeline document must be a mapping at the top level")

    doc = _validate(_PipelineDoc, data, source, "pipeline")
    jobs = [_build_job(name, jdoc, source) for name, jdoc in doc.jobs.items()]
    workflows = _build_workflows(doc.workflows, source)
    return assemble_pipeline(_stringify(doc.version), jobs, workflows.values(), source)


def loads_pipeline(text: str, source: Optional[str] = None) -> PipelineSpec:
    """
    Parse YAML text. Anchors and `<<` merge keys are expanded by the YAML
    loader, so the engine only ever sees plain data.
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(source, "YAML syntax error", {"error": str(e)}) from e
    return parse_pipeline(data, source)


# ----------------------------------------------------------------------
# Files
# ----------------------------------------------------------------------

def _load_python(path: Path) -> PipelineSpec:
    """
    A Python pipeline file must define either:
      - PIPELINE = PipelineSpec(...)
      - pipeline() -> PipelineSpec
    """
    from . import dsl

    module_name = f"stepci_pipeline_{path.stem}"
    globals_dict = runpy.run_path(str(path), run_name=module_name)

    spec = None
    if "PIPELINE" in globals_dict:
        spec = globals_dict["PIPELINE"]
    elif "pipeline" in globals_dict and callable(globals_dict["pipeline"]):
        if globals_dict["pipeline"] is dsl.pipeline:
            raise ConfigError(
                str(path),
                "pipeline() here is the stepci.dsl helper (name collision). "
                "Assign the result instead: `PIPELINE = pipeline(job(...), ...)`",
            )
        spec = globals_dict["pipeline"]()

    if isinstance(spec, dict):
        spec = parse_pipeline(spec, str(path))

    if not isinstance(spec, PipelineSpec):
        raise ConfigError(
            str(path),
            "Python pipeline must define pipeline() -> PipelineSpec or PIPELINE = PipelineSpec(...)",
        )
    return spec


def load_pipeline(path: str | Path) -> PipelineSpec:
    """Load a pipeline from a .yml/.yaml document or a .py file."""
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise ConfigError(str(p), "pipeline file not found")

    if p.suffix in (".yml", ".yaml"):
        return loads_pipeline(p.read_text(encoding="utf-8"), str(p))
    if p.suffix == ".py":
        return _load_python(p)

    raise ConfigError(str(p), f"unsupported pipeline file type {p.suffix!r} (expected .yml, .yaml or .py)")
