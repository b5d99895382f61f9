# demo_pipeline.py
# Run with: stepci run --config examples/demo_pipeline.py --branch master
from __future__ import annotations

from stepci.dsl import checkout, job, only, pipeline, restore_cache, run, save_cache, workflow

# 1) Host proof: shows the machine actually executing the job
where = job(
    "where-am-i",
    checkout(),
    run("pwd", "Where am I"),
    run("hostname", "Who am I (hostname)"),
    run("date", "What time is it"),
)

# 2) Cache proof: first run misses and writes the artifact, second run restores it
cache_demo = job(
    "cache-demo",
    checkout(),
    restore_cache("demo-cache"),
    run("mkdir -p .stepci/demo_cache", "Make demo dir"),
    run(
        "test -f .stepci/demo_cache/artifact.txt || echo artifact-v1 > .stepci/demo_cache/artifact.txt",
        "Write artifact",
    ),
    run("cat .stepci/demo_cache/artifact.txt", "Show artifact"),
    save_cache("demo-cache", [".stepci/demo_cache"]),
    environment={"DEMO": 1},
)

# 3) Fail-fast proof: the save_cache after the failing step never runs
broken = job(
    "fail-fast-demo",
    run("echo before; exit 3", "Fails"),
    run("echo never printed", "Skipped"),
    save_cache("never-written", [".stepci/demo_cache"]),
)

PIPELINE = pipeline(
    where,
    cache_demo,
    broken,
    workflows=[workflow("demo", where, cache_demo, only(broken, "fail-demo"))],
)
