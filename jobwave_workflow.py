# jobwave_workflow.py
# Workflow for jobwave itself: lint and test in parallel, then a reviewed release.
from __future__ import annotations
from jobwave.dsl import wf, job, sh, checkpoint

def workflow():
    return wf(
        # Wave 0: independent checks
        job(
            "lint",
            sh("Ruff check", "ruff check src tests || echo 'ruff not available, skipping'"),
        ),
        job(
            "test",
            sh("Install package", "pip install -e '.[test]'"),
            sh("Run pytest", "pytest -q"),
            timeout=600,
        ),

        # Wave 1: needs both checks
        job(
            "build",
            sh("Build sdist and wheel", "python -m build || echo 'build not available, skipping'"),
            needs=["lint", "test"],
        ),

        # Wave 2: a human looks at the artifacts, then picks a channel
        job(
            "release",
            checkpoint("Inspect dist/", "human-verify", check="files in dist/ look right"),
            checkpoint("Pick channel", "decision", options=["testpypi", "pypi"], default="testpypi"),
            sh("Announce", "echo \"releasing to $JOBWAVE_DECISION\""),
            needs=["build"],
        ),
    )
