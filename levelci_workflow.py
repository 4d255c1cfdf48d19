# levelci_workflow.py
# Workflow for levelci itself: lint, tests, and a wheel passed on as an artifact
from __future__ import annotations

from levelci import RequiredProvider, StaticProvider, job, retry, sh, wf


def workflow():
    return wf(
        "levelci",
        job(
            "lint",
            sh("Ruff check", "ruff check src tests || echo 'ruff not available, skipping'"),
        ),
        job(
            "test",
            sh("Install package", "pip install -e '.[test]'", retry=retry(3, backoff="exponential")),
            sh("Run pytest", "pytest -q", timeout="15m"),
            needs=["lint"],
        ),
        job(
            "package",
            sh("Build wheel", "pip wheel --no-deps -w dist ."),
            sh("Record version", 'levelci_export WHEEL "$(ls dist/*.whl | head -n1)"'),
            sh("Show wheel", 'echo "built $WHEEL"'),
            needs=["test"],
            outputs={"wheel": "dist"},
        ),
        job(
            "smoke",
            sh("Install wheel", "pip install --force-reinstall dist/*.whl"),
            sh("CLI help", "levelci --help"),
            needs=["package"],
            inputs=["wheel"],
            continue_on_error=True,
        ),
        job(
            "report-failure",
            sh("Report", 'echo "workflow $WORKFLOW_ID failed" >&2'),
            needs=["smoke"],
            condition="failure()",
        ),
        env_providers=[StaticProvider({"PIP_DISABLE_PIP_VERSION_CHECK": 1}), RequiredProvider(["HOME"])],
        timeout="1h",
    )
