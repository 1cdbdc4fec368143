# actionflow_workflow.py
# Workflow for actionflow itself: lint, a python-version matrix of tests, and
# a summary job that reads the test outputs.
from __future__ import annotations

from actionflow import build, job, matrix, sh, uses, wf


def workflow():
    return wf(
        # Lint job - runs ruff on the codebase
        job(
            "lint",
            uses("actions/setup-python@v5", python_version="3"),
            uses(
                "actions/cache@v4",
                id="pip-cache",
                path="~/.cache/pip",
                key="pip-${{ hashFiles('pyproject.toml') }}",
                restore_keys="pip-",
            ),
            sh("Ruff check", "ruff check src tests"),
        ),

        # Test job - one instance per python version
        job(
            "test",
            sh("Install package", "pip install -e '.[test]'"),
            sh(
                "Run pytest",
                'pytest -q && echo "passed=true" >> "$GITHUB_OUTPUT"',
                id="pytest",
                env={"PYTHONDONTWRITEBYTECODE": "1"},
            ),
            name="test (python ${{ matrix.python }})",
            needs="lint",
            matrix=matrix(python=["3.11", "3.12"]),
            max_parallel=2,
            outputs={"passed": "${{ steps.pytest.outputs.passed }}"},
        ),

        # Summary runs even when tests fail
        build("summary")
        .depends_on("test")
        .when("always()")
        .define_step("Report", 'echo "tests: ${{ needs.test.result }} (passed=${{ needs.test.outputs.passed }})"')
        .build(),

        name="actionflow",
        on={"push": {"branches": ["main"]}, "pull_request": None},
    )
