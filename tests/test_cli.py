import json

import pytest
from click.testing import CliRunner

from jobengine.cli import cli


@pytest.fixture
def run(db_path):
    runner = CliRunner()

    def _run(*args):
        return runner.invoke(cli, ["--db", db_path, *args])
    return _run


def test_submit_and_status(run):
    result = run("submit", "WEBHOOK_CALL", '{"url": "https://example.com"}')
    assert result.exit_code == 0, result.output
    assert "Submitted job 1" in result.output

    status = json.loads(run("status").output)
    assert status["PENDING"] == 1


def test_list_and_show(run):
    run("submit", "SEND_DIGEST", "{}")

    listing = run("list", "--status", "pending")
    assert "SEND_DIGEST" in listing.output

    shown = json.loads(run("show", "1").output)
    assert shown["job_type"] == "SEND_DIGEST"
    assert shown["retry_count"] == 0


def test_list_empty(run):
    assert "No jobs." in run("list").output


def test_show_missing_job(run):
    result = run("show", "42")
    assert result.exit_code == 1
    assert "not found" in result.output


def test_dispatch_marks_unknown_type_dead(run):
    run("submit", "SEND_DIGEST", "{}")

    cycle = json.loads(run("dispatch").output)
    assert cycle["failed"] == 1

    assert json.loads(run("status").output)["dead"] == 1
    assert "(dead)" in run("list").output


def test_retry_refuses_dead_job(run):
    run("submit", "SEND_DIGEST", "{}")
    run("dispatch")

    result = run("retry", "1")
    assert result.exit_code == 1
    assert "cannot be retried" in result.output


def test_retry_needs_exactly_one_target(run):
    assert run("retry").exit_code != 0
    assert run("retry", "1", "--all").exit_code != 0
    assert "Re-queued 0" in run("retry", "--all").output


def test_sweep(run):
    result = run("sweep")
    assert result.exit_code == 0
    assert "Deleted 0 job(s)" in result.output


def test_config_get_and_set(run):
    assert json.loads(run("config", "get").output)["max_retries"] == "3"

    assert run("config", "set", "max_retries", "5").exit_code == 0
    assert json.loads(run("config", "get").output)["max_retries"] == "5"

    bad = run("config", "set", "colour", "blue")
    assert bad.exit_code == 1
    assert "Allowed keys" in bad.output
