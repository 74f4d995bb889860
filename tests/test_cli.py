"""Tests for the command-line surface that needs no browser or database."""

from click.testing import CliRunner

from forumharvest.cli import cli


def test_owner_reports_partition():
    result = CliRunner().invoke(cli, ["--worker-index", "2", "--worker-count", "4", "owner", "10"])
    assert result.exit_code == 0
    assert "worker 2/4" in result.output
    assert "(this worker)" in result.output


def test_owner_for_another_worker():
    result = CliRunner().invoke(cli, ["--worker-count", "4", "owner", "11"])
    assert result.exit_code == 0
    assert "worker 3/4" in result.output
    assert "(this worker)" not in result.output


def test_bad_partition_is_a_usage_error():
    result = CliRunner().invoke(cli, ["--worker-index", "5", "--worker-count", "2", "owner", "1"])
    assert result.exit_code == 2
