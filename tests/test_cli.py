"""
Tests for the command-line interface.

Runs commands through click's CliRunner against a SQLite store in a
temporary directory, with the keyword embedder in place of the model.
"""

from unittest.mock import patch
import pytest
from click.testing import CliRunner

from blockoli.cli import main


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def offline(embedder_factory):
    """No model download and no global logging changes."""
    with patch("blockoli.engine.EmbeddingModel", lambda **kwargs: embedder_factory()), \
            patch("blockoli.cli.setup_logging"):
        yield


@pytest.fixture
def source_dir(temp_dir, demo_source):
    src = temp_dir / "src"
    src.mkdir()
    (src / "demo.py").write_text(demo_source)
    return src


def invoke(runner, root, *args, **kwargs):
    return runner.invoke(main, ["--root", str(root), *args], **kwargs)


def test_init(runner, temp_dir):
    result = invoke(runner, temp_dir, "init", "--path", str(temp_dir))

    assert result.exit_code == 0
    assert (temp_dir / ".blockoli" / "config.toml").exists()

    again = invoke(runner, temp_dir, "init", "--path", str(temp_dir))
    assert "already exists" in again.output


def test_create_and_list_projects(runner, temp_dir):
    assert invoke(runner, temp_dir, "create", "demo").exit_code == 0

    result = invoke(runner, temp_dir, "projects")
    assert result.exit_code == 0
    assert "demo" in result.output

    duplicate = invoke(runner, temp_dir, "create", "demo")
    assert duplicate.exit_code == 1
    assert "already exists" in duplicate.output


def test_invalid_project_name(runner, temp_dir):
    result = invoke(runner, temp_dir, "create", "bad-name")

    assert result.exit_code == 1
    assert "Invalid project name" in result.output


def test_index_and_query(runner, temp_dir, source_dir):
    result = invoke(runner, temp_dir, "index", "demo", str(source_dir))
    assert result.exit_code == 0, result.output
    assert "Indexing complete" in result.output
    assert "Files indexed: 1" in result.output

    info = invoke(runner, temp_dir, "info", "demo")
    assert info.exit_code == 0
    assert "Code blocks" in info.output

    search = invoke(runner, temp_dir, "search", "demo", "foo", "-k", "1")
    assert search.exit_code == 0, search.output
    assert "function: foo" in search.output

    blocks = invoke(runner, temp_dir, "blocks", "demo", "--functions")
    assert blocks.exit_code == 0
    assert "foo" in blocks.output and "bar" in blocks.output

    find = invoke(runner, temp_dir, "find", "demo", "bar")
    assert find.exit_code == 0
    assert "demo.py" in find.output

    grep = invoke(runner, temp_dir, "grep", "demo", "nothing_matches_this")
    assert "No blocks found" in grep.output


def test_index_reports_failed_files(runner, temp_dir, source_dir):
    (source_dir / "broken.py").write_text("def broken(:\n    pass\n")

    result = invoke(runner, temp_dir, "index", "demo", str(source_dir))

    assert result.exit_code == 0, result.output
    assert "Failed files" in result.output
    assert "broken.py" in result.output


def test_search_missing_project(runner, temp_dir):
    result = invoke(runner, temp_dir, "search", "ghost", "foo")

    assert result.exit_code == 1
    assert "not found" in result.output


def test_delete(runner, temp_dir):
    invoke(runner, temp_dir, "create", "demo")

    result = invoke(runner, temp_dir, "delete", "demo", "--yes")
    assert result.exit_code == 0
    assert "Deleted project demo" in result.output

    missing = invoke(runner, temp_dir, "delete", "demo", "--yes")
    assert missing.exit_code == 1


def test_version(runner, temp_dir):
    result = invoke(runner, temp_dir, "--version")

    assert result.exit_code == 0
    assert "blockoli" in result.output
