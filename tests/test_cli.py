"""Tests for the warden CLI commands."""

import json

import pytest
from click.testing import CliRunner

from tests.conftest import ASSET_SCHEMA, BLOG_SCHEMA
from warden.cli.main import cli


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def blog_file(tmp_path):
    path = tmp_path / "blog.yaml"
    path.write_text(BLOG_SCHEMA)
    return path


class TestSchemaValidate:
    def test_validate_succeeds(self, runner, blog_file):
        result = runner.invoke(cli, ["schema", "validate", str(blog_file)])
        assert result.exit_code == 0
        assert "Schema is valid" in result.output

    def test_validate_lists_models(self, runner, blog_file):
        result = runner.invoke(cli, ["schema", "validate", str(blog_file)])
        assert "Loaded 3 models:" in result.output
        assert "Post (7 fields, 5 guarded operations)" in result.output
        assert "Comment (4 fields, 4 guarded operations)" in result.output

    def test_validate_shows_base_model(self, runner, tmp_path):
        path = tmp_path / "assets.yaml"
        path.write_text(ASSET_SCHEMA)
        result = runner.invoke(cli, ["schema", "validate", str(path)])
        assert result.exit_code == 0
        assert "extends Video" in result.output

    def test_validate_fails_on_errors(self, runner, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("models:\n  Tag:\n    extends: Nope\n")
        result = runner.invoke(cli, ["schema", "validate", str(path)])
        assert result.exit_code == 1
        assert "extends unknown model 'Nope'" in result.output
        assert "1 error(s) found" in result.output

    def test_strict_fails_on_warnings(self, runner, tmp_path):
        path = tmp_path / "warn.yaml"
        path.write_text(
            "authModel: User\n"
            "models:\n"
            "  User:\n"
            "    fields:\n"
            "      id: {type: Int, id: true}\n"
            "    policy:\n"
            "      read: {id: {$auth: orgId}}\n"
        )
        lenient = runner.invoke(cli, ["schema", "validate", str(path)])
        assert lenient.exit_code == 0
        assert "1 warning(s) found." in lenient.output

        strict = runner.invoke(cli, ["schema", "validate", str(path), "--strict"])
        assert strict.exit_code == 1

    def test_missing_file(self, runner, tmp_path):
        result = runner.invoke(cli, ["schema", "validate", str(tmp_path / "nope.yaml")])
        assert result.exit_code != 0


class TestCheck:
    def _check(self, runner, path, *extra):
        return runner.invoke(cli, ["check", str(path), "--model", "Post", *extra])

    def test_read_allowed_for_author(self, runner, blog_file):
        result = self._check(runner, blog_file, "--operation", "read", "--user", json.dumps({"id": 1}))
        assert result.exit_code == 0
        assert "read on Post: allowed" in result.output

    def test_create_denied_for_anonymous(self, runner, blog_file):
        result = self._check(runner, blog_file, "--operation", "create")
        assert result.exit_code == 0
        assert "create on Post: denied" in result.output

    def test_pinned_values_can_deny(self, runner, blog_file):
        result = self._check(
            runner,
            blog_file,
            "--operation",
            "read",
            "--user",
            '{"id": 1}',
            "--where",
            '{"published": false, "authorId": 2}',
        )
        assert "read on Post: denied" in result.output

    def test_invalid_json(self, runner, blog_file):
        result = self._check(runner, blog_file, "--operation", "read", "--user", "{id: 1")
        assert result.exit_code == 2
        assert "invalid JSON" in result.output

    def test_unsupported_operation(self, runner, blog_file):
        result = self._check(runner, blog_file, "--operation", "postUpdate")
        assert result.exit_code == 2

    def test_invalid_pinned_field(self, runner, blog_file):
        result = self._check(runner, blog_file, "--operation", "read", "--where", '{"comments": 1}')
        assert result.exit_code == 1
        assert "Error:" in result.output
