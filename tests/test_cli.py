"""Tests for the command-line interface."""

from pathlib import Path

import pytest
from typer.testing import CliRunner

from classdrive.cli import app

runner = CliRunner()


@pytest.fixture
def env() -> dict:
    return {
        "CLASSDRIVE_CONFIG": "",
        "CLASSDRIVE_DATABASE_URL": "sqlite://",
        "CLASSDRIVE_INSTITUTIONAL_DOMAIN": "inst.edu",
        "CLASSDRIVE_STUDENT_CLIENT_ID": "student-client",
        "CLASSDRIVE_STUDENT_REDIRECT_URI": "http://localhost:8000/auth/student/callback",
        "CLASSDRIVE_SMTP_HOST": "",
    }


class TestCli:
    def test_init_db(self, env) -> None:
        result = runner.invoke(app, ["init-db"], env=env)

        assert result.exit_code == 0
        assert "Database ready" in result.output

    def test_enroll_without_smtp_prints_link(self, env) -> None:
        result = runner.invoke(
            app, ["enroll", "Asha", "asha@inst.edu", "Algorithms", "-t", "prof@inst.edu"], env=env
        )

        assert result.exit_code == 0
        assert "Enrolled" in result.output
        assert "Email not sent" in result.output

    def test_enroll_off_domain(self, env) -> None:
        result = runner.invoke(
            app, ["enroll", "Asha", "asha@gmail.com", "Algorithms", "-t", "prof@inst.edu"], env=env
        )

        assert result.exit_code == 1
        assert "Enrollment failed" in result.output

    def test_upload_without_authorized_students(self, env, tmp_path: Path) -> None:
        notes = tmp_path / "notes.pdf"
        notes.write_bytes(b"%PDF notes")

        result = runner.invoke(
            app,
            ["upload", str(notes), "Algorithms", "Lecture Notes", "-s", "1", "-t", "prof@inst.edu"],
            env=env,
        )

        assert result.exit_code == 1
        assert "No authorized students found" in result.output

    def test_auth_url_unknown_student(self, env) -> None:
        result = runner.invoke(app, ["auth-url", "42"], env=env)

        assert result.exit_code == 1
        assert "not found" in result.output
