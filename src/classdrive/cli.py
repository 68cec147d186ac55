"""
CLI Entrypoint for classdrive

Runs the dashboard API and exposes the roster and fan-out upload for
scripting and administration.

Usage:
    classdrive serve [OPTIONS]
    classdrive init-db [OPTIONS]
    classdrive enroll STUDENT_NAME STUDENT_EMAIL SUBJECT --teacher-email EMAIL
    classdrive auth-url STUDENT_ID
    classdrive upload FILE_PATH SUBJECT DOCUMENT_TYPE -s ID [-s ID ...] --teacher-email EMAIL
"""

from __future__ import annotations

import mimetypes
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from classdrive.config import load_config
from classdrive.gdrive.errors import ClassDriveError
from classdrive.models import DistributionSummary, UploadStatus
from classdrive.services import Services, build_services

app = typer.Typer(
    name="classdrive",
    help="Distribute course files into students' Google Drives",
    add_completion=False,
)

console = Console()

ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to settings.yaml configuration file",
    exists=True,
)


def _services(config: Optional[Path]) -> Services:
    return build_services(load_config(config))


def _teacher_id(services: Services, teacher_email: str, teacher_name: Optional[str]) -> int:
    try:
        teacher = services.roster.sign_in_teacher(teacher_email, teacher_name or teacher_email)
    except ClassDriveError as e:
        console.print(f"[red]Teacher rejected:[/] {e.message}")
        raise typer.Exit(1) from e
    return teacher.id


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", "--host", help="Interface to bind"),
    port: int = typer.Option(8000, "--port", "-p", help="Port to run the API server on"),
    config: Optional[Path] = ConfigOption,
) -> None:
    """
    Start the dashboard API server.
    """
    import uvicorn

    from classdrive.app import create_app

    console.print(f"[bold blue]Starting classdrive on port {port}...[/]")
    uvicorn.run(create_app(config=load_config(config)), host=host, port=port)


@app.command("init-db")
def init_db(config: Optional[Path] = ConfigOption) -> None:
    """Create the database tables."""
    services = _services(config)
    console.print(f"[bold green]Database ready:[/] {services.config.database_url}")


@app.command()
def enroll(
    student_name: str = typer.Argument(..., help="Student display name"),
    student_email: str = typer.Argument(..., help="Student institutional email"),
    subject: str = typer.Argument(..., help="Subject the student is enrolled in"),
    teacher_email: str = typer.Option(..., "--teacher-email", "-t", help="Owning teacher's email"),
    teacher_name: Optional[str] = typer.Option(None, "--teacher-name", help="Owning teacher's name"),
    config: Optional[Path] = ConfigOption,
) -> None:
    """
    Enroll a student and email them a Google Drive authorization link.

    Examples:
        classdrive enroll "Asha Rao" asha@slrtce.in Algorithms -t prof@slrtce.in
    """
    services = _services(config)
    teacher_id = _teacher_id(services, teacher_email, teacher_name)

    try:
        result = services.onboarding.enroll(teacher_id, student_name, student_email, subject)
    except ClassDriveError as e:
        console.print(f"[red]Enrollment failed:[/] {e.message}")
        raise typer.Exit(1) from e

    console.print(f"[green]Enrolled:[/] {result.student.name} (id {result.student.id})")
    if result.email_sent:
        console.print("[dim]Authorization email sent.[/]")
    else:
        console.print(f"[yellow]Email not sent:[/] {result.email.error}")
        console.print(f"Share this link instead:\n{result.authorization_link}")


@app.command("auth-url")
def auth_url(
    student_id: int = typer.Argument(..., help="Student id"),
    config: Optional[Path] = ConfigOption,
) -> None:
    """Print a fresh Google Drive authorization link for a student."""
    services = _services(config)
    if services.roster.find_student(student_id) is None:
        console.print(f"[red]Student {student_id} not found[/]")
        raise typer.Exit(1)

    link = services.authorizer.generate_auth_url(student_id)
    services.roster.set_authorization_link(student_id, link)
    console.print(link)


@app.command()
def upload(
    file_path: Path = typer.Argument(..., help="File to distribute", exists=True, dir_okay=False),
    subject: str = typer.Argument(..., help="Subject folder name"),
    document_type: str = typer.Argument(..., help="Document type folder name, e.g. 'Lecture Notes'"),
    student: List[int] = typer.Option(..., "--student", "-s", help="Target student id. Can be repeated."),
    teacher_email: str = typer.Option(..., "--teacher-email", "-t", help="Owning teacher's email"),
    config: Optional[Path] = ConfigOption,
) -> None:
    """
    Upload one file into each selected student's Google Drive.

    Examples:
        classdrive upload notes.pdf Algorithms "Lecture Notes" -s 3 -s 4 -t prof@slrtce.in
    """
    services = _services(config)
    teacher_id = _teacher_id(services, teacher_email, None)
    mime_type, _ = mimetypes.guess_type(file_path.name)

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:
        progress.add_task(f"Uploading {file_path.name}...", total=None)
        try:
            summary = services.dispatcher.distribute(
                teacher_id,
                file_path.read_bytes(),
                file_path.name,
                mime_type,
                subject,
                document_type,
                student,
            )
        except ClassDriveError as e:
            console.print(f"[red]Upload rejected:[/] {e.message}")
            raise typer.Exit(1) from e

    _print_summary(summary)
    if summary.failure_count:
        raise typer.Exit(2)


def _print_summary(summary: DistributionSummary) -> None:
    table = Table(title=summary.file_name)
    table.add_column("Student")
    table.add_column("Email")
    table.add_column("Status")
    table.add_column("Detail")

    for result in summary.results:
        if result.status == UploadStatus.SUCCESS:
            status, detail = "[green]success[/]", result.web_view_link or result.file_id or ""
        else:
            status, detail = "[red]failed[/]", result.error or ""
        table.add_row(result.student_name, result.student_email, status, detail)

    console.print(table)
    console.print(f"\n[bold]{summary.message}[/] in {summary.duration_seconds:.1f}s")
    if summary.skipped_student_ids:
        skipped = ", ".join(str(i) for i in summary.skipped_student_ids)
        console.print(f"[yellow]Skipped (not authorized or not found):[/] {skipped}")


if __name__ == "__main__":
    app()
