"""
Wiring of the classdrive components from an AppConfig.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from classdrive.config import AppConfig
from classdrive.database import create_db_engine, create_session_factory, init_db
from classdrive.gdrive.auth import DriveAuthorizer, DriveClientFactory, TeacherSignIn
from classdrive.gdrive.dispatcher import UploadDispatcher
from classdrive.gdrive.folders import FolderResolver
from classdrive.gdrive.locks import StudentLockRegistry
from classdrive.gdrive.uploader import FileUploader
from classdrive.notifications import NotificationGateway
from classdrive.onboarding import StudentOnboarding
from classdrive.roster import Roster, SqlCredentialStore
from classdrive.signing import TokenSigner


@dataclass
class Services:
    """Everything a request handler or CLI command needs."""

    config: AppConfig
    engine: Engine
    sessions: sessionmaker
    roster: Roster
    store: SqlCredentialStore
    signer: TokenSigner
    authorizer: DriveAuthorizer
    client_factory: DriveClientFactory
    dispatcher: UploadDispatcher
    notifier: NotificationGateway
    onboarding: StudentOnboarding
    teacher_sign_in: TeacherSignIn


def build_services(config: AppConfig, create_tables: bool = True) -> Services:
    """Build the component graph for ``config``."""
    engine = create_db_engine(config.database_url)
    if create_tables:
        init_db(engine)
    sessions = create_session_factory(engine)

    roster = Roster(sessions, config.institutional_domain)
    store = SqlCredentialStore(sessions)
    signer = TokenSigner(config.secret_key)
    authorizer = DriveAuthorizer(config.drive, signer)
    client_factory = DriveClientFactory(config.drive, store, locks=StudentLockRegistry())
    dispatcher = UploadDispatcher(
        store,
        client_factory,
        resolver=FolderResolver(client_factory),
        uploader=FileUploader(),
        config=config.drive,
    )
    notifier = NotificationGateway(config.smtp, config.institutional_domain)

    return Services(
        config=config,
        engine=engine,
        sessions=sessions,
        roster=roster,
        store=store,
        signer=signer,
        authorizer=authorizer,
        client_factory=client_factory,
        dispatcher=dispatcher,
        notifier=notifier,
        onboarding=StudentOnboarding(roster, authorizer, notifier),
        teacher_sign_in=TeacherSignIn(config.teacher_oauth, config.drive.request_timeout_seconds),
    )
