"""
Database models and operations for Stackyard
Uses SQLite (via SQLAlchemy) for stacks, users, endpoints, registries and settings
"""

import logging
import os
import threading
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import (
    create_engine, Column, String, Integer, Boolean, DateTime, JSON, ForeignKey, Text,
    CheckConstraint,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool

from deployment.types import (
    AutoUpdateSettings,
    FileSource,
    GitAuthentication,
    GitConfig,
    GitSource,
    Stack,
)
from utils.encryption import encrypt_secret, decrypt_secret

logger = logging.getLogger(__name__)


def utcnow():
    """Helper to get timezone-aware UTC datetime for database defaults"""
    return datetime.now(timezone.utc)


class ObjectNotFoundError(LookupError):
    """Raised when a requested record does not exist."""
    pass


class DuplicateObjectError(ValueError):
    """Raised when a record violates a uniqueness constraint."""
    pass


# User roles
ROLE_ADMINISTRATOR = 1
ROLE_REGULAR = 2

# Authentication methods
AUTH_INTERNAL = 'internal'
AUTH_LDAP = 'ldap'
AUTH_OAUTH = 'oauth'


Base = declarative_base()


class User(Base):
    """Application user. password_hash is only set under internal authentication."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String, nullable=False, unique=True)
    password_hash = Column(String, nullable=True)
    role = Column(Integer, nullable=False, default=ROLE_REGULAR)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint('role IN (1, 2)', name='valid_user_role'),
    )

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMINISTRATOR


class GlobalSettings(Base):
    """Global application settings"""
    __tablename__ = "global_settings"

    id = Column(Integer, primary_key=True, default=1)
    __table_args__ = (
        # Ensure only one settings row exists
        CheckConstraint('id = 1', name='single_settings_row'),
    )
    authentication_method = Column(String, nullable=False, default=AUTH_INTERNAL)
    required_password_length = Column(Integer, nullable=False, default=12)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Endpoint(Base):
    """Kubernetes cluster endpoint"""
    __tablename__ = "endpoints"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False, unique=True)
    url = Column(String, nullable=True)
    in_cluster = Column(Boolean, default=False)  # Use the service account of this pod
    kubeconfig_encrypted = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def kubeconfig(self) -> Optional[str]:
        return decrypt_secret(self.kubeconfig_encrypted)

    @kubeconfig.setter
    def kubeconfig(self, value: Optional[str]) -> None:
        self.kubeconfig_encrypted = encrypt_secret(value)


class Registry(Base):
    """
    Container image registry.

    access_policies maps an endpoint id (as string) to the namespaces of that
    endpoint allowed to pull from the registry, e.g. {"1": ["default", "web"]}.
    """
    __tablename__ = "registries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    type = Column(String, nullable=False, default='custom')  # 'ecr', 'custom', 'dockerhub', ...
    url = Column(String, nullable=False)
    username = Column(String, nullable=True)  # AWS access key id for ECR
    password_encrypted = Column(Text, nullable=True)  # AWS secret access key for ECR
    region = Column(String, nullable=True)
    access_token = Column(Text, nullable=True)
    access_token_expiry = Column(DateTime, nullable=True)
    access_policies = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def password(self) -> Optional[str]:
        return decrypt_secret(self.password_encrypted)

    @password.setter
    def password(self, value: Optional[str]) -> None:
        self.password_encrypted = encrypt_secret(value)

    def allows_namespace(self, endpoint_id: int, namespace: str) -> bool:
        policies = self.access_policies or {}
        return namespace in policies.get(str(endpoint_id), [])


class StackRecord(Base):
    """
    Kubernetes stack row.

    A stack is git-managed iff git_url is set; see deployment.types.Stack for
    the in-memory representation handed to the update handlers.
    """
    __tablename__ = "stacks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    type = Column(String, nullable=False, default='kubernetes')
    endpoint_id = Column(Integer, ForeignKey("endpoints.id", ondelete="CASCADE"), nullable=False)
    entry_point = Column(String, nullable=False)
    namespace = Column(String, nullable=False, default='default')
    project_path = Column(String, nullable=False)
    status = Column(String, nullable=False, default='active')
    created_by = Column(String, nullable=False)
    updated_by = Column(String, nullable=True)
    update_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    # Git source (all NULL for file-managed stacks)
    git_url = Column(String, nullable=True)
    git_reference_name = Column(String, nullable=True)
    git_tls_skip_verify = Column(Boolean, default=False)
    git_username = Column(String, nullable=True)
    git_password_encrypted = Column(Text, nullable=True)
    git_config_hash = Column(String, nullable=True)

    # Auto-update
    auto_update_interval = Column(String, nullable=True)
    auto_update_job_id = Column(String, nullable=True)


def stack_from_record(row: StackRecord) -> Stack:
    """Build the in-memory stack from its row."""
    if row.git_url:
        authentication = None
        if row.git_username is not None:
            authentication = GitAuthentication(
                username=row.git_username,
                password=decrypt_secret(row.git_password_encrypted) or '',
            )
        source = GitSource(GitConfig(
            url=row.git_url,
            reference_name=row.git_reference_name or '',
            tls_skip_verify=bool(row.git_tls_skip_verify),
            authentication=authentication,
            config_hash=row.git_config_hash,
        ))
    else:
        source = FileSource()

    auto_update = None
    if row.auto_update_interval is not None or row.auto_update_job_id is not None:
        auto_update = AutoUpdateSettings(
            interval=row.auto_update_interval or '',
            job_id=row.auto_update_job_id,
        )

    return Stack(
        id=row.id,
        name=row.name,
        entry_point=row.entry_point,
        namespace=row.namespace,
        endpoint_id=row.endpoint_id,
        project_path=row.project_path,
        created_by=row.created_by,
        source=source,
        auto_update=auto_update,
        status=row.status,
        updated_by=row.updated_by,
        update_date=row.update_date,
        created_at=row.created_at,
    )


def apply_stack_to_record(stack: Stack, row: StackRecord) -> None:
    """Copy the mutable stack fields onto its row."""
    row.name = stack.name
    row.entry_point = stack.entry_point
    row.namespace = stack.namespace
    row.endpoint_id = stack.endpoint_id
    row.project_path = stack.project_path
    row.status = stack.status
    row.updated_by = stack.updated_by
    row.update_date = stack.update_date

    git_config = stack.git_config
    if git_config is not None:
        row.git_url = git_config.url
        row.git_reference_name = git_config.reference_name
        row.git_tls_skip_verify = git_config.tls_skip_verify
        row.git_config_hash = git_config.config_hash
        if git_config.authentication is not None:
            row.git_username = git_config.authentication.username
            # Fernet tokens differ per call; keep the stored one if the secret is unchanged
            if (decrypt_secret(row.git_password_encrypted) or '') != git_config.authentication.password:
                row.git_password_encrypted = encrypt_secret(git_config.authentication.password)
        else:
            row.git_username = None
            row.git_password_encrypted = None
    else:
        row.git_url = None
        row.git_reference_name = None
        row.git_tls_skip_verify = False
        row.git_username = None
        row.git_password_encrypted = None
        row.git_config_hash = None

    if stack.auto_update is not None:
        row.auto_update_interval = stack.auto_update.interval
        row.auto_update_job_id = stack.auto_update.job_id
    else:
        row.auto_update_interval = None
        row.auto_update_job_id = None


class DatabaseManager:
    """
    Database management and operations

    Sessions are created with expire_on_commit=False so that records returned
    by the manager stay readable after their session is closed.
    """

    def __init__(self, database_url: str = "sqlite:///data/stackyard.db"):
        self.database_url = database_url

        if database_url.startswith('sqlite:///'):
            db_path = database_url[len('sqlite:///'):]
            data_dir = os.path.dirname(db_path)
            if data_dir and db_path != ':memory:':
                os.makedirs(data_dir, exist_ok=True)

            # StaticPool keeps a single connection so in-memory databases
            # survive across sessions; timeout guards against lock waits
            self.engine = create_engine(
                database_url,
                connect_args={
                    "check_same_thread": False,
                    "timeout": 20
                },
                poolclass=StaticPool,
                echo=False
            )
        else:
            self.engine = create_engine(database_url, pool_pre_ping=True, echo=False)

        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

        # Serializes writes so two updates of the same stack apply one after the other
        self._write_lock = threading.Lock()

        Base.metadata.create_all(bind=self.engine)
        self._initialize_defaults()

    def _initialize_defaults(self):
        """Initialize default settings if they don't exist"""
        with self.get_session() as session:
            settings = session.query(GlobalSettings).first()
            if not settings:
                session.add(GlobalSettings())
                session.commit()

    def get_session(self) -> Session:
        """Get a database session"""
        return self.SessionLocal()

    @staticmethod
    def is_err_object_not_found(err: Exception) -> bool:
        """True if err means the requested record does not exist."""
        return isinstance(err, ObjectNotFoundError)

    # Stacks
    def get_stack(self, stack_id: int) -> Stack:
        """Get a stack by id. Raises ObjectNotFoundError if it doesn't exist."""
        with self.get_session() as session:
            row = session.get(StackRecord, stack_id)
            if row is None:
                raise ObjectNotFoundError(f"Stack {stack_id} not found")
            return stack_from_record(row)

    def create_stack(self, stack: Stack) -> Stack:
        """Insert a new stack row. stack.id is ignored and filled in."""
        with self._write_lock, self.get_session() as session:
            row = StackRecord(created_by=stack.created_by, type='kubernetes')
            apply_stack_to_record(stack, row)
            session.add(row)
            session.commit()
            stack.id = row.id
            stack.created_at = row.created_at
            return stack

    def update_stack(self, stack: Stack) -> None:
        """Persist a stack. Raises ObjectNotFoundError if it doesn't exist."""
        with self._write_lock, self.get_session() as session:
            row = session.get(StackRecord, stack.id)
            if row is None:
                raise ObjectNotFoundError(f"Stack {stack.id} not found")
            apply_stack_to_record(stack, row)
            session.commit()
            logger.debug(f"Updated stack {stack.id} ({stack.name})")

    def list_autoupdate_stacks(self) -> List[Stack]:
        """Git-managed stacks that have an auto-update interval configured."""
        with self.get_session() as session:
            rows = session.query(StackRecord).filter(
                StackRecord.git_url.isnot(None),
                StackRecord.auto_update_interval.isnot(None),
                StackRecord.auto_update_interval != '',
            ).all()
            return [stack_from_record(row) for row in rows]

    # Endpoints
    def get_endpoint(self, endpoint_id: int) -> Endpoint:
        """Get an endpoint by id. Raises ObjectNotFoundError if it doesn't exist."""
        with self.get_session() as session:
            endpoint = session.get(Endpoint, endpoint_id)
            if endpoint is None:
                raise ObjectNotFoundError(f"Endpoint {endpoint_id} not found")
            return endpoint

    def create_endpoint(self, endpoint: Endpoint) -> Endpoint:
        with self._write_lock, self.get_session() as session:
            session.add(endpoint)
            session.commit()
            return endpoint

    # Registries
    def registries_for_namespace(self, endpoint_id: int, namespace: str) -> List[Registry]:
        """Registries the given namespace of an endpoint may pull from."""
        with self.get_session() as session:
            registries = session.query(Registry).all()
            return [r for r in registries if r.allows_namespace(endpoint_id, namespace)]

    def create_registry(self, registry: Registry) -> Registry:
        with self._write_lock, self.get_session() as session:
            session.add(registry)
            session.commit()
            return registry

    def update_registry_token(self, registry_id: int, token: str, expiry: datetime) -> None:
        """Store a freshly issued registry access token."""
        with self._write_lock, self.get_session() as session:
            registry = session.get(Registry, registry_id)
            if registry is None:
                raise ObjectNotFoundError(f"Registry {registry_id} not found")
            registry.access_token = token
            registry.access_token_expiry = expiry
            session.commit()

    # Users
    def user_by_username(self, username: str) -> User:
        """Get a user by username. Raises ObjectNotFoundError if it doesn't exist."""
        with self.get_session() as session:
            user = session.query(User).filter(User.username == username).first()
            if user is None:
                raise ObjectNotFoundError(f"User '{username}' not found")
            return user

    def get_user(self, user_id: int) -> User:
        """Get a user by id. Raises ObjectNotFoundError if it doesn't exist."""
        with self.get_session() as session:
            user = session.get(User, user_id)
            if user is None:
                raise ObjectNotFoundError(f"User {user_id} not found")
            return user

    def create_user(self, user: User) -> User:
        """
        Insert a new user.

        Raises:
            DuplicateObjectError: If the username is already taken. The unique
                constraint is the final arbiter when two creations race.
        """
        with self._write_lock, self.get_session() as session:
            session.add(user)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise DuplicateObjectError(f"User '{user.username}' already exists")
            logger.info(f"Created user '{user.username}' (role {user.role})")
            return user

    def count_users(self) -> int:
        with self.get_session() as session:
            return session.query(User).count()

    # Global Settings
    def get_settings(self) -> GlobalSettings:
        """Get global settings"""
        with self.get_session() as session:
            settings = session.query(GlobalSettings).first()
            if settings is None:
                raise ObjectNotFoundError("Settings not found")
            return settings

    def update_settings(self, updates: dict) -> GlobalSettings:
        """
        Update global settings

        NOTE: Input should already be validated by Pydantic at API layer.
        """
        allowed_settings = {'authentication_method', 'required_password_length'}

        with self._write_lock, self.get_session() as session:
            settings = session.query(GlobalSettings).first()
            for key, value in updates.items():
                if key not in allowed_settings:
                    logger.warning(f"Rejected unknown setting key: {key}")
                    continue
                setattr(settings, key, value)
            session.commit()
            return settings


# Singleton instance with thread-safe initialization
_database_manager: Optional[DatabaseManager] = None
_database_manager_lock = threading.Lock()


def get_database_manager() -> DatabaseManager:
    """
    Get or create the process-wide DatabaseManager.

    Thread-safe using double-checked locking pattern.
    """
    global _database_manager

    if _database_manager is not None:
        return _database_manager

    with _database_manager_lock:
        if _database_manager is None:
            from config.settings import AppConfig
            _database_manager = DatabaseManager(AppConfig.DATABASE_URL)
        return _database_manager
